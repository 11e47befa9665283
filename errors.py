"""
Error taxonomy shared by the token, mail and routing layers.
"""
from typing import Optional


class BrokerError(Exception):
    """Base class for every error the broker raises on purpose."""


class ProviderConfigError(BrokerError):
    """Identity provider client credentials (or session secret) are unset."""


class ExchangeError(BrokerError):
    """The authorization code could not be exchanged for tokens."""

    def __init__(self, error: str, description: str = "", status_code: Optional[int] = None):
        self.error = error
        self.description = description
        self.status_code = status_code
        super().__init__(f"{error}: {description}" if description else error)


class ReauthRequired(BrokerError):
    """Silent renewal is impossible; the user has to sign in again."""


class NotAuthenticated(BrokerError):
    """The session holds no identity."""


class UpstreamError(BrokerError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class UpstreamUnavailable(UpstreamError):
    """Network failure, timeout or 5xx from an upstream API."""


class UpstreamRejected(UpstreamError):
    """4xx from an upstream API, e.g. insufficient scope."""
