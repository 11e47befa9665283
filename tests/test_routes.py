"""End-to-end tests for the HTTP surface."""

from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from database import SessionRecord
from errors import ProviderConfigError, UpstreamRejected, UpstreamUnavailable
from main import create_app
from models import FALLBACK_ANALYSIS, AnalysisResult, MailItem, Sentiment
from tests.conftest import form, make_settings, token_json

MESSAGES = [
    MailItem(id="m1", subject="RFI #12", sender_address="sam@builder.example", body="<p>Depth?</p>", body_type="html"),
    MailItem(id="m2", subject="Change order 4", body="Scope change attached"),
    MailItem(id="m3", subject="Invoice 88", body="Amount due"),
]
RFI = AnalysisResult(summary="Asks for depth.", actionItems=["Confirm depth"], sentiment=Sentiment.NEUTRAL, docType="RFI")


def token_endpoint(request: httpx.Request) -> httpx.Response:
    sent = form(request)
    if sent.get("code") == "validcode":
        return httpx.Response(200, json=token_json(oid="u1", name="Alice"))
    return httpx.Response(400, json={"error": "invalid_grant", "error_description": "AADSTS70008: code expired"})


class Harness:
    def __init__(self) -> None:
        self.gateway = MagicMock()
        self.gateway.fetch_recent = AsyncMock(return_value=list(MESSAGES))
        self.analyzer = MagicMock()
        self.analyzer.analyze = AsyncMock(side_effect=self._analyze)
        self.failing_subjects: set[str] = set()

    async def _analyze(self, text: str) -> AnalysisResult:
        if any(s in text for s in self.failing_subjects):
            return FALLBACK_ANALYSIS
        return RFI


@pytest.fixture
def harness() -> Harness:
    return Harness()


@pytest.fixture
def client(harness: Harness) -> Iterator[TestClient]:
    app = create_app(
        make_settings(),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint)),
        gateway=harness.gateway,
        analyzer=harness.analyzer,
    )
    with TestClient(app) as c:
        yield c


def session_rows(client: TestClient) -> int:
    db = client.app.state.services.db

    async def count() -> int:
        async with db.sessionmaker() as s:
            return await s.scalar(select(func.count()).select_from(SessionRecord))

    return client.portal.call(count)


def sign_in(client: TestClient) -> None:
    assert client.get("/login", follow_redirects=False).status_code == 302
    assert client.get("/redirect", params={"code": "validcode"}).status_code == 200


# ── /login & /redirect ─────────────────────────────────────────────────────────


class TestLogin:
    def test_redirects_to_consent(self, client: TestClient) -> None:
        resp = client.get("/login", follow_redirects=False)
        assert resp.status_code == 302
        location = httpx.URL(resp.headers["location"])
        assert location.host == "login.microsoftonline.com"
        assert location.params["client_id"] == "client-id"

    def test_login_stores_nothing(self, client: TestClient) -> None:
        for _ in range(25):
            client.cookies.clear()
            resp = client.get("/login", follow_redirects=False)
            assert "set-cookie" not in resp.headers
        assert session_rows(client) == 0

    def test_redirect_issues_http_only_session_cookie(self, client: TestClient) -> None:
        client.get("/login", follow_redirects=False)
        resp = client.get("/redirect", params={"code": "validcode"})
        cookie = resp.headers["set-cookie"]
        assert cookie.startswith("siteweave_sid=")
        assert "httponly" in cookie.lower()

    def test_redirect_closes_popup(self, client: TestClient) -> None:
        client.get("/login", follow_redirects=False)
        resp = client.get("/redirect", params={"code": "validcode"})
        assert resp.status_code == 200
        assert "window.close()" in resp.text

    def test_bad_code_is_500_with_detail(self, client: TestClient) -> None:
        resp = client.get("/redirect", params={"code": "expired"})
        assert resp.status_code == 500
        assert resp.json()["error"] == "invalid_grant"
        assert client.get("/me").json() == {"loggedIn": False}

    def test_provider_error_param_is_500(self, client: TestClient) -> None:
        resp = client.get("/redirect", params={"error": "access_denied", "error_description": "user declined"})
        assert resp.status_code == 500
        assert resp.json()["error"] == "access_denied"


# ── /me ────────────────────────────────────────────────────────────────────────


class TestMe:
    def test_anonymous(self, client: TestClient) -> None:
        assert client.get("/me").json() == {"loggedIn": False}

    def test_login_alone_is_anonymous(self, client: TestClient) -> None:
        client.get("/login", follow_redirects=False)
        assert client.get("/me").json() == {"loggedIn": False}

    def test_signed_in_account(self, client: TestClient) -> None:
        sign_in(client)
        assert client.get("/me").json() == {"loggedIn": True, "account": {"id": "u1", "name": "Alice"}}

    def test_relogin_rotates_and_drops_previous_row(self, client: TestClient) -> None:
        sign_in(client)
        first = client.cookies["siteweave_sid"]
        sign_in(client)
        assert client.cookies["siteweave_sid"] != first
        assert session_rows(client) == 1

    def test_tampered_cookie_is_anonymous(self, client: TestClient) -> None:
        sign_in(client)
        client.cookies.clear()
        client.cookies.set("siteweave_sid", "not-a-signed-value")
        assert client.get("/me").json() == {"loggedIn": False}


# ── /logout ────────────────────────────────────────────────────────────────────


class TestLogout:
    def test_clears_session(self, client: TestClient) -> None:
        sign_in(client)
        resp = client.get("/logout")
        assert resp.status_code == 200
        assert resp.text == "Successfully logged out"
        assert client.get("/me").json() == {"loggedIn": False}

    def test_twice_is_noop(self, client: TestClient) -> None:
        sign_in(client)
        assert client.get("/logout").status_code == 200
        assert client.get("/logout").status_code == 200

    def test_without_session(self, client: TestClient) -> None:
        assert client.get("/logout").status_code == 200


# ── /fetch-emails ──────────────────────────────────────────────────────────────


class TestFetchEmails:
    def test_requires_session(self, client: TestClient, harness: Harness) -> None:
        resp = client.post("/fetch-emails")
        assert resp.status_code == 401
        assert resp.text == "User not authenticated."
        harness.gateway.fetch_recent.assert_not_awaited()

    def test_returns_enriched_items_in_order(self, client: TestClient, harness: Harness) -> None:
        harness.failing_subjects = {"Change order 4"}
        sign_in(client)
        resp = client.post("/fetch-emails", json={})
        assert resp.status_code == 200
        body = resp.json()
        assert [e["id"] for e in body] == ["m1", "m2", "m3"]
        assert [e["analysis"]["docType"] for e in body] == ["RFI", "Unknown", "RFI"]
        assert body[0]["from"]["emailAddress"]["address"] == "sam@builder.example"
        assert body[0]["analysis"]["actionItems"] == ["Confirm depth"]

    def test_never_returns_access_token(self, client: TestClient) -> None:
        sign_in(client)
        assert "at-1" not in client.post("/fetch-emails", json={}).text

    def test_passes_search_query(self, client: TestClient, harness: Harness) -> None:
        sign_in(client)
        client.post("/fetch-emails", json={"searchQuery": "change order"})
        token, limit, search = harness.gateway.fetch_recent.await_args.args
        assert token.value == "at-1"
        assert limit == 10
        assert search == "change order"

    def test_blank_search_is_no_filter(self, client: TestClient, harness: Harness) -> None:
        sign_in(client)
        client.post("/fetch-emails", json={"searchQuery": "   "})
        assert harness.gateway.fetch_recent.await_args.args[2] is None

    def test_limit_is_capped(self, client: TestClient, harness: Harness) -> None:
        sign_in(client)
        client.post("/fetch-emails", json={"limit": 5000})
        assert harness.gateway.fetch_recent.await_args.args[1] == 50

    def test_reauth_is_401_with_distinct_message(self, client: TestClient, harness: Harness) -> None:
        sign_in(client)
        client.app.state.services.broker.forget("u1")
        resp = client.post("/fetch-emails", json={})
        assert resp.status_code == 401
        assert resp.text == "Session expired. Please log in again."
        harness.gateway.fetch_recent.assert_not_awaited()

    @pytest.mark.parametrize("exc", [
        UpstreamUnavailable("Graph returned 503", 503),
        UpstreamRejected("Graph rejected request: 403", 403),
    ])
    def test_upstream_failure_is_500(self, client: TestClient, harness: Harness, exc: Exception) -> None:
        harness.gateway.fetch_recent.side_effect = exc
        sign_in(client)
        resp = client.post("/fetch-emails", json={})
        assert resp.status_code == 500
        assert resp.text == "Error fetching or analyzing emails."


# ── App ────────────────────────────────────────────────────────────────────────


class TestApp:
    def test_health(self, client: TestClient) -> None:
        assert client.get("/health").json() == {"status": "healthy", "database": "connected"}

    def test_cors_allows_frontend_with_credentials(self, client: TestClient) -> None:
        resp = client.options("/me", headers={
            "Origin": "http://localhost:3001",
            "Access-Control-Request-Method": "GET",
        })
        assert resp.headers["access-control-allow-origin"] == "http://localhost:3001"
        assert resp.headers["access-control-allow-credentials"] == "true"

    def test_missing_credentials_fail_startup(self) -> None:
        app = create_app(make_settings(MS_CLIENT_ID="", SESSION_SECRET=""))
        with pytest.raises(ProviderConfigError):
            with TestClient(app):
                pass
