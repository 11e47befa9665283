"""
Document analysis via Gemini (OpenAI-compatible REST endpoint).
Always returns an AnalysisResult — substitutes the fallback record on failure.
"""
import asyncio
import json
import logging
import re
from collections import Counter

import httpx
from pydantic import ValidationError

from config import Settings
from models import FALLBACK_ANALYSIS, AnalysisResult

logger = logging.getLogger(__name__)

BODY_CHAR_LIMIT = 6000

_PROMPT = """\
Analyze the following construction-related email. Extract key information and respond ONLY with a valid JSON object.
The JSON object must have these exact keys: "summary", "actionItems", "sentiment", and "docType".
- "summary": A concise, professional summary of the email's main purpose.
- "actionItems": An array of strings, with each string being a specific, actionable task, question, or deadline. If no action items, return an empty array.
- "sentiment": Classify the sentiment as "Positive", "Negative", or "Neutral".
- "docType": Classify the document type (e.g., "RFI", "Change Order", "Submittal", "Invoice", "General Correspondence").

Email Content:
---
{content}
---"""


def _clean_json(raw: str) -> str:
    """Strip markdown fences and whitespace from AI output."""
    raw = raw.strip()
    raw = re.sub(r"^```(?:json)?\s*", "", raw)
    raw = re.sub(r"\s*```$", "", raw)
    return raw.strip()


def parse_analysis(raw: str) -> AnalysisResult:
    """Parse model output. Raises ValueError or ValidationError."""
    data = json.loads(_clean_json(raw))
    if not isinstance(data, dict):
        raise ValueError("analysis is not a JSON object")
    return AnalysisResult.model_validate(data)


class AnalysisClient:
    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        self.settings = settings
        self._http = http
        self.failures: Counter = Counter()

    async def analyze(self, text: str) -> AnalysisResult:
        """Analyze one document. Never raises."""
        if not self.settings.GEMINI_API_KEY:
            return self._fail("no_api_key")

        try:
            content = await asyncio.wait_for(
                self._complete(text),
                timeout=self.settings.ANALYSIS_TIMEOUT_SECONDS,
            )
            return parse_analysis(content)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return self._fail("timeout")
        except httpx.HTTPStatusError as e:
            return self._fail(f"http_{e.response.status_code}")
        except httpx.HTTPError as e:
            return self._fail("network", e)
        except json.JSONDecodeError:
            return self._fail("invalid_json")
        except (ValidationError, ValueError, KeyError, IndexError, TypeError) as e:
            return self._fail("schema", e)
        except Exception as e:  # noqa: BLE001
            logger.exception("unexpected analysis failure")
            return self._fail("unexpected", e)

    async def _complete(self, text: str) -> str:
        resp = await self._http.post(
            f"{self.settings.AI_BASE_URL}chat/completions",
            headers={
                "Authorization": f"Bearer {self.settings.GEMINI_API_KEY}",
                "Content-Type": "application/json",
            },
            json={
                "model":       self.settings.AI_MODEL,
                "max_tokens":  1024,
                "temperature": 0.1,
                "messages": [
                    {"role": "system", "content": "Return ONLY valid JSON. No markdown. No explanations."},
                    {"role": "user", "content": _PROMPT.format(content=(text or "")[:BODY_CHAR_LIMIT])},
                ],
            },
            timeout=self.settings.ANALYSIS_TIMEOUT_SECONDS,
        )
        resp.raise_for_status()
        return resp.json()["choices"][0]["message"]["content"]

    def _fail(self, reason: str, exc: Exception = None) -> AnalysisResult:
        self.failures[reason] += 1
        if exc is not None:
            logger.warning("analysis failed reason=%s error=%s", reason, exc)
        else:
            logger.warning("analysis failed reason=%s", reason)
        return FALLBACK_ANALYSIS.model_copy(deep=True)
