"""Gemini REST client.

Every failure leaving this module is a ProviderError carrying the HTTP
status, a message and, when Google supplied one, the retry delay in seconds.
"""

import logging
import math
import re
from typing import Any, Dict, List, Optional, cast

import httpx

from pagegen.config import Config
from pagegen.errors import ProviderError
from pagegen.models import mask_key

logger = logging.getLogger(__name__)

RETRY_INFO_TYPE = "type.googleapis.com/google.rpc.RetryInfo"
RETRY_IN_PATTERN = re.compile(r"retry in ([\d.]+)\s*s", re.IGNORECASE)


def parse_retry_delay(value: object) -> Optional[float]:
    """Parse a Google duration ("42s", "3.5s", {"seconds": "42"}) into seconds."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if value > 0 else None
    if isinstance(value, dict):
        return parse_retry_delay(cast(Dict[str, object], value).get("seconds"))
    text = str(value).strip().lower()
    if text.endswith("s"):
        text = text[:-1]
    try:
        seconds = float(text)
    except ValueError:
        return None
    return float(math.ceil(seconds)) if seconds > 0 else None


def extract_retry_delay(
    message: str, details: Optional[List[Dict[str, Any]]] = None
) -> Optional[float]:
    """Find the provider retry hint in error details, then in the message."""
    for detail in details or []:
        if not isinstance(detail, dict):
            continue
        if detail.get("@type") == RETRY_INFO_TYPE:
            delay = parse_retry_delay(detail.get("retryDelay"))
            if delay is not None:
                return delay

    match = RETRY_IN_PATTERN.search(message)
    if match:
        return parse_retry_delay(match.group(1))
    return None


def error_from_response(response: httpx.Response) -> ProviderError:
    """Normalise a non-2xx Gemini response into a ProviderError."""
    message = response.reason_phrase or "Request failed"
    details: List[Dict[str, Any]] = []
    direct_delay: Optional[float] = None
    try:
        data = response.json()
        if isinstance(data, str) and data.strip():
            message = data.strip()[:500]
        error_obj = data.get("error") if isinstance(data, dict) else None
        if isinstance(error_obj, dict):
            error_dict = cast(Dict[str, Any], error_obj)
            message = str(error_dict.get("message") or message)
            raw_details = error_dict.get("details") or []
            if isinstance(raw_details, list):
                details = raw_details
            direct_delay = parse_retry_delay(error_dict.get("retryDelaySeconds"))
    except ValueError:
        if response.text:
            message = response.text[:500]

    retry_delay = direct_delay or extract_retry_delay(message, details)
    return ProviderError(response.status_code, message, retry_delay)


def _extract_text(data: Dict[str, Any]) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        feedback = data.get("promptFeedback") or {}
        raise ProviderError(
            200, f"Gemini returned no candidates (blockReason={feedback.get('blockReason')})"
        )
    parts = (candidates[0].get("content") or {}).get("parts") or []
    text = "".join(str(part.get("text", "")) for part in parts)
    if not text.strip():
        raise ProviderError(200, "Gemini returned an empty response")
    return text


class GeminiClient:
    """Thin async wrapper over the generateContent endpoint."""

    def __init__(self, http_client: httpx.AsyncClient, config: Config):
        self.http_client = http_client
        self.model = config.gemini_model

    async def generate_text(
        self,
        api_key: str,
        prompt: str,
        json_output: bool = False,
        temperature: float = 0.7,
        max_output_tokens: int = 4096,
    ) -> str:
        generation_config: Dict[str, Any] = {
            "temperature": temperature,
            "topP": 0.95,
            "topK": 40,
            "maxOutputTokens": max_output_tokens,
        }
        if json_output:
            generation_config["responseMimeType"] = "application/json"

        body = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }

        try:
            response = await self.http_client.post(
                f"/v1beta/models/{self.model}:generateContent",
                json=body,
                headers={"x-goog-api-key": api_key},
            )
        except httpx.TimeoutException:
            logger.error("Timeout calling Gemini (key=%s)", mask_key(api_key))
            raise ProviderError(408, "Request timeout - Gemini did not respond in time")
        except httpx.RequestError as exc:
            logger.error("Network error calling Gemini: %s", exc)
            raise ProviderError(0, f"Network error - cannot reach Gemini API: {exc}")

        if response.status_code >= 400:
            error = error_from_response(response)
            logger.warning(
                "Gemini error %s (key=%s): %s",
                error.status_code,
                mask_key(api_key),
                error.message[:200],
            )
            raise error

        try:
            data = response.json()
        except ValueError:
            raise ProviderError(response.status_code, "Gemini returned a non-JSON response")
        if not isinstance(data, dict):
            raise ProviderError(response.status_code, "Gemini returned an unexpected response body")
        return _extract_text(data)
