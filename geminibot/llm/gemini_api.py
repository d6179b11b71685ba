"""
geminibot/llm/gemini_api.py

Thin async client for the Gemini REST ``generateContent`` endpoint.
One call = one round-trip; retry and finish-reason classification live in
resilient_client.py. The API key travels per request, so a single client is
shared by every guild.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from geminibot.domain import Candidate, InlineImage, ModelResponse
from .errors import (
    LLMAuthError,
    LLMBadRequestError,
    LLMConnectionError,
    LLMError,
    LLMForbiddenError,
    LLMNotFoundError,
    LLMRateLimitError,
    LLMTimeoutError,
    LLMUpstreamError,
)


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)
BLOCK_MEDIUM_AND_ABOVE = "BLOCK_MEDIUM_AND_ABOVE"

_AUTH_REASONS = {"API_KEY_INVALID", "API_KEY_EXPIRED", "API_KEY_SERVICE_BLOCKED"}


@dataclass(frozen=True)
class GenerationConfig:
    max_tokens: int = 1000
    temperature: float = 0.7
    top_p: float = 0.9
    # ("TEXT", "IMAGE") for image models; empty leaves the API default (text only).
    response_modalities: Tuple[str, ...] = ()

    def as_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "maxOutputTokens": self.max_tokens,
            "temperature": self.temperature,
            "topP": self.top_p,
        }
        if self.response_modalities:
            payload["responseModalities"] = list(self.response_modalities)
        return payload


def default_safety_settings() -> List[Dict[str, str]]:
    return [{"category": c, "threshold": BLOCK_MEDIUM_AND_ABOVE} for c in HARM_CATEGORIES]


def text_content(text: str, role: str = "user") -> Dict[str, Any]:
    return {"role": role, "parts": [{"text": text}]}


def _inline_image(part: Dict[str, Any]) -> Optional[InlineImage]:
    inline = part.get("inlineData") or part.get("inline_data")
    if not inline or not inline.get("data"):
        return None
    try:
        data = base64.b64decode(inline["data"], validate=True)
    except (binascii.Error, ValueError) as e:
        raise LLMUpstreamError(f"Gemini returned undecodable image data: {e}") from e
    return InlineImage(data=data, mime_type=inline.get("mimeType") or inline.get("mime_type") or "image/png")


def parse_response(data: Dict[str, Any]) -> ModelResponse:
    candidates = []
    for cand in data.get("candidates") or []:
        parts = (cand.get("content") or {}).get("parts") or []
        images = (_inline_image(p) for p in parts)
        candidates.append(
            Candidate(
                finish_reason=cand.get("finishReason"),
                parts=tuple(p["text"] for p in parts if p.get("text")),
                images=tuple(img for img in images if img is not None),
            )
        )
    block_reason = (data.get("promptFeedback") or {}).get("blockReason")
    return ModelResponse(candidates=tuple(candidates), block_reason=block_reason)


def _error_details(response: httpx.Response) -> tuple[str, set[str]]:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200], set()
    err = (data.get("error") if isinstance(data, dict) else None) or {}
    reasons = {d.get("reason") for d in err.get("details") or [] if isinstance(d, dict)}
    return str(err.get("message") or response.reason_phrase), {r for r in reasons if r}


def error_from_response(response: httpx.Response) -> LLMError:
    status = response.status_code
    message, reasons = _error_details(response)
    if status == 401 or (status == 400 and reasons & _AUTH_REASONS):
        return LLMAuthError(message, status_code=status)
    if status == 400:
        return LLMBadRequestError(message, status_code=status)
    if status == 403:
        return LLMForbiddenError(message, status_code=status)
    if status == 404:
        return LLMNotFoundError(message, status_code=status)
    if status == 429:
        return LLMRateLimitError(message, status_code=status)
    return LLMUpstreamError(f"HTTP {status}: {message}", status_code=status)


class GeminiAPI:
    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 60.0,
    ):
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._base_url = base_url.rstrip("/")

    async def aclose(self) -> None:
        await self._client.aclose()

    async def generate_content(
        self,
        *,
        api_key: str,
        model: str,
        contents: List[Dict[str, Any]],
        generation_config: GenerationConfig,
        safety_settings: Optional[List[Dict[str, str]]] = None,
        system_instruction: Optional[str] = None,
    ) -> ModelResponse:
        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": generation_config.as_payload(),
            "safetySettings": safety_settings if safety_settings is not None else default_safety_settings(),
        }
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        url = f"{self._base_url}/models/{model}:generateContent"
        try:
            response = await self._client.post(
                url, json=payload, headers={"x-goog-api-key": api_key}
            )
        except httpx.TimeoutException as e:
            raise LLMTimeoutError(f"Gemini request timed out: {e}") from e
        except httpx.TransportError as e:
            raise LLMConnectionError(f"Gemini request failed: {e}") from e

        if response.status_code != 200:
            err = error_from_response(response)
            logger.warning("Gemini API error (model=%s): %s", model, err)
            raise err

        try:
            data = response.json()
        except ValueError as e:
            raise LLMUpstreamError(f"Gemini returned a non-JSON body: {response.text[:200]}", status_code=200) from e
        if not isinstance(data, dict):
            raise LLMUpstreamError("Gemini returned an unexpected response body", status_code=200)

        result = parse_response(data)
        logger.info(
            "Gemini response: candidates=%d finish_reason=%s",
            len(result.candidates), result.finish_reason,
        )
        return result
