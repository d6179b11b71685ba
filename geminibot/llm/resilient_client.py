"""
geminibot/llm/resilient_client.py

Wraps one ModelAPI round-trip with finish-reason classification and a
bounded tenacity retry loop. Only empty responses are retried; every other
failure propagates on the first attempt.

The backoff wait is awaited inside the caller's task: cancelling it (or an
enclosing ``asyncio.wait_for`` expiring) interrupts the sleep immediately and
no further attempt is made.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from geminibot.domain import (
    Author,
    Classification,
    ConversationHistory,
    Credentials,
    ModelResponse,
    RetryOutcome,
)
from geminibot.prompt import build_contents
from .errors import (
    EmptyResponseError,
    LLMError,
    RecitationBlockedError,
    RetriesExhaustedError,
    SafetyBlockedError,
)
from .gemini_api import GenerationConfig, default_safety_settings


logger = logging.getLogger(__name__)

SAFETY_FINISH_REASONS = frozenset({"SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"})
RECITATION_FINISH_REASONS = frozenset({"RECITATION"})


class ModelAPI(Protocol):
    async def generate_content(
        self,
        *,
        api_key: str,
        model: str,
        contents: List[Dict[str, Any]],
        generation_config: GenerationConfig,
        safety_settings: Optional[List[Dict[str, str]]] = None,
        system_instruction: Optional[str] = None,
    ) -> ModelResponse: ...


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, LLMError) and exc.retryable


def _log_retry(max_retries: int) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        cause = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning("Retry %d/%d in %.2fs (%s)", retry_state.attempt_number, max_retries, delay, cause)

    return log


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt ceiling plus capped exponential backoff: base, 2*base, 4*base, ... <= max_delay."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0

    def retrying(self, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=False,
            stop=stop_after_attempt(max(0, self.max_retries) + 1),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception(_is_retryable),
            before_sleep=_log_retry(self.max_retries),
            sleep=sleep,
        )


def classify_response(response: ModelResponse) -> str:
    """Return the answer text, or raise the error the response represents."""
    if not response.candidates:
        if response.block_reason:
            raise SafetyBlockedError(f"Prompt blocked by Gemini: {response.block_reason}")
        raise EmptyResponseError("Gemini returned no candidates")

    reason = response.finish_reason
    if reason in SAFETY_FINISH_REASONS:
        raise SafetyBlockedError(f"Response blocked by the Gemini safety filter ({reason})")
    if reason in RECITATION_FINISH_REASONS:
        raise RecitationBlockedError("Gemini detected copyrighted content (RECITATION)")
    if not response.candidates[0].parts:
        raise EmptyResponseError(f"Gemini candidate had no content (finish_reason={reason})")
    return response.text


class ResilientModelClient:
    def __init__(
        self,
        api: ModelAPI,
        policy: RetryPolicy | None = None,
        generation_config: GenerationConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._api = api
        self.policy = policy or RetryPolicy()
        self.generation_config = generation_config or GenerationConfig()
        self._sleep = sleep

    async def generate(
        self,
        system_prompt: str,
        history: ConversationHistory,
        question: str,
        credentials: Credentials,
        author: Optional[Author] = None,
    ) -> str:
        contents = build_contents(question, history, author)
        logger.info(
            "Gemini request: model=%s key=%s question=%d chars history=%d messages",
            credentials.model, credentials.key_source, len(question), len(history),
        )
        logger.debug("System prompt: %s", system_prompt)
        logger.debug("Contents: %s", contents)

        async def attempt() -> str:
            response = await self._api.generate_content(
                api_key=credentials.api_key,
                model=credentials.model,
                contents=contents,
                generation_config=self.generation_config,
                safety_settings=default_safety_settings(),
                system_instruction=system_prompt or None,
            )
            return classify_response(response)

        text = await self.run_with_retry(attempt)
        logger.info("Gemini answer: %d chars", len(text))
        return text

    async def run_with_retry(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run ``operation`` under the retry policy. Non-retryable errors are
        re-raised as-is; running out of attempts raises RetriesExhaustedError.
        """
        try:
            async for attempt in self.policy.retrying(self._sleep):
                with attempt:
                    result = await operation()
                    if attempt.retry_state.attempt_number > 1:
                        logger.info("Succeeded on attempt %d", attempt.retry_state.attempt_number)
                    return result
        except RetryError as e:
            last = e.last_attempt
            last_error = last.exception()
            logger.error("Max retries (%d) reached; last error: %s", self.policy.max_retries, last_error)
            outcome = RetryOutcome(
                attempts=last.attempt_number,
                last_error=last_error,
                classification=Classification.RETRYABLE,
            )
            raise RetriesExhaustedError(outcome) from last_error
        raise RuntimeError("retry loop ended without a result")
