"""
Retry and fallback orchestration over the upstream completion gateway.

A request walks its candidate models strictly in order. Retryable failures
(rate limits, 5xx, network errors, empty replies) are retried on the same model
with capped exponential backoff, up to a bounded number of attempts; quota and
auth failures skip straight to the next candidate and block the model in the
quota guard so other sessions skip it too.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import structlog

from .contracts import ChatMessage, Completion, CompletionRequest, CompletionResult
from .errors import (
    CompletionError,
    ConfigurationError,
    FailureKind,
    InvalidRequestError,
    ModelsExhaustedError,
    NoModelsAvailableError,
    RateLimitError,
    RequestTimeoutError,
)
from .fallback_log import FallbackLog, reason_for
from .metrics import completion_attempts_total
from .quota_guard import is_quota_or_auth

if TYPE_CHECKING:
    from .models import ModelRegistry
    from .quota_guard import QuotaGuard

log = structlog.get_logger()


class CompletionBackend(Protocol):
    configured: bool

    async def complete(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        *,
        temperature: float,
        max_tokens: int,
        timeout_seconds: float,
    ) -> Completion: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class RetryPolicy:
    max_same_model_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 10.0
    fallback_enabled: bool = True
    inter_model_backoff: bool = True
    block_on_repeated_rate_limit: bool = False
    rate_limit_block_threshold: int = 3
    request_timeout_seconds: float | None = None

    def backoff(self, index: int) -> float:
        base = max(0.0, self.backoff_base_seconds)
        return float(min(max(0.0, self.backoff_max_seconds), base * (2**index)))

    @classmethod
    def strict_single_model(cls, max_attempts: int = 20, **kwargs) -> RetryPolicy:
        return cls(max_same_model_attempts=max_attempts, fallback_enabled=False, **kwargs)


@dataclass(frozen=True)
class GenerationDefaults:
    temperature: float = 0.5
    max_tokens: int = 1024
    attempt_timeout_seconds: float = 30.0


class CompletionOrchestrator:
    def __init__(
        self,
        client: CompletionBackend,
        registry: ModelRegistry,
        quota_guard: QuotaGuard,
        policy: RetryPolicy | None = None,
        *,
        defaults: GenerationDefaults | None = None,
        fallback_log: FallbackLog | None = None,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.client = client
        self.registry = registry
        self.quota_guard = quota_guard
        self.policy = policy or RetryPolicy()
        self.defaults = defaults or GenerationDefaults()
        self.fallback_log = fallback_log or FallbackLog()
        self._sleep: Callable[[float], Awaitable[None]] = sleeper or asyncio.sleep
        self._clock: Callable[[], float] = clock or time.monotonic

    def candidates(self, preferred_model: str | None = None) -> list[str]:
        ids = self.registry.candidate_ids(preferred_model)
        if not self.policy.fallback_enabled:
            return ids[:1]
        return ids

    def _elapsed_ms(self, started: float) -> int:
        return int(max(0.0, self._clock() - started) * 1000)

    def _timeout_error(
        self, started: float, attempt_count: int, last_error: CompletionError | None
    ) -> RequestTimeoutError:
        elapsed_ms = self._elapsed_ms(started)
        message = f"Request timed out after {elapsed_ms}ms ({attempt_count} attempts)."
        if last_error is not None:
            message += f" Last error: {last_error.message}"
        log.error("completion_request_timeout", elapsed_ms=elapsed_ms, attempt_count=attempt_count)
        return RequestTimeoutError(message, last_error=last_error, attempt_count=attempt_count)

    def _remaining(self, deadline: float | None) -> float | None:
        if deadline is None:
            return None
        return deadline - self._clock()

    async def _pause(
        self,
        seconds: float,
        *,
        deadline: float | None,
        started: float,
        attempt_count: int,
        last_error: CompletionError | None,
    ) -> None:
        if seconds <= 0:
            return
        remaining = self._remaining(deadline)
        if remaining is not None and remaining <= seconds:
            raise self._timeout_error(started, attempt_count, last_error)
        await self._sleep(seconds)

    def _retry_delay(self, error: CompletionError, attempt_index: int) -> float:
        delay = self.policy.backoff(attempt_index)
        if isinstance(error, RateLimitError) and error.retry_after_seconds is not None:
            delay = float(min(error.retry_after_seconds, max(self.policy.backoff_max_seconds, 0.0)))
        return delay

    async def invoke(
        self,
        request: CompletionRequest,
        *,
        session_id: str | None = None,
        channel: str | None = None,
    ) -> CompletionResult:
        if not self.client.configured:
            raise ConfigurationError("AI service not configured: OPENROUTER_API_KEY is missing.")
        if not request.messages:
            raise InvalidRequestError("No messages provided.")

        started = self._clock()
        policy = self.policy
        deadline = started + policy.request_timeout_seconds if policy.request_timeout_seconds else None
        temperature = request.temperature if request.temperature is not None else self.defaults.temperature
        max_tokens = request.max_tokens if request.max_tokens is not None else self.defaults.max_tokens
        attempt_timeout = request.timeout_seconds or self.defaults.attempt_timeout_seconds

        candidates = self.candidates(request.preferred_model)
        if not candidates:
            log.error("no_models_available", preferred_model=request.preferred_model)
            raise NoModelsAvailableError(
                "All models are currently unavailable (cooling down after quota or auth failures). "
                "Please try again shortly."
            )

        log.debug("completion_candidates", candidates=candidates, session_id=session_id)
        attempt_count = 0
        attempted: list[str] = []
        last_error: CompletionError | None = None
        previous_retryable = False

        for candidate_index, model in enumerate(candidates):
            if candidate_index > 0 and self.quota_guard.is_blocked(model):
                log.info("candidate_skipped_blocked", model=model, candidate_index=candidate_index)
                continue
            if candidate_index > 0 and previous_retryable and policy.inter_model_backoff:
                await self._pause(
                    policy.backoff(candidate_index - 1),
                    deadline=deadline,
                    started=started,
                    attempt_count=attempt_count,
                    last_error=last_error,
                )

            attempted.append(model)
            previous_retryable = False
            rate_limits = 0

            for attempt_index in range(max(1, policy.max_same_model_attempts)):
                remaining = self._remaining(deadline)
                if remaining is not None and remaining <= 0:
                    raise self._timeout_error(started, attempt_count, last_error)
                timeout_seconds = attempt_timeout if remaining is None else min(attempt_timeout, remaining)

                attempt_count += 1
                try:
                    completion = await self.client.complete(
                        model,
                        request.messages,
                        temperature=temperature,
                        max_tokens=max_tokens,
                        timeout_seconds=timeout_seconds,
                    )
                except CompletionError as e:
                    last_error = e
                    completion_attempts_total.labels(model=model, outcome=e.kind.value).inc()
                    log.warning(
                        "completion_attempt_failed",
                        model=model,
                        attempt=attempt_index + 1,
                        attempt_count=attempt_count,
                        candidate_index=candidate_index,
                        kind=e.kind.value,
                        retryable=e.retryable,
                        status_code=e.status_code,
                        error=e.message,
                        session_id=session_id,
                    )

                    if not e.retryable:
                        self.quota_guard.report_failure(
                            model, is_quota_or_auth(e.kind), reason=f"{e.kind.value}: {e.message}"
                        )
                        previous_retryable = False
                        break

                    if e.kind is FailureKind.RATE_LIMIT:
                        rate_limits += 1
                        if policy.block_on_repeated_rate_limit and rate_limits >= policy.rate_limit_block_threshold:
                            self.quota_guard.report_failure(
                                model, True, reason=f"repeated rate limit ({rate_limits}x): {e.message}"
                            )
                            previous_retryable = False
                            break

                    previous_retryable = True
                    if attempt_index + 1 >= policy.max_same_model_attempts:
                        log.info("model_retries_exhausted", model=model, attempts=attempt_index + 1)
                        break

                    delay = self._retry_delay(e, attempt_index)
                    log.info("completion_retry_scheduled", model=model, attempt=attempt_index + 1, delay_seconds=delay)
                    await self._pause(
                        delay, deadline=deadline, started=started, attempt_count=attempt_count, last_error=last_error
                    )
                    continue

                completion_attempts_total.labels(model=model, outcome="success").inc()
                fallback_used = candidate_index > 0
                fallback_reason = None
                if fallback_used:
                    last_kind = last_error.kind if last_error else None
                    reason = reason_for(last_kind, last_error.message if last_error else "")
                    fallback_reason = reason.value
                    self.fallback_log.record(
                        primary_model=candidates[0],
                        fallback_model=model,
                        reason=reason,
                        error_details=last_error.message if last_error else None,
                        session_id=session_id,
                        channel=channel,
                    )
                result = CompletionResult(
                    content=completion.content,
                    model_used=model,
                    fallback_used=fallback_used,
                    attempt_count=attempt_count,
                    processing_time_ms=self._elapsed_ms(started),
                    tokens_used=completion.tokens_used,
                    fallback_reason=fallback_reason,
                    models_tried=attempted,
                )
                log.info(
                    "completion_succeeded",
                    model=model,
                    fallback_used=fallback_used,
                    attempt_count=attempt_count,
                    processing_time_ms=result.processing_time_ms,
                    session_id=session_id,
                )
                return result

        if not attempted:
            log.error("no_models_available", candidates=candidates)
            raise NoModelsAvailableError(
                "All models are currently unavailable (cooling down after quota or auth failures). "
                "Please try again shortly."
            )

        last_message = last_error.message if last_error is not None else "unknown error"
        log.error(
            "completion_exhausted",
            models=attempted,
            attempt_count=attempt_count,
            last_error=last_message,
            session_id=session_id,
        )
        raise ModelsExhaustedError(
            f"All {len(attempted)} model(s) attempted and failed after {attempt_count} attempts. "
            f"Last error: {last_message}",
            last_error=last_error,
            attempt_count=attempt_count,
        )
