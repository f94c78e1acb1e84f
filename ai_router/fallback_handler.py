"""
Fallback and circuit-breaker handling

The FallbackHandler executes a routing decision: it calls the selected model
under a timeout, validates the answer, and walks the fallback chain with
exponential backoff when a model fails. Failures feed a per-model circuit
breaker that temporarily takes unhealthy models out of rotation.
"""

import asyncio
import logging
import random
import re
import threading
import time
from collections import deque
from enum import Enum
from typing import Dict, Any, List, Optional, Callable, Awaitable, Pattern, Tuple

from ai_router.config import FallbackConfig
from ai_router.exceptions import (
    AllModelsFailed,
    DeadlineExceeded,
    ExecutionError,
    ModelUnavailable,
    ResponseValidationFailed,
)
from ai_router.schemas import (
    AIRequest,
    AIResponse,
    FailureKind,
    InvocationParams,
    ModelError,
    RoutingDecision,
    TaskType,
)

logger = logging.getLogger(__name__)

SUCCESS_RETENTION_SECONDS = 10 * 60
RECENT_FAILURE_SECONDS = 60 * 60
DEGRADED_RECENT_FAILURES = 2
RETRY_COUNTER_TTL_SECONDS = 60 * 60

CLASSIFICATION_PATTERNS: List[Pattern] = [
    re.compile(r"cctp|ccp|bpu|\brc\b"),
    re.compile(r"type|cat[ée]gor|classification|class"),
    re.compile(r"document.*de.*type"),
]
EXTRACTION_STRUCTURE = re.compile(r"•|-|\n|\d+\.|:")
MIN_EXTRACTION_LENGTH = 50
NUMBER_PATTERN = re.compile(r"\d+")
CURRENCY_PATTERN = re.compile(r"€|\$|£|euros?|dollars?", re.IGNORECASE)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"


class CircuitBreaker:
    """
    Per-model circuit breaker over a trailing failure window

    A model is OPEN while the number of failures inside the trailing window
    exceeds its threshold, and closes again once enough failures age out of
    the window. There is no half-open probe: recovery is purely time based.
    Failures are kept in a fixed-capacity ring buffer per model.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        window_seconds: float = 300.0,
        history_size: int = 100,
        clock: Callable[[], float] = time.time
    ):
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.history_size = history_size
        self.clock = clock
        self._errors: Dict[str, deque] = {}
        self._overrides: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()

    def configure(
        self,
        model: str,
        failure_threshold: Optional[int] = None,
        window_seconds: Optional[float] = None
    ):
        """Override the threshold and/or window for one model"""
        with self._lock:
            threshold, window = self._settings(model)
            if failure_threshold is not None:
                threshold = failure_threshold
            if window_seconds is not None:
                window = window_seconds
            self._overrides[model] = (threshold, window)
        logger.info(f"Circuit breaker for {model}: threshold={threshold}, window={window}s")

    def _settings(self, model: str) -> Tuple[int, float]:
        return self._overrides.get(model, (self.failure_threshold, self.window_seconds))

    def record_failure(self, error: ModelError) -> CircuitState:
        with self._lock:
            history = self._errors.setdefault(error.model, deque(maxlen=self.history_size))
            was_open = self._is_open_locked(error.model)
            history.append(error)
            now_open = self._is_open_locked(error.model)
        if now_open and not was_open:
            logger.error(f"Circuit opened for model {error.model} after repeated failures")
        return CircuitState.OPEN if now_open else CircuitState.CLOSED

    def record_success(self, model: str):
        """Forget failures that are too old to matter"""
        cutoff = self.clock() - max(SUCCESS_RETENTION_SECONDS, self._settings(model)[1])
        with self._lock:
            history = self._errors.get(model)
            if history and history[0].timestamp < cutoff:
                self._errors[model] = deque(
                    (e for e in history if e.timestamp >= cutoff), maxlen=self.history_size
                )

    def recent_failures(self, model: str, window_seconds: Optional[float] = None) -> int:
        window = self._settings(model)[1] if window_seconds is None else window_seconds
        cutoff = self.clock() - window
        with self._lock:
            return sum(1 for e in self._errors.get(model, ()) if e.timestamp >= cutoff)

    def _is_open_locked(self, model: str) -> bool:
        threshold, window = self._settings(model)
        cutoff = self.clock() - window
        recent = sum(1 for e in self._errors.get(model, ()) if e.timestamp >= cutoff)
        return recent > threshold

    def state(self, model: str) -> CircuitState:
        with self._lock:
            return CircuitState.OPEN if self._is_open_locked(model) else CircuitState.CLOSED

    def is_open(self, model: str) -> bool:
        return self.state(model) == CircuitState.OPEN

    def open_circuits(self) -> List[str]:
        with self._lock:
            return [model for model in self._errors if self._is_open_locked(model)]

    def errors(self, model: str) -> List[ModelError]:
        with self._lock:
            return list(self._errors.get(model, ()))

    def models(self) -> List[str]:
        with self._lock:
            return list(self._errors.keys())

    def reset(self, model: Optional[str] = None):
        with self._lock:
            if model is None:
                self._errors.clear()
            else:
                self._errors.pop(model, None)

    def prune(self, max_age_seconds: float) -> int:
        """Drop failures older than `max_age_seconds`; returns how many were removed"""
        cutoff = self.clock() - max_age_seconds
        removed = 0
        with self._lock:
            for model in list(self._errors):
                history = self._errors[model]
                kept = [e for e in history if e.timestamp >= cutoff]
                removed += len(history) - len(kept)
                if kept:
                    self._errors[model] = deque(kept, maxlen=self.history_size)
                else:
                    del self._errors[model]
        return removed


class ResponseValidator:
    """Shape and quality checks applied before a backend answer is accepted"""

    def __init__(
        self,
        min_length: int = 10,
        min_confidence: float = 0.3,
        classification_patterns: Optional[List[Pattern]] = None
    ):
        self.min_length = min_length
        self.min_confidence = min_confidence
        self.classification_patterns = classification_patterns or CLASSIFICATION_PATTERNS

    def validate(self, response: AIResponse, task_type: TaskType):
        """
        Raises:
            ResponseValidationFailed: With the first failed check as reason
        """
        model = response.model
        content = response.content or ""

        if not content.strip():
            raise ResponseValidationFailed(model, "empty content")
        if len(content) < self.min_length:
            raise ResponseValidationFailed(model, f"content shorter than {self.min_length} characters")
        if response.confidence < self.min_confidence:
            raise ResponseValidationFailed(
                model, f"confidence {response.confidence:.2f} below {self.min_confidence:.2f}"
            )

        if task_type == TaskType.CLASSIFY:
            lowered = content.lower()
            if not any(p.search(lowered) for p in self.classification_patterns):
                raise ResponseValidationFailed(model, "no known category in classification")
        elif task_type == TaskType.EXTRACT:
            if not EXTRACTION_STRUCTURE.search(content) or len(content) <= MIN_EXTRACTION_LENGTH:
                raise ResponseValidationFailed(model, "extraction lacks list structure")
        elif task_type == TaskType.CALCULATE:
            if not (NUMBER_PATTERN.search(content) or CURRENCY_PATTERN.search(content)):
                raise ResponseValidationFailed(model, "calculation has no numeric or currency value")


ExecutorCallable = Callable[[str, AIRequest, InvocationParams], Awaitable[AIResponse]]


class FallbackHandler:
    """
    Executes a routing decision with timeouts, validation and fallbacks

    Attempts are sequential. Models with an open circuit are skipped without
    using an attempt or a backoff slot.
    """

    def __init__(
        self,
        config: Optional[FallbackConfig] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        validator: Optional[ResponseValidator] = None,
        clock: Callable[[], float] = time.time
    ):
        self.config = config or FallbackConfig()
        self.clock = clock
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=self.config.failure_threshold,
            window_seconds=self.config.failure_window_seconds,
            history_size=self.config.error_history_size,
            clock=clock
        )
        self.validator = validator or ResponseValidator(
            min_length=self.config.min_response_length,
            min_confidence=self.config.min_confidence
        )
        self._retry_counters: Dict[str, Tuple[int, float]] = {}
        self._counter_lock = threading.Lock()

    async def execute_with_fallback(
        self,
        request: AIRequest,
        decision: RoutingDecision,
        executor: ExecutorCallable,
        deadline: Optional[float] = None
    ) -> AIResponse:
        """
        Execute a request on the selected model, falling back along the chain

        Args:
            request: Request to execute
            decision: Routing decision (selected model + fallback chain)
            executor: async (model, request, params) -> AIResponse
            deadline: Absolute event-loop time after which no new attempt starts

        Returns:
            First valid response

        Raises:
            AllModelsFailed: Every model in the chain was attempted or skipped
            DeadlineExceeded: The deadline passed before a model answered
        """
        if self.config.enable_fallback:
            models_to_try = list(dict.fromkeys(decision.models_to_try))
        else:
            models_to_try = [decision.selected_model]

        loop = asyncio.get_running_loop()
        attempted: List[str] = []
        errors: List[ModelError] = []
        attempt_index = 0

        for model in models_to_try:
            if self.circuit_breaker.is_open(model):
                logger.warning(f"Fallback: skipping model {model}, circuit open")
                errors.append(self._model_error(model, request, "circuit open", FailureKind.UNAVAILABLE))
                attempted.append(model)
                continue

            if attempt_index > 0:
                await self._wait_before_retry(attempt_index - 1, deadline, loop, attempted)
            timeout = self._attempt_timeout(deadline, loop, attempted)
            attempt_index += 1
            attempted.append(model)

            started = loop.time()
            try:
                response = await asyncio.wait_for(
                    executor(model, request, decision.invocation_params), timeout
                )
                if not response.model:
                    response.model = model
                if not response.processing_time_ms:
                    response.processing_time_ms = (loop.time() - started) * 1000
                self.validator.validate(response, request.context.task_type)
            except asyncio.TimeoutError:
                error = self._record_failure(
                    model, request, f"Timeout after {timeout * 1000:.0f}ms", FailureKind.TIMEOUT
                )
            except ResponseValidationFailed as e:
                error = self._record_failure(model, request, e.reason, FailureKind.VALIDATION)
            except ModelUnavailable as e:
                error = self._record_failure(model, request, e.message, FailureKind.UNAVAILABLE)
            except Exception as e:
                error = self._record_failure(
                    model, request, ExecutionError(model, e).message, FailureKind.EXECUTION
                )
            else:
                self._record_success(model, request)
                response.metadata.setdefault("fallback_used", False)
                if model != decision.selected_model:
                    response.metadata["fallback_used"] = True
                    response.metadata["fallback_reason"] = (
                        f"Primary model {decision.selected_model} failed ({errors[0].kind.value}: {errors[0].error})"
                    )
                    logger.info(f"Fallback: {model} answered after {decision.selected_model} failed")
                return response

            errors.append(error)

        logger.error(f"All models failed: {', '.join(attempted)}")
        raise AllModelsFailed(attempted, errors)

    def _attempt_timeout(self, deadline: Optional[float], loop, attempted: List[str]) -> float:
        timeout = self.config.timeout_ms / 1000
        if deadline is not None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise DeadlineExceeded(attempted)
            timeout = min(timeout, remaining)
        return timeout

    async def _wait_before_retry(self, attempt_index: int, deadline: Optional[float], loop, attempted: List[str]):
        """Exponential backoff with jitter, never sleeping past the deadline"""
        delay_ms = self.config.backoff_base_ms * (2 ** attempt_index)
        if self.config.backoff_jitter_ms:
            delay_ms += random.uniform(0, self.config.backoff_jitter_ms)
        delay = delay_ms / 1000
        if deadline is not None and loop.time() + delay >= deadline:
            raise DeadlineExceeded(attempted)
        if delay > 0:
            await asyncio.sleep(delay)

    # ================== Failure bookkeeping ==================

    def _model_error(self, model: str, request: AIRequest, message: str, kind: FailureKind) -> ModelError:
        return ModelError(
            model=model,
            error=message,
            kind=kind,
            timestamp=self.clock(),
            retry_count=self._get_retry_count(self._retry_key(model, request)),
            request_snapshot={
                "content": request.content[:200],
                "task_type": request.context.task_type.value,
                "complexity": request.context.complexity,
            }
        )

    def _record_failure(self, model: str, request: AIRequest, message: str, kind: FailureKind) -> ModelError:
        error = self._model_error(model, request, message, kind)
        self.circuit_breaker.record_failure(error)
        self._increment_retry_counter(self._retry_key(model, request))
        logger.warning(f"Fallback: model {model} failed ({kind.value}): {message} [retry {error.retry_count}]")
        return error

    def _record_success(self, model: str, request: AIRequest):
        self.circuit_breaker.record_success(model)
        with self._counter_lock:
            self._retry_counters.pop(self._retry_key(model, request), None)

    def _retry_key(self, model: str, request: AIRequest) -> str:
        return f"{model}-{request.content[:50]}"

    def _get_retry_count(self, key: str) -> int:
        with self._counter_lock:
            return self._retry_counters.get(key, (0, 0.0))[0]

    def _increment_retry_counter(self, key: str):
        with self._counter_lock:
            count = self._retry_counters.get(key, (0, 0.0))[0]
            self._retry_counters[key] = (count + 1, self.clock())

    # ================== Health & maintenance ==================

    def blocked_models(self) -> List[str]:
        return self.circuit_breaker.open_circuits()

    def failure_stats(self) -> Dict[str, Dict[str, Any]]:
        """Failure statistics per model"""
        stats = {}
        for model in self.circuit_breaker.models():
            errors = self.circuit_breaker.errors(model)
            stats[model] = {
                "total_failures": len(errors),
                "recent_failures": self.circuit_breaker.recent_failures(model, RECENT_FAILURE_SECONDS),
                "is_blocked": self.circuit_breaker.is_open(model),
                "last_failure": errors[-1].timestamp if errors else None,
                "last_error": errors[-1].error if errors else None,
            }
        return stats

    def model_health(self) -> Dict[str, str]:
        health = {}
        for model, model_stats in self.failure_stats().items():
            if model_stats["is_blocked"]:
                health[model] = "unhealthy"
            elif model_stats["recent_failures"] > DEGRADED_RECENT_FAILURES:
                health[model] = "degraded"
            else:
                health[model] = "healthy"
        return health

    def reset_model(self, model: str):
        self.circuit_breaker.reset(model)
        with self._counter_lock:
            for key in [k for k in self._retry_counters if k.startswith(f"{model}-")]:
                del self._retry_counters[key]
        logger.info(f"Reset failure history for model {model}")

    def reset(self):
        self.circuit_breaker.reset()
        with self._counter_lock:
            self._retry_counters.clear()

    def cleanup(self, max_age_seconds: float = 24 * 60 * 60) -> int:
        """Drop old failures and idle retry counters"""
        removed = self.circuit_breaker.prune(max_age_seconds)
        cutoff = self.clock() - RETRY_COUNTER_TTL_SECONDS
        with self._counter_lock:
            for key in [k for k, (_, touched) in self._retry_counters.items() if touched < cutoff]:
                del self._retry_counters[key]
        return removed


__all__ = [
    "CircuitState",
    "CircuitBreaker",
    "ResponseValidator",
    "FallbackHandler",
]
