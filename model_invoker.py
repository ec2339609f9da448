#!/usr/bin/env python3
"""
RESILIENT MODEL INVOKER

Runs a prompt against an ordered list of candidate models. Transient failures
are retried on the same model with a growing delay; quota and availability
failures move on to the next model; authentication failures stop everything.
"""

import json
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Any, List, Optional, Sequence

from review_errors import ExhaustedFailure, InvocationCancelled

logger = logging.getLogger('ai_pr_review')

DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY = 3.0

# Matching rules, checked in order by classify()
AUTH_STATUS_CODES = {401, 403}
AUTH_MARKERS = (
    'authentication',
    'api key not valid',
    'api_key_invalid',
    'invalid api key',
    'incorrect api key',
    'invalid x-api-key',
)
MODEL_NOT_FOUND_MARKERS = (
    'not_found_error',
    'model_not_found',
    'model not found',
    'is not found',
    'does not exist',
)
QUOTA_MARKERS = ('quota', 'rate limit', 'rate_limit', 'resource_exhausted')


class ErrorKind(Enum):
    """Classification of a failed generation attempt."""
    AUTH = "auth"
    MODEL_UNAVAILABLE = "model_unavailable"
    QUOTA_EXCEEDED = "quota_exceeded"
    TRANSIENT = "transient"

class Decision(Enum):
    """What the invoker does after a failed attempt."""
    RETRY = "retry"
    NEXT_CANDIDATE = "next_candidate"
    ABORT = "abort"
    EXHAUST = "exhaust"

@dataclass
class Usage:
    """Token accounting reported by a provider."""
    input_units: int
    output_units: int

@dataclass
class Generation:
    """Successful output of a single generation call."""
    text: str
    usage: Optional[Usage] = None

@dataclass
class InvocationAttempt:
    """One generation call against one candidate."""
    model: str
    attempt: int
    elapsed: float
    kind: Optional[ErrorKind] = None
    error: Optional[Exception] = None
    delay: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def as_event(self) -> Dict[str, Any]:
        return {
            'model': self.model,
            'attempt': self.attempt,
            'outcome': 'success' if self.succeeded else self.kind.value,
            'elapsed': round(self.elapsed, 3),
            'delay': self.delay,
        }

@dataclass
class InvocationResult:
    """The first successful answer of an invocation."""
    text: str
    model_used: str
    usage: Optional[Usage] = None
    attempts: List[InvocationAttempt] = field(default_factory=list)


def build_candidate_list(requested_model: Optional[str], fallback_models: Sequence[str]) -> List[str]:
    """Requested model first, then the fallbacks, keeping first occurrences only."""
    candidates: List[str] = []
    for model in [requested_model, *fallback_models]:
        if model and model not in candidates:
            candidates.append(model)
    return candidates

def _status_of(error: Exception) -> Optional[int]:
    for attr in ('status', 'status_code'):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None

def classify(error: Exception) -> ErrorKind:
    """Classify a failed attempt from its status code and message.

    The first matching rule wins: auth, then model availability, then quota.
    Anything unrecognised is treated as transient.
    """
    status = _status_of(error)
    message = getattr(error, 'message', None)
    if not isinstance(message, str):
        message = str(error)
    message = message.lower()

    if status in AUTH_STATUS_CODES or any(marker in message for marker in AUTH_MARKERS):
        return ErrorKind.AUTH
    if status == 404 or any(marker in message for marker in MODEL_NOT_FOUND_MARKERS):
        return ErrorKind.MODEL_UNAVAILABLE
    if status == 429 or any(marker in message for marker in QUOTA_MARKERS):
        return ErrorKind.QUOTA_EXCEEDED
    return ErrorKind.TRANSIENT

def decide(kind: ErrorKind, attempt: int, max_attempts: int, is_last_candidate: bool) -> Decision:
    """Map a classified failure to the next step of the invocation."""
    if kind is ErrorKind.AUTH:
        return Decision.ABORT
    if kind is ErrorKind.TRANSIENT and attempt < max_attempts:
        return Decision.RETRY
    if is_last_candidate:
        return Decision.EXHAUST
    return Decision.NEXT_CANDIDATE

def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay before retrying after the given attempt: 1x, 2x, 3x ... base."""
    return attempt * base_delay


class ModelInvoker:
    """Runs a prompt against candidate models until one of them answers.

    The invoker keeps no per-call state, so a single instance can serve
    concurrent invocations from separate threads.
    """

    def __init__(self, generate: Callable[[str, str], Generation],
                 fallback_models: Sequence[str] = (),
                 max_retries_per_model: int = DEFAULT_MAX_RETRIES,
                 base_delay: float = DEFAULT_BASE_DELAY,
                 sleep: Callable[[float], None] = time.sleep,
                 on_attempt: Optional[Callable[[InvocationAttempt], None]] = None):
        if max_retries_per_model < 0:
            raise ValueError("max_retries_per_model must be >= 0")
        if not math.isfinite(base_delay) or base_delay < 0:
            raise ValueError("base_delay must be a finite number >= 0")
        self.generate = generate
        self.fallback_models = tuple(fallback_models)
        self.max_retries_per_model = max_retries_per_model
        self.base_delay = base_delay
        self.sleep = sleep
        self.on_attempt = on_attempt

    def candidates(self, requested_model: Optional[str]) -> List[str]:
        return build_candidate_list(requested_model, self.fallback_models)

    def invoke(self, requested_model: Optional[str], prompt: str,
               max_retries_per_model: Optional[int] = None,
               cancel_event: Optional[threading.Event] = None,
               timeout: Optional[float] = None) -> InvocationResult:
        """Return the first successful generation across all candidates.

        Raises the provider error unchanged on authentication failure,
        ExhaustedFailure once the last candidate gives up, and
        InvocationCancelled if cancel_event is set or timeout passes before
        an attempt starts.
        """
        retries = self.max_retries_per_model if max_retries_per_model is None else max_retries_per_model
        if retries < 0:
            raise ValueError("max_retries_per_model must be >= 0")
        max_attempts = retries + 1

        candidates = self.candidates(requested_model)
        if not candidates:
            raise ValueError("No candidate models to try")

        deadline = time.monotonic() + timeout if timeout is not None else None
        attempts: List[InvocationAttempt] = []

        for index, model in enumerate(candidates):
            is_last = index == len(candidates) - 1
            logger.info(f"🔄 Trying model: {model}")

            for attempt in range(1, max_attempts + 1):
                self._check_cancelled(model, attempts, cancel_event, deadline)

                started = time.monotonic()
                try:
                    generation = self.generate(model, prompt)
                except Exception as e:
                    error = e
                else:
                    record = InvocationAttempt(model, attempt, time.monotonic() - started)
                    self._record(attempts, record)
                    logger.info(f"✅ Model {model} answered (attempt {attempt}/{max_attempts})")
                    return InvocationResult(
                        text=generation.text,
                        model_used=model,
                        usage=generation.usage,
                        attempts=attempts
                    )

                kind = classify(error)
                decision = decide(kind, attempt, max_attempts, is_last)
                delay = backoff_delay(attempt, self.base_delay) if decision is Decision.RETRY else 0.0
                record = InvocationAttempt(model, attempt, time.monotonic() - started, kind, error, delay)
                self._record(attempts, record)
                logger.warning(
                    f"❌ Model {model} failed ({kind.value}, attempt {attempt}/{max_attempts}): {error}"
                )

                if decision is Decision.ABORT:
                    logger.error(f"🔑 Authentication rejected while using {model}; not trying other models")
                    raise error
                if decision is Decision.EXHAUST:
                    raise ExhaustedFailure(error, model, len(attempts)) from error
                if decision is Decision.NEXT_CANDIDATE:
                    logger.warning(f"⚠️  Giving up on {model}, falling back to the next model")
                    break

                logger.info(f"⏳ Retrying {model} in {delay:g}s")
                self.sleep(delay)

    def _check_cancelled(self, model: str, attempts: List[InvocationAttempt],
                         cancel_event: Optional[threading.Event],
                         deadline: Optional[float]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise InvocationCancelled(model, len(attempts))
        if deadline is not None and time.monotonic() >= deadline:
            raise InvocationCancelled(model, len(attempts), reason="timed out")

    def _record(self, attempts: List[InvocationAttempt], record: InvocationAttempt) -> None:
        attempts.append(record)
        logger.debug(f"Model attempt: {json.dumps(record.as_event())}")
        if self.on_attempt is None:
            return
        try:
            self.on_attempt(record)
        except Exception as e:
            logger.warning(f"Attempt observer failed: {e}")
