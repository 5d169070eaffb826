"""Failure classification and backoff decisions."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from media_tasks.orchestrator.errors import (
    MediaTaskError,
    ProcessExitError,
    RateLimitError,
    StageTimeoutError,
)
from media_tasks.orchestrator.models import FailureClass, RetryStrategy

_DISK_SPACE_PATTERNS: tuple[str, ...] = (
    "no space left on device",
    "disk full",
    "enospc",
    "not enough space",
)
_UNSUPPORTED_FORMAT_PATTERNS: tuple[str, ...] = (
    "unsupported url",
    "unsupported codec",
    "unsupported format",
    "invalid data found when processing input",
    "requested format is not available",
    "no video formats found",
    "unknown format",
    "unknown encoder",
)
_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "capacity",
    "usage limit",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
)
_REMOTE_SERVER_PATTERNS: tuple[str, ...] = (
    "http error 500",
    "http error 502",
    "http error 503",
    "http error 504",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "connection reset",
    "connection refused",
    "connection aborted",
    "temporary failure",
    "temporarily unavailable",
    "network is unreachable",
    "could not resolve host",
    "incompleteread",
    "broken pipe",
)

QUALITY_LADDER: tuple[str, ...] = (
    "2160p",
    "1440p",
    "1080p",
    "720p",
    "480p",
    "360p",
    "240p",
    "144p",
)


@dataclass(slots=True)
class ProcessFailureClassification:
    """Failure class derived from a process exit code and stderr tail."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None


@dataclass(slots=True)
class ThroughputAdvice:
    """Hints for the next fetch attempt after sustained slow transfer."""

    observed_rate_bps: float
    reduce_parallel_chunks: bool = True
    downgrade_quality: bool = True


@dataclass(slots=True)
class RetryDecision:
    """What the scheduler does with a failed stage."""

    retryable: bool
    strategy: RetryStrategy
    delay_seconds: float
    failure_class: FailureClass
    reason: str
    chunk_size_hint: int | None = None
    quality_hint: str | None = None
    restart_from_zero: bool = False


class RetryPolicy:
    """Maps stage errors to retry strategies and delays."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        rate_limit_base_seconds: float = 60.0,
        rate_limit_max_seconds: float = 3_600.0,
        remote_server_step_seconds: float = 30.0,
        quota_delay_seconds: float = 3_600.0,
        transient_exit_codes: tuple[int, ...] = (137, 143),
    ) -> None:
        self.rate_limit_base_seconds = rate_limit_base_seconds
        self.rate_limit_max_seconds = rate_limit_max_seconds
        self.remote_server_step_seconds = remote_server_step_seconds
        self.quota_delay_seconds = quota_delay_seconds
        self.transient_exit_codes = transient_exit_codes

    def classify(
        self,
        error: BaseException,
        *,
        attempt: int = 1,
        advice: ThroughputAdvice | None = None,
        current_options: dict[str, Any] | None = None,
    ) -> RetryDecision:
        """Decide retryability, strategy and delay for the ``attempt``-th retry (1-based)."""

        failure_class = self.failure_class_of(error)
        reason = str(error) or type(error).__name__
        attempt = max(1, attempt)
        decision = self._decision_for(failure_class, error=error, attempt=attempt, reason=reason)
        if advice is not None and decision.retryable:
            hints = fetch_hints_after_advice(current_options or {}, advice)
            decision.chunk_size_hint = hints.get("parallel_chunks")
            decision.quality_hint = hints.get("quality")
        return decision

    def failure_class_of(self, error: BaseException) -> FailureClass:
        if isinstance(error, ProcessExitError):
            return classify_process_failure(
                exit_code=error.exit_code,
                stderr="\n".join(error.stderr_tail),
                transient_exit_codes=self.transient_exit_codes,
            ).failure_class
        if isinstance(error, StageTimeoutError):
            return FailureClass.TRANSIENT_IO
        if isinstance(error, MediaTaskError) and error.failure_class is not None:
            return error.failure_class
        if isinstance(error, TimeoutError | ConnectionError):
            return FailureClass.TRANSIENT_IO
        if isinstance(error, OSError) and error.errno == 28:  # noqa: PLR2004
            return FailureClass.DISK_SPACE
        return FailureClass.INTERNAL

    def _decision_for(
        self,
        failure_class: FailureClass,
        *,
        error: BaseException,
        attempt: int,
        reason: str,
    ) -> RetryDecision:
        if failure_class == FailureClass.TRANSIENT_IO:
            return RetryDecision(True, RetryStrategy.IMMEDIATE, 0.0, failure_class, reason)
        if failure_class == FailureClass.RATE_LIMITED:
            delay = min(
                self.rate_limit_max_seconds,
                self.rate_limit_base_seconds * (2 ** (attempt - 1)),
            )
            if isinstance(error, RateLimitError) and error.retry_after_seconds:
                delay = max(delay, error.retry_after_seconds)
            return RetryDecision(True, RetryStrategy.EXPONENTIAL, delay, failure_class, reason)
        if failure_class == FailureClass.REMOTE_SERVER:
            delay = self.remote_server_step_seconds * attempt
            return RetryDecision(True, RetryStrategy.LINEAR, delay, failure_class, reason)
        if failure_class == FailureClass.QUOTA:
            return RetryDecision(
                True,
                RetryStrategy.SCHEDULED,
                self.quota_delay_seconds,
                failure_class,
                reason,
            )
        if failure_class == FailureClass.CORRUPTION:
            return RetryDecision(
                True,
                RetryStrategy.RESTART_FROM_ZERO,
                0.0,
                failure_class,
                reason,
                restart_from_zero=True,
            )
        return RetryDecision(False, RetryStrategy.NONE, 0.0, failure_class, reason)


def classify_process_failure(
    *,
    exit_code: int,
    stderr: str,
    transient_exit_codes: tuple[int, ...],
) -> ProcessFailureClassification:
    """Classify a non-zero tool exit into a deterministic failure class."""

    haystack = stderr.lower()
    rules: tuple[tuple[str, tuple[str, ...], FailureClass], ...] = (
        ("disk_space", _DISK_SPACE_PATTERNS, FailureClass.DISK_SPACE),
        ("unsupported_format", _UNSUPPORTED_FORMAT_PATTERNS, FailureClass.UNSUPPORTED_FORMAT),
        ("rate_limited", _RATE_LIMIT_PATTERNS, FailureClass.RATE_LIMITED),
        ("quota", _QUOTA_PATTERNS, FailureClass.QUOTA),
        ("remote_server", _REMOTE_SERVER_PATTERNS, FailureClass.REMOTE_SERVER),
        ("transient", _TRANSIENT_PATTERNS, FailureClass.TRANSIENT_IO),
    )
    for rule, patterns, failure_class in rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ProcessFailureClassification(failure_class, rule, pattern)
    if exit_code in transient_exit_codes:
        return ProcessFailureClassification(FailureClass.TRANSIENT_IO, "transient_exit_code", None)
    return ProcessFailureClassification(FailureClass.PROCESS_FAILED, "fallback_non_retryable", None)


class ThroughputMonitor:
    """Detects a transfer rate that stays below ``min_rate_bps`` for a whole window.

    Any sample at or above the threshold restarts the window.
    """

    def __init__(
        self,
        *,
        min_rate_bps: float,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_rate_bps = min_rate_bps
        self.window_seconds = window_seconds
        self._clock = clock
        self._slow_since: float | None = None
        self._slow_samples: list[float] = []
        self._advice: ThroughputAdvice | None = None

    @property
    def advice(self) -> ThroughputAdvice | None:
        return self._advice

    def observe(self, rate_bps: float | None) -> ThroughputAdvice | None:
        """Feed one rate sample; returns advice the first time the window is all slow."""

        if rate_bps is None or self.min_rate_bps <= 0 or self._advice is not None:
            return None
        if rate_bps >= self.min_rate_bps:
            self._slow_since = None
            self._slow_samples.clear()
            return None
        now = self._clock()
        if self._slow_since is None:
            self._slow_since = now
        self._slow_samples.append(rate_bps)
        if now - self._slow_since < self.window_seconds:
            return None
        average = sum(self._slow_samples) / len(self._slow_samples)
        self._advice = ThroughputAdvice(observed_rate_bps=average)
        return self._advice


def fetch_hints_after_advice(
    options: dict[str, Any],
    advice: ThroughputAdvice,
) -> dict[str, Any]:
    """Fetch hints for the next attempt: fewer parallel chunks, one quality step down."""

    hints = dict(options.get("fetch_hints") or {})
    if advice.reduce_parallel_chunks:
        chunks = int(hints.get("parallel_chunks") or options.get("parallel_chunks") or 1)
        hints["parallel_chunks"] = max(1, chunks // 2)
    if advice.downgrade_quality:
        quality = str(hints.get("quality") or options.get("quality") or "best")
        hints["quality"] = downgrade_quality(quality)
    hints["slow_rate_bps"] = round(advice.observed_rate_bps, 1)
    return hints


def downgrade_quality(quality: str) -> str:
    """One step down the resolution ladder; ``best`` drops to 1080p."""

    if quality == "best":
        return "1080p"
    if quality in QUALITY_LADDER:
        index = QUALITY_LADDER.index(quality)
        return QUALITY_LADDER[min(index + 1, len(QUALITY_LADDER) - 1)]
    return quality


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
