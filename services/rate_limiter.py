# services/rate_limiter.py
"""Token budget shared by every caller of the assistant service"""
import asyncio
import logging
import math
import re
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from config import settings
from core.domain import RateBudget
from core.exceptions import AssistantTransientError

logger = logging.getLogger(settings.LOGGER_NAME)

T = TypeVar("T")

_ALPHA = re.compile(r"[a-zA-Z]")
_NUMERIC = re.compile(r"[0-9]")
_SPECIAL = re.compile(r"[^a-zA-Z0-9\s]")
_WHITESPACE = re.compile(r"\s")


def estimate_tokens(text: str) -> int:
    """
    Approximate token count without a tokenizer.

    Letters ~4 chars/token, digits ~2.5, punctuation and other symbols ~2,
    whitespace ~6.
    """
    if not text:
        return 0
    alpha_tokens = len(_ALPHA.findall(text)) / 4
    numeric_tokens = len(_NUMERIC.findall(text)) / 2.5
    special_tokens = len(_SPECIAL.findall(text)) / 2
    whitespace_tokens = len(_WHITESPACE.findall(text)) / 6
    return math.ceil(alpha_tokens + numeric_tokens + special_tokens + whitespace_tokens)


def estimate_tokens_for_bytes(content: bytes) -> int:
    """Estimate for uploaded file content; binary payloads count ~4 bytes/token."""
    if not content:
        return 0
    try:
        return estimate_tokens(content.decode("utf-8"))
    except UnicodeDecodeError:
        return math.ceil(len(content) / 4)


class TokenRateLimiter:
    """
    Rolling one-minute token budget for a quota-limited external service.

    Construct once per process and hand the same instance to every caller:
    ingestion and querying draw from one budget. All budget mutations happen
    under a single asyncio lock; waiting happens outside it.

    The slice a single reservation may take shrinks with the number of
    reservations in flight, so a burst of concurrent callers cannot jointly
    overshoot the quota.
    """

    def __init__(
        self,
        tokens_per_minute: int,
        safety_margin: float = 0.95,
        window_seconds: float = 60.0,
        backoff_base: float = 1.0,
        backoff_max: float = 128.0,
        max_retries: int = 3,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if tokens_per_minute <= 0:
            raise ValueError("tokens_per_minute must be positive")
        if not 0 < safety_margin <= 1:
            raise ValueError("safety_margin must be in (0, 1]")
        self.tokens_per_minute = tokens_per_minute
        self.safety_margin = safety_margin
        self.window_seconds = window_seconds
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.max_retries = max_retries
        self._clock = clock
        self._sleep = sleep
        self._budget = RateBudget(window_start_time=clock())
        self._lock = asyncio.Lock()

    @property
    def budget(self) -> RateBudget:
        return self._budget

    @property
    def safe_limit(self) -> int:
        return int(self.tokens_per_minute * self.safety_margin)

    def backoff(self, attempt: int) -> float:
        """Exponential backoff in seconds: base * 2^attempt, capped."""
        return min(self.backoff_base * (2 ** attempt), self.backoff_max)

    # ============ internals (call with the lock held) ============

    def _roll_window(self, now: float) -> None:
        if now - self._budget.window_start_time >= self.window_seconds:
            if self._budget.tokens_consumed_in_window > 1000:
                logger.debug(f"[RATE LIMIT] Reset: {self._budget.tokens_consumed_in_window} tokens/min")
            self._budget.tokens_consumed_in_window = 0
            self._budget.window_start_time = now

    def _time_to_reset(self, now: float) -> float:
        return max(0.0, self.window_seconds - (now - self._budget.window_start_time))

    def _adjusted_limit(self) -> int:
        return math.floor(self.safe_limit / max(1, self._budget.concurrent_reservations))

    def _admit(self, tokens: int, waited: bool) -> bool:
        consumed = self._budget.tokens_consumed_in_window
        if consumed + tokens <= self._adjusted_limit():
            return True
        # A caller that already sat out a wait only has to fit the whole budget
        if waited and consumed + tokens <= self.safe_limit:
            return True
        # Larger than the whole budget: it can never fit, let it run alone
        if consumed == 0 and tokens > self.safe_limit:
            logger.warning(
                f"[RATE LIMIT] Request for {tokens} tokens exceeds the whole budget "
                f"({self.safe_limit}); admitting into an empty window"
            )
            return True
        return False

    # ============ public API ============

    async def reserve(self, estimated_tokens: int) -> None:
        """Wait until `estimated_tokens` fit in the budget, then consume them."""
        tokens = max(0, int(estimated_tokens))
        async with self._lock:
            self._budget.concurrent_reservations += 1
        try:
            waited = False
            while True:
                async with self._lock:
                    now = self._clock()
                    self._roll_window(now)
                    if self._admit(tokens, waited):
                        self._budget.tokens_consumed_in_window += tokens
                        if not waited and self._budget.consecutive_throttle_count > 0:
                            self._budget.consecutive_throttle_count -= 1
                        return
                    attempt = self._budget.consecutive_throttle_count
                    wait_seconds = max(self.backoff(attempt), self._time_to_reset(now))
                    self._budget.consecutive_throttle_count += 1
                    logger.info(
                        f"[RATE LIMIT] Limit reached ({self._budget.tokens_consumed_in_window}/"
                        f"{self.safe_limit}, {self._budget.concurrent_reservations} in flight): "
                        f"waiting {wait_seconds:.1f}s (attempt {attempt + 1})"
                    )
                await self._sleep(wait_seconds)
                waited = True
        finally:
            async with self._lock:
                self._budget.concurrent_reservations -= 1

    async def report_throttled(self, retry_after: Optional[float] = None) -> None:
        """
        Called after the external service answered with an explicit throttle.
        Waits max(retry_after, backoff) and then starts a fresh window.
        """
        async with self._lock:
            attempt = self._budget.consecutive_throttle_count
            wait_seconds = max(retry_after or 0.0, self.backoff(attempt))
            self._budget.consecutive_throttle_count += 1
        logger.warning(f"[RATE LIMIT] Throttled by service: waiting {wait_seconds:.1f}s (attempt {attempt + 1})")
        await self._sleep(wait_seconds)
        async with self._lock:
            self._budget.tokens_consumed_in_window = 0
            self._budget.window_start_time = self._clock()

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "unknown_operation",
        max_retries: Optional[int] = None,
    ) -> T:
        """
        Run `operation`, backing off and retrying on transient service errors.
        Any other error propagates immediately.
        """
        limit = self.max_retries if max_retries is None else max_retries
        retries = 0
        while True:
            try:
                return await operation()
            except AssistantTransientError as e:
                if retries >= limit:
                    logger.error(f"[RATE LIMIT] Max retries ({limit}) reached, failing {operation_name}: {e}")
                    raise
                retries += 1
                logger.warning(f"[RATE LIMIT] {operation_name} throttled, retrying (attempt {retries}/{limit})")
                await self.report_throttled(e.retry_after)

    def status(self) -> Dict[str, Any]:
        now = self._clock()
        used = self._budget.tokens_consumed_in_window
        return {
            "tokens_used": used,
            "token_limit": self.safe_limit,
            "usage_percentage": round(used / self.safe_limit * 100, 2),
            "concurrent_reservations": self._budget.concurrent_reservations,
            "consecutive_throttles": self._budget.consecutive_throttle_count,
            "seconds_to_reset": round(self._time_to_reset(now), 2),
        }
