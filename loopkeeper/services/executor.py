"""Cooldown-aware action loop."""

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loopkeeper.services.cooldown import (
    COOLDOWN_BUFFER_SECONDS,
    DOMAIN_TERMINAL_KINDS,
    ErrorKind,
    classify_error,
    parse_error,
)

logger = logging.getLogger(__name__)

DEFAULT_SUCCESS_DELAY = 1.0
DEFAULT_RETRY_DELAY = 5.0
RATE_LIMIT_DELAY_MS = 30_000

# Transient server errors
MAX_TRANSIENT_RETRIES = 5
INITIAL_BACKOFF = 1.0
MAX_BACKOFF = 10.0


@dataclass(frozen=True)
class ErrorDirective:
    """What the loop should do after a failed attempt.

    ``backoff`` asks the executor to pick the delay itself from its failure
    state and to give up after MAX_TRANSIENT_RETRIES consecutive failures.
    """

    continue_execution: bool
    retry_delay_ms: int | None = None
    backoff: bool = False

    @classmethod
    def stop(cls) -> "ErrorDirective":
        return cls(continue_execution=False)

    @classmethod
    def retry(cls, delay_ms: int | None = None) -> "ErrorDirective":
        return cls(continue_execution=True, retry_delay_ms=delay_ms)

    @classmethod
    def transient(cls) -> "ErrorDirective":
        return cls(continue_execution=True, backoff=True)


@dataclass
class CooldownState:
    """Scheduling state of one executor."""

    next_allowed_at: float = 0.0
    consecutive_failures: int = 0
    backoff: float = 0.0


@dataclass
class ExecutionReport:
    """Summary of a finished loop."""

    attempts: int = 0
    successes: int = 0
    failures: int = 0
    stopped_by: str = ""


ActionFn = Callable[[], Any]
SuccessHandler = Callable[[Any], None]
ErrorHandler = Callable[[Exception, int], "bool | ErrorDirective | dict | None"]


def _as_directive(value: Any) -> ErrorDirective:
    if isinstance(value, ErrorDirective):
        return value
    if isinstance(value, dict):
        return ErrorDirective(
            continue_execution=bool(value.get("continue")),
            retry_delay_ms=value.get("retry_delay_ms"),
        )
    if value is True:
        return ErrorDirective.retry()
    return ErrorDirective.stop()


def cooldown_from_result(result: Any) -> float:
    """Read ``cooldown.total_seconds`` from an action result, 0 if absent."""
    if not isinstance(result, dict):
        return 0.0
    cooldown = result.get("cooldown")
    if not isinstance(cooldown, dict):
        return 0.0
    return float(cooldown.get("total_seconds") or 0)


def default_error_policy(error: Exception, attempt: int) -> ErrorDirective:
    """Error handling that follows the server's error taxonomy.

    Cooldowns are retried after the reported wait, rate limits after 30s,
    domain-terminal errors stop the loop and anything else is treated as a
    transient server error and retried with exponential backoff.
    """
    message = str(error)
    kind = classify_error(message)

    if kind == ErrorKind.COOLDOWN:
        seconds = parse_error(message)
        logger.info(f"Attempt {attempt} hit cooldown, waiting {seconds:.1f}s")
        return ErrorDirective.retry(int(seconds * 1000) if seconds else None)
    if kind == ErrorKind.RATE_LIMIT:
        logger.warning(f"Attempt {attempt} rate limited, backing off")
        return ErrorDirective.retry(RATE_LIMIT_DELAY_MS)
    if kind in DOMAIN_TERMINAL_KINDS:
        logger.info(f"Attempt {attempt} stopped the loop: {kind}")
        return ErrorDirective.stop()

    logger.warning(f"Attempt {attempt} failed: {message}")
    return ErrorDirective.transient()


class ActionExecutor:
    """Drives one action function in a strictly sequential loop.

    Every attempt starts no earlier than the cooldown reported by the previous
    one. Clock and sleep are injectable so the loop can run on a fake clock.
    """

    def __init__(
        self,
        name: str = "",
        precheck: Callable[[], float] | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.name = name
        self.precheck = precheck
        self.clock = clock
        self.sleep = sleep
        self.state = CooldownState()

    def _schedule(self, delay: float) -> None:
        self.state.next_allowed_at = self.clock() + max(0.0, delay)

    def _next_backoff(self) -> float:
        if self.state.backoff <= 0:
            return INITIAL_BACKOFF
        return min(self.state.backoff * 1.5 + random.random(), MAX_BACKOFF)

    def _wait_until_allowed(self) -> None:
        remaining = self.state.next_allowed_at - self.clock()
        if remaining > 0:
            self.sleep(remaining)

    def execute(
        self,
        action_fn: ActionFn,
        on_success: SuccessHandler | None = None,
        on_error: ErrorHandler | None = None,
        max_attempts: int = 0,
    ) -> ExecutionReport:
        """Run ``action_fn`` until told to stop.

        Args:
            action_fn: Performs one action; may return a dict carrying
                ``cooldown.total_seconds``
            on_success: Called with each result; exceptions are logged only
            on_error: Called with (error, attempt); returns False to stop,
                True to retry after the default delay, or an ErrorDirective.
                Transient directives back off exponentially and re-raise the
                error once the retries are used up. Without it, action errors
                propagate.
            max_attempts: Upper bound on invocations, 0 for unbounded

        Returns:
            ExecutionReport with attempt counts and the reason the loop ended
        """
        report = ExecutionReport()
        prefix = f"[{self.name}] " if self.name else ""

        if self.precheck is not None:
            wait = self.precheck()
            if wait > 0:
                logger.info(f"{prefix}Waiting {wait:.1f}s for existing cooldown")
                self._schedule(wait)

        attempt = 1
        while True:
            self._wait_until_allowed()
            report.attempts = attempt

            try:
                result = action_fn()
            except Exception as error:
                report.failures += 1
                self.state.consecutive_failures += 1
                if on_error is None:
                    raise

                directive = _as_directive(on_error(error, attempt))
                if not directive.continue_execution:
                    report.stopped_by = "on_error"
                    break
                if max_attempts and attempt >= max_attempts:
                    report.stopped_by = "max_attempts"
                    break

                if directive.backoff:
                    if self.state.consecutive_failures > MAX_TRANSIENT_RETRIES:
                        logger.error(
                            f"{prefix}Giving up after {MAX_TRANSIENT_RETRIES} retries"
                        )
                        raise
                    delay = self._next_backoff()
                    self.state.backoff = delay
                elif directive.retry_delay_ms is not None:
                    delay = directive.retry_delay_ms / 1000
                else:
                    delay = DEFAULT_RETRY_DELAY
                logger.info(f"{prefix}Retrying attempt {attempt + 1} in {delay:.1f}s")
                self._schedule(delay)
            else:
                report.successes += 1
                self.state.consecutive_failures = 0
                self.state.backoff = 0.0

                if on_success is not None:
                    try:
                        on_success(result)
                    except Exception as e:
                        logger.error(f"{prefix}Error in success handler: {e}")

                if max_attempts and attempt >= max_attempts:
                    report.stopped_by = "max_attempts"
                    break

                delay = cooldown_from_result(result) or DEFAULT_SUCCESS_DELAY
                logger.debug(f"{prefix}Scheduling next action in {delay}s")
                self._schedule(delay)

            attempt += 1

        return report


def with_retry(
    fn: Callable[[], Any],
    max_retries: int = 5,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Call ``fn`` with exponential backoff and jitter for transient errors.

    Cooldown errors wait out the reported cooldown without using up a retry.
    Domain-terminal errors are raised immediately.
    """
    retries = 0
    delay = initial_delay

    while True:
        try:
            return fn()
        except Exception as error:
            message = str(error)
            cooldown = parse_error(message)
            if cooldown > 0:
                logger.info(f"Retrying after cooldown: {cooldown}s")
                sleep(cooldown + COOLDOWN_BUFFER_SECONDS)
                continue

            if classify_error(message) in DOMAIN_TERMINAL_KINDS:
                raise
            if retries >= max_retries:
                raise

            retries += 1
            logger.info(f"Retry attempt {retries}/{max_retries}. Waiting {delay:.1f}s")
            sleep(delay)
            delay = min(delay * 1.5 + random.random(), max_delay)
