"""
Startup Scheduler

Runs the auto-apply check once after the app has a session, without
blocking startup.

DESIGN DECISION: This wrapper only decides WHEN the engine runs and
HOW LOUDLY the outcome is reported. It never changes engine semantics:
- Single-shot: one scheduled check per scheduler instance
- Delayed: waits delay_ms so startup work finishes first
- Retried: failures before the batch starts are retried with tenacity
- Bounded: the caller stops waiting after timeout_ms, but the batch
  itself keeps running to completion (it is never cancelled mid-item)
- Exclusive: no new run starts while an earlier one is still going,
  including one the caller stopped waiting for
"""

import asyncio
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional, Protocol

import structlog
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from recurring_engine.config import StartupSettings, get_settings
from recurring_engine.errors import RecurringEngineError
from recurring_engine.models.recurring import ApplyResult


logger = structlog.get_logger("recurring_engine.startup")


class StartupTimeoutError(RecurringEngineError):
    """The run did not finish within timeout_ms."""
    pass


class StartupInProgressError(RecurringEngineError):
    """A check is already running."""
    pass


class StartupNotifier(Protocol):
    """User-facing notification sink (toasts, banners)."""

    def show_success(self, message: str) -> None: ...

    def show_error(self, message: str) -> None: ...

    def show_info(self, message: str) -> None: ...

    def show_warning(self, message: str) -> None: ...


class StartupResult(BaseModel):
    """Outcome of one startup check."""
    success: bool
    result: Optional[ApplyResult] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    execution_time_ms: int = Field(default=0, ge=0)
    timestamp: datetime = Field(default_factory=datetime.utcnow)


def _plural(count: int) -> str:
    return f"{count} recurring transaction{'s' if count != 1 else ''}"


class StartupScheduler:
    """
    Schedules the delayed, single-shot auto-apply check.

    Usage:
        scheduler = StartupScheduler(orchestrator.run_auto_apply)
        scheduler.schedule(session.tenant_id)
    """

    def __init__(
        self,
        run_auto_apply: Callable[[str], Awaitable[ApplyResult]],
        config: Optional[StartupSettings] = None,
        notifier: Optional[StartupNotifier] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the scheduler.

        Args:
            run_auto_apply: Engine entry point, called with the tenant id
            config: Startup settings. Defaults to environment settings.
            notifier: Where to surface run summaries. If None, nothing is shown.
            sleep: Coroutine used for the startup and retry delays
        """
        self._run_auto_apply = run_auto_apply
        self._config = config or get_settings().startup
        self._notifier = notifier
        self._sleep = sleep

        self._task: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Task] = None
        self._is_running = False
        self._last_result: Optional[StartupResult] = None

    @property
    def is_running(self) -> bool:
        """True while a check is waiting or a run it gave up on is still going."""
        if self._is_running:
            return True
        return self._in_flight is not None and not self._in_flight.done()

    @property
    def last_result(self) -> Optional[StartupResult]:
        return self._last_result

    def schedule(self, tenant_id: Optional[str]) -> Optional[asyncio.Task]:
        """
        Schedule the startup check for a signed-in tenant.

        Must be called from a running event loop.

        Returns:
            The scheduled task, or None if nothing was scheduled
            (no session, disabled, or already scheduled)
        """
        if not tenant_id:
            self._log("debug", "startup_no_session")
            return None

        if not self._config.enabled:
            self._log("info", "startup_disabled")
            return None

        if self._task is not None:
            self._log("warning", "startup_already_scheduled", tenant_id=tenant_id)
            return None

        self._log(
            "info",
            "startup_scheduled",
            tenant_id=tenant_id,
            delay_ms=self._config.delay_ms,
        )
        self._task = asyncio.create_task(self._delayed_check(tenant_id))
        return self._task

    def reset(self) -> None:
        """
        Allow a new check to be scheduled, e.g. after signing out.

        Raises:
            StartupInProgressError: If the scheduled check or a run is still active
        """
        if self.is_running or (self._task is not None and not self._task.done()):
            raise StartupInProgressError("Cannot reset while a check is in progress")
        self._task = None

    async def trigger_manual_check(self, tenant_id: str) -> Optional[StartupResult]:
        """
        Run the check now, skipping the startup delay.

        Raises:
            StartupInProgressError: If a check is already running
        """
        return await self.execute_with_retry(tenant_id)

    async def _delayed_check(self, tenant_id: str) -> Optional[StartupResult]:
        await self._sleep(self._config.delay_ms / 1000)
        if self.is_running:
            self._log("info", "startup_skipped_in_progress", tenant_id=tenant_id)
            return None
        return await self.execute_with_retry(tenant_id)

    async def execute_with_retry(self, tenant_id: str) -> Optional[StartupResult]:
        """
        Run auto-apply with retries and a timeout.

        Returns:
            StartupResult; a failed one when skip_on_error is set

        Raises:
            StartupInProgressError: If a check is already running
            Exception: The last error, when skip_on_error is off
        """
        if self.is_running:
            raise StartupInProgressError("Auto-apply check is already in progress")

        started = time.monotonic()
        attempts = 0
        self._is_running = True

        try:
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self._config.max_retries + 1),
                    wait=wait_fixed(self._config.retry_delay_ms / 1000),
                    retry=retry_if_not_exception_type(StartupTimeoutError),
                    sleep=self._sleep,
                    before_sleep=self._log_retry,
                    reraise=True,
                ):
                    with attempt:
                        attempts = attempt.retry_state.attempt_number
                        self._log(
                            "info",
                            "startup_attempt",
                            tenant_id=tenant_id,
                            attempt=attempts,
                            max_attempts=self._config.max_retries + 1,
                        )
                        result = await self._run_with_timeout(tenant_id)
            except Exception as e:
                return self._handle_failure(e, attempts - 1, started)

            return self._handle_success(result, attempts - 1, started)
        finally:
            self._is_running = False

    async def _run_with_timeout(self, tenant_id: str) -> ApplyResult:
        """Wait for a run up to timeout_ms without cancelling it."""
        self._in_flight = asyncio.ensure_future(self._run_auto_apply(tenant_id))
        self._in_flight.add_done_callback(self._on_run_done)

        timeout = self._config.timeout_ms / 1000
        try:
            return await asyncio.wait_for(asyncio.shield(self._in_flight), timeout)
        except asyncio.TimeoutError:
            raise StartupTimeoutError(
                f"Auto-apply timed out after {self._config.timeout_ms}ms"
            )

    def _on_run_done(self, task: asyncio.Task) -> None:
        # A run we stopped waiting for still reports how it ended
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._log(
                "debug",
                "startup_run_finished_with_error",
                error_type=type(error).__name__,
                error=str(error),
            )

    def _handle_success(
        self,
        result: ApplyResult,
        retry_count: int,
        started: float,
    ) -> StartupResult:
        startup_result = StartupResult(
            success=True,
            result=result,
            retry_count=retry_count,
            execution_time_ms=int((time.monotonic() - started) * 1000),
        )
        self._last_result = startup_result

        self._log(
            "info",
            "startup_completed",
            applied=result.applied_count,
            failed=result.failed_count,
            pending=result.pending_count,
            execution_time_ms=startup_result.execution_time_ms,
        )

        if self._notifier is not None and self._config.enable_notifications:
            if result.applied_count:
                self._notifier.show_success(
                    f"{_plural(result.applied_count)} applied automatically"
                )
            if result.failed_count:
                self._notifier.show_error(
                    f"{_plural(result.failed_count)} failed to apply"
                )
            if result.pending_count:
                self._notifier.show_info(
                    f"{_plural(result.pending_count)} require manual approval"
                )

        return startup_result

    def _handle_failure(
        self,
        error: Exception,
        retry_count: int,
        started: float,
    ) -> StartupResult:
        startup_result = StartupResult(
            success=False,
            error=str(error),
            error_type=type(error).__name__,
            retry_count=max(retry_count, 0),
            execution_time_ms=int((time.monotonic() - started) * 1000),
        )
        self._last_result = startup_result

        self._log(
            "error",
            "startup_failed",
            error_type=startup_result.error_type,
            error=startup_result.error,
            retry_count=startup_result.retry_count,
        )

        if self._config.skip_on_error:
            return startup_result

        if self._notifier is not None and self._config.enable_notifications:
            self._notifier.show_error("Failed to check recurring transactions on startup")
        raise error

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        self._log(
            "warning",
            "startup_attempt_failed",
            attempt=retry_state.attempt_number,
            error=str(error),
            retry_delay_ms=self._config.retry_delay_ms,
        )

    def _log(self, level: str, event: str, **kwargs) -> None:
        if self._config.enable_logging:
            getattr(logger, level)(event, **kwargs)
