"""Sync state machine coordinating one calendar sync end-to-end."""
import dataclasses
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from processor.event_reconciler import EventReconciler
from processor.event_validator import EventValidator
from processor.models import parse_timestamp
from storage.snapshot_store import build_snapshot_document
from sync_engine.clock import SystemClock
from sync_engine.errors import (
    ConfigurationMissingError,
    ErrorKind,
    NotAuthenticatedError,
    PersistenceError,
    SyncError,
)
from sync_engine.models import (
    SyncConfiguration,
    SyncOutcome,
    SyncResult,
    SyncState,
    SyncStatistics,
    SyncStatus,
)
from sync_engine.observers import StateBroadcaster, StateSubscription
from sync_engine.retry_policy import retry_delay, should_retry
from sync_engine.scheduler import SyncScheduler, compute_next_run

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Central coordinator for calendar synchronization.

    Owns the SyncState, runs sync attempts (config check, auth check, fetch,
    reconcile, validate, persist), applies the retry policy and drives the
    scheduler. At most one attempt runs at a time; every state transition is
    published, in order, to observers.

    Usage::

        engine = SyncEngine(
            config_store=ConfigStore(document_store),
            auth_checker=StoredTokenAuth(document_store),
            calendar_client=GoogleCalendarClient(token_provider),
            snapshot_store=SnapshotStore(document_store),
        )
        result = engine.run_sync_with_retry()
    """

    def __init__(
        self,
        config_store,
        auth_checker,
        calendar_client,
        snapshot_store,
        reconciler: Optional[EventReconciler] = None,
        validator: Optional[EventValidator] = None,
        clock: Optional[SystemClock] = None,
        timer_factory: Callable = threading.Timer
    ):
        """
        Initialize the engine with its collaborators.

        Args:
            config_store: Object with load_config() -> SyncConfiguration | None
            auth_checker: Object with is_authenticated() -> bool
            calendar_client: Object with fetch_events(source_id, max_count,
                lookahead_weeks) -> list of RawEvent
            snapshot_store: Object with write_snapshot(document) -> bool and
                read_snapshot() -> dict | None
            reconciler: Reconciler override (default built from config timezone)
            validator: Validator override (default built from config timezone)
            clock: Clock providing now() and wait() (SystemClock by default)
            timer_factory: Timer constructor used by the scheduler
        """
        self._config_store = config_store
        self._auth_checker = auth_checker
        self._calendar_client = calendar_client
        self._snapshot_store = snapshot_store
        self._reconciler = reconciler
        self._validator = validator
        self._clock = clock or SystemClock()

        self._lock = threading.Lock()
        self._active = False
        self._retry_loops = 0
        self._status_before_schedule = SyncStatus.NEVER_SYNCED
        self._cancel_event = threading.Event()
        self._state = SyncState()
        self._statistics = SyncStatistics()
        self._broadcaster = StateBroadcaster(self._state)
        self._scheduler = SyncScheduler(
            self._on_scheduled_trigger, self._clock, timer_factory
        )

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_state(self) -> SyncState:
        """Return the current state snapshot without blocking."""
        return self._state

    def observe_state(self) -> StateSubscription:
        """Subscribe to every state transition, starting with the current one."""
        return self._broadcaster.subscribe()

    def get_statistics(self) -> SyncStatistics:
        with self._lock:
            return dataclasses.replace(self._statistics)

    # ------------------------------------------------------------------
    # Sync operations
    # ------------------------------------------------------------------

    def run_sync(self, force: bool = False) -> SyncResult:
        """
        Run one sync attempt.

        Args:
            force: Skip the cadence freshness check

        Returns:
            SyncResult (REJECTED if an attempt is already running)

        Raises:
            ConfigurationMissingError: If no valid configuration is stored
            NotAuthenticatedError: If the remote calendar is not authorized
        """
        result, _, _ = self._run_attempt(force, reset_retries=True, max_retries=None)
        return result

    def run_sync_with_retry(
        self,
        max_retries: Optional[int] = None,
        force: bool = True,
        deadline: Optional[datetime] = None
    ) -> SyncResult:
        """
        Run sync attempts until one succeeds or the retry budget is spent.

        Retryable failures are absorbed and retried after an exponential
        backoff; fatal failures propagate on first occurrence. Cancellation
        is checked before each retry and before each backoff wait.

        Args:
            max_retries: Retries after the initial attempt (default from
                configuration; 0 when retries are disabled)
            force: Skip the cadence freshness check
            deadline: Stop retrying when the next backoff would end after
                this instant

        Returns:
            SyncResult of the last attempt; on exhaustion its message names
            the terminal cause and the number of retried attempts. A
            rejected first attempt is returned as-is with attempts=0

        Raises:
            ConfigurationMissingError: If no valid configuration is stored
            NotAuthenticatedError: If the remote calendar is not authorized
        """
        attempts = 0
        result = None
        error = None
        config = None

        with self._lock:
            self._retry_loops += 1
        try:
            while True:
                if attempts and self._cancel_event.is_set():
                    return self._cancelled_result(attempts)

                attempts += 1
                result, error, config = self._run_attempt(
                    force,
                    reset_retries=attempts == 1,
                    max_retries=max_retries,
                    in_retry_loop=True
                )
                if result.outcome == SyncOutcome.REJECTED:
                    return result
                if result.outcome != SyncOutcome.FAILED:
                    return dataclasses.replace(result, attempts=attempts)

                budget = max_retries
                if budget is None:
                    budget = config.effective_max_retries if config else 0
                if not should_retry(error, attempts, budget):
                    break

                base = (config or SyncConfiguration()).retry_delay
                delay = retry_delay(error, attempts, base)
                if self._cancel_event.is_set():
                    return self._cancelled_result(attempts)
                if deadline is not None and self._clock.now() + delay > deadline:
                    logger.warning(
                        f"Sync attempt {attempts} failed: {error}. Next retry in "
                        f"{delay.total_seconds():.0f} seconds would pass the deadline "
                        f"{deadline.isoformat()}, giving up"
                    )
                    break

                logger.warning(
                    f"Sync attempt {attempts} failed: {error}. "
                    f"Retrying in {delay.total_seconds():.0f} seconds..."
                )
                if self._clock.wait(delay, self._cancel_event):
                    return self._cancelled_result(attempts)
        finally:
            with self._lock:
                self._retry_loops -= 1

        message = (
            f"Sync failed: {attempts - 1} attempts retried after the initial run "
            f"({attempts} runs in total): {error}"
        )
        logger.error(message)
        with self._lock:
            if self._state.status == SyncStatus.ERROR:
                self._set_state(error_message=message)
        return dataclasses.replace(result, attempts=attempts, error_message=message)

    def cancel(self) -> bool:
        """
        Stop the running or pending sync.

        A running attempt is not interrupted and an already committed write
        is kept; no further attempts are made.

        Returns:
            True if the state moved to CANCELLED
        """
        with self._lock:
            self._cancel_event.set()
            status = self._state.status
            cancellable = (
                self._active
                or status == SyncStatus.SCHEDULED
                or (status == SyncStatus.ERROR and self._retry_loops > 0)
            )
            if not cancellable or status == SyncStatus.CANCELLED:
                return False
            self._set_state(status=SyncStatus.CANCELLED, next_sync_time=None)

        self._scheduler.cancel_scheduled()
        logger.info("Sync cancelled")
        return True

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(self, delay_hours: float) -> datetime:
        """
        Schedule an automatic sync, replacing any pending one.

        Args:
            delay_hours: Hours from now

        Returns:
            Instant the sync is due
        """
        moment = self._scheduler.schedule(delay_hours)
        self._mark_scheduled(moment)
        return moment

    def cancel_scheduled(self) -> bool:
        """
        Cancel the pending automatic sync, if any.

        Returns:
            True if a sync was pending
        """
        cancelled = self._scheduler.cancel_scheduled()
        with self._lock:
            if self._state.status == SyncStatus.SCHEDULED:
                self._set_state(
                    status=self._status_before_schedule, next_sync_time=None
                )
        return cancelled

    def shutdown(self) -> None:
        """Cancel pending triggers and close observer streams."""
        self._scheduler.cancel_scheduled()
        self._broadcaster.close()

    def _mark_scheduled(self, moment: datetime) -> None:
        with self._lock:
            if self._active:
                self._set_state(next_sync_time=moment)
                return
            if self._state.status != SyncStatus.SCHEDULED:
                self._status_before_schedule = self._state.status
            self._set_state(status=SyncStatus.SCHEDULED, next_sync_time=moment)

    def _resume_schedule(self) -> None:
        # a trigger armed while an attempt ran is shown once the attempt ends
        moment = self._scheduler.next_run_at
        if moment is not None and self._state.status != SyncStatus.CANCELLED:
            self._mark_scheduled(moment)

    def _on_scheduled_trigger(self) -> None:
        try:
            result = self.run_sync_with_retry(force=False)
        except (ConfigurationMissingError, NotAuthenticatedError) as e:
            logger.error(f"Scheduled sync stopped, remediation required: {e}")
            return

        # the fired timer is spent even when another attempt held the guard
        if result.outcome != SyncOutcome.CANCELLED:
            self._reschedule()

    def _reschedule(self) -> None:
        config = self._config_store.load_config()
        if config is None or not config.enabled:
            logger.info("Automatic sync disabled, not rescheduling")
            return
        moment = compute_next_run(
            self._clock.now(), config.cadence_hours, config.quiet_hours, config.zone
        )
        self._scheduler.schedule_at(moment)
        self._mark_scheduled(moment)

    # ------------------------------------------------------------------
    # One attempt
    # ------------------------------------------------------------------

    def _run_attempt(
        self,
        force: bool,
        reset_retries: bool,
        max_retries: Optional[int],
        in_retry_loop: bool = False
    ) -> Tuple[SyncResult, Optional[Exception], Optional[SyncConfiguration]]:
        with self._lock:
            if self._active:
                logger.warning("Sync already running, rejecting new attempt")
                return SyncResult(
                    outcome=SyncOutcome.REJECTED,
                    error_kind=ErrorKind.ALREADY_IN_PROGRESS,
                    error_message="Sync already running",
                    attempts=0
                ), None, None
            self._active = True
            previous_status = self._state.status
            # a cancel request still owed to another retry loop must survive
            other_loops = self._retry_loops - (1 if in_retry_loop else 0)
            if reset_retries and other_loops == 0:
                self._cancel_event.clear()
            self._set_state(
                status=SyncStatus.IN_PROGRESS,
                retry_count=0 if reset_retries else self._state.retry_count,
                max_retries=(
                    max_retries if max_retries is not None else self._state.max_retries
                ),
                error_message=None
            )

        started = time.monotonic()
        now = self._clock.now()
        config = None
        try:
            config = self._load_config()
            budget = max_retries if max_retries is not None else config.effective_max_retries

            skip_reason = None if force else self._skip_reason(config, now)
            if skip_reason:
                return self._complete_skipped(
                    skip_reason, previous_status, budget, started
                ), None, config

            if not self._auth_checker.is_authenticated():
                raise NotAuthenticatedError(
                    "Not authenticated with the calendar provider"
                )

            logger.info(f"Fetching events for calendar {config.calendar_id}")
            raw_events = self._calendar_client.fetch_events(
                config.calendar_id, config.max_events, config.weeks_ahead
            )
            logger.info(f"Fetched {len(raw_events)} raw events")

            reconciler = self._reconciler or EventReconciler(config.zone)
            validator = self._validator or EventValidator(config.zone)
            events = reconciler.reconcile(raw_events, now)
            warnings = validator.validate_all(events)
            conflicts = validator.detect_conflicts(events)

            document = build_snapshot_document(events, now, config.calendar_id)
            if not self._snapshot_store.write_snapshot(document):
                raise PersistenceError("Failed to write calendar snapshot")

            return self._complete_success(
                now, config, budget, len(events), warnings, conflicts, started
            ), None, config

        except SyncError as e:
            budget = max_retries if max_retries is not None else (
                config.effective_max_retries if config else self._state.max_retries
            )
            result = self._complete_failure(e, budget, started)
            if not e.retryable:
                logger.error(f"Sync aborted: {e}", extra={'error_type': type(e).__name__})
                raise
            return result, e, config

        except Exception as e:
            logger.error(
                f"Unexpected error during sync: {e}",
                extra={'error_type': type(e).__name__},
                exc_info=True
            )
            budget = max_retries if max_retries is not None else self._state.max_retries
            return self._complete_failure(e, budget, started), e, config

    def _load_config(self) -> SyncConfiguration:
        config = self._config_store.load_config()
        if config is None:
            raise ConfigurationMissingError("Sync configuration is missing")
        problems = config.validate()
        if problems:
            raise ConfigurationMissingError(
                f"Sync configuration is invalid: {'; '.join(problems)}"
            )
        return config

    def _skip_reason(self, config: SyncConfiguration, now: datetime) -> Optional[str]:
        if not config.enabled:
            return "sync disabled"
        last_sync = self._last_success_time()
        if last_sync is not None and now - last_sync < config.cadence:
            return f"last sync {last_sync.isoformat()} is within cadence"
        return None

    def _last_success_time(self) -> Optional[datetime]:
        if self._state.last_sync_time is not None:
            return self._state.last_sync_time
        snapshot = self._snapshot_store.read_snapshot()
        if not snapshot:
            return None
        try:
            return parse_timestamp(snapshot.get('lastSyncTime'))
        except ValueError:
            logger.warning("Snapshot has an unreadable lastSyncTime")
            return None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _set_state(self, **changes) -> None:
        # caller holds self._lock
        self._state = dataclasses.replace(self._state, **changes)
        self._broadcaster.publish(self._state)

    def _elapsed_ms(self, started: float) -> int:
        return int((time.monotonic() - started) * 1000)

    def _complete_skipped(
        self, reason: str, previous_status: SyncStatus, budget: int, started: float
    ) -> SyncResult:
        duration_ms = self._elapsed_ms(started)
        logger.info(f"Sync skipped: {reason}")
        last_sync = self._last_success_time()
        if last_sync is not None and reason != "sync disabled":
            status = SyncStatus.SUCCESS
        elif previous_status == SyncStatus.SCHEDULED:
            status = self._status_before_schedule
        else:
            status = previous_status
        with self._lock:
            self._active = False
            if self._state.status == SyncStatus.CANCELLED:
                status = SyncStatus.CANCELLED
            self._set_state(
                status=status,
                last_sync_time=last_sync,
                max_retries=budget,
                retry_count=min(self._state.retry_count, budget),
                sync_duration_ms=duration_ms
            )
        self._resume_schedule()
        return SyncResult(
            outcome=SyncOutcome.SUCCESS,
            events_count=0,
            duration_ms=duration_ms,
            skipped=True
        )

    def _complete_success(
        self,
        now: datetime,
        config: SyncConfiguration,
        budget: int,
        events_count: int,
        warnings,
        conflicts,
        started: float
    ) -> SyncResult:
        duration_ms = self._elapsed_ms(started)
        with self._lock:
            self._active = False
            cancelled = self._state.status == SyncStatus.CANCELLED
            self._statistics.record_success(events_count, duration_ms)
            self._set_state(
                status=SyncStatus.CANCELLED if cancelled else SyncStatus.SUCCESS,
                last_sync_time=now,
                next_sync_time=None if cancelled else now + timedelta(hours=config.cadence_hours),
                events_count=events_count,
                error_message=None,
                retry_count=0,
                max_retries=budget,
                sync_duration_ms=duration_ms
            )

        logger.info(
            f"Sync complete: {events_count} events saved",
            extra={
                'duration_ms': duration_ms,
                'warnings': len(warnings),
                'conflicts': len(conflicts)
            }
        )
        self._resume_schedule()
        if cancelled:
            return SyncResult(
                outcome=SyncOutcome.CANCELLED,
                events_count=events_count,
                duration_ms=duration_ms,
                error_kind=ErrorKind.CANCELLED,
                error_message="Sync cancelled after the snapshot was written",
                warnings=warnings,
                conflicts=conflicts
            )
        return SyncResult(
            outcome=SyncOutcome.SUCCESS,
            events_count=events_count,
            duration_ms=duration_ms,
            warnings=warnings,
            conflicts=conflicts
        )

    def _complete_failure(
        self, error: Exception, budget: int, started: float
    ) -> SyncResult:
        duration_ms = self._elapsed_ms(started)
        kind = error.kind if isinstance(error, SyncError) else ErrorKind.UNEXPECTED
        message = str(error) or type(error).__name__
        with self._lock:
            self._active = False
            cancelled = self._state.status == SyncStatus.CANCELLED
            self._statistics.record_failure(duration_ms)
            self._set_state(
                status=SyncStatus.CANCELLED if cancelled else SyncStatus.ERROR,
                error_message=message,
                retry_count=min(self._state.retry_count + 1, budget),
                max_retries=budget,
                sync_duration_ms=duration_ms
            )

        logger.warning(
            f"Sync attempt failed: {message}",
            extra={'error_type': type(error).__name__, 'duration_ms': duration_ms}
        )
        return SyncResult(
            outcome=SyncOutcome.CANCELLED if cancelled else SyncOutcome.FAILED,
            duration_ms=duration_ms,
            error_kind=kind,
            error_message=message
        )

    def _cancelled_result(self, attempts: int) -> SyncResult:
        return SyncResult(
            outcome=SyncOutcome.CANCELLED,
            error_kind=ErrorKind.CANCELLED,
            error_message=f"Sync cancelled after {attempts} attempts",
            attempts=attempts
        )
