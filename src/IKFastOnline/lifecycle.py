# === NAVMAP v1 ===
# {
#   "module": "IKFastOnline.lifecycle",
#   "purpose": "Trigger-and-poll state machine for one remote job: backoff, hard timeout, observers",
#   "sections": [
#     {"id": "backoffpolicy", "name": "BackoffPolicy", "anchor": "class-backoffpolicy", "kind": "class"},
#     {"id": "joblifecyclecoordinator", "name": "JobLifecycleCoordinator", "anchor": "class-joblifecyclecoordinator", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Job lifecycle coordination.

:class:`JobLifecycleCoordinator` owns the authoritative view of the one job it
manages. It dispatches the job, resolves the run id the provider assigns
asynchronously, polls the run until it reaches a terminal state or the hard
timeout expires, and tells observers about every state transition.

Phases::

    IDLE --trigger()--> TRIGGERING --run id resolved (or not)--> POLLING
    POLLING --terminal status / timeout / fatal API error--> TERMINAL
    TRIGGERING/POLLING --stop_polling()--> IDLE
    any --reset()--> IDLE

Polling runs in a single :class:`asyncio.Task`. Each pass performs one
network round trip, updates the run snapshot, notifies observers, and only
then sleeps for the backoff interval, so ticks never overlap. Every
superseding entry point bumps a generation counter and cancels the task;
any tick that resumes under an older generation discards its result.

Observers run synchronously inside the loop. Coroutine observers are
scheduled as tasks and never awaited. A trigger requested while observers
are being notified is queued (:meth:`JobLifecycleCoordinator.request_trigger`)
and started once the notification pass is over.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, List, Mapping, Optional, Sequence, Set, Tuple, Union

from .clock import Clock, SystemClock
from .errors import (
    AlreadyActiveError,
    JobTimeoutError,
    RemoteAPIError,
    RunIdUnresolvedWarning,
    TriggerFailedError,
)
from .models import (
    CoordinatorPhase,
    JobOutcome,
    JobRun,
    LifecycleState,
    OutcomeReason,
    PollingState,
    TriggerResult,
)
from .network.client import RemoteJobClient
from .parameters import TriggerParams
from .settings import PollingSettings, Settings

logger = logging.getLogger(__name__)

StateObserver = Callable[[Optional[LifecycleState], Optional[LifecycleState], Optional[JobRun]], Any]
CompletionCallback = Callable[[JobOutcome], Any]

#: Tolerance for clock skew between this host and the provider when matching
#: a freshly dispatched run by its creation time.
RUN_MATCH_SKEW = timedelta(seconds=10)

_LOOKUP_PAGE_SIZE = 5
_ACTIVE_CHECK_PAGE_SIZE = 10


class BackoffPolicy:
    """Poll interval curve bounded by a floor and a ceiling.

    ``interval_for(n) = clamp(base * factor ** (n // step))`` where ``base`` is
    the requested starting interval (the floor by default). The result is
    non-decreasing in ``n`` and always within ``[min_interval, max_interval]``.

    Examples:
        >>> policy = BackoffPolicy(5.0, 30.0, factor=1.5, step=5)
        >>> [policy.interval_for(n) for n in (0, 4, 5, 10, 100)]
        [5.0, 5.0, 7.5, 11.25, 30.0]
        >>> policy.clamp(1.0)
        5.0
    """

    def __init__(
        self,
        min_interval: float,
        max_interval: float,
        *,
        factor: float = 1.5,
        step: int = 5,
    ) -> None:
        if min_interval <= 0:
            raise ValueError("min_interval must be positive")
        if max_interval < min_interval:
            raise ValueError("max_interval must be >= min_interval")
        if factor < 1.0:
            raise ValueError("factor must be >= 1.0")
        if step < 1:
            raise ValueError("step must be >= 1")
        self.min_interval = float(min_interval)
        self.max_interval = float(max_interval)
        self.factor = float(factor)
        self.step = int(step)

    @classmethod
    def from_settings(cls, settings: PollingSettings) -> "BackoffPolicy":
        return cls(
            settings.min_interval_sec,
            settings.max_interval_sec,
            factor=settings.backoff_factor,
            step=settings.backoff_step,
        )

    def clamp(self, requested: Optional[float]) -> float:
        if requested is None:
            return self.min_interval
        return min(max(float(requested), self.min_interval), self.max_interval)

    def interval_for(self, poll_count: int, initial: Optional[float] = None) -> float:
        base = self.clamp(initial)
        if base >= self.max_interval or self.factor == 1.0:
            return base
        exponent = max(0, int(poll_count)) // self.step
        growth = base
        # Stop multiplying once the ceiling is reached; large counts must not overflow.
        for _ in range(exponent):
            growth *= self.factor
            if growth >= self.max_interval:
                break
        return self.clamp(growth)


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class JobLifecycleCoordinator:
    """Trigger one remote job and track it to a terminal state."""

    def __init__(
        self,
        client: RemoteJobClient,
        *,
        job_definition_id: str,
        ref: str = "main",
        polling: Optional[PollingSettings] = None,
        clock: Optional[Clock] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> None:
        self._client = client
        self._job_definition_id = job_definition_id
        self._ref = ref
        self._settings = polling or PollingSettings()
        self._clock: Clock = clock or SystemClock()
        self._backoff = backoff or BackoffPolicy.from_settings(self._settings)

        self._observers: List[StateObserver] = []
        self._completion_callbacks: List[CompletionCallback] = []
        self._background: Set[asyncio.Future] = set()
        self._deferred: Deque[Tuple[TriggerParams, Optional[float], asyncio.Future]] = deque()
        self._dispatching = False

        self._generation = 0
        self._task: Optional[asyncio.Task] = None
        self._phase = CoordinatorPhase.IDLE
        self._polling = False
        self._run: Optional[JobRun] = None
        self._run_id: Optional[int] = None
        self._state: Optional[LifecycleState] = None
        self._outcome: Optional[JobOutcome] = None
        self._poll_count = 0
        self._initial_interval: Optional[float] = None
        self._current_interval = self._backoff.min_interval
        self._started_at: Optional[float] = None
        self._dispatched_at: Optional[datetime] = None

    @classmethod
    def from_settings(
        cls,
        client: RemoteJobClient,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
    ) -> "JobLifecycleCoordinator":
        return cls(
            client,
            job_definition_id=settings.repository.workflow_file,
            ref=settings.repository.branch,
            polling=settings.polling,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> Optional[LifecycleState]:
        """Mapped state of the last observed run; ``None`` before any observation."""
        return self._state

    @property
    def run(self) -> Optional[JobRun]:
        return self._run

    @property
    def run_id(self) -> Optional[int]:
        return self._run_id

    @property
    def phase(self) -> CoordinatorPhase:
        return self._phase

    @property
    def outcome(self) -> Optional[JobOutcome]:
        return self._outcome

    @property
    def is_active(self) -> bool:
        return self._phase in (CoordinatorPhase.TRIGGERING, CoordinatorPhase.POLLING)

    @property
    def is_polling(self) -> bool:
        return self._polling

    @property
    def backoff(self) -> BackoffPolicy:
        return self._backoff

    def get_polling_state(self) -> PollingState:
        return PollingState(
            is_polling=self._polling,
            poll_count=self._poll_count,
            current_interval=self._current_interval,
            run_id=self._run_id,
            started_at=self._started_at,
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_state_change(self, callback: StateObserver, *, first: bool = False) -> Callable[[], None]:
        """Register ``callback(previous, current, run)``; returns an unsubscribe function.

        ``first=True`` places the observer ahead of all others, so it sees a
        transition before any other observer can react to it.
        """

        if first:
            self._observers.insert(0, callback)
        else:
            self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    def on_complete(self, callback: CompletionCallback) -> Callable[[], None]:
        self._completion_callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._completion_callbacks:
                self._completion_callbacks.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def trigger(
        self,
        params: Union[TriggerParams, Mapping[str, Any]],
        *,
        initial_interval: Optional[float] = None,
    ) -> TriggerResult:
        """Dispatch a new job and start polling it.

        Raises:
            AlreadyActiveError: A job is being triggered or polled, or the
                provider already lists a queued or running run.
            TriggerFailedError: The provider rejected the dispatch. It is not
                retried.
            ParameterValidationError: ``params`` given as a mapping are invalid.
        """

        if self.is_active:
            raise AlreadyActiveError(
                f"A job is already {self._describe_activity()}; wait for it to finish or reset",
                run_id=self._run_id,
            )
        if not isinstance(params, TriggerParams):
            params = TriggerParams.build(**dict(params))

        self._cancel_polling()
        generation = self._generation
        previous = self._state
        self._clear_snapshot()
        self._phase = CoordinatorPhase.TRIGGERING
        self._started_at = self._clock.now()
        if previous is not None:
            self._notify_state(previous, None, None)
        logger.info(
            "Triggering %s job on %s",
            params.mode,
            self._ref,
            extra={"stage": "trigger"},
        )

        try:
            if self._settings.check_remote_active:
                await self._ensure_no_remote_activity(generation)
            if generation != self._generation:
                return TriggerResult(success=False)

            self._dispatched_at = self._clock.utcnow()
            try:
                response = await self._client.trigger_job(
                    self._job_definition_id, params.to_inputs(), self._ref
                )
            except RemoteAPIError as exc:
                raise TriggerFailedError(f"Trigger request was rejected: {exc}", cause=exc) from exc
            if not response.success:
                raise TriggerFailedError(
                    f"Trigger request was not accepted (HTTP {response.status_code})"
                )
        except BaseException:
            if generation == self._generation:
                self._phase = CoordinatorPhase.IDLE
                self._started_at = None
            raise

        if generation != self._generation:
            return TriggerResult(success=True)

        run = await self._lookup_run(generation, self._settings.run_lookup_attempts)
        if generation != self._generation:
            return TriggerResult(success=True, run_id=run.id if run else None)

        warning: Optional[RunIdUnresolvedWarning] = None
        if run is None:
            warning = RunIdUnresolvedWarning(
                "Job was triggered but its run id is not listed yet; "
                "status tracking will start once it appears"
            )
            logger.warning(str(warning), extra={"stage": "lookup"})
        self._begin_polling(generation, run.id if run else None, initial_interval)
        return TriggerResult(success=True, run_id=self._run_id, warning=warning)

    def request_trigger(
        self,
        params: Union[TriggerParams, Mapping[str, Any]],
        *,
        initial_interval: Optional[float] = None,
    ) -> "asyncio.Future[TriggerResult]":
        """Schedule :meth:`trigger` without re-entering the state machine.

        Safe to call from observers: while a notification pass is running the
        request is queued and started after it completes. Must be called with
        an event loop running.
        """

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        if not isinstance(params, TriggerParams):
            params = TriggerParams.build(**dict(params))
        if self._dispatching:
            self._deferred.append((params, initial_interval, future))
        else:
            self._start_deferred(params, initial_interval, future)
        return future

    async def track(self, run_id: int, *, initial_interval: Optional[float] = None) -> None:
        """Poll an already dispatched run, e.g. one started by another session."""

        if self.is_active:
            raise AlreadyActiveError(
                f"A job is already {self._describe_activity()}", run_id=self._run_id
            )
        self._cancel_polling()
        generation = self._generation
        previous = self._state
        self._clear_snapshot()
        self._started_at = self._clock.now()
        if previous is not None:
            self._notify_state(previous, None, None)
        self._begin_polling(generation, int(run_id), initial_interval)

    def stop_polling(self) -> None:
        """Cancel polling immediately.

        A no-op unless a trigger or poll is in flight, including from an
        observer notified of the terminal state.
        """

        if not self.is_active:
            return
        self._cancel_polling()
        self._phase = CoordinatorPhase.IDLE
        logger.info("Polling stopped", extra={"stage": "poll", "run_id": self._run_id})

    def reset(self) -> None:
        """Stop polling and forget the last run. A no-op on an idle coordinator."""

        self._cancel_polling()
        while self._deferred:
            _, _, future = self._deferred.popleft()
            if not future.done():
                future.cancel()
        previous = self._state
        self._clear_snapshot()
        self._phase = CoordinatorPhase.IDLE
        if previous is not None:
            self._notify_state(previous, None, None)

    async def wait(self) -> Optional[JobOutcome]:
        """Wait for the current polling task to end and return its outcome.

        The outcome is the one that task produced, even if an observer has
        already started another trigger by the time the caller resumes.
        """

        task = self._task
        if task is None:
            return self._outcome
        if not task.done():
            await asyncio.wait({task})
        if task.cancelled():
            return None
        return task.result()

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _describe_activity(self) -> str:
        if self._phase is CoordinatorPhase.TRIGGERING:
            return "being triggered"
        if self._run_id is None:
            return "running (run id pending)"
        state = self._state.value if self._state else "pending"
        return f"{state} (run {self._run_id})"

    def _clear_snapshot(self) -> None:
        self._run = None
        self._run_id = None
        self._state = None
        self._outcome = None
        self._poll_count = 0
        self._initial_interval = None
        self._current_interval = self._backoff.min_interval
        self._started_at = None
        self._dispatched_at = None

    def _cancel_polling(self) -> None:
        self._generation += 1
        self._polling = False
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    def _begin_polling(
        self, generation: int, run_id: Optional[int], initial_interval: Optional[float]
    ) -> None:
        self._run_id = run_id
        self._phase = CoordinatorPhase.POLLING
        self._polling = True
        self._poll_count = 0
        self._initial_interval = initial_interval
        self._current_interval = self._backoff.interval_for(0, initial_interval)
        self._task = asyncio.get_running_loop().create_task(self._poll_loop(generation))
        logger.info(
            "Polling run %s every %.1fs (timeout %.0fs)",
            run_id if run_id is not None else "<pending>",
            self._current_interval,
            self._settings.timeout_sec,
            extra={"stage": "poll", "run_id": run_id},
        )

    def _elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return self._clock.now() - self._started_at

    # ------------------------------------------------------------------
    # Run lookup
    # ------------------------------------------------------------------

    async def _ensure_no_remote_activity(self, generation: int) -> None:
        try:
            runs = await self._client.list_runs(
                self._job_definition_id, per_page=_ACTIVE_CHECK_PAGE_SIZE, retry=False
            )
        except RemoteAPIError as exc:
            logger.warning(
                "Could not check for running jobs: %s", exc, extra={"stage": "trigger"}
            )
            return
        if generation != self._generation:
            return
        for run in runs:
            if run.lifecycle_state.is_active:
                raise AlreadyActiveError(
                    f"Run {run.id} is still {run.lifecycle_state.value} on the remote side",
                    run_id=run.id,
                )

    def _select_own_run(self, runs: Sequence[JobRun]) -> Optional[JobRun]:
        """Pick the newest run that could have been created by our dispatch."""

        for run in runs:
            if (
                self._dispatched_at is None
                or run.created_at is None
                or run.created_at >= self._dispatched_at - RUN_MATCH_SKEW
            ):
                return run
        return None

    async def _lookup_run(self, generation: int, attempts: int) -> Optional[JobRun]:
        for attempt in range(attempts):
            await self._clock.sleep(self._settings.run_lookup_delay_sec)
            if generation != self._generation:
                return None
            try:
                runs = await self._client.list_runs(
                    self._job_definition_id, per_page=_LOOKUP_PAGE_SIZE, retry=False
                )
            except RemoteAPIError as exc:
                logger.warning(
                    "Run lookup attempt %d/%d failed: %s",
                    attempt + 1,
                    attempts,
                    exc,
                    extra={"stage": "lookup"},
                )
                continue
            if generation != self._generation:
                return None
            run = self._select_own_run(runs)
            if run is not None:
                logger.info("Resolved run %s", run.id, extra={"stage": "lookup", "run_id": run.id})
                return run
        return None

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def _poll_loop(self, generation: int) -> Optional[JobOutcome]:
        try:
            while generation == self._generation:
                if self._elapsed() >= self._settings.timeout_sec:
                    self._finish_timeout()
                    return self._outcome
                await self._tick(generation)
                if generation != self._generation:
                    return None
                if not self._polling:
                    return self._outcome
                interval = self._backoff.interval_for(self._poll_count, self._initial_interval)
                self._current_interval = interval
                remaining = self._settings.timeout_sec - self._elapsed()
                await self._clock.sleep(max(0.0, min(interval, remaining)))
        except asyncio.CancelledError:
            logger.debug("Poll task cancelled", extra={"stage": "poll"})
            raise
        except Exception as exc:
            if generation != self._generation:
                return None
            logger.exception("Polling aborted by an unexpected error", extra={"stage": "poll"})
            self._finish_failed(OutcomeReason.ERROR, exc)
            return self._outcome
        return None

    async def _tick(self, generation: int) -> None:
        self._poll_count += 1
        try:
            if self._run_id is None:
                runs = await self._client.list_runs(
                    self._job_definition_id, per_page=_LOOKUP_PAGE_SIZE, retry=False
                )
                run = self._select_own_run(runs)
            else:
                run = await self._client.get_run(self._run_id, retry=False)
        except RemoteAPIError as exc:
            if generation != self._generation:
                return
            if exc.retryable:
                logger.warning(
                    "Transient error while polling: %s",
                    exc,
                    extra={"stage": "poll", "run_id": self._run_id, "poll_count": self._poll_count},
                )
                return
            logger.error(
                "Polling aborted: %s",
                exc,
                extra={"stage": "poll", "run_id": self._run_id, "poll_count": self._poll_count},
            )
            self._finish_failed(OutcomeReason.ERROR, exc)
            return
        if generation != self._generation or run is None:
            return
        self._apply(generation, run)

    def _apply(self, generation: int, run: JobRun) -> None:
        if self._run_id is None:
            logger.info("Resolved run %s", run.id, extra={"stage": "lookup", "run_id": run.id})
            self._run_id = run.id
        self._run = run
        state = run.lifecycle_state
        if state is LifecycleState.UNKNOWN:
            logger.warning(
                "Run %s reported unrecognised status %r/%r; still polling",
                run.id,
                run.raw_status,
                run.raw_conclusion,
                extra={"stage": "poll", "run_id": run.id, "state": state.value},
            )
        if state.is_terminal:
            self._polling = False
            self._phase = CoordinatorPhase.TERMINAL
        self._set_state(state, run)
        if state.is_terminal and generation == self._generation:
            self._complete(JobOutcome(state=state, run=run, reason=OutcomeReason.REMOTE))

    def _finish_timeout(self) -> None:
        elapsed = self._elapsed()
        error = JobTimeoutError(
            f"No terminal status after {elapsed:.0f}s (limit {self._settings.timeout_sec:.0f}s)",
            elapsed_sec=elapsed,
            timeout_sec=self._settings.timeout_sec,
        )
        logger.warning(str(error), extra={"stage": "poll", "run_id": self._run_id})
        self._finish_failed(OutcomeReason.TIMEOUT, error)

    def _finish_failed(self, reason: OutcomeReason, error: BaseException) -> None:
        generation = self._generation
        self._polling = False
        self._phase = CoordinatorPhase.TERMINAL
        self._set_state(LifecycleState.FAILED, self._run)
        if generation == self._generation:
            self._complete(
                JobOutcome(state=LifecycleState.FAILED, run=self._run, reason=reason, error=error)
            )

    # ------------------------------------------------------------------
    # Notification
    # ------------------------------------------------------------------

    def _set_state(self, state: LifecycleState, run: Optional[JobRun]) -> None:
        previous = self._state
        self._state = state
        if previous is not state:
            logger.info(
                "Run %s: %s -> %s",
                self._run_id,
                previous.value if previous else None,
                state.value,
                extra={
                    "stage": "poll",
                    "run_id": self._run_id,
                    "state": state.value,
                    "poll_count": self._poll_count,
                },
            )
            self._notify_state(previous, state, run)

    def _complete(self, outcome: JobOutcome) -> None:
        self._outcome = outcome
        logger.info(
            "Job finished: %s (%s)",
            outcome.state.value,
            outcome.reason.value,
            extra={"stage": "complete", "run_id": self._run_id, "state": outcome.state.value},
        )
        self._dispatch(self._completion_callbacks, outcome)

    def _notify_state(
        self,
        previous: Optional[LifecycleState],
        current: Optional[LifecycleState],
        run: Optional[JobRun],
    ) -> None:
        self._dispatch(self._observers, previous, current, run)

    def _dispatch(self, callbacks: Sequence[Callable[..., Any]], *args: Any) -> None:
        outer = self._dispatching
        self._dispatching = True
        try:
            for callback in list(callbacks):
                self._invoke(callback, *args)
        finally:
            self._dispatching = outer
        if not outer:
            self._drain_deferred()

    def _invoke(self, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
        except Exception:
            logger.exception("Observer %r failed", callback)
            return
        if not inspect.isawaitable(result):
            return
        try:
            task = asyncio.ensure_future(result, loop=asyncio.get_running_loop())
        except RuntimeError:
            if inspect.iscoroutine(result):
                result.close()
            logger.error("Observer %r returned an awaitable outside an event loop; dropped", callback)
            return
        self._background.add(task)
        task.add_done_callback(self._on_observer_done)

    def _on_observer_done(self, task: asyncio.Future) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async observer failed", exc_info=exc)

    def _drain_deferred(self) -> None:
        while self._deferred:
            params, initial_interval, future = self._deferred.popleft()
            if not future.done():
                self._start_deferred(params, initial_interval, future)

    def _start_deferred(
        self,
        params: TriggerParams,
        initial_interval: Optional[float],
        future: asyncio.Future,
    ) -> None:
        task = asyncio.get_running_loop().create_task(
            self.trigger(params, initial_interval=initial_interval)
        )
        self._background.add(task)

        def _transfer(done: asyncio.Future) -> None:
            self._background.discard(done)
            if future.done():
                return
            if done.cancelled():
                future.cancel()
            elif done.exception() is not None:
                future.set_exception(done.exception())
            else:
                future.set_result(done.result())

        task.add_done_callback(_transfer)


__all__ = [
    "BackoffPolicy",
    "CompletionCallback",
    "JobLifecycleCoordinator",
    "RUN_MATCH_SKEW",
    "StateObserver",
]
