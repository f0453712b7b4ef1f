"""
Rollout Controller.

Drives every active rollout run with its own asyncio task. Each tick:

1. takes the run's lock and reloads the run from the store
2. honours abort requests and the duration guard
3. applies any traffic split the state machine is waiting for
4. opens the step for evaluation once its observation window elapsed
5. fetches samples, evaluates them and acts on the verdict

Every state change is saved before the side effect it implies, so a
controller that crashes mid-tick resumes from the persisted phase and
never re-sends the weights of steps the router already confirmed.

Example:
    >>> controller = RolloutController(store, gateway, router, settings)
    >>> await controller.start()
    >>> run_id = await controller.start_rollout(plan)
    >>> (await controller.get_status(run_id)).phase
    <RolloutPhase.ADVANCING: 'advancing'>
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from model_rollout.adapters.base import MetricsGateway, TrafficRouter
from model_rollout.adapters.http import HttpMetricsGateway, HttpTrafficRouter
from model_rollout.config.loader import ConfigError, validate_config
from model_rollout.config.schema import ControllerSettings, RolloutPlan
from model_rollout.monitoring.prometheus import RolloutMetricsExporter
from model_rollout.rollout.errors import (
    AdapterError,
    InvalidStateError,
    PersistenceError,
    RolloutError,
    RunNotFoundError,
)
from model_rollout.rollout.evaluator import HealthEvaluator
from model_rollout.rollout.models import (
    PhaseTransition,
    ReasonCode,
    RolloutPhase,
    RolloutRun,
    TrafficSplit,
)
from model_rollout.rollout.retry import RetryPolicy
from model_rollout.rollout.state_machine import RolloutStateMachine
from model_rollout.rollout.store import JsonFileRunStore, RunStore

logger = logging.getLogger(__name__)

# Upper bound on state-machine stages executed within one tick
MAX_STAGES_PER_TICK = 16


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AbortAck:
    """Acknowledgement of an accepted abort request."""

    run_id: str
    phase: RolloutPhase
    reason: str
    requested_at: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "run_id": self.run_id,
            "phase": self.phase.value,
            "reason": self.reason,
            "requested_at": self.requested_at.isoformat(),
        }


def _check_abortable(run: RolloutRun) -> None:
    if run.is_terminal:
        raise InvalidStateError(f"Run {run.run_id} already finished ({run.phase.value})")
    if run.abort_requested:
        raise InvalidStateError(f"Run {run.run_id} was already aborted")
    if run.phase == RolloutPhase.ROLLING_BACK:
        raise InvalidStateError(f"Run {run.run_id} is already rolling back")


def _mark_aborted(
    machine: RolloutStateMachine, run: RolloutRun, reason: str, now: datetime
) -> PhaseTransition:
    run.abort_requested = True
    run.abort_reason = reason
    return machine.begin_rollback(run, ReasonCode.ABORTED.value, now)


def request_abort(
    store: RunStore,
    run_id: str,
    reason: str,
    clock: Callable[[], datetime] = utcnow,
) -> AbortAck:
    """
    Abort a run directly through the store.

    Used by processes that do not own the run's loop (e.g. the CLI). The
    owning controller picks the ROLLING_BACK phase up on its next tick; if
    it is mid-tick its own save fails with StaleWriteError and the tick is
    retried from the persisted state.

    Raises:
        RunNotFoundError: If the run does not exist
        InvalidStateError: If the run cannot be aborted
    """
    run = store.get(run_id)
    _check_abortable(run)
    now = clock()
    _mark_aborted(RolloutStateMachine(), run, reason, now)
    store.save(run)
    return AbortAck(run_id=run.run_id, phase=run.phase, reason=reason, requested_at=now)


class RolloutController:
    """
    Schedules and drives rollout runs.

    Attributes:
        store: Run store holding the authoritative run state
        gateway: Metrics gateway adapter
        router: Traffic router adapter
        settings: Controller settings
        metrics: Prometheus exporter fed with transitions and verdicts
    """

    def __init__(
        self,
        store: RunStore,
        gateway: MetricsGateway,
        router: TrafficRouter,
        settings: ControllerSettings | None = None,
        evaluator: HealthEvaluator | None = None,
        machine: RolloutStateMachine | None = None,
        metrics: RolloutMetricsExporter | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Any] | None = None,
    ) -> None:
        """
        Initialize controller.

        Args:
            store: Run store
            gateway: Metrics gateway adapter
            router: Traffic router adapter
            settings: Controller settings (defaults if None)
            evaluator: Health evaluator
            machine: State machine
            metrics: Metrics exporter
            clock: Returns the current UTC time
            sleep: Coroutine used for retry backoff
        """
        self.store = store
        self.gateway = gateway
        self.router = router
        self.settings = settings or ControllerSettings()
        self.evaluator = evaluator or HealthEvaluator()
        self.machine = machine or RolloutStateMachine()
        self.metrics = metrics or RolloutMetricsExporter()
        self.clock = clock or utcnow

        backoff = sleep or asyncio.sleep
        self.adapter_retry = RetryPolicy(
            self.settings.retry,
            timeout_seconds=self.settings.adapter_timeout_seconds,
            sleep=backoff,
            on_failure=self._on_adapter_failure,
        )
        self.store_retry = RetryPolicy(
            self.settings.retry,
            timeout_seconds=self.settings.store_timeout_seconds,
            sleep=backoff,
            on_failure=self._on_adapter_failure,
        )

        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._wake: dict[str, asyncio.Event] = {}
        self._abort_flags: dict[str, str] = {}
        self._running = False

    @classmethod
    def from_settings(cls, settings: ControllerSettings) -> "RolloutController":
        """
        Build a controller with HTTP adapters and a JSON file store.

        Raises:
            ConfigError: If the gateway or router endpoint is not configured
        """
        if settings.metrics_gateway is None or settings.traffic_router is None:
            raise ConfigError(
                "metrics_gateway and traffic_router must be configured",
                details={
                    "metrics_gateway": settings.metrics_gateway is not None,
                    "traffic_router": settings.traffic_router is not None,
                },
            )
        timeout = settings.adapter_timeout_seconds
        return cls(
            store=JsonFileRunStore(settings.state_dir),
            gateway=HttpMetricsGateway.from_settings(settings.metrics_gateway, timeout),
            router=HttpTrafficRouter.from_settings(settings.traffic_router, timeout),
            settings=settings,
        )

    @property
    def running(self) -> bool:
        return self._running

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> list[str]:
        """
        Start the controller and resume every persisted active run.

        Returns:
            Ids of the recovered runs
        """
        self._running = True
        runs = await self._store_call(self.store.list_runs, True, operation="list_runs")
        for run in runs:
            logger.info(
                f"Recovering run {run.run_id} in phase {run.phase.value} at step {run.step_index}"
            )
            self._spawn(run.run_id)
        logger.info(f"Controller started with {len(runs)} active run(s)")
        return [run.run_id for run in runs]

    async def stop(self) -> None:
        """Cancel all run loops and close the adapters. Persisted state is left untouched."""
        self._running = False
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        await self.gateway.close()
        await self.router.close()
        logger.info("Controller stopped")

    def wake(self, run_id: str) -> None:
        """Make a run's loop tick immediately."""
        event = self._wake.get(run_id)
        if event is not None:
            event.set()

    # =========================================================================
    # Operations
    # =========================================================================

    async def start_rollout(self, plan: RolloutPlan | dict[str, Any]) -> str:
        """
        Create a run for ``plan`` and schedule it.

        Args:
            plan: Validated plan or raw plan mapping

        Returns:
            New run id

        Raises:
            ConfigError: If a raw plan fails validation
            ConflictError: If the candidate already has an active run
        """
        if not isinstance(plan, RolloutPlan):
            plan = validate_config(plan, "plan")
        run = RolloutRun.create(plan, self.clock())
        try:
            await self._store_call(self.store.create, run, operation="create")
        except PersistenceError:
            # a timed-out attempt may still have written the record
            if not await self._exists(run.run_id):
                raise
            logger.warning(f"Run {run.run_id} was persisted by a timed-out create")
        logger.info(
            f"Started run {run.run_id}: {plan.baseline_version} -> {plan.candidate_version} "
            f"over {plan.num_steps} step(s)"
        )
        if self._running:
            self._spawn(run.run_id)
        return run.run_id

    async def get_status(self, run_id: str) -> RolloutRun:
        """
        Snapshot of a run as last persisted. Never takes the run's lock.

        Raises:
            RunNotFoundError: If the run does not exist
            PersistenceError: If the store could not be read in time
        """
        return await self._load(run_id)

    async def list_runs(self, active_only: bool = False) -> list[RolloutRun]:
        """List runs, optionally only the non-terminal ones."""
        return await self._store_call(self.store.list_runs, active_only, operation="list_runs")

    async def abort_rollout(self, run_id: str, reason: str = "operator request") -> AbortAck:
        """
        Abort a run: persist the request and the move to ROLLING_BACK, then
        wake the run's loop to restore the baseline split.

        A tick in flight finishes its current adapter call and honours the
        abort at its next stage boundary.

        Raises:
            RunNotFoundError: If the run does not exist
            InvalidStateError: If the run is finished, rolling back or already aborted
        """
        run = await self._load(run_id)
        if run_id in self._abort_flags:
            raise InvalidStateError(f"Run {run_id} was already aborted")
        _check_abortable(run)

        self._abort_flags[run_id] = reason
        try:
            async with self._lock_for(run_id):
                run = await self._load(run_id)
                if not run.abort_requested:
                    _check_abortable(run)
                    transition = _mark_aborted(self.machine, run, reason, self.clock())
                    await self._commit(run, transition)
        finally:
            self._abort_flags.pop(run_id, None)

        logger.warning(f"Run {run_id} aborted: {reason}")
        self.wake(run_id)
        return AbortAck(
            run_id=run_id, phase=run.phase, reason=reason, requested_at=self.clock()
        )

    async def run_until_terminal(
        self, run_id: str, on_tick: Callable[[RolloutRun], Any] | None = None
    ) -> RolloutRun:
        """
        Tick a run in the foreground until it finishes.

        Args:
            run_id: Run to drive
            on_tick: Called with the snapshot after every tick

        Returns:
            Terminal snapshot
        """
        wake = self._wake.setdefault(run_id, asyncio.Event())
        while True:
            try:
                snapshot = await self.tick(run_id)
            except RunNotFoundError:
                raise
            except RolloutError as e:
                logger.error(f"Tick of run {run_id} failed: {e}")
                snapshot = await self.get_status(run_id)
            if on_tick is not None:
                on_tick(snapshot)
            if snapshot.is_terminal:
                self._forget(run_id)
                return snapshot
            await self._wait(wake)

    # =========================================================================
    # Tick
    # =========================================================================

    async def tick(self, run_id: str) -> RolloutRun:
        """
        Run one tick of ``run_id`` and return a snapshot of the result.

        Stages are executed back to back until the run has to wait for time
        to pass (or for an adapter to recover).
        """
        async with self._lock_for(run_id):
            run = await self._load(run_id)
            for _ in range(MAX_STAGES_PER_TICK):
                if run.is_terminal or not await self._advance(run):
                    break
            return run.snapshot()

    async def _advance(self, run: RolloutRun) -> bool:
        """Execute the next stage. Returns whether another stage may follow."""
        now = self.clock()

        reason = self._abort_flags.get(run.run_id)
        if (
            reason is not None
            and not run.abort_requested
            and run.phase != RolloutPhase.ROLLING_BACK
        ):
            await self._commit(run, _mark_aborted(self.machine, run, reason, now))
            return True

        transition = self.machine.check_timeout(run, now)
        if transition is not None:
            await self._commit(run, transition)
            return True

        if run.phase == RolloutPhase.PENDING:
            await self._commit(run, self.machine.begin(run, now))
            return True

        split = self.machine.pending_split(run)
        if split is not None:
            return await self._apply_split(run, split)

        if run.phase == RolloutPhase.ADVANCING:
            if not self.machine.ready_for_evaluation(run, now):
                return False
            await self._commit(run, self.machine.enter_holding(run, now))
            return True

        if run.phase == RolloutPhase.HOLDING:
            return await self._evaluate(run)

        return False

    async def _apply_split(self, run: RolloutRun, split: TrafficSplit) -> bool:
        try:
            ack = await self.adapter_retry.call(
                self.router.set_weights,
                split,
                operation="set_weights",
                adapter=self.router.name,
            )
            if not ack.matches(split):
                raise AdapterError(
                    f"Router applied {ack.baseline_pct}/{ack.candidate_pct}, "
                    f"expected {split.baseline_pct}/{split.candidate_pct}",
                    adapter=self.router.name,
                )
        except AdapterError as e:
            run.last_error = str(e)
            if run.phase == RolloutPhase.ROLLING_BACK:
                logger.error(f"Run {run.run_id}: baseline split not applied, retrying next tick")
                await self._commit(run, None)
                return False
            transition = self.machine.begin_rollback(
                run, ReasonCode.ROUTER_UNAVAILABLE.value, self.clock()
            )
            await self._commit(run, transition)
            return True

        transition = self.machine.confirm_split(run, split, self.clock())
        await self._commit(run, transition)
        self.metrics.record_weight(run.run_id, run.candidate_version, split.candidate_pct)
        return True

    async def _evaluate(self, run: RolloutRun) -> bool:
        plan = run.plan
        window_start = run.step_started_at
        assert window_start is not None
        try:
            samples = await self.adapter_retry.call(
                self.gateway.fetch_samples,
                plan.candidate_version,
                plan.segment,
                window_start,
                operation="fetch_samples",
                adapter=self.gateway.name,
            )
        except AdapterError as e:
            run.last_error = str(e)
            verdict = self.evaluator.unavailable(run.step_index, self.clock())
        else:
            verdict = self.evaluator.evaluate(
                plan, run.step_index, samples, window_start, self.clock()
            )

        if run.run_id in self._abort_flags:
            # abort arrived while the gateway call was in flight
            return True

        transition = self.machine.apply_verdict(run, verdict, verdict.evaluated_at)
        await self._commit(run, transition)
        self.metrics.record_verdict(
            run.candidate_version, verdict.outcome.value, verdict.reason.value
        )
        return transition is not None

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _commit(self, run: RolloutRun, transition: PhaseTransition | None) -> None:
        await self._store_call(self.store.save, run, operation="save")
        if transition is not None:
            self.metrics.record_transition(
                run.run_id,
                run.candidate_version,
                transition.from_phase.value,
                transition.to_phase.value,
            )
            self.metrics.record_step(run.run_id, run.candidate_version, run.step_index)

    async def _load(self, run_id: str) -> RolloutRun:
        return await self._store_call(self.store.get, run_id, operation="get")

    async def _exists(self, run_id: str) -> bool:
        try:
            await self._load(run_id)
        except RunNotFoundError:
            return False
        return True

    async def _store_call(self, func: Callable[..., Any], *args: Any, operation: str) -> Any:
        try:
            return await self.store_retry.call(
                asyncio.to_thread, func, *args, operation=f"store.{operation}", adapter="store"
            )
        except PersistenceError:
            raise
        except AdapterError as e:
            raise PersistenceError(str(e)) from e

    def _lock_for(self, run_id: str) -> asyncio.Lock:
        if run_id not in self._locks:
            self._locks[run_id] = asyncio.Lock()
        return self._locks[run_id]

    def _on_adapter_failure(self, operation: str, error: AdapterError) -> None:
        self.metrics.record_adapter_failure(operation)

    def _spawn(self, run_id: str) -> None:
        task = self._tasks.get(run_id)
        if task is not None and not task.done():
            return
        self._wake.setdefault(run_id, asyncio.Event())
        self._tasks[run_id] = asyncio.create_task(
            self._run_loop(run_id), name=f"rollout-{run_id}"
        )

    async def _wait(self, wake: asyncio.Event) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(wake.wait(), timeout=self.settings.tick_interval_seconds)
        wake.clear()

    async def _run_loop(self, run_id: str) -> None:
        wake = self._wake[run_id]
        try:
            while True:
                try:
                    snapshot = await self.tick(run_id)
                except RunNotFoundError:
                    logger.error(f"Run {run_id} disappeared from the store, stopping its loop")
                    self._forget(run_id)
                    return
                except RolloutError as e:
                    logger.error(f"Tick of run {run_id} failed: {e}")
                else:
                    if snapshot.is_terminal:
                        logger.info(
                            f"Run {run_id} finished: {snapshot.phase.value}"
                            f"{' (' + snapshot.failure_reason + ')' if snapshot.failure_reason else ''}"
                        )
                        self._forget(run_id)
                        return
                await self._wait(wake)
        finally:
            if self._tasks.get(run_id) is asyncio.current_task():
                del self._tasks[run_id]

    def _forget(self, run_id: str) -> None:
        """Drop the bookkeeping of a finished run."""
        self._locks.pop(run_id, None)
        self._wake.pop(run_id, None)
        self.metrics.forget_run(run_id)
