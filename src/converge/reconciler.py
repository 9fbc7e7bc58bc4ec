"""Reconciliation loop: drive a target until it converges or fails.

State machine per target:

    Pending -> Diffing -> Applying -> { Converged | Retrying | Failed }
                  ^                         |
                  +------ backoff ----------+          (+ Cancelled)

Each pass:
1. Observe every declared object plus every object recorded in the last
   successful snapshot (so deleted declarations can be cleaned up)
2. Diff against the desired graph; an all-NoOp change set means Converged
3. Apply the change set in dependency order
4. Re-enter Diffing: immediately after a clean apply to verify it, after an
   exponential backoff when something failed transiently

Only this loop decides when to stop. It owns the retry budget (max_attempts
apply passes), excludes permanently failed objects from later passes, writes
the snapshot when the target converges, and records one ReconciliationRun
per pass.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from .client import ClusterAPIError, PermanentAPIError, TransientAPIError
from .config import BACKOFF_JITTER_RATIO, MAX_BACKOFF_SECONDS
from .context import ReconcileContext
from .diff import ChangeSet, compute_changeset, compute_destroy_changeset
from .diff_normalizer import DiffNormalizer
from .executor import ActionResult, ExecutionReport, Executor, Outcome
from .graph import GraphError, ResourceGraph, build_graph
from .ignore_rules import IgnoreRulesConfig, IgnoreRulesError, IgnoreRulesEvaluator
from .models import ObservedState, ResourceIdentity
from .provenance import ProvenanceLogger, ResourceOutcome, new_run
from .spec_loader import SpecLoadError, load_declarations
from .state_store import StateStore, StateStoreError

logger = logging.getLogger(__name__)

# Circuit breaker constants (watch mode)
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300  # 5 minutes


class ReconcilePhase(str, Enum):
    """States of a reconciliation target."""

    PENDING = "Pending"
    DIFFING = "Diffing"
    APPLYING = "Applying"
    CONVERGED = "Converged"
    RETRYING = "Retrying"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class ResourceStatus(str, Enum):
    """Terminal status of one object in the final report."""

    CONVERGED = "Converged"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    CANCELLED = "Cancelled"


class ChangeLimitExceeded(Exception):
    """Raised when a pass would change more objects than allowed."""

    pass


@dataclass(frozen=True)
class ResourceReport:
    """Final status of one object."""

    identity: ResourceIdentity
    status: ResourceStatus
    attempts: int = 0
    error: str | None = None
    blocked_by: tuple[str, ...] = ()


@dataclass
class ReconcileResult:
    """Result of reconciling one target."""

    target: str
    phase: ReconcilePhase = ReconcilePhase.PENDING
    attempts: int = 0
    resources: list[ResourceReport] = field(default_factory=list)
    changes_applied: int = 0
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.phase == ReconcilePhase.CONVERGED

    @property
    def exit_code(self) -> int:
        """Process exit status: 0 converged, 130 cancelled, 1 otherwise."""
        match self.phase:
            case ReconcilePhase.CONVERGED:
                return 0
            case ReconcilePhase.CANCELLED:
                return 130
            case _:
                return 1

    def status_of(self, identity: ResourceIdentity) -> ResourceStatus | None:
        for report in self.resources:
            if report.identity == identity:
                return report.status
        return None


Planner = Callable[[ResourceGraph, ObservedState], ChangeSet]


class Reconciler:
    """Drives one reconciliation target to convergence.

    All collaborators come from the ReconcileContext; nothing is read from
    process-wide state, so independent targets can be reconciled side by
    side in one process.
    """

    def __init__(
        self,
        context: ReconcileContext,
        store: StateStore | None = None,
        *,
        provenance: ProvenanceLogger | None = None,
    ) -> None:
        """Initialize reconciler.

        Raises:
            IgnoreRulesError: If the configured rules file is invalid.
        """
        self._context = context
        self._config = context.config
        self._store = store
        self._provenance = provenance or ProvenanceLogger(store)

        rules_config = (
            IgnoreRulesConfig.from_file(self._config.ignore_rules_file)
            if self._config.ignore_rules_file is not None
            else IgnoreRulesConfig()
        )
        enable_defaults = self._config.enable_default_rules and rules_config.enable_default_rules
        rules_config.enable_default_rules = enable_defaults
        self._ignore_rules = IgnoreRulesEvaluator(rules_config)
        self._normalizer = DiffNormalizer(
            rules=rules_config.normalization_rules,
            enable_default_rules=enable_defaults,
        )

        self._shutdown_event = asyncio.Event()
        self._phase = ReconcilePhase.PENDING

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def phase(self) -> ReconcilePhase:
        return self._phase

    def load_graph(self) -> ResourceGraph:
        """Load declarations and build the resource graph.

        Raises:
            SpecLoadError: If declarations cannot be loaded.
            GraphError: If references are unknown or cyclic.
        """
        resources = load_declarations(self._config.manifests_dir, self._config.variables)
        return build_graph(resources)

    def load_snapshot(self) -> ObservedState:
        """Last successful observation, or an empty one."""
        if self._store is None:
            return ObservedState()
        return self._store.load_snapshot() or ObservedState()

    async def observe(self, graph: ResourceGraph, snapshot: ObservedState) -> ObservedState:
        """Read every declared object and every previously managed object.

        Raises:
            TransientAPIError: If the cluster cannot be read right now.
        """
        targets: dict[ResourceIdentity, str] = {}
        for identity in snapshot.identities():
            targets[identity] = str((snapshot.get(identity) or {}).get("apiVersion", ""))
        for address in graph.topological_order:
            resource = graph.get(address)
            targets[resource.identity] = resource.api_version

        semaphore = asyncio.Semaphore(self._config.concurrency_limit)
        timeout = self._config.api_timeout_seconds

        async def read(identity: ResourceIdentity, api_version: str) -> dict[str, Any] | None:
            async with semaphore:
                try:
                    return await asyncio.wait_for(
                        self._context.client.read(identity, api_version), timeout=timeout
                    )
                except TimeoutError as e:
                    raise TransientAPIError(f"read {identity} timed out after {timeout}s") from e
                except PermanentAPIError as e:
                    # Unreadable objects (e.g. a kind whose CRD is not installed yet) count as absent
                    logger.warning(
                        "Object could not be read, treating as absent",
                        extra={"identity": str(identity), "error": str(e)},
                    )
                    return None

        identities = list(targets)
        objects = await asyncio.gather(*(read(i, targets[i]) for i in identities))
        observed = ObservedState(
            {identity: obj for identity, obj in zip(identities, objects, strict=True) if obj is not None}
        )
        logger.debug(
            "Observed cluster state",
            extra={"target": self._config.target, "read": len(identities), "present": len(observed)},
        )
        return observed

    def diff(self, graph: ResourceGraph, observed: ObservedState) -> ChangeSet:
        return compute_changeset(
            graph, observed, normalizer=self._normalizer, ignore_rules=self._ignore_rules
        )

    async def plan(self) -> ChangeSet:
        """Diff only: what would the next pass do?"""
        graph = self.load_graph()
        observed = await self.observe(graph, self.load_snapshot())
        return self.diff(graph, observed)

    async def plan_destroy(self) -> ChangeSet:
        graph = self.load_graph()
        observed = await self.observe(graph, self.load_snapshot())
        return compute_destroy_changeset(graph, observed)

    async def reconcile(self) -> ReconcileResult:
        """Drive the target to its declared state.

        Raises:
            SpecLoadError: If declarations cannot be loaded.
            GraphError: If the graph cannot be built.
            StateStoreError: If persisted state is corrupt.
        """
        graph = self.load_graph()
        return await self._converge(graph, self.diff, keep=graph.identities())

    async def destroy(self) -> ReconcileResult:
        """Delete every object of the target, dependents first."""
        graph = self.load_graph()
        return await self._converge(graph, compute_destroy_changeset, keep=set())

    async def _converge(
        self,
        graph: ResourceGraph,
        planner: Planner,
        keep: set[ResourceIdentity],
    ) -> ReconcileResult:
        result = ReconcileResult(target=self._config.target)
        snapshot = self.load_snapshot()

        attempts: Counter[ResourceIdentity] = Counter()
        failed: dict[ResourceIdentity, ActionResult] = {}
        # Skipped because something they depend on failed permanently
        stranded: dict[ResourceIdentity, ActionResult] = {}
        last_results: dict[ResourceIdentity, ActionResult] = {}
        changeset: ChangeSet | None = None
        observe_error: Exception | None = None

        logger.info(
            "Starting reconciliation",
            extra={
                "target": self._config.target,
                "resources": len(graph),
                "max_attempts": self._config.max_attempts,
            },
        )

        while True:
            if self._context.cancelled:
                self._set_phase(result, ReconcilePhase.CANCELLED)
                break

            pass_started = datetime.now(UTC)
            self._set_phase(result, ReconcilePhase.DIFFING)

            try:
                observed = await self.observe(graph, snapshot)
                observe_error = None
            except ClusterAPIError as e:
                observe_error = e
                result.attempts += 1
                logger.warning(
                    "Observation failed",
                    extra={"target": self._config.target, "attempt": result.attempts, "error": str(e)},
                )
                phase = (
                    ReconcilePhase.RETRYING
                    if isinstance(e, TransientAPIError) and result.attempts < self._config.max_attempts
                    else ReconcilePhase.FAILED
                )
                self._record(result.attempts, phase, pass_started, error=str(e))
                self._set_phase(result, phase)
                if phase == ReconcilePhase.FAILED:
                    result.error = e
                    break
                await self._backoff(result.attempts)
                continue

            changeset = planner(graph, observed)

            if changeset.is_converged:
                self._set_phase(result, ReconcilePhase.CONVERGED)
                self._record(result.attempts, ReconcilePhase.CONVERGED, pass_started, changeset)
                self._save_snapshot(observed, keep)
                break

            pending = changeset.without(set(failed) | set(stranded))
            if pending.is_converged:
                # Only permanently failed objects and their dependents are left
                self._set_phase(result, ReconcilePhase.FAILED)
                self._record(result.attempts, ReconcilePhase.FAILED, pass_started, changeset)
                break

            if result.attempts >= self._config.max_attempts:
                logger.error(
                    "Retry budget exhausted",
                    extra={"target": self._config.target, "attempts": result.attempts},
                )
                self._set_phase(result, ReconcilePhase.FAILED)
                self._record(
                    result.attempts, ReconcilePhase.FAILED, pass_started, changeset,
                    error="retry budget exhausted",
                )
                break

            actionable = len(pending.actionable)
            if actionable > self._config.max_changes_per_pass:
                result.error = ChangeLimitExceeded(
                    f"Pass would change {actionable} objects, limit is "
                    f"{self._config.max_changes_per_pass}"
                )
                logger.error(str(result.error), extra={"target": self._config.target})
                self._set_phase(result, ReconcilePhase.FAILED)
                self._record(
                    result.attempts, ReconcilePhase.FAILED, pass_started, changeset,
                    error=str(result.error),
                )
                break

            result.attempts += 1
            self._set_phase(result, ReconcilePhase.APPLYING)
            report = await Executor(self._context, graph).execute(
                pending, blocked=frozenset(failed) | frozenset(stranded)
            )
            result.changes_applied += report.applied

            for action_result in report.results:
                last_results[action_result.identity] = action_result
                if action_result.started_at is not None:
                    attempts[action_result.identity] += 1
                if action_result.outcome == Outcome.FAILED:
                    failed[action_result.identity] = action_result
                elif action_result.outcome == Outcome.SKIPPED and self._is_stranded(
                    action_result, failed, stranded
                ):
                    stranded[action_result.identity] = action_result

            next_phase = self._phase_after(report, result.attempts)
            self._record(
                result.attempts, next_phase, pass_started, pending, report=report, attempts=attempts
            )
            self._set_phase(result, next_phase)

            if next_phase == ReconcilePhase.CANCELLED:
                break
            if next_phase == ReconcilePhase.RETRYING:
                if report.has_conflict:
                    logger.info(
                        "Observed state changed during apply, re-diffing",
                        extra={"target": self._config.target},
                    )
                await self._backoff(result.attempts)

        result.resources = self._final_report(
            result.phase, graph, changeset, failed, stranded, last_results, attempts, observe_error
        )
        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    @staticmethod
    def _is_stranded(
        result: ActionResult,
        failed: dict[ResourceIdentity, ActionResult],
        stranded: dict[ResourceIdentity, ActionResult],
    ) -> bool:
        """True if every prerequisite that blocked this change will never succeed."""
        terminal = {str(i) for i in failed} | {str(i) for i in stranded}
        return bool(result.blocked_by) and all(b in terminal for b in result.blocked_by)

    def _phase_after(self, report: ExecutionReport, attempt: int) -> ReconcilePhase:
        if self._context.cancelled or report.with_outcome(Outcome.CANCELLED):
            return ReconcilePhase.CANCELLED
        if report.has_retryable and attempt < self._config.max_attempts:
            return ReconcilePhase.RETRYING
        # Re-diff to verify the apply, or to report what is left
        return ReconcilePhase.DIFFING

    async def _backoff(self, attempt: int) -> None:
        """Exponential backoff with jitter; returns early on cancellation."""
        if self._config.backoff_seconds <= 0:
            return
        backoff = min(self._config.backoff_seconds * (2 ** (attempt - 1)), MAX_BACKOFF_SECONDS)
        wait_time = backoff + random.uniform(0, backoff * BACKOFF_JITTER_RATIO)

        logger.warning(
            "Pass incomplete, retrying",
            extra={
                "target": self._config.target,
                "attempt": attempt,
                "max_attempts": self._config.max_attempts,
                "wait_seconds": wait_time,
            },
        )
        try:
            await asyncio.wait_for(self._context.cancel_event.wait(), timeout=wait_time)
        except TimeoutError:
            pass

    def _save_snapshot(self, observed: ObservedState, keep: set[ResourceIdentity]) -> None:
        if self._store is None:
            return
        self._store.save_snapshot(
            ObservedState({i: obj for i, obj in observed.objects.items() if i in keep})
        )

    def _set_phase(self, result: ReconcileResult, phase: ReconcilePhase) -> None:
        if phase != self._phase:
            logger.debug(
                "Phase transition",
                extra={"target": self._config.target, "from": self._phase.value, "to": phase.value},
            )
        self._phase = phase
        result.phase = phase

    def _record(
        self,
        attempt: int,
        phase: ReconcilePhase,
        started_at: datetime,
        changeset: ChangeSet | None = None,
        *,
        report: ExecutionReport | None = None,
        attempts: Counter[ResourceIdentity] | None = None,
        error: str | None = None,
    ) -> None:
        outcomes: list[ResourceOutcome] = []
        if report is not None:
            for r in report.results:
                outcomes.append(
                    ResourceOutcome(
                        identity=str(r.identity),
                        action=r.action.value,
                        outcome=r.outcome.value,
                        attempts=(attempts or Counter())[r.identity],
                        error=r.error,
                        blocked_by=r.blocked_by,
                    )
                )
        run = new_run(
            target=self._config.target,
            attempt=attempt,
            phase=phase.value,
            started_at=started_at,
            outcomes=outcomes,
            change_counts=changeset.counts() if changeset is not None else None,
            error=error,
        )
        try:
            self._provenance.record(run)
        except StateStoreError as e:
            # The audit trail must not turn a converged target into a failed one
            logger.error("Failed to record run", extra={"error": str(e)})

    def _final_report(
        self,
        phase: ReconcilePhase,
        graph: ResourceGraph,
        changeset: ChangeSet | None,
        failed: dict[ResourceIdentity, ActionResult],
        stranded: dict[ResourceIdentity, ActionResult],
        last_results: dict[ResourceIdentity, ActionResult],
        attempts: Counter[ResourceIdentity],
        observe_error: Exception | None,
    ) -> list[ResourceReport]:
        if changeset is None:
            status = ResourceStatus.CANCELLED if phase == ReconcilePhase.CANCELLED else ResourceStatus.FAILED
            return [
                ResourceReport(
                    identity=graph.get(address).identity,
                    status=status,
                    error=str(observe_error) if observe_error else None,
                )
                for address in graph.topological_order
            ]

        reports: list[ResourceReport] = []
        for change in changeset:
            identity = change.identity
            last = last_results.get(identity)
            if identity in failed:
                status, error = ResourceStatus.FAILED, failed[identity].error
            elif identity in stranded:
                status, error = ResourceStatus.SKIPPED, None
            elif not change.is_actionable:
                status, error = ResourceStatus.CONVERGED, None
            elif last is None:
                status = ResourceStatus.CANCELLED if phase == ReconcilePhase.CANCELLED else ResourceStatus.FAILED
                error = None
            elif last.outcome == Outcome.SKIPPED:
                status, error = ResourceStatus.SKIPPED, None
            elif last.outcome == Outcome.CANCELLED:
                status, error = ResourceStatus.CANCELLED, None
            elif last.outcome == Outcome.SUCCEEDED and phase == ReconcilePhase.CANCELLED:
                status, error = ResourceStatus.CONVERGED, None
            else:
                status, error = ResourceStatus.FAILED, last.error or "still differs from declared state"
            reports.append(
                ResourceReport(
                    identity=identity,
                    status=status,
                    attempts=attempts[identity],
                    error=error,
                    blocked_by=last.blocked_by if last is not None else (),
                )
            )
        return reports

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "target": result.target,
            "phase": result.phase.value,
            "attempts": result.attempts,
            "duration_seconds": result.duration_seconds,
            "changes_applied": result.changes_applied,
            "statuses": dict(Counter(r.status.value for r in result.resources)),
        }
        if result.error is not None:
            extra["error"] = str(result.error)

        if result.phase == ReconcilePhase.CONVERGED:
            logger.info("Reconciliation converged", extra=extra)
        elif result.phase == ReconcilePhase.CANCELLED:
            logger.warning("Reconciliation cancelled", extra=extra)
        else:
            logger.error("Reconciliation failed", extra=extra)

    async def run(self) -> None:
        """Reconcile on an interval until shutdown.

        Implements circuit breaker pattern: after MAX_CONSECUTIVE_FAILURES
        failed runs the circuit opens and reconciliation pauses for
        CIRCUIT_BREAKER_RESET_SECONDS.
        """
        logger.info(
            "Starting watch loop",
            extra={
                "target": self._config.target,
                "interval_seconds": self._config.watch_interval_seconds,
            },
        )

        while not self._shutdown_event.is_set():
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "target": self._config.target,
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    await self._wait_for_shutdown(
                        min(remaining, self._config.watch_interval_seconds)
                    )
                    continue

                logger.info(
                    "Circuit breaker reset, resuming reconciliation",
                    extra={"target": self._config.target},
                )
                self._circuit_open_until = None
                self._consecutive_failures = 0

            succeeded = await self._run_once()
            if self._context.cancelled:
                break

            if succeeded:
                self._consecutive_failures = 0
            else:
                self._consecutive_failures += 1
                if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    self._circuit_open_until = datetime.now(UTC) + timedelta(
                        seconds=CIRCUIT_BREAKER_RESET_SECONDS
                    )
                    logger.error(
                        "Circuit breaker opened after consecutive failures",
                        extra={
                            "target": self._config.target,
                            "consecutive_failures": self._consecutive_failures,
                            "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                        },
                    )

            await self._wait_for_shutdown(self._config.watch_interval_seconds)

        logger.info("Watch loop stopped", extra={"target": self._config.target})

    async def _run_once(self) -> bool:
        try:
            result = await self.reconcile()
        except (SpecLoadError, GraphError, StateStoreError, IgnoreRulesError) as e:
            logger.error(
                "Reconciliation could not start",
                extra={"target": self._config.target, "error": str(e)},
            )
            return False
        return result.success

    async def _wait_for_shutdown(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except TimeoutError:
            pass

    def shutdown(self) -> None:
        """Stop the watch loop and cancel the pass in progress."""
        logger.info("Shutdown requested", extra={"target": self._config.target})
        self._shutdown_event.set()
        self._context.cancel()
