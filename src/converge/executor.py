"""Dependency-ordered execution of a change set.

Every change gets its own asyncio task. A task first waits on the completion
events of its prerequisites, so ordering follows graph edges only and
independent subtrees run side by side. A semaphore bounds how many API calls
are in flight.

Failure containment:
- a failed prerequisite blocks the change; it is reported Skipped and no API
  call is made for it
- siblings that do not depend on the failure keep going
- `after` edges only order a change (orphan deletes wait for the applies);
  their outcome never blocks it

Cancellation (ReconcileContext.cancel) stops new actions from starting;
calls already sent to the API server run to completion.

SECURITY: Every API call is bounded by the configured timeout.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from .client import ClusterAPIError, DriftConflictError, TransientAPIError
from .context import ReconcileContext
from .diff import ChangeAction, ChangeSet, ResourceChange, resolve_deferred
from .graph import ResourceGraph
from .models import ResourceIdentity

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Delay between reads while waiting for a replaced object to disappear
REPLACE_POLL_INTERVAL_SECONDS = 1.0


class Outcome(str, Enum):
    """Result of one change within a pass."""

    SUCCEEDED = "Succeeded"
    RETRYABLE = "Retrying"
    CONFLICT = "Conflict"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class ActionResult:
    """What happened to one change."""

    identity: ResourceIdentity
    action: ChangeAction
    outcome: Outcome
    address: str | None = None
    error: str | None = None
    blocked_by: tuple[str, ...] = ()
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def retryable(self) -> bool:
        return self.outcome in (Outcome.RETRYABLE, Outcome.CONFLICT)

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class ExecutionReport:
    """Results of executing one change set, in change set order."""

    results: list[ActionResult] = field(default_factory=list)

    def get(self, identity: ResourceIdentity) -> ActionResult | None:
        for result in self.results:
            if result.identity == identity:
                return result
        return None

    def with_outcome(self, *outcomes: Outcome) -> list[ActionResult]:
        return [r for r in self.results if r.outcome in outcomes]

    @property
    def applied(self) -> int:
        """Number of API mutations that succeeded."""
        return sum(
            1
            for r in self.results
            if r.outcome == Outcome.SUCCEEDED and r.action != ChangeAction.NO_OP
        )

    @property
    def all_succeeded(self) -> bool:
        return all(r.outcome == Outcome.SUCCEEDED for r in self.results)

    @property
    def has_retryable(self) -> bool:
        return any(r.retryable for r in self.results)

    @property
    def has_conflict(self) -> bool:
        return any(r.outcome == Outcome.CONFLICT for r in self.results)


class Executor:
    """Applies a ChangeSet against the cluster.

    The executor never retries on its own; it reports retryable outcomes
    and leaves the retry budget to the reconciliation loop.
    """

    def __init__(self, context: ReconcileContext, graph: ResourceGraph) -> None:
        self._context = context
        self._graph = graph
        self._client = context.client
        self._timeout = context.config.api_timeout_seconds

    async def execute(
        self,
        changeset: ChangeSet,
        blocked: frozenset[ResourceIdentity] = frozenset(),
    ) -> ExecutionReport:
        """Run every change, respecting prerequisites.

        Args:
            changeset: Changes to apply.
            blocked: Identities that already failed permanently in an earlier
                pass; changes depending on them are skipped.

        Returns:
            ExecutionReport with one result per change.
        """
        self._graph.reset_slots()
        semaphore = asyncio.Semaphore(self._context.config.concurrency_limit)
        done: dict[ResourceIdentity, asyncio.Event] = {c.identity: asyncio.Event() for c in changeset}
        results: dict[ResourceIdentity, ActionResult] = {}

        logger.info(
            "Executing change set",
            extra={
                "changes": len(changeset.actionable),
                "concurrency_limit": self._context.config.concurrency_limit,
            },
        )

        async def run(change: ResourceChange) -> None:
            try:
                results[change.identity] = await self._run_change(
                    change, semaphore, done, results, blocked
                )
            finally:
                done[change.identity].set()

        await asyncio.gather(*(run(change) for change in changeset))
        return ExecutionReport([results[c.identity] for c in changeset])

    async def _run_change(
        self,
        change: ResourceChange,
        semaphore: asyncio.Semaphore,
        done: dict[ResourceIdentity, asyncio.Event],
        results: dict[ResourceIdentity, ActionResult],
        blocked: frozenset[ResourceIdentity],
    ) -> ActionResult:
        prerequisites = sorted(
            (p for p in change.prerequisites if p in done or p in blocked),
            key=lambda i: i.sort_key,
        )
        waits = sorted(
            (p for p in change.prerequisites | change.after if p in done),
            key=lambda i: i.sort_key,
        )
        for identity in waits:
            await done[identity].wait()

        cancelled_by = [
            str(p) for p in prerequisites
            if p in results and results[p].outcome == Outcome.CANCELLED
        ]
        if cancelled_by:
            return self._result(change, Outcome.CANCELLED, blocked_by=tuple(cancelled_by))

        failed_by = [
            str(p) for p in prerequisites
            if p in blocked or p not in results or results[p].outcome != Outcome.SUCCEEDED
        ]
        if failed_by:
            logger.warning(
                "Skipping change, prerequisite did not succeed",
                extra={"identity": str(change.identity), "blocked_by": failed_by},
            )
            return self._result(change, Outcome.SKIPPED, blocked_by=tuple(failed_by))

        if change.action == ChangeAction.NO_OP:
            self._publish(change, change.observed)
            return self._result(change, Outcome.SUCCEEDED)

        if self._context.cancelled:
            return self._result(change, Outcome.CANCELLED)

        async with semaphore:
            # Cancellation may have arrived while waiting for a worker
            if self._context.cancelled:
                return self._result(change, Outcome.CANCELLED)

            started_at = datetime.now(UTC)
            try:
                obj = await self._apply(change)
            except DriftConflictError as e:
                return self._failure(change, Outcome.CONFLICT, e, started_at)
            except TransientAPIError as e:
                return self._failure(change, Outcome.RETRYABLE, e, started_at)
            except ClusterAPIError as e:
                return self._failure(change, Outcome.FAILED, e, started_at)
            except Exception as e:
                logger.exception(
                    "Unexpected error applying change",
                    extra={"identity": str(change.identity), "action": change.action.value},
                )
                return self._failure(change, Outcome.FAILED, e, started_at)

        self._publish(change, obj)
        logger.info(
            "Applied change",
            extra={"identity": str(change.identity), "action": change.action.value},
        )
        return self._result(change, Outcome.SUCCEEDED, started_at=started_at)

    async def _apply(self, change: ResourceChange) -> dict[str, Any] | None:
        """Perform the API calls for one change; returns the resulting object."""
        identity, api_version = change.identity, change.api_version

        match change.action:
            case ChangeAction.CREATE:
                payload = await self._resolved_payload(change)
                return await self._call(
                    self._client.create(identity, api_version, payload), "create", identity
                )
            case ChangeAction.UPDATE:
                payload = await self._resolved_payload(change)
                return await self._call(
                    self._client.update(identity, api_version, payload), "update", identity
                )
            case ChangeAction.REQUIRES_REPLACE:
                payload = await self._resolved_payload(change)
                await self._call(self._client.delete(identity, api_version), "delete", identity)
                await self._call(self._wait_absent(change), "wait for deletion", identity)
                # The object is absent from here on; the next observation sees a Create
                return await self._call(
                    self._client.create(identity, api_version, payload), "create", identity
                )
            case ChangeAction.DELETE:
                await self._call(self._client.delete(identity, api_version), "delete", identity)
                return None
            case _:
                return change.observed

    async def _resolved_payload(self, change: ResourceChange) -> dict[str, Any]:
        """Substitute Deferred values from producers' output slots."""
        payload = change.payload or {}
        if not change.has_deferred or change.address is None:
            return payload

        outputs: dict[str, dict[str, Any]] = {}
        for ref in self._graph.references_from(change.address):
            slot = self._graph.slot(ref.producer)
            if slot.is_set:
                outputs[ref.producer] = slot.get()
        try:
            return resolve_deferred(payload, outputs)
        except LookupError as e:
            # The producer may only report the attribute after it settles
            raise TransientAPIError(f"{change.identity}: {e}") from e

    async def _wait_absent(self, change: ResourceChange) -> None:
        while await self._client.read(change.identity, change.api_version) is not None:
            await asyncio.sleep(REPLACE_POLL_INTERVAL_SECONDS)

    async def _call(self, operation: Awaitable[T], operation_name: str, identity: ResourceIdentity) -> T:
        """Await an API call with the configured timeout.

        Raises:
            TransientAPIError: If the call exceeds the timeout.
        """
        try:
            return await asyncio.wait_for(operation, timeout=self._timeout)
        except TimeoutError as e:
            logger.error(
                f"{operation_name} timed out",
                extra={"identity": str(identity), "timeout_seconds": self._timeout},
            )
            raise TransientAPIError(
                f"{operation_name} {identity} timed out after {self._timeout}s"
            ) from e

    def _publish(self, change: ResourceChange, obj: dict[str, Any] | None) -> None:
        if change.address is None or change.action == ChangeAction.DELETE:
            return
        self._graph.slot(change.address).set(obj if obj is not None else change.payload or {})

    def _failure(
        self,
        change: ResourceChange,
        outcome: Outcome,
        error: Exception,
        started_at: datetime,
    ) -> ActionResult:
        log = logger.warning if outcome != Outcome.FAILED else logger.error
        log(
            "Change failed",
            extra={
                "identity": str(change.identity),
                "action": change.action.value,
                "outcome": outcome.value,
                "error": str(error),
            },
        )
        return self._result(change, outcome, error=str(error), started_at=started_at)

    @staticmethod
    def _result(
        change: ResourceChange,
        outcome: Outcome,
        *,
        error: str | None = None,
        blocked_by: tuple[str, ...] = (),
        started_at: datetime | None = None,
    ) -> ActionResult:
        return ActionResult(
            identity=change.identity,
            action=change.action,
            outcome=outcome,
            address=change.address,
            error=error,
            blocked_by=blocked_by,
            started_at=started_at,
            finished_at=datetime.now(UTC) if started_at is not None else None,
        )

