"""Execution scheduler: bounded, dependency-gated edge dispatch.

WHY
───
Promotion runs touch hundreds of (destination, image, digest, tag) slots.
Each one is an independent registry write that may hit rate limits or
flaky networks, and one bad image must not stop the rest. Manifest-list
parents are the exception to independence: verifying a parent only makes
sense once all of its children have landed.

ARCHITECTURE
────────────
::

    EdgeScheduler(factory, max_concurrency, retry, attempt_timeout)
      └── .run(plan, cancel)                 ─ one task per edge
            ├── gate:   await deps' done events (outside the semaphore)
            ├── slot:   async with semaphore
            ├── retry:  RetryContext(ExponentialBackoff) on TransientError
            ├── limit:  run_with_timeout_async per attempt
            └── record: EdgeResult(succeeded | failed | skipped | cancelled)

    RunReport.ok == every edge succeeded and nothing was cancelled

Gating waits happen before a worker slot is taken, so a parent waiting on
its children can never starve those children of slots.

Cancellation (an ``asyncio.Event`` set by the caller, or ``run_deadline``)
stops new dispatch only. In-flight edges run to completion; edges that had
not started are recorded as cancelled, and the report says so.

Example::

    factory = RegistryTransferFactory(client, CopyMode.PULL_PUSH)
    scheduler = EdgeScheduler.from_settings(factory, settings)
    report = await scheduler.run(plan)
    if not report.ok:
        ...
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Protocol

from image_promoter.core.errors import (
    DependencySkipped,
    EdgeExecutionError,
    ErrorContext,
    PromoterError,
    RegistryAccessError,
    RunCancelledError,
)
from image_promoter.core.logging import get_logger
from image_promoter.core.settings import PromoterSettings
from image_promoter.engine.edges import EdgeOp, EdgePlan, PromotionEdge, group_by_destination
from image_promoter.engine.results import EdgeResult, EdgeStatus, RunReport
from image_promoter.engine.retry import ExponentialBackoff, RetryContext, RetryStrategy
from image_promoter.engine.timeout import run_with_timeout_async
from image_promoter.registry.contracts import CopyMode, TransferExecutor
from image_promoter.registry.models import RegistryName

logger = get_logger(__name__)

TransferOperation = Callable[[], Awaitable[None]]


class TransferFactory(Protocol):
    """Builds the concrete operation that applies one edge."""

    def build(self, edge: PromotionEdge, plan: EdgePlan) -> TransferOperation:
        ...


class RegistryTransferFactory:
    """Maps edges onto a ``TransferExecutor``.

    ``mode`` is fixed per run: service-account runs copy registry-side,
    everything else streams through the promoter.
    """

    def __init__(self, executor: TransferExecutor, mode: CopyMode) -> None:
        self.executor = executor
        self.mode = mode

    @classmethod
    def for_credentials(
        cls, executor: TransferExecutor, use_service_account: bool
    ) -> RegistryTransferFactory:
        return cls(executor, CopyMode.DIRECT if use_service_account else CopyMode.PULL_PUSH)

    def build(self, edge: PromotionEdge, plan: EdgePlan) -> TransferOperation:
        match edge.op:
            case EdgeOp.COPY_WITH_TAG:
                return lambda: self.executor.copy(edge, self.mode)
            case EdgeOp.ADD_TAG:
                return lambda: self.executor.add_tag(edge)
            case EdgeOp.VERIFY_PARENT:
                children = plan.children.get(edge, frozenset())
                return lambda: self.executor.verify_parent(edge, children)
        raise ValueError(f"unhandled edge operation {edge.op!r}")


class EdgeScheduler:
    """Runs an edge plan with bounded concurrency.

    Parameters
    ----------
    factory : TransferFactory
        Builds the operation for each edge.
    max_concurrency : int
        Edges in flight at once.
    retry : RetryStrategy | None
        Strategy for transient failures (default: 3 retries, exponential).
    attempt_timeout : float | None
        Deadline for a single attempt.
    run_deadline : float | None
        Seconds after which no new edge is dispatched.
    dry_run : bool
        Report every edge as planned without invoking the factory.
    """

    def __init__(
        self,
        factory: TransferFactory,
        *,
        max_concurrency: int = 10,
        retry: RetryStrategy | None = None,
        attempt_timeout: float | None = None,
        run_deadline: float | None = None,
        dry_run: bool = False,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.factory = factory
        self.max_concurrency = max_concurrency
        self.retry = retry or ExponentialBackoff()
        self.attempt_timeout = attempt_timeout
        self.run_deadline = run_deadline
        self.dry_run = dry_run

    @classmethod
    def from_settings(cls, factory: TransferFactory, settings: PromoterSettings) -> EdgeScheduler:
        return cls(
            factory,
            max_concurrency=settings.max_concurrency,
            retry=ExponentialBackoff(
                max_retries=settings.max_retries,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            attempt_timeout=settings.attempt_timeout,
            run_deadline=settings.run_deadline,
            dry_run=settings.dry_run,
        )

    async def run(
        self,
        plan: EdgePlan,
        cancel: asyncio.Event | None = None,
        unreachable: Mapping[RegistryName, RegistryAccessError] | None = None,
    ) -> RunReport:
        """Dispatch every edge of ``plan`` and collect the results."""
        started_at = datetime.now(UTC)
        unreachable = MappingProxyType(dict(unreachable or {}))

        if self.dry_run:
            for edge in plan.sorted():
                logger.info("scheduler.edge_planned", edge=edge.label)
            return RunReport(
                results={e: EdgeResult(edge=e, status=EdgeStatus.PLANNED) for e in plan.edges},
                dry_run=True,
                unreachable=unreachable,
                started_at=started_at,
                completed_at=datetime.now(UTC),
            )

        if cancel is None:
            cancel = asyncio.Event()
        sem = asyncio.Semaphore(self.max_concurrency)
        done: dict[PromotionEdge, asyncio.Event] = {e: asyncio.Event() for e in plan.edges}
        results: dict[PromotionEdge, EdgeResult] = {}

        deadline_handle = None
        if self.run_deadline is not None:
            deadline_handle = asyncio.get_running_loop().call_later(self.run_deadline, cancel.set)

        logger.info(
            "scheduler.start",
            edges=len(plan.edges),
            max_concurrency=self.max_concurrency,
        )

        async def _run_edge(edge: PromotionEdge) -> None:
            try:
                results[edge] = await self._gate_and_execute(edge, plan, sem, cancel, done, results)
            finally:
                done[edge].set()

        ordered = [e for group in group_by_destination(plan.edges).values() for e in group]
        try:
            await asyncio.gather(*[_run_edge(e) for e in ordered])
        finally:
            if deadline_handle is not None:
                deadline_handle.cancel()

        report = RunReport(
            results=MappingProxyType(results),
            cancelled=any(r.status == EdgeStatus.CANCELLED for r in results.values()),
            unreachable=unreachable,
            started_at=started_at,
            completed_at=datetime.now(UTC),
        )
        logger.info("scheduler.complete", **report.summary())
        return report

    async def _gate_and_execute(
        self,
        edge: PromotionEdge,
        plan: EdgePlan,
        sem: asyncio.Semaphore,
        cancel: asyncio.Event,
        done: Mapping[PromotionEdge, asyncio.Event],
        results: Mapping[PromotionEdge, EdgeResult],
    ) -> EdgeResult:
        deps = plan.dependencies.get(edge, frozenset())
        if deps:
            await asyncio.gather(*(done[d].wait() for d in deps))
            unsettled = sorted(d.label for d in deps if results[d].status != EdgeStatus.SUCCEEDED)
            if unsettled:
                only_cancelled = all(
                    results[d].status == EdgeStatus.CANCELLED
                    for d in deps
                    if results[d].status != EdgeStatus.SUCCEEDED
                )
                if only_cancelled:
                    return self._cancelled(edge)
                logger.warning("scheduler.edge_skipped", edge=edge.label, failed=unsettled)
                return EdgeResult(
                    edge=edge,
                    status=EdgeStatus.SKIPPED,
                    error=DependencySkipped(unsettled, context=_edge_context(edge)),
                )

        if cancel.is_set():
            return self._cancelled(edge)

        async with sem:
            if cancel.is_set():
                return self._cancelled(edge)
            return await self._execute(edge, plan)

    async def _execute(self, edge: PromotionEdge, plan: EdgePlan) -> EdgeResult:
        def _on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.warning(
                "scheduler.edge_retry",
                edge=edge.label,
                attempt=attempt,
                delay=round(delay, 3),
                error=str(error),
            )

        ctx = RetryContext(strategy=self.retry, on_retry=_on_retry)
        started_at = datetime.now(UTC)
        try:
            operation = self.factory.build(edge, plan)
            await ctx.run_async(run_with_timeout_async, operation, self.attempt_timeout, edge.label)
        except Exception as e:
            error = EdgeExecutionError(
                f"{edge.label} failed after {ctx.attempts} attempt(s): {e}",
                attempts=ctx.attempts,
                context=_edge_context(edge),
                cause=e,
            )
            if isinstance(e, PromoterError):
                error.category = e.category
            logger.error("scheduler.edge_failed", edge=edge.label, attempts=ctx.attempts, error=str(e))
            return EdgeResult(
                edge=edge,
                status=EdgeStatus.FAILED,
                attempts=ctx.attempts,
                error=error,
                started_at=started_at,
                completed_at=datetime.now(UTC),
            )

        logger.info("scheduler.edge_succeeded", edge=edge.label, attempts=ctx.attempts)
        return EdgeResult(
            edge=edge,
            status=EdgeStatus.SUCCEEDED,
            attempts=ctx.attempts,
            started_at=started_at,
            completed_at=datetime.now(UTC),
        )

    @staticmethod
    def _cancelled(edge: PromotionEdge) -> EdgeResult:
        logger.info("scheduler.edge_cancelled", edge=edge.label)
        return EdgeResult(
            edge=edge,
            status=EdgeStatus.CANCELLED,
            error=RunCancelledError("not dispatched; run was cancelled", context=_edge_context(edge)),
        )


def _edge_context(edge: PromotionEdge) -> ErrorContext:
    return ErrorContext(
        phase="running promotion",
        registry=edge.dst_registry.name,
        image=edge.dst_image,
        digest=edge.digest,
        tag=edge.tag,
        metadata={"op": edge.op.value},
    )
