from __future__ import annotations

import asyncio
from typing import Coroutine, Iterable, Protocol

from vendor_compare.agents.stage1 import ResearchClient, Stage1Scheduler
from vendor_compare.agents.stage2 import RankingClient, Stage2Ranker
from vendor_compare.config import settings
from vendor_compare.errors import RetryLimitExceeded, StoreError, UnknownTargetError
from vendor_compare.models.comparison import (
    CellStatus,
    ComparisonRunState,
    RunStatus,
    is_row_ready_for_ranking,
    is_row_settled,
)
from vendor_compare.models.events import ComparisonEvent, EventListener
from vendor_compare.models.remote import CriterionRef, ProjectContext, VendorRef
from vendor_compare.services import logger as log_service
from vendor_compare.services import streaming
from vendor_compare.services.gate import ConcurrencyGate
from vendor_compare.services.ordering import ManualOrder, order_criteria
from vendor_compare.services.reconcile import (
    build_skeleton,
    build_stage1_snapshot,
    build_stage2_snapshot,
    reconcile,
)
from vendor_compare.services.state_actor import StateActor
from vendor_compare.services.storage import (
    ComparisonStorage,
    FileKeyValueStore,
    KeyValueStore,
)
from vendor_compare.tools.webhook_client import WebhookClient


class ComparisonClient(ResearchClient, RankingClient, Protocol):
    pass


class ComparisonOrchestrator:
    """Drives a vendor x criterion comparison in two overlapping stages.

    Flow:
      1. Rehydrate run state from the two stored snapshots (or start fresh)
      2. Walk criteria in display order; for each, research every vendor
         cell through the shared concurrency gate and wait for all to settle
      3. Fire the ranking of that row as a detached task so it overlaps the
         research of the next criterion
      4. Persist both snapshots after every criterion and every ranking

    All run-state changes and snapshot writes go through one StateActor.
    """

    def __init__(
        self,
        context: ProjectContext,
        vendors: Iterable[VendorRef],
        criteria: Iterable[CriterionRef],
        client: ComparisonClient | None = None,
        store: KeyValueStore | None = None,
        *,
        manual_order: ManualOrder | None = None,
        max_concurrent: int | None = None,
        max_retries: int | None = None,
        summaries_enabled: bool | None = None,
        call_timeout: float | None = None,
        on_event: EventListener | None = None,
    ):
        self.context = context
        self.project_id = context.project_id
        self.vendors = list(vendors)
        self.criteria = order_criteria(list(criteria), manual_order)
        self._vendor_index = {vendor.id: vendor for vendor in self.vendors}
        self._criterion_index = {criterion.id: criterion for criterion in self.criteria}
        self.client = client or WebhookClient()
        self.storage = ComparisonStorage(
            store if store is not None else FileKeyValueStore(settings.store_dir),
            self.project_id,
        )
        self.max_concurrent = max(
            int(max_concurrent if max_concurrent is not None else settings.max_concurrent_workflows), 1
        )
        self.max_retries = max(
            int(max_retries if max_retries is not None else settings.max_cell_retries), 0
        )
        self.summaries_enabled = bool(
            settings.summaries_enabled if summaries_enabled is None else summaries_enabled
        )
        self.call_timeout = call_timeout
        self.on_event = on_event

        initial = reconcile(
            self.storage.load_stage1(),
            self.storage.load_stage2(),
            self.criteria,
            self.vendors,
        )
        self.actor: StateActor[ComparisonRunState] = StateActor(
            initial, name=f"comparison-{self.project_id}"
        )
        self.status = RunStatus.PAUSED if initial.is_paused else RunStatus.IDLE
        self._stop_requested = False
        self._loop_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._store_errors: list[StoreError] = []

        self.gate = ConcurrencyGate(self.max_concurrent)
        self.stage1 = Stage1Scheduler(
            actor=self.actor,
            gate=self.gate,
            client=self.client,
            context=self.context,
            spawn=self._spawn,
            emit=self._emit,
            call_timeout=self.call_timeout,
            max_retries=self.max_retries,
        )
        self.stage2 = Stage2Ranker(
            actor=self.actor,
            gate=self.gate,
            client=self.client,
            context=self.context,
            vendors=self._vendor_index,
            emit=self._emit,
            call_timeout=self.call_timeout,
        )
        log_service.log_comparison_step(
            project_id=self.project_id,
            step_type="load",
            status=self.status.value,
            data=initial.summary(),
        )

    # --- public controls ---

    @property
    def state(self) -> ComparisonRunState:
        """Deep copy of the current run state."""
        return self.actor.peek()

    async def start(self) -> asyncio.Task:
        """Begin (or continue) the criterion loop; returns the loop task."""
        if self.status == RunStatus.RUNNING and self._loop_alive():
            return self._loop_task

        self._stop_requested = False
        await self.actor.apply(_set_paused(False))
        self.status = RunStatus.RUNNING
        if self._loop_alive():
            # A pause was requested but the loop has not wound down yet.
            return self._loop_task

        self._emit(streaming.run_started(self.project_id, len(self.criteria), vendors_count=len(self.vendors)))
        log_service.log_comparison_step(
            project_id=self.project_id,
            step_type="run",
            status="started",
            data={"criteria": len(self.criteria), "vendors": len(self.vendors)},
        )
        self._loop_task = asyncio.create_task(
            self._run_loop(), name=f"comparison-loop-{self.project_id}"
        )
        return self._loop_task

    async def pause(self) -> None:
        """Stop launching new work; in-flight calls finish naturally."""
        if self.status != RunStatus.RUNNING:
            return
        self._stop_requested = True
        self.status = RunStatus.PAUSED
        index = await self.actor.apply(_set_paused(True))
        self._emit(streaming.run_paused(self.project_id, index))
        log_service.log_comparison_step(
            project_id=self.project_id,
            step_type="run",
            status="paused",
            data={"criterion_index": index},
        )

    async def resume(self) -> asyncio.Task:
        return await self.start()

    async def run(self) -> ComparisonRunState:
        """Start and wait for every launched task, including detached rankings."""
        await self.start()
        return await self.join()

    async def join(self) -> ComparisonRunState:
        """Wait for the loop and all tracked tasks; re-raise a store failure."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if self._loop_alive():
                pending.append(self._loop_task)
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)

        loop_task = self._loop_task
        if loop_task is not None and not loop_task.cancelled():
            exc = loop_task.exception()
            if exc is not None:
                raise exc
        if self._store_errors:
            errors, self._store_errors = self._store_errors, []
            raise errors[0]
        return self.state

    async def reset(self) -> None:
        """Cancel all work, clear stored snapshots and set every cell back to pending."""
        self._stop_requested = True
        tasks = [task for task in self._tasks if not task.done()]
        if self._loop_alive():
            tasks.append(self._loop_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._loop_task = None
        self._store_errors.clear()

        await self.actor.apply(lambda _: self.storage.clear())
        await self.actor.replace(build_skeleton(self.criteria, self.vendors))
        # Tasks cancelled before they ever ran cannot hand their permits back.
        self._install_gate(ConcurrencyGate(self.max_concurrent))
        self._stop_requested = False
        self.status = RunStatus.IDLE
        self._emit(streaming.run_reset(self.project_id))
        log_service.log_comparison_step(
            project_id=self.project_id, step_type="run", status="reset"
        )

    async def close(self) -> None:
        """Cancel outstanding work without touching the store."""
        self._stop_requested = True
        tasks = [task for task in self._tasks if not task.done()]
        if self._loop_alive():
            tasks.append(self._loop_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.actor.stop()

    # --- retries ---

    async def retry_cell(self, criterion_id: str, vendor_id: str) -> bool:
        """Re-run one failed (or never-run) cell.

        Returns False without doing anything when the cell is completed or
        loading. Raises RetryLimitExceeded once ``max_retries`` is used up.
        If the retry makes the row ready for ranking, the ranking runs before
        this returns.
        """
        criterion = self._criterion(criterion_id)
        vendor = self._vendor(vendor_id)

        verdict, detail = await self.actor.apply(
            lambda s: _retry_verdict(s, criterion_id, vendor_id, self.max_retries)
        )
        if verdict == "noop":
            return False
        if verdict == "limit":
            log_service.log_event(
                event_type="retry_limit",
                message="Cell retry refused",
                criterion_id=criterion_id,
                vendor_id=vendor_id,
                retry_count=detail,
            )
            raise RetryLimitExceeded(f"{criterion_id}/{vendor_id}", detail, self.max_retries)
        was_ready = detail

        launched = await self.stage1.run_cell(criterion, vendor, retry_limit=self.max_retries)
        if not launched:
            return False

        newly_ready, counts = await self.actor.apply(
            lambda s: _refresh_row(s, criterion_id, was_ready)
        )
        await self._persist()
        if newly_ready:
            self._emit(streaming.stage1_complete(criterion_id, counts))
            await self._rank_and_persist(criterion, raise_store_errors=True)
        return True

    async def retry_row(self, criterion_id: str) -> bool:
        """Re-run the ranking of one row; no retry ceiling. False if it could not run."""
        criterion = self._criterion(criterion_id)
        outcome = await self._rank_and_persist(
            criterion, rerun=True, raise_store_errors=True
        )
        return outcome is not None

    async def retry_criterion(self, criterion_id: str, *, full: bool = False) -> int:
        """Re-run Stage 1 for one criterion, then rank the row again.

        Without ``full`` only pending and failed cells are launched, each
        failed one spending a retry. With ``full`` completed cells are
        researched again too and the earlier ranking is discarded. Returns
        the number of cells launched.
        """
        criterion = self._criterion(criterion_id)
        launched = await self.stage1.run_criterion(criterion, self.vendors, force=full)
        settled, counts = await self.actor.apply(
            lambda s: _mark_stage1(s, criterion_id)
        )
        await self._persist()
        log_service.log_comparison_step(
            project_id=self.project_id,
            step_type="stage1",
            status="retried",
            data={"criterion_id": criterion_id, "launched": launched, "full": full},
        )
        if launched and settled:
            self._emit(streaming.stage1_complete(criterion_id, counts))
            await self._rank_and_persist(criterion, rerun=True, raise_store_errors=True)
        return launched

    # --- the loop ---

    async def _run_loop(self) -> None:
        total = len(self.criteria)
        index = 0
        try:
            while index < total:
                criterion = self.criteria[index]
                stage1_done, stage2_status = await self.actor.apply(
                    lambda s, cid=criterion.id: (s.rows[cid].stage1_complete, s.rows[cid].stage2_status)
                )
                if stage1_done and stage2_status != CellStatus.PENDING:
                    index += 1
                    continue

                if self._stop_requested and await self._pause_at(index):
                    return

                await self.actor.apply(lambda s, i=index: _set_index(s, i))
                self._emit(streaming.criterion_started(criterion.id, index))
                log_service.log_comparison_step(
                    project_id=self.project_id,
                    step_type="stage1",
                    status="started",
                    data={"criterion_id": criterion.id, "index": index},
                )

                await self.stage1.run_criterion(
                    criterion, self.vendors, should_stop=lambda: self._stop_requested
                )
                settled, counts = await self.actor.apply(
                    lambda s, cid=criterion.id: _mark_stage1(s, cid)
                )
                if settled:
                    self._emit(streaming.stage1_complete(criterion.id, counts))
                    if not self._stop_requested:
                        self._spawn(self._rank_and_persist(criterion))
                await self._persist()

                if self._stop_requested:
                    if await self._pause_at(index):
                        return
                    # Resumed while the pause was being recorded: revisit this row.
                    continue
                index += 1

            await self._drain_tasks()
            await self.actor.apply(_set_paused(False))
            await self._persist()
            self.status = RunStatus.COMPLETED
            summary = self.state.summary()
            self._emit(streaming.run_completed(self.project_id, summary))
            log_service.log_comparison_step(
                project_id=self.project_id, step_type="run", status="completed", data=summary
            )
        except StoreError as exc:
            self.status = RunStatus.FAILED
            self._emit(streaming.error(str(exc), project_id=self.project_id))
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.status = RunStatus.FAILED
            log_service.logger.exception(f"Comparison loop failed for {self.project_id}: {exc}")
            self._emit(streaming.error(str(exc), project_id=self.project_id))
            raise

    async def _pause_at(self, index: int) -> bool:
        """Record the pause point; False when a resume arrived in the meantime."""
        await self.actor.apply(lambda s: _set_index(s, index, paused=True))
        await self._persist()
        if not self._stop_requested:
            await self.actor.apply(_set_paused(False))
            return False
        self.status = RunStatus.PAUSED
        log_service.log_comparison_step(
            project_id=self.project_id,
            step_type="run",
            status="stopped",
            data={"criterion_index": index},
        )
        return True

    async def _rank_and_persist(
        self,
        criterion: CriterionRef,
        *,
        rerun: bool = False,
        raise_store_errors: bool = False,
    ) -> bool | None:
        outcome = await self.stage2.rank(criterion, rerun=rerun)
        if outcome is None:
            return None
        try:
            await self._persist()
            if outcome and self.summaries_enabled:
                if await self.stage2.summarize(criterion):
                    await self._persist()
        except StoreError as exc:
            if raise_store_errors:
                raise
            self._store_errors.append(exc)
            self._emit(streaming.error(str(exc), criterion_id=criterion.id))
        return outcome

    # --- plumbing ---

    async def _persist(self) -> None:
        await self.actor.apply(self._write_snapshots)

    def _write_snapshots(self, state: ComparisonRunState) -> None:
        self.storage.save_stage1(build_stage1_snapshot(state, self.project_id))
        self.storage.save_stage2(build_stage2_snapshot(state, self.project_id))

    async def _drain_tasks(self) -> None:
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log_service.log_event(
                event_type="detached_task_error",
                message="Detached task ended with an unexpected error",
                project_id=self.project_id,
                task=task.get_name(),
                error=f"{type(exc).__name__}: {exc}",
            )

    def _install_gate(self, gate: ConcurrencyGate) -> None:
        self.gate = gate
        self.stage1.gate = gate
        self.stage2.gate = gate

    def _loop_alive(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def _emit(self, event: ComparisonEvent) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception as exc:
            # A broken listener must not stop the run.
            log_service.log_event(
                event_type="listener_error",
                message="Event listener raised",
                event=event.event.value,
                error=str(exc),
            )

    def _criterion(self, criterion_id: str) -> CriterionRef:
        try:
            return self._criterion_index[criterion_id]
        except KeyError:
            raise UnknownTargetError(f"Unknown criterion: {criterion_id}") from None

    def _vendor(self, vendor_id: str) -> VendorRef:
        try:
            return self._vendor_index[vendor_id]
        except KeyError:
            raise UnknownTargetError(f"Unknown vendor: {vendor_id}") from None


# --- state mutations (run inside the actor) ---


def _set_paused(paused: bool):
    def mutation(state: ComparisonRunState) -> int:
        state.is_paused = paused
        state.touch()
        return state.current_criterion_index

    return mutation


def _set_index(state: ComparisonRunState, index: int, *, paused: bool | None = None) -> None:
    state.current_criterion_index = index
    if paused is not None:
        state.is_paused = paused
    state.touch()


def _mark_stage1(state: ComparisonRunState, criterion_id: str) -> tuple[bool, dict[str, int]]:
    row = state.rows[criterion_id]
    row.stage1_complete = is_row_settled(row)
    state.touch()
    return row.stage1_complete, row.counts()


def _retry_verdict(
    state: ComparisonRunState, criterion_id: str, vendor_id: str, max_retries: int
) -> tuple[str, object]:
    row = state.rows[criterion_id]
    cell = row.cells[vendor_id]
    if cell.status in (CellStatus.COMPLETED, CellStatus.LOADING):
        return "noop", None
    if cell.retry_count >= max_retries:
        return "limit", cell.retry_count
    return "go", is_row_ready_for_ranking(row)


def _refresh_row(
    state: ComparisonRunState, criterion_id: str, was_ready: bool
) -> tuple[bool, dict[str, int]]:
    row = state.rows[criterion_id]
    row.stage1_complete = is_row_settled(row)
    newly_ready = (
        not was_ready
        and is_row_ready_for_ranking(row)
        and row.stage2_status == CellStatus.PENDING
    )
    return newly_ready, row.counts()
