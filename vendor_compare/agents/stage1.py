from __future__ import annotations

import asyncio
from typing import Callable, Coroutine, NamedTuple, Protocol

from vendor_compare.models.comparison import (
    CellStatus,
    CellValue,
    ComparisonRunState,
    ErrorCode,
)
from vendor_compare.models.events import ComparisonEvent
from vendor_compare.models.remote import (
    CriterionRef,
    ProjectContext,
    RemoteError,
    Stage1Response,
    VendorRef,
)
from vendor_compare.services import logger as log_service
from vendor_compare.services import streaming
from vendor_compare.services.gate import ConcurrencyGate
from vendor_compare.services.state_actor import StateActor


class ResearchClient(Protocol):
    async def research_cell(
        self, vendor: VendorRef, criterion: CriterionRef, context: ProjectContext
    ) -> Stage1Response: ...


Spawn = Callable[[Coroutine], asyncio.Task]
Emit = Callable[[ComparisonEvent], None]


def _fallback_response(exc: BaseException, vendor: VendorRef, criterion: CriterionRef) -> Stage1Response:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        error = RemoteError(
            code=ErrorCode.TIMEOUT.value,
            message=f"Research timeout for {vendor.name} - {criterion.name}",
        )
    else:
        error = RemoteError(code=ErrorCode.UNKNOWN.value, message=str(exc) or type(exc).__name__)
    return Stage1Response(
        success=False, vendor_id=vendor.id, criterion_id=criterion.id, error=error
    )


class Stage1Scheduler:
    """Runs the per-vendor research calls of one criterion through the gate."""

    def __init__(
        self,
        *,
        actor: StateActor[ComparisonRunState],
        gate: ConcurrencyGate,
        client: ResearchClient,
        context: ProjectContext,
        spawn: Spawn,
        emit: Emit,
        call_timeout: float | None = None,
        max_retries: int | None = None,
    ):
        self.actor = actor
        self.gate = gate
        self.client = client
        self.context = context
        self.spawn = spawn
        self.emit = emit
        self.call_timeout = call_timeout
        self.max_retries = max_retries

    async def run_criterion(
        self,
        criterion: CriterionRef,
        vendors: list[VendorRef],
        *,
        should_stop: Callable[[], bool] = lambda: False,
        force: bool = False,
    ) -> int:
        """Launch every unfinished cell of ``criterion`` and wait for all of them.

        Completed and loading cells are skipped unless ``force`` is set, in
        which case completed cells are researched again. Relaunching a failed
        cell counts as one of its retries; cells that used up ``max_retries``
        stay failed. Launching stops once ``should_stop`` turns true; cells
        already launched still settle. Returns the number of cells launched.
        """
        tasks: list[asyncio.Task] = []
        for vendor in vendors:
            cell = await self.actor.apply(
                lambda s, vid=vendor.id: _cell_snapshot(s, criterion.id, vid)
            )
            if cell is None or cell.status == CellStatus.LOADING:
                continue
            if cell.status == CellStatus.COMPLETED and not force:
                continue
            retry_limit = None
            if cell.status == CellStatus.FAILED and self.max_retries is not None:
                if cell.retry_count >= self.max_retries:
                    continue
                retry_limit = self.max_retries
            if should_stop():
                break

            task = await self._acquire_and_launch(
                criterion, vendor, force=force, retry_limit=retry_limit, should_stop=should_stop
            )
            if task is not None:
                tasks.append(task)

        if tasks:
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)
            for outcome in outcomes:
                if isinstance(outcome, Exception):
                    log_service.log_event(
                        event_type="stage1_task_error",
                        message="Stage 1 task ended with an unexpected error",
                        criterion_id=criterion.id,
                        error=str(outcome),
                    )
        return len(tasks)

    async def run_cell(
        self,
        criterion: CriterionRef,
        vendor: VendorRef,
        *,
        retry_limit: int | None = None,
    ) -> bool:
        """Research a single cell outside the per-criterion batch.

        With ``retry_limit`` the launch also counts as a retry and is refused
        once the cell has been retried that many times.
        """
        task = await self._acquire_and_launch(
            criterion, vendor, force=False, retry_limit=retry_limit, should_stop=None
        )
        if task is None:
            return False
        await task
        return True

    async def _acquire_and_launch(
        self,
        criterion: CriterionRef,
        vendor: VendorRef,
        *,
        force: bool,
        retry_limit: int | None,
        should_stop: Callable[[], bool] | None,
    ) -> asyncio.Task | None:
        await self.gate.acquire()
        try:
            if should_stop is not None and should_stop():
                self.gate.release()
                return None
            active = await self.actor.apply(
                lambda s: _mark_loading(s, criterion.id, vendor.id, force, retry_limit)
            )
        except BaseException:
            self.gate.release()
            raise

        if active is None:
            self.gate.release()
            return None

        self.emit(streaming.cell_started(criterion.id, vendor.id, active))
        # The task owns the permit from here on and releases it when it settles.
        return self.spawn(self._execute(criterion, vendor))

    async def _execute(self, criterion: CriterionRef, vendor: VendorRef) -> None:
        try:
            try:
                call = self.client.research_cell(vendor, criterion, self.context)
                if self.call_timeout is not None:
                    response = await asyncio.wait_for(call, timeout=self.call_timeout)
                else:
                    response = await call
            except Exception as exc:
                response = _fallback_response(exc, vendor, criterion)

            settled = await self.actor.apply(
                lambda s: _settle_cell(s, criterion.id, vendor.id, response)
            )
            if settled is None:
                return
            if settled.status == CellStatus.COMPLETED:
                self.emit(streaming.cell_completed(criterion.id, vendor.id, settled.value.value))
            else:
                self.emit(
                    streaming.cell_failed(
                        criterion.id, vendor.id, settled.error_code, settled.error
                    )
                )
        finally:
            self.gate.release()


class _CellSnapshot(NamedTuple):
    status: CellStatus
    retry_count: int


def _cell_snapshot(
    state: ComparisonRunState, criterion_id: str, vendor_id: str
) -> _CellSnapshot | None:
    cell = state.cell(criterion_id, vendor_id)
    return _CellSnapshot(cell.status, cell.retry_count) if cell else None


def _mark_loading(
    state: ComparisonRunState,
    criterion_id: str,
    vendor_id: str,
    force: bool,
    retry_limit: int | None,
) -> int | None:
    """Claim the cell for one remote call; returns the new in-flight count."""
    row = state.row(criterion_id)
    cell = row.cells.get(vendor_id) if row else None
    if cell is None or cell.status == CellStatus.LOADING:
        return None
    if cell.status == CellStatus.COMPLETED and not force:
        return None
    if retry_limit is not None:
        if cell.retry_count >= retry_limit:
            return None
        cell.retry_count += 1

    if cell.status == CellStatus.COMPLETED and row.stage2_status != CellStatus.LOADING:
        # New evidence invalidates an earlier ranking of this row.
        row.stage2_status = CellStatus.PENDING
        row.stage2_error = None
        row.criterion_insight = None
        row.stars_awarded = None

    cell.mark_loading()
    row.stage1_complete = False
    state.active_workflows += 1
    state.touch()
    return state.active_workflows


def _settle_cell(
    state: ComparisonRunState,
    criterion_id: str,
    vendor_id: str,
    response: Stage1Response,
) -> _SettledCell | None:
    cell = state.cell(criterion_id, vendor_id)
    if cell is None or cell.status != CellStatus.LOADING:
        # The run was reset while this call was in flight.
        return None
    if response.success and response.result is not None:
        cell.complete(response.result)
    else:
        error = response.error or RemoteError(
            code=ErrorCode.UNKNOWN.value, message="Stage 1 workflow failed"
        )
        cell.fail(error.code, error.message)
    state.active_workflows -= 1
    state.touch()
    return _SettledCell(cell.status, cell.value, cell.error_code, cell.error)


class _SettledCell(NamedTuple):
    status: CellStatus
    value: CellValue | None
    error_code: str | None
    error: str | None
