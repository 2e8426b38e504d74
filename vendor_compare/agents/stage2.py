"""Stage 2: comparative ranking of a criterion row, plus optional summaries.

A ranking is only ever sent for a row whose Stage 1 is settled with at least
one completed cell. Checks happen twice: once before waiting for a permit and
again, atomically with marking the row loading, after the permit is held.
"""
from __future__ import annotations

import asyncio
from typing import Callable, Protocol

from vendor_compare.models.comparison import (
    CellStatus,
    ComparisonRunState,
    CriterionRow,
    ErrorCode,
    completed_cells_have_values,
    is_row_ready_for_ranking,
    is_row_settled,
)
from vendor_compare.models.events import ComparisonEvent
from vendor_compare.models.remote import (
    CriterionRef,
    ProjectContext,
    RemoteError,
    Stage1Evidence,
    Stage2Response,
    SummaryResponse,
    VendorRef,
    VendorSummaryInput,
)
from vendor_compare.services import logger as log_service
from vendor_compare.services import streaming
from vendor_compare.services.gate import ConcurrencyGate
from vendor_compare.services.reconcile import apply_vendor_update
from vendor_compare.services.state_actor import StateActor
from vendor_compare.services.storage import VendorUpdate


class RankingClient(Protocol):
    async def rank_row(
        self,
        criterion: CriterionRef,
        context: ProjectContext,
        stage1_results: list[Stage1Evidence],
    ) -> Stage2Response: ...

    async def summarize_row(
        self,
        criterion: CriterionRef,
        context: ProjectContext,
        vendors_data: list[VendorSummaryInput],
    ) -> SummaryResponse: ...


STALLED = "stalled"
IN_FLIGHT = "Ranking already in flight"
ALREADY_RANKED = "Ranking already attempted"


def ranking_precondition(row: CriterionRow) -> str | None:
    """Why ``row`` cannot be ranked right now, or None when it can.

    Returns ``STALLED`` for a settled row without any completed cell; that row
    simply waits for a cell retry and is not a scheduling fault.
    """
    if not row.stage1_complete or not is_row_settled(row):
        return "Stage 1 is not settled for this criterion"
    if not is_row_ready_for_ranking(row):
        return STALLED
    if not completed_cells_have_values(row):
        return "A completed cell has no value"
    return None


def _evidence_strength(value: str) -> str:
    # A star from an earlier ranking is still "yes" as far as research goes.
    return "yes" if value == "star" else value


class Stage2Ranker:
    def __init__(
        self,
        *,
        actor: StateActor[ComparisonRunState],
        gate: ConcurrencyGate,
        client: RankingClient,
        context: ProjectContext,
        vendors: dict[str, VendorRef],
        emit: Callable[[ComparisonEvent], None],
        call_timeout: float | None = None,
    ):
        self.actor = actor
        self.gate = gate
        self.client = client
        self.context = context
        self.vendors = vendors
        self.emit = emit
        self.call_timeout = call_timeout

    async def rank(self, criterion: CriterionRef, *, rerun: bool = False) -> bool | None:
        """Rank one row. True on success, False on a failed ranking, None if skipped.

        Only rows whose ranking is still pending are sent unless ``rerun`` is set.
        """
        reason = await self.actor.apply(lambda s: self._check(s, criterion.id, rerun))
        if reason is not None:
            self._report_skip(criterion, reason)
            return None

        await self.gate.acquire()
        try:
            claimed = await self.actor.apply(lambda s: self._claim(s, criterion.id, rerun))
            if isinstance(claimed, str):
                self._report_skip(criterion, claimed)
                return None

            evidence, active = claimed
            self.emit(streaming.ranking_started(criterion.id, len(evidence)))
            log_service.log_comparison_step(
                project_id=self.context.project_id,
                step_type="stage2",
                status="started",
                data={"criterion_id": criterion.id, "vendors": len(evidence), "active_workflows": active},
            )
            response = await self._call_rank(criterion, evidence)
            outcome = await self.actor.apply(lambda s: self._settle(s, criterion.id, response))
        finally:
            self.gate.release()

        if outcome is None:
            return None
        if outcome.success and outcome.result is not None:
            self.emit(streaming.ranking_completed(criterion.id, outcome.result.stars_awarded))
            log_service.log_comparison_step(
                project_id=self.context.project_id,
                step_type="stage2",
                status="completed",
                data={"criterion_id": criterion.id, "stars_awarded": outcome.result.stars_awarded},
            )
            return True

        message = outcome.error.message if outcome.error else "Stage 2 workflow failed"
        self.emit(streaming.ranking_failed(criterion.id, message))
        log_service.log_comparison_step(
            project_id=self.context.project_id,
            step_type="stage2",
            status="failed",
            data={"criterion_id": criterion.id, "error": message},
        )
        return False

    async def summarize(self, criterion: CriterionRef) -> bool:
        """Best-effort per-vendor summaries for a ranked row."""
        inputs = await self.actor.apply(lambda s: self._summary_inputs(s, criterion.id))
        if not inputs:
            return False

        async with self.gate:
            try:
                call = self.client.summarize_row(criterion, self.context, inputs)
                if self.call_timeout is not None:
                    response = await asyncio.wait_for(call, timeout=self.call_timeout)
                else:
                    response = await call
            except (asyncio.TimeoutError, TimeoutError):
                response = SummaryResponse(
                    success=False,
                    error=RemoteError(
                        code=ErrorCode.TIMEOUT.value,
                        message=f"Summary timeout for {criterion.name}",
                    ),
                )
            except Exception as exc:
                response = SummaryResponse(
                    success=False,
                    error=RemoteError(code=ErrorCode.UNKNOWN.value, message=str(exc)),
                )

        if not response.success:
            log_service.log_comparison_step(
                project_id=self.context.project_id,
                step_type="summary",
                status="failed",
                data={
                    "criterion_id": criterion.id,
                    "error": response.error.message if response.error else None,
                },
            )
            return False

        applied = await self.actor.apply(
            lambda s: self._apply_summaries(s, criterion.id, response.summaries)
        )
        return applied > 0

    # --- remote call ---

    async def _call_rank(
        self, criterion: CriterionRef, evidence: list[Stage1Evidence]
    ) -> Stage2Response:
        try:
            call = self.client.rank_row(criterion, self.context, evidence)
            if self.call_timeout is not None:
                return await asyncio.wait_for(call, timeout=self.call_timeout)
            return await call
        except (asyncio.TimeoutError, TimeoutError):
            error = RemoteError(
                code=ErrorCode.TIMEOUT.value,
                message=f"Ranking timeout for {criterion.name}",
            )
        except Exception as exc:
            error = RemoteError(code=ErrorCode.UNKNOWN.value, message=str(exc) or type(exc).__name__)
        return Stage2Response(success=False, criterion_id=criterion.id, error=error)

    # --- state mutations (run inside the actor) ---

    def _check(self, state: ComparisonRunState, criterion_id: str, rerun: bool) -> str | None:
        row = state.row(criterion_id)
        if row is None:
            return "Unknown criterion"
        if row.stage2_status == CellStatus.LOADING:
            return IN_FLIGHT
        if not rerun and row.stage2_status != CellStatus.PENDING:
            return ALREADY_RANKED
        return ranking_precondition(row)

    def _claim(self, state: ComparisonRunState, criterion_id: str, rerun: bool):
        reason = self._check(state, criterion_id, rerun)
        if reason is not None:
            return reason
        row = state.rows[criterion_id]
        evidence = []
        for vendor_id, cell in row.cells.items():
            if cell.status != CellStatus.COMPLETED:
                continue
            vendor = self.vendors.get(vendor_id)
            evidence.append(
                Stage1Evidence(
                    vendor_id=vendor_id,
                    vendor_name=vendor.name if vendor else vendor_id,
                    vendor_website=vendor.website if vendor else "",
                    criterion_id=criterion_id,
                    evidence_strength=_evidence_strength(cell.value.value),
                    evidence_url=cell.evidence_url or "",
                    evidence_description=cell.evidence_description or "",
                    vendor_site_evidence=cell.vendor_site_evidence or "",
                    third_party_evidence=cell.third_party_evidence or "",
                    research_notes=cell.research_notes or "",
                    search_count=cell.search_count or 0,
                )
            )
        row.stage2_status = CellStatus.LOADING
        row.stage2_error = None
        state.active_workflows += 1
        state.touch()
        return evidence, state.active_workflows

    def _settle(
        self, state: ComparisonRunState, criterion_id: str, response: Stage2Response
    ) -> Stage2Response | None:
        row = state.row(criterion_id)
        if row is None or row.stage2_status != CellStatus.LOADING:
            # The run was reset while the ranking was in flight.
            return None
        state.active_workflows -= 1
        state.touch()

        if not response.success or response.result is None:
            row.stage2_status = CellStatus.FAILED
            row.stage2_error = (
                response.error.message if response.error and response.error.message
                else "Stage 2 workflow failed"
            )
            return response

        ranked: set[str] = set()
        for ranking in response.result.vendor_rankings:
            cell = row.cells.get(ranking.vendor_id)
            if cell is None:
                log_service.log_event(
                    event_type="ranking_unknown_vendor",
                    message="Ranking returned a vendor outside this comparison",
                    criterion_id=criterion_id,
                    vendor_id=ranking.vendor_id,
                )
                continue
            update = VendorUpdate(
                value=ranking.state,
                evidence_url=ranking.evidence_url,
                evidence_description=ranking.evidence_description,
                comment=ranking.comment,
            )
            if apply_vendor_update(cell, update):
                ranked.add(ranking.vendor_id)

        omitted = sorted(
            vendor_id
            for vendor_id, cell in row.cells.items()
            if cell.status == CellStatus.COMPLETED and vendor_id not in ranked
        )
        if omitted:
            log_service.log_event(
                event_type="ranking_partial",
                message="Ranking omitted completed vendors; keeping their Stage 1 values",
                criterion_id=criterion_id,
                vendor_ids=omitted,
            )

        row.stage2_status = CellStatus.COMPLETED
        row.stage2_error = None
        row.criterion_insight = response.result.criterion_insight
        row.stars_awarded = response.result.stars_awarded
        return response

    def _summary_inputs(self, state: ComparisonRunState, criterion_id: str) -> list[VendorSummaryInput]:
        row = state.row(criterion_id)
        if row is None or row.stage2_status != CellStatus.COMPLETED:
            return []
        inputs = []
        for vendor_id, cell in row.cells.items():
            if cell.status != CellStatus.COMPLETED or cell.value is None:
                continue
            vendor = self.vendors.get(vendor_id)
            inputs.append(
                VendorSummaryInput(
                    vendor_id=vendor_id,
                    vendor_name=vendor.name if vendor else vendor_id,
                    match_status=cell.value.value,
                    evidence_description=cell.evidence_description or "",
                    research_notes=cell.research_notes or "",
                )
            )
        return inputs

    def _apply_summaries(
        self, state: ComparisonRunState, criterion_id: str, summaries: dict[str, str]
    ) -> int:
        row = state.row(criterion_id)
        if row is None:
            return 0
        applied = 0
        for vendor_id, text in summaries.items():
            cell = row.cells.get(vendor_id)
            if cell is None or cell.status != CellStatus.COMPLETED or not text:
                continue
            cell.summary = text
            applied += 1
        if applied:
            state.touch()
        return applied

    # --- reporting ---

    def _report_skip(self, criterion: CriterionRef, reason: str) -> None:
        if reason == STALLED:
            log_service.log_event(
                event_type="ranking_stalled",
                message="Every vendor failed Stage 1; waiting for a cell retry",
                criterion_id=criterion.id,
            )
            return
        if reason in (IN_FLIGHT, ALREADY_RANKED):
            return
        log_service.log_event(
            event_type="scheduling_anomaly",
            message=reason,
            criterion_id=criterion.id,
            error_code=ErrorCode.SCHEDULING_PRECONDITION_FAILED.value,
        )
        self.emit(streaming.scheduling_anomaly(criterion.id, reason))
