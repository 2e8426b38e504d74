"""Row-by-row battlecard generation.

Mandatory categories are generated first, then the remote service picks
categories itself until the row target is reached. The exclusion set
(``already_filled_categories``) is sent with every call and only grows once a
row has been accepted.
"""
from __future__ import annotations

import asyncio
from typing import Iterable, Protocol

from vendor_compare.config import settings
from vendor_compare.errors import RetryLimitExceeded, StoreError, UnknownTargetError
from vendor_compare.models.battlecards import (
    MANDATORY_CATEGORIES,
    BattlecardRowState,
    BattlecardsState,
    battlecard_row_id,
    battlecards_key,
)
from vendor_compare.models.comparison import ErrorCode, RunStatus
from vendor_compare.models.events import ComparisonEvent, EventListener
from vendor_compare.models.remote import (
    BattlecardRowResponse,
    CriterionRef,
    ProjectContext,
    RemoteError,
    VendorRef,
)
from vendor_compare.services import logger as log_service
from vendor_compare.services import streaming
from vendor_compare.services.state_actor import StateActor
from vendor_compare.services.storage import (
    ComparisonStorage,
    FileKeyValueStore,
    KeyValueStore,
)
from vendor_compare.tools.webhook_client import WebhookClient


class BattlecardClient(Protocol):
    async def generate_battlecard_row(
        self,
        context: ProjectContext,
        vendor_names: list[str],
        criteria_names: list[str],
        already_filled: list[str],
        is_mandatory: bool,
        requested_category: str | None = None,
    ) -> BattlecardRowResponse: ...


class BattlecardOrchestrator:
    def __init__(
        self,
        context: ProjectContext,
        vendors: Iterable[VendorRef],
        criteria: Iterable[CriterionRef],
        client: BattlecardClient | None = None,
        store: KeyValueStore | None = None,
        *,
        min_rows: int | None = None,
        max_rows: int | None = None,
        max_retries_per_row: int | None = None,
        max_duplicate_attempts: int | None = None,
        call_timeout: float | None = None,
        on_event: EventListener | None = None,
    ):
        self.context = context
        self.project_id = context.project_id
        self.vendor_names = [vendor.name for vendor in vendors]
        self.criteria_names = [criterion.name for criterion in criteria]
        self.client = client or WebhookClient()
        self.storage = ComparisonStorage(
            store if store is not None else FileKeyValueStore(settings.store_dir),
            self.project_id,
        )
        self.max_rows = max(int(max_rows if max_rows is not None else settings.battlecard_max_rows), 1)
        self.min_rows = min(
            max(int(min_rows if min_rows is not None else settings.battlecard_min_rows), 0),
            self.max_rows,
        )
        self.max_retries_per_row = max(
            int(
                max_retries_per_row
                if max_retries_per_row is not None
                else settings.battlecard_max_retries_per_row
            ),
            0,
        )
        self.max_duplicate_attempts = max(
            int(
                max_duplicate_attempts
                if max_duplicate_attempts is not None
                else settings.battlecard_max_duplicate_attempts
            ),
            1,
        )
        self.call_timeout = call_timeout
        self.on_event = on_event

        self.actor: StateActor[BattlecardsState] = StateActor(
            self._restore(), name=f"battlecards-{self.project_id}"
        )
        self._stop_requested = False
        self._task: asyncio.Task | None = None

    def _restore(self) -> BattlecardsState:
        saved = self.storage.load_model(battlecards_key(self.project_id), BattlecardsState)
        if saved is None or saved.project_id != self.project_id:
            return self._fresh_state()
        # A row still loading when the state was written never finished.
        saved.rows = [row for row in saved.rows if row.status != "loading"]
        if saved.status == RunStatus.RUNNING.value:
            saved.status = RunStatus.PAUSED.value
        log_service.log_comparison_step(
            project_id=self.project_id,
            step_type="battlecards",
            status="restored",
            data={"rows": len(saved.rows), "status": saved.status},
        )
        return saved

    def _fresh_state(self) -> BattlecardsState:
        return BattlecardsState(project_id=self.project_id, total_rows_target=self.min_rows)

    # --- controls ---

    @property
    def state(self) -> BattlecardsState:
        return self.actor.peek()

    @property
    def status(self) -> str:
        return self.actor.peek().status

    async def start(self) -> asyncio.Task:
        self._stop_requested = False
        await self.actor.apply(_set_status(RunStatus.RUNNING))
        if self._task is not None and not self._task.done():
            return self._task
        self._task = asyncio.create_task(
            self._generate(), name=f"battlecards-{self.project_id}"
        )
        return self._task

    async def pause(self) -> None:
        if self._stop_requested or self._task is None or self._task.done():
            return
        self._stop_requested = True
        await self.actor.apply(_set_status(RunStatus.PAUSED))
        await self._persist()

    async def resume(self) -> asyncio.Task:
        return await self.start()

    async def join(self) -> BattlecardsState:
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
        return self.state

    async def run(self) -> BattlecardsState:
        await self.start()
        return await self.join()

    async def reset(self) -> None:
        self._stop_requested = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        await self.actor.apply(lambda _: self.storage.delete_model(battlecards_key(self.project_id)))
        await self.actor.replace(self._fresh_state())
        self._stop_requested = False
        log_service.log_comparison_step(
            project_id=self.project_id, step_type="battlecards", status="reset"
        )

    async def close(self) -> None:
        self._stop_requested = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        await self.actor.stop()

    async def retry_row(self, row_id: str) -> bool:
        """Regenerate one row for its category; True when the new row is accepted."""
        claim = await self.actor.apply(lambda s: self._claim_retry(s, row_id))
        if claim is None:
            return False
        category, is_mandatory, index = claim

        self._emit(streaming.battlecard_row_started(row_id, category))
        already_filled = [
            filled for filled in self.state.already_filled_categories
            if filled.lower() != (category or "").lower()
        ]
        response = await self._call(already_filled, is_mandatory, category)
        accepted = await self.actor.apply(
            lambda s: self._settle_retry(s, row_id, index, category, response)
        )
        await self._persist()
        return accepted

    # --- generation loop ---

    async def _generate(self) -> None:
        try:
            for category in MANDATORY_CATEGORIES:
                if self._stop_requested:
                    return
                if self.state.has_row_for(category):
                    continue
                if len(self.state.rows) >= self.max_rows:
                    break
                await self._generate_row(category, is_mandatory=True)

            duplicates = 0
            while len(self.state.rows) < self.max_rows:
                if self._stop_requested:
                    return
                row = await self._generate_row(None, is_mandatory=False)
                if row is None:
                    duplicates += 1
                    if duplicates >= self.max_duplicate_attempts:
                        log_service.log_event(
                            event_type="battlecard_duplicates_exhausted",
                            message="Remote service kept choosing filled categories; stopping",
                            project_id=self.project_id,
                            attempts=duplicates,
                        )
                        break
                    continue
                duplicates = 0
                if row.status == "failed" and len(self.state.rows) >= self.min_rows:
                    break

            if self._stop_requested:
                return
            await self.actor.apply(_finish)
            await self._persist()
            log_service.log_comparison_step(
                project_id=self.project_id,
                step_type="battlecards",
                status="completed",
                data={"rows": len(self.state.rows)},
            )
        except StoreError:
            await self.actor.apply(_set_status(RunStatus.FAILED))
            raise

    async def _generate_row(
        self, category: str | None, *, is_mandatory: bool
    ) -> BattlecardRowState | None:
        """Generate and record one row; None when a duplicate pick was discarded."""
        index, loading_id, already_filled = await self.actor.apply(
            lambda s: _append_loading(s, self.project_id, category)
        )
        self._emit(streaming.battlecard_row_started(loading_id, category))

        response = await self._call(already_filled, is_mandatory, category)
        row = await self.actor.apply(
            lambda s: self._settle_new_row(s, loading_id, index, category, response)
        )
        if row is None:
            return None
        await self._persist()
        return row

    async def _call(
        self, already_filled: list[str], is_mandatory: bool, category: str | None
    ) -> BattlecardRowResponse:
        try:
            call = self.client.generate_battlecard_row(
                self.context,
                self.vendor_names,
                self.criteria_names,
                list(already_filled),
                is_mandatory,
                category,
            )
            if self.call_timeout is not None:
                return await asyncio.wait_for(call, timeout=self.call_timeout)
            return await call
        except (asyncio.TimeoutError, TimeoutError):
            error = RemoteError(
                code=ErrorCode.TIMEOUT.value,
                message=f"Battlecard row timeout for {category or 'dynamic category'}",
            )
        except Exception as exc:
            error = RemoteError(code=ErrorCode.UNKNOWN.value, message=str(exc) or type(exc).__name__)
        return BattlecardRowResponse(success=False, error=error)

    # --- state mutations (run inside the actor) ---

    def _settle_new_row(
        self,
        state: BattlecardsState,
        loading_id: str,
        index: int,
        category: str | None,
        response: BattlecardRowResponse,
    ) -> BattlecardRowState | None:
        position = next(
            (i for i, row in enumerate(state.rows) if row.row_id == loading_id), None
        )
        if position is None:
            return None

        if response.success and response.row is not None:
            title = response.row.category_title
            if category is None and state.is_filled(title):
                state.rows.pop(position)
                message = f'Duplicate category detected: "{title}"'
                log_service.log_event(
                    event_type="battlecard_duplicate",
                    message=message,
                    project_id=self.project_id,
                    already_filled=list(state.already_filled_categories),
                )
                self._emit(
                    streaming.battlecard_row_failed(
                        battlecard_row_id(self.project_id, index, title),
                        ErrorCode.DUPLICATE_CATEGORY.value,
                        message,
                    )
                )
                return None
            row = _completed_row(self.project_id, index, response)
            state.already_filled_categories.append(row.category_title)
            self._emit(streaming.battlecard_row_completed(row.row_id, row.category_title))
        else:
            row = _failed_row(self.project_id, index, category, response.error)
            self._emit(streaming.battlecard_row_failed(row.row_id, row.error_code, row.error))

        state.rows[position] = row
        state.current_row_index = index + 1
        return row

    def _claim_retry(self, state: BattlecardsState, row_id: str):
        row = state.find_row(row_id)
        if row is None:
            raise UnknownTargetError(f"Unknown battlecard row: {row_id}")
        if row.status == "loading":
            return None
        if row.retry_count >= self.max_retries_per_row:
            raise RetryLimitExceeded(row_id, row.retry_count, self.max_retries_per_row)
        row.status = "loading"
        row.retry_count += 1
        category = row.category_title if row.category_title != "Unknown" else None
        return category, row.category_title in MANDATORY_CATEGORIES, state.rows.index(row)

    def _settle_retry(
        self,
        state: BattlecardsState,
        row_id: str,
        index: int,
        category: str | None,
        response: BattlecardRowResponse,
    ) -> bool:
        existing = state.find_row(row_id)
        if existing is None:
            return False
        position = state.rows.index(existing)
        old_title = existing.category_title

        if response.success and response.row is not None:
            title = response.row.category_title
            if state.is_filled(title, ignore=old_title):
                row = _failed_row(
                    self.project_id,
                    index,
                    category,
                    RemoteError(
                        code=ErrorCode.DUPLICATE_CATEGORY.value,
                        message=f'Duplicate category detected: "{title}"',
                    ),
                )
            else:
                row = _completed_row(self.project_id, index, response)
                state.already_filled_categories = [
                    filled for filled in state.already_filled_categories
                    if filled.lower() != old_title.lower()
                ]
                state.already_filled_categories.append(row.category_title)
        else:
            row = _failed_row(self.project_id, index, category, response.error)

        row.row_id = existing.row_id
        row.retry_count = existing.retry_count
        state.rows[position] = row
        if row.status == "completed":
            self._emit(streaming.battlecard_row_completed(row.row_id, row.category_title))
            return True
        self._emit(streaming.battlecard_row_failed(row.row_id, row.error_code, row.error))
        return False

    # --- plumbing ---

    async def _persist(self) -> None:
        key = battlecards_key(self.project_id)
        await self.actor.apply(lambda s: self.storage.save_model(key, s))

    def _emit(self, event: ComparisonEvent) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception as exc:
            log_service.log_event(
                event_type="listener_error",
                message="Event listener raised",
                event=event.event.value,
                error=str(exc),
            )


def _set_status(status: RunStatus):
    def mutation(state: BattlecardsState) -> None:
        state.status = status.value

    return mutation


def _finish(state: BattlecardsState) -> None:
    state.status = RunStatus.COMPLETED.value
    state.total_rows_target = len(state.rows)


def _append_loading(
    state: BattlecardsState, project_id: str, category: str | None
) -> tuple[int, str, list[str]]:
    index = len(state.rows)
    row_id = battlecard_row_id(project_id, index, category or "loading")
    state.rows.append(
        BattlecardRowState(
            row_id=row_id,
            category_title=category or "Loading...",
            status="loading",
        )
    )
    state.current_row_index = index
    return index, row_id, list(state.already_filled_categories)


def _completed_row(
    project_id: str, index: int, response: BattlecardRowResponse
) -> BattlecardRowState:
    remote = response.row
    return BattlecardRowState(
        row_id=battlecard_row_id(project_id, index, remote.category_title),
        category_title=remote.category_title,
        category_definition=remote.category_definition,
        status="completed",
        cells=list(remote.cells),
        timestamp=remote.timestamp,
    )


def _failed_row(
    project_id: str, index: int, category: str | None, error: RemoteError | None
) -> BattlecardRowState:
    title = category or "Unknown"
    return BattlecardRowState(
        row_id=battlecard_row_id(project_id, index, title),
        category_title=title,
        status="failed",
        error=(error.message if error and error.message else "Failed to generate battlecard row"),
        error_code=(error.code if error else ErrorCode.UNKNOWN.value),
    )
