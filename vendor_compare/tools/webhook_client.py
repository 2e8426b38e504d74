"""HTTP client for the research, ranking, summary and battlecard webhooks.

Every call returns a response model; transport failures, HTTP errors and
malformed payloads are folded into ``success=False`` with an error code so the
orchestrator treats them all as ordinary cell or row failures.
"""
from __future__ import annotations

import time
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from vendor_compare.config import settings
from vendor_compare.models.comparison import ErrorCode, utc_now_iso
from vendor_compare.models.remote import (
    BattlecardRowResponse,
    CriterionRef,
    ProjectContext,
    RemoteError,
    Stage1Evidence,
    Stage1Response,
    Stage2Response,
    SummaryResponse,
    VendorRef,
    VendorSummaryInput,
)
from vendor_compare.services import logger as log_service


def classify_status(status_code: int) -> str:
    if 400 <= status_code < 500:
        return ErrorCode.HTTP_4XX.value
    if status_code >= 500:
        return ErrorCode.HTTP_5XX.value
    return ErrorCode.UNKNOWN.value


def _error_message(response: httpx.Response) -> str:
    message = f"HTTP error: {response.status_code}"
    try:
        payload = response.json()
    except ValueError:
        return message
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return f"{message} - {error['message']}"
        if payload.get("message"):
            return f"{message} - {payload['message']}"
    return message


def _base_body(context: ProjectContext) -> dict[str, Any]:
    return {
        "user_id": settings.user_id,
        "session_id": settings.session_id or context.project_id,
        "project_id": context.project_id,
        "project_name": context.project_name,
        "project_description": context.description,
        "project_category": context.category,
        "timestamp": utc_now_iso(),
    }


def _criterion_body(criterion: CriterionRef) -> dict[str, Any]:
    return {
        "id": criterion.id,
        "name": criterion.name,
        "importance": criterion.importance,
        "description": criterion.description,
    }


async def _post(
    url: str,
    body: dict[str, Any],
    *,
    operation: str,
    target: str,
    timeout: float,
    http_client: httpx.AsyncClient | None,
) -> tuple[dict[str, Any] | None, RemoteError | None]:
    t0 = time.monotonic()

    async def _do_request(client: httpx.AsyncClient) -> httpx.Response:
        return await client.post(
            url,
            json=body,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )

    error: RemoteError | None = None
    payload: dict[str, Any] | None = None
    try:
        if http_client is None:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await _do_request(client)
        else:
            response = await _do_request(http_client)

        if not response.is_success:
            error = RemoteError(
                code=classify_status(response.status_code),
                message=_error_message(response),
            )
        else:
            data = response.json()
            if isinstance(data, list) and len(data) == 1:
                data = data[0]
            if isinstance(data, dict):
                payload = data
            else:
                error = RemoteError(
                    code=ErrorCode.UNKNOWN.value,
                    message="Unexpected response shape",
                )
    except httpx.TimeoutException:
        error = RemoteError(
            code=ErrorCode.TIMEOUT.value,
            message=f"{operation} timeout for {target} after {timeout:.0f}s",
        )
    except httpx.RequestError as exc:
        error = RemoteError(code=ErrorCode.NETWORK_ERROR.value, message=str(exc))
    except ValueError as exc:
        error = RemoteError(
            code=ErrorCode.UNKNOWN.value, message=f"Invalid JSON response: {exc}"
        )

    elapsed_ms = int((time.monotonic() - t0) * 1000)
    log_service.log_remote_call(
        operation=operation,
        target=target,
        duration_ms=elapsed_ms,
        status="error" if error else "success",
        error_code=error.code if error else None,
        error=error.message if error else None,
    )
    return payload, error


def _parse(model: type[BaseModel], payload: dict[str, Any], **defaults: Any):
    try:
        return model.model_validate({**defaults, **payload})
    except ValidationError as exc:
        return model.model_validate(
            {
                **defaults,
                "success": False,
                "error": {
                    "code": ErrorCode.UNKNOWN.value,
                    "message": f"Malformed response: {exc.errors()[0].get('msg', 'invalid')}",
                },
            }
        )


class WebhookClient:
    """Remote research/ranking service reached through workflow webhooks."""

    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self.http_client = http_client

    async def research_cell(
        self,
        vendor: VendorRef,
        criterion: CriterionRef,
        context: ProjectContext,
    ) -> Stage1Response:
        """Stage 1: evidence for one vendor on one criterion."""
        body = {
            **_base_body(context),
            "vendor": {"id": vendor.id, "name": vendor.name, "website": vendor.website},
            "criterion": _criterion_body(criterion),
        }
        payload, error = await _post(
            settings.webhook_url("compare_vendor_criterion"),
            body,
            operation="research_cell",
            target=f"{vendor.name} - {criterion.name}",
            timeout=settings.stage1_timeout_seconds,
            http_client=self.http_client,
        )
        ids = {"vendor_id": vendor.id, "criterion_id": criterion.id}
        if error:
            return Stage1Response(success=False, error=error, **ids)
        response = _parse(Stage1Response, payload, **ids)
        if response.success and response.result is None:
            return Stage1Response(
                success=False,
                error=RemoteError(code=ErrorCode.UNKNOWN.value, message="Stage 1 returned no result"),
                **ids,
            )
        return response

    async def rank_row(
        self,
        criterion: CriterionRef,
        context: ProjectContext,
        stage1_results: list[Stage1Evidence],
    ) -> Stage2Response:
        """Stage 2: comparative ranking and star allocation for one criterion."""
        body = {
            **_base_body(context),
            "criterion": _criterion_body(criterion),
            "stage1_results": [result.model_dump() for result in stage1_results],
        }
        payload, error = await _post(
            settings.webhook_url("rank_criterion_results"),
            body,
            operation="rank_row",
            target=criterion.name,
            timeout=settings.stage2_timeout_seconds,
            http_client=self.http_client,
        )
        if error:
            return Stage2Response(success=False, criterion_id=criterion.id, error=error)
        response = _parse(Stage2Response, payload, criterion_id=criterion.id)
        if response.success and response.result is None:
            return Stage2Response(
                success=False,
                criterion_id=criterion.id,
                error=RemoteError(code=ErrorCode.UNKNOWN.value, message="Stage 2 returned no result"),
            )
        return response

    async def summarize_row(
        self,
        criterion: CriterionRef,
        context: ProjectContext,
        vendors_data: list[VendorSummaryInput],
    ) -> SummaryResponse:
        body = {
            "project_id": context.project_id,
            "criterion_id": criterion.id,
            "criterion_name": criterion.name,
            "criterion_description": criterion.description,
            "vendors": [item.model_dump() for item in vendors_data],
            "timestamp": utc_now_iso(),
        }
        payload, error = await _post(
            settings.webhook_url("summarize_criterion_row"),
            body,
            operation="summarize_row",
            target=criterion.name,
            timeout=settings.summary_timeout_seconds,
            http_client=self.http_client,
        )
        if error:
            return SummaryResponse(success=False, error=error)
        return _parse(SummaryResponse, payload)

    async def generate_battlecard_row(
        self,
        context: ProjectContext,
        vendor_names: list[str],
        criteria_names: list[str],
        already_filled: list[str],
        is_mandatory: bool,
        requested_category: str | None = None,
    ) -> BattlecardRowResponse:
        body = {
            **_base_body(context),
            "vendor_names": vendor_names,
            "criteria": criteria_names,
            "already_filled_categories": already_filled,
            "is_mandatory_category": is_mandatory,
            "requested_category": requested_category,
        }
        payload, error = await _post(
            settings.webhook_url("battlecard_row"),
            body,
            operation="generate_battlecard_row",
            target=requested_category or "dynamic",
            timeout=settings.battlecard_timeout_seconds,
            http_client=self.http_client,
        )
        if error:
            return BattlecardRowResponse(success=False, error=error)
        return _parse(BattlecardRowResponse, payload)
