from __future__ import annotations

import httpx
import pytest

from vendor_compare.config import settings
from vendor_compare.models.remote import (
    CriterionRef,
    ProjectContext,
    Stage1Evidence,
    VendorRef,
)
from vendor_compare.tools import webhook_client
from vendor_compare.tools.webhook_client import WebhookClient, classify_status

VENDOR = VendorRef(id="v1", name="Alpha", website="https://alpha.test")
CRITERION = CriterionRef(id="c1", name="SSO", importance="high", description="Single sign-on")
CONTEXT = ProjectContext(
    project_id="p1",
    company_context="Acme Corp. Retail chain",
    solution_requirements="Needs SSO across stores",
)


class _FakeResponse:
    def __init__(self, payload, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def _patch_post(monkeypatch, response=None, exc: Exception | None = None):
    captured: list[dict] = []

    async def fake_post(self, url: str, **kwargs):  # noqa: ARG001
        captured.append({"url": url, **kwargs})
        if exc is not None:
            raise exc
        return response

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)
    return captured


def test_classify_status_groups_by_class():
    assert classify_status(404) == "HTTP_4XX"
    assert classify_status(503) == "HTTP_5XX"
    assert classify_status(302) == "UNKNOWN"


@pytest.mark.asyncio
async def test_research_cell_parses_success_and_sends_context(monkeypatch):
    monkeypatch.setattr(settings, "webhook_mode", "production")
    captured = _patch_post(
        monkeypatch,
        _FakeResponse(
            {
                "success": True,
                "result": {
                    "evidence_strength": "yes",
                    "evidence_url": "https://alpha.test/sso",
                    "search_count": 2,
                },
            }
        ),
    )

    response = await WebhookClient().research_cell(VENDOR, CRITERION, CONTEXT)

    assert response.success is True
    assert response.result.evidence_strength == "yes"
    assert response.vendor_id == "v1"
    body = captured[0]["json"]
    assert body["vendor"]["name"] == "Alpha"
    assert body["criterion"]["importance"] == "high"
    assert body["project_id"] == "p1"
    assert captured[0]["url"].endswith(settings.compare_vendor_criterion_path)


@pytest.mark.asyncio
async def test_testing_mode_uses_testing_paths(monkeypatch):
    monkeypatch.setattr(settings, "webhook_mode", "testing")
    captured = _patch_post(
        monkeypatch,
        _FakeResponse({"success": True, "result": {"evidence_strength": "no"}}),
    )

    await WebhookClient().research_cell(VENDOR, CRITERION, CONTEXT)

    assert captured[0]["url"].endswith(settings.testing_compare_vendor_criterion_path)


@pytest.mark.asyncio
async def test_research_cell_unwraps_single_item_list(monkeypatch):
    _patch_post(
        monkeypatch,
        _FakeResponse([{"success": True, "result": {"evidence_strength": "unknown"}}]),
    )

    response = await WebhookClient().research_cell(VENDOR, CRITERION, CONTEXT)

    assert response.success is True
    assert response.result.evidence_strength == "unknown"


@pytest.mark.asyncio
async def test_http_error_is_classified_and_message_kept(monkeypatch):
    _patch_post(monkeypatch, _FakeResponse({"error": {"message": "upstream down"}}, status_code=502))

    response = await WebhookClient().research_cell(VENDOR, CRITERION, CONTEXT)

    assert response.success is False
    assert response.error.code == "HTTP_5XX"
    assert "502" in response.error.message
    assert "upstream down" in response.error.message


@pytest.mark.asyncio
async def test_timeout_becomes_timeout_error(monkeypatch):
    _patch_post(monkeypatch, exc=httpx.ReadTimeout("slow"))

    response = await WebhookClient().research_cell(VENDOR, CRITERION, CONTEXT)

    assert response.success is False
    assert response.error.code == "TIMEOUT"


@pytest.mark.asyncio
async def test_connection_failure_becomes_network_error(monkeypatch):
    _patch_post(monkeypatch, exc=httpx.ConnectError("refused"))

    response = await WebhookClient().research_cell(VENDOR, CRITERION, CONTEXT)

    assert response.error.code == "NETWORK_ERROR"


@pytest.mark.asyncio
async def test_invalid_evidence_strength_is_rejected(monkeypatch):
    _patch_post(
        monkeypatch,
        _FakeResponse({"success": True, "result": {"evidence_strength": "maybe"}}),
    )

    response = await WebhookClient().research_cell(VENDOR, CRITERION, CONTEXT)

    assert response.success is False
    assert response.error.code == "UNKNOWN"
    assert response.vendor_id == "v1"


@pytest.mark.asyncio
async def test_success_without_result_is_a_failure(monkeypatch):
    _patch_post(monkeypatch, _FakeResponse({"success": True}))

    response = await WebhookClient().rank_row(CRITERION, CONTEXT, [])

    assert response.success is False
    assert response.criterion_id == "c1"


@pytest.mark.asyncio
async def test_rank_row_sends_stage1_results(monkeypatch):
    captured = _patch_post(
        monkeypatch,
        _FakeResponse(
            {
                "success": True,
                "result": {
                    "vendor_rankings": [{"vendor_id": "v1", "state": "star", "comment": "Best"}],
                    "criterion_insight": "Alpha leads",
                    "stars_awarded": 1,
                },
            }
        ),
    )
    evidence = [
        Stage1Evidence(
            vendor_id="v1", vendor_name="Alpha", criterion_id="c1", evidence_strength="yes"
        )
    ]

    response = await WebhookClient().rank_row(CRITERION, CONTEXT, evidence)

    assert response.result.vendor_rankings[0].state == "star"
    assert captured[0]["json"]["stage1_results"][0]["vendor_id"] == "v1"
    assert captured[0]["timeout"] == settings.stage2_timeout_seconds


@pytest.mark.asyncio
async def test_injected_http_client_is_used(monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "success": True,
                "row": {
                    "category_title": "Ideal For",
                    "cells": [{"vendor_name": "Alpha", "text": "Mid-market retail"}],
                },
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        response = await WebhookClient(http_client=http_client).generate_battlecard_row(
            CONTEXT, ["Alpha"], ["SSO"], [], True, "Ideal For"
        )

    assert response.success is True
    assert response.row.cells[0].text == "Mid-market retail"


@pytest.mark.asyncio
async def test_invalid_json_body_is_unknown_error(monkeypatch):
    _patch_post(monkeypatch, _FakeResponse(ValueError("not json")))

    response = await webhook_client.WebhookClient().summarize_row(CRITERION, CONTEXT, [])

    assert response.success is False
    assert response.error.code == "UNKNOWN"
