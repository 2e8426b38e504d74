from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


# --- References ---


class VendorRef(BaseModel):
    id: str
    name: str
    website: str = ""


class CriterionRef(BaseModel):
    id: str
    name: str
    importance: str = "medium"  # low | medium | high
    description: str = ""
    type: str = "feature"  # category used for visual ordering


class ProjectContext(BaseModel):
    project_id: str
    company_context: str = ""
    solution_requirements: str = ""
    category: str = "software"

    @property
    def project_name(self) -> str:
        head = self.company_context.split(".")[0].strip()
        return head or "Project"

    @property
    def description(self) -> str:
        text = f"{self.company_context} {self.solution_requirements}".strip()
        # The research workflows reject very short descriptions.
        if len(text) >= 10:
            return text
        return "Software comparison for evaluating vendor capabilities"


class RemoteError(BaseModel):
    code: str
    message: str = ""


# --- Stage 1 ---


class Stage1Result(BaseModel):
    evidence_strength: Literal["yes", "unknown", "no"]
    evidence_url: str = ""
    evidence_description: str = ""
    vendor_site_evidence: str = ""
    third_party_evidence: str = ""
    research_notes: str = ""
    search_count: int = 0


class Stage1Response(BaseModel):
    success: bool
    result: Optional[Stage1Result] = None
    vendor_id: Optional[str] = None
    criterion_id: Optional[str] = None
    error: Optional[RemoteError] = None


class Stage1Evidence(BaseModel):
    """One completed cell as sent to the ranking workflow."""
    vendor_id: str
    vendor_name: str
    vendor_website: str = ""
    criterion_id: str
    evidence_strength: Literal["yes", "unknown", "no"]
    evidence_url: str = ""
    evidence_description: str = ""
    vendor_site_evidence: str = ""
    third_party_evidence: str = ""
    research_notes: str = ""
    search_count: int = 0


# --- Stage 2 ---


class VendorRanking(BaseModel):
    vendor_id: str
    state: Literal["yes", "star", "no", "unknown"]
    evidence_url: Optional[str] = None
    evidence_description: Optional[str] = None
    comment: Optional[str] = None


class Stage2Result(BaseModel):
    vendor_rankings: list[VendorRanking] = Field(default_factory=list)
    criterion_insight: str = ""
    stars_awarded: int = 0


class Stage2Response(BaseModel):
    success: bool
    result: Optional[Stage2Result] = None
    criterion_id: Optional[str] = None
    error: Optional[RemoteError] = None


# --- Row summaries ---


class VendorSummaryInput(BaseModel):
    vendor_id: str
    vendor_name: str
    match_status: Literal["yes", "no", "unknown", "star"]
    evidence_description: str = ""
    research_notes: str = ""


class SummaryResponse(BaseModel):
    success: bool
    summaries: dict[str, str] = Field(default_factory=dict)
    error: Optional[RemoteError] = None


# --- Battlecards ---


class BattlecardCell(BaseModel):
    vendor_name: str
    text: str = ""


class BattlecardRow(BaseModel):
    category_title: str
    category_definition: str = ""
    cells: list[BattlecardCell] = Field(default_factory=list)
    timestamp: Optional[str] = None


class BattlecardRowResponse(BaseModel):
    success: bool
    row: Optional[BattlecardRow] = None
    error: Optional[RemoteError] = None
