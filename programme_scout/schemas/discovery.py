from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

ProgramType = Literal["summer_internship", "spring_week", "graduate", "off_cycle_internship", "apprenticeship"]
Confidence = Literal["high", "medium", "low"]

PROGRAM_TYPES: tuple[str, ...] = (
    "summer_internship",
    "spring_week",
    "graduate",
    "off_cycle_internship",
    "apprenticeship",
)


def _known_program_type(value: Any) -> str | None:
    if isinstance(value, str) and value.strip().lower() in PROGRAM_TYPES:
        return value.strip().lower()
    return None


def _known_confidence(value: Any, *, default: str) -> str:
    if isinstance(value, str) and value.strip().lower() in {"high", "medium", "low"}:
        return value.strip().lower()
    return default


class RoleAction(str, Enum):
    SKIP = "SKIP"
    NEW_ROLE = "NEW_ROLE"
    URL_CHANGED = "URL_CHANGED"
    REOPENING = "REOPENING"


class RoleRequirements(BaseModel):
    degree_required: str | None = None
    min_year_of_study: int | None = None
    skills: list[str] | None = None


class ScrapedRole(BaseModel):
    title: str
    role_type: str | None = None
    suggested_new_role_type: str | None = None
    program_type: ProgramType | None = None
    location: str | None = None
    description: str | None = None
    opening_date: str | None = None
    deadline: str | None = None
    is_rolling: bool | None = None
    is_open: bool | None = None
    current_round: str | None = None
    process: list[str] | None = None
    requirements: RoleRequirements | None = None
    cv_required: bool | None = None
    cover_letter_required: bool | None = None
    written_answers_required: bool | None = None
    info_test_prep_url: str | None = None

    @field_validator("program_type", mode="before")
    @classmethod
    def _coerce_program_type(cls, value: Any) -> Any:
        return _known_program_type(value)


class ProgrammeSuggestion(BaseModel):
    matched_program_id: str | None = None
    matched_program_name: str | None = None
    suggested_name: str | None = None
    normalized_name: str | None = None
    program_type: ProgramType | None = None
    confidence: Confidence = "low"
    reasoning: str = ""
    is_new: bool = True

    @field_validator("program_type", mode="before")
    @classmethod
    def _coerce_program_type(cls, value: Any) -> Any:
        return _known_program_type(value)

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: Any) -> Any:
        return _known_confidence(value, default="low")


class ExpectedProgramme(BaseModel):
    name: str
    program_type: str | None = None
    normalized_name: str | None = None


class ExistingProgramme(BaseModel):
    id: str
    name: str
    normalized_name: str | None = None
    program_type: str | None = None


class ClassifiedLink(BaseModel):
    url: str
    title: str
    confidence: Confidence = "medium"

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: Any) -> Any:
        return _known_confidence(value, default="medium")


class SeenRole(BaseModel):
    title: str
    url: str


class DiscoveryMetrics(BaseModel):
    roles_found: int = 0
    roles_skipped: int = 0
    roles_new: int = 0
    roles_url_changed: int = 0
    roles_reopened: int = 0
    roles_extracted: int = 0
    roles_failed: int = 0
    total_tokens_used: int = 0
    total_cost_usd: float = 0.0
    duration_seconds: float = 0.0
    index_degraded: bool = False
    error: str | None = None

    def history_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude={"error"})


class ScanRequest(BaseModel):
    scrape_url_id: str
    scraper_config: dict[str, Any] = Field(default_factory=dict)
