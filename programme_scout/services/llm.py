from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any

from openai import AsyncOpenAI
from pydantic import ValidationError

from programme_scout.core.config import Settings
from programme_scout.core.identity import normalize_url
from programme_scout.core.retry import RetryPolicy
from programme_scout.schemas.discovery import (
    ClassifiedLink,
    ExistingProgramme,
    ExpectedProgramme,
    ProgrammeSuggestion,
    ScrapedRole,
    SeenRole,
)
from programme_scout.services.html import LinkContext
from programme_scout.services.usage import CLASSIFICATION_PROMPT_RATIO, EXTRACTION_PROMPT_RATIO, TokenUsage

logger = logging.getLogger(__name__)

EXTRACTION_CONTENT_LIMIT = 60_000

LINK_CLASSIFICATION_PROMPT = """You identify links on a careers page that lead to individual job posting detail pages.

Each link comes with its url, linkText, ariaLabel, the headings of the card it sits in, and the card text.
A job posting link has a specific role title in its headings or card text. Navigation, filters,
categories, social media and generic pages are not job postings.

Take the role title from the headings first, then from the card text. Never use generic link text
such as "Apply now" or "Learn more" as the title. Keep the full title as written, for example
"2026 Summer Analyst - Investment Banking".

Confidence: high when the title is an obvious heading, medium when taken from card text, low when unsure.

Reply with a JSON object: {"jobLinks": [{"url": str, "title": str, "confidence": "high"|"medium"|"low"}]}.
Only include job postings."""

EXTRACTION_PROMPT = """You extract structured data from a single job posting page.

Rules:
- Use only information stated on the page. Unknown fields are null.
- Dates use ISO format (YYYY-MM-DD) where possible.
- process lists the application stages in order, for example ["Online Application", "Assessment", "Interview"].
- is_open is true when applications are accepted and false when the page says the role is closed.
- is_rolling is true when applications are reviewed on a rolling basis.
- role_type is one of: investment-banking, sales-and-trading, private-equity, hedge-fund-prop-trading,
  consulting, asset-management, research, risk-management, wealth-management. When none fits, set
  role_type to null and put a short label in suggested_new_role_type.
- program_type is one of: summer_internship (8-12 week summer programme), spring_week (one-week insight
  programme), graduate (full-time graduate or rotational programme), off_cycle_internship (internship outside
  summer), apprenticeship (multi-year work and study programme).
- description summarises responsibilities, team and what the role involves.

Reply with one JSON object with the keys: title, role_type, suggested_new_role_type, program_type, location,
description, opening_date, deadline, is_rolling, is_open, current_round, process, requirements
({degree_required, min_year_of_study, skills}), cv_required, cover_letter_required, written_answers_required,
info_test_prep_url."""

PROGRAMME_SUGGESTION_PROMPT = """You group student and graduate roles into recruiting programmes.

A programme has a name, using the employer's own terminology (for example "2026 Summer Analyst" or
"2026 Graduate Scheme"), and a program_type: summer_internship, spring_week, graduate, off_cycle_internship
or apprenticeship.

Naming rules:
- Extract the common pattern across the role titles seen on the same page.
- Leave out locations, the employer name, and divisions when several divisions share the programme.
- Keep a division only when every role shares it or it is clearly a separate programme.

Matching rules:
- Existing programmes are database records with ids. Set is_new=false only when matching one of them,
  and always return its id in matched_program_id.
- Expected programmes are naming hints only. Using one still produces is_new=true.

Confidence: high for a clear match or strong shared pattern, medium for some ambiguity, low when unsure.

Reply with one JSON object: {"matched_program_id": str|null, "matched_program_name": str|null,
"suggested_name": str|null, "normalized_name": str|null, "program_type": str|null,
"confidence": "high"|"medium"|"low", "reasoning": str, "is_new": bool}."""


class LLMBoundaryError(Exception):
    """Raised when the language model call fails or returns an unusable payload."""


@dataclass(slots=True)
class LinkClassification:
    links: list[ClassifiedLink]
    usage: TokenUsage


@dataclass(slots=True)
class RoleExtraction:
    role: ScrapedRole
    usage: TokenUsage


@dataclass(slots=True)
class SuggestionResult:
    suggestion: ProgrammeSuggestion
    usage: TokenUsage


class OpenAIDiscoveryClient:
    """Link classification, role extraction and programme suggestion over the chat completions API."""

    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        classification_model: str = "gpt-4o-mini",
        suggestion_model: str = "gpt-4o-mini",
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.client = client
        self.classification_model = classification_model
        self.suggestion_model = suggestion_model
        self.retry_policy = retry_policy or RetryPolicy()
        # Extraction is the expensive call; it gets a single retry.
        self.extraction_retry_policy = self.retry_policy.with_attempts(2)

    @classmethod
    def from_settings(cls, settings: Settings) -> OpenAIDiscoveryClient:
        return cls(
            AsyncOpenAI(api_key=settings.openai_api_key, timeout=settings.openai_timeout_seconds, max_retries=0),
            classification_model=settings.link_classification_model,
            suggestion_model=settings.programme_suggestion_model,
            retry_policy=RetryPolicy(
                max_attempts=settings.llm_max_attempts,
                backoff_seconds=settings.llm_backoff_seconds,
                max_backoff_seconds=settings.llm_max_backoff_seconds,
            ),
        )

    async def classify_links(self, links: list[LinkContext]) -> LinkClassification:
        if not links:
            return LinkClassification(links=[], usage=TokenUsage())
        payload = [link.as_prompt_item(index) for index, link in enumerate(links)]
        user = (
            "Analyze these links from a careers page and return the individual job postings with their role titles.\n\n"
            f"LINKS:\n{json.dumps(payload, indent=2)}"
        )
        data, usage = await self.retry_policy.call(
            "link classification",
            lambda: self._complete_json(
                model=self.classification_model,
                system=LINK_CLASSIFICATION_PROMPT,
                user=user,
                prompt_ratio=CLASSIFICATION_PROMPT_RATIO,
            ),
        )
        known_urls = {normalize_url(link.url): link.url for link in links}
        classified: list[ClassifiedLink] = []
        for item in data.get("jobLinks") or []:
            if not isinstance(item, dict):
                continue
            try:
                link = ClassifiedLink.model_validate(item)
            except ValidationError:
                continue
            # Drop URLs that were not on the page.
            page_url = known_urls.get(normalize_url(link.url))
            if page_url and link.title.strip():
                classified.append(link.model_copy(update={"url": page_url, "title": link.title.strip()}))
        return LinkClassification(links=classified, usage=usage)

    async def extract_role(self, *, url: str, content: str, model: str) -> RoleExtraction:
        user = (
            "Extract the job role details from this job posting page.\n\n"
            f"URL: {url}\n\nPAGE CONTENT:\n{content[:EXTRACTION_CONTENT_LIMIT]}"
        )

        async def attempt() -> RoleExtraction:
            data, usage = await self._complete_json(
                model=model,
                system=EXTRACTION_PROMPT,
                user=user,
                prompt_ratio=EXTRACTION_PROMPT_RATIO,
            )
            try:
                role = ScrapedRole.model_validate(data)
            except ValidationError as exc:
                raise LLMBoundaryError(f"extraction payload did not validate: {exc}") from exc
            return RoleExtraction(role=role, usage=usage)

        return await self.extraction_retry_policy.call("role extraction", attempt)

    async def suggest_programme(
        self,
        *,
        role: ScrapedRole,
        seen_roles: list[SeenRole],
        expected_programmes: list[ExpectedProgramme],
        existing_programmes: list[ExistingProgramme],
        firm_name: str | None = None,
    ) -> SuggestionResult:
        user = _build_suggestion_prompt(
            role=role,
            seen_roles=seen_roles,
            expected_programmes=expected_programmes,
            existing_programmes=existing_programmes,
            firm_name=firm_name,
        )

        async def attempt() -> SuggestionResult:
            data, usage = await self._complete_json(
                model=self.suggestion_model,
                system=PROGRAMME_SUGGESTION_PROMPT,
                user=user,
                prompt_ratio=EXTRACTION_PROMPT_RATIO,
            )
            try:
                suggestion = ProgrammeSuggestion.model_validate(data)
            except ValidationError as exc:
                raise LLMBoundaryError(f"suggestion payload did not validate: {exc}") from exc
            return SuggestionResult(suggestion=suggestion, usage=usage)

        return await self.retry_policy.call("programme suggestion", attempt)

    async def _complete_json(
        self,
        *,
        model: str,
        system: str,
        user: str,
        prompt_ratio: float,
    ) -> tuple[dict[str, Any], TokenUsage]:
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            raise LLMBoundaryError(f"{model} request failed: {exc}") from exc

        usage = TokenUsage.from_response(response.usage, prompt_ratio=prompt_ratio)
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise LLMBoundaryError(f"{model} returned an empty response")
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise LLMBoundaryError(f"{model} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise LLMBoundaryError(f"{model} returned a non-object JSON payload")
        logger.debug("llm call model=%s tokens=%s", model, usage.total_tokens)
        return data, usage


def _build_suggestion_prompt(
    *,
    role: ScrapedRole,
    seen_roles: list[SeenRole],
    expected_programmes: list[ExpectedProgramme],
    existing_programmes: list[ExistingProgramme],
    firm_name: str | None,
) -> str:
    titles = "\n".join(f'{index}. "{seen.title}"' for index, seen in enumerate(seen_roles, start=1)) or "None"
    expected = (
        "\n".join(f"- {item.name} (type: {item.program_type or 'unknown'}) [hint only]" for item in expected_programmes)
        or "None provided"
    )
    existing = (
        "\n".join(
            f"- {item.name} (ID: {item.id}, normalized: {item.normalized_name or 'N/A'})" for item in existing_programmes
        )
        or "None in database"
    )
    lines = ["Suggest which programme this role belongs to."]
    if firm_name:
        lines.append(f"Firm: {firm_name}")
    lines.extend(
        [
            "",
            f"Existing programmes (database records):\n{existing}",
            "",
            f"Expected programmes (naming hints, not in the database):\n{expected}",
            "",
            f"All roles found on the same listing page:\n{titles}",
            "",
            "Role to categorise:",
            f'Title: "{role.title}"',
            f"Program type: {role.program_type or 'unknown'}",
            f"Role type: {role.role_type or 'unknown'}",
            f"Location: {role.location or 'unknown'}",
        ]
    )
    if role.description:
        lines.append(f'Description (first 200 chars): "{role.description[:200]}..."')
    return "\n".join(lines)
