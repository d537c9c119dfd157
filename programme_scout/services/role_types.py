from __future__ import annotations

import logging
import re
from typing import Any

from rapidfuzz.distance import Levenshtein

from programme_scout.services.repository import RoleTypeRecord

logger = logging.getLogger(__name__)

MIN_SIMILARITY = 0.6
CONTAINMENT_SCORE = 0.9
_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_role_type(value: str) -> str:
    cleaned = _NON_ALNUM_RE.sub(" ", value.lower())
    return _WHITESPACE_RE.sub(" ", cleaned).strip()


def similarity(left: str, right: str) -> float:
    longer, shorter = (left, right) if len(left) > len(right) else (right, left)
    if not longer:
        return 1.0
    if shorter in longer:
        return CONTAINMENT_SCORE
    return (len(longer) - Levenshtein.distance(left, right)) / len(longer)


class RoleTypeCache:
    """Role-type lookup owned by one caller; loaded on first use, cleared with ``invalidate()``."""

    def __init__(self, repository: Any) -> None:
        self.repository = repository
        self._role_types: list[RoleTypeRecord] | None = None

    async def load(self) -> list[RoleTypeRecord]:
        if self._role_types is None:
            self._role_types = await self.repository.list_role_types()
        return self._role_types

    def invalidate(self) -> None:
        self._role_types = None

    async def map_role_type(self, role_type: str | None) -> str | None:
        if not role_type:
            return None
        role_types = await self.load()
        if not role_types:
            return None

        wanted = normalize_role_type(role_type)
        for candidate in role_types:
            if wanted in (normalize_role_type(candidate.slug), normalize_role_type(candidate.label)):
                return candidate.id

        best: RoleTypeRecord | None = None
        best_score = 0.0
        for candidate in role_types:
            score = max(
                similarity(wanted, normalize_role_type(candidate.slug)),
                similarity(wanted, normalize_role_type(candidate.label)),
            )
            if score > MIN_SIMILARITY and score > best_score:
                best, best_score = candidate, score

        if best is None:
            logger.info("no role type match for %r", role_type)
            return None
        logger.debug("role type %r mapped to %s (score=%.2f)", role_type, best.slug, best_score)
        return best.id
