from __future__ import annotations

from dataclasses import dataclass

from programme_scout.schemas.discovery import RoleAction
from programme_scout.services.role_index import RoleIndex


@dataclass(frozen=True, slots=True)
class ActionDecision:
    action: RoleAction
    existing_role_id: str | None = None
    url_changed: bool | None = None


@dataclass(frozen=True, slots=True)
class CandidateLink:
    url: str
    title: str
    action: RoleAction
    existing_role_id: str | None = None
    url_changed: bool | None = None
    confidence: str | None = None


def resolve_role_action(url: str, title: str, index: RoleIndex) -> ActionDecision:
    """Decide what a discovered link means against what is already known.

    First match wins: a dismissal beats any existing role, a URL match beats a
    name-only match, and within a URL match open beats closed beats unknown.
    A role stored without a URL is only reachable through its name.
    """
    if index.is_dismissed(url=url, title=title):
        return ActionDecision(action=RoleAction.SKIP)

    by_url, by_name = index.find_existing(url=url, title=title)

    if by_url is not None:
        if by_url.is_open is True:
            return ActionDecision(action=RoleAction.SKIP, existing_role_id=by_url.id)
        if by_url.is_open is False:
            return ActionDecision(action=RoleAction.REOPENING, existing_role_id=by_url.id, url_changed=False)
        return ActionDecision(action=RoleAction.URL_CHANGED, existing_role_id=by_url.id)

    if by_name is not None:
        if by_name.is_open is False:
            return ActionDecision(action=RoleAction.REOPENING, existing_role_id=by_name.id, url_changed=True)
        return ActionDecision(action=RoleAction.URL_CHANGED, existing_role_id=by_name.id)

    return ActionDecision(action=RoleAction.NEW_ROLE)
