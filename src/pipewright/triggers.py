# triggers.py
from __future__ import annotations

from typing import Sequence

from .model import Event, Trigger
from .paths import match_filters, matches_any


# Activity types a trigger listens to when it declares no `types:` filter.
DEFAULT_TYPES = {
    "pull_request": ("opened", "synchronize", "reopened"),
    "pull_request_target": ("opened", "synchronize", "reopened"),
}

# Never started by a regular event: the timer / an explicit API call owns these.
TIMER_EVENTS = ("schedule",)
MANUAL_EVENTS = ("workflow_dispatch",)


def _included(value: str | None, include: Sequence[str] | None, exclude: Sequence[str] | None) -> bool:
    if include is None and exclude is None:
        return True
    if value is None:
        return False
    if include is not None:
        return match_filters(value, include)
    return not matches_any(value, exclude or ())


def _ref_filters_pass(trigger: Trigger, event: Event) -> bool:
    branch_filtered = trigger.branches is not None or trigger.branches_ignore is not None
    tag_filtered = trigger.tags is not None or trigger.tags_ignore is not None
    if not branch_filtered and not tag_filtered:
        return True

    if event.name in ("pull_request", "pull_request_target"):
        # pull request filters apply to the base branch
        return _included(event.base_branch, trigger.branches, trigger.branches_ignore)

    branch, tag = event.branch, event.tag
    if branch is not None:
        return branch_filtered and _included(branch, trigger.branches, trigger.branches_ignore)
    if tag is not None:
        return tag_filtered and _included(tag, trigger.tags, trigger.tags_ignore)
    return False


def _path_filters_pass(trigger: Trigger, event: Event) -> bool:
    if trigger.paths is None and trigger.paths_ignore is None:
        return True
    files = event.files
    if files is None:
        # nothing known about the change set: do not filter
        return True
    if trigger.paths is not None:
        return any(match_filters(f, trigger.paths) for f in files)
    return any(not matches_any(f, trigger.paths_ignore or ()) for f in files)


def _types_pass(trigger: Trigger, event: Event) -> bool:
    types = trigger.types if trigger.types is not None else DEFAULT_TYPES.get(trigger.event)
    if types is None:
        return True
    return event.action in types


def trigger_matches(trigger: Trigger, event: Event) -> bool:
    """Type match plus filter predicate for a non-timer, non-manual event."""
    if trigger.event != event.name:
        return False
    if trigger.event in TIMER_EVENTS or trigger.event in MANUAL_EVENTS:
        return False
    return _types_pass(trigger, event) and _ref_filters_pass(trigger, event) and _path_filters_pass(trigger, event)
