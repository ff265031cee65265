"""
Content validity — whether a definition may still auto-start.

Checks, in order: the definition carries something to show; a completed
content with `start_if_not_complete` never restarts; the frequency policy
(once / multiple / unlimited, spacing via `every` and `at_least`).
"""

from datetime import datetime, timedelta
from typing import List, Optional

from guidance_kernel.models.content import (
    PRIORITY_ORDER,
    BizEvent,
    BizEvents,
    ContentDefinition,
    ContentPriority,
    ContentType,
    Frequency,
    FrequencyUnit,
)

SHOW_EVENTS = {
    ContentType.FLOW: BizEvents.FLOW_STEP_SEEN,
    ContentType.LAUNCHER: BizEvents.LAUNCHER_SEEN,
    ContentType.CHECKLIST: BizEvents.CHECKLIST_SEEN,
}

COMPLETE_EVENTS = {
    ContentType.FLOW: BizEvents.FLOW_COMPLETED,
    ContentType.LAUNCHER: BizEvents.LAUNCHER_ACTIVATED,
    ContentType.CHECKLIST: BizEvents.CHECKLIST_COMPLETED,
}

_UNIT_SECONDS = {
    FrequencyUnit.SECONDS: 1,
    FrequencyUnit.MINUTES: 60,
    FrequencyUnit.HOURS: 3600,
    FrequencyUnit.DAYS: 86400,
}


def _at_least(now: datetime, since: datetime, unit: FrequencyUnit, duration: int) -> bool:
    """Whether `duration` whole units have passed between `since` and `now`."""
    elapsed = (now - since).total_seconds()
    return int(elapsed // _UNIT_SECONDS[unit]) >= duration


def _latest(events: List[BizEvent]) -> Optional[BizEvent]:
    if not events:
        return None
    return max(events, key=lambda e: e.created_at)


def latest_event_of_others(
    content: ContentDefinition, contents: List[ContentDefinition], code_name: str
) -> Optional[BizEvent]:
    """Latest `code_name` event across the other contents of the same type."""
    events = []
    for other in contents:
        if other.id == content.id or other.type != content.type:
            continue
        if other.latest_session:
            events.extend(other.latest_session.events_named(code_name))
    return _latest(events)


def has_payload(content: ContentDefinition) -> bool:
    if content.type == ContentType.FLOW:
        return bool(content.steps)
    return content.data is not None


def is_valid_content(
    content: ContentDefinition, contents: List[ContentDefinition], now: datetime
) -> bool:
    if not has_payload(content):
        return False

    setting = content.config.auto_start_rules_setting
    if setting.start_if_not_complete and content.completed_sessions > 0:
        return False

    frequency = setting.frequency
    if frequency is None:
        return True

    show_event = SHOW_EVENTS[content.type].value
    last_other = latest_event_of_others(content, contents, show_event)
    if (
        last_other is not None
        and frequency.at_least is not None
        and not _at_least(now, last_other.created_at, frequency.at_least.unit, frequency.at_least.duration)
    ):
        return False

    if frequency.frequency == Frequency.ONCE:
        return content.dismissed_sessions == 0

    shows = []
    if content.latest_session:
        shows = [
            e
            for e in content.latest_session.events_named(show_event)
            if content.type != ContentType.FLOW or e.data.get("flow_step_number") == 0
        ]
    last_show = _latest(shows)
    if last_show is None:
        return True

    every = frequency.every
    if frequency.frequency == Frequency.MULTIPLE and every and every.times:
        if content.dismissed_sessions >= every.times:
            return False
    if every is not None and not _at_least(now, last_show.created_at, every.unit, every.duration):
        return False
    return True


def priority_rank(content: ContentDefinition) -> int:
    try:
        return PRIORITY_ORDER.index(content.priority)
    except ValueError:
        return PRIORITY_ORDER.index(ContentPriority.MEDIUM)


def sort_by_priority(contents: List[ContentDefinition]) -> List[ContentDefinition]:
    """Highest priority first; equal priorities keep their list order."""
    return sorted(contents, key=priority_rank)


def is_completed(content: ContentDefinition) -> bool:
    session = content.latest_session
    if session is None:
        return False
    return session.has_event(COMPLETE_EVENTS[content.type].value)


def wait_seconds(content: ContentDefinition, ceiling: float) -> float:
    wait = content.config.auto_start_rules_setting.wait or 0
    return max(0.0, min(float(wait), ceiling))
