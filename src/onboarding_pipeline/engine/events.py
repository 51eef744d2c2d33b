from __future__ import annotations

import logging
from typing import Callable, List, Optional

from ..models import TransitionEvent, VerificationRecord

LOGGER = logging.getLogger(__name__)

Subscriber = Callable[[TransitionEvent], None]

_STAGES = (
    ("identity", "identity_status", "identity_rejection_reason"),
    ("credential", "credential_status", "credential_rejection_reason"),
    ("contact", "contact_status", None),
    ("cross_check", "cross_check_status", "cross_check_reasoning"),
)


def _value(status) -> str:
    return status.value if hasattr(status, "value") else str(status)


def diff_events(
    before: Optional[VerificationRecord],
    after: VerificationRecord,
    at: str,
) -> List[TransitionEvent]:
    """One event per stage whose status changed between two snapshots of a record."""
    events: List[TransitionEvent] = []
    for stage, column, reason_column in _STAGES:
        old = _value(getattr(before, column)) if before is not None else "not_started"
        new = _value(getattr(after, column))
        if old == new:
            continue
        events.append(
            TransitionEvent(
                record_id=after.id,
                user_id=after.user_id,
                stage=stage,
                from_status=old,
                to_status=new,
                reason=getattr(after, reason_column) if reason_column else None,
                at=at,
            )
        )
    return events


class EventBus:
    """In-process fan-out of stage transition events."""

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []

    def subscribe(self, fn: Subscriber) -> None:
        self._subscribers.append(fn)

    def publish(self, event: TransitionEvent) -> None:
        LOGGER.info(
            "record=%s stage=%s %s -> %s",
            event.record_id, event.stage, event.from_status, event.to_status,
        )
        for fn in list(self._subscribers):
            try:
                fn(event)
            except Exception as exc:
                # a broken subscriber must not undo a committed transition
                LOGGER.warning("Transition subscriber %r failed: %s", fn, exc)
