"""Status conditions attached to managed resources."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

__all__ = [
    "ConditionStatus",
    "Condition",
    "READY_CONDITION_TYPE",
    "STATE_READY",
    "STATE_RECONCILING",
    "STATE_ERRORED",
    "STATE_FINALIZING",
    "upsert_condition",
    "update_ready_condition",
]

READY_CONDITION_TYPE = "Ready"

STATE_READY = "Ready"
STATE_RECONCILING = "Reconciling"
STATE_ERRORED = "Errored"
STATE_FINALIZING = "Finalizing"


class ConditionStatus(str, Enum):
    """Tri-state status of a condition."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


@dataclass
class Condition:
    """One status condition of a resource."""

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: str = ""


def _now_rfc3339_nano() -> str:
    now = datetime.now(timezone.utc)
    base = now.strftime("%Y-%m-%dT%H:%M:%S")
    fraction = f"{now.microsecond:06d}".rstrip("0")
    return f"{base}.{fraction}Z" if fraction else f"{base}Z"


def upsert_condition(
    conditions: Iterable[Condition], condition: Condition
) -> list[Condition]:
    """Return the conditions with ``condition`` replacing the one of its type, or appended."""
    result = list(conditions)
    for position, existing in enumerate(result):
        if existing.type == condition.type:
            result[position] = condition
            return result
    result.append(condition)
    return result


def update_ready_condition(
    conditions: Optional[list[Condition]],
    status: ConditionStatus | str,
    reason: str,
    message: str,
) -> list[Condition]:
    """Return the conditions with an added or updated ready condition.

    The transition time is reset to now when there was no ready condition
    before or when its status changes; otherwise it is kept.
    """
    status = ConditionStatus(status)
    current = next(
        (c for c in conditions or () if c.type == READY_CONDITION_TYPE), None
    )
    last_transition_time = current.last_transition_time if current else ""
    current_status = current.status if current else None

    if not last_transition_time or current_status != status:
        last_transition_time = _now_rfc3339_nano()

    new_condition = Condition(
        type=READY_CONDITION_TYPE,
        status=status,
        reason=reason,
        message=message,
        last_transition_time=last_transition_time,
    )
    if conditions is None:
        return [new_condition]
    return upsert_condition(
        (dataclasses.replace(c) for c in conditions), new_condition
    )