from datetime import datetime, timedelta, timezone

import pytest

from jsoperator.conditions import (
    READY_CONDITION_TYPE,
    Condition,
    ConditionStatus,
    update_ready_condition,
    upsert_condition,
)
from jsoperator.durations import parse_rfc3339

PAST_TRANSITION = (datetime.now(timezone.utc) - timedelta(hours=1)).strftime(
    "%Y-%m-%dT%H:%M:%S.%fZ"
)


def _other_condition():
    return Condition(
        type="other",
        status=ConditionStatus.FALSE,
        reason="Reason",
        message="Message",
        last_transition_time=PAST_TRANSITION,
    )


def _assert_recent(timestamp):
    parsed = parse_rfc3339(timestamp)
    assert abs(datetime.now(timezone.utc) - parsed) <= timedelta(seconds=5)


def test_new_ready_condition():
    got = update_ready_condition(None, ConditionStatus.TRUE, "Test", "Test Message")
    assert len(got) == 1
    assert got[0].type == READY_CONDITION_TYPE
    assert got[0].status == ConditionStatus.TRUE
    assert got[0].reason == "Test"
    assert got[0].message == "Test Message"
    _assert_recent(got[0].last_transition_time)


def test_update_ready_condition():
    conditions = [
        _other_condition(),
        Condition(
            type=READY_CONDITION_TYPE,
            status=ConditionStatus.FALSE,
            reason="Test",
            message="Test Message",
            last_transition_time=PAST_TRANSITION,
        ),
    ]
    got = update_ready_condition(
        conditions, ConditionStatus.TRUE, "New Reason", "New Message"
    )
    assert len(got) == 2
    assert got[0] == _other_condition()
    assert got[1].type == READY_CONDITION_TYPE
    assert got[1].status == ConditionStatus.TRUE
    assert got[1].reason == "New Reason"
    assert got[1].message == "New Message"
    _assert_recent(got[1].last_transition_time)


def test_transition_time_kept_when_status_unchanged():
    conditions = [
        _other_condition(),
        Condition(
            type=READY_CONDITION_TYPE,
            status=ConditionStatus.TRUE,
            reason="Test",
            message="Test Message",
            last_transition_time=PAST_TRANSITION,
        ),
    ]
    got = update_ready_condition(
        conditions, ConditionStatus.TRUE, "New Reason", "New Message"
    )
    assert len(got) == 2
    assert got[0] == _other_condition()
    assert got[1].reason == "New Reason"
    assert got[1].message == "New Message"
    assert got[1].last_transition_time == PAST_TRANSITION


def test_string_status_is_accepted():
    got = update_ready_condition([], "Unknown", "Test", "msg")
    assert got[0].status is ConditionStatus.UNKNOWN


def test_invalid_status_rejected():
    with pytest.raises(ValueError):
        update_ready_condition(None, "Maybe", "Test", "msg")


def test_upsert_replaces_in_place():
    ready = Condition(READY_CONDITION_TYPE, ConditionStatus.FALSE, "a", "b", "t")
    replacement = Condition(READY_CONDITION_TYPE, ConditionStatus.TRUE, "c", "d", "t")
    original = [ready, _other_condition()]
    got = upsert_condition(original, replacement)
    assert got == [replacement, _other_condition()]
    assert original[0] is ready


def test_upsert_appends_new_type():
    new = Condition(READY_CONDITION_TYPE, ConditionStatus.TRUE)
    got = upsert_condition([_other_condition()], new)
    assert got == [_other_condition(), new]