from datetime import datetime, timedelta, timezone

import pytest

from collab_notifier.config import SchedulerConfig
from collab_notifier.scheduler import (
    END_OF_DAY_SUMMARY,
    HOURLY_CHECK,
    JOBS,
    MORNING_DIGEST,
    build_triggers,
    should_fire,
    slot_start,
)

CONFIG = SchedulerConfig()


def _at(hour, minute=0, day=12):
    return datetime(2024, 3, day, hour, minute, tzinfo=timezone.utc)


def test_daily_slot_is_todays_hour_once_passed():
    assert slot_start(MORNING_DIGEST, _at(7, 0), CONFIG) == _at(7)
    assert slot_start(MORNING_DIGEST, _at(15, 30), CONFIG) == _at(7)


def test_daily_slot_before_hour_is_yesterdays():
    assert slot_start(END_OF_DAY_SUMMARY, _at(9), CONFIG) == _at(17, day=11)


def test_hourly_slot_within_and_outside_working_hours():
    assert slot_start(HOURLY_CHECK, _at(10, 45), CONFIG) == _at(10)
    assert slot_start(HOURLY_CHECK, _at(22, 5), CONFIG) == _at(18)
    assert slot_start(HOURLY_CHECK, _at(3), CONFIG) == _at(18, day=11)


def test_unknown_job_rejected():
    with pytest.raises(ValueError):
        slot_start("weekly_report", _at(9), CONFIG)


def test_should_fire_once_per_slot():
    slot = _at(7)

    assert should_fire(None, slot)
    assert should_fire(slot - timedelta(days=1), slot)
    assert not should_fire(slot, slot)
    # A naive timestamp is read as UTC
    assert not should_fire(datetime(2024, 3, 12, 7, 0), slot)


def test_triggers_cover_every_job():
    triggers = build_triggers(CONFIG)

    assert set(triggers) == set(JOBS)
    next_fire = triggers[HOURLY_CHECK].get_next_fire_time(None, _at(18, 30))
    assert next_fire.hour == 9
    assert triggers[MORNING_DIGEST].get_next_fire_time(None, _at(6, 59)).hour == 7
