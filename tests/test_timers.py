"""Tests for QuietPeriodTimer and DebounceWindow."""

from __future__ import annotations

import pytest

from gitty.timers import DebounceWindow, QuietPeriodTimer
from fakes import FakeScheduler


@pytest.fixture()
def scheduler():
    return FakeScheduler()


@pytest.fixture()
def fired():
    return []


class TestQuietPeriodTimer:
    def test_fires_after_quiet_period(self, scheduler, fired):
        timer = QuietPeriodTimer(2000, lambda: fired.append(scheduler.now_ms), scheduler)
        timer.reset()
        scheduler.advance(1999)
        assert fired == []
        scheduler.advance(1)
        assert fired == [2000]
        assert not timer.pending

    def test_reset_postpones(self, scheduler, fired):
        timer = QuietPeriodTimer(2000, lambda: fired.append(scheduler.now_ms), scheduler)
        timer.reset()
        scheduler.advance(1500)
        timer.reset()
        scheduler.advance(1500)
        assert fired == []
        scheduler.advance(500)
        assert fired == [3500]

    def test_fires_once(self, scheduler, fired):
        timer = QuietPeriodTimer(100, lambda: fired.append(scheduler.now_ms), scheduler)
        timer.reset()
        scheduler.advance(10_000)
        assert fired == [100]

    def test_cancel(self, scheduler, fired):
        timer = QuietPeriodTimer(100, lambda: fired.append(1), scheduler)
        timer.reset()
        assert timer.pending
        timer.cancel()
        scheduler.advance(1000)
        assert fired == []
        assert not timer.pending

    def test_reset_with_new_delay(self, scheduler, fired):
        timer = QuietPeriodTimer(2000, lambda: fired.append(scheduler.now_ms), scheduler)
        timer.reset(5000)
        scheduler.advance(4000)
        assert fired == []
        timer.reset(2000)
        scheduler.advance(2000)
        assert fired == [6000]

    def test_stale_generation_ignored(self, scheduler, fired):
        timer = QuietPeriodTimer(100, lambda: fired.append(1), scheduler)
        timer.reset()
        stale = timer.generation
        timer.reset()
        timer._fire(stale)
        assert fired == []


class TestDebounceWindow:
    def test_events_500ms_apart_yield_one(self):
        window = DebounceWindow(2000)
        assert window.admit(0) is True
        assert window.admit(500) is False

    def test_events_2500ms_apart_yield_two(self):
        window = DebounceWindow(2000)
        assert window.admit(0) is True
        assert window.admit(2500) is True

    def test_window_measured_from_last_accepted(self):
        window = DebounceWindow(2000)
        assert window.admit(0)
        assert not window.admit(1500)
        assert window.admit(2000)

    def test_clear(self):
        window = DebounceWindow(2000)
        window.admit(0)
        window.clear()
        assert window.admit(10)

    def test_uses_clock_when_no_time_given(self):
        now = [1000]
        window = DebounceWindow(2000, clock=lambda: now[0])
        assert window.admit()
        now[0] = 1500
        assert not window.admit()
        now[0] = 3100
        assert window.admit()
