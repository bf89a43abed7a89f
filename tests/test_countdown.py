"""Tests for the countdown engine."""

import threading
import time
from datetime import datetime
from unittest.mock import Mock

import pytest

from leave_automation import CountdownEngine, ShiftConfig


class FakeClock:
    """Settable wall clock."""

    def __init__(self, hour, minute, second=0):
        self.now = datetime(2026, 10, 17, hour, minute, second)

    def set(self, hour, minute, second=0):
        self.now = self.now.replace(hour=hour, minute=minute, second=second)

    def __call__(self):
        return self.now


@pytest.fixture
def renderer():
    renderer = Mock()
    renderer.render_label.side_effect = lambda text: f"img:{text}"
    return renderer


@pytest.fixture
def clock():
    return FakeClock(8, 0)


@pytest.fixture
def engine(renderer, clock):
    engine = CountdownEngine(
        renderer,
        on_tooltip=Mock(),
        on_bitmap=Mock(),
        on_notify=Mock(),
        clock=clock,
        interval=3600,
    )
    yield engine
    engine.stop()


class TestSubmit:
    """Tests for submitting shifts."""

    def test_end_to_end(self, engine, renderer, clock):
        """Test a shift 5 minutes from leave with a 5 minute threshold."""
        clock.set(8, 5)

        ok, message = engine.submit_shift("08:00", "08:10", 5)

        assert ok is True
        assert message == "Leave at 08:10"
        assert engine.minutes_remaining == 5
        renderer.render_label.assert_called_once_with("5m")
        engine.on_bitmap.assert_called_once_with("img:5m")
        engine.on_notify.assert_called_once()
        tooltip = engine.on_tooltip.call_args[0][0]
        assert "Start: 08:00" in tooltip
        assert "Leave: 08:10" in tooltip
        assert "Remaining: 5m" in tooltip

    def test_state_transitions(self, engine):
        """Test idle until the first submission."""
        assert engine.state == 'idle'
        assert engine.refresh() is False

        engine.submit_shift("08:00", "16:00", 0)

        assert engine.state == 'active'

    def test_invalid_input(self, engine, renderer):
        """Test bad input is reported and leaves the engine idle."""
        ok, message = engine.submit_shift("08:00", "25:00", 5)

        assert ok is False
        assert "25:00" in message
        assert engine.state == 'idle'
        renderer.render_label.assert_not_called()
        assert engine._timer is None

    def test_negative_threshold_rejected(self, engine):
        """Test reminder minutes must not be negative."""
        ok, _ = engine.submit_shift("08:00", "16:00", -1)
        assert ok is False

    def test_resubmit_replaces_timer(self, engine):
        """Test only one periodic timer exists."""
        engine.submit_shift("08:00", "16:00", 0)
        first = engine._timer

        engine.submit_shift("08:00", "16:30", 0)

        assert engine._timer is not first
        assert first.finished.is_set()
        assert not engine._timer.finished.is_set()

    def test_long_shift_shows_hours(self, engine, renderer):
        """Test the icon text for multi-hour remaining time."""
        engine.submit(ShiftConfig("08:00", "16:30", 0))

        renderer.render_label.assert_called_once_with("8h")
        assert engine.on_tooltip.call_args[0][0].endswith("Remaining: 8h 30m")


class TestNotifications:
    """Tests for the single reminder."""

    def test_fires_once_when_crossing_threshold(self, engine, clock):
        """Test 11 -> 9 -> 8 minutes fires exactly once."""
        clock.set(9, 49)
        engine.submit_shift("08:00", "10:00", 10)
        engine.on_notify.assert_not_called()

        clock.set(9, 51)
        engine.refresh()
        assert engine.on_notify.call_count == 1

        clock.set(9, 52)
        engine.refresh()
        assert engine.on_notify.call_count == 1

    def test_new_leave_rearms(self, engine, clock):
        """Test a different leave value can notify again."""
        clock.set(9, 55)
        engine.submit_shift("08:00", "10:00", 10)
        assert engine.on_notify.call_count == 1

        engine.submit_shift("08:00", "10:02", 10)

        assert engine.on_notify.call_count == 2

    def test_same_leave_does_not_rearm(self, engine, clock):
        """Test resubmitting the same leave value keeps the guard."""
        clock.set(9, 55)
        engine.submit_shift("08:00", "10:00", 10)
        engine.submit_shift("08:05", "10:00", 10)

        assert engine.on_notify.call_count == 1

    def test_disabled_threshold(self, engine, clock):
        """Test no reminder with a zero threshold."""
        clock.set(9, 59)
        engine.submit_shift("08:00", "10:00", 0)
        engine.on_notify.assert_not_called()

    def test_leave_already_passed(self, engine, clock):
        """Test a passed leave time notifies immediately."""
        clock.set(18, 0)
        engine.submit_shift("08:00", "17:00", 5)

        title, body = engine.on_notify.call_args[0]
        assert title == 'Time to Leave'
        assert "You may leave now" in body
        assert engine.minutes_remaining == 0

    def test_failing_notifier_does_not_break_tick(self, engine, clock):
        """Test notification errors are swallowed."""
        engine.on_notify.side_effect = RuntimeError("toast failed")
        clock.set(9, 55)

        ok, _ = engine.submit_shift("08:00", "10:00", 10)

        assert ok is True
        assert engine.already_fired is True
        engine.on_tooltip.assert_called()

    def test_submit_waits_for_inflight_tick(self, engine, renderer, clock):
        """Test a submit during a tick cannot make the old leave fire again."""
        clock.set(9, 55)
        engine.submit_shift("08:00", "10:00", 10)
        assert engine.on_notify.call_count == 1

        entered = threading.Event()
        release = threading.Event()

        def slow_render(text):
            if text == "4m":
                entered.set()
                release.wait(5)
            return f"img:{text}"

        renderer.render_label.side_effect = slow_render
        clock.set(9, 56)

        tick = threading.Thread(target=engine.refresh)
        tick.start()
        assert entered.wait(5)

        submitter = threading.Thread(
            target=engine.submit_shift, args=("08:00", "16:00", 10)
        )
        submitter.start()
        submitter.join(0.2)
        assert submitter.is_alive()

        release.set()
        tick.join(5)
        submitter.join(5)

        bodies = [c[0][1] for c in engine.on_notify.call_args_list]
        assert len([b for b in bodies if "10:00" in b]) == 1
        assert engine.shift.leave == "16:00"


class TestIndicatorUpdates:
    """Tests for bitmap and tooltip refresh."""

    def test_same_text_renders_once(self, engine, renderer, clock):
        """Test two ticks with the same text render one bitmap."""
        engine.submit_shift("08:00", "10:30", 0)
        clock.set(8, 1)
        engine.refresh()

        renderer.render_label.assert_called_once_with("2h")
        assert engine.on_bitmap.call_count == 1
        assert engine.on_tooltip.call_count == 2

    def test_changed_text_renders_again(self, engine, renderer, clock):
        """Test a new display text triggers a render."""
        clock.set(9, 58)
        engine.submit_shift("08:00", "10:00", 0)
        clock.set(9, 59)
        engine.refresh()

        assert [c[0][0] for c in renderer.render_label.call_args_list] == [
            "2m", "1m"
        ]

    def test_busy_renderer_retries_next_tick(self, engine, renderer):
        """Test a skipped render is attempted again."""
        renderer.render_label.side_effect = [None, "img:8h"]
        engine.submit_shift("08:00", "16:00", 0)

        engine.on_bitmap.assert_not_called()
        assert engine.last_display_text is None

        engine.refresh()

        engine.on_bitmap.assert_called_once_with("img:8h")
        assert engine.last_display_text == "8h"

    def test_overlapping_evaluation_is_skipped(self, engine, renderer):
        """Test a tick during an in-flight evaluation does nothing."""
        engine.submit_shift("08:00", "16:00", 0)
        renderer.render_label.reset_mock()
        engine.last_display_text = None

        engine._eval_lock.acquire()
        try:
            assert engine.refresh() is False
        finally:
            engine._eval_lock.release()

        renderer.render_label.assert_not_called()

    def test_periodic_timer(self, renderer, clock):
        """Test the timer keeps evaluating."""
        tooltip = Mock()
        engine = CountdownEngine(renderer, on_tooltip=tooltip,
                                 clock=clock, interval=0.05)
        try:
            engine.submit_shift("08:00", "16:00", 0)
            deadline = time.time() + 5
            while tooltip.call_count < 3 and time.time() < deadline:
                time.sleep(0.02)
        finally:
            engine.stop()

        assert tooltip.call_count >= 3
        renderer.render_label.assert_called_once_with("8h")

    def test_stop_cancels_timer(self, engine):
        """Test stop() cancels the live timer."""
        engine.submit_shift("08:00", "16:00", 0)
        timer = engine._timer

        engine.stop()

        assert timer.finished.is_set()
        assert engine._timer is None
