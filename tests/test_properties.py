"""
Property-based tests for business time accounting.

Uses Hypothesis to check invariants that must hold for any tick schedule:
- Calendar: elapsed business time is additive over adjacent intervals
- Clock: flushing at arbitrary ticks sums to a single flush over the span
"""

from datetime import datetime, timedelta, timezone

from hypothesis import given, settings
from hypothesis import strategies as st

from sla.domain import BusinessCalendar, SLAPolicy, TicketSLAClock, default_business_week

POLICY = SLAPolicy(
    id="p3", name="Standard", priority=3,
    response_target_minutes=60, resolution_target_minutes=1440,
)

# Zones with a DST change, including a half-hour shift and a southern hemisphere one
ZONES = ["Europe/London", "America/New_York", "Australia/Lord_Howe", "America/Santiago"]

CALENDARS = {
    zone: BusinessCalendar.build(zone, zone, zone, default_business_week())
    for zone in ZONES
}

starts = st.datetimes(
    min_value=datetime(2024, 1, 1),
    max_value=datetime(2024, 12, 31),
).map(lambda d: d.replace(microsecond=0, tzinfo=timezone.utc))

# Millisecond steps of up to three days
steps = st.integers(min_value=1, max_value=3 * 24 * 3600 * 1000)


# ── Calendar Properties ───────────────────────────────────────────────


class TestCalendarProperties:
    @given(zone=st.sampled_from(ZONES), start=starts, first=steps, second=steps)
    @settings(max_examples=50, deadline=None)
    def test_elapsed_is_additive(self, zone, start, first, second):
        """Business time over [a, c) equals [a, b) plus [b, c)."""
        calendar = CALENDARS[zone]
        middle = start + timedelta(milliseconds=first)
        end = middle + timedelta(milliseconds=second)

        whole = calendar.business_elapsed_ms(start, end)
        parts = calendar.business_elapsed_ms(start, middle) + calendar.business_elapsed_ms(middle, end)
        assert whole == parts

    @given(zone=st.sampled_from(ZONES), start=starts, length=steps)
    @settings(max_examples=50, deadline=None)
    def test_elapsed_never_exceeds_wall_time(self, zone, start, length):
        calendar = CALENDARS[zone]
        elapsed = calendar.business_elapsed_ms(start, start + timedelta(milliseconds=length))
        assert 0 <= elapsed <= length


# ── Clock Properties ──────────────────────────────────────────────────


class TestClockProperties:
    @given(
        zone=st.sampled_from(ZONES),
        start=starts,
        ticks=st.lists(steps, min_size=1, max_size=30),
    )
    @settings(max_examples=50, deadline=None)
    def test_ticks_sum_to_one_flush(self, zone, start, ticks):
        """Counters after N flushes match one elapsed computation over the span."""
        calendar = CALENDARS[zone]
        clock = TicketSLAClock.start("T-1", POLICY, calendar.id, start)

        now = start
        for step in ticks:
            now += timedelta(milliseconds=step)
            clock.flush(calendar, now)

        expected = calendar.business_elapsed_ms(start, now)
        assert clock.resolution_elapsed_ms == expected
        assert clock.response_elapsed_ms == expected
        assert clock.last_started_at == now

    @given(
        zone=st.sampled_from(ZONES),
        start=starts,
        ticks=st.lists(steps, min_size=2, max_size=10),
    )
    @settings(max_examples=30, deadline=None)
    def test_late_tick_adds_nothing(self, zone, start, ticks):
        """A flush at an instant behind the checkpoint leaves the counters alone."""
        calendar = CALENDARS[zone]
        clock = TicketSLAClock.start("T-1", POLICY, calendar.id, start)
        end = start + timedelta(milliseconds=sum(ticks))
        clock.flush(calendar, end)
        before = clock.resolution_elapsed_ms

        assert clock.flush(calendar, end - timedelta(milliseconds=ticks[0])) == 0
        assert clock.resolution_elapsed_ms == before
        assert clock.last_started_at == end
