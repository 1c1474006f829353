"""Unit tests for the signal detector."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch
from uuid import uuid4
from zoneinfo import ZoneInfo

import pytest

from src.models.intervention import ActivityItem, ActivityStatus, InterventionPreferences
from src.services.signal_detector import SignalDetector, compute_daily_state, local_day_bounds

NOW = datetime(2024, 5, 10, 5, 0, tzinfo=timezone.utc)


def _items(completed=0, skipped=0, pending=0):
    statuses = (
        [ActivityStatus.COMPLETED] * completed
        + [ActivityStatus.SKIPPED] * skipped
        + [ActivityStatus.PENDING] * pending
    )
    return [
        ActivityItem(id=uuid4(), title=f"item {i}", scheduled_at=NOW, status=status)
        for i, status in enumerate(statuses)
    ]


class TestComputeDailyState:
    @pytest.mark.parametrize("hour", [0, 7, 14, 16, 21, 23])
    def test_empty_day_resets_regardless_of_hour(self, hour):
        state = compute_daily_state([], hour)

        assert state.energy_level == 5
        assert state.stress_level == 3
        assert state.total_count == 0
        assert state.completion_rate == 0.0

    def test_dense_day_low_completion_caps_stress(self):
        state = compute_daily_state(_items(completed=1, skipped=5, pending=2), 14)

        assert state.stress_level == 10
        assert state.energy_level == 3
        assert state.total_count == 8
        assert state.pending_count == 2

    def test_productive_morning(self):
        state = compute_daily_state(_items(completed=4, pending=1), 8)

        # 5 items (+1), completion 1.0 (-2)
        assert state.stress_level == 4
        # high completion 8, morning +1
        assert state.energy_level == 9
        assert state.completion_rate == 1.0

    def test_afternoon_dip(self):
        state = compute_daily_state(_items(completed=2, skipped=1), 16)

        # completion 0.67: good energy 7, dip -1
        assert state.energy_level == 6
        assert state.stress_level == 5

    def test_evening_backlog_adds_stress(self):
        items = _items(completed=1, pending=4)

        assert compute_daily_state(items, 19).stress_level == compute_daily_state(items, 12).stress_level + 1

    def test_completion_rate_ignores_pending(self):
        state = compute_daily_state(_items(completed=1, skipped=1, pending=6), 12)

        assert state.completion_rate == 0.5

    def test_levels_stay_in_range(self):
        state = compute_daily_state(_items(completed=10), 9)

        assert 1 <= state.stress_level <= 10
        assert 1 <= state.energy_level <= 10


class TestLocalDayBounds:
    def test_bounds_follow_user_timezone(self):
        start, end = local_day_bounds(NOW, ZoneInfo("Asia/Seoul"))

        assert start == datetime(2024, 5, 9, 15, 0, tzinfo=timezone.utc)
        assert end == datetime(2024, 5, 10, 15, 0, tzinfo=timezone.utc)


class TestDetectDailyState:
    @pytest.mark.asyncio
    async def test_loads_items_for_local_day(self, mock_pool):
        pool, conn = mock_pool
        conn.fetch.return_value = [
            {"id": uuid4(), "title": "Gym", "scheduled_at": NOW, "status": "completed"},
            {"id": uuid4(), "title": "Report", "scheduled_at": NOW, "status": "pending"},
        ]
        proactive = AsyncMock()
        proactive.get_preferences.return_value = InterventionPreferences(timezone="Asia/Seoul")
        detector = SignalDetector(proactive_service=proactive)

        with patch("src.services.signal_detector.get_pool", return_value=pool):
            state = await detector.detect_daily_state(str(uuid4()), now=NOW)

        assert state.total_count == 2
        assert state.completed_count == 1
        assert state.local_hour == 14
        args = conn.fetch.call_args[0]
        assert args[2] == datetime(2024, 5, 9, 15, 0, tzinfo=timezone.utc)
