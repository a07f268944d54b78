"""Tests for aggregation, recompute-from and persistence."""

from __future__ import annotations

import sqlite3
import threading
from datetime import date, datetime, time, timedelta

import pytest

from tdeecoach.tracking.expenditure import calculate_cold_start_tdee
from tdeecoach.tracking.models import GoalType, IntakeEntry, LogStatus
from tdeecoach.tracking.queries import (
    CheckInQueries,
    ComputedStateQueries,
    DailyRecordQueries,
    GoalChangeQueries,
)
from tdeecoach.tracking.recalculation import (
    RecalculationError,
    UserLockRegistry,
    aggregate_day,
)
from conftest import HISTORY_DAYS, HISTORY_START, SKIPPED_DAY_INDEX, history_weight


def day(i: int) -> date:
    return HISTORY_START + timedelta(days=i)


def stored_states(db, user_id):
    with db.get_connection() as conn:
        return ComputedStateQueries.get_states(conn, user_id)


@pytest.fixture
def backfilled(service, user_id, history):
    """History with every day aggregated and the whole chain computed."""
    service.backfill(user_id, days=HISTORY_DAYS - 1, today=history)
    return history


class TestAggregation:
    """Tests for aggregate_day."""

    def test_sums_meals_and_takes_first_weight(self, temp_db, user_id, history) -> None:
        with temp_db.get_connection() as conn:
            record = aggregate_day(conn, user_id, day(0))

        assert record.intake_calories == 2000
        assert record.intake_protein_g == 80.0
        assert record.scale_weight_kg == history_weight(0)
        assert record.status == LogStatus.COMPLETE

    def test_idempotent(self, temp_db, user_id, history) -> None:
        with temp_db.get_connection() as conn:
            first = aggregate_day(conn, user_id, day(1))
            second = aggregate_day(conn, user_id, day(1))
            rows = DailyRecordQueries.get_records(conn, user_id)

        assert first == second
        assert len(rows) == 1

    def test_day_without_meals_is_skipped(self, temp_db, user_id, history) -> None:
        with temp_db.get_connection() as conn:
            record = aggregate_day(conn, user_id, day(SKIPPED_DAY_INDEX))

        assert record.intake_calories is None
        assert record.status == LogStatus.SKIPPED
        assert record.scale_weight_kg is not None

    def test_user_status_survives_reaggregation(self, service, temp_db, user_id, backfilled) -> None:
        service.update_day_status(user_id, day(3), LogStatus.SKIPPED, today=backfilled)
        service.log_meal(
            user_id, IntakeEntry(None, datetime.combine(day(3), time(21, 0)), 300.0)
        )

        with temp_db.get_connection() as conn:
            record = DailyRecordQueries.get_record(conn, user_id, day(3))
        assert record.status == LogStatus.SKIPPED
        assert record.user_override
        assert record.intake_calories == 2000 + 300


class TestTriggers:
    """Which edits recompute the chain."""

    def test_meal_does_not_recompute(self, service, temp_db, user_id, backfilled) -> None:
        before = stored_states(temp_db, user_id)
        record = service.log_meal(
            user_id, IntakeEntry(None, datetime.combine(day(15), time(22, 0)), 800.0)
        )

        assert record.intake_calories == 2000 + 800
        assert stored_states(temp_db, user_id) == before

    def test_weight_recomputes_to_today(self, service, temp_db, user_id) -> None:
        first = date(2024, 5, 1)
        service.log_weight(user_id, 80.0, datetime.combine(first, time(7, 0)), today=first)
        summary = service.log_weight(
            user_id, 79.6, datetime.combine(first + timedelta(days=1), time(7, 0)),
            today=first + timedelta(days=3),
        )

        assert summary.start_date == first + timedelta(days=1)
        assert [s.date for s in stored_states(temp_db, user_id)] == [
            first + timedelta(days=i) for i in range(4)
        ]

    def test_meal_before_history_start_replays(
        self, service, temp_db, user_id, backfilled
    ) -> None:
        early = HISTORY_START - timedelta(days=3)
        service.log_meal(
            user_id, IntakeEntry(None, datetime.combine(early, time(12, 0)), 2100.0),
            today=backfilled,
        )
        states = stored_states(temp_db, user_id)
        profile = service.get_profile(user_id)

        assert states[0].date == early
        assert len(states) == HISTORY_DAYS + 3
        # the old first day is now day 4 of history, still cold start
        assert states[3].estimated_tdee_kcal == calculate_cold_start_tdee(
            profile, states[3].trend_weight_kg, on=states[3].date
        )

    def test_invalid_weight_rejected(self, service, temp_db, user_id) -> None:
        with pytest.raises(ValueError):
            service.log_weight(user_id, 12.0, datetime(2024, 5, 1, 7), today=date(2024, 5, 1))
        assert stored_states(temp_db, user_id) == []

    def test_status_edit_cascades(self, service, temp_db, user_id, backfilled) -> None:
        before = stored_states(temp_db, user_id)
        summary = service.update_day_status(user_id, day(14), LogStatus.SKIPPED, today=backfilled)
        after = stored_states(temp_db, user_id)

        assert summary.start_date == day(14)
        assert after[:14] == before[:14]
        assert after[14].estimated_tdee_kcal == after[13].estimated_tdee_kcal
        assert after[15:] != before[15:]

    def test_historical_weight_edit_cascades(self, service, temp_db, user_id, backfilled) -> None:
        before = stored_states(temp_db, user_id)
        service.log_weight(
            user_id, 81.5, datetime.combine(day(12), time(5, 0)), today=backfilled
        )
        after = stored_states(temp_db, user_id)

        assert after[:12] == before[:12]
        assert after[12].trend_weight_kg > before[12].trend_weight_kg
        assert len(after) == len(before)

    def test_steps_recompute(self, service, temp_db, user_id, backfilled) -> None:
        service.log_steps(user_id, day(15), 9000, today=backfilled)
        with temp_db.get_connection() as conn:
            assert DailyRecordQueries.get_record(conn, user_id, day(15)).step_count == 9000

    def test_negative_steps_rejected(self, service, user_id, backfilled) -> None:
        with pytest.raises(ValueError):
            service.log_steps(user_id, day(15), -1, today=backfilled)


class TestRecompute:
    """Tests for backfill and recalculate_from."""

    def test_backfill_covers_window(self, service, temp_db, user_id, history) -> None:
        summary = service.backfill(user_id, days=HISTORY_DAYS - 1, today=history)

        assert summary.days_aggregated == HISTORY_DAYS
        assert summary.days_recalculated == HISTORY_DAYS
        assert [s.date for s in stored_states(temp_db, user_id)] == [
            day(i) for i in range(HISTORY_DAYS)
        ]

    def test_backfill_wider_than_history(self, service, temp_db, user_id, history) -> None:
        """Empty days in the window do not use up the cold-start days."""
        summary = service.backfill(user_id, days=60, today=history)
        states = stored_states(temp_db, user_id)
        profile = service.get_profile(user_id)

        assert summary.days_aggregated == 61
        assert summary.start_date == HISTORY_START
        assert [s.date for s in states] == [day(i) for i in range(HISTORY_DAYS)]
        for state in states[:7]:
            assert state.estimated_tdee_kcal == calculate_cold_start_tdee(
                profile, state.trend_weight_kg, on=state.date
            )

    def test_backfill_window_size_does_not_matter(
        self, service, temp_db, user_id, history
    ) -> None:
        service.backfill(user_id, days=60, today=history)
        wide = stored_states(temp_db, user_id)
        service.reset(user_id, days=HISTORY_DAYS - 1, today=history)
        assert stored_states(temp_db, user_id) == wide

    def test_skipped_day_carries_forward(self, temp_db, user_id, backfilled) -> None:
        states = stored_states(temp_db, user_id)
        assert (
            states[SKIPPED_DAY_INDEX].estimated_tdee_kcal
            == states[SKIPPED_DAY_INDEX - 1].estimated_tdee_kcal
        )

    def test_rerun_is_idempotent(self, service, temp_db, user_id, backfilled) -> None:
        before = stored_states(temp_db, user_id)
        service.recalculate_from(user_id, HISTORY_START, today=backfilled)
        service.recalculate_from(user_id, HISTORY_START, today=backfilled)
        assert stored_states(temp_db, user_id) == before

    def test_partial_replay_matches_full(self, service, temp_db, user_id, backfilled) -> None:
        before = stored_states(temp_db, user_id)
        for i in (8, 11, 17):
            summary = service.recalculate_from(user_id, day(i), today=backfilled)
            assert summary.start_date == day(i)
            assert stored_states(temp_db, user_id) == before

    def test_missing_predecessor_replays_everything(
        self, service, temp_db, user_id, backfilled
    ) -> None:
        before = stored_states(temp_db, user_id)
        with temp_db.get_connection() as conn:
            conn.execute(
                "DELETE FROM computed_states WHERE user_id = ? AND date = ?",
                (user_id, day(8).isoformat()),
            )

        summary = service.recalculate_from(user_id, day(9), today=backfilled)

        assert summary.start_date == HISTORY_START
        assert stored_states(temp_db, user_id) == before

    def test_no_history(self, service, user_id) -> None:
        summary = service.recalculate_from(user_id, date(2024, 1, 1), today=date(2024, 1, 10))
        assert summary.states == []
        assert summary.start_date is None

    def test_failed_write_leaves_nothing_half_done(
        self, service, temp_db, user_id, backfilled, monkeypatch
    ) -> None:
        before = stored_states(temp_db, user_id)
        real_upsert = ComputedStateQueries.upsert_states

        def failing(conn, uid, states):
            real_upsert(conn, uid, states)
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(ComputedStateQueries, "upsert_states", staticmethod(failing))

        with pytest.raises(RecalculationError) as exc_info:
            service.update_day_status(user_id, day(5), LogStatus.SKIPPED, today=backfilled)

        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
        assert stored_states(temp_db, user_id) == before

    def test_reset_rebuilds(self, service, temp_db, user_id, backfilled) -> None:
        before = stored_states(temp_db, user_id)
        summary = service.reset(user_id, days=HISTORY_DAYS - 1, today=backfilled)

        assert summary.days_recalculated == HISTORY_DAYS
        assert stored_states(temp_db, user_id) == before


class TestPerUserLock:
    """Recomputes for one user never overlap."""

    def test_same_lock_per_user(self) -> None:
        registry = UserLockRegistry()
        assert registry.lock_for(1) is registry.lock_for(1)
        assert registry.lock_for(1) is not registry.lock_for(2)

    def test_recompute_waits_for_lock(self, service, user_id, backfilled) -> None:
        done = threading.Event()

        def run() -> None:
            service.recalculate_from(user_id, day(10), today=backfilled)
            done.set()

        with service.locks.hold(user_id):
            worker = threading.Thread(target=run)
            worker.start()
            worker.join(timeout=0.3)
            assert worker.is_alive()
            assert not done.is_set()

        worker.join(timeout=10)
        assert done.is_set()

    def test_concurrent_recomputes_stay_consistent(
        self, service, temp_db, user_id, backfilled
    ) -> None:
        before = stored_states(temp_db, user_id)
        errors: list[Exception] = []

        def run(i: int) -> None:
            try:
                service.recalculate_from(user_id, day(i), today=backfilled)
            except Exception as e:
                errors.append(e)

        workers = [threading.Thread(target=run, args=(i,)) for i in (2, 9, 5, 14, 8, 18)]
        for w in workers:
            w.start()
        for w in workers:
            w.join(timeout=30)

        assert errors == []
        assert stored_states(temp_db, user_id) == before


class TestGoalChanges:
    def test_goal_change_recorded_and_replayed(self, service, temp_db, user_id, backfilled) -> None:
        before = stored_states(temp_db, user_id)
        summary = service.record_goal_change(
            user_id, GoalType.GAIN, 0.25, effective_date=day(14), today=backfilled
        )
        after = stored_states(temp_db, user_id)

        assert summary is not None
        assert after[:14] == before[:14]
        assert after[14].estimated_tdee_kcal > before[14].estimated_tdee_kcal

        with temp_db.get_connection() as conn:
            changes = GoalChangeQueries.get_changes(conn, user_id)
        assert changes[day(14)].new_goal_type == GoalType.GAIN

        # full replay keeps the jump-start
        service.recalculate_from(user_id, HISTORY_START, today=backfilled)
        assert stored_states(temp_db, user_id) == after

    def test_unchanged_goal(self, service, user_id) -> None:
        assert service.record_goal_change(user_id, GoalType.LOSE, 0.5) is None

    def test_unknown_user(self, service) -> None:
        with pytest.raises(ValueError):
            service.record_goal_change(999, GoalType.GAIN, 0.25)


class TestCheckIns:
    def test_build_and_store(self, service, temp_db, user_id, backfilled) -> None:
        week_start = day(7)
        check_in = service.build_check_in(user_id, week_start)

        assert check_in.week_end == day(13)
        assert check_in.adherence_score == pytest.approx(0.86)
        assert check_in.notes is None

        with temp_db.get_connection() as conn:
            stored = CheckInQueries.get_previous_check_in(conn, user_id, day(14))
        assert stored.suggested_calories == check_in.suggested_calories

    def test_week_without_data(self, service, user_id, backfilled) -> None:
        assert service.build_check_in(user_id, date(2023, 12, 25)) is None
