"""Tests for the day-by-day chain fold."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta

import pytest

from tdeecoach.tracking.chain import (
    ChainAccumulator,
    ChainOrderError,
    ChainParameters,
    accumulator_from_history,
    compute_chain,
    fold_day,
    initial_accumulator,
)
from tdeecoach.tracking.ema import calculate_trend_weights
from tdeecoach.tracking.expenditure import calculate_cold_start_tdee, smooth_tdee
from tdeecoach.tracking.models import (
    DailyRecord,
    GoalChange,
    GoalType,
    LogStatus,
    TrendPoint,
    UserProfile,
    WeightObservation,
)
from tdeecoach.tracking.numeric import round_half_up

START = date(2024, 1, 1)
DAYS = 20
SKIPPED = 12


@pytest.fixture
def chain_profile() -> UserProfile:
    return UserProfile(
        user_id=1, height_cm=180.0, birth_date=date(1990, 1, 1), sex="male",
        goal_type=GoalType.LOSE, goal_rate_kg_per_week=0.5,
    )


@pytest.fixture
def points() -> list[TrendPoint]:
    observations = [
        WeightObservation(
            round(80.0 - 0.08 * i + (0.25 if i % 2 else -0.25), 2),
            datetime.combine(START + timedelta(days=i), time(7, 0)),
        )
        for i in range(DAYS)
        if i != 5  # one missed weigh-in
    ]
    return calculate_trend_weights(observations, START, START + timedelta(days=DAYS - 1))


@pytest.fixture
def records() -> dict[date, DailyRecord]:
    """Big intake during cold start so back-solving would be far off."""
    result = {}
    for i in range(DAYS):
        day = START + timedelta(days=i)
        result[day] = DailyRecord(
            day,
            intake_calories=4500 if i < 7 else 2000 + 100 * (i % 3),
            status=LogStatus.SKIPPED if i == SKIPPED else LogStatus.COMPLETE,
            step_count=8000 + 500 * (i % 4),
        )
    return result


def tracked_through(records: dict[date, DailyRecord], day: date) -> int:
    return sum(1 for d, r in records.items() if d <= day and r.is_tracked)


class TestFoldOrder:
    """The chain refuses to fold a day out of sequence."""

    def test_skipping_a_day_raises(self, points, chain_profile) -> None:
        acc = initial_accumulator(points[0], chain_profile)
        with pytest.raises(ChainOrderError):
            fold_day(acc, points[1], None, chain_profile, START)

    def test_refolding_a_day_raises(self, points, chain_profile) -> None:
        acc = initial_accumulator(points[0], chain_profile)
        _, acc = fold_day(acc, points[0], None, chain_profile, START)
        with pytest.raises(ValueError):
            fold_day(acc, points[0], None, chain_profile, START)

    def test_accumulator_advances(self, points, chain_profile) -> None:
        acc = initial_accumulator(points[0], chain_profile)
        state, acc = fold_day(acc, points[0], None, chain_profile, START)
        assert acc.date == points[0].date
        assert acc.estimated_tdee_kcal == state.estimated_tdee_kcal
        assert acc.trend_weight_kg == points[0].trend_weight_kg


class TestColdStartPrecedence:
    """Cold-start days use the formula even when intake and weight exist."""

    def test_first_seven_days_use_formula(self, points, records, chain_profile) -> None:
        states = compute_chain(points, records, chain_profile, START)

        for state in states[:7]:
            expected = calculate_cold_start_tdee(
                chain_profile, state.trend_weight_kg, on=state.date
            )
            assert state.estimated_tdee_kcal == expected
            assert state.raw_tdee_kcal == expected

    def test_day_eight_is_back_solved(self, points, records, chain_profile) -> None:
        states = compute_chain(points, records, chain_profile, START)
        day8 = states[7]
        prev = states[6]

        intake = records[day8.date].intake_calories
        density = 7700 if day8.weight_delta_kg < 0 else 5500
        assert day8.raw_tdee_kcal == round_half_up(intake - day8.weight_delta_kg * density)
        assert day8.estimated_tdee_kcal == smooth_tdee(
            day8.raw_tdee_kcal, prev.estimated_tdee_kcal,
            (records[day8.date].step_count - records[prev.date].step_count)
            / records[prev.date].step_count,
        )

    def test_without_profile_holds_seed(self, points, records) -> None:
        states = compute_chain(points, records, None, START)
        assert all(s.estimated_tdee_kcal == 2000 for s in states[:7])

    def test_history_start_counts_from_first_day(self, points, records, chain_profile) -> None:
        """A later chain segment is past the cold-start window."""
        states = compute_chain(
            points[10:], records, chain_profile, START,
            accumulator=ChainAccumulator(
                points[9].date, points[9].trend_weight_kg, 2500, days_tracked=10
            ),
        )
        assert states[0].raw_tdee_kcal != states[0].estimated_tdee_kcal

    def test_untracked_history_extends_cold_start(self, chain_profile) -> None:
        """A first tracked day after a week of weigh-ins only is not back-solved."""
        observations = [
            WeightObservation(
                round(80.0 - 0.1 * i, 2),
                datetime.combine(START + timedelta(days=i), time(7, 0)),
            )
            for i in range(10)
        ]
        pts = calculate_trend_weights(observations, START, START + timedelta(days=9))
        day8 = START + timedelta(days=7)
        recs = {day8: DailyRecord(day8, intake_calories=5000, status=LogStatus.COMPLETE)}

        states = compute_chain(pts, recs, chain_profile, START)

        expected = calculate_cold_start_tdee(
            chain_profile, states[7].trend_weight_kg, on=day8
        )
        assert states[7].raw_tdee_kcal == expected
        assert states[7].estimated_tdee_kcal == expected
        assert all(s.raw_tdee_kcal == s.estimated_tdee_kcal for s in states)

    def test_back_solving_starts_after_enough_tracked_days(
        self, points, records, chain_profile
    ) -> None:
        states = compute_chain(
            points[7:], records, chain_profile, START,
            accumulator=ChainAccumulator(
                points[6].date, points[6].trend_weight_kg, 2700, days_tracked=6
            ),
        )
        # day 8 still learning, day 9 has seven tracked days behind it
        assert states[0].raw_tdee_kcal == states[0].estimated_tdee_kcal
        assert states[1].raw_tdee_kcal != states[1].estimated_tdee_kcal


class TestChain:
    """Tests for compute_chain."""

    def test_one_state_per_point(self, points, records, chain_profile) -> None:
        states = compute_chain(points, records, chain_profile, START)
        assert [s.date for s in states] == [p.date for p in points]

    def test_empty(self, records, chain_profile) -> None:
        assert compute_chain([], records, chain_profile, START) == []

    def test_deterministic(self, points, records, chain_profile) -> None:
        first = compute_chain(points, records, chain_profile, START)
        second = compute_chain(points, records, chain_profile, START)
        assert first == second

    def test_skipped_day_carries_forward(self, points, records, chain_profile) -> None:
        states = compute_chain(points, records, chain_profile, START)
        assert states[SKIPPED].estimated_tdee_kcal == states[SKIPPED - 1].estimated_tdee_kcal
        assert states[SKIPPED].raw_tdee_kcal == states[SKIPPED - 1].estimated_tdee_kcal

    def test_missing_record_carries_forward(self, points, records, chain_profile) -> None:
        del records[START + timedelta(days=15)]
        states = compute_chain(points, records, chain_profile, START)
        assert states[15].estimated_tdee_kcal == states[14].estimated_tdee_kcal
        assert states[15].flux_confidence_range >= 400

    def test_resume_matches_full_replay(self, points, records, chain_profile) -> None:
        """Folding from a rebuilt accumulator reproduces the rest of the chain."""
        full = compute_chain(points, records, chain_profile, START)

        for k in (8, 13, 17):
            prev_day = points[k - 1].date
            acc = accumulator_from_history(
                full[k - 1],
                full[:k],
                records.get(prev_day),
                points[k - 1].scale_weight_kg,
                tracked_through(records, prev_day),
            )
            resumed = compute_chain(points[k:], records, chain_profile, START, accumulator=acc)
            assert resumed == full[k:]

    def test_goal_change_jump_starts_estimate(self, points, records, chain_profile) -> None:
        change_day = START + timedelta(days=14)
        change = GoalChange(change_day, GoalType.LOSE, 0.5, GoalType.GAIN, 0.25)

        baseline = compute_chain(points, records, chain_profile, START)
        changed = compute_chain(
            points, records, chain_profile, START, goal_changes={change_day: change}
        )

        assert changed[:14] == baseline[:14]
        assert changed[14].estimated_tdee_kcal > baseline[14].estimated_tdee_kcal

    def test_whoosh_protection_changes_back_solving(self, chain_profile) -> None:
        observations = [
            WeightObservation(80.0, datetime.combine(START + timedelta(days=i), time(7, 0)))
            for i in range(9)
        ]
        observations.append(
            WeightObservation(82.0, datetime.combine(START + timedelta(days=9), time(7, 0)))
        )
        pts = calculate_trend_weights(observations, START, START + timedelta(days=9))
        recs = {
            p.date: DailyRecord(p.date, intake_calories=2500, status=LogStatus.COMPLETE)
            for p in pts
        }

        plain = compute_chain(pts, recs, chain_profile, START)
        guarded = compute_chain(
            pts, recs, chain_profile, START, params=ChainParameters(whoosh_protection=True)
        )

        assert plain[:9] == guarded[:9]
        # trend +0.2 kg vs 30% of a 2 kg scale jump
        assert plain[9].raw_tdee_kcal == 2500 - 1100
        assert guarded[9].raw_tdee_kcal == 2500 - 3300
