"""Aggregation, chain recomputation and persistence for a user's history.

Trigger policy:
- logging a meal re-aggregates that day only (no recompute, so TDEE does
  not jitter with every meal), unless it moves the history start earlier
- logging a weight, changing steps or a day's status, or switching goals
  re-aggregates and recomputes from that day to the present

Recomputes for one user are serialized by a per-user lock held around the
whole read, compute, write sequence. The computed chain is written in a
single transaction: either every day in range is updated or none is.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Generator, Optional

from tdeecoach.config.settings import Settings, get_settings
from tdeecoach.db.connection import DatabaseConnection
from tdeecoach.tracking.chain import (
    ChainParameters,
    accumulator_from_history,
    compute_chain,
)
from tdeecoach.tracking.coaching import build_weekly_check_in, get_week_end
from tdeecoach.tracking.edge_cases import detect_goal_transition
from tdeecoach.tracking.ema import calculate_trend_weights, first_weight_per_day
from tdeecoach.tracking.models import (
    DailyRecord,
    GoalChange,
    GoalType,
    IntakeEntry,
    LogStatus,
    RecalculationSummary,
    UserProfile,
    WeeklyCheckIn,
    WeightObservation,
)
from tdeecoach.tracking.numeric import round_half_up
from tdeecoach.tracking.queries import (
    CheckInQueries,
    ComputedStateQueries,
    DailyRecordQueries,
    GoalChangeQueries,
    IntakeQueries,
    ProfileQueries,
    WeightQueries,
    get_history_start,
)

logger = logging.getLogger(__name__)


class RecalculationError(RuntimeError):
    """Reading or persisting a chain failed; nothing was written."""


class UserLockRegistry:
    """One re-entrant lock per user id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.RLock] = {}

    def lock_for(self, user_id: int) -> threading.RLock:
        with self._guard:
            return self._locks.setdefault(user_id, threading.RLock())

    @contextmanager
    def hold(self, user_id: int) -> Generator[None, None, None]:
        lock = self.lock_for(user_id)
        with lock:
            yield


def aggregate_day(conn: sqlite3.Connection, user_id: int, day: date) -> DailyRecord:
    """
    Rebuild the DailyRecord for one day from its meals and weigh-ins.

    Idempotent: re-aggregating overwrites the record, never adds to it.
    Step count and a user-set status survive re-aggregation.
    """
    entries = IntakeQueries.get_entries_for_day(conn, user_id, day)
    weights = first_weight_per_day(
        WeightQueries.get_observations(conn, user_id, day, day)
    )
    existing = DailyRecordQueries.get_record(conn, user_id, day)

    has_intake = bool(entries)
    if existing is not None and existing.user_override:
        status = existing.status
    else:
        status = LogStatus.COMPLETE if has_intake else LogStatus.SKIPPED

    record = DailyRecord(
        date=day,
        scale_weight_kg=weights.get(day),
        intake_calories=round_half_up(sum(e.calories for e in entries)) if has_intake else None,
        intake_protein_g=round(sum(e.protein_g for e in entries), 1) if has_intake else None,
        intake_carbs_g=round(sum(e.carbs_g for e in entries), 1) if has_intake else None,
        intake_fat_g=round(sum(e.fat_g for e in entries), 1) if has_intake else None,
        step_count=existing.step_count if existing else None,
        status=status,
        user_override=existing.user_override if existing else False,
    )
    DailyRecordQueries.upsert_record(conn, user_id, record)
    return record


def _gap_start(observations: list[WeightObservation], day: date) -> date:
    """
    First day whose trend depends on a reading made on ``day``.

    Days between the previous reading and ``day`` are interpolated toward
    it, so they move too.
    """
    earlier = [o.day for o in observations if o.day < day]
    if not earlier:
        return day
    return min(day, max(earlier) + timedelta(days=1))


class MetabolicService:
    """Entry point for everything that changes a user's metabolic history."""

    def __init__(
        self,
        db: DatabaseConnection,
        settings: Optional[Settings] = None,
        locks: Optional[UserLockRegistry] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.params = ChainParameters.from_settings(self.settings)
        self.locks = locks or UserLockRegistry()

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def create_profile(self, profile: UserProfile) -> int:
        with self.db.get_connection() as conn:
            return ProfileQueries.create_profile(conn, profile)

    def get_profile(self, user_id: int) -> Optional[UserProfile]:
        with self.db.get_connection() as conn:
            return ProfileQueries.get_profile(conn, user_id)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def log_meal(
        self, user_id: int, entry: IntakeEntry, today: Optional[date] = None
    ) -> DailyRecord:
        """
        Store a meal and re-aggregate its day.

        TDEE is not recomputed, unless the meal is dated before the current
        history start: then every day index shifts and the chain is replayed.
        """
        day = entry.eaten_at.date()
        with self.db.get_connection() as conn:
            history_start = get_history_start(conn, user_id)
            IntakeQueries.add_entry(conn, user_id, entry)
            record = aggregate_day(conn, user_id, day)
        logger.debug("Meal logged for %s: day total %s kcal", record.date, record.intake_calories)

        if history_start is not None and day < history_start:
            logger.info("Meal on %s predates history start %s, replaying", day, history_start)
            self.recalculate_from(user_id, day, today=today)
        return record

    def log_weight(
        self,
        user_id: int,
        weight_kg: float,
        observed_at: datetime,
        note: Optional[str] = None,
        today: Optional[date] = None,
    ) -> RecalculationSummary:
        """Store a scale reading, re-aggregate its day and recompute forward."""
        observation = WeightObservation(weight_kg, observed_at, note)
        with self.db.get_connection() as conn:
            WeightQueries.add_observation(conn, user_id, observation)
            aggregate_day(conn, user_id, observation.day)
        return self.recalculate_from(user_id, observation.day, today=today)

    def log_steps(
        self, user_id: int, day: date, step_count: int, today: Optional[date] = None
    ) -> RecalculationSummary:
        """Set a day's step count and recompute forward."""
        if step_count < 0:
            raise ValueError(f"step_count cannot be negative, got {step_count}")
        with self.db.get_connection() as conn:
            record = DailyRecordQueries.get_record(conn, user_id, day)
            if record is None:
                record = aggregate_day(conn, user_id, day)
            record.step_count = step_count
            DailyRecordQueries.upsert_record(conn, user_id, record)
        return self.recalculate_from(user_id, day, today=today)

    def update_day_status(
        self,
        user_id: int,
        day: date,
        status: LogStatus,
        today: Optional[date] = None,
    ) -> RecalculationSummary:
        """Pin a day's status (sticky across re-aggregation) and recompute forward."""
        with self.db.get_connection() as conn:
            record = aggregate_day(conn, user_id, day)
            record.status = LogStatus(status)
            record.user_override = True
            DailyRecordQueries.upsert_record(conn, user_id, record)
        logger.info("Day %s marked %s by user %s", day, record.status.value, user_id)
        return self.recalculate_from(user_id, day, today=today)

    def record_goal_change(
        self,
        user_id: int,
        goal_type: GoalType,
        rate_kg_per_week: float,
        effective_date: Optional[date] = None,
        today: Optional[date] = None,
    ) -> Optional[RecalculationSummary]:
        """
        Switch a user's goal.

        The change is stored as a dated event so the chain's TDEE jump-start
        is replayed on every recompute. Returns None when nothing changed.
        """
        effective_date = effective_date or today or date.today()
        with self.db.get_connection() as conn:
            previous = ProfileQueries.get_profile(conn, user_id)
            if previous is None:
                raise ValueError(f"No profile for user {user_id}")

            current = UserProfile(**vars(previous))
            current.goal_type = GoalType(goal_type)
            current.goal_rate_kg_per_week = rate_kg_per_week
            ProfileQueries.update_profile(conn, current)

            description = detect_goal_transition(previous, current)
            if description is None:
                return None

            GoalChangeQueries.upsert_change(
                conn,
                user_id,
                GoalChange(
                    effective_date=effective_date,
                    old_goal_type=previous.goal_type,
                    old_rate=previous.goal_rate_kg_per_week,
                    new_goal_type=current.goal_type,
                    new_rate=current.goal_rate_kg_per_week,
                ),
            )
        logger.info("%s (user %s, effective %s)", description, user_id, effective_date)
        return self.recalculate_from(user_id, effective_date, today=today)

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    def recalculate_from(
        self,
        user_id: int,
        from_date: date,
        to_date: Optional[date] = None,
        today: Optional[date] = None,
    ) -> RecalculationSummary:
        """
        Re-run the chain from ``from_date`` through ``to_date`` (default today).

        Holds the user's lock for the whole read, compute, write sequence and
        writes every state in one transaction.

        Raises:
            RecalculationError: A database error occurred; no state was written
        """
        end_date = to_date or today or date.today()
        with self.locks.hold(user_id):
            try:
                with self.db.get_connection(immediate=True) as conn:
                    summary = self._recalculate(conn, user_id, from_date, end_date)
            except sqlite3.Error as e:
                logger.error("Recalculation for user %s from %s failed: %s", user_id, from_date, e)
                raise RecalculationError(
                    f"Recalculation for user {user_id} from {from_date} failed"
                ) from e

        logger.info(
            "Recalculated %d days for user %s (%s to %s)",
            summary.days_recalculated,
            user_id,
            summary.start_date,
            summary.end_date,
        )
        return summary

    def _recalculate(
        self, conn: sqlite3.Connection, user_id: int, from_date: date, end_date: date
    ) -> RecalculationSummary:
        history_start = get_history_start(conn, user_id)
        if history_start is None:
            return RecalculationSummary(user_id, None, None)

        observations = WeightQueries.get_observations(conn, user_id)
        start = max(_gap_start(observations, from_date), history_start)
        if start > end_date:
            return RecalculationSummary(user_id, start, end_date)

        prev_day = start - timedelta(days=1)
        prev_state = None
        if start > history_start:
            prev_state = ComputedStateQueries.get_state(conn, user_id, prev_day)
            if prev_state is None:
                logger.info("No stored state for %s, replaying from %s", prev_day, history_start)
                start = history_start

        accumulator = None
        initial_trend = None
        if prev_state is not None:
            prior = ComputedStateQueries.get_recent_states(
                conn, user_id, start, self.params.recent_window_days
            )
            accumulator = accumulator_from_history(
                prev_state,
                prior,
                DailyRecordQueries.get_record(conn, user_id, prev_day),
                first_weight_per_day(observations).get(prev_day),
                DailyRecordQueries.count_tracked_days(conn, user_id, history_start, prev_day),
                self.params,
            )
            initial_trend = prev_state.trend_weight_kg

        points = calculate_trend_weights(
            observations,
            start,
            end_date,
            initial_trend=initial_trend,
            smoothing=self.settings.metabolic.weight_ema_alpha,
        )
        if not points:
            logger.warning("User %s has no weight history; nothing to compute", user_id)
            return RecalculationSummary(user_id, start, end_date)

        records = {
            r.date: r
            for r in DailyRecordQueries.get_records(conn, user_id, start, end_date)
        }
        states = compute_chain(
            points,
            records,
            ProfileQueries.get_profile(conn, user_id),
            history_start,
            accumulator,
            self.params,
            GoalChangeQueries.get_changes(conn, user_id),
        )
        ComputedStateQueries.upsert_states(conn, user_id, states)
        return RecalculationSummary(user_id, start, end_date, states=states)

    def backfill(
        self, user_id: int, days: Optional[int] = None, today: Optional[date] = None
    ) -> RecalculationSummary:
        """Aggregate every day in the lookback window, then run one chain pass."""
        days = days if days is not None else self.settings.defaults.backfill_days
        today = today or date.today()
        start = today - timedelta(days=days)

        with self.db.get_connection() as conn:
            day = start
            while day <= today:
                aggregate_day(conn, user_id, day)
                day += timedelta(days=1)

        summary = self.recalculate_from(user_id, start, today, today=today)
        summary.days_aggregated = days + 1
        logger.info(
            "Backfill for user %s: %d days aggregated, %d states computed",
            user_id,
            summary.days_aggregated,
            summary.days_recalculated,
        )
        return summary

    def reset(
        self, user_id: int, days: Optional[int] = None, today: Optional[date] = None
    ) -> RecalculationSummary:
        """Drop every computed state for a user and backfill from scratch."""
        with self.locks.hold(user_id):
            with self.db.get_connection(immediate=True) as conn:
                deleted = ComputedStateQueries.delete_states(conn, user_id)
            logger.info("Deleted %d computed states for user %s", deleted, user_id)
            return self.backfill(user_id, days, today)

    # ------------------------------------------------------------------
    # Coaching
    # ------------------------------------------------------------------

    def build_check_in(self, user_id: int, week_start: date) -> Optional[WeeklyCheckIn]:
        """
        Build and store the check-in for the week starting ``week_start``.

        Returns None (and stores nothing) when the week has no data.
        """
        week_end = get_week_end(week_start)
        coaching = self.settings.coaching
        with self.db.get_connection() as conn:
            profile = ProfileQueries.get_profile(conn, user_id)
            if profile is None:
                raise ValueError(f"No profile for user {user_id}")

            records = DailyRecordQueries.get_records(conn, user_id, week_start, week_end)
            states = ComputedStateQueries.get_states(conn, user_id, week_start, week_end)
            previous = CheckInQueries.get_previous_check_in(conn, user_id, week_start)
            history_start = get_history_start(conn, user_id) or week_start
            days_tracked = DailyRecordQueries.count_tracked_days(
                conn, user_id, history_start, week_end
            )

            check_in = build_weekly_check_in(
                week_start,
                week_end,
                records,
                states,
                profile,
                previous_suggested_calories=previous.suggested_calories if previous else None,
                days_tracked=days_tracked,
                min_calories=coaching.min_calories,
                max_calories=coaching.max_calories,
                tolerance_kg=coaching.maintenance_tolerance_kg,
                micro_adjustment=coaching.micro_adjustment_kcal,
                cold_start_days=self.params.cold_start_days,
            )
            if check_in is not None:
                CheckInQueries.upsert_check_in(conn, user_id, check_in)
        return check_in
