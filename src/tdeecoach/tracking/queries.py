"""Database queries for weight tracking, TDEE estimation and check-ins.

Dates and timestamps are stored as ISO-8601 text. None of these methods
commit; the surrounding ``DatabaseConnection.get_connection()`` block owns
the transaction.
"""

from __future__ import annotations

import sqlite3
from datetime import date, datetime
from typing import Iterable, Optional

from tdeecoach.tracking.models import (
    ComputedState,
    DailyRecord,
    GoalChange,
    GoalType,
    IntakeEntry,
    UserProfile,
    WeeklyCheckIn,
    WeightObservation,
)


def _day_bounds(start_date: date, end_date: date) -> tuple[str, str]:
    """Timestamp bounds covering whole calendar days [start, end]."""
    return (
        datetime.combine(start_date, datetime.min.time()).isoformat(),
        datetime.combine(end_date, datetime.max.time()).isoformat(),
    )


class ProfileQueries:
    """Database queries for user profiles."""

    _COLUMNS = """user_id, height_cm, birth_date, sex, athlete, goal_type,
                  goal_rate, target_weight_kg, unit_preference, created_at"""

    @staticmethod
    def _row_to_profile(row: sqlite3.Row) -> UserProfile:
        return UserProfile(
            user_id=row[0],
            height_cm=row[1],
            birth_date=date.fromisoformat(row[2]) if row[2] else None,
            sex=row[3],
            athlete=bool(row[4]),
            goal_type=GoalType(row[5]),
            goal_rate_kg_per_week=row[6],
            target_weight_kg=row[7],
            unit_preference=row[8],
            created_at=datetime.fromisoformat(row[9]) if row[9] else None,
        )

    @staticmethod
    def create_profile(conn: sqlite3.Connection, profile: UserProfile) -> int:
        """Create a new user profile and return the user_id."""
        cursor = conn.execute(
            """
            INSERT INTO user_profiles (height_cm, birth_date, sex, athlete, goal_type,
                                       goal_rate, target_weight_kg, unit_preference)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                profile.height_cm,
                profile.birth_date.isoformat() if profile.birth_date else None,
                profile.sex,
                profile.athlete,
                profile.goal_type.value,
                profile.goal_rate_kg_per_week,
                profile.target_weight_kg,
                profile.unit_preference,
            ),
        )
        return cursor.lastrowid or 0

    @staticmethod
    def get_profile(conn: sqlite3.Connection, user_id: int) -> Optional[UserProfile]:
        """Get user profile by ID."""
        row = conn.execute(
            f"SELECT {ProfileQueries._COLUMNS} FROM user_profiles WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return ProfileQueries._row_to_profile(row) if row else None

    @staticmethod
    def get_default_profile(conn: sqlite3.Connection) -> Optional[UserProfile]:
        """Get the first (default) user profile."""
        row = conn.execute(
            f"SELECT {ProfileQueries._COLUMNS} FROM user_profiles "
            "ORDER BY user_id LIMIT 1"
        ).fetchone()
        return ProfileQueries._row_to_profile(row) if row else None

    @staticmethod
    def update_profile(conn: sqlite3.Connection, profile: UserProfile) -> None:
        """Update an existing user profile."""
        if profile.user_id is None:
            raise ValueError("Cannot update profile without user_id")

        conn.execute(
            """
            UPDATE user_profiles
            SET height_cm = ?, birth_date = ?, sex = ?, athlete = ?, goal_type = ?,
                goal_rate = ?, target_weight_kg = ?, unit_preference = ?
            WHERE user_id = ?
            """,
            (
                profile.height_cm,
                profile.birth_date.isoformat() if profile.birth_date else None,
                profile.sex,
                profile.athlete,
                profile.goal_type.value,
                profile.goal_rate_kg_per_week,
                profile.target_weight_kg,
                profile.unit_preference,
                profile.user_id,
            ),
        )


class WeightQueries:
    """Database queries for raw scale readings."""

    @staticmethod
    def add_observation(
        conn: sqlite3.Connection, user_id: int, observation: WeightObservation
    ) -> int:
        """Insert a scale reading and return its id."""
        cursor = conn.execute(
            """
            INSERT INTO weight_observations (user_id, weight_kg, observed_at, note)
            VALUES (?, ?, ?, ?)
            """,
            (
                user_id,
                observation.weight_kg,
                observation.observed_at.isoformat(),
                observation.note,
            ),
        )
        return cursor.lastrowid or 0

    @staticmethod
    def get_observations(
        conn: sqlite3.Connection,
        user_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> list[WeightObservation]:
        """Scale readings in chronological order, optionally bounded by day."""
        query = "SELECT weight_kg, observed_at, note FROM weight_observations WHERE user_id = ?"
        params: list = [user_id]
        if start_date is not None:
            query += " AND observed_at >= ?"
            params.append(_day_bounds(start_date, start_date)[0])
        if end_date is not None:
            query += " AND observed_at <= ?"
            params.append(_day_bounds(end_date, end_date)[1])
        query += " ORDER BY observed_at, observation_id"

        rows = conn.execute(query, params).fetchall()
        return [
            WeightObservation(
                weight_kg=row[0],
                observed_at=datetime.fromisoformat(row[1]),
                note=row[2],
            )
            for row in rows
        ]

    @staticmethod
    def get_first_observation_day(
        conn: sqlite3.Connection, user_id: int
    ) -> Optional[date]:
        row = conn.execute(
            "SELECT MIN(observed_at) FROM weight_observations WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        if row is None or row[0] is None:
            return None
        return datetime.fromisoformat(row[0]).date()


class IntakeQueries:
    """Database queries for logged meals."""

    @staticmethod
    def add_entry(conn: sqlite3.Connection, user_id: int, entry: IntakeEntry) -> int:
        """Insert a meal and return its entry_id."""
        cursor = conn.execute(
            """
            INSERT INTO intake_entries (user_id, eaten_at, calories, protein_g,
                                        carbs_g, fat_g, description)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                user_id,
                entry.eaten_at.isoformat(),
                entry.calories,
                entry.protein_g,
                entry.carbs_g,
                entry.fat_g,
                entry.description,
            ),
        )
        return cursor.lastrowid or 0

    @staticmethod
    def get_entries_for_day(
        conn: sqlite3.Connection, user_id: int, day: date
    ) -> list[IntakeEntry]:
        start, end = _day_bounds(day, day)
        rows = conn.execute(
            """
            SELECT entry_id, eaten_at, calories, protein_g, carbs_g, fat_g, description
            FROM intake_entries
            WHERE user_id = ? AND eaten_at >= ? AND eaten_at <= ?
            ORDER BY eaten_at, entry_id
            """,
            (user_id, start, end),
        ).fetchall()
        return [
            IntakeEntry(
                entry_id=row[0],
                eaten_at=datetime.fromisoformat(row[1]),
                calories=row[2],
                protein_g=row[3],
                carbs_g=row[4],
                fat_g=row[5],
                description=row[6],
            )
            for row in rows
        ]


class DailyRecordQueries:
    """Database queries for per-day aggregates."""

    _COLUMNS = """date, scale_weight_kg, intake_calories, intake_protein_g,
                  intake_carbs_g, intake_fat_g, step_count, status, user_override"""

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> DailyRecord:
        return DailyRecord(
            date=date.fromisoformat(row[0]),
            scale_weight_kg=row[1],
            intake_calories=row[2],
            intake_protein_g=row[3],
            intake_carbs_g=row[4],
            intake_fat_g=row[5],
            step_count=row[6],
            status=row[7],
            user_override=bool(row[8]),
        )

    @staticmethod
    def upsert_record(
        conn: sqlite3.Connection, user_id: int, record: DailyRecord
    ) -> None:
        """Insert or replace the record for (user, date)."""
        conn.execute(
            """
            INSERT INTO daily_records (user_id, date, scale_weight_kg, intake_calories,
                                       intake_protein_g, intake_carbs_g, intake_fat_g,
                                       step_count, status, user_override)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, date) DO UPDATE SET
                scale_weight_kg = excluded.scale_weight_kg,
                intake_calories = excluded.intake_calories,
                intake_protein_g = excluded.intake_protein_g,
                intake_carbs_g = excluded.intake_carbs_g,
                intake_fat_g = excluded.intake_fat_g,
                step_count = excluded.step_count,
                status = excluded.status,
                user_override = excluded.user_override
            """,
            (
                user_id,
                record.date.isoformat(),
                record.scale_weight_kg,
                record.intake_calories,
                record.intake_protein_g,
                record.intake_carbs_g,
                record.intake_fat_g,
                record.step_count,
                record.status.value,
                record.user_override,
            ),
        )

    @staticmethod
    def get_record(
        conn: sqlite3.Connection, user_id: int, day: date
    ) -> Optional[DailyRecord]:
        row = conn.execute(
            f"SELECT {DailyRecordQueries._COLUMNS} FROM daily_records "
            "WHERE user_id = ? AND date = ?",
            (user_id, day.isoformat()),
        ).fetchone()
        return DailyRecordQueries._row_to_record(row) if row else None

    @staticmethod
    def get_records(
        conn: sqlite3.Connection,
        user_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> list[DailyRecord]:
        """Daily records in ascending date order, optionally bounded."""
        query = (
            f"SELECT {DailyRecordQueries._COLUMNS} FROM daily_records WHERE user_id = ?"
        )
        params: list = [user_id]
        if start_date is not None:
            query += " AND date >= ?"
            params.append(start_date.isoformat())
        if end_date is not None:
            query += " AND date <= ?"
            params.append(end_date.isoformat())
        query += " ORDER BY date"
        rows = conn.execute(query, params).fetchall()
        return [DailyRecordQueries._row_to_record(row) for row in rows]

    @staticmethod
    def get_first_intake_day(conn: sqlite3.Connection, user_id: int) -> Optional[date]:
        """First day with logged intake. Empty backfilled days do not count."""
        row = conn.execute(
            "SELECT MIN(date) FROM daily_records "
            "WHERE user_id = ? AND intake_calories IS NOT NULL",
            (user_id,),
        ).fetchone()
        if row is None or row[0] is None:
            return None
        return date.fromisoformat(row[0])

    @staticmethod
    def count_tracked_days(
        conn: sqlite3.Connection, user_id: int, start_date: date, end_date: date
    ) -> int:
        """Days in [start, end] with intake and a non-skipped status."""
        row = conn.execute(
            """
            SELECT COUNT(*) FROM daily_records
            WHERE user_id = ? AND date >= ? AND date <= ?
              AND intake_calories IS NOT NULL AND status != 'skipped'
            """,
            (user_id, start_date.isoformat(), end_date.isoformat()),
        ).fetchone()
        return row[0] if row else 0


class ComputedStateQueries:
    """Database queries for derived metabolic state."""

    _COLUMNS = """date, trend_weight_kg, estimated_tdee_kcal, raw_tdee_kcal,
                  flux_confidence_range, energy_density_used, weight_delta_kg"""

    @staticmethod
    def _row_to_state(row: sqlite3.Row) -> ComputedState:
        return ComputedState(
            date=date.fromisoformat(row[0]),
            trend_weight_kg=row[1],
            estimated_tdee_kcal=row[2],
            raw_tdee_kcal=row[3],
            flux_confidence_range=row[4],
            energy_density_used=row[5],
            weight_delta_kg=row[6],
        )

    @staticmethod
    def upsert_states(
        conn: sqlite3.Connection, user_id: int, states: Iterable[ComputedState]
    ) -> int:
        """Insert or replace states keyed by (user, date). Returns rows written."""
        rows = [
            (
                user_id,
                s.date.isoformat(),
                s.trend_weight_kg,
                s.estimated_tdee_kcal,
                s.raw_tdee_kcal,
                s.flux_confidence_range,
                s.energy_density_used,
                s.weight_delta_kg,
            )
            for s in states
        ]
        conn.executemany(
            """
            INSERT INTO computed_states (user_id, date, trend_weight_kg,
                                         estimated_tdee_kcal, raw_tdee_kcal,
                                         flux_confidence_range, energy_density_used,
                                         weight_delta_kg)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, date) DO UPDATE SET
                trend_weight_kg = excluded.trend_weight_kg,
                estimated_tdee_kcal = excluded.estimated_tdee_kcal,
                raw_tdee_kcal = excluded.raw_tdee_kcal,
                flux_confidence_range = excluded.flux_confidence_range,
                energy_density_used = excluded.energy_density_used,
                weight_delta_kg = excluded.weight_delta_kg
            """,
            rows,
        )
        return len(rows)

    @staticmethod
    def get_state(
        conn: sqlite3.Connection, user_id: int, day: date
    ) -> Optional[ComputedState]:
        row = conn.execute(
            f"SELECT {ComputedStateQueries._COLUMNS} FROM computed_states "
            "WHERE user_id = ? AND date = ?",
            (user_id, day.isoformat()),
        ).fetchone()
        return ComputedStateQueries._row_to_state(row) if row else None

    @staticmethod
    def get_states(
        conn: sqlite3.Connection,
        user_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> list[ComputedState]:
        """States in ascending date order, optionally bounded."""
        query = (
            f"SELECT {ComputedStateQueries._COLUMNS} FROM computed_states WHERE user_id = ?"
        )
        params: list = [user_id]
        if start_date is not None:
            query += " AND date >= ?"
            params.append(start_date.isoformat())
        if end_date is not None:
            query += " AND date <= ?"
            params.append(end_date.isoformat())
        query += " ORDER BY date"
        rows = conn.execute(query, params).fetchall()
        return [ComputedStateQueries._row_to_state(row) for row in rows]

    @staticmethod
    def get_recent_states(
        conn: sqlite3.Connection, user_id: int, before: date, limit: int
    ) -> list[ComputedState]:
        """Up to ``limit`` states strictly before ``before``, ascending."""
        rows = conn.execute(
            f"""
            SELECT {ComputedStateQueries._COLUMNS} FROM computed_states
            WHERE user_id = ? AND date < ?
            ORDER BY date DESC LIMIT ?
            """,
            (user_id, before.isoformat(), limit),
        ).fetchall()
        return [ComputedStateQueries._row_to_state(row) for row in reversed(rows)]

    @staticmethod
    def get_latest_state(
        conn: sqlite3.Connection, user_id: int
    ) -> Optional[ComputedState]:
        row = conn.execute(
            f"SELECT {ComputedStateQueries._COLUMNS} FROM computed_states "
            "WHERE user_id = ? ORDER BY date DESC LIMIT 1",
            (user_id,),
        ).fetchone()
        return ComputedStateQueries._row_to_state(row) if row else None

    @staticmethod
    def delete_states(conn: sqlite3.Connection, user_id: int) -> int:
        cursor = conn.execute("DELETE FROM computed_states WHERE user_id = ?", (user_id,))
        return cursor.rowcount


class GoalChangeQueries:
    """Database queries for dated goal transitions."""

    @staticmethod
    def upsert_change(
        conn: sqlite3.Connection, user_id: int, change: GoalChange
    ) -> None:
        """Record a goal change; a second change on the same day replaces the first."""
        conn.execute(
            """
            INSERT INTO goal_changes (user_id, effective_date, old_goal_type, old_rate,
                                      new_goal_type, new_rate)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, effective_date) DO UPDATE SET
                new_goal_type = excluded.new_goal_type,
                new_rate = excluded.new_rate
            """,
            (
                user_id,
                change.effective_date.isoformat(),
                change.old_goal_type.value,
                change.old_rate,
                change.new_goal_type.value,
                change.new_rate,
            ),
        )

    @staticmethod
    def get_changes(conn: sqlite3.Connection, user_id: int) -> dict[date, GoalChange]:
        """All goal changes keyed by effective date."""
        rows = conn.execute(
            """
            SELECT effective_date, old_goal_type, old_rate, new_goal_type, new_rate
            FROM goal_changes WHERE user_id = ? ORDER BY effective_date
            """,
            (user_id,),
        ).fetchall()
        changes = {}
        for row in rows:
            change = GoalChange(
                effective_date=date.fromisoformat(row[0]),
                old_goal_type=GoalType(row[1]),
                old_rate=row[2],
                new_goal_type=GoalType(row[3]),
                new_rate=row[4],
            )
            changes[change.effective_date] = change
        return changes


class CheckInQueries:
    """Database queries for weekly check-ins."""

    @staticmethod
    def upsert_check_in(
        conn: sqlite3.Connection, user_id: int, check_in: WeeklyCheckIn
    ) -> None:
        conn.execute(
            """
            INSERT INTO weekly_check_ins (user_id, week_start, week_end, average_tdee,
                                          suggested_calories, adherence_score,
                                          confidence_level, trend_weight_start,
                                          trend_weight_end, weekly_weight_change, notes)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, week_start) DO UPDATE SET
                week_end = excluded.week_end,
                average_tdee = excluded.average_tdee,
                suggested_calories = excluded.suggested_calories,
                adherence_score = excluded.adherence_score,
                confidence_level = excluded.confidence_level,
                trend_weight_start = excluded.trend_weight_start,
                trend_weight_end = excluded.trend_weight_end,
                weekly_weight_change = excluded.weekly_weight_change,
                notes = excluded.notes
            """,
            (
                user_id,
                check_in.week_start.isoformat(),
                check_in.week_end.isoformat(),
                check_in.average_tdee,
                check_in.suggested_calories,
                check_in.adherence_score,
                check_in.confidence_level.value,
                check_in.trend_weight_start,
                check_in.trend_weight_end,
                check_in.weekly_weight_change,
                check_in.notes,
            ),
        )

    @staticmethod
    def get_previous_check_in(
        conn: sqlite3.Connection, user_id: int, before: date
    ) -> Optional[WeeklyCheckIn]:
        """Most recent check-in whose week starts before ``before``."""
        row = conn.execute(
            """
            SELECT week_start, week_end, average_tdee, suggested_calories,
                   adherence_score, confidence_level, trend_weight_start,
                   trend_weight_end, weekly_weight_change, notes
            FROM weekly_check_ins
            WHERE user_id = ? AND week_start < ?
            ORDER BY week_start DESC LIMIT 1
            """,
            (user_id, before.isoformat()),
        ).fetchone()
        if row is None:
            return None
        return WeeklyCheckIn(
            week_start=date.fromisoformat(row[0]),
            week_end=date.fromisoformat(row[1]),
            average_tdee=row[2],
            suggested_calories=row[3],
            adherence_score=row[4],
            confidence_level=row[5],
            trend_weight_start=row[6],
            trend_weight_end=row[7],
            weekly_weight_change=row[8],
            notes=row[9],
        )



def get_history_start(conn: sqlite3.Connection, user_id: int) -> Optional[date]:
    """
    Day index 1 of a user's history: the first weigh-in or logged intake.

    Records that only exist because a backfill aggregated an empty day do
    not move it.
    """
    candidates = [
        d
        for d in (
            WeightQueries.get_first_observation_day(conn, user_id),
            DailyRecordQueries.get_first_intake_day(conn, user_id),
        )
        if d is not None
    ]
    return min(candidates) if candidates else None
