"""Tests for the transaction-per-context connection."""

from __future__ import annotations

import sqlite3

import pytest

from tdeecoach.db.connection import DatabaseConnection


def profile_count(db: DatabaseConnection) -> int:
    with db.get_connection() as conn:
        return conn.execute("SELECT COUNT(*) FROM user_profiles").fetchone()[0]


def insert_profile(conn: sqlite3.Connection) -> None:
    conn.execute("INSERT INTO user_profiles (goal_type, goal_rate) VALUES ('lose', 0.5)")


class TestTransactions:
    def test_commits_on_success(self, temp_db) -> None:
        with temp_db.get_connection() as conn:
            insert_profile(conn)
        assert profile_count(temp_db) == 1

    def test_rolls_back_on_error(self, temp_db) -> None:
        with pytest.raises(RuntimeError):
            with temp_db.get_connection() as conn:
                insert_profile(conn)
                raise RuntimeError("boom")
        assert profile_count(temp_db) == 0

    def test_immediate_blocks_other_writers(self, temp_db) -> None:
        impatient = DatabaseConnection(temp_db.db_path, timeout=0.1)
        with temp_db.get_connection(immediate=True) as conn:
            insert_profile(conn)
            with pytest.raises(sqlite3.OperationalError):
                with impatient.get_connection(immediate=True):
                    pass
        assert profile_count(temp_db) == 1

    def test_schema_is_idempotent(self, temp_db) -> None:
        temp_db.initialize_schema()
        assert profile_count(temp_db) == 0
