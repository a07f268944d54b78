"""Tests for the replay diagnostics."""

from __future__ import annotations

import json
from datetime import timedelta

import pytest

from tdeecoach.tracking.diagnostics import (
    format_diagnostics_report,
    generate_diagnostics,
    to_dict,
)
from conftest import HISTORY_DAYS, HISTORY_START


@pytest.fixture
def backfilled(service, user_id, history):
    service.backfill(user_id, days=HISTORY_DAYS - 1, today=history)
    return history


def diagnose(service, user_id):
    with service.db.get_connection() as conn:
        return generate_diagnostics(
            conn, user_id, service.params, service.settings.metabolic.weight_ema_alpha
        )


class TestReplay:
    """Stored states are compared with a fresh replay."""

    def test_clean_history_matches(self, service, user_id, backfilled) -> None:
        report = diagnose(service, user_id)

        assert report.count("error") == 0
        assert report.days_checked == HISTORY_DAYS
        assert report.days_matching == HISTORY_DAYS
        assert report.start_date == HISTORY_START
        assert report.end_date == backfilled
        assert report.status in ("PASS", "NEEDS_ATTENTION")
        assert report.statistics is not None
        assert 0 <= report.quality.score <= 100

    def test_wide_backfill_window_matches(self, service, user_id, history) -> None:
        service.backfill(user_id, days=60, today=history)

        report = diagnose(service, user_id)

        assert report.count("error") == 0
        assert report.start_date == HISTORY_START
        assert report.days_matching == HISTORY_DAYS

    def test_tampered_state_fails(self, service, user_id, backfilled) -> None:
        tampered = HISTORY_START + timedelta(days=15)
        with service.db.get_connection() as conn:
            conn.execute(
                "UPDATE computed_states SET estimated_tdee_kcal = estimated_tdee_kcal + 100 "
                "WHERE user_id = ? AND date = ?",
                (user_id, tampered.isoformat()),
            )

        report = diagnose(service, user_id)

        assert report.status == "FAIL"
        mismatches = [i for i in report.issues if i.kind == "mismatch"]
        assert [i.date for i in mismatches] == [tampered]
        assert mismatches[0].actual == mismatches[0].expected + 100

    def test_missing_state_needs_attention(self, service, user_id, backfilled) -> None:
        with service.db.get_connection() as conn:
            conn.execute(
                "DELETE FROM computed_states WHERE user_id = ? AND date = ?",
                (user_id, backfilled.isoformat()),
            )

        report = diagnose(service, user_id)

        assert report.status == "NEEDS_ATTENTION"
        assert report.count("error") == 0
        assert any(i.kind == "missing_state" for i in report.issues)

    def test_unknown_user(self, service) -> None:
        assert diagnose(service, 999) is None

    def test_user_without_data(self, service, user_id) -> None:
        report = diagnose(service, user_id)
        assert report.status == "NO_DATA"
        assert "No weight or intake history" in format_diagnostics_report(report)


class TestOutput:
    def test_dict_is_json_serializable(self, service, user_id, backfilled) -> None:
        data = to_dict(diagnose(service, user_id))

        encoded = json.dumps(data)
        assert data["start_date"] == HISTORY_START.isoformat()
        assert data["summary"]["errors"] == 0
        assert "issues" in json.loads(encoded)

    def test_text_report(self, service, user_id, backfilled) -> None:
        text = format_diagnostics_report(diagnose(service, user_id))

        assert text.startswith(f"TDEE Diagnostics (user {user_id})")
        assert f"{HISTORY_DAYS}/{HISTORY_DAYS} stored states match" in text
        assert "Data quality:" in text

    def test_findings_are_truncated(self, service, user_id, backfilled) -> None:
        with service.db.get_connection() as conn:
            conn.execute(
                "UPDATE computed_states SET estimated_tdee_kcal = estimated_tdee_kcal + 1 "
                "WHERE user_id = ?",
                (user_id,),
            )
        report = diagnose(service, user_id)
        text = format_diagnostics_report(report, max_issues=3)

        assert report.count("error") == HISTORY_DAYS
        assert "more" in text.splitlines()[-1]
