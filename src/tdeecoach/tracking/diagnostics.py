"""Validation and diagnostic output for a user's TDEE history.

Replays the chain from stored inputs and compares it with the stored
ComputedStates, then annotates the history with data-quality findings.
Nothing here changes stored data.
"""

from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Optional

import numpy as np

from tdeecoach.tracking.chain import ChainParameters, compute_chain
from tdeecoach.tracking.edge_cases import (
    DataQualityReport,
    TdeeStatistics,
    calculate_data_quality_score,
    calculate_tdee_statistics,
    detect_whoosh,
    is_partial_logging,
    is_tdee_outlier,
)
from tdeecoach.tracking.ema import DEFAULT_SMOOTHING, calculate_trend_weights
from tdeecoach.tracking.queries import (
    ComputedStateQueries,
    DailyRecordQueries,
    GoalChangeQueries,
    ProfileQueries,
    WeightQueries,
    get_history_start,
)

# Quality score under which a history needs attention
QUALITY_WARNING_SCORE = 70


@dataclass
class DiagnosticIssue:
    """One finding about one day."""

    severity: str  # 'error', 'warning', 'info'
    kind: str  # 'mismatch', 'missing_state', 'partial', 'outlier', 'whoosh'
    date: date
    message: str
    expected: Optional[float] = None
    actual: Optional[float] = None


@dataclass
class DiagnosticsReport:
    """Replay comparison plus data-quality findings."""

    user_id: int
    status: str  # 'PASS', 'NEEDS_ATTENTION', 'FAIL', 'NO_DATA'
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    days_checked: int = 0
    days_matching: int = 0
    quality: Optional[DataQualityReport] = None
    statistics: Optional[TdeeStatistics] = None
    issues: list[DiagnosticIssue] = field(default_factory=list)

    def count(self, severity: str) -> int:
        return sum(1 for issue in self.issues if issue.severity == severity)


def _overall_status(report: DiagnosticsReport) -> str:
    if report.count("error"):
        return "FAIL"
    if report.count("warning") or (
        report.quality is not None and report.quality.score < QUALITY_WARNING_SCORE
    ):
        return "NEEDS_ATTENTION"
    return "PASS"


def generate_diagnostics(
    conn: sqlite3.Connection,
    user_id: int,
    params: ChainParameters = ChainParameters(),
    smoothing: float = DEFAULT_SMOOTHING,
) -> Optional[DiagnosticsReport]:
    """
    Replay a user's full chain and compare it with what is stored.

    Returns None when the user has no profile.
    """
    profile = ProfileQueries.get_profile(conn, user_id)
    if profile is None:
        return None

    observations = WeightQueries.get_observations(conn, user_id)
    records = DailyRecordQueries.get_records(conn, user_id)
    stored = {s.date: s for s in ComputedStateQueries.get_states(conn, user_id)}

    history_start = get_history_start(conn, user_id)
    ends = [d for d in (
        max(stored) if stored else None,
        records[-1].date if records else None,
    ) if d is not None]
    if history_start is None or not ends or not observations:
        return DiagnosticsReport(user_id, "NO_DATA")

    start, end = history_start, max(ends)
    points = calculate_trend_weights(observations, start, end, smoothing=smoothing)
    records_by_date = {r.date: r for r in records}
    expected = compute_chain(
        points,
        records_by_date,
        profile,
        start,
        params=params,
        goal_changes=GoalChangeQueries.get_changes(conn, user_id),
    )

    report = DiagnosticsReport(user_id, "PASS", start, end, days_checked=len(expected))

    for state in expected:
        actual = stored.get(state.date)
        if actual is None:
            report.issues.append(DiagnosticIssue(
                "warning", "missing_state", state.date,
                "No stored state; run a recalculation",
                expected=state.estimated_tdee_kcal,
            ))
        elif actual != state:
            report.issues.append(DiagnosticIssue(
                "error", "mismatch", state.date,
                f"Stored TDEE {actual.estimated_tdee_kcal} differs from replayed "
                f"{state.estimated_tdee_kcal} (trend {actual.trend_weight_kg} vs "
                f"{state.trend_weight_kg})",
                expected=state.estimated_tdee_kcal,
                actual=actual.estimated_tdee_kcal,
            ))
        else:
            report.days_matching += 1

    latest_tdee = expected[-1].estimated_tdee_kcal if expected else params.default_seed_tdee
    report.quality = calculate_data_quality_score(
        [r for r in records if r.date >= start], latest_tdee
    )
    report.statistics = calculate_tdee_statistics(expected)

    window = params.recent_window_days
    for i, state in enumerate(expected):
        record = records_by_date.get(state.date)

        if record is not None:
            partial = is_partial_logging(record.intake_calories, state.estimated_tdee_kcal)
            if partial.is_partial:
                report.issues.append(DiagnosticIssue(
                    "warning", "partial", state.date, partial.reason or "Partial logging",
                    actual=record.intake_calories,
                ))

        if i >= window and record is not None and record.is_tracked:
            recent = np.array([s.raw_tdee_kcal for s in expected[i - window:i]], dtype=float)
            outlier = is_tdee_outlier(state.raw_tdee_kcal, float(recent.mean()), float(recent.std()))
            if outlier.is_outlier:
                report.issues.append(DiagnosticIssue(
                    "info", "outlier", state.date,
                    f"Raw TDEE {state.raw_tdee_kcal} is {outlier.z_score:.1f} SD "
                    f"from the recent average",
                    expected=round(float(recent.mean())),
                    actual=state.raw_tdee_kcal,
                ))

        if i > 0:
            today, yesterday = points[i], points[i - 1]
            if today.scale_weight_kg is not None and yesterday.scale_weight_kg is not None:
                scale_change = today.scale_weight_kg - yesterday.scale_weight_kg
                whoosh = detect_whoosh(scale_change, state.weight_delta_kg)
                if whoosh.is_whoosh:
                    report.issues.append(DiagnosticIssue(
                        "info", "whoosh", state.date,
                        f"{whoosh.severity} water swing: scale {scale_change:+.1f} kg, "
                        f"trend {state.weight_delta_kg:+.2f} kg",
                        actual=round(scale_change, 2),
                    ))

    report.status = _overall_status(report)
    return report


def to_dict(report: DiagnosticsReport) -> dict[str, Any]:
    """JSON-serializable form of a report."""
    data = asdict(report)
    for key in ("start_date", "end_date"):
        if data[key] is not None:
            data[key] = data[key].isoformat()
    for issue in data["issues"]:
        issue["date"] = issue["date"].isoformat()
    data["summary"] = {
        "errors": report.count("error"),
        "warnings": report.count("warning"),
        "info": report.count("info"),
    }
    return data


def format_diagnostics_report(report: DiagnosticsReport, max_issues: int = 10) -> str:
    """Format a report as text."""
    lines = [
        f"TDEE Diagnostics (user {report.user_id})",
        "=" * 45,
    ]
    if report.status == "NO_DATA":
        lines.append("No weight or intake history to check.")
        return "\n".join(lines)

    lines.extend([
        f"Range:    {report.start_date} to {report.end_date} ({report.days_checked} days)",
        f"Replay:   {report.days_matching}/{report.days_checked} stored states match",
        f"Status:   {report.status}",
    ])

    if report.statistics is not None:
        s = report.statistics
        lines.append(
            f"TDEE:     {s.average:.0f} avg, {s.std_dev:.0f} SD "
            f"({s.minimum:.0f}-{s.maximum:.0f})"
        )

    if report.quality is not None:
        lines.append("")
        lines.append(f"Data quality: {report.quality.score}/100")
        for issue in report.quality.issues:
            lines.append(f"  - {issue}")

    ranked = sorted(
        report.issues,
        key=lambda i: ({"error": 0, "warning": 1, "info": 2}[i.severity], i.date),
    )
    if ranked:
        lines.append("")
        lines.append("Findings:")
        for issue in ranked[:max_issues]:
            lines.append(f"  [{issue.severity.upper()}] {issue.date}: {issue.message}")
        if len(ranked) > max_issues:
            lines.append(f"  ... and {len(ranked) - max_issues} more")

    return "\n".join(lines)
