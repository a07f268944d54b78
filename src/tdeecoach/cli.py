"""CLI interface using Typer."""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from tdeecoach.config import get_settings
from tdeecoach.db import get_db
from tdeecoach.tracking.chain import ChainParameters
from tdeecoach.tracking.coaching import get_week_start
from tdeecoach.tracking.diagnostics import (
    format_diagnostics_report,
    generate_diagnostics,
    to_dict,
)
from tdeecoach.tracking.models import (
    GoalType,
    IntakeEntry,
    LogStatus,
    RecalculationSummary,
    UserProfile,
)
from tdeecoach.tracking.queries import ComputedStateQueries, ProfileQueries
from tdeecoach.tracking.recalculation import MetabolicService, RecalculationError

app = typer.Typer(
    help="Adaptive TDEE estimation and weekly calorie coaching",
    no_args_is_help=True,
)
console = Console()

# Subcommand groups
profile_app = typer.Typer(help="Manage the user profile and goal")
weight_app = typer.Typer(help="Log scale weight")
meal_app = typer.Typer(help="Log meals")
day_app = typer.Typer(help="Edit a day's status or step count")
tdee_app = typer.Typer(help="Recalculate and inspect TDEE")
checkin_app = typer.Typer(help="Weekly coaching check-ins")

app.add_typer(profile_app, name="profile")
app.add_typer(weight_app, name="weight")
app.add_typer(meal_app, name="meal")
app.add_typer(day_app, name="day")
app.add_typer(tdee_app, name="tdee")
app.add_typer(checkin_app, name="checkin")


# ============================================================================
# Helpers
# ============================================================================


def output_json(response: dict, file=None) -> None:
    """Output JSON response to stdout or file."""
    json_str = json.dumps(response, indent=2, default=str)
    if file:
        file.write(json_str)
    else:
        print(json_str)


def configure_logging(verbose: bool) -> None:
    level = "DEBUG" if verbose else get_settings().logging.level.upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def get_service() -> MetabolicService:
    db = get_db()
    db.initialize_schema()
    return MetabolicService(db, get_settings())


def resolve_user(user_id: Optional[int]) -> int:
    """Return the given user id, or the default profile's. Exits if none."""
    db = get_db()
    db.initialize_schema()
    with db.get_connection() as conn:
        if user_id:
            profile = ProfileQueries.get_profile(conn, user_id)
        else:
            profile = ProfileQueries.get_default_profile(conn)

    if profile is None or profile.user_id is None:
        console.print("[red]No user profile found[/red]")
        console.print("Create one with: tdeecoach profile set --height 180 --birth-date 1990-01-01 --sex male")
        raise typer.Exit(1)
    return profile.user_id


def parse_date(value: Optional[str]) -> date:
    if value is None:
        return date.today()
    try:
        return date.fromisoformat(value)
    except ValueError:
        console.print(f"[red]Invalid date '{value}' (expected YYYY-MM-DD)[/red]")
        raise typer.Exit(1)


def parse_timestamp(value: Optional[str]) -> datetime:
    if value is None:
        return datetime.now().replace(microsecond=0)
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        console.print(f"[red]Invalid timestamp '{value}' (expected YYYY-MM-DD[THH:MM])[/red]")
        raise typer.Exit(1)
    return parsed


def print_summary(summary: RecalculationSummary) -> None:
    if not summary.states:
        console.print("[yellow]No days recalculated (no weight history in range)[/yellow]")
        return
    latest = summary.states[-1]
    console.print(
        f"[green]Recalculated {summary.days_recalculated} days "
        f"({summary.start_date} to {summary.end_date})[/green]"
    )
    console.print(
        f"  TDEE: {latest.estimated_tdee_kcal} ± {latest.flux_confidence_range} kcal"
        f"  Trend: {latest.trend_weight_kg:.2f} kg"
    )


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Adaptive TDEE estimation and weekly calorie coaching."""
    configure_logging(verbose)


# ============================================================================
# Setup
# ============================================================================


@app.command()
def init() -> None:
    """Create the database and its tables."""
    db = get_db()
    db.initialize_schema()
    console.print(f"[green]Database ready at {db.db_path}[/green]")


# ============================================================================
# Profile Commands
# ============================================================================


@profile_app.command("set")
def profile_set(
    user_id: Optional[int] = typer.Option(None, "--user", help="User ID (default: first user)"),
    height: Optional[float] = typer.Option(None, "--height", help="Height in cm"),
    birth_date: Optional[str] = typer.Option(None, "--birth-date", help="Birth date (YYYY-MM-DD)"),
    sex: Optional[str] = typer.Option(None, "--sex", help="Sex (male/female)"),
    athlete: Optional[bool] = typer.Option(None, "--athlete/--no-athlete", help="Athlete flag"),
    goal: Optional[str] = typer.Option(None, "--goal", help="Goal (lose/gain/maintain)"),
    rate: Optional[float] = typer.Option(None, "--rate", help="Goal rate in kg/week"),
    target: Optional[float] = typer.Option(None, "--target", help="Target weight in kg"),
    units: Optional[str] = typer.Option(None, "--units", help="Display units (metric/imperial)"),
    effective: Optional[str] = typer.Option(
        None, "--effective", help="Date a goal change takes effect (default: today)"
    ),
) -> None:
    """Create the profile, or update it. Goal changes trigger a recalculation."""
    service = get_service()
    db = get_db()

    with db.get_connection() as conn:
        existing = (
            ProfileQueries.get_profile(conn, user_id)
            if user_id
            else ProfileQueries.get_default_profile(conn)
        )

    try:
        if existing is None:
            profile = UserProfile(
                user_id=None,
                height_cm=height,
                birth_date=date.fromisoformat(birth_date) if birth_date else None,
                sex=sex,
                athlete=bool(athlete),
                goal_type=GoalType(goal) if goal else GoalType.MAINTAIN,
                goal_rate_kg_per_week=(
                    rate if rate is not None else get_settings().coaching.default_goal_rate
                ),
                target_weight_kg=target,
                unit_preference=units or "metric",
            )
            new_id = service.create_profile(profile)
            console.print(f"[green]Created user profile (ID: {new_id})[/green]")
            return

        updated = UserProfile(**vars(existing))
        if height is not None:
            updated.height_cm = height
        if birth_date is not None:
            updated.birth_date = date.fromisoformat(birth_date)
        if sex is not None:
            updated.sex = sex
        if athlete is not None:
            updated.athlete = athlete
        if target is not None:
            updated.target_weight_kg = target
        if units is not None:
            updated.unit_preference = units
        # re-run validation on the edited copy
        updated = UserProfile(**vars(updated))

        with db.get_connection() as conn:
            ProfileQueries.update_profile(conn, updated)

        if goal is not None or rate is not None:
            summary = service.record_goal_change(
                existing.user_id,  # type: ignore[arg-type]
                GoalType(goal) if goal else existing.goal_type,
                rate if rate is not None else existing.goal_rate_kg_per_week,
                effective_date=parse_date(effective),
            )
            if summary is not None:
                print_summary(summary)
    except (ValueError, RecalculationError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print("[green]Profile updated[/green]")


@profile_app.command("show")
def profile_show(
    user_id: Optional[int] = typer.Option(None, "--user", help="User ID (default: first user)"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show the user profile."""
    uid = resolve_user(user_id)
    with get_db().get_connection() as conn:
        profile = ProfileQueries.get_profile(conn, uid)
    assert profile is not None

    if json_output:
        output_json({
            "success": True,
            "command": "profile show",
            "data": {
                "user_id": profile.user_id,
                "height_cm": profile.height_cm,
                "birth_date": profile.birth_date,
                "sex": profile.sex,
                "athlete": profile.athlete,
                "goal_type": profile.goal_type.value,
                "goal_rate_kg_per_week": profile.goal_rate_kg_per_week,
                "target_weight_kg": profile.target_weight_kg,
                "unit_preference": profile.unit_preference,
            },
        })
        return

    console.print(f"[bold]User Profile (ID: {profile.user_id})[/bold]")
    console.print(f"  Height: {profile.height_cm or '-'} cm")
    console.print(f"  Birth date: {profile.birth_date or '-'}")
    console.print(f"  Sex: {profile.sex or '-'}")
    console.print(f"  Athlete: {'yes' if profile.athlete else 'no'}")
    console.print(
        f"  Goal: {profile.goal_type.value} ({profile.goal_rate_kg_per_week} kg/week)"
    )
    if profile.target_weight_kg:
        console.print(f"  Target weight: {profile.target_weight_kg} kg")
    if not profile.has_body_metrics:
        console.print(
            "[yellow]Height, birth date and sex are needed for the cold-start estimate[/yellow]"
        )


# ============================================================================
# Logging Commands
# ============================================================================


@weight_app.command("log")
def weight_log(
    weight: float = typer.Argument(..., help="Weight in kg"),
    at: Optional[str] = typer.Option(None, "--at", help="Timestamp (default: now)"),
    note: Optional[str] = typer.Option(None, "--note", "-n", help="Optional note"),
    user_id: Optional[int] = typer.Option(None, "--user", help="User ID (default: first user)"),
) -> None:
    """Log a scale reading and recalculate from its day forward."""
    uid = resolve_user(user_id)
    service = get_service()
    try:
        summary = service.log_weight(uid, weight, parse_timestamp(at), note)
    except (ValueError, RecalculationError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Logged {weight:.1f} kg[/green]")
    print_summary(summary)


@meal_app.command("log")
def meal_log(
    calories: float = typer.Argument(..., help="Calories (kcal)"),
    protein: float = typer.Option(0.0, "--protein", "-p", help="Protein (g)"),
    carbs: float = typer.Option(0.0, "--carbs", "-c", help="Carbohydrates (g)"),
    fat: float = typer.Option(0.0, "--fat", "-f", help="Fat (g)"),
    description: Optional[str] = typer.Option(None, "--desc", help="Description"),
    at: Optional[str] = typer.Option(None, "--at", help="Timestamp (default: now)"),
    user_id: Optional[int] = typer.Option(None, "--user", help="User ID (default: first user)"),
) -> None:
    """Log a meal. Updates the day's totals; TDEE is not recalculated."""
    uid = resolve_user(user_id)
    service = get_service()
    try:
        entry = IntakeEntry(None, parse_timestamp(at), calories, protein, carbs, fat, description)
        record = service.log_meal(uid, entry)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print(
        f"[green]Logged {calories:.0f} kcal[/green] "
        f"(day total: {record.intake_calories} kcal, {record.status.value})"
    )


@day_app.command("status")
def day_status(
    status: str = typer.Argument(..., help="complete, partial or skipped"),
    date_str: Optional[str] = typer.Option(None, "--date", "-d", help="Date (default: today)"),
    user_id: Optional[int] = typer.Option(None, "--user", help="User ID (default: first user)"),
) -> None:
    """Set a day's status and recalculate from that day forward."""
    uid = resolve_user(user_id)
    service = get_service()
    try:
        summary = service.update_day_status(uid, parse_date(date_str), LogStatus(status))
    except (ValueError, RecalculationError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    print_summary(summary)


@day_app.command("steps")
def day_steps(
    steps: int = typer.Argument(..., help="Step count"),
    date_str: Optional[str] = typer.Option(None, "--date", "-d", help="Date (default: today)"),
    user_id: Optional[int] = typer.Option(None, "--user", help="User ID (default: first user)"),
) -> None:
    """Record a day's step count and recalculate from that day forward."""
    uid = resolve_user(user_id)
    service = get_service()
    try:
        summary = service.log_steps(uid, parse_date(date_str), steps)
    except (ValueError, RecalculationError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    print_summary(summary)


# ============================================================================
# TDEE Commands
# ============================================================================


@tdee_app.command("recalc")
def tdee_recalc(
    from_str: str = typer.Option(..., "--from", help="First day to recompute (YYYY-MM-DD)"),
    user_id: Optional[int] = typer.Option(None, "--user", help="User ID (default: first user)"),
) -> None:
    """Recompute the chain from a date to today."""
    uid = resolve_user(user_id)
    service = get_service()
    try:
        summary = service.recalculate_from(uid, parse_date(from_str))
    except RecalculationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    print_summary(summary)


@tdee_app.command("backfill")
def tdee_backfill(
    days: Optional[int] = typer.Option(None, "--days", help="Lookback window (default from config)"),
    reset: bool = typer.Option(False, "--reset", help="Delete stored states first"),
    user_id: Optional[int] = typer.Option(None, "--user", help="User ID (default: first user)"),
) -> None:
    """Aggregate every day in the window and compute the whole chain."""
    uid = resolve_user(user_id)
    service = get_service()
    try:
        summary = service.reset(uid, days) if reset else service.backfill(uid, days)
    except RecalculationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print(f"Aggregated {summary.days_aggregated} days")
    print_summary(summary)


@tdee_app.command("show")
def tdee_show(
    days: int = typer.Option(14, "--days", help="Number of days to show"),
    user_id: Optional[int] = typer.Option(None, "--user", help="User ID (default: first user)"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show recent computed states."""
    uid = resolve_user(user_id)
    with get_db().get_connection() as conn:
        latest = ComputedStateQueries.get_latest_state(conn, uid)
        states = (
            ComputedStateQueries.get_states(
                conn, uid, latest.date - timedelta(days=days - 1), latest.date
            )
            if latest
            else []
        )

    if not states:
        console.print("[yellow]No computed states. Run: tdeecoach tdee backfill[/yellow]")
        raise typer.Exit(1)

    if json_output:
        output_json({
            "success": True,
            "command": "tdee show",
            "data": [
                {
                    "date": s.date.isoformat(),
                    "trend_weight_kg": s.trend_weight_kg,
                    "estimated_tdee_kcal": s.estimated_tdee_kcal,
                    "raw_tdee_kcal": s.raw_tdee_kcal,
                    "flux_confidence_range": s.flux_confidence_range,
                    "energy_density_used": s.energy_density_used,
                    "weight_delta_kg": s.weight_delta_kg,
                }
                for s in states
            ],
        })
        return

    table = Table(title=f"TDEE (last {len(states)} days)")
    table.add_column("Date")
    table.add_column("Trend (kg)", justify="right")
    table.add_column("Δ (kg)", justify="right")
    table.add_column("Raw", justify="right")
    table.add_column("TDEE", justify="right")
    table.add_column("±", justify="right")
    for s in states:
        table.add_row(
            s.date.isoformat(),
            f"{s.trend_weight_kg:.2f}",
            f"{s.weight_delta_kg:+.3f}",
            str(s.raw_tdee_kcal),
            str(s.estimated_tdee_kcal),
            str(s.flux_confidence_range),
        )
    console.print(table)


# ============================================================================
# Coaching / Diagnostics
# ============================================================================


@checkin_app.command("build")
def checkin_build(
    week_of: Optional[str] = typer.Option(
        None, "--week-of", help="Any date in the week (default: last week)"
    ),
    user_id: Optional[int] = typer.Option(None, "--user", help="User ID (default: first user)"),
) -> None:
    """Build and store a weekly check-in."""
    uid = resolve_user(user_id)
    service = get_service()
    day = parse_date(week_of) if week_of else date.today() - timedelta(days=7)
    week_start = get_week_start(day)

    try:
        check_in = service.build_check_in(uid, week_start)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if check_in is None:
        console.print(f"[yellow]Insufficient data for the week of {week_start}[/yellow]")
        raise typer.Exit(1)

    console.print(f"[bold]Week {check_in.week_start} to {check_in.week_end}[/bold]")
    console.print(f"  Average TDEE:       {check_in.average_tdee} kcal")
    console.print(f"  Suggested calories: [cyan]{check_in.suggested_calories}[/cyan] kcal")
    console.print(f"  Adherence:          {check_in.adherence_score:.0%}")
    console.print(f"  Confidence:         {check_in.confidence_level.value}")
    console.print(
        f"  Trend:              {check_in.trend_weight_start:.2f} -> "
        f"{check_in.trend_weight_end:.2f} kg ({check_in.weekly_weight_change:+.2f})"
    )
    if check_in.notes:
        console.print(f"[yellow]  {check_in.notes}[/yellow]")


@app.command()
def diagnose(
    user_id: Optional[int] = typer.Option(None, "--user", help="User ID (default: first user)"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Replay the chain, compare with stored states and report data quality."""
    uid = resolve_user(user_id)
    settings = get_settings()
    with get_db().get_connection() as conn:
        report = generate_diagnostics(
            conn,
            uid,
            ChainParameters.from_settings(settings),
            settings.metabolic.weight_ema_alpha,
        )
    assert report is not None

    if json_output:
        output_json({"success": True, "command": "diagnose", "data": to_dict(report)})
    else:
        console.print(format_diagnostics_report(report))

    if report.status == "FAIL":
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
