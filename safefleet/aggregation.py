"""Dashboard metrics derived from raw compliance collections.

Every function here is pure: it reads a ``ComplianceSnapshot`` plus a
``ScopeFilter`` and returns plain dicts and lists ready for chart and table
bindings. Bad data (unparseable dates or durations, dangling references)
degrades to zero contributions or "Unknown" labels instead of raising.
"""
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .config import config
from .schemas import ALL_PARTNERS, Driver, Infraction, ObcKey, Severity, TripReport
from .snapshot import ComplianceSnapshot, ScopeFilter

MONTH_LABELS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
                "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

UNKNOWN_LABEL = "Unknown"
OTHER_LABEL = "Other"


def round_half_up(value: float, digits: int = 0) -> float:
    """Round like a dashboard does: halves go up, not to even."""
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        return 0.0
    if not number.is_finite():
        # nan/inf from a malformed numeric field
        return 0.0
    return float(number.quantize(Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP))


def parse_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO date or datetime string; None if unparseable."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
    except ValueError:
        return None


def date_sort_key(value: Optional[str]) -> datetime:
    """Naive datetime for ordering; unparseable dates sort first."""
    parsed = parse_date(value)
    if parsed is None:
        return datetime.min
    return parsed.replace(tzinfo=None)


def year_of(value: Optional[str]) -> Optional[int]:
    parsed = parse_date(value)
    return parsed.year if parsed else None


def duration_seconds(value: Optional[str]) -> int:
    """Convert an ``HH:MM[:SS]`` string to seconds; malformed input counts as 0."""
    if not value:
        return 0
    parts = str(value).strip().split(':')
    if len(parts) not in (2, 3):
        return 0
    try:
        numbers = [int(part) for part in parts]
    except ValueError:
        return 0
    if any(n < 0 for n in numbers):
        return 0
    hours, minutes = numbers[0], numbers[1]
    seconds = numbers[2] if len(numbers) == 3 else 0
    return hours * 3600 + minutes * 60 + seconds


def duration_hours(value: Optional[str]) -> float:
    """Convert an ``HH:MM:SS`` string to decimal hours rounded to one decimal."""
    return round_half_up(duration_seconds(value) / 3600, 1)


def format_duration(total_seconds: int, pad_hours: bool = False) -> str:
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    if pad_hours:
        return f"{hours:02d}h{minutes:02d}"
    return f"{hours}h{minutes:02d}"


def truncate_label(label: str, max_length: Optional[int] = None) -> str:
    if max_length is None:
        max_length = config.label_max_length
    if len(label) > max_length:
        return label[:max_length] + "..."
    return label


# --- Scoping ---

def reports_in_scope(snapshot: ComplianceSnapshot, scope: ScopeFilter) -> Iterator[TripReport]:
    for report in snapshot.reports:
        if not scope.matches_partner(report.partner_id):
            continue
        if not scope.matches_driver(report.driver_id):
            continue
        if year_of(report.date) != scope.year:
            continue
        yield report


def infractions_in_scope(
    snapshot: ComplianceSnapshot,
    scope: ScopeFilter
) -> Iterator[Tuple[Infraction, Optional[TripReport]]]:
    """Yield in-scope infractions with their linked report (None when unresolvable).

    Partner scope uses the infraction's own partner; driver scope goes through
    the linked report, so unresolvable infractions drop out once a driver is selected.
    """
    index = snapshot.index
    for infraction in snapshot.infractions:
        report = index.report_for(infraction)
        driver_id = report.driver_id if report else None
        if not scope.matches_partner(infraction.partner_id):
            continue
        if not scope.matches_driver(driver_id):
            continue
        if year_of(infraction.date) != scope.year:
            continue
        yield infraction, report


def _driver_infractions(
    snapshot: ComplianceSnapshot,
    driver_id: str,
    year: int
) -> List[Tuple[Infraction, TripReport]]:
    index = snapshot.index
    result = []
    for infraction in snapshot.infractions:
        if year_of(infraction.date) != year:
            continue
        report = index.report_for(infraction)
        if report is None or report.driver_id != driver_id:
            continue
        result.append((infraction, report))
    return result


def _driver_name(snapshot: ComplianceSnapshot, driver_id: Optional[str]) -> str:
    driver = snapshot.drivers_by_id.get(driver_id) if driver_id else None
    if driver is None:
        return UNKNOWN_LABEL
    return driver.display_name or UNKNOWN_LABEL


def _rule_label(snapshot: ComplianceSnapshot, infraction: Infraction, report: Optional[TripReport]) -> str:
    if report is not None and report.rule_id:
        rule = snapshot.index.rules_by_id.get(report.rule_id)
        return rule.title if rule and rule.title else OTHER_LABEL
    return infraction.declared_classification or OTHER_LABEL


def _severity_dict(severity: Severity) -> Dict:
    return {"classification": severity.classification.value, "points": severity.points}


# --- Metrics ---

def compute_monthly_series(snapshot: ComplianceSnapshot, scope: ScopeFilter) -> List[Dict]:
    """Twelve rows of work/driving/rest hours and infraction counts for the scope year."""
    months = [
        {"name": label, "infractions": 0, "work": 0.0, "driving": 0.0, "rest": 0.0}
        for label in MONTH_LABELS
    ]

    for report in reports_in_scope(snapshot, scope):
        month = months[parse_date(report.date).month - 1]
        month["work"] += duration_hours(report.total_duration)
        month["driving"] += duration_hours(report.driving_duration)
        month["rest"] += duration_hours(report.waiting_duration)

    for infraction, _ in infractions_in_scope(snapshot, scope):
        months[parse_date(infraction.date).month - 1]["infractions"] += 1

    # Integer hours for display
    for month in months:
        for key in ("work", "driving", "rest"):
            month[key] = int(round_half_up(month[key]))

    return months


def compute_driver_points(
    snapshot: ComplianceSnapshot,
    scope: ScopeFilter,
    limit: Optional[int] = None
) -> List[Dict]:
    """Top drivers by resolved infraction points."""
    if limit is None:
        limit = config.top_n

    totals: Dict[str, int] = {}
    for infraction, report in infractions_in_scope(snapshot, scope):
        if report is None or not report.driver_id:
            continue
        points = snapshot.index.resolve(infraction).points
        totals[report.driver_id] = totals.get(report.driver_id, 0) + points

    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)[:limit]
    return [
        {"driver_id": driver_id, "name": _driver_name(snapshot, driver_id), "points": points}
        for driver_id, points in ranked
    ]


def compute_rule_points(
    snapshot: ComplianceSnapshot,
    scope: ScopeFilter,
    limit: Optional[int] = None
) -> List[Dict]:
    """Top violated rules by resolved points, labels truncated for display."""
    if limit is None:
        limit = config.top_n

    totals: Dict[str, int] = {}
    for infraction, report in infractions_in_scope(snapshot, scope):
        label = truncate_label(_rule_label(snapshot, infraction, report))
        points = snapshot.index.resolve(infraction).points
        totals[label] = totals.get(label, 0) + points

    ranked = sorted(totals.items(), key=lambda item: item[1], reverse=True)[:limit]
    return [{"name": name, "points": points} for name, points in ranked]


def compute_classification_distribution(snapshot: ComplianceSnapshot, scope: ScopeFilter) -> List[Dict]:
    """Infraction counts per declared classification, most frequent first."""
    counts: Dict[str, int] = {}
    for infraction, _ in infractions_in_scope(snapshot, scope):
        name = infraction.declared_classification or OTHER_LABEL
        counts[name] = counts.get(name, 0) + 1

    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return [{"name": name, "value": value} for name, value in ranked]


def compute_safety_score(points_lost: float, infraction_count: int) -> int:
    """Fleet safety score: max(0, round(100 - (points*2 + count*0.5)))."""
    penalty = (
        points_lost * config.safety_points_weight +
        infraction_count * config.safety_count_weight
    )
    return max(0, int(round_half_up(config.safety_score_base - penalty)))


def compute_kpis(snapshot: ComplianceSnapshot, scope: ScopeFilter) -> Dict:
    total_distance = sum(report.distance_km for report in reports_in_scope(snapshot, scope))

    infraction_count = 0
    points_lost = 0
    for infraction, _ in infractions_in_scope(snapshot, scope):
        infraction_count += 1
        points_lost += snapshot.index.resolve(infraction).points

    return {
        "distance": int(round_half_up(total_distance)),
        "infractions": infraction_count,
        "points_lost": points_lost,
        "safety_score": compute_safety_score(points_lost, infraction_count)
    }


def compute_license_balance(snapshot: ComplianceSnapshot, driver_id: str, year: int) -> Dict:
    """Remaining license points for a driver over one year.

    ``points_lost`` is reported as is and may exceed the allotment;
    ``remaining_points`` never drops below zero.
    """
    allotment = config.license_points_start
    driver_infractions = _driver_infractions(snapshot, driver_id, year)
    points_lost = sum(snapshot.index.resolve(infraction).points for infraction, _ in driver_infractions)

    return {
        "driver_id": driver_id,
        "year": year,
        "allotment": allotment,
        "points_lost": points_lost,
        "remaining_points": allotment - min(points_lost, allotment),
        "total_infractions": len(driver_infractions)
    }


def compute_recent_infractions(
    snapshot: ComplianceSnapshot,
    scope: ScopeFilter,
    limit: Optional[int] = None
) -> List[Dict]:
    """Latest in-scope infractions annotated with severity and driver name."""
    if limit is None:
        limit = config.top_n

    scoped = list(infractions_in_scope(snapshot, scope))
    scoped.sort(key=lambda pair: date_sort_key(pair[0].date), reverse=True)

    result = []
    for infraction, report in scoped[:limit]:
        row = infraction.model_dump(mode="json")
        row["severity"] = _severity_dict(snapshot.index.resolve(infraction))
        row["driver_id"] = report.driver_id if report else None
        row["driver_name"] = _driver_name(snapshot, report.driver_id) if report else UNKNOWN_LABEL
        result.append(row)
    return result


# --- Partner linkage and fleet figures ---

def is_driver_linked_to_partner(driver: Driver, partner_id: str, obc_keys: Sequence[ObcKey]) -> bool:
    """A driver belongs to a partner when any of its OBC keys does."""
    if partner_id == ALL_PARTNERS:
        return True
    if not driver.obc_key_ids:
        return False
    keys_by_id = {key.id: key for key in obc_keys}
    return any(
        keys_by_id[key_id].partner_id == partner_id
        for key_id in driver.obc_key_ids
        if key_id in keys_by_id
    )


def drivers_for_partner(snapshot: ComplianceSnapshot, partner_id: str) -> List[Driver]:
    return [
        driver for driver in snapshot.drivers
        if is_driver_linked_to_partner(driver, partner_id, snapshot.obc_keys)
    ]


def compute_fleet_stats(snapshot: ComplianceSnapshot, scope: ScopeFilter) -> Dict:
    available = drivers_for_partner(snapshot, scope.partner)
    with_key = sum(1 for driver in available if driver.obc_key_ids)

    if scope.partner == ALL_PARTNERS:
        vehicle_count = len(snapshot.vehicles)
    else:
        vehicle_count = sum(1 for vehicle in snapshot.vehicles if vehicle.partner_id == scope.partner)

    return {
        "drivers_with_key": with_key,
        "drivers_total": len(available),
        "vehicles": vehicle_count
    }


# --- Period KPIs and weekly time ---

def compute_period_kpis(snapshot: ComplianceSnapshot, scope: ScopeFilter, month: Optional[int] = None) -> Dict:
    """Distance, driving and rest totals for one month (1-12) or the whole scope year.

    Objectives are per partner; the "all" scope multiplies them by the number
    of partners.
    """
    reports = [
        report for report in reports_in_scope(snapshot, scope)
        if month is None or parse_date(report.date).month == month
    ]
    driving_seconds = sum(duration_seconds(report.driving_duration) for report in reports)
    rest_seconds = sum(duration_seconds(report.waiting_duration) for report in reports)

    multiplier = len(snapshot.partners) if scope.partner == ALL_PARTNERS else 1
    periods = 1 if month is not None else 12

    return {
        "partner": scope.partner,
        "year": scope.year,
        "month": month,
        "period": "month" if month is not None else "year",
        "report_count": len(reports),
        "distance": int(round_half_up(sum(report.distance_km for report in reports))),
        "driving_hours": int(round_half_up(driving_seconds / 3600)),
        "rest_hours": int(round_half_up(rest_seconds / 3600)),
        "objectives": {
            "driving_hours_max": config.kpi_driving_hours_max * periods * multiplier,
            "rest_days_min": config.kpi_rest_days_min * periods * multiplier
        }
    }


def compute_weekly_time(snapshot: ComplianceSnapshot, scope: ScopeFilter, driver_id: str, month: int) -> Dict:
    """One driver's reports for a month of the scope year, grouped by ISO week."""
    reports = [
        report for report in snapshot.reports
        if report.driver_id == driver_id and scope.matches_partner(report.partner_id)
    ]
    dated = []
    for report in reports:
        parsed = parse_date(report.date)
        if parsed is None or parsed.year != scope.year or parsed.month != month:
            continue
        dated.append((parsed, report))
    dated.sort(key=lambda pair: pair[0].replace(tzinfo=None))

    weeks: Dict[int, List[Dict]] = {}
    service_total = 0
    waiting_total = 0
    for parsed, report in dated:
        driving = duration_seconds(report.driving_duration)
        waiting = duration_seconds(report.waiting_duration)
        service_total += driving + waiting
        waiting_total += waiting
        week = parsed.isocalendar()[1]
        weeks.setdefault(week, []).append({
            "id": report.id,
            "date": report.date,
            "driving_time": format_duration(driving, pad_hours=True),
            "waiting_time": format_duration(waiting, pad_hours=True),
            "service_time": format_duration(driving + waiting, pad_hours=True)
        })

    return {
        "driver_id": driver_id,
        "partner": scope.partner,
        "year": scope.year,
        "month": month,
        "weeks": [{"week": week, "reports": rows} for week, rows in weeks.items()],
        "service_time": format_duration(service_total, pad_hours=True),
        "waiting_time": format_duration(waiting_total, pad_hours=True),
        "report_count": len(dated)
    }


# --- Driver detail ---

def driver_score_status(score: int) -> str:
    if score >= 90:
        return "Excellence"
    if score >= 75:
        return "Good"
    if score >= 50:
        return "Watch"
    return "Critical"


def compute_driver_summary(snapshot: ComplianceSnapshot, driver_id: str, year: int) -> Optional[Dict]:
    """Everything the driver detail view shows for one year; None for an unknown driver."""
    driver = snapshot.drivers_by_id.get(driver_id)
    if driver is None:
        return None

    driver_reports = [
        report for report in snapshot.reports
        if report.driver_id == driver_id and year_of(report.date) == year
    ]
    driver_reports.sort(key=lambda report: date_sort_key(report.date), reverse=True)

    distance = sum(report.distance_km for report in driver_reports)
    driving_seconds = sum(duration_seconds(report.driving_duration) for report in driver_reports)
    work_seconds = sum(duration_seconds(report.total_duration) for report in driver_reports)
    rest_seconds = sum(duration_seconds(report.waiting_duration) for report in driver_reports)

    license_balance = compute_license_balance(snapshot, driver_id, year)
    points_lost = license_balance["points_lost"]

    penalties: Dict[str, int] = {}
    for infraction, _ in _driver_infractions(snapshot, driver_id, year):
        label = infraction.declared_classification or OTHER_LABEL
        penalties[label] = penalties.get(label, 0) + snapshot.index.resolve(infraction).points
    top_penalties = [
        {"label": label, "points": points}
        for label, points in sorted(penalties.items(), key=lambda item: item[1], reverse=True)[:3]
    ]

    safety_score = max(0, int(round_half_up(
        config.safety_score_base - points_lost * config.driver_score_points_weight
    )))

    chart = []
    for report in reversed(driver_reports[:7]):
        parsed = parse_date(report.date)
        chart.append({
            "name": parsed.strftime("%a") if parsed else report.date,
            "date": report.date,
            "driving": duration_hours(report.driving_duration),
            "distance": report.distance_km
        })

    # Partner and vehicle come from the assigned OBC key, else from the latest report
    assigned_key = next(
        (snapshot.obc_keys_by_id[key_id] for key_id in driver.obc_key_ids if key_id in snapshot.obc_keys_by_id),
        None
    )
    latest_vehicle_id = driver_reports[0].vehicle_id if driver_reports else None
    vehicle = next((v for v in snapshot.vehicles if v.id == latest_vehicle_id), None)
    if vehicle is None and assigned_key is not None:
        vehicle = next((v for v in snapshot.vehicles if v.partner_id == assigned_key.partner_id), None)

    partner_id = assigned_key.partner_id if assigned_key else (
        driver_reports[0].partner_id if driver_reports else None
    )
    partner = snapshot.partners_by_id.get(partner_id) if partner_id else None

    return {
        "driver_id": driver_id,
        "name": driver.display_name,
        "year": year,
        "partner": partner.name if partner else None,
        "vehicle": vehicle.name if vehicle else None,
        "distance": int(round_half_up(distance)),
        "driving_time": format_duration(driving_seconds),
        "work_time": format_duration(work_seconds),
        "rest_time": format_duration(rest_seconds),
        "report_count": len(driver_reports),
        "infraction_count": license_balance["total_infractions"],
        "points_lost": points_lost,
        "license_points": license_balance["remaining_points"],
        "safety_score": safety_score,
        "status": driver_score_status(safety_score),
        "top_penalties": top_penalties,
        "chart": chart
    }


def compute_dashboard(snapshot: ComplianceSnapshot, scope: ScopeFilter) -> Dict:
    """All dashboard figures for one scope in a single structure."""
    return {
        "scope": scope.model_dump(),
        "kpis": compute_kpis(snapshot, scope),
        "fleet": compute_fleet_stats(snapshot, scope),
        "monthly": compute_monthly_series(snapshot, scope),
        "distribution": compute_classification_distribution(snapshot, scope),
        "driver_points": compute_driver_points(snapshot, scope),
        "rule_points": compute_rule_points(snapshot, scope),
        "recent_infractions": compute_recent_infractions(snapshot, scope)
    }
