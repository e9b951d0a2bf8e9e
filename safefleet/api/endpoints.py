from contextlib import contextmanager
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..aggregation import (
    compute_dashboard,
    compute_driver_summary,
    compute_license_balance,
    compute_period_kpis,
    compute_weekly_time,
    drivers_for_partner,
)
from ..config import config
from ..db import get_db
from ..notifications import notification_queue
from ..persistence import RecordNotFoundError, UnknownTopicError, list_records
from ..runtime import load_snapshot, store
from ..schemas import ALL_PARTNERS
from ..severity import find_duplicate_sanction_configs
from ..snapshot import ScopeFilter

router = APIRouter()


class ScoringUpdate(BaseModel):
    default_alert_points: Optional[int] = Field(None, ge=0)
    default_alarm_points: Optional[int] = Field(None, ge=0)
    safety_points_weight: Optional[float] = Field(None, ge=0)
    safety_count_weight: Optional[float] = Field(None, ge=0)
    safety_score_base: Optional[int] = Field(None, ge=0)
    license_points_start: Optional[int] = Field(None, ge=1)


def _current_year() -> int:
    return date.today().year


@contextmanager
def _store_errors():
    """Translate store and database errors into HTTP responses."""
    try:
        yield
    except UnknownTopicError as e:
        raise HTTPException(status_code=404, detail=f"Unknown collection: {e.args[0]}")
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=f"Record not found: {e}")
    except ValidationError as e:
        raise RequestValidationError(e.errors())
    except IntegrityError as e:
        raise HTTPException(status_code=409, detail=f"Conflict: {e.orig}")
    except SQLAlchemyError as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")


# --- Collections ---

# Mutations are async so store dispatch, dashboard queues and the notification
# queue all run on the event loop thread. The SQLite calls they make are short.

@router.get("/collections/{topic}")
def list_collection(topic: str) -> List[Dict[str, Any]]:
    """Get every record of a collection in stored order."""
    with _store_errors():
        return [record.model_dump(mode="json") for record in store.get_all(topic)]


@router.get("/collections/{topic}/{record_id}")
def get_collection_record(topic: str, record_id: str) -> Dict[str, Any]:
    with _store_errors():
        record = store.get(topic, record_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Record not found: {topic}/{record_id}")
    return record.model_dump(mode="json")


@router.post("/collections/{topic}", status_code=201)
async def create_collection_record(topic: str, payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    """Create a record; subscribers and notifications fire before the response."""
    with _store_errors():
        return store.create(topic, payload).model_dump(mode="json")


@router.put("/collections/{topic}/{record_id}")
async def update_collection_record(topic: str, record_id: str,
                                   changes: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    with _store_errors():
        return store.update(topic, record_id, changes).model_dump(mode="json")


@router.delete("/collections/{topic}/{record_id}")
async def delete_collection_record(topic: str, record_id: str) -> Dict[str, Any]:
    with _store_errors():
        return store.delete(topic, record_id).model_dump(mode="json")


# --- Dashboard ---

@router.get("/dashboard")
def get_dashboard(
    partner: str = Query(ALL_PARTNERS, description="Partner id, or 'all'"),
    driver: Optional[str] = Query(None, description="Restrict to one driver"),
    year: Optional[int] = Query(None, ge=1900, le=9999, description="Calendar year, defaults to the current one")
) -> Dict[str, Any]:
    """Get the full dashboard bundle for a partner/driver/year scope."""
    scope = ScopeFilter(partner=partner, driver=driver or None, year=year or _current_year())
    with _store_errors():
        snapshot = load_snapshot()
    return compute_dashboard(snapshot, scope)


@router.get("/drivers")
def list_drivers(
    partner: str = Query(ALL_PARTNERS, description="Partner id, or 'all'")
) -> List[Dict[str, Any]]:
    """Get drivers linked to a partner through their OBC keys."""
    with _store_errors():
        snapshot = load_snapshot()
    return [
        {**driver.model_dump(mode="json"), "name": driver.display_name}
        for driver in drivers_for_partner(snapshot, partner)
    ]


@router.get("/drivers/{driver_id}/summary")
def get_driver_summary(
    driver_id: str,
    year: Optional[int] = Query(None, ge=1900, le=9999, description="Calendar year")
) -> Dict[str, Any]:
    with _store_errors():
        snapshot = load_snapshot()
    summary = compute_driver_summary(snapshot, driver_id, year or _current_year())
    if summary is None:
        raise HTTPException(status_code=404, detail=f"Driver not found: {driver_id}")
    return summary


@router.get("/drivers/{driver_id}/license")
def get_driver_license(
    driver_id: str,
    year: Optional[int] = Query(None, ge=1900, le=9999, description="Calendar year")
) -> Dict[str, Any]:
    """Get the remaining license points of a driver for one year."""
    with _store_errors():
        snapshot = load_snapshot()
    if driver_id not in snapshot.drivers_by_id:
        raise HTTPException(status_code=404, detail=f"Driver not found: {driver_id}")
    return compute_license_balance(snapshot, driver_id, year or _current_year())


@router.get("/drivers/{driver_id}/weekly-time")
def get_driver_weekly_time(
    driver_id: str,
    month: int = Query(..., ge=1, le=12, description="Calendar month, 1-12"),
    partner: str = Query(ALL_PARTNERS, description="Partner id, or 'all'"),
    year: Optional[int] = Query(None, ge=1900, le=9999, description="Calendar year")
) -> Dict[str, Any]:
    """Get a driver's reports for one month grouped by week, with service time totals."""
    with _store_errors():
        snapshot = load_snapshot()
    if driver_id not in snapshot.drivers_by_id:
        raise HTTPException(status_code=404, detail=f"Driver not found: {driver_id}")
    scope = ScopeFilter(partner=partner, year=year or _current_year())
    return compute_weekly_time(snapshot, scope, driver_id, month)


@router.get("/kpis")
def get_period_kpis(
    partner: str = Query(ALL_PARTNERS, description="Partner id, or 'all'"),
    year: Optional[int] = Query(None, ge=1900, le=9999, description="Calendar year"),
    month: Optional[int] = Query(None, ge=1, le=12, description="Single month, omit for the whole year")
) -> Dict[str, Any]:
    """Get distance, driving and rest totals for a month or a year against their objectives."""
    scope = ScopeFilter(partner=partner, year=year or _current_year())
    with _store_errors():
        snapshot = load_snapshot()
    return compute_period_kpis(snapshot, scope, month)


@router.get("/infractions/{infraction_id}/severity")
def get_infraction_severity(infraction_id: str) -> Dict[str, Any]:
    with _store_errors():
        snapshot = load_snapshot()
    infraction = next((i for i in snapshot.infractions if i.id == infraction_id), None)
    if infraction is None:
        raise HTTPException(status_code=404, detail=f"Infraction not found: {infraction_id}")

    severity = snapshot.index.resolve(infraction)
    return {
        "infraction_id": infraction_id,
        "classification": severity.classification.value,
        "points": severity.points
    }


@router.get("/data-quality/sanction-configs")
def get_duplicate_sanction_configs(db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Report sanction configurations that share a rule/classification/partner key."""
    try:
        configs = list_records(db, "sanction_configs")
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Database error: {str(e)}")

    duplicates = find_duplicate_sanction_configs(configs)
    return {"total_configs": len(configs), "duplicates": duplicates}


# --- Notifications ---

# Async for the same reason as the mutations: push() runs on the loop thread.

@router.get("/notifications")
async def list_notifications() -> Dict[str, Any]:
    return {
        "unread": notification_queue.unread_count,
        "items": [n.to_dict() for n in notification_queue.active()]
    }


@router.post("/notifications/{notification_id}/dismiss")
async def dismiss_notification(notification_id: str) -> Dict[str, Any]:
    if not notification_queue.dismiss(notification_id):
        raise HTTPException(status_code=404, detail=f"Notification not found: {notification_id}")
    return {"dismissed": notification_id}


@router.post("/notifications/read")
async def mark_notifications_read() -> Dict[str, Any]:
    notification_queue.clear_unread()
    return {"unread": notification_queue.unread_count}


@router.post("/notifications/clear")
async def clear_notifications() -> Dict[str, Any]:
    notification_queue.clear()
    return {"message": "notifications cleared"}


# --- Configuration ---

@router.get("/config/scoring")
def get_scoring_config() -> Dict[str, Any]:
    return {**config.get_severity_config(), **config.get_scoring_config()}


@router.put("/config/scoring")
def update_scoring_config(update: ScoringUpdate) -> Dict[str, Any]:
    """Override severity defaults and scoring weights until restart."""
    config.update_severity_defaults(
        alert_points=update.default_alert_points,
        alarm_points=update.default_alarm_points
    )
    config.update_scoring_weights(
        points_weight=update.safety_points_weight,
        count_weight=update.safety_count_weight,
        base_score=update.safety_score_base,
        license_points_start=update.license_points_start
    )
    return {**config.get_severity_config(), **config.get_scoring_config()}
