import uuid
from typing import Any, Dict, List, Optional, Tuple, Type
from sqlalchemy import func
from sqlalchemy.orm import Session
from . import models
from .schemas import TOPIC_RECORDS, Record

# Topic name -> ORM model
TOPIC_MODELS: Dict[str, Type[models.StoredRecord]] = {
    "partners": models.Partner,
    "obc_keys": models.ObcKey,
    "drivers": models.Driver,
    "vehicles": models.Vehicle,
    "rules": models.ComplianceRule,
    "sanction_configs": models.SanctionConfig,
    "reports": models.TripReport,
    "infractions": models.Infraction,
    "messages": models.Message,
}

class UnknownTopicError(KeyError):
    """Raised for a collection name the store does not serve."""

class RecordNotFoundError(LookupError):
    """Raised when updating or deleting an id that does not exist."""

def resolve_topic(topic: str) -> Tuple[Type[models.StoredRecord], Type[Record]]:
    """Return the ORM model and record type for a topic."""
    if topic not in TOPIC_MODELS:
        raise UnknownTopicError(topic)
    return TOPIC_MODELS[topic], TOPIC_RECORDS[topic]

def to_record(topic: str, row: models.StoredRecord) -> Record:
    """Convert an ORM row into its immutable record."""
    _, record_type = resolve_topic(topic)
    data = {}
    for name in record_type.model_fields:
        value = getattr(row, name, None)
        if value is not None:
            data[name] = value
    return record_type.model_validate(data)

def _row_values(record: Record) -> Dict[str, Any]:
    return record.model_dump(mode="json")

def list_records(db: Session, topic: str) -> List[Record]:
    """Full collection in stored order."""
    model, _ = resolve_topic(topic)
    rows = db.query(model).order_by(model.seq).all()
    return [to_record(topic, row) for row in rows]

def count_records(db: Session, topic: str) -> int:
    model, _ = resolve_topic(topic)
    return db.query(func.count(model.seq)).scalar() or 0

def _get_row(db: Session, topic: str, record_id: str) -> Optional[models.StoredRecord]:
    model, _ = resolve_topic(topic)
    return db.query(model).filter(model.id == record_id).first()

def get_record(db: Session, topic: str, record_id: str) -> Optional[Record]:
    row = _get_row(db, topic, record_id)
    return to_record(topic, row) if row else None

def create_record(db: Session, topic: str, data: Dict[str, Any]) -> Record:
    """Validate and insert a record; an id is generated when missing."""
    model, record_type = resolve_topic(topic)
    payload = dict(data)
    if not payload.get("id"):
        payload["id"] = uuid.uuid4().hex
    record = record_type.model_validate(payload)

    row = model(**_row_values(record))
    db.add(row)
    db.commit()
    db.refresh(row)
    return to_record(topic, row)

def update_record(db: Session, topic: str, record_id: str, changes: Dict[str, Any]) -> Record:
    """Apply a partial update and return the new record."""
    _, record_type = resolve_topic(topic)
    row = _get_row(db, topic, record_id)
    if row is None:
        raise RecordNotFoundError(f"{topic}/{record_id}")

    current = to_record(topic, row).model_dump()
    current.update({k: v for k, v in changes.items() if k != "id"})
    record = record_type.model_validate(current)

    for name, value in _row_values(record).items():
        setattr(row, name, value)
    db.commit()
    db.refresh(row)
    return to_record(topic, row)

def delete_record(db: Session, topic: str, record_id: str) -> Record:
    """Delete a record and return what was removed."""
    row = _get_row(db, topic, record_id)
    if row is None:
        raise RecordNotFoundError(f"{topic}/{record_id}")

    record = to_record(topic, row)
    db.delete(row)
    db.commit()
    return record
