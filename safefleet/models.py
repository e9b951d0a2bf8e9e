from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, Text, JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

class StoredRecord:
    """Columns shared by every collection. ``seq`` fixes stored order."""
    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

class Partner(StoredRecord, Base):
    __tablename__ = "partners"
    name = Column(String(255), nullable=False)
    active = Column(Boolean, default=True)

class ObcKey(StoredRecord, Base):
    __tablename__ = "obc_keys"
    partner_id = Column(String(64), index=True)
    key = Column(String(128), nullable=False)

class Driver(StoredRecord, Base):
    __tablename__ = "drivers"
    last_name = Column(String(255), nullable=False)
    first_name = Column(String(255))
    license_number = Column(String(64))
    license_category = Column(String(32))
    workplace = Column(String(255))
    obc_key_ids = Column(JSON)
    current_vehicle_id = Column(String(64))

class Vehicle(StoredRecord, Base):
    __tablename__ = "vehicles"
    partner_id = Column(String(64), index=True)
    name = Column(String(255), nullable=False)
    registration = Column(String(64))

class ComplianceRule(StoredRecord, Base):
    __tablename__ = "rules"
    partner_id = Column(String(64), index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)

class SanctionConfig(StoredRecord, Base):
    __tablename__ = "sanction_configs"
    partner_id = Column(String(64), index=True)
    rule_id = Column(String(64), index=True)
    classification = Column(String(16))
    sanction = Column(String(255))
    points = Column(Integer)

class TripReport(StoredRecord, Base):
    __tablename__ = "reports"
    date = Column(String(32), nullable=False)
    partner_id = Column(String(64), index=True)
    driver_id = Column(String(64), index=True)
    vehicle_id = Column(String(64))
    rule_id = Column(String(64))
    start_time = Column(String(16))
    end_time = Column(String(16))
    driving_duration = Column(String(16))
    waiting_duration = Column(String(16))
    total_duration = Column(String(16))
    idle_duration = Column(String(16))
    distance_km = Column(Float)
    average_speed = Column(Float)
    max_speed = Column(Float)

class Infraction(StoredRecord, Base):
    __tablename__ = "infractions"
    partner_id = Column(String(64), index=True)
    date = Column(String(32), nullable=False)
    report_id = Column(String(64), index=True)
    declared_classification = Column(String(64))
    count = Column(Integer)
    disciplinary_action = Column(String(255))
    secondary_action = Column(String(255))
    reviewed = Column(Boolean, default=False)
    improvement = Column(Boolean, default=False)
    review_date = Column(String(32))

class Message(StoredRecord, Base):
    __tablename__ = "messages"
    sender_id = Column(String(64))
    receiver_id = Column(String(64), index=True)
    content = Column(Text)
    timestamp = Column(String(32))
    read = Column(Boolean, default=False)
