"""Record types exchanged between the store, the synchronizer and the aggregation engine."""
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

ALL_PARTNERS = "all"


class Classification(str, Enum):
    """Severity class of an infraction or a sanction configuration."""

    ALERT = "Alert"
    ALARM = "Alarm"


class Record(BaseModel):
    """Base for snapshot records. Instances are immutable."""

    model_config = ConfigDict(frozen=True)

    id: str


class Partner(Record):
    name: str
    active: bool = True


class ObcKey(Record):
    partner_id: str
    key: str


class Driver(Record):
    last_name: str
    first_name: str = ""
    license_number: str = ""
    license_category: str = ""
    workplace: str = ""
    obc_key_ids: Tuple[str, ...] = ()
    current_vehicle_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Vehicle(Record):
    partner_id: str
    name: str
    registration: str = ""


class ComplianceRule(Record):
    partner_id: str
    title: str
    description: str = ""


class SanctionConfig(Record):
    partner_id: str
    rule_id: str
    classification: Classification
    sanction: str = ""
    points: int = Field(default=0, ge=0)


class TripReport(Record):
    date: str
    partner_id: str
    driver_id: str
    vehicle_id: Optional[str] = None
    rule_id: Optional[str] = None
    start_time: str = ""
    end_time: str = ""
    driving_duration: str = ""
    waiting_duration: str = ""
    total_duration: str = ""
    idle_duration: str = ""
    distance_km: float = 0.0
    average_speed: float = 0.0
    max_speed: float = 0.0


class Infraction(Record):
    partner_id: str
    date: str
    report_id: Optional[str] = None
    # Free text in practice; only the exact value "Alarm" resolves to an alarm.
    declared_classification: Optional[str] = None
    count: int = 1
    disciplinary_action: str = ""
    secondary_action: Optional[str] = None
    reviewed: bool = False
    improvement: bool = False
    review_date: Optional[str] = None


class Message(Record):
    sender_id: str
    receiver_id: str
    content: str
    timestamp: str = ""
    read: bool = False


class Severity(BaseModel):
    """Resolved classification and point cost of one infraction."""

    model_config = ConfigDict(frozen=True)

    classification: Classification
    points: int


# Topic name -> record type served by the live store
TOPIC_RECORDS = {
    "partners": Partner,
    "obc_keys": ObcKey,
    "drivers": Driver,
    "vehicles": Vehicle,
    "rules": ComplianceRule,
    "sanction_configs": SanctionConfig,
    "reports": TripReport,
    "infractions": Infraction,
    "messages": Message,
}
