from dataclasses import dataclass, fields, replace
from functools import cached_property
from typing import Dict, Iterable, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .schemas import (
    ALL_PARTNERS,
    ComplianceRule,
    Driver,
    Infraction,
    ObcKey,
    Partner,
    Record,
    SanctionConfig,
    TripReport,
    Vehicle,
)
from .severity import SeverityIndex


class ScopeFilter(BaseModel):
    """Partner/driver/year selection applied to every aggregation call."""

    model_config = ConfigDict(frozen=True)

    partner: str = ALL_PARTNERS
    driver: Optional[str] = None
    year: int = Field(ge=1900, le=9999)

    def matches_partner(self, partner_id: Optional[str]) -> bool:
        return self.partner == ALL_PARTNERS or partner_id == self.partner

    def matches_driver(self, driver_id: Optional[str]) -> bool:
        return not self.driver or driver_id == self.driver


@dataclass(frozen=True)
class ComplianceSnapshot:
    """Read-only view of the raw collections one screen aggregates over.

    Field names match the live store topic names. The severity index is built
    lazily, once per snapshot.
    """

    partners: Tuple[Partner, ...] = ()
    obc_keys: Tuple[ObcKey, ...] = ()
    drivers: Tuple[Driver, ...] = ()
    vehicles: Tuple[Vehicle, ...] = ()
    rules: Tuple[ComplianceRule, ...] = ()
    sanction_configs: Tuple[SanctionConfig, ...] = ()
    reports: Tuple[TripReport, ...] = ()
    infractions: Tuple[Infraction, ...] = ()

    @classmethod
    def topics(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    @classmethod
    def from_collections(cls, collections: Dict[str, Iterable[Record]]) -> "ComplianceSnapshot":
        """Build a snapshot from a topic -> records mapping; unknown topics are ignored."""
        known = set(cls.topics())
        return cls(**{
            topic: tuple(records)
            for topic, records in collections.items()
            if topic in known
        })

    def with_topic(self, topic: str, records: Iterable[Record]) -> "ComplianceSnapshot":
        """Return a new snapshot with one collection replaced."""
        if topic not in self.topics():
            return self
        return replace(self, **{topic: tuple(records)})

    @cached_property
    def index(self) -> SeverityIndex:
        return SeverityIndex(self.reports, self.rules, self.sanction_configs)

    @cached_property
    def drivers_by_id(self) -> Dict[str, Driver]:
        result: Dict[str, Driver] = {}
        for driver in self.drivers:
            result.setdefault(driver.id, driver)
        return result

    @cached_property
    def obc_keys_by_id(self) -> Dict[str, ObcKey]:
        result: Dict[str, ObcKey] = {}
        for key in self.obc_keys:
            result.setdefault(key.id, key)
        return result

    @cached_property
    def partners_by_id(self) -> Dict[str, Partner]:
        result: Dict[str, Partner] = {}
        for partner in self.partners:
            result.setdefault(partner.id, partner)
        return result
