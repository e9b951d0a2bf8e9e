import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import config
from .schemas import (
    ALL_PARTNERS,
    Classification,
    ComplianceRule,
    Infraction,
    SanctionConfig,
    Severity,
    TripReport,
)

logger = logging.getLogger(__name__)

# (rule_id, classification, partner_id or "all")
ConfigKey = Tuple[str, Classification, str]


def classify(declared: Optional[str]) -> Classification:
    """Map a declared classification string to Alert/Alarm."""
    if declared == Classification.ALARM.value:
        return Classification.ALARM
    return Classification.ALERT


def default_points(classification: Classification) -> int:
    """Hard-coded point cost used when no sanction configuration applies."""
    if classification == Classification.ALARM:
        return config.default_alarm_points
    return config.default_alert_points


def config_key(sanction: SanctionConfig) -> ConfigKey:
    return (sanction.rule_id, sanction.classification, sanction.partner_id)


def find_duplicate_sanction_configs(configs: Iterable[SanctionConfig]) -> List[Dict]:
    """Report sanction configuration keys that appear more than once.

    The first id of each entry is the one the resolver uses.
    """
    seen: Dict[ConfigKey, List[str]] = {}
    for sanction in configs:
        seen.setdefault(config_key(sanction), []).append(sanction.id)

    return [
        {
            "rule_id": rule_id,
            "classification": classification.value,
            "partner_id": partner_id,
            "config_ids": ids,
            "effective_config_id": ids[0],
        }
        for (rule_id, classification, partner_id), ids in seen.items()
        if len(ids) > 1
    ]


class SeverityIndex:
    """Id lookups and the sanction table, built once per snapshot."""

    def __init__(
        self,
        reports: Sequence[TripReport],
        rules: Sequence[ComplianceRule],
        configs: Sequence[SanctionConfig],
    ):
        self.reports_by_id: Dict[str, TripReport] = {}
        for report in reports:
            self.reports_by_id.setdefault(report.id, report)

        self.rules_by_id: Dict[str, ComplianceRule] = {}
        for rule in rules:
            self.rules_by_id.setdefault(rule.id, rule)

        # First match in stored order wins for duplicated keys
        self.configs_by_key: Dict[ConfigKey, SanctionConfig] = {}
        duplicates = 0
        for sanction in configs:
            key = config_key(sanction)
            if key in self.configs_by_key:
                duplicates += 1
                continue
            self.configs_by_key[key] = sanction

        if duplicates:
            logger.warning(
                "Found %d duplicate sanction configuration(s); the first stored row is used for each key",
                duplicates
            )

    def report_for(self, infraction: Infraction) -> Optional[TripReport]:
        if not infraction.report_id:
            return None
        return self.reports_by_id.get(infraction.report_id)

    def rule_for(self, report: Optional[TripReport]) -> Optional[ComplianceRule]:
        if report is None or not report.rule_id:
            return None
        return self.rules_by_id.get(report.rule_id)

    def resolve(self, infraction: Infraction) -> Severity:
        """Resolve classification and points: partner config, then global config, then default."""
        classification = classify(infraction.declared_classification)
        fallback = Severity(classification=classification, points=default_points(classification))

        report = self.report_for(infraction)
        if report is None or not report.rule_id:
            return fallback

        sanction = self.configs_by_key.get((report.rule_id, classification, infraction.partner_id))
        if sanction is None:
            sanction = self.configs_by_key.get((report.rule_id, classification, ALL_PARTNERS))
        if sanction is None:
            return fallback

        return Severity(classification=classification, points=sanction.points)


def resolve_severity(
    infraction: Infraction,
    reports: Sequence[TripReport],
    rules: Sequence[ComplianceRule],
    configs: Sequence[SanctionConfig],
) -> Severity:
    """Resolve the severity of one infraction against raw collections.

    Never raises: missing reports, rules or configurations fall back to the
    default points of the declared classification.
    """
    return SeverityIndex(reports, rules, configs).resolve(infraction)
