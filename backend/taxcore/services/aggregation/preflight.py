# Read-only readiness check for a (tax_type, target_date) key.

from datetime import date
import logging

from sqlalchemy.orm import Session

from taxcore.crud import crud_rule, crud_aggregation_run
from taxcore.models.aggregation_run import PreflightRun
from taxcore.models.rule import RuleType

logger = logging.getLogger(__name__)


def run_preflight(db: Session, tax_type: RuleType, target_date: date) -> PreflightRun:
    """Count what aggregation would see and list anything that blocks it"""
    evidence_count = crud_rule.count_evidence_for_key(db, tax_type, target_date)
    aggregated_count = crud_rule.count_aggregated_for_type(db, tax_type)

    blockers = []
    if evidence_count == 0:
        blockers.append(f"No evidence rules in force for {tax_type} on {target_date.isoformat()}")

    active_run = crud_aggregation_run.get_active_run(db, tax_type, target_date)
    if active_run:
        blockers.append(f"Aggregation run {active_run.id} is {active_run.status}")

    preflight = crud_aggregation_run.create_preflight_run(
        db, tax_type, target_date,
        evidence_rules_count=evidence_count,
        aggregated_rules_count=aggregated_count,
        blockers=blockers
    )

    if blockers:
        logger.info(f"Preflight {tax_type}@{target_date} blocked: {'; '.join(blockers)}")

    return preflight
