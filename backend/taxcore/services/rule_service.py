"""
Rule Store Service

Evidence ingestion and read access to evidence and aggregated rules,
plus the admin summary.
"""

from typing import List, Optional
import logging

from sqlalchemy.orm import Session

from taxcore.crud import crud_rule, crud_conflict, crud_variable, crud_calculation
from taxcore.exceptions.rule_exceptions import RuleNotFoundException
from taxcore.models.rule import RuleType, SourceKind, ValidationStatus
from taxcore.models.variable import SynonymStatus
from taxcore.schema.aggregation import AdminSummary
from taxcore.schema.rule import (
    EvidenceRuleCreate, TaxRuleResponse, AggregatedRuleDetail, AggregatedRuleSourceResponse
)

logger = logging.getLogger(__name__)


class RuleService:

    def ingest_evidence(self, db: Session, rules: List[EvidenceRuleCreate]) -> List[TaxRuleResponse]:
        if len(rules) == 1:
            created = [crud_rule.create_evidence_rule(db, rules[0])]
        else:
            created = crud_rule.create_evidence_rules_batch(db, rules)

        logger.info(f"Ingested {len(created)} evidence rule(s)")
        return [TaxRuleResponse.model_validate(r) for r in created]

    def list_rules(
        self,
        db: Session,
        source_kind: Optional[SourceKind] = None,
        rule_type: Optional[RuleType] = None,
        validation_status: Optional[ValidationStatus] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[TaxRuleResponse]:
        rules = crud_rule.get_rules(
            db, source_kind=source_kind, rule_type=rule_type,
            validation_status=validation_status, skip=skip, limit=limit
        )
        return [TaxRuleResponse.model_validate(r) for r in rules]

    def get_rule_detail(self, db: Session, rule_id: str) -> AggregatedRuleDetail:
        rule = crud_rule.get_rule(db, rule_id)
        if not rule:
            raise RuleNotFoundException()

        detail = AggregatedRuleDetail.model_validate(rule)
        if not rule.is_evidence:
            detail.sources = [
                AggregatedRuleSourceResponse.model_validate(s) for s in crud_rule.get_sources_for_rule(db, rule.id)
            ]
        return detail

    def admin_summary(self, db: Session) -> AdminSummary:
        return AdminSummary(
            evidence_rules=crud_rule.count_rules(db, source_kind=SourceKind.EVIDENCE),
            aggregated_rules=crud_rule.count_rules(db, source_kind=SourceKind.AGGREGATED),
            active_rules=crud_rule.count_rules(db, source_kind=SourceKind.AGGREGATED, active_only=True),
            validated_rules=crud_rule.count_rules(
                db, source_kind=SourceKind.AGGREGATED, validation_status=ValidationStatus.VALIDATED
            ),
            open_conflicts=crud_conflict.count_unresolved(db),
            pending_synonyms=crud_variable.count_synonyms(db, status=SynonymStatus.PENDING),
            unresolved_calculation_errors=crud_calculation.count_unresolved_errors(db)
        )


rule_service = RuleService()
