# Operator decisions on aggregation conflicts.
# A decision only takes effect in the aggregated rule after aggregation is re-run.

from datetime import date
from typing import List, Optional
import logging

from sqlalchemy.orm import Session

from taxcore.crud import crud_conflict
from taxcore.exceptions.aggregation_exceptions import ConflictNotFoundException, InvalidConflictTransitionException
from taxcore.models.conflict import ConflictStatus, ConflictAspect
from taxcore.models.rule import RuleType
from taxcore.schema.aggregation import ConflictResolveRequest, ConflictResponse

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    ConflictStatus.OPEN: {ConflictStatus.UNDER_REVIEW, ConflictStatus.RESOLVED, ConflictStatus.DISMISSED},
    ConflictStatus.UNDER_REVIEW: {ConflictStatus.RESOLVED, ConflictStatus.DISMISSED},
    ConflictStatus.RESOLVED: set(),
    ConflictStatus.DISMISSED: set(),
}


class ConflictService:

    def list_conflicts(
        self,
        db: Session,
        tax_type: Optional[RuleType] = None,
        target_date: Optional[date] = None,
        status: Optional[ConflictStatus] = None,
        aspect: Optional[ConflictAspect] = None
    ) -> List[ConflictResponse]:
        conflicts = crud_conflict.get_conflicts(db, tax_type=tax_type, target_date=target_date, status=status, aspect=aspect)
        return [ConflictResponse.model_validate(c) for c in conflicts]

    def resolve(self, db: Session, conflict_id: str, request: ConflictResolveRequest) -> ConflictResponse:
        conflict = crud_conflict.get_conflict(db, conflict_id)
        if not conflict:
            raise ConflictNotFoundException()

        target = ConflictStatus(request.status)
        if target not in ALLOWED_TRANSITIONS[conflict.status]:
            raise InvalidConflictTransitionException(
                detail=f"Cannot move conflict from {conflict.status} to {target}."
            )

        if target == ConflictStatus.RESOLVED:
            decision = request.details.get("decision")
            if not isinstance(decision, dict) or not ("value" in decision or decision.get("evidence_rule_id")):
                raise InvalidConflictTransitionException(
                    detail="Resolving a conflict needs details.decision with a value or an evidence_rule_id."
                )
            candidate_ids = {c.get("evidence_rule_id") for c in (conflict.details or {}).get("candidates", [])}
            if decision.get("evidence_rule_id") and decision["evidence_rule_id"] not in candidate_ids:
                raise InvalidConflictTransitionException(
                    detail="The chosen evidence rule is not one of the conflict's candidates."
                )

        conflict = crud_conflict.decide_conflict(db, conflict, target, request.details, decided_by=request.decided_by)
        logger.info(f"Conflict {conflict.id} on {conflict.aspect}:{conflict.subject} -> {target}")

        return ConflictResponse.model_validate(conflict)


conflict_service = ConflictService()
