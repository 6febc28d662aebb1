from datetime import date
from typing import Any, Dict, List, Optional
import logging
import uuid

from sqlalchemy.orm import Session

from taxcore.crud import crud_rule, crud_calculation
from taxcore.exceptions.calculation_exceptions import CalculationErrorNotFoundException, NoApplicableRuleException
from taxcore.models.calculation import CalculationAudit, ErrorType
from taxcore.schema.calculation import (
    CalculateRequest, CalculateResponse, BreakdownItem, CalculationAuditResponse, CalculationErrorRecord
)
from taxcore.services.audit_service import audit_service
from taxcore.services.calculation.executor import CalculationExecutor, RuleSnapshot
from taxcore.services.registry_service import registry_service

logger = logging.getLogger(__name__)


def _response_from_audit(audit: CalculationAudit) -> CalculateResponse:
    result = {k: v for k, v in audit.result_data.items() if k != "breakdown"}
    return CalculateResponse(
        execution_id=audit.execution_id,
        result=result,
        breakdown=[BreakdownItem.model_validate(item) for item in audit.result_data.get("breakdown", [])],
        schema_version=audit.schema_version,
        rule_id=audit.rule_id,
        validated=audit.validated_rule
    )


class CalculationService:

    def calculate(self, db: Session, request: CalculateRequest) -> CalculateResponse:
        execution_id = request.execution_id or str(uuid.uuid4())

        # Replaying a finished execution returns the recorded result
        existing = crud_calculation.get_audit_by_execution(db, execution_id)
        if existing:
            logger.info(f"Execution {execution_id} already recorded; returning audit")
            return _response_from_audit(existing)

        on_date = request.target_date or date.today()
        rule = crud_rule.get_applicable_aggregated_rule(db, request.calculation_type, on_date)
        if rule is None:
            raise NoApplicableRuleException()

        snapshot = RuleSnapshot.from_rule(rule)
        input_data = request.input_data

        def attempt():
            executor = CalculationExecutor(snapshot, lookup=lambda term: registry_service.lookup(db, term))
            result = executor.run(input_data)
            audit = audit_service.record_success(
                db,
                execution_id=execution_id,
                calculation_type=snapshot.tax_type,
                rule_id=snapshot.rule_id,
                schema_version=snapshot.version,
                validated_rule=snapshot.validated,
                input_data=input_data,
                result=result,
                unit=snapshot.unit
            )
            return _response_from_audit(audit)

        response = audit_service.run_with_retry(
            db, execution_id, attempt,
            context={
                "calculation_type": snapshot.tax_type,
                "rule_id": snapshot.rule_id,
                "input_data": input_data,
            }
        )

        if not snapshot.validated:
            logger.info(f"Execution {execution_id} ran on unvalidated rule {snapshot.rule_id}")

        return response

    def get_history(
        self,
        db: Session,
        calculation_type: Optional[str] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[CalculationAuditResponse]:
        audits = crud_calculation.get_audits(db, calculation_type=calculation_type, skip=skip, limit=limit)
        return [CalculationAuditResponse.model_validate(a) for a in audits]

    def get_errors(
        self,
        db: Session,
        execution_id: Optional[str] = None,
        error_type: Optional[ErrorType] = None,
        unresolved_only: bool = False
    ) -> List[CalculationErrorRecord]:
        errors = crud_calculation.get_errors(
            db, execution_id=execution_id, error_type=error_type, unresolved_only=unresolved_only
        )
        return [CalculationErrorRecord.model_validate(e) for e in errors]

    def resolve_error(self, db: Session, error_id: str) -> CalculationErrorRecord:
        """Operator acknowledgement of a failed execution"""
        error = crud_calculation.get_error(db, error_id)
        if not error:
            raise CalculationErrorNotFoundException()

        error = crud_calculation.mark_error_resolved(db, error)
        logger.info(f"Calculation error {error.id} for execution {error.execution_id} marked resolved")

        return CalculationErrorRecord.model_validate(error)


calculation_service = CalculationService()
