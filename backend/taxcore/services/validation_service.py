"""
Validation & Test Harness

Owns the validation_status state machine of tax rules:

    pending   -> validated | failed | deprecated
    validated -> deprecated
    failed    -> pending

A transition to validated on an aggregated rule is gated: open conflicts
for the rule's key block it, and every RuleTestCase fixture is replayed
against the rule's current brackets and formulas. Fixture replay runs in
memory and never writes audit rows.

Also owns activation: exactly one aggregated rule per tax type is active.
"""

from decimal import Decimal, DecimalException
from typing import Any, Dict, List
import logging

from sqlalchemy.orm import Session

from taxcore.core.config import settings
from taxcore.crud import crud_rule, crud_conflict, crud_rule_test_case
from taxcore.exceptions.calculation_exceptions import CalculationException
from taxcore.exceptions.rule_exceptions import (
    RuleNotFoundException, InvalidStatusTransitionException, ValidationBlockedException, EvidenceImmutableException,
    FixtureNotFoundException
)
from taxcore.models.rule import TaxRule, ValidationStatus
from taxcore.models.rule_test_case import RuleTestCase
from taxcore.schema.rule import (
    FixtureResult, ValidationReport, RuleTestCaseCreate, RuleTestCaseResponse, TaxRuleResponse
)
from taxcore.services.calculation.executor import CalculationExecutor, RuleSnapshot, to_currency
from taxcore.services.registry_service import registry_service

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    ValidationStatus.PENDING: {ValidationStatus.VALIDATED, ValidationStatus.FAILED, ValidationStatus.DEPRECATED},
    ValidationStatus.VALIDATED: {ValidationStatus.DEPRECATED},
    ValidationStatus.FAILED: {ValidationStatus.PENDING},
    ValidationStatus.DEPRECATED: set(),
}


def _close_enough(expected: Any, actual: Decimal, tolerance: Decimal) -> bool:
    try:
        return abs(Decimal(str(expected)) - actual) <= tolerance
    except DecimalException:
        return False


class ValidationService:

    def _get_rule(self, db: Session, rule_id: str) -> TaxRule:
        rule = crud_rule.get_rule(db, rule_id)
        if not rule:
            raise RuleNotFoundException()
        return rule

    # =========================================================================
    # FIXTURE REPLAY
    # =========================================================================

    def _replay(self, db: Session, snapshot: RuleSnapshot, test_case: RuleTestCase) -> FixtureResult:
        tolerance = Decimal(str(test_case.tolerance if test_case.tolerance is not None else "0.01"))
        expected = test_case.expected_output or {}

        executor = CalculationExecutor(snapshot, lookup=lambda term: registry_service.lookup(db, term))
        try:
            result = executor.run(test_case.input_data)
        except CalculationException as e:
            return FixtureResult(
                test_name=test_case.test_name,
                passed=False,
                expected=expected,
                message=f"{e.error_type}: {e.message}"
            )

        actual: Dict[str, Any] = {
            "final_amount": str(result.final_amount),
            "variables": {k: str(to_currency(v)) for k, v in result.variables.items()},
        }
        mismatches: List[str] = []

        if "final_amount" in expected and not _close_enough(expected["final_amount"], result.final_amount, tolerance):
            mismatches.append(f"final_amount expected {expected['final_amount']}, got {result.final_amount}")

        for term, wanted in (expected.get("variables") or {}).items():
            key = registry_service.lookup(db, term) or term
            if key not in result.variables:
                mismatches.append(f"{term} was not computed")
            elif not _close_enough(wanted, result.variables[key], tolerance):
                mismatches.append(f"{term} expected {wanted}, got {to_currency(result.variables[key])}")

        return FixtureResult(
            test_name=test_case.test_name,
            passed=not mismatches,
            expected=expected,
            actual=actual,
            message="; ".join(mismatches) or None
        )

    def run_fixtures(self, db: Session, rule_id: str) -> ValidationReport:
        """Replay every fixture and collect blockers without changing the rule"""
        rule = self._get_rule(db, rule_id)
        snapshot = RuleSnapshot.from_rule(rule)
        test_cases = crud_rule_test_case.get_test_cases(db, rule.id)

        blockers = []
        if not rule.is_evidence:
            open_conflicts = crud_conflict.count_unresolved(db, rule.rule_type, rule.effective_date)
            if open_conflicts:
                blockers.append(f"{open_conflicts} unresolved conflict(s) for {rule.rule_type}@{rule.effective_date}")
            if rule.pending_aspects:
                blockers.append(f"Aspects pending aggregation: {', '.join(rule.pending_aspects)}")
            if rule.compile_error:
                blockers.append(f"Rule failed to compile: {rule.compile_error}")

        if not test_cases:
            if settings.REQUIRE_TEST_CASES_FOR_VALIDATION:
                blockers.append("Rule has no test cases")
            else:
                logger.warning(f"Rule {rule.id} has no test cases; validating without regression fixtures")

        results = [self._replay(db, snapshot, tc) for tc in test_cases]
        failed = [r.test_name for r in results if not r.passed]
        if failed:
            blockers.append(f"Failing test cases: {', '.join(failed)}")

        return ValidationReport(
            rule_id=rule.id,
            status=rule.validation_status,
            passed=not blockers,
            results=results,
            blockers=blockers
        )

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    def transition(self, db: Session, rule_id: str, status: ValidationStatus) -> ValidationReport:
        rule = self._get_rule(db, rule_id)

        if status not in ALLOWED_TRANSITIONS[rule.validation_status]:
            raise InvalidStatusTransitionException(
                detail=f"Cannot move rule from {rule.validation_status} to {status}."
            )

        report = ValidationReport(rule_id=rule.id, status=rule.validation_status, passed=True)

        if status == ValidationStatus.VALIDATED and not rule.is_evidence:
            report = self.run_fixtures(db, rule_id)
            if not report.passed:
                logger.warning(f"Validation of rule {rule.id} blocked: {'; '.join(report.blockers)}")
                raise ValidationBlockedException(detail=report.model_dump(mode="json"))

        rule = crud_rule.update_validation_status(db, rule, status)
        logger.info(f"Rule {rule.id} moved to {status}")

        report.status = rule.validation_status
        return report

    # =========================================================================
    # ACTIVATION
    # =========================================================================

    def activate_rule(self, db: Session, rule_id: str) -> TaxRuleResponse:
        """Make this the single active aggregated rule of its tax type"""
        rule = self._get_rule(db, rule_id)

        if rule.is_evidence:
            raise EvidenceImmutableException(detail="Only aggregated rules can be activated.")
        if rule.validation_status in (ValidationStatus.FAILED, ValidationStatus.DEPRECATED):
            raise InvalidStatusTransitionException(
                detail=f"A {rule.validation_status} rule cannot be activated."
            )
        if rule.compile_error:
            raise InvalidStatusTransitionException(
                detail=f"Rule failed to compile and cannot be activated: {rule.compile_error}"
            )

        others = crud_rule.get_active_rules_for_type(db, rule.rule_type)
        rule = crud_rule.set_active_flags(db, rule, others)
        logger.info(f"Rule {rule.id} is now the active {rule.rule_type} rule")

        return TaxRuleResponse.model_validate(rule)

    # =========================================================================
    # TEST CASES
    # =========================================================================

    def add_test_case(self, db: Session, rule_id: str, data: RuleTestCaseCreate) -> RuleTestCaseResponse:
        rule = self._get_rule(db, rule_id)
        test_case = crud_rule_test_case.create_test_case(db, rule.id, data)
        return RuleTestCaseResponse.model_validate(test_case)

    def list_test_cases(self, db: Session, rule_id: str) -> List[RuleTestCaseResponse]:
        rule = self._get_rule(db, rule_id)
        return [RuleTestCaseResponse.model_validate(tc) for tc in crud_rule_test_case.get_test_cases(db, rule.id)]

    def remove_test_case(self, db: Session, rule_id: str, test_case_id: str) -> None:
        rule = self._get_rule(db, rule_id)
        test_case = crud_rule_test_case.get_test_case(db, test_case_id)
        if not test_case or test_case.rule_id != rule.id:
            raise FixtureNotFoundException()

        test_name = test_case.test_name
        crud_rule_test_case.delete_test_case(db, test_case)
        logger.info(f"Test case {test_name} removed from rule {rule.id}")


validation_service = ValidationService()
