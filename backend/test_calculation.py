"""
Calculation service and audit reporter tests
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from conftest import INCOME_TAX_BRACKETS, TARGET_DATE
from taxcore.crud import crud_calculation, crud_rule
from taxcore.exceptions.calculation_exceptions import (
    CalculationDatabaseException, CalculationErrorNotFoundException, CalculationOverflowException,
    NoApplicableRuleException, RuleValidationException, VariableMissingException
)
from taxcore.models.calculation import ErrorType
from taxcore.models.rule import RuleType
from taxcore.schema.calculation import CalculateRequest
from taxcore.services.aggregation import AggregationEngine
from taxcore.services.audit_service import AuditService
from taxcore.services.calculation_service import calculation_service
from taxcore.services.registry_service import registry_service


@pytest.fixture
def aggregated_rule(db, income_tax_evidence):
    run = AggregationEngine(db).run(RuleType.INCOME_TAX, TARGET_DATE)
    return run.aggregated_rule_id


def request(input_data, execution_id=None, target_date=TARGET_DATE):
    return CalculateRequest(
        calculation_type=RuleType.INCOME_TAX,
        input_data=input_data,
        target_date=target_date,
        execution_id=execution_id
    )


# =============================================================================
# CALCULATION
# =============================================================================

def test_calculation_applies_relief_then_brackets(db, aggregated_rule):
    response = calculation_service.calculate(db, request({"Gross Income": 2200000}))

    assert response.result["final_amount"] == "45000.00"
    assert response.result["result_variable"] == "income_tax_payable"
    assert response.result["unit"] == "LKR"
    assert response.result["variables"]["taxable_income"] == "1000000.00"
    assert response.rule_id == aggregated_rule
    assert response.schema_version == 1
    assert response.validated is False

    assert [item.kind for item in response.breakdown] == ["formula", "bracket", "bracket", "formula"]
    assert [item.amount for item in response.breakdown[1:3]] == [Decimal("15000.00"), Decimal("30000.00")]

    audit = crud_calculation.get_audit_by_execution(db, response.execution_id)
    assert audit.final_amount == Decimal("45000.00")
    assert audit.validated_rule is False
    assert audit.result_data["breakdown"][0]["variable"] == "taxable_income"


def test_income_below_relief_pays_nothing(db, aggregated_rule):
    response = calculation_service.calculate(db, request({"gross_income": 900000}))

    assert response.result["final_amount"] == "0.00"
    assert response.result["variables"]["taxable_income"] == "0.00"


def test_same_execution_id_is_recorded_once(db, aggregated_rule):
    first = calculation_service.calculate(db, request({"gross_income": 2200000}, execution_id="exec-1"))
    second = calculation_service.calculate(db, request({"gross_income": 9999999}, execution_id="exec-1"))

    assert second.result == first.result
    assert crud_calculation.count_audits(db, execution_id="exec-1") == 1


def test_deactivated_variable_fails_as_variable_missing(db, aggregated_rule):
    registry_service.deactivate_variable(db, "personal_relief", note="Replaced by a combined relief")

    with pytest.raises(VariableMissingException) as exc_info:
        calculation_service.calculate(db, request({"gross_income": 2200000}, execution_id="exec-2"))

    assert exc_info.value.failed_step == "resolve:taxable_income"

    errors = crud_calculation.get_errors(db, execution_id="exec-2")
    assert len(errors) == 1
    assert errors[0].error_type == ErrorType.VARIABLE_MISSING
    assert errors[0].retry_count == 0
    assert errors[0].rule_id == aggregated_rule
    assert crud_calculation.get_audit_by_execution(db, "exec-2") is None


def test_missing_input_fails_as_variable_missing(db, aggregated_rule):
    with pytest.raises(VariableMissingException) as exc_info:
        calculation_service.calculate(db, request({"salary": 100}, execution_id="exec-3"))

    assert exc_info.value.failed_step == "evaluate:taxable_income"
    assert exc_info.value.to_payload()["errorType"] == "variable_missing"
    assert crud_calculation.count_audits(db) == 0


def test_overflow_is_recorded(db, aggregated_rule):
    with pytest.raises(CalculationOverflowException):
        calculation_service.calculate(db, request({"gross_income": 10 ** 14}, execution_id="exec-4"))

    errors = calculation_service.get_errors(db, error_type=ErrorType.CALCULATION_OVERFLOW)
    assert [e.execution_id for e in errors] == ["exec-4"]


def test_no_applicable_rule(db, aggregated_rule):
    with pytest.raises(NoApplicableRuleException) as exc_info:
        calculation_service.calculate(db, request({"gross_income": 1}, target_date=date(2020, 1, 1)))

    assert exc_info.value.status_code == 404


def test_rule_that_failed_to_compile_is_never_calculated(db, standard_variables, make_evidence, make_variable):
    make_evidence(rule_data={
        "brackets": INCOME_TAX_BRACKETS,
        "inputs": ["gross_income"],
        "formulas": [{"output_variable": "Net Income", "expression": "gross_income - 100"}],
        "result_variable": "Net Income",
    })
    run = AggregationEngine(db).run(RuleType.INCOME_TAX, TARGET_DATE)
    assert run.error_type == "variable_missing"

    # Mapping the output later does not revive the formulas without a fresh aggregation
    make_variable("net_income")

    with pytest.raises(NoApplicableRuleException):
        calculation_service.calculate(db, request({"gross_income": 200}))

    rule = crud_rule.get_rule(db, run.aggregated_rule_id)
    rule.compile_error = None
    db.commit()

    with pytest.raises(RuleValidationException) as exc_info:
        calculation_service.calculate(db, request({"gross_income": 200}, execution_id="exec-invalid"))

    assert exc_info.value.failed_step == "compile"
    assert "not active" in exc_info.value.message
    assert crud_calculation.get_audit_by_execution(db, "exec-invalid") is None


def test_history_lists_audits(db, aggregated_rule):
    calculation_service.calculate(db, request({"gross_income": 2200000}))
    calculation_service.calculate(db, request({"gross_income": 3000000}))

    history = calculation_service.get_history(db, calculation_type="income_tax")

    assert len(history) == 2
    assert {h.final_amount for h in history} == {Decimal("45000.00"), Decimal("159000.00")}


# =============================================================================
# RETRY POLICY
# =============================================================================

class SleepRecorder:

    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)


def database_failure():
    raise OperationalError("SELECT 1", {}, Exception("database is locked"))


def test_database_errors_retry_with_exponential_backoff(db):
    sleep = SleepRecorder()
    service = AuditService(max_attempts=3, backoff_seconds=0.1, sleep=sleep)

    with pytest.raises(CalculationDatabaseException):
        service.run_with_retry(db, "exec-db", database_failure, context={"calculation_type": "income_tax"})

    assert sleep.delays == pytest.approx([0.1, 0.2])

    errors = crud_calculation.get_errors(db, execution_id="exec-db")
    assert len(errors) == 1
    assert errors[0].error_type == ErrorType.DATABASE_ERROR
    assert errors[0].retry_count == 2


def test_retry_recovers_after_transient_failure(db):
    sleep = SleepRecorder()
    service = AuditService(max_attempts=3, backoff_seconds=0.1, sleep=sleep)
    outcomes = [database_failure, lambda: "ok"]

    result = service.run_with_retry(db, "exec-flaky", lambda: outcomes.pop(0)())

    assert result == "ok"
    assert sleep.delays == [0.1]
    assert crud_calculation.get_errors(db, execution_id="exec-flaky") == []


def test_terminal_errors_are_not_retried(db):
    sleep = SleepRecorder()
    service = AuditService(max_attempts=3, backoff_seconds=0.1, sleep=sleep)

    def attempt():
        raise VariableMissingException("No value supplied for 'gross_income'", failed_step="evaluate:taxable_income")

    with pytest.raises(VariableMissingException):
        service.run_with_retry(db, "exec-terminal", attempt)

    assert sleep.delays == []
    errors = crud_calculation.get_errors(db, execution_id="exec-terminal")
    assert errors[0].retry_count == 0
    assert errors[0].failed_step == "evaluate:taxable_income"


def test_unexpected_errors_are_classified_as_unknown(db):
    service = AuditService(max_attempts=1, backoff_seconds=0, sleep=SleepRecorder())

    def attempt():
        raise KeyError("gross_income")

    with pytest.raises(Exception) as exc_info:
        service.run_with_retry(db, "exec-unknown", attempt)

    assert exc_info.value.error_type == ErrorType.UNKNOWN_ERROR
    assert isinstance(exc_info.value.__cause__, KeyError)


def test_operator_can_resolve_recorded_error(db, aggregated_rule):
    with pytest.raises(CalculationOverflowException):
        calculation_service.calculate(db, request({"gross_income": 10 ** 14}, execution_id="exec-5"))
    error = calculation_service.get_errors(db, execution_id="exec-5", unresolved_only=True)[0]

    resolved = calculation_service.resolve_error(db, error.id)

    assert resolved.resolved is True
    assert calculation_service.get_errors(db, unresolved_only=True) == []
    assert crud_calculation.count_unresolved_errors(db) == 0


def test_resolving_unknown_error_is_not_found(db):
    with pytest.raises(CalculationErrorNotFoundException):
        calculation_service.resolve_error(db, "missing")
