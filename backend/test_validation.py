"""
Validation gate, fixture replay and activation tests
"""

from datetime import date

import pytest

from conftest import INCOME_TAX_BRACKETS, OVERLAPPING_BRACKETS, TARGET_DATE
from taxcore.crud import crud_calculation, crud_rule
from taxcore.exceptions.rule_exceptions import (
    EvidenceImmutableException, FixtureAlreadyExistsException, FixtureNotFoundException,
    InvalidStatusTransitionException, ValidationBlockedException
)
from taxcore.models.rule import RuleType, ValidationStatus
from taxcore.schema.rule import RuleTestCaseCreate
from taxcore.services.aggregation import AggregationEngine
from taxcore.services.validation_service import validation_service


def aggregate(db, target_date=TARGET_DATE):
    return AggregationEngine(db).run(RuleType.INCOME_TAX, target_date).aggregated_rule_id


def fixture(name, gross_income, final_amount, **extra):
    return RuleTestCaseCreate(
        test_name=name,
        input_data={"gross_income": gross_income},
        expected_output={"final_amount": final_amount, **extra}
    )


@pytest.fixture
def rule_id(db, income_tax_evidence):
    return aggregate(db)


def test_passing_fixtures_validate_rule(db, rule_id):
    validation_service.add_test_case(db, rule_id, fixture("worked example", 2200000, "45000.00"))
    validation_service.add_test_case(db, rule_id, fixture(
        "relief only", 1000000, "0", variables={"Taxable Income": "0.00"}
    ))

    report = validation_service.transition(db, rule_id, ValidationStatus.VALIDATED)

    assert report.passed
    assert report.status == ValidationStatus.VALIDATED
    assert [r.test_name for r in report.results] == ["relief only", "worked example"]
    assert crud_rule.get_rule(db, rule_id).validated_at is not None


def test_failing_fixture_blocks_validation(db, rule_id):
    validation_service.add_test_case(db, rule_id, fixture("worked example", 2200000, "45000.00"))
    validation_service.add_test_case(db, rule_id, fixture("wrong expectation", 2200000, "46000.00"))

    with pytest.raises(ValidationBlockedException) as exc_info:
        validation_service.transition(db, rule_id, ValidationStatus.VALIDATED)

    detail = exc_info.value.detail
    assert detail["passed"] is False
    assert any("wrong expectation" in blocker for blocker in detail["blockers"])
    failing = [r for r in detail["results"] if not r["passed"]]
    assert [r["test_name"] for r in failing] == ["wrong expectation"]
    assert crud_rule.get_rule(db, rule_id).validation_status == ValidationStatus.PENDING


def test_fixture_replay_writes_no_audits(db, rule_id):
    validation_service.add_test_case(db, rule_id, fixture("worked example", 2200000, "45000.00"))

    report = validation_service.run_fixtures(db, rule_id)

    assert report.passed
    assert report.results[0].actual["final_amount"] == "45000.00"
    assert crud_calculation.count_audits(db) == 0


def test_fixture_with_calculation_error_fails(db, rule_id):
    validation_service.add_test_case(db, rule_id, RuleTestCaseCreate(
        test_name="missing input",
        input_data={"salary": 1},
        expected_output={"final_amount": "0"}
    ))

    report = validation_service.run_fixtures(db, rule_id)

    assert not report.passed
    assert report.results[0].message.startswith("variable_missing")


def test_open_conflicts_block_validation(db, income_tax_evidence, make_evidence):
    make_evidence(rule_data={"brackets": [
        {**INCOME_TAX_BRACKETS[0]},
        {**INCOME_TAX_BRACKETS[1], "rate": 8},
        {**INCOME_TAX_BRACKETS[2], "fixed_amount": 20000},
        {**INCOME_TAX_BRACKETS[3], "fixed_amount": 110000},
    ]})
    rule_id = aggregate(db)

    with pytest.raises(ValidationBlockedException) as exc_info:
        validation_service.transition(db, rule_id, ValidationStatus.VALIDATED)

    blockers = exc_info.value.detail["blockers"]
    assert any("unresolved conflict" in b for b in blockers)
    assert any("brackets" in b for b in blockers)


def test_invalid_transitions_are_rejected(db, rule_id):
    validation_service.transition(db, rule_id, ValidationStatus.DEPRECATED)

    with pytest.raises(InvalidStatusTransitionException):
        validation_service.transition(db, rule_id, ValidationStatus.PENDING)


def test_failed_rule_can_return_to_pending(db, rule_id):
    validation_service.transition(db, rule_id, ValidationStatus.FAILED)
    report = validation_service.transition(db, rule_id, ValidationStatus.PENDING)

    assert report.status == ValidationStatus.PENDING


def test_content_change_resets_validation(db, rule_id, make_variable, make_evidence):
    validation_service.transition(db, rule_id, ValidationStatus.VALIDATED)

    make_variable("pension_contribution", "Pension contribution")
    make_evidence(rule_category="deduction", rule_data={"variable": "Pension Contribution", "value": 50000})
    aggregate(db)

    rule = crud_rule.get_rule(db, rule_id)
    assert rule.validation_status == ValidationStatus.PENDING
    assert rule.version == 2


def test_duplicate_fixture_name_is_rejected(db, rule_id):
    validation_service.add_test_case(db, rule_id, fixture("worked example", 2200000, "45000.00"))

    with pytest.raises(FixtureAlreadyExistsException):
        validation_service.add_test_case(db, rule_id, fixture("worked example", 1, "0"))

    assert len(validation_service.list_test_cases(db, rule_id)) == 1


# =============================================================================
# ACTIVATION
# =============================================================================

def test_activation_keeps_one_active_rule_per_tax_type(db, rule_id):
    later_id = aggregate(db, date(2025, 4, 1))

    validation_service.activate_rule(db, rule_id)
    response = validation_service.activate_rule(db, later_id)

    assert response.is_active
    assert crud_rule.get_rule(db, rule_id).is_active is False
    assert [r.id for r in crud_rule.get_active_rules_for_type(db, RuleType.INCOME_TAX)] == [later_id]


def test_evidence_rules_cannot_be_activated(db, income_tax_evidence):
    table, _ = income_tax_evidence

    with pytest.raises(EvidenceImmutableException):
        validation_service.activate_rule(db, table.id)


def test_deprecated_rule_cannot_be_activated(db, rule_id):
    validation_service.transition(db, rule_id, ValidationStatus.DEPRECATED)

    with pytest.raises(InvalidStatusTransitionException):
        validation_service.activate_rule(db, rule_id)


def test_test_case_removal_is_scoped_to_rule(db, rule_id, make_evidence):
    created = validation_service.add_test_case(db, rule_id, fixture("worked example", 2200000, "45000.00"))
    table = make_evidence()

    with pytest.raises(FixtureNotFoundException):
        validation_service.remove_test_case(db, table.id, created.id)

    validation_service.remove_test_case(db, rule_id, created.id)

    assert validation_service.list_test_cases(db, rule_id) == []


def test_rule_that_failed_to_compile_cannot_be_validated_or_activated(db, standard_variables, make_evidence):
    make_evidence(rule_data={"brackets": OVERLAPPING_BRACKETS, "inputs": ["taxable_income"]})
    rule_id = aggregate(db)

    with pytest.raises(ValidationBlockedException) as exc_info:
        validation_service.transition(db, rule_id, ValidationStatus.VALIDATED)

    assert any("failed to compile" in b for b in exc_info.value.detail["blockers"])
    assert crud_rule.get_rule(db, rule_id).validation_status == ValidationStatus.PENDING

    with pytest.raises(InvalidStatusTransitionException):
        validation_service.activate_rule(db, rule_id)
    assert crud_rule.get_rule(db, rule_id).is_active is False
