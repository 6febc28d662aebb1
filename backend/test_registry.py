"""
Canonical Variable Registry tests

Covers term normalization, resolve/lookup, synonym merging and the
approve/reject decision path.
"""

import pytest

from taxcore.crud import crud_variable
from taxcore.exceptions.registry_exceptions import (
    SynonymAlreadyDecidedException, VariableInactiveException, VariableNotFoundException
)
from taxcore.models.variable import SynonymStatus
from taxcore.schema.variable import SynonymProposal
from taxcore.services.registry_service import Unmapped, normalize_term, registry_service


def test_normalize_term():
    assert normalize_term("Gross Income") == "gross_income"
    assert normalize_term("  Gross  income (LKR) ") == "gross_income_lkr"
    assert normalize_term("tax-free-allowance") == "tax_free_allowance"
    assert normalize_term("---") == ""


def test_resolve_returns_active_key(db, make_variable):
    make_variable("gross_income")

    assert registry_service.resolve(db, "Gross Income") == "gross_income"
    assert registry_service.lookup(db, "GROSS_INCOME") == "gross_income"
    assert crud_variable.count_synonyms(db) == 0, "Known keys must not create synonyms"


def test_unmapped_term_registers_single_pending_synonym(db):
    first = registry_service.resolve(db, "Employment Income")
    second = registry_service.resolve(db, "employment  income")

    assert isinstance(first, Unmapped)
    assert first.normalized_term == "employment_income"
    assert first.synonym_id == second.synonym_id, "Same normalized term must merge"

    synonym = crud_variable.get_synonym(db, first.synonym_id)
    assert synonym.status == SynonymStatus.PENDING
    assert synonym.occurrences == 2
    assert crud_variable.count_synonyms(db) == 1


def test_lookup_never_writes(db):
    assert registry_service.lookup(db, "Unknown Term") is None
    assert crud_variable.count_synonyms(db) == 0


def test_approve_binds_term_to_variable(db, make_variable):
    variable = make_variable("gross_income")
    pending = registry_service.resolve(db, "Total Earnings")

    synonym = registry_service.approve_synonym(db, pending.synonym_id, variable.id, decided_by="reviewer")

    assert synonym.status == SynonymStatus.APPROVED
    assert synonym.decided_by == "reviewer"
    assert synonym.decided_at is not None
    assert registry_service.resolve(db, "Total Earnings") == "gross_income"
    assert registry_service.lookup(db, "total earnings") == "gross_income"


def test_decided_synonym_cannot_be_decided_again(db, make_variable):
    variable = make_variable("gross_income")
    pending = registry_service.resolve(db, "Salary")
    registry_service.reject_synonym(db, pending.synonym_id, decided_by="reviewer", note="too vague")

    with pytest.raises(SynonymAlreadyDecidedException):
        registry_service.approve_synonym(db, pending.synonym_id, variable.id, decided_by="reviewer")

    assert registry_service.lookup(db, "Salary") is None


def test_approve_rejects_inactive_variable(db, make_variable):
    make_variable("old_relief")
    variable = registry_service.deactivate_variable(db, "old_relief", note="repealed")
    pending = registry_service.resolve(db, "Relief")

    with pytest.raises(VariableInactiveException):
        registry_service.approve_synonym(db, pending.synonym_id, variable.id, decided_by="reviewer")


def test_propose_synonyms_merges_and_keeps_best_suggestion(db):
    batch = [
        SynonymProposal(term="Assessable Income", suggested_variable_key="gross_income", confidence=0.6),
        SynonymProposal(term="assessable income", suggested_variable_key="taxable_income", confidence=0.9),
        SynonymProposal(term="Assessable-Income", suggested_variable_key="other_income", confidence=0.2),
    ]

    result = registry_service.propose_synonyms(db, batch)

    assert result.created == 1
    assert result.merged == 2
    synonym = crud_variable.get_synonym_by_normalized_term(db, "assessable_income")
    assert synonym.occurrences == 3
    assert synonym.suggested_key == "taxable_income", "Higher confidence replaces the suggestion"
    assert synonym.confidence == pytest.approx(0.9)


def test_proposal_for_rejected_term_stays_rejected(db):
    pending = registry_service.resolve(db, "Bonus Pool")
    registry_service.reject_synonym(db, pending.synonym_id, decided_by="reviewer")

    result = registry_service.propose_synonyms(
        db, [SynonymProposal(term="Bonus Pool", suggested_variable_key="gross_income", confidence=0.99)]
    )

    assert result.merged == 1
    synonym = crud_variable.get_synonym(db, pending.synonym_id)
    assert synonym.status == SynonymStatus.REJECTED
    assert synonym.suggested_key is None


def test_deactivation_keeps_row_and_unmaps_key(db, make_variable):
    make_variable("personal_relief")
    make_variable("personal_relief_2024")

    registry_service.deactivate_variable(db, "personal_relief", note="renamed", replaced_by_key="personal_relief_2024")

    variable = crud_variable.get_variable_by_key(db, "personal_relief")
    assert variable is not None
    assert variable.is_active is False
    assert variable.replaced_by_key == "personal_relief_2024"
    assert registry_service.lookup(db, "personal_relief") is None

    with pytest.raises(VariableNotFoundException):
        registry_service.deactivate_variable(db, "never_existed")


def test_upsert_bumps_version(db, make_variable):
    first = make_variable("gross_income", label="Gross income")
    second = make_variable("gross_income", label="Gross income (all sources)")

    assert first.id == second.id
    assert second.version == first.version + 1
    assert second.label == "Gross income (all sources)"
