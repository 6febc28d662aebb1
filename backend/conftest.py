"""
Shared fixtures: an in-memory SQLite database per test, a session bound to
it, a TestClient wired to that session, and small factories for canonical
variables and evidence rules.
"""

from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import taxcore.models  # noqa: F401
from taxcore.crud import crud_rule
from taxcore.database import Base, get_db
from taxcore.schema.rule import EvidenceRuleCreate
from taxcore.schema.variable import CanonicalVariableUpsert
from taxcore.services.registry_service import registry_service
from main import app


TARGET_DATE = date(2024, 4, 1)

# Progressive income tax table as printed in the source document
INCOME_TAX_BRACKETS = [
    {"min_income": 0, "max_income": 500000, "rate": 0, "fixed_amount": 0, "bracket_order": 1},
    {"min_income": 500001, "max_income": 750000, "rate": 6, "fixed_amount": 0, "bracket_order": 2},
    {"min_income": 750001, "max_income": 1500000, "rate": 12, "fixed_amount": 15000, "bracket_order": 3},
    {"min_income": 1500001, "max_income": None, "rate": 18, "fixed_amount": 105000, "bracket_order": 4},
]

# Second band starts inside the first
OVERLAPPING_BRACKETS = [
    {"min_income": 0, "max_income": 500000, "rate": 0, "fixed_amount": 0, "bracket_order": 1},
    {"min_income": 400000, "max_income": None, "rate": 10, "fixed_amount": 0, "bracket_order": 2},
]

INCOME_TAX_FORMULAS = [
    {"output_variable": "income_tax_payable", "expression": "brackets(taxable_income)"},
    {"output_variable": "Taxable Income", "expression": "max(gross_income - {Personal Relief}, 0)"},
]

STANDARD_VARIABLES = [
    ("gross_income", "Gross income", "currency"),
    ("taxable_income", "Taxable income", "currency"),
    ("personal_relief", "Personal relief", "currency"),
    ("income_tax_payable", "Income tax payable", "currency"),
]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False)()
    yield session
    session.close()


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_variable(db):
    def _make(key, label=None, data_type="currency"):
        return registry_service.upsert_variable(
            db, CanonicalVariableUpsert(key=key, label=label or key, data_type=data_type)
        )
    return _make


@pytest.fixture
def standard_variables(make_variable):
    return [make_variable(key, label, data_type) for key, label, data_type in STANDARD_VARIABLES]


@pytest.fixture
def make_evidence(db):
    def _make(rule_category="bracket", rule_data=None, **overrides):
        fields = {
            "rule_type": "income_tax",
            "rule_category": rule_category,
            "title": f"{rule_category} evidence",
            "rule_data": rule_data if rule_data is not None else {"brackets": INCOME_TAX_BRACKETS},
            "effective_date": TARGET_DATE,
            "source_authority": "Act",
            "chunk_confidence": "0.90",
        }
        fields.update(overrides)
        return crud_rule.create_evidence_rule(db, EvidenceRuleCreate(**fields))
    return _make


@pytest.fixture
def income_tax_evidence(standard_variables, make_evidence):
    """Bracket table with formulas from an Act, relief amount from a Gazette"""
    table = make_evidence(rule_data={
        "brackets": INCOME_TAX_BRACKETS,
        "inputs": ["Gross Income"],
        "formulas": INCOME_TAX_FORMULAS,
        "result_variable": "income_tax_payable",
        "unit": "LKR",
    }, document_source_id="inland-revenue-act-2017")
    relief = make_evidence(
        rule_category="allowance",
        rule_data={"variable": "Personal Relief", "value": 1200000, "unit": "LKR"},
        source_authority="Gazette",
        document_source_id="gazette-2024-03"
    )
    return table, relief
