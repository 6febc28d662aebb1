"""
End-to-end API flow through the FastAPI app:
register variables -> ingest evidence -> preflight -> aggregate ->
calculate -> review conflicts -> validate -> activate.
"""

from conftest import INCOME_TAX_BRACKETS, INCOME_TAX_FORMULAS, STANDARD_VARIABLES, TARGET_DATE
from taxcore.crud import crud_aggregation_run
from taxcore.models.rule import RuleType

API = "/api/v1"


def register_variables(client):
    for key, label, data_type in STANDARD_VARIABLES:
        response = client.put(f"{API}/variables", json={"key": key, "label": label, "data_type": data_type})
        assert response.status_code == 200, response.text


def evidence(rule_category, rule_data, **fields):
    return {
        "rule_type": "income_tax",
        "rule_category": rule_category,
        "title": f"{rule_category} evidence",
        "rule_data": rule_data,
        "effective_date": TARGET_DATE.isoformat(),
        "source_authority": "Act",
        "chunk_confidence": "0.90",
        **fields,
    }


def ingest_income_tax(client):
    response = client.post(f"{API}/evidence", json={"rules": [
        evidence("bracket", {
            "brackets": INCOME_TAX_BRACKETS,
            "inputs": ["Gross Income"],
            "formulas": INCOME_TAX_FORMULAS,
            "result_variable": "income_tax_payable",
            "unit": "LKR",
        }),
        evidence(
            "allowance",
            {"variable": "Personal Relief", "value": 1200000, "unit": "LKR"},
            source_authority="Gazette"
        ),
    ]})
    assert response.status_code == 201, response.text
    return response.json()


def run_aggregation(client):
    response = client.post(f"{API}/aggregate", json={"tax_type": "income_tax", "target_date": TARGET_DATE.isoformat()})
    assert response.status_code == 200, response.text
    return response.json()


def calculate(client, input_data, **extra):
    return client.post(f"{API}/calculate", json={
        "calculationType": "income_tax",
        "inputData": input_data,
        "targetDate": TARGET_DATE.isoformat(),
        **extra,
    })


def test_root(client):
    assert client.get("/").json() == {"message": "TaxCore API"}


def test_full_flow(client):
    register_variables(client)
    created = ingest_income_tax(client)
    assert [r["source_kind"] for r in created] == ["evidence", "evidence"]
    assert created[0]["rule_data"]["category"] == "bracket"

    preflight = client.get(f"{API}/preflight", params={"tax_type": "income_tax", "date": TARGET_DATE.isoformat()})
    assert preflight.status_code == 200
    assert preflight.json()["status"] == "ok"
    assert preflight.json()["evidenceCount"] == 2

    run = run_aggregation(client)
    assert run["status"] == "completed"
    assert run["conflictsCount"] == 0
    rule_id = run["aggregatedRuleId"]

    detail = client.get(f"{API}/rules/{rule_id}").json()
    assert detail["source_kind"] == "aggregated"
    assert len(detail["brackets"]) == 4
    assert [f["output_variable"] for f in detail["formulas"]] == ["taxable_income", "income_tax_payable"]
    assert {s["reason"] for s in detail["sources"]} == {"selected"}

    response = calculate(client, {"gross_income": 2200000}, executionId="api-exec-1")
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["executionId"] == "api-exec-1"
    assert body["result"]["final_amount"] == "45000.00"
    assert body["schemaVersion"] == 1
    assert body["validated"] is False

    response = client.post(f"{API}/rules/{rule_id}/test-cases", json={
        "test_name": "worked example",
        "input_data": {"gross_income": 2200000},
        "expected_output": {"final_amount": "45000.00"},
    })
    assert response.status_code == 201, response.text

    response = client.post(f"{API}/rules/{rule_id}/validation-status", json={"status": "validated"})
    assert response.status_code == 200, response.text
    assert response.json()["status"] == "validated"

    response = client.post(f"{API}/rules/{rule_id}/activate")
    assert response.json()["is_active"] is True

    history = client.get(f"{API}/calculations", params={"calculation_type": "income_tax"}).json()
    assert [h["execution_id"] for h in history] == ["api-exec-1"]

    summary = client.get(f"{API}/admin/summary").json()
    assert summary["evidence_rules"] == 2
    assert summary["active_rules"] == 1
    assert summary["validated_rules"] == 1
    assert summary["open_conflicts"] == 0


def test_calculation_error_payload(client):
    register_variables(client)
    ingest_income_tax(client)
    run_aggregation(client)

    response = calculate(client, {"gross_income": 10 ** 14}, executionId="api-exec-2")

    assert response.status_code == 422
    body = response.json()
    assert body["errorType"] == "calculation_overflow"
    assert body["failedStep"] == "resolve:gross_income"
    assert body["message"]

    errors = client.get(f"{API}/calculations/errors", params={"execution_id": "api-exec-2"}).json()
    assert [e["error_type"] for e in errors] == ["calculation_overflow"]

    response = client.post(f"{API}/calculations/errors/{errors[0]['id']}/resolve")
    assert response.json()["resolved"] is True
    assert client.get(f"{API}/admin/summary").json()["unresolved_calculation_errors"] == 0


def test_calculate_without_rule_is_not_found(client):
    response = calculate(client, {"gross_income": 1})

    assert response.status_code == 404
    assert "detail" in response.json()


def test_busy_key_is_rejected(client, db):
    register_variables(client)
    ingest_income_tax(client)
    crud_aggregation_run.create_run(db, RuleType.INCOME_TAX, TARGET_DATE)

    response = client.post(f"{API}/aggregate", json={"tax_type": "income_tax", "target_date": TARGET_DATE.isoformat()})

    assert response.status_code == 409


def test_preflight_without_evidence_is_blocked(client):
    response = client.post(f"{API}/aggregate", json={"tax_type": "vat", "target_date": TARGET_DATE.isoformat()})

    assert response.status_code == 422
    assert response.json()["detail"]["blockers"]


def test_conflict_review_through_api(client):
    register_variables(client)
    ingest_income_tax(client)
    amended = client.post(f"{API}/evidence", json=evidence("bracket", {"brackets": [
        {**INCOME_TAX_BRACKETS[0]},
        {**INCOME_TAX_BRACKETS[1], "rate": 8},
        {**INCOME_TAX_BRACKETS[2], "fixed_amount": 20000},
        {**INCOME_TAX_BRACKETS[3], "fixed_amount": 110000},
    ]})).json()[0]

    run = run_aggregation(client)
    assert run["status"] == "failed"
    assert run["conflictsCount"] == 1

    conflicts = client.get(f"{API}/conflicts", params={"tax_type": "income_tax", "status": "open"}).json()
    assert len(conflicts) == 1
    assert conflicts[0]["aspect"] == "brackets"

    response = client.post(f"{API}/conflicts/{conflicts[0]['id']}/resolve", json={"status": "resolved"})
    assert response.status_code == 409

    response = client.post(f"{API}/conflicts/{conflicts[0]['id']}/resolve", json={
        "status": "resolved",
        "details": {"decision": {"evidence_rule_id": amended["id"]}},
        "decided_by": "reviewer",
    })
    assert response.status_code == 200, response.text
    assert response.json()["decided_by"] == "reviewer"

    run = run_aggregation(client)
    assert run["status"] == "completed"

    response = calculate(client, {"gross_income": 2200000})
    assert response.json()["result"]["final_amount"] == "50000.00"


def test_synonym_proposals_through_api(client):
    register_variables(client)
    variables = client.get(f"{API}/variables").json()
    payable = next(v for v in variables if v["key"] == "income_tax_payable")

    response = client.post(f"{API}/variables/proposals", json={"proposals": [
        {"term": "Tax Payable", "suggested_variable_key": "income_tax_payable", "confidence": 0.7},
        {"term": "tax  payable", "confidence": 0.9},
    ]})
    assert response.status_code == 200, response.text
    assert response.json()["created"] == 1
    assert response.json()["merged"] == 1

    pending = client.get(f"{API}/variables/proposals").json()
    assert len(pending) == 1
    assert pending[0]["occurrences"] == 2

    unresolved = client.get(f"{API}/variables/resolve", params={"term": "Tax Payable"}).json()
    assert unresolved["mapped"] is False

    response = client.post(f"{API}/variables/proposals/{pending[0]['id']}/approve", json={
        "variable_id": payable["id"],
        "decided_by": "reviewer",
    })
    assert response.json()["status"] == "approved"

    resolved = client.get(f"{API}/variables/resolve", params={"term": "TAX PAYABLE"}).json()
    assert resolved["mapped"] is True
    assert resolved["key"] == "income_tax_payable"
