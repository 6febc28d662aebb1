"""
CRUD Package

Exports all CRUD operation modules for the tax rule engine.
"""

from taxcore.crud import crud_variable
from taxcore.crud import crud_rule
from taxcore.crud import crud_conflict
from taxcore.crud import crud_aggregation_run
from taxcore.crud import crud_calculation
from taxcore.crud import crud_rule_test_case


__all__ = [
    "crud_variable",
    "crud_rule",
    "crud_conflict",
    "crud_aggregation_run",
    "crud_calculation",
    "crud_rule_test_case",
]
