"""
Services Package

Business logic for the tax rule engine. Each service is a module-level
singleton; stateful pipelines (aggregation, calculation) are classes
instantiated per run.
"""

from taxcore.services.registry_service import registry_service, normalize_term, Unmapped
from taxcore.services.rule_service import rule_service
from taxcore.services.conflict_service import conflict_service
from taxcore.services.audit_service import audit_service
from taxcore.services.calculation_service import calculation_service
from taxcore.services.validation_service import validation_service

__all__ = [
    "registry_service",
    "normalize_term",
    "Unmapped",
    "rule_service",
    "conflict_service",
    "audit_service",
    "calculation_service",
    "validation_service",
]
