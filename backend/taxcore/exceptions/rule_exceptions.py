"""
Rule Store Exceptions

Raised by evidence ingestion, aggregated rule lookups and the
validation_status state machine.
"""

from fastapi import status
from .base import AppException


class RuleNotFoundException(AppException):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "Tax rule not found."


class InvalidRulePayloadException(AppException):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    detail = "Rule payload does not match its category."


class EvidenceImmutableException(AppException):
    """Evidence rules only accept validation_status changes."""
    status_code = status.HTTP_409_CONFLICT
    detail = "Evidence rules are immutable once created."


class InvalidStatusTransitionException(AppException):
    status_code = status.HTTP_409_CONFLICT
    detail = "Requested validation status transition is not allowed."


class ValidationBlockedException(AppException):
    """Fixture replay or open conflicts prevented the validated transition."""
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    detail = "Rule cannot be validated."


class FixtureAlreadyExistsException(AppException):
    status_code = status.HTTP_409_CONFLICT
    detail = "A test case with this name already exists for the rule."


class FixtureNotFoundException(AppException):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "Test case not found for this rule."
