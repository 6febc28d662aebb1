"""
Calculation Exceptions

Typed failures of the formula compiler and the calculation executor.
Each carries the error_type recorded on CalculationError and the step
that failed, and is rendered to clients as
{"errorType", "message", "failedStep"}.
"""

from typing import Optional
from fastapi import status
from .base import AppException
from taxcore.models.calculation import ErrorType


class CalculationException(AppException):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    detail = "Calculation failed."
    error_type = ErrorType.UNKNOWN_ERROR

    def __init__(self, message: Optional[str] = None, failed_step: Optional[str] = None):
        super().__init__(detail=message)
        self.message = message or type(self).detail
        self.failed_step = failed_step

    def to_payload(self) -> dict:
        return {
            "errorType": str(self.error_type),
            "message": self.message,
            "failedStep": self.failed_step,
        }

    def __str__(self):
        return f"{self.error_type}: {self.message}"


class FormulaParseException(CalculationException):
    detail = "Formula expression could not be parsed."
    error_type = ErrorType.FORMULA_PARSE_ERROR


class VariableMissingException(CalculationException):
    detail = "A referenced variable has no canonical mapping or input source."
    error_type = ErrorType.VARIABLE_MISSING


class CalculationOverflowException(CalculationException):
    detail = "Calculation overflowed, divided by zero or exceeded its time budget."
    error_type = ErrorType.CALCULATION_OVERFLOW


class RuleValidationException(CalculationException):
    detail = "Rule failed validation."
    error_type = ErrorType.RULE_VALIDATION_FAILED


class CalculationDatabaseException(CalculationException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    detail = "Database error during calculation."
    error_type = ErrorType.DATABASE_ERROR


class CalculationUnknownException(CalculationException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail = "Unexpected error during calculation."
    error_type = ErrorType.UNKNOWN_ERROR


class NoApplicableRuleException(AppException):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "No aggregated rule applies to this calculation type and date."


class CalculationErrorNotFoundException(AppException):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "Calculation error record not found."
