from fastapi import status
from .base import AppException


class AggregationInProgressException(AppException):
    status_code = status.HTTP_409_CONFLICT
    detail = "An aggregation run for this tax type and date is already in progress."


class AggregationBlockedException(AppException):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    detail = "Preflight check blocked aggregation."


class AggregationRunNotFoundException(AppException):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "Aggregation run not found."


class ConflictNotFoundException(AppException):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "Rule conflict not found."


class InvalidConflictTransitionException(AppException):
    status_code = status.HTTP_409_CONFLICT
    detail = "Requested conflict status transition is not allowed."
