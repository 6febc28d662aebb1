from fastapi import status
from .base import AppException


class VariableNotFoundException(AppException):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "Canonical variable not found."


class VariableInactiveException(AppException):
    status_code = status.HTTP_409_CONFLICT
    detail = "Canonical variable is deactivated."


class SynonymNotFoundException(AppException):
    status_code = status.HTTP_404_NOT_FOUND
    detail = "Synonym proposal not found."


class SynonymAlreadyDecidedException(AppException):
    status_code = status.HTTP_409_CONFLICT
    detail = "Synonym proposal has already been decided."
