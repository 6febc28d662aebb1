"""
Audit & Error Reporter

Persists calculation outcomes: one CalculationAudit per successful
execution_id, one CalculationError per failed attempt sequence. Also owns
the retry policy: only database_error and unknown_error are retried, with
exponential backoff; every other error type is terminal.
"""

from typing import Any, Callable, Dict, Optional, TypeVar
import logging
import time

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from taxcore.core.config import settings
from taxcore.crud import crud_calculation
from taxcore.exceptions.calculation_exceptions import (
    CalculationException, CalculationDatabaseException, CalculationUnknownException
)
from taxcore.models.calculation import CalculationAudit, CalculationError, RETRYABLE_ERROR_TYPES
from taxcore.services.calculation.executor import ExecutionResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


def classify(exc: Exception) -> CalculationException:
    """Map any failure onto the calculation error taxonomy"""
    if isinstance(exc, CalculationException):
        return exc
    if isinstance(exc, SQLAlchemyError):
        return CalculationDatabaseException(f"Database error: {exc.__class__.__name__}")
    return CalculationUnknownException(f"{exc.__class__.__name__}: {exc}")


class AuditService:

    def __init__(self, max_attempts: Optional[int] = None, backoff_seconds: Optional[float] = None, sleep=time.sleep):
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds
        self.sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self._max_attempts or settings.CALCULATION_MAX_ATTEMPTS

    @property
    def backoff_seconds(self) -> float:
        return self._backoff_seconds if self._backoff_seconds is not None else settings.CALCULATION_BACKOFF_SECONDS

    def run_with_retry(
        self,
        db: Session,
        execution_id: str,
        attempt_fn: Callable[[], T],
        context: Optional[Dict[str, Any]] = None
    ) -> T:
        """
        Call attempt_fn until it succeeds, a terminal error occurs, or the
        attempt budget runs out. The final failure is recorded as a
        CalculationError and re-raised in its typed form.
        """
        context = context or {}
        attempt = 0

        while True:
            try:
                return attempt_fn()
            except Exception as exc:
                error = classify(exc)
                if isinstance(exc, SQLAlchemyError):
                    db.rollback()

                retryable = error.error_type in RETRYABLE_ERROR_TYPES
                if retryable and attempt + 1 < self.max_attempts:
                    delay = self.backoff_seconds * (2 ** attempt)
                    logger.warning(
                        f"Execution {execution_id} attempt {attempt + 1} failed with {error.error_type}; "
                        f"retrying in {delay:.2f}s"
                    )
                    self.sleep(delay)
                    attempt += 1
                    continue

                self.record_failure(db, execution_id, error, retry_count=attempt, **context)
                if error is exc:
                    raise
                raise error from exc

    def record_success(
        self,
        db: Session,
        execution_id: str,
        calculation_type: str,
        rule_id: str,
        schema_version: int,
        validated_rule: bool,
        input_data: Dict[str, Any],
        result: ExecutionResult,
        unit: Optional[str] = None
    ) -> CalculationAudit:
        result_data = result.result_payload(unit)
        result_data["breakdown"] = [item.model_dump(mode="json") for item in result.breakdown]

        return crud_calculation.create_audit(
            db,
            execution_id=execution_id,
            calculation_type=calculation_type,
            rule_id=rule_id,
            schema_version=schema_version,
            validated_rule=validated_rule,
            input_data=input_data,
            result_data=result_data,
            final_amount=result.final_amount,
            started_at=result.started_at,
            completed_at=result.completed_at,
            duration_ms=result.duration_ms
        )

    def record_failure(
        self,
        db: Session,
        execution_id: str,
        error: CalculationException,
        retry_count: int = 0,
        calculation_type: Optional[str] = None,
        rule_id: Optional[str] = None,
        input_data: Optional[Dict[str, Any]] = None
    ) -> CalculationError:
        logger.error(
            f"Execution {execution_id} failed: {error.error_type} at {error.failed_step or '-'}: {error.message}"
        )
        return crud_calculation.create_error(
            db,
            execution_id=execution_id,
            error_type=error.error_type,
            failed_step=error.failed_step,
            message=error.message,
            retry_count=retry_count,
            calculation_type=calculation_type,
            rule_id=rule_id,
            input_data=input_data
        )


audit_service = AuditService()
