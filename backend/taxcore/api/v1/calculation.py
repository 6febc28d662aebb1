from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional
from taxcore.database import get_db
from taxcore.models.calculation import ErrorType
from taxcore.schema.calculation import (
    CalculateRequest, CalculateResponse, CalculationErrorResponse, CalculationAuditResponse, CalculationErrorRecord
)
from taxcore.services.calculation_service import calculation_service

router = APIRouter(tags=["calculation"])


@router.post(
    "/calculate",
    response_model=CalculateResponse,
    responses={422: {"model": CalculationErrorResponse}, 503: {"model": CalculationErrorResponse}}
)
def calculate(request: CalculateRequest, db: Session = Depends(get_db)):
    return calculation_service.calculate(db, request)


@router.get("/calculations", response_model=List[CalculationAuditResponse])
def calculation_history(
    calculation_type: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db)
):
    return calculation_service.get_history(db, calculation_type=calculation_type, skip=skip, limit=limit)


@router.get("/calculations/errors", response_model=List[CalculationErrorRecord])
def calculation_errors(
    execution_id: Optional[str] = None,
    error_type: Optional[ErrorType] = None,
    unresolved_only: bool = False,
    db: Session = Depends(get_db)
):
    return calculation_service.get_errors(
        db, execution_id=execution_id, error_type=error_type, unresolved_only=unresolved_only
    )


@router.post("/calculations/errors/{error_id}/resolve", response_model=CalculationErrorRecord)
def resolve_calculation_error(error_id: str, db: Session = Depends(get_db)):
    return calculation_service.resolve_error(db, error_id)
