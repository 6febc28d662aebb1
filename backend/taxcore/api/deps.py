from fastapi import Depends
from sqlalchemy.orm import Session
from taxcore.database import get_db
from taxcore.services.aggregation import AggregationEngine


def get_aggregation_engine(db: Session = Depends(get_db)) -> AggregationEngine:
    # One engine per request; it carries the run being processed
    return AggregationEngine(db)
