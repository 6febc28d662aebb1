from .engine import AggregationEngine, AggregationConfig
from .preflight import run_preflight

__all__ = [
    "AggregationEngine",
    "AggregationConfig",
    "run_preflight",
]
