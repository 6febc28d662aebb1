"""
Source precedence.

Evidence is ranked by source authority (Act highest, Other lowest), then by
the most recent effective date, then by extraction confidence. Authority
and effective date define the top tier; confidence only orders evidence
within a tier and never settles a disagreement on its own.
"""

from datetime import date
from decimal import Decimal
from typing import Optional, Tuple

from taxcore.models.rule import TaxRule, authority_rank


def precedence_key(rule: TaxRule) -> Tuple:
    effective: Optional[date] = rule.effective_date
    confidence = Decimal(rule.chunk_confidence) if rule.chunk_confidence is not None else Decimal("0")
    return (
        authority_rank(rule.source_authority),
        -effective.toordinal() if effective else 0,
        -confidence,
        rule.created_at,
        rule.id,
    )


def tier_key(rule: TaxRule) -> Tuple:
    return (authority_rank(rule.source_authority), rule.effective_date)


def rank_weight(position: int) -> float:
    """Provenance weight for the evidence at a 0-based rank position"""
    return round(1 / (position + 1), 4)
