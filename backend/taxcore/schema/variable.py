# Pydantic schemas for the Canonical Variable Registry.

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from taxcore.models.variable import VariableDataType, SynonymStatus


class CanonicalVariableUpsert(BaseModel):
    # Admin create-or-update keyed on `key`
    key: str = Field(min_length=1, max_length=120)
    label: str = Field(min_length=1, max_length=200)
    data_type: VariableDataType = VariableDataType.NUMBER
    unit: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    created_by: Optional[str] = None


class CanonicalVariableDeactivate(BaseModel):
    note: Optional[str] = None
    replaced_by_key: Optional[str] = None


class CanonicalVariableResponse(BaseModel):
    id: str
    key: str
    label: str
    data_type: VariableDataType
    unit: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    version: int
    is_active: bool
    deprecated_at: Optional[datetime] = None
    deprecation_note: Optional[str] = None
    replaced_by_key: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = {
        "from_attributes": True
    }


class SynonymProposal(BaseModel):
    # One (term, suggested_variable_key, confidence) triple from the extraction pipeline
    term: str = Field(min_length=1, max_length=300)
    suggested_variable_key: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    source: Optional[str] = "extraction"


class SynonymProposalBatch(BaseModel):
    proposals: List[SynonymProposal]


class SynonymResponse(BaseModel):
    id: str
    raw_term: str
    normalized_term: str
    variable_id: Optional[str] = None
    suggested_key: Optional[str] = None
    confidence: Optional[float] = None
    occurrences: int
    status: SynonymStatus
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    decision_note: Optional[str] = None
    created_at: datetime

    model_config = {
        "from_attributes": True
    }


class SynonymProposalResult(BaseModel):
    created: int = 0
    merged: int = 0
    synonyms: List[SynonymResponse] = []


class SynonymApprove(BaseModel):
    variable_id: str
    decided_by: str
    note: Optional[str] = None


class SynonymReject(BaseModel):
    decided_by: str
    note: Optional[str] = None


class ResolveResponse(BaseModel):
    term: str
    normalized_term: str
    key: Optional[str] = None
    mapped: bool
    synonym_id: Optional[str] = None
