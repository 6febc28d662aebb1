"""
Canonical Variable Registry

Maps raw extracted terms onto stable canonical variable keys.

resolve() is the write path: an unknown term is registered as a pending
VariableSynonym so it shows up for review instead of failing silently.
lookup() is the read-only twin used on calculation paths.
"""

from dataclasses import dataclass
from typing import Optional, List, Union
import logging
import re

from sqlalchemy.orm import Session

from taxcore.crud import crud_variable
from taxcore.models.variable import CanonicalVariable, VariableSynonym, SynonymStatus
from taxcore.schema.variable import (
    CanonicalVariableUpsert, CanonicalVariableResponse, SynonymProposal,
    SynonymProposalResult, SynonymResponse, ResolveResponse
)
from taxcore.exceptions.registry_exceptions import (
    VariableNotFoundException, VariableInactiveException,
    SynonymNotFoundException, SynonymAlreadyDecidedException
)

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_term(term: str) -> str:
    """'Gross Income (LKR)' -> 'gross_income_lkr'"""
    return _NON_ALNUM.sub("_", term.strip().lower()).strip("_")


@dataclass(frozen=True)
class Unmapped:
    """A term with no canonical binding yet"""
    term: str
    normalized_term: str
    synonym_id: Optional[str] = None


class RegistryService:

    # =========================================================================
    # RESOLUTION
    # =========================================================================

    def _mapped_key(self, db: Session, normalized: str) -> Optional[str]:
        variable = crud_variable.get_variable_by_key(db, normalized)
        if variable and variable.is_active:
            return variable.key

        synonym = crud_variable.get_synonym_by_normalized_term(db, normalized)
        if synonym and synonym.status == SynonymStatus.APPROVED and synonym.variable:
            if synonym.variable.is_active:
                return synonym.variable.key

        return None

    def lookup(self, db: Session, term: str) -> Optional[str]:
        """Canonical key for a term, or None. Never writes."""
        normalized = normalize_term(term)
        if not normalized:
            return None
        return self._mapped_key(db, normalized)

    def resolve(self, db: Session, term: str, source: str = "resolve") -> Union[str, Unmapped]:
        normalized = normalize_term(term)
        if not normalized:
            return Unmapped(term=term, normalized_term=normalized)

        key = self._mapped_key(db, normalized)
        if key:
            return key

        synonym = crud_variable.get_synonym_by_normalized_term(db, normalized)
        if synonym is None:
            synonym = crud_variable.create_synonym(db, raw_term=term, normalized_term=normalized, source=source)
            logger.info(f"Registered unmapped term '{term}' as pending synonym {synonym.id}")
        elif synonym.status == SynonymStatus.PENDING:
            synonym = crud_variable.merge_synonym_proposal(db, synonym)

        return Unmapped(term=term, normalized_term=normalized, synonym_id=synonym.id)

    def resolve_response(self, db: Session, term: str) -> ResolveResponse:
        outcome = self.resolve(db, term)

        if isinstance(outcome, Unmapped):
            return ResolveResponse(
                term=term,
                normalized_term=outcome.normalized_term,
                mapped=False,
                synonym_id=outcome.synonym_id
            )

        return ResolveResponse(term=term, normalized_term=normalize_term(term), key=outcome, mapped=True)

    # =========================================================================
    # PROPOSALS AND DECISIONS
    # =========================================================================

    def propose_synonyms(self, db: Session, proposals: List[SynonymProposal]) -> SynonymProposalResult:
        """
        Fold a batch of extraction proposals into the synonym table.
        A normalized term is only ever stored once.
        """
        result = SynonymProposalResult()
        touched: List[VariableSynonym] = []

        for proposal in proposals:
            normalized = normalize_term(proposal.term)
            if not normalized:
                continue

            existing = crud_variable.get_synonym_by_normalized_term(db, normalized)
            if existing:
                synonym = crud_variable.merge_synonym_proposal(
                    db, existing,
                    suggested_key=proposal.suggested_variable_key,
                    confidence=proposal.confidence
                )
                result.merged += 1
            else:
                synonym = crud_variable.create_synonym(
                    db,
                    raw_term=proposal.term,
                    normalized_term=normalized,
                    suggested_key=proposal.suggested_variable_key,
                    confidence=proposal.confidence,
                    source=proposal.source
                )
                result.created += 1
            touched.append(synonym)

        result.synonyms = [SynonymResponse.model_validate(s) for s in touched]
        logger.info(f"Synonym proposals: {result.created} created, {result.merged} merged")

        return result

    def _get_undecided(self, db: Session, synonym_id: str) -> VariableSynonym:
        synonym = crud_variable.get_synonym(db, synonym_id)
        if not synonym:
            raise SynonymNotFoundException()
        if synonym.status != SynonymStatus.PENDING:
            raise SynonymAlreadyDecidedException()
        return synonym

    def approve_synonym(
        self,
        db: Session,
        synonym_id: str,
        variable_id: str,
        decided_by: str,
        note: Optional[str] = None
    ) -> VariableSynonym:
        """The only way a term becomes bound to a variable"""
        synonym = self._get_undecided(db, synonym_id)

        variable = crud_variable.get_variable(db, variable_id)
        if not variable:
            raise VariableNotFoundException()
        if not variable.is_active:
            raise VariableInactiveException()

        synonym = crud_variable.decide_synonym(
            db, synonym, SynonymStatus.APPROVED, decided_by, variable_id=variable.id, note=note
        )
        logger.info(f"Synonym '{synonym.normalized_term}' approved as {variable.key} by {decided_by}")

        return synonym

    def reject_synonym(
        self,
        db: Session,
        synonym_id: str,
        decided_by: str,
        note: Optional[str] = None
    ) -> VariableSynonym:
        synonym = self._get_undecided(db, synonym_id)

        synonym = crud_variable.decide_synonym(db, synonym, SynonymStatus.REJECTED, decided_by, note=note)
        logger.info(f"Synonym '{synonym.normalized_term}' rejected by {decided_by}")

        return synonym

    # =========================================================================
    # ADMIN
    # =========================================================================

    def upsert_variable(self, db: Session, data: CanonicalVariableUpsert) -> CanonicalVariableResponse:
        data = data.model_copy(update={"key": normalize_term(data.key)})
        variable = crud_variable.upsert_variable(db, data)
        return CanonicalVariableResponse.model_validate(variable)

    def deactivate_variable(
        self,
        db: Session,
        key: str,
        note: Optional[str] = None,
        replaced_by_key: Optional[str] = None
    ) -> CanonicalVariable:
        variable = crud_variable.get_variable_by_key(db, key)
        if not variable:
            raise VariableNotFoundException()

        if replaced_by_key and not crud_variable.get_variable_by_key(db, replaced_by_key):
            raise VariableNotFoundException(detail=f"Replacement variable '{replaced_by_key}' not found.")

        variable = crud_variable.deactivate_variable(db, variable, note=note, replaced_by_key=replaced_by_key)
        logger.info(f"Canonical variable {key} deactivated")

        return variable


registry_service = RegistryService()
