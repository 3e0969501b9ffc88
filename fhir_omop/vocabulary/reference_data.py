"""Reference Data Cache.

Vocabulary crosswalks and identity indexes are served by one of two
strategies, chosen once at run start from ``Settings.dictionary_load_in_ram``:

    - PreloadedReferenceData: reads every reference table into dictionaries
      in ``load()`` and answers from memory until ``clear()``.
    - OnDemandReferenceData: issues one targeted, indexed query per lookup.

Both return the same immutable records, so the resolvers built on top of them
do not know which strategy is active.

Usage:
    from fhir_omop.vocabulary.reference_data import build_reference_data

    reference_data = build_reference_data(settings, session_factory)
    with preloaded(reference_data):
        ...  # map resources
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fhir_omop.core.config import Settings
from fhir_omop.models import omop
from fhir_omop.models import vocabulary as vocab_models
from fhir_omop.models.vocabulary import LookupVariant
from fhir_omop.records import Concept, CrosswalkEntry, CustomConcept, NaturalKeys

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


class IdentityKind(str, Enum):
    """Identity indexes held by the cache."""

    PERSON = "person"
    VISIT = "visit"


@dataclass(frozen=True)
class IdentityRecord:
    """Surrogate id of a person or visit, plus the owning person."""

    surrogate_id: int
    person_id: int


def _concept_record(row: vocab_models.Concept) -> Concept:
    return Concept(
        concept_id=row.concept_id,
        concept_code=row.concept_code,
        domain_id=row.domain_id,
        vocabulary_id=row.vocabulary_id,
        valid_start=row.valid_start_date,
        valid_end=row.valid_end_date,
    )


def _crosswalk_record(row: vocab_models.StandardDomainLookup) -> CrosswalkEntry:
    return CrosswalkEntry(
        source_code=row.source_code,
        source_vocabulary_id=row.source_vocabulary_id,
        source_concept_id=row.source_concept_id,
        target_concept_id=row.standard_concept_id,
        domain_id=row.standard_domain_id,
        valid_start=row.valid_start_date,
        valid_end=row.valid_end_date,
        variant=row.lookup_variant,
    )


def _custom_record(row: vocab_models.SourceToConceptMap) -> CustomConcept:
    return CustomConcept(
        source_code=row.source_code,
        source_vocabulary_id=row.source_vocabulary_id,
        target_concept_id=row.target_concept_id,
    )


def _latest_first(records: Iterable) -> list:
    return sorted(records, key=lambda record: record.valid_start, reverse=True)


class ReferenceData(ABC):
    """Lookup interface shared by both strategies.

    Concept and crosswalk lists are ordered by descending ``valid_start`` so
    callers can take the first entry valid on their date.
    """

    preloaded: bool = False

    @abstractmethod
    def concepts(self, code: str, vocabulary_id: str) -> list[Concept]:
        """All concept versions with this code in this vocabulary."""

    @abstractmethod
    def crosswalk(
        self,
        code: str,
        vocabulary_id: str,
        variant: LookupVariant = LookupVariant.CODE_STANDARD,
    ) -> list[CrosswalkEntry]:
        """All crosswalk entries for a source code (case-insensitive)."""

    @abstractmethod
    def custom_concept(self, code: str, vocabulary_id: str) -> CustomConcept | None:
        """source_to_concept_map entry of a local vocabulary."""

    @abstractmethod
    def identity_by_identifier(self, kind: IdentityKind, identifier: str) -> IdentityRecord | None:
        """Identity index lookup by business identifier."""

    @abstractmethod
    def identity_by_logical_id(self, kind: IdentityKind, logical_id: str) -> IdentityRecord | None:
        """Identity index lookup by prefixed FHIR logical id."""

    def register_identity(
        self, kind: IdentityKind, record: IdentityRecord, natural_keys: NaturalKeys
    ) -> None:
        """Make a person or visit written during the run resolvable.

        No-op for on-demand lookups, which see the row once it is committed.
        """

    def forget_identity(self, kind: IdentityKind, natural_keys: NaturalKeys) -> None:
        """Drop a deleted person or visit. No-op for on-demand lookups."""

    def load(self) -> None:
        """Populate the cache before a run. No-op for on-demand lookups."""

    def clear(self) -> None:
        """Release the cache after a run. No-op for on-demand lookups."""


# ============================================================================
# Preloaded strategy
# ============================================================================


class PreloadedReferenceData(ReferenceData):
    """All reference tables held in memory for the duration of a run.

    The vocabulary dictionaries are only written by ``load()``/``add_*``
    before processing starts. The identity indexes also follow the persons
    and visits written during the run (``register_identity``).
    """

    preloaded = True

    def __init__(self, session_factory: SessionFactory | None = None):
        """Initialize an empty cache.

        Args:
            session_factory: Callable returning a Session, used by ``load()``.
                May be omitted when the cache is filled through ``add_*``.
        """
        self._session_factory = session_factory
        self._loaded = False
        self._reset()

    def _reset(self) -> None:
        self._concepts: dict[tuple[str, str], list[Concept]] = defaultdict(list)
        self._crosswalk: dict[tuple[LookupVariant, str, str], list[CrosswalkEntry]] = (
            defaultdict(list)
        )
        self._custom: dict[tuple[str, str], CustomConcept] = {}
        self._by_identifier: dict[IdentityKind, dict[str, IdentityRecord]] = {
            kind: {} for kind in IdentityKind
        }
        self._by_logical_id: dict[IdentityKind, dict[str, IdentityRecord]] = {
            kind: {} for kind in IdentityKind
        }

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    # ------------------------------------------------------------------
    # Population
    # ------------------------------------------------------------------

    def add_concepts(self, concepts: Iterable[Concept]) -> None:
        touched = set()
        for concept in concepts:
            key = (concept.vocabulary_id, concept.concept_code)
            self._concepts[key].append(concept)
            touched.add(key)
        for key in touched:
            self._concepts[key] = _latest_first(self._concepts[key])

    def add_crosswalk(self, entries: Iterable[CrosswalkEntry]) -> None:
        touched = set()
        for entry in entries:
            key = (entry.variant, entry.source_vocabulary_id, entry.source_code.upper())
            self._crosswalk[key].append(entry)
            touched.add(key)
        for key in touched:
            self._crosswalk[key] = _latest_first(self._crosswalk[key])

    def add_custom_concepts(self, custom_concepts: Iterable[CustomConcept]) -> None:
        for custom in custom_concepts:
            self._custom.setdefault((custom.source_vocabulary_id, custom.source_code), custom)

    def add_identity(
        self,
        kind: IdentityKind,
        record: IdentityRecord,
        identifier: str | None = None,
        logical_id: str | None = None,
    ) -> None:
        if identifier:
            self._by_identifier[kind][identifier] = record
        if logical_id:
            self._by_logical_id[kind][logical_id] = record

    def register_identity(
        self, kind: IdentityKind, record: IdentityRecord, natural_keys: NaturalKeys
    ) -> None:
        self.add_identity(
            kind, record, identifier=natural_keys.identifier, logical_id=natural_keys.logical_id
        )

    def forget_identity(self, kind: IdentityKind, natural_keys: NaturalKeys) -> None:
        if natural_keys.identifier:
            self._by_identifier[kind].pop(natural_keys.identifier, None)
        if natural_keys.logical_id:
            self._by_logical_id[kind].pop(natural_keys.logical_id, None)

    def load(self) -> None:
        """Read every reference table into memory."""
        if self._loaded:
            return
        if self._session_factory is None:
            raise RuntimeError("PreloadedReferenceData.load() needs a session factory")

        logger.info("Loading reference data into memory...")
        with self._session_factory() as session:
            self.add_concepts(
                _concept_record(row) for row in session.scalars(select(vocab_models.Concept))
            )
            self.add_crosswalk(
                _crosswalk_record(row)
                for row in session.scalars(select(vocab_models.StandardDomainLookup))
            )
            self.add_custom_concepts(
                _custom_record(row)
                for row in session.scalars(select(vocab_models.SourceToConceptMap))
            )

            persons = session.execute(
                select(omop.Person.person_id, omop.Person.fhir_identifier, omop.Person.fhir_logical_id)
            )
            for person_id, identifier, logical_id in persons:
                self.add_identity(
                    IdentityKind.PERSON,
                    IdentityRecord(person_id, person_id),
                    identifier=identifier,
                    logical_id=logical_id,
                )

            visits = session.execute(
                select(
                    omop.VisitOccurrence.visit_occurrence_id,
                    omop.VisitOccurrence.person_id,
                    omop.VisitOccurrence.fhir_identifier,
                    omop.VisitOccurrence.fhir_logical_id,
                )
            )
            for visit_id, person_id, identifier, logical_id in visits:
                self.add_identity(
                    IdentityKind.VISIT,
                    IdentityRecord(visit_id, person_id),
                    identifier=identifier,
                    logical_id=logical_id,
                )

        self._loaded = True
        logger.info(
            f"Reference data loaded: {sum(len(v) for v in self._concepts.values())} concepts, "
            f"{sum(len(v) for v in self._crosswalk.values())} crosswalk entries, "
            f"{len(self._custom)} custom concepts, "
            f"{len(self._by_logical_id[IdentityKind.PERSON])} persons, "
            f"{len(self._by_logical_id[IdentityKind.VISIT])} visits"
        )

    def clear(self) -> None:
        """Drop every cached table."""
        self._reset()
        self._loaded = False
        logger.info("Reference data cache cleared")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def concepts(self, code: str, vocabulary_id: str) -> list[Concept]:
        return list(self._concepts.get((vocabulary_id, code), ()))

    def crosswalk(
        self,
        code: str,
        vocabulary_id: str,
        variant: LookupVariant = LookupVariant.CODE_STANDARD,
    ) -> list[CrosswalkEntry]:
        return list(self._crosswalk.get((variant, vocabulary_id, code.upper()), ()))

    def custom_concept(self, code: str, vocabulary_id: str) -> CustomConcept | None:
        return self._custom.get((vocabulary_id, code))

    def identity_by_identifier(self, kind: IdentityKind, identifier: str) -> IdentityRecord | None:
        return self._by_identifier[kind].get(identifier)

    def identity_by_logical_id(self, kind: IdentityKind, logical_id: str) -> IdentityRecord | None:
        return self._by_logical_id[kind].get(logical_id)


# ============================================================================
# On-demand strategy
# ============================================================================


class OnDemandReferenceData(ReferenceData):
    """Every lookup is a targeted query against the reference tables."""

    preloaded = False

    def __init__(self, session_factory: SessionFactory):
        """Initialize the query strategy.

        Args:
            session_factory: Callable returning a new Session per lookup.
        """
        self._session_factory = session_factory

    def concepts(self, code: str, vocabulary_id: str) -> list[Concept]:
        stmt = (
            select(vocab_models.Concept)
            .where(
                vocab_models.Concept.vocabulary_id == vocabulary_id,
                vocab_models.Concept.concept_code == code,
            )
            .order_by(vocab_models.Concept.valid_start_date.desc())
        )
        with self._session_factory() as session:
            return [_concept_record(row) for row in session.scalars(stmt)]

    def crosswalk(
        self,
        code: str,
        vocabulary_id: str,
        variant: LookupVariant = LookupVariant.CODE_STANDARD,
    ) -> list[CrosswalkEntry]:
        lookup = vocab_models.StandardDomainLookup
        stmt = (
            select(lookup)
            .where(
                lookup.lookup_variant == variant,
                lookup.source_vocabulary_id == vocabulary_id,
                func.upper(lookup.source_code) == code.upper(),
            )
            .order_by(lookup.valid_start_date.desc())
        )
        with self._session_factory() as session:
            return [_crosswalk_record(row) for row in session.scalars(stmt)]

    def custom_concept(self, code: str, vocabulary_id: str) -> CustomConcept | None:
        mapping = vocab_models.SourceToConceptMap
        stmt = (
            select(mapping)
            .where(mapping.source_vocabulary_id == vocabulary_id, mapping.source_code == code)
            .order_by(mapping.id)
            .limit(1)
        )
        with self._session_factory() as session:
            row = session.scalars(stmt).first()
            return _custom_record(row) if row is not None else None

    def _identity(self, kind: IdentityKind, column: str, value: str) -> IdentityRecord | None:
        if kind is IdentityKind.PERSON:
            model = omop.Person
            stmt = select(model.person_id)
        else:
            model = omop.VisitOccurrence
            stmt = select(model.visit_occurrence_id, model.person_id)
        stmt = stmt.where(getattr(model, column) == value).limit(1)

        with self._session_factory() as session:
            row = session.execute(stmt).first()
        if row is None:
            return None
        return IdentityRecord(surrogate_id=row[0], person_id=row[-1])

    def identity_by_identifier(self, kind: IdentityKind, identifier: str) -> IdentityRecord | None:
        return self._identity(kind, "fhir_identifier", identifier)

    def identity_by_logical_id(self, kind: IdentityKind, logical_id: str) -> IdentityRecord | None:
        return self._identity(kind, "fhir_logical_id", logical_id)


# ============================================================================
# Strategy selection
# ============================================================================


def build_reference_data(settings: Settings, session_factory: SessionFactory) -> ReferenceData:
    """Pick the cache strategy for a run."""
    if settings.dictionary_load_in_ram:
        logger.info("Reference data strategy: preloaded")
        return PreloadedReferenceData(session_factory)
    logger.info("Reference data strategy: on-demand queries")
    return OnDemandReferenceData(session_factory)


@contextmanager
def preloaded(reference_data: ReferenceData) -> Iterator[ReferenceData]:
    """Load the cache for the duration of a run and clear it afterwards."""
    reference_data.load()
    try:
        yield reference_data
    finally:
        reference_data.clear()
