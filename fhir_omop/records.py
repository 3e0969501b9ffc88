"""Immutable value types passed between the mapping components.

Everything the resolvers return and everything the mapper emits is a frozen
dataclass, so a bundle handed to the writer cannot be changed afterwards and
resolvers can be shared between workers.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from fhir_omop.models.vocabulary import LookupVariant


class FactTable(str, Enum):
    """OMOP fact tables a clinical fact can be routed to."""

    CONDITION_OCCURRENCE = "condition_occurrence"
    PROCEDURE_OCCURRENCE = "procedure_occurrence"
    OBSERVATION = "observation"
    MEASUREMENT = "measurement"
    DRUG_EXPOSURE = "drug_exposure"
    DEVICE_EXPOSURE = "device_exposure"


@dataclass(frozen=True)
class NaturalKeys:
    """Business identifier and source logical id of a FHIR resource.

    Attributes:
        logical_id: FHIR id with its resource type prefix (e.g. "con-123").
        identifier: First identifier value, prefixed like the logical id.
    """

    logical_id: str | None = None
    identifier: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.logical_id and not self.identifier

    def __str__(self) -> str:
        return self.identifier or self.logical_id or "<no key>"


@dataclass(frozen=True)
class ClinicalCoding:
    """One FHIR Coding.

    Attributes:
        system: Code system URI.
        code: Code value.
        version: Code system version (e.g. "2021" for ICD-10-GM).
        display: Human readable text.
        extensions: (url, code) pairs of valueCoding extensions on the coding.
        attributes: (key, value) pairs split off a ``code:{k=v}`` code.
    """

    system: str | None
    code: str
    version: str | None = None
    display: str | None = None
    extensions: tuple[tuple[str, str], ...] = ()
    attributes: tuple[tuple[str, str], ...] = ()

    def extension_code(self, url: str) -> str | None:
        """Return the code of the first extension with the given url."""
        for ext_url, code in self.extensions:
            if ext_url == url:
                return code
        return None


@dataclass(frozen=True)
class Concept:
    """OMOP concept with its validity window."""

    concept_id: int
    concept_code: str
    domain_id: str
    vocabulary_id: str
    valid_start: date
    valid_end: date

    def is_valid_on(self, as_of: date) -> bool:
        return self.valid_start <= as_of <= self.valid_end


@dataclass(frozen=True)
class CustomConcept:
    """source_to_concept_map entry of a local vocabulary."""

    source_code: str
    source_vocabulary_id: str
    target_concept_id: int


@dataclass(frozen=True)
class CrosswalkEntry:
    """Mapping from a source code to a standard concept.

    The validity window is the source code's window.
    """

    source_code: str
    source_vocabulary_id: str
    source_concept_id: int
    target_concept_id: int
    domain_id: str
    valid_start: date
    valid_end: date
    variant: LookupVariant = LookupVariant.CODE_STANDARD

    def is_valid_on(self, as_of: date) -> bool:
        return self.valid_start <= as_of <= self.valid_end


@dataclass(frozen=True)
class ResourceOnset:
    """Start and end of a clinical event."""

    start_datetime: datetime | None = None
    end_datetime: datetime | None = None

    @property
    def start_date(self) -> date | None:
        return self.start_datetime.date() if self.start_datetime else None

    @property
    def end_date(self) -> date | None:
        return self.end_datetime.date() if self.end_datetime else None


@dataclass(frozen=True)
class ClinicalFact:
    """One row for an OMOP fact table.

    Column names are generic; the output store translates them into the
    table specific names (``condition_concept_id``, ``drug_source_value``...).
    """

    table: FactTable
    person_id: int
    visit_occurrence_id: int | None
    concept_id: int
    source_concept_id: int | None
    source_value: str | None
    type_concept_id: int
    natural_keys: NaturalKeys
    start_datetime: datetime | None = None
    end_datetime: datetime | None = None
    status_concept_id: int | None = None
    status_source_value: str | None = None
    value_as_number: Decimal | None = None
    value_as_string: str | None = None
    value_as_concept_id: int | None = None
    unit_concept_id: int | None = None
    unit_source_value: str | None = None
    qualifier_concept_id: int | None = None
    qualifier_source_value: str | None = None
    route_concept_id: int | None = None
    route_source_value: str | None = None
    quantity: Decimal | None = None


@dataclass(frozen=True)
class DeferredLink:
    """Relationship descriptor resolved after persistence.

    Attributes:
        type_tag: Resource type that produced the link (e.g. "CONDITION").
        data_one: Left side, usually "<source value>:<domain or field id>".
        data_two: Right side.
        target_table: Kind of relationship, selects the resolution query.
        owner_ref: Surrogate id known at mapping time (person id) or 0.
        natural_keys: Natural keys of the owning resource.
    """

    type_tag: str
    data_one: str | None
    data_two: str | None
    target_table: str
    owner_ref: int
    natural_keys: NaturalKeys


@dataclass(frozen=True)
class PersonRecord:
    """Demographics of one Patient, written to ``person``.

    The store upserts by natural keys, so ``person_id`` is not part of the
    record.
    """

    natural_keys: NaturalKeys
    year_of_birth: int
    month_of_birth: int | None = None
    day_of_birth: int | None = None
    gender_concept_id: int = 0
    gender_source_value: str | None = None
    race_concept_id: int = 0
    race_source_concept_id: int | None = None
    race_source_value: str | None = None
    ethnicity_concept_id: int = 0
    ethnicity_source_concept_id: int | None = None
    ethnicity_source_value: str | None = None
    person_source_value: str | None = None


@dataclass(frozen=True)
class VisitRecord:
    """One Encounter, written to ``visit_occurrence``."""

    natural_keys: NaturalKeys
    person_id: int
    visit_concept_id: int
    visit_type_concept_id: int
    start_datetime: datetime
    end_datetime: datetime | None = None
    visit_source_value: str | None = None


@dataclass(frozen=True)
class OutputBundle:
    """Everything mapped from one resource.

    Clinical resources fill ``facts``; a Patient fills ``person`` and an
    Encounter fills ``visit``. Deferred links may come with either.
    """

    natural_keys: NaturalKeys
    facts: dict[FactTable, tuple[ClinicalFact, ...]] = field(default_factory=dict)
    links: tuple[DeferredLink, ...] = ()
    person: PersonRecord | None = None
    visit: VisitRecord | None = None

    @classmethod
    def build(
        cls,
        natural_keys: NaturalKeys,
        facts: list[ClinicalFact],
        links: list[DeferredLink],
    ) -> "OutputBundle":
        """Group facts by table, keeping emission order inside each table."""
        grouped: dict[FactTable, list[ClinicalFact]] = {}
        for fact in facts:
            grouped.setdefault(fact.table, []).append(fact)
        return cls(
            natural_keys=natural_keys,
            facts={table: tuple(rows) for table, rows in grouped.items()},
            links=tuple(links),
        )

    def facts_for(self, table: FactTable) -> tuple[ClinicalFact, ...]:
        return self.facts.get(table, ())

    def all_facts(self) -> list[ClinicalFact]:
        return [fact for rows in self.facts.values() for fact in rows]

    @property
    def fact_count(self) -> int:
        return sum(len(rows) for rows in self.facts.values())
