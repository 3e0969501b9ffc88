"""Per-resource mapping state handed to annotators and secondary extractors."""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from typing import Any

from fhir_omop.records import ClinicalCoding, NaturalKeys, ResourceOnset
from fhir_omop.vocabulary.concepts import ConceptResolver


@dataclass(frozen=True)
class Resolution:
    """One resolved component of a clinical coding.

    Attributes:
        coding: The (split) component coding.
        vocabulary_id: Vocabulary of the component.
        source_concept_id: Concept id of the source code (0 if local).
        target_concept_id: Standard concept id written to the fact.
        domain_id: Domain that routes the fact.
        source_value: Value written to ``*_source_value``.
        qualifier_concept_id: Interpretation/modifier concept, if any.
        qualifier_source_value: Code of the qualifier.
    """

    coding: ClinicalCoding
    vocabulary_id: str
    source_concept_id: int | None
    target_concept_id: int
    domain_id: str
    source_value: str
    qualifier_concept_id: int | None = None
    qualifier_source_value: str | None = None

    @property
    def link_descriptor(self) -> str:
        """"<code>:<domain>" side of a pairing link."""
        return f"{self.coding.code}:{self.domain_id}"


@dataclass(frozen=True)
class MappingContext:
    """What is known about a resource once identity and onset are resolved."""

    resource: dict[str, Any]
    resource_type: str
    natural_keys: NaturalKeys
    person_id: int
    visit_occurrence_id: int | None
    onset: ResourceOnset
    resolver: ConceptResolver
    codings: Mapping[str, ClinicalCoding] | None = None
    selected_vocabulary: str | None = None
    resolutions: tuple[Resolution, ...] = ()

    @property
    def as_of(self) -> date | None:
        return self.onset.start_date

    @property
    def type_tag(self) -> str:
        return self.resource_type.upper()

    def coding_of(self, vocabulary_id: str) -> ClinicalCoding | None:
        """First coding of the resource in the given vocabulary."""
        return (self.codings or {}).get(vocabulary_id)
