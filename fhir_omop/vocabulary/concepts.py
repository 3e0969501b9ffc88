"""Concept Resolver.

Resolves FHIR codings to OMOP concepts and crosswalk entries, honoring the
effective-dated validity window of the reference data. A miss is never an
exception: lookups answer with the ``NO_MATCH`` sentinel (or an empty list
for crosswalk lookups).

Composite codes must be split before resolution:

    ICD-10-GM   "I10 Z.09"            -> "I10", "Z.09" (primary, secondary)
    SNOMED      "1234+5678"           -> "1234", "5678"
    any system  "1234:{363713009=52101004}" -> "1234" with attribute
                                               ("363713009", "52101004")

Usage:
    from fhir_omop.vocabulary.concepts import NO_MATCH, ConceptResolver, SplitRule

    resolver = ConceptResolver(reference_data, FhirSystems())
    for component in resolver.split(coding, SplitRule.SPACE):
        concept = resolver.resolve(component, date(2021, 5, 1))
        if concept is NO_MATCH:
            ...
"""

import logging
import re
from datetime import date
from enum import Enum

from fhir_omop.constants import (
    CONCEPT_NO_MATCHING_CONCEPT,
    STAR_CROSS_CODING_REGEX,
    VOCABULARY_ICD10GM,
)
from fhir_omop.fhir.systems import FhirSystems
from fhir_omop.models.vocabulary import LookupVariant
from fhir_omop.records import ClinicalCoding, Concept, CrosswalkEntry, CustomConcept
from fhir_omop.vocabulary.reference_data import ReferenceData

logger = logging.getLogger(__name__)

_ATTRIBUTE_SUFFIX = re.compile(r"^(?P<code>[^:]+):\{(?P<attributes>.*)\}$")
_VERSION_YEAR = re.compile(r"^\d{4}$")
_STAR_CROSS = re.compile(STAR_CROSS_CODING_REGEX)


class _NoMatch:
    """Sentinel for "no concept valid for this code and date"."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_MATCH"


NO_MATCH = _NoMatch()


class SplitRule(str, Enum):
    """How a composite code is fanned out into components."""

    NONE = "none"
    SPACE = "space"  # ICD-10-GM primary/secondary pairs, at most two parts
    PLUS = "plus"  # SNOMED post-coordinated expressions


# ============================================================================
# Code helpers
# ============================================================================


def effective_date(version: str | None, onset: date) -> date:
    """Date a code is checked against.

    A code system version given as a year other than the onset year pins
    the lookup to the last day of that version year.
    """
    if not version or not _VERSION_YEAR.match(version.strip()):
        return onset
    version_year = int(version.strip())
    if version_year == onset.year:
        return onset
    return date(version_year, 12, 31)


def clean_code(code: str, vocabulary_id: str | None) -> str:
    """Strip ICD-10-GM cross/star coding marks."""
    if vocabulary_id == VOCABULARY_ICD10GM:
        return _STAR_CROSS.sub("", code).strip()
    return code.strip()


def split_attributes(coding: ClinicalCoding) -> ClinicalCoding:
    """Move a ``code:{k=v,...}`` suffix into ``coding.attributes``."""
    match = _ATTRIBUTE_SUFFIX.match(coding.code)
    if not match:
        return coding

    attributes = []
    for pair in match.group("attributes").split(","):
        key, sep, value = pair.partition("=")
        if sep and value.strip():
            attributes.append((key.strip(), value.strip()))

    return ClinicalCoding(
        system=coding.system,
        code=match.group("code").strip(),
        version=coding.version,
        display=coding.display,
        extensions=coding.extensions,
        attributes=tuple(attributes),
    )


def interpretation_coding(coding: ClinicalCoding) -> ClinicalCoding | None:
    """Coding of the first attribute value (same system and version)."""
    if not coding.attributes:
        return None
    _, value = coding.attributes[0]
    return ClinicalCoding(system=coding.system, code=value, version=coding.version)


# ============================================================================
# Resolver
# ============================================================================


class ConceptResolver:
    """Resolve codings against the Reference Data Cache.

    Holds no mutable state of its own; safe to share between workers.
    """

    def __init__(self, reference_data: ReferenceData, systems: FhirSystems | None = None):
        """Initialize the resolver.

        Args:
            reference_data: Active cache strategy (preloaded or on-demand).
            systems: System URI to vocabulary table.
        """
        self.reference_data = reference_data
        self.systems = systems or FhirSystems()

    def vocabulary_for(self, coding: ClinicalCoding | None) -> str | None:
        """Vocabulary id of a coding's system, None if unknown."""
        if coding is None:
            return None
        return self.systems.vocabulary_for(coding.system)

    def split(self, coding: ClinicalCoding, rule: SplitRule = SplitRule.NONE) -> list[ClinicalCoding]:
        """Split a composite code into independent component codings.

        Components keep the parent's system, version and extensions. Empty
        components are dropped; input order is preserved.
        """
        raw = coding.code.strip()
        if rule is SplitRule.SPACE:
            parts = raw.split(" ", 1)
        elif rule is SplitRule.PLUS:
            parts = raw.split("+")
        else:
            parts = [raw]

        vocabulary_id = self.vocabulary_for(coding)
        components = []
        for part in parts:
            part = part.strip()
            if rule is SplitRule.SPACE:
                part = clean_code(part, vocabulary_id)
            if not part:
                continue
            component = ClinicalCoding(
                system=coding.system,
                code=part,
                version=coding.version,
                display=coding.display if len(parts) == 1 else None,
                extensions=coding.extensions,
            )
            components.append(split_attributes(component))
        return components

    def resolve(self, coding: ClinicalCoding | None, as_of: date | None) -> Concept | _NoMatch:
        """Resolve a coding to the concept valid on ``as_of``.

        Args:
            coding: A single (already split) coding.
            as_of: Onset date of the resource. None skips the validity
                check and takes the most recent concept version.

        Returns:
            The concept with the latest ``valid_start`` whose window contains
            the effective date, or NO_MATCH.
        """
        if coding is None or not coding.code:
            return NO_MATCH
        vocabulary_id = self.vocabulary_for(coding)
        if vocabulary_id is None:
            logger.debug(f"No vocabulary for system {coding.system!r}")
            return NO_MATCH

        code = clean_code(coding.code, vocabulary_id)
        candidates = self.reference_data.concepts(code, vocabulary_id)
        if not candidates:
            logger.info(f"Code [{code}] of {vocabulary_id} is not mapped in OMOP")
            return NO_MATCH

        if as_of is None:
            return candidates[0]

        valid_on = effective_date(coding.version, as_of)
        for concept in candidates:
            if concept.is_valid_on(valid_on):
                return concept

        logger.info(f"Code [{code}] of {vocabulary_id} is not valid on {valid_on}")
        return NO_MATCH

    def resolve_crosswalk(
        self,
        coding: ClinicalCoding | None,
        as_of: date | None,
        variant: LookupVariant = LookupVariant.CODE_STANDARD,
    ) -> list[CrosswalkEntry]:
        """Resolve a source coding to its standard targets.

        Returns one entry per distinct target concept valid on the effective
        date (latest ``valid_start`` wins per target). A code without any
        crosswalk rows falls back to its own concept, mapped to concept 0
        within the source concept's domain. An empty list means no match.
        """
        if coding is None or not coding.code:
            return []
        vocabulary_id = self.vocabulary_for(coding)
        if vocabulary_id is None:
            return []

        code = clean_code(coding.code, vocabulary_id)
        entries = self.reference_data.crosswalk(code, vocabulary_id, variant)

        if not entries:
            concept = self.resolve(coding, as_of)
            if concept is NO_MATCH:
                return []
            return [
                CrosswalkEntry(
                    source_code=code,
                    source_vocabulary_id=vocabulary_id,
                    source_concept_id=concept.concept_id,
                    target_concept_id=CONCEPT_NO_MATCHING_CONCEPT,
                    domain_id=concept.domain_id,
                    valid_start=concept.valid_start,
                    valid_end=concept.valid_end,
                    variant=variant,
                )
            ]

        if as_of is not None:
            valid_on = effective_date(coding.version, as_of)
            entries = [entry for entry in entries if entry.is_valid_on(valid_on)]
            if not entries:
                logger.info(f"Code [{code}] of {vocabulary_id} has no crosswalk valid on {valid_on}")
                return []

        resolved: dict[int, CrosswalkEntry] = {}
        for entry in entries:
            resolved.setdefault(entry.target_concept_id, entry)
        return list(resolved.values())

    def resolve_custom(self, code: str | None, vocabulary_id: str) -> CustomConcept | _NoMatch:
        """Resolve a local code through source_to_concept_map.

        No validity window applies to local vocabularies.
        """
        if not code:
            return NO_MATCH
        custom = self.reference_data.custom_concept(code.strip(), vocabulary_id)
        return custom if custom is not None else NO_MATCH
