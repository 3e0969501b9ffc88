"""Reference data cache and the concept/identity resolvers built on it."""

from fhir_omop.vocabulary.concepts import NO_MATCH, ConceptResolver, SplitRule, effective_date
from fhir_omop.vocabulary.identity import IdentityResolver
from fhir_omop.vocabulary.reference_data import (
    IdentityKind,
    IdentityRecord,
    OnDemandReferenceData,
    PreloadedReferenceData,
    ReferenceData,
    build_reference_data,
    preloaded,
)

__all__ = [
    "NO_MATCH",
    "ConceptResolver",
    "SplitRule",
    "effective_date",
    "IdentityResolver",
    "IdentityKind",
    "IdentityRecord",
    "ReferenceData",
    "PreloadedReferenceData",
    "OnDemandReferenceData",
    "build_reference_data",
    "preloaded",
]
