"""FHIR resource helpers and code system table."""

from fhir_omop.fhir.resource import (
    codings,
    encounter_keys,
    first_coding,
    natural_keys,
    parse_datetime,
    parse_period,
    reference_keys,
    subject_keys,
    type_prefix,
)
from fhir_omop.fhir.systems import DEFAULT_SYSTEM_VOCABULARY_MAP, FhirSystems

__all__ = [
    "DEFAULT_SYSTEM_VOCABULARY_MAP",
    "FhirSystems",
    "codings",
    "encounter_keys",
    "first_coding",
    "natural_keys",
    "parse_datetime",
    "parse_period",
    "reference_keys",
    "subject_keys",
    "type_prefix",
]
