"""FHIR resource to OMOP mapping.

The generic ``ResourceMapper`` runs the same ten-step algorithm for every
resource type; per-type behavior lives in ``ResourcePolicy`` objects.
Patients and Encounters are entities rather than facts and have mappers
of their own.
"""

from fhir_omop.etl.demographics import EncounterMapper, PatientMapper
from fhir_omop.etl.errors import (
    InvalidDeferredLinkError,
    MappingError,
    SkipReason,
    UnsupportedDomainError,
    UnsupportedResourceTypeError,
)
from fhir_omop.etl.links import DeferredLinkRegistry, pairing_links
from fhir_omop.etl.mapper import MapperRegistry, OutputStore, ResourceMapper, build_mappers
from fhir_omop.etl.metrics import MappingMetrics, MetricsSink
from fhir_omop.etl.policy import (
    DEFAULT_POLICIES,
    CodingRule,
    DualCoding,
    LookupKind,
    ResourcePolicy,
)
from fhir_omop.etl.routing import DEFAULT_DOMAIN_TABLES, route
from fhir_omop.etl.store import SqlOutputStore

__all__ = [
    # Errors
    "MappingError",
    "SkipReason",
    "UnsupportedDomainError",
    "UnsupportedResourceTypeError",
    "InvalidDeferredLinkError",
    # Mapping
    "ResourceMapper",
    "MapperRegistry",
    "PatientMapper",
    "EncounterMapper",
    "build_mappers",
    "ResourcePolicy",
    "CodingRule",
    "DualCoding",
    "LookupKind",
    "DEFAULT_POLICIES",
    "DEFAULT_DOMAIN_TABLES",
    "route",
    # Links and metrics
    "DeferredLinkRegistry",
    "pairing_links",
    "MappingMetrics",
    "MetricsSink",
    # Output
    "OutputStore",
    "SqlOutputStore",
]
