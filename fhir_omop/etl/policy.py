"""Per-resource-type mapping policies.

A policy is pure data: which status values are acceptable, where the onset
and the codes live, in which order vocabularies take precedence, how
composite codes are split, and which annotators and secondary extractors
run. The mapper itself knows nothing about individual resource types.

Usage:
    from fhir_omop.etl.policy import DEFAULT_POLICIES

    policy = DEFAULT_POLICIES["Condition"]
    policy.coding_rules[0].vocabulary_id  # "OrphaCode"
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from fhir_omop.constants import (
    CONCEPT_EHR,
    FHIR_RESOURCE_ACCEPTABLE_EVENT_STATUS_LIST,
    FHIR_RESOURCE_CONDITION_ACCEPTABLE_VERIFICATION_STATUS_LIST,
    FHIR_RESOURCE_DIAGNOSTIC_REPORT_ACCEPTABLE_STATUS_LIST,
    FHIR_RESOURCE_IMMUNIZATION_ACCEPTABLE_STATUS_LIST,
    FHIR_RESOURCE_MEDICATION_STATEMENT_ACCEPTABLE_STATUS_LIST,
    FHIR_RESOURCE_OBSERVATION_ACCEPTABLE_STATUS_LIST,
    FHIR_RESOURCE_OBSERVATION_HISTORY_OF_TRAVEL_CODES,
    OMOP_DOMAIN_PROCEDURE,
    SOURCE_VOCABULARY_ID_DIAGNOSTIC_REPORT_CATEGORY,
    SOURCE_VOCABULARY_ID_OBSERVATION_CATEGORY,
    SOURCE_VOCABULARY_ID_PROCEDURE_DICOM,
    VOCABULARY_ATC,
    VOCABULARY_ICD10GM,
    VOCABULARY_LOINC,
    VOCABULARY_OPS,
    VOCABULARY_ORPHA,
    VOCABULARY_SNOMED,
)
from fhir_omop.etl.onset import OnsetField, instant, period
from fhir_omop.etl.routing import DEFAULT_DOMAIN_TABLES
from fhir_omop.etl.secondary import (
    Annotator,
    SecondaryExtractor,
    category_type_concept,
    condition_severity,
    condition_site_localization,
    condition_stage,
    diagnostic_confidence,
    dose_and_route,
    observation_value,
    procedure_body_site,
)
from fhir_omop.fhir.resource import first_coding, primitive
from fhir_omop.models.vocabulary import LookupVariant
from fhir_omop.records import FactTable
from fhir_omop.vocabulary.concepts import SplitRule


class LookupKind(str, Enum):
    """Where a vocabulary's codes are resolved."""

    CONCEPT = "concept"  # concept table, code is its own target
    CROSSWALK = "crosswalk"  # standard_domain_lookup, source -> standard
    CUSTOM = "custom"  # source_to_concept_map, local vocabularies


@dataclass(frozen=True)
class CodingRule:
    """How codes of one vocabulary are resolved for a resource type.

    Attributes:
        vocabulary_id: Vocabulary the rule applies to.
        lookup: Table the code is resolved against.
        variant: Crosswalk variant for CROSSWALK lookups.
        split: Composite code split rule.
        pair_components: Emit a primary/secondary link when exactly two
            components resolve.
        custom_domain: Domain of CUSTOM lookups (source_to_concept_map rows
            carry no domain).
    """

    vocabulary_id: str
    lookup: LookupKind = LookupKind.CONCEPT
    variant: LookupVariant = LookupVariant.CODE_STANDARD
    split: SplitRule = SplitRule.NONE
    pair_components: bool = False
    custom_domain: str | None = None


@dataclass(frozen=True)
class DualCoding:
    """A local and an international coding of the same fact.

    When both resolve and the local one is selected, the standard code's
    concept replaces the local crosswalk target; the local code's domain
    still routes the fact.
    """

    local_vocabulary: str
    standard_vocabulary: str
    substitute_standard: bool = True


@dataclass(frozen=True)
class ConclusionRule:
    """Fan-out of a report's conclusion codes onto its facts."""

    path: str = "conclusionCode"
    vocabulary_id: str = VOCABULARY_SNOMED
    split: SplitRule = SplitRule.PLUS


StatusAccessor = Callable[[dict[str, Any]], str | None]


def status_field(resource: dict[str, Any]) -> str | None:
    return primitive(resource, "status")


def verification_status(resource: dict[str, Any]) -> str | None:
    coding = first_coding(resource.get("verificationStatus"))
    return coding.code if coding else None


@dataclass(frozen=True)
class ResourcePolicy:
    """Everything type specific the mapper needs for one resource type."""

    resource_type: str
    acceptable_statuses: frozenset[str]
    onset_fields: tuple[OnsetField, ...]
    coding_rules: tuple[CodingRule, ...]
    status_of: StatusAccessor = status_field
    allow_missing_status: bool = False
    code_paths: tuple[str, ...] = ("code",)
    dual_coding: DualCoding | None = None
    domain_tables: Mapping[str, FactTable] = field(default_factory=lambda: dict(DEFAULT_DOMAIN_TABLES))
    date_free_codes: frozenset[str] = frozenset()
    type_concept_id: int = CONCEPT_EHR
    annotators: tuple[Annotator, ...] = ()
    secondary: tuple[SecondaryExtractor, ...] = ()
    conclusion: ConclusionRule | None = None

    @property
    def type_tag(self) -> str:
        return self.resource_type.upper()

    @property
    def output_tables(self) -> list[FactTable]:
        """Fact tables rows of this type can end up in, in routing order."""
        tables = list(dict.fromkeys(self.domain_tables.values()))
        if self.secondary and FactTable.OBSERVATION not in tables:
            tables.append(FactTable.OBSERVATION)
        return tables

    def rule_for(self, vocabulary_id: str) -> CodingRule | None:
        for rule in self.coding_rules:
            if rule.vocabulary_id == vocabulary_id:
                return rule
        return None


# ============================================================================
# Default policies
# ============================================================================

CONDITION_POLICY = ResourcePolicy(
    resource_type="Condition",
    acceptable_statuses=frozenset(FHIR_RESOURCE_CONDITION_ACCEPTABLE_VERIFICATION_STATUS_LIST),
    status_of=verification_status,
    allow_missing_status=True,
    onset_fields=(instant("onsetDateTime"), period("onsetPeriod"), instant("recordedDate")),
    coding_rules=(
        CodingRule(VOCABULARY_ORPHA, LookupKind.CROSSWALK),
        CodingRule(
            VOCABULARY_ICD10GM,
            LookupKind.CROSSWALK,
            split=SplitRule.SPACE,
            pair_components=True,
        ),
        CodingRule(VOCABULARY_SNOMED),
    ),
    dual_coding=DualCoding(VOCABULARY_ICD10GM, VOCABULARY_SNOMED),
    annotators=(diagnostic_confidence,),
    secondary=(condition_site_localization, condition_severity, condition_stage),
)

# OPS and SNOMED both name the procedure; the OPS target is kept as mapped
PROCEDURE_POLICY = ResourcePolicy(
    resource_type="Procedure",
    acceptable_statuses=frozenset(FHIR_RESOURCE_ACCEPTABLE_EVENT_STATUS_LIST),
    onset_fields=(instant("performedDateTime"), period("performedPeriod")),
    coding_rules=(
        CodingRule(VOCABULARY_OPS, LookupKind.CROSSWALK),
        CodingRule(
            SOURCE_VOCABULARY_ID_PROCEDURE_DICOM,
            LookupKind.CUSTOM,
            custom_domain=OMOP_DOMAIN_PROCEDURE,
        ),
        CodingRule(VOCABULARY_SNOMED),
    ),
    dual_coding=DualCoding(VOCABULARY_OPS, VOCABULARY_SNOMED, substitute_standard=False),
    annotators=(procedure_body_site,),
)

OBSERVATION_POLICY = ResourcePolicy(
    resource_type="Observation",
    acceptable_statuses=frozenset(FHIR_RESOURCE_OBSERVATION_ACCEPTABLE_STATUS_LIST),
    onset_fields=(
        instant("effectiveDateTime"),
        period("effectivePeriod"),
        instant("effectiveInstant"),
        instant("issued"),
    ),
    coding_rules=(
        CodingRule(VOCABULARY_LOINC),
        CodingRule(VOCABULARY_SNOMED, split=SplitRule.PLUS),
    ),
    date_free_codes=frozenset(FHIR_RESOURCE_OBSERVATION_HISTORY_OF_TRAVEL_CODES),
    annotators=(category_type_concept(SOURCE_VOCABULARY_ID_OBSERVATION_CATEGORY), observation_value),
)

IMMUNIZATION_POLICY = ResourcePolicy(
    resource_type="Immunization",
    acceptable_statuses=frozenset(FHIR_RESOURCE_IMMUNIZATION_ACCEPTABLE_STATUS_LIST),
    onset_fields=(instant("occurrenceDateTime"), instant("recorded")),
    code_paths=("vaccineCode",),
    coding_rules=(
        CodingRule(VOCABULARY_ATC, LookupKind.CROSSWALK, variant=LookupVariant.HIERARCHY_STANDARD),
        CodingRule(VOCABULARY_SNOMED, split=SplitRule.PLUS),
    ),
    dual_coding=DualCoding(VOCABULARY_ATC, VOCABULARY_SNOMED),
    annotators=(dose_and_route("doseQuantity", "route"),),
)

MEDICATION_ADMINISTRATION_POLICY = ResourcePolicy(
    resource_type="MedicationAdministration",
    acceptable_statuses=frozenset(FHIR_RESOURCE_ACCEPTABLE_EVENT_STATUS_LIST),
    onset_fields=(instant("effectiveDateTime"), period("effectivePeriod")),
    code_paths=("medicationCodeableConcept",),
    coding_rules=(
        CodingRule(VOCABULARY_ATC, LookupKind.CROSSWALK, variant=LookupVariant.HIERARCHY_STANDARD),
    ),
    annotators=(dose_and_route("dosage.dose", "dosage.route"),),
)

MEDICATION_STATEMENT_POLICY = ResourcePolicy(
    resource_type="MedicationStatement",
    acceptable_statuses=frozenset(FHIR_RESOURCE_MEDICATION_STATEMENT_ACCEPTABLE_STATUS_LIST),
    onset_fields=(
        instant("effectiveDateTime"),
        period("effectivePeriod"),
        instant("dateAsserted"),
    ),
    code_paths=("medicationCodeableConcept",),
    coding_rules=(
        CodingRule(VOCABULARY_ATC, LookupKind.CROSSWALK, variant=LookupVariant.HIERARCHY_STANDARD),
    ),
    annotators=(dose_and_route("dosage.doseAndRate.doseQuantity", "dosage.route"),),
)

DIAGNOSTIC_REPORT_POLICY = ResourcePolicy(
    resource_type="DiagnosticReport",
    acceptable_statuses=frozenset(FHIR_RESOURCE_DIAGNOSTIC_REPORT_ACCEPTABLE_STATUS_LIST),
    onset_fields=(instant("effectiveDateTime"), period("effectivePeriod"), instant("issued")),
    coding_rules=(CodingRule(VOCABULARY_LOINC),),
    conclusion=ConclusionRule(),
    annotators=(category_type_concept(SOURCE_VOCABULARY_ID_DIAGNOSTIC_REPORT_CATEGORY),),
)

DEFAULT_POLICIES: dict[str, ResourcePolicy] = {
    policy.resource_type: policy
    for policy in (
        CONDITION_POLICY,
        PROCEDURE_POLICY,
        OBSERVATION_POLICY,
        IMMUNIZATION_POLICY,
        MEDICATION_ADMINISTRATION_POLICY,
        MEDICATION_STATEMENT_POLICY,
        DIAGNOSTIC_REPORT_POLICY,
    )
}
