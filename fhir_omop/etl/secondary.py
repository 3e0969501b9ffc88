"""Annotations and secondary rows derived from a resource.

Two kinds of helpers hang off a resource policy:

- Annotators enrich every primary fact with extra columns (diagnostic
  confidence, procedure body site, dose and route, observation values).
  They take the mapping context and the resolution the fact came from, and
  return a dict of ``ClinicalFact`` field overrides.
- Secondary extractors emit additional Observation rows for qualifiers of a
  Condition (site localization, severity, stage), each with a deferred link
  back to the condition once surrogate ids exist.

Neither kind fails a resource: a qualifier that cannot be resolved is left out.
"""

import logging
from collections.abc import Callable
from typing import Any

from fhir_omop.constants import (
    CONCEPT_EHR,
    CONCEPT_NO_MATCHING_CONCEPT,
    CONCEPT_SEVERITY,
    CONCEPT_STAGE,
    LINK_TABLE_SEVERITY,
    LINK_TABLE_SITE_LOCALIZATION,
    LINK_TABLE_STAGE,
    OBSERVATION_CONCEPT_FIELD_ID,
    SOURCE_VOCABULARY_ID_DIAGNOSTIC_CONFIDENCE,
    SOURCE_VOCABULARY_ID_ICD_LOCALIZATION,
    SOURCE_VOCABULARY_ID_PROCEDURE_BODYSITE,
    SOURCE_VOCABULARY_ID_ROUTE,
    VOCABULARY_ICD10GM,
    VOCABULARY_OPS,
    VOCABULARY_SNOMED,
)
from fhir_omop.etl.context import MappingContext, Resolution
from fhir_omop.fhir.resource import codings, first_coding, parse_decimal, primitive, resolve_path
from fhir_omop.fhir.systems import (
    EXTENSION_DIAGNOSTIC_CONFIDENCE,
    EXTENSION_SITE_LOCALIZATION,
    SYSTEM_SNOMED,
    SYSTEM_UCUM,
)
from fhir_omop.records import ClinicalCoding, ClinicalFact, DeferredLink, FactTable
from fhir_omop.vocabulary.concepts import NO_MATCH

logger = logging.getLogger(__name__)

Annotator = Callable[[MappingContext, Resolution], dict[str, Any]]
SecondaryExtractor = Callable[[MappingContext], tuple[list[ClinicalFact], list[DeferredLink]]]


def _coding_of_vocabulary(
    ctx: MappingContext, codeable: Any, vocabulary_id: str
) -> ClinicalCoding | None:
    concepts = codeable if isinstance(codeable, list) else [codeable]
    for concept in concepts:
        if not isinstance(concept, dict):
            continue
        for coding in codings(concept):
            if ctx.resolver.vocabulary_for(coding) == vocabulary_id:
                return coding
    return None


def _custom_concept_id(ctx: MappingContext, code: str | None, vocabulary_id: str) -> int | None:
    custom = ctx.resolver.resolve_custom(code, vocabulary_id)
    if custom is NO_MATCH:
        return None
    return custom.target_concept_id


# ============================================================================
# Annotators
# ============================================================================


def diagnostic_confidence(ctx: MappingContext, resolution: Resolution) -> dict[str, Any]:
    """Condition status from the ICD-10-GM diagnostic confidence extension."""
    icd_coding = ctx.coding_of(VOCABULARY_ICD10GM) or resolution.coding
    code = icd_coding.extension_code(EXTENSION_DIAGNOSTIC_CONFIDENCE)
    if not code:
        return {}
    return {
        "status_concept_id": _custom_concept_id(
            ctx, code, SOURCE_VOCABULARY_ID_DIAGNOSTIC_CONFIDENCE
        ),
        "status_source_value": code,
    }


def procedure_body_site(ctx: MappingContext, resolution: Resolution) -> dict[str, Any]:
    """Procedure modifier from the OPS side extension or the bodySite element."""
    ops_coding = ctx.coding_of(VOCABULARY_OPS) or resolution.coding
    code = ops_coding.extension_code(EXTENSION_SITE_LOCALIZATION)
    if not code:
        coding = _coding_of_vocabulary(
            ctx, ctx.resource.get("bodySite"), SOURCE_VOCABULARY_ID_PROCEDURE_BODYSITE
        )
        code = coding.code if coding else None
    if not code:
        return {}
    return {
        "qualifier_concept_id": _custom_concept_id(
            ctx, code, SOURCE_VOCABULARY_ID_PROCEDURE_BODYSITE
        ),
        "qualifier_source_value": code,
    }


def dose_and_route(dose_path: str, route_path: str) -> Annotator:
    """Build an annotator reading a Quantity dose and an EDQM route."""

    def annotate(ctx: MappingContext, resolution: Resolution) -> dict[str, Any]:
        overrides: dict[str, Any] = {}
        dose = resolve_path(ctx.resource, dose_path)
        if isinstance(dose, dict):
            overrides["quantity"] = parse_decimal(primitive(dose, "value"))
            overrides["unit_source_value"] = primitive(dose, "code") or primitive(dose, "unit")

        route = _coding_of_vocabulary(
            ctx, resolve_path(ctx.resource, route_path), SOURCE_VOCABULARY_ID_ROUTE
        )
        if route is not None:
            overrides["route_concept_id"] = _custom_concept_id(
                ctx, route.code, SOURCE_VOCABULARY_ID_ROUTE
            )
            overrides["route_source_value"] = route.code
        return overrides

    return annotate


def observation_value(ctx: MappingContext, resolution: Resolution) -> dict[str, Any]:
    """Value columns of an Observation (quantity, coded or string value)."""
    resource = ctx.resource
    quantity = resource.get("valueQuantity")
    if isinstance(quantity, dict):
        unit_code = primitive(quantity, "code") or primitive(quantity, "unit")
        unit_concept_id = None
        if unit_code:
            unit = ctx.resolver.resolve(
                ClinicalCoding(system=primitive(quantity, "system") or SYSTEM_UCUM, code=unit_code),
                ctx.as_of,
            )
            unit_concept_id = unit.concept_id if unit is not NO_MATCH else CONCEPT_NO_MATCHING_CONCEPT
        return {
            "value_as_number": parse_decimal(primitive(quantity, "value")),
            "unit_concept_id": unit_concept_id,
            "unit_source_value": unit_code,
        }

    value_coding = first_coding(resource.get("valueCodeableConcept"))
    if value_coding is not None:
        concept = ctx.resolver.resolve(value_coding, ctx.as_of)
        return {
            "value_as_concept_id": (
                concept.concept_id if concept is not NO_MATCH else CONCEPT_NO_MATCHING_CONCEPT
            ),
            "value_as_string": value_coding.code,
        }

    value_string = primitive(resource, "valueString")
    if value_string:
        return {"value_as_string": value_string}
    return {}


def category_type_concept(vocabulary_id: str) -> Annotator:
    """Build an annotator taking the type concept from a category coding."""

    def annotate(ctx: MappingContext, resolution: Resolution) -> dict[str, Any]:
        coding = _coding_of_vocabulary(ctx, ctx.resource.get("category"), vocabulary_id)
        if coding is None:
            return {}
        concept_id = _custom_concept_id(ctx, coding.code, vocabulary_id)
        return {"type_concept_id": concept_id or CONCEPT_EHR}

    return annotate


# ============================================================================
# Condition qualifiers
# ============================================================================


def _qualifier_observation(
    ctx: MappingContext,
    concept_id: int,
    source_value: str,
    target_table: str,
    qualifier_concept_id: int | None = None,
) -> tuple[ClinicalFact, DeferredLink | None]:
    fact = ClinicalFact(
        table=FactTable.OBSERVATION,
        person_id=ctx.person_id,
        visit_occurrence_id=ctx.visit_occurrence_id,
        concept_id=concept_id,
        source_concept_id=concept_id,
        source_value=source_value,
        type_concept_id=CONCEPT_EHR,
        natural_keys=ctx.natural_keys,
        start_datetime=ctx.onset.start_datetime,
        value_as_string=source_value,
        qualifier_concept_id=qualifier_concept_id,
    )

    link = None
    if ctx.selected_vocabulary == VOCABULARY_ICD10GM:
        link = DeferredLink(
            type_tag=ctx.type_tag,
            data_one=f"{source_value}:{OBSERVATION_CONCEPT_FIELD_ID}",
            data_two=str(concept_id),
            target_table=target_table,
            owner_ref=ctx.person_id,
            natural_keys=ctx.natural_keys,
        )
    return fact, link


def _collect(
    pairs: list[tuple[ClinicalFact, DeferredLink | None]],
) -> tuple[list[ClinicalFact], list[DeferredLink]]:
    return [fact for fact, _ in pairs], [link for _, link in pairs if link is not None]


def condition_site_localization(ctx: MappingContext) -> tuple[list[ClinicalFact], list[DeferredLink]]:
    """Body side of a diagnosis.

    The ICD-10-GM side extension ("L", "R", "B") wins over a SNOMED bodySite.
    """
    pairs = []
    icd_coding = ctx.coding_of(VOCABULARY_ICD10GM)
    code = icd_coding.extension_code(EXTENSION_SITE_LOCALIZATION) if icd_coding else None
    if code:
        concept_id = _custom_concept_id(ctx, code, SOURCE_VOCABULARY_ID_ICD_LOCALIZATION)
        if concept_id is not None:
            pairs.append(
                _qualifier_observation(ctx, concept_id, code, LINK_TABLE_SITE_LOCALIZATION)
            )
            return _collect(pairs)
        logger.info(f"Site localization [{code}] of {ctx.natural_keys} is not mapped")

    body_site = first_coding(ctx.resource.get("bodySite"), SYSTEM_SNOMED)
    if body_site is not None:
        concept = ctx.resolver.resolve(body_site, ctx.as_of)
        if concept is not NO_MATCH:
            pairs.append(
                _qualifier_observation(
                    ctx, concept.concept_id, concept.concept_code, LINK_TABLE_SITE_LOCALIZATION
                )
            )
    return _collect(pairs)


def _snomed_qualifier(
    ctx: MappingContext, codeable: Any, qualifier_concept_id: int, target_table: str
) -> tuple[list[ClinicalFact], list[DeferredLink]]:
    coding = _coding_of_vocabulary(ctx, codeable, VOCABULARY_SNOMED)
    if coding is None:
        return [], []
    concept = ctx.resolver.resolve(coding, ctx.as_of)
    if concept is NO_MATCH:
        return [], []
    return _collect(
        [
            _qualifier_observation(
                ctx,
                concept.concept_id,
                concept.concept_code,
                target_table,
                qualifier_concept_id=qualifier_concept_id,
            )
        ]
    )


def condition_severity(ctx: MappingContext) -> tuple[list[ClinicalFact], list[DeferredLink]]:
    return _snomed_qualifier(ctx, ctx.resource.get("severity"), CONCEPT_SEVERITY, LINK_TABLE_SEVERITY)


def condition_stage(ctx: MappingContext) -> tuple[list[ClinicalFact], list[DeferredLink]]:
    summaries = [
        stage.get("summary") for stage in ctx.resource.get("stage") or [] if stage.get("summary")
    ]
    return _snomed_qualifier(ctx, summaries, CONCEPT_STAGE, LINK_TABLE_STAGE)
