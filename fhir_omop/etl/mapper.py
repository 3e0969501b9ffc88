"""Resource Mapper.

One mapping algorithm for every clinical resource type, parameterized by a
``ResourcePolicy``:

    1.  natural keys            (hard skip if neither is present)
    2.  incremental delete      (stop here for a tombstone)
    3.  status allow-list       (hard skip)
    4.  subject -> person_id    (hard skip)
    5.  onset                   (hard skip unless the code is date-free)
    6.  encounter -> visit_id   (soft miss, fact kept with a null visit)
    7.  codings -> concepts     (dual-coding precedence, composite codes)
    8.  domain routing          (unknown domain is fatal)
    9.  annotations and secondary rows
    10. deferred links

Patient and Encounter resources are entities, not facts; they are mapped by
``fhir_omop.etl.demographics``.

Every outcome is reported to the metrics sink; only ``UnsupportedDomainError``
escapes ``map()``.

Usage:
    from fhir_omop.etl.mapper import build_mappers

    mappers = build_mappers(reference_data, metrics=metrics, store=store)
    bundle = mappers.map(resource)
"""

import logging
from collections.abc import Mapping
from dataclasses import replace
from typing import Any, Protocol

from fhir_omop.constants import (
    CONCEPT_NO_MATCHING_CONCEPT,
    LINK_TABLE_PRIMARY_SECONDARY_ICD,
    MAX_SOURCE_VALUE_LENGTH,
)
from fhir_omop.core.config import Settings, settings as default_settings
from fhir_omop.etl.context import MappingContext, Resolution
from fhir_omop.etl.errors import SkipReason, UnsupportedDomainError, UnsupportedResourceTypeError
from fhir_omop.etl.links import DeferredLinkRegistry, pairing_links
from fhir_omop.etl.metrics import MappingMetrics, MetricsSink
from fhir_omop.etl.onset import resolve_onset
from fhir_omop.etl.policy import DEFAULT_POLICIES, CodingRule, LookupKind, ResourcePolicy
from fhir_omop.etl.routing import route
from fhir_omop.fhir.resource import (
    codings,
    encounter_keys,
    natural_keys,
    resolve_path,
    subject_keys,
)
from fhir_omop.fhir.systems import FhirSystems
from fhir_omop.records import ClinicalCoding, ClinicalFact, FactTable, NaturalKeys, OutputBundle
from fhir_omop.vocabulary.concepts import NO_MATCH, ConceptResolver, interpretation_coding
from fhir_omop.vocabulary.identity import IdentityResolver
from fhir_omop.vocabulary.reference_data import IdentityKind, ReferenceData

logger = logging.getLogger(__name__)

_SOURCE_VALUE_FIELDS = (
    "source_value",
    "status_source_value",
    "unit_source_value",
    "route_source_value",
    "qualifier_source_value",
    "value_as_string",
)


class OutputStore(Protocol):
    """Deletes previously written output of a resource."""

    def delete_by_natural_keys(
        self, resource_type: str, natural_keys: NaturalKeys, tables: list[FactTable]
    ) -> int: ...

    def delete_entity(self, resource_type: str, natural_keys: NaturalKeys) -> int: ...


class Mapper(Protocol):
    """Anything that maps resources of one type to an output bundle."""

    resource_type: str

    def map(self, resource: dict[str, Any], is_deleted: bool = False) -> OutputBundle | None: ...


def truncate(value: str | None, length: int = MAX_SOURCE_VALUE_LENGTH) -> str | None:
    if value is None:
        return None
    return value[:length]


class ResourceMapper:
    """Map FHIR resources of one type to OMOP fact rows and deferred links.

    The mapper holds no per-resource state; one instance may be shared by
    workers as long as the reference data is not reloaded meanwhile.
    """

    def __init__(
        self,
        policy: ResourcePolicy,
        concept_resolver: ConceptResolver,
        person_resolver: IdentityResolver,
        visit_resolver: IdentityResolver,
        metrics: MetricsSink | None = None,
        store: OutputStore | None = None,
        incremental: bool = False,
    ):
        """Initialize the mapper.

        Args:
            policy: Type specific behavior.
            concept_resolver: Resolver for codings.
            person_resolver: Identity resolver for Patient references.
            visit_resolver: Identity resolver for Encounter references.
            metrics: Sink receiving one increment per skip or miss.
            store: Output store; required in incremental mode.
            incremental: Delete prior output by natural keys before mapping.
        """
        if incremental and store is None:
            raise ValueError("Incremental mapping needs an output store")
        self.policy = policy
        self.concept_resolver = concept_resolver
        self.person_resolver = person_resolver
        self.visit_resolver = visit_resolver
        self.metrics = metrics if metrics is not None else MappingMetrics()
        self.store = store
        self.incremental = incremental

    @property
    def resource_type(self) -> str:
        return self.policy.resource_type

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def map(self, resource: dict[str, Any], is_deleted: bool = False) -> OutputBundle | None:
        """Map one resource.

        Args:
            resource: FHIR resource as parsed JSON.
            is_deleted: The resource is a tombstone.

        Returns:
            The rows and links to write, or None when the resource is skipped
            or deleted.

        Raises:
            UnsupportedDomainError: A concept's domain has no fact table.
        """
        keys = natural_keys(resource)
        if keys.is_empty:
            logger.warning(f"No identifier or logical id for {self.resource_type} found. Skip resource.")
            self._count(SkipReason.MISSING_NATURAL_KEY)
            return None

        if self.incremental:
            deleted = self.store.delete_by_natural_keys(
                self.resource_type, keys, self.policy.output_tables
            )
            if deleted:
                logger.debug(f"Deleted {deleted} existing rows of {self.resource_type} [{keys}]")

        if is_deleted:
            logger.info(f"Found a deleted {self.resource_type} resource [{keys}]. Deleting from OMOP DB.")
            self._count(SkipReason.TOMBSTONE)
            return None

        status = self.policy.status_of(resource)
        if not self._is_acceptable(status):
            logger.error(
                f"The status [{status}] of {self.resource_type} [{keys}] is not acceptable "
                f"for writing into OMOP CDM. Skip resource."
            )
            self._count(SkipReason.UNACCEPTABLE_STATUS)
            return None

        person_id = self.person_resolver.resolve_keys(subject_keys(resource))
        if person_id is None:
            logger.warning(f"No matching person_id for {self.resource_type} [{keys}] found. Skip resource.")
            self._count(SkipReason.UNRESOLVED_SUBJECT)
            return None

        onset = resolve_onset(resource, self.policy.onset_fields)
        if onset.start_datetime is None and not self._is_date_free(resource):
            logger.warning(f"No onset for {self.resource_type} [{keys}] found. Skip resource.")
            self._count(SkipReason.UNRESOLVED_ONSET)
            return None

        visit_id = self._resolve_visit(resource, person_id, keys)

        ctx = MappingContext(
            resource=resource,
            resource_type=self.resource_type,
            natural_keys=keys,
            person_id=person_id,
            visit_occurrence_id=visit_id,
            onset=onset,
            resolver=self.concept_resolver,
            codings=self._codings_by_vocabulary(resource),
        )

        selection = self._resolve_codings(ctx)
        if selection is None:
            logger.warning(f"No resolvable coding in {self.resource_type} [{keys}]. Skip resource.")
            self._count(SkipReason.NO_RESOLVABLE_CODING)
            return None

        ctx, components, rule = selection
        try:
            return self._emit(ctx, components, rule)
        except UnsupportedDomainError:
            logger.error(f"Unsupported domain while mapping {self.resource_type} [{keys}]")
            self._count(SkipReason.UNSUPPORTED_DOMAIN)
            raise

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _count(self, reason: SkipReason) -> None:
        self.metrics.increment(reason, self.resource_type)

    def _is_acceptable(self, status: str | None) -> bool:
        if not status:
            return self.policy.allow_missing_status
        return status in self.policy.acceptable_statuses

    def _is_date_free(self, resource: dict[str, Any]) -> bool:
        if not self.policy.date_free_codes:
            return False
        return any(
            coding.code in self.policy.date_free_codes
            for path in self.policy.code_paths
            for coding in codings(resolve_path(resource, path))
        )

    def _resolve_visit(self, resource: dict[str, Any], person_id: int, keys: NaturalKeys) -> int | None:
        reference = encounter_keys(resource)
        if reference.is_empty:
            return None

        record = self.visit_resolver.lookup(reference.identifier, reference.logical_id)
        if record is None or record.person_id != person_id:
            logger.debug(f"No matching visit_occurrence_id for {self.resource_type} [{keys}]")
            self._count(SkipReason.UNRESOLVED_ENCOUNTER)
            return None
        return record.surrogate_id

    def _codings_by_vocabulary(self, resource: dict[str, Any]) -> dict[str, ClinicalCoding]:
        """First coding per vocabulary across the policy's code paths."""
        result: dict[str, ClinicalCoding] = {}
        for path in self.policy.code_paths:
            for coding in codings(resolve_path(resource, path)):
                vocabulary_id = self.concept_resolver.vocabulary_for(coding)
                if vocabulary_id is not None:
                    result.setdefault(vocabulary_id, coding)
        return result

    def _resolve_component(
        self, rule: CodingRule, component: ClinicalCoding, ctx: MappingContext
    ) -> list[Resolution]:
        resolver = self.concept_resolver
        if rule.lookup is LookupKind.CROSSWALK:
            return [
                Resolution(
                    coding=component,
                    vocabulary_id=rule.vocabulary_id,
                    source_concept_id=entry.source_concept_id,
                    target_concept_id=entry.target_concept_id,
                    domain_id=entry.domain_id,
                    source_value=component.code,
                )
                for entry in resolver.resolve_crosswalk(component, ctx.as_of, rule.variant)
            ]

        if rule.lookup is LookupKind.CUSTOM:
            custom = resolver.resolve_custom(component.code, rule.vocabulary_id)
            if custom is NO_MATCH:
                return []
            return [
                Resolution(
                    coding=component,
                    vocabulary_id=rule.vocabulary_id,
                    source_concept_id=CONCEPT_NO_MATCHING_CONCEPT,
                    target_concept_id=custom.target_concept_id,
                    domain_id=rule.custom_domain,
                    source_value=component.code,
                )
            ]

        concept = resolver.resolve(component, ctx.as_of)
        if concept is NO_MATCH:
            return []
        qualifier = resolver.resolve(interpretation_coding(component), ctx.as_of)
        return [
            Resolution(
                coding=component,
                vocabulary_id=rule.vocabulary_id,
                source_concept_id=concept.concept_id,
                target_concept_id=concept.concept_id,
                domain_id=concept.domain_id,
                source_value=component.code,
                qualifier_concept_id=qualifier.concept_id if qualifier is not NO_MATCH else None,
                qualifier_source_value=qualifier.concept_code if qualifier is not NO_MATCH else None,
            )
        ]

    def _resolve_rule(self, rule: CodingRule, ctx: MappingContext) -> list[list[Resolution]]:
        """Resolutions of every valid component of a vocabulary's coding."""
        coding = ctx.coding_of(rule.vocabulary_id)
        if coding is None:
            return []
        components = []
        for component in self.concept_resolver.split(coding, rule.split):
            resolutions = self._resolve_component(rule, component, ctx)
            if resolutions:
                components.append(resolutions)
            else:
                logger.info(
                    f"Code [{component.code}] of {self.resource_type} [{ctx.natural_keys}] "
                    f"could not be resolved"
                )
        return components

    def _resolve_codings(
        self, ctx: MappingContext
    ) -> tuple[MappingContext, list[list[Resolution]], CodingRule] | None:
        """Select the coding to map and resolve its components.

        Rules are tried in precedence order; the first vocabulary with at
        least one valid component wins. Returns None if none resolves,
        otherwise the updated context, the resolutions grouped per
        component and the rule of the selected vocabulary.
        """
        resolved: dict[str, list[list[Resolution]]] = {}
        selected = None
        for rule in self.policy.coding_rules:
            components = self._resolve_rule(rule, ctx)
            resolved[rule.vocabulary_id] = components
            if components and selected is None:
                selected = rule

        if selected is None:
            return None

        components = resolved[selected.vocabulary_id]
        components = self._apply_dual_coding(selected, components, resolved, ctx)
        components = self._apply_conclusion(components, ctx)

        ctx = replace(
            ctx,
            selected_vocabulary=selected.vocabulary_id,
            resolutions=tuple(resolution for group in components for resolution in group),
        )
        return ctx, components, selected

    def _apply_dual_coding(
        self,
        selected: CodingRule,
        components: list[list[Resolution]],
        resolved: Mapping[str, list[list[Resolution]]],
        ctx: MappingContext,
    ) -> list[list[Resolution]]:
        dual = self.policy.dual_coding
        if dual is None or selected.vocabulary_id != dual.local_vocabulary:
            return components
        standard = resolved.get(dual.standard_vocabulary) or []
        if not standard:
            return components
        if not dual.substitute_standard:
            logger.debug(
                f"{self.resource_type} [{ctx.natural_keys}] keeps the {dual.local_vocabulary} "
                f"crosswalk target over the asserted {dual.standard_vocabulary} code"
            )
            return components

        standard_concept_id = standard[0][0].target_concept_id
        return [
            [replace(resolution, target_concept_id=standard_concept_id) for resolution in group]
            for group in components
        ]

    def _apply_conclusion(
        self, components: list[list[Resolution]], ctx: MappingContext
    ) -> list[list[Resolution]]:
        """Fan a report's conclusion codes out onto its facts."""
        rule = self.policy.conclusion
        if rule is None:
            return components

        conclusions = []
        for coding in codings_of_path(ctx.resource, rule.path):
            if self.concept_resolver.vocabulary_for(coding) != rule.vocabulary_id:
                continue
            for component in self.concept_resolver.split(coding, rule.split):
                concept = self.concept_resolver.resolve(component, ctx.as_of)
                if concept is NO_MATCH:
                    continue
                interpretation = self.concept_resolver.resolve(
                    interpretation_coding(component), ctx.as_of
                )
                conclusions.append((concept, component, interpretation))

        if not conclusions:
            return components

        return [
            [
                replace(
                    resolution,
                    source_concept_id=concept.concept_id,
                    source_value=component.code,
                    qualifier_concept_id=(
                        interpretation.concept_id if interpretation is not NO_MATCH else None
                    ),
                    qualifier_source_value=(
                        interpretation.concept_code if interpretation is not NO_MATCH else None
                    ),
                )
                for resolution in group
                for concept, component, interpretation in conclusions
            ]
            for group in components
        ]

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def _fact(self, ctx: MappingContext, resolution: Resolution) -> ClinicalFact:
        values: dict[str, Any] = {
            "table": route(resolution.domain_id, self.resource_type, self.policy.domain_tables),
            "person_id": ctx.person_id,
            "visit_occurrence_id": ctx.visit_occurrence_id,
            "concept_id": resolution.target_concept_id,
            "source_concept_id": resolution.source_concept_id,
            "source_value": resolution.source_value,
            "type_concept_id": self.policy.type_concept_id,
            "natural_keys": ctx.natural_keys,
            "start_datetime": ctx.onset.start_datetime,
            "end_datetime": ctx.onset.end_datetime,
            "qualifier_concept_id": resolution.qualifier_concept_id,
            "qualifier_source_value": resolution.qualifier_source_value,
        }
        for annotate in self.policy.annotators:
            values.update(annotate(ctx, resolution))

        for name in _SOURCE_VALUE_FIELDS:
            values[name] = truncate(values.get(name))
        return ClinicalFact(**values)

    def _emit(
        self, ctx: MappingContext, components: list[list[Resolution]], rule: CodingRule
    ) -> OutputBundle:
        facts = [self._fact(ctx, resolution) for group in components for resolution in group]

        registry = DeferredLinkRegistry()
        if rule.pair_components and len(components) == 2:
            registry.extend(
                pairing_links(
                    ctx.type_tag,
                    [resolution.link_descriptor for resolution in components[0]],
                    [resolution.link_descriptor for resolution in components[1]],
                    LINK_TABLE_PRIMARY_SECONDARY_ICD,
                    ctx.natural_keys,
                )
            )

        for extract in self.policy.secondary:
            secondary_facts, secondary_links = extract(ctx)
            facts.extend(secondary_facts)
            registry.extend(secondary_links)

        bundle = OutputBundle.build(ctx.natural_keys, facts, registry.links)
        logger.debug(
            f"Mapped {self.resource_type} [{ctx.natural_keys}] to {bundle.fact_count} rows "
            f"and {len(bundle.links)} links"
        )
        return bundle


def codings_of_path(resource: dict[str, Any], path: str) -> list[ClinicalCoding]:
    """Codings of a CodeableConcept or of every CodeableConcept in a list."""
    value = resource.get(path)
    concepts = value if isinstance(value, list) else [value]
    return [coding for concept in concepts if isinstance(concept, dict) for coding in codings(concept)]


# ============================================================================
# Dispatch
# ============================================================================


class MapperRegistry:
    """Dispatch resources to the mapper of their ``resourceType``."""

    def __init__(self, mappers: Mapping[str, Mapper], metrics: MetricsSink):
        self._mappers = dict(mappers)
        self.metrics = metrics

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._mappers

    def __getitem__(self, resource_type: str) -> Mapper:
        try:
            return self._mappers[resource_type]
        except KeyError:
            raise UnsupportedResourceTypeError(resource_type) from None

    @property
    def resource_types(self) -> list[str]:
        return list(self._mappers)

    def map(self, resource: dict[str, Any], is_deleted: bool = False) -> OutputBundle | None:
        """Map a resource with the mapper registered for its type.

        Raises:
            UnsupportedResourceTypeError: No mapper for the resource type.
            UnsupportedDomainError: A concept's domain has no fact table.
        """
        return self[resource.get("resourceType")].map(resource, is_deleted=is_deleted)


def build_mappers(
    reference_data: ReferenceData,
    metrics: MetricsSink | None = None,
    store: OutputStore | None = None,
    config: Settings | None = None,
    policies: Mapping[str, ResourcePolicy] | None = None,
) -> MapperRegistry:
    """Wire every mapper around a shared reference data cache.

    Patient and Encounter get their entity mappers; every policy gets a
    ``ResourceMapper``.
    """
    from fhir_omop.etl.demographics import EncounterMapper, PatientMapper

    config = config or default_settings
    metrics = metrics if metrics is not None else MappingMetrics()
    concept_resolver = ConceptResolver(reference_data, FhirSystems(config.fhir_systems))
    person_resolver = IdentityResolver(reference_data, IdentityKind.PERSON)
    visit_resolver = IdentityResolver(reference_data, IdentityKind.VISIT)

    mappers: dict[str, Mapper] = {
        entity.resource_type: entity(
            concept_resolver,
            person_resolver,
            metrics=metrics,
            store=store,
            incremental=config.incremental,
        )
        for entity in (PatientMapper, EncounterMapper)
    }
    mappers.update(
        {
            resource_type: ResourceMapper(
                policy,
                concept_resolver,
                person_resolver,
                visit_resolver,
                metrics=metrics,
                store=store,
                incremental=config.incremental,
            )
            for resource_type, policy in (policies or DEFAULT_POLICIES).items()
        }
    )
    return MapperRegistry(mappers, metrics)
