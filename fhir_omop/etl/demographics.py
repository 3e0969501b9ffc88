"""Patient and Encounter mappers.

Patients become ``person`` rows and Encounters become ``visit_occurrence``
rows. Unlike clinical resources, both are upserted by natural keys so that
the surrogate ids referenced by already written facts stay stable.

Everything that needs another table (death, location, age at diagnosis,
observation periods, admission and discharge codes) is emitted as a
deferred link of type ``PATIENT`` or ``ENCOUNTER``.

Standard OMOP Concept IDs:
    Race / ethnicity:
        4218674  - Unknown racial group
        38003563 - Hispanic or Latino

    Visit:
        9201  - Inpatient visit
        32220 - Still patient
        32817 - EHR

Usage:
    from fhir_omop.etl.demographics import PatientMapper

    mapper = PatientMapper(concept_resolver, person_resolver, store=store, incremental=True)
    bundle = mapper.map(patient)
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any

from fhir_omop.constants import (
    CONCEPT_AGE_AT_DIAGNOSIS,
    CONCEPT_EHR,
    CONCEPT_EHR_RECORD_STATUS_DECEASED,
    CONCEPT_GENDER_UNKNOWN,
    CONCEPT_HISPANIC_OR_LATINO,
    CONCEPT_INPATIENT,
    CONCEPT_NO_MATCHING_CONCEPT,
    CONCEPT_STILL_PATIENT,
    CONCEPT_UNKNOWN_RACIAL_GROUP,
    ENCOUNTER_CLASS_INPATIENT_CODES,
    ETHNICITY_SOURCE_HISPANIC_OR_LATINO,
    ETHNICITY_SOURCE_MIXED,
    FHIR_RESOURCE_ENCOUNTER_ACCEPTABLE_STATUS_LIST,
    LINK_TABLE_ADMISSION_OCCASION,
    LINK_TABLE_ADMISSION_REASON,
    LINK_TABLE_AGE_AT_DIAGNOSIS,
    LINK_TABLE_DEATH,
    LINK_TABLE_DISCHARGE_REASON,
    LINK_TABLE_LOCATION,
    LINK_TABLE_OBSERVATION_PERIOD,
    MAX_LOCATION_CITY_LENGTH,
    MAX_LOCATION_COUNTRY_LENGTH,
    MAX_LOCATION_STATE_LENGTH,
    MAX_LOCATION_ZIP_LENGTH,
    SOURCE_VOCABULARY_ID_GENDER,
    SOURCE_VOCABULARY_ID_VISIT_STATUS,
    SOURCE_VOCABULARY_ID_VISIT_TYPE,
)
from fhir_omop.etl.errors import SkipReason
from fhir_omop.etl.links import DeferredLinkRegistry
from fhir_omop.etl.mapper import OutputStore, truncate
from fhir_omop.etl.metrics import MappingMetrics, MetricsSink
from fhir_omop.fhir.resource import (
    natural_keys,
    parse_datetime,
    parse_decimal,
    parse_period,
    primitive,
    strip_prefix,
    subject_keys,
    to_coding,
)
from fhir_omop.fhir.systems import (
    EXTENSION_AGE,
    EXTENSION_DATA_ABSENT_REASON,
    EXTENSION_ETHNIC_GROUP,
    EXTENSION_GENDER_AMTLICH_DE,
    SYSTEM_SNOMED,
    SYSTEMS_ADMISSION_OCCASION,
    SYSTEMS_ADMISSION_REASON,
    SYSTEMS_DISCHARGE_REASON,
)
from fhir_omop.models.vocabulary import LookupVariant
from fhir_omop.records import (
    ClinicalCoding,
    DeferredLink,
    NaturalKeys,
    OutputBundle,
    PersonRecord,
    VisitRecord,
)
from fhir_omop.vocabulary.concepts import NO_MATCH, ConceptResolver
from fhir_omop.vocabulary.identity import IdentityResolver

logger = logging.getLogger(__name__)

LINK_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def extension(element: dict[str, Any] | None, url: str) -> dict[str, Any] | None:
    """Return the first extension with the given url."""
    for ext in (element or {}).get("extension") or []:
        if ext.get("url") == url:
            return ext
    return None


def has_extension(element: dict[str, Any] | None, url: str) -> bool:
    return extension(element, url) is not None


class EntityMapper:
    """Shared skeleton of the Patient and Encounter mappers.

    Subclasses implement ``_map_entity``; key extraction, tombstones and
    incremental replacement of deferred links happen here.
    """

    resource_type = ""

    def __init__(
        self,
        concept_resolver: ConceptResolver,
        person_resolver: IdentityResolver,
        metrics: MetricsSink | None = None,
        store: OutputStore | None = None,
        incremental: bool = False,
    ):
        """Initialize the mapper.

        Args:
            concept_resolver: Resolver for codings and local vocabularies.
            person_resolver: Identity resolver for Patient references.
            metrics: Sink receiving one increment per skip.
            store: Output store; required in incremental mode.
            incremental: Replace earlier output of the resource.
        """
        if incremental and store is None:
            raise ValueError("Incremental mapping needs an output store")
        self.concept_resolver = concept_resolver
        self.person_resolver = person_resolver
        self.metrics = metrics if metrics is not None else MappingMetrics()
        self.store = store
        self.incremental = incremental

    @property
    def type_tag(self) -> str:
        return self.resource_type.upper()

    def map(self, resource: dict[str, Any], is_deleted: bool = False) -> OutputBundle | None:
        """Map one resource.

        Returns:
            The entity row and its links, or None when the resource is
            skipped or deleted.
        """
        keys = natural_keys(resource)
        if keys.is_empty:
            logger.warning(f"No identifier or logical id for {self.resource_type} found. Skip resource.")
            self._count(SkipReason.MISSING_NATURAL_KEY)
            return None

        if is_deleted:
            logger.info(f"Found a deleted {self.resource_type} resource [{keys}]. Deleting from OMOP DB.")
            if self.incremental:
                self.store.delete_entity(self.resource_type, keys)
            self._count(SkipReason.TOMBSTONE)
            return None

        if self.incremental:
            self.store.delete_by_natural_keys(self.resource_type, keys, [])

        return self._map_entity(resource, keys)

    def _map_entity(self, resource: dict[str, Any], keys: NaturalKeys) -> OutputBundle | None:
        raise NotImplementedError

    def _count(self, reason: SkipReason) -> None:
        self.metrics.increment(reason, self.resource_type)

    def _skip(self, reason: SkipReason, keys: NaturalKeys) -> None:
        """Count a skip; in incremental mode the earlier row goes too."""
        if self.incremental:
            self.store.delete_entity(self.resource_type, keys)
        self._count(reason)

    def _link(
        self,
        keys: NaturalKeys,
        target_table: str,
        data_one: str | None,
        data_two: str | None,
        owner_ref: int = 0,
    ) -> DeferredLink:
        return DeferredLink(
            type_tag=self.type_tag,
            data_one=data_one,
            data_two=data_two,
            target_table=target_table,
            owner_ref=owner_ref,
            natural_keys=keys,
        )

    def _source_value(self, keys: NaturalKeys) -> str | None:
        return truncate(strip_prefix(self.resource_type, keys.identifier))


# ============================================================================
# Patient
# ============================================================================


class PatientMapper(EntityMapper):
    """Map a FHIR Patient to a person row."""

    resource_type = "Patient"

    def _map_entity(self, resource: dict[str, Any], keys: NaturalKeys) -> OutputBundle | None:
        links = DeferredLinkRegistry()
        raw_birth_date = primitive(resource, "birthDate") or ""
        birth_date = parse_datetime(raw_birth_date)
        birth_year = birth_date.year if birth_date else self._calculated_birth_year(resource, keys, links)
        if birth_year is None:
            logger.info(f"No birthDate for Patient [{keys}] found. Skip resource.")
            self._skip(SkipReason.MISSING_BIRTH_DATE, keys)
            return None

        gender = self._gender(resource)
        race = self._race(resource)
        ethnicity = self._ethnicity(resource)
        person = PersonRecord(
            natural_keys=keys,
            year_of_birth=birth_year,
            # partial dates ("1980", "1980-05") only carry what they state
            month_of_birth=birth_date.month if birth_date and len(raw_birth_date) >= 7 else None,
            day_of_birth=birth_date.day if birth_date and len(raw_birth_date) >= 10 else None,
            gender_concept_id=self._gender_concept_id(gender),
            gender_source_value=truncate(gender),
            person_source_value=self._source_value(keys),
            **race,
            **ethnicity,
        )

        death = self._death(resource, keys)
        if death is not None:
            links.add(death)
        location = self._location(resource, keys)
        if location is not None:
            links.add(location)

        logger.debug(f"Mapped Patient [{keys}] with {len(links)} links")
        return OutputBundle(natural_keys=keys, links=tuple(links.links), person=person)

    # ------------------------------------------------------------------
    # Birth
    # ------------------------------------------------------------------

    def _calculated_birth_year(
        self, resource: dict[str, Any], keys: NaturalKeys, links: DeferredLinkRegistry
    ) -> int | None:
        """Birth year from the documented age, recording the age as a link."""
        age_extension = extension(resource, EXTENSION_AGE)
        if age_extension is None:
            return None
        parts = {ext.get("url"): ext for ext in age_extension.get("extension") or []}
        age = (parts.get("age") or {}).get("valueAge") or {}
        documented = parse_datetime((parts.get("dateTimeOfDocumentation") or {}).get("valueDateTime"))
        value = parse_decimal(age.get("value"))
        unit_code = age.get("code")
        if value is None or documented is None or not unit_code:
            return None

        links.add(
            self._link(
                keys,
                LINK_TABLE_AGE_AT_DIAGNOSIS,
                documented.isoformat(),
                f"{int(value)}:{age.get('unit')}:{unit_code}",
                CONCEPT_AGE_AT_DIAGNOSIS,
            )
        )
        return subtract_age(documented, int(value), unit_code)

    # ------------------------------------------------------------------
    # Gender, race, ethnicity
    # ------------------------------------------------------------------

    @staticmethod
    def _gender(resource: dict[str, Any]) -> str | None:
        gender = primitive(resource, "gender")
        if gender == "other":
            # German administrative gender refines "other" (e.g. "D" for divers)
            refined = extension(resource.get("_gender"), EXTENSION_GENDER_AMTLICH_DE)
            coding = (refined or {}).get("valueCoding") or {}
            return coding.get("code") or gender
        return gender

    def _gender_concept_id(self, gender: str | None) -> int:
        if not gender:
            return CONCEPT_GENDER_UNKNOWN
        custom = self.concept_resolver.resolve_custom(gender, SOURCE_VOCABULARY_ID_GENDER)
        if custom is NO_MATCH:
            logger.info(f"Gender [{gender}] is not mapped in OMOP")
            return CONCEPT_NO_MATCHING_CONCEPT
        return custom.target_concept_id

    @staticmethod
    def _ethnic_group(resource: dict[str, Any]) -> str | None:
        ethnic_group = extension(resource, EXTENSION_ETHNIC_GROUP)
        coding = (ethnic_group or {}).get("valueCoding") or {}
        code = coding.get("code")
        return code.strip() if code and code.strip() else None

    def _race(self, resource: dict[str, Any]) -> dict[str, Any]:
        code = self._ethnic_group(resource)
        if code is None or code == ETHNICITY_SOURCE_HISPANIC_OR_LATINO:
            return {"race_concept_id": CONCEPT_UNKNOWN_RACIAL_GROUP}
        if code == ETHNICITY_SOURCE_MIXED:
            return {"race_concept_id": CONCEPT_NO_MATCHING_CONCEPT, "race_source_value": code}

        entries = self.concept_resolver.resolve_crosswalk(
            ClinicalCoding(system=SYSTEM_SNOMED, code=code), None, LookupVariant.DEMOGRAPHIC_STANDARD
        )
        if not entries:
            logger.info(f"Ethnic group [{code}] is not mapped in OMOP")
            return {"race_concept_id": CONCEPT_NO_MATCHING_CONCEPT, "race_source_value": code}
        entry = entries[0]
        return {
            "race_concept_id": entry.target_concept_id,
            "race_source_concept_id": entry.source_concept_id,
            "race_source_value": code,
        }

    def _ethnicity(self, resource: dict[str, Any]) -> dict[str, Any]:
        code = self._ethnic_group(resource)
        if code == ETHNICITY_SOURCE_HISPANIC_OR_LATINO:
            return {
                "ethnicity_concept_id": CONCEPT_HISPANIC_OR_LATINO,
                "ethnicity_source_concept_id": CONCEPT_HISPANIC_OR_LATINO,
                "ethnicity_source_value": code,
            }
        if code == ETHNICITY_SOURCE_MIXED:
            return {"ethnicity_concept_id": CONCEPT_NO_MATCHING_CONCEPT, "ethnicity_source_value": code}
        return {"ethnicity_concept_id": CONCEPT_NO_MATCHING_CONCEPT}

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def _death(self, resource: dict[str, Any], keys: NaturalKeys) -> DeferredLink | None:
        deceased = parse_datetime(primitive(resource, "deceasedDateTime"))
        if deceased is None:
            return None
        return self._link(
            keys,
            LINK_TABLE_DEATH,
            deceased.date().isoformat(),
            deceased.strftime(LINK_DATETIME_FORMAT),
            CONCEPT_EHR_RECORD_STATUS_DECEASED,
        )

    def _location(self, resource: dict[str, Any], keys: NaturalKeys) -> DeferredLink | None:
        """Address of the patient as "zip;city;country" and "lines;state"."""
        addresses = resource.get("address") or []
        if not addresses or has_extension(addresses[0], EXTENSION_DATA_ABSENT_REASON):
            return None
        address = addresses[0]

        zip_code = (primitive(address, "postalCode") or "")[:MAX_LOCATION_ZIP_LENGTH]
        city = (primitive(address, "city") or "")[:MAX_LOCATION_CITY_LENGTH]
        country = "".join((primitive(address, "country") or "").split())[:MAX_LOCATION_COUNTRY_LENGTH]
        lines = "".join(f"{line} " for line in address.get("line") or [] if line)
        state = (primitive(address, "state") or "")[:MAX_LOCATION_STATE_LENGTH]

        data_one = f"{zip_code};{city};{country}"
        data_two = f"{lines};{state}"
        if data_one == ";;" and data_two == ";":
            return None
        return self._link(keys, LINK_TABLE_LOCATION, data_one, data_two)


def subtract_age(documented: datetime, age: int, unit_code: str) -> int | None:
    """Year of birth given an age in UCUM years, months or days."""
    if unit_code == "a":
        return documented.year - age
    if unit_code == "mo":
        return (documented.year * 12 + documented.month - 1 - age) // 12
    if unit_code == "d":
        return (documented - timedelta(days=age)).year
    logger.warning(f"Unable to calculate a birth year from age unit [{unit_code}]")
    return None


# ============================================================================
# Encounter
# ============================================================================


class EncounterMapper(EntityMapper):
    """Map a FHIR Encounter to a visit_occurrence row."""

    resource_type = "Encounter"

    def _map_entity(self, resource: dict[str, Any], keys: NaturalKeys) -> OutputBundle | None:
        status = primitive(resource, "status") or "finished"
        if status not in FHIR_RESOURCE_ENCOUNTER_ACCEPTABLE_STATUS_LIST:
            logger.error(
                f"The status [{status}] of Encounter [{keys}] is not acceptable "
                f"for writing into OMOP CDM. Skip resource."
            )
            self._skip(SkipReason.UNACCEPTABLE_STATUS, keys)
            return None

        person_id = self.person_resolver.resolve_keys(subject_keys(resource))
        if person_id is None:
            logger.warning(f"No matching person_id for Encounter [{keys}] found. Skip resource.")
            self._skip(SkipReason.UNRESOLVED_SUBJECT, keys)
            return None

        start, end = parse_period(resource.get("period"))
        if start is None:
            logger.warning(f"No period start for Encounter [{keys}] found. Skip resource.")
            self._skip(SkipReason.UNRESOLVED_ONSET, keys)
            return None

        visit_type_concept_id = self._visit_type_concept_id(status, end)
        if end is None:
            end = self._default_end(visit_type_concept_id, keys)

        visit = VisitRecord(
            natural_keys=keys,
            person_id=person_id,
            visit_concept_id=self._visit_concept_id(resource),
            visit_type_concept_id=visit_type_concept_id,
            start_datetime=start,
            end_datetime=end,
            visit_source_value=self._source_value(keys),
        )

        links = DeferredLinkRegistry()
        links.add(
            self._link(
                keys, LINK_TABLE_OBSERVATION_PERIOD, start.isoformat(), end.isoformat(), person_id
            )
        )
        hospitalization = resource.get("hospitalization") or {}
        for target_table, element, systems, moment in (
            (
                LINK_TABLE_ADMISSION_OCCASION,
                [hospitalization.get("admitSource")],
                SYSTEMS_ADMISSION_OCCASION,
                start,
            ),
            (LINK_TABLE_ADMISSION_REASON, resource.get("reasonCode"), SYSTEMS_ADMISSION_REASON, start),
            (
                LINK_TABLE_DISCHARGE_REASON,
                [hospitalization.get("dischargeDisposition")],
                SYSTEMS_DISCHARGE_REASON,
                end,
            ),
        ):
            code = coded_in(element, systems)
            if code is not None:
                links.add(
                    self._link(
                        keys, target_table, moment.strftime(LINK_DATETIME_FORMAT), code, person_id
                    )
                )

        logger.debug(f"Mapped Encounter [{keys}] with {len(links)} links")
        return OutputBundle(natural_keys=keys, links=tuple(links.links), visit=visit)

    def _visit_concept_id(self, resource: dict[str, Any]) -> int:
        encounter_class = resource.get("class") or {}
        code = primitive(encounter_class, "code")
        if not code:
            return CONCEPT_NO_MATCHING_CONCEPT
        if code.strip().lower() in ENCOUNTER_CLASS_INPATIENT_CODES:
            return CONCEPT_INPATIENT
        custom = self.concept_resolver.resolve_custom(code, SOURCE_VOCABULARY_ID_VISIT_TYPE)
        return custom.target_concept_id if custom is not NO_MATCH else CONCEPT_NO_MATCHING_CONCEPT

    def _visit_type_concept_id(self, status: str, end: datetime | None) -> int:
        if status == "unknown" and end is None:
            return CONCEPT_STILL_PATIENT
        custom = self.concept_resolver.resolve_custom(status, SOURCE_VOCABULARY_ID_VISIT_STATUS)
        if custom is NO_MATCH or not custom.target_concept_id:
            return CONCEPT_EHR
        return custom.target_concept_id

    @staticmethod
    def _default_end(visit_type_concept_id: int, keys: NaturalKeys) -> datetime:
        if visit_type_concept_id == CONCEPT_STILL_PATIENT:
            return datetime.now().replace(microsecond=0)
        logger.warning(f"No period end for Encounter [{keys}] found. Using today as end date.")
        return datetime.combine(date.today(), datetime.min.time())


def coded_in(concepts: list[dict[str, Any] | None] | None, systems: tuple[str, ...]) -> str | None:
    """Code of the first coding from one of the given systems."""
    for concept in concepts or []:
        for coding in (concept or {}).get("coding") or []:
            converted = to_coding(coding)
            if converted is not None and converted.system in systems:
                return converted.code
    return None
