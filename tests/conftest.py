"""Pytest configuration and fixtures for mapper tests."""

from collections.abc import Generator
from datetime import date
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from fhir_omop.core.config import Settings
from fhir_omop.core.database import Base, init_db
from fhir_omop.etl.mapper import MapperRegistry, build_mappers
from fhir_omop.etl.metrics import MappingMetrics
from fhir_omop.fhir.systems import FhirSystems
from fhir_omop.models.vocabulary import LookupVariant
from fhir_omop.records import Concept, CrosswalkEntry, CustomConcept
from fhir_omop.vocabulary.concepts import ConceptResolver
from fhir_omop.vocabulary.reference_data import (
    IdentityKind,
    IdentityRecord,
    PreloadedReferenceData,
)

ICD_SYSTEM = "http://fhir.de/CodeSystem/bfarm/icd-10-gm"
LOCAL_ICD_SYSTEM = "local-icd"
SNOMED_SYSTEM = "http://snomed.info/sct"
LOINC_SYSTEM = "http://loinc.org"
ATC_SYSTEM = "http://fhir.de/CodeSystem/bfarm/atc"
OPS_SYSTEM = "http://fhir.de/CodeSystem/bfarm/ops"
EDQM_SYSTEM = "http://standardterms.edqm.eu"

EXTRA_SYSTEMS = {LOCAL_ICD_SYSTEM: "ICD10GM"}

VALID_FROM = date(2020, 1, 1)
VALID_TO = date(2099, 12, 31)

# Concept ids used throughout the tests
HYPERTENSION_ICD = 45591453
HYPERTENSION = 320128
FOLLOW_UP_ICD = 45542411
FOLLOW_UP = 4214956
HYPERTENSION_SNOMED = 316866
HEMOGLOBIN = 3000963
TRAVEL_HISTORY = 4051155
SEVERE = 24484000
SEVERE_CONCEPT = 4087703
STAGE_II = 14803004
STAGE_II_CONCEPT = 4032222
LEFT_KIDNEY = 18639004
LEFT_KIDNEY_CONCEPT = 4010240
GRAM_PER_DECILITER = 8713
ASPIRIN_ATC = 21600961
ASPIRIN = 1112807
APPENDECTOMY_OPS = 2000001
APPENDECTOMY = 4198190
APPENDECTOMY_SNOMED = 4198191
CONFIRMED_DIAGNOSIS = 4228211
LEFT_SIDE = 4149748
ORAL_ROUTE = 4132161
LABORATORY = 32856
MALE = 8507
FEMALE = 8532
DIVERSE = 8551
CAUCASIAN = "413773004"
CAUCASIAN_CONCEPT = 4188561
WHITE = 8527
OUTPATIENT = 9202
VISIT_FROM_EHR = 44818518


def make_concept(
    concept_id: int,
    code: str,
    vocabulary_id: str,
    domain_id: str,
    valid_start: date = VALID_FROM,
    valid_end: date = VALID_TO,
) -> Concept:
    return Concept(
        concept_id=concept_id,
        concept_code=code,
        domain_id=domain_id,
        vocabulary_id=vocabulary_id,
        valid_start=valid_start,
        valid_end=valid_end,
    )


def make_crosswalk(
    code: str,
    vocabulary_id: str,
    source_concept_id: int,
    target_concept_id: int,
    domain_id: str,
    valid_start: date = VALID_FROM,
    valid_end: date = VALID_TO,
    variant: LookupVariant = LookupVariant.CODE_STANDARD,
) -> CrosswalkEntry:
    return CrosswalkEntry(
        source_code=code,
        source_vocabulary_id=vocabulary_id,
        source_concept_id=source_concept_id,
        target_concept_id=target_concept_id,
        domain_id=domain_id,
        valid_start=valid_start,
        valid_end=valid_end,
        variant=variant,
    )


def populate(reference_data: PreloadedReferenceData) -> PreloadedReferenceData:
    """Fill a cache with the reference data shared by the tests."""
    reference_data.add_concepts(
        [
            make_concept(HYPERTENSION_ICD, "I10", "ICD10GM", "Condition"),
            make_concept(FOLLOW_UP_ICD, "Z.09", "ICD10GM", "Condition"),
            make_concept(HYPERTENSION_SNOMED, "38341003", "SNOMED", "Condition"),
            make_concept(HEMOGLOBIN, "718-7", "LOINC", "Measurement"),
            make_concept(TRAVEL_HISTORY, "8691-8", "LOINC", "Observation"),
            make_concept(SEVERE_CONCEPT, str(SEVERE), "SNOMED", "Observation"),
            make_concept(STAGE_II_CONCEPT, str(STAGE_II), "SNOMED", "Observation"),
            make_concept(LEFT_KIDNEY_CONCEPT, str(LEFT_KIDNEY), "SNOMED", "Spec Anatomic Site"),
            make_concept(GRAM_PER_DECILITER, "g/dL", "UCUM", "Unit"),
            make_concept(ASPIRIN_ATC, "B01AC06", "ATC", "Drug"),
            make_concept(APPENDECTOMY_OPS, "5-470", "OPS", "Procedure"),
            make_concept(APPENDECTOMY_SNOMED, "80146002", "SNOMED", "Procedure"),
            make_concept(CAUCASIAN_CONCEPT, CAUCASIAN, "SNOMED", "Race"),
        ]
    )
    reference_data.add_crosswalk(
        [
            make_crosswalk("I10", "ICD10GM", HYPERTENSION_ICD, HYPERTENSION, "Condition"),
            make_crosswalk("Z.09", "ICD10GM", FOLLOW_UP_ICD, FOLLOW_UP, "Condition"),
            make_crosswalk(
                "B01AC06",
                "ATC",
                ASPIRIN_ATC,
                ASPIRIN,
                "Drug",
                variant=LookupVariant.HIERARCHY_STANDARD,
            ),
            make_crosswalk("5-470", "OPS", APPENDECTOMY_OPS, APPENDECTOMY, "Procedure"),
            make_crosswalk(
                CAUCASIAN,
                "SNOMED",
                CAUCASIAN_CONCEPT,
                WHITE,
                "Race",
                variant=LookupVariant.DEMOGRAPHIC_STANDARD,
            ),
        ]
    )
    reference_data.add_custom_concepts(
        [
            CustomConcept("G", "Diagnostic Conf.", CONFIRMED_DIAGNOSIS),
            CustomConcept("L", "ICD Localization", LEFT_SIDE),
            CustomConcept("L", "Procedure Bodysite", LEFT_SIDE),
            CustomConcept("20053000", "EDQM", ORAL_ROUTE),
            CustomConcept("laboratory", "Observation Category", LABORATORY),
            CustomConcept("male", "Gender", MALE),
            CustomConcept("female", "Gender", FEMALE),
            CustomConcept("D", "Gender", DIVERSE),
            CustomConcept("AMB", "Visit Type", OUTPATIENT),
            CustomConcept("finished", "Visit Status", VISIT_FROM_EHR),
        ]
    )
    reference_data.add_identity(
        IdentityKind.PERSON, IdentityRecord(1, 1), identifier="pat-PID-1", logical_id="pat-1"
    )
    reference_data.add_identity(
        IdentityKind.PERSON, IdentityRecord(2, 2), logical_id="pat-2"
    )
    reference_data.add_identity(
        IdentityKind.VISIT, IdentityRecord(10, 1), identifier="enc-VN-10", logical_id="enc-10"
    )
    reference_data.add_identity(
        IdentityKind.VISIT, IdentityRecord(20, 2), logical_id="enc-20"
    )
    return reference_data


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """In-memory SQLite engine with every table created."""
    test_engine = create_engine("sqlite:///:memory:", echo=False, future=True)
    init_db(test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ============================================================================
# Mapping
# ============================================================================


@pytest.fixture
def reference_data() -> PreloadedReferenceData:
    return populate(PreloadedReferenceData())


@pytest.fixture
def resolver(reference_data: PreloadedReferenceData) -> ConceptResolver:
    return ConceptResolver(reference_data, FhirSystems(EXTRA_SYSTEMS))


@pytest.fixture
def metrics() -> MappingMetrics:
    return MappingMetrics()


@pytest.fixture
def bulk_settings() -> Settings:
    return Settings(bulk_load=True, dictionary_load_in_ram=True, fhir_systems=EXTRA_SYSTEMS)


@pytest.fixture
def mappers(
    reference_data: PreloadedReferenceData,
    metrics: MappingMetrics,
    bulk_settings: Settings,
) -> MapperRegistry:
    return build_mappers(reference_data, metrics=metrics, config=bulk_settings)


# ============================================================================
# Resources
# ============================================================================


def condition(
    code: str | dict[str, Any] = "I10",
    system: str = ICD_SYSTEM,
    onset: str | None = "2021-05-01",
    **overrides: Any,
) -> dict[str, Any]:
    """Condition resource with one coding, or with the given CodeableConcept."""
    if not isinstance(code, dict):
        code = {"coding": [{"system": system, "code": code}]}
    resource: dict[str, Any] = {
        "resourceType": "Condition",
        "id": "1",
        "identifier": [{"value": "COND-1"}],
        "verificationStatus": {"coding": [{"code": "confirmed"}]},
        "code": code,
        "subject": {"reference": "Patient/1"},
        "encounter": {"reference": "Encounter/10"},
    }
    if onset is not None:
        resource["onsetDateTime"] = onset
    resource.update(overrides)
    return resource


def observation(code: str = "718-7", **overrides: Any) -> dict[str, Any]:
    """Observation resource with a LOINC code and a quantity value."""
    resource: dict[str, Any] = {
        "resourceType": "Observation",
        "id": "7",
        "status": "final",
        "code": {"coding": [{"system": LOINC_SYSTEM, "code": code}]},
        "subject": {"reference": "Patient/1"},
        "effectiveDateTime": "2021-05-01T10:30:00+02:00",
        "valueQuantity": {"value": 13.5, "unit": "g/dL", "system": "http://unitsofmeasure.org", "code": "g/dL"},
    }
    resource.update(overrides)
    return resource


def patient(**overrides: Any) -> dict[str, Any]:
    """Patient resource with a birth date and a gender."""
    resource: dict[str, Any] = {
        "resourceType": "Patient",
        "id": "3",
        "identifier": [{"value": "PID-3"}],
        "gender": "female",
        "birthDate": "1980-05-15",
    }
    resource.update(overrides)
    return resource


def encounter(**overrides: Any) -> dict[str, Any]:
    """Finished ambulatory Encounter of patient 1."""
    resource: dict[str, Any] = {
        "resourceType": "Encounter",
        "id": "30",
        "identifier": [{"value": "VN-30"}],
        "status": "finished",
        "class": {"code": "AMB"},
        "subject": {"reference": "Patient/1"},
        "period": {"start": "2021-05-01T08:00:00", "end": "2021-05-03T12:00:00"},
    }
    resource.update(overrides)
    return resource
