"""Tests for the database output store.

Includes the incremental round trip: mapping the same resource twice must
leave exactly one copy of its rows and links behind.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from fhir_omop.core.config import Settings
from fhir_omop.etl.mapper import MapperRegistry, build_mappers
from fhir_omop.etl.metrics import MappingMetrics
from fhir_omop.etl.store import SqlOutputStore, fact_to_row, link_to_row
from fhir_omop.fhir.resource import natural_keys
from fhir_omop.models.omop import (
    ConditionOccurrence,
    DrugExposure,
    Measurement,
    Observation,
    Person,
    ProcedureOccurrence,
    VisitOccurrence,
)
from fhir_omop.models.post_process import PostProcessMap
from fhir_omop.records import (
    ClinicalFact,
    DeferredLink,
    FactTable,
    NaturalKeys,
    OutputBundle,
    PersonRecord,
    VisitRecord,
)
from fhir_omop.vocabulary.reference_data import (
    IdentityKind,
    IdentityRecord,
    PreloadedReferenceData,
)
from tests.conftest import EXTRA_SYSTEMS, LOCAL_ICD_SYSTEM, SEVERE, condition, encounter, patient

KEYS = NaturalKeys(logical_id="con-1", identifier="con-COND-1")


def fact(table: FactTable, keys: NaturalKeys = KEYS, **values) -> ClinicalFact:
    defaults = {
        "person_id": 1,
        "visit_occurrence_id": None,
        "concept_id": 320128,
        "source_concept_id": 45591453,
        "source_value": "I10",
        "type_concept_id": 32817,
        "start_datetime": datetime(2021, 5, 1, 8, 0),
    }
    defaults.update(values)
    return ClinicalFact(table=table, natural_keys=keys, **defaults)


def count(session: Session, model: type) -> int:
    return session.scalar(select(func.count()).select_from(model))


class TestFactToRow:
    """Tests for generic field to column translation."""

    def test_condition_row(self) -> None:
        row = fact_to_row(
            fact(
                FactTable.CONDITION_OCCURRENCE,
                visit_occurrence_id=10,
                status_concept_id=4228211,
                status_source_value="G",
            )
        )
        assert isinstance(row, ConditionOccurrence)
        assert row.condition_concept_id == 320128
        assert row.condition_source_concept_id == 45591453
        assert row.condition_source_value == "I10"
        assert row.condition_type_concept_id == 32817
        assert row.condition_start_date == date(2021, 5, 1)
        assert row.condition_start_datetime == datetime(2021, 5, 1, 8, 0)
        assert row.condition_end_date is None
        assert row.condition_status_concept_id == 4228211
        assert row.condition_status_source_value == "G"
        assert row.visit_occurrence_id == 10
        assert row.fhir_logical_id == "con-1"
        assert row.fhir_identifier == "con-COND-1"

    def test_drug_end_defaults_to_start(self) -> None:
        row = fact_to_row(fact(FactTable.DRUG_EXPOSURE, unit_source_value="mg"))
        assert isinstance(row, DrugExposure)
        assert row.drug_exposure_end_date == date(2021, 5, 1)
        assert row.drug_exposure_end_datetime == datetime(2021, 5, 1, 8, 0)
        assert row.dose_unit_source_value == "mg"

    def test_procedure_modifier_and_quantity(self) -> None:
        row = fact_to_row(
            fact(
                FactTable.PROCEDURE_OCCURRENCE,
                qualifier_concept_id=4149748,
                qualifier_source_value="L",
                quantity=Decimal("2.0"),
            )
        )
        assert isinstance(row, ProcedureOccurrence)
        assert row.modifier_concept_id == 4149748
        assert row.modifier_source_value == "L"
        assert row.quantity == 2
        assert row.procedure_date == date(2021, 5, 1)

    def test_measurement_string_value(self) -> None:
        row = fact_to_row(fact(FactTable.MEASUREMENT, value_as_string="positive"))
        assert isinstance(row, Measurement)
        assert row.value_source_value == "positive"
        assert row.measurement_date == date(2021, 5, 1)

    def test_observation_without_date(self) -> None:
        row = fact_to_row(fact(FactTable.OBSERVATION, start_datetime=None, value_as_string="L"))
        assert isinstance(row, Observation)
        assert row.observation_date is None
        assert row.value_as_string == "L"

    def test_link_row(self) -> None:
        row = link_to_row(
            DeferredLink(
                type_tag="CONDITION",
                data_one="L:27",
                data_two="4149748",
                target_table="site_localization",
                owner_ref=1,
                natural_keys=KEYS,
            )
        )
        assert row.type == "CONDITION"
        assert row.omop_table == "site_localization"
        assert row.omop_id == 1
        assert row.fhir_logical_id == "con-1"


class TestSqlOutputStore:
    """Tests for writes and deletes by natural keys."""

    def test_write_bundle(self, db_session: Session) -> None:
        store = SqlOutputStore(db_session)
        bundle = OutputBundle.build(
            KEYS,
            [fact(FactTable.CONDITION_OCCURRENCE), fact(FactTable.OBSERVATION, value_as_string="L")],
            [
                DeferredLink(
                    type_tag="CONDITION",
                    data_one="L:27",
                    data_two="4149748",
                    target_table="site_localization",
                    owner_ref=1,
                    natural_keys=KEYS,
                )
            ],
        )
        assert store.write(bundle) == 3
        db_session.commit()

        assert count(db_session, ConditionOccurrence) == 1
        assert count(db_session, Observation) == 1
        assert count(db_session, PostProcessMap) == 1

    def test_delete_by_logical_id(self, db_session: Session) -> None:
        store = SqlOutputStore(db_session)
        other = NaturalKeys(logical_id="con-2", identifier="con-COND-2")
        store.write(OutputBundle.build(KEYS, [fact(FactTable.CONDITION_OCCURRENCE)], []))
        store.write(OutputBundle.build(other, [fact(FactTable.CONDITION_OCCURRENCE, keys=other)], []))

        deleted = store.delete_by_natural_keys(
            "Condition", KEYS, [FactTable.CONDITION_OCCURRENCE, FactTable.OBSERVATION]
        )
        assert deleted == 1
        remaining = db_session.scalars(select(ConditionOccurrence)).all()
        assert [row.fhir_logical_id for row in remaining] == ["con-2"]

    def test_delete_by_identifier(self, db_session: Session) -> None:
        store = SqlOutputStore(db_session)
        keys = NaturalKeys(identifier="con-COND-9")
        store.write(OutputBundle.build(keys, [fact(FactTable.CONDITION_OCCURRENCE, keys=keys)], []))

        assert store.delete_by_natural_keys("Condition", keys, [FactTable.CONDITION_OCCURRENCE]) == 1
        assert count(db_session, ConditionOccurrence) == 0

    def test_delete_by_identifier_is_scoped_to_the_resource_type(self, db_session: Session) -> None:
        shared = {"identifier": [{"value": "LAB-42"}]}
        condition_keys = natural_keys({"resourceType": "Condition", **shared})
        observation_keys = natural_keys({"resourceType": "Observation", **shared})
        store = SqlOutputStore(db_session)
        store.write(
            OutputBundle.build(
                condition_keys, [fact(FactTable.OBSERVATION, keys=condition_keys)], []
            )
        )
        store.write(
            OutputBundle.build(
                observation_keys, [fact(FactTable.OBSERVATION, keys=observation_keys)], []
            )
        )

        deleted = store.delete_by_natural_keys(
            "Condition", condition_keys, [FactTable.CONDITION_OCCURRENCE, FactTable.OBSERVATION]
        )
        assert deleted == 1
        [remaining] = db_session.scalars(select(Observation)).all()
        assert remaining.fhir_identifier == "obs-LAB-42"

    def test_delete_unknown_keys_is_a_no_op(self, db_session: Session) -> None:
        store = SqlOutputStore(db_session)
        assert store.delete_by_natural_keys("Condition", KEYS, [FactTable.CONDITION_OCCURRENCE]) == 0
        assert store.delete_by_natural_keys("Condition", NaturalKeys(), [FactTable.CONDITION_OCCURRENCE]) == 0

    def test_delete_keeps_links_of_other_types(self, db_session: Session) -> None:
        db_session.add_all(
            [
                PostProcessMap(type="CONDITION", omop_table="severity", fhir_logical_id="con-1"),
                PostProcessMap(type="OBSERVATION", omop_table="severity", fhir_logical_id="con-1"),
            ]
        )
        db_session.flush()

        store = SqlOutputStore(db_session)
        assert store.delete_by_natural_keys("Condition", KEYS, []) == 1
        [remaining] = db_session.scalars(select(PostProcessMap)).all()
        assert remaining.type == "OBSERVATION"


class TestIncrementalRoundTrip:
    """Tests for re-mapping resources against a database."""

    @pytest.fixture
    def registry(
        self, db_session: Session, reference_data: PreloadedReferenceData, metrics: MappingMetrics
    ) -> MapperRegistry:
        config = Settings(bulk_load=False, fhir_systems=EXTRA_SYSTEMS)
        return build_mappers(
            reference_data, metrics=metrics, store=SqlOutputStore(db_session), config=config
        )

    def run(self, registry: MapperRegistry, session: Session, resource: dict, is_deleted: bool = False) -> None:
        bundle = registry.map(resource, is_deleted=is_deleted)
        if bundle is not None:
            SqlOutputStore(session).write(bundle)
        session.commit()

    def test_mapping_twice_is_idempotent(self, registry: MapperRegistry, db_session: Session) -> None:
        resource = condition(
            code="I10 Z.09",
            system=LOCAL_ICD_SYSTEM,
            severity={"coding": [{"system": "http://snomed.info/sct", "code": str(SEVERE)}]},
        )
        self.run(registry, db_session, resource)
        self.run(registry, db_session, resource)

        assert count(db_session, ConditionOccurrence) == 2
        assert count(db_session, Observation) == 1
        assert count(db_session, PostProcessMap) == 2

    def test_changed_resource_replaces_rows(self, registry: MapperRegistry, db_session: Session) -> None:
        self.run(registry, db_session, condition(code="I10 Z.09", system=LOCAL_ICD_SYSTEM))
        self.run(registry, db_session, condition(code="I10"))

        rows = db_session.scalars(select(ConditionOccurrence)).all()
        assert [row.condition_source_value for row in rows] == ["I10"]
        assert count(db_session, PostProcessMap) == 0

    def test_tombstone_removes_rows(self, registry: MapperRegistry, db_session: Session) -> None:
        self.run(registry, db_session, condition(code="I10 Z.09", system=LOCAL_ICD_SYSTEM))
        self.run(registry, db_session, {"resourceType": "Condition", "id": "1"}, is_deleted=True)

        assert count(db_session, ConditionOccurrence) == 0
        assert count(db_session, PostProcessMap) == 0


PATIENT_KEYS = NaturalKeys(logical_id="pat-3", identifier="pat-PID-3")
ENCOUNTER_KEYS = NaturalKeys(logical_id="enc-30", identifier="enc-VN-30")


def person_bundle(year_of_birth: int = 1980, **values) -> OutputBundle:
    return OutputBundle(
        natural_keys=PATIENT_KEYS,
        person=PersonRecord(natural_keys=PATIENT_KEYS, year_of_birth=year_of_birth, **values),
    )


def visit_bundle(person_id: int) -> OutputBundle:
    return OutputBundle(
        natural_keys=ENCOUNTER_KEYS,
        visit=VisitRecord(
            natural_keys=ENCOUNTER_KEYS,
            person_id=person_id,
            visit_concept_id=9202,
            visit_type_concept_id=32817,
            start_datetime=datetime(2021, 5, 1, 8, 0),
            end_datetime=datetime(2021, 5, 3, 12, 0),
            visit_source_value="VN-30",
        ),
    )


class TestEntityStore:
    """Tests for person and visit upserts and deletes."""

    def test_write_person(self, db_session: Session) -> None:
        store = SqlOutputStore(db_session)
        link = DeferredLink("PATIENT", "2022-01-02", "2022-01-02 03:04:05", "death", 38003569, PATIENT_KEYS)
        bundle = OutputBundle(
            natural_keys=PATIENT_KEYS,
            links=(link,),
            person=PersonRecord(
                natural_keys=PATIENT_KEYS,
                year_of_birth=1980,
                month_of_birth=5,
                gender_concept_id=8532,
                gender_source_value="female",
                race_source_value="2135-2",
                person_source_value="PID-3",
            ),
        )
        assert store.write(bundle) == 2

        person = db_session.scalars(select(Person)).one()
        assert person.year_of_birth == 1980
        assert person.month_of_birth == 5
        assert person.gender_concept_id == 8532
        assert person.race_source_value == "2135-2"
        assert person.person_source_value == "PID-3"
        assert person.fhir_logical_id == "pat-3"
        assert person.fhir_identifier == "pat-PID-3"
        assert db_session.scalars(select(PostProcessMap)).one().omop_table == "death"

    def test_rewrite_keeps_person_id(self, db_session: Session) -> None:
        store = SqlOutputStore(db_session)
        store.write(person_bundle(1980))
        first_id = db_session.scalars(select(Person)).one().person_id

        store.write(person_bundle(1981))
        person = db_session.scalars(select(Person)).one()
        assert person.person_id == first_id
        assert person.year_of_birth == 1981

    def test_write_visit(self, db_session: Session) -> None:
        store = SqlOutputStore(db_session)
        store.write(person_bundle())
        person_id = db_session.scalars(select(Person)).one().person_id

        assert store.write(visit_bundle(person_id)) == 1
        visit = db_session.scalars(select(VisitOccurrence)).one()
        assert visit.person_id == person_id
        assert visit.visit_start_date == date(2021, 5, 1)
        assert visit.visit_end_date == date(2021, 5, 3)
        assert visit.visit_end_datetime == datetime(2021, 5, 3, 12, 0)
        assert visit.visit_source_value == "VN-30"
        assert visit.fhir_identifier == "enc-VN-30"

    def test_written_entities_become_resolvable(self, db_session: Session) -> None:
        reference_data = PreloadedReferenceData()
        store = SqlOutputStore(db_session, reference_data)
        store.write(person_bundle())
        person_id = db_session.scalars(select(Person)).one().person_id
        store.write(visit_bundle(person_id))
        visit_id = db_session.scalars(select(VisitOccurrence)).one().visit_occurrence_id

        assert reference_data.identity_by_identifier(IdentityKind.PERSON, "pat-PID-3") == IdentityRecord(
            person_id, person_id
        )
        assert reference_data.identity_by_logical_id(IdentityKind.VISIT, "enc-30") == IdentityRecord(
            visit_id, person_id
        )

    def test_delete_person_cascades(self, db_session: Session) -> None:
        reference_data = PreloadedReferenceData()
        store = SqlOutputStore(db_session, reference_data)
        store.write(person_bundle())
        person_id = db_session.scalars(select(Person)).one().person_id
        store.write(visit_bundle(person_id))
        store.write(OutputBundle.build(KEYS, [fact(FactTable.CONDITION_OCCURRENCE, person_id=person_id)], []))
        db_session.add(PostProcessMap(type="PATIENT", omop_table="location", fhir_logical_id="pat-3"))
        db_session.flush()

        assert store.delete_entity("Patient", PATIENT_KEYS) == 4
        assert count(db_session, Person) == 0
        assert count(db_session, VisitOccurrence) == 0
        assert count(db_session, ConditionOccurrence) == 0
        assert count(db_session, PostProcessMap) == 0
        assert reference_data.identity_by_logical_id(IdentityKind.PERSON, "pat-3") is None

    def test_delete_visit_keeps_facts(self, db_session: Session) -> None:
        store = SqlOutputStore(db_session)
        store.write(person_bundle())
        person_id = db_session.scalars(select(Person)).one().person_id
        store.write(visit_bundle(person_id))
        visit_id = db_session.scalars(select(VisitOccurrence)).one().visit_occurrence_id
        store.write(
            OutputBundle.build(
                KEYS,
                [fact(FactTable.CONDITION_OCCURRENCE, person_id=person_id, visit_occurrence_id=visit_id)],
                [],
            )
        )

        assert store.delete_entity("Encounter", ENCOUNTER_KEYS) == 1
        assert count(db_session, VisitOccurrence) == 0
        condition_row = db_session.scalars(select(ConditionOccurrence)).one()
        assert condition_row.visit_occurrence_id is None

    def test_delete_unknown_entity(self, db_session: Session) -> None:
        assert SqlOutputStore(db_session).delete_entity("Patient", PATIENT_KEYS) == 0


class TestIncrementalEntities:
    """Tests for re-mapping Patients and Encounters against a database."""

    @pytest.fixture
    def store(self, db_session: Session, reference_data: PreloadedReferenceData) -> SqlOutputStore:
        return SqlOutputStore(db_session, reference_data)

    @pytest.fixture
    def registry(
        self, reference_data: PreloadedReferenceData, metrics: MappingMetrics, store: SqlOutputStore
    ) -> MapperRegistry:
        config = Settings(bulk_load=False, fhir_systems=EXTRA_SYSTEMS)
        return build_mappers(reference_data, metrics=metrics, store=store, config=config)

    def run(self, registry: MapperRegistry, store: SqlOutputStore, resource: dict, is_deleted: bool = False) -> None:
        bundle = registry.map(resource, is_deleted=is_deleted)
        if bundle is not None:
            store.write(bundle)

    def test_patient_then_encounter(
        self, registry: MapperRegistry, store: SqlOutputStore, db_session: Session
    ) -> None:
        self.run(registry, store, patient(deceasedDateTime="2022-01-02"))
        self.run(registry, store, patient(deceasedDateTime="2022-01-02"))
        self.run(registry, store, encounter(subject={"reference": "Patient/3"}))

        person = db_session.scalars(select(Person)).one()
        visit = db_session.scalars(select(VisitOccurrence)).one()
        assert visit.person_id == person.person_id
        links = db_session.scalars(select(PostProcessMap).order_by(PostProcessMap.type)).all()
        assert [(link.type, link.omop_table) for link in links] == [
            ("ENCOUNTER", "observation_period"),
            ("PATIENT", "death"),
        ]

    def test_patient_tombstone(
        self, registry: MapperRegistry, store: SqlOutputStore, db_session: Session
    ) -> None:
        self.run(registry, store, patient())
        self.run(registry, store, encounter(subject={"reference": "Patient/3"}))
        self.run(registry, store, {"resourceType": "Patient", "id": "3"}, is_deleted=True)

        assert count(db_session, Person) == 0
        assert count(db_session, VisitOccurrence) == 0
        assert count(db_session, PostProcessMap) == 0
