"""Tests for the reference data cache.

Both strategies are run against the same SQLite tables; they must answer
every lookup identically.
"""

from datetime import date

import pytest
from sqlalchemy.orm import Session, sessionmaker

from fhir_omop.core.config import Settings
from fhir_omop.models import omop
from fhir_omop.models import vocabulary as vocab_models
from fhir_omop.models.vocabulary import LookupVariant
from fhir_omop.records import CustomConcept
from fhir_omop.vocabulary.reference_data import (
    IdentityKind,
    IdentityRecord,
    OnDemandReferenceData,
    PreloadedReferenceData,
    ReferenceData,
    build_reference_data,
    preloaded,
)


@pytest.fixture
def seeded(db_session: Session) -> Session:
    """Reference and identity rows shared by both strategies."""
    db_session.add_all(
        [
            vocab_models.Concept(
                concept_id=1,
                concept_name="Essential hypertension (2019)",
                domain_id="Condition",
                vocabulary_id="ICD10GM",
                concept_class_id="ICD10 code",
                concept_code="I10",
                valid_start_date=date(2019, 1, 1),
                valid_end_date=date(2020, 12, 31),
            ),
            vocab_models.Concept(
                concept_id=2,
                concept_name="Essential hypertension",
                domain_id="Condition",
                vocabulary_id="ICD10GM",
                concept_class_id="ICD10 code",
                concept_code="I10",
                valid_start_date=date(2021, 1, 1),
                valid_end_date=date(2099, 12, 31),
            ),
            vocab_models.StandardDomainLookup(
                lookup_variant=LookupVariant.CODE_STANDARD,
                source_code="I10",
                source_vocabulary_id="ICD10GM",
                source_concept_id=2,
                standard_concept_id=320128,
                standard_domain_id="Condition",
                valid_start_date=date(2021, 1, 1),
                valid_end_date=date(2099, 12, 31),
            ),
            vocab_models.StandardDomainLookup(
                lookup_variant=LookupVariant.HIERARCHY_STANDARD,
                source_code="B01AC06",
                source_vocabulary_id="ATC",
                source_concept_id=21600961,
                standard_concept_id=1112807,
                standard_domain_id="Drug",
                valid_start_date=date(2000, 1, 1),
                valid_end_date=date(2099, 12, 31),
            ),
            vocab_models.SourceToConceptMap(
                source_code="G",
                source_vocabulary_id="Diagnostic Conf.",
                target_concept_id=4228211,
            ),
            omop.Person(
                person_id=1,
                year_of_birth=1980,
                fhir_logical_id="pat-1",
                fhir_identifier="pat-PID-1",
            ),
            omop.VisitOccurrence(
                visit_occurrence_id=10,
                person_id=1,
                visit_start_date=date(2021, 5, 1),
                fhir_logical_id="enc-10",
            ),
        ]
    )
    db_session.commit()
    return db_session


@pytest.fixture(params=["preloaded", "on_demand"])
def cache(request, seeded: Session, session_factory: sessionmaker[Session]) -> ReferenceData:
    if request.param == "preloaded":
        reference_data = PreloadedReferenceData(session_factory)
        reference_data.load()
        return reference_data
    return OnDemandReferenceData(session_factory)


class TestLookups:
    """Tests shared by both strategies."""

    def test_concepts_latest_first(self, cache: ReferenceData) -> None:
        concepts = cache.concepts("I10", "ICD10GM")
        assert [c.concept_id for c in concepts] == [2, 1]
        assert concepts[0].valid_start == date(2021, 1, 1)

    def test_concepts_unknown_code(self, cache: ReferenceData) -> None:
        assert cache.concepts("X99", "ICD10GM") == []

    def test_crosswalk_is_case_insensitive(self, cache: ReferenceData) -> None:
        [entry] = cache.crosswalk("i10", "ICD10GM")
        assert entry.target_concept_id == 320128
        assert entry.domain_id == "Condition"

    def test_crosswalk_variant(self, cache: ReferenceData) -> None:
        assert cache.crosswalk("B01AC06", "ATC") == []
        [entry] = cache.crosswalk("B01AC06", "ATC", LookupVariant.HIERARCHY_STANDARD)
        assert entry.target_concept_id == 1112807
        assert entry.variant == LookupVariant.HIERARCHY_STANDARD

    def test_custom_concept(self, cache: ReferenceData) -> None:
        assert cache.custom_concept("G", "Diagnostic Conf.").target_concept_id == 4228211
        assert cache.custom_concept("G", "ICD Localization") is None

    def test_person_identity(self, cache: ReferenceData) -> None:
        expected = IdentityRecord(surrogate_id=1, person_id=1)
        assert cache.identity_by_identifier(IdentityKind.PERSON, "pat-PID-1") == expected
        assert cache.identity_by_logical_id(IdentityKind.PERSON, "pat-1") == expected

    def test_visit_identity_carries_person(self, cache: ReferenceData) -> None:
        record = cache.identity_by_logical_id(IdentityKind.VISIT, "enc-10")
        assert record == IdentityRecord(surrogate_id=10, person_id=1)

    def test_unknown_identity(self, cache: ReferenceData) -> None:
        assert cache.identity_by_logical_id(IdentityKind.PERSON, "pat-99") is None
        assert cache.identity_by_identifier(IdentityKind.VISIT, "pat-PID-1") is None


class TestPreloadedReferenceData:
    """Tests for the in-memory strategy."""

    def test_load_without_session_factory_raises(self) -> None:
        with pytest.raises(RuntimeError):
            PreloadedReferenceData().load()

    def test_preloaded_context_loads_and_clears(
        self, seeded: Session, session_factory: sessionmaker[Session]
    ) -> None:
        reference_data = PreloadedReferenceData(session_factory)
        with preloaded(reference_data) as active:
            assert active.is_loaded
            assert active.concepts("I10", "ICD10GM")
        assert not reference_data.is_loaded
        assert reference_data.concepts("I10", "ICD10GM") == []

    def test_load_is_idempotent(self, seeded: Session, session_factory: sessionmaker[Session]) -> None:
        reference_data = PreloadedReferenceData(session_factory)
        reference_data.load()
        reference_data.load()
        assert len(reference_data.concepts("I10", "ICD10GM")) == 2

    def test_first_custom_concept_wins(self) -> None:
        reference_data = PreloadedReferenceData()
        reference_data.add_custom_concepts(
            [CustomConcept("G", "Diagnostic Conf.", 1), CustomConcept("G", "Diagnostic Conf.", 2)]
        )
        assert reference_data.custom_concept("G", "Diagnostic Conf.").target_concept_id == 1

    def test_on_demand_context_is_a_no_op(self, session_factory: sessionmaker[Session]) -> None:
        reference_data = OnDemandReferenceData(session_factory)
        with preloaded(reference_data) as active:
            assert active is reference_data
            assert not active.preloaded


class TestBuildReferenceData:
    """Tests for strategy selection."""

    def test_preloaded_when_enabled(self, session_factory: sessionmaker[Session]) -> None:
        reference_data = build_reference_data(Settings(dictionary_load_in_ram=True), session_factory)
        assert isinstance(reference_data, PreloadedReferenceData)

    def test_on_demand_when_disabled(self, session_factory: sessionmaker[Session]) -> None:
        settings = Settings(dictionary_load_in_ram=False)
        assert isinstance(build_reference_data(settings, session_factory), OnDemandReferenceData)
