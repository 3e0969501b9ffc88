"""Tests for FHIR resource accessors and onset extraction."""

from datetime import datetime
from decimal import Decimal

import pytest

from fhir_omop.etl.onset import instant, period, resolve_onset
from fhir_omop.fhir.resource import (
    codings,
    encounter_keys,
    first_coding,
    natural_keys,
    parse_datetime,
    parse_decimal,
    primitive,
    reference_keys,
    resolve_path,
    strip_prefix,
    subject_keys,
    type_prefix,
)
from fhir_omop.fhir.systems import EXTENSION_DATA_ABSENT_REASON, EXTENSION_DIAGNOSTIC_CONFIDENCE
from tests.conftest import SNOMED_SYSTEM


class TestNaturalKeys:
    """Tests for logical id prefixes and natural keys."""

    @pytest.mark.parametrize(
        "resource_type,prefix",
        [
            ("Condition", "con-"),
            ("Consent", "cons-"),
            ("Patient", "pat-"),
            ("Encounter", "enc-"),
            ("Observation", "obs-"),
            ("Procedure", "pro-"),
            ("Immunization", "imm-"),
            ("MedicationAdministration", "mea-"),
            ("MedicationStatement", "mes-"),
            ("DiagnosticReport", "dir-"),
        ],
    )
    def test_type_prefix(self, resource_type: str, prefix: str) -> None:
        assert type_prefix(resource_type) == prefix

    def test_natural_keys(self) -> None:
        keys = natural_keys(
            {
                "resourceType": "Condition",
                "id": "123",
                "identifier": [{"system": "urn:x"}, {"value": "COND-123"}],
            }
        )
        assert keys.logical_id == "con-123"
        assert keys.identifier == "con-COND-123"

    def test_identifiers_are_scoped_by_type(self) -> None:
        shared = {"id": "1", "identifier": [{"value": "X-1"}]}
        condition_keys = natural_keys({"resourceType": "Condition", **shared})
        observation_keys = natural_keys({"resourceType": "Observation", **shared})
        assert condition_keys.identifier != observation_keys.identifier
        assert strip_prefix("Observation", observation_keys.identifier) == "X-1"
        assert strip_prefix("Patient", "X-1") == "X-1"

    def test_missing_keys(self) -> None:
        keys = natural_keys({"resourceType": "Condition"})
        assert keys.is_empty
        assert str(keys) == "<no key>"


class TestReferenceKeys:
    """Tests for Reference translation."""

    def test_relative_reference(self) -> None:
        keys = subject_keys({"subject": {"reference": "Patient/1"}})
        assert keys.logical_id == "pat-1"

    def test_absolute_versioned_reference(self) -> None:
        keys = reference_keys(
            {"reference": "https://fhir.example.org/fhir/Patient/1/_history/3"}, "Patient"
        )
        assert keys.logical_id == "pat-1"

    def test_bare_id(self) -> None:
        assert reference_keys({"reference": "1"}, "Patient").logical_id == "pat-1"

    def test_other_target_type_is_ignored(self) -> None:
        assert reference_keys({"reference": "Group/1"}, "Patient").logical_id is None

    def test_contained_reference_is_ignored(self) -> None:
        assert reference_keys({"reference": "#p1"}, "Patient").is_empty

    def test_identifier_reference(self) -> None:
        keys = reference_keys({"identifier": {"value": "PID-1"}}, "Patient")
        assert keys.identifier == "pat-PID-1"
        assert keys.logical_id is None

    def test_patient_element_is_subject(self) -> None:
        assert subject_keys({"patient": {"reference": "Patient/7"}}).logical_id == "pat-7"

    def test_context_element_is_encounter(self) -> None:
        assert encounter_keys({"context": {"reference": "Encounter/5"}}).logical_id == "enc-5"


class TestPrimitives:
    """Tests for primitives, dates and decimals."""

    def test_data_absent_primitive(self) -> None:
        element = {
            "status": "final",
            "_status": {"extension": [{"url": EXTENSION_DATA_ABSENT_REASON, "valueCode": "unknown"}]},
        }
        assert primitive(element, "status") is None

    def test_present_primitive(self) -> None:
        assert primitive({"status": "final"}, "status") == "final"
        assert primitive(None, "status") is None

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2021-05-01", datetime(2021, 5, 1)),
            ("2021-05", datetime(2021, 5, 1)),
            ("2021", datetime(2021, 1, 1)),
            ("2021-05-01T10:30:00", datetime(2021, 5, 1, 10, 30)),
            ("2021-05-01T10:30:00+02:00", datetime(2021, 5, 1, 10, 30)),
            ("2021-05-01T10:30:00Z", datetime(2021, 5, 1, 10, 30)),
            ("2021-05-01T10:30:00.250+02:00", datetime(2021, 5, 1, 10, 30, 0, 250000)),
        ],
    )
    def test_parse_datetime(self, value: str, expected: datetime) -> None:
        assert parse_datetime(value) == expected

    def test_unparseable_datetime(self) -> None:
        assert parse_datetime("yesterday") is None
        assert parse_datetime(None) is None

    def test_parse_decimal(self) -> None:
        assert parse_decimal(13.5) == Decimal("13.5")
        assert parse_decimal("2") == Decimal("2")
        assert parse_decimal(True) is None
        assert parse_decimal("n/a") is None

    def test_resolve_path_through_lists(self) -> None:
        resource = {"dosage": [{"doseAndRate": [{"doseQuantity": {"value": 1}}]}]}
        assert resolve_path(resource, "dosage.doseAndRate.doseQuantity") == {"value": 1}
        assert resolve_path(resource, "dosage.route") is None
        assert resolve_path({"dosage": []}, "dosage.dose") is None


class TestCodings:
    """Tests for Coding conversion."""

    def test_codings_skip_blank_codes(self) -> None:
        result = codings(
            {"coding": [{"system": SNOMED_SYSTEM, "code": " "}, {"system": SNOMED_SYSTEM, "code": "1234"}]}
        )
        assert [c.code for c in result] == ["1234"]

    def test_coding_extensions(self) -> None:
        [coding] = codings(
            {
                "coding": [
                    {
                        "system": "http://fhir.de/CodeSystem/bfarm/icd-10-gm",
                        "version": "2021",
                        "code": "I10",
                        "extension": [
                            {"url": EXTENSION_DIAGNOSTIC_CONFIDENCE, "valueCoding": {"code": "G"}}
                        ],
                    }
                ]
            }
        )
        assert coding.version == "2021"
        assert coding.extension_code(EXTENSION_DIAGNOSTIC_CONFIDENCE) == "G"
        assert coding.extension_code("urn:other") is None

    def test_first_coding_by_system(self) -> None:
        concepts = [
            {"coding": [{"system": "urn:local", "code": "a"}]},
            {"coding": [{"system": SNOMED_SYSTEM, "code": "b"}]},
        ]
        assert first_coding(concepts).code == "a"
        assert first_coding(concepts, SNOMED_SYSTEM).code == "b"
        assert first_coding(None) is None


class TestOnset:
    """Tests for onset field precedence."""

    FIELDS = (instant("onsetDateTime"), period("onsetPeriod"), instant("recordedDate"))

    def test_first_field_wins(self) -> None:
        onset = resolve_onset(
            {"onsetDateTime": "2021-05-01", "recordedDate": "2021-06-01"}, self.FIELDS
        )
        assert onset.start_datetime == datetime(2021, 5, 1)
        assert onset.end_datetime is None

    def test_period_yields_end(self) -> None:
        onset = resolve_onset(
            {"onsetPeriod": {"start": "2021-05-01", "end": "2021-05-03"}}, self.FIELDS
        )
        assert onset.start_date == datetime(2021, 5, 1).date()
        assert onset.end_date == datetime(2021, 5, 3).date()

    def test_period_without_start_falls_through(self) -> None:
        onset = resolve_onset(
            {"onsetPeriod": {"end": "2021-05-03"}, "recordedDate": "2021-06-01"}, self.FIELDS
        )
        assert onset.start_datetime == datetime(2021, 6, 1)

    def test_no_onset(self) -> None:
        onset = resolve_onset({}, self.FIELDS)
        assert onset.start_datetime is None
        assert onset.start_date is None
