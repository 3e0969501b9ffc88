"""Tests for the identity resolver."""

import pytest

from fhir_omop.records import NaturalKeys
from fhir_omop.vocabulary.identity import IdentityResolver
from fhir_omop.vocabulary.reference_data import (
    IdentityKind,
    IdentityRecord,
    PreloadedReferenceData,
)


@pytest.fixture
def persons() -> IdentityResolver:
    cache = PreloadedReferenceData()
    cache.add_identity(IdentityKind.PERSON, IdentityRecord(1, 1), identifier="pat-PID-1", logical_id="pat-1")
    cache.add_identity(IdentityKind.PERSON, IdentityRecord(2, 2), logical_id="pat-2")
    cache.add_identity(IdentityKind.VISIT, IdentityRecord(10, 1), logical_id="pat-2")
    return IdentityResolver(cache, IdentityKind.PERSON)


class TestIdentityResolver:
    """Tests for natural key to surrogate id resolution."""

    def test_identifier_takes_precedence(self, persons: IdentityResolver) -> None:
        assert persons.resolve("pat-PID-1", "pat-2") == 1

    def test_logical_id_is_fallback(self, persons: IdentityResolver) -> None:
        assert persons.resolve("pat-PID-UNKNOWN", "pat-2") == 2
        assert persons.resolve(None, "pat-2") == 2

    def test_unknown_keys(self, persons: IdentityResolver) -> None:
        assert persons.resolve("pat-PID-UNKNOWN", "pat-99") is None
        assert persons.resolve(None, None) is None

    def test_resolve_keys(self, persons: IdentityResolver) -> None:
        assert persons.resolve_keys(NaturalKeys(logical_id="pat-1")) == 1
        assert persons.resolve_keys(NaturalKeys()) is None

    def test_kinds_are_separate_indexes(self, persons: IdentityResolver) -> None:
        visits = IdentityResolver(persons.reference_data, IdentityKind.VISIT)
        assert visits.lookup(None, "pat-2") == IdentityRecord(10, 1)
        assert visits.resolve("pat-PID-1", None) is None
