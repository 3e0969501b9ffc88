"""Tests for the deferred link registry."""

import pytest

from fhir_omop.etl.errors import InvalidDeferredLinkError
from fhir_omop.etl.links import DeferredLinkRegistry, pairing_links
from fhir_omop.records import DeferredLink, NaturalKeys

KEYS = NaturalKeys(logical_id="con-1", identifier="con-COND-1")


def link(data_one: str, target_table: str = "severity") -> DeferredLink:
    return DeferredLink(
        type_tag="CONDITION",
        data_one=data_one,
        data_two="4087703",
        target_table=target_table,
        owner_ref=1,
        natural_keys=KEYS,
    )


class TestDeferredLinkRegistry:
    """Tests for link collection."""

    def test_keeps_emission_order(self) -> None:
        registry = DeferredLinkRegistry()
        registry.extend([link("b:27"), link("a:27"), link("c:27")])
        assert [item.data_one for item in registry.links] == ["b:27", "a:27", "c:27"]

    def test_drops_duplicates(self) -> None:
        registry = DeferredLinkRegistry()
        assert registry.add(link("a:27"))
        assert not registry.add(link("a:27"))
        assert len(registry) == 1

    def test_same_data_other_table_is_distinct(self) -> None:
        registry = DeferredLinkRegistry()
        registry.extend([link("a:27", "severity"), link("a:27", "stage")])
        assert len(registry) == 2

    @pytest.mark.parametrize("target_table", ["", "  "])
    def test_link_without_target_table_is_rejected(self, target_table: str) -> None:
        registry = DeferredLinkRegistry()
        with pytest.raises(InvalidDeferredLinkError):
            registry.add(link("a:27", target_table))
        assert len(registry) == 0

    def test_links_returns_a_copy(self) -> None:
        registry = DeferredLinkRegistry()
        registry.add(link("a:27"))
        registry.links.clear()
        assert len(registry) == 1


class TestPairingLinks:
    """Tests for primary/secondary pairing."""

    def test_single_pair(self) -> None:
        [pair] = pairing_links(
            "CONDITION", ["I10:Condition"], ["Z.09:Condition"], "primary_secondary_icd", KEYS
        )
        assert pair.data_one == "I10:Condition"
        assert pair.data_two == "Z.09:Condition"
        assert pair.owner_ref == 0
        assert pair.natural_keys == KEYS

    def test_cross_product_keeps_order(self) -> None:
        pairs = pairing_links("CONDITION", ["a", "b"], ["x", "y"], "primary_secondary_icd", KEYS)
        assert [(p.data_one, p.data_two) for p in pairs] == [
            ("a", "x"),
            ("a", "y"),
            ("b", "x"),
            ("b", "y"),
        ]

    def test_empty_side_yields_nothing(self) -> None:
        assert pairing_links("CONDITION", ["a"], [], "primary_secondary_icd", KEYS) == []
