"""Onset extraction.

Each resource type lists the temporal fields that may carry its onset, in
order of precedence. The first field that yields a start wins; a period also
yields an end.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from fhir_omop.fhir.resource import parse_datetime, parse_period, primitive
from fhir_omop.records import ResourceOnset


class OnsetKind(str, Enum):
    INSTANT = "instant"
    PERIOD = "period"


@dataclass(frozen=True)
class OnsetField:
    """One candidate temporal field of a resource."""

    name: str
    kind: OnsetKind = OnsetKind.INSTANT

    def extract(self, resource: dict[str, Any]) -> ResourceOnset | None:
        if self.kind is OnsetKind.PERIOD:
            start, end = parse_period(resource.get(self.name))
            if start is None:
                return None
            return ResourceOnset(start_datetime=start, end_datetime=end)

        start = parse_datetime(primitive(resource, self.name))
        if start is None:
            return None
        return ResourceOnset(start_datetime=start)


def instant(name: str) -> OnsetField:
    return OnsetField(name, OnsetKind.INSTANT)


def period(name: str) -> OnsetField:
    return OnsetField(name, OnsetKind.PERIOD)


def resolve_onset(resource: dict[str, Any], fields: tuple[OnsetField, ...]) -> ResourceOnset:
    """Return the onset from the first usable field, or an empty onset."""
    for onset_field in fields:
        onset = onset_field.extract(resource)
        if onset is not None:
            return onset
    return ResourceOnset()
