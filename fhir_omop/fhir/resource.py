"""Accessors for FHIR R4 resources given as parsed JSON dictionaries.

The mapper never touches raw resource JSON directly; it goes through these
helpers, which also hide the data-absent-reason convention (a primitive
replaced by an ``_<name>`` element carrying only an extension).
"""

import logging
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from fhir_omop.fhir.systems import EXTENSION_DATA_ABSENT_REASON
from fhir_omop.records import ClinicalCoding, NaturalKeys

logger = logging.getLogger(__name__)

_CAMEL_CASE_WORD = re.compile(r"[A-Z][a-z]*")

# FHIR dateTime allows partial dates; the longest matching format wins
_DATETIME_FORMATS = [
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d",
    "%Y-%m",
    "%Y",
]


# ============================================================================
# Natural keys and references
# ============================================================================


def type_prefix(resource_type: str) -> str:
    """Return the logical id prefix of a resource type.

    One-word types use their first three letters (``Condition`` -> ``con-``),
    ``Consent`` uses four to stay apart from ``Condition``. Compound types use
    the first two letters of the first word and the first letter of the
    second (``MedicationAdministration`` -> ``mea-``).
    """
    if resource_type == "Consent":
        return "cons-"
    words = _CAMEL_CASE_WORD.findall(resource_type) or [resource_type]
    if len(words) == 1:
        prefix = words[0][:3]
    else:
        prefix = words[0][:2] + words[1][:1]
    return prefix.lower() + "-"


def logical_id(resource_type: str, resource_id: str | None) -> str | None:
    """Prefix a FHIR id or identifier value with its type prefix.

    Identifier values are prefixed like ids so that equal business
    identifiers of different resource types never share a natural key.
    """
    if not resource_id:
        return None
    return type_prefix(resource_type) + resource_id


def strip_prefix(resource_type: str, key: str | None) -> str | None:
    """Inverse of ``logical_id``."""
    prefix = type_prefix(resource_type)
    if key and key.startswith(prefix):
        return key[len(prefix):]
    return key


def first_identifier(resource: dict[str, Any]) -> str | None:
    """Return the value of the first identifier that has one."""
    for identifier in resource.get("identifier") or []:
        value = identifier.get("value")
        if value:
            return value
    return None


def natural_keys(resource: dict[str, Any]) -> NaturalKeys:
    """Extract the natural keys of a resource."""
    resource_type = resource.get("resourceType", "")
    return NaturalKeys(
        logical_id=logical_id(resource_type, resource.get("id")),
        identifier=logical_id(resource_type, first_identifier(resource)),
    )


def reference_keys(reference: dict[str, Any] | None, target_type: str) -> NaturalKeys:
    """Translate a FHIR Reference into the natural key space of its target.

    Args:
        reference: Reference element (``{"reference": "Patient/1"}`` and/or
            ``{"identifier": {"value": "..."}}``).
        target_type: Expected resource type of the target (e.g. "Patient").

    Returns:
        Natural keys of the referenced resource; empty when unusable.
    """
    if not reference:
        return NaturalKeys()

    target_id = None
    literal = reference.get("reference")
    if literal:
        # Relative, absolute and versioned references: take "<Type>/<id>"
        parts = literal.split("/_history/")[0].rstrip("/").split("/")
        if len(parts) >= 2 and parts[-2] == target_type:
            target_id = parts[-1]
        elif len(parts) == 1 and not literal.startswith("#"):
            target_id = parts[0]

    identifier = (reference.get("identifier") or {}).get("value")
    return NaturalKeys(
        logical_id=logical_id(target_type, target_id),
        identifier=logical_id(target_type, identifier),
    )


def subject_keys(resource: dict[str, Any]) -> NaturalKeys:
    """Natural keys of the patient a resource belongs to."""
    return reference_keys(resource.get("subject") or resource.get("patient"), "Patient")


def encounter_keys(resource: dict[str, Any]) -> NaturalKeys:
    """Natural keys of the encounter a resource was recorded in."""
    return reference_keys(resource.get("encounter") or resource.get("context"), "Encounter")


# ============================================================================
# Primitives
# ============================================================================


def is_data_absent(element: dict[str, Any], name: str) -> bool:
    """Check whether a primitive is replaced by a data-absent-reason."""
    shadow = element.get(f"_{name}") or {}
    return any(
        ext.get("url") == EXTENSION_DATA_ABSENT_REASON for ext in shadow.get("extension") or []
    )


def primitive(element: dict[str, Any] | None, name: str) -> Any:
    """Return a primitive value, or None if missing or data-absent."""
    if not element or is_data_absent(element, name):
        return None
    return element.get(name)


def parse_datetime(value: str | None) -> datetime | None:
    """Parse a FHIR date/dateTime/instant string.

    The offset of timezone-aware values is dropped; OMOP datetime columns
    are naive wall-clock times.
    """
    if not value:
        return None

    normalized = value.strip().replace("Z", "+00:00")
    if re.search(r"[+-]\d{2}:\d{2}$", normalized) and "T" in normalized:
        # strptime %z does not accept the colon on every interpreter
        normalized = normalized[:-3] + normalized[-2:]

    for fmt in _DATETIME_FORMATS:
        try:
            parsed = datetime.strptime(normalized, fmt)
        except ValueError:
            continue
        return parsed.replace(tzinfo=None)

    logger.debug(f"Unparseable FHIR dateTime: {value!r}")
    return None


def parse_period(period: dict[str, Any] | None) -> tuple[datetime | None, datetime | None]:
    """Return (start, end) of a FHIR Period."""
    if not period:
        return None, None
    return parse_datetime(primitive(period, "start")), parse_datetime(primitive(period, "end"))


def parse_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


# ============================================================================
# Codings
# ============================================================================


def to_coding(coding: dict[str, Any]) -> ClinicalCoding | None:
    """Convert a FHIR Coding element; None if it has no usable code."""
    code = primitive(coding, "code")
    if not code or not str(code).strip():
        return None

    extensions = []
    for ext in coding.get("extension") or []:
        value = ext.get("valueCoding") or {}
        if ext.get("url") and value.get("code"):
            extensions.append((ext["url"], value["code"]))

    return ClinicalCoding(
        system=primitive(coding, "system"),
        code=str(code).strip(),
        version=primitive(coding, "version") or None,
        display=coding.get("display"),
        extensions=tuple(extensions),
    )


def codings(codeable: dict[str, Any] | None) -> list[ClinicalCoding]:
    """Return the usable codings of a CodeableConcept, in document order."""
    if not codeable:
        return []
    result = []
    for coding in codeable.get("coding") or []:
        converted = to_coding(coding)
        if converted is not None:
            result.append(converted)
    return result


def first_coding(
    codeable: dict[str, Any] | list[dict[str, Any]] | None,
    system: str | None = None,
) -> ClinicalCoding | None:
    """Return the first coding (optionally of a given system).

    Accepts a single CodeableConcept or a list of them.
    """
    if not codeable:
        return None
    concepts = codeable if isinstance(codeable, list) else [codeable]
    for concept in concepts:
        for coding in codings(concept):
            if system is None or coding.system == system:
                return coding
    return None


def resolve_path(resource: dict[str, Any], path: str) -> Any:
    """Follow a dotted path; list elements resolve to their first item."""
    current: Any = resource
    for part in path.split("."):
        if isinstance(current, list):
            current = current[0] if current else None
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current
