"""FHIR code system URIs and their OMOP vocabulary ids.

A coding's system URI decides which OMOP vocabulary its code is looked up in.
The table is static for a run; sites with local system URIs extend it through
``Settings.fhir_systems``.

Usage:
    from fhir_omop.fhir.systems import FhirSystems

    systems = FhirSystems({"local-icd": "ICD10GM"})
    systems.vocabulary_for("http://snomed.info/sct")  # "SNOMED"
    systems.vocabulary_for("local-icd")  # "ICD10GM"
"""

from collections.abc import Mapping

from fhir_omop.constants import (
    SOURCE_VOCABULARY_ID_DIAGNOSTIC_REPORT_CATEGORY,
    SOURCE_VOCABULARY_ID_GENDER,
    SOURCE_VOCABULARY_ID_OBSERVATION_CATEGORY,
    SOURCE_VOCABULARY_ID_PROCEDURE_BODYSITE,
    SOURCE_VOCABULARY_ID_PROCEDURE_DICOM,
    SOURCE_VOCABULARY_ID_ROUTE,
    VOCABULARY_ATC,
    VOCABULARY_ICD10GM,
    VOCABULARY_LOINC,
    VOCABULARY_OPS,
    VOCABULARY_ORPHA,
    VOCABULARY_SNOMED,
    VOCABULARY_UCUM,
)

SYSTEM_SNOMED = "http://snomed.info/sct"
SYSTEM_LOINC = "http://loinc.org"
SYSTEM_UCUM = "http://unitsofmeasure.org"
SYSTEM_ORPHA = "http://www.orpha.net"

# Extension URLs
EXTENSION_SITE_LOCALIZATION = "http://fhir.de/StructureDefinition/seitenlokalisation"
EXTENSION_DIAGNOSTIC_CONFIDENCE = (
    "http://fhir.de/StructureDefinition/icd-10-gm-diagnosesicherheit"
)
EXTENSION_DATA_ABSENT_REASON = "http://hl7.org/fhir/StructureDefinition/data-absent-reason"
EXTENSION_GENDER_AMTLICH_DE = "http://fhir.de/StructureDefinition/gender-amtlich-de"
EXTENSION_ETHNIC_GROUP = (
    "https://www.netzwerk-universitaetsmedizin.de/fhir/StructureDefinition/ethnic-group"
)
EXTENSION_AGE = "https://www.netzwerk-universitaetsmedizin.de/fhir/StructureDefinition/age"

# Encounter admission and discharge code systems
SYSTEMS_ADMISSION_REASON = ("http://fhir.de/CodeSystem/dgkev/Aufnahmegrund",)
SYSTEMS_ADMISSION_OCCASION = ("http://fhir.de/CodeSystem/dgkev/Aufnahmeanlass",)
SYSTEMS_DISCHARGE_REASON = ("http://fhir.de/CodeSystem/dgkev/Entlassungsgrund",)

DEFAULT_SYSTEM_VOCABULARY_MAP: dict[str, str] = {
    # Diagnoses
    "http://fhir.de/CodeSystem/bfarm/icd-10-gm": VOCABULARY_ICD10GM,
    "http://fhir.de/CodeSystem/dimdi/icd-10-gm": VOCABULARY_ICD10GM,
    SYSTEM_ORPHA: VOCABULARY_ORPHA,
    # Procedures
    "http://fhir.de/CodeSystem/bfarm/ops": VOCABULARY_OPS,
    "http://fhir.de/CodeSystem/dimdi/ops": VOCABULARY_OPS,
    "http://dicom.nema.org/resources/ontology/DCM": SOURCE_VOCABULARY_ID_PROCEDURE_DICOM,
    "http://fhir.de/CodeSystem/dimdi/seitenlokalisation": SOURCE_VOCABULARY_ID_PROCEDURE_BODYSITE,
    # Medication
    "http://fhir.de/CodeSystem/bfarm/atc": VOCABULARY_ATC,
    "http://fhir.de/CodeSystem/dimdi/atc": VOCABULARY_ATC,
    "http://www.whocc.no/atc": VOCABULARY_ATC,
    "http://standardterms.edqm.eu": SOURCE_VOCABULARY_ID_ROUTE,
    # Terminologies
    SYSTEM_SNOMED: VOCABULARY_SNOMED,
    SYSTEM_LOINC: VOCABULARY_LOINC,
    SYSTEM_UCUM: VOCABULARY_UCUM,
    # Categories and demographics
    "http://terminology.hl7.org/CodeSystem/observation-category": (
        SOURCE_VOCABULARY_ID_OBSERVATION_CATEGORY
    ),
    "http://terminology.hl7.org/CodeSystem/v2-0074": SOURCE_VOCABULARY_ID_DIAGNOSTIC_REPORT_CATEGORY,
    "http://fhir.de/CodeSystem/gender-amtlich-de": SOURCE_VOCABULARY_ID_GENDER,
}


class FhirSystems:
    """Static lookup from FHIR system URI to OMOP vocabulary id."""

    def __init__(self, extra: Mapping[str, str] | None = None):
        """Initialize the lookup table.

        Args:
            extra: Additional or overriding system URI to vocabulary entries.
        """
        self._map = dict(DEFAULT_SYSTEM_VOCABULARY_MAP)
        if extra:
            self._map.update(extra)

    def vocabulary_for(self, system: str | None) -> str | None:
        """Return the OMOP vocabulary id for a system URI, or None if unknown."""
        if not system:
            return None
        return self._map.get(system.strip())

    def systems_for(self, vocabulary_id: str) -> list[str]:
        """Return every system URI mapped onto a vocabulary."""
        return [system for system, vocab in self._map.items() if vocab == vocabulary_id]

    def __contains__(self, system: object) -> bool:
        return isinstance(system, str) and system.strip() in self._map
