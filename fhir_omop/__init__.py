"""FHIR to OMOP CDM mapping core."""

__version__ = "0.1.0"
