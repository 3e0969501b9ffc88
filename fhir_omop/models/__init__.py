"""SQLAlchemy ORM models for the FHIR to OMOP mapper.

Models:
- OMOP CDM output tables (omop.py)
- Vocabulary reference tables (vocabulary.py)
- Deferred link table (post_process.py)
"""

from fhir_omop.core.database import Base
from fhir_omop.models.omop import (
    ConditionOccurrence,
    DeviceExposure,
    DrugExposure,
    Measurement,
    Observation,
    Person,
    ProcedureOccurrence,
    VisitOccurrence,
)
from fhir_omop.models.post_process import PostProcessMap
from fhir_omop.models.vocabulary import (
    Concept,
    LookupVariant,
    SourceToConceptMap,
    StandardDomainLookup,
)

__all__ = [
    "Base",
    # OMOP CDM
    "Person",
    "VisitOccurrence",
    "ConditionOccurrence",
    "DrugExposure",
    "ProcedureOccurrence",
    "DeviceExposure",
    "Measurement",
    "Observation",
    # Vocabulary
    "Concept",
    "LookupVariant",
    "SourceToConceptMap",
    "StandardDomainLookup",
    # Deferred links
    "PostProcessMap",
]
