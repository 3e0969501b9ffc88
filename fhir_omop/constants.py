"""OMOP CDM constants shared by the mapping core.

Concept ids, vocabulary ids and domain ids follow the OHDSI standardized
vocabularies. Status allow-lists hold the FHIR status codes a resource must
carry to be mapped.
"""

from datetime import date

# ============================================================================
# Concept IDs
# ============================================================================

CONCEPT_NO_MATCHING_CONCEPT = 0
CONCEPT_EHR = 32817
CONCEPT_STAGE = 4106767
CONCEPT_SEVERITY = 4077563
CONCEPT_GENDER_UNKNOWN = 4214687
CONCEPT_UNKNOWN_RACIAL_GROUP = 4218674
CONCEPT_HISPANIC_OR_LATINO = 38003563
CONCEPT_EHR_RECORD_STATUS_DECEASED = 38003569
CONCEPT_AGE_AT_DIAGNOSIS = 4307859
CONCEPT_INPATIENT = 9201
CONCEPT_STILL_PATIENT = 32220

# ============================================================================
# Vocabulary IDs
# ============================================================================

VOCABULARY_ICD10GM = "ICD10GM"
VOCABULARY_SNOMED = "SNOMED"
VOCABULARY_LOINC = "LOINC"
VOCABULARY_UCUM = "UCUM"
VOCABULARY_ATC = "ATC"
VOCABULARY_OPS = "OPS"
VOCABULARY_ORPHA = "OrphaCode"

# Local vocabularies held in source_to_concept_map (no validity window)
SOURCE_VOCABULARY_ID_DIAGNOSTIC_CONFIDENCE = "Diagnostic Conf."
SOURCE_VOCABULARY_ID_ICD_LOCALIZATION = "ICD Localization"
SOURCE_VOCABULARY_ID_PROCEDURE_DICOM = "Procedure DICOM"
SOURCE_VOCABULARY_ID_OBSERVATION_CATEGORY = "Observation Category"
SOURCE_VOCABULARY_ID_DIAGNOSTIC_REPORT_CATEGORY = "Diag.Rep Category"
SOURCE_VOCABULARY_ID_ROUTE = "EDQM"
SOURCE_VOCABULARY_ID_PROCEDURE_BODYSITE = "Procedure Bodysite"
SOURCE_VOCABULARY_ID_GENDER = "Gender"
SOURCE_VOCABULARY_ID_VISIT_TYPE = "Visit Type"
SOURCE_VOCABULARY_ID_VISIT_STATUS = "Visit Status"

# ============================================================================
# Domain IDs
# ============================================================================

OMOP_DOMAIN_CONDITION = "Condition"
OMOP_DOMAIN_OBSERVATION = "Observation"
OMOP_DOMAIN_MEASUREMENT = "Measurement"
OMOP_DOMAIN_PROCEDURE = "Procedure"
OMOP_DOMAIN_DRUG = "Drug"
OMOP_DOMAIN_DEVICE = "Device"

# ============================================================================
# FHIR status allow-lists
# ============================================================================

FHIR_RESOURCE_ACCEPTABLE_EVENT_STATUS_LIST = ("in-progress", "on-hold", "completed")
FHIR_RESOURCE_OBSERVATION_ACCEPTABLE_STATUS_LIST = ("final", "amended", "corrected")
FHIR_RESOURCE_DIAGNOSTIC_REPORT_ACCEPTABLE_STATUS_LIST = (
    "final",
    "amended",
    "corrected",
    "appended",
)
FHIR_RESOURCE_CONDITION_ACCEPTABLE_VERIFICATION_STATUS_LIST = ("confirmed", "410605003")
FHIR_RESOURCE_MEDICATION_STATEMENT_ACCEPTABLE_STATUS_LIST = (
    "active",
    "completed",
    "intended",
    "on-hold",
)
FHIR_RESOURCE_IMMUNIZATION_ACCEPTABLE_STATUS_LIST = ("completed",)

FHIR_RESOURCE_ENCOUNTER_ACCEPTABLE_STATUS_LIST = (
    "planned",
    "arrived",
    "triaged",
    "in-progress",
    "onleave",
    "finished",
    "unknown",
)

# Observations that may legitimately lack an effective date
FHIR_RESOURCE_OBSERVATION_HISTORY_OF_TRAVEL_CODES = ("8691-8", "443846001")

# ============================================================================
# Misc
# ============================================================================

DEFAULT_BEGIN_DATE = date(1800, 1, 1)
DEFAULT_END_DATE = date(2099, 12, 31)
MAX_SOURCE_VALUE_LENGTH = 50
MAX_LOCATION_ZIP_LENGTH = 9
MAX_LOCATION_CITY_LENGTH = 50
MAX_LOCATION_COUNTRY_LENGTH = 2
MAX_LOCATION_STATE_LENGTH = 20

# Ethnic group codes with a fixed race/ethnicity treatment
ETHNICITY_SOURCE_HISPANIC_OR_LATINO = "2135-2"
ETHNICITY_SOURCE_MIXED = "26242008"

# Encounter class codes of an inpatient stay (compared case-insensitively)
ENCOUNTER_CLASS_INPATIENT_CODES = ("station", "stationaer")

# Marks appended to ICD-10-GM codes (cross/star coding, secondary, additional)
STAR_CROSS_CODING_REGEX = r"[+†*!]*"

# Deferred link target tables
LINK_TABLE_PRIMARY_SECONDARY_ICD = "primary_secondary_icd"
LINK_TABLE_SITE_LOCALIZATION = "site_localization"
LINK_TABLE_SEVERITY = "severity"
LINK_TABLE_STAGE = "stage"
LINK_TABLE_DEATH = "death"
LINK_TABLE_LOCATION = "location"
LINK_TABLE_AGE_AT_DIAGNOSIS = "age_at_diagnosis"
LINK_TABLE_OBSERVATION_PERIOD = "observation_period"
LINK_TABLE_ADMISSION_REASON = "admission_reason"
LINK_TABLE_ADMISSION_OCCASION = "admission_occasion"
LINK_TABLE_DISCHARGE_REASON = "discharge_reason"

# field_concept_id of observation.observation_concept_id in the OMOP metadata
OBSERVATION_CONCEPT_FIELD_ID = 27
