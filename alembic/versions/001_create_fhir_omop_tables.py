"""Create reference, OMOP CDM and deferred link tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19

Reference tables (concept, source_to_concept_map, standard_domain_lookup)
feed the concept resolver. The OMOP clinical tables carry the natural keys
(fhir_logical_id, fhir_identifier) of the FHIR resource each row came from;
post_process_map holds the deferred links.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None

FHIR_KEYED_TABLES = (
    "person",
    "visit_occurrence",
    "condition_occurrence",
    "drug_exposure",
    "procedure_occurrence",
    "device_exposure",
    "measurement",
    "observation",
)


def _fhir_key_columns() -> list[sa.Column]:
    return [
        sa.Column("fhir_logical_id", sa.String(250), nullable=True),
        sa.Column("fhir_identifier", sa.String(250), nullable=True),
    ]


def _person_fk() -> sa.Column:
    return sa.Column("person_id", sa.BigInteger(), sa.ForeignKey("person.person_id"), nullable=False)


def _visit_fk() -> sa.Column:
    return sa.Column(
        "visit_occurrence_id",
        sa.BigInteger(),
        sa.ForeignKey("visit_occurrence.visit_occurrence_id"),
        nullable=True,
    )


def upgrade() -> None:
    """Create tables."""

    # Reference tables
    op.create_table(
        "concept",
        sa.Column("concept_id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("concept_name", sa.String(255), nullable=False),
        sa.Column("domain_id", sa.String(20), nullable=False),
        sa.Column("vocabulary_id", sa.String(20), nullable=False),
        sa.Column("concept_class_id", sa.String(20), nullable=False),
        sa.Column("standard_concept", sa.String(1), nullable=True),
        sa.Column("concept_code", sa.String(50), nullable=False),
        sa.Column("valid_start_date", sa.Date(), nullable=False),
        sa.Column("valid_end_date", sa.Date(), nullable=False),
    )
    op.create_index("idx_concept_code_vocabulary", "concept", ["concept_code", "vocabulary_id"])

    op.create_table(
        "source_to_concept_map",
        sa.Column("id", sa.BigInteger(), autoincrement=True, primary_key=True),
        sa.Column("source_code", sa.String(50), nullable=False),
        sa.Column("source_concept_id", sa.Integer(), nullable=False),
        sa.Column("source_vocabulary_id", sa.String(30), nullable=False),
        sa.Column("source_code_description", sa.String(255), nullable=True),
        sa.Column("target_concept_id", sa.Integer(), nullable=False),
        sa.Column("target_vocabulary_id", sa.String(20), nullable=False),
        sa.Column("valid_start_date", sa.Date(), nullable=False),
        sa.Column("valid_end_date", sa.Date(), nullable=False),
    )
    op.create_index(
        "idx_source_to_concept_map_code",
        "source_to_concept_map",
        ["source_vocabulary_id", "source_code"],
    )

    op.create_table(
        "standard_domain_lookup",
        sa.Column("id", sa.BigInteger(), autoincrement=True, primary_key=True),
        sa.Column("lookup_variant", sa.String(30), nullable=False),
        sa.Column("source_code", sa.String(50), nullable=False),
        sa.Column("source_vocabulary_id", sa.String(20), nullable=False),
        sa.Column("source_concept_id", sa.Integer(), nullable=False),
        sa.Column("source_domain_id", sa.String(20), nullable=True),
        sa.Column("standard_concept_id", sa.Integer(), nullable=False),
        sa.Column("standard_domain_id", sa.String(20), nullable=False),
        sa.Column("valid_start_date", sa.Date(), nullable=False),
        sa.Column("valid_end_date", sa.Date(), nullable=False),
    )
    op.create_index(
        "idx_standard_domain_lookup_code",
        "standard_domain_lookup",
        ["lookup_variant", "source_vocabulary_id", "source_code"],
    )

    # Identity tables
    op.create_table(
        "person",
        sa.Column("person_id", sa.BigInteger(), autoincrement=True, primary_key=True),
        sa.Column("gender_concept_id", sa.Integer(), nullable=False),
        sa.Column("year_of_birth", sa.Integer(), nullable=False),
        sa.Column("month_of_birth", sa.Integer(), nullable=True),
        sa.Column("day_of_birth", sa.Integer(), nullable=True),
        sa.Column("birth_datetime", sa.DateTime(), nullable=True),
        sa.Column("race_concept_id", sa.Integer(), nullable=False),
        sa.Column("ethnicity_concept_id", sa.Integer(), nullable=False),
        sa.Column("person_source_value", sa.String(50), nullable=True),
        sa.Column("gender_source_value", sa.String(50), nullable=True),
        sa.Column("gender_source_concept_id", sa.Integer(), nullable=True),
        sa.Column("race_source_value", sa.String(50), nullable=True),
        sa.Column("race_source_concept_id", sa.Integer(), nullable=True),
        sa.Column("ethnicity_source_value", sa.String(50), nullable=True),
        sa.Column("ethnicity_source_concept_id", sa.Integer(), nullable=True),
        *_fhir_key_columns(),
    )

    op.create_table(
        "visit_occurrence",
        sa.Column("visit_occurrence_id", sa.BigInteger(), autoincrement=True, primary_key=True),
        _person_fk(),
        sa.Column("visit_concept_id", sa.Integer(), nullable=False),
        sa.Column("visit_start_date", sa.Date(), nullable=False),
        sa.Column("visit_start_datetime", sa.DateTime(), nullable=True),
        sa.Column("visit_end_date", sa.Date(), nullable=True),
        sa.Column("visit_end_datetime", sa.DateTime(), nullable=True),
        sa.Column("visit_type_concept_id", sa.Integer(), nullable=False),
        sa.Column("visit_source_value", sa.String(50), nullable=True),
        *_fhir_key_columns(),
    )

    # Clinical fact tables
    op.create_table(
        "condition_occurrence",
        sa.Column("condition_occurrence_id", sa.BigInteger(), autoincrement=True, primary_key=True),
        _person_fk(),
        sa.Column("condition_concept_id", sa.Integer(), nullable=False),
        sa.Column("condition_start_date", sa.Date(), nullable=False),
        sa.Column("condition_start_datetime", sa.DateTime(), nullable=True),
        sa.Column("condition_end_date", sa.Date(), nullable=True),
        sa.Column("condition_end_datetime", sa.DateTime(), nullable=True),
        sa.Column("condition_type_concept_id", sa.Integer(), nullable=False),
        sa.Column("condition_status_concept_id", sa.Integer(), nullable=True),
        _visit_fk(),
        sa.Column("condition_source_value", sa.String(50), nullable=True),
        sa.Column("condition_source_concept_id", sa.Integer(), nullable=True),
        sa.Column("condition_status_source_value", sa.String(50), nullable=True),
        *_fhir_key_columns(),
    )

    op.create_table(
        "drug_exposure",
        sa.Column("drug_exposure_id", sa.BigInteger(), autoincrement=True, primary_key=True),
        _person_fk(),
        sa.Column("drug_concept_id", sa.Integer(), nullable=False),
        sa.Column("drug_exposure_start_date", sa.Date(), nullable=False),
        sa.Column("drug_exposure_start_datetime", sa.DateTime(), nullable=True),
        sa.Column("drug_exposure_end_date", sa.Date(), nullable=False),
        sa.Column("drug_exposure_end_datetime", sa.DateTime(), nullable=True),
        sa.Column("drug_type_concept_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Numeric(10, 2), nullable=True),
        sa.Column("route_concept_id", sa.Integer(), nullable=True),
        _visit_fk(),
        sa.Column("drug_source_value", sa.String(50), nullable=True),
        sa.Column("drug_source_concept_id", sa.Integer(), nullable=True),
        sa.Column("route_source_value", sa.String(50), nullable=True),
        sa.Column("dose_unit_source_value", sa.String(50), nullable=True),
        *_fhir_key_columns(),
    )

    op.create_table(
        "procedure_occurrence",
        sa.Column("procedure_occurrence_id", sa.BigInteger(), autoincrement=True, primary_key=True),
        _person_fk(),
        sa.Column("procedure_concept_id", sa.Integer(), nullable=False),
        sa.Column("procedure_date", sa.Date(), nullable=False),
        sa.Column("procedure_datetime", sa.DateTime(), nullable=True),
        sa.Column("procedure_end_date", sa.Date(), nullable=True),
        sa.Column("procedure_end_datetime", sa.DateTime(), nullable=True),
        sa.Column("procedure_type_concept_id", sa.Integer(), nullable=False),
        sa.Column("modifier_concept_id", sa.Integer(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=True),
        _visit_fk(),
        sa.Column("procedure_source_value", sa.String(50), nullable=True),
        sa.Column("procedure_source_concept_id", sa.Integer(), nullable=True),
        sa.Column("modifier_source_value", sa.String(50), nullable=True),
        *_fhir_key_columns(),
    )

    op.create_table(
        "device_exposure",
        sa.Column("device_exposure_id", sa.BigInteger(), autoincrement=True, primary_key=True),
        _person_fk(),
        sa.Column("device_concept_id", sa.Integer(), nullable=False),
        sa.Column("device_exposure_start_date", sa.Date(), nullable=False),
        sa.Column("device_exposure_start_datetime", sa.DateTime(), nullable=True),
        sa.Column("device_exposure_end_date", sa.Date(), nullable=True),
        sa.Column("device_exposure_end_datetime", sa.DateTime(), nullable=True),
        sa.Column("device_type_concept_id", sa.Integer(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=True),
        _visit_fk(),
        sa.Column("device_source_value", sa.String(50), nullable=True),
        sa.Column("device_source_concept_id", sa.Integer(), nullable=True),
        sa.Column("unit_concept_id", sa.Integer(), nullable=True),
        sa.Column("unit_source_value", sa.String(50), nullable=True),
        *_fhir_key_columns(),
    )

    op.create_table(
        "measurement",
        sa.Column("measurement_id", sa.BigInteger(), autoincrement=True, primary_key=True),
        _person_fk(),
        sa.Column("measurement_concept_id", sa.Integer(), nullable=False),
        sa.Column("measurement_date", sa.Date(), nullable=False),
        sa.Column("measurement_datetime", sa.DateTime(), nullable=True),
        sa.Column("measurement_type_concept_id", sa.Integer(), nullable=False),
        sa.Column("value_as_number", sa.Numeric(20, 6), nullable=True),
        sa.Column("value_as_concept_id", sa.Integer(), nullable=True),
        sa.Column("unit_concept_id", sa.Integer(), nullable=True),
        _visit_fk(),
        sa.Column("measurement_source_value", sa.String(50), nullable=True),
        sa.Column("measurement_source_concept_id", sa.Integer(), nullable=True),
        sa.Column("unit_source_value", sa.String(50), nullable=True),
        sa.Column("value_source_value", sa.String(50), nullable=True),
        *_fhir_key_columns(),
    )

    op.create_table(
        "observation",
        sa.Column("observation_id", sa.BigInteger(), autoincrement=True, primary_key=True),
        _person_fk(),
        sa.Column("observation_concept_id", sa.Integer(), nullable=False),
        sa.Column("observation_date", sa.Date(), nullable=True),
        sa.Column("observation_datetime", sa.DateTime(), nullable=True),
        sa.Column("observation_type_concept_id", sa.Integer(), nullable=False),
        sa.Column("value_as_number", sa.Numeric(20, 6), nullable=True),
        sa.Column("value_as_string", sa.String(60), nullable=True),
        sa.Column("value_as_concept_id", sa.Integer(), nullable=True),
        sa.Column("qualifier_concept_id", sa.Integer(), nullable=True),
        sa.Column("unit_concept_id", sa.Integer(), nullable=True),
        _visit_fk(),
        sa.Column("observation_source_value", sa.String(50), nullable=True),
        sa.Column("observation_source_concept_id", sa.Integer(), nullable=True),
        sa.Column("unit_source_value", sa.String(50), nullable=True),
        sa.Column("qualifier_source_value", sa.String(50), nullable=True),
        *_fhir_key_columns(),
    )

    for table in FHIR_KEYED_TABLES:
        op.create_index(f"idx_{table}_fhir_logical_id", table, ["fhir_logical_id"])
        op.create_index(f"idx_{table}_fhir_identifier", table, ["fhir_identifier"])

    # Deferred links
    op.create_table(
        "post_process_map",
        sa.Column("data_id", sa.BigInteger(), autoincrement=True, primary_key=True),
        sa.Column("type", sa.String(50), nullable=True),
        sa.Column("data_one", sa.String(255), nullable=True),
        sa.Column("data_two", sa.String(255), nullable=True),
        sa.Column("omop_id", sa.BigInteger(), nullable=False),
        sa.Column("omop_table", sa.String(50), nullable=False),
        *_fhir_key_columns(),
    )
    op.create_index("idx_post_process_map_fhir_logical_id", "post_process_map", ["fhir_logical_id"])
    op.create_index("idx_post_process_map_fhir_identifier", "post_process_map", ["fhir_identifier"])
    op.create_index("idx_post_process_map_omop_table", "post_process_map", ["omop_table"])


def downgrade() -> None:
    """Drop tables."""

    # Drop in reverse order of creation (respect foreign keys)
    op.drop_table("post_process_map")
    for table in reversed(FHIR_KEYED_TABLES):
        op.drop_table(table)
    op.drop_table("standard_domain_lookup")
    op.drop_table("source_to_concept_map")
    op.drop_table("concept")
