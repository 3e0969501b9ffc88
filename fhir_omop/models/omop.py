"""OMOP CDM v5.4 SQLAlchemy Models.

This module defines the OMOP Common Data Model tables written by the FHIR
mapper. Every clinical table carries the natural keys of the FHIR resource it
was mapped from (``fhir_logical_id`` and ``fhir_identifier``) so that rows can
be located again for incremental updates and deletes.

Reference: https://ohdsi.github.io/CommonDataModel/cdm54.html

Tables Implemented:
    - person: Patient demographics (identity index for subjects)
    - visit_occurrence: Encounters (identity index for encounters)
    - condition_occurrence: Diagnoses/conditions
    - drug_exposure: Medication administrations and statements, immunizations
    - procedure_occurrence: Clinical procedures
    - device_exposure: Device usage
    - measurement: Lab results and vitals
    - observation: Clinical observations, diagnosis meta information

Usage:
    from fhir_omop.models.omop import Person, ConditionOccurrence

    person = Person(
        person_id=1,
        gender_concept_id=8507,
        year_of_birth=1980,
        race_concept_id=0,
        ethnicity_concept_id=0,
        fhir_logical_id="pat-123",
    )
"""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from fhir_omop.core.database import Base, BigIntPK


class FhirKeysMixin:
    """Natural keys of the FHIR resource a row was mapped from."""

    fhir_logical_id: Mapped[str | None] = mapped_column(String(250))
    fhir_identifier: Mapped[str | None] = mapped_column(String(250))

    @declared_attr.directive
    def __table_args__(cls) -> tuple:
        return (
            Index(f"idx_{cls.__tablename__}_fhir_logical_id", "fhir_logical_id"),
            Index(f"idx_{cls.__tablename__}_fhir_identifier", "fhir_identifier"),
        )


# =============================================================================
# Identity Tables
# =============================================================================


class Person(FhirKeysMixin, Base):
    """Patient demographic information.

    Based on OMOP CDM v5.4 PERSON table.
    """

    __tablename__ = "person"

    person_id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    gender_concept_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    year_of_birth: Mapped[int] = mapped_column(Integer, nullable=False)
    month_of_birth: Mapped[int | None] = mapped_column(Integer)
    day_of_birth: Mapped[int | None] = mapped_column(Integer)
    birth_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    race_concept_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ethnicity_concept_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    person_source_value: Mapped[str | None] = mapped_column(String(50))
    gender_source_value: Mapped[str | None] = mapped_column(String(50))
    gender_source_concept_id: Mapped[int | None] = mapped_column(Integer)
    race_source_value: Mapped[str | None] = mapped_column(String(50))
    race_source_concept_id: Mapped[int | None] = mapped_column(Integer)
    ethnicity_source_value: Mapped[str | None] = mapped_column(String(50))
    ethnicity_source_concept_id: Mapped[int | None] = mapped_column(Integer)


class VisitOccurrence(FhirKeysMixin, Base):
    """Healthcare encounter information.

    Based on OMOP CDM v5.4 VISIT_OCCURRENCE table.
    """

    __tablename__ = "visit_occurrence"

    visit_occurrence_id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("person.person_id"), nullable=False)
    visit_concept_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    visit_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    visit_start_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    visit_end_date: Mapped[date | None] = mapped_column(Date)
    visit_end_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    visit_type_concept_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    visit_source_value: Mapped[str | None] = mapped_column(String(50))


# =============================================================================
# Clinical Fact Tables
# =============================================================================


class ConditionOccurrence(FhirKeysMixin, Base):
    """Patient condition/diagnosis information.

    Based on OMOP CDM v5.4 CONDITION_OCCURRENCE table.
    """

    __tablename__ = "condition_occurrence"

    condition_occurrence_id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("person.person_id"), nullable=False)
    condition_concept_id: Mapped[int] = mapped_column(Integer, nullable=False)
    condition_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    condition_start_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    condition_end_date: Mapped[date | None] = mapped_column(Date)
    condition_end_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    condition_type_concept_id: Mapped[int] = mapped_column(Integer, nullable=False)
    condition_status_concept_id: Mapped[int | None] = mapped_column(Integer)
    visit_occurrence_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("visit_occurrence.visit_occurrence_id")
    )
    condition_source_value: Mapped[str | None] = mapped_column(String(50))
    condition_source_concept_id: Mapped[int | None] = mapped_column(Integer)
    condition_status_source_value: Mapped[str | None] = mapped_column(String(50))


class DrugExposure(FhirKeysMixin, Base):
    """Patient medication exposure information.

    Based on OMOP CDM v5.4 DRUG_EXPOSURE table.
    """

    __tablename__ = "drug_exposure"

    drug_exposure_id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("person.person_id"), nullable=False)
    drug_concept_id: Mapped[int] = mapped_column(Integer, nullable=False)
    drug_exposure_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    drug_exposure_start_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    drug_exposure_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    drug_exposure_end_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    drug_type_concept_id: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[Decimal | None] = mapped_column(Numeric(precision=10, scale=2))
    route_concept_id: Mapped[int | None] = mapped_column(Integer)
    visit_occurrence_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("visit_occurrence.visit_occurrence_id")
    )
    drug_source_value: Mapped[str | None] = mapped_column(String(50))
    drug_source_concept_id: Mapped[int | None] = mapped_column(Integer)
    route_source_value: Mapped[str | None] = mapped_column(String(50))
    dose_unit_source_value: Mapped[str | None] = mapped_column(String(50))


class ProcedureOccurrence(FhirKeysMixin, Base):
    """Patient procedure information.

    Based on OMOP CDM v5.4 PROCEDURE_OCCURRENCE table.
    """

    __tablename__ = "procedure_occurrence"

    procedure_occurrence_id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("person.person_id"), nullable=False)
    procedure_concept_id: Mapped[int] = mapped_column(Integer, nullable=False)
    procedure_date: Mapped[date] = mapped_column(Date, nullable=False)
    procedure_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    procedure_end_date: Mapped[date | None] = mapped_column(Date)
    procedure_end_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    procedure_type_concept_id: Mapped[int] = mapped_column(Integer, nullable=False)
    modifier_concept_id: Mapped[int | None] = mapped_column(Integer)
    quantity: Mapped[int | None] = mapped_column(Integer)
    visit_occurrence_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("visit_occurrence.visit_occurrence_id")
    )
    procedure_source_value: Mapped[str | None] = mapped_column(String(50))
    procedure_source_concept_id: Mapped[int | None] = mapped_column(Integer)
    modifier_source_value: Mapped[str | None] = mapped_column(String(50))


class DeviceExposure(FhirKeysMixin, Base):
    """Patient device exposure information.

    Based on OMOP CDM v5.4 DEVICE_EXPOSURE table.
    """

    __tablename__ = "device_exposure"

    device_exposure_id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("person.person_id"), nullable=False)
    device_concept_id: Mapped[int] = mapped_column(Integer, nullable=False)
    device_exposure_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    device_exposure_start_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    device_exposure_end_date: Mapped[date | None] = mapped_column(Date)
    device_exposure_end_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    device_type_concept_id: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity: Mapped[int | None] = mapped_column(Integer)
    visit_occurrence_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("visit_occurrence.visit_occurrence_id")
    )
    device_source_value: Mapped[str | None] = mapped_column(String(50))
    device_source_concept_id: Mapped[int | None] = mapped_column(Integer)
    unit_concept_id: Mapped[int | None] = mapped_column(Integer)
    unit_source_value: Mapped[str | None] = mapped_column(String(50))


class Measurement(FhirKeysMixin, Base):
    """Patient measurement information (labs, vitals).

    Based on OMOP CDM v5.4 MEASUREMENT table.
    """

    __tablename__ = "measurement"

    measurement_id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("person.person_id"), nullable=False)
    measurement_concept_id: Mapped[int] = mapped_column(Integer, nullable=False)
    measurement_date: Mapped[date] = mapped_column(Date, nullable=False)
    measurement_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    measurement_type_concept_id: Mapped[int] = mapped_column(Integer, nullable=False)
    value_as_number: Mapped[Decimal | None] = mapped_column(Numeric(precision=20, scale=6))
    value_as_concept_id: Mapped[int | None] = mapped_column(Integer)
    unit_concept_id: Mapped[int | None] = mapped_column(Integer)
    visit_occurrence_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("visit_occurrence.visit_occurrence_id")
    )
    measurement_source_value: Mapped[str | None] = mapped_column(String(50))
    measurement_source_concept_id: Mapped[int | None] = mapped_column(Integer)
    unit_source_value: Mapped[str | None] = mapped_column(String(50))
    value_source_value: Mapped[str | None] = mapped_column(String(50))


class Observation(FhirKeysMixin, Base):
    """Patient clinical observation information.

    Holds everything not captured by the other fact tables, including
    diagnosis meta information (severity, stage, site localization).
    Based on OMOP CDM v5.4 OBSERVATION table.
    """

    __tablename__ = "observation"

    observation_id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("person.person_id"), nullable=False)
    observation_concept_id: Mapped[int] = mapped_column(Integer, nullable=False)
    observation_date: Mapped[date | None] = mapped_column(Date)
    observation_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    observation_type_concept_id: Mapped[int] = mapped_column(Integer, nullable=False)
    value_as_number: Mapped[Decimal | None] = mapped_column(Numeric(precision=20, scale=6))
    value_as_string: Mapped[str | None] = mapped_column(String(60))
    value_as_concept_id: Mapped[int | None] = mapped_column(Integer)
    qualifier_concept_id: Mapped[int | None] = mapped_column(Integer)
    unit_concept_id: Mapped[int | None] = mapped_column(Integer)
    visit_occurrence_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("visit_occurrence.visit_occurrence_id")
    )
    observation_source_value: Mapped[str | None] = mapped_column(String(50))
    observation_source_concept_id: Mapped[int | None] = mapped_column(Integer)
    unit_source_value: Mapped[str | None] = mapped_column(String(50))
    qualifier_source_value: Mapped[str | None] = mapped_column(String(50))
