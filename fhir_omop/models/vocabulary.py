"""SQLAlchemy models for OMOP vocabulary reference data.

The mapper reads three tables:

    - concept: the OMOP CONCEPT table, with its validity window
    - source_to_concept_map: local codes (status, category, route, ...)
      mapped onto concepts without a validity window
    - standard_domain_lookup: crosswalk from source codes (ICD-10-GM, OPS,
      ATC, Orpha, vaccine SNOMED, ...) to standard concepts and their domain
"""

import enum
from datetime import date

from sqlalchemy import Date, Enum, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from fhir_omop.constants import DEFAULT_BEGIN_DATE, DEFAULT_END_DATE
from fhir_omop.core.database import Base, BigIntPK


class LookupVariant(str, enum.Enum):
    """Kind of crosswalk held in standard_domain_lookup."""

    CODE_STANDARD = "code_standard"
    HIERARCHY_STANDARD = "hierarchy_standard"
    DEMOGRAPHIC_STANDARD = "demographic_standard"


class Concept(Base):
    """OMOP CONCEPT table (subset of columns used for resolution)."""

    __tablename__ = "concept"

    concept_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    concept_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    domain_id: Mapped[str] = mapped_column(String(20), nullable=False)
    vocabulary_id: Mapped[str] = mapped_column(String(20), nullable=False)
    concept_class_id: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    standard_concept: Mapped[str | None] = mapped_column(String(1))
    concept_code: Mapped[str] = mapped_column(String(50), nullable=False)
    valid_start_date: Mapped[date] = mapped_column(Date, nullable=False, default=DEFAULT_BEGIN_DATE)
    valid_end_date: Mapped[date] = mapped_column(Date, nullable=False, default=DEFAULT_END_DATE)

    __table_args__ = (
        Index("idx_concept_code_vocabulary", "concept_code", "vocabulary_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Concept(concept_id={self.concept_id}, code='{self.concept_code}', "
            f"vocabulary='{self.vocabulary_id}', domain='{self.domain_id}')>"
        )


class SourceToConceptMap(Base):
    """OMOP SOURCE_TO_CONCEPT_MAP table for local vocabularies."""

    __tablename__ = "source_to_concept_map"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    source_code: Mapped[str] = mapped_column(String(50), nullable=False)
    source_concept_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source_vocabulary_id: Mapped[str] = mapped_column(String(30), nullable=False)
    source_code_description: Mapped[str | None] = mapped_column(String(255))
    target_concept_id: Mapped[int] = mapped_column(Integer, nullable=False)
    target_vocabulary_id: Mapped[str] = mapped_column(String(20), nullable=False, default="")
    valid_start_date: Mapped[date] = mapped_column(Date, nullable=False, default=DEFAULT_BEGIN_DATE)
    valid_end_date: Mapped[date] = mapped_column(Date, nullable=False, default=DEFAULT_END_DATE)

    __table_args__ = (
        Index("idx_source_to_concept_map_code", "source_vocabulary_id", "source_code"),
    )


class StandardDomainLookup(Base):
    """Crosswalk from a source code to a standard concept and its domain.

    One row per (source code, standard concept) pair. The validity window
    belongs to the source code: a code retired from its vocabulary no longer
    maps, even when its standard target is still valid.
    """

    __tablename__ = "standard_domain_lookup"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    lookup_variant: Mapped[LookupVariant] = mapped_column(
        Enum(LookupVariant, native_enum=False, length=30),
        nullable=False,
        default=LookupVariant.CODE_STANDARD,
    )
    source_code: Mapped[str] = mapped_column(String(50), nullable=False)
    source_vocabulary_id: Mapped[str] = mapped_column(String(20), nullable=False)
    source_concept_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source_domain_id: Mapped[str | None] = mapped_column(String(20))
    standard_concept_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    standard_domain_id: Mapped[str] = mapped_column(String(20), nullable=False)
    valid_start_date: Mapped[date] = mapped_column(Date, nullable=False, default=DEFAULT_BEGIN_DATE)
    valid_end_date: Mapped[date] = mapped_column(Date, nullable=False, default=DEFAULT_END_DATE)

    __table_args__ = (
        Index(
            "idx_standard_domain_lookup_code",
            "lookup_variant",
            "source_vocabulary_id",
            "source_code",
        ),
    )
