"""SQLAlchemy model for deferred links.

Relationships that can only be wired up once both sides have surrogate ids
(ICD primary/secondary pairs, diagnosis meta information, site localization)
are written here keyed by the natural keys of the owning resource. A second,
out-of-band pass joins on those keys and materializes the relationship rows.
"""

from sqlalchemy import BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from fhir_omop.core.database import Base, BigIntPK


class PostProcessMap(Base):
    """Deferred link record."""

    __tablename__ = "post_process_map"

    data_id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    type: Mapped[str | None] = mapped_column(String(50))
    data_one: Mapped[str | None] = mapped_column(String(255))
    data_two: Mapped[str | None] = mapped_column(String(255))
    omop_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    omop_table: Mapped[str] = mapped_column(String(50), nullable=False)
    fhir_logical_id: Mapped[str | None] = mapped_column(String(250))
    fhir_identifier: Mapped[str | None] = mapped_column(String(250))

    __table_args__ = (
        Index("idx_post_process_map_fhir_logical_id", "fhir_logical_id"),
        Index("idx_post_process_map_fhir_identifier", "fhir_identifier"),
        Index("idx_post_process_map_omop_table", "omop_table"),
    )

    def __repr__(self) -> str:
        return (
            f"<PostProcessMap(table='{self.omop_table}', one='{self.data_one}', "
            f"two='{self.data_two}', logical_id='{self.fhir_logical_id}')>"
        )
