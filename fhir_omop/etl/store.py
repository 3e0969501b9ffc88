"""Database-backed output store.

Writes mapped bundles into the OMOP fact tables and ``post_process_map``,
and deletes earlier output of a resource by its natural keys. Transactions
stay with the caller: the store only adds, deletes and flushes.

Usage:
    with session_maker() as session:
        store = SqlOutputStore(session)
        registry = build_mappers(reference_data, store=store)
        bundle = registry.map(resource)
        if bundle is not None:
            store.write(bundle)
        session.commit()
"""

import logging
from dataclasses import asdict
from typing import Any

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

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
from fhir_omop.records import (
    ClinicalFact,
    DeferredLink,
    FactTable,
    NaturalKeys,
    OutputBundle,
    PersonRecord,
    VisitRecord,
)
from fhir_omop.vocabulary.reference_data import IdentityKind, IdentityRecord, ReferenceData

logger = logging.getLogger(__name__)

TABLE_MODELS = {
    FactTable.CONDITION_OCCURRENCE: ConditionOccurrence,
    FactTable.PROCEDURE_OCCURRENCE: ProcedureOccurrence,
    FactTable.OBSERVATION: Observation,
    FactTable.MEASUREMENT: Measurement,
    FactTable.DRUG_EXPOSURE: DrugExposure,
    FactTable.DEVICE_EXPOSURE: DeviceExposure,
}

ENTITY_MODELS: dict[str, tuple[Any, IdentityKind]] = {
    "Patient": (Person, IdentityKind.PERSON),
    "Encounter": (VisitOccurrence, IdentityKind.VISIT),
}

# ClinicalFact field -> column, per table. Fields a table has no column for
# are not written.
COLUMN_MAPS: dict[FactTable, dict[str, str]] = {
    FactTable.CONDITION_OCCURRENCE: {
        "concept_id": "condition_concept_id",
        "source_concept_id": "condition_source_concept_id",
        "source_value": "condition_source_value",
        "type_concept_id": "condition_type_concept_id",
        "start_datetime": "condition_start_datetime",
        "end_datetime": "condition_end_datetime",
        "status_concept_id": "condition_status_concept_id",
        "status_source_value": "condition_status_source_value",
    },
    FactTable.PROCEDURE_OCCURRENCE: {
        "concept_id": "procedure_concept_id",
        "source_concept_id": "procedure_source_concept_id",
        "source_value": "procedure_source_value",
        "type_concept_id": "procedure_type_concept_id",
        "start_datetime": "procedure_datetime",
        "end_datetime": "procedure_end_datetime",
        "qualifier_concept_id": "modifier_concept_id",
        "qualifier_source_value": "modifier_source_value",
        "quantity": "quantity",
    },
    FactTable.OBSERVATION: {
        "concept_id": "observation_concept_id",
        "source_concept_id": "observation_source_concept_id",
        "source_value": "observation_source_value",
        "type_concept_id": "observation_type_concept_id",
        "start_datetime": "observation_datetime",
        "value_as_number": "value_as_number",
        "value_as_string": "value_as_string",
        "value_as_concept_id": "value_as_concept_id",
        "qualifier_concept_id": "qualifier_concept_id",
        "qualifier_source_value": "qualifier_source_value",
        "unit_concept_id": "unit_concept_id",
        "unit_source_value": "unit_source_value",
    },
    FactTable.MEASUREMENT: {
        "concept_id": "measurement_concept_id",
        "source_concept_id": "measurement_source_concept_id",
        "source_value": "measurement_source_value",
        "type_concept_id": "measurement_type_concept_id",
        "start_datetime": "measurement_datetime",
        "value_as_number": "value_as_number",
        "value_as_string": "value_source_value",
        "value_as_concept_id": "value_as_concept_id",
        "unit_concept_id": "unit_concept_id",
        "unit_source_value": "unit_source_value",
    },
    FactTable.DRUG_EXPOSURE: {
        "concept_id": "drug_concept_id",
        "source_concept_id": "drug_source_concept_id",
        "source_value": "drug_source_value",
        "type_concept_id": "drug_type_concept_id",
        "start_datetime": "drug_exposure_start_datetime",
        "end_datetime": "drug_exposure_end_datetime",
        "quantity": "quantity",
        "route_concept_id": "route_concept_id",
        "route_source_value": "route_source_value",
        "unit_source_value": "dose_unit_source_value",
    },
    FactTable.DEVICE_EXPOSURE: {
        "concept_id": "device_concept_id",
        "source_concept_id": "device_source_concept_id",
        "source_value": "device_source_value",
        "type_concept_id": "device_type_concept_id",
        "start_datetime": "device_exposure_start_datetime",
        "end_datetime": "device_exposure_end_datetime",
        "quantity": "quantity",
        "unit_concept_id": "unit_concept_id",
        "unit_source_value": "unit_source_value",
    },
}

# Date columns derived from the datetime columns
DATE_COLUMNS: dict[FactTable, tuple[str, str | None]] = {
    FactTable.CONDITION_OCCURRENCE: ("condition_start_date", "condition_end_date"),
    FactTable.PROCEDURE_OCCURRENCE: ("procedure_date", "procedure_end_date"),
    FactTable.OBSERVATION: ("observation_date", None),
    FactTable.MEASUREMENT: ("measurement_date", None),
    FactTable.DRUG_EXPOSURE: ("drug_exposure_start_date", "drug_exposure_end_date"),
    FactTable.DEVICE_EXPOSURE: ("device_exposure_start_date", "device_exposure_end_date"),
}

_INTEGER_QUANTITY_TABLES = (FactTable.PROCEDURE_OCCURRENCE, FactTable.DEVICE_EXPOSURE)


def fact_to_row(fact: ClinicalFact) -> Any:
    """Build the ORM row for a fact."""
    values = asdict(fact)
    columns: dict[str, Any] = {
        "person_id": fact.person_id,
        "visit_occurrence_id": fact.visit_occurrence_id,
        "fhir_logical_id": fact.natural_keys.logical_id,
        "fhir_identifier": fact.natural_keys.identifier,
    }
    for field_name, column in COLUMN_MAPS[fact.table].items():
        columns[column] = values[field_name]

    start_column, end_column = DATE_COLUMNS[fact.table]
    start_date = fact.start_datetime.date() if fact.start_datetime else None
    end_date = fact.end_datetime.date() if fact.end_datetime else None
    columns[start_column] = start_date
    if end_column is not None:
        columns[end_column] = end_date

    if fact.table is FactTable.DRUG_EXPOSURE and end_date is None:
        # drug_exposure_end_date is mandatory
        columns["drug_exposure_end_date"] = start_date
        columns["drug_exposure_end_datetime"] = fact.start_datetime

    if fact.table in _INTEGER_QUANTITY_TABLES and fact.quantity is not None:
        columns["quantity"] = int(fact.quantity)

    return TABLE_MODELS[fact.table](**columns)


def link_to_row(link: DeferredLink) -> PostProcessMap:
    return PostProcessMap(
        type=link.type_tag,
        data_one=link.data_one,
        data_two=link.data_two,
        omop_id=link.owner_ref,
        omop_table=link.target_table,
        fhir_logical_id=link.natural_keys.logical_id,
        fhir_identifier=link.natural_keys.identifier,
    )


def person_columns(record: PersonRecord) -> dict[str, Any]:
    """Column values of a person row, natural keys included."""
    columns = asdict(record)
    keys = columns.pop("natural_keys")
    columns["fhir_logical_id"] = keys["logical_id"]
    columns["fhir_identifier"] = keys["identifier"]
    return columns


def visit_columns(record: VisitRecord) -> dict[str, Any]:
    """Column values of a visit_occurrence row, natural keys included."""
    end = record.end_datetime
    return {
        "person_id": record.person_id,
        "visit_concept_id": record.visit_concept_id,
        "visit_type_concept_id": record.visit_type_concept_id,
        "visit_start_date": record.start_datetime.date(),
        "visit_start_datetime": record.start_datetime,
        "visit_end_date": end.date() if end else None,
        "visit_end_datetime": end,
        "visit_source_value": record.visit_source_value,
        "fhir_logical_id": record.natural_keys.logical_id,
        "fhir_identifier": record.natural_keys.identifier,
    }


class SqlOutputStore:
    """Output store on a SQLAlchemy session.

    Persons and visits are upserted by natural keys so that their surrogate
    ids survive re-mapping. When a reference data cache is given, its
    identity indexes follow every person and visit written or deleted.
    """

    def __init__(self, session: Session, reference_data: ReferenceData | None = None) -> None:
        """Initialize the store.

        Args:
            session: SQLAlchemy database session.
            reference_data: Cache whose identity indexes are kept current.
        """
        self._session = session
        self._reference_data = reference_data

    def delete_by_natural_keys(
        self, resource_type: str, natural_keys: NaturalKeys, tables: list[FactTable]
    ) -> int:
        """Delete earlier output of a resource.

        The logical id addresses rows when present, the identifier
        otherwise. Deleting keys without rows is a no-op.

        Returns:
            Number of deleted rows, deferred links included.
        """
        if natural_keys.is_empty:
            return 0

        deleted = 0
        for table in tables:
            model = TABLE_MODELS[table]
            stmt = delete(model).where(self._key_clause(model, natural_keys))
            deleted += self._session.execute(stmt).rowcount or 0

        stmt = delete(PostProcessMap).where(
            PostProcessMap.type == resource_type.upper(),
            self._key_clause(PostProcessMap, natural_keys),
        )
        deleted += self._session.execute(stmt).rowcount or 0
        return deleted

    def delete_entity(self, resource_type: str, natural_keys: NaturalKeys) -> int:
        """Delete a person or visit and its deferred links.

        Fact rows and visits of a deleted person go with it, links included;
        fact rows of a deleted visit stay, with their visit_occurrence_id
        cleared.

        Returns:
            Number of deleted rows.
        """
        deleted = self.delete_by_natural_keys(resource_type, natural_keys, [])
        model, kind = ENTITY_MODELS[resource_type]
        row = self._find(model, natural_keys)
        if row is None:
            return deleted

        if model is Person:
            deleted += self._delete_dependents(row.person_id)
        else:
            for fact_model in TABLE_MODELS.values():
                self._session.execute(
                    update(fact_model)
                    .where(fact_model.visit_occurrence_id == row.visit_occurrence_id)
                    .values(visit_occurrence_id=None)
                )

        self._session.delete(row)
        self._session.flush()
        if self._reference_data is not None:
            self._reference_data.forget_identity(kind, natural_keys)
        logger.debug(f"Deleted {resource_type} [{natural_keys}] with {deleted} dependent rows")
        return deleted + 1

    def _delete_dependents(self, person_id: int) -> int:
        """Delete the fact rows and visits of a person and their links.

        Natural keys are type-prefixed, so a link is matched by key alone.
        """
        logical_ids: set[str] = set()
        identifiers: set[str] = set()
        deleted = 0
        for dependent in [*TABLE_MODELS.values(), VisitOccurrence]:
            keys = self._session.execute(
                select(dependent.fhir_logical_id, dependent.fhir_identifier).where(
                    dependent.person_id == person_id
                )
            ).all()
            for logical_id, identifier in keys:
                if logical_id:
                    logical_ids.add(logical_id)
                elif identifier:
                    identifiers.add(identifier)
                if dependent is VisitOccurrence and self._reference_data is not None:
                    self._reference_data.forget_identity(
                        IdentityKind.VISIT, NaturalKeys(logical_id, identifier)
                    )
            stmt = delete(dependent).where(dependent.person_id == person_id)
            deleted += self._session.execute(stmt).rowcount or 0

        if logical_ids or identifiers:
            stmt = delete(PostProcessMap).where(
                or_(
                    PostProcessMap.fhir_logical_id.in_(logical_ids),
                    PostProcessMap.fhir_identifier.in_(identifiers),
                )
            )
            deleted += self._session.execute(stmt).rowcount or 0
        return deleted

    @staticmethod
    def _key_clause(model: Any, natural_keys: NaturalKeys) -> Any:
        if natural_keys.logical_id:
            return model.fhir_logical_id == natural_keys.logical_id
        return model.fhir_identifier == natural_keys.identifier

    def _find(self, model: Any, natural_keys: NaturalKeys) -> Any:
        if natural_keys.is_empty:
            return None
        stmt = select(model).where(self._key_clause(model, natural_keys)).limit(1)
        return self._session.scalars(stmt).first()

    def _upsert(self, model: Any, natural_keys: NaturalKeys, columns: dict[str, Any]) -> Any:
        row = self._find(model, natural_keys)
        if row is None:
            row = model(**columns)
            self._session.add(row)
        else:
            for column, value in columns.items():
                setattr(row, column, value)
        self._session.flush()
        return row

    def _register(self, kind: IdentityKind, record: IdentityRecord, natural_keys: NaturalKeys) -> None:
        if self._reference_data is not None:
            self._reference_data.register_identity(kind, record, natural_keys)

    def write(self, bundle: OutputBundle) -> int:
        """Write the person or visit, every fact row and every deferred link of a bundle.

        Returns:
            Number of rows added or updated.
        """
        written = 0
        if bundle.person is not None:
            row = self._upsert(Person, bundle.natural_keys, person_columns(bundle.person))
            self._register(
                IdentityKind.PERSON, IdentityRecord(row.person_id, row.person_id), bundle.natural_keys
            )
            written += 1
        if bundle.visit is not None:
            row = self._upsert(VisitOccurrence, bundle.natural_keys, visit_columns(bundle.visit))
            self._register(
                IdentityKind.VISIT,
                IdentityRecord(row.visit_occurrence_id, row.person_id),
                bundle.natural_keys,
            )
            written += 1

        rows = [fact_to_row(fact) for fact in bundle.all_facts()]
        rows.extend(link_to_row(link) for link in bundle.links)
        self._session.add_all(rows)
        self._session.flush()
        written += len(rows)
        logger.debug(f"Wrote {written} rows for [{bundle.natural_keys}]")
        return written
