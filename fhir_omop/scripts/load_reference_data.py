"""Load the reference tables the mapper resolves codes against.

Reads tab separated files in the Athena export format:

    CONCEPT.csv                  OMOP concepts with validity windows
    SOURCE_TO_CONCEPT_MAP.csv    local vocabularies (diagnostic confidence, ...)
    STANDARD_DOMAIN_LOOKUP.csv   source -> standard crosswalk, one row per
                                 lookup_variant (CODE_STANDARD, ...)

Usage:
    # Load everything found in a directory
    python -m fhir_omop.scripts.load_reference_data --path /path/to/vocab/

    # Load specific vocabularies only
    python -m fhir_omop.scripts.load_reference_data --path /path/to/vocab/ --vocabularies ICD10GM,SNOMED
"""

import argparse
import csv
import logging
from collections.abc import Callable, Iterator
from datetime import date, datetime
from pathlib import Path
from typing import Any

from sqlalchemy import delete, insert
from sqlalchemy.orm import Session

from fhir_omop.constants import DEFAULT_BEGIN_DATE, DEFAULT_END_DATE
from fhir_omop.core.config import settings
from fhir_omop.core.database import close_db, get_session_maker, get_sync_engine, init_db
from fhir_omop.models.vocabulary import (
    Concept,
    LookupVariant,
    SourceToConceptMap,
    StandardDomainLookup,
)

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

REFERENCE_FILES = {
    "CONCEPT.csv": Concept,
    "SOURCE_TO_CONCEPT_MAP.csv": SourceToConceptMap,
    "STANDARD_DOMAIN_LOOKUP.csv": StandardDomainLookup,
}


def parse_athena_date(value: str | None, default: date) -> date:
    """Parse YYYYMMDD (Athena) or YYYY-MM-DD dates."""
    if not value:
        return default
    value = value.strip()
    for fmt in ("%Y%m%d", "%Y-%m-%d"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date: {value!r}")


def concept_row(row: dict[str, str]) -> dict[str, Any]:
    return {
        "concept_id": int(row["concept_id"]),
        "concept_name": row.get("concept_name", "")[:255],
        "domain_id": row["domain_id"],
        "vocabulary_id": row["vocabulary_id"],
        "concept_class_id": row.get("concept_class_id", ""),
        "standard_concept": row.get("standard_concept") or None,
        "concept_code": row["concept_code"],
        "valid_start_date": parse_athena_date(row.get("valid_start_date"), DEFAULT_BEGIN_DATE),
        "valid_end_date": parse_athena_date(row.get("valid_end_date"), DEFAULT_END_DATE),
    }


def source_to_concept_row(row: dict[str, str]) -> dict[str, Any]:
    return {
        "source_code": row["source_code"],
        "source_concept_id": int(row.get("source_concept_id") or 0),
        "source_vocabulary_id": row["source_vocabulary_id"],
        "source_code_description": row.get("source_code_description") or None,
        "target_concept_id": int(row["target_concept_id"]),
        "target_vocabulary_id": row.get("target_vocabulary_id", ""),
        "valid_start_date": parse_athena_date(row.get("valid_start_date"), DEFAULT_BEGIN_DATE),
        "valid_end_date": parse_athena_date(row.get("valid_end_date"), DEFAULT_END_DATE),
    }


def standard_domain_lookup_row(row: dict[str, str]) -> dict[str, Any]:
    return {
        "lookup_variant": LookupVariant[(row.get("lookup_variant") or "code_standard").upper()],
        "source_code": row["source_code"],
        "source_vocabulary_id": row["source_vocabulary_id"],
        "source_concept_id": int(row.get("source_concept_id") or 0),
        "source_domain_id": row.get("source_domain_id") or None,
        "standard_concept_id": int(row.get("standard_concept_id") or 0),
        "standard_domain_id": row["standard_domain_id"],
        "valid_start_date": parse_athena_date(row.get("valid_start_date"), DEFAULT_BEGIN_DATE),
        "valid_end_date": parse_athena_date(row.get("valid_end_date"), DEFAULT_END_DATE),
    }


ROW_BUILDERS: dict[type, Callable[[dict[str, str]], dict[str, Any]]] = {
    Concept: concept_row,
    SourceToConceptMap: source_to_concept_row,
    StandardDomainLookup: standard_domain_lookup_row,
}

VOCABULARY_COLUMNS = {
    Concept: "vocabulary_id",
    SourceToConceptMap: "source_vocabulary_id",
    StandardDomainLookup: "source_vocabulary_id",
}


def read_rows(path: Path, vocabulary_column: str, vocabularies: set[str] | None) -> Iterator[dict[str, str]]:
    with open(path, "r", encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f, delimiter="\t", quoting=csv.QUOTE_NONE)
        for row in reader:
            if vocabularies and row.get(vocabulary_column) not in vocabularies:
                continue
            yield row


def load_table(
    session: Session,
    model: type,
    path: Path,
    vocabularies: set[str] | None = None,
    batch_size: int = 10000,
) -> int:
    """Bulk insert one reference file.

    Args:
        session: Database session
        model: Target ORM model
        path: Tab separated input file
        vocabularies: Vocabulary ids to include (None = all)
        batch_size: Number of rows to insert per batch

    Returns:
        Number of rows loaded
    """
    logger.info(f"Loading {model.__tablename__} from {path}")
    build_row = ROW_BUILDERS[model]

    count = 0
    batch = []
    for row in read_rows(path, VOCABULARY_COLUMNS[model], vocabularies):
        batch.append(build_row(row))
        if len(batch) >= batch_size:
            session.execute(insert(model), batch)
            count += len(batch)
            logger.info(f"Loaded {count:,} {model.__tablename__} rows...")
            batch = []

    if batch:
        session.execute(insert(model), batch)
        count += len(batch)

    logger.info(f"Loaded {count:,} {model.__tablename__} rows total")
    return count


def load_reference_data(
    vocab_path: Path,
    vocabularies: set[str] | None = None,
    clear_existing: bool = True,
    session: Session | None = None,
) -> dict[str, int]:
    """Load every reference file found in a directory.

    Returns:
        Rows loaded per table name.
    """
    found = {name: model for name, model in REFERENCE_FILES.items() if (vocab_path / name).exists()}
    if not found:
        raise FileNotFoundError(f"No reference files in {vocab_path}")

    own_session = session is None
    session = session or get_session_maker()()
    try:
        counts = {}
        for name, model in found.items():
            if clear_existing:
                session.execute(delete(model))
            counts[model.__tablename__] = load_table(session, model, vocab_path / name, vocabularies)
        session.commit()
        return counts
    except Exception:
        session.rollback()
        raise
    finally:
        if own_session:
            session.close()


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Load OMOP reference tables for the FHIR mapper")
    parser.add_argument(
        "--path",
        type=Path,
        required=True,
        help="Directory containing CONCEPT.csv, SOURCE_TO_CONCEPT_MAP.csv, STANDARD_DOMAIN_LOOKUP.csv",
    )
    parser.add_argument(
        "--vocabularies",
        type=str,
        default=None,
        help="Comma-separated list of vocabulary_ids to load (default: all)",
    )
    parser.add_argument(
        "--no-clear",
        action="store_true",
        help="Don't clear existing reference data",
    )
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables first (development databases)",
    )
    args = parser.parse_args()

    vocabularies = None
    if args.vocabularies:
        vocabularies = set(v.strip() for v in args.vocabularies.split(","))

    try:
        if args.create_tables:
            init_db(get_sync_engine())
        counts = load_reference_data(
            args.path, vocabularies=vocabularies, clear_existing=not args.no_clear
        )
        for table, count in counts.items():
            logger.info(f"  {table}: {count:,}")
    finally:
        close_db()


if __name__ == "__main__":
    main()
