"""Map FHIR resources from files into the OMOP CDM.

Accepts FHIR Bundles (``.json``) and newline delimited resources
(``.ndjson``). Bundle entries with ``request.method == "DELETE"`` are
treated as tombstones.

Files are read once per phase: Patients first, then Encounters, then every
other resource, so that references resolve regardless of file order.

Usage:
    # Bulk load into an empty CDM
    python -m fhir_omop.scripts.map_resources data/*.ndjson

    # Incremental update: previous output of every resource is replaced
    python -m fhir_omop.scripts.map_resources --incremental bundle.json

    # Query reference tables per lookup instead of preloading them
    python -m fhir_omop.scripts.map_resources --on-demand bundle.json
"""

import argparse
import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from fhir_omop.core.config import settings
from fhir_omop.core.database import close_db, get_session_maker
from fhir_omop.etl.errors import SkipReason, UnsupportedResourceTypeError
from fhir_omop.etl.mapper import build_mappers
from fhir_omop.etl.metrics import MappingMetrics
from fhir_omop.etl.store import SqlOutputStore
from fhir_omop.vocabulary.reference_data import build_reference_data, preloaded

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

MAPPING_PHASES = {"Patient": 0, "Encounter": 1}
LAST_PHASE = 2


def phase_of(resource: dict[str, Any]) -> int:
    return MAPPING_PHASES.get(resource.get("resourceType"), LAST_PHASE)


def tombstone_from_url(url: str) -> dict[str, Any] | None:
    """Minimal resource for a DELETE entry (``"Condition/123"``)."""
    parts = url.split("?")[0].strip("/").split("/")
    if len(parts) < 2:
        return None
    return {"resourceType": parts[-2], "id": parts[-1]}


def read_bundle(data: dict[str, Any]) -> Iterator[tuple[dict[str, Any], bool]]:
    for entry in data.get("entry") or []:
        request = entry.get("request") or {}
        if request.get("method") == "DELETE":
            resource = entry.get("resource") or tombstone_from_url(request.get("url", ""))
            if resource is not None:
                yield resource, True
            continue
        if entry.get("resource"):
            yield entry["resource"], False


def read_resources(path: Path) -> Iterator[tuple[dict[str, Any], bool]]:
    """Yield (resource, is_deleted) pairs from a Bundle or NDJSON file."""
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix == ".ndjson":
            for line in f:
                if line.strip():
                    yield json.loads(line), False
            return
        data = json.load(f)

    if data.get("resourceType") == "Bundle":
        yield from read_bundle(data)
    else:
        yield data, False


def map_files(
    paths: list[Path],
    incremental: bool = False,
    on_demand: bool = False,
    batch_size: int = 500,
) -> MappingMetrics:
    """Map every resource of the given files and write the output.

    Returns:
        The mapping counters of the run.
    """
    run_settings = settings.model_copy(
        update={
            "bulk_load": not incremental,
            "dictionary_load_in_ram": settings.dictionary_load_in_ram and not on_demand,
        }
    )
    session_maker = get_session_maker()
    metrics = MappingMetrics()
    reference_data = build_reference_data(run_settings, session_maker)

    written = 0
    with preloaded(reference_data), session_maker() as session:
        store = SqlOutputStore(session, reference_data)
        registry = build_mappers(reference_data, metrics=metrics, store=store, config=run_settings)

        for phase in range(LAST_PHASE + 1):
            pending = 0
            for path in paths:
                logger.info(f"Mapping resources from {path} (phase {phase})")
                for resource, is_deleted in read_resources(path):
                    if phase_of(resource) != phase:
                        continue
                    try:
                        bundle = registry.map(resource, is_deleted=is_deleted)
                    except UnsupportedResourceTypeError as e:
                        logger.debug(str(e))
                        metrics.increment("unsupported_resource_type", str(e.resource_type))
                        continue

                    pending += 1
                    if bundle is not None:
                        written += store.write(bundle)
                    if pending >= batch_size:
                        session.commit()
                        pending = 0
            # later phases resolve references against committed rows
            session.commit()

    logger.info(f"Wrote {written:,} rows")
    return metrics


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Map FHIR resources into the OMOP CDM")
    parser.add_argument("files", type=Path, nargs="+", help="FHIR Bundle (.json) or NDJSON files")
    parser.add_argument(
        "--incremental",
        action="store_true",
        help="Delete previous output of every resource before writing it again",
    )
    parser.add_argument(
        "--on-demand",
        action="store_true",
        help="Query reference tables per lookup instead of preloading them",
    )
    parser.add_argument("--batch-size", type=int, default=500, help="Resources per commit")
    args = parser.parse_args()

    try:
        metrics = map_files(
            args.files,
            incremental=args.incremental,
            on_demand=args.on_demand,
            batch_size=args.batch_size,
        )
    finally:
        close_db()

    hard_skips = {reason.value for reason in SkipReason if reason.is_hard_skip}
    for resource_type, counts in metrics.snapshot().items():
        logger.info(f"{resource_type}:")
        for reason, count in counts.items():
            level = logging.WARNING if reason in hard_skips else logging.INFO
            logger.log(level, f"  {reason}: {count:,}")


if __name__ == "__main__":
    main()
