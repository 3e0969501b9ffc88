"""Domain routing.

A resolved concept's ``domain_id`` selects exactly one OMOP fact table. A
domain outside the routing table is a configuration error for the whole
resource type, not a per-resource skip.
"""

from collections.abc import Mapping

from fhir_omop.constants import (
    OMOP_DOMAIN_CONDITION,
    OMOP_DOMAIN_DEVICE,
    OMOP_DOMAIN_DRUG,
    OMOP_DOMAIN_MEASUREMENT,
    OMOP_DOMAIN_OBSERVATION,
    OMOP_DOMAIN_PROCEDURE,
)
from fhir_omop.etl.errors import UnsupportedDomainError
from fhir_omop.records import FactTable

DEFAULT_DOMAIN_TABLES: dict[str, FactTable] = {
    OMOP_DOMAIN_CONDITION: FactTable.CONDITION_OCCURRENCE,
    OMOP_DOMAIN_OBSERVATION: FactTable.OBSERVATION,
    OMOP_DOMAIN_MEASUREMENT: FactTable.MEASUREMENT,
    OMOP_DOMAIN_PROCEDURE: FactTable.PROCEDURE_OCCURRENCE,
    OMOP_DOMAIN_DRUG: FactTable.DRUG_EXPOSURE,
    OMOP_DOMAIN_DEVICE: FactTable.DEVICE_EXPOSURE,
}


def route(domain_id: str, resource_type: str, domain_tables: Mapping[str, FactTable]) -> FactTable:
    """Return the fact table for a domain.

    Raises:
        UnsupportedDomainError: The domain has no entry in ``domain_tables``.
    """
    try:
        return domain_tables[domain_id]
    except KeyError:
        raise UnsupportedDomainError(domain_id, resource_type) from None
