"""Identity Resolver.

Translates FHIR references (subject, encounter) into OMOP surrogate ids
(person_id, visit_occurrence_id) through the identity indexes of the
Reference Data Cache. The business identifier is tried first; the prefixed
logical id is the fallback.
"""

import logging

from fhir_omop.records import NaturalKeys
from fhir_omop.vocabulary.reference_data import IdentityKind, IdentityRecord, ReferenceData

logger = logging.getLogger(__name__)


class IdentityResolver:
    """Resolve natural keys of one kind of resource to surrogate ids."""

    def __init__(self, reference_data: ReferenceData, kind: IdentityKind):
        self.reference_data = reference_data
        self.kind = kind

    def lookup(self, identifier: str | None, logical_id: str | None) -> IdentityRecord | None:
        """Return the identity record, identifier taking precedence."""
        if identifier:
            record = self.reference_data.identity_by_identifier(self.kind, identifier)
            if record is not None:
                return record
        if logical_id:
            return self.reference_data.identity_by_logical_id(self.kind, logical_id)
        return None

    def resolve(self, identifier: str | None, logical_id: str | None) -> int | None:
        """Return the surrogate id, or None if neither key is indexed."""
        record = self.lookup(identifier, logical_id)
        return record.surrogate_id if record is not None else None

    def resolve_keys(self, keys: NaturalKeys) -> int | None:
        return self.resolve(keys.identifier, keys.logical_id)
