"""Mapping outcomes and errors.

Skips are ordinary outcomes, counted per resource type and reason; only an
unsupported domain propagates to the host, because it means the domain
routing table does not cover the vocabulary it is used with.
"""

from enum import Enum


class SkipReason(str, Enum):
    """Counter tags for every outcome that drops or degrades a resource."""

    MISSING_NATURAL_KEY = "missing_natural_key"
    UNACCEPTABLE_STATUS = "unacceptable_status"
    UNRESOLVED_SUBJECT = "unresolved_subject"
    UNRESOLVED_ONSET = "unresolved_onset"
    MISSING_BIRTH_DATE = "missing_birth_date"
    NO_RESOLVABLE_CODING = "no_resolvable_coding"
    UNRESOLVED_ENCOUNTER = "unresolved_encounter"
    TOMBSTONE = "tombstone"
    UNSUPPORTED_DOMAIN = "unsupported_domain"

    @property
    def is_hard_skip(self) -> bool:
        return self not in (SkipReason.UNRESOLVED_ENCOUNTER, SkipReason.TOMBSTONE)


class MappingError(Exception):
    """Base class for errors that abort mapping."""


class UnsupportedDomainError(MappingError):
    """A resolved concept's domain has no target fact table."""

    def __init__(self, domain_id: str, resource_type: str):
        self.domain_id = domain_id
        self.resource_type = resource_type
        super().__init__(
            f"Domain '{domain_id}' of a {resource_type} concept has no target table"
        )


class UnsupportedResourceTypeError(MappingError):
    """No policy is registered for a resource type."""

    def __init__(self, resource_type: str | None):
        self.resource_type = resource_type
        super().__init__(f"No mapping policy for resource type '{resource_type}'")


class InvalidDeferredLinkError(MappingError):
    """A deferred link without a target table."""
