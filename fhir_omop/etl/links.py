"""Deferred Link Registry.

Relationships between rows that do not have surrogate ids yet are recorded
as link descriptors keyed by the natural keys of the owning resource. The
registry collects them for one resource: append-only, duplicates dropped,
emission order kept.
"""

from collections.abc import Iterable

from fhir_omop.etl.errors import InvalidDeferredLinkError
from fhir_omop.records import DeferredLink, NaturalKeys


class DeferredLinkRegistry:
    """Append-only, de-duplicated log of deferred links."""

    def __init__(self) -> None:
        self._links: list[DeferredLink] = []
        self._seen: set[DeferredLink] = set()

    def add(self, link: DeferredLink) -> bool:
        """Record a link.

        Returns:
            True if the link was new, False if it was a duplicate.

        Raises:
            InvalidDeferredLinkError: The link has no target table.
        """
        if not link.target_table or not link.target_table.strip():
            raise InvalidDeferredLinkError(
                f"Deferred link {link.type_tag}/{link.data_one} has no target table"
            )
        if link in self._seen:
            return False
        self._seen.add(link)
        self._links.append(link)
        return True

    def extend(self, links: Iterable[DeferredLink]) -> None:
        for link in links:
            self.add(link)

    @property
    def links(self) -> list[DeferredLink]:
        return list(self._links)

    def __len__(self) -> int:
        return len(self._links)


def pairing_links(
    type_tag: str,
    primary: Iterable[str],
    secondary: Iterable[str],
    target_table: str,
    natural_keys: NaturalKeys,
) -> list[DeferredLink]:
    """Links pairing every primary side with every secondary side.

    Args:
        type_tag: Tag of the producing resource type.
        primary: "<code>:<domain>" descriptors of the first component.
        secondary: "<code>:<domain>" descriptors of the second component.
        target_table: Relationship kind (e.g. "primary_secondary_icd").
        natural_keys: Natural keys of the owning resource.
    """
    secondary = list(secondary)
    return [
        DeferredLink(
            type_tag=type_tag,
            data_one=left,
            data_two=right,
            target_table=target_table,
            owner_ref=0,
            natural_keys=natural_keys,
        )
        for left in primary
        for right in secondary
    ]
