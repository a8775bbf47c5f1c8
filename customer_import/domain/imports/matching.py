"""
Record matchers decide whether a staged row updates an existing customer.

Matching is pluggable. The default is an exact external identifier match;
an exact name+address lookup through the store is available, as is a chain
that tries several matchers in order. There is no fuzzy name matching.
"""
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence

from customer_import.domain.customers.store import CustomerStore


class RecordMatcher(Protocol):
    name: str

    def match(self, store: CustomerStore, organization_id: int, values: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """Existing record for ``values`` or None."""
        ...


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


class ExternalIdMatcher:
    name = "external_id"

    def match(self, store: CustomerStore, organization_id: int, values: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        external_id = _text(values.get("external_id"))
        if not external_id:
            return None
        return store.find_by_external_id(organization_id, external_id)


class NameAddressMatcher:
    name = "name_address"

    def match(self, store: CustomerStore, organization_id: int, values: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        name = _text(values.get("name"))
        address = _text(values.get("address"))
        if not name or not address:
            return None
        return store.find_by_name_and_address(organization_id, name, address)


class ChainMatcher:
    """First match wins across ``matchers``."""

    def __init__(self, name: str, matchers: Sequence[RecordMatcher]):
        self.name = name
        self._matchers = list(matchers)

    def match(self, store: CustomerStore, organization_id: int, values: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        for matcher in self._matchers:
            found = matcher.match(store, organization_id, values)
            if found is not None:
                return found
        return None


DEFAULT_MATCH_STRATEGY = ExternalIdMatcher.name


def default_matchers() -> Dict[str, RecordMatcher]:
    external_id = ExternalIdMatcher()
    name_address = NameAddressMatcher()
    return {
        external_id.name: external_id,
        name_address.name: name_address,
        "external_id_then_name_address": ChainMatcher(
            "external_id_then_name_address", [external_id, name_address]
        ),
    }
