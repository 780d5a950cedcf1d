"""Resolve human-typed load references and driver names within one tenant."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dipsy.core.errors import AmbiguousReference, DriverNotFound, LoadNotFound
from dipsy.services.tms_store import TmsStore, tms_store


@dataclass
class LookupResult:
    """Unique(entity) | Ambiguous(candidates) | NotFound."""

    kind: str
    entity: Optional[Dict[str, Any]] = None
    candidates: List[Dict[str, Any]] = field(default_factory=list)

    UNIQUE = "unique"
    AMBIGUOUS = "ambiguous"
    NOT_FOUND = "not_found"

    @classmethod
    def unique(cls, entity: Dict[str, Any]) -> "LookupResult":
        return cls(kind=cls.UNIQUE, entity=entity)

    @classmethod
    def ambiguous(cls, candidates: List[Dict[str, Any]]) -> "LookupResult":
        return cls(kind=cls.AMBIGUOUS, candidates=candidates)

    @classmethod
    def not_found(cls) -> "LookupResult":
        return cls(kind=cls.NOT_FOUND)

    @property
    def is_unique(self) -> bool:
        return self.kind == self.UNIQUE


def _load_candidate(load: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": load["id"],
        "reference": load["reference"],
        "origin": load.get("origin"),
        "destination": load.get("destination"),
        "status": load.get("status"),
    }


def _driver_candidate(driver: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": driver["id"],
        "full_name": driver.get("full_name"),
        "status": driver.get("status"),
    }


class EntityLookupService:
    NON_DIGITS = re.compile(r"\D+")
    PUNCTUATION = re.compile(r"[^\w\s]")

    def __init__(self, store: TmsStore | None = None) -> None:
        self._store = store or tms_store

    def find_load_by_reference(self, tenant_id: str, fragment: str) -> LookupResult:
        fragment = (fragment or "").strip()
        if not fragment:
            return LookupResult.not_found()

        exact = self._store.get_load_by_reference(tenant_id, fragment)
        if exact:
            return LookupResult.unique(exact)

        digits = self.NON_DIGITS.sub("", fragment)
        matches = self._store.search_load_references(tenant_id, fragment)
        if not matches and digits and digits != fragment:
            matches = self._store.search_load_references(tenant_id, digits)

        if not matches:
            return LookupResult.not_found()
        if len(matches) == 1:
            return LookupResult.unique(matches[0])

        if digits:
            preferred = [load for load in matches if load["reference"].rsplit("-", 1)[-1] == digits]
            if len(preferred) == 1:
                return LookupResult.unique(preferred[0])
        return LookupResult.ambiguous([_load_candidate(load) for load in matches])

    def find_driver_by_name(self, tenant_id: str, fragment: str) -> LookupResult:
        fragment = (fragment or "").strip()
        if not fragment:
            return LookupResult.not_found()

        by_id = self._store.get_driver(tenant_id, fragment)
        if by_id:
            return LookupResult.unique(by_id)

        matches = self._store.search_drivers_by_full_name(tenant_id, fragment)
        if not matches:
            tokens = self.PUNCTUATION.sub(" ", fragment).split()
            if len(tokens) >= 2:
                matches = self._store.search_drivers_by_name_parts(tenant_id, tokens[0], tokens[-1])

        if not matches:
            return LookupResult.not_found()
        if len(matches) == 1:
            return LookupResult.unique(matches[0])

        exact = [driver for driver in matches if (driver.get("full_name") or "").lower() == fragment.lower()]
        if len(exact) == 1:
            return LookupResult.unique(exact[0])
        return LookupResult.ambiguous([_driver_candidate(driver) for driver in matches])

    def require_load(self, tenant_id: str, fragment: str) -> Dict[str, Any]:
        result = self.find_load_by_reference(tenant_id, fragment)
        if result.is_unique:
            return result.entity or {}
        if result.kind == LookupResult.AMBIGUOUS:
            refs = ", ".join(candidate["reference"] for candidate in result.candidates)
            raise AmbiguousReference(
                f"'{fragment}' matches several loads: {refs}. Which one?",
                kind="load",
                fragment=fragment,
                candidates=result.candidates,
            )
        raise LoadNotFound(f"No load matching '{fragment}'.", load_reference=fragment)

    def require_driver(self, tenant_id: str, fragment: str) -> Dict[str, Any]:
        result = self.find_driver_by_name(tenant_id, fragment)
        if result.is_unique:
            return result.entity or {}
        if result.kind == LookupResult.AMBIGUOUS:
            names = ", ".join(candidate["full_name"] for candidate in result.candidates)
            raise AmbiguousReference(
                f"'{fragment}' matches several drivers: {names}. Which one?",
                kind="driver",
                fragment=fragment,
                candidates=result.candidates,
            )
        raise DriverNotFound(f"No driver matching '{fragment}'.", driver_name=fragment)
