"""
resources.py — Resource ownership lookups (external collaborator)
==================================================================
The governance layer never reads application tables itself. Ownership,
creation time and doctor–patient relationships are supplied by a
ResourceDirectory implemented by the host application (typically over
its database). InMemoryResourceDirectory serves development and tests.
"""
from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Dict, Optional, Protocol, Set, Tuple


class ResourceDirectory(Protocol):
    def owner_of(self, resource_type: str, resource_id: str) -> Optional[str]:
        """Owner id of the resource, or None when unknown / unowned."""
        ...

    def created_at_ms(self, resource_type: str, resource_id: str) -> Optional[int]:
        """Creation time in epoch ms, or None when unknown."""
        ...

    def has_care_relationship(self, doctor_id: str, patient_id: str) -> bool:
        ...


@dataclass
class _ResourceRecord:
    owner_id: Optional[str]
    created_at_ms: Optional[int]


class InMemoryResourceDirectory:
    def __init__(self) -> None:
        self._lock = Lock()
        self._records: Dict[Tuple[str, str], _ResourceRecord] = {}
        self._relationships: Set[Tuple[str, str]] = set()

    def register(
        self,
        resource_type: str,
        resource_id: str,
        owner_id: Optional[str] = None,
        created_at_ms: Optional[int] = None,
    ) -> None:
        with self._lock:
            self._records[(resource_type, resource_id)] = _ResourceRecord(owner_id, created_at_ms)

    def link_care(self, doctor_id: str, patient_id: str) -> None:
        with self._lock:
            self._relationships.add((doctor_id, patient_id))

    def owner_of(self, resource_type: str, resource_id: str) -> Optional[str]:
        with self._lock:
            record = self._records.get((resource_type, resource_id))
            return record.owner_id if record else None

    def created_at_ms(self, resource_type: str, resource_id: str) -> Optional[int]:
        with self._lock:
            record = self._records.get((resource_type, resource_id))
            return record.created_at_ms if record else None

    def has_care_relationship(self, doctor_id: str, patient_id: str) -> bool:
        with self._lock:
            return (doctor_id, patient_id) in self._relationships
