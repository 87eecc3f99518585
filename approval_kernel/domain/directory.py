"""
Staff directory contract (``approval_kernel.domain.directory``).

Responsibility
--------------
The engine does not own staff records.  It reads them through the
``StaffDirectory`` protocol: role codes for role-based authorization,
the direct manager for ``manager`` steps, and the organizational
attributes (branch / region / department / position) used for flow
scoping.

Architecture position
---------------------
**Kernel domain layer** -- protocol and value object.  ZERO I/O.
``InMemoryStaffDirectory`` is the bundled implementation; HR-backed
directories live with the host application.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Iterable, Protocol
from uuid import UUID


@dataclass(frozen=True)
class StaffProfile:
    """The parts of a staff record the approval engine reads."""

    staff_id: UUID
    full_name: str = ""
    role_codes: frozenset[str] = frozenset()
    manager_id: UUID | None = None
    branch_id: UUID | None = None
    region_id: UUID | None = None
    department_id: UUID | None = None
    position_id: UUID | None = None

    def has_role(self, role_code: str | None) -> bool:
        return role_code is not None and role_code in self.role_codes


class StaffDirectory(Protocol):
    """Pluggable staff lookup."""

    def get_staff(self, staff_id: UUID) -> StaffProfile | None:
        """Return the profile for ``staff_id`` or None if unknown."""
        ...


class InMemoryStaffDirectory:
    """Dictionary-backed StaffDirectory, safe to share across threads."""

    def __init__(self, profiles: Iterable[StaffProfile] = ()):
        self._lock = threading.Lock()
        self._profiles: dict[UUID, StaffProfile] = {p.staff_id: p for p in profiles}

    def add(self, profile: StaffProfile) -> StaffProfile:
        with self._lock:
            self._profiles[profile.staff_id] = profile
        return profile

    def remove(self, staff_id: UUID) -> None:
        with self._lock:
            self._profiles.pop(staff_id, None)

    def get_staff(self, staff_id: UUID) -> StaffProfile | None:
        with self._lock:
            return self._profiles.get(staff_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._profiles)
