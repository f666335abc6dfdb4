"""Ownership hierarchy: who can see whose records, and who may assign which role.

The Entity Store enforces visibility with row-level security; the functions
here mirror that policy for display-time grouping (team views, "unassigned"
buckets) and must not be relied on as the security boundary.
"""

from __future__ import annotations

from typing import Callable, Iterable, TypeVar

from .config import CrmConfig
from .errors import PermissionDenied
from .types import Profile

T = TypeVar("T")


def visible_owner_ids(user: Profile | None, all_users: Iterable[Profile]) -> set[str]:
    """Owner ids whose records *user* may see.

    promoter -> itself plus every user with ``promoter_id == user.id``
    manager  -> itself plus every user with ``manager_id == user.id``
    advisor / admin -> itself only
    """
    if user is None:
        return set()
    if user.role == "promoter":
        return {user.id} | {u.id for u in all_users if u.promoter_id == user.id}
    if user.role == "manager":
        return {user.id} | {u.id for u in all_users if u.manager_id == user.id}
    return {user.id}


def filter_by_scope(
    rows: Iterable[T],
    user: Profile | None,
    all_users: Iterable[Profile],
    owner_of: Callable[[T], str | None],
    keep_orphans: bool = False,
) -> list[T]:
    """Keep rows owned by someone in *user*'s scope.

    Rows without an owner are dropped unless *keep_orphans* is set, in which
    case they are kept so they can be assigned later. No user, no rows.
    """
    if user is None:
        return []
    allowed = visible_owner_ids(user, all_users)
    out: list[T] = []
    for row in rows:
        owner = owner_of(row)
        if not owner:
            if keep_orphans:
                out.append(row)
            continue
        if owner in allowed:
            out.append(row)
    return out


def group_by_owner(
    rows: Iterable[T],
    owner_of: Callable[[T], str | None],
) -> dict[str | None, list[T]]:
    """Bucket rows per owner id; ownerless rows land under ``None``."""
    groups: dict[str | None, list[T]] = {}
    for row in rows:
        groups.setdefault(owner_of(row) or None, []).append(row)
    return groups


# ---------------------------------------------------------------------------
# Role rules
# ---------------------------------------------------------------------------

def assignable_roles(caller_role: str, config: CrmConfig) -> frozenset[str]:
    """Roles a caller may switch itself to."""
    return config.assignable_roles.get(caller_role, frozenset())


def creatable_roles(caller_role: str, config: CrmConfig) -> frozenset[str]:
    """Roles a caller may create new users with."""
    return config.creatable_roles.get(caller_role, frozenset())


def check_role_change(caller: Profile, target_role: str, config: CrmConfig) -> None:
    if target_role not in assignable_roles(caller.role, config):
        raise PermissionDenied("No permitido")


def check_can_create(caller: Profile, target_role: str, config: CrmConfig) -> None:
    if target_role not in creatable_roles(caller.role, config):
        raise PermissionDenied(f"Un {caller.role} no puede crear usuarios con rol {target_role}")


def validate_hierarchy(profile: Profile, users: Iterable[Profile]) -> list[str]:
    """Return the hierarchy problems of *profile*; an empty list means valid.

    promoter / admin: no manager_id, no promoter_id
    manager: promoter_id required and pointing at a promoter; no manager_id
    advisor: manager_id (if set) points at a manager, promoter_id (if set)
             points at a promoter and matches the manager's own promoter_id
    """
    by_id = {u.id: u for u in users}
    errors: list[str] = []

    def _expect(ref: str | None, role: str, label: str) -> Profile | None:
        if ref is None:
            return None
        target = by_id.get(ref)
        if target is None or target.role != role:
            errors.append(f"{label} no es un {_ROLE_LABELS[role]}")
            return None
        return target

    if profile.role in ("promoter", "admin"):
        if profile.manager_id is not None:
            errors.append(f"Un {profile.role} no tiene manager_id")
        if profile.promoter_id is not None:
            errors.append(f"Un {profile.role} no tiene promoter_id")
        return errors

    if profile.role == "manager":
        if profile.manager_id is not None:
            errors.append("Un manager no tiene manager_id")
        if profile.promoter_id is None:
            errors.append("Un manager requiere promoter_id")
        else:
            _expect(profile.promoter_id, "promoter", "promoter_id")
        return errors

    manager = _expect(profile.manager_id, "manager", "manager_id")
    _expect(profile.promoter_id, "promoter", "promoter_id")
    if (
        manager is not None
        and profile.promoter_id is not None
        and manager.promoter_id is not None
        and manager.promoter_id != profile.promoter_id
    ):
        errors.append("promoter_id no coincide con el promotor del manager")
    return errors


_ROLE_LABELS = {
    "advisor": "asesor",
    "manager": "gerente",
    "promoter": "promotor",
    "admin": "admin",
}
