"""CRUD synchronization between the Entity Store and in-memory collections.

A ``Repository`` wraps one table: it maps entities to rows, sends them to the
store as the calling user, maps the stored row back and reconciles its
``items`` collection. Store failures never escape: ``list`` returns ``[]``,
``upsert`` returns ``None`` and ``remove`` returns ``False``, with the message
kept in ``error``. Local state is only touched after a successful round trip.

Conflict policy is last write wins; there is no version column.
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Generic, Iterable, Mapping, Protocol, Sequence, TypeVar

from . import mapping
from .config import CrmConfig
from .dates import now_utc, parse_instant, to_iso
from .errors import PermissionDenied, StoreError
from .types import Activity, Client, Goal, KBFile, KBSection, MedicalForm, Policy, Profile

logger = logging.getLogger("advisorcrm.sync")

E = TypeVar("E")
Row = dict[str, Any]
Order = Sequence[tuple[str, bool]]


class EntityStore(Protocol):
    def select(
        self,
        actor: str | None,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: Order = (),
        limit: int | None = None,
    ) -> list[Row]: ...

    def get(self, actor: str | None, table: str, row_id: str) -> Row | None: ...

    def upsert(self, actor: str | None, table: str, row: Row) -> Row: ...

    def update(self, actor: str | None, table: str, row_id: str, values: Row) -> Row | None: ...

    def insert_many(self, actor: str | None, table: str, rows: Iterable[Row]) -> list[Row]: ...

    def delete(self, actor: str | None, table: str, row_id: str) -> bool: ...

    def select_kb_sections(self, actor: str | None, section_id: str | None = None) -> list[Row]: ...


@dataclass(frozen=True)
class Resource(Generic[E]):
    table: str
    label: str
    to_row: Callable[[E], Row]
    from_row: Callable[[Mapping[str, Any]], E]
    order_by: Order


CLIENTS = Resource("clients", "clients", mapping.client_to_row, mapping.client_from_row, (("created_at", True),))
POLICIES = Resource("policies", "policies", mapping.policy_to_row, mapping.policy_from_row, (("created_at", True),))
ACTIVITIES = Resource(
    "activities", "activities", mapping.activity_to_row, mapping.activity_from_row, (("fecha_hora", True),)
)
GOALS = Resource(
    "goals", "goals", mapping.goal_to_row, mapping.goal_from_row, (("mes", True), ("created_at", True))
)
MEDICAL_FORMS = Resource(
    "medical_forms",
    "medical forms",
    mapping.medical_to_row,
    mapping.medical_from_row,
    (("fecha", True), ("created_at", True)),
)
KB_SECTIONS = Resource(
    "kb_sections", "KB sections", mapping.kb_section_to_row, mapping.kb_section_from_row, (("created_at", True),)
)
PROFILES = Resource(
    "profiles", "profiles", mapping.profile_to_row, mapping.profile_from_row, (("display_name", False),)
)


def new_id() -> str:
    return str(uuid.uuid4())


class Repository(Generic[E]):
    """One remote collection plus its locally reconciled copy."""

    def __init__(self, store: EntityStore, resource: Resource[E]):
        self.store = store
        self.resource = resource
        self.items: list[E] = []
        self.error: str | None = None
        self.failure: Exception | None = None

    # -- hooks -------------------------------------------------------------

    def prepare(self, user: Profile, entity: E) -> E:
        """Fill creation fields: generated id, owning user, creation time."""
        changes: dict[str, Any] = {}
        if not getattr(entity, "id", None):
            changes["id"] = new_id()
        if hasattr(entity, "owner_id") and not getattr(entity, "owner_id"):
            changes["owner_id"] = user.id
        if hasattr(entity, "created_at") and not getattr(entity, "created_at"):
            changes["created_at"] = to_iso(now_utc())
        return dataclasses.replace(entity, **changes) if changes else entity

    def _fetch(self, user: Profile) -> list[Row]:
        return self.store.select(user.id, self.resource.table, order_by=self.resource.order_by)

    def _ok(self) -> None:
        self.error = None
        self.failure = None

    def _missing(self, what: str) -> None:
        self.error = f"{what} not found"
        self.failure = None

    def _fail(self, op: str, exc: Exception) -> None:
        self.error = str(exc) or exc.__class__.__name__
        self.failure = exc
        logger.warning("%s %s failed: %s", op, self.resource.label, self.error)

    # -- operations --------------------------------------------------------

    def list(self, user: Profile) -> list[E]:
        """Fetch every row the store lets *user* see, in store order."""
        try:
            rows = self._fetch(user)
        except StoreError as exc:
            self._fail("list", exc)
            return []
        self._ok()
        self.items = [self.resource.from_row(r) for r in rows]
        return list(self.items)

    def upsert(self, user: Profile, entity: E) -> E | None:
        try:
            entity = self.prepare(user, entity)
            stored = self.store.upsert(user.id, self.resource.table, self.resource.to_row(entity))
        except (StoreError, PermissionDenied) as exc:
            self._fail("upsert", exc)
            return None
        self._ok()
        saved = self.resource.from_row(stored)
        self._reconcile(saved)
        return saved

    def remove(self, user: Profile, entity_id: str) -> bool:
        try:
            self.check_remove(user, entity_id)
            deleted = self.store.delete(user.id, self.resource.table, entity_id)
        except (StoreError, PermissionDenied) as exc:
            self._fail("delete", exc)
            return False
        if not deleted:
            self._missing(f"{self.resource.label} {entity_id}")
            return False
        self._ok()
        self.items = [e for e in self.items if getattr(e, "id") != entity_id]
        return True

    def check_remove(self, user: Profile, entity_id: str) -> None:
        pass

    def get(self, user: Profile, entity_id: str) -> E | None:
        """Single row by id, or None when missing, invisible or on failure."""
        try:
            row = self.store.get(user.id, self.resource.table, entity_id)
        except StoreError as exc:
            self._fail("get", exc)
            return None
        return self.resource.from_row(row) if row else None

    def _reconcile(self, saved: E) -> None:
        """Replace in place by id, otherwise prepend."""
        saved_id = getattr(saved, "id")
        for i, item in enumerate(self.items):
            if getattr(item, "id") == saved_id:
                self.items[i] = saved
                return
        self.items.insert(0, saved)


# ---------------------------------------------------------------------------
# Entity-specific repositories
# ---------------------------------------------------------------------------

class ClientRepository(Repository[Client]):
    def __init__(self, store: EntityStore, config: CrmConfig):
        super().__init__(store, CLIENTS)
        self.config = config

    def set_contacted(self, user: Profile, client_id: str, value: bool) -> Client | None:
        """Flip the contacted flag; stamps now when set, clears the date when unset."""
        try:
            if user.role not in self.config.contact_toggle_roles:
                raise PermissionDenied("Solo un asesor puede marcar clientes como contactados")
            stored = self.store.update(
                user.id,
                CLIENTS.table,
                client_id,
                {"contactado": value, "contactado_fecha": to_iso(now_utc()) if value else None},
            )
        except (StoreError, PermissionDenied) as exc:
            self._fail("toggle contactado", exc)
            return None
        if stored is None:
            self._missing(f"client {client_id}")
            return None
        self._ok()
        saved = CLIENTS.from_row(stored)
        self.items = [saved if c.id == saved.id else c for c in self.items]
        return saved

    def keep_contact_state(self, user: Profile, client: Client) -> Client:
        """For callers that may not toggle the flag, carry over the stored value."""
        if user.role in self.config.contact_toggle_roles:
            return client
        current = self.get(user, client.id) if client.id else None
        if current is None:
            return dataclasses.replace(client, contactado=False, contactado_fecha=None)
        return dataclasses.replace(
            client, contactado=current.contactado, contactado_fecha=current.contactado_fecha
        )


class ActivityRepository(Repository[Activity]):
    def __init__(self, store: EntityStore):
        super().__init__(store, ACTIVITIES)

    def prepare(self, user: Profile, entity: Activity) -> Activity:
        entity = super().prepare(user, entity)
        return normalize_activity_end(entity)


def normalize_activity_end(activity: Activity) -> Activity:
    """An activity ends after it starts; otherwise it lasts one hour."""
    start = parse_instant(activity.fecha_hora)
    if start is None:
        return activity
    end = parse_instant(activity.fecha_hora_fin)
    if end is not None and end > start:
        return activity
    return dataclasses.replace(activity, fecha_hora_fin=to_iso(start + timedelta(hours=1)))


class KBRepository(Repository[KBSection]):
    """Sections with their files; writable only by the configured roles."""

    def __init__(self, store: EntityStore, config: CrmConfig):
        super().__init__(store, KB_SECTIONS)
        self.config = config

    def _check_writer(self, user: Profile) -> None:
        if user.role not in self.config.kb_writer_roles:
            raise PermissionDenied("La base de conocimiento es de solo lectura para asesores")

    def _fetch(self, user: Profile) -> list[Row]:
        return self.store.select_kb_sections(user.id)

    def prepare(self, user: Profile, entity: KBSection) -> KBSection:
        self._check_writer(user)
        return super().prepare(user, entity)

    def check_remove(self, user: Profile, entity_id: str) -> None:
        self._check_writer(user)

    def upsert(self, user: Profile, entity: KBSection) -> KBSection | None:
        saved = super().upsert(user, entity)
        if saved is None:
            return None
        # the section upsert returns the bare row; re-read it with its files
        try:
            rows = self.store.select_kb_sections(user.id, saved.id)
        except StoreError as exc:
            self._fail("reload", exc)
            return saved
        if rows:
            saved = KB_SECTIONS.from_row(rows[0])
            self._reconcile(saved)
        return saved

    def add_files(self, user: Profile, section_id: str, files: list[KBFile]) -> list[KBFile]:
        if not files:
            return []
        try:
            self._check_writer(user)
            prepared = [f if f.id else dataclasses.replace(f, id=new_id()) for f in files]
            rows = [mapping.kb_file_to_row(f, section_id, user.id) for f in prepared]
            stored = self.store.insert_many(user.id, "kb_files", rows)
        except (StoreError, PermissionDenied) as exc:
            self._fail("insert KB files", exc)
            return []
        self._ok()
        added = [mapping.kb_file_from_row(r) for r in stored]
        self.items = [
            dataclasses.replace(s, files=[*s.files, *added]) if s.id == section_id else s for s in self.items
        ]
        return added

    def remove_file(self, user: Profile, file_id: str) -> bool:
        try:
            self._check_writer(user)
            deleted = self.store.delete(user.id, "kb_files", file_id)
        except (StoreError, PermissionDenied) as exc:
            self._fail("delete KB file", exc)
            return False
        if not deleted:
            self._missing(f"KB file {file_id}")
            return False
        self._ok()
        self.items = [
            dataclasses.replace(s, files=[f for f in s.files if f.id != file_id]) for s in self.items
        ]
        return True


class ProfileRepository(Repository[Profile]):
    def __init__(self, store: EntityStore):
        super().__init__(store, PROFILES)

    def prepare(self, user: Profile, entity: Profile) -> Profile:
        if entity.created_at:
            return entity
        return dataclasses.replace(entity, created_at=to_iso(now_utc()))

    def update(self, user: Profile, profile_id: str, values: Row) -> Profile | None:
        """Partial update of profile columns (display_name, role, manager_id, ...)."""
        try:
            stored = self.store.update(user.id, PROFILES.table, profile_id, values)
        except (StoreError, PermissionDenied) as exc:
            self._fail("update", exc)
            return None
        if stored is None:
            self._missing(f"profile {profile_id}")
            return None
        self._ok()
        saved = PROFILES.from_row(stored)
        self._reconcile(saved)
        return saved


def policy_repository(store: EntityStore) -> Repository[Policy]:
    return Repository(store, POLICIES)


def goal_repository(store: EntityStore) -> Repository[Goal]:
    return Repository(store, GOALS)


def medical_repository(store: EntityStore) -> Repository[MedicalForm]:
    return Repository(store, MEDICAL_FORMS)
