"""PostgreSQL Entity Store for the CRM.

Provides schema (tables plus row-level security), connection management and
a generic table interface used by the repositories in ``sync``:
- select with equality filters and ordering
- upsert keyed by id (insert-or-update, returning the stored row)
- delete by id
- knowledge base sections with their files

Every statement runs inside a transaction that first pins the acting user
(``app.user_id``) so the RLS policies below decide what that user can read or
write. The database role used by the app must not be a superuser, otherwise
RLS is bypassed.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Generator, Iterable, Sequence

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2 import sql

from .config import Settings, load_settings
from .errors import PermissionDenied, StoreError

logger = logging.getLogger("advisorcrm.db")

OWNED_TABLES = ("clients", "policies", "activities", "goals", "medical_forms")
TABLES = frozenset(OWNED_TABLES + ("profiles", "kb_sections", "kb_files"))

# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------

def get_connection(settings: Settings | None = None) -> psycopg2.extensions.connection:
    """Open a psycopg2 connection with connect/statement timeouts and retries."""
    settings = settings or load_settings()
    options = f"-c timezone={settings.timezone}"
    if settings.statement_timeout_ms:
        options += f" -c statement_timeout={settings.statement_timeout_ms}"

    last_exc: psycopg2.OperationalError | None = None
    for attempt in range(settings.connect_retries + 1):
        try:
            return psycopg2.connect(
                settings.database_url,
                cursor_factory=psycopg2.extras.RealDictCursor,
                connect_timeout=settings.connect_timeout,
                options=options,
            )
        except psycopg2.OperationalError as exc:
            last_exc = exc
            if attempt >= settings.connect_retries:
                break
            time.sleep(settings.connect_backoff_seconds * (2 ** attempt))

    if last_exc is not None:
        raise last_exc
    raise RuntimeError("Failed to establish database connection")


@contextmanager
def transaction(conn: psycopg2.extensions.connection) -> Generator[psycopg2.extensions.connection, None, None]:
    """Context manager that commits on success, rolls back on error."""
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise


# ---------------------------------------------------------------------------
# Schema & init
# ---------------------------------------------------------------------------

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS profiles (
    id          TEXT PRIMARY KEY,
    email       TEXT,
    display_name TEXT,
    username    TEXT UNIQUE,
    role        TEXT NOT NULL DEFAULT 'advisor',
    manager_id  TEXT REFERENCES profiles(id) ON DELETE SET NULL,
    promoter_id TEXT REFERENCES profiles(id) ON DELETE SET NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS clients (
    id                TEXT PRIMARY KEY,
    owner_id          TEXT,
    nombre            TEXT NOT NULL,
    apellido_paterno  TEXT,
    apellido_materno  TEXT,
    telefono          TEXT,
    email             TEXT,
    fecha_nacimiento  TEXT,
    sexo              TEXT,
    estado_civil      TEXT,
    estado_residencia TEXT,
    ocupacion         TEXT,
    empresa           TEXT,
    ingreso_hogar     NUMERIC,
    dependientes      INTEGER,
    fumador           BOOLEAN,
    fuente            TEXT,
    necesidades       TEXT[],
    estatus           TEXT,
    etapa             TEXT,
    referido_por_id   TEXT,
    asesor            TEXT,
    ultimo_contacto   TEXT,
    notas             TEXT,
    anf_realizado     BOOLEAN,
    anf_fecha         TEXT,
    contactado        BOOLEAN NOT NULL DEFAULT FALSE,
    contactado_fecha  TIMESTAMPTZ,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT clients_contactado_fecha CHECK (contactado = (contactado_fecha IS NOT NULL))
);

CREATE TABLE IF NOT EXISTS policies (
    id                       TEXT PRIMARY KEY,
    owner_id                 TEXT,
    cliente_id               TEXT NOT NULL,
    plan                     TEXT NOT NULL,
    numero_poliza            TEXT,
    estado                   TEXT NOT NULL DEFAULT 'Propuesta',
    suma_asegurada           NUMERIC,
    prima_mensual            NUMERIC,
    fecha_ingreso            TEXT,
    fecha_examen_medico      TEXT,
    forma_pago               TEXT,
    fecha_pago               TEXT,
    fecha_entrega            TEXT,
    comision_estimada        NUMERIC,
    necesidades_futuras      TEXT,
    proximo_seguimiento      TEXT,
    pdf_url                  TEXT,
    moneda                   TEXT,
    msi                      BOOLEAN,
    participa_mdrt           BOOLEAN,
    participa_convencion     BOOLEAN,
    participa_reconocimiento BOOLEAN,
    created_at               TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS activities (
    id               TEXT PRIMARY KEY,
    owner_id         TEXT,
    cliente_id       TEXT,
    tipo             TEXT NOT NULL,
    fecha_hora       TIMESTAMPTZ NOT NULL,
    fecha_hora_fin   TIMESTAMPTZ,
    lugar            TEXT,
    notas            TEXT,
    realizada        BOOLEAN,
    genero_cierre    BOOLEAN,
    obtuvo_referidos BOOLEAN,
    reagendada       BOOLEAN,
    color            TEXT,
    shared_with      TEXT[],
    created_at       TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS goals (
    id           TEXT PRIMARY KEY,
    owner_id     TEXT,
    tipo         TEXT NOT NULL,
    mes          TEXT NOT NULL,
    meta_mensual NUMERIC,
    meta_anual   NUMERIC,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS kb_sections (
    id          TEXT PRIMARY KEY,
    owner_id    TEXT,
    title       TEXT NOT NULL,
    description TEXT,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS kb_files (
    id           TEXT PRIMARY KEY,
    section_id   TEXT NOT NULL REFERENCES kb_sections(id) ON DELETE CASCADE,
    owner_id     TEXT,
    name         TEXT NOT NULL,
    size         BIGINT,
    mime_type    TEXT,
    storage_path TEXT,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS medical_forms (
    id              TEXT PRIMARY KEY,
    owner_id        TEXT,
    cliente_id      TEXT NOT NULL,
    fecha           TEXT NOT NULL,
    enfermedades    TEXT,
    hospitalizacion TEXT,
    medicamentos    TEXT,
    cirugias        TEXT,
    antecedentes    TEXT,
    otros           TEXT,
    pdf_url         TEXT,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE OR REPLACE FUNCTION crm_current_user() RETURNS TEXT
LANGUAGE sql STABLE AS $$
    SELECT NULLIF(current_setting('app.user_id', true), '')
$$;

CREATE OR REPLACE FUNCTION crm_is_service() RETURNS BOOLEAN
LANGUAGE sql STABLE AS $$
    SELECT COALESCE(current_setting('app.service', true), '') = 'on'
$$;

CREATE OR REPLACE FUNCTION crm_current_role() RETURNS TEXT
LANGUAGE sql STABLE SECURITY DEFINER AS $$
    SELECT role FROM profiles WHERE id = crm_current_user()
$$;

CREATE OR REPLACE FUNCTION crm_visible_owner_ids(uid TEXT) RETURNS SETOF TEXT
LANGUAGE sql STABLE SECURITY DEFINER AS $$
    SELECT p.id
    FROM profiles p
    JOIN profiles me ON me.id = uid
    WHERE p.id = uid
       OR (me.role = 'promoter' AND p.promoter_id = uid)
       OR (me.role = 'manager' AND p.manager_id = uid)
$$;
"""

_OWNED_POLICIES = """\
ALTER TABLE {t} ENABLE ROW LEVEL SECURITY;
ALTER TABLE {t} FORCE ROW LEVEL SECURITY;
DROP POLICY IF EXISTS {t}_read ON {t};
CREATE POLICY {t}_read ON {t} FOR SELECT USING (
    crm_is_service() OR owner_id IN (SELECT crm_visible_owner_ids(crm_current_user()))
);
DROP POLICY IF EXISTS {t}_insert ON {t};
CREATE POLICY {t}_insert ON {t} FOR INSERT WITH CHECK (crm_is_service() OR owner_id = crm_current_user());
DROP POLICY IF EXISTS {t}_update ON {t};
CREATE POLICY {t}_update ON {t} FOR UPDATE
    USING (crm_is_service() OR owner_id = crm_current_user())
    WITH CHECK (crm_is_service() OR owner_id = crm_current_user());
DROP POLICY IF EXISTS {t}_delete ON {t};
CREATE POLICY {t}_delete ON {t} FOR DELETE USING (crm_is_service() OR owner_id = crm_current_user());
"""

_EXTRA_POLICIES = """\
DROP POLICY IF EXISTS activities_shared ON activities;
CREATE POLICY activities_shared ON activities FOR SELECT USING (crm_current_user() = ANY(shared_with));

DROP POLICY IF EXISTS clients_orphans ON clients;
CREATE POLICY clients_orphans ON clients FOR SELECT
    USING (owner_id IS NULL AND crm_current_role() IN ('manager', 'promoter', 'admin'));
DROP POLICY IF EXISTS clients_claim ON clients;
CREATE POLICY clients_claim ON clients FOR UPDATE
    USING (owner_id IS NULL AND crm_current_role() IN ('manager', 'promoter', 'admin'))
    WITH CHECK (owner_id IN (SELECT crm_visible_owner_ids(crm_current_user())));

ALTER TABLE profiles ENABLE ROW LEVEL SECURITY;
ALTER TABLE profiles FORCE ROW LEVEL SECURITY;
DROP POLICY IF EXISTS profiles_read ON profiles;
CREATE POLICY profiles_read ON profiles FOR SELECT USING (crm_is_service() OR crm_current_user() IS NOT NULL);
DROP POLICY IF EXISTS profiles_write ON profiles;
CREATE POLICY profiles_write ON profiles FOR ALL
    USING (crm_is_service() OR id = crm_current_user())
    WITH CHECK (crm_is_service() OR id = crm_current_user());
"""

_KB_POLICIES = """\
ALTER TABLE {t} ENABLE ROW LEVEL SECURITY;
ALTER TABLE {t} FORCE ROW LEVEL SECURITY;
DROP POLICY IF EXISTS {t}_read ON {t};
CREATE POLICY {t}_read ON {t} FOR SELECT USING (crm_is_service() OR crm_current_user() IS NOT NULL);
DROP POLICY IF EXISTS {t}_write ON {t};
CREATE POLICY {t}_write ON {t} FOR ALL
    USING (crm_is_service() OR (owner_id = crm_current_user() AND crm_current_role() IN ('manager', 'promoter', 'admin')))
    WITH CHECK (crm_is_service() OR (owner_id = crm_current_user() AND crm_current_role() IN ('manager', 'promoter', 'admin')));
"""


def schema_sql() -> str:
    parts = [_SCHEMA]
    parts.extend(_OWNED_POLICIES.format(t=t) for t in OWNED_TABLES)
    parts.append(_EXTRA_POLICIES)
    parts.extend(_KB_POLICIES.format(t=t) for t in ("kb_sections", "kb_files"))
    return "\n".join(parts)


def init_db(settings: Settings | None = None) -> None:
    """Create all tables, helper functions and RLS policies. Idempotent."""
    conn = get_connection(settings)
    try:
        with transaction(conn):
            with conn.cursor() as cur:
                cur.execute(schema_sql())
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Generic table access
# ---------------------------------------------------------------------------

Order = Sequence[tuple[str, bool]]  # (column, descending)


def _table(name: str) -> sql.Identifier:
    if name not in TABLES:
        raise StoreError(f"Unknown table {name!r}")
    return sql.Identifier(name)


def _order_clause(order_by: Order) -> sql.Composable:
    if not order_by:
        return sql.SQL("")
    items = [
        sql.SQL("{} {}").format(sql.Identifier(col), sql.SQL("DESC" if desc else "ASC"))
        for col, desc in order_by
    ]
    return sql.SQL(" ORDER BY ") + sql.SQL(", ").join(items)


class PostgresStore:
    """Entity Store over one connection.

    Every call names the acting user (*actor*); RLS evaluates the statement as
    that user. A store opened with ``service=True`` runs under the service
    policy instead (administrative endpoints only).
    """

    def __init__(self, conn: psycopg2.extensions.connection, service: bool = False):
        self.conn = conn
        self.service = service

    @contextmanager
    def _cursor(self, actor: str | None) -> Generator[Any, None, None]:
        try:
            with transaction(self.conn):
                with self.conn.cursor() as cur:
                    cur.execute("SELECT set_config('app.user_id', %s, true)", (actor or "",))
                    cur.execute("SELECT set_config('app.service', %s, true)", ("on" if self.service else "off",))
                    yield cur
        except psycopg2.errors.InsufficientPrivilege as exc:
            raise PermissionDenied(str(exc).strip() or "No permitido") from exc
        except psycopg2.Error as exc:
            raise StoreError(str(exc).strip() or exc.__class__.__name__) from exc

    def select(
        self,
        actor: str | None,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: Order = (),
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        query = sql.SQL("SELECT * FROM {}").format(_table(table))
        params: list[Any] = []
        if filters:
            conds = [sql.SQL("{} = %s").format(sql.Identifier(k)) for k in filters]
            query += sql.SQL(" WHERE ") + sql.SQL(" AND ").join(conds)
            params.extend(filters.values())
        query += _order_clause(order_by)
        if limit is not None:
            query += sql.SQL(" LIMIT %s")
            params.append(limit)
        with self._cursor(actor) as cur:
            cur.execute(query, params)
            return [dict(r) for r in cur.fetchall()]

    def get(self, actor: str | None, table: str, row_id: str) -> dict[str, Any] | None:
        rows = self.select(actor, table, {"id": row_id}, limit=1)
        return rows[0] if rows else None

    def upsert(self, actor: str | None, table: str, row: dict[str, Any]) -> dict[str, Any]:
        cols = list(row.keys())
        updates = [c for c in cols if c != "id"]
        query = sql.SQL(
            "INSERT INTO {t} ({cols}) VALUES ({vals}) ON CONFLICT (id) DO UPDATE SET {sets} RETURNING *"
        ).format(
            t=_table(table),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in cols),
            vals=sql.SQL(", ").join(sql.Placeholder() for _ in cols),
            sets=sql.SQL(", ").join(
                sql.SQL("{c} = EXCLUDED.{c}").format(c=sql.Identifier(c)) for c in updates
            ),
        )
        with self._cursor(actor) as cur:
            cur.execute(query, list(row.values()))
            stored = cur.fetchone()
        if stored is None:
            raise StoreError(f"{table} upsert returned no row")
        return dict(stored)

    def update(self, actor: str | None, table: str, row_id: str, values: dict[str, Any]) -> dict[str, Any] | None:
        query = sql.SQL("UPDATE {t} SET {sets} WHERE id = %s RETURNING *").format(
            t=_table(table),
            sets=sql.SQL(", ").join(sql.SQL("{} = %s").format(sql.Identifier(c)) for c in values),
        )
        with self._cursor(actor) as cur:
            cur.execute(query, [*values.values(), row_id])
            stored = cur.fetchone()
        return dict(stored) if stored else None

    def insert_many(self, actor: str | None, table: str, rows: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
        rows = list(rows)
        if not rows:
            return []
        cols = list(rows[0].keys())
        query = sql.SQL("INSERT INTO {t} ({cols}) VALUES %s RETURNING *").format(
            t=_table(table),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in cols),
        )
        with self._cursor(actor) as cur:
            stored = psycopg2.extras.execute_values(
                cur, query.as_string(cur), [tuple(r[c] for c in cols) for r in rows], fetch=True
            )
        return [dict(r) for r in stored]

    def delete(self, actor: str | None, table: str, row_id: str) -> bool:
        query = sql.SQL("DELETE FROM {} WHERE id = %s").format(_table(table))
        with self._cursor(actor) as cur:
            cur.execute(query, (row_id,))
            return cur.rowcount > 0

    def select_kb_sections(self, actor: str | None, section_id: str | None = None) -> list[dict[str, Any]]:
        """Sections newest first, each with its files under ``kb_files``."""
        query = """
            SELECT s.*,
                   COALESCE(
                       json_agg(to_json(f) ORDER BY f.created_at) FILTER (WHERE f.id IS NOT NULL),
                       '[]'::json
                   ) AS kb_files
            FROM kb_sections s
            LEFT JOIN kb_files f ON f.section_id = s.id
        """
        params: tuple[Any, ...] = ()
        if section_id is not None:
            query += " WHERE s.id = %s"
            params = (section_id,)
        query += " GROUP BY s.id ORDER BY s.created_at DESC"
        with self._cursor(actor) as cur:
            cur.execute(query, params)
            return [dict(r) for r in cur.fetchall()]


@contextmanager
def open_store(
    service: bool = False,
    settings: Settings | None = None,
) -> Generator[PostgresStore, None, None]:
    """Connection-per-request store; connection failures surface as StoreError."""
    try:
        conn = get_connection(settings)
    except psycopg2.Error as exc:
        logger.warning("database connection failed: %s", exc)
        raise StoreError("Database unavailable") from exc
    try:
        yield PostgresStore(conn, service=service)
    finally:
        conn.close()
