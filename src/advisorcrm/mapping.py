"""Row mappers between Entity Store rows and in-memory entities.

Rows are plain dicts keyed by snake_case column names. Every optional column
is written on the way out (absent -> NULL) and read back with ``row.get`` so
a missing key, a NULL column and a never-set attribute all become ``None``.
Falsy values that were actually set (0, "", False) survive the round trip.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Mapping

from .dates import now_utc, parse_instant, to_iso
from .types import (
    ROLES,
    Activity,
    Client,
    Goal,
    KBFile,
    KBSection,
    MedicalForm,
    Participation,
    Policy,
    Profile,
)

Row = dict[str, Any]

_LEGACY_ROLES = {
    "asesor": "advisor",
    "gerente": "manager",
    "promotor": "promoter",
    "admin": "admin",
}


def normalize_role(raw: str | None) -> str:
    """Map stored role slugs (including the legacy Spanish ones) to a known role."""
    role = str(raw or "").strip().lower()
    role = _LEGACY_ROLES.get(role, role)
    return role if role in ROLES else "advisor"


def is_known_role(raw: str | None) -> bool:
    role = str(raw or "").strip().lower()
    return _LEGACY_ROLES.get(role, role) in ROLES


def _stamp(value: str | None) -> str:
    return value if value else to_iso(now_utc())


def _list_or_none(value: Any) -> list[str] | None:
    if value is None:
        return None
    return [str(v) for v in value]


def _text(value: Any) -> str | None:
    """Timestamp columns come back as datetime from psycopg2; entities hold ISO text."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _float(value: Any) -> float | None:
    # NUMERIC columns arrive as Decimal
    return None if value is None else float(value)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

def contacted_at(contactado: bool, value: str | date | datetime | None) -> str | None:
    """ISO timestamp to store for the contacted flag.

    ``None`` whenever the client is not contacted, whatever *value* holds;
    otherwise *value* coerced to ISO-8601, or now when it is absent or unreadable.
    """
    if not contactado:
        return None
    parsed = parse_instant(value)
    if parsed is None:
        return to_iso(now_utc())
    return to_iso(parsed)


def client_to_row(c: Client) -> Row:
    contactado = bool(c.contactado)
    return {
        "id": c.id,
        "nombre": c.nombre,
        "apellido_paterno": c.apellido_paterno,
        "apellido_materno": c.apellido_materno,
        "telefono": c.telefono,
        "email": c.email,
        "fecha_nacimiento": c.fecha_nacimiento,
        "sexo": c.sexo,
        "estado_civil": c.estado_civil,
        "estado_residencia": c.estado_residencia,
        "ocupacion": c.ocupacion,
        "empresa": c.empresa,
        "ingreso_hogar": c.ingreso_hogar,
        "dependientes": c.dependientes,
        "fumador": c.fumador,
        "fuente": c.fuente,
        "necesidades": _list_or_none(c.necesidades),
        "estatus": c.estatus,
        "etapa": c.etapa,
        "referido_por_id": c.referido_por_id,
        "asesor": c.asesor,
        "ultimo_contacto": c.ultimo_contacto,
        "notas": c.notas,
        "anf_realizado": c.anf_realizado,
        "anf_fecha": c.anf_fecha,
        "contactado": contactado,
        "contactado_fecha": contacted_at(contactado, c.contactado_fecha),
        "owner_id": c.owner_id,
        "created_at": _stamp(c.created_at),
    }


def client_from_row(row: Mapping[str, Any]) -> Client:
    return Client(
        id=str(row["id"]),
        nombre=row.get("nombre") or "",
        apellido_paterno=row.get("apellido_paterno"),
        apellido_materno=row.get("apellido_materno"),
        telefono=row.get("telefono"),
        email=row.get("email"),
        fecha_nacimiento=_text(row.get("fecha_nacimiento")),
        sexo=row.get("sexo"),
        estado_civil=row.get("estado_civil"),
        estado_residencia=row.get("estado_residencia"),
        ocupacion=row.get("ocupacion"),
        empresa=row.get("empresa"),
        ingreso_hogar=_float(row.get("ingreso_hogar")),
        dependientes=row.get("dependientes"),
        fumador=row.get("fumador"),
        fuente=row.get("fuente"),
        necesidades=_list_or_none(row.get("necesidades")),
        estatus=row.get("estatus"),
        etapa=row.get("etapa"),
        referido_por_id=row.get("referido_por_id"),
        asesor=row.get("asesor"),
        ultimo_contacto=_text(row.get("ultimo_contacto")),
        notas=row.get("notas"),
        anf_realizado=row.get("anf_realizado"),
        anf_fecha=_text(row.get("anf_fecha")),
        contactado=bool(row.get("contactado") or False),
        contactado_fecha=_text(row.get("contactado_fecha")),
        owner_id=row.get("owner_id"),
        created_at=_text(row.get("created_at")),
    )


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

def policy_to_row(p: Policy) -> Row:
    participa = p.participa or Participation()
    return {
        "id": p.id,
        "owner_id": p.owner_id,
        "cliente_id": p.cliente_id,
        "plan": p.plan,
        "numero_poliza": p.numero_poliza,
        "estado": p.estado,
        "suma_asegurada": p.suma_asegurada,
        "prima_mensual": p.prima_mensual,
        "fecha_ingreso": p.fecha_ingreso,
        "fecha_examen_medico": p.fecha_examen_medico,
        "forma_pago": p.forma_pago,
        "fecha_pago": p.fecha_pago,
        "fecha_entrega": p.fecha_entrega,
        "comision_estimada": p.comision_estimada,
        "necesidades_futuras": p.necesidades_futuras,
        "proximo_seguimiento": p.proximo_seguimiento,
        "pdf_url": p.pdf_url,
        "moneda": p.moneda,
        "msi": p.msi,
        "participa_mdrt": participa.mdrt,
        "participa_convencion": participa.convencion,
        "participa_reconocimiento": participa.reconocimiento,
        "created_at": _stamp(p.created_at),
    }


def policy_from_row(row: Mapping[str, Any]) -> Policy:
    return Policy(
        id=str(row["id"]),
        owner_id=row.get("owner_id"),
        cliente_id=row.get("cliente_id") or "",
        plan=row.get("plan") or "",
        numero_poliza=row.get("numero_poliza"),
        estado=row.get("estado") or "Propuesta",
        suma_asegurada=_float(row.get("suma_asegurada")),
        prima_mensual=_float(row.get("prima_mensual")),
        fecha_ingreso=_text(row.get("fecha_ingreso")),
        fecha_examen_medico=_text(row.get("fecha_examen_medico")),
        forma_pago=row.get("forma_pago"),
        fecha_pago=_text(row.get("fecha_pago")),
        fecha_entrega=_text(row.get("fecha_entrega")),
        comision_estimada=_float(row.get("comision_estimada")),
        necesidades_futuras=row.get("necesidades_futuras"),
        proximo_seguimiento=_text(row.get("proximo_seguimiento")),
        pdf_url=row.get("pdf_url"),
        moneda=row.get("moneda"),
        msi=row.get("msi"),
        participa=Participation(
            mdrt=row.get("participa_mdrt"),
            convencion=row.get("participa_convencion"),
            reconocimiento=row.get("participa_reconocimiento"),
        ),
        created_at=_text(row.get("created_at")),
    )


# ---------------------------------------------------------------------------
# Activity
# ---------------------------------------------------------------------------

def activity_to_row(a: Activity) -> Row:
    return {
        "id": a.id,
        "owner_id": a.owner_id,
        "cliente_id": a.cliente_id or None,
        "tipo": a.tipo,
        "fecha_hora": a.fecha_hora,
        "fecha_hora_fin": a.fecha_hora_fin,
        "lugar": a.lugar,
        "notas": a.notas,
        "realizada": a.realizada,
        "genero_cierre": a.genero_cierre,
        "obtuvo_referidos": a.obtuvo_referidos,
        "reagendada": a.reagendada,
        "color": a.color,
        "shared_with": _list_or_none(a.shared_with),
        "created_at": _stamp(a.created_at),
    }


def activity_from_row(row: Mapping[str, Any]) -> Activity:
    return Activity(
        id=str(row["id"]),
        owner_id=row.get("owner_id"),
        cliente_id=row.get("cliente_id") or "",
        tipo=row.get("tipo") or "",
        fecha_hora=_text(row.get("fecha_hora")) or "",
        fecha_hora_fin=_text(row.get("fecha_hora_fin")),
        lugar=row.get("lugar"),
        notas=row.get("notas"),
        realizada=row.get("realizada"),
        genero_cierre=row.get("genero_cierre"),
        obtuvo_referidos=row.get("obtuvo_referidos"),
        reagendada=row.get("reagendada"),
        color=row.get("color"),
        shared_with=_list_or_none(row.get("shared_with")),
        created_at=_text(row.get("created_at")),
    )


# ---------------------------------------------------------------------------
# Goal
# ---------------------------------------------------------------------------

def goal_to_row(g: Goal) -> Row:
    return {
        "id": g.id,
        "owner_id": g.owner_id,
        "tipo": g.tipo,
        "mes": g.mes,
        "meta_mensual": g.meta_mensual,
        "meta_anual": g.meta_anual,
        "created_at": _stamp(g.created_at),
    }


def goal_from_row(row: Mapping[str, Any]) -> Goal:
    return Goal(
        id=str(row["id"]),
        owner_id=row.get("owner_id"),
        tipo=row.get("tipo") or "",
        mes=row.get("mes") or "",
        meta_mensual=_float(row.get("meta_mensual")),
        meta_anual=_float(row.get("meta_anual")),
        created_at=_text(row.get("created_at")),
    )


# ---------------------------------------------------------------------------
# Knowledge base
# ---------------------------------------------------------------------------

def kb_file_to_row(f: KBFile, section_id: str, owner_id: str | None) -> Row:
    return {
        "id": f.id,
        "section_id": section_id,
        "owner_id": owner_id,
        "name": f.name,
        "size": f.size,
        "mime_type": f.type,
        "storage_path": f.url or None,
        "created_at": _stamp(f.uploaded_at),
    }


def kb_file_from_row(row: Mapping[str, Any]) -> KBFile:
    return KBFile(
        id=str(row["id"]),
        name=row.get("name") or "",
        size=int(row.get("size") or 0),
        type=row.get("mime_type") or "application/octet-stream",
        url=row.get("storage_path") or "",
        uploaded_at=_text(row.get("created_at")),
        uploaded_by_id=row.get("owner_id"),
    )


def kb_section_to_row(s: KBSection) -> Row:
    # files live in their own table; see kb_file_to_row
    return {
        "id": s.id,
        "owner_id": s.owner_id,
        "title": s.title,
        "description": s.description,
        "created_at": _stamp(s.created_at),
    }


def kb_section_from_row(row: Mapping[str, Any]) -> KBSection:
    files = row.get("kb_files")
    return KBSection(
        id=str(row["id"]),
        owner_id=row.get("owner_id"),
        title=row.get("title") or "",
        description=row.get("description"),
        files=[kb_file_from_row(f) for f in files] if isinstance(files, list) else [],
        created_at=_text(row.get("created_at")),
    )


# ---------------------------------------------------------------------------
# Medical form
# ---------------------------------------------------------------------------

def medical_to_row(m: MedicalForm) -> Row:
    return {
        "id": m.id,
        "owner_id": m.owner_id,
        "cliente_id": m.cliente_id,
        "fecha": m.fecha,
        "enfermedades": m.enfermedades,
        "hospitalizacion": m.hospitalizacion,
        "medicamentos": m.medicamentos,
        "cirugias": m.cirugias,
        "antecedentes": m.antecedentes,
        "otros": m.otros,
        "pdf_url": m.pdf_url,
        "created_at": _stamp(m.created_at),
    }


def medical_from_row(row: Mapping[str, Any]) -> MedicalForm:
    return MedicalForm(
        id=str(row["id"]),
        owner_id=row.get("owner_id"),
        cliente_id=row.get("cliente_id") or "",
        fecha=_text(row.get("fecha")) or "",
        enfermedades=row.get("enfermedades"),
        hospitalizacion=row.get("hospitalizacion"),
        medicamentos=row.get("medicamentos"),
        cirugias=row.get("cirugias"),
        antecedentes=row.get("antecedentes"),
        otros=row.get("otros"),
        pdf_url=row.get("pdf_url"),
        created_at=_text(row.get("created_at")),
    )


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------

def profile_to_row(p: Profile) -> Row:
    return {
        "id": p.id,
        "email": p.email,
        "display_name": p.name,
        "username": p.username,
        "role": p.role,
        "manager_id": p.manager_id,
        "promoter_id": p.promoter_id,
        "created_at": _stamp(p.created_at),
    }


def profile_from_row(row: Mapping[str, Any]) -> Profile:
    role = normalize_role(row.get("role"))
    return Profile(
        id=str(row["id"]),
        email=row.get("email"),
        name=row.get("display_name"),
        username=row.get("username"),
        role=role,
        manager_id=row.get("manager_id"),
        promoter_id=row.get("promoter_id"),
        created_at=_text(row.get("created_at")),
    )
