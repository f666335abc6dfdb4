from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime

ROLES = ("advisor", "manager", "promoter", "admin")

CLIENT_STATUSES = ("Prospecto", "Interesado", "Cliente", "Inactivo", "Referido", "No interesado")
PIPELINE_STAGES = ("new", "quote", "follow", "issued")
POLICY_STATES = ("Propuesta", "En proceso", "Vigente", "Rechazada")
PAYMENT_FORMS = ("Mensual", "Trimestral", "Semestral", "Anual")
CURRENCIES = ("MXN", "USD", "UDIS")

CALL = "Llamada"
INITIAL_MEETING = "Cita Inicial"
CLOSING_MEETING = "Cita Cierre"
DELIVERY = "Entrega"
FOLLOW_UP = "Seguimiento"
ACTIVITY_TYPES = (CALL, INITIAL_MEETING, CLOSING_MEETING, DELIVERY, FOLLOW_UP)

GOAL_TYPES = ("Ingreso mensual", "Pólizas mensuales", "Citas semanales", "Referidos")


@dataclass(frozen=True)
class Profile:
    id: str
    role: str = "advisor"
    email: str | None = None
    name: str | None = None
    username: str | None = None
    manager_id: str | None = None
    promoter_id: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class Client:
    id: str
    nombre: str
    apellido_paterno: str | None = None
    apellido_materno: str | None = None
    telefono: str | None = None
    email: str | None = None
    fecha_nacimiento: str | None = None
    sexo: str | None = None
    estado_civil: str | None = None
    estado_residencia: str | None = None
    ocupacion: str | None = None
    empresa: str | None = None
    ingreso_hogar: float | None = None
    dependientes: int | None = None
    fumador: bool | None = None
    fuente: str | None = None
    necesidades: list[str] | None = None
    estatus: str | None = None
    etapa: str | None = None
    referido_por_id: str | None = None
    asesor: str | None = None
    ultimo_contacto: str | None = None
    notas: str | None = None
    anf_realizado: bool | None = None
    anf_fecha: str | None = None
    contactado: bool = False
    # str (ISO), date/datetime on input; always ISO str after a store round trip
    contactado_fecha: str | date | datetime | None = None
    owner_id: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class Participation:
    mdrt: bool | None = None
    convencion: bool | None = None
    reconocimiento: bool | None = None


@dataclass(frozen=True)
class Policy:
    id: str
    cliente_id: str
    plan: str
    estado: str = "Propuesta"
    numero_poliza: str | None = None
    suma_asegurada: float | None = None
    prima_mensual: float | None = None
    moneda: str | None = None
    msi: bool | None = None
    forma_pago: str | None = None
    fecha_ingreso: str | None = None
    fecha_examen_medico: str | None = None
    fecha_pago: str | None = None
    fecha_entrega: str | None = None
    comision_estimada: float | None = None
    participa: Participation = field(default_factory=Participation)
    necesidades_futuras: str | None = None
    proximo_seguimiento: str | None = None
    pdf_url: str | None = None
    owner_id: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class Activity:
    id: str
    tipo: str
    cliente_id: str
    fecha_hora: str
    fecha_hora_fin: str | None = None
    lugar: str | None = None
    notas: str | None = None
    realizada: bool | None = None
    genero_cierre: bool | None = None
    obtuvo_referidos: bool | None = None
    reagendada: bool | None = None
    color: str | None = None
    shared_with: list[str] | None = None
    owner_id: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class Goal:
    id: str
    tipo: str
    mes: str
    meta_mensual: float | None = None
    meta_anual: float | None = None
    owner_id: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class KBFile:
    id: str
    name: str
    size: int = 0
    type: str = "application/octet-stream"
    url: str = ""
    uploaded_at: str | None = None
    uploaded_by_id: str | None = None


@dataclass(frozen=True)
class KBSection:
    id: str
    title: str
    description: str | None = None
    files: list[KBFile] = field(default_factory=list)
    owner_id: str | None = None
    created_at: str | None = None


@dataclass(frozen=True)
class MedicalForm:
    id: str
    cliente_id: str
    fecha: str
    enfermedades: str | None = None
    hospitalizacion: str | None = None
    medicamentos: str | None = None
    cirugias: str | None = None
    antecedentes: str | None = None
    otros: str | None = None
    pdf_url: str | None = None
    owner_id: str | None = None
    created_at: str | None = None
