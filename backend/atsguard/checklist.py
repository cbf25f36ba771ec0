"""Formato Estrella checklist evaluation.

The evaluator is deterministic: the same checklist and task flags always
produce the same payload. Every finding carries an ``evidence`` trail that
names the form field it came from, so supervisors can audit why an action was
requested.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from atsguard.coercion import (
    as_dict,
    as_str_list,
    fold_text,
    lookup,
    lookup_path,
    merge_unique,
    normalize_yes_no,
    pick_str,
)
from atsguard.controls import CONTROL_LEVELS, ControlLevel, ControlSet, merge_control_sets
from atsguard.environment import TaskFlags

DecisionHint = Literal["STOP", "REVIEW_REQUIRED", "CONTINUE"]
ActionPriority = Literal["critical", "high", "medium", "low"]

DECISION_ORDER: dict[str, int] = {"CONTINUE": 0, "REVIEW_REQUIRED": 1, "STOP": 2}
ACTION_PRIORITIES: tuple[str, ...] = ("critical", "high", "medium", "low")

SUPERVISOR_YES = "SI"
SUPERVISOR_NO = "NO"
SUPERVISOR_NOT_APPLICABLE = "N.A."

_SUPERVISOR_YES_VALUES = {"si", "yes", "y", "s", "true", "1", "ok"}
_SUPERVISOR_NO_VALUES = {"no", "n", "false", "0"}
_SUPERVISOR_NA_VALUES = {"n.a.", "n.a", "na", "n/a", "no aplica", "not applicable"}

# (field, label, verification text) in form order.
SUPERVISOR_ITEMS: tuple[tuple[str, str, str], ...] = (
    ("stages_clarity", "Claridad de etapas", "Tengo claridad de todas las etapas del trabajo a ejecutar"),
    (
        "hazards_controlled",
        "Peligros controlados",
        "Se han identificado y controlado todos los peligros y es seguro comenzar",
    ),
    (
        "isolation_confirmed",
        "Aislamiento confirmado",
        "He confirmado el aislamiento de todas las fuentes de energías peligrosas",
    ),
    (
        "comms_agreed",
        "Comunicación acordada",
        "Se han acordado responsabilidades y canales de comunicación del equipo",
    ),
    ("tools_ok", "Herramientas OK", "Cuento con herramientas y equipos necesarios en buenas condiciones"),
)

PPE_TAG_CONTROLS: dict[str, str] = {
    "Casco": "Uso obligatorio de casco de seguridad.",
    "Guantes": "Uso obligatorio de guantes adecuados a la tarea.",
    "Botas de seguridad": "Uso obligatorio de botas de seguridad.",
    "Gafas de Seguridad": "Uso obligatorio de gafas de seguridad.",
    "Protección Auditiva": "Uso obligatorio de protección auditiva según niveles de ruido.",
    "Protección Respiratoria": "Uso obligatorio de protección respiratoria según exposición.",
    "Arnés de Seguridad": "Uso de arnés y sistema anticaídas certificado (si aplica trabajo en alturas).",
}

ADMINISTRATIVE_TAG_CONTROLS: dict[str, str] = {
    "Señalización/Conos/Limitación de Área": "Delimitar y señalizar el área de trabajo; controlar accesos.",
    "Medición de gases": "Realizar medición de gases previa y continua cuando aplique; registrar resultados.",
    "Extintores / Matafuegos": "Verificar extintor disponible/operativo y permiso de trabajo en caliente cuando aplique.",
    "Lockout/Layout/ EMN": "Aplicar aislamiento de energías peligrosas (LOTO) y verificación de energía cero si aplica.",
}

WORK_AT_HEIGHT_TAG = "Trabajo en alturas"

LESSON_REQUIRED_DETAIL = (
    "Marcaste 'Si' en incidentes en trabajos similares. Debes cargar una lección aprendida "
    "y procesarla con /api/ats/lesson-learned/brief antes de generar el ATS."
)
LESSON_PENDING_MISSING = (
    "Incidentes en trabajos similares = Sí, pero no se adjuntó lección aprendida (lesson_learned_brief)."
)
LESSON_PENDING_ACTION = (
    "Adjuntar y revisar una Lección Aprendida (procesada con /api/ats/lesson-learned/brief) antes de iniciar. "
    "Socializar controles y validar aplicabilidad."
)


class LessonLearnedRequiredError(ValueError):
    """Incidents in similar work were reported but no lesson learned was attached."""


class SupervisorChecks(BaseModel):
    stages_clarity: str = ""
    hazards_controlled: str = ""
    isolation_confirmed: str = ""
    comms_agreed: str = ""
    tools_ok: str = ""


class ChecklistSnapshot(BaseModel):
    incidents_reference: str = ""
    other_companies: str = ""
    danger_types: list[str] = Field(default_factory=list)
    environment_dangers: list[str] = Field(default_factory=list)
    emergencies: list[str] = Field(default_factory=list)
    safety_equipment: list[str] = Field(default_factory=list)
    life_saving_rules: list[str] = Field(default_factory=list)
    supervisor_checks: SupervisorChecks = Field(default_factory=SupervisorChecks)


class ChecklistState(ChecklistSnapshot):
    elaboration_date: str = ""
    execution_date: str = ""

    def snapshot(self) -> ChecklistSnapshot:
        return ChecklistSnapshot.model_validate(self.model_dump(exclude={"elaboration_date", "execution_date"}))


class ChecklistAction(BaseModel):
    priority: ActionPriority = "medium"
    category: ControlLevel = "administrative"
    action: str = Field(..., min_length=1)
    evidence: list[str] = Field(default_factory=list)


class ChecklistActionsPayload(BaseModel):
    decision_hint: DecisionHint = "CONTINUE"
    missing: list[str] = Field(default_factory=list)
    critical_fails: list[str] = Field(default_factory=list)
    derived_controls: ControlSet = Field(default_factory=ControlSet)
    actions: list[ChecklistAction] = Field(default_factory=list)
    snapshot: ChecklistSnapshot = Field(default_factory=ChecklistSnapshot)

    def has_signal(self) -> bool:
        return bool(self.actions or self.missing or self.critical_fails)


def escalate_decision(current: str, proposed: str) -> str:
    """Return the more severe of two decisions. Unknown values rank as CONTINUE."""
    if DECISION_ORDER.get(proposed, 0) > DECISION_ORDER.get(current, 0):
        return proposed
    return current


def normalize_supervisor_check(value: object) -> str:
    if isinstance(value, bool):
        return SUPERVISOR_YES if value else SUPERVISOR_NO
    if not isinstance(value, str):
        return ""
    folded = fold_text(value)
    if folded in _SUPERVISOR_YES_VALUES:
        return SUPERVISOR_YES
    if folded in _SUPERVISOR_NO_VALUES:
        return SUPERVISOR_NO
    if folded in _SUPERVISOR_NA_VALUES:
        return SUPERVISOR_NOT_APPLICABLE
    return ""


def _normalize_supervisor_checks(raw: object) -> SupervisorChecks:
    data = as_dict(raw)
    return SupervisorChecks(
        **{field: normalize_supervisor_check(lookup(data, field)) for field, _, _ in SUPERVISOR_ITEMS}
    )


def normalize_checklist_state(raw: object) -> ChecklistState:
    data = as_dict(raw)
    checks = lookup_path(data, "authorizations", "supervisor", "checks")
    if not isinstance(checks, dict):
        checks = lookup(data, "supervisor_checks")
    return ChecklistState(
        elaboration_date=pick_str(lookup(data, "elaboration_date")),
        execution_date=pick_str(lookup(data, "execution_date")),
        incidents_reference=normalize_yes_no(lookup(data, "incidents_reference")),
        other_companies=normalize_yes_no(lookup(data, "other_companies")),
        danger_types=merge_unique(as_str_list(lookup(data, "danger_types"))),
        environment_dangers=merge_unique(as_str_list(lookup(data, "environment_dangers"))),
        emergencies=merge_unique(as_str_list(lookup(data, "emergencies"))),
        safety_equipment=merge_unique(as_str_list(lookup(data, "safety_equipment"))),
        life_saving_rules=merge_unique(as_str_list(lookup(data, "life_saving_rules"))),
        supervisor_checks=_normalize_supervisor_checks(checks),
    )


def _tag_lookup(table: dict[str, str]) -> dict[str, str]:
    return {fold_text(tag): control for tag, control in table.items()}


_PPE_BY_TAG = _tag_lookup(PPE_TAG_CONTROLS)
_ADMINISTRATIVE_BY_TAG = _tag_lookup(ADMINISTRATIVE_TAG_CONTROLS)


def _has_tag(tags: list[str], tag: str) -> bool:
    target = fold_text(tag)
    return any(fold_text(item) == target for item in tags)


def derive_decision_hint(missing: list[str], critical_fails: list[str], actions: list[ChecklistAction]) -> str:
    if critical_fails:
        return "STOP"
    if missing or any(action.priority in {"high", "medium"} for action in actions):
        return "REVIEW_REQUIRED"
    return "CONTINUE"


def derive_checklist_actions(state: ChecklistState, tasks: TaskFlags) -> ChecklistActionsPayload:
    missing: list[str] = []
    critical_fails: list[str] = []
    actions: list[ChecklistAction] = []

    for field, label, text in SUPERVISOR_ITEMS:
        answer = getattr(state.supervisor_checks, field)
        if not answer:
            missing.append(f"Falta selección en verificación del supervisor: {label}.")
        elif answer == SUPERVISOR_NO:
            critical_fails.append(f"Supervisor marcó NO: {label}.")
            actions.append(
                ChecklistAction(
                    priority="critical",
                    category="administrative",
                    action=f'Detener el trabajo y corregir el ítem: "{text}". Revalidar antes de reiniciar.',
                    evidence=["Checklist supervisor", f"supervisor_checks.{field}"],
                )
            )

    if not state.elaboration_date:
        missing.append("Falta fecha de elaboración (Formato Estrella).")
    if not state.execution_date:
        missing.append("Falta fecha de ejecución (Formato Estrella).")

    if not state.incidents_reference:
        missing.append("No se respondió: Incidentes en trabajos similares (Si/No).")
    elif state.incidents_reference == "Si":
        actions.append(
            ChecklistAction(
                priority="high",
                action=(
                    "Revisar lecciones aprendidas/incidentes similares, definir controles específicos "
                    "y socializarlos en charla preoperacional."
                ),
                evidence=["Incidentes en trabajos similares = Sí", "incidents_reference"],
            )
        )

    if not state.other_companies:
        missing.append("No se respondió: Involucra personal de otras compañías (Si/No).")
    elif state.other_companies == "Si":
        actions.append(
            ChecklistAction(
                priority="high",
                action=(
                    "Asegurar coordinación inter-contratistas: roles, responsable de área, permisos, "
                    "comunicación, y control de interferencias (SIMOPS)."
                ),
                evidence=["Otras compañías = Sí", "other_companies"],
            )
        )

    if _has_tag(state.danger_types, WORK_AT_HEIGHT_TAG) and not tasks.work_at_height:
        actions.append(
            ChecklistAction(
                priority="medium",
                action=(
                    "Validar coherencia: se marcó 'Trabajo en alturas' pero la condición 'Trabajo en alturas' "
                    "no está activa. Confirmar si aplica y ajustar."
                ),
                evidence=["Tipos de peligros", "danger_types", "work_at_height"],
            )
        )

    if not state.emergencies:
        actions.append(
            ChecklistAction(
                priority="medium",
                action=(
                    "Confirmar escenarios de emergencia aplicables (médica, incendio, H2S, ambiental, etc.) "
                    "y verificar plan de respuesta (rutas, puntos, comunicación)."
                ),
                evidence=["Emergencias sin selección", "emergencies"],
            )
        )

    ppe: list[str] = []
    administrative: list[str] = []
    for tag in state.safety_equipment:
        key = fold_text(tag)
        if key in _PPE_BY_TAG:
            ppe.append(_PPE_BY_TAG[key])
        if key in _ADMINISTRATIVE_BY_TAG:
            administrative.append(_ADMINISTRATIVE_BY_TAG[key])

    if not state.life_saving_rules:
        actions.append(
            ChecklistAction(
                priority="medium",
                action=(
                    "Seleccionar y verificar 'Acuerdos de Vida' aplicables antes de iniciar. "
                    "Si algún control no está implementado → detener y solicitar ayuda."
                ),
                evidence=["Acuerdos de vida sin selección", "life_saving_rules"],
            )
        )

    return ChecklistActionsPayload(
        decision_hint=derive_decision_hint(missing, critical_fails, actions),
        missing=missing,
        critical_fails=critical_fails,
        derived_controls=ControlSet(
            engineering=[],
            administrative=merge_unique(administrative),
            ppe=merge_unique(ppe),
        ),
        actions=actions,
        snapshot=state.snapshot(),
    )


def _sanitize_action(raw: object) -> ChecklistAction | None:
    data = as_dict(raw)
    text = pick_str(data.get("action"))
    if not text:
        return None
    priority = data.get("priority")
    category = data.get("category")
    return ChecklistAction(
        priority=priority if priority in ACTION_PRIORITIES else "medium",
        category=category if category in CONTROL_LEVELS else "administrative",
        action=text,
        evidence=as_str_list(data.get("evidence")),
    )


def sanitize_checklist_actions(raw: object, fallback: ChecklistActionsPayload) -> ChecklistActionsPayload:
    """Coerce an untrusted checklist payload into shape, filling gaps from ``fallback``.

    The snapshot is always taken from ``fallback``: it echoes the form inputs and
    nothing downstream may rewrite it.
    """
    if not isinstance(raw, dict):
        return fallback.model_copy(deep=True)

    hint = raw.get("decision_hint")
    raw_actions = raw.get("actions")
    if isinstance(raw_actions, list):
        actions = [action for action in (_sanitize_action(item) for item in raw_actions) if action is not None]
    else:
        actions = [action.model_copy() for action in fallback.actions]

    controls = as_dict(raw.get("derived_controls"))
    return ChecklistActionsPayload(
        decision_hint=hint if hint in DECISION_ORDER else fallback.decision_hint,
        missing=merge_unique(as_str_list(raw.get("missing"))),
        critical_fails=merge_unique(as_str_list(raw.get("critical_fails"))),
        derived_controls=ControlSet(
            engineering=merge_unique(as_str_list(controls.get("engineering"))),
            administrative=merge_unique(as_str_list(controls.get("administrative"))),
            ppe=merge_unique(as_str_list(controls.get("ppe"))),
        ),
        actions=actions,
        snapshot=fallback.snapshot.model_copy(deep=True),
    )


def merge_enriched_checklist(revised: ChecklistActionsPayload, base: ChecklistActionsPayload) -> ChecklistActionsPayload:
    """Merge a revised checklist payload over the deterministic seed.

    Critical fails come from the seed only. Seed missing items and critical
    actions survive the revision, and the hint is recomputed from the merged
    content and never drops below the seed hint.
    """
    actions = list(revised.actions) if revised.actions else list(base.actions)
    present = {fold_text(action.action) for action in actions}
    for action in base.actions:
        if action.priority == "critical" and fold_text(action.action) not in present:
            actions.append(action)
            present.add(fold_text(action.action))

    missing = merge_unique(base.missing, revised.missing)
    critical_fails = list(base.critical_fails)
    hint = escalate_decision(derive_decision_hint(missing, critical_fails, actions), base.decision_hint)

    return ChecklistActionsPayload(
        decision_hint=hint,
        missing=missing,
        critical_fails=critical_fails,
        derived_controls=merge_control_sets(base.derived_controls, revised.derived_controls),
        actions=actions,
        snapshot=base.snapshot.model_copy(deep=True),
    )


def apply_lesson_learned_precondition(
    payload: ChecklistActionsPayload,
    has_lesson: bool,
    *,
    require: bool,
) -> ChecklistActionsPayload:
    """Enforce that incidents in similar work come with a lesson learned.

    With ``require`` the request is rejected; otherwise the gap becomes a missing
    item plus a high-priority action and the hint is raised to review.
    """
    if payload.snapshot.incidents_reference != "Si" or has_lesson:
        return payload
    if require:
        raise LessonLearnedRequiredError(LESSON_REQUIRED_DETAIL)

    actions = list(payload.actions)
    actions.append(
        ChecklistAction(
            priority="high",
            category="administrative",
            action=LESSON_PENDING_ACTION,
            evidence=["Incidentes = Sí", "Lección aprendida pendiente"],
        )
    )
    missing = merge_unique(payload.missing, [LESSON_PENDING_MISSING])
    return payload.model_copy(
        update={
            "missing": missing,
            "actions": actions,
            "decision_hint": escalate_decision(
                payload.decision_hint,
                derive_decision_hint(missing, payload.critical_fails, actions),
            ),
        }
    )


def checklist_action_texts(payload: ChecklistActionsPayload, limit: int | None = None) -> list[str]:
    texts = merge_unique([action.action for action in payload.actions])
    return texts if limit is None else texts[:limit]

