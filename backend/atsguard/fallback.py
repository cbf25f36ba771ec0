"""Deterministic hazard and step templates used when a draft is too thin."""

from __future__ import annotations

from atsguard.checklist import ChecklistActionsPayload, checklist_action_texts
from atsguard.coercion import merge_unique
from atsguard.controls import ControlSet
from atsguard.drafting import ATSMeta, ATSStep
from atsguard.environment import EnvironmentSnapshot, TaskFlags, classify_environment

TOP_HAZARDS = 6
TOP_CONTROLS = 8
BRIEFING_CHECKLIST_ACTIONS = 3

GENERAL_OPERATION_HAZARD = (
    "Riesgos generales de operación: interacción hombre-máquina, energías peligrosas, orden y aseo, "
    "y condiciones del entorno."
)
TRIGGERS_PRESENT_HAZARD = "Condiciones críticas detectadas (STOP/REVIEW): ver auto_triggers y criterios de Stop Work."

# Used only to pad the hazard list up to the configured floor.
BASELINE_HAZARDS: tuple[str, ...] = (
    GENERAL_OPERATION_HAZARD,
    "Caídas al mismo nivel por tropiezos, desorden o superficies irregulares.",
    "Golpes, cortes y atrapamientos por manipulación de herramientas y materiales.",
    "Sobreesfuerzo y posturas forzadas durante la manipulación manual de cargas.",
    "Exposición a energías peligrosas (eléctrica, mecánica, hidráulica, neumática) sin aislamiento verificado.",
    "Interacción con equipos móviles y tránsito de vehículos en el área de trabajo.",
)

_TASK_HAZARDS: tuple[tuple[str, str], ...] = (
    (
        "lifting",
        "Izaje / manejo de cargas: golpeado por carga, atrapamiento, caída de carga, zona de exclusión deficiente.",
    ),
    (
        "hot_work",
        "Trabajo en caliente: incendio/quemaduras, chispas/proyección, atmósferas inflamables, exposición a humos.",
    ),
    (
        "work_at_height",
        "Trabajo en alturas: caída a distinto nivel, caída de objetos, anclajes/linea de vida inadecuados.",
    ),
)

# (task flag, step description, extra hazard, leading control)
_EXECUTION_STEPS: tuple[tuple[str, str, str, str], ...] = (
    (
        "lifting",
        "Ejecución de izaje/manejo de carga con control de zona de exclusión y comunicación señalero-operador.",
        "Caída de carga, golpeado por carga, atrapamiento, interacción con equipos móviles.",
        "Aplicar plan de izaje (si aplica), verificar accesorios, puntos de izaje y capacidad; usar señalero competente.",
    ),
    (
        "hot_work",
        "Ejecución de trabajo en caliente con control de ignición y vigilancia de incendio.",
        "Incendio/quemaduras, chispas/proyección, atmósfera inflamable, humos.",
        "Validar permiso de trabajo en caliente (si aplica), extintor operativo, retirar combustibles "
        "y mantener vigilancia de fuego.",
    ),
    (
        "work_at_height",
        "Ejecución de trabajo en alturas con sistema anticaídas y control de caída de objetos.",
        "Caída a distinto nivel, anclajes inadecuados, caída de objetos.",
        "Verificar anclajes/linea de vida, plan de rescate (si aplica) y uso correcto del arnés/sistema anticaídas.",
    ),
)


def synthesize_hazards(
    checklist: ChecklistActionsPayload,
    tasks: TaskFlags,
    environment: EnvironmentSnapshot,
    triggers: list[str],
) -> list[str]:
    hazards = merge_unique(checklist.snapshot.danger_types, checklist.snapshot.environment_dangers)

    for flag, hazard in _TASK_HAZARDS:
        if getattr(tasks, flag):
            hazards = merge_unique(hazards, [hazard])

    conditions = classify_environment(environment)
    environment_hazards: list[str] = []
    if conditions.low_visibility:
        environment_hazards.append("Visibilidad baja: riesgo de atropellamiento/colisión y pérdida de control del área.")
    if conditions.poor_lighting:
        environment_hazards.append("Iluminación deficiente: errores operacionales, tropiezos/caídas, colisiones.")
    if conditions.slippery_terrain:
        environment_hazards.append(
            "Superficie resbalosa/inestable: caídas al mismo nivel, pérdida de estabilidad de equipos."
        )
    if conditions.storm:
        environment_hazards.append("Tormenta eléctrica: exposición a descarga, pérdida de control de tareas expuestas.")
    if conditions.strong_wind:
        environment_hazards.append("Viento fuerte: oscilación de cargas y pérdida de estabilidad/ control.")
    hazards = merge_unique(hazards, environment_hazards)

    if triggers:
        hazards = merge_unique(hazards, [TRIGGERS_PRESENT_HAZARD])

    if not hazards:
        hazards = [GENERAL_OPERATION_HAZARD]
    return hazards


def pad_hazards(hazards: list[str], minimum: int, maximum: int) -> list[str]:
    """Cap at ``maximum`` and top up from the baseline list until ``minimum`` is met."""
    capped = merge_unique(hazards)[: max(maximum, minimum)]
    for baseline in BASELINE_HAZARDS:
        if len(capped) >= minimum:
            break
        capped = merge_unique(capped, [baseline])
    return capped


def synthesize_steps(
    meta: ATSMeta,
    hazards: list[str],
    controls: ControlSet,
    tasks: TaskFlags,
    checklist: ChecklistActionsPayload,
) -> list[ATSStep]:
    top_hazards = merge_unique(hazards)[:TOP_HAZARDS]
    top_controls = controls.flattened()[:TOP_CONTROLS]

    steps = [
        ATSStep(
            description="Charla preoperacional, roles, comunicación y verificación de competencias.",
            hazards=top_hazards,
            controls=merge_unique(
                [
                    "Definir roles, responsable del trabajo, canales de comunicación y señales "
                    "(incluye señalero si aplica)."
                ],
                checklist_action_texts(checklist, BRIEFING_CHECKLIST_ACTIONS),
            ),
        ),
        ATSStep(
            description=(
                "Inspección del área, demarcación, control de accesos y verificación de condiciones "
                "(ambiente/orden y aseo)."
            ),
            hazards=top_hazards,
            controls=merge_unique(
                [
                    "Delimitar y señalizar el área; establecer zonas de exclusión y rutas seguras.",
                    "Verificar iluminación/visibilidad/terreno y ajustar controles antes de iniciar.",
                ],
                top_controls,
            ),
        ),
        ATSStep(
            description="Verificación de equipos/herramientas y controles críticos antes de iniciar (incluye EPP).",
            hazards=top_hazards,
            controls=merge_unique(
                ["Inspección preoperacional de equipos/herramientas; detener si hay defectos críticos."],
                top_controls,
            ),
        ),
    ]

    for flag, description, extra_hazard, leading_control in _EXECUTION_STEPS:
        if getattr(tasks, flag):
            steps.append(
                ATSStep(
                    description=description,
                    hazards=merge_unique(top_hazards, [extra_hazard]),
                    controls=merge_unique([leading_control], top_controls),
                )
            )
    if not tasks.elevated_risk:
        steps.append(
            ATSStep(
                description="Ejecución del trabajo según plan y controles definidos.",
                hazards=top_hazards,
                controls=top_controls,
            )
        )

    steps.append(
        ATSStep(
            description=(
                "Cierre del trabajo: retiro de demarcación, housekeeping, verificación final y registro de novedades."
            ),
            hazards=["Exposición residual por energías/orden y aseo, interacción con equipos en retiro."],
            controls=[
                "Asegurar condición segura final del área, retiro controlado de señalización y entrega del sitio.",
                "Registrar observaciones/incidentes/casi-incidentes y controles implementados.",
                f"Registrar ATS: {meta.title} | {meta.location} | {meta.date} | Turno: {meta.shift}",
            ],
        )
    )
    return steps
