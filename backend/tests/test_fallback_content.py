from __future__ import annotations

from atsguard.checklist import ChecklistActionsPayload, ChecklistSnapshot
from atsguard.controls import ControlSet
from atsguard.drafting import ATSMeta
from atsguard.environment import TaskFlags, normalize_environment
from atsguard.fallback import (
    BASELINE_HAZARDS,
    GENERAL_OPERATION_HAZARD,
    TRIGGERS_PRESENT_HAZARD,
    pad_hazards,
    synthesize_hazards,
    synthesize_steps,
)


def test_hazards_are_never_empty() -> None:
    hazards = synthesize_hazards(ChecklistActionsPayload(), TaskFlags(), normalize_environment({}), [])
    assert hazards == [GENERAL_OPERATION_HAZARD]


def test_hazards_follow_checklist_tasks_environment_and_triggers() -> None:
    checklist = ChecklistActionsPayload(
        snapshot=ChecklistSnapshot(danger_types=["Mecánico"], environment_dangers=["Ruido", "Mecánico"])
    )
    environment = normalize_environment({"weather": "Tormenta eléctrica", "terrain": "Barro", "lighting": "Deficiente"})
    hazards = synthesize_hazards(checklist, TaskFlags(lifting=True, hot_work=True), environment, ["Trigger"])

    assert hazards[:2] == ["Mecánico", "Ruido"]
    assert hazards[2].startswith("Izaje / manejo de cargas")
    assert hazards[3].startswith("Trabajo en caliente")
    assert any(hazard.startswith("Iluminación deficiente") for hazard in hazards)
    assert any(hazard.startswith("Superficie resbalosa/inestable") for hazard in hazards)
    assert any(hazard.startswith("Tormenta eléctrica") for hazard in hazards)
    assert hazards[-1] == TRIGGERS_PRESENT_HAZARD
    assert len(hazards) == len(set(hazards))


def test_pad_hazards_tops_up_from_baseline_and_caps() -> None:
    padded = pad_hazards(["Único peligro"], minimum=3, maximum=12)
    assert padded == ["Único peligro", BASELINE_HAZARDS[0], BASELINE_HAZARDS[1]]

    capped = pad_hazards([f"Peligro {index}" for index in range(20)], minimum=3, maximum=6)
    assert len(capped) == 6


def test_step_skeleton_without_active_tasks_uses_generic_execution() -> None:
    meta = ATSMeta(title="Mantenimiento bomba", location="Planta 1", date="2026-10-18", shift="Día")
    controls = ControlSet(administrative=["Permiso."])
    steps = synthesize_steps(meta, ["Golpes"], controls, TaskFlags(), ChecklistActionsPayload())

    assert len(steps) == 5
    assert steps[0].description.startswith("Charla preoperacional")
    assert steps[1].description.startswith("Inspección del área")
    assert steps[2].description.startswith("Verificación de equipos")
    assert steps[3].description == "Ejecución del trabajo según plan y controles definidos."
    assert steps[4].description.startswith("Cierre del trabajo")
    assert "Registrar ATS: Mantenimiento bomba | Planta 1 | 2026-10-18 | Turno: Día" in steps[4].controls
    assert "Permiso." in steps[3].controls
    assert steps[0].hazards == ["Golpes"]


def test_step_skeleton_adds_one_execution_step_per_active_task() -> None:
    steps = synthesize_steps(
        ATSMeta(),
        [f"Peligro {index}" for index in range(10)],
        ControlSet(),
        TaskFlags(lifting=True, work_at_height=True),
        ChecklistActionsPayload(),
    )
    descriptions = [step.description for step in steps]

    assert len(steps) == 6
    assert descriptions[3].startswith("Ejecución de izaje")
    assert descriptions[4].startswith("Ejecución de trabajo en alturas")
    assert len(steps[0].hazards) == 6
    assert steps[3].controls[0].startswith("Aplicar plan de izaje")
