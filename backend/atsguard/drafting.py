from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, Field, StringConstraints, ValidationError

from atsguard.checklist import DECISION_ORDER, ChecklistActionsPayload, DecisionHint
from atsguard.coercion import as_dict, as_list, as_str_list, merge_unique, pick_str
from atsguard.controls import ControlSet, normalize_control_set
from atsguard.environment import EnvironmentSnapshot, TaskFlags
from atsguard.normative import NormRef, Recommendation
from atsguard.procedures import ProcedureBrief, ProcedureInfluence, ProcedureSource

DEFAULT_ATS_TITLE = "ATS"

# Whitespace-only entries must not count toward the hazard and step floors.
NonBlankText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

# Output shape requested from the drafting service. Triggers, criteria, merged
# controls and the checklist are owned by the engine and are not requested.
ATS_DRAFT_SHAPE = (
    "Return a JSON object with keys: meta, hazards, controls, steps, stop_work, recommendations. "
    "meta must have keys title, company, location, date, shift. "
    "hazards must be an array of strings. "
    "controls must have keys engineering, administrative, ppe, each an array of strings. "
    "steps must be an array of objects with keys description, hazards, controls (arrays of strings). "
    "stop_work must have keys decision and rationale; decision must be one of STOP, REVIEW_REQUIRED, CONTINUE. "
    "recommendations must be an array of objects with keys topic, recommendation, based_on, verification; "
    "based_on items have keys standard and clause (string or null); "
    "verification must be one of ok, requires_verification."
)


class ATSMeta(BaseModel):
    title: str = DEFAULT_ATS_TITLE
    company: str = ""
    location: str = ""
    date: str = ""
    shift: str = ""


class ATSStep(BaseModel):
    description: NonBlankText
    hazards: list[str] = Field(default_factory=list)
    controls: list[str] = Field(default_factory=list)


class StopWorkAssessment(BaseModel):
    decision: DecisionHint = "CONTINUE"
    auto_triggers: list[str] = Field(default_factory=list)
    criteria: list[str] = Field(default_factory=list)
    rationale: str = ""


class DraftStopWork(BaseModel):
    decision: DecisionHint | None = None
    rationale: str = ""


class ATSDraft(BaseModel):
    """The drafting service's view of the document, after shape repair."""

    meta: ATSMeta = Field(default_factory=ATSMeta)
    hazards: list[NonBlankText] = Field(default_factory=list)
    controls: ControlSet = Field(default_factory=ControlSet)
    steps: list[ATSStep] = Field(default_factory=list)
    stop_work: DraftStopWork = Field(default_factory=DraftStopWork)
    recommendations: list[dict[str, Any]] = Field(default_factory=list)


class ATSDocument(BaseModel):
    meta: ATSMeta = Field(default_factory=ATSMeta)
    environment: EnvironmentSnapshot = Field(default_factory=EnvironmentSnapshot)
    hazards: list[str] = Field(default_factory=list)
    controls: ControlSet = Field(default_factory=ControlSet)
    steps: list[ATSStep] = Field(default_factory=list)
    stop_work: StopWorkAssessment = Field(default_factory=StopWorkAssessment)
    procedure_refs_used: list[ProcedureSource] = Field(default_factory=list)
    procedure_influence: ProcedureInfluence = Field(default_factory=ProcedureInfluence)
    checklist_actions: ChecklistActionsPayload = Field(default_factory=ChecklistActionsPayload)
    normative_refs: list[NormRef] = Field(default_factory=list)
    recommendations: list[Recommendation] = Field(default_factory=list)


def _repair_step(raw: object) -> dict[str, object] | None:
    data = as_dict(raw)
    description = pick_str(data.get("description")) or pick_str(data.get("step"))
    if not description:
        return None
    return {
        "description": description,
        "hazards": merge_unique(as_str_list(data.get("hazards"))),
        "controls": merge_unique(as_str_list(data.get("controls"))),
    }


def repair_draft_payload(payload: dict[str, object]) -> dict[str, object]:
    """Substitute empty placeholders for every missing or mistyped draft field."""
    meta = as_dict(payload.get("meta"))
    stop_work = as_dict(payload.get("stop_work"))
    decision = stop_work.get("decision")

    steps: list[dict[str, object]] = []
    for item in as_list(payload.get("steps")):
        repaired_step = _repair_step(item)
        if repaired_step is not None:
            steps.append(repaired_step)

    return {
        "meta": {
            "title": pick_str(meta.get("title")),
            "company": pick_str(meta.get("company")),
            "location": pick_str(meta.get("location")),
            "date": pick_str(meta.get("date")),
            "shift": pick_str(meta.get("shift")),
        },
        "hazards": merge_unique(as_str_list(payload.get("hazards"))),
        "controls": normalize_control_set(payload.get("controls")).model_dump(),
        "steps": steps,
        "stop_work": {
            "decision": decision if decision in DECISION_ORDER else None,
            "rationale": pick_str(stop_work.get("rationale")),
        },
        "recommendations": [item for item in as_list(payload.get("recommendations")) if isinstance(item, dict)],
    }


def validate_with_repair(payload: object) -> tuple[ATSDraft | None, bool, list[str]]:
    if not isinstance(payload, dict):
        return None, False, ["Draft payload must be a JSON object."]
    try:
        return ATSDraft.model_validate(payload), False, []
    except ValidationError as err:
        initial_errors = [issue["msg"] for issue in err.errors()]

    repaired_payload = repair_draft_payload(payload)
    try:
        return ATSDraft.model_validate(repaired_payload), True, initial_errors
    except ValidationError as repaired_err:
        final_errors = [issue["msg"] for issue in repaired_err.errors()]
        return None, True, initial_errors + final_errors


def build_drafting_context(
    *,
    meta: ATSMeta,
    environment: EnvironmentSnapshot,
    tasks: TaskFlags,
    auto_triggers: list[str],
    criteria: list[str],
    procedure_refs: list[ProcedureBrief],
    procedure_influence: ProcedureInfluence,
    checklist: ChecklistActionsPayload,
    normative_refs: list[NormRef],
    min_hazards: int,
    min_steps: int,
) -> dict[str, object]:
    return {
        "meta": meta.model_dump(),
        "environment": environment.model_dump(),
        "tasks": tasks.model_dump(),
        "stop_work_seed": {"auto_triggers": list(auto_triggers), "criteria": list(criteria)},
        "procedure_refs": [ref.model_dump() for ref in procedure_refs],
        "derived_controls_seed": [item.model_dump() for item in procedure_influence.derived_controls],
        "checklist_actions_seed": checklist.model_dump(),
        "normative_refs": [ref.model_dump() for ref in normative_refs],
        "minimums": {"hazards": min_hazards, "steps": min_steps},
    }
