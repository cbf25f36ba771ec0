"""Merge a drafting-service draft with the deterministic seeds.

The seeds are ground truth. The draft may add hazards, controls, steps and
explanations, but it can never remove a trigger, lower the stop-work decision
below what the triggers and the checklist demand, or leave the document short
of its completeness floor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from atsguard.checklist import ChecklistActionsPayload, escalate_decision
from atsguard.coercion import fold_text, merge_unique
from atsguard.config import EngineConfig
from atsguard.controls import merge_control_sets
from atsguard.drafting import (
    ATSDocument,
    ATSDraft,
    ATSMeta,
    ATSStep,
    DraftStopWork,
    StopWorkAssessment,
)
from atsguard.environment import EnvironmentSnapshot, TaskFlags
from atsguard.fallback import pad_hazards, synthesize_hazards, synthesize_steps
from atsguard.normative import NormRef, normalize_recommendations
from atsguard.procedures import ProcedureBrief, ProcedureInfluence

logger = logging.getLogger("atsguard.reconciliation")

CHECKLIST_TRIGGER_PREFIX = "Checklist: "

RATIONALE_TRIGGERS_DEFAULT = "Condiciones críticas detectadas; requiere revisión."
RATIONALE_CLEAR_DEFAULT = "Sin condiciones críticas detectadas."
RATIONALE_UNPARSEABLE = "Salida no parseable; revisar."

GUARDRAIL_TRIGGERS_REVIEW = (
    "Hay condiciones críticas detectadas automáticamente; se requiere revisión y control antes de continuar."
)
GUARDRAIL_CHECKLIST_STOP = (
    "Checklist corporativo (Formato Estrella) indica STOP por verificación negativa o control crítico no cumplido."
)
GUARDRAIL_CHECKLIST_REVIEW = (
    "Checklist corporativo (Formato Estrella) requiere verificación adicional antes de continuar."
)


@dataclass(frozen=True)
class ATSSeeds:
    """Deterministic inputs computed before the drafting call."""

    meta: ATSMeta
    environment: EnvironmentSnapshot
    tasks: TaskFlags
    auto_triggers: list[str]
    criteria: list[str]
    checklist: ChecklistActionsPayload
    procedure_refs: list[ProcedureBrief] = field(default_factory=list)
    procedure_influence: ProcedureInfluence = field(default_factory=ProcedureInfluence)
    normative_refs: list[NormRef] = field(default_factory=list)


def build_seed_draft(seeds: ATSSeeds) -> ATSDraft:
    """Minimal draft built only from the seeds, used when the real draft is unusable."""
    return ATSDraft(
        meta=seeds.meta.model_copy(),
        stop_work=DraftStopWork(
            decision="REVIEW_REQUIRED" if seeds.auto_triggers else "CONTINUE",
            rationale=RATIONALE_UNPARSEABLE,
        ),
    )


def _append_rationale(rationale: str, sentence: str) -> str:
    return f"{rationale} {sentence}".strip() if rationale else sentence


def _merge_meta(draft_meta: ATSMeta, seed_meta: ATSMeta) -> ATSMeta:
    return ATSMeta(
        title=draft_meta.title.strip() or seed_meta.title or "ATS",
        company=draft_meta.company.strip() or seed_meta.company,
        location=draft_meta.location.strip() or seed_meta.location,
        date=draft_meta.date.strip() or seed_meta.date,
        shift=draft_meta.shift.strip() or seed_meta.shift,
    )


def _merge_steps(existing: list[ATSStep], synthesized: list[ATSStep]) -> list[ATSStep]:
    merged = list(existing)
    seen = {fold_text(step.description) for step in existing}
    for step in synthesized:
        key = fold_text(step.description)
        if key in seen:
            continue
        seen.add(key)
        merged.append(step)
    return merged


def _resolve_stop_work(
    draft: ATSDraft,
    seeds: ATSSeeds,
    guardrails: list[str],
) -> StopWorkAssessment:
    auto_triggers = list(seeds.auto_triggers)
    rationale = draft.stop_work.rationale.strip() or (
        RATIONALE_TRIGGERS_DEFAULT if auto_triggers else RATIONALE_CLEAR_DEFAULT
    )
    decision = draft.stop_work.decision or ("REVIEW_REQUIRED" if auto_triggers else "CONTINUE")

    if auto_triggers and decision == "CONTINUE":
        decision = "REVIEW_REQUIRED"
        rationale = _append_rationale(rationale, GUARDRAIL_TRIGGERS_REVIEW)
        guardrails.append("triggers_forced_review")

    checklist = seeds.checklist
    hint = "STOP" if checklist.critical_fails else checklist.decision_hint
    if hint == "STOP" and decision != "STOP":
        decision = escalate_decision(decision, "STOP")
        rationale = _append_rationale(rationale, GUARDRAIL_CHECKLIST_STOP)
        guardrails.append("checklist_forced_stop")
    elif hint == "REVIEW_REQUIRED" and decision == "CONTINUE":
        decision = escalate_decision(decision, "REVIEW_REQUIRED")
        rationale = _append_rationale(rationale, GUARDRAIL_CHECKLIST_REVIEW)
        guardrails.append("checklist_forced_review")

    if checklist.critical_fails:
        auto_triggers = merge_unique(
            auto_triggers,
            [f"{CHECKLIST_TRIGGER_PREFIX}{item}" for item in checklist.critical_fails],
        )

    return StopWorkAssessment(
        decision=decision,
        auto_triggers=auto_triggers,
        criteria=list(seeds.criteria),
        rationale=rationale,
    )


def reconcile_ats_document(
    draft: ATSDraft | None,
    seeds: ATSSeeds,
    config: EngineConfig,
) -> tuple[ATSDocument, dict[str, object]]:
    guardrails: list[str] = []
    draft_parseable = draft is not None
    if draft is None:
        draft = build_seed_draft(seeds)
        guardrails.append("seed_document")

    meta = _merge_meta(draft.meta, seeds.meta)
    stop_work = _resolve_stop_work(draft, seeds, guardrails)

    controls = merge_control_sets(
        draft.controls,
        seeds.checklist.derived_controls,
        seeds.procedure_influence.control_set(),
    )
    draft_control_count = len(draft.controls.flattened())

    hazards = merge_unique(draft.hazards)
    draft_hazard_count = len(hazards)
    if len(hazards) < config.min_hazards:
        synthesized = synthesize_hazards(seeds.checklist, seeds.tasks, seeds.environment, stop_work.auto_triggers)
        hazards = pad_hazards(merge_unique(hazards, synthesized), config.min_hazards, config.max_hazards)
        guardrails.append("hazard_floor")

    steps = list(draft.steps)
    draft_step_count = len(steps)
    if len(steps) < config.min_steps:
        synthesized_steps = synthesize_steps(meta, hazards, controls, seeds.tasks, seeds.checklist)
        steps = _merge_steps(steps, synthesized_steps)
        guardrails.append("step_floor")

    allowed_standards = {ref.standard for ref in seeds.normative_refs}
    recommendations = normalize_recommendations(
        draft.recommendations,
        allowed_standards,
        config.max_recommendations,
    )

    document = ATSDocument(
        meta=meta,
        environment=seeds.environment,
        hazards=hazards,
        controls=controls,
        steps=steps,
        stop_work=stop_work,
        procedure_refs_used=list(seeds.procedure_influence.applied),
        procedure_influence=seeds.procedure_influence,
        checklist_actions=seeds.checklist,
        normative_refs=list(seeds.normative_refs),
        recommendations=recommendations,
    )

    stats: dict[str, object] = {
        "draft_parseable": draft_parseable,
        "guardrails": guardrails,
        "decision": stop_work.decision,
        "auto_triggers": len(stop_work.auto_triggers),
        "draft_hazards": draft_hazard_count,
        "synthesized_hazards": max(0, len(hazards) - draft_hazard_count),
        "draft_steps": draft_step_count,
        "synthesized_steps": max(0, len(steps) - draft_step_count),
        "draft_controls": draft_control_count,
        "merged_controls": max(0, len(controls.flattened()) - draft_control_count),
        "recommendations_kept": len(recommendations),
        "recommendations_dropped": max(0, len(draft.recommendations) - len(recommendations)),
    }
    if guardrails:
        logger.info(
            "guardrail_applied",
            extra={
                "event": "guardrail_applied",
                "guardrails": guardrails,
                "decision": stop_work.decision,
                "auto_triggers": len(stop_work.auto_triggers),
            },
        )
    return document, stats
