from __future__ import annotations

import dataclasses
import logging
from typing import Callable, Mapping

from fastapi import HTTPException

from atsguard.bedrock_runtime import (
    BedrockDraftingOrchestrator,
    DraftingRateLimitError,
    DraftingResponseError,
    DraftingRuntimeError,
)
from atsguard.checklist import (
    ChecklistActionsPayload,
    LessonLearnedRequiredError,
    apply_lesson_learned_precondition,
    derive_checklist_actions,
    merge_enriched_checklist,
    normalize_checklist_state,
    sanitize_checklist_actions,
)
from atsguard.coercion import as_dict, lookup, merge_unique, pick_str
from atsguard.config import EngineConfig
from atsguard.drafting import (
    DEFAULT_ATS_TITLE,
    ATSDraft,
    ATSMeta,
    build_drafting_context,
    validate_with_repair,
)
from atsguard.environment import (
    STOP_WORK_CRITERIA,
    compute_stop_work_triggers,
    normalize_environment,
    normalize_task_flags,
)
from atsguard.normative import normalize_norm_refs
from atsguard.procedures import (
    build_procedure_influence,
    combine_procedure_refs,
    extract_lesson_learned_ref,
    lesson_stop_work_triggers,
    lesson_to_procedure_brief,
    normalize_lesson,
)
from atsguard.reconciliation import ATSSeeds, reconcile_ats_document

logger = logging.getLogger("atsguard.api")

DraftingOrchestratorGetter = Callable[[], BedrockDraftingOrchestrator]

LESSON_REQUIRED_ERROR = "Lección aprendida requerida"
RATE_LIMIT_ERROR = "Rate limit del servicio de redacción"
RATE_LIMIT_DETAILS = (
    "El servicio de redacción rechazó la solicitud por límite de tasa (TPM). "
    "Reintenta en unos segundos o reduce la cantidad de procedimientos procesados en modo profundo."
)
DRAFTING_UNAVAILABLE_ERROR = "Servicio de redacción no disponible"


def error_detail(error: str, details: str) -> dict[str, str]:
    return {"error": error, "details": details}


def compute_seeds(body: Mapping[str, object], config: EngineConfig) -> ATSSeeds:
    """Deterministic part of the pipeline: everything computed before any model call.

    Raises ``LessonLearnedRequiredError`` when incidents are reported without a
    lesson learned and the engine runs in hard mode.
    """
    data = as_dict(dict(body))
    environment = normalize_environment(lookup(data, "environment"))
    tasks = normalize_task_flags(data)
    lesson = extract_lesson_learned_ref(data)

    checklist = derive_checklist_actions(normalize_checklist_state(lookup(data, "estrella_format")), tasks)
    try:
        guarded = apply_lesson_learned_precondition(
            checklist,
            lesson is not None,
            require=config.require_lesson_learned_on_incidents,
        )
    except LessonLearnedRequiredError:
        logger.info(
            "lesson_learned_precondition_failed",
            extra={"event": "lesson_learned_precondition_failed", "mode": "reject"},
        )
        raise
    if guarded is not checklist:
        logger.info(
            "lesson_learned_precondition_downgraded",
            extra={
                "event": "lesson_learned_precondition_downgraded",
                "mode": "review",
                "decision_hint": guarded.decision_hint,
            },
        )

    procedure_refs = combine_procedure_refs(lookup(data, "procedure_refs"), lesson)
    auto_triggers = merge_unique(
        compute_stop_work_triggers(environment, tasks),
        lesson_stop_work_triggers(lesson),
    )
    meta = ATSMeta(
        title=pick_str(lookup(data, "job_title")) or DEFAULT_ATS_TITLE,
        company=pick_str(lookup(data, "company")),
        location=pick_str(lookup(data, "location")),
        date=pick_str(lookup(data, "date")),
        shift=pick_str(lookup(data, "shift")),
    )
    return ATSSeeds(
        meta=meta,
        environment=environment,
        tasks=tasks,
        auto_triggers=auto_triggers,
        criteria=list(STOP_WORK_CRITERIA),
        checklist=guarded,
        procedure_refs=procedure_refs,
        procedure_influence=build_procedure_influence(procedure_refs),
        normative_refs=normalize_norm_refs(lookup(data, "normative_refs")),
    )


def enrich_checklist_seed(
    seeds: ATSSeeds,
    runner: BedrockDraftingOrchestrator | None,
    config: EngineConfig,
) -> tuple[ChecklistActionsPayload, str]:
    """Ask the lite model to sharpen the checklist actions.

    Unlike the drafting call, every failure here is absorbed: the deterministic
    checklist is complete on its own and enrichment only improves wording.
    """
    base = seeds.checklist
    if not config.checklist_enrichment_enabled:
        reason = "disabled"
    elif runner is None:
        reason = "unavailable"
    elif not base.has_signal():
        reason = "no_signal"
    else:
        reason = ""
    if reason:
        logger.info("checklist_enrichment_skipped", extra={"event": "checklist_enrichment_skipped", "reason": reason})
        return base, "skipped"

    context = {
        "meta": seeds.meta.model_dump(),
        "tasks": seeds.tasks.model_dump(),
        "environment": seeds.environment.model_dump(),
    }
    try:
        raw = runner.enrich_checklist(base.model_dump(), context)
    except DraftingRuntimeError as exc:
        logger.warning(
            "checklist_enrichment_failed",
            extra={"event": "checklist_enrichment_failed", "error": str(exc)},
        )
        return base, "failed"

    merged = merge_enriched_checklist(sanitize_checklist_actions(raw, base), base)
    logger.info(
        "checklist_enrichment_applied",
        extra={
            "event": "checklist_enrichment_applied",
            "actions": len(merged.actions),
            "decision_hint": merged.decision_hint,
        },
    )
    return merged, "applied"


def _resolve_runner(
    get_drafting_orchestrator: DraftingOrchestratorGetter,
) -> tuple[BedrockDraftingOrchestrator | None, str]:
    try:
        return get_drafting_orchestrator(), ""
    except DraftingRuntimeError as exc:
        return None, str(exc)


def _drafting_unavailable(details: str, config: EngineConfig, exc: Exception | None = None) -> None:
    if config.fallback_on_drafting_failure:
        return
    raise HTTPException(
        status_code=502,
        detail=error_detail(DRAFTING_UNAVAILABLE_ERROR, details),
    ) from exc


def generate_ats_document(
    body: Mapping[str, object],
    *,
    config: EngineConfig,
    get_drafting_orchestrator: DraftingOrchestratorGetter,
) -> dict[str, object]:
    try:
        seeds = compute_seeds(body, config)
    except LessonLearnedRequiredError as exc:
        raise HTTPException(status_code=400, detail=error_detail(LESSON_REQUIRED_ERROR, str(exc))) from exc

    runner, runner_error = _resolve_runner(get_drafting_orchestrator)
    checklist, enrichment_status = enrich_checklist_seed(seeds, runner, config)
    seeds = dataclasses.replace(seeds, checklist=checklist)

    draft: ATSDraft | None = None
    repaired = False
    validation_errors: list[str] = []
    mode = "drafted"
    error_text = ""

    if runner is None:
        _drafting_unavailable(runner_error, config)
        mode = "seed_fallback"
        error_text = runner_error
    else:
        context = build_drafting_context(
            meta=seeds.meta,
            environment=seeds.environment,
            tasks=seeds.tasks,
            auto_triggers=seeds.auto_triggers,
            criteria=seeds.criteria,
            procedure_refs=seeds.procedure_refs,
            procedure_influence=seeds.procedure_influence,
            checklist=seeds.checklist,
            normative_refs=seeds.normative_refs,
            min_hazards=config.min_hazards,
            min_steps=config.min_steps,
        )
        try:
            raw = runner.draft_ats(context)
        except DraftingRateLimitError as exc:
            raise HTTPException(status_code=429, detail=error_detail(RATE_LIMIT_ERROR, RATE_LIMIT_DETAILS)) from exc
        except DraftingResponseError as exc:
            # Malformed content is a draft problem, not a service problem: the seeds still stand.
            mode = "seed_fallback"
            error_text = str(exc)
        except DraftingRuntimeError as exc:
            # Transport failures surface unless the operator opted into seed documents.
            _drafting_unavailable(str(exc), config, exc)
            mode = "seed_fallback"
            error_text = str(exc)
        else:
            draft, repaired, validation_errors = validate_with_repair(raw)
            if draft is None:
                mode = "seed_fallback"
                error_text = "Draft failed schema validation."

    if draft is None and runner is not None:
        logger.warning(
            "draft_unparseable_fallback",
            extra={
                "event": "draft_unparseable_fallback",
                "error": error_text,
                "validation_errors": validation_errors[:10],
            },
        )

    document, stats = reconcile_ats_document(draft, seeds, config)
    diagnostics: dict[str, object] = {
        "mode": mode,
        "repaired": repaired,
        "validation_errors": validation_errors,
        "checklist_enrichment": enrichment_status,
    }
    if error_text:
        diagnostics["error"] = error_text
    return {
        "ats": document.model_dump(),
        "reconciliation": stats,
        "drafting": diagnostics,
    }


def evaluate_stop_work_triggers(body: Mapping[str, object]) -> dict[str, object]:
    data = as_dict(dict(body))
    environment = normalize_environment(lookup(data, "environment"))
    tasks = normalize_task_flags(data)
    return {
        "auto_triggers": compute_stop_work_triggers(environment, tasks),
        "criteria": list(STOP_WORK_CRITERIA),
        "environment": environment.model_dump(),
    }


def evaluate_checklist(body: Mapping[str, object]) -> dict[str, object]:
    data = as_dict(dict(body))
    state = normalize_checklist_state(lookup(data, "estrella_format"))
    payload = derive_checklist_actions(state, normalize_task_flags(data))
    return {"checklist_actions": payload.model_dump()}


def aggregate_procedure_influence(body: Mapping[str, object]) -> dict[str, object]:
    data = as_dict(dict(body))
    refs = combine_procedure_refs(lookup(data, "procedure_refs"), extract_lesson_learned_ref(data))
    return {
        "procedure_refs": [ref.model_dump() for ref in refs],
        "procedure_influence": build_procedure_influence(refs).model_dump(),
    }


def build_lesson_learned_brief(lesson: object, code: str = "", origin: str = "") -> dict[str, object]:
    brief = lesson_to_procedure_brief(normalize_lesson(lesson), code=code, origin=origin)
    return {"lesson_learned_brief": brief.model_dump()}
