from __future__ import annotations

from fastapi import APIRouter

from atsguard.api.contracts import (
    ChecklistEvaluateRequest,
    GenerateATSRequest,
    LessonBriefRequest,
    ProcedureInfluenceRequest,
    TriggerRequest,
)
from atsguard.api.services.generation import (
    DraftingOrchestratorGetter,
    aggregate_procedure_influence,
    build_lesson_learned_brief,
    evaluate_checklist,
    evaluate_stop_work_triggers,
    generate_ats_document,
)
from atsguard.config import EngineConfig


def build_ats_router(
    *,
    get_drafting_orchestrator: DraftingOrchestratorGetter,
    engine_config: EngineConfig,
) -> APIRouter:
    router = APIRouter(prefix="/ats", tags=["ats"])

    @router.post("/generate")
    def generate_ats(payload: GenerateATSRequest) -> dict[str, object]:
        return generate_ats_document(
            payload.model_dump(),
            config=engine_config,
            get_drafting_orchestrator=get_drafting_orchestrator,
        )

    @router.post("/stop-work/triggers")
    def stop_work_triggers(payload: TriggerRequest) -> dict[str, object]:
        return evaluate_stop_work_triggers(payload.model_dump())

    @router.post("/checklist/evaluate")
    def checklist_evaluate(payload: ChecklistEvaluateRequest) -> dict[str, object]:
        return evaluate_checklist(payload.model_dump())

    @router.post("/procedures/influence")
    def procedures_influence(payload: ProcedureInfluenceRequest) -> dict[str, object]:
        return aggregate_procedure_influence(payload.model_dump())

    @router.post("/lesson-learned/brief")
    def lesson_learned_brief(payload: LessonBriefRequest) -> dict[str, object]:
        return build_lesson_learned_brief(payload.lesson, code=payload.code, origin=payload.origin)

    return router
