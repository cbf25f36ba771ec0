from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from atsguard.coercion import as_dict, as_list, as_str_list, lookup, merge_unique, pick_str
from atsguard.controls import CONTROL_LEVELS, ControlLevel, ControlSet, normalize_control_set

DEFAULT_PROCEDURE_TITLE = "Procedimiento"
LESSON_LEARNED_ORIGIN = "Lección aprendida"
LESSON_TRIGGER_PREFIX = "Lección aprendida: "

# Keys under which clients attach the processed lesson learned, in lookup order.
LESSON_LEARNED_BODY_PATHS: tuple[tuple[str, ...], ...] = (
    ("lesson_learned_brief",),
    ("lesson_learned_ref",),
    ("lesson", "lesson_learned_brief"),
    ("data", "lesson_learned_brief"),
    ("lessonLearned", "lesson_learned_brief"),
)

LESSON_CONTROL_LIMITS: dict[str, int] = {"engineering": 18, "administrative": 24, "ppe": 18}
LESSON_STOP_WORK_LIMIT = 12
LESSON_STEPS_LIMIT = 18
LESSON_WHAT_HAPPENED_LIMIT = 6
LESSON_RESTRICTIONS_LIMIT = 12


class Brief(BaseModel):
    scope: str = ""
    mandatory_permits: list[str] = Field(default_factory=list)
    critical_controls: ControlSet = Field(default_factory=ControlSet)
    stop_work: list[str] = Field(default_factory=list)
    mandatory_steps: list[str] = Field(default_factory=list)
    restrictions: list[str] = Field(default_factory=list)

    def has_content(self) -> bool:
        return bool(
            self.scope
            or self.mandatory_permits
            or self.mandatory_steps
            or self.stop_work
            or self.restrictions
            or not self.critical_controls.is_empty()
        )


class ProcedureSource(BaseModel):
    title: str
    code: str = ""
    origin: str = ""

    @property
    def key(self) -> str:
        return self.code or self.title


class ProcedureBrief(BaseModel):
    """One source document's safety extract. Lessons learned share this shape."""

    title: str = DEFAULT_PROCEDURE_TITLE
    code: str = ""
    origin: str = ""
    parseable: bool = True
    brief: Brief = Field(default_factory=Brief)

    def source(self) -> ProcedureSource:
        return ProcedureSource(title=self.title, code=self.code, origin=self.origin)


class DerivedControl(BaseModel):
    level: ControlLevel
    control: str
    source: ProcedureSource


class ProcedureInfluence(BaseModel):
    applied: list[ProcedureSource] = Field(default_factory=list)
    not_parseable: list[ProcedureSource] = Field(default_factory=list)
    derived_controls: list[DerivedControl] = Field(default_factory=list)

    def control_set(self) -> ControlSet:
        grouped: dict[str, list[str]] = {level: [] for level in CONTROL_LEVELS}
        for item in self.derived_controls:
            grouped[item.level].append(item.control)
        return ControlSet(**{level: merge_unique(values) for level, values in grouped.items()})


class LessonControls(BaseModel):
    engineering: list[str] = Field(default_factory=list)
    administrative: list[str] = Field(default_factory=list)
    ppe: list[str] = Field(default_factory=list)


class LessonLearned(BaseModel):
    title: str = LESSON_LEARNED_ORIGIN
    origin: str = LESSON_LEARNED_ORIGIN
    date: str | None = None
    parseable: bool = True
    confidence: Literal["low", "medium", "high"] = "medium"
    summary: str = ""
    what_happened: list[str] = Field(default_factory=list)
    what_went_wrong: list[str] = Field(default_factory=list)
    contributing_factors: list[str] = Field(default_factory=list)
    key_controls: LessonControls = Field(default_factory=LessonControls)
    verification_points: list[str] = Field(default_factory=list)
    stop_work_triggers: list[str] = Field(default_factory=list)
    talk_points: list[str] = Field(default_factory=list)


def _brief_from(raw: object) -> Brief:
    data = as_dict(raw)
    return Brief(
        scope=pick_str(data.get("scope")),
        mandatory_permits=as_str_list(data.get("mandatory_permits")),
        critical_controls=normalize_control_set(data.get("critical_controls")),
        stop_work=as_str_list(data.get("stop_work")),
        mandatory_steps=as_str_list(data.get("mandatory_steps")),
        restrictions=as_str_list(data.get("restrictions")),
    )


def normalize_procedure_ref(raw: object) -> ProcedureBrief:
    """Coerce any client- or model-provided reference into a full ProcedureBrief."""
    data = as_dict(raw)
    parseable = data.get("parseable")
    return ProcedureBrief(
        title=pick_str(data.get("title")) or DEFAULT_PROCEDURE_TITLE,
        code=pick_str(data.get("code")),
        origin=pick_str(data.get("origin")),
        parseable=parseable if isinstance(parseable, bool) else True,
        brief=_brief_from(data.get("brief")),
    )


def extract_lesson_learned_ref(body: object) -> ProcedureBrief | None:
    data = as_dict(body)
    raw: object = None
    for path in LESSON_LEARNED_BODY_PATHS:
        current: object = data
        for key in path:
            current = as_dict(current).get(key)
        if current is not None:
            raw = current
            break
    if not isinstance(raw, dict):
        return None

    normalized = normalize_procedure_ref(raw)
    lesson = normalized.model_copy(
        update={
            "title": pick_str(raw.get("title")) or LESSON_LEARNED_ORIGIN,
            "origin": pick_str(raw.get("origin")) or LESSON_LEARNED_ORIGIN,
            "parseable": True,
        }
    )
    if not lesson.brief.has_content():
        return None
    return lesson


def combine_procedure_refs(raw_refs: object, lesson: ProcedureBrief | None = None) -> list[ProcedureBrief]:
    """Normalize procedure refs in input order; the lesson learned, if any, goes last."""
    refs = [normalize_procedure_ref(item) for item in as_list(raw_refs) if isinstance(item, dict)]
    if lesson is not None:
        refs.append(lesson)
    return refs


def build_procedure_influence(refs: list[ProcedureBrief]) -> ProcedureInfluence:
    applied = [ref for ref in refs if ref.parseable]
    not_parseable = [ref for ref in refs if not ref.parseable]

    derived: list[DerivedControl] = []
    seen: set[tuple[str, str, str]] = set()
    for ref in applied:
        source = ref.source()
        for level in CONTROL_LEVELS:
            for control in getattr(ref.brief.critical_controls, level):
                text = control.strip()
                if not text:
                    continue
                # Same text from two sources stays as two entries.
                dedupe_key = (level, text, source.key)
                if dedupe_key in seen:
                    continue
                seen.add(dedupe_key)
                derived.append(DerivedControl(level=level, control=text, source=source))

    return ProcedureInfluence(
        applied=[ref.source() for ref in applied],
        not_parseable=[ref.source() for ref in not_parseable],
        derived_controls=derived,
    )


def lesson_stop_work_triggers(lesson: ProcedureBrief | None) -> list[str]:
    if lesson is None:
        return []
    return merge_unique([f"{LESSON_TRIGGER_PREFIX}{clause}" for clause in lesson.brief.stop_work])


def normalize_lesson(raw: object) -> LessonLearned:
    data = as_dict(raw)
    confidence = data.get("confidence")
    parseable = data.get("parseable")
    controls = as_dict(lookup(data, "key_controls"))
    return LessonLearned(
        title=pick_str(data.get("title")) or LESSON_LEARNED_ORIGIN,
        origin=pick_str(data.get("origin")) or LESSON_LEARNED_ORIGIN,
        date=pick_str(data.get("date")) or None,
        parseable=parseable if isinstance(parseable, bool) else True,
        confidence=confidence if confidence in {"low", "medium", "high"} else "medium",
        summary=pick_str(data.get("summary")),
        what_happened=as_str_list(lookup(data, "what_happened")),
        what_went_wrong=as_str_list(lookup(data, "what_went_wrong")),
        contributing_factors=as_str_list(lookup(data, "contributing_factors")),
        key_controls=LessonControls(
            engineering=as_str_list(controls.get("engineering")),
            administrative=as_str_list(controls.get("administrative")),
            ppe=as_str_list(controls.get("ppe")),
        ),
        verification_points=as_str_list(lookup(data, "verification_points")),
        stop_work_triggers=as_str_list(lookup(data, "stop_work_triggers")),
        talk_points=as_str_list(lookup(data, "talk_points")),
    )


def lesson_to_procedure_brief(lesson: LessonLearned, code: str = "", origin: str = "") -> ProcedureBrief:
    """Reshape a structured lesson learned into the brief shape procedures use.

    Permits are never inferred from a lesson. Verification points become the
    mandatory steps, followed by the first events of what happened; what went
    wrong and contributing factors become restrictions.
    """
    steps = merge_unique(
        lesson.verification_points,
        lesson.what_happened[:LESSON_WHAT_HAPPENED_LIMIT],
    )[:LESSON_STEPS_LIMIT]
    restrictions = merge_unique(
        lesson.what_went_wrong,
        [f"Factor contribuyente: {factor}" for factor in lesson.contributing_factors],
    )[:LESSON_RESTRICTIONS_LIMIT]

    controls = ControlSet(
        **{
            level: merge_unique(getattr(lesson.key_controls, level))[:limit]
            for level, limit in LESSON_CONTROL_LIMITS.items()
        }
    )
    return ProcedureBrief(
        title=lesson.title.strip() or LESSON_LEARNED_ORIGIN,
        code=code.strip(),
        origin=origin.strip() or lesson.origin.strip() or LESSON_LEARNED_ORIGIN,
        parseable=lesson.parseable,
        brief=Brief(
            scope=lesson.summary.strip(),
            mandatory_permits=[],
            critical_controls=controls,
            stop_work=merge_unique(lesson.stop_work_triggers)[:LESSON_STOP_WORK_LIMIT],
            mandatory_steps=steps,
            restrictions=restrictions,
        ),
    )
