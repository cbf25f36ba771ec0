from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


def _alias(snake: str, camel: str) -> AliasChoices:
    return AliasChoices(snake, camel)


class TaskFlagsRequest(BaseModel):
    """Bodies are coerced downstream, so shape problems never turn into 422s here."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    lifting: Any = None
    hot_work: Any = Field(default=None, validation_alias=_alias("hot_work", "hotWork"))
    work_at_height: Any = Field(default=None, validation_alias=_alias("work_at_height", "workAtHeight"))


class TriggerRequest(TaskFlagsRequest):
    environment: Any = None


class ChecklistEvaluateRequest(TaskFlagsRequest):
    estrella_format: Any = Field(default=None, validation_alias=_alias("estrella_format", "estrellaFormat"))


class ProcedureInfluenceRequest(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    procedure_refs: Any = Field(default=None, validation_alias=_alias("procedure_refs", "procedureRefs"))
    lesson_learned_brief: Any = Field(
        default=None,
        validation_alias=_alias("lesson_learned_brief", "lessonLearnedBrief"),
    )


class GenerateATSRequest(TaskFlagsRequest):
    job_title: Any = Field(default=None, validation_alias=_alias("job_title", "jobTitle"))
    company: Any = None
    location: Any = None
    date: Any = None
    shift: Any = None
    environment: Any = None
    estrella_format: Any = Field(default=None, validation_alias=_alias("estrella_format", "estrellaFormat"))
    procedure_refs: Any = Field(default=None, validation_alias=_alias("procedure_refs", "procedureRefs"))
    lesson_learned_brief: Any = Field(
        default=None,
        validation_alias=_alias("lesson_learned_brief", "lessonLearnedBrief"),
    )
    normative_refs: Any = Field(default=None, validation_alias=_alias("normative_refs", "normativeRefs"))


class LessonBriefRequest(BaseModel):
    lesson: dict[str, Any] = Field(default_factory=dict)
    code: str = Field(default="", max_length=120)
    origin: str = Field(default="", max_length=200)
