"""Environment snapshot, task flags and the deterministic stop-work trigger rules."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from atsguard.coercion import (
    as_dict,
    as_str_list,
    coerce_bool,
    coerce_float,
    fold_text,
    lookup,
    merge_unique,
    optional_str,
)


STOP_WORK_CRITERIA: tuple[str, ...] = (
    "Condiciones meteorológicas severas (tormenta eléctrica, vientos fuertes) que comprometan el control de la tarea.",
    "Visibilidad/iluminación insuficiente para operar de forma segura.",
    "Superficie/terreno inestable o resbaloso sin mitigación efectiva.",
    "Fallas de equipos críticos, ausencia de permisos/aislamientos, o falta de personal competente.",
    "Cualquier condición insegura que no pueda controlarse inmediatamente.",
)

HEAT_STRESS_TEMPERATURE_C = 35.0
HUMID_HEAT_HUMIDITY_PCT = 85.0
HUMID_HEAT_TEMPERATURE_C = 30.0

_WEATHER_ALIASES = {
    "storm": {"tormenta electrica", "tormenta", "electrical storm", "thunderstorm", "lightning storm"},
    "rain": {"lluvia", "rain", "rainy"},
    "strong_wind": {"viento fuerte", "strong wind", "high wind"},
    "fog": {"neblina", "niebla", "fog", "foggy"},
}
_STRONG_WIND = {"fuerte", "strong", "high"}
_LOW_VISIBILITY = {"baja", "low", "poor"}
_POOR_LIGHTING = {"deficiente", "poor", "insufficient", "insuficiente"}
_NIGHT = {"noche", "night"}
_SLIPPERY_TERRAIN = {
    "humedo/resbaloso",
    "humedo / resbaloso",
    "barro",
    "wet/slippery",
    "slippery",
    "wet",
    "mud",
    "muddy",
}


class EnvironmentSnapshot(BaseModel):
    """Work-site conditions. ``None`` means unknown, never "no problem"."""

    model_config = ConfigDict(frozen=True)

    time_of_day: str | None = None
    weather: str | None = None
    temperature_c: float | None = None
    humidity_pct: float | None = None
    wind: str | None = None
    lighting: str | None = None
    terrain: str | None = None
    visibility: str | None = None
    noise_level: str | None = None
    procedure_used_text: str | None = None
    controls_available: tuple[str, ...] = Field(default_factory=tuple)


class TaskFlags(BaseModel):
    model_config = ConfigDict(frozen=True)

    lifting: bool = False
    hot_work: bool = False
    work_at_height: bool = False

    @property
    def elevated_risk(self) -> bool:
        return self.lifting or self.hot_work or self.work_at_height


@dataclass(frozen=True)
class EnvironmentConditions:
    storm: bool
    rain: bool
    strong_wind: bool
    fog: bool
    low_visibility: bool
    poor_lighting: bool
    lighting_unspecified: bool
    night: bool
    slippery_terrain: bool
    temperature_c: float | None
    humidity_pct: float | None


def normalize_environment(raw: object) -> EnvironmentSnapshot:
    data = as_dict(raw)
    return EnvironmentSnapshot(
        time_of_day=optional_str(lookup(data, "time_of_day")),
        weather=optional_str(lookup(data, "weather")),
        temperature_c=coerce_float(lookup(data, "temperature_c")),
        humidity_pct=coerce_float(lookup(data, "humidity_pct")),
        wind=optional_str(lookup(data, "wind")),
        lighting=optional_str(lookup(data, "lighting")),
        terrain=optional_str(lookup(data, "terrain")),
        visibility=optional_str(lookup(data, "visibility")),
        noise_level=optional_str(lookup(data, "noise_level")),
        procedure_used_text=optional_str(lookup(data, "procedure_used_text")),
        controls_available=tuple(merge_unique(as_str_list(lookup(data, "controls_available")))),
    )


def normalize_task_flags(raw: object) -> TaskFlags:
    data = as_dict(raw)
    return TaskFlags(
        lifting=coerce_bool(lookup(data, "lifting")),
        hot_work=coerce_bool(lookup(data, "hot_work")),
        work_at_height=coerce_bool(lookup(data, "work_at_height")),
    )


def _matches(value: str | None, aliases: set[str]) -> bool:
    if value is None:
        return False
    return fold_text(value) in aliases


def classify_environment(environment: EnvironmentSnapshot) -> EnvironmentConditions:
    weather = environment.weather
    return EnvironmentConditions(
        storm=_matches(weather, _WEATHER_ALIASES["storm"]),
        rain=_matches(weather, _WEATHER_ALIASES["rain"]),
        strong_wind=_matches(environment.wind, _STRONG_WIND) or _matches(weather, _WEATHER_ALIASES["strong_wind"]),
        fog=_matches(weather, _WEATHER_ALIASES["fog"]),
        low_visibility=_matches(environment.visibility, _LOW_VISIBILITY),
        poor_lighting=_matches(environment.lighting, _POOR_LIGHTING),
        lighting_unspecified=environment.lighting is None,
        night=_matches(environment.time_of_day, _NIGHT),
        slippery_terrain=_matches(environment.terrain, _SLIPPERY_TERRAIN),
        temperature_c=environment.temperature_c,
        humidity_pct=environment.humidity_pct,
    )


StopWorkRule = Callable[[EnvironmentConditions, TaskFlags], "str | None"]


def _storm_rule(conditions: EnvironmentConditions, tasks: TaskFlags) -> str | None:
    if conditions.storm and tasks.elevated_risk:
        return "Tormenta eléctrica: suspender actividades expuestas (izaje/alturas/hot work) y asegurar el área."
    return None


def _rain_at_height_rule(conditions: EnvironmentConditions, tasks: TaskFlags) -> str | None:
    if conditions.rain and tasks.work_at_height:
        return (
            "Lluvia: evaluar superficie resbalosa, anclajes y visibilidad; "
            "si no hay condiciones seguras → STOP WORK en alturas."
        )
    return None


def _wind_lifting_rule(conditions: EnvironmentConditions, tasks: TaskFlags) -> str | None:
    if conditions.strong_wind and tasks.lifting:
        return "Viento fuerte: STOP WORK para izaje hasta que condiciones sean seguras (control de oscilación/carga)."
    return None


def _wind_height_rule(conditions: EnvironmentConditions, tasks: TaskFlags) -> str | None:
    if conditions.strong_wind and tasks.work_at_height:
        return "Viento fuerte: suspender trabajo en alturas si compromete estabilidad o control del trabajador."
    return None


def _low_visibility_rule(conditions: EnvironmentConditions, tasks: TaskFlags) -> str | None:
    if conditions.low_visibility:
        return (
            "Visibilidad baja: STOP WORK si no se puede garantizar control del área, "
            "señalización, comunicación y supervisión."
        )
    return None


def _poor_lighting_rule(conditions: EnvironmentConditions, tasks: TaskFlags) -> str | None:
    if conditions.poor_lighting:
        return "Iluminación deficiente: STOP WORK si no se puede corregir con iluminación artificial adecuada."
    return None


def _night_without_lighting_rule(conditions: EnvironmentConditions, tasks: TaskFlags) -> str | None:
    if conditions.night and conditions.lighting_unspecified:
        return "Trabajo nocturno sin especificar iluminación: STOP WORK hasta confirmar iluminación y controles."
    return None


def _slippery_terrain_rule(conditions: EnvironmentConditions, tasks: TaskFlags) -> str | None:
    if not conditions.slippery_terrain:
        return None
    if tasks.work_at_height or tasks.lifting:
        return (
            "Superficie resbalosa/barro: STOP WORK si compromete estabilidad de equipos/personas "
            "o zonas de exclusión."
        )
    return (
        "Superficie resbalosa/barro: reforzar control de caídas al mismo nivel y demarcación; "
        "detener si no hay control."
    )


def _heat_rule(conditions: EnvironmentConditions, tasks: TaskFlags) -> str | None:
    if conditions.temperature_c is not None and conditions.temperature_c >= HEAT_STRESS_TEMPERATURE_C:
        return (
            "Temperatura elevada (≥35°C): detener si no hay pausas, hidratación, sombra y monitoreo "
            "(estrés térmico)."
        )
    return None


def _humid_heat_rule(conditions: EnvironmentConditions, tasks: TaskFlags) -> str | None:
    if (
        conditions.humidity_pct is not None
        and conditions.humidity_pct >= HUMID_HEAT_HUMIDITY_PCT
        and conditions.temperature_c is not None
        and conditions.temperature_c >= HUMID_HEAT_TEMPERATURE_C
    ):
        return "Alta humedad + calor: riesgo de estrés térmico; detener si no hay control administrativo y vigilancia."
    return None


def _fog_lifting_rule(conditions: EnvironmentConditions, tasks: TaskFlags) -> str | None:
    if conditions.fog and tasks.lifting:
        return "Neblina: STOP WORK para izaje si la visibilidad compromete señalización, señalero y control de área."
    return None


# Declaration order is the output order.
STOP_WORK_RULES: tuple[StopWorkRule, ...] = (
    _storm_rule,
    _rain_at_height_rule,
    _wind_lifting_rule,
    _wind_height_rule,
    _low_visibility_rule,
    _poor_lighting_rule,
    _night_without_lighting_rule,
    _slippery_terrain_rule,
    _heat_rule,
    _humid_heat_rule,
    _fog_lifting_rule,
)


def compute_stop_work_triggers(environment: EnvironmentSnapshot, tasks: TaskFlags) -> list[str]:
    conditions = classify_environment(environment)
    triggers: list[str] = []
    for rule in STOP_WORK_RULES:
        message = rule(conditions, tasks)
        if message:
            triggers.append(message)
    return triggers
