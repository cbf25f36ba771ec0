from __future__ import annotations

import json
import logging
import re
import time
from typing import Any

from atsguard.coercion import as_dict, as_list
from atsguard.config import Settings
from atsguard.drafting import ATS_DRAFT_SHAPE

logger = logging.getLogger("atsguard.drafting")

RATE_LIMIT_ERROR_CODES = {"ThrottlingException", "TooManyRequestsException", "ServiceQuotaExceededException"}
_RATE_LIMIT_MARKERS = ("429", "too many requests", "rate exceeded", "throttl")


class DraftingRuntimeError(RuntimeError):
    """Raised when the drafting service cannot be invoked or returns unusable output."""


class DraftingResponseError(DraftingRuntimeError):
    """The drafting service answered, but not with a JSON object."""


class DraftingRateLimitError(DraftingRuntimeError):
    """The drafting service rejected the call with a throttling condition."""


def _error_code(exc: Exception) -> str:
    error = as_dict(as_dict(getattr(exc, "response", None)).get("Error"))
    return str(error.get("Code") or "")


def is_rate_limit_error(exc: Exception) -> bool:
    if _error_code(exc) in RATE_LIMIT_ERROR_CODES:
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)


class BedrockDraftingOrchestrator:
    def __init__(self, settings: Settings, client: Any | None = None) -> None:
        self._settings = settings
        self._client = client or self._create_bedrock_client()

    def draft_ats(self, context: dict[str, object]) -> dict[str, object]:
        system_prompt = (
            "Eres un experto corporativo HSEQ/Seguridad de Procesos. "
            "Genera un ATS (Análisis de Trabajo Seguro) técnico, claro y auditable, en ESPAÑOL. "
            "Devuelve solo JSON estricto, sin markdown ni prosa."
        )
        minimums = context.get("minimums", {}) if isinstance(context.get("minimums"), dict) else {}
        user_prompt = (
            f"{ATS_DRAFT_SHAPE}\n\n"
            "Reglas:\n"
            "- Si stop_work_seed.auto_triggers no está vacío, stop_work.decision debe ser STOP o REVIEW_REQUIRED "
            "y stop_work.rationale debe explicarlos.\n"
            "- Usa los briefs de procedimientos y lecciones aprendidas para reforzar peligros, controles y pasos "
            "sin copiar texto completo. Jerarquía: ingeniería, administrativos, EPP.\n"
            "- No inventes normas, cláusulas ni permisos. Una recomendación sin norma citada lleva based_on=[] "
            "y verification=requires_verification.\n"
            f"- Incluye al menos {minimums.get('hazards', 3)} hazards y al menos {minimums.get('steps', 4)} steps.\n\n"
            f"Contexto:\n{json.dumps(context, ensure_ascii=False)}"
        )
        return self._invoke_json_model(
            self._settings.bedrock_model_id,
            system_prompt,
            user_prompt,
            max_tokens=self._settings.drafting_max_tokens,
        )

    def enrich_checklist(self, base: dict[str, object], context: dict[str, object]) -> dict[str, object]:
        system_prompt = (
            "Eres un especialista HSEQ corporativo. Devuelve solo JSON estricto con la misma estructura recibida, "
            "sin campos nuevos."
        )
        user_prompt = (
            "A partir del checklist (Formato Estrella):\n"
            "1) Mejora y concreta las actions para que sean verificables y auditables.\n"
            "2) Mantén la jerarquía: engineering, administrative, ppe.\n"
            "3) No inventes procedimientos ni permisos específicos. Si faltan datos, indícalo como "
            "\"requiere verificación\".\n"
            "- Si hay critical_fails, decision_hint debe permanecer STOP.\n"
            "- Si no hay critical_fails pero hay missing, decision_hint debe ser REVIEW_REQUIRED.\n\n"
            f"Entrada:\n{json.dumps({'base': base, 'context': context}, ensure_ascii=False)}"
        )
        return self._invoke_json_model(
            self._settings.bedrock_lite_model_id,
            system_prompt,
            user_prompt,
            max_tokens=self._settings.checklist_max_tokens,
        )

    def _create_bedrock_client(self) -> Any:
        try:
            import boto3  # type: ignore
            from botocore.config import Config  # type: ignore
        except ImportError as exc:
            raise DraftingRuntimeError("boto3 is required for the Bedrock drafting runtime.") from exc

        # Failures are terminal for the request; botocore must not retry behind our back.
        config = Config(
            read_timeout=self._settings.drafting_timeout_seconds,
            connect_timeout=10,
            retries={"max_attempts": 1, "mode": "standard"},
        )
        try:
            return boto3.client("bedrock-runtime", region_name=self._settings.aws_region, config=config)
        except Exception as exc:
            raise DraftingRuntimeError(f"Unable to create the Bedrock runtime client: {exc}") from exc

    def _invoke_json_model(
        self,
        model_id: str,
        system_prompt: str,
        user_prompt: str,
        *,
        max_tokens: int,
    ) -> dict[str, object]:
        if not model_id:
            raise DraftingRuntimeError("Bedrock model ID is not configured.")

        started = time.perf_counter()
        try:
            response = self._client.converse(
                modelId=model_id,
                system=[{"text": system_prompt}],
                messages=[{"role": "user", "content": [{"text": user_prompt}]}],
                inferenceConfig={
                    "temperature": self._settings.agent_temperature,
                    "maxTokens": max_tokens,
                },
            )
        except Exception as exc:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            error_text = str(exc)
            if is_rate_limit_error(exc):
                logger.warning(
                    "drafting_rate_limited",
                    extra={
                        "event": "drafting_rate_limited",
                        "model_id": model_id,
                        "duration_ms": duration_ms,
                        "error": error_text,
                    },
                )
                raise DraftingRateLimitError(f"Bedrock throttled model '{model_id}': {exc}") from exc

            logger.warning(
                "drafting_invoke_failed",
                extra={
                    "event": "drafting_invoke_failed",
                    "model_id": model_id,
                    "duration_ms": duration_ms,
                    "error": error_text,
                },
            )
            if "model identifier is invalid" in error_text.lower():
                raise DraftingRuntimeError(
                    "Bedrock invocation failed: the configured model identifier is invalid.\n"
                    f"AWS_REGION={self._settings.aws_region}\n"
                    f"BEDROCK_MODEL_ID={self._settings.bedrock_model_id}\n"
                    f"BEDROCK_LITE_MODEL_ID={self._settings.bedrock_lite_model_id}"
                ) from exc
            raise DraftingRuntimeError(f"Bedrock invocation failed for model '{model_id}': {exc}") from exc

        text = self._extract_text(response)
        payload = self._parse_json_object(text)
        if not isinstance(payload, dict):
            raise DraftingResponseError("Drafting response must be a JSON object.")
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "drafting_invoke_completed",
            extra={
                "event": "drafting_invoke_completed",
                "model_id": model_id,
                "duration_ms": duration_ms,
                "system_prompt_chars": len(system_prompt),
                "user_prompt_chars": len(user_prompt),
                "response_chars": len(text),
            },
        )
        return payload

    @staticmethod
    def _extract_text(response: Any) -> str:
        if not isinstance(response, dict):
            raise DraftingResponseError("Drafting response had an unexpected shape.")
        message = as_dict(as_dict(response.get("output")).get("message"))
        outputs = as_list(message.get("content"))
        parts: list[str] = []
        for item in outputs:
            text = item.get("text") if isinstance(item, dict) else None
            if isinstance(text, str) and text.strip():
                parts.append(text)
        if not parts:
            raise DraftingResponseError("Drafting response did not include textual output.")
        return "\n".join(parts).strip()

    @staticmethod
    def _parse_json_object(raw: str) -> Any:
        candidate = raw.strip()
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            pass

        fenced = re.search(r"```(?:json)?\s*(.*?)\s*```", candidate, flags=re.IGNORECASE | re.DOTALL)
        if fenced:
            try:
                return json.loads(fenced.group(1))
            except json.JSONDecodeError:
                pass

        start = candidate.find("{")
        end = candidate.rfind("}")
        if start != -1 and end != -1 and end > start:
            try:
                return json.loads(candidate[start : end + 1])
            except json.JSONDecodeError as exc:
                raise DraftingResponseError("Drafting response contained malformed JSON content.") from exc

        raise DraftingResponseError("Drafting response was not valid JSON.")


def validate_bedrock_model_ids(settings: Settings) -> None:
    """Optionally validate configured Bedrock model IDs on startup.

    Only foundation model IDs (e.g. `amazon.nova-pro-v1:0`) are checked. Leave
    this disabled when using inference profiles.
    """

    if not settings.bedrock_validate_model_ids_on_startup:
        return

    try:
        import boto3  # type: ignore
    except ImportError as exc:
        raise DraftingRuntimeError("boto3 is required to validate Bedrock model IDs on startup.") from exc

    aws_region = settings.aws_region
    client = boto3.client("bedrock", region_name=aws_region)
    checks = (
        ("BEDROCK_MODEL_ID", settings.bedrock_model_id),
        ("BEDROCK_LITE_MODEL_ID", settings.bedrock_lite_model_id),
    )

    for env_name, model_id in checks:
        if not model_id:
            raise DraftingRuntimeError(f"{env_name} is not configured (AWS_REGION={aws_region}).")
        try:
            client.get_foundation_model(modelIdentifier=model_id)
        except Exception as exc:
            raise DraftingRuntimeError(
                f"Bedrock model ID validation failed for {env_name}='{model_id}' (AWS_REGION={aws_region}): {exc}."
            ) from exc
