from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from atsguard.bedrock_runtime import (
    BedrockDraftingOrchestrator,
    DraftingRateLimitError,
    DraftingResponseError,
    DraftingRuntimeError,
)
from atsguard.checklist import LESSON_PENDING_MISSING
from atsguard.config import settings
from atsguard.main import app, create_app
from atsguard.reconciliation import CHECKLIST_TRIGGER_PREFIX

SUPERVISOR_YES = {
    "stages_clarity": "SI",
    "hazards_controlled": "SI",
    "isolation_confirmed": "SI",
    "comms_agreed": "SI",
    "tools_ok": "SI",
}


def _estrella(**overrides: object) -> dict[str, object]:
    form: dict[str, object] = {
        "elaboration_date": "2026-10-17",
        "execution_date": "2026-10-18",
        "incidents_reference": "No",
        "other_companies": "No",
        "danger_types": ["Mecánico"],
        "emergencies": ["Médica"],
        "safety_equipment": ["Casco", "Guantes"],
        "life_saving_rules": ["Izaje de cargas"],
        "authorizations": {"supervisor": {"checks": dict(SUPERVISOR_YES)}},
    }
    form.update(overrides)
    return form


def _request(**overrides: object) -> dict[str, object]:
    body: dict[str, object] = {
        "job_title": "Cambio de bomba con grúa",
        "company": "ACME",
        "location": "Estación 4",
        "date": "2026-10-18",
        "shift": "Día",
        "lifting": True,
        "hot_work": False,
        "work_at_height": False,
        "environment": {"weather": "Tormenta eléctrica", "lighting": "Buena"},
        "estrella_format": _estrella(),
        "procedure_refs": [
            {
                "title": "Izaje mecánico",
                "code": "PR-IZ-01",
                "brief": {"critical_controls": {"administrative": ["Plan de izaje aprobado."]}},
            }
        ],
    }
    body.update(overrides)
    return body


DRAFT = {
    "meta": {"title": "", "company": "", "location": "", "date": "", "shift": ""},
    "hazards": ["Caída de carga", "Golpeado por carga", "Atrapamiento"],
    "controls": {"engineering": [], "administrative": ["Zona de exclusión."], "ppe": []},
    "steps": [
        {"description": "Charla preoperacional.", "hazards": [], "controls": []},
        {"description": "Inspección de aparejos.", "hazards": [], "controls": []},
        {"description": "Izaje de la bomba.", "hazards": [], "controls": []},
        {"description": "Cierre y entrega del área.", "hazards": [], "controls": []},
    ],
    "stop_work": {"decision": "CONTINUE", "rationale": "Condiciones aceptables."},
    "recommendations": [],
}


class FakeDraftingOrchestrator:
    def __init__(
        self,
        draft: object = None,
        draft_error: Exception | None = None,
        enrich: object = None,
        enrich_error: Exception | None = None,
    ) -> None:
        self.draft = DRAFT if draft is None else draft
        self.draft_error = draft_error
        self.enrich = enrich
        self.enrich_error = enrich_error
        self.draft_contexts: list[dict[str, object]] = []
        self.enrich_calls = 0

    def draft_ats(self, context: dict[str, object]) -> dict[str, object]:
        self.draft_contexts.append(context)
        if self.draft_error is not None:
            raise self.draft_error
        return self.draft  # type: ignore[return-value]

    def enrich_checklist(self, base: dict[str, object], context: dict[str, object]) -> dict[str, object]:
        self.enrich_calls += 1
        if self.enrich_error is not None:
            raise self.enrich_error
        return base if self.enrich is None else self.enrich  # type: ignore[return-value]


@pytest.fixture()
def orchestrator(monkeypatch: pytest.MonkeyPatch) -> FakeDraftingOrchestrator:
    fake = FakeDraftingOrchestrator()
    monkeypatch.setattr("atsguard.main.get_drafting_orchestrator", lambda: fake)
    return fake


@pytest.fixture()
def restore_engine_settings() -> None:
    original = {
        "require_lesson_learned_on_incidents": settings.require_lesson_learned_on_incidents,
        "checklist_enrichment_enabled": settings.checklist_enrichment_enabled,
        "fallback_on_drafting_failure": settings.fallback_on_drafting_failure,
    }
    yield
    for key, value in original.items():
        setattr(settings, key, value)


def test_generate_ats_applies_guardrails_over_model_draft(orchestrator: FakeDraftingOrchestrator) -> None:
    with TestClient(app) as client:
        response = client.post("/ats/generate", json=_request())
    assert response.status_code == 200
    payload = response.json()
    ats = payload["ats"]

    assert ats["stop_work"]["decision"] == "REVIEW_REQUIRED"
    assert ats["stop_work"]["auto_triggers"][0].startswith("Tormenta eléctrica")
    assert ats["meta"]["title"] == "Cambio de bomba con grúa"
    assert "Plan de izaje aprobado." in ats["controls"]["administrative"]
    assert "Uso obligatorio de casco de seguridad." in ats["controls"]["ppe"]
    assert ats["procedure_refs_used"][0]["code"] == "PR-IZ-01"
    assert payload["reconciliation"]["guardrails"] == ["triggers_forced_review"]
    assert payload["drafting"]["mode"] == "drafted"

    context = orchestrator.draft_contexts[0]
    assert context["stop_work_seed"]["auto_triggers"] == ats["stop_work"]["auto_triggers"]
    assert context["tasks"]["lifting"] is True


def test_generate_ats_is_also_mounted_under_api_prefix(orchestrator: FakeDraftingOrchestrator) -> None:
    with TestClient(app) as client:
        response = client.post("/api/ats/generate", json=_request(environment={}))
    assert response.status_code == 200
    assert response.json()["ats"]["stop_work"]["decision"] == "CONTINUE"


def test_generate_ats_accepts_camel_case_body(orchestrator: FakeDraftingOrchestrator) -> None:
    body = {
        "jobTitle": "Soldadura de tubería",
        "hotWork": "si",
        "environment": {"temperatureC": 36},
        "estrellaFormat": _estrella(),
    }
    with TestClient(app) as client:
        response = client.post("/ats/generate", json=body)
    assert response.status_code == 200
    ats = response.json()["ats"]
    assert ats["meta"]["title"] == "Soldadura de tubería"
    assert ats["environment"]["temperature_c"] == 36
    assert ats["stop_work"]["decision"] == "REVIEW_REQUIRED"


def test_unparseable_draft_falls_back_to_seed_document(orchestrator: FakeDraftingOrchestrator) -> None:
    orchestrator.draft_error = DraftingResponseError("Drafting response was not valid JSON.")
    with TestClient(app) as client:
        response = client.post("/ats/generate", json=_request())
    assert response.status_code == 200
    payload = response.json()

    assert payload["drafting"]["mode"] == "seed_fallback"
    assert payload["reconciliation"]["draft_parseable"] is False
    assert payload["ats"]["stop_work"]["auto_triggers"][0].startswith("Tormenta eléctrica")
    assert payload["ats"]["stop_work"]["decision"] == "REVIEW_REQUIRED"
    assert len(payload["ats"]["hazards"]) >= 3
    assert len(payload["ats"]["steps"]) >= 4


def test_incomplete_draft_is_repaired_and_completed(orchestrator: FakeDraftingOrchestrator) -> None:
    orchestrator.draft = {"steps": "nothing useful", "stop_work": "STOP"}
    with TestClient(app) as client:
        response = client.post("/ats/generate", json=_request(environment={}))
    assert response.status_code == 200
    payload = response.json()
    assert payload["drafting"]["repaired"] is True
    assert len(payload["ats"]["steps"]) >= 4


def test_rate_limit_is_surfaced_as_429(orchestrator: FakeDraftingOrchestrator) -> None:
    orchestrator.draft_error = DraftingRateLimitError("Bedrock throttled model")
    with TestClient(app) as client:
        response = client.post("/ats/generate", json=_request())
    assert response.status_code == 429
    body = response.json()
    assert set(body) == {"error", "details"}
    assert "Reintenta" in body["details"]


def test_transport_failure_is_surfaced_as_502(orchestrator: FakeDraftingOrchestrator) -> None:
    orchestrator.draft_error = DraftingRuntimeError("Bedrock invocation failed: timeout")
    with TestClient(app) as client:
        response = client.post("/ats/generate", json=_request())
    assert response.status_code == 502
    assert response.json() == {
        "error": "Servicio de redacción no disponible",
        "details": "Bedrock invocation failed: timeout",
    }


def test_transport_failure_uses_seed_document_when_fallback_enabled(
    orchestrator: FakeDraftingOrchestrator,
    restore_engine_settings: None,
) -> None:
    settings.fallback_on_drafting_failure = True
    orchestrator.draft_error = DraftingRuntimeError("Bedrock invocation failed: timeout")
    with TestClient(create_app()) as client:
        response = client.post("/ats/generate", json=_request())
    assert response.status_code == 200
    payload = response.json()
    assert payload["drafting"]["mode"] == "seed_fallback"
    assert payload["drafting"]["error"] == "Bedrock invocation failed: timeout"


def test_incidents_without_lesson_learned_are_rejected(orchestrator: FakeDraftingOrchestrator) -> None:
    body = _request(estrella_format=_estrella(incidents_reference="Si"))
    with TestClient(app) as client:
        response = client.post("/ats/generate", json=body)
    assert response.status_code == 400
    assert response.json()["error"] == "Lección aprendida requerida"
    assert orchestrator.draft_contexts == []


def test_incidents_with_lesson_learned_add_lesson_triggers(orchestrator: FakeDraftingOrchestrator) -> None:
    body = _request(
        environment={},
        estrella_format=_estrella(incidents_reference="Si"),
        lesson_learned_brief={
            "title": "Caída de carga 2025",
            "brief": {
                "stop_work": ["Eslinga sin inspección."],
                "critical_controls": {"administrative": ["Inspeccionar eslingas antes de cada izaje."]},
            },
        },
    )
    with TestClient(app) as client:
        response = client.post("/ats/generate", json=body)
    assert response.status_code == 200
    ats = response.json()["ats"]
    assert ats["stop_work"]["auto_triggers"] == ["Lección aprendida: Eslinga sin inspección."]
    assert ats["stop_work"]["decision"] == "REVIEW_REQUIRED"
    assert [source["title"] for source in ats["procedure_refs_used"]] == ["Izaje mecánico", "Caída de carga 2025"]


def test_soft_lesson_mode_downgrades_to_review(
    orchestrator: FakeDraftingOrchestrator,
    restore_engine_settings: None,
) -> None:
    settings.require_lesson_learned_on_incidents = False
    body = _request(environment={}, estrella_format=_estrella(incidents_reference="Si"))
    with TestClient(create_app()) as client:
        response = client.post("/ats/generate", json=body)
    assert response.status_code == 200
    ats = response.json()["ats"]
    assert LESSON_PENDING_MISSING in ats["checklist_actions"]["missing"]
    assert ats["stop_work"]["decision"] == "REVIEW_REQUIRED"


def test_checklist_enrichment_failure_is_silent(orchestrator: FakeDraftingOrchestrator) -> None:
    orchestrator.enrich_error = DraftingRateLimitError("throttled")
    body = _request(estrella_format=_estrella(emergencies=[]))
    with TestClient(app) as client:
        response = client.post("/ats/generate", json=body)
    assert response.status_code == 200
    payload = response.json()
    assert payload["drafting"]["checklist_enrichment"] == "failed"
    assert payload["ats"]["checklist_actions"]["decision_hint"] == "REVIEW_REQUIRED"


def test_checklist_enrichment_cannot_drop_supervisor_failures(orchestrator: FakeDraftingOrchestrator) -> None:
    orchestrator.enrich = {
        "decision_hint": "CONTINUE",
        "missing": [],
        "critical_fails": [],
        "actions": [{"priority": "low", "category": "ppe", "action": "Revisar guantes."}],
    }
    checks = dict(SUPERVISOR_YES, tools_ok="NO")
    body = _request(environment={}, estrella_format=_estrella(authorizations={"supervisor": {"checks": checks}}))
    with TestClient(app) as client:
        response = client.post("/ats/generate", json=body)
    assert response.status_code == 200
    payload = response.json()
    ats = payload["ats"]

    assert payload["drafting"]["checklist_enrichment"] == "applied"
    assert ats["checklist_actions"]["critical_fails"] == ["Supervisor marcó NO: Herramientas OK."]
    assert ats["checklist_actions"]["decision_hint"] == "STOP"
    assert ats["stop_work"]["decision"] == "STOP"
    assert ats["stop_work"]["auto_triggers"] == [f"{CHECKLIST_TRIGGER_PREFIX}Supervisor marcó NO: Herramientas OK."]


def test_checklist_enrichment_is_skipped_without_signal(orchestrator: FakeDraftingOrchestrator) -> None:
    with TestClient(app) as client:
        response = client.post("/ats/generate", json=_request())
    assert response.status_code == 200
    assert response.json()["drafting"]["checklist_enrichment"] == "skipped"
    assert orchestrator.enrich_calls == 0


def test_bedrock_reply_without_message_falls_back_for_both_calls(monkeypatch: pytest.MonkeyPatch) -> None:
    class EmptyMessageClient:
        def __init__(self) -> None:
            self.models: list[str] = []

        def converse(self, **kwargs):
            self.models.append(kwargs["modelId"])
            return {"output": {"message": None}}

    bedrock = EmptyMessageClient()
    runner = BedrockDraftingOrchestrator(settings=settings, client=bedrock)
    monkeypatch.setattr("atsguard.main.get_drafting_orchestrator", lambda: runner)
    body = _request(estrella_format=_estrella(emergencies=[]))

    with TestClient(app) as client:
        response = client.post("/ats/generate", json=body)

    assert response.status_code == 200
    payload = response.json()
    assert bedrock.models == [settings.bedrock_lite_model_id, settings.bedrock_model_id]
    assert payload["drafting"]["checklist_enrichment"] == "failed"
    assert payload["drafting"]["mode"] == "seed_fallback"
    assert payload["ats"]["stop_work"]["auto_triggers"][0].startswith("Tormenta eléctrica")
    assert len(payload["ats"]["steps"]) >= 4


def test_bedrock_client_construction_failure_is_surfaced_as_502(monkeypatch: pytest.MonkeyPatch) -> None:
    from botocore.exceptions import NoRegionError

    def _no_region(*args, **kwargs):
        raise NoRegionError()

    monkeypatch.setattr("boto3.client", _no_region)
    monkeypatch.setattr("atsguard.main.get_drafting_orchestrator", lambda: BedrockDraftingOrchestrator(settings))

    with TestClient(app) as client:
        response = client.post("/ats/generate", json=_request())

    assert response.status_code == 502
    body = response.json()
    assert body["error"] == "Servicio de redacción no disponible"
    assert "Bedrock runtime client" in body["details"]

def test_unhandled_errors_return_generic_body_with_request_id(orchestrator: FakeDraftingOrchestrator) -> None:
    orchestrator.draft_error = ValueError("secret internals")
    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.post("/ats/generate", json=_request(), headers={"X-Request-ID": "req-500"})
    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "Error generando ATS"
    assert body["request_id"] == "req-500"
    assert "secret internals" not in response.text


def test_stop_work_triggers_endpoint() -> None:
    with TestClient(app) as client:
        response = client.post(
            "/ats/stop-work/triggers",
            json={"environment": {"temperature_c": 36, "humidity_pct": 90}, "lifting": False},
        )
    assert response.status_code == 200
    payload = response.json()
    assert len(payload["auto_triggers"]) == 2
    assert len(payload["criteria"]) == 5
    assert payload["environment"]["humidity_pct"] == 90


def test_checklist_evaluate_endpoint_is_deterministic() -> None:
    checks = {field: "NO" for field in SUPERVISOR_YES}
    body = {"estrella_format": _estrella(authorizations={"supervisor": {"checks": checks}}), "workAtHeight": True}
    with TestClient(app) as client:
        first = client.post("/ats/checklist/evaluate", json=body)
        second = client.post("/api/ats/checklist/evaluate", json=body)
    assert first.status_code == 200
    assert first.json() == second.json()
    payload = first.json()["checklist_actions"]
    assert payload["decision_hint"] == "STOP"
    assert len(payload["critical_fails"]) == 5


def test_procedure_influence_endpoint_keeps_provenance() -> None:
    shared = {"critical_controls": {"ppe": ["Careta facial."]}}
    body = {
        "procedure_refs": [
            {"title": "Esmerilado", "code": "PR-1", "brief": shared},
            {"title": "Corte", "code": "PR-2", "brief": shared},
            {"title": "Escaneado", "parseable": False},
        ]
    }
    with TestClient(app) as client:
        response = client.post("/ats/procedures/influence", json=body)
    assert response.status_code == 200
    influence = response.json()["procedure_influence"]
    assert [item["source"]["code"] for item in influence["derived_controls"]] == ["PR-1", "PR-2"]
    assert [item["title"] for item in influence["not_parseable"]] == ["Escaneado"]


def test_lesson_learned_brief_endpoint() -> None:
    body = {
        "lesson": {
            "title": "Quemadura por proyección",
            "summary": "Proyección de escoria durante corte.",
            "what_went_wrong": ["Sin careta."],
            "key_controls": {"ppe": ["Careta facial."]},
            "stop_work_triggers": ["Sin vigía de fuego."],
        },
        "code": "LA-3",
    }
    with TestClient(app) as client:
        response = client.post("/ats/lesson-learned/brief", json=body)
    assert response.status_code == 200
    brief = response.json()["lesson_learned_brief"]
    assert brief["code"] == "LA-3"
    assert brief["origin"] == "Lección aprendida"
    assert brief["brief"]["scope"] == "Proyección de escoria durante corte."
    assert brief["brief"]["stop_work"] == ["Sin vigía de fuego."]
    assert brief["brief"]["mandatory_permits"] == []
