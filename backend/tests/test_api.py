"""API integration tests."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from ragforge.api import dependencies as deps
from ragforge.app import app
from ragforge.generation.gateway import GenerationGateway
from ragforge.jobs.runner import build_worker

SAMPLE = "The capital of France is Paris. The Eiffel Tower is 330 meters tall."


def _ollama_reply(*tokens: str) -> bytes:
    frames = [{"message": {"content": token}, "done": False} for token in tokens]
    frames.append({"message": {"content": ""}, "done": True, "prompt_eval_count": 30, "eval_count": len(tokens)})
    return b"".join(json.dumps(frame).encode() + b"\n" for frame in frames)


@pytest.fixture
def client() -> TestClient:
    deps._GATEWAY = GenerationGateway(
        deps.get_app_settings(),
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=_ollama_reply("Paris", "."))),
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def knowledge_base_id(client: TestClient) -> str:
    resp = client.post("/knowledge-bases", json={"name": "travel"})
    assert resp.status_code == 201
    return resp.json()["id"]


@pytest.fixture
def processed_document(client: TestClient, knowledge_base_id: str) -> dict:
    settings = deps.get_app_settings()
    settings.storage_root.mkdir(parents=True, exist_ok=True)
    (settings.storage_root / "france.txt").write_text(SAMPLE)
    resp = client.post(
        "/documents",
        json={"knowledge_base_id": knowledge_base_id, "source_uri": "france.txt", "file_name": "france.txt"},
    )
    assert resp.status_code == 202
    assert build_worker(settings, deps.get_database()).run_once() is True
    return resp.json()


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}


def test_knowledge_base_defaults(client: TestClient, knowledge_base_id: str) -> None:
    body = client.get(f"/knowledge-bases/{knowledge_base_id}").json()
    assert body["name"] == "travel"
    assert body["embedding_provider"] == "hashed"
    assert body["embedding_dim"] == 384
    stats = client.get(f"/knowledge-bases/{knowledge_base_id}/stats").json()
    assert stats["rag_ready"] is False
    assert stats["total_chunks"] == 0


def test_unknown_resources_are_404(client: TestClient) -> None:
    for path in ("/knowledge-bases/kb_nope", "/documents/doc_nope", "/jobs/job_nope"):
        resp = client.get(path)
        assert resp.status_code == 404
        assert resp.json()["error"] == "NotFoundError"


def test_document_submit_and_poll(client: TestClient, knowledge_base_id: str, processed_document: dict) -> None:
    document = processed_document["document"]
    assert document["status"] == "uploaded"

    polled = client.get(f"/documents/{document['id']}").json()
    assert polled["status"] == "processed"
    assert polled["chunk_count"] == 1
    assert polled["character_count"] == len(SAMPLE)

    job = client.get(f"/jobs/{processed_document['job_id']}").json()
    assert job["status"] == "completed"
    assert job["attempts"] == 1

    listed = client.get(f"/knowledge-bases/{knowledge_base_id}/documents").json()
    assert [item["id"] for item in listed] == [document["id"]]
    stats = client.get(f"/knowledge-bases/{knowledge_base_id}/stats").json()
    assert stats["rag_ready"] is True


def test_document_delete_and_reprocess(client: TestClient, knowledge_base_id: str, processed_document: dict) -> None:
    document_id = processed_document["document"]["id"]

    reprocessed = client.post(f"/documents/{document_id}/reprocess")
    assert reprocessed.status_code == 202
    assert reprocessed.json()["document"]["status"] == "uploaded"
    assert client.get(f"/knowledge-bases/{knowledge_base_id}/stats").json()["total_chunks"] == 0

    deleted = client.delete(f"/documents/{document_id}")
    assert deleted.json() == {"status": "ok", "deleted": 1}
    assert client.get(f"/documents/{document_id}").status_code == 404


def test_jobs_endpoints(client: TestClient) -> None:
    created = client.post("/jobs", json={"job_type": "reindex", "payload": {"scope": "all"}, "priority": 3})
    assert created.status_code == 201
    job = created.json()
    assert job["status"] == "pending"
    assert job["priority"] == 3

    cancelled = client.post(f"/jobs/{job['id']}/cancel").json()
    assert cancelled["status"] == "cancelled"

    stats = client.get("/jobs/stats").json()
    assert stats["cancelled"] == 1
    assert stats["total"] == 1

    cleaned = client.post("/jobs/cleanup", json={"retention_days": 0})
    assert cleaned.json() == {"deleted": 1}


def test_job_payload_validation(client: TestClient) -> None:
    resp = client.post("/jobs", json={"job_type": "file_processing", "payload": {}})
    assert resp.status_code == 422
    assert resp.json()["error"] == "PayloadValidationError"


def test_search_by_text(client: TestClient, knowledge_base_id: str, processed_document: dict) -> None:
    resp = client.post(
        "/search", json={"knowledge_base_id": knowledge_base_id, "query": "What is the capital of France?"}
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["results"][0]["chunk_index"] == 0
    assert body["results"][0]["document_id"] == processed_document["document"]["id"]
    assert body["confidence"]["bucket"] == "high"


def test_search_by_embedding_checks_dimension(client: TestClient, knowledge_base_id: str) -> None:
    resp = client.post("/search", json={"knowledge_base_id": knowledge_base_id, "query_embedding": [0.1, 0.2]})
    assert resp.status_code == 422
    assert resp.json()["error"] == "DimensionMismatch"


def test_search_requires_query(client: TestClient, knowledge_base_id: str) -> None:
    resp = client.post("/search", json={"knowledge_base_id": knowledge_base_id})
    assert resp.status_code == 422


def test_search_retrieves_off_the_event_loop(
    client: TestClient, knowledge_base_id: str, processed_document: dict, monkeypatch: pytest.MonkeyPatch
) -> None:
    orchestrator = deps.get_orchestrator()
    retrieve = orchestrator.retrieve
    seen: list[bool] = []

    def recording_retrieve(*args, **kwargs):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            seen.append(True)
        else:
            seen.append(False)
        return retrieve(*args, **kwargs)

    monkeypatch.setattr(orchestrator, "retrieve", recording_retrieve)
    resp = client.post("/search", json={"knowledge_base_id": knowledge_base_id, "query": "Eiffel Tower height"})

    assert resp.status_code == 200
    assert seen == [True]


def test_chat_streams_ndjson(client: TestClient, knowledge_base_id: str, processed_document: dict) -> None:
    session = client.post("/chat/sessions", json={"knowledge_base_id": knowledge_base_id}).json()

    resp = client.post(
        f"/chat/sessions/{session['id']}/messages", json={"content": "What is the capital of France?"}
    )

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("application/x-ndjson")
    envelopes = [json.loads(line) for line in resp.text.splitlines() if line]
    assert envelopes[:2] == [{"token": "Paris"}, {"token": "."}]
    assert envelopes[-1]["done"] is True
    assert envelopes[-1]["tokens_used"] == 32
    assert envelopes[-1]["confidence"]["bucket"] == "high"

    messages = client.get(f"/chat/sessions/{session['id']}/messages").json()
    assert [(m["role"], m["content"]) for m in messages] == [
        ("user", "What is the capital of France?"),
        ("assistant", "Paris."),
    ]

    regenerated = client.post(f"/chat/sessions/{session['id']}/regenerate")
    assert regenerated.status_code == 200
    assert len(client.get(f"/chat/sessions/{session['id']}/messages").json()) == 2


def test_busy_session_is_409(client: TestClient, knowledge_base_id: str) -> None:
    session = client.post("/chat/sessions", json={"knowledge_base_id": knowledge_base_id}).json()
    pending = deps.get_chat_service().send_message(session["id"], "first question")

    resp = client.post(f"/chat/sessions/{session['id']}/messages", json={"content": "second question"})

    assert resp.status_code == 409
    assert resp.json()["error"] == "SessionBusyError"
    assert deps.get_chat_service().is_busy(session["id"]) is True
    assert pending is not None


def test_metrics_exposes_request_counts(client: TestClient) -> None:
    client.get("/health")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "ragf_requests_total" in resp.text


def test_deep_health_reports_providers(client: TestClient) -> None:
    body = client.get("/health", params={"deep": "true"}).json()
    assert body["embedding"] == {"provider": "hashed", "model": body["embedding"]["model"], "healthy": True}
    assert body["generation"] == {"ollama": True, "openai": False, "openrouter": False}
    assert body["jobs"]["total"] == 0
    assert body["ok"] is True


def test_session_management_endpoints(client: TestClient, knowledge_base_id: str, processed_document: dict) -> None:
    session = client.post("/chat/sessions", json={"knowledge_base_id": knowledge_base_id}).json()
    client.post(f"/chat/sessions/{session['id']}/messages", json={"content": "What is the capital of France?"})

    listed = client.get("/chat/sessions", params={"knowledge_base_id": knowledge_base_id}).json()
    assert listed["limit"] == 50
    assert [(s["id"], s["message_count"]) for s in listed["sessions"]] == [(session["id"], 2)]

    renamed = client.patch(f"/chat/sessions/{session['id']}", json={"title": "Capitals"})
    assert renamed.status_code == 200
    assert renamed.json()["title"] == "Capitals"
    assert client.patch(f"/chat/sessions/{session['id']}", json={"title": ""}).status_code == 422

    exported = client.get(f"/chat/sessions/{session['id']}/export", params={"format": "md"})
    assert exported.status_code == 200
    assert exported.headers["content-type"].startswith("text/markdown")
    assert exported.headers["content-disposition"] == f'attachment; filename="conversation-{session["id"]}.md"'
    assert exported.text.startswith("# Capitals\n")

    rejected = client.get(f"/chat/sessions/{session['id']}/export", params={"format": "pdf"})
    assert rejected.status_code == 400
    assert rejected.json()["error"] == "ExportFormatError"

    deleted = client.delete(f"/chat/sessions/{session['id']}")
    assert deleted.json() == {"status": "ok", "deleted": 1}
    assert client.get(f"/chat/sessions/{session['id']}/messages").status_code == 404
    assert client.delete(f"/chat/sessions/{session['id']}").status_code == 404
