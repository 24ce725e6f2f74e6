import dataclasses
import threading
import time

import pytest
from fastapi.testclient import TestClient

from conftest import FakeEmbeddingProvider, build_quill
from quill.api import create_app

HEADERS = {"X-User-ID": "U"}

NOTES_MD = b"""# Kickoff
Machine learning project kickoff with the data team.

## Budget
GPU budget for model training.

## Travel
Flight and hotel for the offsite.
"""


@pytest.fixture
def client(quill):
    with TestClient(create_app(quill=quill)) as test_client:
        yield test_client


def put(client, doc_id, body, headers=HEADERS, **fields):
    payload = {"content_type": "note", "body": body, **fields}
    return client.put(f"/documents/{doc_id}", json=payload, headers=headers)


def wait_for_job(client, job_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = client.get(f"/uploads/{job_id}", headers=HEADERS).json()
        if status["status"] in ("completed", "failed"):
            return status
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} did not finish in {timeout}s")


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "quill", "search_enabled": True}


def test_search_returns_fused_results(client):
    assert put(client, "ml", "machine learning notes").json()["indexed"] is True
    put(client, "lunch", "lunch menu for today")

    response = client.post("/search", json={"query": "ML project"}, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["query"] == "ML project"
    assert body["count"] == len(body["results"]) >= 1
    top = body["results"][0]
    assert top["document"]["id"] == "ml"
    assert top["match_type"] in ("vector", "hybrid")


def test_search_is_scoped_to_the_caller(client):
    put(client, "mine", "hotel booking for the trip")
    put(client, "theirs", "hotel booking for the trip", headers={"X-User-ID": "someone-else"})

    results = client.post("/search", json={"query": "hotel"}, headers=HEADERS).json()["results"]
    assert [r["document"]["id"] for r in results] == ["mine"]


def test_missing_user_header_is_unauthorized(client):
    response = client.post("/search", json={"query": "anything"})
    assert response.status_code == 401


def test_invalid_search_is_a_bad_request(client):
    response = client.post("/search", json={"query": "   "}, headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["error"]["kind"] == "validation_error"

    response = client.post("/search", json={"query": "x", "vector_weight": 1.5}, headers=HEADERS)
    assert response.status_code == 400


def test_malformed_body_is_a_bad_request(client):
    response = client.post("/search", json={"limit": 3}, headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["error"]["kind"] == "validation_error"
    assert "query" in response.json()["error"]["message"]


def test_ask_returns_answer_and_tagged_sources(client):
    put(client, "ml", "machine learning notes", title="ML")
    response = client.post("/ask", json={"question": "What did I write about machine learning?"}, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["answer"] == "Based on [1], yes."
    kinds = [s["kind"] for s in body["sources"]]
    assert kinds == ["document", "citation"]
    assert body["sources"][0]["payload"]["id"] == "ml"


def test_upload_runs_in_the_background(config, generator):
    gate = threading.Event()
    engine = build_quill(config, FakeEmbeddingProvider(gate=gate), generator)
    try:
        with TestClient(create_app(quill=engine)) as client:
            response = client.post(
                "/uploads",
                files={"file": ("notes.md", NOTES_MD, "text/markdown")},
                headers=HEADERS,
            )
            assert response.status_code == 202
            accepted = response.json()
            assert accepted["status"] == "pending"
            assert accepted["file_type"] == "md"
            assert accepted["total_items"] == 3

            first = client.get(f"/uploads/{accepted['job_id']}", headers=HEADERS).json()
            assert first["status"] in ("pending", "processing")
            assert first["processed_items"] < 3

            gate.set()
            final = wait_for_job(client, accepted["job_id"])

            assert final["status"] == "completed"
            assert final["progress"] == 100
            assert final["processed_items"] == 3
            assert [r["title"] for r in final["results"]] == ["Kickoff", "Budget", "Travel"]
            assert final["memories"] == final["results"]
            assert {r["content_type"] for r in final["results"]} == {"memory"}

            hits = client.post("/search", json={"query": "flight hotel"}, headers=HEADERS).json()
            assert hits["results"][0]["document"]["title"] == "Travel"
    finally:
        gate.set()
        engine.close()


def test_upload_rejects_unsupported_types(client):
    response = client.post(
        "/uploads", files={"file": ("photo.png", b"\x89PNG", "image/png")}, headers=HEADERS,
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_type"


def test_upload_rejects_empty_files(client):
    response = client.post(
        "/uploads", files={"file": ("blank.txt", b"  \n ", "text/plain")}, headers=HEADERS,
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "empty_file"


def test_unknown_job_is_not_found(client):
    response = client.get("/uploads/does-not-exist", headers=HEADERS)
    assert response.status_code == 404
    assert response.json()["error"]["kind"] == "not_found"


def test_jobs_are_private_to_their_owner(client):
    accepted = client.post(
        "/uploads", files={"file": ("todo.txt", b"buy milk", "text/plain")}, headers=HEADERS,
    ).json()
    wait_for_job(client, accepted["job_id"])

    response = client.get(f"/uploads/{accepted['job_id']}", headers={"X-User-ID": "intruder"})
    assert response.status_code == 404


def test_document_update_and_delete(client):
    assert put(client, "t1", "call the plumber", content_type="task").status_code == 200

    response = put(client, "t1", "hijack", headers={"X-User-ID": "intruder"})
    assert response.status_code == 404
    assert client.delete("/documents/t1", headers={"X-User-ID": "intruder"}).status_code == 404

    response = client.delete("/documents/t1", headers=HEADERS)
    assert response.json() == {"deleted": True, "id": "t1"}
    results = client.post("/search", json={"query": "plumber"}, headers=HEADERS).json()["results"]
    assert results == []


def test_document_with_unknown_type_is_rejected(client):
    response = put(client, "x", "text", content_type="recipe")
    assert response.status_code == 400


def test_stats(client):
    put(client, "n1", "standup meeting notes")
    stats = client.get("/stats").json()
    assert stats["documents"] == 1
    assert stats["vectors"] == 1


def test_disabled_subsystem_is_service_unavailable(config, provider):
    engine = build_quill(dataclasses.replace(config, enabled=False), provider)
    try:
        with TestClient(create_app(quill=engine)) as client:
            response = client.post("/search", json={"query": "anything"}, headers=HEADERS)
            assert response.status_code == 503
            assert response.json()["error"]["kind"] == "configuration_error"
            assert "not configured" in response.json()["error"]["message"]
            assert client.get("/health").json()["search_enabled"] is False
    finally:
        engine.close()


def test_startup_failure_is_reported_per_request(config):
    broken = dataclasses.replace(config, embedding_provider="nonexistent")
    with TestClient(create_app(config=broken)) as client:
        response = client.post("/ask", json={"question": "anything?"}, headers=HEADERS)
        assert response.status_code == 503
        assert "not configured" in response.json()["error"]["message"]
        assert client.get("/health").json()["search_enabled"] is False
