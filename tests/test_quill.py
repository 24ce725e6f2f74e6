import asyncio
import dataclasses
import logging

import pytest

from conftest import build_quill
from quill.errors import ConfigurationError, ExternalServiceError, ValidationError
from quill.models import ContentType, Document


def note(doc_id, body, owner="U", title="", content_type=ContentType.NOTE):
    return Document(id=doc_id, owner_id=owner, content_type=content_type, body=body, title=title)


def run(coro):
    return asyncio.run(coro)


def test_index_document_writes_both_indexes(quill, provider):
    run(quill.index_document(note("n1", "Quarterly roadmap planning", title="Roadmap")))

    assert quill.keyword_index.get_document("n1").title == "Roadmap"
    assert quill.vector_index.ids_matching({"document_id": "n1"}) == ["n1#0"]
    _, metadata = quill.vector_index.get("n1#0")
    assert metadata["owner_id"] == "U"
    assert metadata["content_type"] == "note"
    assert provider.calls == 1


def test_long_body_is_chunked_and_embedded_in_one_call(quill, provider):
    body = " ".join(f"sentence {i} about the machine learning project." for i in range(200))
    run(quill.index_document(note("long", body)))

    chunk_ids = quill.vector_index.ids_matching({"document_id": "long"})
    assert len(chunk_ids) > 1
    assert provider.calls == 1
    assert quill.keyword_index.count() == 1


def test_reindexing_a_shorter_body_drops_stale_chunks(quill):
    long_body = " ".join(f"paragraph {i} on travel plans and hotel bookings." for i in range(200))
    run(quill.index_document(note("trip", long_body)))
    assert len(quill.vector_index.ids_matching({"document_id": "trip"})) > 1

    run(quill.index_document(note("trip", "Short trip note")))

    assert quill.vector_index.ids_matching({"document_id": "trip"}) == ["trip#0"]
    assert quill.get_document("trip").body == "Short trip note"


def test_remove_document_clears_both_indexes(quill):
    run(quill.index_document(note("n1", "lunch menu")))

    assert run(quill.remove_document("n1")) is True
    assert quill.get_document("n1") is None
    assert len(quill.vector_index) == 0
    assert run(quill.remove_document("n1")) is False


def test_empty_body_is_rejected(quill, provider):
    with pytest.raises(ValidationError):
        run(quill.index_document(note("blank", "   ")))
    assert provider.calls == 0


def test_disabled_engine_refuses_writes(config, provider):
    engine = build_quill(dataclasses.replace(config, enabled=False), provider)
    try:
        with pytest.raises(ConfigurationError):
            run(engine.index_document(note("n1", "anything")))
    finally:
        engine.close()


def test_keyword_failure_is_logged_and_queued_for_repair(quill, monkeypatch, caplog):
    def broken(doc):
        raise RuntimeError("database is locked")

    original = quill.keyword_index.index_document
    monkeypatch.setattr(quill.keyword_index, "index_document", broken)

    with caplog.at_level(logging.ERROR, logger="quill.quill"):
        run(quill.index_document(note("n1", "meeting notes")))

    assert "n1" in quill.pending_repairs
    assert quill.vector_index.ids_matching({"document_id": "n1"}) == ["n1#0"]
    assert any("divergence" in r.getMessage() and "keyword" in r.getMessage() for r in caplog.records)

    monkeypatch.setattr(quill.keyword_index, "index_document", original)
    outcome = run(quill.repair())

    assert outcome == {"repaired": 1, "failed": 0, "pending": 0}
    assert quill.get_document("n1") is not None


def test_vector_failure_is_queued_for_repair(quill, provider):
    provider.fail_with = RuntimeError("embedding outage")
    run(quill.index_document(note("n1", "standup call notes")))

    assert "n1" in quill.pending_repairs
    assert quill.get_document("n1") is not None
    assert len(quill.vector_index) == 0

    # Still failing: stays queued
    assert run(quill.repair())["pending"] == 1

    provider.fail_with = None
    assert run(quill.repair()) == {"repaired": 1, "failed": 0, "pending": 0}
    assert quill.vector_index.ids_matching({"document_id": "n1"}) == ["n1#0"]


def test_failure_in_both_indexes_raises(quill, provider, monkeypatch):
    provider.fail_with = RuntimeError("embedding outage")

    def broken(doc):
        raise RuntimeError("disk full")

    monkeypatch.setattr(quill.keyword_index, "index_document", broken)
    with pytest.raises(ExternalServiceError):
        run(quill.index_document(note("n1", "grocery list")))
    assert "n1" not in quill.pending_repairs


def test_dimension_mismatch_is_not_treated_as_divergence(config, provider):
    engine = build_quill(dataclasses.replace(config, embedding_dim=config.embedding_dim + 1), provider)
    try:
        with pytest.raises(ConfigurationError):
            run(engine.index_document(note("n1", "machine learning")))
    finally:
        engine.close()


def test_writes_to_the_same_document_are_serialized(quill, monkeypatch):
    active = []
    overlaps = []
    original = quill._write_vectors

    def tracking(doc, chunks):
        active.append(doc.id)
        if active.count(doc.id) > 1:
            overlaps.append(doc.id)
        try:
            return original(doc, chunks)
        finally:
            active.remove(doc.id)

    monkeypatch.setattr(quill, "_write_vectors", tracking)

    async def go():
        await asyncio.gather(*(
            quill.index_document(note("same", f"version {i} of the project plan"))
            for i in range(5)
        ))

    run(go())
    assert overlaps == []
    assert quill.keyword_index.count() == 1
    assert len(quill.vector_index.ids_matching({"document_id": "same"})) == 1


def test_stats_report_both_indexes(quill):
    run(quill.index_document(note("n1", "flight to Lisbon")))
    stats = quill.get_stats()
    assert stats["enabled"] is True
    assert stats["documents"] == 1
    assert stats["vectors"] == 1
    assert stats["embedding_dim"] == 8
    assert stats["embedding_calls"] == 1
    assert stats["pending_repairs"] == 0
    assert stats["jobs"] == 0


def test_vectors_survive_a_restart(config, provider):
    engine = build_quill(config, provider)
    run(engine.index_document(note("n1", "neural network training plan")))
    engine.close()

    reopened = build_quill(config, provider)
    try:
        results = run(reopened.search("U", "neural training"))
        assert [r.document.id for r in results] == ["n1"]
    finally:
        reopened.close()
