import threading

import pytest

from quill.errors import ValidationError
from quill.models import ContentType, Document
from quill.storage import KeywordIndex, build_fts5_query


@pytest.fixture
def store(tmp_path):
    index = KeywordIndex(str(tmp_path / "keywords.db"))
    yield index
    index.close()


def add(store, doc_id, body, owner="u1", content_type="note", title="", **kwargs):
    store.index(doc_id, owner, content_type, title, body, **kwargs)


def test_build_fts5_query_quotes_tokens():
    assert build_fts5_query("ML project") == '"ML" OR "project"'
    assert build_fts5_query('NEAR(a b) "quoted" -x') == '"NEAR" OR "a" OR "b" OR "quoted" OR "x"'
    assert build_fts5_query("  ...  ") == ""


def test_stemmed_search_with_highlights(store):
    add(store, "d1", "I went running along the river this morning", title="Morning run")
    add(store, "d2", "Lunch menu for today")

    hits = store.search("runs", limit=5)

    assert [h.id for h in hits] == ["d1"]
    assert hits[0].score > 0
    assert any("<mark>" in hl for hl in hits[0].highlights)
    assert hits[0].metadata["document_id"] == "d1"


def test_more_matching_terms_rank_higher(store):
    add(store, "d1", "project kickoff notes")
    add(store, "d2", "machine learning project roadmap and project deadlines")
    hits = store.search("machine learning project", limit=5)
    assert [h.id for h in hits] == ["d2", "d1"]


def test_title_matches_weigh_more_than_body(store):
    add(store, "body", "some words about a budget review and other things entirely")
    add(store, "title", "some words about other things entirely", title="Budget")
    hits = store.search("budget", limit=5)
    assert hits[0].id == "title"


def test_owner_and_content_type_filters(store):
    add(store, "n1", "quarterly budget", owner="u1", content_type="note")
    add(store, "t1", "pay budget invoice", owner="u1", content_type="task")
    add(store, "x1", "budget for someone else", owner="u2", content_type="note")

    assert {h.id for h in store.search("budget", 10, {"owner_id": "u1"})} == {"n1", "t1"}
    assert [h.id for h in store.search("budget", 10, {"owner_id": "u1", "content_type": "task"})] == ["t1"]


def test_metadata_filters_use_json_fields(store):
    add(store, "m1", "budget notes", metadata={"job_id": "j1"})
    add(store, "m2", "budget notes", metadata={"job_id": "j2"})
    assert [h.id for h in store.search("budget", 10, {"job_id": "j2"})] == ["m2"]


def test_malformed_filters_are_rejected(store):
    with pytest.raises(ValidationError):
        store.search("budget", 10, {"owner_id; DROP TABLE documents": "x"})
    with pytest.raises(ValidationError):
        store.search("budget", 10, {"owner_id": None})


def test_reindex_replaces_content(store):
    add(store, "d1", "old text about gardening")
    add(store, "d1", "new text about sailing")

    assert store.count() == 1
    assert store.search("gardening", 5) == []
    assert [h.id for h in store.search("sailing", 5)] == ["d1"]
    assert store.get_document("d1").body == "new text about sailing"


def test_remove_is_idempotent(store):
    add(store, "d1", "remove me")
    assert store.remove("d1") is True
    assert store.remove("d1") is False
    assert store.search("remove", 5) == []


def test_document_round_trip(store):
    doc = Document(
        id="d1",
        owner_id="u1",
        content_type=ContentType.TASK,
        body="Call the dentist",
        title="Dentist",
        metadata={"priority": "high"},
        tags=["health", "calls"],
        category="personal",
    )
    store.index_document(doc)

    loaded = store.get_document("d1")
    assert loaded.content_type is ContentType.TASK
    assert loaded.metadata == {"priority": "high"}
    assert loaded.tags == ["health", "calls"]
    assert loaded.category == "personal"
    assert loaded.created_at == doc.created_at
    assert store.get_documents(["d1", "missing"]).keys() == {"d1"}


def test_multi_word_tags_round_trip(store):
    add(store, "d1", "weekly review", tags=["machine learning", "ai"])

    assert store.get_document("d1").tags == ["machine learning", "ai"]
    assert store.get_documents(["d1"])["d1"].tags == ["machine learning", "ai"]
    assert [h.id for h in store.search("learning", 5)] == ["d1"]


def test_tags_and_category_are_searchable(store):
    add(store, "d1", "nothing relevant here", tags=["fitness"], category="health")
    assert [h.id for h in store.search("fitness", 5)] == ["d1"]
    assert [h.id for h in store.search("health", 5)] == ["d1"]


def test_unknown_content_type_is_rejected(store):
    with pytest.raises(ValueError):
        add(store, "d1", "text", content_type="recipe")


def test_empty_query_returns_nothing(store):
    add(store, "d1", "anything")
    assert store.search("?!", 5) == []


def test_in_memory_database(tmp_path):
    store = KeywordIndex(":memory:")
    add(store, "d1", "in memory search works")
    assert [h.id for h in store.search("memory", 5)] == ["d1"]
    store.close()


def test_concurrent_writers_on_different_ids(store):
    def writer(prefix):
        for i in range(25):
            add(store, f"{prefix}-{i}", f"entry {i} from {prefix} about budgets")

    threads = [threading.Thread(target=writer, args=(p,)) for p in ("a", "b", "c")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.count() == 75
    assert len(store.search("budgets", 100)) == 75
