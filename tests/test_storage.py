"""Tests for the memory and SQLite repositories."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from quizcore.repositories import QuizSessionRecord
from quizcore.storage import SqliteStore

from conftest import make_multiple_question, make_question


NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def session_record(session_id: str = "quiz_1", expires_in: timedelta = timedelta(hours=1)) -> QuizSessionRecord:
    return QuizSessionRecord(
        session_id=session_id,
        owner_id="alice",
        questions=[make_question(id="q1"), make_multiple_question(id="q2")],
        created_at=NOW,
        expires_at=NOW + expires_in,
    )


def test_documents_update_and_transact(store):
    assert store.get("alice") is None

    store.update("alice", {"a": 1})
    store.update("alice", {"b": [1, 2]})
    assert store.get("alice") == {"a": 1, "b": [1, 2]}

    result = store.transact("alice", lambda doc: {**doc, "a": doc["a"] + 1})
    assert result["a"] == 2
    assert store.get("alice")["a"] == 2

    store.set("alice", {"c": True})
    assert store.get("alice") == {"c": True}


def test_returned_documents_are_copies(store):
    store.set("alice", {"items": [1]})

    store.get("alice")["items"].append(2)

    assert store.get("alice") == {"items": [1]}


def test_failed_transaction_leaves_document_unchanged(store):
    store.set("alice", {"count": 1})

    def explode(document):
        document["count"] = 99
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        store.transact("alice", explode)

    assert store.get("alice") == {"count": 1}


def test_session_round_trip_keeps_answer_key(store):
    store.save_session(session_record())

    loaded = store.load_session("quiz_1")

    assert loaded.owner_id == "alice"
    assert loaded.find_question("q2").correct_answer == [0, 1]
    assert loaded.find_question("missing") is None
    assert loaded.expires_at == NOW + timedelta(hours=1)
    assert loaded.answered_question_ids == set()
    assert store.load_session("unknown") is None


def test_claim_answer_succeeds_once(store):
    store.save_session(session_record())

    assert store.claim_answer("quiz_1", "q1", NOW)
    assert not store.claim_answer("quiz_1", "q1", NOW)
    assert store.claim_answer("quiz_1", "q2", NOW)
    assert store.answered_question_ids("quiz_1") == {"q1", "q2"}
    assert store.load_session("quiz_1").answered_question_ids == {"q1", "q2"}


def test_delete_session_drops_ledger(store):
    store.save_session(session_record())
    store.claim_answer("quiz_1", "q1", NOW)

    store.delete_session("quiz_1")

    assert store.load_session("quiz_1") is None
    assert store.answered_question_ids("quiz_1") == set()


def test_delete_expired(store):
    store.save_session(session_record("quiz_old", timedelta(minutes=5)))
    store.save_session(session_record("quiz_new", timedelta(hours=5)))

    assert store.delete_expired(NOW + timedelta(hours=1)) == 1
    assert store.load_session("quiz_old") is None
    assert store.load_session("quiz_new") is not None


def test_review_states_are_scoped_by_owner(store):
    store.save_review("alice", "c1", {"state": 2})
    store.save_review("bob", "c1", {"state": 1})

    assert store.load_review("alice", "c1") == {"state": 2}
    assert store.load_review("alice", "c2") is None
    assert store.list_reviews("bob") == {"c1": {"state": 1}}


def test_update_review_reads_current_state(store):
    seen = []

    def bump(current):
        seen.append(current)
        return {"reps": (current or {}).get("reps", 0) + 1}

    assert store.update_review("alice", "c1", bump) == {"reps": 1}
    assert store.update_review("alice", "c1", bump) == {"reps": 2}
    assert seen == [None, {"reps": 1}]
    assert store.load_review("alice", "c1") == {"reps": 2}


def test_failed_update_review_keeps_prior_state(store):
    store.save_review("alice", "c1", {"reps": 3})

    def explode(current):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        store.update_review("alice", "c1", explode)
    assert store.load_review("alice", "c1") == {"reps": 3}


def test_sqlite_store_persists_across_connections(tmp_path):
    path = tmp_path / "persist.db"
    first = SqliteStore(path)
    first.update("alice", {"ability": {"theta": 0.4}})
    first.save_session(session_record())
    first.claim_answer("quiz_1", "q1", NOW)
    first.close()

    second = SqliteStore(path)
    try:
        assert second.get("alice") == {"ability": {"theta": 0.4}}
        assert second.answered_question_ids("quiz_1") == {"q1"}
        assert not second.claim_answer("quiz_1", "q1", NOW)
    finally:
        second.close()
