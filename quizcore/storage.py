"""Concrete repository implementations backed by memory and SQLite."""
from __future__ import annotations

import copy
import json
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Set, Tuple, Union

from .repositories import DocumentStore, QuizSessionRecord, QuizSessionRepository, ReviewStateRepository


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value)!r} is not JSON serialisable")


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class InMemoryStore(DocumentStore, QuizSessionRepository, ReviewStateRepository):
    """Process-local storage guarded by a single lock.

    Documents are deep-copied on the way in and out so callers never share
    mutable state with the store. ``transact`` callbacks run under the lock
    and must not call back into the store.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._sessions: Dict[str, QuizSessionRecord] = {}
        self._answered: Dict[str, Dict[str, datetime]] = {}
        self._reviews: Dict[Tuple[str, str], dict] = {}

    # DocumentStore ------------------------------------------------------
    def get(self, owner_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._documents.get(owner_id)
            return copy.deepcopy(document) if document is not None else None

    def set(self, owner_id: str, fields: Dict[str, Any]) -> None:
        with self._lock:
            self._documents[owner_id] = copy.deepcopy(fields)

    def update(self, owner_id: str, fields: Dict[str, Any]) -> None:
        with self._lock:
            document = self._documents.setdefault(owner_id, {})
            document.update(copy.deepcopy(fields))

    def transact(
        self, owner_id: str, fn: Callable[[Dict[str, Any]], Dict[str, Any]]
    ) -> Dict[str, Any]:
        with self._lock:
            current = copy.deepcopy(self._documents.get(owner_id) or {})
            updated = fn(current)
            self._documents[owner_id] = copy.deepcopy(updated)
            return copy.deepcopy(updated)

    # QuizSessionRepository ----------------------------------------------
    def save_session(self, record: QuizSessionRecord) -> None:
        with self._lock:
            self._sessions[record.session_id] = replace(record, answered_question_ids=set())
            self._answered.setdefault(record.session_id, {})

    def load_session(self, session_id: str) -> Optional[QuizSessionRecord]:
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                return None
            answered = set(self._answered.get(session_id, {}))
            return replace(record, questions=list(record.questions), answered_question_ids=answered)

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
            self._answered.pop(session_id, None)

    def claim_answer(self, session_id: str, question_id: str, answered_at: datetime) -> bool:
        with self._lock:
            ledger = self._answered.setdefault(session_id, {})
            if question_id in ledger:
                return False
            ledger[question_id] = answered_at
            return True

    def answered_question_ids(self, session_id: str) -> Set[str]:
        with self._lock:
            return set(self._answered.get(session_id, {}))

    def delete_expired(self, now: datetime) -> int:
        now = _utc(now)
        with self._lock:
            expired = [
                session_id
                for session_id, record in self._sessions.items()
                if _utc(record.expires_at) <= now
            ]
            for session_id in expired:
                self._sessions.pop(session_id, None)
                self._answered.pop(session_id, None)
        return len(expired)

    # ReviewStateRepository ----------------------------------------------
    def load_review(self, owner_id: str, card_id: str) -> Optional[dict]:
        with self._lock:
            state = self._reviews.get((owner_id, card_id))
            return dict(state) if state is not None else None

    def save_review(self, owner_id: str, card_id: str, state: dict) -> None:
        with self._lock:
            self._reviews[(owner_id, card_id)] = dict(state)

    def update_review(
        self, owner_id: str, card_id: str, fn: Callable[[Optional[dict]], dict]
    ) -> dict:
        with self._lock:
            current = self._reviews.get((owner_id, card_id))
            updated = dict(fn(dict(current) if current is not None else None))
            self._reviews[(owner_id, card_id)] = updated
            return dict(updated)

    def list_reviews(self, owner_id: str) -> Dict[str, dict]:
        with self._lock:
            return {
                card_id: dict(state)
                for (owner, card_id), state in self._reviews.items()
                if owner == owner_id
            }


class SqliteStore(DocumentStore, QuizSessionRepository, ReviewStateRepository):
    """Stores learner documents, quiz sessions and review state in SQLite."""

    def __init__(self, db_path: Union[str, Path]) -> None:
        self._db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._initialise_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _initialise_schema(self) -> None:
        with self._lock:
            cursor = self._conn.cursor()
            cursor.executescript(
                """
                CREATE TABLE IF NOT EXISTS learner_documents (
                    owner_id TEXT PRIMARY KEY,
                    document_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS quiz_sessions (
                    session_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS answered_questions (
                    session_id TEXT NOT NULL,
                    question_id TEXT NOT NULL,
                    answered_at TEXT NOT NULL,
                    PRIMARY KEY (session_id, question_id)
                );

                CREATE TABLE IF NOT EXISTS review_states (
                    owner_id TEXT NOT NULL,
                    card_id TEXT NOT NULL,
                    state_json TEXT NOT NULL,
                    PRIMARY KEY (owner_id, card_id)
                );
                """
            )
            self._conn.commit()

    # DocumentStore ------------------------------------------------------
    def _read_document(self, cursor: sqlite3.Cursor, owner_id: str) -> Optional[Dict[str, Any]]:
        row = cursor.execute(
            "SELECT document_json FROM learner_documents WHERE owner_id = ?",
            (owner_id,),
        ).fetchone()
        if not row:
            return None
        return json.loads(row["document_json"])

    def _write_document(self, cursor: sqlite3.Cursor, owner_id: str, document: Dict[str, Any]) -> None:
        cursor.execute(
            """
            INSERT OR REPLACE INTO learner_documents (owner_id, document_json)
            VALUES (?, ?)
            """,
            (owner_id, json.dumps(document, default=_json_default)),
        )

    def get(self, owner_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._read_document(self._conn.cursor(), owner_id)

    def set(self, owner_id: str, fields: Dict[str, Any]) -> None:
        with self._lock:
            self._write_document(self._conn.cursor(), owner_id, fields)
            self._conn.commit()

    def update(self, owner_id: str, fields: Dict[str, Any]) -> None:
        self.transact(owner_id, lambda current: {**current, **fields})

    def transact(
        self, owner_id: str, fn: Callable[[Dict[str, Any]], Dict[str, Any]]
    ) -> Dict[str, Any]:
        with self._lock:
            cursor = self._conn.cursor()
            try:
                current = self._read_document(cursor, owner_id) or {}
                updated = fn(current)
                self._write_document(cursor, owner_id, updated)
            except Exception:
                self._conn.rollback()
                raise
            self._conn.commit()
            # Round-trip so the caller gets the stored JSON shape.
            return json.loads(json.dumps(updated, default=_json_default))

    # QuizSessionRepository ----------------------------------------------
    def save_session(self, record: QuizSessionRecord) -> None:
        payload = json.dumps(record.to_dict(), default=_json_default)
        with self._lock:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                INSERT OR REPLACE INTO quiz_sessions (session_id, owner_id, payload_json, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (record.session_id, record.owner_id, payload, _utc(record.expires_at).isoformat()),
            )
            self._conn.commit()

    def load_session(self, session_id: str) -> Optional[QuizSessionRecord]:
        with self._lock:
            cursor = self._conn.cursor()
            row = cursor.execute(
                "SELECT payload_json FROM quiz_sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            if not row:
                return None
            answered = self._answered_ids(cursor, session_id)
        return QuizSessionRecord.from_dict(json.loads(row["payload_json"]), answered=answered)

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            cursor = self._conn.cursor()
            cursor.execute("DELETE FROM answered_questions WHERE session_id = ?", (session_id,))
            cursor.execute("DELETE FROM quiz_sessions WHERE session_id = ?", (session_id,))
            self._conn.commit()

    def claim_answer(self, session_id: str, question_id: str, answered_at: datetime) -> bool:
        with self._lock:
            cursor = self._conn.cursor()
            cursor.execute(
                """
                INSERT OR IGNORE INTO answered_questions (session_id, question_id, answered_at)
                VALUES (?, ?, ?)
                """,
                (session_id, question_id, _utc(answered_at).isoformat()),
            )
            claimed = cursor.rowcount == 1
            self._conn.commit()
        return claimed

    def _answered_ids(self, cursor: sqlite3.Cursor, session_id: str) -> Set[str]:
        rows = cursor.execute(
            "SELECT question_id FROM answered_questions WHERE session_id = ?",
            (session_id,),
        ).fetchall()
        return {row["question_id"] for row in rows}

    def answered_question_ids(self, session_id: str) -> Set[str]:
        with self._lock:
            return self._answered_ids(self._conn.cursor(), session_id)

    def delete_expired(self, now: datetime) -> int:
        cutoff = _utc(now).isoformat()
        with self._lock:
            cursor = self._conn.cursor()
            rows = cursor.execute(
                "SELECT session_id FROM quiz_sessions WHERE expires_at <= ?",
                (cutoff,),
            ).fetchall()
            expired = [row["session_id"] for row in rows]
            for session_id in expired:
                cursor.execute("DELETE FROM answered_questions WHERE session_id = ?", (session_id,))
                cursor.execute("DELETE FROM quiz_sessions WHERE session_id = ?", (session_id,))
            self._conn.commit()
        return len(expired)

    # ReviewStateRepository ----------------------------------------------
    def _read_review(self, cursor: sqlite3.Cursor, owner_id: str, card_id: str) -> Optional[dict]:
        row = cursor.execute(
            "SELECT state_json FROM review_states WHERE owner_id = ? AND card_id = ?",
            (owner_id, card_id),
        ).fetchone()
        if not row:
            return None
        return json.loads(row["state_json"])

    def _write_review(self, cursor: sqlite3.Cursor, owner_id: str, card_id: str, state: dict) -> None:
        cursor.execute(
            """
            INSERT OR REPLACE INTO review_states (owner_id, card_id, state_json)
            VALUES (?, ?, ?)
            """,
            (owner_id, card_id, json.dumps(state, default=_json_default)),
        )

    def load_review(self, owner_id: str, card_id: str) -> Optional[dict]:
        with self._lock:
            return self._read_review(self._conn.cursor(), owner_id, card_id)

    def save_review(self, owner_id: str, card_id: str, state: dict) -> None:
        with self._lock:
            self._write_review(self._conn.cursor(), owner_id, card_id, state)
            self._conn.commit()

    def update_review(
        self, owner_id: str, card_id: str, fn: Callable[[Optional[dict]], dict]
    ) -> dict:
        with self._lock:
            cursor = self._conn.cursor()
            try:
                updated = fn(self._read_review(cursor, owner_id, card_id))
                self._write_review(cursor, owner_id, card_id, updated)
            except Exception:
                self._conn.rollback()
                raise
            self._conn.commit()
            return json.loads(json.dumps(updated, default=_json_default))

    def list_reviews(self, owner_id: str) -> Dict[str, dict]:
        with self._lock:
            cursor = self._conn.cursor()
            rows = cursor.execute(
                "SELECT card_id, state_json FROM review_states WHERE owner_id = ?",
                (owner_id,),
            ).fetchall()
        return {row["card_id"]: json.loads(row["state_json"]) for row in rows}


__all__ = ["InMemoryStore", "SqliteStore"]
