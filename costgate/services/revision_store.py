"""
Revision persistence.

One record per revision keyed by revision id. Terminal revisions stay in
the store (archived) so their final state and last error remain queryable.
"""
from typing import Dict, Any, List, Optional, Protocol
from pathlib import Path
import copy
import json
import logging
import sqlite3
import threading

from costgate.domain.pipeline_models import RevisionRecord, RevisionState


logger = logging.getLogger(__name__)


class RevisionStore(Protocol):
    def get(self, revision_id: str) -> Optional[RevisionRecord]:
        ...

    def save(self, record: RevisionRecord) -> None:
        ...

    def list(self, state: Optional[RevisionState] = None) -> List[RevisionRecord]:
        ...


class InMemoryRevisionStore:
    """
    Process-local store. Records are copied on the way in and out so
    callers never share a mutable record with the store.
    """

    def __init__(self):
        self._records: Dict[str, RevisionRecord] = {}

    def get(self, revision_id: str) -> Optional[RevisionRecord]:
        record = self._records.get(revision_id)
        return copy.deepcopy(record) if record else None

    def save(self, record: RevisionRecord) -> None:
        self._records[record.revision_id] = copy.deepcopy(record)

    def list(self, state: Optional[RevisionState] = None) -> List[RevisionRecord]:
        records = [
            copy.deepcopy(record) for record in self._records.values()
            if state is None or record.state == state
        ]
        return sorted(records, key=lambda record: record.created_at)


class SQLiteRevisionStore:
    """
    Durable store; survives process restarts.

    Calls are synchronous and run on the event loop thread. Each one is a
    short indexed read or a single-row upsert on a local WAL database, so it
    is not handed to a worker thread. The lock serializes access to the
    shared connection.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        self._conn = self._init_db()

    def _init_db(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=10, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS revisions (
                revision_id TEXT PRIMARY KEY,
                state TEXT NOT NULL,
                document TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_revisions_state ON revisions(state)")
        conn.commit()
        return conn

    def _decode(self, document: str) -> RevisionRecord:
        data: Dict[str, Any] = json.loads(document)
        return RevisionRecord.from_dict(data)

    def get(self, revision_id: str) -> Optional[RevisionRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT document FROM revisions WHERE revision_id = ?", (revision_id,)
            ).fetchone()
        return self._decode(row[0]) if row else None

    def save(self, record: RevisionRecord) -> None:
        document = json.dumps(record.to_dict())
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO revisions (revision_id, state, document, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(revision_id) DO UPDATE SET
                    state = excluded.state,
                    document = excluded.document,
                    updated_at = excluded.updated_at
                """,
                (
                    record.revision_id,
                    record.state.value,
                    document,
                    record.created_at.isoformat(),
                    record.updated_at.isoformat(),
                ),
            )
            self._conn.commit()

    def list(self, state: Optional[RevisionState] = None) -> List[RevisionRecord]:
        with self._lock:
            if state is None:
                rows = self._conn.execute(
                    "SELECT document FROM revisions ORDER BY created_at"
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT document FROM revisions WHERE state = ? ORDER BY created_at",
                    (state.value,),
                ).fetchall()
        return [self._decode(row[0]) for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
