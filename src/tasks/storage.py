"""
Storage capability: durable CRUD for tasks, content, accounts and devices.

Records are kept as JSON documents. Every update is optimistic: the caller
passes back the ``version`` it read, and a mismatch raises ConflictError.

Usage:
    store = SQLiteStore("orchestrator.db")   # or InMemoryStore()
    task = await store.create_task(task)
    task.progress = 50
    task = await store.update_task(task)
"""
import json
import sqlite3
from abc import ABC, abstractmethod
from threading import Lock
from typing import Iterable, Optional

from ..core.errors import ConflictError, NotFoundError
from .models import (
    Account,
    Content,
    Device,
    Task,
    TaskStatus,
    TaskType,
)


TASKS = "task"
CONTENTS = "content"
ACCOUNTS = "account"
DEVICES = "device"


class Store(ABC):
    """
    Base storage capability.

    Subclasses implement four document primitives; the typed API on top
    is shared.
    """

    @abstractmethod
    def _insert(self, kind: str, key: str, doc: dict) -> None:
        """Insert a new document. Raise ConflictError if the key exists."""

    @abstractmethod
    def _fetch(self, kind: str, key: str) -> Optional[dict]:
        """Return a document or None."""

    @abstractmethod
    def _replace(self, kind: str, key: str, doc: dict, expected_version: int) -> None:
        """Replace a document if its stored version matches."""

    @abstractmethod
    def _scan(self, kind: str) -> list[dict]:
        """Return every document of a kind, oldest first."""

    # --- generic helpers ---

    def _create(self, kind: str, key: str, doc: dict) -> dict:
        doc["version"] = 1
        self._insert(kind, key, doc)
        return doc

    def _get(self, kind: str, key: str) -> dict:
        doc = self._fetch(kind, key)
        if doc is None:
            raise NotFoundError(f"{kind.capitalize()} not found: {key}")
        return doc

    def _update(self, kind: str, key: str, doc: dict) -> dict:
        expected = doc.get("version", 0)
        doc["version"] = expected + 1
        self._replace(kind, key, doc, expected)
        return doc

    # --- tasks ---

    async def create_task(self, task: Task) -> Task:
        return Task.from_dict(self._create(TASKS, task.id, task.to_dict()))

    async def get_task(self, task_id: str) -> Task:
        return Task.from_dict(self._get(TASKS, task_id))

    async def update_task(self, task: Task) -> Task:
        return Task.from_dict(self._update(TASKS, task.id, task.to_dict()))

    async def list_tasks(
        self,
        statuses: Optional[Iterable[TaskStatus]] = None,
        task_type: Optional[TaskType] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        newest_first: bool = False,
        origin_device_id: Optional[str] = None,
    ) -> list[Task]:
        """
        List tasks with optional filters.

        Args:
            statuses: Only tasks in one of these statuses
            task_type: Only tasks of this type
            origin_device_id: Only tasks issued by this device
            limit: Maximum tasks to return
            offset: Tasks to skip (pagination)
            newest_first: Sort by created_at descending

        Returns:
            List of tasks
        """
        wanted = {TaskStatus(s).value for s in statuses} if statuses else None
        docs = [
            d for d in self._scan(TASKS)
            if (wanted is None or d["status"] in wanted)
            and (task_type is None or d["type"] == task_type.value)
            and (origin_device_id is None or d.get("origin_device_id") == origin_device_id)
        ]
        docs.sort(key=lambda d: d["created_at"], reverse=newest_first)
        end = offset + limit if limit is not None else None
        return [Task.from_dict(d) for d in docs[offset:end]]

    async def count_tasks_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for doc in self._scan(TASKS):
            counts[doc["status"]] += 1
        return counts

    # --- content ---

    async def create_content(self, content: Content) -> Content:
        return Content.from_dict(self._create(CONTENTS, content.id, content.to_dict()))

    async def get_content(self, content_id: str) -> Content:
        return Content.from_dict(self._get(CONTENTS, content_id))

    # --- accounts ---

    async def create_account(self, account: Account) -> Account:
        return Account.from_dict(self._create(ACCOUNTS, account.id, account.to_dict()))

    async def get_account(self, account_id: str) -> Account:
        return Account.from_dict(self._get(ACCOUNTS, account_id))

    async def update_account(self, account: Account) -> Account:
        return Account.from_dict(self._update(ACCOUNTS, account.id, account.to_dict()))

    # --- devices ---

    async def create_device(self, device: Device) -> Device:
        return Device.from_dict(
            self._create(DEVICES, device.device_id, device.to_dict())
        )

    async def get_device(self, device_id: str) -> Device:
        return Device.from_dict(self._get(DEVICES, device_id))

    async def update_device(self, device: Device) -> Device:
        return Device.from_dict(
            self._update(DEVICES, device.device_id, device.to_dict())
        )

    async def list_devices(self) -> list[Device]:
        return [Device.from_dict(d) for d in self._scan(DEVICES)]


class InMemoryStore(Store):
    """Dict-backed store. Documents are copied in and out."""

    def __init__(self):
        self._docs: dict[str, dict[str, str]] = {
            TASKS: {},
            CONTENTS: {},
            ACCOUNTS: {},
            DEVICES: {},
        }

    def _insert(self, kind: str, key: str, doc: dict) -> None:
        bucket = self._docs[kind]
        if key in bucket:
            raise ConflictError(f"{kind.capitalize()} already exists: {key}")
        bucket[key] = json.dumps(doc)

    def _fetch(self, kind: str, key: str) -> Optional[dict]:
        raw = self._docs[kind].get(key)
        return json.loads(raw) if raw is not None else None

    def _replace(self, kind: str, key: str, doc: dict, expected_version: int) -> None:
        current = self._fetch(kind, key)
        if current is None:
            raise NotFoundError(f"{kind.capitalize()} not found: {key}")
        if current.get("version", 0) != expected_version:
            raise ConflictError(
                f"{kind.capitalize()} {key} changed: expected version "
                f"{expected_version}, found {current.get('version', 0)}"
            )
        self._docs[kind][key] = json.dumps(doc)

    def _scan(self, kind: str) -> list[dict]:
        return [json.loads(raw) for raw in self._docs[kind].values()]


class SQLiteStore(Store):
    """
    SQLite-backed store.

    One ``documents`` table keyed by (kind, id) holds the JSON body next to
    indexed status, created_at and version columns.
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database. If None, uses in-memory.
        """
        self.db_path = db_path or ":memory:"
        self._db_lock = Lock()
        # Keep persistent connection for in-memory databases
        self._conn: Optional[sqlite3.Connection] = None
        if self.db_path == ":memory:":
            self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection, using persistent connection for in-memory."""
        if self._conn is not None:
            return self._conn
        return sqlite3.connect(self.db_path)

    def _close(self, conn: sqlite3.Connection) -> None:
        if self._conn is None:
            conn.close()

    def _init_db(self) -> None:
        """Initialize SQLite database schema."""
        with self._db_lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS documents (
                        kind TEXT NOT NULL,
                        id TEXT NOT NULL,
                        status TEXT,
                        created_at TEXT,
                        version INTEGER NOT NULL,
                        data TEXT NOT NULL,
                        PRIMARY KEY (kind, id)
                    )
                    """
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_documents_status "
                    "ON documents (kind, status)"
                )
                conn.commit()
            finally:
                self._close(conn)

    def _insert(self, kind: str, key: str, doc: dict) -> None:
        with self._db_lock:
            conn = self._get_connection()
            try:
                conn.execute(
                    """
                    INSERT INTO documents (kind, id, status, created_at, version, data)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        kind,
                        key,
                        doc.get("status"),
                        doc.get("created_at") or doc.get("registered_at"),
                        doc["version"],
                        json.dumps(doc),
                    ),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"{kind.capitalize()} already exists: {key}") from e
            finally:
                self._close(conn)

    def _fetch(self, kind: str, key: str) -> Optional[dict]:
        with self._db_lock:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT data FROM documents WHERE kind = ? AND id = ?",
                    (kind, key),
                ).fetchone()
            finally:
                self._close(conn)
        return json.loads(row[0]) if row else None

    def _replace(self, kind: str, key: str, doc: dict, expected_version: int) -> None:
        with self._db_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    """
                    UPDATE documents
                    SET status = ?, version = ?, data = ?
                    WHERE kind = ? AND id = ? AND version = ?
                    """,
                    (
                        doc.get("status"),
                        doc["version"],
                        json.dumps(doc),
                        kind,
                        key,
                        expected_version,
                    ),
                )
                conn.commit()
                if cursor.rowcount == 1:
                    return
                exists = conn.execute(
                    "SELECT version FROM documents WHERE kind = ? AND id = ?",
                    (kind, key),
                ).fetchone()
            finally:
                self._close(conn)

        if exists is None:
            raise NotFoundError(f"{kind.capitalize()} not found: {key}")
        raise ConflictError(
            f"{kind.capitalize()} {key} changed: expected version "
            f"{expected_version}, found {exists[0]}"
        )

    def _scan(self, kind: str) -> list[dict]:
        with self._db_lock:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT data FROM documents WHERE kind = ? ORDER BY created_at",
                    (kind,),
                ).fetchall()
            finally:
                self._close(conn)
        return [json.loads(row[0]) for row in rows]
