"""
Identity Store Module

Persistence of enrolled identities: encrypted descriptors plus metadata
(display name, creation/update time, sample count). Descriptors are stored
exactly as the cipher produced them; the store never sees plaintext.

Two backends:
- InMemoryIdentityStore: process-local, for tests and ephemeral kiosks
- SQLiteIdentityStore: single-file database with an identities table and a
  descriptors table (one row per encrypted descriptor)

Both are safe to share between sessions running on different threads.

Usage:
    from faceauth.identity_store import SQLiteIdentityStore, IdentityRecord, generate_identity_id

    store = SQLiteIdentityStore("storage/identities.sqlite")
    store.add(IdentityRecord(identity_id=generate_identity_id(), display_name="Alice",
                             descriptors=[cipher.encrypt(d) for d in samples]))
    for record in store.list_identities():
        print(record.display_name, record.sample_count)
"""

import json
import logging
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from faceauth.crypto import EncryptedDescriptor
from faceauth.errors import StorageError

logger = logging.getLogger(__name__)


def generate_identity_id() -> str:
    """
    Generate a unique identity ID.

    Format: "idn_" followed by 8 random hex characters.
    """
    return f"idn_{uuid.uuid4().hex[:8]}"


def _now() -> str:
    return datetime.now().isoformat()


@dataclass
class IdentityRecord:
    """
    An enrolled identity.

    Attributes:
        identity_id: Unique identifier (e.g., "idn_a1b2c3d4").
        display_name: Human-readable name.
        descriptors: Encrypted enrollment descriptors.
        created_at: ISO timestamp of enrollment.
        updated_at: ISO timestamp of the last descriptor update.
        metadata: Free-form JSON-serializable details.
    """

    identity_id: str
    display_name: str
    descriptors: List[EncryptedDescriptor] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def sample_count(self) -> int:
        return len(self.descriptors)


class IdentityStore(ABC):
    """Persistent identity storage keyed by identity id."""

    @abstractmethod
    def list_identities(self) -> List[IdentityRecord]:
        """
        All enrolled identities, with their descriptors.

        Raises:
            StorageError: The store could not be read.
            DecryptionError: A stored descriptor is damaged.
        """

    @abstractmethod
    def load(self, identity_id: str) -> Optional[IdentityRecord]:
        """One identity, or None if unknown."""

    @abstractmethod
    def add(self, record: IdentityRecord) -> None:
        """
        Store a new identity.

        Raises:
            StorageError: If the id is already enrolled.
        """

    @abstractmethod
    def update_descriptors(self, identity_id: str, descriptors: List[EncryptedDescriptor]) -> None:
        """
        Replace an identity's descriptors.

        Raises:
            StorageError: If the identity is unknown.
        """

    @abstractmethod
    def delete(self, identity_id: str) -> bool:
        """Remove an identity. Returns False if it was not enrolled."""

    @abstractmethod
    def exists(self, identity_id: str) -> bool:
        pass

    @abstractmethod
    def exists_by_name(self, display_name: str) -> bool:
        pass

    @abstractmethod
    def clear(self) -> None:
        """Remove every identity."""

    def count(self) -> int:
        return len(self.list_identities())


class InMemoryIdentityStore(IdentityStore):
    """Dictionary-backed store guarded by a lock."""

    def __init__(self):
        self._records: Dict[str, IdentityRecord] = {}
        self._lock = threading.Lock()

    def list_identities(self) -> List[IdentityRecord]:
        with self._lock:
            return [self._copy(r) for r in self._records.values()]

    def load(self, identity_id: str) -> Optional[IdentityRecord]:
        with self._lock:
            record = self._records.get(identity_id)
            return self._copy(record) if record else None

    def add(self, record: IdentityRecord) -> None:
        with self._lock:
            if record.identity_id in self._records:
                raise StorageError(f"Identity already exists: {record.identity_id}")
            self._records[record.identity_id] = self._copy(record)
        logger.info(f"Stored identity {record.display_name} (id={record.identity_id}, samples={record.sample_count})")

    def update_descriptors(self, identity_id: str, descriptors: List[EncryptedDescriptor]) -> None:
        with self._lock:
            record = self._records.get(identity_id)
            if record is None:
                raise StorageError(f"Unknown identity: {identity_id}")
            record.descriptors = list(descriptors)
            record.updated_at = _now()

    def delete(self, identity_id: str) -> bool:
        with self._lock:
            removed = self._records.pop(identity_id, None)
        if removed is None:
            logger.warning(f"Cannot delete: identity {identity_id} not found")
            return False
        logger.info(f"Deleted identity {identity_id}")
        return True

    def exists(self, identity_id: str) -> bool:
        with self._lock:
            return identity_id in self._records

    def exists_by_name(self, display_name: str) -> bool:
        with self._lock:
            return any(r.display_name == display_name for r in self._records.values())

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def count(self) -> int:
        with self._lock:
            return len(self._records)

    @staticmethod
    def _copy(record: IdentityRecord) -> IdentityRecord:
        return replace(record, descriptors=list(record.descriptors), metadata=dict(record.metadata))


class SQLiteIdentityStore(IdentityStore):
    """
    SQLite-backed store.

    One connection is shared across threads and serialized with a lock.

    Args:
        db_path: Path to the database file (parent directories are
                 created), or ":memory:".
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open identity database {db_path}: {e}") from e
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")

        self._init_database()
        logger.info(f"SQLiteIdentityStore initialized: db={db_path}")

    def _init_database(self) -> None:
        with self._lock, self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS identities (
                    identity_id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    sample_count INTEGER NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}'
                )
            """)
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS descriptors (
                    identity_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    payload BLOB NOT NULL,
                    PRIMARY KEY (identity_id, position),
                    FOREIGN KEY (identity_id) REFERENCES identities(identity_id) ON DELETE CASCADE
                )
            """)
        logger.debug("Identity schema initialized")

    def _execute(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                with self._conn:
                    return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageError(f"Identity store query failed: {e}") from e

    def _load_descriptors(self, identity_id: str) -> List[EncryptedDescriptor]:
        rows = self._execute(
            "SELECT payload FROM descriptors WHERE identity_id = ? ORDER BY position",
            (identity_id,),
        )
        # Damaged blobs raise DecryptionError
        return [EncryptedDescriptor.from_bytes(bytes(row["payload"])) for row in rows]

    def _row_to_record(self, row: sqlite3.Row) -> IdentityRecord:
        return IdentityRecord(
            identity_id=row["identity_id"],
            display_name=row["display_name"],
            descriptors=self._load_descriptors(row["identity_id"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            metadata=json.loads(row["metadata"] or "{}"),
        )

    def list_identities(self) -> List[IdentityRecord]:
        rows = self._execute("SELECT * FROM identities ORDER BY created_at")
        return [self._row_to_record(row) for row in rows]

    def load(self, identity_id: str) -> Optional[IdentityRecord]:
        rows = self._execute("SELECT * FROM identities WHERE identity_id = ?", (identity_id,))
        if not rows:
            return None
        return self._row_to_record(rows[0])

    def add(self, record: IdentityRecord) -> None:
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        """
                        INSERT INTO identities
                        (identity_id, display_name, created_at, updated_at, sample_count, metadata)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            record.identity_id,
                            record.display_name,
                            record.created_at,
                            record.updated_at,
                            record.sample_count,
                            json.dumps(record.metadata),
                        ),
                    )
                    self._conn.executemany(
                        "INSERT INTO descriptors (identity_id, position, payload) VALUES (?, ?, ?)",
                        [
                            (record.identity_id, position, descriptor.to_bytes())
                            for position, descriptor in enumerate(record.descriptors)
                        ],
                    )
            except sqlite3.IntegrityError as e:
                raise StorageError(f"Identity already exists: {record.identity_id}") from e
            except sqlite3.Error as e:
                raise StorageError(f"Failed to store identity {record.identity_id}: {e}") from e

        logger.info(f"Stored identity {record.display_name} (id={record.identity_id}, samples={record.sample_count})")

    def update_descriptors(self, identity_id: str, descriptors: List[EncryptedDescriptor]) -> None:
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute(
                        "UPDATE identities SET updated_at = ?, sample_count = ? WHERE identity_id = ?",
                        (_now(), len(descriptors), identity_id),
                    )
                    if cursor.rowcount == 0:
                        raise StorageError(f"Unknown identity: {identity_id}")
                    self._conn.execute("DELETE FROM descriptors WHERE identity_id = ?", (identity_id,))
                    self._conn.executemany(
                        "INSERT INTO descriptors (identity_id, position, payload) VALUES (?, ?, ?)",
                        [(identity_id, i, d.to_bytes()) for i, d in enumerate(descriptors)],
                    )
            except sqlite3.Error as e:
                raise StorageError(f"Failed to update identity {identity_id}: {e}") from e

        logger.info(f"Updated descriptors for {identity_id} ({len(descriptors)} samples)")

    def delete(self, identity_id: str) -> bool:
        if not self.exists(identity_id):
            logger.warning(f"Cannot delete: identity {identity_id} not found")
            return False
        self._execute("DELETE FROM identities WHERE identity_id = ?", (identity_id,))
        logger.info(f"Deleted identity {identity_id}")
        return True

    def exists(self, identity_id: str) -> bool:
        return bool(self._execute("SELECT 1 FROM identities WHERE identity_id = ?", (identity_id,)))

    def exists_by_name(self, display_name: str) -> bool:
        return bool(self._execute("SELECT 1 FROM identities WHERE display_name = ?", (display_name,)))

    def clear(self) -> None:
        self._execute("DELETE FROM identities")
        logger.info("Cleared all identities")

    def count(self) -> int:
        return int(self._execute("SELECT COUNT(*) AS n FROM identities")[0]["n"])

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def get_identity_store(config: Optional[dict] = None) -> IdentityStore:
    """
    Factory function for the configured identity store.

    Args:
        config: Optional storage config dict (backend, db_path). If None,
                loads the "storage" section of config.yaml.
    """
    if config is None:
        try:
            from faceauth.config import get_project_root, get_storage_config
            config = dict(get_storage_config())
            db_path = Path(config.get("db_path", "storage/identities.sqlite"))
            if not db_path.is_absolute():
                config["db_path"] = str(get_project_root() / db_path)
        except (FileNotFoundError, KeyError):
            config = {}

    backend = config.get("backend", "sqlite")
    if backend == "memory":
        return InMemoryIdentityStore()
    if backend == "sqlite":
        return SQLiteIdentityStore(config.get("db_path", "storage/identities.sqlite"))

    raise StorageError(f"Unknown identity store backend: {backend}")
