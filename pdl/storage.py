"""Storage port and its two backends.

The engine only ever talks to :class:`StoragePort`: fetch a project by
name, replace it by name, list every name. ``PrivateStore`` keeps one JSON
document per project in the working directory's ``data/`` folder;
``SharedStore`` keeps the same documents in a per-user SQLite file so
several checkouts and processes see one set of projects. Blocking I/O is
pushed onto worker threads so callers on the event loop only suspend.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
import tempfile
from abc import ABC, abstractmethod
from contextlib import closing
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote, unquote

from .errors import StorageFailure
from .models import Project, now_iso


logger = logging.getLogger("pdl.storage")


class StoragePort(ABC):
    """Key-addressed document repository holding Project aggregates."""

    kind = "abstract"

    @abstractmethod
    async def fetch(self, name: str) -> Optional[Project]:
        """Return the stored project or None when absent."""

    @abstractmethod
    async def replace(self, name: str, project: Project) -> bool:
        """Store the project under name, overwriting any previous version."""

    @abstractmethod
    async def list_all(self) -> List[str]:
        """Return every stored project name."""

    @abstractmethod
    def describe(self) -> Dict[str, Any]:
        """Diagnostic description of the backend."""


class PrivateStore(StoragePort):
    """Per-working-directory store: ``<data_dir>/<project>.json``."""

    kind = "private"
    MIGRATION_MARKER = ".pdl-migrated"

    def __init__(self, data_dir: Path | str):
        self.data_dir = Path(data_dir)

    # ------------------------------------------------------------------
    # Filesystem layout
    # ------------------------------------------------------------------

    def _path(self, name: str) -> Path:
        stem = quote(name, safe="")
        # a leading dot would hide the document among temp and marker files
        if stem.startswith("."):
            stem = "%2E" + stem[1:]
        return self.data_dir / f"{stem}.json"

    @property
    def marker_path(self) -> Path:
        return self.data_dir / self.MIGRATION_MARKER

    def is_migrated(self) -> bool:
        return self.marker_path.exists()

    def has_projects(self) -> bool:
        """True when at least one project document exists on disk."""
        if not self.data_dir.is_dir():
            return False
        return any(self._document_paths())

    def _document_paths(self) -> Iterable[Path]:
        for path in sorted(self.data_dir.glob("*.json")):
            if not path.name.startswith("."):
                yield path

    # ------------------------------------------------------------------
    # Synchronous primitives
    # ------------------------------------------------------------------

    def _fetch_sync(self, name: str) -> Optional[Project]:
        path = self._path(name)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return Project.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise StorageFailure(f"Could not read project '{name}' from {path}: {e}") from e

    def _replace_sync(self, name: str, project: Project) -> bool:
        path = self._path(name)
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.data_dir, prefix=".tmp-", suffix=".part")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(project.to_dict(), handle, indent=2)
                os.replace(tmp_name, path)
            finally:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
        except OSError as e:
            logger.error(f"Failed to write project '{name}' to {path}: {e}")
            return False
        return True

    def _list_sync(self) -> List[str]:
        if not self.data_dir.is_dir():
            return []
        return [unquote(path.stem) for path in self._document_paths()]

    def load_documents(self) -> Dict[str, Dict[str, Any]]:
        """Raw documents keyed by project name, for migration.

        Every document must decode as a Project stored under its own name;
        anything else raises StorageFailure.
        """
        documents: Dict[str, Dict[str, Any]] = {}
        for name in self._list_sync():
            path = self._path(name)
            try:
                document = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                raise StorageFailure(f"Could not read project '{name}' from {path}: {e}") from e
            if not isinstance(document, dict) or document.get("project_name") != name:
                raise StorageFailure(f"{path} is not a project document for '{name}'")
            try:
                Project.from_dict(document)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise StorageFailure(f"{path} is not a valid project document: {e}") from e
            documents[name] = document
        return documents

    def is_project_store(self) -> bool:
        """True when the directory holds project documents and nothing else."""
        if not self.has_projects():
            return False
        try:
            self.load_documents()
        except StorageFailure as e:
            logger.warning(f"Ignoring {self.data_dir} as a project store: {e}")
            return False
        return True

    # ------------------------------------------------------------------
    # Port
    # ------------------------------------------------------------------

    async def fetch(self, name: str) -> Optional[Project]:
        return await asyncio.to_thread(self._fetch_sync, name)

    async def replace(self, name: str, project: Project) -> bool:
        return await asyncio.to_thread(self._replace_sync, name, project)

    async def list_all(self) -> List[str]:
        return await asyncio.to_thread(self._list_sync)

    def describe(self) -> Dict[str, Any]:
        return {"kind": self.kind, "location": str(self.data_dir)}


class SharedStore(StoragePort):
    """Per-user SQLite store shared by every working directory."""

    kind = "shared"
    DB_NAME = "pdl.sqlite"

    SCHEMA = (
        """
        CREATE TABLE IF NOT EXISTS projects (
            project_name TEXT PRIMARY KEY,
            document TEXT NOT NULL,
            created_at TEXT,
            updated_at TEXT,
            source_path TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS migrations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            source_path TEXT,
            migration_timestamp TEXT,
            data_hash TEXT,
            project_count INTEGER,
            status TEXT,
            validation_result TEXT
        )
        """,
    )

    def __init__(self, data_dir: Path | str, db_name: Optional[str] = None):
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / (db_name or self.DB_NAME)
        self._schema_ready = False

    def exists(self) -> bool:
        return self.db_path.exists()

    def size_bytes(self) -> int:
        try:
            return self.db_path.stat().st_size
        except OSError:
            return 0

    def _connect(self) -> sqlite3.Connection:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(self.db_path, timeout=5.0)
        if not self._schema_ready:
            with connection:
                for statement in self.SCHEMA:
                    connection.execute(statement)
            self._schema_ready = True
        return connection

    # ------------------------------------------------------------------
    # Synchronous primitives
    # ------------------------------------------------------------------

    def _fetch_sync(self, name: str) -> Optional[Project]:
        try:
            with closing(self._connect()) as connection:
                row = connection.execute(
                    "SELECT document FROM projects WHERE project_name = ?", (name,)
                ).fetchone()
        except (OSError, sqlite3.Error) as e:
            raise StorageFailure(f"Could not read project '{name}' from {self.db_path}: {e}") from e
        if row is None:
            return None
        try:
            return Project.from_dict(json.loads(row[0]))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise StorageFailure(f"Stored document for '{name}' is corrupt: {e}") from e

    def _replace_sync(self, name: str, project: Project) -> bool:
        document = json.dumps(project.to_dict())
        try:
            with closing(self._connect()) as connection:
                with connection:
                    connection.execute(
                        """
                        INSERT INTO projects (project_name, document, created_at, updated_at, source_path)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(project_name) DO UPDATE SET
                            document = excluded.document,
                            updated_at = excluded.updated_at
                        """,
                        (name, document, project.created_at, project.updated_at, str(Path.cwd())),
                    )
        except (OSError, sqlite3.Error) as e:
            logger.error(f"Failed to write project '{name}' to {self.db_path}: {e}")
            return False
        return True

    def _list_sync(self) -> List[str]:
        try:
            with closing(self._connect()) as connection:
                rows = connection.execute(
                    "SELECT project_name FROM projects ORDER BY updated_at DESC"
                ).fetchall()
        except (OSError, sqlite3.Error) as e:
            raise StorageFailure(f"Could not list projects in {self.db_path}: {e}") from e
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Migration support
    # ------------------------------------------------------------------

    def import_documents(self, documents: Dict[str, Dict[str, Any]], source_path: str) -> None:
        """Insert or overwrite documents in a single transaction."""
        with closing(self._connect()) as connection:
            with connection:
                for name, document in documents.items():
                    connection.execute(
                        """
                        INSERT OR REPLACE INTO projects
                        (project_name, document, created_at, updated_at, source_path)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (
                            name,
                            json.dumps(document),
                            document.get("created_at"),
                            document.get("updated_at"),
                            source_path,
                        ),
                    )

    def load_documents(self, names: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        wanted = list(names)
        if not wanted:
            return {}
        placeholders = ",".join("?" for _ in wanted)
        with closing(self._connect()) as connection:
            rows = connection.execute(
                f"SELECT project_name, document FROM projects WHERE project_name IN ({placeholders})",
                wanted,
            ).fetchall()
        return {name: json.loads(document) for name, document in rows}

    def find_migration(self, source_path: str, data_hash: str) -> bool:
        with closing(self._connect()) as connection:
            row = connection.execute(
                "SELECT id FROM migrations WHERE source_path = ? AND data_hash = ? AND status = 'completed'",
                (source_path, data_hash),
            ).fetchone()
        return row is not None

    def record_migration(
        self,
        source_path: str,
        data_hash: str,
        project_count: int,
        status: str,
        validation_result: str,
    ) -> None:
        with closing(self._connect()) as connection:
            with connection:
                connection.execute(
                    """
                    INSERT INTO migrations
                    (source_path, migration_timestamp, data_hash, project_count, status, validation_result)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (source_path, now_iso(), data_hash, project_count, status, validation_result),
                )

    def migration_history(self) -> List[Dict[str, Any]]:
        with closing(self._connect()) as connection:
            rows = connection.execute(
                "SELECT source_path, migration_timestamp, data_hash, project_count, status, validation_result "
                "FROM migrations ORDER BY id"
            ).fetchall()
        keys = ("source_path", "migration_timestamp", "data_hash", "project_count", "status", "validation_result")
        return [dict(zip(keys, row)) for row in rows]

    # ------------------------------------------------------------------
    # Port
    # ------------------------------------------------------------------

    async def fetch(self, name: str) -> Optional[Project]:
        return await asyncio.to_thread(self._fetch_sync, name)

    async def replace(self, name: str, project: Project) -> bool:
        return await asyncio.to_thread(self._replace_sync, name, project)

    async def list_all(self) -> List[str]:
        return await asyncio.to_thread(self._list_sync)

    def describe(self) -> Dict[str, Any]:
        return {"kind": self.kind, "location": str(self.db_path)}
