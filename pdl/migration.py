"""One-time migration of private project stores into the shared store.

Sources are ``data/`` directories in the working directory and up to two
parents that hold nothing but project documents; other folders that happen
to be called ``data`` are ignored. Each source is hashed so the same data
is never imported twice; after a validated import a marker file is
written next to the source so later startups bind the shared store
directly.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import MigrationFailure, StorageFailure
from .models import now_iso
from .pdl_logging import log_operation
from .storage import PrivateStore, SharedStore


logger = logging.getLogger("pdl.migration")


@dataclass(slots=True)
class MigrationReport:
    """Outcome of one migration run."""

    migrated: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    project_count: int = 0
    lock_contended: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "migrated": list(self.migrated),
            "skipped": list(self.skipped),
            "project_count": self.project_count,
            "lock_contended": self.lock_contended,
        }


def data_hash(documents: Dict[str, Dict[str, Any]]) -> str:
    """Stable sha256 over a set of project documents."""
    canonical = json.dumps(documents, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ProjectMigrator:
    """Copy private stores into a shared store, exactly once per data set."""

    LOCK_NAME = "pdl-migration.lock"

    def __init__(self, shared: SharedStore, source_dirs: Optional[List[Path]] = None):
        self.shared = shared
        if source_dirs is None:
            cwd = Path.cwd()
            source_dirs = [cwd / "data", cwd.parent / "data", cwd.parent.parent / "data"]
        self.source_dirs = [Path(path) for path in source_dirs]

    @property
    def lock_path(self) -> Path:
        return self.shared.data_dir / self.LOCK_NAME

    def detect_sources(self) -> List[PrivateStore]:
        sources: List[PrivateStore] = []
        seen = set()
        for path in self.source_dirs:
            data_dir = path.resolve()
            if data_dir in seen:
                continue
            seen.add(data_dir)
            store = PrivateStore(data_dir)
            if store.is_migrated() or not store.is_project_store():
                continue
            sources.append(store)
        return sources

    def migrate(self) -> MigrationReport:
        """Run the migration; raise MigrationFailure when a source fails."""
        report = MigrationReport()

        if not self._acquire_lock():
            logger.info("Migration already in progress, skipping")
            report.lock_contended = True
            return report

        try:
            with log_operation("migrate_private_stores", shared=str(self.shared.db_path)):
                sources = self.detect_sources()
                logger.info(f"Found {len(sources)} private stores to potentially migrate")
                for source in sources:
                    self._migrate_source(source, report)
        finally:
            self._release_lock()

        return report

    def _migrate_source(self, source: PrivateStore, report: MigrationReport) -> None:
        source_path = str(source.data_dir)
        try:
            documents = source.load_documents()
        except StorageFailure as e:
            raise MigrationFailure(f"Could not read private store {source_path}: {e}") from e

        if not documents:
            report.skipped.append(source_path)
            return

        digest = data_hash(documents)
        try:
            if self.shared.find_migration(source_path, digest):
                logger.info(f"Data from {source_path} already migrated, skipping")
                self._write_marker(source)
                report.skipped.append(source_path)
                return

            self.shared.import_documents(documents, source_path)
            copied = self.shared.load_documents(documents.keys())
        except Exception as e:
            self._record_failure(source_path, digest, len(documents), f"error: {e}")
            raise MigrationFailure(f"Migration from {source_path} failed: {e}") from e

        if copied != documents:
            self._record_failure(source_path, digest, len(documents), "validation_failed")
            raise MigrationFailure(
                f"Migration from {source_path} failed validation: "
                f"{len(copied)} of {len(documents)} projects copied intact"
            )

        self.shared.record_migration(source_path, digest, len(documents), "completed", "validation_passed")
        self._write_marker(source)
        report.migrated.append(source_path)
        report.project_count += len(documents)
        logger.info(f"Migrated {len(documents)} projects from {source_path}")

    def _record_failure(self, source_path: str, digest: str, count: int, detail: str) -> None:
        try:
            self.shared.record_migration(source_path, digest, count, "failed", detail)
        except Exception as e:
            logger.error(f"Could not record failed migration for {source_path}: {e}")

    def _write_marker(self, source: PrivateStore) -> None:
        source.marker_path.write_text(
            json.dumps({
                "migrated_at": now_iso(),
                "migrated_to": str(self.shared.db_path),
                "original_store": str(source.data_dir),
            }),
            encoding="utf-8",
        )

    def _acquire_lock(self) -> bool:
        self.shared.data_dir.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump({"pid": os.getpid(), "timestamp": now_iso()}, handle)
        return True

    def _release_lock(self) -> None:
        try:
            self.lock_path.unlink()
        except OSError as e:
            logger.error(f"Failed to remove migration lock: {e}")
