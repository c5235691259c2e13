"""Startup selection of the storage backend.

The decision is made once per process and cached. New environments and
anything that looks shared (existing shared data, a migration marker,
several running instances, an explicit override) bind the shared store;
a working directory that already has private projects keeps its private
store. Binding shared runs the one-time migration first and falls back
to the private store if that migration fails.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import psutil

from .errors import MigrationFailure, StorageFailure
from .migration import MigrationReport, ProjectMigrator
from .pdl_logging import log_backend_selected, log_error_with_context
from .settings import Settings, load_settings
from .storage import PrivateStore, SharedStore, StoragePort


logger = logging.getLogger("pdl.backend")

# A fresh SQLite file with only the schema stays below this size
SHARED_STORE_MIN_BYTES = 8192


def count_running_instances(pattern: str) -> int:
    """Count processes whose command line matches the server pattern."""
    matcher = re.compile(pattern)
    count = 0
    # process_iter fills inaccessible attributes with None
    for process in psutil.process_iter(["pid", "cmdline"]):
        cmdline = " ".join(process.info.get("cmdline") or [])
        if cmdline and matcher.search(cmdline):
            count += 1
    return count


@dataclass(slots=True)
class BackendBinding:
    """The store chosen for this process and why."""

    store: StoragePort
    reason: str
    migration: Optional[MigrationReport] = None
    fallback: bool = False

    @property
    def kind(self) -> str:
        return self.store.kind

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.store.describe(),
            "reason": self.reason,
            "fallback": self.fallback,
            "migration": self.migration.to_dict() if self.migration else None,
        }


class BackendSelector:
    """Decide between the private and the shared store."""

    def __init__(
        self,
        settings: Settings,
        instance_counter: Optional[Callable[[], int]] = None,
        migrator: Optional[ProjectMigrator] = None,
    ):
        self.settings = settings
        self.private = PrivateStore(settings.private_data_dir)
        self.shared = SharedStore(settings.shared_data_dir)
        self._instance_counter = instance_counter or (
            lambda: count_running_instances(settings.instance_pattern)
        )
        self._migrator = migrator

    def _multiple_instances(self) -> bool:
        try:
            return self._instance_counter() > 1
        except (psutil.Error, OSError) as e:
            logger.warning(f"Failed to detect running instances: {e}")
            return False

    def decide(self) -> tuple[str, str]:
        """Return (kind, reason) without touching either store."""
        try:
            if self.shared.exists() and self.shared.size_bytes() > SHARED_STORE_MIN_BYTES:
                return "shared", "shared store already holds data"
            if self.private.is_migrated():
                return "shared", "private store was already migrated"
            if self._multiple_instances():
                return "shared", "multiple running instances detected"
            if self.settings.force_shared:
                return "shared", "shared store requested via environment"
            if self.private.has_projects():
                return "private", "existing private store kept for compatibility"
            return "shared", "fresh environment defaults to the shared store"
        except OSError as e:
            logger.error(f"Error determining storage backend: {e}")
            return "private", f"selection error: {e}"

    def bind(self) -> BackendBinding:
        kind, reason = self.decide()

        if kind == "private":
            binding = BackendBinding(store=self.private, reason=reason)
        else:
            binding = self._bind_shared(reason)

        log_backend_selected(binding.kind, binding.reason, binding.store.describe()["location"])
        logger.info(f"Using {binding.kind} storage ({binding.reason})")
        return binding

    def migration_sources(self) -> List[Path]:
        """The private data directory plus ``data/`` one and two levels up."""
        base = self.private.data_dir.parent
        return [self.private.data_dir, base.parent / "data", base.parent.parent / "data"]

    def _bind_shared(self, reason: str) -> BackendBinding:
        migrator = self._migrator or ProjectMigrator(self.shared, self.migration_sources())
        try:
            report = migrator.migrate()
        except (MigrationFailure, StorageFailure, OSError) as e:
            log_error_with_context(e, {"operation": "migrate_private_stores", "reason": reason})
            logger.warning("Shared store migration failed, falling back to private storage")
            return BackendBinding(
                store=self.private,
                reason=f"migration failed: {e}",
                fallback=True,
            )
        return BackendBinding(store=self.shared, reason=reason, migration=report)


_binding: Optional[BackendBinding] = None


def get_binding(settings: Optional[Settings] = None) -> BackendBinding:
    """Return the process-wide binding, selecting it on first use."""
    global _binding
    if _binding is None:
        _binding = BackendSelector(settings or load_settings()).bind()
    return _binding


def get_storage(settings: Optional[Settings] = None) -> StoragePort:
    return get_binding(settings).store


def active_backend() -> Optional[Dict[str, Any]]:
    """Diagnostics for the bound store, or None before selection."""
    return _binding.to_dict() if _binding else None


def reset_backend() -> None:
    """Forget the cached binding (tests and forced re-selection)."""
    global _binding
    _binding = None


