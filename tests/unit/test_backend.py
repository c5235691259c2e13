"""Unit tests for storage backend selection."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from pdl import backend
from pdl.backend import BackendSelector, count_running_instances
from pdl.errors import MigrationFailure
from pdl.models import Project
from pdl.settings import Settings


def single_instance():
    return 1


@pytest.fixture
def settings(tmp_path):
    return Settings(
        private_data_dir=tmp_path / "work" / "data",
        shared_data_dir=tmp_path / "home" / ".pdl" / "data",
    )


@pytest.fixture(autouse=True)
def clear_binding():
    backend.reset_backend()
    yield
    backend.reset_backend()


def add_private_project(settings, name="alpha"):
    selector = BackendSelector(settings, instance_counter=single_instance)
    selector.private._replace_sync(name, Project(project_name=name))


class TestDecision:
    """Test cases for the ordered selection rules."""

    def test_fresh_environment_defaults_to_shared(self, settings):
        selector = BackendSelector(settings, instance_counter=single_instance)

        assert selector.decide() == ("shared", "fresh environment defaults to the shared store")

    def test_existing_private_store_is_kept(self, settings):
        add_private_project(settings)
        selector = BackendSelector(settings, instance_counter=single_instance)

        kind, reason = selector.decide()

        assert kind == "private"
        assert "compatibility" in reason

    def test_environment_override_wins_over_private_store(self, settings):
        add_private_project(settings)
        forced = Settings(
            private_data_dir=settings.private_data_dir,
            shared_data_dir=settings.shared_data_dir,
            force_shared=True,
        )

        kind, reason = BackendSelector(forced, instance_counter=single_instance).decide()

        assert kind == "shared"
        assert "environment" in reason

    def test_multiple_instances_select_shared(self, settings):
        add_private_project(settings)

        kind, reason = BackendSelector(settings, instance_counter=lambda: 2).decide()

        assert (kind, reason) == ("shared", "multiple running instances detected")

    def test_migration_marker_selects_shared(self, settings):
        add_private_project(settings)
        (settings.private_data_dir / ".pdl-migrated").write_text("{}", encoding="utf-8")

        kind, _ = BackendSelector(settings, instance_counter=single_instance).decide()

        assert kind == "shared"

    def test_populated_shared_store_selects_shared(self, settings):
        add_private_project(settings)
        settings.shared_data_dir.mkdir(parents=True)
        (settings.shared_data_dir / "pdl.sqlite").write_bytes(b"\0" * 9000)

        kind, reason = BackendSelector(settings, instance_counter=single_instance).decide()

        assert (kind, reason) == ("shared", "shared store already holds data")

    def test_small_shared_store_is_ignored(self, settings):
        add_private_project(settings)
        settings.shared_data_dir.mkdir(parents=True)
        (settings.shared_data_dir / "pdl.sqlite").write_bytes(b"\0" * 100)

        kind, _ = BackendSelector(settings, instance_counter=single_instance).decide()

        assert kind == "private"

    def test_instance_detection_failure_is_not_fatal(self, settings):
        def broken_counter():
            raise OSError("no /proc")

        kind, _ = BackendSelector(settings, instance_counter=broken_counter).decide()

        assert kind == "shared"

    def test_errors_while_deciding_default_to_private(self, settings):
        selector = BackendSelector(settings, instance_counter=single_instance)

        with patch.object(selector.private, "has_projects", side_effect=PermissionError("denied")):
            kind, reason = selector.decide()

        assert kind == "private"
        assert "selection error" in reason


class TestBinding:
    """Test cases for binding a store, including migration."""

    def test_binding_shared_migrates_private_projects(self, settings):
        add_private_project(settings, "alpha")
        forced = Settings(
            private_data_dir=settings.private_data_dir,
            shared_data_dir=settings.shared_data_dir,
            force_shared=True,
        )

        binding = BackendSelector(forced, instance_counter=single_instance).bind()

        assert binding.kind == "shared"
        assert binding.migration.project_count == 1
        assert binding.store._list_sync() == ["alpha"]
        assert (settings.private_data_dir / ".pdl-migrated").exists()

    def test_migration_failure_falls_back_to_private(self, settings):
        migrator = MagicMock()
        migrator.migrate.side_effect = MigrationFailure("copy mismatch")

        binding = BackendSelector(settings, instance_counter=single_instance, migrator=migrator).bind()

        assert binding.kind == "private"
        assert binding.fallback is True
        assert "copy mismatch" in binding.reason

    @pytest.mark.parametrize("content", ["[1, 2, 3]", '{"theme": "dark"}'])
    def test_foreign_data_directory_up_the_tree_is_ignored(self, settings, tmp_path, content):
        foreign = tmp_path / "data"
        foreign.mkdir()
        (foreign / "fixtures.json").write_text(content, encoding="utf-8")

        binding = BackendSelector(settings, instance_counter=single_instance).bind()

        assert binding.kind == "shared"
        assert binding.fallback is False
        assert binding.store._list_sync() == []
        assert not (foreign / ".pdl-migrated").exists()

    def test_unexpected_import_error_falls_back_to_private(self, settings):
        add_private_project(settings, "alpha")
        forced = Settings(
            private_data_dir=settings.private_data_dir,
            shared_data_dir=settings.shared_data_dir,
            force_shared=True,
        )
        selector = BackendSelector(forced, instance_counter=single_instance)

        with patch.object(selector.shared, "import_documents", side_effect=TypeError("bad row")):
            binding = selector.bind()

        assert binding.kind == "private"
        assert binding.fallback is True
        assert "bad row" in binding.reason

    def test_migration_sources_follow_private_dir(self, settings, tmp_path):
        selector = BackendSelector(settings, instance_counter=single_instance)

        sources = selector.migration_sources()

        assert sources[0] == settings.private_data_dir
        assert sources[1] == tmp_path / "data"

    def test_binding_is_cached(self, settings):
        with patch.object(backend, "count_running_instances", return_value=1):
            first = backend.get_binding(settings)
            second = backend.get_binding()

        assert first is second
        assert backend.get_storage() is first.store
        info = backend.active_backend()
        assert info["kind"] == "shared"
        assert info["reason"] == first.reason

    def test_active_backend_before_selection(self):
        assert backend.active_backend() is None


class TestInstanceDetection:
    """Test cases for counting running server processes."""

    def test_counts_matching_command_lines(self):
        processes = [
            SimpleNamespace(info={"pid": 1, "cmdline": ["python", "/opt/pdl/main.py"]}),
            SimpleNamespace(info={"pid": 2, "cmdline": ["python", "/srv/pdl-server/main.py"]}),
            SimpleNamespace(info={"pid": 3, "cmdline": ["vim", "notes.txt"]}),
            SimpleNamespace(info={"pid": 4, "cmdline": None}),
        ]

        with patch("pdl.backend.psutil.process_iter", return_value=processes):
            assert count_running_instances(r"pdl.*main\.py") == 2
