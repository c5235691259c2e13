"""Unit tests for documentation tracking and session log queries."""

import csv
import io
import json

import pytest

from conftest import FIXED_NOW
from pdl.errors import NotFound
from pdl.journal import ProjectJournal
from pdl.lifecycle import ProjectTracker
from pdl.models import to_iso


PHASES = [
    {"name": "Foundation", "duration_weeks": 2},
    {"name": "Growth", "duration_weeks": 4},
]


@pytest.fixture
def tracker(private_store, recorder, fixed_clock):
    return ProjectTracker(private_store, recorder, clock=fixed_clock, session_id="session-a")


@pytest.fixture
def journal(private_store, recorder, fixed_clock):
    return ProjectJournal(private_store, recorder, clock=fixed_clock, session_id="session-a")


async def project_with_task(tracker, name="alpha"):
    await tracker.create_project(name, "Test project")
    roadmap = (await tracker.create_roadmap(name, "Be useful", PHASES))["roadmap"]
    phase_id = roadmap["phases"][0]["phase_id"]
    sprint_id = (await tracker.create_sprint(name, phase_id, "Sprint One"))["sprint"]["sprint_id"]
    task_id = (await tracker.create_task(name, sprint_id, "Write the runbook"))["task"]["task_id"]
    return phase_id, task_id


class TestDocumentation:
    """Test cases for linking and listing documents."""

    @pytest.mark.asyncio
    async def test_create_documentation(self, tracker, journal, private_store, recorder):
        phase_id, task_id = await project_with_task(tracker)

        result = await journal.create_documentation(
            "alpha", "Runbook", "docs/runbook.md", "How to operate", "planner", phase_id, task_id
        )

        assert result["success"] is True
        document = result["document"]
        assert document["session_id"] == "session-a"
        assert document["created_at"] == to_iso(FIXED_NOW)

        project = await private_store.fetch("alpha")
        assert [doc.name for doc in project.documentation] == ["Runbook"]
        assert project.activity_log[-1].action == "documentation_added"
        assert recorder.of_type("project_update")[-1]["payload"]["action"] == "documentation_added"

    @pytest.mark.asyncio
    async def test_project_without_roadmap_accepts_unscoped_document(self, tracker, journal):
        await tracker.create_project("alpha")

        result = await journal.create_documentation("alpha", "Notes", "notes.md")

        assert result["document"]["phase_id"] is None

    @pytest.mark.asyncio
    async def test_unknown_phase_or_task_rejected(self, tracker, journal, private_store):
        await project_with_task(tracker)

        with pytest.raises(NotFound):
            await journal.create_documentation("alpha", "Runbook", "runbook.md", phase_id="ghost")
        with pytest.raises(NotFound):
            await journal.create_documentation("alpha", "Runbook", "runbook.md", task_id="ghost")
        assert (await private_store.fetch("alpha")).documentation == []

    @pytest.mark.asyncio
    async def test_phase_reference_requires_roadmap(self, tracker, journal):
        await tracker.create_project("alpha")

        with pytest.raises(NotFound, match="no roadmap"):
            await journal.create_documentation("alpha", "Runbook", "runbook.md", phase_id="p1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name, path", [("", "a.md"), ("  ", "a.md"), ("Doc", "")])
    async def test_blank_name_or_path_rejected(self, tracker, journal, name, path):
        await tracker.create_project("alpha")

        with pytest.raises(ValueError):
            await journal.create_documentation("alpha", name, path)

    @pytest.mark.asyncio
    async def test_list_documentation_filters(self, tracker, journal):
        phase_id, _ = await project_with_task(tracker)
        await tracker.create_project("beta")
        await journal.create_documentation("alpha", "Runbook", "docs/runbook.md", "Operating notes", phase_id=phase_id)
        await journal.create_documentation("alpha", "Design", "docs/design.md")
        await journal.create_documentation("beta", "Pitch deck", "slides/PITCH.pdf")

        everything = await journal.list_documentation()
        alpha = await journal.list_documentation("alpha")
        by_phase = await journal.list_documentation("alpha", phase_id=phase_id)
        searched = await journal.list_documentation(search="pitch")
        by_summary = await journal.list_documentation(search="OPERATING")

        assert everything["count"] == 3
        assert {doc["name"] for doc in alpha["documentation"]} == {"Runbook", "Design"}
        assert [doc["name"] for doc in by_phase["documentation"]] == ["Runbook"]
        assert [(doc["project_name"], doc["name"]) for doc in searched["documentation"]] == [("beta", "Pitch deck")]
        assert [doc["name"] for doc in by_summary["documentation"]] == ["Runbook"]

    @pytest.mark.asyncio
    async def test_list_documentation_unknown_project(self, journal):
        with pytest.raises(NotFound):
            await journal.list_documentation("ghost")


class TestSessionLogs:
    """Test cases for reading back and exporting per-session logs."""

    @pytest.mark.asyncio
    async def test_entries_carry_session_and_clock(self, tracker, private_store):
        await tracker.create_project("alpha")

        entry = (await private_store.fetch("alpha")).activity_log[0]

        assert entry.session_id == "session-a"
        assert entry.timestamp == to_iso(FIXED_NOW)

    @pytest.mark.asyncio
    async def test_session_logs_span_projects(self, private_store, recorder, fixed_clock, journal):
        first = ProjectTracker(private_store, recorder, clock=fixed_clock, session_id="session-a")
        second = ProjectTracker(private_store, recorder, clock=fixed_clock, session_id="session-b")
        await first.create_project("alpha")
        await first.create_project("beta")
        await second.create_roadmap("alpha", "Vision", PHASES)

        current = await journal.get_session_logs()
        other = await journal.get_session_logs("session-b")

        assert current["session_id"] == "session-a"
        assert {entry["project_name"] for entry in current["entries"]} == {"alpha", "beta"}
        assert [entry["action"] for entry in other["entries"]] == ["roadmap_created"]

    @pytest.mark.asyncio
    async def test_project_logs_by_session(self, private_store, recorder, fixed_clock, journal):
        first = ProjectTracker(private_store, recorder, clock=fixed_clock, session_id="session-a")
        second = ProjectTracker(private_store, recorder, clock=fixed_clock, session_id="session-b")
        await first.create_project("alpha")
        await second.create_roadmap("alpha", "Vision", PHASES)

        full = await journal.get_project_logs("alpha")
        narrowed = await journal.get_project_logs("alpha", session_id="session-b")
        latest = await journal.get_project_logs("alpha", limit=1)

        assert full["count"] == 2
        assert full["sessions"] == ["session-a", "session-b"]
        assert [entry["action"] for entry in narrowed["entries"]] == ["roadmap_created"]
        assert [entry["action"] for entry in latest["entries"]] == ["roadmap_created"]

    @pytest.mark.asyncio
    async def test_project_logs_reject_bad_limit(self, tracker, journal):
        await tracker.create_project("alpha")

        with pytest.raises(ValueError, match="limit"):
            await journal.get_project_logs("alpha", limit=0)

    @pytest.mark.asyncio
    async def test_list_sessions(self, private_store, recorder, fixed_clock, journal):
        first = ProjectTracker(private_store, recorder, clock=fixed_clock, session_id="session-a")
        second = ProjectTracker(private_store, recorder, clock=fixed_clock, session_id="session-b")
        await first.create_project("alpha")
        await first.create_project("beta")
        await second.create_roadmap("beta", "Vision", PHASES)

        result = await journal.list_sessions()

        assert result["current_session_id"] == "session-a"
        by_id = {session["session_id"]: session for session in result["sessions"]}
        assert by_id["session-a"]["projects"] == ["alpha", "beta"]
        assert by_id["session-a"]["total_commands"] == 2
        assert by_id["session-b"]["projects"] == ["beta"]

    @pytest.mark.asyncio
    async def test_corrupt_project_skipped_in_session_logs(self, tracker, journal, private_store):
        await tracker.create_project("alpha")
        (private_store.data_dir / "broken.json").write_text("{not json", encoding="utf-8")

        result = await journal.get_session_logs()

        assert [entry["project_name"] for entry in result["entries"]] == ["alpha"]


class TestExportLogs:
    """Test cases for rendering logs in the supported export formats."""

    @pytest.mark.asyncio
    async def test_json_export(self, tracker, journal):
        await tracker.create_project("alpha")

        result = await journal.export_logs("json")

        entries = json.loads(result["content"])
        assert result["count"] == 1
        assert entries[0]["action"] == "project_created"
        assert entries[0]["session_id"] == "session-a"

    @pytest.mark.asyncio
    async def test_csv_export(self, tracker, journal):
        await tracker.create_project("alpha", "Has, a comma")

        result = await journal.export_logs("csv", project_name="alpha")

        rows = list(csv.DictReader(io.StringIO(result["content"])))
        assert len(rows) == 1
        assert rows[0]["project_name"] == "alpha"
        assert rows[0]["session_id"] == "session-a"
        assert rows[0]["phase_id"] == ""

    @pytest.mark.asyncio
    async def test_markdown_export(self, tracker, journal):
        await tracker.create_project("alpha")

        result = await journal.export_logs("markdown")

        assert result["content"].startswith("# PDL Session Log: session-a")
        assert "### 1. project_created" in result["content"]
        assert "**Project:** alpha" in result["content"]

    @pytest.mark.asyncio
    async def test_unknown_format_rejected(self, journal):
        with pytest.raises(ValueError, match="Unknown export format"):
            await journal.export_logs("xml")
