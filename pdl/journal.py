"""Documentation links and per-session command logs.

Documents are linked to a project (and optionally one of its phases or
tasks) and stored inside the project aggregate. Session logs need no
store of their own: every activity entry records the session that wrote
it, so a session's history is read back from the activity logs of the
projects it touched.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from typing import Any, Dict, List, Optional

from .engine import AggregateOperations, positive_int
from .errors import NotFound
from .models import DocumentationEntry, new_id, to_iso
from .pdl_logging import log_performance


logger = logging.getLogger("pdl.journal")

EXPORT_FORMATS = ("json", "csv", "markdown")

CSV_FIELDS = ("timestamp", "session_id", "project_name", "action", "actor", "details", "phase_id", "sprint_id")


class ProjectJournal(AggregateOperations):
    """Documentation tracking and session log queries."""

    # ------------------------------------------------------------------
    # Documentation
    # ------------------------------------------------------------------

    @log_performance("create_documentation")
    async def create_documentation(
        self,
        project_name: str,
        name: str,
        path: str,
        summary_brief: str = "",
        creating_agent: str = "",
        phase_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not name or not name.strip():
            raise ValueError("Document name cannot be empty")
        if not path or not path.strip():
            raise ValueError("Document path cannot be empty")

        project = await self.load_project(project_name)
        if phase_id or task_id:
            if project.roadmap is None:
                raise NotFound(f"Project '{project_name}' has no roadmap; create one with create_roadmap")
            if phase_id:
                self._find_phase(project.roadmap, phase_id)
            if task_id:
                self._locate_task(project.roadmap, task_id)

        document = DocumentationEntry(
            doc_id=new_id(),
            name=name.strip(),
            path=path.strip(),
            summary_brief=summary_brief,
            creating_agent=creating_agent,
            phase_id=phase_id,
            task_id=task_id,
            session_id=self.session_id,
            created_at=to_iso(self.now()),
        )
        project.documentation.append(document)

        entry = self._log(
            project,
            "documentation_added",
            f"Linked document '{document.name}' ({document.path})",
            phase_id=phase_id,
        )
        await self._commit(
            project,
            "project_update",
            {"action": "documentation_added", "document": document.to_dict()},
            entry,
        )
        return {
            "success": True,
            "project_name": project_name,
            "document": document.to_dict(),
            "message": f"Document '{document.name}' linked to project '{project_name}'",
        }

    async def list_documentation(
        self,
        project_name: Optional[str] = None,
        phase_id: Optional[str] = None,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Documents of one project, or of every project when none is named."""
        if project_name:
            projects = [await self.load_project(project_name)]
        else:
            projects = [project async for project in self.iter_projects()]

        documents = []
        for project in projects:
            for document in project.documentation:
                if phase_id and document.phase_id != phase_id:
                    continue
                if search and not document.matches(search):
                    continue
                documents.append({**document.to_dict(), "project_name": project.project_name})
        return {"success": True, "documentation": documents, "count": len(documents)}

    # ------------------------------------------------------------------
    # Session logs
    # ------------------------------------------------------------------

    async def get_session_logs(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        """Every entry written by a session, oldest first. Defaults to this session."""
        target = session_id or self.session_id
        entries: List[Dict[str, Any]] = []
        async for project in self.iter_projects():
            for entry in project.activity_log:
                if entry.session_id == target:
                    entries.append({**entry.to_dict(), "project_name": project.project_name})
        entries.sort(key=lambda item: item["timestamp"])
        return {"success": True, "session_id": target, "entries": entries, "count": len(entries)}

    async def get_project_logs(
        self,
        project_name: str,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        project = await self.load_project(project_name)
        entries = [
            {**entry.to_dict(), "project_name": project_name}
            for entry in project.activity_log
            if session_id is None or entry.session_id == session_id
        ]
        if limit is not None:
            entries = entries[-positive_int(limit, len(entries), "limit"):]
        sessions = sorted({entry.session_id for entry in project.activity_log if entry.session_id})
        return {
            "success": True,
            "project_name": project_name,
            "entries": entries,
            "count": len(entries),
            "sessions": sessions,
        }

    async def list_sessions(self) -> Dict[str, Any]:
        """Summaries of every session found in the activity logs, newest first."""
        sessions: Dict[str, Dict[str, Any]] = {}
        async for project in self.iter_projects():
            for entry in project.activity_log:
                if not entry.session_id:
                    continue
                summary = sessions.setdefault(
                    entry.session_id,
                    {
                        "session_id": entry.session_id,
                        "projects": set(),
                        "started_at": entry.timestamp,
                        "last_activity": entry.timestamp,
                        "total_commands": 0,
                    },
                )
                summary["projects"].add(project.project_name)
                summary["started_at"] = min(summary["started_at"], entry.timestamp)
                summary["last_activity"] = max(summary["last_activity"], entry.timestamp)
                summary["total_commands"] += 1

        ordered = sorted(sessions.values(), key=lambda item: item["started_at"], reverse=True)
        for summary in ordered:
            summary["projects"] = sorted(summary["projects"])
        return {
            "success": True,
            "current_session_id": self.session_id,
            "sessions": ordered,
            "count": len(ordered),
        }

    async def export_logs(
        self,
        format: str = "json",
        session_id: Optional[str] = None,
        project_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Render a project's or a session's log as json, csv or markdown."""
        if format not in EXPORT_FORMATS:
            raise ValueError(f"Unknown export format: {format}. Must be one of: {', '.join(EXPORT_FORMATS)}")

        if project_name:
            result = await self.get_project_logs(project_name, session_id)
            title = f"PDL Project Log: {project_name}"
        else:
            result = await self.get_session_logs(session_id)
            title = f"PDL Session Log: {result['session_id']}"
        entries = result["entries"]

        if format == "json":
            content = json.dumps(entries, indent=2)
        elif format == "csv":
            content = render_csv(entries)
        else:
            content = render_markdown(title, entries)

        logger.info(f"Exported {len(entries)} log entries as {format}")
        return {"success": True, "format": format, "count": len(entries), "content": content}


def render_csv(entries: List[Dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_FIELDS, extrasaction="ignore", lineterminator="\n")
    writer.writeheader()
    for entry in entries:
        writer.writerow({key: entry.get(key) or "" for key in CSV_FIELDS})
    return buffer.getvalue()


def render_markdown(title: str, entries: List[Dict[str, Any]]) -> str:
    lines = [f"# {title}", "", f"**Entries:** {len(entries)}", "", "## Command History", ""]
    for index, entry in enumerate(entries, start=1):
        lines.append(f"### {index}. {entry['action']}")
        lines.append(f"- **Time:** {entry['timestamp']}")
        lines.append(f"- **Project:** {entry['project_name']}")
        if entry.get("session_id"):
            lines.append(f"- **Session:** {entry['session_id']}")
        lines.append(f"- **Details:** {entry['details']}")
        lines.append("")
    return "\n".join(lines)
