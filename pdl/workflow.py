"""Service facade used by the MCP tool surface.

Wires the storage binding, the broadcast hub, the structural engine,
the lifecycle tracker, the journal and the legacy adapter together, and
turns typed failures into the result dictionaries the tools hand back
to clients. All components share one session id.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Dict, List, Optional, Sequence

from .backend import BackendBinding, get_binding
from .broadcast import BroadcastHub
from .engine import RoadmapEngine
from .errors import PDLError
from .journal import ProjectJournal
from .legacy import LegacyAdapter
from .lifecycle import ProjectTracker
from .models import new_session_id
from .pdl_logging import log_error_with_context
from .settings import Settings
from .storage import StoragePort


logger = logging.getLogger("pdl.workflow")


class PDLService:
    """One entry point per tool; never raises for expected failures."""

    def __init__(
        self,
        storage: StoragePort,
        broadcaster: Optional[BroadcastHub] = None,
        binding: Optional[BackendBinding] = None,
    ):
        self.storage = storage
        self.hub = broadcaster or BroadcastHub(snapshot_loader=storage.fetch)
        self.binding = binding
        self.session_id = new_session_id()
        self.engine = RoadmapEngine(storage, self.hub, session_id=self.session_id)
        self.tracker = ProjectTracker(storage, self.hub, session_id=self.session_id)
        self.journal = ProjectJournal(storage, self.hub, session_id=self.session_id)
        self.legacy = LegacyAdapter(self.tracker)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PDLService":
        binding = get_binding(settings)
        hub = BroadcastHub(snapshot_loader=binding.store.fetch, heartbeat_timeout=settings.heartbeat_timeout)
        return cls(binding.store, hub, binding)

    async def _run(self, operation: str, call: Awaitable[Dict[str, Any]], **context) -> Dict[str, Any]:
        try:
            return await call
        except PDLError as e:
            log_error_with_context(e, {"operation": operation, **context})
            return e.to_dict()
        except ValueError as e:
            log_error_with_context(e, {"operation": operation, **context})
            return {
                "success": False,
                "error": "InvalidArgument",
                "message": str(e),
                "suggestion": "Check the tool arguments and try again",
            }

    # ------------------------------------------------------------------
    # Projects and roadmaps
    # ------------------------------------------------------------------

    async def initialize_project(
        self,
        project_name: str,
        description: str = "",
        team_composition: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        result = await self._run(
            "initialize_project",
            self.legacy.initialize_project(project_name, description, team_composition),
            project_name=project_name,
        )
        if result.get("success"):
            result["next_suggested_step"] = "create_roadmap"
        else:
            result.setdefault("project_name", project_name)
            result.setdefault("roadmap_created", False)
        return result

    async def list_projects(self, include_summary: bool = True) -> Dict[str, Any]:
        return await self._run("list_projects", self.tracker.list_projects(include_summary))

    async def get_project(self, project_name: str) -> Dict[str, Any]:
        return await self._run("get_project", self.tracker.get_project(project_name), project_name=project_name)

    async def create_roadmap(
        self,
        project_name: str,
        vision: str,
        phases: Sequence[Dict[str, Any]],
        milestones: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        result = await self._run(
            "create_roadmap",
            self.tracker.create_roadmap(project_name, vision, phases, milestones),
            project_name=project_name,
            phase_count=len(phases or []),
        )
        if result.get("success"):
            result["next_suggested_step"] = "create_sprint"
        return result

    async def get_roadmap(self, project_name: str, include_details: bool = True) -> Dict[str, Any]:
        return await self._run(
            "get_roadmap",
            self.tracker.get_roadmap(project_name, include_details),
            project_name=project_name,
        )

    async def update_roadmap_phase(self, project_name: str, phase_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        return await self._run(
            "update_roadmap_phase",
            self.tracker.update_roadmap_phase(project_name, phase_id, updates),
            project_name=project_name,
            phase_id=phase_id,
        )

    async def update_milestone(self, project_name: str, milestone_id: str, status: str) -> Dict[str, Any]:
        return await self._run(
            "update_milestone",
            self.tracker.update_milestone(project_name, milestone_id, status),
            project_name=project_name,
            milestone_id=milestone_id,
        )

    # ------------------------------------------------------------------
    # Structural changes
    # ------------------------------------------------------------------

    async def insert_phase(
        self,
        project_name: str,
        phase_spec: Dict[str, Any],
        position: Optional[int] = None,
    ) -> Dict[str, Any]:
        return await self._run(
            "insert_phase",
            self.engine.insert_phase(project_name, phase_spec, position),
            project_name=project_name,
            position=position,
        )

    async def delete_phase(self, project_name: str, phase_id: str, reassign_to: Optional[str] = None) -> Dict[str, Any]:
        return await self._run(
            "delete_phase",
            self.engine.delete_phase(project_name, phase_id, reassign_to),
            project_name=project_name,
            phase_id=phase_id,
            reassign_to=reassign_to,
        )

    async def reorder_phases(self, project_name: str, phase_order: List[str]) -> Dict[str, Any]:
        return await self._run(
            "reorder_phases",
            self.engine.reorder_phases(project_name, phase_order),
            project_name=project_name,
        )

    async def insert_sprint(
        self,
        project_name: str,
        phase_id: str,
        sprint_spec: Dict[str, Any],
        position: Optional[int] = None,
    ) -> Dict[str, Any]:
        return await self._run(
            "insert_sprint",
            self.engine.insert_sprint(project_name, phase_id, sprint_spec, position),
            project_name=project_name,
            phase_id=phase_id,
        )

    async def delete_sprint(self, project_name: str, sprint_id: str, reassign_to: Optional[str] = None) -> Dict[str, Any]:
        return await self._run(
            "delete_sprint",
            self.engine.delete_sprint(project_name, sprint_id, reassign_to),
            project_name=project_name,
            sprint_id=sprint_id,
            reassign_to=reassign_to,
        )

    async def reorder_sprints(self, project_name: str, moves: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await self._run(
            "reorder_sprints",
            self.engine.reorder_sprints(project_name, moves),
            project_name=project_name,
            move_count=len(moves or []),
        )

    async def reorder_phase_sprints(self, project_name: str, phase_id: str, sprint_order: List[str]) -> Dict[str, Any]:
        return await self._run(
            "reorder_phase_sprints",
            self.engine.reorder_phase_sprints(project_name, phase_id, sprint_order),
            project_name=project_name,
            phase_id=phase_id,
        )

    # ------------------------------------------------------------------
    # Sprints, PDL cycles and tasks
    # ------------------------------------------------------------------

    async def create_sprint(self, project_name: str, phase_id: str, sprint_name: str, duration_days: int = 14) -> Dict[str, Any]:
        result = await self._run(
            "create_sprint",
            self.tracker.create_sprint(project_name, phase_id, sprint_name, duration_days),
            project_name=project_name,
            phase_id=phase_id,
        )
        if result.get("success"):
            result["next_suggested_step"] = "update_sprint_pdl"
        return result

    async def update_sprint(self, project_name: str, sprint_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        return await self._run(
            "update_sprint",
            self.tracker.update_sprint(project_name, sprint_id, updates),
            project_name=project_name,
            sprint_id=sprint_id,
        )

    async def update_sprint_pdl(
        self,
        project_name: str,
        sprint_id: str,
        stage_number: int,
        updates: Dict[str, Any],
    ) -> Dict[str, Any]:
        return await self._run(
            "update_sprint_pdl",
            self.tracker.update_sprint_pdl(project_name, sprint_id, stage_number, updates),
            project_name=project_name,
            sprint_id=sprint_id,
            stage_number=stage_number,
        )

    async def advance_pdl_cycle(self, project_name: str, sprint_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
        return await self._run(
            "advance_pdl_cycle",
            self.tracker.advance_pdl_cycle(project_name, sprint_id, notes),
            project_name=project_name,
            sprint_id=sprint_id,
        )

    async def create_task(
        self,
        project_name: str,
        sprint_id: str,
        description: str,
        stage_number: Optional[int] = None,
        assignee: str = "",
        story_points: int = 0,
    ) -> Dict[str, Any]:
        return await self._run(
            "create_task",
            self.tracker.create_task(project_name, sprint_id, description, stage_number, assignee, story_points),
            project_name=project_name,
            sprint_id=sprint_id,
        )

    async def update_task(
        self,
        project_name: str,
        task_id: str,
        status: Optional[str] = None,
        assignee: Optional[str] = None,
        story_points: Optional[int] = None,
    ) -> Dict[str, Any]:
        return await self._run(
            "update_task",
            self.tracker.update_task(project_name, task_id, status, assignee, story_points),
            project_name=project_name,
            task_id=task_id,
        )

    # ------------------------------------------------------------------
    # Legacy vocabulary
    # ------------------------------------------------------------------

    async def get_phase(self, project_name: str, include_sprints: bool = False) -> Dict[str, Any]:
        return await self._run("get_phase", self.legacy.get_phase(project_name, include_sprints), project_name=project_name)

    async def update_phase(
        self,
        project_name: str,
        phase_number: Optional[int] = None,
        status: Optional[str] = None,
        completion_percentage: Optional[int] = None,
    ) -> Dict[str, Any]:
        return await self._run(
            "update_phase",
            self.legacy.update_phase(project_name, phase_number, status, completion_percentage),
            project_name=project_name,
        )

    async def track_progress(self, project_name: str, action: str) -> Dict[str, Any]:
        return await self._run(
            "track_progress",
            self.legacy.track_progress(project_name, action),
            project_name=project_name,
            action=action,
        )

    # ------------------------------------------------------------------
    # Documentation and session logs
    # ------------------------------------------------------------------

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
        return await self._run(
            "create_documentation",
            self.journal.create_documentation(
                project_name, name, path, summary_brief, creating_agent, phase_id, task_id
            ),
            project_name=project_name,
            document=name,
        )

    async def list_documentation(
        self,
        project_name: Optional[str] = None,
        phase_id: Optional[str] = None,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self._run(
            "list_documentation",
            self.journal.list_documentation(project_name, phase_id, search),
            project_name=project_name,
        )

    async def get_session_logs(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        return await self._run("get_session_logs", self.journal.get_session_logs(session_id), session_id=session_id)

    async def get_project_logs(
        self,
        project_name: str,
        session_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        return await self._run(
            "get_project_logs",
            self.journal.get_project_logs(project_name, session_id, limit),
            project_name=project_name,
        )

    async def list_sessions(self) -> Dict[str, Any]:
        return await self._run("list_sessions", self.journal.list_sessions())

    async def export_logs(
        self,
        format: str = "json",
        session_id: Optional[str] = None,
        project_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self._run(
            "export_logs",
            self.journal.export_logs(format, session_id, project_name),
            format=format,
            project_name=project_name,
        )

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def get_storage_info(self) -> Dict[str, Any]:
        backend = self.binding.to_dict() if self.binding else self.storage.describe()
        return {
            "success": True,
            "backend": backend,
            "session_id": self.session_id,
            "broadcast": self.hub.get_stats(),
        }
