"""MCP server exposing PDL roadmap tracking tools."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from pdl.pdl_logging import setup_logging
from pdl.settings import load_settings
from pdl.workflow import PDLService
from pdl.ws_server import serve


logger = logging.getLogger("pdl.server")

_service: Optional[PDLService] = None


def _get_service() -> PDLService:
    global _service
    if _service is None:
        _service = PDLService.from_settings(load_settings())
    return _service


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    settings = load_settings()
    setup_logging(settings.log_level, settings.log_file)
    service = _get_service()

    background: List[asyncio.Task] = []
    if settings.ws_enabled:
        background.append(asyncio.create_task(serve(service.hub, settings.ws_host, settings.ws_port)))
        background.append(asyncio.create_task(service.hub.run_heartbeat(settings.heartbeat_seconds)))

    try:
        yield
    finally:
        for task in background:
            task.cancel()
        for task in background:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await service.hub.flush()


mcp = FastMCP("pdl", lifespan=lifespan)


# ----------------------------------------------------------------------
# Projects
# ----------------------------------------------------------------------


@mcp.tool()
async def initialize_project(
    project_name: str,
    description: str = "",
    team_composition: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """STEP 1: Create a new project. A roadmap is added afterwards with create_roadmap."""

    return await _get_service().initialize_project(project_name, description, team_composition)


@mcp.tool()
async def list_projects(include_summary: bool = True) -> Dict[str, Any]:
    """Enumerate projects in the active store, optionally with progress summaries."""

    return await _get_service().list_projects(include_summary)


@mcp.tool()
async def get_project(project_name: str) -> Dict[str, Any]:
    """Return the full project document including roadmap and activity log."""

    return await _get_service().get_project(project_name)


@mcp.resource("pdl://projects")
async def resource_projects() -> str:
    """Resource view listing tracked projects and their progress."""

    result = await _get_service().list_projects(include_summary=True)
    projects = result.get("projects") or []
    if not projects:
        return "No projects have been initialized yet."

    lines = ["PDL Projects"]
    for project in projects:
        lines.append("")
        lines.append(f"- {project['project_name']}: {project['overall_progress']}% complete")
        lines.append(f"  Phases: {project['phase_count']}, sprints: {project['sprint_count']}")
    return "\n".join(lines)


# ----------------------------------------------------------------------
# Roadmaps
# ----------------------------------------------------------------------


@mcp.tool()
async def create_roadmap(
    project_name: str,
    vision: str,
    phases: List[Dict[str, Any]],
    milestones: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """STEP 2: Create the project roadmap.
    Each phase takes name, description, objective, duration_weeks, deliverables and success_metrics.
    Milestones take name, description, phase_index and weeks_into_phase."""

    return await _get_service().create_roadmap(project_name, vision, phases, milestones)


@mcp.tool()
async def get_roadmap(project_name: str, include_details: bool = True) -> Dict[str, Any]:
    """Return the roadmap with the current phase, active sprint and its PDL cycle."""

    return await _get_service().get_roadmap(project_name, include_details)


@mcp.tool()
async def update_roadmap_phase(
    project_name: str,
    phase_id: str,
    status: Optional[str] = None,
    completion_percentage: Optional[int] = None,
    deliverables: Optional[List[str]] = None,
    success_metrics: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Update a phase's status or progress; overall progress and dates are recomputed."""

    updates = {
        "status": status,
        "completion_percentage": completion_percentage,
        "deliverables": deliverables,
        "success_metrics": success_metrics,
    }
    return await _get_service().update_roadmap_phase(project_name, phase_id, updates)


@mcp.tool()
async def update_milestone(project_name: str, milestone_id: str, status: str) -> Dict[str, Any]:
    """Mark a milestone pending, achieved or missed."""

    return await _get_service().update_milestone(project_name, milestone_id, status)


@mcp.tool()
async def insert_phase(
    project_name: str,
    name: str,
    description: str = "",
    objective: str = "",
    duration_weeks: int = 4,
    deliverables: Optional[List[str]] = None,
    success_metrics: Optional[List[str]] = None,
    position: Optional[int] = None,
) -> Dict[str, Any]:
    """Insert a phase at position (default: end); later phase dates shift accordingly."""

    phase_spec = {
        "name": name,
        "description": description,
        "objective": objective,
        "duration_weeks": duration_weeks,
        "deliverables": deliverables or [],
        "success_metrics": success_metrics or [],
    }
    return await _get_service().insert_phase(project_name, phase_spec, position)


@mcp.tool()
async def delete_phase(project_name: str, phase_id: str, reassign_to: Optional[str] = None) -> Dict[str, Any]:
    """Delete a phase. Its sprints move to reassign_to when given, otherwise they are discarded and reported."""

    return await _get_service().delete_phase(project_name, phase_id, reassign_to)


@mcp.tool()
async def reorder_phases(project_name: str, phase_order: List[str]) -> Dict[str, Any]:
    """Reorder phases by id; omitted phases are kept and appended at the end."""

    return await _get_service().reorder_phases(project_name, phase_order)


# ----------------------------------------------------------------------
# Sprints
# ----------------------------------------------------------------------


@mcp.tool()
async def create_sprint(project_name: str, phase_id: str, sprint_name: str, duration_days: int = 14) -> Dict[str, Any]:
    """STEP 3: Append a sprint to a phase, starting its first PDL cycle."""

    return await _get_service().create_sprint(project_name, phase_id, sprint_name, duration_days)


@mcp.tool()
async def update_sprint(
    project_name: str,
    sprint_id: str,
    status: Optional[str] = None,
    velocity: Optional[int] = None,
    burn_down: Optional[List[int]] = None,
    retrospective: Optional[str] = None,
) -> Dict[str, Any]:
    """Update a sprint's status, velocity, burn-down series or retrospective."""

    updates = {
        "status": status,
        "velocity": velocity,
        "burn_down": burn_down,
        "retrospective": retrospective,
    }
    return await _get_service().update_sprint(project_name, sprint_id, updates)


@mcp.tool()
async def insert_sprint(
    project_name: str,
    phase_id: str,
    sprint_name: str,
    duration_days: int = 14,
    position: Optional[int] = None,
) -> Dict[str, Any]:
    """Insert a sprint into a phase at position (default: end) and renumber the phase."""

    sprint_spec = {"sprint_name": sprint_name, "duration_days": duration_days}
    return await _get_service().insert_sprint(project_name, phase_id, sprint_spec, position)


@mcp.tool()
async def delete_sprint(project_name: str, sprint_id: str, reassign_to: Optional[str] = None) -> Dict[str, Any]:
    """Delete a sprint. Its PDL cycles move to the reassign_to sprint when given, otherwise they are discarded."""

    return await _get_service().delete_sprint(project_name, sprint_id, reassign_to)


@mcp.tool()
async def reorder_sprints(project_name: str, moves: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Move sprints between phases. Each move is {sprint_id, target_phase_id, position}."""

    return await _get_service().reorder_sprints(project_name, moves)


@mcp.tool()
async def reorder_phase_sprints(project_name: str, phase_id: str, sprint_order: List[str]) -> Dict[str, Any]:
    """Reorder the sprints of one phase; omitted sprints are appended at the end."""

    return await _get_service().reorder_phase_sprints(project_name, phase_id, sprint_order)


# ----------------------------------------------------------------------
# PDL cycles and tasks
# ----------------------------------------------------------------------


@mcp.tool()
async def update_sprint_pdl(
    project_name: str,
    sprint_id: str,
    stage_number: int,
    status: Optional[str] = None,
    completion_percentage: Optional[int] = None,
    blockers: Optional[List[str]] = None,
    deliverables: Optional[List[str]] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Update one of the seven PDL stages in the sprint's current cycle."""

    updates = {
        "status": status,
        "completion_percentage": completion_percentage,
        "blockers": blockers,
        "deliverables": deliverables,
        "notes": notes,
    }
    return await _get_service().update_sprint_pdl(project_name, sprint_id, stage_number, updates)


@mcp.tool()
async def advance_pdl_cycle(project_name: str, sprint_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
    """Complete the current PDL stage and move to the next; stage 7 closes the cycle."""

    return await _get_service().advance_pdl_cycle(project_name, sprint_id, notes)


@mcp.tool()
async def create_task(
    project_name: str,
    sprint_id: str,
    description: str,
    stage_number: Optional[int] = None,
    assignee: str = "",
    story_points: int = 0,
) -> Dict[str, Any]:
    """Add a task to the sprint's current PDL cycle."""

    return await _get_service().create_task(project_name, sprint_id, description, stage_number, assignee, story_points)


@mcp.tool()
async def update_task(
    project_name: str,
    task_id: str,
    status: Optional[str] = None,
    assignee: Optional[str] = None,
    story_points: Optional[int] = None,
) -> Dict[str, Any]:
    """Update a task's status, assignee or story points."""

    return await _get_service().update_task(project_name, task_id, status, assignee, story_points)


# ----------------------------------------------------------------------
# Legacy vocabulary
# ----------------------------------------------------------------------


@mcp.tool()
async def get_phase(project_name: str, include_sprints: bool = False) -> Dict[str, Any]:
    """Legacy: return the project's current phase."""

    return await _get_service().get_phase(project_name, include_sprints)


@mcp.tool()
async def update_phase(
    project_name: str,
    phase_number: Optional[int] = None,
    status: Optional[str] = None,
    completion_percentage: Optional[int] = None,
) -> Dict[str, Any]:
    """Legacy: update the project's current phase."""

    return await _get_service().update_phase(project_name, phase_number, status, completion_percentage)


@mcp.tool()
async def track_progress(project_name: str, action: str) -> Dict[str, Any]:
    """Legacy: get_sprints or get_timeline; sprint changes go through the roadmap tools."""

    return await _get_service().track_progress(project_name, action)


# ----------------------------------------------------------------------
# Documentation and session logs
# ----------------------------------------------------------------------


@mcp.tool()
async def create_documentation(
    project_name: str,
    name: str,
    path: str,
    summary_brief: str = "",
    creating_agent: str = "",
    phase_id: Optional[str] = None,
    task_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Link a document to a project, optionally to one of its phases or tasks."""

    return await _get_service().create_documentation(
        project_name, name, path, summary_brief, creating_agent, phase_id, task_id
    )


@mcp.tool()
async def list_documentation(
    project_name: Optional[str] = None,
    phase_id: Optional[str] = None,
    search: Optional[str] = None,
) -> Dict[str, Any]:
    """List linked documents, across all projects when no project is named."""

    return await _get_service().list_documentation(project_name, phase_id, search)


@mcp.tool()
async def get_session_logs(session_id: Optional[str] = None) -> Dict[str, Any]:
    """Every command a session logged, oldest first. Defaults to the current session."""

    return await _get_service().get_session_logs(session_id)


@mcp.tool()
async def get_project_logs(
    project_name: str,
    session_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    """A project's activity log, optionally narrowed to one session."""

    return await _get_service().get_project_logs(project_name, session_id, limit)


@mcp.tool()
async def list_sessions() -> Dict[str, Any]:
    """Summaries of every session that has written to the store."""

    return await _get_service().list_sessions()


@mcp.tool()
async def export_logs(
    format: str = "json",
    session_id: Optional[str] = None,
    project_name: Optional[str] = None,
) -> Dict[str, Any]:
    """Export a session's or a project's log as json, csv or markdown."""

    return await _get_service().export_logs(format, session_id, project_name)


# ----------------------------------------------------------------------
# Diagnostics
# ----------------------------------------------------------------------


@mcp.tool()
def get_storage_info() -> Dict[str, Any]:
    """Report which storage backend is active, why it was chosen, and broadcast statistics."""

    return _get_service().get_storage_info()


if __name__ == "__main__":
    mcp.run(transport="stdio")
