"""Backward-compatible tool surface over the canonical roadmap model.

Older clients speak of the project's "phase" as its single current
stage of work. These calls translate that view onto the roadmap: the
current phase is the one in progress, and projects without a roadmap
get a synthetic first-stage answer instead of an error.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from .lifecycle import ProjectTracker
from .models import PDL_STAGE_NAMES


TRACK_ACTIONS = ("get_sprints", "get_timeline", "create_sprint", "update_sprint")


class LegacyAdapter:
    """Translate legacy calls into ProjectTracker operations."""

    def __init__(self, tracker: ProjectTracker):
        self.tracker = tracker

    async def initialize_project(
        self,
        project_name: str,
        description: str = "",
        team_composition: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        await self.tracker.create_project(project_name, description, team_composition)
        return {
            "success": True,
            "project_name": project_name,
            "roadmap_created": False,
            "message": (
                f"Project '{project_name}' initialized successfully. "
                "Use create_roadmap to set up the project roadmap."
            ),
        }

    async def get_phase(self, project_name: str, include_sprints: bool = False) -> Dict[str, Any]:
        project = await self.tracker.load_project(project_name)

        if project.roadmap is None or not project.roadmap.phases:
            return {
                "project_name": project_name,
                "current_phase": {
                    "phase_number": 1,
                    "phase_name": PDL_STAGE_NAMES[1],
                    "status": "not_started",
                    "completion_percentage": 0,
                },
                "sprints": [],
            }

        current = project.roadmap.current_phase()
        response: Dict[str, Any] = {
            "project_name": project_name,
            "current_phase": (current or project.roadmap.phases[0]).to_dict(),
        }
        if include_sprints and current is not None:
            response["sprints"] = [sprint.to_dict() for sprint in current.sprints]
        return response

    async def update_phase(
        self,
        project_name: str,
        phase_number: Optional[int] = None,
        status: Optional[str] = None,
        completion_percentage: Optional[int] = None,
    ) -> Dict[str, Any]:
        project = await self.tracker.load_project(project_name)
        roadmap = project.roadmap
        current = roadmap.current_phase() if roadmap else None

        if current is not None:
            result = await self.tracker.update_roadmap_phase(
                project_name,
                current.phase_id,
                {"status": status, "completion_percentage": completion_percentage},
            )
            updated = result["updated_phase"]
            return {
                "success": True,
                "project_name": project_name,
                "updated_phase": {
                    "phase_number": roadmap.phases.index(current) + 1,
                    "phase_name": updated["phase_name"],
                    "status": updated["status"],
                    "completion_percentage": updated["completion_percentage"],
                },
                "message": "Phase updated successfully",
            }

        number = phase_number or 1
        if number not in PDL_STAGE_NAMES:
            raise ValueError(f"phase_number must be 1-{len(PDL_STAGE_NAMES)}, got: {number}")
        return {
            "success": True,
            "project_name": project_name,
            "updated_phase": {
                "phase_number": number,
                "phase_name": PDL_STAGE_NAMES[number],
                "status": status or "not_started",
                "completion_percentage": completion_percentage or 0,
            },
            "message": f"Phase {number} updated successfully",
        }

    async def track_progress(self, project_name: str, action: str) -> Dict[str, Any]:
        if action not in TRACK_ACTIONS:
            raise ValueError(f"Unknown action: {action}. Must be one of: {', '.join(TRACK_ACTIONS)}")

        project = await self.tracker.load_project(project_name)
        roadmap = project.roadmap
        response = {"success": True, "project_name": project_name, "action": action}

        if action == "get_sprints":
            response["data"] = [sprint.to_dict() for sprint in roadmap.all_sprints()] if roadmap else []
        elif action == "get_timeline":
            response["data"] = [
                {
                    "phase_name": phase.phase_name,
                    "status": phase.status,
                    "start_date": phase.start_date,
                    "end_date": phase.end_date,
                    "completion_percentage": phase.completion_percentage,
                    "sprints": [sprint.to_dict() for sprint in phase.sprints],
                }
                for phase in roadmap.phases
            ] if roadmap else []
        else:
            response["success"] = False
            response["data"] = "Please use the roadmap sprint functions for sprint management"
        return response
