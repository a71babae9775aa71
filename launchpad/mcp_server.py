from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from launchpad import score_model, services
from launchpad.db import init_db, session_scope
from launchpad.models import Role
from launchpad.schemas import ProgressOut, ProjectOut
from launchpad.score_model import ConfigurationError, Section, Status

log = logging.getLogger(__name__)

# Tools run on behalf of the operator, who has the administrator role.
OPERATOR = services.Caller(user_id="operator", role=Role.ADMIN)

_TOOL_ERRORS = (services.NotFoundError, services.AuthorizationError,
                services.InvalidInputError, ConfigurationError)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def launchpad_lifespan(server: FastMCP) -> AsyncIterator[None]:
    score_model.configure()
    init_db()
    yield


mcp = FastMCP(
    "Launchpad",
    instructions=(
        "Launchpad tracks how ready IDO projects are for launch. "
        "Use list_projects() for an overview with overall progress, then "
        "get_progress(id) for the per-section breakdown and what is still missing."
    ),
    lifespan=launchpad_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _progress_json(payload: dict) -> dict:
    return ProgressOut.model_validate(payload).model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("launchpad://overview")
def launchpad_overview() -> str:
    """Sections, statuses and readiness labels."""
    return json.dumps({
        "system": "Launchpad: launch-readiness tracking for IDO projects",
        "sections": [s.value for s in Section],
        "statuses": [s.value for s in Status],
        "readiness": {
            "ready_for_launch": "overall progress of 90% or more",
            "in_progress": "overall progress of 60% or more",
            "needs_review": "below 60%",
        },
        "progress": (
            "Field sections count confirmed fields, FAQs and quiz questions count "
            "complete items against a minimum. The overall value is the weighted sum."
        ),
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Projects & progress
# ---------------------------------------------------------------------------


@mcp.tool()
def list_projects(readiness: str | None = None) -> dict:
    """List all projects with their overall progress.

    Args:
        readiness: Optional filter: ready_for_launch, in_progress or needs_review.
    """
    with session_scope() as session:
        try:
            items = services.list_projects(session, OPERATOR, readiness=readiness)
        except _TOOL_ERRORS as exc:
            return {"error": str(exc)}
        return {
            "items": [ProjectOut.model_validate(item).model_dump(mode="json") for item in items],
            "total": len(items),
        }


@mcp.tool()
def get_progress(project_id: int) -> dict:
    """Per-section progress, overall progress and missing fields for one project."""
    with session_scope() as session:
        try:
            return _progress_json(services.project_progress(session, OPERATOR, project_id))
        except _TOOL_ERRORS as exc:
            return {"error": str(exc)}


@mcp.tool()
def recalculate_progress(project_id: int) -> dict:
    """Recompute a project's progress from scratch and notify open viewers."""
    with session_scope() as session:
        try:
            return _progress_json(services.recalculate_progress(session, OPERATOR, project_id))
        except _TOOL_ERRORS as exc:
            return {"error": str(exc)}


@mcp.tool()
def get_score_model() -> dict:
    """Section weights, minimum item counts and the fields that count toward progress."""
    try:
        return score_model.get_score_model().describe()
    except ConfigurationError as exc:
        return {"error": str(exc)}


@mcp.tool()
def create_user(user_id: str, email: str = "", role: str = "project") -> dict:
    """Create a user account. Role is admin or project."""
    try:
        parsed_role = Role(role)
    except ValueError:
        return {"error": "role must be admin or project"}
    with session_scope() as session:
        try:
            user = services.create_user(session, OPERATOR, user_id.strip(), email, parsed_role)
        except _TOOL_ERRORS as exc:
            return {"error": str(exc)}
        session.commit()
        return {"id": user.id, "email": user.email, "role": user.role.value}


@mcp.tool()
def create_project(name: str, email: str, owner_id: str) -> dict:
    """Create a project owned by an existing user. All sections start not confirmed."""
    with session_scope() as session:
        try:
            project = services.create_project(session, OPERATOR, name, email, owner_id)
        except _TOOL_ERRORS as exc:
            return {"error": str(exc)}
        session.commit()
        return {"id": project.id, "name": project.name, "owner_id": project.owner_id}


@mcp.tool()
def set_field_status(project_id: int, section: str, field: str, status: str) -> dict:
    """Set the status of one field and return the project's updated progress.

    Args:
        project_id: Project to change.
        section: idoMetrics, platformContent or marketingAssets.
        field: Field key, e.g. "ido_price" or "tagline".
        status: confirmed, not_confirmed or might_change.
    """
    try:
        parsed_section, parsed_status = Section(section), Status(status)
    except ValueError as exc:
        return {"error": str(exc)}
    with session_scope() as session:
        try:
            services.set_field_status(session, OPERATOR, project_id, parsed_section, field, parsed_status)
            session.commit()
            return _progress_json(services.project_progress(session, OPERATOR, project_id))
        except _TOOL_ERRORS as exc:
            return {"error": str(exc)}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Launchpad MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
