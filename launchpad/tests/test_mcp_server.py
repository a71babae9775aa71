"""Tests for the MCP tools, run against a temporary SQLite file.

The tool functions are plain callables once registered, so they are invoked
directly the way an MCP client would trigger them.
"""
from __future__ import annotations

import pytest

from launchpad import db, mcp_server, score_model, services
from launchpad.score_model import DEFAULT_SCORE_MODEL


@pytest.fixture()
def tools(tmp_path):
    db.init_db(tmp_path / "mcp.db")
    services.progress_cache.clear()
    assert mcp_server.create_user("alice", "alice@token.io")["role"] == "project"
    yield mcp_server
    services.progress_cache.clear()
    score_model.configure(DEFAULT_SCORE_MODEL)


@pytest.fixture()
def project_id(tools):
    created = tools.create_project("MoonToken", "team@moontoken.io", "alice")
    assert created["owner_id"] == "alice"
    return created["id"]


class TestImports:
    def test_import_mcp_server(self):
        from launchpad.mcp_server import OPERATOR, mcp
        assert mcp is not None
        assert OPERATOR.is_admin


class TestUserTools:
    def test_duplicate_user(self, tools):
        assert "already exists" in tools.create_user("alice")["error"]

    def test_bad_role(self, tools):
        assert tools.create_user("bob", role="superuser") == {"error": "role must be admin or project"}


class TestProjectTools:
    def test_new_project_progress(self, tools, project_id):
        data = tools.get_progress(project_id)
        assert data["progress"]["overall"] == 0
        assert set(data) == {"progress", "missingFields", "lastUpdated"}
        assert data["missingFields"]["faqs"] == ["Need 5 more FAQ(s)"]

    def test_create_for_unknown_owner(self, tools):
        assert "not found" in tools.create_project("X", "x@x.io", "ghost")["error"]

    def test_set_field_status(self, tools, project_id):
        data = tools.set_field_status(project_id, "marketingAssets", "logo_url", "confirmed")
        assert data["progress"]["marketingAssets"] == 33
        assert "Logo" not in data["missingFields"]["marketingAssets"]

    def test_list_projects(self, tools, project_id):
        tools.set_field_status(project_id, "marketingAssets", "logo_url", "confirmed")
        listing = tools.list_projects()
        assert listing["total"] == 1
        assert listing["items"][0]["overall"] == 5
        assert listing["items"][0]["readiness"] == "needs_review"
        assert tools.list_projects(readiness="ready_for_launch") == {"items": [], "total": 0}

    def test_recalculate_progress(self, tools, project_id):
        assert tools.recalculate_progress(project_id)["progress"]["overall"] == 0

    def test_score_model(self, tools):
        weights = {s["section"]: s["weight"] for s in tools.get_score_model()["sections"]}
        assert weights["idoMetrics"] == 0.35


class TestToolErrors:
    def test_unknown_project(self, tools):
        assert tools.get_progress(999) == {"error": "Project 999 not found"}
        assert "error" in tools.recalculate_progress(999)

    @pytest.mark.parametrize("section, field, status", [
        ("nonsense", "logo_url", "confirmed"),
        ("marketingAssets", "logo_url", "maybe"),
        ("marketingAssets", "mascot", "confirmed"),
        ("faqs", "question", "confirmed"),
    ])
    def test_bad_status_change(self, tools, project_id, section, field, status):
        assert "error" in tools.set_field_status(project_id, section, field, status)
        assert tools.get_progress(project_id)["progress"]["overall"] == 0

    def test_bad_readiness(self, tools):
        assert "readiness must be one of" in tools.list_projects(readiness="soon")["error"]

    def test_unconfigured_model(self, tools, project_id):
        score_model.reset()
        services.progress_cache.clear()
        assert "not configured" in tools.get_score_model()["error"]
        assert "not configured" in tools.get_progress(project_id)["error"]
