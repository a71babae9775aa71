"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database to verify HTTP-level behavior:
caller resolution, error mapping and the progress embedded in write responses.
"""
from __future__ import annotations

import asyncio
import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from launchpad import score_model, services
from launchpad.models import Base, Role, User
from launchpad.notifier import ProgressEvent, Trigger, notifier
from launchpad.score_model import DEFAULT_SCORE_MODEL, FIELD_CATALOG, Section, Status

ADMIN = {"X-User-Id": "admin"}
OWNER = {"X-User-Id": "alice"}
STRANGER = {"X-User-Id": "mallory"}


@pytest.fixture()
def test_db():
    """Create a temporary SQLite in-memory database for testing.

    Uses StaticPool so all connections share the same in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = TestSession()
    session.add_all([
        User(id="admin", email="admin@launchpad.io", role=Role.ADMIN),
        User(id="alice", email="alice@token.io", role=Role.PROJECT),
        User(id="mallory", email="mallory@evil.io", role=Role.PROJECT),
    ])
    session.commit()
    session.close()
    return engine, TestSession


@pytest.fixture()
def client(test_db, tmp_path, monkeypatch):
    """FastAPI TestClient using in-memory database."""
    monkeypatch.setenv("LAUNCHPAD_DB", str(tmp_path / "launchpad.db"))
    monkeypatch.delenv("LAUNCHPAD_SCORE_MODEL", raising=False)
    engine, TestSession = test_db
    from launchpad.app import app, db_session, session_factory

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    app.dependency_overrides[session_factory] = lambda: TestSession
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    app.dependency_overrides.clear()
    services.progress_cache.clear()
    score_model.configure(DEFAULT_SCORE_MODEL)


@pytest.fixture()
def project_id(client):
    resp = client.post("/api/projects", json={"name": "MoonToken", "email": "team@moontoken.io"},
                       headers=OWNER)
    assert resp.status_code == 201
    return resp.json()["id"]


class TestCaller:
    def test_missing_header(self, client):
        assert client.get("/api/projects").status_code == 401

    def test_unknown_user(self, client):
        assert client.get("/api/projects", headers={"X-User-Id": "ghost"}).status_code == 401

    def test_me(self, client):
        resp = client.get("/api/me", headers=OWNER)
        assert resp.json() == {"id": "alice", "email": "alice@token.io", "role": "project"}

    def test_admin_creates_user(self, client):
        resp = client.post("/api/users", json={"id": "bob", "email": "bob@x.io"}, headers=ADMIN)
        assert resp.status_code == 201
        assert resp.json()["role"] == "project"

    def test_owner_cannot_create_user(self, client):
        resp = client.post("/api/users", json={"id": "bob"}, headers=OWNER)
        assert resp.status_code == 403

    def test_duplicate_user(self, client):
        resp = client.post("/api/users", json={"id": "alice"}, headers=ADMIN)
        assert resp.status_code == 409


class TestProjectEndpoints:
    def test_create_project(self, client):
        resp = client.post("/api/projects", json={"name": "MoonToken", "email": "team@moontoken.io"},
                           headers=OWNER)
        assert resp.status_code == 201
        data = resp.json()
        assert data["owner_id"] == "alice"
        assert data["overall"] == 0
        assert data["readiness"] == "needs_review"
        assert data["progress"]["progress"]["overall"] == 0
        assert set(data["ido_metrics"]) == {f.key for f in FIELD_CATALOG[Section.IDO_METRICS]}
        assert data["ido_metrics"]["network"]["status"] == "not_confirmed"

    def test_create_project_bad_email(self, client):
        resp = client.post("/api/projects", json={"name": "X", "email": "nope"}, headers=OWNER)
        assert resp.status_code == 422

    def test_list_projects(self, client, project_id):
        resp = client.get("/api/projects", headers=OWNER)
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 1
        assert data["items"][0]["id"] == project_id
        assert client.get("/api/projects", headers=STRANGER).json()["total"] == 0
        assert client.get("/api/projects", headers=ADMIN).json()["total"] == 1

    def test_list_projects_bad_readiness(self, client, project_id):
        resp = client.get("/api/projects", params={"readiness": "later"}, headers=ADMIN)
        assert resp.status_code == 400

    def test_get_project(self, client, project_id):
        assert client.get(f"/api/projects/{project_id}", headers=OWNER).status_code == 200
        assert client.get(f"/api/projects/{project_id}", headers=STRANGER).status_code == 403
        assert client.get("/api/projects/999", headers=OWNER).status_code == 404

    def test_delete_project(self, client, project_id):
        assert client.delete(f"/api/projects/{project_id}", headers=OWNER).status_code == 403
        assert client.delete(f"/api/projects/{project_id}", headers=ADMIN).json() == {"ok": True}
        assert client.get(f"/api/projects/{project_id}", headers=ADMIN).status_code == 404


class TestSectionEndpoints:
    def test_put_ido_metrics(self, client, project_id):
        resp = client.put(f"/api/projects/{project_id}/ido-metrics", headers=OWNER, json={
            "fields": {
                "ido_price": {"value": "0.05", "status": "confirmed"},
                "network": {"value": "ETH", "status": "might_change"},
            },
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["section"] == "idoMetrics"
        assert data["fields"]["ido_price"]["value"] == "0.05"
        assert data["fields"]["network"]["status"] == "might_change"
        assert data["progress"]["progress"]["idoMetrics"] == 5
        assert "Network" in data["progress"]["missingFields"]["idoMetrics"]

    def test_put_platform_content_all_confirmed(self, client, project_id):
        fields = {f.key: {"status": "confirmed"} for f in FIELD_CATALOG[Section.PLATFORM_CONTENT]}
        resp = client.put(f"/api/projects/{project_id}/platform-content", headers=OWNER,
                          json={"fields": fields})
        assert resp.json()["progress"]["progress"]["platformContent"] == 100
        assert resp.json()["progress"]["progress"]["overall"] == 25

    def test_put_marketing_assets_invalid_url(self, client, project_id):
        resp = client.put(f"/api/projects/{project_id}/marketing-assets", headers=OWNER,
                          json={"fields": {"logo_url": {"value": "not a url"}}})
        assert resp.status_code == 400
        assert "Logo" in resp.json()["detail"]

    def test_invalid_status_value(self, client, project_id):
        resp = client.put(f"/api/projects/{project_id}/marketing-assets", headers=OWNER,
                          json={"fields": {"logo_url": {"status": "approved"}}})
        assert resp.status_code == 422

    def test_stranger_cannot_write(self, client, project_id):
        resp = client.put(f"/api/projects/{project_id}/marketing-assets", headers=STRANGER,
                          json={"fields": {"logo_url": {"status": "confirmed"}}})
        assert resp.status_code == 403

    def test_patch_status(self, client, project_id):
        resp = client.patch(f"/api/projects/{project_id}/status", headers=OWNER, json={
            "section": "marketingAssets", "field": "hero_banner_url", "status": "confirmed",
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "confirmed"
        assert data["progress"]["progress"]["marketingAssets"] == 33
        assert data["progress"]["missingFields"]["marketingAssets"] == ["Logo", "Drive Folder"]

    def test_patch_status_on_count_section(self, client, project_id):
        resp = client.patch(f"/api/projects/{project_id}/status", headers=OWNER, json={
            "section": "faqs", "field": "question", "status": "confirmed",
        })
        assert resp.status_code == 400


class TestItemEndpoints:
    def test_faq_lifecycle(self, client, project_id):
        resp = client.post(f"/api/projects/{project_id}/faqs", headers=OWNER,
                           json={"question": "What is MoonToken?", "answer": "A token."})
        assert resp.status_code == 201
        faq_id = resp.json()["faq"]["id"]
        assert resp.json()["progress"]["progress"]["faqs"] == 20
        assert resp.json()["progress"]["missingFields"]["faqs"] == ["Need 4 more FAQ(s)"]

        resp = client.put(f"/api/faqs/{faq_id}", headers=OWNER, json={"status": "confirmed"})
        assert resp.json()["faq"]["status"] == "confirmed"

        resp = client.delete(f"/api/faqs/{faq_id}", headers=OWNER)
        assert resp.json()["faq"] is None
        assert resp.json()["progress"]["progress"]["faqs"] == 0

    def test_faq_limit(self, client, project_id):
        for i in range(5):
            client.post(f"/api/projects/{project_id}/faqs", headers=OWNER,
                        json={"question": f"Q{i}?", "answer": f"A{i}"})
        resp = client.post(f"/api/projects/{project_id}/faqs", headers=OWNER,
                           json={"question": "Q6?", "answer": "A6"})
        assert resp.status_code == 400

    def test_faq_of_other_project(self, client, project_id):
        faq_id = client.post(f"/api/projects/{project_id}/faqs", headers=OWNER,
                             json={"question": "Q?", "answer": "A"}).json()["faq"]["id"]
        assert client.delete(f"/api/faqs/{faq_id}", headers=STRANGER).status_code == 403
        assert client.delete("/api/faqs/999", headers=OWNER).status_code == 404

    def test_quiz_questions(self, client, project_id):
        for i in range(5):
            resp = client.post(f"/api/projects/{project_id}/quiz-questions", headers=OWNER, json={
                "question": f"Q{i}?", "correct_answer": "yes", "wrong_answers": ["no", "maybe"],
            })
            assert resp.status_code == 201
        assert resp.json()["quiz_question"]["options"] == ["yes", "no", "maybe"]
        assert resp.json()["progress"]["progress"]["quizQuestions"] == 100
        assert resp.json()["progress"]["progress"]["overall"] == 10

    def test_quiz_needs_two_wrong_answers(self, client, project_id):
        resp = client.post(f"/api/projects/{project_id}/quiz-questions", headers=OWNER, json={
            "question": "Q?", "correct_answer": "yes", "wrong_answers": ["no"],
        })
        assert resp.status_code == 422

    def test_update_and_delete_quiz_question(self, client, project_id):
        q_id = client.post(f"/api/projects/{project_id}/quiz-questions", headers=OWNER, json={
            "question": "Q?", "correct_answer": "yes", "wrong_answers": ["no", "maybe", "never"],
        }).json()["quiz_question"]["id"]
        resp = client.put(f"/api/quiz-questions/{q_id}", headers=OWNER, json={"question": "Really?"})
        assert resp.json()["quiz_question"]["question"] == "Really?"
        resp = client.delete(f"/api/quiz-questions/{q_id}", headers=OWNER)
        assert resp.json()["progress"]["progress"]["quizQuestions"] == 0


class TestProgressEndpoints:
    def test_progress_shape(self, client, project_id):
        resp = client.get(f"/api/progress/{project_id}", headers=OWNER)
        assert resp.status_code == 200
        data = resp.json()
        assert set(data) == {"progress", "missingFields", "lastUpdated"}
        assert set(data["progress"]) == {s.value for s in Section} | {"overall"}
        assert data["missingFields"]["faqs"] == ["Need 5 more FAQ(s)"]

    def test_progress_errors(self, client, project_id):
        assert client.get(f"/api/progress/{project_id}", headers=STRANGER).status_code == 403
        assert client.get("/api/progress/999", headers=STRANGER).status_code == 404
        assert client.get(f"/api/progress/{project_id}").status_code == 401

    def test_admin_can_read_any_project(self, client, project_id):
        assert client.get(f"/api/progress/{project_id}", headers=ADMIN).status_code == 200

    def test_recalculate(self, client, project_id):
        resp = client.post(f"/api/progress/{project_id}/recalculate", headers=OWNER)
        assert resp.status_code == 200
        assert resp.json()["progress"]["overall"] == 0

    def test_write_then_read(self, client, project_id):
        client.patch(f"/api/projects/{project_id}/status", headers=OWNER, json={
            "section": "idoMetrics", "field": "network", "status": "confirmed",
        })
        resp = client.get(f"/api/progress/{project_id}", headers=OWNER)
        assert resp.json()["progress"]["idoMetrics"] == 5

    def test_unconfigured_model_is_unavailable(self, client, project_id):
        score_model.reset()
        services.progress_cache.clear()
        assert client.get(f"/api/progress/{project_id}", headers=OWNER).status_code == 503
        assert client.get("/api/score-model").status_code == 503

    def test_score_model(self, client):
        data = client.get("/api/score-model").json()
        weights = {s["section"]: s["weight"] for s in data["sections"]}
        assert weights == {"idoMetrics": 0.35, "platformContent": 0.25, "faqs": 0.15,
                           "quizQuestions": 0.1, "marketingAssets": 0.15}

    def test_event_stream_errors(self, client, project_id):
        assert client.get(f"/api/progress/{project_id}/events", headers=STRANGER).status_code == 403
        assert client.get("/api/progress/999/events", headers=OWNER).status_code == 404


# ---------------------------------------------------------------------------
# Event stream
# ---------------------------------------------------------------------------


@pytest.fixture()
def stream_project(test_db):
    """A committed project plus the session factory the stream reads with."""
    engine, TestSession = test_db
    services.progress_cache.clear()
    session = TestSession()
    try:
        project = services.create_project(session, services.Caller("alice", Role.PROJECT),
                                          "MoonToken", "team@moontoken.io")
        session.commit()
        project_id = project.id
    finally:
        session.close()
    yield TestSession, project_id
    services.progress_cache.clear()


def _open_stream(TestSession, project_id, is_disconnected=None):
    from launchpad.app import progress_stream

    caller = services.Caller("alice", Role.PROJECT)
    session = TestSession()
    try:
        initial = services.project_progress(session, caller, project_id)
    finally:
        session.close()
    return progress_stream(project_id, caller, initial, TestSession, is_disconnected)


async def _next_frame(stream) -> dict:
    frame = await asyncio.wait_for(stream.__anext__(), 5)
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


class TestProgressStream:
    @pytest.mark.asyncio
    async def test_initial_frame(self, stream_project):
        TestSession, project_id = stream_project
        stream = _open_stream(TestSession, project_id)
        try:
            frame = await _next_frame(stream)
            assert frame["type"] == "initial"
            assert frame["progress"]["overall"] == 0
            assert set(frame) == {"type", "progress", "missingFields", "lastUpdated"}
            assert notifier.subscriber_count(project_id) == 1
        finally:
            await stream.aclose()
        assert notifier.subscriber_count(project_id) == 0

    @pytest.mark.asyncio
    async def test_committed_write_is_pushed(self, stream_project):
        TestSession, project_id = stream_project
        stream = _open_stream(TestSession, project_id)
        try:
            await _next_frame(stream)
            writer = TestSession()
            try:
                services.set_field_status(writer, services.Caller("alice", Role.PROJECT), project_id,
                                          Section.MARKETING_ASSETS, "logo_url", Status.CONFIRMED)
                writer.commit()
            finally:
                writer.close()
            frame = await _next_frame(stream)
            assert frame["type"] == "status_confirmed"
            assert frame["progress"]["marketingAssets"] == 33
            assert "Logo" not in frame["missingFields"]["marketingAssets"]
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_manual_refresh_is_pushed(self, stream_project):
        TestSession, project_id = stream_project
        stream = _open_stream(TestSession, project_id)
        try:
            await _next_frame(stream)
            session = TestSession()
            try:
                services.recalculate_progress(session, services.Caller("admin", Role.ADMIN), project_id)
            finally:
                session.close()
            frame = await _next_frame(stream)
            assert frame["type"] == "manual_refresh"
            assert frame["progress"]["overall"] == 0
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_poll_frame_without_writes(self, stream_project, monkeypatch):
        TestSession, project_id = stream_project
        monkeypatch.setattr(notifier, "poll_interval", 0.05)
        stream = _open_stream(TestSession, project_id)
        try:
            await _next_frame(stream)
            frame = await _next_frame(stream)
            assert frame["type"] == "poll"
            assert frame["progress"]["overall"] == 0
        finally:
            await stream.aclose()

    @pytest.mark.asyncio
    async def test_deleted_project_closes_stream(self, stream_project):
        TestSession, project_id = stream_project
        stream = _open_stream(TestSession, project_id)
        try:
            await _next_frame(stream)
            session = TestSession()
            try:
                services.delete_project(session, services.Caller("admin", Role.ADMIN), project_id)
                session.commit()
            finally:
                session.close()
            frame = await _next_frame(stream)
            assert frame == {"type": "closed", "detail": f"Project {project_id} not found"}
            with pytest.raises(StopAsyncIteration):
                await stream.__anext__()
        finally:
            await stream.aclose()
        assert notifier.subscriber_count(project_id) == 0

    @pytest.mark.asyncio
    async def test_disconnected_viewer_ends_stream(self, stream_project):
        TestSession, project_id = stream_project

        async def gone():
            return True

        stream = _open_stream(TestSession, project_id, is_disconnected=gone)
        try:
            await _next_frame(stream)
            notifier.publish(ProgressEvent(project_id, Trigger.MANUAL_REFRESH))
            with pytest.raises(StopAsyncIteration):
                await asyncio.wait_for(stream.__anext__(), 5)
        finally:
            await stream.aclose()
        assert notifier.subscriber_count(project_id) == 0
