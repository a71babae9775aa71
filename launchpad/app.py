from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Generator

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from launchpad import score_model, services
from launchpad.db import get_session, init_db
from launchpad.notifier import notifier
from launchpad.schemas import (
    FaqCreate,
    FaqUpdate,
    FaqWriteOut,
    ProgressOut,
    ProjectCreate,
    ProjectDetail,
    ProjectListResponse,
    QuizQuestionCreate,
    QuizQuestionUpdate,
    QuizQuestionWriteOut,
    SectionUpdate,
    SectionWriteOut,
    StatusUpdate,
    StatusWriteOut,
    UserCreate,
    UserOut,
)
from launchpad.score_model import ConfigurationError, Section
from launchpad.services import Caller

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    score_model.configure()
    services.progress_cache.clear()
    init_db()
    yield


app = FastAPI(
    title="Launchpad",
    version="0.1.0",
    description=(
        "Launch-readiness tracking for IDO projects. Projects fill in their "
        "token metrics, platform content, FAQs, quiz questions and marketing "
        "assets; every response carries the weighted completion progress. "
        "Callers identify themselves with the X-User-Id header."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Users", "description": "Admin and project accounts."},
        {"name": "Projects", "description": "Create, browse and delete launch projects."},
        {"name": "Sections", "description": "IDO metrics, platform content and marketing assets."},
        {"name": "FAQs", "description": "Up to five FAQs per project."},
        {"name": "Quiz", "description": "Up to five quiz questions per project."},
        {"name": "Progress", "description": "Weighted completion progress and its live stream."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_factory() -> Callable[[], Session]:
    """Opens the short-lived sessions an event stream uses after the request is gone."""
    return get_session


def current_caller(
    x_user_id: str | None = Header(None, description="Id of the calling user"),
    session: Session = Depends(db_session),
) -> Caller:
    if not x_user_id:
        raise HTTPException(401, "X-User-Id header required")
    user = services.get_user(session, x_user_id)
    if user is None:
        raise HTTPException(401, "Unknown user")
    return services.caller_for(user)


def _error(status_code: int):
    async def handler(request: Request, exc: Exception):
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    return handler


app.add_exception_handler(services.NotFoundError, _error(404))
app.add_exception_handler(services.AuthorizationError, _error(403))
app.add_exception_handler(services.InvalidInputError, _error(400))
app.add_exception_handler(services.ConflictError, _error(409))
app.add_exception_handler(ConfigurationError, _error(503))


def _progress(session: Session, caller: Caller, project_id: int) -> dict:
    return services.project_progress(session, caller, project_id)


# ---------------------------------------------------------------------------
# Routes: Users
# ---------------------------------------------------------------------------


@app.post("/api/users", response_model=UserOut, status_code=201,
          tags=["Users"], summary="Create a user (admin only)")
async def create_user(body: UserCreate, caller: Caller = Depends(current_caller),
                      session: Session = Depends(db_session)):
    user = services.create_user(session, caller, body.id, body.email, body.role)
    session.commit()
    return services.user_dict(user)


@app.get("/api/me", response_model=UserOut, tags=["Users"], summary="The calling user")
async def me(caller: Caller = Depends(current_caller), session: Session = Depends(db_session)):
    return services.user_dict(services.get_user(session, caller.user_id))


# ---------------------------------------------------------------------------
# Routes: Projects
# ---------------------------------------------------------------------------


@app.get("/api/projects", response_model=ProjectListResponse,
         tags=["Projects"], summary="List visible projects with overall progress")
async def list_projects(
    readiness: str | None = Query(None, description="ready_for_launch, in_progress or needs_review"),
    caller: Caller = Depends(current_caller),
    session: Session = Depends(db_session),
):
    items = services.list_projects(session, caller, readiness=readiness)
    return {"items": items, "total": len(items)}


@app.post("/api/projects", response_model=ProjectDetail, status_code=201,
          tags=["Projects"], summary="Create a project with empty sections")
async def create_project(body: ProjectCreate, caller: Caller = Depends(current_caller),
                         session: Session = Depends(db_session)):
    project = services.create_project(session, caller, body.name, body.email, body.owner_id)
    session.commit()
    return _detail(session, caller, project.id)


@app.get("/api/projects/{project_id}", response_model=ProjectDetail,
         tags=["Projects"], summary="Full project detail with progress")
async def get_project(project_id: int, caller: Caller = Depends(current_caller),
                      session: Session = Depends(db_session)):
    return _detail(session, caller, project_id)


def _detail(session: Session, caller: Caller, project_id: int) -> dict:
    detail = services.project_detail(session, caller, project_id)
    detail["progress"] = _progress(session, caller, project_id)
    return detail


@app.delete("/api/projects/{project_id}", tags=["Projects"], summary="Delete a project (admin only)")
async def delete_project(project_id: int, caller: Caller = Depends(current_caller),
                         session: Session = Depends(db_session)):
    services.delete_project(session, caller, project_id)
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Field sections
# ---------------------------------------------------------------------------


def _upsert_section(section: Section, project_id: int, body: SectionUpdate,
                    caller: Caller, session: Session) -> dict:
    updates = {key: change.model_dump(exclude_unset=True) for key, change in body.fields.items()}
    record = services.upsert_section(session, caller, project_id, section, updates)
    session.commit()
    return {
        "section": section,
        "fields": services.section_fields(record, section),
        "progress": _progress(session, caller, project_id),
    }


@app.put("/api/projects/{project_id}/ido-metrics", response_model=SectionWriteOut,
         tags=["Sections"], summary="Update IDO metrics (partial)")
async def put_ido_metrics(project_id: int, body: SectionUpdate, caller: Caller = Depends(current_caller),
                          session: Session = Depends(db_session)):
    return _upsert_section(Section.IDO_METRICS, project_id, body, caller, session)


@app.put("/api/projects/{project_id}/platform-content", response_model=SectionWriteOut,
         tags=["Sections"], summary="Update platform content (partial)")
async def put_platform_content(project_id: int, body: SectionUpdate, caller: Caller = Depends(current_caller),
                               session: Session = Depends(db_session)):
    return _upsert_section(Section.PLATFORM_CONTENT, project_id, body, caller, session)


@app.put("/api/projects/{project_id}/marketing-assets", response_model=SectionWriteOut,
         tags=["Sections"], summary="Update marketing assets (partial)")
async def put_marketing_assets(project_id: int, body: SectionUpdate, caller: Caller = Depends(current_caller),
                               session: Session = Depends(db_session)):
    return _upsert_section(Section.MARKETING_ASSETS, project_id, body, caller, session)


@app.patch("/api/projects/{project_id}/status", response_model=StatusWriteOut,
           tags=["Sections"], summary="Set the status of a single field")
async def patch_status(project_id: int, body: StatusUpdate, caller: Caller = Depends(current_caller),
                       session: Session = Depends(db_session)):
    services.set_field_status(session, caller, project_id, body.section, body.field, body.status)
    session.commit()
    return {
        "section": body.section, "field": body.field, "status": body.status,
        "progress": _progress(session, caller, project_id),
    }


# ---------------------------------------------------------------------------
# Routes: FAQs
# ---------------------------------------------------------------------------


@app.post("/api/projects/{project_id}/faqs", response_model=FaqWriteOut, status_code=201,
          tags=["FAQs"], summary="Add an FAQ")
async def create_faq(project_id: int, body: FaqCreate, caller: Caller = Depends(current_caller),
                     session: Session = Depends(db_session)):
    faq = services.add_faq(session, caller, project_id, body.question, body.answer, body.status)
    session.commit()
    return {"faq": services.faq_dict(faq), "progress": _progress(session, caller, project_id)}


@app.put("/api/faqs/{faq_id}", response_model=FaqWriteOut, tags=["FAQs"], summary="Update an FAQ")
async def update_faq(faq_id: int, body: FaqUpdate, caller: Caller = Depends(current_caller),
                     session: Session = Depends(db_session)):
    faq = services.update_faq(session, caller, faq_id, body.question, body.answer, body.status)
    session.commit()
    return {"faq": services.faq_dict(faq), "progress": _progress(session, caller, faq.project_id)}


@app.delete("/api/faqs/{faq_id}", response_model=FaqWriteOut, tags=["FAQs"], summary="Delete an FAQ")
async def delete_faq(faq_id: int, caller: Caller = Depends(current_caller),
                     session: Session = Depends(db_session)):
    project = services.delete_faq(session, caller, faq_id)
    session.commit()
    return {"faq": None, "progress": _progress(session, caller, project.id)}


# ---------------------------------------------------------------------------
# Routes: Quiz questions
# ---------------------------------------------------------------------------


@app.post("/api/projects/{project_id}/quiz-questions", response_model=QuizQuestionWriteOut,
          status_code=201, tags=["Quiz"], summary="Add a quiz question")
async def create_quiz_question(project_id: int, body: QuizQuestionCreate,
                               caller: Caller = Depends(current_caller),
                               session: Session = Depends(db_session)):
    q = services.add_quiz_question(session, caller, project_id, body.question, body.correct_answer,
                                   body.wrong_answers, body.status)
    session.commit()
    return {"quiz_question": services.quiz_dict(q), "progress": _progress(session, caller, project_id)}


@app.put("/api/quiz-questions/{question_id}", response_model=QuizQuestionWriteOut,
         tags=["Quiz"], summary="Update a quiz question")
async def update_quiz_question(question_id: int, body: QuizQuestionUpdate,
                               caller: Caller = Depends(current_caller),
                               session: Session = Depends(db_session)):
    q = services.update_quiz_question(session, caller, question_id, body.question, body.status)
    session.commit()
    return {"quiz_question": services.quiz_dict(q), "progress": _progress(session, caller, q.project_id)}


@app.delete("/api/quiz-questions/{question_id}", response_model=QuizQuestionWriteOut,
            tags=["Quiz"], summary="Delete a quiz question")
async def delete_quiz_question(question_id: int, caller: Caller = Depends(current_caller),
                               session: Session = Depends(db_session)):
    project = services.delete_quiz_question(session, caller, question_id)
    session.commit()
    return {"quiz_question": None, "progress": _progress(session, caller, project.id)}


# ---------------------------------------------------------------------------
# Routes: Progress
# ---------------------------------------------------------------------------


@app.get("/api/score-model", tags=["Progress"], summary="Active weights, minimum counts and scored fields")
async def get_score_model():
    return score_model.get_score_model().describe()


@app.get("/api/progress/{project_id}", response_model=ProgressOut,
         tags=["Progress"], summary="Weighted completion progress for a project")
async def get_progress(project_id: int, caller: Caller = Depends(current_caller),
                       session: Session = Depends(db_session)):
    return _progress(session, caller, project_id)


@app.post("/api/progress/{project_id}/recalculate", response_model=ProgressOut,
          tags=["Progress"], summary="Recompute progress, bypassing the cache")
async def recalculate_progress(project_id: int, caller: Caller = Depends(current_caller),
                               session: Session = Depends(db_session)):
    return services.recalculate_progress(session, caller, project_id)


def _sse(kind: str, payload: dict) -> str:
    data = ProgressOut.model_validate(payload).model_dump(mode="json", by_alias=True)
    return f"data: {json.dumps({'type': kind, **data})}\n\n"


def _closed(detail: str) -> str:
    return f"data: {json.dumps({'type': 'closed', 'detail': detail})}\n\n"


async def progress_stream(project_id: int, caller: Caller, initial: dict,
                          new_session: Callable[[], Session],
                          is_disconnected: Callable[[], Awaitable[bool]] | None = None,
                          ) -> AsyncIterator[str]:
    """SSE frames for one viewer: the initial progress, then one frame per event.

    Every event is answered with a fresh read in its own session, so a frame
    always reflects committed data. The stream ends with a ``closed`` frame
    once the project is gone or the caller lost access.
    """
    async with notifier.subscribe(project_id) as sub:
        yield _sse("initial", initial)
        async for event in sub:
            if is_disconnected is not None and await is_disconnected():
                break
            session = new_session()
            try:
                payload = services.project_progress(session, caller, project_id)
            except (services.NotFoundError, services.AuthorizationError) as exc:
                log.info("Closing progress stream for project %s: %s", project_id, exc)
                yield _closed(str(exc))
                break
            finally:
                session.close()
            yield _sse(event.trigger.value, payload)
    log.debug("Progress stream for project %s ended", project_id)


@app.get("/api/progress/{project_id}/events", tags=["Progress"],
         summary="Server-sent progress pushes (on each write, refresh and poll interval)")
async def progress_events(project_id: int, request: Request, caller: Caller = Depends(current_caller),
                          session: Session = Depends(db_session),
                          new_session: Callable[[], Session] = Depends(session_factory)):
    # Lookup and authorization fail here, before the stream opens
    initial = _progress(session, caller, project_id)
    stream = progress_stream(project_id, caller, initial, new_session, request.is_disconnected)
    return StreamingResponse(stream, media_type="text/event-stream")


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("launchpad.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
