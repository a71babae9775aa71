"""Shared business logic for the Launchpad API and MCP server.

Every caller that needs a progress number goes through :func:`project_progress`
or :func:`list_projects`, which both end in :func:`launchpad.scorer.compute`.
Nothing else does progress arithmetic.

Write helpers mutate ORM objects and leave the commit to the caller, like the
rest of this module. Each write bumps ``Project.version`` and queues a
progress event; the queued events are published from the session's
``after_commit`` hook, never before the data is durable.
"""
from __future__ import annotations

import logging
import math
import re
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Mapping

from sqlalchemy import event, select
from sqlalchemy.orm import Session, selectinload

from launchpad.models import (
    SECTION_MODELS, SECTION_RELATIONS, Faq, Project, QuizQuestion, Role, User,
)
from launchpad.notifier import ProgressEvent, Trigger, notifier, trigger_for_status
from launchpad.score_model import (
    FIELD_CATALOG, MAX_FAQS, MAX_QUIZ_QUESTIONS, FieldSpec, Section, Status, catalog_field,
)
from launchpad.scorer import (
    READINESS_LABELS, FaqItem, FieldEntry, ProjectSnapshot, QuizItem, ScoreResult, compute,
    readiness_label,
)

log = logging.getLogger(__name__)


class NotFoundError(LookupError):
    """Unknown project, user or item."""


class AuthorizationError(PermissionError):
    """Caller may not view or change the project."""


class InvalidInputError(ValueError):
    """Request is well-formed but violates a field or item rule."""


class ConflictError(InvalidInputError):
    """Entity already exists."""


# ---------------------------------------------------------------------------
# Callers & authorization
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


def get_user(session: Session, user_id: str) -> User | None:
    return session.get(User, user_id)


def caller_for(user: User) -> Caller:
    return Caller(user_id=user.id, role=user.role)


def ensure_admin(caller: Caller) -> None:
    if not caller.is_admin:
        raise AuthorizationError("Administrator role required")


def ensure_project_access(caller: Caller, project: Project) -> None:
    if caller.is_admin or project.owner_id == caller.user_id:
        return
    raise AuthorizationError(f"Access to project {project.id} denied")


def create_user(session: Session, caller: Caller, user_id: str, email: str = "",
                role: Role = Role.PROJECT) -> User:
    ensure_admin(caller)
    if get_user(session, user_id) is not None:
        raise ConflictError(f"User '{user_id}' already exists")
    user = User(id=user_id, email=email, role=role)
    session.add(user)
    session.flush()
    return user


def user_dict(user: User) -> dict:
    return {"id": user.id, "email": user.email, "role": user.role}


# ---------------------------------------------------------------------------
# Write bookkeeping
# ---------------------------------------------------------------------------

_PENDING_WRITES = "launchpad_pending_writes"


def _queue_event(session: Session, project_id: int, trigger: Trigger, version: int | None) -> None:
    session.info.setdefault(_PENDING_WRITES, []).append((project_id, trigger, version))


def record_write(session: Session, project: Project, trigger: Trigger) -> None:
    """Bump the project version in SQL and queue a progress event for after the commit."""
    # Incremented by the database so concurrent writers never share a version.
    project.version = Project.version + 1
    project.updated_at = datetime.now(UTC)
    session.flush()
    _queue_event(session, project.id, trigger, project.version)


@event.listens_for(Session, "after_commit")
def _publish_committed_writes(session: Session) -> None:
    for project_id, trigger, version in session.info.pop(_PENDING_WRITES, []):
        progress_cache.invalidate(project_id)
        notifier.publish(ProgressEvent(project_id, trigger, version))


@event.listens_for(Session, "after_soft_rollback")
def _discard_rolled_back_writes(session: Session, previous_transaction) -> None:
    session.info.pop(_PENDING_WRITES, None)


# ---------------------------------------------------------------------------
# Field values
# ---------------------------------------------------------------------------

_CONTRACT_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
_TICKER_RE = re.compile(r"^[A-Z0-9]{1,10}$")
_URL_RE = re.compile(r"^(https?://)?(www\.)?([a-z0-9-]+\.)+[a-z]{2,}(/\S*)?/?$", re.IGNORECASE)


def clean_field_value(spec: FieldSpec, value: Any) -> str | None:
    """Normalize a submitted value for its field kind. Blank clears the field."""
    if value is None:
        return None
    value = str(value).strip()
    if not value or value == "not_selected":
        return None

    def bad(reason: str) -> InvalidInputError:
        return InvalidInputError(f"{spec.label}: {reason}")

    if spec.kind == "date":
        try:
            datetime.fromisoformat(value)
        except ValueError:
            raise bad("invalid date, use ISO format (YYYY-MM-DD)") from None
    elif spec.kind == "number":
        try:
            number = float(value.replace(",", ""))
        except ValueError:
            raise bad("must be a valid number") from None
        if not math.isfinite(number):
            raise bad("must be a valid number")
    elif spec.kind == "percent":
        try:
            pct = int(value)
        except ValueError:
            raise bad("must be a whole number between 0 and 100") from None
        if not 0 <= pct <= 100:
            raise bad("must be a whole number between 0 and 100")
        value = str(pct)
    elif spec.kind == "address":
        if not _CONTRACT_RE.match(value):
            raise bad("invalid contract address format")
    elif spec.kind == "ticker":
        if not _TICKER_RE.match(value):
            raise bad("must be 1-10 uppercase letters or numbers")
    elif spec.kind == "url":
        if not _URL_RE.match(value):
            raise bad("invalid URL format")
    elif spec.kind == "choice":
        if value not in spec.choices:
            raise bad(f"must be one of {', '.join(spec.choices)}")

    if spec.max_length is not None and len(value) > spec.max_length:
        raise bad(f"must be at most {spec.max_length} characters")
    return value


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


def get_project(session: Session, project_id: int) -> Project:
    project = session.get(Project, project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found")
    return project


def _new_section_record(section: Section, project: Project):
    record = SECTION_MODELS[section]()
    for spec in FIELD_CATALOG[section]:
        setattr(record, f"{spec.key}_status", Status.NOT_CONFIRMED)
    # Assigned from the project side so the save-update cascade adds the row.
    setattr(project, SECTION_RELATIONS[section], record)
    return record


def create_project(session: Session, caller: Caller, name: str, email: str,
                   owner_id: str | None = None) -> Project:
    """Create a project with every field section initialised as not confirmed."""
    owner_id = owner_id or caller.user_id
    if owner_id != caller.user_id:
        ensure_admin(caller)
    if get_user(session, owner_id) is None:
        raise NotFoundError(f"User '{owner_id}' not found")
    project = Project(name=name.strip(), email=email, owner_id=owner_id, version=0)
    session.add(project)
    for section in SECTION_MODELS:
        _new_section_record(section, project)
    session.flush()
    record_write(session, project, Trigger.FORM_SUBMITTED)
    log.info("Created project %s (%s) for %s", project.id, project.name, owner_id)
    return project


def delete_project(session: Session, caller: Caller, project_id: int) -> None:
    ensure_admin(caller)
    project = get_project(session, project_id)
    session.delete(project)
    _queue_event(session, project_id, Trigger.PROJECT_DELETED, None)


def _loaded_projects_query():
    return select(Project).options(
        selectinload(Project.ido_metrics),
        selectinload(Project.platform_content),
        selectinload(Project.marketing_assets),
        selectinload(Project.faqs),
        selectinload(Project.quiz_questions),
    )


def list_projects(session: Session, caller: Caller, readiness: str | None = None) -> list[dict]:
    """Projects visible to the caller, each with its overall progress."""
    if readiness is not None and readiness not in READINESS_LABELS:
        raise InvalidInputError(f"readiness must be one of {', '.join(READINESS_LABELS)}")
    query = _loaded_projects_query().order_by(Project.id)
    if not caller.is_admin:
        query = query.where(Project.owner_id == caller.user_id)
    items = []
    for project in session.execute(query).scalars().all():
        entry = _cached_entry(project.id, project.version, lambda p=project: snapshot_from_project(p))
        summary = project_summary(project, entry.result)
        if readiness is None or summary["readiness"] == readiness:
            items.append(summary)
    return items


def project_summary(project: Project, result: ScoreResult) -> dict:
    return {
        "id": project.id, "name": project.name, "email": project.email,
        "owner_id": project.owner_id, "version": project.version,
        "overall": result.overall, "readiness": readiness_label(result.overall),
        "updated_at": project.updated_at,
    }


def section_fields(record, section: Section) -> dict[str, dict] | None:
    if record is None:
        return None
    return {
        spec.key: {
            "label": spec.label, "value": getattr(record, spec.key),
            "status": getattr(record, f"{spec.key}_status") or Status.NOT_CONFIRMED,
            "scored": spec.scored,
        }
        for spec in FIELD_CATALOG[section]
    }


def faq_dict(faq: Faq) -> dict:
    return {"id": faq.id, "question": faq.question, "answer": faq.answer,
            "status": faq.status, "position": faq.position}


def quiz_dict(q: QuizQuestion) -> dict:
    return {"id": q.id, "question": q.question, "options": list(q.options),
            "correct_answer": q.correct_answer, "status": q.status, "position": q.position}


def project_detail(session: Session, caller: Caller, project_id: int) -> dict:
    project = get_project(session, project_id)
    ensure_project_access(caller, project)
    snapshot = load_snapshot(session, project_id)
    entry = _cached_entry(project.id, snapshot.version, lambda: snapshot)
    detail = project_summary(project, entry.result)
    for section, rel in SECTION_RELATIONS.items():
        detail[rel] = section_fields(getattr(project, rel), section)
    detail["faqs"] = [faq_dict(f) for f in project.faqs]
    detail["quiz_questions"] = [quiz_dict(q) for q in project.quiz_questions]
    return detail


# ---------------------------------------------------------------------------
# Field sections
# ---------------------------------------------------------------------------


def _field_section(section: Section) -> Section:
    if section.count_driven:
        raise InvalidInputError(f"{section.value} has no per-field statuses")
    return section


def _section_record(project: Project, section: Section):
    record = getattr(project, SECTION_RELATIONS[section])
    if record is None:
        record = _new_section_record(section, project)
    return record


def upsert_section(session: Session, caller: Caller, project_id: int, section: Section,
                   updates: Mapping[str, Mapping[str, Any]]):
    """Apply ``{field: {"value": ..., "status": ...}}``; a key left out is left alone."""
    _field_section(section)
    project = get_project(session, project_id)
    ensure_project_access(caller, project)

    changes: list[tuple[str, Any]] = []
    for key, change in updates.items():
        spec = catalog_field(section, key)
        if spec is None:
            raise InvalidInputError(f"Unknown field '{key}' for {section.value}")
        if "value" in change:
            changes.append((spec.key, clean_field_value(spec, change["value"])))
        if change.get("status") is not None:
            changes.append((f"{spec.key}_status", Status(change["status"])))

    record = _section_record(project, section)
    for attr, value in changes:
        setattr(record, attr, value)
    record_write(session, project, Trigger.FORM_SUBMITTED)
    return record


def set_field_status(session: Session, caller: Caller, project_id: int, section: Section,
                     field_key: str, status: Status) -> Project:
    _field_section(section)
    spec = catalog_field(section, field_key)
    if spec is None:
        raise InvalidInputError(f"Unknown field '{field_key}' for {section.value}")
    project = get_project(session, project_id)
    ensure_project_access(caller, project)
    record = _section_record(project, section)
    setattr(record, f"{spec.key}_status", status)
    record_write(session, project, trigger_for_status(status))
    return project


# ---------------------------------------------------------------------------
# FAQs & quiz questions
# ---------------------------------------------------------------------------


def _renumber(items) -> None:
    for idx, item in enumerate(items, start=1):
        item.position = idx


def add_faq(session: Session, caller: Caller, project_id: int, question: str, answer: str,
            status: Status = Status.NOT_CONFIRMED) -> Faq:
    project = get_project(session, project_id)
    ensure_project_access(caller, project)
    if len(project.faqs) >= MAX_FAQS:
        raise InvalidInputError(f"Maximum {MAX_FAQS} FAQs allowed per project")
    if not question.strip() or not answer.strip():
        raise InvalidInputError("FAQ question and answer must not be blank")
    faq = Faq(question=question.strip(), answer=answer.strip(), status=status,
              position=len(project.faqs) + 1)
    project.faqs.append(faq)
    session.flush()
    record_write(session, project, Trigger.FORM_SUBMITTED)
    return faq


def _get_faq(session: Session, caller: Caller, faq_id: int) -> Faq:
    faq = session.get(Faq, faq_id)
    if faq is None:
        raise NotFoundError(f"FAQ {faq_id} not found")
    ensure_project_access(caller, faq.project)
    return faq


def update_faq(session: Session, caller: Caller, faq_id: int, question: str | None = None,
               answer: str | None = None, status: Status | None = None) -> Faq:
    faq = _get_faq(session, caller, faq_id)
    for attr, value in (("question", question), ("answer", answer)):
        if value is not None:
            if not value.strip():
                raise InvalidInputError(f"FAQ {attr} must not be blank")
            setattr(faq, attr, value.strip())
    trigger = Trigger.FORM_SUBMITTED
    if status is not None:
        faq.status = status
        trigger = trigger_for_status(status)
    record_write(session, faq.project, trigger)
    return faq


def delete_faq(session: Session, caller: Caller, faq_id: int) -> Project:
    faq = _get_faq(session, caller, faq_id)
    project = faq.project
    project.faqs.remove(faq)
    _renumber(project.faqs)
    record_write(session, project, Trigger.FORM_SUBMITTED)
    return project


def add_quiz_question(session: Session, caller: Caller, project_id: int, question: str,
                      correct_answer: str, wrong_answers: list[str],
                      status: Status = Status.NOT_CONFIRMED) -> QuizQuestion:
    """Store the correct answer as option a, followed by two or three wrong answers."""
    project = get_project(session, project_id)
    ensure_project_access(caller, project)
    if len(project.quiz_questions) >= MAX_QUIZ_QUESTIONS:
        raise InvalidInputError(f"Maximum {MAX_QUIZ_QUESTIONS} quiz questions allowed per project")
    wrong = [w.strip() for w in wrong_answers if w and w.strip()]
    if not 2 <= len(wrong) <= 3:
        raise InvalidInputError("Quiz questions need two or three wrong answers")
    if not question.strip() or not correct_answer.strip():
        raise InvalidInputError("Quiz question and correct answer must not be blank")
    q = QuizQuestion(
        question=question.strip(), option_a=correct_answer.strip(),
        option_b=wrong[0], option_c=wrong[1], option_d=wrong[2] if len(wrong) > 2 else None,
        correct_answer="a", status=status, position=len(project.quiz_questions) + 1,
    )
    project.quiz_questions.append(q)
    session.flush()
    record_write(session, project, Trigger.FORM_SUBMITTED)
    return q


def _get_quiz_question(session: Session, caller: Caller, question_id: int) -> QuizQuestion:
    q = session.get(QuizQuestion, question_id)
    if q is None:
        raise NotFoundError(f"Quiz question {question_id} not found")
    ensure_project_access(caller, q.project)
    return q


def update_quiz_question(session: Session, caller: Caller, question_id: int,
                         question: str | None = None, status: Status | None = None) -> QuizQuestion:
    q = _get_quiz_question(session, caller, question_id)
    if question is not None:
        if not question.strip():
            raise InvalidInputError("Quiz question must not be blank")
        q.question = question.strip()
    trigger = Trigger.FORM_SUBMITTED
    if status is not None:
        q.status = status
        trigger = trigger_for_status(status)
    record_write(session, q.project, trigger)
    return q


def delete_quiz_question(session: Session, caller: Caller, question_id: int) -> Project:
    q = _get_quiz_question(session, caller, question_id)
    project = q.project
    project.quiz_questions.remove(q)
    _renumber(project.quiz_questions)
    record_write(session, project, Trigger.FORM_SUBMITTED)
    return project


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


def _field_entries(record, section: Section) -> dict[str, FieldEntry] | None:
    if record is None:
        return None
    return {
        spec.key: FieldEntry(getattr(record, spec.key),
                             getattr(record, f"{spec.key}_status") or Status.NOT_CONFIRMED)
        for spec in FIELD_CATALOG[section]
    }


_ANSWER_INDEX = {letter: idx for idx, letter in enumerate("abcd")}


def snapshot_from_project(project: Project) -> ProjectSnapshot:
    return ProjectSnapshot(
        project_id=project.id,
        version=project.version or 0,
        ido_metrics=_field_entries(project.ido_metrics, Section.IDO_METRICS),
        platform_content=_field_entries(project.platform_content, Section.PLATFORM_CONTENT),
        marketing_assets=_field_entries(project.marketing_assets, Section.MARKETING_ASSETS),
        faqs=tuple(FaqItem(f.question, f.answer, f.status or Status.NOT_CONFIRMED) for f in project.faqs),
        quiz_questions=tuple(
            QuizItem(q.question, q.options, _ANSWER_INDEX.get(q.correct_answer, -1),
                     q.status or Status.NOT_CONFIRMED)
            for q in project.quiz_questions
        ),
    )


def load_snapshot(session: Session, project_id: int) -> ProjectSnapshot:
    """Read the project and all five sub-records in one statement batch."""
    project = session.execute(
        _loaded_projects_query()
        .where(Project.id == project_id)
        .execution_options(populate_existing=True)
    ).scalars().first()
    if project is None:
        raise NotFoundError(f"Project {project_id} not found")
    return snapshot_from_project(project)


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CacheEntry:
    version: int
    result: ScoreResult
    computed_at: datetime


class ProgressCache:
    """Score results keyed by project id and the project version they were computed from."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[int, CacheEntry] = {}

    def get(self, project_id: int, version: int) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(project_id)
        if entry is not None and entry.version == version:
            return entry
        return None

    def put(self, project_id: int, version: int, result: ScoreResult) -> CacheEntry:
        entry = CacheEntry(version, result, datetime.now(UTC))
        with self._lock:
            self._entries[project_id] = entry
        return entry

    def invalidate(self, project_id: int) -> None:
        with self._lock:
            self._entries.pop(project_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


progress_cache = ProgressCache()


def _cached_entry(project_id: int, version: int, snapshot_fn, force: bool = False) -> CacheEntry:
    entry = None if force else progress_cache.get(project_id, version)
    if entry is None:
        snapshot = snapshot_fn()
        entry = progress_cache.put(project_id, snapshot.version, compute(snapshot))
        log.debug("Computed progress for project %s v%s: %s%%", project_id, snapshot.version,
                  entry.result.overall)
    return entry


def progress_payload(entry: CacheEntry) -> dict:
    return {
        "progress": entry.result.progress_dict(),
        "missing_fields": entry.result.missing_dict(),
        "last_updated": entry.computed_at,
    }


def project_progress(session: Session, caller: Caller, project_id: int, *, force: bool = False) -> dict:
    """Progress for one project. Lookup and authorization happen before any computation."""
    project = get_project(session, project_id)
    ensure_project_access(caller, project)
    entry = _cached_entry(project.id, project.version or 0,
                          lambda: load_snapshot(session, project_id), force=force)
    return progress_payload(entry)


def recalculate_progress(session: Session, caller: Caller, project_id: int) -> dict:
    """Recompute bypassing the cache and tell other viewers to refresh."""
    payload = project_progress(session, caller, project_id, force=True)
    notifier.publish(ProgressEvent(project_id, Trigger.MANUAL_REFRESH))
    return payload
