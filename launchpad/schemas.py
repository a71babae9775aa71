"""Pydantic request/response schemas for the Launchpad API."""
from __future__ import annotations

import re
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from launchpad.models import Role
from launchpad.score_model import Section, Status

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class UserCreate(BaseModel):
    id: str
    email: str = ""
    role: Role = Role.PROJECT

    @field_validator("id")
    @classmethod
    def id_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("id must not be blank")
        return v


class UserOut(BaseModel):
    id: str
    email: str
    role: Role


class ProjectCreate(BaseModel):
    name: str
    email: str
    owner_id: str | None = None

    @field_validator("email")
    @classmethod
    def email_format(cls, v: str) -> str:
        if not EMAIL_RE.match(v):
            raise ValueError("Invalid email format")
        return v


class FieldUpdate(BaseModel):
    value: str | None = None
    status: Status | None = None


class SectionUpdate(BaseModel):
    """Partial upsert: only the listed fields change."""
    fields: dict[str, FieldUpdate]


class StatusUpdate(BaseModel):
    section: Section
    field: str
    status: Status


class FaqCreate(BaseModel):
    question: str = Field(min_length=1)
    answer: str = Field(min_length=1)
    status: Status = Status.NOT_CONFIRMED


class FaqUpdate(BaseModel):
    question: str | None = None
    answer: str | None = None
    status: Status | None = None


class QuizQuestionCreate(BaseModel):
    question: str = Field(min_length=1)
    correct_answer: str = Field(min_length=1)
    wrong_answers: list[str] = Field(min_length=2, max_length=3)
    status: Status = Status.NOT_CONFIRMED


class QuizQuestionUpdate(BaseModel):
    question: str | None = None
    status: Status | None = None


class ProgressOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    progress: dict[str, int]
    missing_fields: dict[str, list[str]] = Field(alias="missingFields")
    last_updated: datetime = Field(alias="lastUpdated")


class ProjectOut(BaseModel):
    id: int
    name: str
    email: str
    owner_id: str
    version: int
    overall: int
    readiness: str
    updated_at: datetime | None = None


class FieldOut(BaseModel):
    label: str
    value: str | None
    status: Status
    scored: bool


class FaqOut(BaseModel):
    id: int
    question: str
    answer: str
    status: Status
    position: int


class QuizQuestionOut(BaseModel):
    id: int
    question: str
    options: list[str]
    correct_answer: str
    status: Status
    position: int


class ProjectDetail(ProjectOut):
    ido_metrics: dict[str, FieldOut] | None = None
    platform_content: dict[str, FieldOut] | None = None
    marketing_assets: dict[str, FieldOut] | None = None
    faqs: list[FaqOut] = []
    quiz_questions: list[QuizQuestionOut] = []
    progress: ProgressOut | None = None


class SectionWriteOut(BaseModel):
    section: Section
    fields: dict[str, FieldOut]
    progress: ProgressOut


class StatusWriteOut(BaseModel):
    section: Section
    field: str
    status: Status
    progress: ProgressOut


class FaqWriteOut(BaseModel):
    faq: FaqOut | None = None
    progress: ProgressOut


class QuizQuestionWriteOut(BaseModel):
    quiz_question: QuizQuestionOut | None = None
    progress: ProgressOut


class ProjectListResponse(BaseModel):
    items: list[ProjectOut]
    total: int
