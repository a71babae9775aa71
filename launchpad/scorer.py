"""Progress calculator: one deterministic pass from a project snapshot to a score.

Architecture
------------
A project is scored on five sections, each producing an integer percentage:

- **Field-status sections** (idoMetrics, platformContent, marketingAssets):
  share of the model's scorable fields whose status is ``confirmed``.
  Values are irrelevant, only statuses count.
- **Count-driven sections** (faqs, quizQuestions): number of qualifying items
  relative to the model's minimum count, capped at 100.

The overall percentage is the weighted sum of the section percentages.
Every stage rounds half-up to an integer using decimal arithmetic, so a
weighted sum such as ``0.15 * 50`` never lands on ``7.4999…``.

``compute`` is pure: no I/O, no clock, no mutation of its input. The caller
decides when to call it (see :mod:`launchpad.notifier`).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping

from launchpad.score_model import ScoreModel, Section, Status, get_score_model

# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldEntry:
    value: str | None = None
    status: Status = Status.NOT_CONFIRMED


@dataclass(frozen=True)
class FaqItem:
    question: str
    answer: str
    status: Status = Status.NOT_CONFIRMED

    @property
    def qualifies(self) -> bool:
        return bool(self.question.strip() and self.answer.strip())


@dataclass(frozen=True)
class QuizItem:
    question: str
    options: tuple[str, ...]
    correct_index: int = 0
    status: Status = Status.NOT_CONFIRMED

    @property
    def qualifies(self) -> bool:
        options = [o for o in self.options if o and o.strip()]
        return (
            bool(self.question.strip())
            and len(options) == len(self.options)
            and 3 <= len(options) <= 4
            and 0 <= self.correct_index < len(options)
        )


@dataclass(frozen=True)
class ProjectSnapshot:
    """Fully materialized, read-only view of one project. ``None`` means absent."""
    project_id: int | None = None
    version: int = 0
    ido_metrics: Mapping[str, FieldEntry] | None = None
    platform_content: Mapping[str, FieldEntry] | None = None
    marketing_assets: Mapping[str, FieldEntry] | None = None
    faqs: tuple[FaqItem, ...] = ()
    quiz_questions: tuple[QuizItem, ...] = ()

    def fields_for(self, section: Section) -> Mapping[str, FieldEntry] | None:
        if section is Section.IDO_METRICS:
            return self.ido_metrics
        if section is Section.PLATFORM_CONTENT:
            return self.platform_content
        if section is Section.MARKETING_ASSETS:
            return self.marketing_assets
        raise ValueError(f"{section.value} is not a field-status section")

    def items_for(self, section: Section) -> tuple[FaqItem, ...] | tuple[QuizItem, ...]:
        if section is Section.FAQS:
            return self.faqs
        if section is Section.QUIZ_QUESTIONS:
            return self.quiz_questions
        raise ValueError(f"{section.value} is not a count-driven section")


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScoreResult:
    overall: int
    by_section: dict[Section, int] = field(default_factory=dict)
    missing_fields: dict[Section, list[str]] = field(default_factory=dict)

    def is_complete(self, section: Section | None = None) -> bool:
        if section is None:
            return self.overall == 100
        return self.by_section.get(section) == 100

    def progress_dict(self) -> dict[str, int]:
        return {**{s.value: pct for s, pct in self.by_section.items()}, "overall": self.overall}

    def missing_dict(self) -> dict[str, list[str]]:
        return {s.value: list(labels) for s, labels in self.missing_fields.items()}


# ---------------------------------------------------------------------------
# Arithmetic
# ---------------------------------------------------------------------------


def round_half_up(value: Decimal | int | float) -> int:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percentage(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return round_half_up(Decimal(100 * part) / Decimal(whole))


def field_section_score(
    section: Section, entries: Mapping[str, FieldEntry] | None, model: ScoreModel,
) -> tuple[int, list[str]]:
    specs = model.scorable_fields(section)
    if entries is None:
        return 0, [spec.label for spec in specs]
    missing = []
    confirmed = 0
    for spec in specs:
        entry = entries.get(spec.key)
        if entry is not None and entry.status is Status.CONFIRMED:
            confirmed += 1
        else:
            missing.append(spec.label)
    return percentage(confirmed, len(specs)), missing


_SHORTFALL_NOUN = {
    Section.FAQS: "FAQ(s)",
    Section.QUIZ_QUESTIONS: "quiz question(s)",
}


def count_section_score(section: Section, items, model: ScoreModel) -> tuple[int, list[str]]:
    minimum = model.minimum_count(section)
    count = sum(1 for item in items if item.qualifies)
    pct = percentage(min(count, minimum), minimum)
    if count >= minimum:
        return pct, []
    return pct, [f"Need {minimum - count} more {_SHORTFALL_NOUN[section]}"]


def compute(snapshot: ProjectSnapshot, model: ScoreModel | None = None) -> ScoreResult:
    """Score a snapshot against the active model (or the one given)."""
    if model is None:
        model = get_score_model()

    by_section: dict[Section, int] = {}
    missing: dict[Section, list[str]] = {}
    for section in Section:
        if section.count_driven:
            pct, gaps = count_section_score(section, snapshot.items_for(section), model)
        else:
            pct, gaps = field_section_score(section, snapshot.fields_for(section), model)
        by_section[section] = pct
        missing[section] = gaps

    weights = model.section_weights()
    weighted = sum(
        (Decimal(str(weights[section])) * pct for section, pct in by_section.items()),
        Decimal(0),
    )
    overall = max(0, min(100, round_half_up(weighted)))
    return ScoreResult(overall=overall, by_section=by_section, missing_fields=missing)


# ---------------------------------------------------------------------------
# Readiness label (admin list view)
# ---------------------------------------------------------------------------

READY_THRESHOLD = 90
IN_PROGRESS_THRESHOLD = 60
READINESS_LABELS = ("ready_for_launch", "in_progress", "needs_review")


def readiness_label(overall: int) -> str:
    if overall >= READY_THRESHOLD:
        return "ready_for_launch"
    if overall >= IN_PROGRESS_THRESHOLD:
        return "in_progress"
    return "needs_review"
