"""Score model: which fields count toward which section, and how sections combine.

The field catalog below is the only place field names, labels and value
kinds are declared. The ORM columns, the request validation, the calculator
and ``GET /api/score-model`` all read it, so the list of scored fields cannot
drift between screens.

A process holds exactly one active :class:`ScoreModel`. It starts out as
:data:`DEFAULT_SCORE_MODEL` and may be replaced once at startup from a JSON
file named by ``LAUNCHPAD_SCORE_MODEL``::

    {
      "weights": {"idoMetrics": 0.35, "platformContent": 0.25, ...},
      "minimumCounts": {"faqs": 5, "quizQuestions": 5},
      "scorableFields": {"platformContent": ["tagline", "description"]}
    }

Sections and fields that are not mentioned keep their defaults. The merged
result is validated; weights that do not sum to 1.0 are rejected, never
normalized.
"""
from __future__ import annotations

import json
import logging
import math
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

log = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """The score model or the schema backing it is unusable. Fatal at startup."""


class InvalidModelError(ConfigurationError):
    """Section weights do not sum to 1.0."""


class Status(str, Enum):
    CONFIRMED = "confirmed"
    NOT_CONFIRMED = "not_confirmed"
    MIGHT_CHANGE = "might_change"


class Section(str, Enum):
    IDO_METRICS = "idoMetrics"
    PLATFORM_CONTENT = "platformContent"
    FAQS = "faqs"
    QUIZ_QUESTIONS = "quizQuestions"
    MARKETING_ASSETS = "marketingAssets"

    @property
    def count_driven(self) -> bool:
        return self in (Section.FAQS, Section.QUIZ_QUESTIONS)


@dataclass(frozen=True)
class FieldSpec:
    key: str
    label: str
    kind: str = "text"  # text | date | number | percent | address | ticker | url | choice
    scored: bool = True
    choices: tuple[str, ...] = ()
    max_length: int | None = None


NETWORK_CHOICES = ("ETH", "Base", "Polygon", "BSC", "Arbitrum")
TIER_CHOICES = ("Base", "Bronze", "Silver", "Gold", "Platinum", "Diamond")

MAX_FAQS = 5
MAX_QUIZ_QUESTIONS = 5

# ---------------------------------------------------------------------------
# Field catalog
# ---------------------------------------------------------------------------

IDO_METRICS_FIELDS: tuple[FieldSpec, ...] = (
    # Important dates
    FieldSpec("whitelisting_date", "Whitelisting Date", "date"),
    FieldSpec("placing_ido_date", "Placing IDO Date", "date"),
    FieldSpec("claiming_date", "Claiming Date", "date"),
    FieldSpec("initial_dex_listing_date", "Initial DEX Listing Date", "date"),
    # Token economics
    FieldSpec("ido_price", "IDO Price", "number"),
    FieldSpec("tokens_for_sale", "Tokens For Sale", "number"),
    FieldSpec("total_allocation_dollars", "Total Allocation (USD)", "number"),
    FieldSpec("token_price", "Token Price", "number"),
    FieldSpec("vesting_period", "Vesting Period"),
    FieldSpec("cliff_period", "Cliff Period"),
    FieldSpec("tge_percentage", "TGE Percentage", "percent"),
    FieldSpec("total_allocation_native_token", "Total Allocation (Native Token)", "number"),
    FieldSpec("available_at_tge", "Available at TGE"),
    FieldSpec("cliff_lock", "Cliff Lock"),
    # Project details
    FieldSpec("network", "Network", "choice", choices=NETWORK_CHOICES),
    FieldSpec("minimum_tier", "Minimum Tier", "choice", choices=TIER_CHOICES),
    FieldSpec("grace_period", "Grace Period"),
    FieldSpec("contract_address", "Contract Address", "address"),
    # Token info
    FieldSpec("initial_market_cap", "Initial Market Cap", "number"),
    FieldSpec("fully_diluted_market_cap", "Fully Diluted Market Cap", "number"),
    FieldSpec("circulating_supply_tge", "Circulating Supply at TGE", "number"),
    FieldSpec("total_supply", "Total Supply", "number"),
    # Optional, never scored
    FieldSpec("token_ticker", "Token Ticker", "ticker", scored=False),
    FieldSpec("transaction_id", "Transaction ID", scored=False),
)

PLATFORM_CONTENT_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("tagline", "Tagline", max_length=100),
    FieldSpec("description", "Description", max_length=2000),
    FieldSpec("telegram_url", "Telegram URL", "url"),
    FieldSpec("discord_url", "Discord URL", "url"),
    FieldSpec("twitter_url", "Twitter URL", "url"),
    FieldSpec("youtube_url", "YouTube URL", "url"),
    FieldSpec("linkedin_url", "LinkedIn URL", "url"),
    FieldSpec("roadmap_url", "Roadmap URL", "url"),
    FieldSpec("team_page_url", "Team Page URL", "url"),
    FieldSpec("tokenomics_url", "Tokenomics URL", "url"),
)

MARKETING_ASSETS_FIELDS: tuple[FieldSpec, ...] = (
    FieldSpec("logo_url", "Logo", "url"),
    FieldSpec("hero_banner_url", "Hero Banner", "url"),
    FieldSpec("drive_folder", "Drive Folder", "url"),
)

FIELD_CATALOG: dict[Section, tuple[FieldSpec, ...]] = {
    Section.IDO_METRICS: IDO_METRICS_FIELDS,
    Section.PLATFORM_CONTENT: PLATFORM_CONTENT_FIELDS,
    Section.MARKETING_ASSETS: MARKETING_ASSETS_FIELDS,
}

MAX_ITEMS: dict[Section, int] = {
    Section.FAQS: MAX_FAQS,
    Section.QUIZ_QUESTIONS: MAX_QUIZ_QUESTIONS,
}

DEFAULT_WEIGHTS: dict[Section, float] = {
    Section.IDO_METRICS: 0.35,
    Section.PLATFORM_CONTENT: 0.25,
    Section.FAQS: 0.15,
    Section.QUIZ_QUESTIONS: 0.10,
    Section.MARKETING_ASSETS: 0.15,
}

DEFAULT_MINIMUM_COUNTS: dict[Section, int] = {
    Section.FAQS: 5,
    Section.QUIZ_QUESTIONS: 5,
}

WEIGHT_TOLERANCE = 1e-6


def catalog_field(section: Section, key: str) -> FieldSpec | None:
    for spec in FIELD_CATALOG.get(section, ()):
        if spec.key == key:
            return spec
    return None


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SectionModel:
    section: Section
    weight: float
    fields: tuple[FieldSpec, ...] = ()
    minimum_count: int = 0


@dataclass(frozen=True)
class ScoreModel:
    sections: tuple[SectionModel, ...] = field(default_factory=tuple)

    def _get(self, section: Section) -> SectionModel:
        for sm in self.sections:
            if sm.section is section:
                return sm
        raise KeyError(section)

    def section_weights(self) -> dict[Section, float]:
        return {sm.section: sm.weight for sm in self.sections}

    def scorable_fields(self, section: Section) -> tuple[FieldSpec, ...]:
        return self._get(section).fields

    def minimum_count(self, section: Section) -> int:
        return self._get(section).minimum_count

    def validate(self) -> ScoreModel:
        """Check every model invariant, returning ``self`` so calls can chain."""
        seen = [sm.section for sm in self.sections]
        if sorted(seen) != sorted(Section) or len(seen) != len(set(seen)):
            raise ConfigurationError(f"Score model must define each section exactly once, got {seen}")

        for sm in self.sections:
            if not math.isfinite(sm.weight) or sm.weight < 0:
                raise InvalidModelError(f"Weight for {sm.section.value} must be a non-negative number")
            if sm.section.count_driven:
                limit = MAX_ITEMS[sm.section]
                if not 1 <= sm.minimum_count <= limit:
                    raise ConfigurationError(
                        f"Minimum count for {sm.section.value} must be between 1 and {limit}, "
                        f"got {sm.minimum_count}"
                    )
                continue
            if not sm.fields:
                raise ConfigurationError(f"Section {sm.section.value} has no scorable fields")
            known = {spec.key for spec in FIELD_CATALOG[sm.section]}
            for spec in sm.fields:
                if spec.key not in known:
                    raise ConfigurationError(f"Section {sm.section.value} references unknown field '{spec.key}'")
            keys = [spec.key for spec in sm.fields]
            if len(keys) != len(set(keys)):
                raise ConfigurationError(f"Section {sm.section.value} lists a field more than once")

        total = sum(sm.weight for sm in self.sections)
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            raise InvalidModelError(f"Section weights must sum to 1.0, got {total:.6f}")
        return self

    def describe(self) -> dict[str, Any]:
        """Plain-dict view used by the API and MCP surfaces."""
        out = []
        for sm in self.sections:
            entry: dict[str, Any] = {"section": sm.section.value, "weight": sm.weight,
                                     "count_driven": sm.section.count_driven}
            if sm.section.count_driven:
                entry["minimum_count"] = sm.minimum_count
            else:
                entry["fields"] = [{"key": f.key, "label": f.label, "kind": f.kind} for f in sm.fields]
            out.append(entry)
        return {"sections": out}


def build_score_model(
    weights: Mapping[Section, float] | None = None,
    minimum_counts: Mapping[Section, int] | None = None,
    scorable_fields: Mapping[Section, list[str]] | None = None,
) -> ScoreModel:
    """Merge overrides over the defaults and return a validated model."""
    weights = {**DEFAULT_WEIGHTS, **(weights or {})}
    minimum_counts = {**DEFAULT_MINIMUM_COUNTS, **(minimum_counts or {})}
    scorable_fields = scorable_fields or {}

    sections = []
    for section in Section:
        if section.count_driven:
            sections.append(SectionModel(section, float(weights[section]),
                                         minimum_count=int(minimum_counts[section])))
            continue
        if section in scorable_fields:
            specs = []
            for key in scorable_fields[section]:
                spec = catalog_field(section, key)
                if spec is None:
                    raise ConfigurationError(f"Section {section.value} references unknown field '{key}'")
                specs.append(spec)
            fields = tuple(specs)
        else:
            fields = tuple(spec for spec in FIELD_CATALOG[section] if spec.scored)
        sections.append(SectionModel(section, float(weights[section]), fields=fields))
    return ScoreModel(tuple(sections)).validate()


def _parse_section(name: str) -> Section:
    try:
        return Section(name)
    except ValueError:
        raise ConfigurationError(f"Unknown section '{name}'") from None


def load_score_model(path: str | Path | None = None) -> ScoreModel:
    """Build the model from a JSON override file, or the defaults if none is given."""
    if path is None:
        path = os.environ.get("LAUNCHPAD_SCORE_MODEL") or None
    if path is None:
        return DEFAULT_SCORE_MODEL

    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot read score model from {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Score model file {path} must contain a JSON object")

    try:
        weights = {_parse_section(k): float(v) for k, v in (raw.get("weights") or {}).items()}
        minimum_counts = {_parse_section(k): int(v) for k, v in (raw.get("minimumCounts") or {}).items()}
        scorable = {_parse_section(k): list(v) for k, v in (raw.get("scorableFields") or {}).items()}
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Malformed score model in {path}: {exc}") from exc

    for section in minimum_counts:
        if not section.count_driven:
            raise ConfigurationError(f"Section {section.value} is scored by field status, not item count")
    for section in scorable:
        if section.count_driven:
            raise ConfigurationError(f"Section {section.value} is scored by item count, not field status")

    model = build_score_model(weights, minimum_counts, scorable)
    log.info("Loaded score model from %s", path)
    return model


DEFAULT_SCORE_MODEL = build_score_model()

# ---------------------------------------------------------------------------
# Active model
# ---------------------------------------------------------------------------

_lock = threading.Lock()
_active: ScoreModel | None = DEFAULT_SCORE_MODEL


def configure(model: ScoreModel | None = None) -> ScoreModel:
    """Install the process-wide model. Called once at startup."""
    global _active
    if model is None:
        model = load_score_model()
    model.validate()
    with _lock:
        _active = model
    weights = ", ".join(f"{s.value}={w}" for s, w in model.section_weights().items())
    log.info("Score model active: %s", weights)
    return model


def reset() -> None:
    """Drop the active model; progress is unavailable until :func:`configure` runs."""
    global _active
    with _lock:
        _active = None


def get_score_model() -> ScoreModel:
    with _lock:
        model = _active
    if model is None:
        raise ConfigurationError("Score model is not configured")
    return model
