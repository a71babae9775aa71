from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from launchpad.score_model import FIELD_CATALOG, ConfigurationError, Section, Status


class Base(DeclarativeBase):
    pass


class Role(str, Enum):
    ADMIN = "admin"
    PROJECT = "project"


def _enum(enum_cls) -> SAEnum:
    return SAEnum(enum_cls, native_enum=False, length=20,
                  values_callable=lambda cls: [m.value for m in cls])


def _status() -> Mapped[Status]:
    return mapped_column(_enum(Status), default=Status.NOT_CONFIRMED, nullable=False)


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    email: Mapped[str] = mapped_column(String(300), default="")
    role: Mapped[Role] = mapped_column(_enum(Role), default=Role.PROJECT, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    projects: Mapped[list[Project]] = relationship("Project", back_populates="owner")


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    email: Mapped[str] = mapped_column(String(300), default="")
    owner_id: Mapped[str] = mapped_column(String(100), ForeignKey("users.id"), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    owner: Mapped[User] = relationship("User", back_populates="projects")
    ido_metrics: Mapped[IdoMetrics | None] = relationship(
        "IdoMetrics", back_populates="project", uselist=False, cascade="all, delete-orphan")
    platform_content: Mapped[PlatformContent | None] = relationship(
        "PlatformContent", back_populates="project", uselist=False, cascade="all, delete-orphan")
    marketing_assets: Mapped[MarketingAssets | None] = relationship(
        "MarketingAssets", back_populates="project", uselist=False, cascade="all, delete-orphan")
    faqs: Mapped[list[Faq]] = relationship(
        "Faq", back_populates="project", cascade="all, delete-orphan", order_by="Faq.position")
    quiz_questions: Mapped[list[QuizQuestion]] = relationship(
        "QuizQuestion", back_populates="project", cascade="all, delete-orphan",
        order_by="QuizQuestion.position")


class IdoMetrics(Base):
    __tablename__ = "ido_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), unique=True, nullable=False)

    # Important dates
    whitelisting_date: Mapped[str | None] = mapped_column(String(50))
    whitelisting_date_status: Mapped[Status] = _status()
    placing_ido_date: Mapped[str | None] = mapped_column(String(50))
    placing_ido_date_status: Mapped[Status] = _status()
    claiming_date: Mapped[str | None] = mapped_column(String(50))
    claiming_date_status: Mapped[Status] = _status()
    initial_dex_listing_date: Mapped[str | None] = mapped_column(String(50))
    initial_dex_listing_date_status: Mapped[Status] = _status()

    # Token economics
    ido_price: Mapped[str | None] = mapped_column(String(100))
    ido_price_status: Mapped[Status] = _status()
    tokens_for_sale: Mapped[str | None] = mapped_column(String(100))
    tokens_for_sale_status: Mapped[Status] = _status()
    total_allocation_dollars: Mapped[str | None] = mapped_column(String(100))
    total_allocation_dollars_status: Mapped[Status] = _status()
    token_price: Mapped[str | None] = mapped_column(String(100))
    token_price_status: Mapped[Status] = _status()
    vesting_period: Mapped[str | None] = mapped_column(String(200))
    vesting_period_status: Mapped[Status] = _status()
    cliff_period: Mapped[str | None] = mapped_column(String(200))
    cliff_period_status: Mapped[Status] = _status()
    tge_percentage: Mapped[str | None] = mapped_column(String(10))
    tge_percentage_status: Mapped[Status] = _status()
    total_allocation_native_token: Mapped[str | None] = mapped_column(String(100))
    total_allocation_native_token_status: Mapped[Status] = _status()
    available_at_tge: Mapped[str | None] = mapped_column(String(200))
    available_at_tge_status: Mapped[Status] = _status()
    cliff_lock: Mapped[str | None] = mapped_column(String(200))
    cliff_lock_status: Mapped[Status] = _status()

    # Project details
    network: Mapped[str | None] = mapped_column(String(50))
    network_status: Mapped[Status] = _status()
    minimum_tier: Mapped[str | None] = mapped_column(String(50))
    minimum_tier_status: Mapped[Status] = _status()
    grace_period: Mapped[str | None] = mapped_column(String(200))
    grace_period_status: Mapped[Status] = _status()
    contract_address: Mapped[str | None] = mapped_column(String(42))
    contract_address_status: Mapped[Status] = _status()
    token_ticker: Mapped[str | None] = mapped_column(String(10))
    token_ticker_status: Mapped[Status] = _status()
    transaction_id: Mapped[str | None] = mapped_column(String(200))
    transaction_id_status: Mapped[Status] = _status()

    # Token info
    initial_market_cap: Mapped[str | None] = mapped_column(String(100))
    initial_market_cap_status: Mapped[Status] = _status()
    fully_diluted_market_cap: Mapped[str | None] = mapped_column(String(100))
    fully_diluted_market_cap_status: Mapped[Status] = _status()
    circulating_supply_tge: Mapped[str | None] = mapped_column(String(100))
    circulating_supply_tge_status: Mapped[Status] = _status()
    total_supply: Mapped[str | None] = mapped_column(String(100))
    total_supply_status: Mapped[Status] = _status()

    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    project: Mapped[Project] = relationship("Project", back_populates="ido_metrics")


class PlatformContent(Base):
    __tablename__ = "platform_content"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), unique=True, nullable=False)
    tagline: Mapped[str | None] = mapped_column(String(100))
    tagline_status: Mapped[Status] = _status()
    description: Mapped[str | None] = mapped_column(Text)
    description_status: Mapped[Status] = _status()
    telegram_url: Mapped[str | None] = mapped_column(String(500))
    telegram_url_status: Mapped[Status] = _status()
    discord_url: Mapped[str | None] = mapped_column(String(500))
    discord_url_status: Mapped[Status] = _status()
    twitter_url: Mapped[str | None] = mapped_column(String(500))
    twitter_url_status: Mapped[Status] = _status()
    youtube_url: Mapped[str | None] = mapped_column(String(500))
    youtube_url_status: Mapped[Status] = _status()
    linkedin_url: Mapped[str | None] = mapped_column(String(500))
    linkedin_url_status: Mapped[Status] = _status()
    roadmap_url: Mapped[str | None] = mapped_column(String(500))
    roadmap_url_status: Mapped[Status] = _status()
    team_page_url: Mapped[str | None] = mapped_column(String(500))
    team_page_url_status: Mapped[Status] = _status()
    tokenomics_url: Mapped[str | None] = mapped_column(String(500))
    tokenomics_url_status: Mapped[Status] = _status()
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    project: Mapped[Project] = relationship("Project", back_populates="platform_content")


class MarketingAssets(Base):
    __tablename__ = "marketing_assets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), unique=True, nullable=False)
    logo_url: Mapped[str | None] = mapped_column(String(500))
    logo_url_status: Mapped[Status] = _status()
    hero_banner_url: Mapped[str | None] = mapped_column(String(500))
    hero_banner_url_status: Mapped[Status] = _status()
    drive_folder: Mapped[str | None] = mapped_column(String(500))
    drive_folder_status: Mapped[Status] = _status()
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    project: Mapped[Project] = relationship("Project", back_populates="marketing_assets")


class Faq(Base):
    __tablename__ = "faqs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    answer: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[Status] = _status()
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    project: Mapped[Project] = relationship("Project", back_populates="faqs")


class QuizQuestion(Base):
    __tablename__ = "quiz_questions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    option_a: Mapped[str] = mapped_column(Text, nullable=False)
    option_b: Mapped[str] = mapped_column(Text, nullable=False)
    option_c: Mapped[str] = mapped_column(Text, nullable=False)
    option_d: Mapped[str | None] = mapped_column(Text)
    correct_answer: Mapped[str] = mapped_column(String(1), nullable=False, default="a")  # a | b | c | d
    status: Mapped[Status] = _status()
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    project: Mapped[Project] = relationship("Project", back_populates="quiz_questions")

    @property
    def options(self) -> tuple[str, ...]:
        opts = (self.option_a, self.option_b, self.option_c, self.option_d)
        return tuple(o for o in opts if o is not None)


SECTION_MODELS: dict[Section, type[Base]] = {
    Section.IDO_METRICS: IdoMetrics,
    Section.PLATFORM_CONTENT: PlatformContent,
    Section.MARKETING_ASSETS: MarketingAssets,
}

SECTION_RELATIONS: dict[Section, str] = {
    Section.IDO_METRICS: "ido_metrics",
    Section.PLATFORM_CONTENT: "platform_content",
    Section.MARKETING_ASSETS: "marketing_assets",
}


def check_catalog_columns() -> None:
    """Every catalog field needs a value column and a ``<field>_status`` column."""
    for section, specs in FIELD_CATALOG.items():
        columns = set(SECTION_MODELS[section].__table__.columns.keys())
        for spec in specs:
            for name in (spec.key, f"{spec.key}_status"):
                if name not in columns:
                    raise ConfigurationError(
                        f"Field '{spec.key}' of {section.value} has no '{name}' column"
                    )
