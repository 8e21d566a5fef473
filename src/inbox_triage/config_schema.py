"""Pydantic configuration schema for the inbox triage engine.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from inbox_triage.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from inbox_triage.classifier.categories import ALLOWED_CATEGORIES, DEFAULT_CONFIDENCE_THRESHOLDS

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class DatabaseConfig(BaseModel):
    """SQLite store location."""

    path: str = Field(
        default="data/triage.db",
        description="Path to the SQLite database file",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure the database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class ModelsConfig(BaseModel):
    """Claude model selection per task type."""

    classify: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model for batch email classification",
    )
    max_tokens: int = Field(
        default=4096,
        ge=256,
        le=16384,
        description="Max output tokens per classification request",
    )


class ClassifierConfig(BaseModel):
    """Batching, content budgets, retries and confidence thresholds."""

    max_batch_size: int = Field(
        default=15,
        ge=1,
        le=50,
        description="Max emails per LLM request",
    )
    max_batch_chars: int = Field(
        default=40_000,
        ge=1_000,
        le=400_000,
        description="Max serialized characters per LLM request",
    )
    preview_char_budget: int = Field(
        default=800,
        ge=100,
        description="Body budget for the first (preview) pass",
    )
    full_char_budget: int = Field(
        default=3000,
        ge=200,
        description="Body budget for the second (full) pass",
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per batch before the rule-based fallback",
    )
    retry_base_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Base delay between attempts; rate limits back off exponentially",
    )
    confidence_thresholds: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_CONFIDENCE_THRESHOLDS),
        description="Minimum accepted first-pass confidence per category",
    )
    default_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Threshold for categories missing from confidence_thresholds",
    )
    force_second_pass_categories: list[str] = Field(
        default=["approval", "reply-needed"],
        description="Categories that always get a full-body second pass",
    )
    force_second_pass_bypass: float = Field(
        default=0.9,
        ge=0.0,
        le=1.0,
        description="Confidence at which forced categories skip the second pass",
    )
    fallback_confidence: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Confidence assigned by the rule-based fallback classifier",
    )
    second_pass_enabled: bool = Field(
        default=True,
        description="Run the confidence-driven full-body second pass",
    )

    @field_validator("confidence_thresholds")
    @classmethod
    def validate_thresholds(cls, v: dict[str, float]) -> dict[str, float]:
        """Reject unknown categories and out-of-range thresholds."""
        for category, threshold in v.items():
            if category not in ALLOWED_CATEGORIES:
                raise ValueError(f"Unknown category '{category}' in confidence_thresholds")
            if not 0.0 <= threshold <= 1.0:
                raise ValueError(f"Threshold for '{category}' must be between 0.0 and 1.0")
        return v

    @field_validator("force_second_pass_categories")
    @classmethod
    def validate_forced_categories(cls, v: list[str]) -> list[str]:
        unknown = [c for c in v if c not in ALLOWED_CATEGORIES]
        if unknown:
            raise ValueError(f"Unknown categories in force_second_pass_categories: {unknown}")
        return v

    @model_validator(mode="after")
    def validate_budgets(self) -> "ClassifierConfig":
        if self.full_char_budget < self.preview_char_budget:
            raise ValueError("full_char_budget must be >= preview_char_budget")
        return self


class LearningConfig(BaseModel):
    """Feedback loop from user overrides."""

    feedback_examples_max: int = Field(
        default=10,
        ge=0,
        le=50,
        description="Max correction examples in the prompt feedback block",
    )
    feedback_window_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Only overrides newer than this feed the prompt",
    )
    threshold_window_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Trailing window for per-category override rates",
    )
    override_rate_trigger: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Override rate above which a category threshold is lowered",
    )
    threshold_floor: float = Field(
        default=0.4,
        ge=0.0,
        le=1.0,
        description="Lowest value a self-tuned threshold may reach",
    )
    adjustment_scale: float = Field(
        default=0.5,
        gt=0.0,
        le=2.0,
        description="Threshold reduction per unit of override rate above the trigger",
    )
    min_samples: int = Field(
        default=5,
        ge=1,
        description="Classifications needed in the window before tuning applies",
    )


class DeadlineBand(BaseModel):
    """Deadline distance band: within max_days maps to priority."""

    max_days: int = Field(ge=0)
    priority: int = Field(ge=1, le=5)


class PriorityConfig(BaseModel):
    """Bands, steps and floors of the effective priority algorithm."""

    overdue_bands: list[DeadlineBand] = Field(
        default_factory=lambda: [
            DeadlineBand(max_days=7, priority=1),
            DeadlineBand(max_days=30, priority=2),
            DeadlineBand(max_days=90, priority=3),
        ],
        description="Bands for deadlines already passed (days overdue)",
    )
    upcoming_bands: list[DeadlineBand] = Field(
        default_factory=lambda: [
            DeadlineBand(max_days=2, priority=1),
            DeadlineBand(max_days=6, priority=2),
            DeadlineBand(max_days=14, priority=3),
        ],
        description="Bands for deadlines not yet due (days remaining)",
    )
    reply_critical_days: float = Field(default=5, gt=0)
    reply_important_days: float = Field(default=2, gt=0)
    reply_moderate_days: float = Field(default=1, gt=0)
    response_time_multiplier: float = Field(
        default=1.5,
        gt=0,
        description="Scale on the user's average response time for the base window",
    )
    calendar_day_weight: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Calendar days count at this weight when above business days",
    )
    follow_up_step: int = Field(default=1, ge=0, le=4)
    escalation_step: int = Field(default=2, ge=0, le=4)
    velocity_step: int = Field(default=1, ge=0, le=4)
    active_thread_step: int = Field(default=1, ge=0, le=4)
    vip_floor: int = Field(default=2, ge=1, le=5)
    starred_floor: int = Field(default=2, ge=1, le=5)
    company_floor: int = Field(default=3, ge=1, le=5)
    relationship_floor: int = Field(default=3, ge=1, le=5)
    automated_cap: int = Field(default=4, ge=1, le=5)
    resolved_floor: int = Field(default=4, ge=1, le=5)
    low_confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    low_confidence_floor: int = Field(default=3, ge=1, le=5)
    velocity_multiplier: float = Field(
        default=3.0,
        gt=1.0,
        description="Recent volume above this multiple of the weekly average is an anomaly",
    )
    recent_window_days: int = Field(default=7, ge=1, le=90)
    max_displayed_deadline_days: int = Field(
        default=14,
        ge=0,
        description="Upcoming deadlines within this many days are listed as reasons",
    )

    @field_validator("overdue_bands", "upcoming_bands")
    @classmethod
    def validate_bands(cls, v: list[DeadlineBand]) -> list[DeadlineBand]:
        """Bands must be sorted by distance with non-decreasing priority."""
        for previous, current in zip(v, v[1:]):
            if current.max_days <= previous.max_days:
                raise ValueError("Deadline bands must be sorted by ascending max_days")
            if current.priority < previous.priority:
                raise ValueError("Deadline band priority cannot become more urgent with distance")
        return v


class PipelineConfig(BaseModel):
    """Run orchestration limits."""

    max_emails_per_run: int = Field(
        default=500,
        ge=1,
        le=5000,
        description="Max unclassified emails loaded per run (newest first)",
    )
    hot_thread_min_messages: int = Field(
        default=3,
        ge=2,
        description="New messages in one thread during a run that make it hot",
    )
    thread_fatigue_messages: int = Field(
        default=8,
        ge=2,
        description="Thread length at which the thread is flagged as fatigued",
    )
    latest_sibling_previews: int = Field(default=3, ge=0, le=10)
    stale_run_minutes: int = Field(
        default=10,
        ge=1,
        le=1440,
        description="A run still 'running' after this long is marked failed",
    )
    sync_lease_seconds: int = Field(
        default=600,
        ge=30,
        description="Lifetime of the advisory sync lease",
    )
    full_sync_window_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Bounded window used when a sync cursor is missing or rejected",
    )


class SourcesConfig(BaseModel):
    """Local mailbox source settings."""

    max_messages_per_sync: int = Field(
        default=500,
        ge=1,
        le=10_000,
        description="Max messages one account sync returns",
    )
    max_mime_parts: int = Field(
        default=200,
        ge=1,
        description="MIME nodes walked per message before traversal stops",
    )
    max_mime_depth: int = Field(default=10, ge=1, le=50)


class LLMLoggingConfig(BaseModel):
    """LLM request logging configuration."""

    enabled: bool = Field(default=True, description="Enable LLM request logging")
    retention_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Days to retain LLM request logs",
    )
    log_prompts: bool = Field(
        default=False,
        description="Store full prompts (contain email content)",
    )
    log_responses: bool = Field(
        default=True,
        description="Store full responses",
    )


class LoggingConfig(BaseModel):
    """Application log output."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_output: bool = True


class AppConfig(BaseModel):
    """Root configuration schema for the inbox triage engine.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    priority: PriorityConfig = Field(default_factory=PriorityConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    sources: SourcesConfig = Field(default_factory=SourcesConfig)
    llm_logging: LLMLoggingConfig = Field(default_factory=LLMLoggingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
