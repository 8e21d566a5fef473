"""Triage engines.

This package provides:
- Effective priority (pure read-time scoring)
- Account sync through mail sources
- The triage pipeline and the run manager around it
- User feedback handling and the classification read model
"""

from inbox_triage.engine.feedback import FeedbackService, OverrideOutcome, validate_override
from inbox_triage.engine.pipeline import PipelineResult, TriagePipeline
from inbox_triage.engine.priority import (
    PrioritySignals,
    business_days_between,
    detect_follow_up,
    detect_resolution,
    effective_priority,
    escalation_reasons,
    matches_effective_priority,
    sender_velocity_anomaly,
)
from inbox_triage.engine.read_model import ClassificationReader, ClassificationView
from inbox_triage.engine.runner import RunManager, create_run_manager
from inbox_triage.engine.sync import AccountSyncer, SyncSummary

__all__ = [
    # Priority
    "PrioritySignals",
    "business_days_between",
    "detect_follow_up",
    "detect_resolution",
    "effective_priority",
    "escalation_reasons",
    "matches_effective_priority",
    "sender_velocity_anomaly",
    # Sync
    "AccountSyncer",
    "SyncSummary",
    # Pipeline
    "PipelineResult",
    "RunManager",
    "TriagePipeline",
    "create_run_manager",
    # Feedback and reads
    "ClassificationReader",
    "ClassificationView",
    "FeedbackService",
    "OverrideOutcome",
    "validate_override",
]
