"""Email classification components.

- Category taxonomy, alias table and confidence thresholds
- Lenient validation of the model's tool output
- Batch classifier with the two-pass protocol and rule-based fallback
- User rules that bypass the model
- Feedback from user overrides (prompt block and tuned thresholds)
"""

from inbox_triage.classifier.categories import (
    ALLOWED_CATEGORIES,
    DEFAULT_CATEGORY,
    normalize_category,
    threshold_for,
    tuned_threshold,
)
from inbox_triage.classifier.deadlines import find_candidate_dates, validate_deadline
from inbox_triage.classifier.engine import (
    BatchClassifier,
    ClassificationFailure,
    ClassifyOptions,
    ClassifyOutcome,
)
from inbox_triage.classifier.fallback import FALLBACK_VERSION, classify_with_rules
from inbox_triage.classifier.feedback import FeedbackLearner, OverrideExample
from inbox_triage.classifier.rules import USER_RULE_VERSION, UserRuleMatch, UserRulesEngine
from inbox_triage.classifier.senders import is_automated_outside_company, is_automated_sender

__all__ = [
    # Categories
    "ALLOWED_CATEGORIES",
    "DEFAULT_CATEGORY",
    "normalize_category",
    "threshold_for",
    "tuned_threshold",
    # Deadlines
    "find_candidate_dates",
    "validate_deadline",
    # Batch classifier
    "BatchClassifier",
    "ClassificationFailure",
    "ClassifyOptions",
    "ClassifyOutcome",
    # Fallback
    "FALLBACK_VERSION",
    "classify_with_rules",
    # Feedback
    "FeedbackLearner",
    "OverrideExample",
    # User rules
    "USER_RULE_VERSION",
    "UserRuleMatch",
    "UserRulesEngine",
    # Senders
    "is_automated_outside_company",
    "is_automated_sender",
]
