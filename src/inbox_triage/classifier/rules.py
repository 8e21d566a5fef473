"""User rules: deterministic classification that bypasses the model.

Rules are authored by the user and stored per user. A matching rule writes
its forced values with confidence 1.0 and the "user-rule" version tag; the
email never reaches the LLM.

Matching uses fnmatch for sender patterns (glob-style wildcards like
*@billing.example.com) and case-insensitive substring search for subjects.
No regex is used, so there is no ReDoS risk.

Matching logic:
- Every condition a rule sets must hold (sender, subject, mailing list,
  attachments); unset conditions are ignored
- A rule with no conditions never matches
- Rules are evaluated in order (oldest first); the first match wins
"""

from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING

from inbox_triage.classifier.categories import normalize_category
from inbox_triage.core.logging import get_logger
from inbox_triage.models import ClassificationResult, NormalizedEmail

if TYPE_CHECKING:
    from inbox_triage.db.store import UserRule

logger = get_logger(__name__)

USER_RULE_VERSION = "user-rule"
USER_RULE_CONFIDENCE = 1.0
DEFAULT_RULE_PRIORITY = 3
DEFAULT_RULE_CATEGORY = "fyi"


@dataclass(frozen=True, slots=True)
class UserRuleMatch:
    """Result of a user rule match.

    Attributes:
        rule: The matched rule
        match_reason: Human-readable explanation of why the rule matched
    """

    rule: UserRule
    match_reason: str


def rule_has_conditions(rule: UserRule) -> bool:
    return bool(
        rule.sender_pattern
        or rule.subject_contains
        or rule.is_mailing_list is not None
        or rule.has_attachments is not None
    )


def _match_sender(sender_lower: str, pattern: str) -> bool:
    return fnmatchcase(sender_lower, pattern.strip().lower())


def _match_subject(subject_lower: str, keyword: str) -> bool:
    return keyword.strip().lower() in subject_lower


class UserRulesEngine:
    """Evaluates emails against a user's rules."""

    def match(self, email: NormalizedEmail, rules: list[UserRule]) -> UserRuleMatch | None:
        """Return the first active rule whose conditions all hold, or None."""
        if not rules:
            return None

        sender_lower = email.from_address.strip().lower()
        subject_lower = (email.subject or "").lower()

        for rule in rules:
            if not rule.is_active or not rule_has_conditions(rule):
                continue

            reasons: list[str] = []
            if rule.sender_pattern:
                if not _match_sender(sender_lower, rule.sender_pattern):
                    continue
                reasons.append("sender matched pattern")
            if rule.subject_contains:
                if not _match_subject(subject_lower, rule.subject_contains):
                    continue
                reasons.append("subject matched keyword")
            if rule.is_mailing_list is not None:
                if email.is_mailing_list != rule.is_mailing_list:
                    continue
                reasons.append("mailing list" if rule.is_mailing_list else "not a mailing list")
            if rule.has_attachments is not None:
                if email.has_attachments != rule.has_attachments:
                    continue
                reasons.append("has attachments" if rule.has_attachments else "no attachments")

            logger.debug(
                "user_rule_matched",
                rule_id=rule.id,
                sender_domain=email.sender_domain,
                match_type="+".join(reasons),
            )
            return UserRuleMatch(rule=rule, match_reason=f"Rule '{rule.name}': {', '.join(reasons)}")

        return None

    def build_result(self, match: UserRuleMatch, email: NormalizedEmail) -> ClassificationResult:
        """Deterministic classification for a matched rule."""
        rule = match.rule
        category = normalize_category(rule.category) if rule.category else DEFAULT_RULE_CATEGORY
        summary = (email.subject or "(no subject)")[:200]
        return ClassificationResult(
            priority=rule.priority if rule.priority is not None else DEFAULT_RULE_PRIORITY,
            category=category,
            needs_reply=bool(rule.needs_reply),
            needs_approval=False,
            is_thread_active=False,
            summary=summary,
            confidence=USER_RULE_CONFIDENCE,
            topics=(category,),
            sentiment="neutral",
            classifier_version=USER_RULE_VERSION,
        )
