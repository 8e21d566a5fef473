"""Triage pipeline: one end-to-end run for one user.

Steps of a run:
a. Sync every active account (cursor mode, bounded window when rejected)
b. Load unclassified mail (bounded, newest first)
c. Batch-fetch thread siblings and sender profiles
d. User rules: matches get a deterministic result, no model call
e. Enrich the rest and classify with the feedback block and tuned thresholds
f. Persist (user-overridden rows are skipped) with history entries
g. Fold sender activity into the profiles
h. Hot threads: resolve or re-classify older siblings
i. Auto-actions (mark handled by priority/category) on this run's results

Failures of single items are logged and counted. A failure before or during
sync (or every account failing) fails the run and is re-raised.

Usage:
    from inbox_triage.engine.pipeline import TriagePipeline

    pipeline = TriagePipeline(store, classifier, syncer, config)
    run = await store.create_run(user_id, "manual")
    result = await pipeline.execute(run)
"""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import regex

from inbox_triage.classifier.engine import ClassifyOptions
from inbox_triage.classifier.fallback import FALLBACK_VERSION
from inbox_triage.classifier.feedback import FeedbackLearner
from inbox_triage.classifier.rules import UserRulesEngine
from inbox_triage.classifier.senders import is_automated_sender
from inbox_triage.core.addresses import is_company_domain
from inbox_triage.core.errors import DatabaseError, TriageError
from inbox_triage.core.logging import get_logger, run_context, short_id
from inbox_triage.db.store import SenderActivity
from inbox_triage.engine.priority import detect_follow_up, detect_resolution
from inbox_triage.models import (
    ClassificationInput,
    ClassificationResult,
    NormalizedEmail,
    SenderContext,
    SiblingPreview,
    ThreadContext,
)

if TYPE_CHECKING:
    from inbox_triage.classifier.engine import BatchClassifier, ClassifyOutcome
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import AgentRun, DatabaseStore, SenderProfile, User
    from inbox_triage.engine.sync import AccountSyncer

logger = get_logger(__name__)

FORWARD_SUBJECT = regex.compile(r"^\s*(?:fwd?|fw)\s*:", regex.IGNORECASE)
MAX_PARTICIPANTS = 20


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class PipelineResult:
    """Counters of one pipeline run."""

    run_id: str
    user_id: str
    status: str = "running"
    fetched: int = 0
    loaded: int = 0
    rule_matched: int = 0
    llm_classified: int = 0
    fallback: int = 0
    stored: int = 0
    skipped_override: int = 0
    failed: int = 0
    hot_threads: int = 0
    reclassified: int = 0
    resolved: int = 0
    auto_handled: int = 0
    senders_updated: int = 0
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class _RunContext:
    """Data shared by the steps of one run."""

    user: User
    user_addresses: set[str]
    threads: dict[str, list[NormalizedEmail]]
    profiles: dict[str, SenderProfile]
    options: ClassifyOptions
    stored_results: dict[str, ClassificationResult] = field(default_factory=dict)


class TriagePipeline:
    """Runs the triage steps for one user.

    Attributes:
        _store: DatabaseStore for all persistence
        _classifier: Batch classifier (model + fallback)
        _syncer: Account syncer for step (a)
        _config: Application configuration
        _rules: User rules engine
        _learner: Feedback learner (overrides -> prompt block, thresholds)
    """

    def __init__(
        self,
        store: DatabaseStore,
        classifier: BatchClassifier,
        syncer: AccountSyncer,
        config: AppConfig,
        rules_engine: UserRulesEngine | None = None,
        learner: FeedbackLearner | None = None,
    ):
        self._store = store
        self._classifier = classifier
        self._syncer = syncer
        self._config = config
        self._rules = rules_engine or UserRulesEngine()
        self._learner = learner or FeedbackLearner(store, config)

    def update_config(self, config: AppConfig) -> None:
        """Swap the config of the pipeline and its components (hot reload)."""
        self._config = config
        self._classifier.update_config(config)
        self._syncer.update_config(config)
        self._learner.update_config(config)

    async def execute(self, run: AgentRun) -> PipelineResult:
        """Execute a run to completion and record its terminal status.

        Raises:
            TriageError: Catastrophic failures, after the run is marked failed
        """
        with run_context(run.id):
            start_time = time.monotonic()
            result = PipelineResult(run_id=run.id, user_id=run.user_id)
            logger.info("pipeline_run_start", user_id=run.user_id, trigger=run.trigger)

            try:
                await self._run_steps(run, result)
            except Exception as e:
                result.status = "failed"
                result.errors.append(str(e))
                logger.error("pipeline_run_failed", error=str(e), error_type=type(e).__name__)
                try:
                    await self._store.finish_run(run.id, "failed", error_message=str(e) or type(e).__name__)
                except DatabaseError as db_error:
                    logger.error("run_status_update_failed", error=str(db_error))
                raise
            finally:
                result.duration_ms = int((time.monotonic() - start_time) * 1000)
                logger.info(
                    "pipeline_run_complete",
                    status=result.status,
                    duration_ms=result.duration_ms,
                    fetched=result.fetched,
                    loaded=result.loaded,
                    rule_matched=result.rule_matched,
                    llm_classified=result.llm_classified,
                    fallback=result.fallback,
                    stored=result.stored,
                    skipped_override=result.skipped_override,
                    failed=result.failed,
                    hot_threads=result.hot_threads,
                    reclassified=result.reclassified,
                    resolved=result.resolved,
                    auto_handled=result.auto_handled,
                )

        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _run_steps(self, run: AgentRun, result: PipelineResult) -> None:
        user = await self._store.get_user(run.user_id)
        if user is None:
            raise TriageError(f"User '{run.user_id}' does not exist")

        # a. Sync
        summary = await self._syncer.sync_user(user.id)
        result.fetched = summary.fetched
        await self._store.update_run_progress(run.id, fetched=summary.fetched)

        # b. Load unclassified mail
        emails = await self._store.get_unclassified_emails(user.id, self._config.pipeline.max_emails_per_run)
        result.loaded = len(emails)
        if not emails:
            logger.info("pipeline_no_unclassified_emails")
            await self._finish(run, result)
            return

        # c. Thread siblings and sender profiles
        accounts = await self._store.get_active_accounts(user.id)
        user_addresses = {a.address.lower() for a in accounts} | {user.email.lower()}
        threads = await self._store.get_thread_emails(user.id, {e.thread_id for e in emails if e.thread_id})
        profiles = await self._store.get_sender_profiles(user.id, {e.from_address for e in emails})

        options = ClassifyOptions(
            feedback_block=await self._feedback_block(user.id, {e.from_address for e in emails}),
            thresholds=await self._thresholds(user.id),
        )
        ctx = _RunContext(
            user=user,
            user_addresses=user_addresses,
            threads=threads,
            profiles=profiles,
            options=options,
        )

        # d. User rules
        remaining = await self._apply_user_rules(run, emails, ctx, result)

        # e-f. Classify and persist
        if remaining:
            inputs = [self._enrich(email, ctx) for email in remaining]
            outcome = await self._classifier.classify(inputs, options)
            await self._persist(run, outcome, ctx, result, reason_for_llm="initial")
        await self._store.update_run_progress(run.id, classified=result.stored, failed=result.failed)

        # g. Sender profiles
        await self._update_sender_profiles(user, emails, result)

        # h. Hot threads
        await self._process_hot_threads(run, emails, ctx, result)

        # i. Auto-actions
        await self._apply_auto_actions(run, ctx, result)

        await self._finish(run, result)

    async def _finish(self, run: AgentRun, result: PipelineResult) -> None:
        status = "failed" if result.failed > 0 and result.stored == 0 else "completed"
        error_parts: list[str] = []
        if result.failed:
            error_parts.append(f"{result.failed} email(s) failed classification or storage")
        error_message = "; ".join(error_parts) or None

        await self._store.finish_run(
            run.id,
            status,
            classified=result.stored,
            failed=result.failed,
            error_message=error_message,
        )
        result.status = status

        try:
            await self._store.prune_llm_logs(self._config.llm_logging.retention_days)
        except DatabaseError as e:
            logger.warning("log_pruning_failed", error=str(e))
        await self._store.checkpoint_wal()

    async def _feedback_block(self, user_id: str, senders: set[str]) -> str | None:
        try:
            return await self._learner.build_feedback_block(user_id, senders)
        except DatabaseError as e:
            logger.warning("feedback_block_failed", error=str(e))
            return None

    async def _thresholds(self, user_id: str) -> dict[str, float] | None:
        try:
            return await self._learner.tuned_thresholds(user_id)
        except DatabaseError as e:
            logger.warning("threshold_tuning_failed", error=str(e))
            return None

    async def _apply_user_rules(
        self,
        run: AgentRun,
        emails: list[NormalizedEmail],
        ctx: _RunContext,
        result: PipelineResult,
    ) -> list[NormalizedEmail]:
        """Classify rule matches directly; return the emails left for the model."""
        try:
            rules = await self._store.get_rules(ctx.user.id)
        except DatabaseError as e:
            logger.warning("user_rules_load_failed", error=str(e))
            rules = []

        if not rules:
            return list(emails)

        remaining: list[NormalizedEmail] = []
        for email in emails:
            match = self._rules.match(email, rules)
            if match is None:
                remaining.append(email)
                continue

            rule_result = self._rules.build_result(match, email)
            result.rule_matched += 1
            try:
                written = await self._store.save_classification(
                    email.id, ctx.user.id, rule_result, reason="user-rule", run_id=run.id
                )
                if not written:
                    result.skipped_override += 1
                    continue
                result.stored += 1
                ctx.stored_results[email.id] = rule_result
                if match.rule.mark_handled:
                    await self._store.set_handled(email.id, automated=True, run_id=run.id)
            except DatabaseError as e:
                result.failed += 1
                logger.error("rule_result_store_failed", email_id=short_id(email.id), error=str(e))

        if result.rule_matched:
            logger.info("user_rules_applied", matched=result.rule_matched, remaining=len(remaining))
        return remaining

    async def _persist(
        self,
        run: AgentRun,
        outcome: ClassifyOutcome,
        ctx: _RunContext,
        result: PipelineResult,
        reason_for_llm: str,
    ) -> int:
        """Write classifier results; returns how many were stored."""
        stored = 0
        for email_id, classification in outcome.results.items():
            is_fallback = classification.classifier_version == FALLBACK_VERSION
            if is_fallback:
                result.fallback += 1
            else:
                result.llm_classified += 1
            try:
                written = await self._store.save_classification(
                    email_id,
                    ctx.user.id,
                    classification,
                    reason="fallback" if is_fallback else reason_for_llm,
                    run_id=run.id,
                )
            except DatabaseError as e:
                result.failed += 1
                logger.error("classification_store_failed", email_id=short_id(email_id), error=str(e))
                continue
            if not written:
                result.skipped_override += 1
                continue
            stored += 1
            result.stored += 1
            ctx.stored_results[email_id] = classification

        for failure in outcome.errors:
            result.failed += 1
            result.errors.append(f"{short_id(failure.email_id)}: {failure.message}")
            logger.warning("classification_missing", email_id=short_id(failure.email_id), error=failure.message)
        return stored

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    def _enrich(self, email: NormalizedEmail, ctx: _RunContext) -> ClassificationInput:
        """Build the classifier input for one stored email."""
        pipeline_config = self._config.pipeline
        siblings = ctx.threads.get(email.thread_id, []) if email.thread_id else []
        if not any(s.id == email.id for s in siblings):
            siblings = sorted([*siblings, email], key=lambda s: s.received_at, reverse=True)

        participants: list[str] = []
        for sibling in siblings:
            for address in (sibling.from_address, *sibling.to, *sibling.cc):
                if address and address not in participants:
                    participants.append(address)

        earlier = [s for s in siblings if s.received_at < email.received_at]
        thread = ThreadContext(
            message_count=len(siblings),
            participants=tuple(participants[:MAX_PARTICIPANTS]),
            user_has_replied=any(s.from_address in ctx.user_addresses for s in siblings),
            is_reply_to_user=bool(earlier) and earlier[0].from_address in ctx.user_addresses,
            is_fatigued=len(siblings) >= pipeline_config.thread_fatigue_messages,
            latest_messages=tuple(
                SiblingPreview(from_address=s.from_address, received_at=s.received_at, preview=s.snippet)
                for s in siblings
                if s.id != email.id
            )[: pipeline_config.latest_sibling_previews],
        )

        profile = ctx.profiles.get(email.from_address.lower())
        sender = (
            SenderContext(
                total_emails=profile.total_emails,
                relationship=profile.relationship,
                is_vip=profile.is_vip,
                recent_email_count=profile.recent_email_count,
                avg_response_time_hours=profile.avg_response_time_hours,
            )
            if profile
            else SenderContext()
        )

        is_follow_up, is_escalation = detect_follow_up(email.subject, email.plain_body)
        recipients = {a.lower() for a in (*email.to, *email.cc)}
        return ClassificationInput(
            email=email,
            thread=thread,
            sender=sender,
            is_forwarded=FORWARD_SUBJECT.match(email.subject or "") is not None,
            is_directly_addressed=any(a.lower() in ctx.user_addresses for a in email.to),
            is_follow_up=is_follow_up,
            has_escalation_language=is_escalation,
            recipient_count=len(recipients),
            company_domains=tuple(ctx.user.company_domains),
        )

    # ------------------------------------------------------------------
    # Sender profiles
    # ------------------------------------------------------------------

    def _infer_relationship(self, email: NormalizedEmail, company_domains: list[str]) -> str | None:
        if is_company_domain(email.sender_domain, company_domains):
            return "internal"
        if is_automated_sender(email.from_address):
            return "automated"
        if email.is_mailing_list:
            return "newsletter"
        return None

    async def _update_sender_profiles(
        self,
        user: User,
        emails: list[NormalizedEmail],
        result: PipelineResult,
    ) -> None:
        by_sender: dict[str, list[NormalizedEmail]] = {}
        for email in emails:
            by_sender.setdefault(email.from_address.lower(), []).append(email)

        activity = [
            SenderActivity(
                address=address,
                display_name=next((e.from_name for e in sender_emails if e.from_name), None),
                count=len(sender_emails),
                first_at=min(e.received_at for e in sender_emails),
                last_at=max(e.received_at for e in sender_emails),
                inferred_relationship=self._infer_relationship(sender_emails[0], user.company_domains),
            )
            for address, sender_emails in by_sender.items()
        ]
        try:
            result.senders_updated = await self._store.record_sender_activity(
                user.id,
                activity,
                recent_window_days=self._config.priority.recent_window_days,
            )
        except DatabaseError as e:
            # Profiles are bookkeeping; the run's classifications stand
            logger.warning("sender_profiles_update_failed", senders=len(activity), error=str(e))

    # ------------------------------------------------------------------
    # Hot threads
    # ------------------------------------------------------------------

    async def _process_hot_threads(
        self,
        run: AgentRun,
        emails: list[NormalizedEmail],
        ctx: _RunContext,
        result: PipelineResult,
    ) -> None:
        """Resolve or re-classify older siblings of threads that got busy this run."""
        new_ids = {e.id for e in emails}
        counts = Counter(e.thread_id for e in emails if e.thread_id)
        hot = [tid for tid, n in counts.items() if n >= self._config.pipeline.hot_thread_min_messages]
        if not hot:
            return
        result.hot_threads = len(hot)

        to_reclassify: list[NormalizedEmail] = []
        for thread_id in hot:
            thread = ctx.threads.get(thread_id, [])
            if not thread:
                continue
            latest = thread[0]
            older = [s for s in thread if s.id not in new_ids]
            if not older:
                continue

            try:
                existing = await self._store.get_classifications(s.id for s in older)
            except DatabaseError as e:
                logger.warning("hot_thread_lookup_failed", thread_id=short_id(thread_id), error=str(e))
                continue
            candidates = [
                s
                for s in older
                if s.id in existing and not existing[s.id].user_override and not existing[s.id].handled
            ]
            if not candidates:
                continue

            if detect_resolution(latest.subject, latest.plain_body):
                try:
                    resolved = await self._store.mark_thread_resolved(s.id for s in candidates)
                except DatabaseError as e:
                    logger.warning("thread_resolve_failed", thread_id=short_id(thread_id), error=str(e))
                    continue
                result.resolved += resolved
                logger.info("hot_thread_resolved", thread_id=short_id(thread_id), siblings=resolved)
                continue

            to_reclassify.extend(candidates)

        if not to_reclassify:
            return

        logger.info("hot_thread_reclassify", threads=len(hot), emails=len(to_reclassify))
        inputs = [self._enrich(email, ctx) for email in to_reclassify]
        outcome = await self._classifier.classify(
            inputs,
            ClassifyOptions(
                feedback_block=ctx.options.feedback_block,
                thresholds=ctx.options.thresholds,
                full_pass_only=True,
            ),
        )
        result.reclassified += await self._persist(run, outcome, ctx, result, reason_for_llm="hot-thread")

    # ------------------------------------------------------------------
    # Auto-actions
    # ------------------------------------------------------------------

    async def _apply_auto_actions(self, run: AgentRun, ctx: _RunContext, result: PipelineResult) -> None:
        min_priority = ctx.user.auto_handle_min_priority
        categories = set(ctx.user.auto_handle_categories)
        if min_priority is None and not categories:
            return

        for email_id, classification in ctx.stored_results.items():
            by_priority = min_priority is not None and classification.priority >= min_priority
            if not (by_priority or classification.category in categories):
                continue
            try:
                if await self._store.set_handled(email_id, automated=True, run_id=run.id):
                    result.auto_handled += 1
            except DatabaseError as e:
                logger.warning("auto_action_failed", email_id=short_id(email_id), error=str(e))

        if result.auto_handled:
            logger.info("auto_actions_applied", handled=result.auto_handled)
