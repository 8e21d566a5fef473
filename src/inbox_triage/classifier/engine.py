"""Batch email classification with Claude tool use.

Classification flow for a list of enriched inputs:
1. Split into batches bounded by item count and rendered characters
   (each email rendered at the preview body budget)
2. Call Claude with forced tool_choice; validate the tool input leniently
3. Emails below their category's confidence threshold, in a forced
   category, or with date-like text but no deadline get a second pass
   with the full body budget; if that pass fails the first results stand
4. Automated senders outside the user's company get needs_reply and
   needs_approval forced false
5. Emails the model never classified fall back to deterministic rules

Error handling strategy:
- Rate limits (429): back off base_delay * 2^attempt, retry
- Connection errors, 5xx, missing tool call, schema failures: wait
  base_delay, retry
- Other 4xx: not retryable, go straight to the fallback
- After max_attempts: rule-based fallback at low confidence

The SDK client should be created with max_retries=0; retries and backoff
are handled here so the attempt budget is explicit.

Usage:
    from inbox_triage.classifier.engine import BatchClassifier, ClassifyOptions

    classifier = BatchClassifier(anthropic.AsyncAnthropic(max_retries=0), config, store)
    outcome = await classifier.classify(inputs, ClassifyOptions(feedback_block=block))
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import anthropic

from inbox_triage.classifier.categories import threshold_for
from inbox_triage.classifier.deadlines import find_candidate_dates
from inbox_triage.classifier.fallback import FALLBACK_VERSION, classify_with_rules
from inbox_triage.classifier.prompts import (
    CLASSIFY_EMAILS_TOOL,
    SYSTEM_PROMPT,
    TOOL_NAME,
    build_user_message,
    render_email_block,
)
from inbox_triage.classifier.schema import parse_tool_input, to_result
from inbox_triage.classifier.senders import is_automated_outside_company
from inbox_triage.core.errors import ClassificationError, DatabaseError, LLMResponseError
from inbox_triage.core.logging import get_logger, short_id
from inbox_triage.models import ClassificationInput, ClassificationResult

if TYPE_CHECKING:
    from inbox_triage.config_schema import AppConfig
    from inbox_triage.db.store import DatabaseStore

logger = get_logger(__name__)

# 4xx statuses worth another attempt
RETRYABLE_CLIENT_STATUSES = frozenset({408, 409, 429})


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ClassificationFailure:
    """An input that produced no result."""

    email_id: str
    message: str


@dataclass(frozen=True, slots=True)
class ClassifyOptions:
    """Per-call options.

    Attributes:
        feedback_block: Correction examples to prepend to the user message
        thresholds: Per-category thresholds (defaults to config)
        full_pass_only: Skip the preview pass and classify with the full body
    """

    feedback_block: str | None = None
    thresholds: dict[str, float] | None = None
    full_pass_only: bool = False


@dataclass(slots=True)
class ClassifyOutcome:
    """Every input id ends up in exactly one of results or errors."""

    results: dict[str, ClassificationResult] = field(default_factory=dict)
    errors: list[ClassificationFailure] = field(default_factory=list)
    fallback_count: int = 0
    second_pass_count: int = 0
    llm_calls: int = 0


@dataclass(frozen=True, slots=True)
class _AttemptCall:
    """What an attempt log entry needs to know about the request."""

    batch_ids: list[str]
    attempt: int
    start_time: float
    messages: list[dict[str, Any]]


class _AttemptFailed(Exception):
    """One failed model attempt (internal)."""

    def __init__(self, message: str, delay: float, retryable: bool = True):
        super().__init__(message)
        self.delay = delay
        self.retryable = retryable


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class BatchClassifier:
    """Classifies batches of enriched emails with Claude.

    Attributes:
        _client: Async Anthropic client (max_retries=0)
        _config: Application configuration
        _store: Optional store for LLM request logging
    """

    def __init__(
        self,
        anthropic_client: anthropic.AsyncAnthropic,
        config: AppConfig,
        store: DatabaseStore | None = None,
    ):
        self._client = anthropic_client
        self._config = config
        self._store = store
        self._llm_calls = 0

    def update_config(self, config: AppConfig) -> None:
        self._config = config

    @property
    def classifier_version(self) -> str:
        return f"llm:{self._config.models.classify}"

    # -- batching -----------------------------------------------------------

    def build_batches(
        self,
        inputs: list[ClassificationInput],
        char_budget: int,
    ) -> list[list[ClassificationInput]]:
        """Group inputs by max item count and max rendered characters.

        An email larger than the character cap on its own gets a batch to
        itself rather than being dropped.
        """
        settings = self._config.classifier
        batches: list[list[ClassificationInput]] = []
        current: list[ClassificationInput] = []
        current_chars = 0

        for item in inputs:
            size = len(render_email_block(item, char_budget))
            if current and (
                len(current) >= settings.max_batch_size
                or current_chars + size > settings.max_batch_chars
            ):
                batches.append(current)
                current, current_chars = [], 0
            current.append(item)
            current_chars += size

        if current:
            batches.append(current)
        return batches

    # -- public API -----------------------------------------------------------

    async def classify(
        self,
        inputs: list[ClassificationInput],
        options: ClassifyOptions | None = None,
    ) -> ClassifyOutcome:
        """Classify inputs; never raises for model or validation failures.

        Args:
            inputs: Enriched emails (ids must be unique)
            options: Feedback block, thresholds, pass selection

        Returns:
            ClassifyOutcome with one entry per distinct input id
        """
        options = options or ClassifyOptions()
        outcome = ClassifyOutcome()
        self._llm_calls = 0

        unique: dict[str, ClassificationInput] = {}
        for item in inputs:
            if item.email_id in unique:
                logger.warning("classification_duplicate_input", email_id=short_id(item.email_id))
                continue
            unique[item.email_id] = item
        if not unique:
            return outcome

        settings = self._config.classifier
        items = list(unique.values())
        first_budget = settings.full_char_budget if options.full_pass_only else settings.preview_char_budget

        results: dict[str, ClassificationResult] = {}
        for batch in self.build_batches(items, first_budget):
            results.update(await self._classify_batch(batch, first_budget, options, outcome))

        if settings.second_pass_enabled and not options.full_pass_only:
            flagged = [
                item
                for item in items
                if item.email_id in results
                and self._needs_second_pass(results[item.email_id], item, options.thresholds)
            ]
            if flagged:
                outcome.second_pass_count = len(flagged)
                logger.info("classification_second_pass", emails=len(flagged))
                for batch in self.build_batches(flagged, settings.full_char_budget):
                    try:
                        improved = await self._request_batch(batch, settings.full_char_budget, options)
                    except ClassificationError as e:
                        # First-pass results stand
                        logger.warning(
                            "classification_second_pass_failed",
                            emails=len(batch),
                            error=str(e),
                        )
                        continue
                    results.update(improved)

        for email_id, item in unique.items():
            result = results.get(email_id)
            if result is None:
                outcome.errors.append(
                    ClassificationFailure(email_id=email_id, message="No classification produced")
                )
                continue
            outcome.results[email_id] = self._post_process(result, item)

        outcome.llm_calls = self._llm_calls
        return outcome

    # -- internals ------------------------------------------------------------

    def _needs_second_pass(
        self,
        result: ClassificationResult,
        item: ClassificationInput,
        thresholds: dict[str, float] | None,
    ) -> bool:
        if result.classifier_version == FALLBACK_VERSION:
            return False

        settings = self._config.classifier
        table = thresholds if thresholds is not None else settings.confidence_thresholds
        if result.confidence < threshold_for(result.category, table, settings.default_threshold):
            return True
        if (
            result.category in settings.force_second_pass_categories
            and result.confidence < settings.force_second_pass_bypass
        ):
            return True
        if result.deadline is None and find_candidate_dates(item.email.plain_body):
            return True
        return False

    def _post_process(self, result: ClassificationResult, item: ClassificationInput) -> ClassificationResult:
        """Force reply/approval flags off for automated senders outside the company."""
        if not (result.needs_reply or result.needs_approval):
            return result
        if not is_automated_outside_company(item.email.from_address, item.company_domains):
            return result
        logger.debug(
            "classification_automated_flags_cleared",
            email_id=short_id(item.email_id),
            sender_domain=item.email.sender_domain,
        )
        return replace(result, needs_reply=False, needs_approval=False)

    async def _classify_batch(
        self,
        batch: list[ClassificationInput],
        char_budget: int,
        options: ClassifyOptions,
        outcome: ClassifyOutcome,
    ) -> dict[str, ClassificationResult]:
        """First pass for one batch; emails the model missed fall back to rules."""
        try:
            results = await self._request_batch(batch, char_budget, options)
        except ClassificationError as e:
            logger.warning(
                "classification_batch_fallback",
                emails=len(batch),
                attempts=e.attempts,
                error=str(e),
            )
            results = {}

        for item in batch:
            if item.email_id in results:
                continue
            try:
                results[item.email_id] = classify_with_rules(
                    item, confidence=self._config.classifier.fallback_confidence
                )
                outcome.fallback_count += 1
            except Exception as e:
                # Keep the one-outcome-per-input guarantee even for heuristic bugs
                logger.error(
                    "classification_fallback_failed",
                    email_id=short_id(item.email_id),
                    error=str(e),
                )
        return results

    async def _request_batch(
        self,
        batch: list[ClassificationInput],
        char_budget: int,
        options: ClassifyOptions,
    ) -> dict[str, ClassificationResult]:
        """Call the model with retries until every email has a result.

        Returns whatever was collected (possibly partial).

        Raises:
            ClassificationError: If no email in the batch got a result
        """
        settings = self._config.classifier
        pending = list(batch)
        collected: dict[str, ClassificationResult] = {}
        last_error: str | None = None

        for attempt in range(1, settings.max_attempts + 1):
            try:
                results = await self._call_model(pending, char_budget, options, attempt)
            except _AttemptFailed as e:
                last_error = str(e)
                if not e.retryable:
                    break
                if attempt < settings.max_attempts and e.delay > 0:
                    await asyncio.sleep(e.delay)
                continue

            collected.update(results)
            pending = [item for item in pending if item.email_id not in collected]
            if not pending:
                break
            last_error = f"{len(pending)} email(s) missing from response"
            logger.warning("classification_partial_response", missing=len(pending), attempt=attempt)
            if attempt < settings.max_attempts and settings.retry_base_delay_seconds > 0:
                await asyncio.sleep(settings.retry_base_delay_seconds)

        if not collected:
            raise ClassificationError(
                f"Classification failed for a batch of {len(batch)} email(s) after "
                f"{settings.max_attempts} attempt(s). Last error: {last_error}",
                email_ids=[item.email_id for item in batch],
                attempts=settings.max_attempts,
            )
        return collected

    async def _call_model(
        self,
        batch: list[ClassificationInput],
        char_budget: int,
        options: ClassifyOptions,
        attempt: int,
    ) -> dict[str, ClassificationResult]:
        """One model attempt for a batch.

        Raises:
            _AttemptFailed: On any API, tool-call or validation failure
        """
        settings = self._config.classifier
        base_delay = settings.retry_base_delay_seconds
        model = self._config.models.classify
        message = build_user_message(
            [render_email_block(item, char_budget) for item in batch],
            options.feedback_block,
        )
        messages = [{"role": "user", "content": message}]

        call = _AttemptCall(
            batch_ids=[item.email_id for item in batch],
            attempt=attempt,
            start_time=time.monotonic(),
            messages=messages,
        )
        response: anthropic.types.Message | None = None
        self._llm_calls += 1
        try:
            response = await self._client.messages.create(
                model=model,
                max_tokens=self._config.models.max_tokens,
                system=SYSTEM_PROMPT,
                messages=messages,
                tools=[CLASSIFY_EMAILS_TOOL],
                tool_choice={"type": "tool", "name": TOOL_NAME},
            )
            tool_input = _extract_tool_call(response)
            if tool_input is None:
                raise LLMResponseError("No tool call in response (unexpected with forced tool_choice)")
            raws = parse_tool_input(tool_input)

        except anthropic.RateLimitError as e:
            await self._log_attempt("classification_rate_limited", call, error=str(e))
            raise _AttemptFailed(f"Rate limited: {e}", delay=base_delay * (2**attempt)) from e

        except anthropic.APIConnectionError as e:
            await self._log_attempt("classification_connection_error", call, error=str(e))
            raise _AttemptFailed(f"API connection error: {e}", delay=base_delay) from e

        except anthropic.APIStatusError as e:
            retryable = e.status_code >= 500 or e.status_code in RETRYABLE_CLIENT_STATUSES
            await self._log_attempt("classification_api_error", call, error=f"{e.status_code}: {e.message}")
            raise _AttemptFailed(
                f"API status error {e.status_code}: {e.message}", delay=base_delay, retryable=retryable
            ) from e

        except LLMResponseError as e:
            await self._log_attempt("classification_invalid_response", call, response=response, error=str(e))
            raise _AttemptFailed(str(e), delay=base_delay) from e

        now = datetime.now(UTC)
        known = {item.email_id: item for item in batch}
        results: dict[str, ClassificationResult] = {}
        for raw in raws:
            item = known.get(raw.email_id)
            if item is None:
                logger.warning("classification_unknown_email_id", email_id=short_id(raw.email_id))
                continue
            if raw.email_id in results:
                continue
            results[raw.email_id] = to_result(raw, item.email.received_at, self.classifier_version, now)

        await self._log_attempt(
            "classification_batch_complete",
            call,
            response=response,
            tool_call=tool_input,
            classified=len(results),
        )
        return results

    async def _log_attempt(
        self,
        event: str,
        call: _AttemptCall,
        *,
        response: anthropic.types.Message | None = None,
        tool_call: dict[str, Any] | None = None,
        error: str | None = None,
        classified: int | None = None,
    ) -> None:
        """Log an attempt to structlog and, when enabled, the request log table."""
        duration_ms = int((time.monotonic() - call.start_time) * 1000)
        input_tokens = response.usage.input_tokens if response is not None else None
        output_tokens = response.usage.output_tokens if response is not None else None

        log = logger.warning if error else logger.info
        log(
            event,
            batch_size=len(call.batch_ids),
            attempt=call.attempt,
            duration_ms=duration_ms,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            classified=classified,
            error=error,
        )

        logging_config = self._config.llm_logging
        if self._store is None or not logging_config.enabled:
            return

        prompt: dict[str, Any] = {"email_ids": call.batch_ids}
        if logging_config.log_prompts:
            prompt["system"] = SYSTEM_PROMPT
            prompt["messages"] = call.messages
        response_data: dict[str, Any] | None = None
        if response is not None and logging_config.log_responses:
            response_data = {
                "id": response.id,
                "model": response.model,
                "stop_reason": response.stop_reason,
            }

        try:
            await self._store.log_llm_request(
                task_type="classify",
                model=self._config.models.classify,
                prompt=prompt,
                response=response_data,
                tool_call=tool_call if logging_config.log_responses else None,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                duration_ms=duration_ms,
                email_count=len(call.batch_ids),
                error=error,
            )
        except DatabaseError as e:
            # Logging failures should never block classification
            logger.warning("llm_log_failed", error=str(e))


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _extract_tool_call(response: anthropic.types.Message) -> dict[str, Any] | None:
    """Extract the classify_emails tool input from the API response."""
    for block in response.content:
        if block.type == "tool_use" and block.name == TOOL_NAME:
            return block.input
    return None
