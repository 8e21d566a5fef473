"""Content preparation: turn raw email bodies into budgeted LLM excerpts.

Pipeline (prepare_email_content):
1. Pick the text body; convert HTML only when there is no text body
2. Detect a forwarded message and keep the forwarder's comment separate
3. Strip the signature (only when it sits in the last 40% of the text)
4. Split the remaining text into primary content and quoted replies
5. Assemble within the char budget: 60% primary, 25% most recent reply,
   15% compressed older replies, forwarded content in what is left

CRITICAL SECURITY NOTE:
All regex operations use the `regex` library with a timeout to prevent
ReDoS from hostile email content. A timeout leaves the text unchanged for
that step and is logged; preparation never raises.

Usage:
    from inbox_triage.content.prep import prepare_email_content

    prepared = prepare_email_content(body_text, body_html, subject, char_budget=800)
    print(prepared.text, prepared.was_truncated)
"""

from __future__ import annotations

import html
from dataclasses import dataclass

import regex

from inbox_triage.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CHAR_BUDGET = 3000

# Regex timeout in seconds (CRITICAL: all operations MUST use this)
REGEX_TIMEOUT = 1.0

PRIMARY_SHARE = 0.60
RECENT_REPLY_SHARE = 0.25
OLDER_REPLIES_SHARE = 0.15
OLDER_REPLY_MAX_CHARS = 120
SIGNATURE_MIN_POSITION = 0.6
MAX_REPLY_DEPTH = 25
MIN_FORWARD_SPACE = 40
ELLIPSIS = "..."


# =============================================================================
# Compiled Regex Patterns
# =============================================================================

# HTML to text
STYLE_SCRIPT_PATTERN = regex.compile(r"<(style|script)\b[^>]*>.*?</\1\s*>", regex.IGNORECASE | regex.DOTALL)
HTML_COMMENT_PATTERN = regex.compile(r"<!--.*?-->", regex.DOTALL)
BR_PATTERN = regex.compile(r"<br\s*/?>", regex.IGNORECASE)
PARAGRAPH_END_PATTERN = regex.compile(r"</p\s*>", regex.IGNORECASE)
BLOCK_END_PATTERN = regex.compile(r"</(?:div|li|tr|blockquote)\s*>", regex.IGNORECASE)
HEADING_END_PATTERN = regex.compile(r"</h[1-6]\s*>", regex.IGNORECASE)
LIST_ITEM_PATTERN = regex.compile(r"<li\b[^>]*>", regex.IGNORECASE)
HR_PATTERN = regex.compile(r"<hr\b[^>]*>", regex.IGNORECASE)
HTML_TAG_PATTERN = regex.compile(r"<[^>]+>")
HORIZONTAL_SPACE_PATTERN = regex.compile(r"[ \t]+")
EXCESS_NEWLINES_PATTERN = regex.compile(r"\n{3,}")

# Reply chains
GMAIL_HEADER_PATTERN = regex.compile(r"^On\s+.{10,200}?\s+wrote:\s*$", regex.MULTILINE)
GMAIL_TIMED_HEADER = regex.compile(
    r"^On\s+(?P<date>.+?\d{1,2}:\d{2}(?:\s*[AaPp]\.?[Mm]\.?)?)\s*,?\s+(?P<author>.+?)\s+wrote:"
)
GMAIL_COMMA_HEADER = regex.compile(r"^On\s+(?P<date>.+),\s*(?P<author>[^,]+?)\s+wrote:")
GMAIL_BARE_HEADER = regex.compile(r"^On\s+(?P<author>.+?)\s+wrote:")
OUTLOOK_DIVIDER_PATTERN = regex.compile(
    r"^-{2,}\s*(?:Original Message|Forwarded message)\s*-{2,}\s*$",
    regex.MULTILINE | regex.IGNORECASE,
)
OUTLOOK_HEADER_BLOCK_PATTERN = regex.compile(
    r"^From:[ \t]*(?P<from>.+)\n(?:Sent|Date):[ \t]*(?P<date>.+)\n"
    r"(?:To:[ \t]*.+\n)?(?:Cc:[ \t]*.+\n)?Subject:[ \t]*.*$",
    regex.MULTILINE | regex.IGNORECASE,
)
QUOTED_LINE_PATTERN = regex.compile(r"^>", regex.MULTILINE)
QUOTE_PREFIX_PATTERN = regex.compile(r"^>[ \t]?", regex.MULTILINE)
DISPLAY_NAME_PATTERN = regex.compile(r"^\s*\"?(?P<name>[^\"<]+?)\"?\s*<[^>]+>\s*$")

# Signatures (only stripped in the final 40% of the text)
SIGNATURE_PATTERNS = [
    regex.compile(r"^-- ?$", regex.MULTILINE),
    regex.compile(
        r"^Sent from my (?:iPhone|iPad|Galaxy|Android|Samsung|Pixel|Huawei)\b",
        regex.MULTILINE | regex.IGNORECASE,
    ),
    regex.compile(r"^Get Outlook for (?:iOS|Android)\b", regex.MULTILINE | regex.IGNORECASE),
    regex.compile(
        r"^Sent from (?:Yahoo Mail|Mail for Windows|Outlook|Thunderbird)\b",
        regex.MULTILINE | regex.IGNORECASE,
    ),
    regex.compile(
        r"^-{2,}\s*\n\s*(?:CONFIDENTIAL|DISCLAIMER|PRIVILEGED|NOTICE)",
        regex.MULTILINE | regex.IGNORECASE,
    ),
]

# Forwarding
FORWARD_DIVIDER_PATTERNS = [
    regex.compile(r"^-{3,}\s*Forwarded message\s*-{3,}[ \t]*$", regex.MULTILINE | regex.IGNORECASE),
    regex.compile(r"^Begin forwarded message:[ \t]*$", regex.MULTILINE | regex.IGNORECASE),
    regex.compile(r"^-{3,}\s*Original Message\s*-{3,}[ \t]*$", regex.MULTILINE | regex.IGNORECASE),
]
FORWARD_SUBJECT_PATTERN = regex.compile(r"^\s*(?:Fwd?|Fw)\s*:", regex.IGNORECASE)
HEADER_LINE_PATTERN = regex.compile(r"^(?P<name>From|Date|Sent|Subject|To|Cc):[ \t]*(?P<value>.*)$", regex.IGNORECASE)
FROM_LINE_PATTERN = regex.compile(r"^From:[ \t]*\S.*$", regex.MULTILINE | regex.IGNORECASE)


# =============================================================================
# Result types
# =============================================================================


@dataclass(frozen=True, slots=True)
class QuotedReply:
    """One quoted message from a reply chain (most recent first)."""

    author: str | None
    date: str | None
    text: str


@dataclass(frozen=True, slots=True)
class ReplyChain:
    """Primary (new) content plus the quoted history."""

    primary: str
    entries: tuple[QuotedReply, ...] = ()


@dataclass(frozen=True, slots=True)
class ForwardedMessage:
    """A forwarded email split into the forwarder's comment and the original."""

    original_from: str | None
    original_date: str | None
    original_subject: str | None
    forwarded_body: str
    sender_comment: str


@dataclass(frozen=True, slots=True)
class PreparedContent:
    """Budgeted excerpt plus metadata about what was done to produce it."""

    text: str
    char_count: int
    had_reply_chain: bool = False
    reply_chain_depth: int = 0
    was_forwarded: bool = False
    had_signature: bool = False
    was_truncated: bool = False
    derived_from_html: bool = False


# =============================================================================
# Regex helpers
# =============================================================================


def _pattern_label(pattern: regex.Pattern) -> str:
    return pattern.pattern[:50]


def _safe_sub(pattern: regex.Pattern, repl: str, text: str) -> str:
    """Regex substitution with timeout; returns the input unchanged on timeout."""
    try:
        return pattern.sub(repl, text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        _log_timeout("sub", pattern, text)
        return text


def _safe_search(pattern: regex.Pattern, text: str, pos: int = 0) -> regex.Match | None:
    try:
        return pattern.search(text, pos, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        _log_timeout("search", pattern, text)
        return None


def _safe_match(pattern: regex.Pattern, text: str) -> regex.Match | None:
    try:
        return pattern.match(text, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        _log_timeout("match", pattern, text)
        return None


def _log_timeout(step: str, pattern: regex.Pattern, text: str) -> None:
    logger.warning(
        "content_regex_timeout",
        step=step,
        pattern=_pattern_label(pattern),
        text_length=len(text),
    )


def _truncate(text: str, limit: int) -> tuple[str, bool]:
    """Cut text to at most `limit` chars, ending with an ellipsis when cut."""
    if len(text) <= limit:
        return text, False
    if limit <= len(ELLIPSIS):
        return ELLIPSIS[: max(limit, 0)], True
    return text[: limit - len(ELLIPSIS)].rstrip() + ELLIPSIS, True


def _one_line(text: str) -> str:
    return " ".join(text.split())


# =============================================================================
# HTML to text
# =============================================================================


def html_to_plain_text(html_body: str) -> str:
    """Convert an HTML body to readable plain text.

    Block elements become line breaks, list items become "- " bullets,
    entities are decoded and whitespace is collapsed.

    Args:
        html_body: Raw HTML

    Returns:
        Plain text (may be empty)
    """
    if not html_body:
        return ""

    text = _safe_sub(STYLE_SCRIPT_PATTERN, "", html_body)
    text = _safe_sub(HTML_COMMENT_PATTERN, "", text)
    text = _safe_sub(BR_PATTERN, "\n", text)
    text = _safe_sub(PARAGRAPH_END_PATTERN, "\n\n", text)
    text = _safe_sub(BLOCK_END_PATTERN, "\n", text)
    text = _safe_sub(HEADING_END_PATTERN, "\n\n", text)
    text = _safe_sub(LIST_ITEM_PATTERN, "- ", text)
    text = _safe_sub(HR_PATTERN, "\n---\n", text)
    text = _safe_sub(HTML_TAG_PATTERN, "", text)

    text = html.unescape(text).replace("\xa0", " ").replace("\r\n", "\n")
    text = _safe_sub(HORIZONTAL_SPACE_PATTERN, " ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = _safe_sub(EXCESS_NEWLINES_PATTERN, "\n\n", text)
    return text.strip()


# =============================================================================
# Reply chains
# =============================================================================


@dataclass(frozen=True, slots=True)
class _QuoteHeader:
    author: str | None
    date: str | None


def _display_name(value: str) -> str:
    match = _safe_match(DISPLAY_NAME_PATTERN, value)
    if match:
        return match.group("name").strip()
    return value.strip()


def _parse_gmail_header(line: str) -> _QuoteHeader:
    for pattern in (GMAIL_TIMED_HEADER, GMAIL_COMMA_HEADER):
        match = _safe_match(pattern, line)
        if match:
            return _QuoteHeader(
                author=_display_name(match.group("author")),
                date=match.group("date").strip(),
            )
    match = _safe_match(GMAIL_BARE_HEADER, line)
    return _QuoteHeader(author=_display_name(match.group("author")) if match else None, date=None)


def _strip_quote_prefix(text: str) -> str:
    return _safe_sub(QUOTE_PREFIX_PATTERN, "", text)


def _split_first_quote(text: str) -> tuple[str, _QuoteHeader | None, str]:
    """Find the first quoted message in text.

    Returns:
        (text before the quote, quote header or None, quoted text with one
        level of ">" prefixes removed)
    """
    candidates: list[tuple[int, str, regex.Match]] = []
    for kind, pattern in (
        ("gmail", GMAIL_HEADER_PATTERN),
        ("divider", OUTLOOK_DIVIDER_PATTERN),
        ("outlook", OUTLOOK_HEADER_BLOCK_PATTERN),
    ):
        match = _safe_search(pattern, text)
        if match:
            candidates.append((match.start(), kind, match))

    if candidates:
        _, kind, match = min(candidates, key=lambda c: c[0])
        before = text[: match.start()]
        after = text[match.end() :]

        if kind == "gmail":
            header = _parse_gmail_header(match.group(0).strip())
            return before, header, _strip_quote_prefix(after)

        if kind == "divider":
            # The divider is usually followed by a From/Sent/To/Subject block
            block = _safe_search(OUTLOOK_HEADER_BLOCK_PATTERN, after)
            if block and not after[: block.start()].strip():
                return (
                    before,
                    _QuoteHeader(
                        author=_display_name(block.group("from")),
                        date=block.group("date").strip(),
                    ),
                    after[block.end() :],
                )
            return before, _QuoteHeader(author=None, date=None), after

        return (
            before,
            _QuoteHeader(author=_display_name(match.group("from")), date=match.group("date").strip()),
            after,
        )

    quoted = _safe_search(QUOTED_LINE_PATTERN, text)
    if quoted:
        return (
            text[: quoted.start()],
            _QuoteHeader(author="Previous sender", date=None),
            _strip_quote_prefix(text[quoted.start() :]),
        )

    return text, None, ""


def parse_reply_chain(text: str) -> ReplyChain:
    """Split text into primary content and an ordered list of quoted replies.

    Recognizes "On <date>, <person> wrote:" headers, Outlook header blocks
    and "Original Message" dividers, and plain ">" quoting. Nested quotes are
    unwrapped iteratively (most recent reply first). Text with no recognized
    quoting comes back whole as the primary content with an empty chain.

    Args:
        text: Plain-text email body

    Returns:
        ReplyChain
    """
    if not text:
        return ReplyChain(primary="")

    before, header, after = _split_first_quote(text)
    if header is None:
        return ReplyChain(primary=text.strip())

    entries: list[QuotedReply] = []
    while header is not None and len(entries) < MAX_REPLY_DEPTH:
        segment, next_header, next_after = _split_first_quote(after)
        entries.append(QuotedReply(author=header.author, date=header.date, text=segment.strip()))
        header, after = next_header, next_after

    return ReplyChain(primary=before.strip(), entries=tuple(entries))


# =============================================================================
# Signatures
# =============================================================================


def strip_signature(text: str) -> tuple[str, bool]:
    """Remove a trailing signature block.

    A marker only counts when it starts in the final 40% of the text, so a
    "-- " or "Sent from my iPhone" near the top never eats the message.

    Returns:
        (text without signature, whether a signature was removed)
    """
    if not text:
        return text, False

    min_position = len(text) * SIGNATURE_MIN_POSITION
    cut: int | None = None
    for pattern in SIGNATURE_PATTERNS:
        pos = 0
        while True:
            match = _safe_search(pattern, text, pos)
            if match is None:
                break
            if match.start() > min_position:
                if cut is None or match.start() < cut:
                    cut = match.start()
                break
            pos = match.end() if match.end() > match.start() else match.start() + 1

    if cut is None:
        return text, False
    return text[:cut].rstrip(), True


# =============================================================================
# Forwarded messages
# =============================================================================


def _parse_forward_headers(text: str) -> tuple[dict[str, str], str]:
    """Consume a leading header block; returns (headers, remaining body)."""
    headers: dict[str, str] = {}
    lines = text.split("\n")
    index = 0
    while index < len(lines):
        line = lines[index].strip()
        if not line:
            if headers:
                index += 1
                break
            index += 1
            continue
        match = _safe_match(HEADER_LINE_PATTERN, line)
        if not match:
            break
        name = match.group("name").lower()
        if name == "sent":
            name = "date"
        headers.setdefault(name, match.group("value").strip())
        index += 1
    return headers, "\n".join(lines[index:]).strip()


def parse_forwarded_message(text: str, subject: str | None = None) -> ForwardedMessage | None:
    """Detect a forwarded email and separate comment, headers and original body.

    Args:
        text: Plain-text body
        subject: Subject line (a Fwd:/Fw: prefix marks a forward on its own)

    Returns:
        ForwardedMessage, or None when the email is not a forward
    """
    if not text:
        return None

    divider: regex.Match | None = None
    for pattern in FORWARD_DIVIDER_PATTERNS:
        match = _safe_search(pattern, text)
        if match and (divider is None or match.start() < divider.start()):
            divider = match

    if divider is not None:
        comment = text[: divider.start()].strip()
        headers, body = _parse_forward_headers(text[divider.end() :])
    elif subject and _safe_match(FORWARD_SUBJECT_PATTERN, subject):
        from_line = _safe_search(FROM_LINE_PATTERN, text)
        if from_line:
            comment = text[: from_line.start()].strip()
            headers, body = _parse_forward_headers(text[from_line.start() :])
        else:
            comment, headers, body = "", {}, text.strip()
    else:
        return None

    return ForwardedMessage(
        original_from=_display_name(headers["from"]) if headers.get("from") else None,
        original_date=headers.get("date"),
        original_subject=headers.get("subject"),
        forwarded_body=body,
        sender_comment=comment,
    )


# =============================================================================
# Budget assembly
# =============================================================================


def _reply_label(author: str | None, date: str | None) -> str:
    label = f"[Previous reply from {author or 'unknown sender'}"
    if date:
        label += f" on {date}"
    return label + "]:"


def prepare_email_content(
    body_text: str | None,
    body_html: str | None,
    subject: str | None = None,
    char_budget: int = DEFAULT_CHAR_BUDGET,
) -> PreparedContent:
    """Produce a budgeted, structured excerpt of an email body.

    Args:
        body_text: Plain-text body (preferred)
        body_html: HTML body (used only when there is no text body)
        subject: Subject line, for forward detection
        char_budget: Max characters of the returned text

    Returns:
        PreparedContent whose text never exceeds char_budget
    """
    budget = max(char_budget, 0)
    text = (body_text or "").replace("\r\n", "\n").strip()
    derived_from_html = False
    if not text and body_html:
        text = html_to_plain_text(body_html)
        derived_from_html = bool(text)

    if not text:
        return PreparedContent(text="", char_count=0, derived_from_html=derived_from_html)

    forwarded = parse_forwarded_message(text, subject)
    working = forwarded.sender_comment if forwarded else text
    working, had_signature = strip_signature(working)
    chain = parse_reply_chain(working)

    truncated = False
    if not chain.entries and forwarded is None:
        output, truncated = _truncate(chain.primary, budget)
    else:
        sections: list[str] = []

        if chain.primary:
            primary, cut = _truncate(chain.primary, int(budget * PRIMARY_SHARE))
            truncated |= cut
            sections.append(primary)

        if chain.entries:
            recent = chain.entries[0]
            label = _reply_label(recent.author, recent.date)
            room = max(int(budget * RECENT_REPLY_SHARE) - len(label) - 1, 0)
            body, cut = _truncate(recent.text, room)
            truncated |= cut
            sections.append(f"{label}\n{body}" if body else label)

            older = chain.entries[1:]
            if older:
                lines = [f"[{len(older)} older message(s) in thread]"]
                for entry in older:
                    line, cut = _truncate(_one_line(entry.text), OLDER_REPLY_MAX_CHARS)
                    truncated |= cut
                    lines.append(f"- {entry.author or 'unknown sender'}: {line}")
                summary, cut = _truncate("\n".join(lines), int(budget * OLDER_REPLIES_SHARE))
                truncated |= cut
                sections.append(summary)

        if forwarded is not None:
            used = sum(len(s) for s in sections) + 2 * len(sections)
            label = f"[Forwarded from {forwarded.original_from or 'unknown sender'}"
            if forwarded.original_date:
                label += f" on {forwarded.original_date}"
            label += "]:"
            room = budget - used - len(label) - 1
            if room >= MIN_FORWARD_SPACE:
                body, cut = _truncate(forwarded.forwarded_body, room)
                truncated |= cut
                sections.append(f"{label}\n{body}")
            elif forwarded.forwarded_body:
                truncated = True

        output = "\n\n".join(s for s in sections if s)

    # Final safety cut; section shares can round past the budget
    output, cut = _truncate(output, budget)
    truncated |= cut

    return PreparedContent(
        text=output,
        char_count=len(output),
        had_reply_chain=bool(chain.entries),
        reply_chain_depth=len(chain.entries),
        was_forwarded=forwarded is not None,
        had_signature=had_signature,
        was_truncated=truncated,
        derived_from_html=derived_from_html,
    )
