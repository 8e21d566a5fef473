"""Email content preparation.

- HTML to text conversion, reply-chain and forward parsing, signature stripping
- Budgeted excerpt assembly for LLM input
- MIME body tree for raw RFC 5322 messages
"""

from inbox_triage.content.mime import MimeBodies, MimeNode, build_mime_tree, extract_bodies, walk_mime_tree
from inbox_triage.content.prep import (
    ForwardedMessage,
    PreparedContent,
    QuotedReply,
    ReplyChain,
    html_to_plain_text,
    parse_forwarded_message,
    parse_reply_chain,
    prepare_email_content,
    strip_signature,
)

__all__ = [
    # MIME
    "MimeBodies",
    "MimeNode",
    "build_mime_tree",
    "extract_bodies",
    "walk_mime_tree",
    # Preparation
    "ForwardedMessage",
    "PreparedContent",
    "QuotedReply",
    "ReplyChain",
    "html_to_plain_text",
    "parse_forwarded_message",
    "parse_reply_chain",
    "prepare_email_content",
    "strip_signature",
]
