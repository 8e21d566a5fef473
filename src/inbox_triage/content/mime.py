"""MIME body tree: typed nodes built and walked without recursion.

Hostile or broken messages can nest multiparts very deeply, so both the
builder and the walker use an explicit stack and stop at a depth cap and a
node cap instead of recursing.

Usage:
    from inbox_triage.content.mime import build_mime_tree, extract_bodies

    root = build_mime_tree(message)
    bodies = extract_bodies(root)
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from email.message import Message
from typing import Literal

from inbox_triage.core.logging import get_logger
from inbox_triage.models import AttachmentMeta

logger = get_logger(__name__)

DEFAULT_MAX_NODES = 200
DEFAULT_MAX_DEPTH = 10

NodeKind = Literal["text", "html", "attachment", "container"]


@dataclass(slots=True)
class MimeNode:
    """One MIME part.

    Attributes:
        kind: text | html | attachment | container
        content_type: Lowercased MIME type
        payload: Decoded text for text/html nodes
        filename: Attachment filename, if any
        size: Decoded payload size in bytes
        children: Sub-parts of a container
    """

    kind: NodeKind
    content_type: str
    payload: str | None = None
    filename: str | None = None
    size: int = 0
    children: list[MimeNode] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class MimeBodies:
    """Bodies and attachment metadata extracted from a tree."""

    text: str | None
    html: str | None
    attachments: tuple[AttachmentMeta, ...] = ()


def _decode_payload(part: Message) -> tuple[str, int]:
    raw = part.get_payload(decode=True)
    if raw is None:
        payload = part.get_payload()
        text = payload if isinstance(payload, str) else ""
        return text, len(text.encode("utf-8", errors="replace"))
    charset = part.get_content_charset() or "utf-8"
    try:
        return raw.decode(charset, errors="replace"), len(raw)
    except LookupError:
        # Unknown charset label
        return raw.decode("utf-8", errors="replace"), len(raw)


def _leaf_node(part: Message) -> MimeNode:
    content_type = part.get_content_type().lower()
    disposition = part.get_content_disposition()
    filename = part.get_filename()

    if disposition == "attachment" or (filename and content_type not in ("text/plain", "text/html")):
        raw = part.get_payload(decode=True)
        return MimeNode(
            kind="attachment",
            content_type=content_type,
            filename=filename,
            size=len(raw) if raw else 0,
        )

    if content_type in ("text/plain", "text/html"):
        text, size = _decode_payload(part)
        return MimeNode(
            kind="text" if content_type == "text/plain" else "html",
            content_type=content_type,
            payload=text,
            size=size,
        )

    raw = part.get_payload(decode=True)
    return MimeNode(
        kind="attachment",
        content_type=content_type,
        filename=filename,
        size=len(raw) if raw else 0,
    )


def build_mime_tree(
    message: Message,
    max_nodes: int = DEFAULT_MAX_NODES,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> MimeNode:
    """Build a typed tree from a parsed email message.

    Args:
        message: Parsed message (email.message.Message or EmailMessage)
        max_nodes: Stop adding nodes after this many
        max_depth: Parts nested deeper than this are skipped

    Returns:
        Root MimeNode
    """
    root = _leaf_node(message) if not message.is_multipart() else MimeNode(
        kind="container", content_type=message.get_content_type().lower()
    )
    if root.kind != "container":
        return root

    count = 1
    stack: list[tuple[Message, MimeNode, int]] = [(message, root, 0)]
    truncated = False
    while stack:
        part, node, depth = stack.pop()
        children = part.get_payload()
        if not isinstance(children, list):
            continue

        pending: list[tuple[Message, MimeNode, int]] = []
        for child in children:
            if count >= max_nodes or depth + 1 > max_depth:
                truncated = True
                break
            if child.is_multipart():
                child_node = MimeNode(kind="container", content_type=child.get_content_type().lower())
                pending.append((child, child_node, depth + 1))
            else:
                child_node = _leaf_node(child)
            node.children.append(child_node)
            count += 1
        # Reverse so siblings are expanded in document order
        stack.extend(reversed(pending))

    if truncated:
        logger.warning("mime_tree_truncated", nodes=count, max_nodes=max_nodes, max_depth=max_depth)
    return root


def walk_mime_tree(root: MimeNode) -> Iterator[MimeNode]:
    """Yield nodes in document (pre-order) order using an explicit stack."""
    stack = [root]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))


def extract_bodies(root: MimeNode) -> MimeBodies:
    """First text body, first HTML body and all attachment metadata."""
    text: str | None = None
    html: str | None = None
    attachments: list[AttachmentMeta] = []

    for node in walk_mime_tree(root):
        if node.kind == "text" and text is None:
            text = node.payload
        elif node.kind == "html" and html is None:
            html = node.payload
        elif node.kind == "attachment":
            attachments.append(
                AttachmentMeta(filename=node.filename, mime_type=node.content_type, size=node.size)
            )

    return MimeBodies(text=text, html=html, attachments=tuple(attachments))
