"""Tests for the MIME body tree."""

from email.message import EmailMessage
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from inbox_triage.content.mime import (
    MimeNode,
    build_mime_tree,
    extract_bodies,
    walk_mime_tree,
)


def _make_mixed_message() -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = "Quarterly report"
    msg.set_content("Plain body")
    msg.add_alternative("<p>HTML body</p>", subtype="html")
    msg.add_attachment(b"PDFDATA", maintype="application", subtype="pdf", filename="report.pdf")
    return msg


def _depth(node: MimeNode) -> int:
    """Depth of the deepest node (root is 0), without recursion."""
    deepest = 0
    stack = [(node, 0)]
    while stack:
        current, level = stack.pop()
        deepest = max(deepest, level)
        stack.extend((child, level + 1) for child in current.children)
    return deepest


class TestBuildMimeTree:
    """Tests for build_mime_tree() and walk_mime_tree()."""

    def test_single_part_message(self) -> None:
        msg = EmailMessage()
        msg.set_content("Only text")
        root = build_mime_tree(msg)
        assert root.kind == "text"
        assert root.payload.strip() == "Only text"
        assert root.children == []

    def test_walk_is_document_order(self) -> None:
        root = build_mime_tree(_make_mixed_message())
        kinds = [node.kind for node in walk_mime_tree(root)]
        assert kinds == ["container", "container", "text", "html", "attachment"]

    def test_node_cap(self) -> None:
        msg = MIMEMultipart()
        for i in range(10):
            msg.attach(MIMEText(f"part {i}"))
        root = build_mime_tree(msg, max_nodes=5)
        assert len(list(walk_mime_tree(root))) == 5

    def test_deep_nesting_is_capped_without_recursion(self) -> None:
        inner = MIMEText("deep text")
        for _ in range(500):
            outer = MIMEMultipart()
            outer.attach(inner)
            inner = outer

        root = build_mime_tree(inner, max_depth=10)
        assert _depth(root) <= 10
        assert extract_bodies(root).text is None


class TestExtractBodies:
    """Tests for extract_bodies()."""

    def test_text_html_and_attachments(self) -> None:
        bodies = extract_bodies(build_mime_tree(_make_mixed_message()))
        assert bodies.text.strip() == "Plain body"
        assert bodies.html.strip() == "<p>HTML body</p>"
        assert len(bodies.attachments) == 1
        attachment = bodies.attachments[0]
        assert attachment.filename == "report.pdf"
        assert attachment.mime_type == "application/pdf"
        assert attachment.size == len(b"PDFDATA")

    def test_first_text_body_wins(self) -> None:
        msg = MIMEMultipart()
        msg.attach(MIMEText("first"))
        msg.attach(MIMEText("second"))
        bodies = extract_bodies(build_mime_tree(msg))
        assert bodies.text == "first"
        assert bodies.html is None
