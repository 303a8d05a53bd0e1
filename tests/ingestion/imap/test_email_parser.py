"""Tests for the message parser.

Tests cover:
- Envelope precedence over MIME headers and header fallbacks
- Body extraction (plain, HTML, multipart, HTML-only)
- Body truncation bounds
- Attachment metadata extraction
- Rejection of empty, oversized and headerless sources
"""

from __future__ import annotations

from datetime import datetime, timezone
from email.message import EmailMessage

import pytest

from inboxsync.errors import MessageParseError
from inboxsync.ingestion.imap.email_parser import DEFAULT_SUBJECT, MessageParser
from inboxsync.ingestion.imap.models import EmailAddress, MessageEnvelope, RawMessage
from tests.ingestion.imap.conftest import build_message


@pytest.fixture
def parser() -> MessageParser:
    return MessageParser(fallback_domain="imap.example.com")


def _raw(source: bytes, uid: int = 7, **kwargs) -> RawMessage:
    return RawMessage(uid=uid, source=source, **kwargs)


# ============================================================================
# Headers
# ============================================================================


def test_parse_uses_mime_headers_without_envelope(parser):
    """Test headers are read from the source when no envelope is present."""
    parsed = parser.parse(_raw(build_message(7, subject="Quarterly report")))

    assert parsed.uid == 7
    assert parsed.message_id == "msg-7@example.com"
    assert parsed.subject == "Quarterly report"
    assert parsed.from_address == "alice@example.com"
    assert parsed.from_name == "Alice Sender"
    assert parsed.to_addresses == ["bob@example.com"]
    assert parsed.received_at == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_parse_prefers_envelope_fields(parser):
    """Test envelope values win over parsed headers."""
    envelope = MessageEnvelope(
        message_id="env-id@example.com",
        subject="Envelope subject",
        sender=EmailAddress(address="carol@example.com", name="Carol"),
        cc=[EmailAddress(address="dave@example.com")],
        date=datetime(2023, 6, 1, tzinfo=timezone.utc),
    )
    parsed = parser.parse(_raw(build_message(7, subject="Header subject"), envelope=envelope))

    assert parsed.message_id == "env-id@example.com"
    assert parsed.subject == "Envelope subject"
    assert parsed.from_address == "carol@example.com"
    assert parsed.from_name == "Carol"
    assert parsed.cc_addresses == ["dave@example.com"]
    assert parsed.received_at == datetime(2023, 6, 1, tzinfo=timezone.utc)


def test_parse_synthesizes_message_id(parser):
    """Test a missing Message-ID falls back to uid@host."""
    parsed = parser.parse(_raw(b"From: a@example.com\r\nSubject: hi\r\n\r\nbody\r\n", uid=42))

    assert parsed.message_id == "42@imap.example.com"


def test_parse_defaults_missing_subject(parser):
    """Test a missing subject becomes the placeholder subject."""
    parsed = parser.parse(_raw(b"From: a@example.com\r\n\r\nbody\r\n"))

    assert parsed.subject == DEFAULT_SUBJECT


def test_parse_maps_flags(parser):
    """Test read and starred state come from IMAP flags."""
    parsed = parser.parse(_raw(build_message(7), flags=["\\Seen", "\\Flagged"]))

    assert parsed.is_read is True
    assert parsed.is_starred is True


def test_parse_unflagged_message_is_unread(parser):
    """Test a message without flags is unread and not starred."""
    parsed = parser.parse(_raw(build_message(7)))

    assert parsed.is_read is False
    assert parsed.is_starred is False


# ============================================================================
# Bodies
# ============================================================================


def test_parse_plain_and_html_bodies(parser):
    """Test multipart/alternative yields both bodies."""
    source = build_message(7, body="Plain text", html="<p>Rich <b>text</b></p>")
    parsed = parser.parse(_raw(source))

    assert parsed.body_text.strip() == "Plain text"
    assert "<b>text</b>" in parsed.body_html
    assert parsed.snippet == "Plain text"


def test_parse_html_only_derives_text(parser):
    """Test the text body is derived from HTML when no plain part exists."""
    msg = EmailMessage()
    msg["From"] = "a@example.com"
    msg["Subject"] = "html only"
    msg.set_content("<html><body><h1>Hello</h1><p>World</p></body></html>", subtype="html")

    parsed = parser.parse(_raw(msg.as_bytes()))

    assert "Hello" in parsed.body_text
    assert "World" in parsed.body_text
    assert "<h1>" not in parsed.body_text
    assert parsed.body_html is not None


def test_parse_truncates_text_body():
    """Test plain text is cut to the configured maximum."""
    parser = MessageParser(max_text_chars=50_000)
    parsed = parser.parse(_raw(build_message(7, body="x" * 60_000)))

    assert len(parsed.body_text) == 50_000


def test_parse_truncates_html_body():
    """Test HTML is cut to the configured maximum."""
    parser = MessageParser(max_html_chars=100_000)
    html = "<p>" + "y" * 150_000 + "</p>"
    parsed = parser.parse(_raw(build_message(7, body="short", html=html)))

    assert len(parsed.body_html) == 100_000


def test_parse_short_bodies_untouched(parser):
    """Test bodies under the bounds are kept whole."""
    parsed = parser.parse(_raw(build_message(7, body="hello world")))

    assert parsed.body_text.strip() == "hello world"
    assert parsed.body_html is None


# ============================================================================
# Attachments
# ============================================================================


def test_parse_attachment_metadata(parser):
    """Test attachment metadata is extracted without extra fetches."""
    source = build_message(7, attachments=[("report.pdf", b"%PDF-1.4 data")])
    parsed = parser.parse(_raw(source))

    assert len(parsed.attachments) == 1
    attachment = parsed.attachments[0]
    assert attachment.filename == "report.pdf"
    assert attachment.content_type == "application/octet-stream"
    assert attachment.size_bytes == len(b"%PDF-1.4 data")
    assert attachment.is_inline is False


def test_parse_inline_attachment_content_id(parser):
    """Test inline parts keep their Content-ID without brackets."""
    msg = EmailMessage()
    msg["From"] = "a@example.com"
    msg["Subject"] = "inline"
    msg.set_content("see logo")
    msg.add_attachment(
        b"\x89PNG",
        maintype="image",
        subtype="png",
        filename="logo.png",
        disposition="inline",
        cid="<logo@example.com>",
    )

    parsed = parser.parse(_raw(msg.as_bytes()))

    assert len(parsed.attachments) == 1
    assert parsed.attachments[0].is_inline is True
    assert parsed.attachments[0].content_id == "logo@example.com"
    assert parsed.attachments[0].content_type == "image/png"


def test_parse_attachment_body_not_used_as_text(parser):
    """Test attachment parts never become the message body."""
    source = build_message(7, body="real body", attachments=[("notes.txt", b"attached")])
    parsed = parser.parse(_raw(source))

    assert parsed.body_text.strip() == "real body"


def test_parse_forwarded_message_kept_as_one_attachment(parser):
    """Test an attached message is neither the body nor a source of attachments."""
    inner = EmailMessage()
    inner["From"] = "carol@example.com"
    inner["Subject"] = "original"
    inner.set_content("inner plain body")
    inner.add_attachment(
        b"inner data", maintype="application", subtype="octet-stream", filename="inner.bin"
    )

    outer = EmailMessage()
    outer["From"] = "a@example.com"
    outer["Subject"] = "Fwd: original"
    outer.set_content("<p>outer html</p>", subtype="html")
    outer.add_attachment(inner, filename="forwarded.eml")

    parsed = parser.parse(_raw(outer.as_bytes()))

    assert "inner plain body" not in parsed.body_text
    assert "outer html" in parsed.body_text
    assert [attachment.filename for attachment in parsed.attachments] == ["forwarded.eml"]
    assert parsed.attachments[0].content_type == "message/rfc822"
    assert parsed.attachments[0].size_bytes > len(b"inner plain body")


# ============================================================================
# Rejections
# ============================================================================


def test_parse_rejects_empty_source(parser):
    """Test an empty source raises MessageParseError."""
    with pytest.raises(MessageParseError, match="empty message source"):
        parser.parse(_raw(b""))


def test_parse_rejects_oversized_source():
    """Test sources above the byte limit are rejected."""
    parser = MessageParser(max_message_bytes=100)
    with pytest.raises(MessageParseError, match="exceeds"):
        parser.parse(_raw(build_message(7)))


def test_parse_rejects_headerless_garbage(parser):
    """Test bytes without a header block raise MessageParseError."""
    with pytest.raises(MessageParseError, match="no RFC822 header block"):
        parser.parse(_raw(b"\x00\x01\x02 this is not a mail message\r\n"))


def test_parse_error_carries_uid(parser):
    """Test parse errors record the offending UID."""
    with pytest.raises(MessageParseError) as excinfo:
        parser.parse(_raw(b"", uid=99))

    assert excinfo.value.details["uid"] == 99
    assert excinfo.value.recoverable is True
