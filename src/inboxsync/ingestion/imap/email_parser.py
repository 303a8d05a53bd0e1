"""Message parser for RFC822/MIME sources.

Turns a :class:`RawMessage` into a :class:`ParsedMessage`: envelope fields are
preferred, parsed MIME headers fill the gaps, bodies are truncated to fixed
bounds, and attachment metadata is read from the already-fetched source so no
extra server round-trips are needed.

The parser is stateless apart from its html2text converter configuration and
is safe to call from several worker threads at once.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from email import message_from_bytes
from email.message import EmailMessage as StdEmailMessage
from email.policy import default as email_policy
from email.utils import getaddresses, parsedate_to_datetime
from typing import Iterator, List, Optional, Tuple

import html2text

from ...errors import MessageParseError
from .models import AttachmentMeta, ParsedMessage, RawMessage

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "(No subject)"
SNIPPET_CHARS = 200


class MessageParser:
    """Parse raw message sources into :class:`ParsedMessage` objects."""

    def __init__(
        self,
        *,
        fallback_domain: str = "localhost",
        max_text_chars: int = 50_000,
        max_html_chars: int = 100_000,
        max_message_bytes: int = 25 * 1024 * 1024,
    ):
        """Initialize the parser.

        Args:
            fallback_domain: Domain for synthesized Message-IDs (the IMAP host)
            max_text_chars: Plain-text body truncation length
            max_html_chars: HTML body truncation length
            max_message_bytes: Sources above this size are rejected
        """
        self.fallback_domain = fallback_domain
        self.max_text_chars = max_text_chars
        self.max_html_chars = max_html_chars
        self.max_message_bytes = max_message_bytes

    def _html_converter(self) -> html2text.HTML2Text:
        # HTML2Text keeps per-document state, so each parse gets its own
        converter = html2text.HTML2Text()
        converter.ignore_links = False
        converter.ignore_images = True
        converter.ignore_emphasis = False
        converter.body_width = 0  # No line wrapping
        return converter

    def parse(self, raw: RawMessage) -> ParsedMessage:
        """Parse one raw message.

        Raises:
            MessageParseError: If the source is empty, oversized, has no
                header block, or the MIME structure cannot be decoded.
        """
        source = raw.source
        if not source:
            raise MessageParseError(f"UID {raw.uid}: empty message source", details={"uid": raw.uid})
        if len(source) > self.max_message_bytes:
            raise MessageParseError(
                f"UID {raw.uid}: message of {len(source)} bytes exceeds "
                f"{self.max_message_bytes} byte limit",
                details={"uid": raw.uid, "size": len(source)},
            )

        try:
            msg = message_from_bytes(source, policy=email_policy)
            if not msg.keys():
                raise ValueError("no RFC822 header block")

            body_text, body_html = self._extract_body(msg)
            attachments = self._extract_attachments(msg)
            from_address, from_name = self._resolve_sender(raw, msg)
            text = self._truncate(body_text or "", self.max_text_chars)

            return ParsedMessage(
                uid=raw.uid,
                message_id=self._resolve_message_id(raw, msg),
                from_address=from_address,
                from_name=from_name,
                to_addresses=self._resolve_recipients(raw.envelope.to, msg, "To"),
                cc_addresses=self._resolve_recipients(raw.envelope.cc, msg, "Cc"),
                subject=raw.envelope.subject or self._header(msg, "Subject") or DEFAULT_SUBJECT,
                body_text=text,
                body_html=self._truncate(body_html, self.max_html_chars) if body_html else None,
                snippet=" ".join(text.split())[:SNIPPET_CHARS],
                received_at=raw.envelope.date or self._extract_date(msg),
                is_read=raw.is_read,
                is_starred=raw.is_starred,
                attachments=attachments,
            )
        except MessageParseError:
            raise
        except Exception as e:
            logger.error(
                f"Failed to parse email message: {e}",
                extra={"uid": raw.uid, "error": str(e)},
            )
            raise MessageParseError(f"UID {raw.uid}: {e}", details={"uid": raw.uid}) from e

    @staticmethod
    def _truncate(value: str, limit: int) -> str:
        return value if len(value) <= limit else value[:limit]

    @staticmethod
    def _header(msg: StdEmailMessage, name: str) -> Optional[str]:
        value = msg.get(name)
        if value is None:
            return None
        return str(value).strip() or None

    def _resolve_message_id(self, raw: RawMessage, msg: StdEmailMessage) -> str:
        message_id = raw.envelope.message_id or (self._header(msg, "Message-ID") or "").strip("<>")
        if not message_id:
            return f"{raw.uid}@{self.fallback_domain}"
        return message_id

    def _resolve_sender(
        self, raw: RawMessage, msg: StdEmailMessage
    ) -> Tuple[Optional[str], Optional[str]]:
        if raw.envelope.sender is not None:
            return raw.envelope.sender.address, raw.envelope.sender.name
        for name, address in getaddresses([self._header(msg, "From") or ""]):
            if address and "@" in address:
                return address.lower(), name or None
        return None, None

    def _resolve_recipients(self, envelope_values, msg: StdEmailMessage, header: str) -> List[str]:
        if envelope_values:
            return [value.address for value in envelope_values]
        return [
            address.lower()
            for _, address in getaddresses([self._header(msg, header) or ""])
            if address and "@" in address
        ]

    def _extract_date(self, msg: StdEmailMessage) -> datetime:
        """Parse the Date header, falling back to the current time."""
        date_header = self._header(msg, "Date")

        if date_header:
            try:
                parsed = parsedate_to_datetime(date_header)
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=timezone.utc)
                return parsed
            except (TypeError, ValueError) as e:
                logger.warning(
                    f"Failed to parse Date header '{date_header}': {e}, using current time"
                )

        return datetime.now(timezone.utc)

    def _extract_body(
        self, msg: StdEmailMessage
    ) -> Tuple[Optional[str], Optional[str]]:
        """Extract plain text and HTML body parts.

        The first non-attachment ``text/plain`` and ``text/html`` parts win.
        When only HTML is present the text body is derived from it.

        Args:
            msg: Parsed email message

        Returns:
            Tuple of (plain_text_body, html_body)
        """
        body_plain = None
        body_html = None

        for part in self._iter_parts(msg):
            if part.is_multipart() or part.get_content_disposition() == "attachment":
                continue
            content_type = part.get_content_type()
            if content_type == "text/plain" and body_plain is None:
                body_plain = self._part_text(part)
            elif content_type == "text/html" and body_html is None:
                body_html = self._part_text(part)

        if body_plain is None and body_html is not None:
            body_plain = self._html_converter().handle(body_html).strip()

        return body_plain, body_html

    @classmethod
    def _iter_parts(cls, part: StdEmailMessage) -> Iterator[StdEmailMessage]:
        """Like ``walk()``, but attached messages are yielded without their subtree."""
        yield part
        if part.is_multipart() and part.get_content_maintype() != "message":
            for child in part.iter_parts():
                yield from cls._iter_parts(child)

    @staticmethod
    def _part_size(part: StdEmailMessage) -> int:
        if part.get_content_maintype() == "message":
            return len(part.as_bytes())
        payload = part.get_payload(decode=True)
        return len(payload) if payload else 0

    @staticmethod
    def _part_text(part: StdEmailMessage) -> Optional[str]:
        try:
            return part.get_content()
        except (LookupError, UnicodeDecodeError) as e:
            # Unknown or lying charset declarations
            logger.warning(f"Falling back to lenient body decoding: {e}")
            payload = part.get_payload(decode=True) or b""
            return payload.decode("utf-8", errors="replace")

    def _extract_attachments(self, msg: StdEmailMessage) -> List[AttachmentMeta]:
        """Extract attachment metadata (no content stored)."""
        attachments: List[AttachmentMeta] = []

        if not msg.is_multipart():
            return attachments

        for part in self._iter_parts(msg):
            content_disposition = part.get_content_disposition()
            if content_disposition not in ("attachment", "inline"):
                continue
            filename = part.get_filename()
            if not filename:
                continue

            size_bytes = self._part_size(part)
            content_id = (part.get("Content-ID") or "").strip().strip("<>").strip()
            attachments.append(
                AttachmentMeta(
                    filename=filename,
                    content_type=part.get_content_type(),
                    size_bytes=size_bytes,
                    content_id=content_id or None,
                    is_inline=content_disposition == "inline",
                )
            )

        return attachments


__all__ = ["DEFAULT_SUBJECT", "MessageParser"]
