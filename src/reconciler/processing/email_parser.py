"""Email parsing utilities for RFC822 format emails."""

import email
from email import policy
from email.message import EmailMessage
from email.utils import parseaddr

from ..models import EmailAttachment, ParsedEmail


def sender_address(from_header: str) -> str:
    """Bare, lower-cased address from a From header ("Acme <billing@acme.com>")."""
    return parseaddr(from_header)[1].strip().lower()


def sender_domain(from_header: str) -> str | None:
    address = sender_address(from_header)
    if "@" not in address:
        return None
    return address.rsplit("@", 1)[1]


class EmailParser:
    """Parse RFC822 email messages and extract components."""

    @staticmethod
    def parse(email_bytes: bytes) -> ParsedEmail:
        """Parse email bytes and extract key components.

        Args:
            email_bytes: Email in RFC822 format (bytes)

        Returns:
            ParsedEmail: Parsed email object with all components
        """
        msg = email.message_from_bytes(email_bytes, policy=policy.default)

        body_text, body_html = EmailParser._extract_body(msg)

        return ParsedEmail(
            subject=str(msg.get('Subject', '')),
            from_address=str(msg.get('From', '')),
            to_address=str(msg.get('To', '')),
            date=str(msg.get('Date', '')),
            body_text=body_text,
            body_html=body_html,
            attachments=EmailParser._extract_attachments(msg),
            message_id=str(msg['Message-ID']) if msg['Message-ID'] else None,
        )

    @staticmethod
    def _extract_attachments(msg: EmailMessage) -> list[EmailAttachment]:
        """Collect named attachments, including inline images with a filename.

        Args:
            msg: Email message object

        Returns:
            list[EmailAttachment]: List of email attachments
        """
        attachments = []

        for part in msg.walk():
            if part.is_multipart():
                continue

            filename = part.get_filename()
            if not filename:
                continue

            try:
                payload = part.get_payload(decode=True)
            except (ValueError, LookupError):
                # Malformed transfer encoding
                continue
            if not payload:
                continue

            attachments.append(EmailAttachment(
                filename=filename,
                content_type=part.get_content_type(),
                data=payload,
                size_bytes=len(payload),
            ))

        return attachments

    @staticmethod
    def _extract_body(msg: EmailMessage) -> tuple[str | None, str | None]:
        """Extract both text and HTML bodies from an email message.

        Args:
            msg: Email message object

        Returns:
            tuple[str | None, str | None]: (body_text, body_html)
        """
        body_text = None
        body_html = None

        for content_type in ("plain", "html"):
            part = msg.get_body(preferencelist=(content_type,))
            if part is None:
                continue
            try:
                content = part.get_content()
            except (LookupError, UnicodeDecodeError):
                continue
            if content_type == "plain":
                body_text = content.strip() or None
            else:
                body_html = content.strip() or None

        return body_text, body_html
