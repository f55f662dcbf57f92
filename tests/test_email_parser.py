from email.message import EmailMessage

from reconciler.processing import EmailParser
from reconciler.processing.email_parser import sender_address, sender_domain


def build_message() -> bytes:
    message = EmailMessage()
    message["From"] = "Acme Billing <billing@acme.example>"
    message["To"] = "books@team.example"
    message["Subject"] = "Invoice INV-42"
    message["Date"] = "Sun, 15 Jun 2025 12:00:00 +0000"
    message["Message-ID"] = "<inv42@acme.example>"
    message.set_content("Please find the invoice attached.")
    message.add_alternative("<p>Please find the invoice attached.</p>", subtype="html")
    message.add_attachment(b"%PDF-1.7 invoice", maintype="application", subtype="pdf", filename="INV-42.pdf")
    return message.as_bytes()


def test_parse_reads_headers_bodies_and_attachments():
    parsed = EmailParser.parse(build_message())

    assert parsed.subject == "Invoice INV-42"
    assert parsed.from_address == "Acme Billing <billing@acme.example>"
    assert parsed.message_id == "<inv42@acme.example>"
    assert parsed.body_text == "Please find the invoice attached."
    assert parsed.body_html == "<p>Please find the invoice attached.</p>"
    assert [(a.filename, a.content_type, a.size_bytes) for a in parsed.attachments] == [
        ("INV-42.pdf", "application/pdf", len(b"%PDF-1.7 invoice")),
    ]


def test_parse_message_without_attachments():
    message = EmailMessage()
    message["From"] = "someone@example.com"
    message.set_content("hello")

    parsed = EmailParser.parse(message.as_bytes())

    assert parsed.attachments == []
    assert parsed.message_id is None
    assert parsed.body_html is None


def test_sender_helpers():
    assert sender_address("Acme <Billing@Acme.Example>") == "billing@acme.example"
    assert sender_domain("Acme <Billing@Acme.Example>") == "acme.example"
    assert sender_domain("undisclosed-recipients") is None
