import smtplib
from unittest.mock import MagicMock, patch

import pytest

from services.notification_service.email_sender import ReceiptEmailSender
from services.notification_service.main import ReceiptMailer
from services.notification_service.receipt_formatter import format_receipt, receipt_subject
from shared.events import ReceiptPrintRequestedEvent

RECEIPT_DATA = {
    "transaction": {
        "transaction_id": "TXN-1A2B3C4D5E6F",
        "transaction_number": "POS202610190001",
        "subtotal": "4700.00",
        "discount_amount": "0.00",
        "tax_amount": "752.00",
        "tip_amount": "200.00",
        "total_amount": "5652.00",
        "payment_method": "mpesa",
        "external_payment_ref": "NLJ7RT61SV",
        "created_at": "2026-10-19T07:21:15",
    },
    "customer": {"name": "Alice Smith", "phone": "0712000001", "email": "alice.smith@example.com"},
    "items": [
        {"name": "Swedish Massage", "quantity": 1, "unit_price": "3500.00", "total_price": "3500.00", "staff": "Sarah Johnson"},
        {"name": "Lavender Massage Oil", "quantity": 1, "unit_price": "1200.00", "total_price": "1200.00", "staff": None},
    ],
    "staff": "Sarah Johnson",
    "branch": "Downtown Spa",
}


def receipt_event(email="alice.smith@example.com"):
    return ReceiptPrintRequestedEvent(
        correlation_id="TXN-1A2B3C4D5E6F",
        transaction_id="TXN-1A2B3C4D5E6F",
        receipt_number="RCP20261019000001",
        customer_email=email,
        receipt_data=RECEIPT_DATA,
    )


def test_format_receipt():
    text = format_receipt("RCP20261019000001", RECEIPT_DATA)
    lines = text.splitlines()

    assert lines[0].strip() == "Downtown Spa"
    assert "RCP20261019000001" in text
    assert "1 x Swedish Massage" in text
    assert "  with Sarah Johnson" in lines
    assert "Discount" not in text
    assert any(line.startswith("Tip") and line.endswith("200.00") for line in lines)
    assert any(line.startswith("TOTAL (KES)") and line.endswith("5652.00") for line in lines)
    assert any(line.endswith("MPESA NLJ7RT61SV") for line in lines)


def test_receipt_subject():
    assert receipt_subject("RCP1", RECEIPT_DATA) == "Your receipt RCP1 from Downtown Spa"


class TestReceiptMailer:
    def test_emails_customer(self):
        sender = MagicMock()
        sender.send_receipt.return_value = True

        assert ReceiptMailer(sender).handle(receipt_event()) is True

        to_email, subject, body, receipt_number = sender.send_receipt.call_args.args
        assert to_email == "alice.smith@example.com"
        assert "RCP20261019000001" in subject
        assert "Swedish Massage" in body
        assert receipt_number == "RCP20261019000001"

    def test_no_email_on_file(self):
        sender = MagicMock()
        assert ReceiptMailer(sender).handle(receipt_event(email=None)) is False
        sender.send_receipt.assert_not_called()


SMTP = "services.notification_service.email_sender.smtplib.SMTP"


def send(sender, text="RECEIPT\n  1 x Manicure <gel>"):
    return sender.send_receipt("a@example.com", "Your receipt", text, "RCP20261019000001")


class TestReceiptEmailSender:
    def test_plain_relay(self):
        with patch(SMTP) as smtp_cls:
            assert send(ReceiptEmailSender("localhost", 1025)) is True

        smtp_cls.assert_called_once_with("localhost", 1025, timeout=30)
        server = smtp_cls.return_value.__enter__.return_value
        smtp_cls.return_value.starttls.assert_not_called()
        server.login.assert_not_called()
        message = server.send_message.call_args.args[0]
        assert message["To"] == "a@example.com"
        assert message["From"] == "receipts@spa-pos.local"
        assert message["X-Receipt-Number"] == "RCP20261019000001"

    def test_message_keeps_receipt_columns(self):
        message = ReceiptEmailSender("localhost", 1025).build_message("a@example.com", "Hi", "A  B\n<x>", "RCP1")

        plain, rich = message.get_payload()
        assert message.get_content_subtype() == "alternative"
        assert plain.get_payload(decode=True).decode() == "A  B\n<x>"
        assert "<pre" in rich.get_payload(decode=True).decode()
        assert "&lt;x&gt;" in rich.get_payload(decode=True).decode()

    def test_starttls_with_login(self):
        sender = ReceiptEmailSender("smtp.example.com", 587, security="starttls", username="pos", password="secret")

        with patch(SMTP) as smtp_cls:
            assert send(sender) is True

        server = smtp_cls.return_value
        server.starttls.assert_called_once()
        server.__enter__.return_value.login.assert_called_once_with("pos", "secret")

    def test_implicit_tls(self):
        sender = ReceiptEmailSender("smtp.example.com", 465, security="ssl", username="pos", password="secret")

        with patch("services.notification_service.email_sender.smtplib.SMTP_SSL") as ssl_cls:
            assert send(sender) is True

        assert ssl_cls.call_args.args == ("smtp.example.com", 465)
        ssl_cls.return_value.__enter__.return_value.send_message.assert_called_once()

    def test_unknown_security_mode(self):
        with pytest.raises(ValueError):
            ReceiptEmailSender("localhost", 1025, security="tls13")

    def test_connection_failure_returns_false(self):
        with patch(SMTP, side_effect=smtplib.SMTPConnectError(421, "unavailable")):
            assert send(ReceiptEmailSender("localhost", 1025)) is False

    def test_rejected_login_returns_false(self):
        sender = ReceiptEmailSender("smtp.example.com", 587, security="starttls", username="pos", password="wrong")

        with patch(SMTP) as smtp_cls:
            smtp_cls.return_value.__enter__.return_value.login.side_effect = smtplib.SMTPAuthenticationError(
                535, b"bad credentials"
            )
            assert send(sender) is False
