from datetime import datetime

from studio_sign import email_templates
from studio_sign.config import BRAND_NAME


def test_magic_link_email_carries_link_and_expiry():
    tpl = email_templates.magic_link_email("Jane Doe", "Wedding Agreement", "https://studio.test/contract/sign/abc",
                                           datetime(2025, 6, 4, 9, 0))
    assert tpl.subject == "Please review and sign: Wedding Agreement"
    assert "https://studio.test/contract/sign/abc" in tpl.text
    assert 'href="https://studio.test/contract/sign/abc"' in tpl.html
    assert "04 June 2025, 09:00 UTC" in tpl.text
    assert tpl.text.rstrip().endswith(BRAND_NAME)


def test_user_values_are_escaped_in_html():
    tpl = email_templates.declined_email("<b>Jane</b>", "Wedding", "CONT-2025-001", "too <expensive>")
    assert "<b>Jane</b>" not in tpl.html
    assert "&lt;b&gt;Jane&lt;/b&gt;" in tpl.html
    assert "Reason: too <expensive>" in tpl.text
    assert tpl.subject == "Contract declined: CONT-2025-001"


def test_otp_email():
    tpl = email_templates.otp_email("Jane", "042913", 10)
    assert "042913" in tpl.subject
    assert "Your verification code is 042913." in tpl.text
    assert "10 minutes" in tpl.text


def test_signed_admin_email_mentions_hash():
    tpl = email_templates.signed_admin_email("Jane Doe", "jane@example.com", "Wedding", "CONT-2025-001",
                                             datetime(2025, 6, 1), "f" * 64)
    assert tpl.subject == "Contract signed: CONT-2025-001"
    assert "Signed PDF SHA256: " + "f" * 64 in tpl.text

    no_pdf = email_templates.signed_admin_email("Jane Doe", "jane@example.com", "Wedding", "CONT-2025-001",
                                                datetime(2025, 6, 1), None)
    assert "No PDF on file" in no_pdf.text


def test_envelope_emails():
    request = email_templates.envelope_request_email("Sam", "Second Shooter Agreement", "https://studio.test/sign/t")
    assert request.subject == "Signature Requested: Second Shooter Agreement"
    assert f"{BRAND_NAME} invited you" in request.text

    custom = email_templates.envelope_request_email("Sam", "NDA", "https://studio.test/sign/t", "Please sign by Friday.")
    assert "Please sign by Friday." in custom.text

    done = email_templates.envelope_completed_email("NDA", "e" * 64)
    assert done.subject == "Completed: NDA"
    assert "Final SHA256: " + "e" * 64 in done.text
