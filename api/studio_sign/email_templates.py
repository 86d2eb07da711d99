from datetime import datetime
from html import escape
from typing import NamedTuple, Optional
from .config import BRAND_NAME


class EmailTemplate(NamedTuple):
    subject: str
    html: str
    text: str


def _fmt(when: Optional[datetime]) -> str:
    return when.strftime("%d %B %Y, %H:%M UTC") if when else "-"


def _wrap(heading: str, inner_html: str) -> str:
    return f"""
<html>
  <body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; background: #f5f6f8; padding: 24px;">
    <div style="max-width: 560px; margin: 0 auto; background: #ffffff; border-radius: 12px; padding: 24px; box-shadow: 0 10px 25px rgba(15,23,42,0.08);">
      <h2 style="margin-top: 0; font-size: 20px; color: #0f172a;">{escape(heading)}</h2>
      {inner_html}
      <p style="font-size: 12px; color: #64748b; border-top: 1px solid #e2e8f0; padding-top: 12px;">{escape(BRAND_NAME)}</p>
    </div>
  </body>
</html>
"""


def _p(text: str) -> str:
    return f'<p style="font-size: 14px; color: #1e293b; line-height: 1.5;">{escape(text)}</p>'


def _button(link: str, label: str) -> str:
    link_html = escape(link)
    return f"""
      <div style="margin: 24px 0;">
        <a href="{link_html}" style="display: inline-block; background: #4f46e5; color: #fff; padding: 12px 24px; border-radius: 999px; text-decoration: none; font-weight: 600;">{escape(label)}</a>
      </div>
      <p style="font-size: 12px; color: #64748b;">If the button doesn&apos;t work, copy this link into your browser:<br /><a href="{link_html}">{link_html}</a></p>"""


def _text(*lines: str) -> str:
    return "\n".join(lines) + f"\n\n{BRAND_NAME}\n"


def magic_link_email(client_name: str, contract_title: str, link: str, expires_at: Optional[datetime]) -> EmailTemplate:
    subject = f"Please review and sign: {contract_title}"
    html = _wrap("Your contract is ready", "".join([
        _p(f"Hi {client_name},"),
        _p(f"Your contract “{contract_title}” is ready for review and signature."),
        _button(link, "Review & Sign"),
        _p(f"This secure link expires {_fmt(expires_at)}."),
    ]))
    text = _text(
        f"Hi {client_name},",
        "",
        f"Your contract “{contract_title}” is ready for review and signature.",
        f"Open it here: {link}",
        f"This secure link expires {_fmt(expires_at)}.",
    )
    return EmailTemplate(subject, html, text)


def otp_email(client_name: str, code: str, ttl_minutes: int) -> EmailTemplate:
    subject = f"Your verification code: {code}"
    html = _wrap("Verification code", "".join([
        _p(f"Hi {client_name},"),
        _p("Use this code to open your contract:"),
        f'<p style="font-family: monospace; font-size: 28px; letter-spacing: 8px; text-align: center;">{escape(code)}</p>',
        _p(f"The code expires in {ttl_minutes} minutes. If you didn't request it, ignore this email."),
    ]))
    text = _text(
        f"Hi {client_name},",
        "",
        f"Your verification code is {code}.",
        f"It expires in {ttl_minutes} minutes.",
    )
    return EmailTemplate(subject, html, text)


def signed_client_email(client_name: str, contract_title: str, contract_number: str, signed_at: datetime) -> EmailTemplate:
    subject = f"Signed: {contract_title}"
    html = _wrap("Thank you for signing", "".join([
        _p(f"Hi {client_name},"),
        _p(f"We received your signature on “{contract_title}” ({contract_number})."),
        _p(f"Signed {_fmt(signed_at)}. A copy is kept on file and available on request."),
    ]))
    text = _text(
        f"Hi {client_name},",
        "",
        f"We received your signature on “{contract_title}” ({contract_number}).",
        f"Signed {_fmt(signed_at)}.",
    )
    return EmailTemplate(subject, html, text)


def signed_admin_email(client_name: str, client_email: str, contract_title: str,
                       contract_number: str, signed_at: datetime, pdf_hash: Optional[str]) -> EmailTemplate:
    subject = f"Contract signed: {contract_number}"
    hash_line = f"Signed PDF SHA256: {pdf_hash}" if pdf_hash else "No PDF on file"
    html = _wrap("Contract signed", "".join([
        _p(f"{client_name} ({client_email}) signed “{contract_title}”."),
        _p(f"Contract {contract_number}, signed {_fmt(signed_at)}."),
        _p(hash_line),
    ]))
    text = _text(
        f"{client_name} ({client_email}) signed “{contract_title}”.",
        f"Contract {contract_number}, signed {_fmt(signed_at)}.",
        hash_line,
    )
    return EmailTemplate(subject, html, text)


def declined_email(client_name: str, contract_title: str, contract_number: str, reason: str) -> EmailTemplate:
    subject = f"Contract declined: {contract_number}"
    html = _wrap("Contract declined", "".join([
        _p(f"{client_name} declined “{contract_title}” ({contract_number})."),
        _p(f"Reason: {reason}"),
    ]))
    text = _text(
        f"{client_name} declined “{contract_title}” ({contract_number}).",
        f"Reason: {reason}",
    )
    return EmailTemplate(subject, html, text)


def expiring_email(client_name: str, contract_title: str, link: str, expires_at: Optional[datetime]) -> EmailTemplate:
    subject = f"Reminder: {contract_title} expires soon"
    html = _wrap("Your contract expires soon", "".join([
        _p(f"Hi {client_name},"),
        _p(f"“{contract_title}” is still waiting for your signature and expires {_fmt(expires_at)}."),
        _button(link, "Review & Sign"),
    ]))
    text = _text(
        f"Hi {client_name},",
        "",
        f"“{contract_title}” is still waiting for your signature and expires {_fmt(expires_at)}.",
        f"Open it here: {link}",
    )
    return EmailTemplate(subject, html, text)


def envelope_request_email(signer_name: str, envelope_name: str, link: str, description: Optional[str] = None) -> EmailTemplate:
    subject = f"Signature Requested: {envelope_name}"
    intro = description or f"{BRAND_NAME} invited you to review and sign this document."
    html = _wrap("Signature requested", "".join([
        _p(f"Hi {signer_name},"),
        _p(intro),
        _button(link, "Review & Sign"),
    ]))
    text = _text(f"Hi {signer_name},", "", intro, "", f"Open document: {link}")
    return EmailTemplate(subject, html, text)


def envelope_completed_email(envelope_name: str, final_hash: str) -> EmailTemplate:
    subject = f"Completed: {envelope_name}"
    sha_line = f"Final SHA256: {final_hash}"
    html = _wrap("Completed", "".join([
        _p(f"All parties have finished signing {envelope_name}."),
        _p(sha_line),
        _p("A copy of the executed PDF is attached for your records."),
    ]))
    text = _text(
        f"All parties have finished signing {envelope_name}.",
        "",
        sha_line,
        "",
        "A copy of the executed PDF is attached for your records.",
    )
    return EmailTemplate(subject, html, text)
