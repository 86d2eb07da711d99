import logging
from typing import Optional
from . import email as email_module
from .email_templates import EmailTemplate
from .errors import IntegrationFailure

logger = logging.getLogger(__name__)


class Notifier:
    """Email dispatch with two failure policies.

    ``deliver`` raises, for messages sent before anything is committed.
    ``notify`` logs and reports False, for messages that follow a committed
    transition and must not undo it.
    """

    def deliver(self, to: str, template: EmailTemplate, attachments: Optional[list] = None):
        try:
            email_module.send_email(to, template.subject, template.text, html_body=template.html, attachments=attachments)
        except Exception as exc:
            logger.error("email to %s failed: %s", to, exc, exc_info=True)
            raise IntegrationFailure("email delivery failed") from exc

    def notify(self, to: Optional[str], template: EmailTemplate, attachments: Optional[list] = None) -> bool:
        if not to:
            logger.warning("skipping %r: no recipient", template.subject)
            return False
        try:
            email_module.send_email(to, template.subject, template.text, html_body=template.html, attachments=attachments)
        except Exception as exc:
            logger.warning("notification to %s failed: %s", to, exc, exc_info=True)
            return False
        return True
