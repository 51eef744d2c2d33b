# src/onboarding_pipeline/tools/notify.py

import logging
import os
import smtplib
from email.mime.text import MIMEText
from typing import Callable, Dict, Optional, Tuple

from crewai.tools import tool

from ..models import TransitionEvent

LOGGER = logging.getLogger(__name__)

# (stage, to_status) -> (subject, body opening)
NOTABLE_TRANSITIONS: Dict[Tuple[str, str], Tuple[str, str]] = {
    ("identity", "verified"): ("Your identity is verified", "Your identity has been verified. You can now add your Working With Children Check."),
    ("identity", "failed"): ("We couldn't verify your identity", "Our automated check could not verify your identity."),
    ("identity", "rejected"): ("Your identity could not be verified", "Your identity verification was not accepted."),
    ("identity", "review"): ("Your identity is being reviewed", "A team member is reviewing your identity documents."),
    ("credential", "doc_verified"): ("Your clearance is verified", "Your Working With Children Check document has been verified."),
    ("credential", "verified"): ("Your clearance is confirmed", "Your Working With Children Check has been confirmed with the registry."),
    ("credential", "failed"): ("We couldn't verify your clearance", "Our automated check could not verify your clearance."),
    ("credential", "rejected"): ("Your clearance was not accepted", "Your Working With Children Check was not accepted."),
    ("credential", "expired"): ("Your clearance has expired", "The Working With Children Check you submitted has expired."),
    ("credential", "barred"): ("Update on your verification", "You are not able to complete verification with this clearance."),
    ("credential", "ocg_not_found"): ("We couldn't find your clearance", "The registry has no record matching your clearance."),
    ("credential", "closed"): ("Your clearance is closed", "The issuing authority has closed your clearance."),
    ("credential", "review"): ("Your clearance is being reviewed", "A team member is checking your clearance."),
    ("cross_check", "review"): ("We're double-checking your details", "A team member is reconciling the details on your documents."),
    ("cross_check", "passed"): ("You're provisionally verified", "Your identity and clearance details match."),
}


# ------------------ email sending ------------------

def _send_via_smtp(to: str, subject: str, body: str) -> str:
    host = os.getenv("SMTP_HOST")
    port = int(os.getenv("SMTP_PORT", "587"))
    user = os.getenv("SMTP_USER")
    pwd = os.getenv("SMTP_PASS")
    sender = os.getenv("SMTP_FROM", user or "no-reply@example.com")

    if not (host and user and pwd and to):
        return "email-stub:missing-smtp-config"

    msg = MIMEText(body, "plain", "utf-8")
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to

    with smtplib.SMTP(host, port, timeout=10) as s:
        s.starttls()
        s.login(user, pwd)
        s.sendmail(sender, [to], msg.as_string())
    return "smtp-sent"


def compose_message(event: TransitionEvent) -> Optional[Tuple[str, str]]:
    """Subject and body for a notable transition; None when the event is not notified."""
    template = NOTABLE_TRANSITIONS.get((event.stage, event.to_status))
    if template is None:
        return None
    subject, opening = template
    lines = [opening]
    if event.reason:
        lines.append(f"Details: {event.reason}")
    lines.append("Open the app to see your verification status.")
    return subject, "\n\n".join(lines)


# ------------------ public tool ------------------

@tool("send_transition_email")
def send_transition_email(to: str, subject: str, body: str) -> str:
    """
    Send a verification status email. Uses SMTP when EMAIL_PROVIDER=smtp and the
    SMTP_* settings are present; otherwise returns a stub marker without sending.
    """
    provider = (os.getenv("EMAIL_PROVIDER") or "").lower().strip()
    print(f"[send_transition_email] to={to or '(none)'} subject={subject!r}")
    if provider == "smtp":
        return _send_via_smtp(to, subject, body)
    return "email-stub"


def _default_recipient(user_id: str) -> Optional[str]:
    if "@" in (user_id or ""):
        return user_id
    return os.getenv("DEFAULT_TO") or None


class EmailNotifier:
    """EventBus subscriber that emails the provider on notable stage transitions."""

    def __init__(self, recipient_lookup: Callable[[str], Optional[str]] = _default_recipient):
        self.recipient_lookup = recipient_lookup

    def __call__(self, event: TransitionEvent) -> Optional[str]:
        message = compose_message(event)
        if message is None:
            return None
        to = self.recipient_lookup(event.user_id)
        if not to:
            LOGGER.info("No email address for user %s; %s/%s not sent", event.user_id, event.stage, event.to_status)
            return None
        subject, body = message
        return send_transition_email.func(to=to, subject=subject, body=body)
