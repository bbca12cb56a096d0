import html
import json
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.exceptions import ClientError

from services.deal_errors import EmailDeliveryError
from services.deal_finalizer import PartyIdentity


@dataclass
class EmailSendResult:
    """Outcome of a deal confirmation send attempt."""

    success: bool
    message_id: Optional[str] = None


def _label(key: str) -> str:
    return " ".join(part.capitalize() for part in str(key).replace("_", " ").split(" "))


def _display_value(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def format_terms_for_display(terms: Dict[str, Any]) -> str:
    return "\n".join(f"{_label(key)}: {_display_value(value)}" for key, value in terms.items())


def render_deal_text(
    recipient: PartyIdentity,
    counterparty: PartyIdentity,
    terms: Dict[str, Any],
    summary: str,
    proposal_id: Optional[str] = None,
) -> str:
    lines = [
        "Hello,",
        "",
        f"This email confirms that {recipient.company_name} has agreed a deal with "
        f"{counterparty.company_name}.",
        "",
        "DEAL SUMMARY",
        "------------",
        "",
    ]
    if proposal_id:
        lines += [f"Reference: {proposal_id}", ""]
    lines += [
        summary,
        "",
        "Agreed terms:",
        format_terms_for_display(terms) or "No additional terms.",
        "",
        "Please retain this email for your records. If you have any questions, "
        "please contact the parties directly.",
        "",
        "Best regards,",
        "Deal Notification",
    ]
    return "\n".join(lines)


def render_deal_html(
    recipient: PartyIdentity,
    counterparty: PartyIdentity,
    terms: Dict[str, Any],
    summary: str,
    proposal_id: Optional[str] = None,
) -> str:
    esc = html.escape
    rows = "\n".join(
        f'    <tr><td style="padding:8px 12px 8px 0;color:#555;font-weight:500;">{esc(_label(key))}</td>'
        f'<td style="padding:8px 0;">{esc(_display_value(value))}</td></tr>'
        for key, value in terms.items()
    )
    table = (
        f'<table style="border-collapse:collapse;margin:12px 0;">{rows}</table>'
        if rows
        else "<p style='margin:12px 0;color:#666;'>No additional terms.</p>"
    )
    reference = (
        f'<p style="margin:0 0 16px;"><strong>Reference:</strong> {esc(proposal_id)}</p>'
        if proposal_id
        else ""
    )
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><meta name="viewport" content="width=device-width,initial-scale=1"></head>
<body style="font-family:Georgia,'Times New Roman',serif;font-size:15px;line-height:1.5;color:#222;max-width:560px;margin:0 auto;padding:24px;">
  <p style="margin:0 0 20px;">Hello,</p>
  <p style="margin:0 0 20px;">This email confirms that <strong>{esc(recipient.company_name)}</strong> has agreed a deal with <strong>{esc(counterparty.company_name)}</strong>.</p>
  <div style="border:1px solid #e0e0e0;border-radius:6px;padding:20px;margin:24px 0;background:#fafafa;">
    {reference}
    <p style="margin:0 0 16px;">{esc(summary)}</p>
    <p style="margin:0 0 8px;font-size:13px;text-transform:uppercase;letter-spacing:0.05em;color:#666;">Agreed terms</p>
    {table}
  </div>
  <p style="margin:24px 0 0;">Best regards,<br>Deal Notification</p>
</body>
</html>"""


class EmailService:
    """Sends deal confirmation emails over SMTP."""

    def __init__(self, settings):
        self.settings = settings
        self.logger = logging.getLogger(__name__)

    def send_deal_confirmation(
        self,
        recipient: PartyIdentity,
        counterparty: PartyIdentity,
        terms: Dict[str, Any],
        summary: str,
        *,
        proposal_id: Optional[str] = None,
    ) -> EmailSendResult:
        """Email ``recipient`` the confirmed deal with ``counterparty``.

        Recipients without an email address are skipped.  Delivery failures
        raise :class:`EmailDeliveryError`; the caller decides whether that is
        fatal.
        """

        if not (recipient.email or "").strip():
            self.logger.warning(
                "No email address for %s; deal confirmation skipped", recipient.company_id
            )
            return EmailSendResult(False)

        sender = self.settings.sender_address
        msg = MIMEMultipart("alternative")
        msg["Subject"] = (
            f"Deal confirmed: {recipient.company_name} and {counterparty.company_name}"
        )
        msg["From"] = sender
        msg["To"] = recipient.email
        msg["Date"] = formatdate(localtime=True)
        message_id = make_msgid(domain=self._infer_domain(sender))
        msg["Message-ID"] = message_id
        if proposal_id:
            msg["X-Deal-Proposal-ID"] = proposal_id
        msg.attach(MIMEText(render_deal_text(recipient, counterparty, terms, summary, proposal_id), "plain"))
        msg.attach(MIMEText(render_deal_html(recipient, counterparty, terms, summary, proposal_id), "html"))

        try:
            username, password = self._fetch_smtp_credentials()
            self._deliver_via_smtp(msg.as_string(), sender, [recipient.email], username, password)
        except EmailDeliveryError:
            raise
        except Exception as exc:
            self.logger.error("Deal confirmation to %s failed: %s", recipient.email, exc)
            raise EmailDeliveryError(
                f"Could not send deal confirmation to {recipient.email}"
            ) from exc

        self.logger.info(
            "Sent deal confirmation to %s (%s)", recipient.company_id, recipient.email
        )
        return EmailSendResult(True, message_id)

    def _fetch_smtp_credentials(self) -> Tuple[Optional[str], Optional[str]]:
        """Return SMTP credentials from settings or from AWS Secrets Manager.

        When ``smtp_secret_name`` is configured the secret must hold a JSON
        object with ``SMTP_USERNAME``/``SMTP_PASSWORD`` (or lower-case
        ``username``/``password``) keys.
        """

        secret_name = getattr(self.settings, "smtp_secret_name", None)
        if not secret_name:
            return self.settings.smtp_user, self.settings.smtp_password

        region = getattr(self.settings, "smtp_secret_region", None) or "eu-west-1"
        client = boto3.client("secretsmanager", region_name=region)
        try:
            secret_value = client.get_secret_value(SecretId=secret_name)
        except ClientError as exc:
            raise EmailDeliveryError(
                f"Failed to retrieve SMTP secret '{secret_name}'"
            ) from exc

        secret_string = secret_value.get("SecretString")
        if not secret_string:
            raise EmailDeliveryError("Secret does not contain a SecretString payload")
        try:
            payload = json.loads(secret_string)
        except json.JSONDecodeError as exc:
            raise EmailDeliveryError("Secret payload is not valid JSON") from exc

        username = payload.get("SMTP_USERNAME") or payload.get("smtp_username") or payload.get("username")
        password = payload.get("SMTP_PASSWORD") or payload.get("smtp_password") or payload.get("password")
        if not username or not password:
            raise EmailDeliveryError("Secret payload missing SMTP credentials")
        return str(username).strip(), str(password).strip()

    def _deliver_via_smtp(
        self,
        message_payload: str,
        sender: str,
        recipient_list,
        smtp_username: Optional[str],
        smtp_password: Optional[str],
    ) -> None:
        host = self.settings.smtp_host
        port = int(self.settings.smtp_port)
        timeout = getattr(self.settings, "smtp_timeout", 30)
        context = ssl.create_default_context()
        if port == 465:
            server_cm = smtplib.SMTP_SSL(host, port, timeout=timeout, context=context)
        else:
            server_cm = smtplib.SMTP(host, port, timeout=timeout)
        with server_cm as server:
            server.ehlo()
            if port != 465:
                server.starttls(context=context)
                server.ehlo()
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(sender, recipient_list, message_payload)

    @staticmethod
    def _infer_domain(sender: str) -> Optional[str]:
        """Best-effort extraction of the sender's domain for Message-ID generation."""

        if not sender or "@" not in sender:
            return None
        domain = sender.split("@", 1)[-1].strip().rstrip(">")
        return domain or None
