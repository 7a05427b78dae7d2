"""
Email delivery and send-window policy.

Handles:
- Resend HTTP API delivery (default transport)
- SMTP delivery
- Send window checks in the reference timezone
- Reference-day boundaries for daily limits and cooldowns
"""

import logging
import math
import smtplib
import uuid
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional

import pytz
import requests

from mediacrm import config
from mediacrm.campaigns.config import CAMPAIGN_CONFIG
from mediacrm.campaigns.errors import ConfigurationMissing

logger = logging.getLogger(__name__)


class SendResult:
    """Result of an email send attempt."""
    def __init__(
        self,
        success: bool,
        message: str = "",
        error: Optional[str] = None,
        bounced: bool = False,
        transport_id: Optional[str] = None,
    ):
        self.success = success
        self.message = message
        self.error = error
        self.bounced = bounced
        self.transport_id = transport_id


@dataclass
class OutgoingEmail:
    from_address: str  # "Name <email>"
    to: str
    subject: str
    html: str
    reply_to: Optional[str] = None
    text: Optional[str] = None
    # Recorded for intent only; tracking is configured per sending domain
    track_opens: bool = False
    track_clicks: bool = False


class ResendTransport:
    """MailTransport backed by the Resend email API."""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key if api_key is not None else config.RESEND_API_KEY
        self.base_url = (base_url or config.RESEND_BASE_URL).rstrip('/')

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def send(self, email: OutgoingEmail) -> SendResult:
        if not self.is_configured():
            return SendResult(
                success=False,
                message="Resend API key not configured",
                error="Resend API key not configured. Set RESEND_API_KEY.",
            )

        payload = {
            'from': email.from_address,
            'to': [email.to],
            'subject': email.subject,
            'html': email.html,
            # Unique per message to stop clients threading campaign mail together
            'headers': {'X-Entity-Ref-ID': str(uuid.uuid4())},
        }
        if email.reply_to:
            payload['reply_to'] = email.reply_to
        if email.text:
            payload['text'] = email.text

        try:
            resp = requests.post(
                f"{self.base_url}/emails",
                json=payload,
                headers={
                    **config.REQUEST_HEADERS,
                    'Authorization': f"Bearer {self.api_key}",
                },
                timeout=config.REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            logger.error("Resend API error sending to %s: %s", email.to, exc)
            return SendResult(success=False, message="Resend request failed", error=str(exc))

        try:
            data = resp.json()
        except ValueError:
            data = {}

        if resp.status_code >= 400:
            error = data.get('message') or f"HTTP {resp.status_code}"
            logger.error("Resend rejected email to %s: %s", email.to, error)
            return SendResult(
                success=False,
                message="Resend rejected email",
                error=error,
                bounced=resp.status_code == 422,
            )

        logger.info("Email sent to %s via Resend (%s)", email.to, data.get('id'))
        return SendResult(
            success=True,
            message=f"Sent to {email.to}",
            transport_id=data.get('id'),
        )


class SmtpTransport:
    """MailTransport that relays through an SMTP server with STARTTLS."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
    ):
        self.host = host or config.SMTP_HOST
        self.port = port or config.SMTP_PORT
        self.user = user if user is not None else config.SMTP_USER
        self.password = password if password is not None else config.SMTP_PASSWORD

    def is_configured(self) -> bool:
        return bool(self.user and self.password)

    def send(self, email: OutgoingEmail) -> SendResult:
        if not self.is_configured():
            return SendResult(
                success=False,
                message="SMTP credentials not configured",
                error="config_error",
            )

        # Build message
        msg = MIMEMultipart('alternative')
        if email.text:
            msg.attach(MIMEText(email.text, 'plain', 'utf-8'))
        msg.attach(MIMEText(email.html, 'html', 'utf-8'))

        message_id = make_msgid()
        msg['From'] = email.from_address
        msg['To'] = email.to
        msg['Subject'] = email.subject
        msg['Message-ID'] = message_id
        if email.reply_to:
            msg['Reply-To'] = email.reply_to

        try:
            with smtplib.SMTP(self.host, self.port, timeout=config.REQUEST_TIMEOUT) as server:
                server.ehlo()
                server.starttls()
                server.ehlo()
                server.login(self.user, self.password)
                server.sendmail(self.user, [email.to], msg.as_string())

            logger.info("Email sent to %s via SMTP", email.to)
            return SendResult(
                success=True,
                message=f"Sent to {email.to}",
                transport_id=message_id,
            )

        except smtplib.SMTPRecipientsRefused as e:
            logger.error("Recipients refused: %s", e)
            return SendResult(
                success=False,
                message="Recipients refused",
                error=str(e),
                bounced=True,
            )
        except (smtplib.SMTPException, OSError) as e:
            logger.error("SMTP error: %s", e)
            return SendResult(
                success=False,
                message="SMTP error",
                error=str(e),
            )


def get_transport(name: Optional[str] = None):
    """Build the configured mail transport ('resend' or 'smtp')."""
    name = (name or CAMPAIGN_CONFIG['MAIL_TRANSPORT']).lower()
    if name == 'resend':
        return ResendTransport()
    if name == 'smtp':
        return SmtpTransport()
    raise ConfigurationMissing(f"Unknown mail transport '{name}' (use resend or smtp)")


# ---------------------------------------------------------------------------
# Send window policy
# ---------------------------------------------------------------------------

def _as_utc(now: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if now.tzinfo is None:
        return pytz.utc.localize(now)
    return now.astimezone(pytz.utc)


def utc_now() -> datetime:
    return datetime.now(pytz.utc)


def start_of_utc_day(now: datetime) -> datetime:
    now = _as_utc(now)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class SendWindowPolicy:
    """Allowed sending hours [start_hour, end_hour) in a reference timezone."""
    start_hour: int = 9
    end_hour: int = 17
    timezone: str = 'America/New_York'

    @property
    def tz(self):
        return pytz.timezone(self.timezone)

    def local(self, now: datetime) -> datetime:
        return _as_utc(now).astimezone(self.tz)

    def _localize(self, day, hour: int = 0) -> datetime:
        return self.tz.localize(datetime.combine(day, time(hour)))

    def is_open(self, now: datetime) -> bool:
        hour = self.local(now).hour
        return self.start_hour <= hour < self.end_hour

    def next_opening(self, now: datetime) -> datetime:
        """The next moment the window opens at or after `now`."""
        local = self.local(now)
        day = local.date()
        if local.hour >= self.start_hour:
            day += timedelta(days=1)
        return self._localize(day, self.start_hour)

    def seconds_until_open(self, now: datetime) -> int:
        if self.is_open(now):
            return 0
        delta = self.next_opening(now) - _as_utc(now)
        return max(1, math.ceil(delta.total_seconds()))

    def start_of_day(self, now: datetime) -> datetime:
        """Local midnight of the current reference day."""
        return self._localize(self.local(now).date())

    def seconds_until_day_ends(self, now: datetime) -> int:
        tomorrow = self.local(now).date() + timedelta(days=1)
        delta = self._localize(tomorrow) - _as_utc(now)
        return max(1, math.ceil(delta.total_seconds()))


def is_within_send_window(policy: SendWindowPolicy, now: Optional[datetime] = None) -> tuple[bool, str]:
    """Check if `now` is within the policy's send window."""
    now = now or utc_now()
    local = policy.local(now)
    window = f"{policy.start_hour:02d}:00-{policy.end_hour:02d}:00 {policy.timezone}"

    if local.hour < policy.start_hour:
        return False, f"Before send window ({window})"
    if local.hour >= policy.end_hour:
        return False, f"After send window ({window})"
    return True, "Within send window"
