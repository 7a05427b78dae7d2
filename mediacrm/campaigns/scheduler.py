"""
Drip sending: one approved recipient per call.

send_next() never sleeps. It returns an outcome telling the driver what
happened and how long to wait; the driver loop owns the waiting. Checks
run in a fixed order and short-circuit:

1. Campaign paused or completed -> CampaignClosed
2. Outside the send window -> RateLimited (until the window opens)
3. Daily limit reached -> RateLimited (until the reference day ends)
4. Nothing approved -> NoneRemaining
5. Render and send the oldest approved recipient
"""

import logging
import os
import random
import socket
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from mediacrm.campaigns import db
from mediacrm.campaigns.config import CAMPAIGN_CONFIG
from mediacrm.campaigns.errors import (
    CampaignClosed,
    CampaignNotFound,
    CampaignNotReady,
    ConfigurationMissing,
    LeaseUnavailable,
    RecipientNotFound,
)
from mediacrm.campaigns.generator import DEFAULT_SUBJECT
from mediacrm.campaigns.sender import (
    OutgoingEmail,
    SendResult,
    SendWindowPolicy,
    get_transport,
    is_within_send_window,
    utc_now,
)
from mediacrm.campaigns.targets import get_resolver
from mediacrm.campaigns.templates import render_email_html

logger = logging.getLogger(__name__)

CLOSED_STATUSES = ('paused', 'completed')


@dataclass
class Sent:
    target_address: str
    transport_id: Optional[str]
    recommended_delay_seconds: int
    remaining_approved: int
    recipient_id: Optional[int] = None
    subject: str = ''
    dry_run: bool = False


@dataclass
class Skipped:
    reason: str
    recipient_id: Optional[int] = None


@dataclass
class RateLimited:
    retry_after_seconds: int
    reason: str


@dataclass
class SendFailed:
    message: str
    recipient_id: Optional[int] = None


@dataclass
class NoneRemaining:
    campaign_completed: bool


class DripScheduler:
    """Sends campaign email one recipient at a time within the campaign's limits."""

    def __init__(
        self,
        transport=None,
        clock: Callable = utc_now,
        rng: Optional[random.Random] = None,
        timezone: Optional[str] = None,
    ):
        self.transport = transport
        self.clock = clock
        self.rng = rng or random.Random()
        self.timezone = timezone or CAMPAIGN_CONFIG['SEND_TIMEZONE']

    def _get_transport(self):
        if self.transport is None:
            self.transport = get_transport()
        return self.transport

    def policy_for(self, campaign: db.Campaign) -> SendWindowPolicy:
        return SendWindowPolicy(
            start_hour=campaign.send_window_start,
            end_hour=campaign.send_window_end,
            timezone=self.timezone,
        )

    def recommended_delay(self, campaign: db.Campaign) -> int:
        low, high = sorted((campaign.min_delay_seconds, campaign.max_delay_seconds))
        return self.rng.randint(low, high)

    def build_email(
        self,
        campaign: db.Campaign,
        sender: db.SenderProfile,
        recipient: db.Recipient,
    ) -> OutgoingEmail:
        return OutgoingEmail(
            from_address=sender.from_address,
            to=recipient.recipient_email,
            subject=recipient.subject or DEFAULT_SUBJECT,
            html=render_email_html(recipient, campaign, sender),
            reply_to=campaign.reply_to or sender.email,
            text=recipient.body,
            track_opens=campaign.track_opens,
            track_clicks=campaign.track_clicks,
        )

    def send_next(self, campaign_id: int, dry_run: bool = False, skip: int = 0):
        """
        Send the oldest approved recipient of a campaign.

        Args:
            campaign_id: Campaign to advance
            dry_run: Render and log only; nothing is sent or written
            skip: In dry runs, preview the recipient this many places down
                the queue (the queue itself never moves in a dry run)

        Returns:
            Sent, Skipped, RateLimited, SendFailed or NoneRemaining
        """
        dry_run = dry_run or CAMPAIGN_CONFIG['DRY_RUN']

        campaign = db.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFound(campaign_id)

        if campaign.status in CLOSED_STATUSES:
            raise CampaignClosed(campaign_id, campaign.status)

        transport = None
        if not dry_run:
            transport = self._get_transport()
            if not transport.is_configured():
                raise ConfigurationMissing("Mail transport not configured")

        now = self.clock()
        policy = self.policy_for(campaign)

        in_window, reason = is_within_send_window(policy, now)
        if not in_window:
            return RateLimited(policy.seconds_until_open(now), reason)

        sent_today = db.count_sent_since(campaign_id, policy.start_of_day(now))
        if sent_today >= campaign.daily_send_limit:
            return RateLimited(
                policy.seconds_until_day_ends(now),
                f"Daily limit reached ({sent_today}/{campaign.daily_send_limit})",
            )

        queue = db.select_recipients_by_status(
            campaign_id, db.APPROVED, limit=(skip + 1) if dry_run else 1, approved=True
        )
        if dry_run:
            queue = queue[skip:]

        if not queue:
            open_count = db.count_by_status(campaign_id, db.OPEN_STATUSES)
            if open_count == 0 and not dry_run:
                db.update_campaign_status(campaign_id, 'completed')
                logger.info("Campaign %s complete: nothing left to send", campaign_id)
            return NoneRemaining(campaign_completed=open_count == 0)

        recipient = queue[0]

        if not recipient.recipient_email:
            if not dry_run:
                db.update_recipient(recipient.id, status=db.FAILED, approved=False, error="No email address")
            logger.warning("Recipient %s has no email address, skipping", recipient.id)
            return Skipped("No email address", recipient_id=recipient.id)

        sender = db.get_sender_profile(campaign.sender_profile_id)
        if not sender:
            raise CampaignNotReady(f"Campaign {campaign_id} has no sender profile")

        email = self.build_email(campaign, sender, recipient)
        override = CAMPAIGN_CONFIG['TEST_RECIPIENT_OVERRIDE']
        if override:
            logger.info("Redirecting email for %s to test recipient %s", email.to, override)
            email.to = override

        delay = self.recommended_delay(campaign)

        if dry_run:
            logger.info(
                "[DRY RUN] Would send to %s: %r (%d chars of HTML)",
                email.to, email.subject, len(email.html),
            )
            remaining = db.count_by_status(campaign_id, db.APPROVED, approved=True)
            return Sent(
                target_address=recipient.recipient_email,
                transport_id=None,
                recommended_delay_seconds=delay,
                remaining_approved=max(0, remaining - skip - 1),
                recipient_id=recipient.id,
                subject=email.subject,
                dry_run=True,
            )

        result = transport.send(email)
        if not result.success:
            error = result.error or result.message or "Send failed"
            db.update_recipient(recipient.id, status=db.FAILED, approved=False, error=error)
            logger.error("Send to %s failed: %s", recipient.recipient_email, error)
            return SendFailed(error, recipient_id=recipient.id)

        db.update_recipient(
            recipient.id,
            status=db.SENT,
            sent_at=db.db_timestamp(self.clock()),
            transport_id=result.transport_id,
            error=None,
        )

        try:
            get_resolver(campaign.flavor).on_sent(recipient)
        except sqlite3.Error as exc:
            logger.warning("Post-send update failed for recipient %s: %s", recipient.id, exc)

        if campaign.status != 'sending':
            db.update_campaign_status(campaign_id, 'sending')

        remaining = db.count_by_status(campaign_id, db.APPROVED, approved=True)
        if remaining == 0:
            db.update_campaign_status(campaign_id, 'completed')
            logger.info("Campaign %s complete: last approved email sent", campaign_id)

        logger.info(
            "Sent campaign %s email to %s (%s), %d approved remaining",
            campaign_id, recipient.recipient_email, result.transport_id, remaining,
        )
        return Sent(
            target_address=recipient.recipient_email,
            transport_id=result.transport_id,
            recommended_delay_seconds=delay,
            remaining_approved=remaining,
            recipient_id=recipient.id,
            subject=email.subject,
        )

    def test_send(self, campaign_id: int, recipient_id: int, send_to: str) -> SendResult:
        """Send a [TEST] copy of a recipient's email to another address. Changes nothing."""
        campaign = db.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFound(campaign_id)

        recipient = db.get_recipient(recipient_id, campaign_id)
        if not recipient:
            raise RecipientNotFound(recipient_id, campaign_id)

        if not recipient.body and not recipient.body_html:
            raise CampaignNotReady(f"Recipient {recipient_id} has no generated content")

        sender = db.get_sender_profile(campaign.sender_profile_id)
        if not sender:
            raise CampaignNotReady(f"Campaign {campaign_id} has no sender profile")

        transport = self._get_transport()
        if not transport.is_configured():
            raise ConfigurationMissing("Mail transport not configured")

        email = self.build_email(campaign, sender, recipient)
        email.to = send_to
        email.subject = f"[TEST] {email.subject}"

        result = transport.send(email)
        logger.info("Test send of recipient %s to %s: %s", recipient_id, send_to, result.message)
        return result


# ---------------------------------------------------------------------------
# Driver lease
# ---------------------------------------------------------------------------

def make_lease_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class CampaignLease:
    """Exclusive right to drive one campaign's send loop."""

    def __init__(
        self,
        campaign_id: int,
        owner: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        clock: Callable = utc_now,
    ):
        self.campaign_id = campaign_id
        self.owner = owner or make_lease_owner()
        self.ttl_seconds = ttl_seconds or CAMPAIGN_CONFIG['LEASE_TTL_SECONDS']
        self.clock = clock

    def acquire(self) -> None:
        """Take or extend the lease. Raises LeaseUnavailable if someone else holds it."""
        now = self.clock()
        holder = db.acquire_lease(
            self.campaign_id,
            self.owner,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
            now=now,
        )
        if holder is not None:
            raise LeaseUnavailable(self.campaign_id, holder['owner'], holder['expires_at'])

    renew = acquire

    def release(self) -> None:
        db.release_lease(self.campaign_id, self.owner)


@contextmanager
def campaign_lease(campaign_id: int, **kwargs):
    lease = CampaignLease(campaign_id, **kwargs)
    lease.acquire()
    try:
        yield lease
    finally:
        lease.release()
