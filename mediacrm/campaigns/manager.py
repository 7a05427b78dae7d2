"""
Campaign manager - lifecycle and operator actions.

Coordinates:
- Building a campaign and its recipient snapshot from a target filter
- Recipient counts and the derived campaign status
- Review actions (approve, edit, regenerate, suppress, delete)
- Pause / resume
"""

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from mediacrm.campaigns import db
from mediacrm.campaigns.config import CAMPAIGN_CONFIG, validate_config
from mediacrm.campaigns.errors import (
    CampaignError,
    CampaignNotFound,
    CampaignNotReady,
    ConfigurationMissing,
    RecipientNotFound,
)
from mediacrm.campaigns.generator import AnthropicGenerator
from mediacrm.campaigns.sender import start_of_utc_day, utc_now
from mediacrm.campaigns.targets import RESOLVERS, get_resolver, is_valid_email
from mediacrm.campaigns.templates import htmlize

logger = logging.getLogger(__name__)

APPROVABLE_STATUSES = (db.GENERATED, db.APPROVED)

_POLICY_DEFAULTS = {
    'send_window_start': 'DEFAULT_WINDOW_START',
    'send_window_end': 'DEFAULT_WINDOW_END',
    'min_delay_seconds': 'DEFAULT_MIN_DELAY_SECONDS',
    'max_delay_seconds': 'DEFAULT_MAX_DELAY_SECONDS',
    'daily_send_limit': 'DEFAULT_DAILY_SEND_LIMIT',
    'max_words': 'DEFAULT_MAX_WORDS',
}


@dataclass
class CreateResult:
    campaign: db.Campaign
    recipient_count: int = 0
    skipped_no_email: int = 0
    skipped_cooldown: int = 0
    failed_batches: int = 0


def derive_status(stored_status: str, counts: dict) -> str:
    """
    Campaign status as it should be reported.

    Anything but a pause reads as completed once the campaign has
    recipients and none of them is still pending, generated or approved.
    """
    if stored_status == 'paused':
        return stored_status
    total = sum(v for k, v in counts.items() if k in db.RECIPIENT_STATUSES)
    open_count = sum(counts.get(s, 0) for s in db.OPEN_STATUSES)
    if total > 0 and open_count == 0:
        return 'completed'
    return stored_status


class CampaignManager:
    """
    Campaign lifecycle and review actions.

    Usage:
        manager = CampaignManager()

        # Build a campaign from CRM contacts
        result = manager.create_campaign({'name': ..., 'flavor': 'contact', ...},
                                         {'contact_ids': [...]})

        # Review
        manager.bulk_approve(result.campaign.id)

        # Status
        counts = manager.recipient_counts(result.campaign.id)
    """

    def __init__(self, generator=None, clock: Callable = utc_now):
        self.generator = generator
        self.clock = clock

        # Initialize database
        db.init_campaign_db()

        # Validate config
        errors = validate_config()
        if errors:
            for error in errors:
                logger.debug("Config issue: %s", error)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _validate(self, fields: dict) -> None:
        if not fields.get('name'):
            raise ValueError("Campaign name is required")
        if fields.get('flavor', 'contact') not in RESOLVERS:
            raise ValueError(
                f"Unknown campaign flavor '{fields.get('flavor')}' (use {', '.join(RESOLVERS)})"
            )

        start, end = fields['send_window_start'], fields['send_window_end']
        if not (0 <= start < end <= 24):
            raise ValueError(f"Send window {start}-{end} must satisfy 0 <= start < end <= 24")
        if fields['min_delay_seconds'] > fields['max_delay_seconds']:
            raise ValueError("min_delay_seconds must not exceed max_delay_seconds")
        if fields['daily_send_limit'] < 1:
            raise ValueError("daily_send_limit must be at least 1")

        profile_id = fields.get('sender_profile_id')
        if profile_id is not None and not db.get_sender_profile(profile_id):
            raise CampaignError(f"Sender profile {profile_id} not found")

    def create_campaign(self, campaign_config: dict, target_filter: Optional[dict] = None) -> CreateResult:
        """
        Create a campaign and snapshot its recipients.

        Args:
            campaign_config: Campaign fields (name, flavor, brief, send policy...)
            target_filter: Resolver filter (ids, states, business_types, engagement, limit)

        Returns:
            CreateResult with the campaign and what was skipped
        """
        fields = {k: v for k, v in campaign_config.items() if v is not None}
        fields.setdefault('flavor', 'contact')
        for field_name, config_key in _POLICY_DEFAULTS.items():
            fields.setdefault(field_name, CAMPAIGN_CONFIG[config_key])
        self._validate(fields)

        target_filter = dict(target_filter or {})
        fields['target_filter_json'] = json.dumps(target_filter, sort_keys=True)
        fields['status'] = 'draft'

        resolver = get_resolver(fields['flavor'])
        if fields.get('one_per_company'):
            target_filter['one_per_company'] = True
        targets = resolver.resolve(target_filter)

        excluded = set()
        cooldown_days = fields.get('cooldown_days')
        if cooldown_days:
            since = start_of_utc_day(self.clock()) - timedelta(days=cooldown_days)
            excluded = db.get_recently_sent_target_ids(resolver.target_type, since)

        campaign_id = db.create_campaign(fields)
        result = CreateResult(campaign=db.get_campaign(campaign_id))

        rows = []
        seen = set()
        for target in targets:
            if target.target_id in seen:
                continue
            seen.add(target.target_id)

            if not is_valid_email(target.email):
                result.skipped_no_email += 1
                continue
            if target.target_id in excluded:
                result.skipped_cooldown += 1
                continue

            rows.append({
                'campaign_id': campaign_id,
                'target_type': resolver.target_type,
                'target_id': target.target_id,
                'company_id': target.company_id,
                'recipient_email': target.email,
                'recipient_name': target.name,
                'context': target.context,
            })

        chunk_size = max(1, CAMPAIGN_CONFIG['RECIPIENT_INSERT_CHUNK'])
        for start in range(0, len(rows), chunk_size):
            chunk = rows[start:start + chunk_size]
            try:
                result.recipient_count += db.bulk_insert_recipients(chunk)
            except sqlite3.Error as exc:
                result.failed_batches += 1
                logger.error(
                    "Campaign %s: failed to insert recipients %d-%d: %s",
                    campaign_id, start, start + len(chunk) - 1, exc,
                )

        logger.info(
            "Created campaign #%d '%s': %d recipients (%d no email, %d in cooldown, %d failed batches)",
            campaign_id, fields['name'], result.recipient_count,
            result.skipped_no_email, result.skipped_cooldown, result.failed_batches,
        )
        return result

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def recipient_counts(self, campaign_id: int) -> dict:
        """
        Recipient counts by status, plus totals.

        'sent' counts every recipient that has been sent, including ones
        since marked delivered, opened or clicked.
        """
        raw = db.count_recipients_by_status(campaign_id)
        counts = {status: raw.get(status, 0) for status in db.RECIPIENT_STATUSES}
        counts['sent'] = sum(raw.get(s, 0) for s in db.SENT_STATUSES)
        counts['total'] = sum(raw.values())
        return counts

    def resolve_status(self, campaign: db.Campaign) -> str:
        """Derived status; persists the correction when it differs from storage."""
        status = derive_status(campaign.status, db.count_recipients_by_status(campaign.id))
        if status != campaign.status:
            logger.info(
                "Campaign %s status %s -> %s (nothing left to send)",
                campaign.id, campaign.status, status,
            )
            db.update_campaign_status(campaign.id, status)
            campaign.status = status
        return status

    def get_campaign(self, campaign_id: int) -> db.Campaign:
        campaign = db.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFound(campaign_id)
        self.resolve_status(campaign)
        return campaign

    def list_campaigns(self, status: Optional[str] = None) -> list[tuple[db.Campaign, dict]]:
        """Campaigns (newest first) with their recipient counts."""
        results = []
        for campaign in db.get_all_campaigns():
            self.resolve_status(campaign)
            if status and campaign.status != status:
                continue
            results.append((campaign, self.recipient_counts(campaign.id)))
        return results

    def pause(self, campaign_id: int) -> bool:
        campaign = self.get_campaign(campaign_id)
        if campaign.status in ('paused', 'completed'):
            return False
        db.update_campaign_status(campaign_id, 'paused')
        logger.info("Paused campaign #%d", campaign_id)
        return True

    def resume(self, campaign_id: int) -> bool:
        """Resume a paused campaign at the stage its recipients are at."""
        campaign = self.get_campaign(campaign_id)
        if campaign.status != 'paused':
            return False

        counts = self.recipient_counts(campaign_id)
        if counts['sent'] > 0:
            status = 'sending'
        elif counts[db.PENDING] == 0 and counts['total'] > 0:
            status = 'ready'
        else:
            status = 'draft'

        db.update_campaign_status(campaign_id, status)
        logger.info("Resumed campaign #%d as %s", campaign_id, status)
        # A paused campaign with nothing left reads as completed
        self.resolve_status(db.get_campaign(campaign_id))
        return True

    def _reopen(self, campaign_id: int) -> None:
        """Bring a completed campaign back once it has something to send again."""
        campaign = db.get_campaign(campaign_id)
        if campaign.status != 'completed':
            return
        if not db.count_by_status(campaign_id, db.OPEN_STATUSES):
            return

        counts = self.recipient_counts(campaign_id)
        status = 'sending' if counts['sent'] > 0 else 'ready'
        db.update_campaign_status(campaign_id, status)
        logger.info("Reopened campaign #%d as %s", campaign_id, status)

    # ------------------------------------------------------------------
    # Review actions
    # ------------------------------------------------------------------

    def get_recipient(self, campaign_id: int, recipient_id: int) -> db.Recipient:
        recipient = db.get_recipient(recipient_id, campaign_id)
        if not recipient:
            raise RecipientNotFound(recipient_id, campaign_id)
        return recipient

    def approve(self, campaign_id: int, recipient_id: int) -> bool:
        """Approve a generated recipient for sending."""
        recipient = self.get_recipient(campaign_id, recipient_id)
        if recipient.status not in APPROVABLE_STATUSES:
            return False

        db.update_recipient(recipient_id, status=db.APPROVED, approved=True)
        self._reopen(campaign_id)
        logger.info("Approved recipient #%d in campaign #%d", recipient_id, campaign_id)
        return True

    def unapprove(self, campaign_id: int, recipient_id: int) -> bool:
        recipient = self.get_recipient(campaign_id, recipient_id)
        if recipient.status != db.APPROVED:
            return False

        db.update_recipient(recipient_id, status=db.GENERATED, approved=False)
        logger.info("Unapproved recipient #%d in campaign #%d", recipient_id, campaign_id)
        return True

    def bulk_approve(self, campaign_id: int, recipient_ids: Optional[list[int]] = None) -> int:
        """Approve the given recipients, or every generated one. Returns count approved."""
        if recipient_ids is None:
            recipient_ids = [r.id for r in db.select_recipients_by_status(campaign_id, db.GENERATED)]
        count = 0
        for recipient_id in recipient_ids:
            if self.approve(campaign_id, recipient_id):
                count += 1
        return count

    def bulk_unapprove(self, campaign_id: int, recipient_ids: Optional[list[int]] = None) -> int:
        if recipient_ids is None:
            recipient_ids = [r.id for r in db.select_recipients_by_status(campaign_id, db.APPROVED)]
        count = 0
        for recipient_id in recipient_ids:
            if self.unapprove(campaign_id, recipient_id):
                count += 1
        return count

    def update_content(
        self,
        campaign_id: int,
        recipient_id: int,
        subject: Optional[str] = None,
        body: Optional[str] = None,
    ) -> bool:
        """Edit a recipient's subject and/or body before it is sent."""
        recipient = self.get_recipient(campaign_id, recipient_id)
        if recipient.is_sent:
            return False

        fields = {}
        if subject is not None:
            fields['subject'] = subject
        if body is not None:
            fields['body'] = body
            fields['body_html'] = htmlize(body)
        if not fields:
            return False

        db.update_recipient(recipient_id, **fields)
        logger.info("Updated content of recipient #%d", recipient_id)
        return True

    def regenerate(self, campaign_id: int, recipient_id: int) -> db.Recipient:
        """Write a fresh email for one recipient. Resets its approval."""
        campaign = self.get_campaign(campaign_id)
        recipient = self.get_recipient(campaign_id, recipient_id)
        if recipient.is_sent:
            raise CampaignNotReady(f"Recipient {recipient_id} has already been sent")

        sender = db.get_sender_profile(campaign.sender_profile_id)
        if not sender:
            raise CampaignNotReady(f"Campaign {campaign_id} has no sender profile")

        generator = self.generator or AnthropicGenerator()
        if not generator.is_configured():
            raise ConfigurationMissing("Content generator not configured. Set ANTHROPIC_API_KEY.")

        context = get_resolver(campaign.flavor).build_context(recipient)
        try:
            email = generator.generate(campaign, sender, context)
        except Exception as exc:
            logger.warning("Regeneration failed for recipient %s: %s", recipient_id, exc)
            db.update_recipient(recipient_id, status=db.ERROR, approved=False, error=str(exc))
        else:
            db.update_recipient(
                recipient_id,
                subject=email.subject,
                body=email.body,
                body_html=htmlize(email.body),
                status=db.GENERATED,
                approved=False,
                generated_at=db.db_timestamp(self.clock()),
                error=None,
            )
            logger.info("Regenerated recipient #%d: %s", recipient_id, email.subject)
            self._reopen(campaign_id)

        return db.get_recipient(recipient_id, campaign_id)

    def suppress(self, campaign_id: int, recipient_id: int, reason: str = "") -> bool:
        """Take an unsent recipient out of the campaign without deleting it."""
        recipient = self.get_recipient(campaign_id, recipient_id)
        if recipient.is_sent or recipient.status == db.SUPPRESSED:
            return False

        db.update_recipient(
            recipient_id,
            status=db.SUPPRESSED,
            approved=False,
            error=reason or None,
        )
        logger.info("Suppressed recipient #%d: %s", recipient_id, reason or "manual")
        return True

    def suppress_company(self, company_id: int, reason: str) -> int:
        """Suppress unsent recipients at a company across every campaign."""
        count = db.suppress_company_recipients(company_id, reason)
        if count:
            logger.info("Suppressed %d recipients at company %s: %s", count, company_id, reason)
        return count

    def delete_recipient(self, campaign_id: int, recipient_id: int) -> bool:
        """Hard-delete a recipient that has not been sent."""
        self.get_recipient(campaign_id, recipient_id)
        deleted = db.delete_recipient(recipient_id, campaign_id)
        if deleted:
            logger.info("Deleted recipient #%d from campaign #%d", recipient_id, campaign_id)
        return deleted
