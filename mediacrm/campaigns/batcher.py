"""
Batched AI generation for campaign recipients.

Each run_batch call takes up to N pending recipients (oldest first), asks
the content generator for a subject and body, and records the outcome on
the recipient. Only pending rows are touched, so a crashed or interrupted
run is resumed by simply calling it again.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from mediacrm.campaigns import db
from mediacrm.campaigns.config import CAMPAIGN_CONFIG
from mediacrm.campaigns.errors import CampaignNotFound, CampaignNotReady, ConfigurationMissing
from mediacrm.campaigns.generator import AnthropicGenerator
from mediacrm.campaigns.sender import utc_now
from mediacrm.campaigns.targets import get_resolver
from mediacrm.campaigns.templates import htmlize

logger = logging.getLogger(__name__)

GENERATABLE_STATUSES = ('draft', 'generating', 'ready')


@dataclass
class BatchResult:
    generated: int = 0
    errors: int = 0
    remaining: int = 0
    total: int = 0
    campaign_status: str = ''
    error_details: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'generated': self.generated,
            'errors': self.errors,
            'remaining': self.remaining,
            'total': self.total,
            'campaign_status': self.campaign_status,
            'error_details': self.error_details,
        }


def clamp_batch_size(batch_size: Optional[int]) -> int:
    if batch_size is None:
        batch_size = CAMPAIGN_CONFIG['DEFAULT_GENERATION_BATCH']
    return max(1, min(int(batch_size), CAMPAIGN_CONFIG['MAX_GENERATION_BATCH']))


class GenerationBatcher:
    """Advances pending recipients to generated (or error), a batch at a time."""

    def __init__(
        self,
        generator=None,
        clock: Callable = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        delay_seconds: Optional[float] = None,
    ):
        self.generator = generator or AnthropicGenerator()
        self.clock = clock
        self.sleep = sleep
        self.delay_seconds = (
            CAMPAIGN_CONFIG['GENERATION_DELAY_SECONDS'] if delay_seconds is None else delay_seconds
        )

    def run_batch(self, campaign_id: int, batch_size: Optional[int] = None) -> BatchResult:
        """
        Generate content for the next batch of pending recipients.

        Args:
            campaign_id: Campaign to work on
            batch_size: Recipients per call (default 5, clamped to 1..20)

        Returns:
            BatchResult with counts for this batch and what is left
        """
        campaign = db.get_campaign(campaign_id)
        if not campaign:
            raise CampaignNotFound(campaign_id)

        if not self.generator.is_configured():
            raise ConfigurationMissing("Content generator not configured. Set ANTHROPIC_API_KEY.")

        if campaign.status not in GENERATABLE_STATUSES:
            raise CampaignNotReady(
                f"Campaign {campaign_id} is {campaign.status}; generation needs draft, generating or ready"
            )

        sender = db.get_sender_profile(campaign.sender_profile_id)
        if not sender:
            raise CampaignNotReady(f"Campaign {campaign_id} has no sender profile")

        resolver = get_resolver(campaign.flavor)
        pending = db.select_recipients_by_status(
            campaign_id, db.PENDING, limit=clamp_batch_size(batch_size)
        )

        status = campaign.status
        if pending and status != 'generating':
            db.update_campaign_status(campaign_id, 'generating')
            status = 'generating'

        result = BatchResult()
        for i, recipient in enumerate(pending):
            if i > 0 and self.delay_seconds > 0:
                self.sleep(self.delay_seconds)

            try:
                email = self.generator.generate(campaign, sender, resolver.build_context(recipient))
            except Exception as exc:
                logger.warning("Generation failed for recipient %s: %s", recipient.id, exc)
                db.update_recipient(recipient.id, status=db.ERROR, error=str(exc))
                result.errors += 1
                result.error_details.append({'recipient_id': recipient.id, 'error': str(exc)})
                continue

            db.update_recipient(
                recipient.id,
                subject=email.subject,
                body=email.body,
                body_html=htmlize(email.body),
                status=db.GENERATED,
                generated_at=db.db_timestamp(self.clock()),
                error=None,
            )
            result.generated += 1
            logger.debug("Generated email for recipient %s: %s", recipient.id, email.subject)

        result.remaining = db.count_by_status(campaign_id, db.PENDING)
        if result.remaining == 0:
            # Don't override a pause (or anything else) set while we were working
            current = db.get_campaign(campaign_id)
            if current and current.status in ('draft', 'generating'):
                db.update_campaign_status(campaign_id, 'ready')
                status = 'ready'
            elif current:
                status = current.status

        result.total = sum(db.count_recipients_by_status(campaign_id).values())
        result.campaign_status = status

        logger.info(
            "Campaign %s batch: %d generated, %d errors, %d remaining",
            campaign_id, result.generated, result.errors, result.remaining,
        )
        return result
