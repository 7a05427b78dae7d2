"""Shared fixtures for campaign tests: temp databases, a fixed clock, fakes."""

import os
import tempfile
import unittest
from datetime import datetime
from unittest.mock import patch

import pytz

from mediacrm import config
from mediacrm import db as crm_db
from mediacrm.campaigns import config as campaign_config
from mediacrm.campaigns import db
from mediacrm.campaigns.errors import GenerationFailed
from mediacrm.campaigns.generator import GeneratedEmail
from mediacrm.campaigns.manager import CampaignManager
from mediacrm.campaigns.sender import SendResult

NEW_YORK = pytz.timezone('America/New_York')


def at_local(hour: int, minute: int = 0, day: int = 4) -> datetime:
    """Aware UTC datetime for a New York wall-clock time on 2025-03-<day> (EST)."""
    local = NEW_YORK.localize(datetime(2025, 3, day, hour, minute))
    return local.astimezone(pytz.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeGenerator:
    """Writes a predictable email; fails for addresses listed in fail_for."""

    def __init__(self, fail_for=(), configured=True):
        self.fail_for = set(fail_for)
        self.configured = configured
        self.calls = []

    def is_configured(self) -> bool:
        return self.configured

    def generate(self, campaign, sender, context) -> GeneratedEmail:
        self.calls.append(context)
        if context.get('email') in self.fail_for:
            raise GenerationFailed("model overloaded")
        return GeneratedEmail(
            subject=f"note for {context.get('email')}",
            body="Hi there,\nQuick line.\n\nSecond paragraph.",
        )


class FakeTransport:
    """Records outgoing email; fails every send when fail is set."""

    def __init__(self, fail=False, configured=True):
        self.fail = fail
        self.configured = configured
        self.sent = []

    def is_configured(self) -> bool:
        return self.configured

    def send(self, email) -> SendResult:
        self.sent.append(email)
        if self.fail:
            return SendResult(success=False, message="Resend rejected email", error="mailbox unavailable")
        return SendResult(success=True, message=f"Sent to {email.to}", transport_id=f"msg-{len(self.sent)}")


class CampaignTestCase(unittest.TestCase):
    """Fresh CRM and campaign databases in a temp directory per test."""

    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)

        patchers = [
            patch.object(config, 'DB_PATH', os.path.join(tmp.name, 'crm.db')),
            patch.object(campaign_config, 'CAMPAIGN_DB_PATH', os.path.join(tmp.name, 'campaigns.db')),
            patch.dict(campaign_config.CAMPAIGN_CONFIG, {
                'DRY_RUN': False,
                'TEST_RECIPIENT_OVERRIDE': '',
                'SEND_TIMEZONE': 'America/New_York',
                'GENERATION_DELAY_SECONDS': 0,
                'DEFAULT_GENERATION_BATCH': 5,
                'MAX_GENERATION_BATCH': 20,
                'RECIPIENT_INSERT_CHUNK': 500,
                'LEASE_TTL_SECONDS': 900,
            }),
        ]
        for patcher in patchers:
            patcher.start()
            self.addCleanup(patcher.stop)

        crm_db.init_db()
        db.init_campaign_db()

        self.clock = FakeClock(at_local(10))
        self.generator = FakeGenerator()
        self.manager = CampaignManager(generator=self.generator, clock=self.clock)
        self.sender_id = db.create_sender_profile(
            'Jane Doe', 'jane@media.example', 'Editor', 'Jane Doe\n  Editor, Media Co  ',
        )

    def make_contacts(self, emails, company_id=None) -> list[int]:
        ids = []
        for i, email in enumerate(emails):
            ids.append(crm_db.add_contact(
                email,
                first_name=f"First{i}",
                last_name=f"Last{i}",
                title="Founder",
                company_id=company_id,
            ))
        return ids

    def make_campaign(self, emails=None, target_filter=None, **fields):
        if emails is None:
            emails = ['a@example.com', 'b@example.com', 'c@example.com']
        contact_ids = self.make_contacts(emails)
        campaign_fields = {
            'name': 'Spring outreach',
            'flavor': 'contact',
            'sender_profile_id': self.sender_id,
            'purpose': 'Invite founders to the summit',
            'min_delay_seconds': 1,
            'max_delay_seconds': 1,
            'daily_send_limit': 10,
        }
        campaign_fields.update(fields)
        result = self.manager.create_campaign(
            campaign_fields,
            target_filter if target_filter is not None else {'contact_ids': contact_ids},
        )
        return result

    def generate_and_approve(self, campaign_id: int) -> None:
        from mediacrm.campaigns.batcher import GenerationBatcher

        batcher = GenerationBatcher(generator=self.generator, clock=self.clock, sleep=lambda s: None)
        while batcher.run_batch(campaign_id, 20).remaining:
            pass
        self.manager.bulk_approve(campaign_id)
