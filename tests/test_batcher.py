"""Tests for batched generation."""

import unittest
from unittest.mock import patch

from mediacrm.campaigns import db
from mediacrm.campaigns.batcher import GenerationBatcher, clamp_batch_size
from mediacrm.campaigns.config import CAMPAIGN_CONFIG
from mediacrm.campaigns.errors import CampaignNotFound, CampaignNotReady, ConfigurationMissing
from tests.helpers import CampaignTestCase, FakeGenerator


class TestClampBatchSize(CampaignTestCase):

    def test_clamp(self):
        self.assertEqual(clamp_batch_size(None), 5)
        self.assertEqual(clamp_batch_size(0), 1)
        self.assertEqual(clamp_batch_size(-3), 1)
        self.assertEqual(clamp_batch_size(7), 7)
        self.assertEqual(clamp_batch_size(500), 20)

    def test_clamp_follows_config(self):
        with patch.dict(CAMPAIGN_CONFIG, {'MAX_GENERATION_BATCH': 10}):
            self.assertEqual(clamp_batch_size(50), 10)


class TestGenerationBatcher(CampaignTestCase):

    def setUp(self):
        super().setUp()
        self.sleeps = []
        self.batcher = GenerationBatcher(
            generator=self.generator,
            clock=self.clock,
            sleep=self.sleeps.append,
            delay_seconds=1.5,
        )

    def test_batches_in_fifo_order(self):
        campaign_id = self.make_campaign().campaign.id

        first = self.batcher.run_batch(campaign_id, 2)

        self.assertEqual((first.generated, first.errors, first.remaining, first.total), (2, 0, 1, 3))
        self.assertEqual(first.campaign_status, 'generating')
        self.assertEqual([c['email'] for c in self.generator.calls], ['a@example.com', 'b@example.com'])
        self.assertEqual(db.get_campaign(campaign_id).status, 'generating')

        second = self.batcher.run_batch(campaign_id, 2)

        self.assertEqual((second.generated, second.remaining), (1, 0))
        self.assertEqual(second.campaign_status, 'ready')
        self.assertEqual(db.get_campaign(campaign_id).status, 'ready')

    def test_generated_content_is_stored(self):
        campaign_id = self.make_campaign(emails=['a@example.com']).campaign.id
        self.batcher.run_batch(campaign_id)

        recipient = db.get_recipients(campaign_id)[0]
        self.assertEqual(recipient.status, db.GENERATED)
        self.assertFalse(recipient.approved)
        self.assertEqual(recipient.subject, "note for a@example.com")
        self.assertEqual(recipient.body_html, "<p>Hi there,<br>Quick line.</p>\n<p>Second paragraph.</p>")
        self.assertEqual(recipient.generated_at, db.db_timestamp(self.clock()))

    def test_rerun_is_idempotent(self):
        campaign_id = self.make_campaign().campaign.id
        self.batcher.run_batch(campaign_id, 20)

        again = self.batcher.run_batch(campaign_id, 20)

        self.assertEqual((again.generated, again.errors, again.remaining, again.total), (0, 0, 0, 3))
        self.assertEqual(len(self.generator.calls), 3)
        self.assertEqual(again.campaign_status, 'ready')

    def test_failures_are_recorded_and_batch_continues(self):
        campaign_id = self.make_campaign().campaign.id
        self.batcher.generator = FakeGenerator(fail_for=['b@example.com'])

        result = self.batcher.run_batch(campaign_id, 20)

        self.assertEqual((result.generated, result.errors, result.remaining), (2, 1, 0))
        self.assertEqual(result.error_details[0]['error'], "model overloaded")
        failed = db.select_recipients_by_status(campaign_id, db.ERROR)
        self.assertEqual([r.recipient_email for r in failed], ['b@example.com'])
        self.assertEqual(failed[0].error, "model overloaded")

    def test_pacing_sleeps_between_items_only(self):
        campaign_id = self.make_campaign().campaign.id
        self.batcher.run_batch(campaign_id, 20)
        self.assertEqual(self.sleeps, [1.5, 1.5])

    def test_empty_batch_does_not_flip_to_generating(self):
        campaign_id = self.make_campaign(emails=[]).campaign.id
        result = self.batcher.run_batch(campaign_id)
        self.assertEqual(result.total, 0)
        self.assertEqual(result.campaign_status, 'ready')

    def test_pause_during_batch_is_kept(self):
        campaign_id = self.make_campaign(emails=['a@example.com']).campaign.id
        original_generate = self.generator.generate

        def pause_then_generate(campaign, sender, context):
            db.update_campaign_status(campaign_id, 'paused')
            return original_generate(campaign, sender, context)

        self.generator.generate = pause_then_generate
        result = self.batcher.run_batch(campaign_id)

        self.assertEqual(result.campaign_status, 'paused')
        self.assertEqual(db.get_campaign(campaign_id).status, 'paused')

    def test_refuses_closed_campaign(self):
        campaign_id = self.make_campaign().campaign.id
        self.manager.pause(campaign_id)
        with self.assertRaises(CampaignNotReady):
            self.batcher.run_batch(campaign_id)
        self.assertEqual(self.generator.calls, [])

    def test_unconfigured_generator(self):
        campaign_id = self.make_campaign().campaign.id
        batcher = GenerationBatcher(generator=FakeGenerator(configured=False), sleep=self.sleeps.append)
        with self.assertRaises(ConfigurationMissing):
            batcher.run_batch(campaign_id)
        self.assertEqual(self.manager.recipient_counts(campaign_id)[db.PENDING], 3)

    def test_missing_sender_profile(self):
        campaign_id = self.make_campaign(sender_profile_id=None).campaign.id
        with self.assertRaises(CampaignNotReady):
            self.batcher.run_batch(campaign_id)

    def test_unknown_campaign(self):
        with self.assertRaises(CampaignNotFound):
            self.batcher.run_batch(12345)


if __name__ == '__main__':
    unittest.main()
