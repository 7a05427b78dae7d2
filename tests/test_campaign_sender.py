"""Tests for the CLI driver loops."""

import io
import random
import unittest
from contextlib import redirect_stdout
from unittest.mock import patch

import campaign_sender
from campaign_sender import _split_list, run_generation, run_send_loop
from mediacrm.campaigns import db
from mediacrm.campaigns.batcher import GenerationBatcher
from mediacrm.campaigns.config import CAMPAIGN_CONFIG
from mediacrm.campaigns.errors import LeaseUnavailable
from mediacrm.campaigns.scheduler import CampaignLease, DripScheduler
from tests.helpers import CampaignTestCase, FakeTransport, at_local


class TestRunSendLoop(CampaignTestCase):

    def setUp(self):
        super().setUp()
        self.transport = FakeTransport()
        self.scheduler = DripScheduler(transport=self.transport, clock=self.clock, rng=random.Random(1))
        self.sleeps = []
        self.campaign_id = self.make_campaign().campaign.id
        self.generate_and_approve(self.campaign_id)

    def test_sends_everything(self):
        sent = run_send_loop(self.campaign_id, self.scheduler, self.manager, sleep=self.sleeps.append)

        self.assertEqual(sent, 3)
        self.assertEqual(len(self.transport.sent), 3)
        self.assertEqual(self.sleeps, [1, 1])
        self.assertEqual(db.get_campaign(self.campaign_id).status, 'completed')

    def test_session_limit(self):
        sent = run_send_loop(self.campaign_id, self.scheduler, self.manager, limit=2, sleep=self.sleeps.append)

        self.assertEqual(sent, 2)
        self.assertEqual(self.manager.get_campaign(self.campaign_id).status, 'sending')

    def test_pause_stops_the_loop(self):
        def pause_while_sleeping(seconds):
            self.sleeps.append(seconds)
            self.manager.pause(self.campaign_id)

        sent = run_send_loop(self.campaign_id, self.scheduler, self.manager, sleep=pause_while_sleeping)

        self.assertEqual(sent, 1)
        self.assertEqual(self.manager.recipient_counts(self.campaign_id)[db.APPROVED], 2)

    def test_waits_for_send_window(self):
        self.clock.now = at_local(8, 0)

        def sleep(seconds):
            self.sleeps.append(seconds)
            self.clock.now = at_local(10, 0)

        sent = run_send_loop(self.campaign_id, self.scheduler, self.manager, sleep=sleep)

        self.assertEqual(sent, 3)
        # One hour until 09:00, slept in lease-renewal sized chunks
        self.assertEqual(sum(self.sleeps[:-2]), 3600)
        self.assertTrue(all(s <= CAMPAIGN_CONFIG['LEASE_TTL_SECONDS'] // 3 for s in self.sleeps))

    def test_dry_run_previews_queue_without_sending(self):
        before = self.manager.recipient_counts(self.campaign_id)

        previewed = run_send_loop(self.campaign_id, self.scheduler, self.manager,
                                  dry_run=True, sleep=self.sleeps.append)

        self.assertEqual(previewed, 3)
        self.assertEqual(self.transport.sent, [])
        self.assertEqual(self.manager.recipient_counts(self.campaign_id), before)

    def test_dry_run_walks_past_missing_address(self):
        first = db.get_recipients(self.campaign_id)[0]
        db.update_recipient(first.id, recipient_email=None)

        previewed = run_send_loop(self.campaign_id, self.scheduler, self.manager,
                                  dry_run=True, sleep=self.sleeps.append)

        self.assertEqual(previewed, 2)
        self.assertEqual(db.get_recipient(first.id).status, db.APPROVED)

    def test_dry_run_stops_outside_window(self):
        self.clock.now = at_local(20, 0)
        previewed = run_send_loop(self.campaign_id, self.scheduler, self.manager,
                                  dry_run=True, sleep=self.sleeps.append)
        self.assertEqual(previewed, 0)
        self.assertEqual(self.sleeps, [])

    def test_lease_held_elsewhere(self):
        CampaignLease(self.campaign_id, owner='other-host').acquire()
        with self.assertRaises(LeaseUnavailable):
            run_send_loop(self.campaign_id, self.scheduler, self.manager, sleep=self.sleeps.append)
        self.assertEqual(self.transport.sent, [])


class TestRunGeneration(CampaignTestCase):

    def test_runs_until_nothing_pending(self):
        campaign_id = self.make_campaign().campaign.id
        batcher = GenerationBatcher(generator=self.generator, sleep=lambda s: None)
        sleeps = []

        with redirect_stdout(io.StringIO()):
            totals = run_generation(campaign_id, batcher, batch_size=2, sleep=sleeps.append)

        self.assertEqual(totals['batches'], 2)
        self.assertEqual(totals['generated'], 3)
        self.assertEqual(totals['remaining'], 0)
        self.assertEqual(totals['campaign_status'], 'ready')
        self.assertEqual(sleeps, [CAMPAIGN_CONFIG['GENERATION_POLL_SECONDS']])

    def test_once(self):
        campaign_id = self.make_campaign().campaign.id
        batcher = GenerationBatcher(generator=self.generator, sleep=lambda s: None)

        with redirect_stdout(io.StringIO()):
            totals = run_generation(campaign_id, batcher, batch_size=1, once=True)

        self.assertEqual((totals['batches'], totals['generated'], totals['remaining']), (1, 1, 2))


class TestMain(CampaignTestCase):

    def _run(self, *argv):
        out = io.StringIO()
        with redirect_stdout(out), patch.object(campaign_sender, 'setup_logging'):
            code = campaign_sender.main(list(argv))
        return code, out.getvalue()

    def test_pause_and_resume(self):
        campaign_id = self.make_campaign().campaign.id
        code, output = self._run('pause', str(campaign_id))
        self.assertEqual(code, 0)
        self.assertIn("Paused", output)
        self.assertEqual(db.get_campaign(campaign_id).status, 'paused')

        code, output = self._run('resume', str(campaign_id))
        self.assertEqual(code, 0)
        self.assertEqual(db.get_campaign(campaign_id).status, 'draft')

    def test_unknown_campaign_exits_nonzero(self):
        code, output = self._run('pause', '999')
        self.assertEqual(code, 1)
        self.assertIn("999", output)

    def test_approve_all(self):
        campaign_id = self.make_campaign().campaign.id
        GenerationBatcher(generator=self.generator, sleep=lambda s: None).run_batch(campaign_id, 20)

        code, output = self._run('approve', str(campaign_id), '--all')

        self.assertEqual(code, 0)
        self.assertIn("Approved 3 recipients", output)

    def test_split_list(self):
        self.assertEqual(_split_list("1, 2,,3", int), [1, 2, 3])
        self.assertIsNone(_split_list(""))


if __name__ == '__main__':
    unittest.main()
