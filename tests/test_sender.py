"""Tests for the send window policy and the mail transports."""

import smtplib
import unittest
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytz
import requests

from mediacrm.campaigns.errors import ConfigurationMissing
from mediacrm.campaigns.sender import (
    OutgoingEmail,
    ResendTransport,
    SendWindowPolicy,
    SmtpTransport,
    get_transport,
    is_within_send_window,
    start_of_utc_day,
)
from tests.helpers import NEW_YORK, at_local


class TestSendWindowPolicy(unittest.TestCase):

    def setUp(self):
        self.policy = SendWindowPolicy(9, 17, 'America/New_York')

    def test_boundaries(self):
        self.assertFalse(self.policy.is_open(at_local(8, 59)))
        self.assertTrue(self.policy.is_open(at_local(9, 0)))
        self.assertTrue(self.policy.is_open(at_local(16, 59)))
        self.assertFalse(self.policy.is_open(at_local(17, 0)))

    def test_reason_strings(self):
        self.assertEqual(is_within_send_window(self.policy, at_local(8))[0], False)
        self.assertIn("Before", is_within_send_window(self.policy, at_local(8))[1])
        self.assertIn("After", is_within_send_window(self.policy, at_local(17))[1])
        self.assertEqual(is_within_send_window(self.policy, at_local(12)), (True, "Within send window"))

    def test_seconds_until_open_same_day(self):
        self.assertEqual(self.policy.seconds_until_open(at_local(8, 0)), 3600)
        self.assertEqual(self.policy.seconds_until_open(at_local(8, 59)), 60)

    def test_seconds_until_open_wraps_past_midnight(self):
        # 17:00 -> 09:00 next day
        self.assertEqual(self.policy.seconds_until_open(at_local(17, 0)), 16 * 3600)

    def test_seconds_until_open_is_zero_inside_window(self):
        self.assertEqual(self.policy.seconds_until_open(at_local(10)), 0)

    def test_next_opening_across_dst_change(self):
        # US clocks spring forward on 2025-03-09; 09:00 EDT is 13:00 UTC
        now = at_local(18, day=8)
        opening = self.policy.next_opening(now)
        self.assertEqual(opening.astimezone(pytz.utc), datetime(2025, 3, 9, 13, 0, tzinfo=pytz.utc))

    def test_day_boundaries_use_reference_timezone(self):
        now = at_local(23, 30)  # 04:30 UTC the next day
        start = self.policy.start_of_day(now)
        self.assertEqual(start, NEW_YORK.localize(datetime(2025, 3, 4)))
        self.assertEqual(self.policy.seconds_until_day_ends(now), 30 * 60)

    def test_naive_datetimes_are_utc(self):
        self.assertTrue(self.policy.is_open(datetime(2025, 3, 4, 15, 0)))  # 10:00 EST

    def test_start_of_utc_day(self):
        now = datetime(2025, 3, 4, 15, 42, tzinfo=pytz.utc)
        self.assertEqual(start_of_utc_day(now), datetime(2025, 3, 4, tzinfo=pytz.utc))


def _email(**overrides):
    fields = dict(
        from_address="Jane Doe <jane@media.example>",
        to="sam@example.com",
        subject="summit in May",
        html="<p>Hi</p>",
        reply_to="jane@media.example",
    )
    fields.update(overrides)
    return OutgoingEmail(**fields)


class TestResendTransport(unittest.TestCase):

    @patch('mediacrm.campaigns.sender.requests.post')
    def test_successful_send(self, mock_post):
        mock_post.return_value = MagicMock(status_code=200, json=lambda: {'id': 're_123'})

        result = ResendTransport(api_key='key').send(_email())

        self.assertTrue(result.success)
        self.assertEqual(result.transport_id, 're_123')
        url = mock_post.call_args[0][0]
        kwargs = mock_post.call_args[1]
        self.assertTrue(url.endswith('/emails'))
        self.assertEqual(kwargs['headers']['Authorization'], 'Bearer key')
        payload = kwargs['json']
        self.assertEqual(payload['to'], ['sam@example.com'])
        self.assertEqual(payload['from'], "Jane Doe <jane@media.example>")
        self.assertEqual(payload['reply_to'], "jane@media.example")
        self.assertIn('X-Entity-Ref-ID', payload['headers'])

    @patch('mediacrm.campaigns.sender.requests.post')
    def test_rejected_send(self, mock_post):
        mock_post.return_value = MagicMock(status_code=422, json=lambda: {'message': 'Invalid `to` field'})

        result = ResendTransport(api_key='key').send(_email())

        self.assertFalse(result.success)
        self.assertEqual(result.error, 'Invalid `to` field')
        self.assertTrue(result.bounced)

    @patch('mediacrm.campaigns.sender.requests.post')
    def test_network_error(self, mock_post):
        mock_post.side_effect = requests.ConnectionError("connection reset")

        result = ResendTransport(api_key='key').send(_email())

        self.assertFalse(result.success)
        self.assertIn("connection reset", result.error)

    @patch('mediacrm.campaigns.sender.requests.post')
    def test_unconfigured(self, mock_post):
        result = ResendTransport(api_key='').send(_email())
        self.assertFalse(result.success)
        mock_post.assert_not_called()


class TestSmtpTransport(unittest.TestCase):

    @patch('mediacrm.campaigns.sender.smtplib.SMTP')
    def test_successful_send(self, mock_smtp):
        server = mock_smtp.return_value.__enter__.return_value

        result = SmtpTransport('smtp.example.com', 587, 'user', 'pw').send(_email(text="Hi"))

        self.assertTrue(result.success)
        self.assertTrue(result.transport_id)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('user', 'pw')
        self.assertEqual(server.sendmail.call_args[0][1], ['sam@example.com'])

    @patch('mediacrm.campaigns.sender.smtplib.SMTP')
    def test_refused_recipient_is_bounce(self, mock_smtp):
        server = mock_smtp.return_value.__enter__.return_value
        server.sendmail.side_effect = smtplib.SMTPRecipientsRefused({'sam@example.com': (550, b'no')})

        result = SmtpTransport('smtp.example.com', 587, 'user', 'pw').send(_email())

        self.assertFalse(result.success)
        self.assertTrue(result.bounced)


class TestGetTransport(unittest.TestCase):

    def test_known_transports(self):
        self.assertIsInstance(get_transport('resend'), ResendTransport)
        self.assertIsInstance(get_transport('SMTP'), SmtpTransport)

    def test_unknown_transport(self):
        with self.assertRaises(ConfigurationMissing):
            get_transport('carrier-pigeon')


if __name__ == '__main__':
    unittest.main()
