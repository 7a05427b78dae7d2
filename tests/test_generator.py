"""Tests for prompt building, reply parsing and the Anthropic client."""

import unittest
from unittest.mock import MagicMock, patch

import requests

from mediacrm.campaigns.db import Campaign, SenderProfile
from mediacrm.campaigns.errors import GenerationFailed
from mediacrm.campaigns.generator import (
    DEFAULT_SUBJECT,
    AnthropicGenerator,
    build_system_prompt,
    build_user_prompt,
    parse_response,
)


class TestParseResponse(unittest.TestCase):

    def test_plain_json(self):
        email = parse_response('{"subject": "summit in May", "body": "Hi Sam,\\n\\nShort note."}')
        self.assertEqual(email.subject, "summit in May")
        self.assertEqual(email.body, "Hi Sam,\n\nShort note.")

    def test_json_wrapped_in_prose(self):
        text = 'Here you go:\n```json\n{"subject": "hello", "body": "Body"}\n```'
        email = parse_response(text)
        self.assertEqual(email.subject, "hello")
        self.assertEqual(email.body, "Body")

    def test_subject_line_fallback(self):
        email = parse_response("Subject: coffee next week\n\nHi there,\nAre you free?")
        self.assertEqual(email.subject, "coffee next week")
        self.assertEqual(email.body, "Hi there,\nAre you free?")

    def test_default_subject(self):
        email = parse_response("Hi there, just a body.")
        self.assertEqual(email.subject, DEFAULT_SUBJECT)
        self.assertEqual(email.body, "Hi there, just a body.")

    def test_broken_json_falls_back(self):
        email = parse_response('{"subject": "x", "body": "unterminated}')
        self.assertEqual(email.subject, DEFAULT_SUBJECT)


class TestPrompts(unittest.TestCase):

    def setUp(self):
        self.sender = SenderProfile(id=1, name="Jane Doe", email="jane@media.example", title="Editor")
        self.campaign = Campaign(
            id=1,
            name="Summit",
            purpose="Invite founders to the summit",
            tone="Warm, brief",
            must_include="summit.example/rsvp",
            must_avoid="synergy",
            call_to_action="Reply if you'd like a seat",
            max_words=80,
        )

    def test_system_prompt_carries_brief(self):
        prompt = build_system_prompt(self.campaign, self.sender)
        self.assertIn("Invite founders to the summit", prompt)
        self.assertIn("summit.example/rsvp", prompt)
        self.assertIn("synergy", prompt)
        self.assertIn("Reply if you'd like a seat", prompt)
        self.assertIn("under 80 words", prompt)
        self.assertIn('"- Jane"', prompt)

    def test_optional_sections_omitted(self):
        campaign = Campaign(id=2, name="Bare", purpose="Say hello")
        prompt = build_system_prompt(campaign, self.sender)
        self.assertNotIn("MUST Include", prompt)
        self.assertNotIn("BANNED", prompt)
        self.assertNotIn("Reference Email", prompt)

    def test_user_prompt_with_name_and_details(self):
        prompt = build_user_prompt({
            'name': 'Sam Lee',
            'details': {'Company': 'Acme', 'Title': None, 'Tags': ['media', 'events']},
        })
        self.assertIn("- Name: Sam Lee", prompt)
        self.assertIn("- Company: Acme", prompt)
        self.assertIn("- Tags: media, events", prompt)
        self.assertNotIn("Title", prompt)

    def test_user_prompt_unknown_name(self):
        prompt = build_user_prompt({'name': None, 'details': {}})
        self.assertIn("Do NOT address them by name", prompt)


class TestAnthropicGenerator(unittest.TestCase):

    def setUp(self):
        self.sender = SenderProfile(id=1, name="Jane Doe", email="jane@media.example")
        self.campaign = Campaign(id=1, name="Summit", purpose="Invite founders")
        self.generator = AnthropicGenerator(api_key='test-key', base_url='https://api.example')

    @patch('mediacrm.campaigns.generator.requests.post')
    def test_generate(self, mock_post):
        mock_post.return_value = MagicMock(json=lambda: {
            'content': [{'type': 'text', 'text': '{"subject": "hi Sam", "body": "Hello"}'}],
        })

        email = self.generator.generate(self.campaign, self.sender, {'name': 'Sam'})

        self.assertEqual(email.subject, "hi Sam")
        self.assertEqual(email.body, "Hello")
        self.assertEqual(mock_post.call_args[0][0], 'https://api.example/v1/messages')
        kwargs = mock_post.call_args[1]
        self.assertEqual(kwargs['headers']['x-api-key'], 'test-key')
        self.assertEqual(kwargs['json']['messages'][0]['role'], 'user')
        self.assertIn("Sam", kwargs['json']['messages'][0]['content'])

    @patch('mediacrm.campaigns.generator.requests.post')
    def test_request_error_raises(self, mock_post):
        mock_post.side_effect = requests.Timeout("read timed out")
        with self.assertRaises(GenerationFailed):
            self.generator.generate(self.campaign, self.sender, {})

    @patch('mediacrm.campaigns.generator.requests.post')
    def test_http_error_raises(self, mock_post):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("529 Overloaded")
        mock_post.return_value = response
        with self.assertRaises(GenerationFailed):
            self.generator.generate(self.campaign, self.sender, {})

    @patch('mediacrm.campaigns.generator.requests.post')
    def test_empty_content_raises(self, mock_post):
        mock_post.return_value = MagicMock(json=lambda: {'content': []})
        with self.assertRaises(GenerationFailed):
            self.generator.generate(self.campaign, self.sender, {})

    def test_unconfigured(self):
        generator = AnthropicGenerator(api_key='')
        self.assertFalse(generator.is_configured())
        with self.assertRaises(GenerationFailed):
            generator.generate(self.campaign, self.sender, {})


if __name__ == '__main__':
    unittest.main()
