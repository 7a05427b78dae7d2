"""
AI email copy generation via the Anthropic Messages API.

Each recipient gets an email written fresh from:
- The campaign brief (purpose, tone, constraints, call to action)
- The sender's identity
- The recipient context snapshot taken when the campaign was built

Responses are expected as a JSON object {"subject": ..., "body": ...};
anything else is parsed leniently (a "Subject:" line, the rest as body).
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

import requests

from mediacrm import config
from mediacrm.campaigns.db import Campaign, SenderProfile
from mediacrm.campaigns.errors import GenerationFailed

logger = logging.getLogger(__name__)

MAX_TOKENS = 1000
TEMPERATURE = 0.8
DEFAULT_SUBJECT = "Quick note"

_JSON_OBJECT = re.compile(r'\{[\s\S]*"subject"[\s\S]*"body"[\s\S]*\}')
_SUBJECT_LINE = re.compile(r'^subject:\s*', re.IGNORECASE)

SUBJECT_RULES = [
    "3-6 words ideal. Shorter subjects get higher open rates.",
    "Lowercase style is fine for common words, but always capitalize proper nouns "
    "(company names, brand names, event names, city names, people's names).",
    "Reference their organisation, role, or something specific to them when natural.",
    "Must feel like one human writing to another, not a campaign.",
    'NEVER use: "Quick question", "Partnership opportunity", "Exciting news", '
    '"Touching base", or any pattern that screams mass email.',
    "NEVER use clickbait, ALL CAPS words, exclamation marks, or emojis.",
    "Each recipient MUST get a unique subject line.",
]


@dataclass
class GeneratedEmail:
    subject: str
    body: str


def build_system_prompt(campaign: Campaign, sender: SenderProfile) -> str:
    """System prompt shared by every recipient of a campaign."""
    parts = []

    parts.append(
        "You write short, personal outbound emails on behalf of a media company. "
        "Every email is written fresh for one recipient. It is never a template."
    )

    if campaign.tone:
        parts.append(f"## Writing Tone\n\n{campaign.tone}")

    first_name = sender.name.split(" ")[0] if sender.name else ""
    parts.append(
        f"## You Are Writing As\n\nName: {sender.name}\nTitle: {sender.title or 'the team'}\n\n"
        "Write the email body only. Do NOT include a signature block (that gets appended "
        f'separately). You may use a casual sign-off like "- {first_name}" at the end.'
    )

    parts.append(f"## Campaign Purpose\n\n{campaign.purpose or ''}")

    if campaign.call_to_action:
        parts.append(
            "## Call to Action\n\nEvery email must end with or naturally include this ask: "
            f"{campaign.call_to_action}"
        )

    if campaign.must_include:
        parts.append(
            "## MUST Include (verbatim)\n\nThe following must appear exactly as written "
            f"somewhere in the email:\n{campaign.must_include}"
        )

    if campaign.must_avoid:
        parts.append(
            "## BANNED Words & Phrases\n\nDo not use any of the following in the subject "
            f"line or body, not even paraphrased:\n\n{campaign.must_avoid}"
        )

    if campaign.reference_email:
        parts.append(
            "## Reference Email (Style Guide)\n\nA sample showing the voice and cadence wanted. "
            "Use it as a feel reference only, do NOT copy phrases.\n\n"
            f"---\n{campaign.reference_email}\n---"
        )

    if campaign.context:
        parts.append(
            "## Background Context (DO NOT say any of this in the email)\n\n"
            f"{campaign.context}"
        )

    parts.append(
        f"## Word Limit\n\nKeep the email body under {campaign.max_words} words. "
        "Shorter is better. This should feel like a quick personal note."
    )

    rules = "\n- ".join(SUBJECT_RULES)
    if campaign.subject_prompt:
        parts.append(
            f"## Subject Line Style\n\nCore rules (always apply):\n- {rules}\n\n"
            f"Additional style instructions from the campaign creator:\n{campaign.subject_prompt}"
        )
    else:
        parts.append(f"## Subject Line Style\n\n- {rules}")

    parts.append(
        "## Output Format\n\nReturn ONLY a JSON object with two fields:\n"
        '{"subject": "the subject line", "body": "the email body as plain text"}\n\n'
        "Do not include any other text, explanation, or markdown outside the JSON."
    )

    return "\n\n".join(parts)


def build_user_prompt(context: dict) -> str:
    """Per-recipient prompt from a context snapshot ({'name', 'details'})."""
    lines = ["Write a personalized email to this recipient:", ""]

    name = (context.get('name') or '').strip()
    if name:
        lines.append(f"- Name: {name}")
    else:
        lines.append(
            "- Name: [Unknown. Do NOT address them by name or guess one from the email "
            'address. Use "Hi there," or "Hello," or skip the greeting.]'
        )

    for label, value in (context.get('details') or {}).items():
        if value in (None, '', []):
            continue
        if isinstance(value, list):
            value = ", ".join(str(v) for v in value)
        lines.append(f"- {label}: {value}")

    return "\n".join(lines)


def parse_response(text: str) -> GeneratedEmail:
    """Extract subject and body from the model's reply."""
    match = _JSON_OBJECT.search(text or "")
    if match:
        try:
            parsed = json.loads(match.group(0))
            return GeneratedEmail(
                subject=str(parsed.get('subject') or '').strip(),
                body=str(parsed.get('body') or '').strip(),
            )
        except (ValueError, AttributeError):
            logger.debug("Model reply looked like JSON but did not parse")

    # Fallback: "Subject: ..." line, everything else is the body
    lines = (text or "").strip().split("\n")
    subject = DEFAULT_SUBJECT
    body_lines = []
    for line in lines:
        if line.lower().startswith("subject:"):
            subject = _SUBJECT_LINE.sub("", line).strip()
        else:
            body_lines.append(line)

    return GeneratedEmail(subject=subject, body="\n".join(body_lines).strip())


class AnthropicGenerator:
    """ContentGenerator backed by the Anthropic Messages API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.api_key = api_key if api_key is not None else config.ANTHROPIC_API_KEY
        self.model = model or config.ANTHROPIC_MODEL
        self.base_url = (base_url or config.ANTHROPIC_BASE_URL).rstrip('/')
        self.timeout = timeout or config.GENERATION_TIMEOUT

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def generate(self, campaign: Campaign, sender: SenderProfile, context: dict) -> GeneratedEmail:
        if not self.is_configured():
            raise GenerationFailed("Anthropic API key not configured. Set ANTHROPIC_API_KEY.")

        payload = {
            'model': self.model,
            'max_tokens': MAX_TOKENS,
            'temperature': TEMPERATURE,
            'system': build_system_prompt(campaign, sender),
            'messages': [{'role': 'user', 'content': build_user_prompt(context)}],
        }
        headers = {
            **config.REQUEST_HEADERS,
            'x-api-key': self.api_key,
            'anthropic-version': config.ANTHROPIC_VERSION,
            'content-type': 'application/json',
        }

        try:
            resp = requests.post(
                f"{self.base_url}/v1/messages",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as exc:
            logger.error("Anthropic API error: %s", exc)
            raise GenerationFailed(f"Anthropic API error: {exc}") from exc
        except ValueError as exc:
            raise GenerationFailed(f"Anthropic API returned invalid JSON: {exc}") from exc

        text = ""
        for block in data.get('content', []):
            if block.get('type') == 'text':
                text = (block.get('text') or '').strip()
                break

        if not text:
            raise GenerationFailed("Anthropic API returned no text content")

        return parse_response(text)
