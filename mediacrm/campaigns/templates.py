"""
Email body rendering for campaigns.

- htmlize: plain-text body to paragraph HTML
- Signature block appended to every outgoing email
- Plain-text preview used by the review CLI
"""

import logging
import os
import re
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape, TemplateNotFound

from mediacrm.campaigns.db import Campaign, Recipient, SenderProfile

logger = logging.getLogger(__name__)

TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "email_templates")

_PARAGRAPH_BREAK = re.compile(r"\n\n+")

# Initialize Jinja2 environment
_env = None


def _get_env() -> Environment:
    """Get or create Jinja2 environment."""
    global _env
    if _env is None:
        _env = Environment(
            loader=FileSystemLoader(TEMPLATE_DIR),
            autoescape=select_autoescape(['html']),
        )
    return _env


def htmlize(body: str) -> str:
    """Wrap each blank-line separated paragraph in <p>, single newlines become <br>."""
    paragraphs = _PARAGRAPH_BREAK.split(body or "")
    return "\n".join("<p>" + para.replace("\n", "<br>") + "</p>" for para in paragraphs)


def signature_lines(signature: Optional[str]) -> list[str]:
    if not signature:
        return []
    return [line.strip() for line in signature.split("\n")]


def render_signature(signature: Optional[str]) -> str:
    """HTML signature block, or an empty string when there is no signature."""
    lines = signature_lines(signature)
    if not lines:
        return ""

    try:
        template = _get_env().get_template("signature.html")
        return template.render(lines=lines)
    except TemplateNotFound:
        # Fallback to inline template
        return f'<br><br><span style="color:#666;font-size:13px">{"<br>".join(lines)}</span>'


def effective_signature(campaign: Campaign, sender: Optional[SenderProfile]) -> Optional[str]:
    """Campaign override wins over the sender's default signature."""
    if campaign.signature_override:
        return campaign.signature_override
    return sender.signature if sender else None


def render_email_html(
    recipient: Recipient,
    campaign: Campaign,
    sender: Optional[SenderProfile],
) -> str:
    """Final HTML for a recipient: stored body_html (or htmlize(body)) plus signature."""
    html = recipient.body_html or htmlize(recipient.body or "")
    return html + render_signature(effective_signature(campaign, sender))


def render_preview(
    recipient: Recipient,
    campaign: Campaign,
    sender: Optional[SenderProfile],
) -> str:
    """Plain-text preview of a recipient's email for review in the terminal."""
    context = {
        'from_address': sender.from_address if sender else '(no sender profile)',
        'to_address': recipient.recipient_email or '(no address)',
        'reply_to': campaign.reply_to or (sender.email if sender else ''),
        'subject': recipient.subject or '(not generated)',
        'status': recipient.status,
        'approved': recipient.approved,
        'body': recipient.body or '',
        'signature': "\n".join(signature_lines(effective_signature(campaign, sender))),
    }

    try:
        template = _get_env().get_template("preview.txt")
        return template.render(**context)
    except TemplateNotFound:
        logger.debug("preview.txt not found, using inline preview")
        return _render_preview_fallback(context)


# ---------------------------------------------------------------------------
# Fallback templates (used if Jinja2 templates not found)
# ---------------------------------------------------------------------------

def _render_preview_fallback(ctx: dict) -> str:
    status = ctx['status'] + (" (approved)" if ctx['approved'] else "")
    text = f"""From:     {ctx['from_address']}
To:       {ctx['to_address']}
Reply-To: {ctx['reply_to']}
Subject:  {ctx['subject']}
Status:   {status}

{ctx['body']}
"""
    if ctx['signature']:
        text += f"\n--\n{ctx['signature']}\n"
    return text
