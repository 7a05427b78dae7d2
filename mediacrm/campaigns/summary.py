"""
Status reporting for campaigns.

- print_status: box dashboard for one campaign
- print_campaign_list: one line per campaign
- generate_summary_text: plain-text progress report (failures included)
"""

import logging
from datetime import datetime
from typing import Optional

from mediacrm.campaigns import db
from mediacrm.campaigns.config import CAMPAIGN_CONFIG
from mediacrm.campaigns.manager import CampaignManager
from mediacrm.campaigns.sender import SendWindowPolicy, utc_now

logger = logging.getLogger(__name__)


def _policy(campaign: db.Campaign) -> SendWindowPolicy:
    return SendWindowPolicy(
        start_hour=campaign.send_window_start,
        end_hour=campaign.send_window_end,
        timezone=CAMPAIGN_CONFIG['SEND_TIMEZONE'],
    )


def get_campaign_status(
    campaign_id: int,
    manager: Optional[CampaignManager] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Everything the status views show, as a dict."""
    manager = manager or CampaignManager()
    now = now or utc_now()

    campaign = manager.get_campaign(campaign_id)
    counts = manager.recipient_counts(campaign_id)
    policy = _policy(campaign)
    sent_today = db.count_sent_since(campaign_id, policy.start_of_day(now))
    sender = db.get_sender_profile(campaign.sender_profile_id)

    return {
        'campaign': campaign,
        'sender': sender,
        'counts': counts,
        'sent_today': sent_today,
        'daily_limit': campaign.daily_send_limit,
        'window_open': policy.is_open(now),
        'window': f"{campaign.send_window_start:02d}:00-{campaign.send_window_end:02d}:00 {policy.timezone}",
    }


def generate_summary_text(
    campaign_id: int,
    manager: Optional[CampaignManager] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Plain-text progress report for one campaign.

    Returns:
        Plain text summary
    """
    status = get_campaign_status(campaign_id, manager, now)
    campaign = status['campaign']
    counts = status['counts']

    lines = [
        f"CAMPAIGN #{campaign.id}: {campaign.name}",
        "=" * 50,
        f"Status: {campaign.status}   Flavor: {campaign.flavor}",
        "",
        "RECIPIENTS",
        "-" * 30,
    ]
    for key in ('pending', 'generated', 'approved', 'sent', 'failed', 'error', 'suppressed'):
        lines.append(f"• {key.capitalize()}: {counts.get(key, 0)}")
    lines.append(f"• Total: {counts['total']}")
    lines.append("")

    lines.append("SENDING")
    lines.append("-" * 30)
    lines.append(f"• Sent today: {status['sent_today']}/{status['daily_limit']}")
    lines.append(f"• Window: {status['window']} ({'open' if status['window_open'] else 'closed'})")
    lines.append(f"• Delay: {campaign.min_delay_seconds}-{campaign.max_delay_seconds}s")
    lines.append("")

    problems = db.select_recipients_by_status(campaign.id, (db.FAILED, db.ERROR), limit=10)
    if problems:
        lines.append("PROBLEMS")
        lines.append("-" * 30)
        for recipient in problems:
            lines.append(
                f"• #{recipient.id} {recipient.recipient_email or '(no address)'}"
                f" [{recipient.status}]: {(recipient.error or '')[:80]}"
            )
        lines.append("")

    return "\n".join(lines)


def print_status(campaign_id: int, manager: Optional[CampaignManager] = None) -> None:
    """Print a campaign's status to console."""
    status = get_campaign_status(campaign_id, manager)
    campaign = status['campaign']
    counts = status['counts']
    sender = status['sender']

    title = f"CAMPAIGN #{campaign.id} - {campaign.name}"[:68]

    print()
    print("╔" + "═" * 70 + "╗")
    print(f"║{title:^70}║")
    print("╠" + "═" * 70 + "╣")
    print("║" + " " * 70 + "║")

    sender_str = sender.from_address if sender else "(none)"
    print(f"║  Status:   {campaign.status:<58}║")
    print(f"║  Flavor:   {campaign.flavor:<58}║")
    print(f"║  Sender:   {sender_str[:58]:<58}║")
    print("║" + " " * 70 + "║")

    # Recipients
    print("║  RECIPIENTS" + " " * 58 + "║")
    print(f"║  ├─ Pending:              {counts['pending']:<43}║")
    print(f"║  ├─ Generated:            {counts['generated']:<43}║")
    print(f"║  ├─ Approved:             {counts['approved']:<43}║")
    print(f"║  ├─ Sent:                 {counts['sent']:<43}║")
    print(f"║  ├─ Failed / error:       {counts['failed'] + counts['error']:<43}║")
    print(f"║  ├─ Suppressed:           {counts['suppressed']:<43}║")
    print(f"║  └─ Total:                {counts['total']:<43}║")
    print("║" + " " * 70 + "║")

    # Sending
    limit_str = f"{status['sent_today']}/{status['daily_limit']}"
    window_str = f"{status['window']} ({'open' if status['window_open'] else 'closed'})"
    delay_str = f"{campaign.min_delay_seconds}-{campaign.max_delay_seconds}s"
    print("║  SENDING" + " " * 61 + "║")
    print(f"║  ├─ Sent/Limit today:     {limit_str:<43}║")
    print(f"║  ├─ Window:               {window_str[:43]:<43}║")
    print(f"║  └─ Delay:                {delay_str:<43}║")
    print("║" + " " * 70 + "║")

    print("╚" + "═" * 70 + "╝")
    print()


def print_campaign_list(manager: Optional[CampaignManager] = None) -> None:
    manager = manager or CampaignManager()
    campaigns = manager.list_campaigns()

    if not campaigns:
        print("\nNo campaigns yet.\n")
        return

    print(f"\n{'ID':>4}  {'NAME':<30} {'FLAVOR':<9} {'STATUS':<11} {'SENT':>5} {'APPR':>5} {'TOTAL':>6}")
    print("-" * 76)
    for campaign, counts in campaigns:
        print(
            f"{campaign.id:>4}  {campaign.name[:30]:<30} {campaign.flavor:<9} "
            f"{campaign.status:<11} {counts['sent']:>5} {counts['approved']:>5} {counts['total']:>6}"
        )
    print()
