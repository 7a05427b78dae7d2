#!/usr/bin/env python3
"""
Campaign CLI - build, review and drip-send email campaigns.

Usage:
    python campaign_sender.py init                            Create database tables
    python campaign_sender.py sender-add --name N --email E   Add a sender profile
    python campaign_sender.py create --name N --sender 1 ...  Create a campaign
    python campaign_sender.py list                            List campaigns
    python campaign_sender.py status <id>                     Campaign dashboard
    python campaign_sender.py stats <id>                      Text report with failures
    python campaign_sender.py generate <id>                   Generate all pending emails
    python campaign_sender.py review <id>                     List recipients
    python campaign_sender.py preview <id> <rid>              Preview one email
    python campaign_sender.py approve <id> <rid>... | --all   Approve for sending
    python campaign_sender.py unapprove <id> <rid>... | --all
    python campaign_sender.py edit <id> <rid> --subject S     Edit before sending
    python campaign_sender.py regenerate <id> <rid>           Rewrite one email
    python campaign_sender.py suppress <id> <rid>             Drop one recipient
    python campaign_sender.py suppress-company <company_id>   Drop a company everywhere
    python campaign_sender.py delete <id> <rid>               Delete an unsent recipient
    python campaign_sender.py test-send <id> <rid> <email>    Send a [TEST] copy
    python campaign_sender.py send <id>                       Drip-send approved emails
    python campaign_sender.py send <id> --dry-run --limit 5   Preview the send loop
    python campaign_sender.py pause <id> | resume <id>
"""

import argparse
import json
import logging
import sys
import time
from typing import Callable, Optional

from mediacrm.db import init_db
from mediacrm.campaigns import db
from mediacrm.campaigns.batcher import GenerationBatcher
from mediacrm.campaigns.config import CAMPAIGN_CONFIG, validate_config
from mediacrm.campaigns.errors import CampaignClosed, CampaignError, LeaseUnavailable
from mediacrm.campaigns.manager import CampaignManager
from mediacrm.campaigns.scheduler import (
    DripScheduler,
    NoneRemaining,
    RateLimited,
    SendFailed,
    Sent,
    Skipped,
    campaign_lease,
)
from mediacrm.campaigns.summary import generate_summary_text, print_campaign_list, print_status
from mediacrm.campaigns.templates import render_preview

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s' if verbose else '%(message)s',
    )
    # Quieten noisy libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)


def _split_list(value: Optional[str], cast=str) -> Optional[list]:
    if not value:
        return None
    return [cast(v.strip()) for v in value.split(',') if v.strip()]


# ---------------------------------------------------------------------------
# Driver loops
# ---------------------------------------------------------------------------

def run_generation(
    campaign_id: int,
    batcher: GenerationBatcher,
    batch_size: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
    once: bool = False,
) -> dict:
    """Call run_batch until no pending recipients remain."""
    totals = {'generated': 0, 'errors': 0, 'batches': 0}
    while True:
        result = batcher.run_batch(campaign_id, batch_size)
        totals['batches'] += 1
        totals['generated'] += result.generated
        totals['errors'] += result.errors

        print(
            f"  Batch {totals['batches']}: {result.generated} generated, "
            f"{result.errors} errors, {result.remaining} remaining of {result.total}"
        )
        for detail in result.error_details:
            print(f"    ✗ #{detail['recipient_id']}: {detail['error'][:80]}")

        if once or result.remaining == 0 or result.generated + result.errors == 0:
            totals['remaining'] = result.remaining
            totals['campaign_status'] = result.campaign_status
            return totals

        sleep(CAMPAIGN_CONFIG['GENERATION_POLL_SECONDS'])


def _sleep_holding_lease(lease, seconds: float, sleep: Callable[[float], None]) -> None:
    """Sleep, renewing the lease often enough that it never lapses."""
    seconds = min(seconds, CAMPAIGN_CONFIG['MAX_SLEEP_SECONDS'])
    step = max(1, lease.ttl_seconds // 3)
    while seconds > 0:
        chunk = min(step, seconds)
        sleep(chunk)
        seconds -= chunk
        lease.renew()


def run_send_loop(
    campaign_id: int,
    scheduler: DripScheduler,
    manager: CampaignManager,
    dry_run: bool = False,
    limit: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    Drive send_next until the campaign is done, paused, or the limit is hit.

    Holds the campaign's lease for the whole loop. Returns emails sent.
    """
    sent = 0
    previewed = 0  # dry runs consume nothing, so walk the queue by offset
    with campaign_lease(campaign_id) as lease:
        while True:
            if limit and sent >= limit:
                logger.info("Session limit reached (%d/%d). Stopping.", sent, limit)
                break

            # Re-read every iteration; a pause from elsewhere stops the loop
            campaign = manager.get_campaign(campaign_id)
            if campaign.status in ('paused', 'completed'):
                logger.info("Campaign %s is %s. Stopping.", campaign_id, campaign.status)
                break

            lease.renew()
            try:
                outcome = scheduler.send_next(campaign_id, dry_run=dry_run, skip=previewed if dry_run else 0)
            except CampaignClosed as exc:
                logger.info("%s. Stopping.", exc)
                break

            if isinstance(outcome, Sent):
                sent += 1
                previewed += 1
                prefix = "[DRY RUN] Would send" if outcome.dry_run else "✓ Sent"
                logger.info("  %s #%d to %s", prefix, sent, outcome.target_address)
                logger.info("    Subject: %r", outcome.subject)
                if outcome.transport_id:
                    logger.info("    Transport ID: %s", outcome.transport_id)
                if outcome.remaining_approved == 0:
                    logger.info("All approved emails sent.")
                    break
                if dry_run:
                    logger.info("    [DRY RUN] Would wait %ds", outcome.recommended_delay_seconds)
                    sleep(1)
                else:
                    logger.info("    Waiting %ds before next send...", outcome.recommended_delay_seconds)
                    _sleep_holding_lease(lease, outcome.recommended_delay_seconds, sleep)

            elif isinstance(outcome, NoneRemaining):
                if outcome.campaign_completed:
                    logger.info("Nothing left to send. Campaign complete.")
                else:
                    logger.info("No approved emails waiting. Stopping.")
                break

            elif isinstance(outcome, Skipped):
                previewed += 1
                logger.info("  Skipped #%s: %s", outcome.recipient_id, outcome.reason)

            elif isinstance(outcome, SendFailed):
                logger.info("  ✗ Send failed for #%s: %s", outcome.recipient_id, outcome.message)
                _sleep_holding_lease(lease, CAMPAIGN_CONFIG['ERROR_PAUSE_SECONDS'], sleep)

            elif isinstance(outcome, RateLimited):
                if dry_run:
                    logger.info("[DRY RUN] %s. Stopping.", outcome.reason)
                    break
                logger.info("%s. Waiting %ds...", outcome.reason, outcome.retry_after_seconds)
                _sleep_holding_lease(lease, outcome.retry_after_seconds, sleep)

    return sent


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_init(args):
    """Create all tables."""
    init_db()
    db.init_campaign_db()
    print("\n✓ Database initialised\n")
    for problem in validate_config():
        print(f"  ⚠ {problem}")


def cmd_sender_add(args):
    db.init_campaign_db()
    signature = args.signature.replace('\\n', '\n') if args.signature else None
    profile_id = db.create_sender_profile(args.name, args.email, args.title, signature)
    print(f"\n✓ Created sender profile #{profile_id}: {args.name} <{args.email}>\n")


def cmd_create(args):
    """Create a campaign from CRM records."""
    manager = CampaignManager()

    fields = {}
    if args.config:
        with open(args.config, 'r') as f:
            fields.update(json.load(f))

    for key in ('name', 'flavor', 'purpose', 'tone', 'context', 'call_to_action',
                'must_include', 'must_avoid', 'reply_to', 'subject_prompt',
                'signature_override', 'max_words', 'daily_send_limit',
                'send_window_start', 'send_window_end', 'min_delay_seconds',
                'max_delay_seconds', 'cooldown_days'):
        value = getattr(args, key, None)
        if value is not None:
            fields[key] = value
    if args.sender is not None:
        fields['sender_profile_id'] = args.sender
    if args.one_per_company:
        fields['one_per_company'] = True

    target_filter = fields.pop('target_filter', {})
    ids = _split_list(args.ids, int)
    if ids:
        id_key = {'contact': 'contact_ids', 'clinic': 'clinic_ids', 'outreach': 'outreach_contact_ids'}
        target_filter[id_key.get(fields.get('flavor', 'contact'), 'contact_ids')] = ids
    if args.states:
        target_filter['states'] = _split_list(args.states)
    if args.business_types:
        target_filter['business_types'] = _split_list(args.business_types)
    if args.engagement:
        target_filter['engagement'] = args.engagement
    if args.limit:
        target_filter['limit'] = args.limit

    result = manager.create_campaign(fields, target_filter)

    print(f"\n✓ Created campaign #{result.campaign.id}: {result.campaign.name}")
    print(f"  Recipients:          {result.recipient_count}")
    if result.skipped_no_email:
        print(f"  Skipped (no email):  {result.skipped_no_email}")
    if result.skipped_cooldown:
        print(f"  Skipped (cooldown):  {result.skipped_cooldown}")
    if result.failed_batches:
        print(f"  ✗ Failed batches:    {result.failed_batches}")
    print()


def cmd_list(args):
    print_campaign_list(CampaignManager())


def cmd_status(args):
    print_status(args.campaign_id, CampaignManager())


def cmd_stats(args):
    print()
    print(generate_summary_text(args.campaign_id, CampaignManager()))
    print()


def cmd_generate(args):
    """Generate emails for every pending recipient."""
    CampaignManager()
    print(f"\nGenerating emails for campaign #{args.campaign_id}...")
    totals = run_generation(args.campaign_id, GenerationBatcher(), args.batch_size, once=args.once)
    print(
        f"\n✓ {totals['generated']} generated, {totals['errors']} errors, "
        f"{totals['remaining']} pending. Campaign is {totals['campaign_status']}.\n"
    )


def cmd_review(args):
    """List a campaign's recipients."""
    manager = CampaignManager()
    campaign = manager.get_campaign(args.campaign_id)

    if args.status:
        recipients = db.select_recipients_by_status(campaign.id, args.status, limit=args.limit)
    else:
        recipients = db.get_recipients(campaign.id, limit=args.limit)

    if not recipients:
        print("\n✓ No recipients\n")
        return

    status_icon = {
        'pending': '⏳', 'generated': '📝', 'approved': '✅', 'suppressed': '🚫',
        'sent': '📤', 'delivered': '📬', 'opened': '👀', 'clicked': '🔗',
        'failed': '✗', 'error': '⚠',
    }

    print(f"\nCampaign #{campaign.id} ({campaign.status}) - {len(recipients)} recipients:")
    print("-" * 80)
    for r in recipients:
        subject = (r.subject or '')[:30]
        print(
            f"{status_icon.get(r.status, '?')} #{r.id:<5} {r.status:<10} "
            f"{(r.recipient_email or '')[:30]:<30} {subject}"
        )
        if r.error and r.status in ('failed', 'error', 'suppressed'):
            print(f"         {r.error[:70]}")
    print("-" * 80)
    print()


def cmd_preview(args):
    manager = CampaignManager()
    campaign = manager.get_campaign(args.campaign_id)
    recipient = manager.get_recipient(args.campaign_id, args.recipient_id)
    sender = db.get_sender_profile(campaign.sender_profile_id)
    print()
    print(render_preview(recipient, campaign, sender))


def _bulk(args, single, bulk, verb):
    manager = CampaignManager()
    if args.all:
        count = bulk(manager, args.campaign_id)
        print(f"\n✓ {verb} {count} recipients\n")
    elif args.recipient_ids:
        for recipient_id in args.recipient_ids:
            if single(manager, args.campaign_id, recipient_id):
                print(f"✓ {verb} #{recipient_id}")
            else:
                print(f"✗ Could not {verb.lower().rstrip('d')} #{recipient_id}")
        print()
    else:
        print("\n✗ Specify recipient IDs or --all\n")


def cmd_approve(args):
    _bulk(args, CampaignManager.approve, CampaignManager.bulk_approve, "Approved")


def cmd_unapprove(args):
    _bulk(args, CampaignManager.unapprove, CampaignManager.bulk_unapprove, "Unapproved")


def cmd_edit(args):
    manager = CampaignManager()
    body = None
    if args.body_file:
        with open(args.body_file, 'r') as f:
            body = f.read().strip()
    if manager.update_content(args.campaign_id, args.recipient_id, subject=args.subject, body=body):
        print(f"\n✓ Updated #{args.recipient_id}\n")
    else:
        print(f"\n✗ Could not update #{args.recipient_id} (already sent or nothing to change)\n")


def cmd_regenerate(args):
    manager = CampaignManager()
    recipient = manager.regenerate(args.campaign_id, args.recipient_id)
    if recipient.status == db.ERROR:
        print(f"\n✗ Regeneration failed: {recipient.error}\n")
    else:
        print(f"\n✓ Regenerated #{recipient.id}: {recipient.subject}\n")


def cmd_suppress(args):
    manager = CampaignManager()
    if manager.suppress(args.campaign_id, args.recipient_id, args.reason or "Suppressed via CLI"):
        print(f"\n✓ Suppressed #{args.recipient_id}\n")
    else:
        print(f"\n✗ Could not suppress #{args.recipient_id}\n")


def cmd_suppress_company(args):
    count = CampaignManager().suppress_company(args.company_id, args.reason)
    print(f"\n✓ Suppressed {count} unsent recipients at company {args.company_id}\n")


def cmd_delete(args):
    if CampaignManager().delete_recipient(args.campaign_id, args.recipient_id):
        print(f"\n✓ Deleted #{args.recipient_id}\n")
    else:
        print(f"\n✗ Could not delete #{args.recipient_id} (already sent?)\n")


def cmd_test_send(args):
    CampaignManager()
    result = DripScheduler().test_send(args.campaign_id, args.recipient_id, args.send_to)
    if result.success:
        print(f"\n✓ Test email sent to {args.send_to} ({result.transport_id})\n")
    else:
        print(f"\n✗ Test send failed: {result.error or result.message}\n")


def cmd_send(args):
    """Drip-send a campaign's approved emails."""
    manager = CampaignManager()
    campaign = manager.get_campaign(args.campaign_id)
    dry_run = args.dry_run or CAMPAIGN_CONFIG['DRY_RUN']

    if dry_run:
        print("\n🔍 DRY RUN MODE - No emails will be sent")

    print(f"\nCampaign: \"{campaign.name}\" ({campaign.status})")
    print(f"Send window: {campaign.send_window_start}:00 - {campaign.send_window_end}:00 "
          f"{CAMPAIGN_CONFIG['SEND_TIMEZONE']}")
    print(f"Delay: {campaign.min_delay_seconds}-{campaign.max_delay_seconds}s")
    print(f"Daily limit: {campaign.daily_send_limit}")
    if args.limit:
        print(f"Session limit: {args.limit}")
    print()

    sent = run_send_loop(args.campaign_id, DripScheduler(), manager, dry_run=dry_run, limit=args.limit)
    print(f"\nSession complete. {'Previewed' if dry_run else 'Sent'} {sent} emails.\n")


def cmd_pause(args):
    if CampaignManager().pause(args.campaign_id):
        print(f"\n✓ Paused campaign #{args.campaign_id}\n")
    else:
        print(f"\n✗ Campaign #{args.campaign_id} is already paused or completed\n")


def cmd_resume(args):
    if CampaignManager().resume(args.campaign_id):
        print(f"\n✓ Resumed campaign #{args.campaign_id}\n")
    else:
        print(f"\n✗ Campaign #{args.campaign_id} is not paused\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Campaign CLI - AI-written drip email campaigns",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # init
    subparsers.add_parser('init', help='Create database tables')

    # sender-add
    sender_parser = subparsers.add_parser('sender-add', help='Add a sender profile')
    sender_parser.add_argument('--name', required=True)
    sender_parser.add_argument('--email', required=True)
    sender_parser.add_argument('--title')
    sender_parser.add_argument('--signature', help='Signature, use \\n between lines')

    # create
    create_parser = subparsers.add_parser('create', help='Create a campaign')
    create_parser.add_argument('--config', help='JSON file with campaign fields (and target_filter)')
    create_parser.add_argument('--name')
    create_parser.add_argument('--flavor', choices=['contact', 'clinic', 'outreach'])
    create_parser.add_argument('--sender', type=int, help='Sender profile ID')
    create_parser.add_argument('--purpose')
    create_parser.add_argument('--tone')
    create_parser.add_argument('--context')
    create_parser.add_argument('--call-to-action', dest='call_to_action')
    create_parser.add_argument('--must-include', dest='must_include')
    create_parser.add_argument('--must-avoid', dest='must_avoid')
    create_parser.add_argument('--subject-prompt', dest='subject_prompt')
    create_parser.add_argument('--signature-override', dest='signature_override')
    create_parser.add_argument('--reply-to', dest='reply_to')
    create_parser.add_argument('--max-words', dest='max_words', type=int)
    create_parser.add_argument('--daily-limit', dest='daily_send_limit', type=int)
    create_parser.add_argument('--window-start', dest='send_window_start', type=int)
    create_parser.add_argument('--window-end', dest='send_window_end', type=int)
    create_parser.add_argument('--min-delay', dest='min_delay_seconds', type=int)
    create_parser.add_argument('--max-delay', dest='max_delay_seconds', type=int)
    create_parser.add_argument('--cooldown-days', dest='cooldown_days', type=int)
    create_parser.add_argument('--one-per-company', action='store_true')
    create_parser.add_argument('--ids', help='Comma-separated target IDs')
    create_parser.add_argument('--states', help='Comma-separated states')
    create_parser.add_argument('--business-types', dest='business_types', help='Comma-separated')
    create_parser.add_argument('--engagement', choices=['any', 'opened', 'clicked'])
    create_parser.add_argument('--limit', type=int, help='Max targets')

    # list / status / stats
    subparsers.add_parser('list', help='List campaigns')
    for name, help_text in (('status', 'Campaign dashboard'), ('stats', 'Text report')):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument('campaign_id', type=int)

    # generate
    generate_parser = subparsers.add_parser('generate', help='Generate pending emails')
    generate_parser.add_argument('campaign_id', type=int)
    generate_parser.add_argument('--batch-size', type=int, help='Recipients per batch (max 20)')
    generate_parser.add_argument('--once', action='store_true', help='Run a single batch')

    # review
    review_parser = subparsers.add_parser('review', help='List recipients')
    review_parser.add_argument('campaign_id', type=int)
    review_parser.add_argument('--status', '-s', help='Only this status')
    review_parser.add_argument('--limit', '-l', type=int, default=200)

    # preview / regenerate / delete
    for name, help_text in (('preview', 'Preview one email'),
                            ('regenerate', 'Rewrite one email'),
                            ('delete', 'Delete an unsent recipient')):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument('campaign_id', type=int)
        p.add_argument('recipient_id', type=int)

    # approve / unapprove
    for name in ('approve', 'unapprove'):
        p = subparsers.add_parser(name, help=f'{name.capitalize()} recipients')
        p.add_argument('campaign_id', type=int)
        p.add_argument('recipient_ids', type=int, nargs='*')
        p.add_argument('--all', action='store_true')

    # edit
    edit_parser = subparsers.add_parser('edit', help='Edit subject/body before sending')
    edit_parser.add_argument('campaign_id', type=int)
    edit_parser.add_argument('recipient_id', type=int)
    edit_parser.add_argument('--subject')
    edit_parser.add_argument('--body-file', help='File containing the new plain-text body')

    # suppress
    suppress_parser = subparsers.add_parser('suppress', help='Suppress one recipient')
    suppress_parser.add_argument('campaign_id', type=int)
    suppress_parser.add_argument('recipient_id', type=int)
    suppress_parser.add_argument('--reason', '-r')

    company_parser = subparsers.add_parser('suppress-company', help='Suppress a company everywhere')
    company_parser.add_argument('company_id', type=int)
    company_parser.add_argument('--reason', '-r', required=True)

    # test-send
    test_parser = subparsers.add_parser('test-send', help='Send a [TEST] copy')
    test_parser.add_argument('campaign_id', type=int)
    test_parser.add_argument('recipient_id', type=int)
    test_parser.add_argument('send_to')

    # send
    send_parser = subparsers.add_parser('send', help='Drip-send approved emails')
    send_parser.add_argument('campaign_id', type=int)
    send_parser.add_argument('--dry-run', action='store_true', help='Preview without sending')
    send_parser.add_argument('--limit', type=int, help='Stop after this many emails')

    # pause / resume
    for name in ('pause', 'resume'):
        p = subparsers.add_parser(name, help=f'{name.capitalize()} a campaign')
        p.add_argument('campaign_id', type=int)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return 0

    # Command dispatch
    commands = {
        'init': cmd_init,
        'sender-add': cmd_sender_add,
        'create': cmd_create,
        'list': cmd_list,
        'status': cmd_status,
        'stats': cmd_stats,
        'generate': cmd_generate,
        'review': cmd_review,
        'preview': cmd_preview,
        'approve': cmd_approve,
        'unapprove': cmd_unapprove,
        'edit': cmd_edit,
        'regenerate': cmd_regenerate,
        'suppress': cmd_suppress,
        'suppress-company': cmd_suppress_company,
        'delete': cmd_delete,
        'test-send': cmd_test_send,
        'send': cmd_send,
        'pause': cmd_pause,
        'resume': cmd_resume,
    }

    cmd_func = commands.get(args.command)
    if not cmd_func:
        parser.print_help()
        return 1

    try:
        cmd_func(args)
    except LeaseUnavailable as exc:
        print(f"\n✗ {exc}. Is another sender running?\n")
        return 2
    except (CampaignError, ValueError) as exc:
        print(f"\n✗ {exc}\n")
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130
    return 0


if __name__ == '__main__':
    sys.exit(main())
