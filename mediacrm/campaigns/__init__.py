"""
Outbound email campaigns built from CRM records.

This module handles:
- Snapshotting recipients from contacts, clinics or outreach lists
- Batched AI generation of a personal email per recipient
- Operator review (approve, edit, regenerate, suppress)
- Drip sending inside a send window with a daily limit
- One send loop per campaign at a time (lease)
"""

from mediacrm.campaigns.db import init_campaign_db, Campaign, Recipient, SenderProfile
from mediacrm.campaigns.manager import CampaignManager, CreateResult
from mediacrm.campaigns.batcher import GenerationBatcher, BatchResult
from mediacrm.campaigns.scheduler import (
    DripScheduler,
    Sent,
    Skipped,
    RateLimited,
    SendFailed,
    NoneRemaining,
    campaign_lease,
)
from mediacrm.campaigns.sender import SendWindowPolicy, get_transport
from mediacrm.campaigns.summary import print_status
from mediacrm.campaigns.config import CAMPAIGN_CONFIG

__all__ = [
    'init_campaign_db',
    'Campaign',
    'Recipient',
    'SenderProfile',
    'CampaignManager',
    'CreateResult',
    'GenerationBatcher',
    'BatchResult',
    'DripScheduler',
    'Sent',
    'Skipped',
    'RateLimited',
    'SendFailed',
    'NoneRemaining',
    'campaign_lease',
    'SendWindowPolicy',
    'get_transport',
    'print_status',
    'CAMPAIGN_CONFIG',
]
