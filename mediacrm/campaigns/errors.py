"""Exceptions raised by the campaign pipeline."""


class CampaignError(Exception):
    """Base class for campaign pipeline errors."""


class CampaignNotFound(CampaignError):
    def __init__(self, campaign_id):
        super().__init__(f"Campaign {campaign_id} not found")
        self.campaign_id = campaign_id


class RecipientNotFound(CampaignError):
    def __init__(self, recipient_id, campaign_id=None):
        where = f" in campaign {campaign_id}" if campaign_id is not None else ""
        super().__init__(f"Recipient {recipient_id} not found{where}")
        self.recipient_id = recipient_id
        self.campaign_id = campaign_id


class ConfigurationMissing(CampaignError):
    """Credentials for the generator or the mail transport are not set."""


class CampaignNotReady(CampaignError):
    """The campaign can't run this operation in its current state."""


class CampaignClosed(CampaignError):
    """The campaign is paused or completed; drivers should stop looping."""

    def __init__(self, campaign_id, status: str):
        super().__init__(f"Campaign {campaign_id} is {status}")
        self.campaign_id = campaign_id
        self.status = status


class LeaseUnavailable(CampaignError):
    """Another driver currently owns this campaign."""

    def __init__(self, campaign_id, owner: str, expires_at: str):
        super().__init__(
            f"Campaign {campaign_id} is locked by {owner} until {expires_at}"
        )
        self.campaign_id = campaign_id
        self.owner = owner
        self.expires_at = expires_at


class GenerationFailed(CampaignError):
    """The content generator could not produce an email for a recipient."""
