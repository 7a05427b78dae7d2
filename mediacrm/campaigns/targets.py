"""
Target resolution per campaign flavor.

A campaign is built from one kind of CRM record:
- contact: people in the CRM, optionally one per company
- clinic: clinic listings, with a staff-email fallback
- outreach: imported cold-outreach addresses, never addressed by name

Each resolver turns a target filter into a bounded list of Targets, each
carrying its resolved address and the context snapshot the generator sees.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from mediacrm import db
from mediacrm.campaigns.db import Recipient
from mediacrm.campaigns.errors import CampaignError

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')


@dataclass
class Target:
    target_id: int
    email: Optional[str]
    name: Optional[str] = None
    company_id: Optional[int] = None
    context: dict = field(default_factory=dict)


def is_valid_email(email: Optional[str]) -> bool:
    """Check if an email address is valid format."""
    if not email:
        return False
    return bool(EMAIL_PATTERN.match(email.strip()))


def clean_email(email: Optional[str]) -> Optional[str]:
    """Trimmed address, or None when it is blank or malformed."""
    if not is_valid_email(email):
        if email and email.strip():
            logger.debug("Ignoring malformed address %r", email)
        return None
    return email.strip()


def _location(record: dict) -> Optional[str]:
    parts = [p for p in (record.get('city'), record.get('state')) if p]
    return ", ".join(parts) or None


class TargetResolver:
    """Base resolver. Subclasses set flavor/target_type and implement fetch()."""

    flavor = ''
    target_type = ''

    def fetch(self, target_filter: dict) -> list[Target]:
        raise NotImplementedError

    def resolve(self, target_filter: dict) -> list[Target]:
        targets = self.fetch(target_filter or {})
        logger.debug("%s resolver matched %d targets", self.flavor, len(targets))
        return targets

    def build_context(self, recipient: Recipient) -> dict:
        """Generator context for a recipient, from its creation-time snapshot."""
        return {**recipient.context, 'email': recipient.recipient_email}

    def on_sent(self, recipient: Recipient) -> None:
        """Hook run after a recipient's email is delivered to the transport."""


class ContactResolver(TargetResolver):
    flavor = 'contact'
    target_type = 'contact'

    def fetch(self, target_filter: dict) -> list[Target]:
        contacts = db.get_contacts(
            ids=target_filter.get('contact_ids'),
            limit=target_filter.get('limit'),
        )
        companies = db.get_companies(
            [c['company_id'] for c in contacts if c.get('company_id')]
        )

        targets = []
        seen_companies = set()
        for contact in contacts:
            company_id = contact.get('company_id')
            email = clean_email(contact.get('email'))
            # Only an addressable contact takes its company's slot
            if target_filter.get('one_per_company') and company_id and email:
                if company_id in seen_companies:
                    continue
                seen_companies.add(company_id)

            company = companies.get(company_id) or {}
            name = " ".join(
                p for p in (contact.get('first_name'), contact.get('last_name')) if p
            ).strip()
            targets.append(Target(
                target_id=contact['id'],
                email=email,
                name=name or None,
                company_id=company_id,
                context={
                    'name': name or None,
                    'details': {
                        'Title': contact.get('title'),
                        'Seniority': contact.get('seniority'),
                        'Company': company.get('name'),
                        'Company category': company.get('category'),
                        'What the company does': company.get('description'),
                    },
                },
            ))
        return targets

    def on_sent(self, recipient: Recipient) -> None:
        db.mark_contact_contacted(recipient.target_id)


class ClinicResolver(TargetResolver):
    flavor = 'clinic'
    target_type = 'clinic'

    def fetch(self, target_filter: dict) -> list[Target]:
        clinics = db.get_clinics(
            ids=target_filter.get('clinic_ids'),
            states=target_filter.get('states'),
            limit=target_filter.get('limit'),
        )
        fallback = db.get_clinic_contact_emails(
            [c['id'] for c in clinics if not clean_email(c.get('email'))]
        )

        targets = []
        for clinic in clinics:
            targets.append(Target(
                target_id=clinic['id'],
                email=clean_email(clinic.get('email')) or clean_email(fallback.get(clinic['id'])),
                name=clinic.get('name'),
                context={
                    'name': None,
                    'details': {
                        'Clinic': clinic.get('name'),
                        'Location': _location(clinic),
                        'Website': clinic.get('website'),
                    },
                },
            ))
        return targets


class OutreachContactResolver(TargetResolver):
    flavor = 'outreach'
    target_type = 'outreach_contact'

    def fetch(self, target_filter: dict) -> list[Target]:
        records = db.get_outreach_contacts(
            ids=target_filter.get('outreach_contact_ids'),
            business_types=target_filter.get('business_types'),
            states=target_filter.get('states'),
            engagement=target_filter.get('engagement', 'any'),
            limit=target_filter.get('limit'),
        )

        targets = []
        for record in records:
            opens = record.get('total_opens') or 0
            clicks = record.get('total_clicks') or 0
            name = " ".join(
                p for p in (record.get('first_name'), record.get('last_name')) if p
            ).strip()
            targets.append(Target(
                target_id=record['id'],
                email=clean_email(record.get('email')),
                name=name or record.get('practice_name'),
                context={
                    # Cold lists: persona first, never personalise by name
                    'name': None,
                    'details': {
                        'Practice': record.get('practice_name'),
                        'Business type': record.get('business_type') or 'unknown',
                        'Location': _location(record),
                        'Past engagement': (
                            f"opened {opens} previous emails, clicked {clicks}"
                            if opens or clicks else None
                        ),
                    },
                },
            ))
        return targets


RESOLVERS = {
    'contact': ContactResolver,
    'clinic': ClinicResolver,
    'outreach': OutreachContactResolver,
}


def get_resolver(flavor: str) -> TargetResolver:
    try:
        return RESOLVERS[flavor]()
    except KeyError:
        raise CampaignError(
            f"Unknown campaign flavor '{flavor}' (use {', '.join(RESOLVERS)})"
        ) from None
