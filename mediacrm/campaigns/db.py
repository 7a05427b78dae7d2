"""
SQLite database for campaign tracking.

Tables:
- sender_profiles: Who campaign mail is sent as (name, address, signature)
- campaigns: Campaign configuration, send policy and stored status
- campaign_recipients: One row per (campaign, target) with its own lifecycle
- campaign_leases: Single-driver ownership of a campaign's send loop
"""

import json
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Union

import pytz

from mediacrm.campaigns import config as campaign_config

# Recipient lifecycle
PENDING = 'pending'
GENERATED = 'generated'
APPROVED = 'approved'
SUPPRESSED = 'suppressed'
SENT = 'sent'
DELIVERED = 'delivered'
OPENED = 'opened'
CLICKED = 'clicked'
FAILED = 'failed'
ERROR = 'error'

RECIPIENT_STATUSES = (
    PENDING, GENERATED, APPROVED, SUPPRESSED,
    SENT, DELIVERED, OPENED, CLICKED, FAILED, ERROR,
)
SENT_STATUSES = (SENT, DELIVERED, OPENED, CLICKED)
OPEN_STATUSES = (PENDING, GENERATED, APPROVED)

# Campaign lifecycle
CAMPAIGN_STATUSES = ('draft', 'generating', 'ready', 'sending', 'paused', 'completed')

TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%S.%f'

_RECIPIENT_COLUMNS = {
    'subject', 'body', 'body_html', 'status', 'approved', 'generated_at',
    'sent_at', 'transport_id', 'error', 'recipient_email',
}

_CAMPAIGN_COLUMNS = {
    'name', 'flavor', 'status', 'sender_profile_id', 'reply_to', 'purpose',
    'tone', 'context', 'must_include', 'must_avoid', 'call_to_action',
    'reference_email', 'max_words', 'subject_prompt', 'send_window_start',
    'send_window_end', 'min_delay_seconds', 'max_delay_seconds',
    'daily_send_limit', 'cooldown_days', 'one_per_company', 'track_opens',
    'track_clicks', 'signature_override', 'target_filter_json',
}


def db_timestamp(moment: Optional[datetime] = None) -> str:
    """Naive-UTC ISO timestamp with fixed precision, so strings sort by time."""
    if moment is None:
        moment = datetime.now(pytz.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(pytz.utc).replace(tzinfo=None)
    return moment.strftime(TIMESTAMP_FORMAT)


@dataclass
class SenderProfile:
    id: Optional[int] = None
    name: str = ""
    email: str = ""
    title: Optional[str] = None
    signature: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def from_address(self) -> str:
        return f"{self.name} <{self.email}>" if self.name else self.email


@dataclass
class Campaign:
    """A campaign row. Status here is the stored value, see manager.resolve_status."""
    id: Optional[int] = None
    name: str = ""
    flavor: str = "contact"  # contact, clinic, outreach
    status: str = "draft"
    sender_profile_id: Optional[int] = None
    reply_to: Optional[str] = None

    # Generation brief
    purpose: Optional[str] = None
    tone: Optional[str] = None
    context: Optional[str] = None
    must_include: Optional[str] = None
    must_avoid: Optional[str] = None
    call_to_action: Optional[str] = None
    reference_email: Optional[str] = None
    max_words: int = 100
    subject_prompt: Optional[str] = None

    # Send policy
    send_window_start: int = 9
    send_window_end: int = 17
    min_delay_seconds: int = 120
    max_delay_seconds: int = 300
    daily_send_limit: int = 50
    cooldown_days: Optional[int] = None
    one_per_company: bool = False
    track_opens: bool = False
    track_clicks: bool = False
    signature_override: Optional[str] = None

    target_filter_json: str = "{}"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self):
        self.one_per_company = bool(self.one_per_company)
        self.track_opens = bool(self.track_opens)
        self.track_clicks = bool(self.track_clicks)

    @property
    def target_filter(self) -> dict:
        return json.loads(self.target_filter_json) if self.target_filter_json else {}


@dataclass
class Recipient:
    id: Optional[int] = None
    campaign_id: Optional[int] = None
    target_type: str = ""
    target_id: Optional[int] = None
    company_id: Optional[int] = None
    recipient_email: Optional[str] = None
    recipient_name: Optional[str] = None
    context_json: str = "{}"
    subject: Optional[str] = None
    body: Optional[str] = None
    body_html: Optional[str] = None
    status: str = PENDING
    approved: bool = False
    generated_at: Optional[str] = None
    sent_at: Optional[str] = None
    transport_id: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[str] = None

    def __post_init__(self):
        self.approved = bool(self.approved)

    @property
    def context(self) -> dict:
        """Target details as snapshotted when the campaign was built."""
        return json.loads(self.context_json) if self.context_json else {}

    @property
    def is_sent(self) -> bool:
        return self.status in SENT_STATUSES


def _connect() -> sqlite3.Connection:
    """Connect to the campaign database."""
    db_path = campaign_config.CAMPAIGN_DB_PATH
    os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    return conn


def init_campaign_db() -> None:
    """Initialize all campaign tables."""
    conn = _connect()
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS sender_profiles (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL,
                title TEXT,
                signature TEXT,
                created_at TEXT
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS campaigns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                flavor TEXT NOT NULL DEFAULT 'contact',
                status TEXT NOT NULL DEFAULT 'draft',
                sender_profile_id INTEGER REFERENCES sender_profiles(id),
                reply_to TEXT,
                purpose TEXT,
                tone TEXT,
                context TEXT,
                must_include TEXT,
                must_avoid TEXT,
                call_to_action TEXT,
                reference_email TEXT,
                max_words INTEGER DEFAULT 100,
                subject_prompt TEXT,
                send_window_start INTEGER DEFAULT 9,
                send_window_end INTEGER DEFAULT 17,
                min_delay_seconds INTEGER DEFAULT 120,
                max_delay_seconds INTEGER DEFAULT 300,
                daily_send_limit INTEGER DEFAULT 50,
                cooldown_days INTEGER,
                one_per_company INTEGER DEFAULT 0,
                track_opens INTEGER DEFAULT 0,
                track_clicks INTEGER DEFAULT 0,
                signature_override TEXT,
                target_filter_json TEXT DEFAULT '{}',
                created_at TEXT,
                updated_at TEXT
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS campaign_recipients (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                campaign_id INTEGER NOT NULL REFERENCES campaigns(id),
                target_type TEXT NOT NULL,
                target_id INTEGER NOT NULL,
                company_id INTEGER,
                recipient_email TEXT,
                recipient_name TEXT,
                context_json TEXT DEFAULT '{}',
                subject TEXT,
                body TEXT,
                body_html TEXT,
                status TEXT NOT NULL DEFAULT 'pending',
                approved INTEGER NOT NULL DEFAULT 0,
                generated_at TEXT,
                sent_at TEXT,
                transport_id TEXT,
                error TEXT,
                created_at TEXT,
                UNIQUE(campaign_id, target_type, target_id)
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_recipients_queue
            ON campaign_recipients (campaign_id, status, created_at)
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_recipients_sent
            ON campaign_recipients (target_type, sent_at)
        """)

        # One send loop per campaign
        conn.execute("""
            CREATE TABLE IF NOT EXISTS campaign_leases (
                campaign_id INTEGER PRIMARY KEY,
                owner TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
        """)

        conn.commit()
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Sender profiles
# ---------------------------------------------------------------------------

def create_sender_profile(
    name: str,
    email: str,
    title: Optional[str] = None,
    signature: Optional[str] = None,
) -> int:
    conn = _connect()
    try:
        cursor = conn.execute(
            """
            INSERT INTO sender_profiles (name, email, title, signature, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (name, email, title, signature, db_timestamp()),
        )
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def get_sender_profile(profile_id: Optional[int]) -> Optional[SenderProfile]:
    if profile_id is None:
        return None
    conn = _connect()
    try:
        row = conn.execute(
            "SELECT * FROM sender_profiles WHERE id = ?", (profile_id,)
        ).fetchone()
        return SenderProfile(**dict(row)) if row else None
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Campaign operations
# ---------------------------------------------------------------------------

def create_campaign(fields: dict) -> int:
    """Insert a campaign row. Unknown keys are rejected."""
    unknown = set(fields) - _CAMPAIGN_COLUMNS
    if unknown:
        raise ValueError(f"Unknown campaign fields: {', '.join(sorted(unknown))}")

    now = db_timestamp()
    data = {**fields, 'created_at': now, 'updated_at': now}
    columns = ', '.join(data)
    placeholders = ', '.join('?' for _ in data)

    conn = _connect()
    try:
        cursor = conn.execute(
            f"INSERT INTO campaigns ({columns}) VALUES ({placeholders})",
            list(data.values()),
        )
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def get_campaign(campaign_id: int) -> Optional[Campaign]:
    """Get a single campaign by ID."""
    conn = _connect()
    try:
        row = conn.execute(
            "SELECT * FROM campaigns WHERE id = ?", (campaign_id,)
        ).fetchone()
        if row:
            return Campaign(**dict(row))
        return None
    finally:
        conn.close()


def get_all_campaigns(status: Optional[str] = None, limit: int = 100) -> list[Campaign]:
    """Get campaigns, most recent first."""
    conn = _connect()
    try:
        if status:
            rows = conn.execute(
                "SELECT * FROM campaigns WHERE status = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                (status, limit),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM campaigns ORDER BY created_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [Campaign(**dict(row)) for row in rows]
    finally:
        conn.close()


def update_campaign(campaign_id: int, **fields) -> None:
    """Update campaign fields and bump updated_at."""
    unknown = set(fields) - _CAMPAIGN_COLUMNS
    if unknown:
        raise ValueError(f"Unknown campaign fields: {', '.join(sorted(unknown))}")
    if not fields:
        return

    updates = [f"{key} = ?" for key in fields]
    values = list(fields.values())
    updates.append("updated_at = ?")
    values.append(db_timestamp())
    values.append(campaign_id)

    conn = _connect()
    try:
        conn.execute(
            f"UPDATE campaigns SET {', '.join(updates)} WHERE id = ?",
            values,
        )
        conn.commit()
    finally:
        conn.close()


def update_campaign_status(campaign_id: int, status: str) -> None:
    if status not in CAMPAIGN_STATUSES:
        raise ValueError(f"Unknown campaign status '{status}'")
    update_campaign(campaign_id, status=status)


# ---------------------------------------------------------------------------
# Recipient operations
# ---------------------------------------------------------------------------

def bulk_insert_recipients(rows: list[dict]) -> int:
    """
    Insert recipient rows in a single transaction.

    Either every row in the call is committed or none is; callers chunk
    large lists so one bad chunk doesn't lose the others.
    """
    if not rows:
        return 0

    now = db_timestamp()
    params = [
        (
            row['campaign_id'],
            row['target_type'],
            row['target_id'],
            row.get('company_id'),
            row.get('recipient_email'),
            row.get('recipient_name'),
            json.dumps(row.get('context') or {}),
            row.get('status', PENDING),
            1 if row.get('approved') else 0,
            row.get('created_at') or now,
        )
        for row in rows
    ]

    conn = _connect()
    try:
        with conn:
            conn.executemany(
                """
                INSERT INTO campaign_recipients
                (campaign_id, target_type, target_id, company_id, recipient_email,
                 recipient_name, context_json, status, approved, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                params,
            )
        return len(params)
    finally:
        conn.close()


def get_recipient(recipient_id: int, campaign_id: Optional[int] = None) -> Optional[Recipient]:
    conn = _connect()
    try:
        if campaign_id is None:
            row = conn.execute(
                "SELECT * FROM campaign_recipients WHERE id = ?", (recipient_id,)
            ).fetchone()
        else:
            row = conn.execute(
                "SELECT * FROM campaign_recipients WHERE id = ? AND campaign_id = ?",
                (recipient_id, campaign_id),
            ).fetchone()
        return Recipient(**dict(row)) if row else None
    finally:
        conn.close()


def _status_clause(status: Union[str, Iterable[str]]) -> tuple[str, list]:
    if isinstance(status, str):
        return "status = ?", [status]
    statuses = list(status)
    return f"status IN ({', '.join('?' for _ in statuses)})", statuses


def select_recipients_by_status(
    campaign_id: int,
    status: Union[str, Iterable[str]],
    limit: Optional[int] = None,
    approved: Optional[bool] = None,
) -> list[Recipient]:
    """Recipients in the given status(es), oldest first."""
    clause, params = _status_clause(status)
    query = f"SELECT * FROM campaign_recipients WHERE campaign_id = ? AND {clause}"
    params = [campaign_id, *params]
    if approved is not None:
        query += " AND approved = ?"
        params.append(1 if approved else 0)
    query += " ORDER BY created_at, id"
    if limit:
        query += " LIMIT ?"
        params.append(limit)

    conn = _connect()
    try:
        rows = conn.execute(query, params).fetchall()
        return [Recipient(**dict(row)) for row in rows]
    finally:
        conn.close()


def get_recipients(campaign_id: int, limit: Optional[int] = None) -> list[Recipient]:
    """All recipients of a campaign, oldest first."""
    query = "SELECT * FROM campaign_recipients WHERE campaign_id = ? ORDER BY created_at, id"
    params: list = [campaign_id]
    if limit:
        query += " LIMIT ?"
        params.append(limit)
    conn = _connect()
    try:
        return [Recipient(**dict(row)) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def update_recipient(recipient_id: int, **fields) -> None:
    """Update recipient fields by id."""
    unknown = set(fields) - _RECIPIENT_COLUMNS
    if unknown:
        raise ValueError(f"Unknown recipient fields: {', '.join(sorted(unknown))}")
    if not fields:
        return

    if 'approved' in fields:
        fields['approved'] = 1 if fields['approved'] else 0

    updates = [f"{key} = ?" for key in fields]
    values = list(fields.values())
    values.append(recipient_id)

    conn = _connect()
    try:
        conn.execute(
            f"UPDATE campaign_recipients SET {', '.join(updates)} WHERE id = ?",
            values,
        )
        conn.commit()
    finally:
        conn.close()


def count_by_status(
    campaign_id: int,
    status: Union[str, Iterable[str]],
    approved: Optional[bool] = None,
) -> int:
    clause, params = _status_clause(status)
    query = f"SELECT COUNT(*) AS count FROM campaign_recipients WHERE campaign_id = ? AND {clause}"
    params = [campaign_id, *params]
    if approved is not None:
        query += " AND approved = ?"
        params.append(1 if approved else 0)

    conn = _connect()
    try:
        row = conn.execute(query, params).fetchone()
        return row['count'] if row else 0
    finally:
        conn.close()


def count_recipients_by_status(campaign_id: int) -> dict[str, int]:
    """Map of status -> recipient count for one campaign."""
    conn = _connect()
    try:
        rows = conn.execute(
            """
            SELECT status, COUNT(*) AS count FROM campaign_recipients
            WHERE campaign_id = ?
            GROUP BY status
            """,
            (campaign_id,),
        ).fetchall()
        return {row['status']: row['count'] for row in rows}
    finally:
        conn.close()


def count_sent_since(campaign_id: int, since: datetime) -> int:
    """Recipients of this campaign whose sent_at is at or after `since`."""
    conn = _connect()
    try:
        row = conn.execute(
            """
            SELECT COUNT(*) AS count FROM campaign_recipients
            WHERE campaign_id = ? AND sent_at IS NOT NULL AND sent_at >= ?
            """,
            (campaign_id, db_timestamp(since)),
        ).fetchone()
        return row['count'] if row else 0
    finally:
        conn.close()


def get_recently_sent_target_ids(target_type: str, since: datetime) -> set:
    """Targets of this type that received any campaign email since `since`."""
    conn = _connect()
    try:
        rows = conn.execute(
            """
            SELECT DISTINCT target_id FROM campaign_recipients
            WHERE target_type = ? AND sent_at IS NOT NULL AND sent_at >= ?
            """,
            (target_type, db_timestamp(since)),
        ).fetchall()
        return {row['target_id'] for row in rows}
    finally:
        conn.close()


def suppress_company_recipients(company_id: int, reason: str) -> int:
    """Suppress every unsent recipient at a company, across all campaigns."""
    conn = _connect()
    try:
        cursor = conn.execute(
            """
            UPDATE campaign_recipients
            SET status = ?, approved = 0, error = ?
            WHERE company_id = ? AND status IN (?, ?)
            """,
            (SUPPRESSED, reason, company_id, GENERATED, APPROVED),
        )
        conn.commit()
        return cursor.rowcount
    finally:
        conn.close()


def delete_recipient(recipient_id: int, campaign_id: int) -> bool:
    """Hard-delete a recipient that hasn't been sent. Returns True if removed."""
    placeholders = ', '.join('?' for _ in SENT_STATUSES)
    conn = _connect()
    try:
        cursor = conn.execute(
            f"""
            DELETE FROM campaign_recipients
            WHERE id = ? AND campaign_id = ? AND sent_at IS NULL
            AND status NOT IN ({placeholders})
            """,
            (recipient_id, campaign_id, *SENT_STATUSES),
        )
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Driver leases
# ---------------------------------------------------------------------------

def acquire_lease(campaign_id: int, owner: str, expires_at: datetime, now: datetime) -> Optional[dict]:
    """
    Take (or renew) the send-loop lease for a campaign.

    Succeeds when no lease exists, the existing lease has expired, or the
    caller already owns it. Returns None on success, otherwise the current
    holder as {'owner', 'expires_at'}.
    """
    conn = _connect()
    try:
        conn.execute(
            """
            INSERT INTO campaign_leases (campaign_id, owner, expires_at)
            VALUES (?, ?, ?)
            ON CONFLICT(campaign_id) DO UPDATE
            SET owner = excluded.owner, expires_at = excluded.expires_at
            WHERE campaign_leases.expires_at < ? OR campaign_leases.owner = excluded.owner
            """,
            (campaign_id, owner, db_timestamp(expires_at), db_timestamp(now)),
        )
        conn.commit()
        row = conn.execute(
            "SELECT owner, expires_at FROM campaign_leases WHERE campaign_id = ?",
            (campaign_id,),
        ).fetchone()
    finally:
        conn.close()

    if row and row['owner'] == owner:
        return None
    return dict(row) if row else {'owner': 'unknown', 'expires_at': ''}


def release_lease(campaign_id: int, owner: str) -> None:
    conn = _connect()
    try:
        conn.execute(
            "DELETE FROM campaign_leases WHERE campaign_id = ? AND owner = ?",
            (campaign_id, owner),
        )
        conn.commit()
    finally:
        conn.close()
