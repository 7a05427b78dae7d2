"""
SQLite store for the CRM records that campaigns are built from.

Tables:
- companies: Organisations contacts work for
- contacts: People in the CRM (general campaigns)
- clinics: Clinic directory listings (clinic campaigns)
- clinic_contacts: Staff at a clinic, used as an email fallback
- outreach_contacts: Imported cold-outreach addresses (outreach campaigns)
"""

import os
import sqlite3
from datetime import datetime
from typing import Optional

import pytz

from mediacrm import config


def _connect() -> sqlite3.Connection:
    os.makedirs(os.path.dirname(os.path.abspath(config.DB_PATH)), exist_ok=True)
    conn = sqlite3.connect(config.DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create the CRM tables if they don't exist."""
    conn = _connect()
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS companies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT,
                category TEXT,
                created_at TEXT
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS contacts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                first_name TEXT,
                last_name TEXT,
                email TEXT,
                title TEXT,
                seniority TEXT,
                company_id INTEGER REFERENCES companies(id),
                outreach_status TEXT DEFAULT 'not_contacted',
                created_at TEXT
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS clinics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT,
                city TEXT,
                state TEXT,
                website TEXT,
                created_at TEXT
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS clinic_contacts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                clinic_id INTEGER NOT NULL REFERENCES clinics(id),
                name TEXT,
                email TEXT,
                created_at TEXT
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS outreach_contacts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL,
                first_name TEXT,
                last_name TEXT,
                practice_name TEXT,
                business_type TEXT,
                city TEXT,
                state TEXT,
                total_opens INTEGER DEFAULT 0,
                total_clicks INTEGER DEFAULT 0,
                created_at TEXT
            )
        """)

        conn.commit()
    finally:
        conn.close()


def _insert(table: str, fields: dict) -> int:
    created_at = fields.get('created_at') or datetime.now(pytz.utc).replace(tzinfo=None).isoformat()
    fields = {**fields, 'created_at': created_at}
    columns = ', '.join(fields)
    placeholders = ', '.join('?' for _ in fields)
    conn = _connect()
    try:
        cursor = conn.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            list(fields.values()),
        )
        conn.commit()
        return cursor.lastrowid
    finally:
        conn.close()


def _in_clause(column: str, values: list) -> tuple[str, list]:
    return f"{column} IN ({', '.join('?' for _ in values)})", list(values)


# ---------------------------------------------------------------------------
# Inserts (imports and fixtures)
# ---------------------------------------------------------------------------

def add_company(name: str, **fields) -> int:
    return _insert('companies', {'name': name, **fields})


def add_contact(email: Optional[str], **fields) -> int:
    return _insert('contacts', {'email': email, **fields})


def add_clinic(name: str, email: Optional[str] = None, **fields) -> int:
    return _insert('clinics', {'name': name, 'email': email, **fields})


def add_clinic_contact(clinic_id: int, email: Optional[str], name: str = "") -> int:
    return _insert('clinic_contacts', {'clinic_id': clinic_id, 'email': email, 'name': name})


def add_outreach_contact(email: str, **fields) -> int:
    return _insert('outreach_contacts', {'email': email, **fields})


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def get_companies(ids: list[int]) -> dict[int, dict]:
    """Companies keyed by id."""
    if not ids:
        return {}
    clause, params = _in_clause('id', sorted(set(ids)))
    conn = _connect()
    try:
        rows = conn.execute(f"SELECT * FROM companies WHERE {clause}", params).fetchall()
        return {row['id']: dict(row) for row in rows}
    finally:
        conn.close()


def get_contacts(ids: Optional[list[int]] = None, limit: Optional[int] = None) -> list[dict]:
    """Contacts in creation order, optionally restricted to the given ids."""
    query = "SELECT * FROM contacts"
    params: list = []
    if ids:
        clause, params = _in_clause('id', ids)
        query += f" WHERE {clause}"
    query += " ORDER BY created_at, id"
    if limit:
        query += " LIMIT ?"
        params.append(limit)

    conn = _connect()
    try:
        return [dict(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def get_clinics(
    ids: Optional[list[int]] = None,
    states: Optional[list[str]] = None,
    limit: Optional[int] = None,
) -> list[dict]:
    conditions = []
    params: list = []
    if ids:
        clause, values = _in_clause('id', ids)
        conditions.append(clause)
        params.extend(values)
    if states:
        clause, values = _in_clause('state', states)
        conditions.append(clause)
        params.extend(values)

    query = "SELECT * FROM clinics"
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY created_at, id"
    if limit:
        query += " LIMIT ?"
        params.append(limit)

    conn = _connect()
    try:
        return [dict(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def get_clinic_contact_emails(clinic_ids: list[int]) -> dict[int, str]:
    """First non-empty staff email per clinic."""
    if not clinic_ids:
        return {}

    clause, params = _in_clause('clinic_id', clinic_ids)
    conn = _connect()
    try:
        rows = conn.execute(
            f"""
            SELECT clinic_id, email FROM clinic_contacts
            WHERE {clause} AND email IS NOT NULL AND email != ''
            ORDER BY id
            """,
            params,
        ).fetchall()
    finally:
        conn.close()

    emails: dict[int, str] = {}
    for row in rows:
        emails.setdefault(row['clinic_id'], row['email'])
    return emails


def get_outreach_contacts(
    ids: Optional[list[int]] = None,
    business_types: Optional[list[str]] = None,
    states: Optional[list[str]] = None,
    engagement: str = 'any',
    exclude_ids: Optional[set] = None,
    limit: Optional[int] = None,
) -> list[dict]:
    """
    Outreach contacts matching a campaign's targeting filters.

    engagement is one of 'any', 'opened' (total_opens > 0) or
    'clicked' (total_clicks > 0).
    """
    conditions = []
    params: list = []
    if ids:
        clause, values = _in_clause('id', ids)
        conditions.append(clause)
        params.extend(values)
    if business_types:
        clause, values = _in_clause('business_type', business_types)
        conditions.append(clause)
        params.extend(values)
    if states:
        clause, values = _in_clause('state', states)
        conditions.append(clause)
        params.extend(values)
    if engagement == 'clicked':
        conditions.append("total_clicks > 0")
    elif engagement == 'opened':
        conditions.append("total_opens > 0")
    if exclude_ids:
        clause, values = _in_clause('id', sorted(exclude_ids))
        conditions.append(f"NOT {clause}")
        params.extend(values)

    query = "SELECT * FROM outreach_contacts"
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY created_at, id"
    if limit:
        query += " LIMIT ?"
        params.append(limit)

    conn = _connect()
    try:
        return [dict(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def mark_contact_contacted(contact_id: int) -> None:
    """Move a contact from not_contacted to contacted (no-op otherwise)."""
    conn = _connect()
    try:
        conn.execute(
            """
            UPDATE contacts SET outreach_status = 'contacted'
            WHERE id = ? AND outreach_status = 'not_contacted'
            """,
            (contact_id,),
        )
        conn.commit()
    finally:
        conn.close()
