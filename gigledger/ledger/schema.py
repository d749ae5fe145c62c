"""Database schema for the gigledger SQLite ledger.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Table and column allowlists used by the compare-and-set updates
- Database initialization (init_db)

Money is stored as decimal text and compared with CAST in CHECK constraints;
timestamps are ISO-8601 UTC text.
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

ALLOWED_TABLES = frozenset(
    {
        "projects",
        "bids",
        "contracts",
        "milestones",
        "progress_updates",
        "payments",
        "notifications",
        "contract_transitions",
        "payout_accounts",
        "schema_version",
    }
)

# Columns a compare-and-set update may write, per table
UPDATABLE_COLUMNS = {
    "contracts": frozenset(
        {
            "stage",
            "title",
            "description",
            "amount",
            "terms_accepted",
            "payment_intent_id",
            "start_date",
            "end_date",
        }
    ),
    "milestones": frozenset({"status", "title", "description", "amount", "due_date"}),
    "payments": frozenset(
        {"status", "payment_intent_id", "transfer_id", "refund_id", "completed_at"}
    ),
}


def validate_table_name(table: str) -> str:
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


SCHEMA = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    budget TEXT NOT NULL DEFAULT '0.00',
    deadline TEXT,
    skills TEXT NOT NULL DEFAULT '[]',
    category TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'OPEN'
        CHECK (status IN ('OPEN', 'IN_PROGRESS', 'COMPLETED', 'CANCELLED')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_projects_client ON projects(client_id);

CREATE TABLE IF NOT EXISTS bids (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    freelancer_id TEXT NOT NULL,
    amount TEXT NOT NULL CHECK (CAST(amount AS REAL) > 0),
    delivery_time_days INTEGER NOT NULL DEFAULT 0,
    cover_letter TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'PENDING'
        CHECK (status IN ('PENDING', 'SHORTLISTED', 'ACCEPTED', 'REJECTED')),
    created_at TEXT NOT NULL,
    UNIQUE (project_id, freelancer_id)
);

CREATE TABLE IF NOT EXISTS contracts (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    client_id TEXT NOT NULL,
    freelancer_id TEXT NOT NULL,
    bid_id TEXT NOT NULL UNIQUE REFERENCES bids(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT NOT NULL,
    amount TEXT NOT NULL CHECK (CAST(amount AS REAL) > 0),
    stage TEXT NOT NULL DEFAULT 'PROPOSAL'
        CHECK (stage IN ('PROPOSAL', 'APPROVAL', 'PAYMENT', 'REVIEW',
                         'COMPLETED', 'CANCELLED', 'DISPUTED')),
    terms_accepted INTEGER NOT NULL DEFAULT 0,
    payment_intent_id TEXT,
    start_date TEXT,
    end_date TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_contracts_client ON contracts(client_id);
CREATE INDEX IF NOT EXISTS idx_contracts_freelancer ON contracts(freelancer_id);

CREATE TABLE IF NOT EXISTS milestones (
    id TEXT PRIMARY KEY,
    contract_id TEXT NOT NULL REFERENCES contracts(id) ON DELETE CASCADE,
    project_id TEXT NOT NULL,
    title TEXT NOT NULL CHECK (length(trim(title)) > 0),
    description TEXT NOT NULL DEFAULT '',
    amount TEXT NOT NULL CHECK (CAST(amount AS REAL) > 0),
    due_date TEXT,
    status TEXT NOT NULL DEFAULT 'PENDING'
        CHECK (status IN ('PENDING', 'IN_PROGRESS', 'COMPLETED',
                          'PAYMENT_REQUESTED', 'PAID', 'CANCELLED')),
    position INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_milestones_contract ON milestones(contract_id);

CREATE TABLE IF NOT EXISTS progress_updates (
    id TEXT PRIMARY KEY,
    milestone_id TEXT NOT NULL REFERENCES milestones(id) ON DELETE CASCADE,
    author_id TEXT NOT NULL,
    description TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_progress_milestone ON progress_updates(milestone_id);

-- One payment per milestone; a failed hold is retried on the same row
CREATE TABLE IF NOT EXISTS payments (
    id TEXT PRIMARY KEY,
    contract_id TEXT NOT NULL REFERENCES contracts(id) ON DELETE CASCADE,
    milestone_id TEXT NOT NULL UNIQUE REFERENCES milestones(id) ON DELETE CASCADE,
    client_id TEXT NOT NULL,
    freelancer_id TEXT NOT NULL,
    amount TEXT NOT NULL CHECK (CAST(amount AS REAL) > 0),
    status TEXT NOT NULL DEFAULT 'PENDING'
        CHECK (status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'REFUNDED')),
    payment_intent_id TEXT UNIQUE,
    transfer_id TEXT,
    refund_id TEXT,
    completed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_payments_contract ON payments(contract_id);

CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    reference_id TEXT,
    reference_type TEXT,
    amount TEXT,
    is_read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, is_read);

CREATE TABLE IF NOT EXISTS contract_transitions (
    id TEXT PRIMARY KEY,
    contract_id TEXT NOT NULL REFERENCES contracts(id) ON DELETE CASCADE,
    from_stage TEXT,
    to_stage TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    reason TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transitions_contract ON contract_transitions(contract_id);

CREATE TABLE IF NOT EXISTS payout_accounts (
    user_id TEXT PRIMARY KEY,
    payout_account_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Initialize the database schema.

    Args:
        conn: Database connection in autocommit mode.
    """
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        logger.info(f"Initialized ledger schema v{SCHEMA_VERSION}")
    elif row[0] != SCHEMA_VERSION:
        logger.warning(f"Ledger schema version {row[0]} differs from expected {SCHEMA_VERSION}")
