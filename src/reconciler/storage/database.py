"""Database operations using psycopg (PostgreSQL)."""

import logging
import threading
from collections import Counter
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, Optional

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..models import (
    BlocklistEntry,
    InboxAccount,
    InboxEmbedding,
    InboxItem,
    InboxStatus,
    Transaction,
)

logger = logging.getLogger(__name__)

# Candidate date window around the document date
CANDIDATE_DAYS_BEFORE = 100
CANDIDATE_DAYS_AFTER = 130

INBOX_COLUMNS = """
    id, team_id, reference_id, file_path, file_name, content_type, size,
    display_name, amount, currency, base_amount, base_currency, date,
    invoice_number, tax_amount, tax_rate,
    tax_type, document_type, website, sender_email, tags, summary,
    matched_transaction_id, group_id, status, source_metadata, inbox_account_id,
    created_at, updated_at
"""

TRANSACTION_COLUMNS = """
    id, team_id, name, amount, currency, base_amount, base_currency, date,
    status, recurring, matched_inbox_id, created_at
"""

ACCOUNT_COLUMNS = """
    id, team_id, provider, email, access_token, refresh_token, expiry_date,
    status, last_accessed, schedule_id, error_message, created_at
"""

_UPDATABLE_INBOX_FIELDS = frozenset({
    "display_name", "amount", "currency", "base_amount", "base_currency", "date",
    "invoice_number", "tax_amount", "tax_rate", "tax_type", "document_type", "website", "sender_email", "content_type",
    "size", "file_name", "status", "tags", "summary", "group_id", "source_metadata",
})

_UPDATABLE_ACCOUNT_FIELDS = frozenset({
    "access_token", "refresh_token", "expiry_date", "status", "last_accessed",
    "schedule_id", "error_message",
})


def _prefixed(columns: str, alias: str) -> str:
    return ", ".join(f"{alias}.{c.strip()}" for c in columns.split(",") if c.strip())


def _adapt(value: Any) -> Any:
    if isinstance(value, dict):
        return Jsonb(value)
    return value


class DatabaseClient:
    """PostgreSQL database client using psycopg.

    Each thread gets its own connection so concurrent jobs in one worker
    never share a transaction.
    """

    def __init__(self, database_url: str):
        """Initialize database client.

        Args:
            database_url: PostgreSQL connection string
        """
        self.database_url = database_url
        self._local = threading.local()

    def connect(self) -> psycopg.Connection:
        """Establish (or reuse) this thread's database connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None or conn.closed:
            conn = psycopg.connect(
                self.database_url,
                row_factory=dict_row,
                autocommit=False,  # We'll manage transactions explicitly
            )
            self._local.conn = conn
            logger.info("Database connection established")
        return conn

    def close(self):
        """Close this thread's database connection."""
        conn = getattr(self._local, "conn", None)
        if conn is not None and not conn.closed:
            conn.close()
            logger.info("Database connection closed")

    @contextmanager
    def transaction(self):
        """Context manager for database transactions.

        Usage:
            with db.transaction() as conn:
                conn.execute("INSERT INTO ...")
                # Automatically commits on success, rolls back on exception

        Yields:
            psycopg.Connection: Database connection object
        """
        conn = self.connect()
        try:
            yield conn
            conn.commit()
            logger.debug("Transaction committed")
        except Exception as e:
            conn.rollback()
            logger.error(f"Transaction rolled back: {e}")
            raise

    # ========================================================================
    # Inbox Operations
    # ========================================================================

    def get_inbox_by_id(self, inbox_id: str, team_id: Optional[str] = None) -> Optional[InboxItem]:
        """Fetch an inbox item by ID, optionally scoped to a team.

        Args:
            inbox_id: Inbox item ID
            team_id: Restrict lookup to this team

        Returns:
            Optional[InboxItem]: Item if found, None otherwise
        """
        with self.transaction() as conn:
            with conn.cursor() as cur:
                if team_id is None:
                    cur.execute(f"SELECT {INBOX_COLUMNS} FROM inbox WHERE id = %s", (inbox_id,))
                else:
                    cur.execute(
                        f"SELECT {INBOX_COLUMNS} FROM inbox WHERE id = %s AND team_id = %s",
                        (inbox_id, team_id),
                    )
                row = cur.fetchone()
                return InboxItem(**row) if row else None

    def get_inbox_by_file_path(self, team_id: str, file_path: list[str]) -> Optional[InboxItem]:
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    SELECT {INBOX_COLUMNS} FROM inbox
                    WHERE team_id = %s AND file_path = %s
                    ORDER BY created_at
                    LIMIT 1
                """, (team_id, file_path))
                row = cur.fetchone()
                return InboxItem(**row) if row else None

    def get_inbox_by_reference_id(self, team_id: str, reference_id: str) -> Optional[InboxItem]:
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {INBOX_COLUMNS} FROM inbox WHERE team_id = %s AND reference_id = %s",
                    (team_id, reference_id),
                )
                row = cur.fetchone()
                return InboxItem(**row) if row else None

    def create_inbox(
        self,
        team_id: str,
        reference_id: str,
        file_path: list[str],
        file_name: str,
        content_type: str,
        size: int,
        status: str = InboxStatus.NEW,
        display_name: Optional[str] = None,
        website: Optional[str] = None,
        sender_email: Optional[str] = None,
        inbox_account_id: Optional[str] = None,
        source_metadata: Optional[dict] = None,
    ) -> tuple[InboxItem, bool]:
        """Insert an inbox item keyed by (team_id, reference_id).

        Returns:
            tuple[InboxItem, bool]: The row and whether this call created it.
            On conflict the pre-existing row is returned with False.
        """
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    INSERT INTO inbox (
                        team_id, reference_id, file_path, file_name, content_type, size,
                        status, display_name, website, sender_email, inbox_account_id,
                        source_metadata, created_at, updated_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, now(), now())
                    ON CONFLICT (team_id, reference_id) DO NOTHING
                    RETURNING {INBOX_COLUMNS}
                """, (
                    team_id, reference_id, file_path, file_name, content_type, size,
                    status, display_name, website, sender_email, inbox_account_id,
                    Jsonb(source_metadata) if source_metadata is not None else None,
                ))
                row = cur.fetchone()
                if row:
                    logger.info(f"Created inbox item {row['id']} ({reference_id}) for team {team_id}")
                    return InboxItem(**row), True

                cur.execute(
                    f"SELECT {INBOX_COLUMNS} FROM inbox WHERE team_id = %s AND reference_id = %s",
                    (team_id, reference_id),
                )
                return InboxItem(**cur.fetchone()), False

    def update_inbox(
        self,
        inbox_id: str,
        expected_statuses: Optional[Iterable[str]] = None,
        **fields,
    ) -> Optional[InboxItem]:
        """Update columns of an inbox item.

        Args:
            inbox_id: Inbox item ID
            expected_statuses: Only update while the row is in one of these statuses
            **fields: Column values to set

        Returns:
            Optional[InboxItem]: Updated row, or None when the status guard did not match
        """
        unknown = set(fields) - _UPDATABLE_INBOX_FIELDS
        if unknown:
            raise ValueError(f"Cannot update inbox fields: {', '.join(sorted(unknown))}")

        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in fields
        ]
        assignments.append(sql.SQL("updated_at = now()"))
        params: list[Any] = [_adapt(value) for value in fields.values()]

        query = sql.SQL("UPDATE inbox SET {} WHERE id = %s").format(sql.SQL(", ").join(assignments))
        params.append(inbox_id)
        if expected_statuses is not None:
            query = query + sql.SQL(" AND status = ANY(%s)")
            params.append(list(expected_statuses))
        query = query + sql.SQL(f" RETURNING {INBOX_COLUMNS}")

        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
                return InboxItem(**row) if row else None

    def update_inbox_status(
        self,
        inbox_id: str,
        status: str,
        expected: Optional[Iterable[str]] = None,
    ) -> bool:
        """Set the status, optionally only from a set of expected statuses.

        Returns:
            bool: True if the row was updated
        """
        updated = self.update_inbox(inbox_id, expected_statuses=expected, status=status)
        if updated is None:
            logger.debug(f"Status of inbox {inbox_id} not changed to {status} (guard: {expected})")
        return updated is not None

    def get_existing_reference_ids(self, team_id: str, reference_ids: list[str]) -> set[str]:
        if not reference_ids:
            return set()
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT reference_id FROM inbox
                    WHERE team_id = %s AND reference_id = ANY(%s)
                """, (team_id, reference_ids))
                return {row["reference_id"] for row in cur.fetchall()}

    def group_related_inbox_items(self, inbox_id: str, team_id: str) -> int:
        """Give items sharing an invoice number a common group id.

        Returns:
            int: Number of rows placed in the group (0 when nothing related)
        """
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    WITH anchor AS (
                        SELECT invoice_number FROM inbox
                        WHERE id = %s AND team_id = %s AND invoice_number IS NOT NULL
                    ), related AS (
                        SELECT i.id, i.group_id FROM inbox i, anchor a
                        WHERE i.team_id = %s
                          AND i.invoice_number = a.invoice_number
                          AND i.status <> %s
                    )
                    UPDATE inbox
                    SET group_id = (SELECT COALESCE(MIN(group_id), MIN(id)) FROM related),
                        updated_at = now()
                    WHERE id IN (SELECT id FROM related)
                      AND (SELECT COUNT(*) FROM related) > 1
                """, (inbox_id, team_id, team_id, InboxStatus.OTHER))
                grouped = cur.rowcount
        if grouped:
            logger.info(f"Grouped {grouped} related inbox items with {inbox_id}")
        return grouped

    def get_new_inbox_items(self, team_id: str, inbox_account_id: str, limit: int) -> list[InboxItem]:
        """Items of an account still waiting for their first extraction, oldest first."""
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    SELECT {INBOX_COLUMNS}
                    FROM inbox
                    WHERE team_id = %s
                      AND inbox_account_id = %s
                      AND status = %s
                    ORDER BY created_at
                    LIMIT %s
                """, (team_id, inbox_account_id, InboxStatus.NEW, limit))
                return [InboxItem(**row) for row in cur.fetchall()]

    def get_pending_inbox_for_matching(
        self,
        team_id: str,
        limit: int,
        exclude_ids: Iterable[str] = (),
    ) -> list[InboxItem]:
        """Pending, unmatched items that already have an embedding."""
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    SELECT {_prefixed(INBOX_COLUMNS, 'i')}
                    FROM inbox i
                    JOIN inbox_embeddings ie ON ie.inbox_id = i.id
                    WHERE i.team_id = %s
                      AND i.status = %s
                      AND i.matched_transaction_id IS NULL
                      AND NOT (i.id = ANY(%s))
                    ORDER BY i.created_at DESC
                    LIMIT %s
                """, (team_id, InboxStatus.PENDING, list(exclude_ids), limit))
                return [InboxItem(**row) for row in cur.fetchall()]

    def mark_stale_pending_as_no_match(self, cutoff: datetime) -> dict[str, int]:
        """Move unmatched pending items created strictly before cutoff to no_match.

        Returns:
            dict[str, int]: Updated row count per team
        """
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE inbox
                    SET status = %s, updated_at = now()
                    WHERE status = %s
                      AND matched_transaction_id IS NULL
                      AND created_at < %s
                    RETURNING team_id
                """, (InboxStatus.NO_MATCH, InboxStatus.PENDING, cutoff))
                return dict(Counter(row["team_id"] for row in cur.fetchall()))

    def get_team_name(self, team_id: str) -> Optional[str]:
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT name FROM teams WHERE id = %s", (team_id,))
                row = cur.fetchone()
                return row["name"] if row else None

    def get_team_base_currency(self, team_id: str) -> Optional[str]:
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT base_currency FROM teams WHERE id = %s", (team_id,))
                row = cur.fetchone()
                return row["base_currency"] if row else None

    # ========================================================================
    # Embedding Operations
    # ========================================================================

    def get_inbox_embedding(self, inbox_id: str) -> Optional[InboxEmbedding]:
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT inbox_id, team_id, embedding, source_text, model
                    FROM inbox_embeddings WHERE inbox_id = %s
                """, (inbox_id,))
                row = cur.fetchone()
                return InboxEmbedding(**row) if row else None

    def create_inbox_embedding(self, embedding: InboxEmbedding) -> bool:
        """Insert an embedding; a concurrent duplicate is silently ignored.

        Returns:
            bool: True if this call inserted the row
        """
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO inbox_embeddings
                        (inbox_id, team_id, embedding, source_text, model, created_at)
                    VALUES (%s, %s, %s, %s, %s, now())
                    ON CONFLICT (inbox_id) DO NOTHING
                """, (
                    embedding.inbox_id, embedding.team_id, embedding.embedding,
                    embedding.source_text, embedding.model,
                ))
                return cur.rowcount > 0

    # ========================================================================
    # Transaction Operations
    # ========================================================================

    def get_transaction(self, transaction_id: str, team_id: str) -> Optional[Transaction]:
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {TRANSACTION_COLUMNS} FROM transactions WHERE id = %s AND team_id = %s",
                    (transaction_id, team_id),
                )
                row = cur.fetchone()
                return Transaction(**row) if row else None

    def get_transaction_embedding(self, transaction_id: str) -> Optional[list[float]]:
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT embedding FROM transaction_embeddings WHERE transaction_id = %s",
                    (transaction_id,),
                )
                row = cur.fetchone()
                return row["embedding"] if row else None

    def find_transaction_candidates(
        self,
        team_id: str,
        inbox: InboxItem,
        limit: int = 20,
    ) -> list[tuple[Transaction, Optional[list[float]]]]:
        """Unmatched transactions near the inbox item's date, closest amounts first.

        Returns:
            list[tuple[Transaction, Optional[list[float]]]]: Candidates with their embeddings
        """
        anchor = inbox.date or (inbox.created_at or datetime.now(timezone.utc)).date()
        amount = abs(inbox.amount) if inbox.amount is not None else None
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    SELECT {_prefixed(TRANSACTION_COLUMNS, 't')}, te.embedding
                    FROM transactions t
                    LEFT JOIN transaction_embeddings te ON te.transaction_id = t.id
                    WHERE t.team_id = %s
                      AND t.matched_inbox_id IS NULL
                      AND t.status NOT IN ('excluded', 'archived')
                      AND t.date BETWEEN %s AND %s
                    ORDER BY
                      CASE WHEN %s::numeric IS NULL THEN 0
                           ELSE ABS(ABS(t.amount) - %s::numeric) END,
                      CASE WHEN t.currency = %s THEN 0 ELSE 1 END,
                      ABS(t.date - %s::date)
                    LIMIT %s
                """, (
                    team_id,
                    anchor - timedelta(days=CANDIDATE_DAYS_BEFORE),
                    anchor + timedelta(days=CANDIDATE_DAYS_AFTER),
                    amount, amount, inbox.currency, anchor, limit,
                ))
                rows = cur.fetchall()
        candidates = []
        for row in rows:
            embedding = row.pop("embedding")
            candidates.append((Transaction(**row), embedding))
        return candidates

    def find_inbox_candidates(
        self,
        team_id: str,
        transaction: Transaction,
        limit: int = 20,
    ) -> list[tuple[InboxItem, Optional[list[float]]]]:
        """Pending, unmatched, embedded inbox items near the transaction date."""
        anchor: date = transaction.date
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    SELECT {_prefixed(INBOX_COLUMNS, 'i')}, ie.embedding
                    FROM inbox i
                    JOIN inbox_embeddings ie ON ie.inbox_id = i.id
                    WHERE i.team_id = %s
                      AND i.status = %s
                      AND i.matched_transaction_id IS NULL
                      AND COALESCE(i.date, i.created_at::date) BETWEEN %s AND %s
                    ORDER BY
                      CASE WHEN i.amount IS NULL THEN 1 ELSE 0 END,
                      ABS(ABS(COALESCE(i.amount, 0)) - ABS(%s::numeric)),
                      CASE WHEN i.currency = %s THEN 0 ELSE 1 END,
                      ABS(COALESCE(i.date, i.created_at::date) - %s::date)
                    LIMIT %s
                """, (
                    team_id, InboxStatus.PENDING,
                    anchor - timedelta(days=CANDIDATE_DAYS_AFTER),
                    anchor + timedelta(days=CANDIDATE_DAYS_BEFORE),
                    transaction.amount, transaction.currency, anchor, limit,
                ))
                rows = cur.fetchall()
        candidates = []
        for row in rows:
            embedding = row.pop("embedding")
            candidates.append((InboxItem(**row), embedding))
        return candidates

    def link_inbox_to_transaction(self, inbox_id: str, transaction_id: str, team_id: str) -> bool:
        """Record a match on both rows, only if neither side is matched yet.

        Returns:
            bool: True if the link was written, False if another job got there first
        """
        conn = self.connect()
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE transactions SET matched_inbox_id = %s
                    WHERE id = %s AND team_id = %s AND matched_inbox_id IS NULL
                """, (inbox_id, transaction_id, team_id))
                if cur.rowcount == 0:
                    conn.rollback()
                    return False

                cur.execute("""
                    UPDATE inbox SET matched_transaction_id = %s, updated_at = now()
                    WHERE id = %s AND team_id = %s
                      AND matched_transaction_id IS NULL
                      AND status = %s
                """, (transaction_id, inbox_id, team_id, InboxStatus.PENDING))
                if cur.rowcount == 0:
                    conn.rollback()
                    return False
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        logger.info(f"Linked inbox {inbox_id} to transaction {transaction_id}")
        return True

    # ========================================================================
    # Inbox Account Operations
    # ========================================================================

    def get_inbox_account(self, account_id: str) -> Optional[InboxAccount]:
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {ACCOUNT_COLUMNS} FROM inbox_accounts WHERE id = %s", (account_id,))
                row = cur.fetchone()
                return InboxAccount(**row) if row else None

    def get_connected_inbox_accounts(self) -> list[InboxAccount]:
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(f"""
                    SELECT {ACCOUNT_COLUMNS} FROM inbox_accounts
                    WHERE status = 'connected'
                    ORDER BY id
                """)
                return [InboxAccount(**row) for row in cur.fetchall()]

    def update_inbox_account(self, account_id: str, **fields) -> None:
        unknown = set(fields) - _UPDATABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"Cannot update inbox account fields: {', '.join(sorted(unknown))}")
        if not fields:
            return

        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in fields
        )
        with self.transaction() as conn:
            conn.execute(
                sql.SQL("UPDATE inbox_accounts SET {} WHERE id = %s").format(assignments),
                [*fields.values(), account_id],
            )
        logger.debug(f"Updated inbox account {account_id}: {sorted(fields)}")

    # ========================================================================
    # Blocklist Operations
    # ========================================================================

    def get_inbox_blocklist(self, team_id: str) -> list[BlocklistEntry]:
        with self.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT team_id, type, value FROM inbox_blocklist WHERE team_id = %s",
                    (team_id,),
                )
                return [BlocklistEntry(**row) for row in cur.fetchall()]
