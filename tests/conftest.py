"""Shared fixtures: in-memory stand-ins for the database, object storage and model gateways."""

import datetime as dt
import threading
import uuid
from collections import Counter
from decimal import Decimal
from typing import Iterable, Optional

import pytest

from reconciler.config import Config
from reconciler.jobs import JobContext, MemoryBackend, QueueManager
from reconciler.jobs.base import Job
from reconciler.matching.notifications import Notification, NotificationDispatcher
from reconciler.models import (
    BlocklistEntry,
    DocumentClassification,
    EmbeddingResult,
    ExtractionResult,
    InboxAccount,
    InboxEmbedding,
    InboxItem,
    InboxStatus,
    Transaction,
)

TEAM = "team-1"
NOW = dt.datetime(2025, 6, 15, 12, 0, tzinfo=dt.timezone.utc)


class FakeDatabase:
    """Dict-backed DatabaseClient with the same conditional-update semantics."""

    def __init__(self):
        self.teams: dict[str, dict] = {TEAM: {"name": "Acme Ltd", "base_currency": "EUR"}}
        self.inbox: dict[str, InboxItem] = {}
        self.embeddings: dict[str, InboxEmbedding] = {}
        self.transactions: dict[str, Transaction] = {}
        self.transaction_embeddings: dict[str, list[float]] = {}
        self.accounts: dict[str, InboxAccount] = {}
        self.blocklist: list[BlocklistEntry] = []
        self.account_updates: list[tuple[str, dict]] = []
        self._lock = threading.RLock()

    # Test helpers

    def add_inbox(self, **fields) -> InboxItem:
        fields.setdefault("id", f"inbox-{uuid.uuid4().hex[:8]}")
        fields.setdefault("team_id", TEAM)
        fields.setdefault("reference_id", fields["id"])
        fields.setdefault("file_path", [fields["team_id"], "inbox", f"{fields['id']}.pdf"])
        fields.setdefault("created_at", NOW)
        item = InboxItem(**fields)
        self.inbox[item.id] = item
        return item

    def add_embedding(self, inbox_id: str, vector: list[float]) -> None:
        item = self.inbox[inbox_id]
        self.embeddings[inbox_id] = InboxEmbedding(
            inbox_id=inbox_id, team_id=item.team_id, embedding=vector, source_text="text", model="test",
        )

    def add_transaction(self, embedding: Optional[list[float]] = None, **fields) -> Transaction:
        fields.setdefault("id", f"tx-{uuid.uuid4().hex[:8]}")
        fields.setdefault("team_id", TEAM)
        fields.setdefault("name", "Card payment")
        transaction = Transaction(**fields)
        self.transactions[transaction.id] = transaction
        if embedding is not None:
            self.transaction_embeddings[transaction.id] = embedding
        return transaction

    def add_account(self, **fields) -> InboxAccount:
        fields.setdefault("id", f"acct-{uuid.uuid4().hex[:8]}")
        fields.setdefault("team_id", TEAM)
        fields.setdefault("provider", "gmail")
        fields.setdefault("email", "billing@acme.test")
        account = InboxAccount(**fields)
        self.accounts[account.id] = account
        return account

    # Inbox

    def get_inbox_by_id(self, inbox_id: str, team_id: Optional[str] = None) -> Optional[InboxItem]:
        item = self.inbox.get(inbox_id)
        if item is None or (team_id is not None and item.team_id != team_id):
            return None
        return item

    def get_inbox_by_file_path(self, team_id: str, file_path: list[str]) -> Optional[InboxItem]:
        for item in self.inbox.values():
            if item.team_id == team_id and item.file_path == list(file_path):
                return item
        return None

    def get_inbox_by_reference_id(self, team_id: str, reference_id: str) -> Optional[InboxItem]:
        for item in self.inbox.values():
            if item.team_id == team_id and item.reference_id == reference_id:
                return item
        return None

    def create_inbox(self, team_id: str, reference_id: str, file_path: list[str], file_name: str,
                     content_type: str, size: int, status: str = InboxStatus.NEW, **fields):
        with self._lock:
            existing = self.get_inbox_by_reference_id(team_id, reference_id)
            if existing is not None:
                return existing, False
            item = self.add_inbox(
                team_id=team_id, reference_id=reference_id, file_path=list(file_path),
                file_name=file_name, content_type=content_type, size=size, status=status,
                **{k: v for k, v in fields.items() if v is not None},
            )
            return item, True

    def update_inbox(self, inbox_id: str, expected_statuses: Optional[Iterable[str]] = None, **fields):
        with self._lock:
            item = self.inbox.get(inbox_id)
            if item is None:
                return None
            if expected_statuses is not None and item.status not in set(expected_statuses):
                return None
            updated = item.model_copy(update=fields)
            self.inbox[inbox_id] = updated
            return updated

    def update_inbox_status(self, inbox_id: str, status: str, expected: Optional[Iterable[str]] = None) -> bool:
        return self.update_inbox(inbox_id, expected_statuses=expected, status=status) is not None

    def get_existing_reference_ids(self, team_id: str, reference_ids: list[str]) -> set[str]:
        wanted = set(reference_ids)
        return {
            item.reference_id for item in self.inbox.values()
            if item.team_id == team_id and item.reference_id in wanted
        }

    def get_new_inbox_items(self, team_id: str, inbox_account_id: str, limit: int) -> list[InboxItem]:
        items = [
            item for item in self.inbox.values()
            if item.team_id == team_id and item.inbox_account_id == inbox_account_id
            and item.status == InboxStatus.NEW
        ]
        return sorted(items, key=lambda item: item.created_at)[:limit]

    def group_related_inbox_items(self, inbox_id: str, team_id: str) -> int:
        anchor = self.get_inbox_by_id(inbox_id, team_id)
        if anchor is None or not anchor.invoice_number:
            return 0
        related = [
            item for item in self.inbox.values()
            if item.team_id == team_id and item.invoice_number == anchor.invoice_number
            and item.status != InboxStatus.OTHER
        ]
        if len(related) < 2:
            return 0
        group_id = min(item.group_id or item.id for item in related)
        for item in related:
            self.inbox[item.id] = item.model_copy(update={"group_id": group_id})
        return len(related)

    def get_pending_inbox_for_matching(self, team_id: str, limit: int, exclude_ids: Iterable[str] = ()):
        excluded = set(exclude_ids)
        items = [
            item for item in self.inbox.values()
            if item.team_id == team_id and item.status == InboxStatus.PENDING
            and item.matched_transaction_id is None and item.id in self.embeddings
            and item.id not in excluded
        ]
        return items[:limit]

    def mark_stale_pending_as_no_match(self, cutoff: dt.datetime) -> dict[str, int]:
        moved = Counter()
        with self._lock:
            for item in list(self.inbox.values()):
                if (
                    item.status == InboxStatus.PENDING and item.matched_transaction_id is None
                    and item.created_at < cutoff
                ):
                    self.inbox[item.id] = item.model_copy(update={"status": InboxStatus.NO_MATCH})
                    moved[item.team_id] += 1
        return dict(moved)

    def get_team_name(self, team_id: str) -> Optional[str]:
        return self.teams.get(team_id, {}).get("name")

    def get_team_base_currency(self, team_id: str) -> Optional[str]:
        return self.teams.get(team_id, {}).get("base_currency")

    # Embeddings

    def get_inbox_embedding(self, inbox_id: str) -> Optional[InboxEmbedding]:
        return self.embeddings.get(inbox_id)

    def create_inbox_embedding(self, embedding: InboxEmbedding) -> bool:
        with self._lock:
            if embedding.inbox_id in self.embeddings:
                return False
            self.embeddings[embedding.inbox_id] = embedding
            return True

    # Transactions

    def get_transaction(self, transaction_id: str, team_id: str) -> Optional[Transaction]:
        transaction = self.transactions.get(transaction_id)
        if transaction is None or transaction.team_id != team_id:
            return None
        return transaction

    def get_transaction_embedding(self, transaction_id: str) -> Optional[list[float]]:
        return self.transaction_embeddings.get(transaction_id)

    def find_transaction_candidates(self, team_id: str, inbox: InboxItem, limit: int = 20):
        amount = abs(inbox.amount) if inbox.amount is not None else Decimal(0)
        candidates = [
            t for t in self.transactions.values()
            if t.team_id == team_id and t.matched_inbox_id is None
        ]
        candidates.sort(key=lambda t: (abs(abs(t.amount) - amount), t.currency != inbox.currency))
        return [(t, self.transaction_embeddings.get(t.id)) for t in candidates[:limit]]

    def find_inbox_candidates(self, team_id: str, transaction: Transaction, limit: int = 20):
        candidates = [
            item for item in self.inbox.values()
            if item.team_id == team_id and item.status == InboxStatus.PENDING
            and item.matched_transaction_id is None and item.id in self.embeddings
        ]
        candidates.sort(key=lambda i: (
            i.amount is None,
            abs(abs(i.amount or 0) - abs(transaction.amount)),
            i.currency != transaction.currency,
        ))
        return [(item, self.embeddings[item.id].embedding) for item in candidates[:limit]]

    def link_inbox_to_transaction(self, inbox_id: str, transaction_id: str, team_id: str) -> bool:
        with self._lock:
            transaction = self.get_transaction(transaction_id, team_id)
            item = self.get_inbox_by_id(inbox_id, team_id)
            if transaction is None or transaction.matched_inbox_id is not None:
                return False
            if item is None or item.matched_transaction_id is not None or item.status != InboxStatus.PENDING:
                return False
            self.transactions[transaction_id] = transaction.model_copy(update={"matched_inbox_id": inbox_id})
            self.inbox[inbox_id] = item.model_copy(update={"matched_transaction_id": transaction_id})
            return True

    # Accounts and blocklist

    def get_inbox_account(self, account_id: str) -> Optional[InboxAccount]:
        return self.accounts.get(account_id)

    def get_connected_inbox_accounts(self) -> list[InboxAccount]:
        return sorted((a for a in self.accounts.values() if a.status == "connected"), key=lambda a: a.id)

    def update_inbox_account(self, account_id: str, **fields) -> None:
        self.account_updates.append((account_id, fields))
        if account_id in self.accounts:
            self.accounts[account_id] = self.accounts[account_id].model_copy(update=fields)

    def get_inbox_blocklist(self, team_id: str) -> list[BlocklistEntry]:
        return [entry for entry in self.blocklist if entry.team_id == team_id]


class FakeS3:
    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.fail_keys: set[str] = set()

    def upload_attachment(self, key: str, data: bytes, content_type: str = "application/octet-stream"):
        if any(part in key for part in self.fail_keys):
            raise ConnectionError(f"upload of {key} failed")
        self.objects[key] = data

    def download_attachment(self, key: str) -> bytes:
        return self.objects[key]

    def delete_attachment(self, key: str):
        self.objects.pop(key, None)

    def generate_presigned_url(self, key: str, expires_in: int = 3600) -> str:
        return f"https://storage.test/{key}?expires={expires_in}"


class FakeExtractor:
    """Returns a canned extraction, or raises the configured error."""

    def __init__(self, result: Optional[ExtractionResult] = None):
        self.result = result or ExtractionResult(
            document_type="invoice",
            amount=Decimal("120.00"),
            currency="eur",
            date=dt.date(2025, 6, 1),
            vendor_name="Hosting GmbH",
            invoice_number="INV-100",
            website="hosting.example",
        )
        self.error: Optional[Exception] = None
        self.calls: list[tuple[str, str]] = []

    def extract(self, document_url: str, mimetype: str, company_name: Optional[str] = None) -> ExtractionResult:
        self.calls.append((document_url, mimetype))
        if self.error is not None:
            raise self.error
        return self.result

    def classify(self, document_url: str, mimetype: str) -> DocumentClassification:
        return DocumentClassification(title="Invoice", summary="Hosting", tags=["Hosting", "invoice"])


class FakeEmbedder:
    def __init__(self, vector: Optional[list[float]] = None):
        self.vector = vector or [0.1, 0.2, 0.3]
        self.texts: list[str] = []

    def embed(self, text: str) -> EmbeddingResult:
        self.texts.append(text)
        return EmbeddingResult(vector=self.vector, model="test-embedding")


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self, fail: bool = False):
        self.sent: list[Notification] = []
        self.fail = fail

    def send(self, notification: Notification) -> None:
        if self.fail:
            raise ConnectionError("webhook unreachable")
        self.sent.append(notification)


def make_context(queue: QueueManager, name: str = "test-job") -> JobContext:
    job = Job(id=f"{name}-{uuid.uuid4().hex[:6]}", name=name, queue_name="inbox", payload={})
    return JobContext(job=job, queue=queue)


@pytest.fixture
def db():
    return FakeDatabase()


@pytest.fixture
def s3():
    return FakeS3()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def queue(backend):
    return QueueManager(backend)


@pytest.fixture
def config():
    return Config(
        database_url="postgresql://localhost/test",
        s3_endpoint="http://localhost:9000",
        s3_bucket="inbox",
        aws_access_key_id="key",
        aws_secret_access_key="secret",
        inference_api_url="http://localhost:8000/v1",
        job_backend="memory",
    )
