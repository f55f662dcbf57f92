"""Matching jobs: batch matching of new documents and bidirectional matching of new transactions."""

import logging
from typing import Union

from ..jobs.base import JobContext, Processor
from ..jobs.batching import chunked, settle_all
from ..models import (
    BatchMatchingResult,
    BidirectionalMatchingResult,
    MatchAction,
    MatchOutcome,
    MatchType,
    PhaseCounts,
)
from ..schemas import BatchProcessMatchingPayload, MatchTransactionsBidirectionalPayload
from ..storage.database import DatabaseClient
from .engine import MatchingEngine
from .notifications import NotificationDispatcher, notify_match

logger = logging.getLogger(__name__)


def _tally(counts: Union[BatchMatchingResult, PhaseCounts], outcome: MatchOutcome) -> None:
    if outcome.action == MatchAction.AUTO_MATCHED:
        counts.auto_matched += 1
    elif outcome.action == MatchAction.SUGGESTION_CREATED:
        counts.suggestions += 1
    elif isinstance(counts, BatchMatchingResult):
        # Bidirectional phases report no no-match count
        counts.no_matches += 1


class BatchProcessMatchingProcessor(Processor):
    """Matches freshly processed inbox items in small concurrent batches.

    A failing item is counted and logged; it never fails the job.
    """

    name = "batch-process-matching"
    payload_schema = BatchProcessMatchingPayload

    def __init__(
        self,
        engine: MatchingEngine,
        db: DatabaseClient,
        dispatcher: NotificationDispatcher,
        batch_size: int = 5,
    ):
        self.engine = engine
        self.db = db
        self.dispatcher = dispatcher
        self.batch_size = batch_size

    def process(self, payload: BatchProcessMatchingPayload, ctx: JobContext) -> dict:
        team_id = payload.team_id
        result = BatchMatchingResult()
        batches = list(chunked(payload.inbox_ids, self.batch_size))

        for number, batch in enumerate(batches, start=1):
            settled = settle_all(
                batch,
                lambda inbox_id: self.engine.calculate_inbox_suggestions(team_id, inbox_id),
            )
            batch_errors = 0
            for entry in settled:
                result.processed += 1
                if not entry.ok:
                    result.errors += 1
                    batch_errors += 1
                    logger.error(f"Matching failed for inbox {entry.item}: {entry.error}", exc_info=entry.error)
                    continue
                _tally(result, entry.value)
                notify_match(self.dispatcher, self.db, team_id, entry.value.action, entry.value.suggestion)

            logger.info(
                f"Matching batch {number}/{len(batches)} for team {team_id} done: "
                f"{len(batch)} items, {batch_errors} errors"
            )

        logger.info(
            f"Batch matching for team {team_id}: {result.processed} processed, "
            f"{result.auto_matched} auto-matched, {result.suggestions} suggestions, "
            f"{result.no_matches} without match, {result.errors} errors"
        )
        return result.model_dump()


class MatchTransactionsBidirectionalProcessor(Processor):
    """Matches new transactions to documents, then re-matches waiting documents.

    Phase 1 looks for a document for each new transaction, one at a time.
    Phase 2 re-runs matching for pending documents that phase 1 did not
    touch, since the new transactions may now be their best candidates.
    """

    name = "match-transactions-bidirectional"
    payload_schema = MatchTransactionsBidirectionalPayload

    def __init__(
        self,
        engine: MatchingEngine,
        db: DatabaseClient,
        dispatcher: NotificationDispatcher,
        reverse_limit: int = 50,
        reverse_batch_size: int = 10,
    ):
        self.engine = engine
        self.db = db
        self.dispatcher = dispatcher
        self.reverse_limit = reverse_limit
        self.reverse_batch_size = reverse_batch_size

    def process(self, payload: MatchTransactionsBidirectionalPayload, ctx: JobContext) -> dict:
        team_id = payload.team_id
        result = BidirectionalMatchingResult()

        touched = self._forward(team_id, payload.new_transaction_ids, result.forward)
        ctx.update_progress({"phase": "reverse", "excluded": len(touched)})
        self._reverse(team_id, touched, result.reverse)

        logger.info(
            f"Bidirectional matching for team {team_id}: "
            f"forward {result.forward.model_dump()}, reverse {result.reverse.model_dump()}"
        )
        return {
            **result.model_dump(),
            "total_auto_matched": result.total_auto_matched,
            "total_suggestions": result.total_suggestions,
        }

    def _forward(self, team_id: str, transaction_ids: list[str], counts: PhaseCounts) -> set[str]:
        touched: set[str] = set()
        for transaction_id in transaction_ids:
            counts.processed += 1
            try:
                suggestion = self.engine.find_inbox_match(team_id, transaction_id)
                if suggestion is None:
                    continue
                touched.add(suggestion.inbox_id)

                if suggestion.match_type == MatchType.AUTO_MATCHED:
                    outcome = self.engine.apply_auto_match(team_id, suggestion)
                else:
                    outcome = MatchOutcome(action=MatchAction.SUGGESTION_CREATED, suggestion=suggestion)
                _tally(counts, outcome)
                notify_match(self.dispatcher, self.db, team_id, outcome.action, outcome.suggestion)
            except Exception as e:
                counts.errors += 1
                logger.error(f"Forward matching failed for transaction {transaction_id}: {e}", exc_info=True)
        return touched

    def _reverse(self, team_id: str, exclude_ids: set[str], counts: PhaseCounts) -> None:
        pending = self.db.get_pending_inbox_for_matching(team_id, self.reverse_limit, exclude_ids)
        logger.info(f"Reverse matching {len(pending)} pending inbox items for team {team_id}")

        for batch in chunked([item.id for item in pending], self.reverse_batch_size):
            settled = settle_all(
                batch,
                lambda inbox_id: self.engine.calculate_inbox_suggestions(team_id, inbox_id),
            )
            for entry in settled:
                counts.processed += 1
                if not entry.ok:
                    counts.errors += 1
                    logger.error(f"Reverse matching failed for inbox {entry.item}: {entry.error}")
                    continue
                _tally(counts, entry.value)
                notify_match(self.dispatcher, self.db, team_id, entry.value.action, entry.value.suggestion)
