"""Find the best transaction for a document and the best document for a transaction."""

import logging
from typing import Optional

from ..config import Config
from ..errors import NotFoundError
from ..models import (
    InboxItem,
    InboxStatus,
    MatchAction,
    MatchOutcome,
    MatchSuggestion,
    MatchType,
    Transaction,
)
from ..storage.database import DatabaseClient
from .scoring import (
    DEFAULT_THRESHOLDS,
    DEFAULT_WEIGHTS,
    MatchThresholds,
    PairScore,
    ScoringWeights,
    embedding_score,
    passes_candidate_gate,
    score_pair,
)

logger = logging.getLogger(__name__)

# Scores closer than this are a tie; the earlier candidate wins
TIE_EPSILON = 0.001


def _suggestion(inbox: InboxItem, transaction: Transaction, score: PairScore) -> MatchSuggestion:
    return MatchSuggestion(
        transaction_id=transaction.id,
        inbox_id=inbox.id,
        confidence_score=score.confidence,
        match_type=score.match_type,
        amount_score=score.amount,
        currency_score=score.currency,
        date_score=score.date,
        embedding_score=score.embedding,
        is_already_matched=inbox.matched_transaction_id is not None,
        is_cross_currency=bool(inbox.currency and inbox.currency != transaction.currency),
    )


class MatchingEngine:
    """Scores candidates from the database and applies automatic matches.

    Args:
        db: Database client
        weights: Sub-score weights
        thresholds: Auto-match and suggestion thresholds
        candidate_limit: Candidates fetched per search
    """

    def __init__(
        self,
        db: DatabaseClient,
        weights: ScoringWeights = DEFAULT_WEIGHTS,
        thresholds: MatchThresholds = DEFAULT_THRESHOLDS,
        candidate_limit: int = 20,
    ):
        self.db = db
        self.weights = weights
        self.thresholds = thresholds
        self.candidate_limit = candidate_limit

    @classmethod
    def from_config(cls, db: DatabaseClient, config: Config) -> "MatchingEngine":
        return cls(db, thresholds=MatchThresholds(
            auto_match=config.auto_match_threshold,
            suggested=config.suggested_match_threshold,
        ))

    def _best(self, pairs) -> Optional[tuple[InboxItem, Transaction, PairScore]]:
        """Highest-confidence classified pair; candidates arrive in preference order."""
        best = None
        for inbox, transaction, inbox_vec, transaction_vec in pairs:
            distance = 1 - embedding_score(inbox_vec, transaction_vec)
            if not passes_candidate_gate(inbox, transaction, distance):
                continue
            score = score_pair(inbox, transaction, inbox_vec, transaction_vec, self.weights, self.thresholds)
            if score.match_type is None:
                continue
            if best is None or score.confidence > best[2].confidence + TIE_EPSILON:
                best = (inbox, transaction, score)
        return best

    def calculate_inbox_suggestions(self, team_id: str, inbox_id: str) -> MatchOutcome:
        """Match one inbox item against the team's unmatched transactions.

        Auto-matches are linked immediately. Losing the link to a concurrent
        job downgrades the outcome to a suggestion.

        Args:
            team_id: Team that owns the item
            inbox_id: Inbox item to match

        Returns:
            MatchOutcome: auto_matched, suggestion_created or no_match_yet

        Raises:
            NotFoundError: If the item does not exist for this team
        """
        inbox = self.db.get_inbox_by_id(inbox_id, team_id)
        if inbox is None:
            raise NotFoundError(f"Inbox item {inbox_id} not found for team {team_id}")

        if inbox.matched_transaction_id is not None:
            logger.info(f"Inbox {inbox_id} is already matched to {inbox.matched_transaction_id}")
            return MatchOutcome(action=MatchAction.NO_MATCH_YET)
        if inbox.status != InboxStatus.PENDING:
            logger.info(f"Inbox {inbox_id} is {inbox.status}, not matching")
            return MatchOutcome(action=MatchAction.NO_MATCH_YET)

        embedding = self.db.get_inbox_embedding(inbox_id)
        if embedding is None:
            logger.warning(f"Inbox {inbox_id} has no embedding yet, cannot match")
            return MatchOutcome(action=MatchAction.NO_MATCH_YET)

        candidates = self.db.find_transaction_candidates(team_id, inbox, limit=self.candidate_limit)
        best = self._best(
            (inbox, transaction, embedding.embedding, transaction_vec)
            for transaction, transaction_vec in candidates
        )
        if best is None:
            logger.info(f"No match for inbox {inbox_id} among {len(candidates)} candidates")
            return MatchOutcome(action=MatchAction.NO_MATCH_YET)

        suggestion = _suggestion(*best)
        if suggestion.match_type == MatchType.AUTO_MATCHED:
            return self.apply_auto_match(team_id, suggestion)

        logger.info(
            f"Suggested transaction {suggestion.transaction_id} for inbox {inbox_id} "
            f"({suggestion.match_type}, {suggestion.confidence_score})"
        )
        return MatchOutcome(action=MatchAction.SUGGESTION_CREATED, suggestion=suggestion)

    def find_inbox_match(self, team_id: str, transaction_id: str) -> Optional[MatchSuggestion]:
        """Best pending inbox item for a transaction, without linking it.

        Returns:
            Optional[MatchSuggestion]: The best pair, or None when nothing
            clears the suggestion threshold or the transaction is already matched

        Raises:
            NotFoundError: If the transaction does not exist for this team
        """
        transaction = self.db.get_transaction(transaction_id, team_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found for team {team_id}")
        if transaction.matched_inbox_id is not None:
            logger.info(f"Transaction {transaction_id} is already matched to {transaction.matched_inbox_id}")
            return None

        transaction_vec = self.db.get_transaction_embedding(transaction_id)
        candidates = self.db.find_inbox_candidates(team_id, transaction, limit=self.candidate_limit)
        best = self._best(
            (inbox, transaction, inbox_vec, transaction_vec)
            for inbox, inbox_vec in candidates
        )
        if best is None:
            logger.info(f"No inbox match for transaction {transaction_id} among {len(candidates)} candidates")
            return None
        return _suggestion(*best)

    def apply_auto_match(self, team_id: str, suggestion: MatchSuggestion) -> MatchOutcome:
        """Link both rows of an auto-match, or downgrade it if either side is taken."""
        if self.db.link_inbox_to_transaction(suggestion.inbox_id, suggestion.transaction_id, team_id):
            logger.info(
                f"Auto-matched inbox {suggestion.inbox_id} to transaction "
                f"{suggestion.transaction_id} ({suggestion.confidence_score})"
            )
            return MatchOutcome(action=MatchAction.AUTO_MATCHED, suggestion=suggestion)

        logger.info(
            f"Inbox {suggestion.inbox_id} or transaction {suggestion.transaction_id} was matched "
            f"concurrently, keeping as a suggestion"
        )
        downgraded = suggestion.model_copy(update={"match_type": MatchType.HIGH_CONFIDENCE})
        return MatchOutcome(action=MatchAction.SUGGESTION_CREATED, suggestion=downgraded)
