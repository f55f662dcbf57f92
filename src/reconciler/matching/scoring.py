"""Scoring rules for pairing inbox documents with bank transactions.

Every sub-score lies in [0, 1]. The confidence of a pair is a weighted sum of
the sub-scores, adjusted by boosts for strong financial agreement and
penalties for weak currency or date agreement, then classified against the
auto-match and suggestion thresholds.
"""

import datetime as dt
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Sequence, Union

from ..models import DocumentType, InboxItem, MatchType, Transaction

Number = Union[int, float, Decimal]

# Amounts closer than this are considered identical
AMOUNT_EPSILON = 0.01

# Banking delay between a card payment and its statement line, in days
BANKING_DELAY_DAYS = 3

# Similarity used when a transaction has no embedding yet
NEUTRAL_EMBEDDING_SCORE = 0.5


@dataclass(frozen=True)
class ScoringWeights:
    embedding: float = 0.35
    amount: float = 0.40
    currency: float = 0.20
    date: float = 0.05


@dataclass(frozen=True)
class MatchThresholds:
    """Classification thresholds for a pair's confidence."""

    auto_match: float = 0.95
    suggested: float = 0.70
    high_confidence: float = 0.72


DEFAULT_WEIGHTS = ScoringWeights()
DEFAULT_THRESHOLDS = MatchThresholds()

# Minimum confidence per auto-match tier
AUTO_MATCH_PERFECT = 0.98
AUTO_MATCH_EXCELLENT = 0.95
AUTO_MATCH_RECURRING = 0.92


@dataclass
class PairScore:
    embedding: float
    amount: float
    currency: float
    date: float
    confidence: float
    is_perfect_financial: bool
    is_cross_currency: bool
    match_type: Optional[str] = None


def _num(value: Optional[Number]) -> Optional[float]:
    return float(value) if value is not None else None


# ============================================================================
# Sub-scores
# ============================================================================

def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either has no magnitude."""
    if len(a) != len(b):
        raise ValueError(f"Embedding dimensions differ: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def embedding_score(
    inbox_embedding: Optional[Sequence[float]],
    transaction_embedding: Optional[Sequence[float]],
) -> float:
    if not inbox_embedding or not transaction_embedding:
        return NEUTRAL_EMBEDDING_SCORE
    return max(0.0, cosine_similarity(inbox_embedding, transaction_embedding))


def _difference_score(amount1: float, amount2: float, match_type: str) -> float:
    """Tiered score for the percentage difference between two amounts.

    Opposite signs (an invoice against a payment) are compared by absolute
    value with a penalty, except for same-currency pairs where the sign only
    reflects the side of the ledger.
    """
    opposite_signs = (amount1 > 0 > amount2) or (amount1 < 0 < amount2)
    compare1 = abs(amount1) if opposite_signs else amount1
    compare2 = abs(amount2) if opposite_signs else amount2

    max_amount = max(abs(compare1), abs(compare2))
    if max_amount == 0:
        return 1.0 if amount1 == amount2 else 0.0
    pct = abs(compare1 - compare2) / max_amount

    penalty = 1.0
    if opposite_signs:
        penalty = 0.3 if match_type == "different_currency" else 0.7

    if pct == 0:
        score = 1.0
    elif pct <= 0.01:
        score = 0.98
    elif pct <= 0.02:
        score = 0.95
    elif pct <= 0.025:
        score = 0.92
    elif pct <= 0.03:
        score = 0.9
    elif pct <= 0.05:
        score = 0.85
    elif pct <= 0.10:
        score = 0.6
    elif pct <= 0.20:
        score = 0.3
    else:
        score = 0.0

    if match_type == "exact_currency":
        return min(1.0, score * 1.1)
    if match_type == "base_currency":
        return min(1.0, score * 1.05)
    if match_type == "cross_currency_base":
        return min(1.0, score * 1.03 * penalty)
    return score * penalty


def amount_score(
    amount1: Optional[Number],
    currency1: Optional[str],
    amount2: Optional[Number],
    currency2: Optional[str],
    base_amount1: Optional[Number] = None,
    base_currency1: Optional[str] = None,
    base_amount2: Optional[Number] = None,
    base_currency2: Optional[str] = None,
) -> float:
    """Agreement between two amounts, using base amounts across currencies.

    Returns:
        float: 0.5 when either amount is missing, otherwise a tiered score
    """
    a1, a2 = _num(amount1), _num(amount2)
    if not a1 or not a2:
        return 0.5

    if currency1 and currency2 and currency1 == currency2:
        # Same currency: the sign only tells which side of the ledger it is on
        return _difference_score(abs(a1), abs(a2), "exact_currency")

    b1, b2 = _num(base_amount1), _num(base_amount2)
    if b1 and b2 and base_currency1 and base_currency2 and base_currency1 == base_currency2:
        match_type = "cross_currency_base" if currency1 != currency2 else "base_currency"
        return _difference_score(b1, b2, match_type)

    if currency1 != currency2:
        same_sign = (a1 > 0 and a2 > 0) or (a1 < 0 and a2 < 0)
        ratio = max(abs(a1), abs(a2)) / min(abs(a1), abs(a2))
        if not same_sign and ratio > 5:
            return 0.1
        # Unconvertible currencies keep 40% of the raw score
        return _difference_score(a1, a2, "different_currency") * 0.4

    return _difference_score(a1, a2, "fallback")


def currency_score(currency1: Optional[str], currency2: Optional[str]) -> float:
    if not currency1 or not currency2:
        return 0.5
    return 1.0 if currency1.upper() == currency2.upper() else 0.3


def date_score(
    document_date: dt.date,
    transaction_date: dt.date,
    document_type: Optional[str] = None,
) -> float:
    """Timing agreement between a document and a bank transaction.

    Invoices are usually paid after their date on common payment terms.
    Expense receipts usually arrive after the card payment, which itself
    shows up on the statement a few days late. Anything outside those
    patterns falls back to plain proximity.

    Args:
        document_date: Date printed on the document
        transaction_date: Booking date of the transaction
        document_type: "invoice" or "expense" (default)

    Returns:
        float: Score in [0.1, 1.0]
    """
    signed = (transaction_date - document_date).days
    diff = abs(signed)

    if document_type == DocumentType.INVOICE:
        if signed > 0:
            if 24 <= signed <= 38:
                return 0.98
            if 55 <= signed <= 68:
                return 0.96
            if 85 <= signed <= 98:
                return 0.94
            if 10 <= signed <= 20:
                return 0.95
            if 3 <= signed <= 11:
                return 0.93
            if signed <= 6:
                return 0.99
            if signed <= 123:
                return max(0.7, 0.9 - (signed - 33) * 0.002)
        elif signed >= -10:
            return 0.85
    else:
        if signed < 0:
            adjusted = diff + BANKING_DELAY_DAYS
            if adjusted <= 4:
                return 0.99
            if adjusted <= 10:
                return 0.95
            if adjusted <= 33:
                return 0.9
            if adjusted <= 63:
                return 0.8
            if adjusted <= 93:
                return 0.7
        elif signed <= 10:
            return 0.85

    if diff == 0:
        return 1.0
    if diff <= 1:
        return 0.95
    if diff <= 3:
        return 0.85
    if diff <= 7:
        return 0.75
    if diff <= 14:
        return 0.6
    if diff <= 30:
        return max(0.3, 1 - (diff / 30) * 0.7)
    return 0.1


def is_cross_currency_match(
    currency1: Optional[str],
    base_amount1: Optional[Number],
    base_currency1: Optional[str],
    currency2: Optional[str],
    base_amount2: Optional[Number],
    base_currency2: Optional[str],
) -> bool:
    """Whether two amounts in different currencies agree in a shared base currency.

    The tolerance tightens as the amounts grow.
    """
    if not currency1 or not currency2 or currency1 == currency2:
        return False
    if not base_currency1 or not base_currency2 or base_currency1 != base_currency2:
        return False
    b1, b2 = _num(base_amount1), _num(base_amount2)
    if not b1 or not b2:
        return False

    b1, b2 = abs(b1), abs(b2)
    average = (b1 + b2) / 2
    if average < 100:
        tolerance = max(10.0, average * 0.04)
    elif average < 1000:
        tolerance = max(15.0, average * 0.02)
    else:
        tolerance = max(25.0, average * 0.015)
    return abs(b1 - b2) < tolerance


# ============================================================================
# Pair scoring
# ============================================================================

def document_date(inbox: InboxItem) -> dt.date:
    """The date used for matching: the document date, else the ingestion date."""
    if inbox.date is not None:
        return inbox.date
    if inbox.created_at is not None:
        return inbox.created_at.date()
    return dt.date.today()


def has_exact_amount(inbox: InboxItem, transaction: Transaction) -> bool:
    if inbox.amount is None or transaction.amount is None:
        return False
    return abs(abs(float(inbox.amount)) - abs(float(transaction.amount))) < AMOUNT_EPSILON


def passes_candidate_gate(inbox: InboxItem, transaction: Transaction, distance: float) -> bool:
    """Pre-filter on cosine distance and amount before full scoring.

    A pair qualifies when it is an exact same-currency amount with a weak
    semantic link, or when a stronger semantic link comes with a looser
    amount tolerance.
    """
    same_currency = bool(inbox.currency) and inbox.currency == transaction.currency
    if same_currency and has_exact_amount(inbox, transaction) and distance < 0.6:
        return True

    if inbox.amount is None:
        return False
    inbox_amount = abs(float(inbox.amount))
    difference = abs(inbox_amount - abs(float(transaction.amount)))
    if distance < 0.35 and difference < max(50.0, inbox_amount * 0.10):
        return True
    if distance < 0.45 and difference < max(100.0, inbox_amount * 0.20):
        return True
    return False


def _match_type(
    confidence: float,
    score: PairScore,
    recurring: bool,
    thresholds: MatchThresholds,
) -> Optional[str]:
    if confidence < thresholds.suggested:
        return None
    if confidence >= thresholds.auto_match:
        strong_financial = score.is_perfect_financial or score.is_cross_currency
        if (
            confidence >= AUTO_MATCH_PERFECT and strong_financial
            and score.embedding >= 0.75 and score.date >= 0.6
        ):
            return MatchType.AUTO_MATCHED
        if (
            confidence >= AUTO_MATCH_EXCELLENT and strong_financial
            and score.embedding >= 0.7 and score.date >= 0.5
        ):
            return MatchType.AUTO_MATCHED
        if (
            confidence >= AUTO_MATCH_RECURRING and recurring and score.is_perfect_financial
            and score.embedding >= 0.65 and score.date >= 0.4
        ):
            return MatchType.AUTO_MATCHED
        return MatchType.HIGH_CONFIDENCE
    if confidence >= thresholds.high_confidence:
        return MatchType.HIGH_CONFIDENCE
    return MatchType.SUGGESTED


def score_pair(
    inbox: InboxItem,
    transaction: Transaction,
    inbox_embedding: Optional[Sequence[float]],
    transaction_embedding: Optional[Sequence[float]],
    weights: ScoringWeights = DEFAULT_WEIGHTS,
    thresholds: MatchThresholds = DEFAULT_THRESHOLDS,
) -> PairScore:
    """Score an inbox item against a transaction.

    The same rules apply whichever side started the search, so a pair gets
    one confidence regardless of direction.

    Args:
        inbox: Document side of the pair
        transaction: Bank side of the pair
        inbox_embedding: Vector of the document's text
        transaction_embedding: Vector of the transaction's text, if computed
        weights: Sub-score weights
        thresholds: Classification thresholds

    Returns:
        PairScore: Sub-scores, confidence rounded to three places and the
        match type (None when below the suggestion threshold)
    """
    emb = embedding_score(inbox_embedding, transaction_embedding)
    amt = amount_score(
        inbox.amount, inbox.currency, transaction.amount, transaction.currency,
        inbox.base_amount, inbox.base_currency, transaction.base_amount, transaction.base_currency,
    )
    cur = currency_score(inbox.currency, transaction.currency)
    day = date_score(document_date(inbox), transaction.date, inbox.document_type)

    confidence = (
        emb * weights.embedding
        + amt * weights.amount
        + cur * weights.currency
        + day * weights.date
    )

    same_currency = bool(inbox.currency) and inbox.currency == transaction.currency
    exact_amount = has_exact_amount(inbox, transaction)
    perfect_financial = same_currency and exact_amount
    cross_currency = is_cross_currency_match(
        inbox.currency, inbox.base_amount, inbox.base_currency,
        transaction.currency, transaction.base_amount, transaction.base_currency,
    )
    strong = (perfect_financial or cross_currency) and emb > 0.7
    good = amt > 0.85 and emb > 0.75

    if perfect_financial and emb > 0.8 and day > 0.7:
        confidence = max(confidence, 0.98)
    elif cross_currency and emb > 0.8 and day > 0.7:
        confidence = max(confidence, 0.96)
    elif perfect_financial and day > 0.5:
        confidence = max(confidence, 0.92)
    elif strong and day > 0.4:
        confidence = max(confidence, 0.88)
    elif good and day > 0.3:
        confidence = max(confidence, 0.82)

    if not same_currency and cur < 0.7:
        confidence *= 0.9
    if day < 0.2:
        confidence *= 0.85

    if emb > 0.85:
        confidence = min(1.0, confidence + 0.08)
    elif emb > 0.75:
        confidence = min(1.0, confidence + 0.05)

    if transaction.recurring and exact_amount and emb > 0.7:
        confidence = max(confidence, 0.92)

    score = PairScore(
        embedding=round(emb, 3),
        amount=round(amt, 3),
        currency=round(cur, 3),
        date=round(day, 3),
        confidence=round(confidence, 3),
        is_perfect_financial=perfect_financial,
        is_cross_currency=cross_currency,
    )
    score.match_type = _match_type(score.confidence, score, transaction.recurring, thresholds)
    return score
