import datetime as dt
import math
from decimal import Decimal

import pytest

from reconciler.matching.scoring import (
    MatchThresholds,
    amount_score,
    cosine_similarity,
    currency_score,
    date_score,
    embedding_score,
    is_cross_currency_match,
    passes_candidate_gate,
    score_pair,
)
from reconciler.models import InboxItem, MatchType, Transaction


def unit(similarity: float) -> list[float]:
    """A 2-d unit vector at the given cosine similarity to [1, 0]."""
    return [similarity, math.sqrt(1 - similarity ** 2)]


BASE = [1.0, 0.0]


def make_inbox(**fields) -> InboxItem:
    fields.setdefault("id", "inbox-1")
    fields.setdefault("team_id", "team-1")
    fields.setdefault("status", "pending")
    return InboxItem(**fields)


def make_transaction(**fields) -> Transaction:
    fields.setdefault("id", "tx-1")
    fields.setdefault("team_id", "team-1")
    fields.setdefault("name", "Payment")
    return Transaction(**fields)


# ============================================================================
# Sub-scores
# ============================================================================

def test_cosine_similarity_rejects_mismatched_dimensions():
    with pytest.raises(ValueError):
        cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


def test_cosine_similarity_of_zero_vector_is_zero():
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


def test_missing_transaction_embedding_is_neutral():
    assert embedding_score(BASE, None) == 0.5
    assert embedding_score(BASE, BASE) == pytest.approx(1.0)


def test_amount_score_missing_amount_is_neutral():
    assert amount_score(None, "EUR", Decimal("10"), "EUR") == 0.5


def test_amount_score_same_currency_ignores_sign():
    assert amount_score(Decimal("100.00"), "EUR", Decimal("-100.00"), "EUR") == 1.0


def test_amount_score_same_currency_tiers():
    assert amount_score(Decimal("100"), "EUR", Decimal("99.5"), "EUR") == pytest.approx(min(1.0, 0.98 * 1.1))
    assert amount_score(Decimal("50"), "EUR", Decimal("42.50"), "EUR") == pytest.approx(0.33)
    assert amount_score(Decimal("100"), "EUR", Decimal("50"), "EUR") == 0.0


def test_amount_score_unconvertible_currencies_keep_forty_percent():
    assert amount_score(Decimal("100"), "USD", Decimal("100"), "EUR") == pytest.approx(0.4)


def test_amount_score_opposite_signs_with_large_ratio():
    assert amount_score(Decimal("100"), "USD", Decimal("-600"), "EUR") == 0.1


def test_amount_score_uses_shared_base_currency():
    score = amount_score(
        Decimal("100"), "USD", Decimal("92.50"), "EUR",
        base_amount1=Decimal("92.00"), base_currency1="EUR",
        base_amount2=Decimal("92.50"), base_currency2="EUR",
    )
    assert score == 1.0


def test_currency_score():
    assert currency_score(None, "EUR") == 0.5
    assert currency_score("eur", "EUR") == 1.0
    assert currency_score("USD", "EUR") == 0.3


def test_date_score_invoice_paid_on_common_terms():
    assert date_score(dt.date(2025, 5, 1), dt.date(2025, 5, 31), "invoice") == 0.98
    assert date_score(dt.date(2025, 5, 1), dt.date(2025, 5, 3), "invoice") == 0.99


def test_date_score_expense_receipt_after_card_payment():
    # Receipt dated two days after the statement line
    assert date_score(dt.date(2025, 5, 3), dt.date(2025, 5, 1), "expense") == 0.95


def test_date_score_far_apart_falls_back_to_proximity():
    assert date_score(dt.date(2025, 1, 1), dt.date(2025, 3, 2), "expense") == 0.1


def test_cross_currency_tolerance_tightens_with_amount():
    assert is_cross_currency_match("USD", Decimal("92"), "EUR", "EUR", Decimal("99"), "EUR")
    assert not is_cross_currency_match("USD", Decimal("5000"), "EUR", "EUR", Decimal("5100"), "EUR")
    assert not is_cross_currency_match("EUR", Decimal("92"), "EUR", "EUR", Decimal("92"), "EUR")


# ============================================================================
# Candidate gate
# ============================================================================

def test_gate_accepts_exact_amount_with_weak_semantics():
    inbox = make_inbox(amount=Decimal("120"), currency="EUR")
    transaction = make_transaction(amount=Decimal("-120"), currency="EUR", date=dt.date(2025, 6, 1))
    assert passes_candidate_gate(inbox, transaction, distance=0.55)


def test_gate_rejects_loose_amount_with_weak_semantics():
    inbox = make_inbox(amount=Decimal("120"), currency="EUR")
    transaction = make_transaction(amount=Decimal("100"), currency="EUR", date=dt.date(2025, 6, 1))
    assert not passes_candidate_gate(inbox, transaction, distance=0.5)
    assert passes_candidate_gate(inbox, transaction, distance=0.3)


def test_gate_rejects_items_without_amount():
    inbox = make_inbox(currency="EUR")
    transaction = make_transaction(amount=Decimal("10"), currency="EUR", date=dt.date(2025, 6, 1))
    assert not passes_candidate_gate(inbox, transaction, distance=0.1)


# ============================================================================
# Pair scoring
# ============================================================================

def test_exact_amount_with_strong_similarity_auto_matches():
    inbox = make_inbox(
        amount=Decimal("120.00"), currency="EUR", date=dt.date(2025, 6, 1), document_type="invoice",
    )
    transaction = make_transaction(amount=Decimal("-120.00"), currency="EUR", date=dt.date(2025, 6, 3))

    score = score_pair(inbox, transaction, BASE, unit(0.9))

    assert score.is_perfect_financial
    assert score.confidence == 1.0
    assert score.match_type == MatchType.AUTO_MATCHED


def test_fifteen_percent_difference_with_moderate_similarity_is_not_suggested():
    inbox = make_inbox(amount=Decimal("50.00"), currency="EUR", date=dt.date(2025, 6, 1), document_type="expense")
    transaction = make_transaction(amount=Decimal("42.50"), currency="EUR", date=dt.date(2025, 6, 1))

    score = score_pair(inbox, transaction, BASE, unit(0.7))

    assert score.confidence == pytest.approx(0.62, abs=0.005)
    assert score.match_type is None


def test_fifteen_percent_difference_with_strong_similarity_is_suggested():
    inbox = make_inbox(amount=Decimal("50.00"), currency="EUR", date=dt.date(2025, 6, 1), document_type="expense")
    transaction = make_transaction(amount=Decimal("42.50"), currency="EUR", date=dt.date(2025, 6, 1))

    score = score_pair(inbox, transaction, BASE, unit(0.9))

    assert score.confidence == pytest.approx(0.77, abs=0.005)
    assert score.match_type == MatchType.HIGH_CONFIDENCE


def test_cross_currency_pair_is_held_for_review():
    inbox = make_inbox(
        amount=Decimal("100.00"), currency="USD", base_amount=Decimal("92.00"), base_currency="EUR",
        date=dt.date(2025, 6, 1), document_type="expense",
    )
    transaction = make_transaction(
        amount=Decimal("92.50"), currency="EUR", base_amount=Decimal("92.50"), base_currency="EUR",
        date=dt.date(2025, 6, 1),
    )

    score = score_pair(inbox, transaction, BASE, unit(0.9))

    assert score.is_cross_currency
    assert score.confidence == pytest.approx(0.944, abs=0.002)
    assert score.match_type == MatchType.HIGH_CONFIDENCE


def test_recurring_transaction_auto_matches_on_lower_tier():
    inbox = make_inbox(amount=Decimal("29.00"), currency="EUR", date=dt.date(2025, 6, 1), document_type="expense")
    recurring = make_transaction(amount=Decimal("29.00"), currency="EUR", date=dt.date(2025, 6, 1), recurring=True)
    one_off = recurring.model_copy(update={"recurring": False})
    thresholds = MatchThresholds(auto_match=0.90)

    assert score_pair(inbox, recurring, BASE, unit(0.72), thresholds=thresholds).match_type == MatchType.AUTO_MATCHED
    assert score_pair(inbox, one_off, BASE, unit(0.72), thresholds=thresholds).match_type == MatchType.HIGH_CONFIDENCE


def test_sub_scores_are_rounded():
    inbox = make_inbox(amount=Decimal("50.00"), currency="EUR", date=dt.date(2025, 6, 1))
    transaction = make_transaction(amount=Decimal("42.50"), currency="EUR", date=dt.date(2025, 6, 1))

    score = score_pair(inbox, transaction, BASE, unit(0.7123456))

    assert score.embedding == round(score.embedding, 3)
    assert score.confidence == round(score.confidence, 3)
