"""
Tests for the composite performance score.

The encoding must round-trip exactly and order attempts the way the
leaderboard ranks them: higher percentage first, then faster time.
"""

import pytest

from exam_ranking.services.score_encoder import MAX_TIME_TAKEN, decode, encode


@pytest.mark.parametrize(
    "percentage,time_taken",
    [(0, 1), (0, MAX_TIME_TAKEN), (55, 3600), (99, 1), (100, 1), (100, MAX_TIME_TAKEN)],
)
def test_round_trip_at_domain_edges(percentage, time_taken):
    assert decode(encode(percentage, time_taken)) == (percentage, time_taken)


def test_round_trip_sampled_domain():
    for percentage in range(0, 101, 7):
        for time_taken in (1, 2, 59, 60, 999, 86_400, 500_000, MAX_TIME_TAKEN):
            assert decode(encode(percentage, time_taken)) == (percentage, time_taken)


def test_higher_percentage_dominates_any_time():
    """81% in the slowest possible time still beats 80% in one second."""
    assert encode(81, MAX_TIME_TAKEN) > encode(80, 1)


def test_faster_time_wins_on_equal_percentage():
    assert encode(80, 90) > encode(80, 120)
    assert encode(100, 1) > encode(100, 2)


def test_ordering_matches_percentage_then_time():
    attempts = [(70, 30), (90, 300), (90, 45), (100, 900), (70, 10)]
    ranked = sorted(attempts, key=lambda a: encode(*a), reverse=True)
    assert ranked == [(100, 900), (90, 45), (90, 300), (70, 10), (70, 30)]


def test_max_score_is_exact_as_a_double():
    top = encode(100, 1)
    assert float(top) == top
    assert int(float(top)) == top


@pytest.mark.parametrize(
    "percentage,time_taken",
    [(-1, 10), (101, 10), (50, 0), (50, -5), (50, MAX_TIME_TAKEN + 1)],
)
def test_encode_rejects_out_of_domain(percentage, time_taken):
    with pytest.raises(ValueError):
        encode(percentage, time_taken)


@pytest.mark.parametrize("score", [0, -1, 5_000_000, encode(100, 1) + 1])
def test_decode_rejects_non_encoded_scores(score):
    with pytest.raises(ValueError):
        decode(score)
