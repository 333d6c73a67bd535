import logging
import math

import pytest
from hypothesis import given, settings, strategies as st

from collatz_duel.services.duels.glicko import (
    Glicko2, PlayerRating, classify, MAX_DEVIATION, MIN_VOLATILITY,
)


engine = Glicko2()


def test_new_players_win_moves_rating_up_and_tightens_deviation():
    fresh = PlayerRating()
    after = engine.update(fresh, PlayerRating(), 1)
    assert 150 < after.rating - fresh.rating < 175
    assert 280 < after.deviation < 300
    assert after.volatility == pytest.approx(0.06, abs=1e-3)
    assert after.games_played == 1


def test_winner_up_loser_down_from_equal_ratings():
    a = PlayerRating(rating=1600, deviation=120, volatility=0.06, games_played=10)
    b = PlayerRating(rating=1600, deviation=120, volatility=0.06, games_played=12)
    a_after = engine.update(a, b, 1)
    b_after = engine.update(b, a, 0)
    assert a_after.rating > a.rating
    assert b_after.rating < b.rating
    assert a_after.rating - a.rating == pytest.approx(b.rating - b_after.rating)


def test_draw_between_equals_keeps_ratings():
    a = PlayerRating(rating=1720, deviation=80, volatility=0.05)
    b = PlayerRating(rating=1720, deviation=80, volatility=0.07)
    a_after = engine.update(a, b, 0.5)
    b_after = engine.update(b, a, 0.5)
    assert a_after.rating == pytest.approx(1720, abs=1e-9)
    assert b_after.rating == pytest.approx(1720, abs=1e-9)
    assert a_after.deviation != a.deviation


def test_upset_win_gains_more_than_expected_win():
    underdog = PlayerRating(rating=1400, deviation=100)
    favourite = PlayerRating(rating=1800, deviation=100)
    upset = engine.update(underdog, favourite, 1).rating - underdog.rating
    expected = engine.update(favourite, underdog, 1).rating - favourite.rating
    assert upset > expected > 0


def test_update_is_deterministic():
    a = PlayerRating(rating=1523.4, deviation=211.7, volatility=0.0612, games_played=3)
    b = PlayerRating(rating=1488.1, deviation=95.2, volatility=0.058, games_played=40)
    first = engine.update(a, b, 0)
    for _ in range(5):
        assert engine.update(a, b, 0) == first


@pytest.mark.parametrize('score', [-1, 0.25, 2, 0.75])
def test_rejects_scores_outside_win_draw_loss(score):
    with pytest.raises(ValueError):
        engine.update(PlayerRating(), PlayerRating(), score)


def test_solver_cap_keeps_prior_volatility(caplog):
    capped = Glicko2(max_iterations=0)
    player = PlayerRating(rating=1500, deviation=200, volatility=0.06)
    with caplog.at_level(logging.WARNING):
        after = capped.update(player, PlayerRating(rating=1900, deviation=60), 1)
    assert after.volatility == player.volatility
    assert after.rating > player.rating
    assert 'glicko-nonconvergence' in caplog.text


@pytest.mark.parametrize('deviation,expected', [
    (350, 'provisional'),
    (110.5, 'provisional'),
    (110, 'establishing'),
    (85.1, 'establishing'),
    (85, 'stable'),
    (40, 'stable'),
])
def test_classify(deviation, expected):
    assert classify(deviation) == expected


def test_round_trip_through_dict():
    rating = PlayerRating(rating=1612.5, deviation=77.0, volatility=0.059, games_played=31)
    assert PlayerRating.from_dict(rating.to_dict()) == rating


ratings = st.floats(min_value=500, max_value=3000, allow_nan=False)
deviations = st.floats(min_value=30, max_value=350, allow_nan=False)
volatilities = st.floats(min_value=0.0001, max_value=0.2, allow_nan=False)
opponents = st.builds(PlayerRating, rating=ratings, deviation=deviations, volatility=volatilities)
scores = st.sampled_from([0, 0.5, 1])


@settings(max_examples=100, deadline=None)
@given(start=opponents, games=st.lists(st.tuples(opponents, scores), min_size=1, max_size=25))
def test_bounds_hold_for_any_sequence_of_updates(start, games):
    current = start
    for opponent, score in games:
        current = engine.update(current, opponent, score)
        assert current.deviation <= MAX_DEVIATION
        assert current.volatility >= MIN_VOLATILITY
        assert math.isfinite(current.rating)
    assert current.games_played == len(games)


@settings(max_examples=100, deadline=None)
@given(rating=ratings, deviation=deviations, volatility=volatilities)
def test_win_raises_and_loss_lowers_against_equal_opponent(rating, deviation, volatility):
    player = PlayerRating(rating=rating, deviation=deviation, volatility=volatility)
    assert engine.update(player, player, 1).rating > rating
    assert engine.update(player, player, 0).rating < rating


@pytest.mark.parametrize('score', [0, 0.5, 1])
def test_lopsided_ratings_update_without_fault(score):
    strong = PlayerRating(rating=9000.0, deviation=30.0)
    weak = PlayerRating(rating=1500.0, deviation=30.0)
    for player, opponent in ((strong, weak), (weak, strong)):
        updated = engine.update(player, opponent, score)
        assert math.isfinite(updated.rating)
        assert updated.deviation <= MAX_DEVIATION
        assert updated.volatility >= MIN_VOLATILITY
