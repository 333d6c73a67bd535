"""Glicko-2 rating engine for single-opponent updates.

Each duel is rated on its own as soon as it finalizes, so the engine treats
every call as a rating period containing exactly one game. The engine is
pure: no I/O, no clock and no randomness, so identical inputs produce
bit-identical outputs.
"""

import logging
import math
from dataclasses import dataclass, asdict, replace
from typing import Dict, Any

from .errors import NumericNonConvergence

logger = logging.getLogger(__name__)

SCALE = 173.7178
BASE_RATING = 1500.0

DEFAULT_RATING = 1500.0
DEFAULT_DEVIATION = 350.0
DEFAULT_VOLATILITY = 0.06

MAX_DEVIATION = 350.0
MIN_VOLATILITY = 0.0001

PROVISIONAL_DEVIATION = 110.0
ESTABLISHING_DEVIATION = 85.0

VALID_SCORES = (0.0, 0.5, 1.0)
EXPECTED_FLOOR = 1e-10


@dataclass(frozen=True)
class PlayerRating:
    rating: float = DEFAULT_RATING
    deviation: float = DEFAULT_DEVIATION
    volatility: float = DEFAULT_VOLATILITY
    games_played: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PlayerRating':
        return cls(
            rating=float(data.get('rating', DEFAULT_RATING)),
            deviation=float(data.get('deviation', DEFAULT_DEVIATION)),
            volatility=float(data.get('volatility', DEFAULT_VOLATILITY)),
            games_played=int(data.get('games_played', 0)),
        )


def classify(deviation: float) -> str:
    """Bucket a deviation into provisional / establishing / stable."""
    if deviation > PROVISIONAL_DEVIATION:
        return 'provisional'
    if deviation > ESTABLISHING_DEVIATION:
        return 'establishing'
    return 'stable'


def _g(phi: float) -> float:
    return 1.0 / math.sqrt(1.0 + 3.0 * phi * phi / (math.pi * math.pi))


def _expected(mu: float, mu_j: float, g_j: float) -> float:
    # Kept strictly inside (0, 1) so the variance term stays finite
    x = -g_j * (mu - mu_j)
    e = 1.0 / (1.0 + math.exp(x)) if x < 700 else 0.0
    return min(max(e, EXPECTED_FLOOR), 1.0 - EXPECTED_FLOOR)


class Glicko2:
    """Glicko-2 calculator.

    Args:
        tau: System constant constraining volatility change.
        epsilon: Convergence tolerance of the volatility root-find.
        max_iterations: Hard cap for both the bracketing loop and the
            Illinois iteration.
    """

    def __init__(self, tau: float = 0.5, epsilon: float = 1e-6, max_iterations: int = 1000):
        self.tau = tau
        self.epsilon = epsilon
        self.max_iterations = max_iterations

    def update(self, player: PlayerRating, opponent: PlayerRating, score: float) -> PlayerRating:
        """Return ``player``'s rating after one game against ``opponent``.

        ``score`` is 1 for a win, 0.5 for a draw and 0 for a loss. The returned
        deviation is clamped to at most 350 and volatility to at least 0.0001.
        """
        score = float(score)
        if score not in VALID_SCORES:
            raise ValueError(f"score must be one of {VALID_SCORES}, got {score}")

        mu = (player.rating - BASE_RATING) / SCALE
        phi = player.deviation / SCALE
        mu_j = (opponent.rating - BASE_RATING) / SCALE
        phi_j = opponent.deviation / SCALE

        g_j = _g(phi_j)
        e = _expected(mu, mu_j, g_j)
        v = 1.0 / (g_j * g_j * e * (1.0 - e))
        delta = v * g_j * (score - e)

        try:
            sigma = self._solve_volatility(phi, player.volatility, v, delta)
        except NumericNonConvergence as exc:
            logger.warning(
                f"[glicko-nonconvergence] iterations={exc.iterations} rating={player.rating} "
                f"deviation={player.deviation} volatility={player.volatility}; keeping prior volatility"
            )
            sigma = player.volatility

        phi_star = math.sqrt(phi * phi + sigma * sigma)
        phi_new = 1.0 / math.sqrt(1.0 / (phi_star * phi_star) + 1.0 / v)
        mu_new = mu + phi_new * phi_new * g_j * (score - e)

        return replace(
            player,
            rating=mu_new * SCALE + BASE_RATING,
            deviation=min(phi_new * SCALE, MAX_DEVIATION),
            volatility=max(sigma, MIN_VOLATILITY),
            games_played=player.games_played + 1,
        )

    def _solve_volatility(self, phi: float, sigma: float, v: float, delta: float) -> float:
        tau = self.tau
        a = math.log(sigma * sigma)
        phi2 = phi * phi
        delta2 = delta * delta

        def f(x: float) -> float:
            ex = math.exp(x)
            denom = phi2 + v + ex
            return (ex * (delta2 - phi2 - v - ex)) / (2.0 * denom * denom) - (x - a) / (tau * tau)

        big_a = a
        if delta2 > phi2 + v:
            big_b = math.log(delta2 - phi2 - v)
        else:
            k = 1
            while f(a - k * tau) < 0:
                k += 1
                if k > self.max_iterations:
                    raise NumericNonConvergence('volatility bracket not found', iterations=k)
            big_b = a - k * tau

        f_a = f(big_a)
        f_b = f(big_b)
        iterations = 0
        while abs(big_b - big_a) > self.epsilon:
            iterations += 1
            if iterations > self.max_iterations:
                raise NumericNonConvergence('volatility root-find did not converge', iterations=iterations)
            big_c = big_a + (big_a - big_b) * f_a / (f_b - f_a)
            f_c = f(big_c)
            if f_c * f_b <= 0:
                big_a, f_a = big_b, f_b
            else:
                # Illinois step: halve the retained endpoint's value
                f_a = f_a / 2.0
            big_b, f_b = big_c, f_c

        return math.exp(big_a / 2.0)


default_engine = Glicko2()
