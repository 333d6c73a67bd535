import random
from enum import Enum
from typing import Optional

from .errors import InputError


MIN_START_STEPS = 5
MAX_START_STEPS = 20
START_RANGE = (10, 109)


class Verdict(str, Enum):
    CORRECT = 'correct'
    INCORRECT = 'incorrect'
    INVALID = 'invalid'


def step(n: int) -> int:
    """Return the single valid successor of ``n``."""
    if n < 1:
        raise ValueError(f"Collatz step is undefined for {n}")
    return n // 2 if n % 2 == 0 else 3 * n + 1


def total_steps(n: int) -> int:
    """Count applications of :func:`step` needed to reach 1."""
    count = 0
    while n != 1:
        n = step(n)
        count += 1
    return count


def generate_start_number(rng: Optional[random.Random] = None,
                          min_steps: int = MIN_START_STEPS,
                          max_steps: int = MAX_START_STEPS,
                          low: int = START_RANGE[0],
                          high: int = START_RANGE[1],
                          max_attempts: int = 1000) -> int:
    """Pick a start number whose step depth lies in ``[min_steps, max_steps]``.

    Rejection-samples uniformly over ``[low, high]``. If the sampler runs out of
    attempts the first qualifying number in the range is used instead.
    """
    rng = rng or random
    for _ in range(max_attempts):
        candidate = rng.randint(low, high)
        if min_steps <= total_steps(candidate) <= max_steps:
            return candidate
    for candidate in range(low, high + 1):
        if min_steps <= total_steps(candidate) <= max_steps:
            return candidate
    raise ValueError(f"No start number in [{low}, {high}] has {min_steps}-{max_steps} steps")


def parse_answer(raw) -> int:
    if isinstance(raw, bool):
        raise InputError('Answer must be a whole number', raw=raw)
    if isinstance(raw, int):
        return raw
    text = str(raw).strip() if raw is not None else ''
    try:
        return int(text, 10)
    except ValueError:
        raise InputError('Answer must be a whole number', raw=raw)


def validate(current: int, submitted) -> Verdict:
    """Compare ``submitted`` with the successor of ``current``.

    Non-numeric input yields ``Verdict.INVALID`` rather than ``INCORRECT`` so
    the caller can re-prompt without ending the player's run.
    """
    try:
        value = parse_answer(submitted)
    except InputError:
        return Verdict.INVALID
    return Verdict.CORRECT if value == step(current) else Verdict.INCORRECT
