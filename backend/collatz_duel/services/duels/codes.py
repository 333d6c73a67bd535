import random
from typing import Container, Optional

from .errors import PreconditionViolation

# Uppercase letters and digits without the easily confused 0/O, 1/I/L.
CODE_ALPHABET = 'ABCDEFGHJKMNPQRSTUVWXYZ23456789'


def generate_session_code(live_codes: Container[str], length: int = 6, fallback_length: int = 7,
                          max_attempts: int = 20, rng: Optional[random.Random] = None) -> str:
    """Generate a short duel code that is not among ``live_codes``.

    After ``max_attempts`` collisions at ``length`` the code grows to
    ``fallback_length`` for another ``max_attempts`` tries.

    Raises:
        PreconditionViolation: no free code was found at either length.
    """
    rng = rng or random
    for size in (length, fallback_length):
        for _ in range(max_attempts):
            code = ''.join(rng.choices(CODE_ALPHABET, k=size))
            if code not in live_codes:
                return code
    raise PreconditionViolation('Could not allocate a duel code, try again')
