"""Duel domain services: sequence checks, ratings, sessions and coordination.

Nothing in this package imports Flask. Routes and socket handlers build
coordinators around these pieces, keeping transport concerns separated from
the duel rules.
"""

from .collatz import Verdict, step, total_steps, generate_start_number, validate
from .coordinator import DuelCoordinator, DuelSettings, DuelView, CoordinatorState, Phase
from .errors import DuelError, InputError, PreconditionViolation, NumericNonConvergence, StoreUnavailable
from .glicko import Glicko2, PlayerRating, classify
from .session import DuelSession, PlayerSlot, Outcome, determine_winner, is_terminal
from .store import SessionStore, MemoryStore, DisconnectHook, Subscription, DELETE
