"""Challenge solvers."""

from dnsproof.challenges.base import (
    ChallengeSolver,
    create_solver,
    register_solver,
    supported_challenge_types,
)
from dnsproof.challenges.dns01 import Dns01Solver

__all__ = [
    "ChallengeSolver",
    "Dns01Solver",
    "create_solver",
    "register_solver",
    "supported_challenge_types",
]
