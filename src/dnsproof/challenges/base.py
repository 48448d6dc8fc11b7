"""Base class and dispatch for challenge solvers."""

from abc import ABC, abstractmethod
from typing import Any, ClassVar

from dnsproof.exceptions import UnsupportedChallengeError
from dnsproof.models import ChallengeType


class ChallengeSolver(ABC):
    """Performs, and later reverses, the side effect that proves control.

    Each subclass handles one :class:`ChallengeType`, named by ``kind``.
    """

    kind: ClassVar[ChallengeType]

    @abstractmethod
    def solve(self, key_authorization: str) -> None:
        """Make the key authorization observable to the authority.

        Raises:
            SolverError: If the side effect could not be created or confirmed.
        """
        ...

    @abstractmethod
    def cleanup(self, key_authorization: str) -> None:
        """Remove whatever :meth:`solve` created.

        Raises:
            SolverError: If removal fails.
        """
        ...


_SOLVERS: dict[str, type[ChallengeSolver]] = {}


def register_solver(cls: type[ChallengeSolver]) -> type[ChallengeSolver]:
    """Class decorator adding a solver to the dispatch table under its ``kind``."""
    _SOLVERS[str(cls.kind)] = cls
    return cls


def supported_challenge_types() -> list[str]:
    return sorted(_SOLVERS)


def create_solver(challenge_type: str, **solver_data: Any) -> ChallengeSolver:
    """Build the solver for ``challenge_type`` from its solver data.

    Args:
        challenge_type: Challenge kind, e.g. ``"dns-01"``.
        **solver_data: Constructor arguments of that kind's solver.

    Raises:
        UnsupportedChallengeError: If no solver handles ``challenge_type``.
    """
    try:
        cls = _SOLVERS[str(challenge_type)]
    except KeyError:
        raise UnsupportedChallengeError(str(challenge_type)) from None
    return cls(**solver_data)
