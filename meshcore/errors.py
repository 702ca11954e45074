"""Exception hierarchy for the coordination core.

Only two kinds of failure are raised:

- **Contract violations** (``ContractViolation``): the caller handed the core
  something it must never hand it, e.g. routing with zero candidates or
  comparing vectors of different lengths.
- **Not-found conditions** (``NotFoundError``): an operation named an absorption
  candidate or attractor basin that does not exist.

Trust-boundary events (rejection, adversarial ejection) are state transitions
plus emitted events, never exceptions.

Usage::

    from meshcore.errors import NoCandidatesError

    try:
        router.route(message, candidates)
    except NoCandidatesError:
        ...
"""

from __future__ import annotations


class MeshError(Exception):
    """Base class for every error raised by meshcore."""

    code = "MESH_ERROR"

    def __init__(self, message: str, code: str | None = None):
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(message)


class ContractViolation(MeshError, ValueError):
    """The caller broke an input contract."""

    code = "CONTRACT_VIOLATION"


class NoCandidatesError(ContractViolation):
    """Routing was requested with an empty candidate list."""

    code = "NO_CANDIDATES"


class DimensionMismatchError(ContractViolation):
    """Two vectors that must share a dimension do not."""

    code = "DIMENSION_MISMATCH"

    def __init__(self, left: int, right: int):
        self.left = left
        self.right = right
        super().__init__(f"Vector dimension mismatch: {left} vs {right}")


class NotFoundError(MeshError, KeyError):
    """An operation referenced an id the engine does not know."""

    code = "NOT_FOUND"

    def __str__(self) -> str:
        # KeyError.__str__ would quote the message
        return self.message


class CandidateNotFoundError(NotFoundError):
    code = "CANDIDATE_NOT_FOUND"

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"No candidate found for agent {agent_id}")


class BasinNotFoundError(NotFoundError):
    code = "BASIN_NOT_FOUND"

    def __init__(self, basin_id: str):
        self.basin_id = basin_id
        super().__init__(f"Basin {basin_id} not found")
