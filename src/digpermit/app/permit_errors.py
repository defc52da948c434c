from __future__ import annotations

from typing import Iterable


class PermitEngineError(Exception):
    """Base class for rejected permit operations.

    A rejected operation never changes the permit. ``reasons`` lists every
    failed precondition when more than one was evaluated.
    """

    def __init__(self, message: str = "", *, reasons: Iterable[str] = ()) -> None:
        collected = tuple(str(reason).strip() for reason in reasons if str(reason).strip())
        detail = message.strip() if message.strip() else "; ".join(collected)
        super().__init__(detail or self.__class__.__name__)
        self.reasons: tuple[str, ...] = collected or ((detail,) if detail else ())


class ValidationError(PermitEngineError, ValueError):
    """Malformed or missing required input."""


class NotFoundError(PermitEngineError, LookupError):
    """Reference to a permit, checklist item, crew member or entry that does not exist."""


class DuplicateError(PermitEngineError, ValueError):
    """Crew registration collides with an existing name."""


class AuthorizationError(PermitEngineError):
    """Identity is not entitled to the requested custody or closure act."""


class InvalidStateError(PermitEngineError, RuntimeError):
    """Operation is not permitted in the permit's current lifecycle status."""
