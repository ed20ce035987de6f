"""
Pure domain layer.

Value objects, the clock abstraction and validation predicates, with no
dependency on the ORM, the database or I/O.
"""

from procure_kernel.domain.access import AccessPolicy
from procure_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from procure_kernel.domain.validation import ValidationFailure
from procure_kernel.domain.values import Action, ActorRef, ErrorKind, MovementType

__all__ = [
    "AccessPolicy",
    "Action",
    "ActorRef",
    "Clock",
    "DeterministicClock",
    "ErrorKind",
    "MovementType",
    "SystemClock",
    "ValidationFailure",
]
