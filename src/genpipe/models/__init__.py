"""ORM models package -- re-exports all models and the Base class."""

from genpipe.models.base import Base
from genpipe.models.credit import (
    CreditAccount,
    CreditTransaction,
    Reservation,
    Subscription,
)
from genpipe.models.generation import (
    DeviceRegistration,
    GenerationRecord,
)

__all__ = [
    "Base",
    "CreditAccount",
    "CreditTransaction",
    "Reservation",
    "Subscription",
    "DeviceRegistration",
    "GenerationRecord",
]
