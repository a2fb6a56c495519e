from kin.services import (
    completion_service,
    points_ledger,
    store,
    streak_service,
    verification_machine,
    weekly_service,
)


__all__ = [
    "completion_service",
    "points_ledger",
    "store",
    "streak_service",
    "verification_machine",
    "weekly_service",
]
