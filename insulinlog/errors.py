# insulinlog/errors.py
from __future__ import annotations

from datetime import datetime


class StoreError(RuntimeError):
    """The patient/dose store could not be reached or refused a statement."""


class SubscriptionCheckError(RuntimeError):
    """The subscription scan itself failed (per-patient failures are only reported)."""


class ActivationError(ValueError):
    """An activation toggle was requested with invalid arguments."""


class DoseRestrictionError(ValueError):
    """A Basal dose was logged too soon after the previous Basal dose."""

    def __init__(self, last_basal: datetime, can_log_next_at: datetime) -> None:
        self.last_basal = last_basal
        self.can_log_next_at = can_log_next_at
        super().__init__(
            f"basal dose too soon: last={last_basal.isoformat()} "
            f"next_allowed={can_log_next_at.isoformat()}"
        )
