"""Result of a reconcile handler."""

from dataclasses import dataclass
from enum import StrEnum

from chart_controller.manifest import BaseManifest


class Outcome(StrEnum):
    """How a reconcile handler finished."""

    DONE = "Done"
    """The desired state was applied."""

    PENDING = "Pending"
    """Work is in progress; the resource should be reconciled again later."""

    SKIPPED = "Skipped"
    """The resource is not reconciled by this controller."""


@dataclass(frozen=True)
class ReconcileResult:
    """The outcome of a handler and the resource as it was left."""

    outcome: Outcome
    obj: BaseManifest | None = None
    message: str | None = None

    @property
    def pending(self) -> bool:
        """Return True if the resource must be reconciled again."""
        return self.outcome == Outcome.PENDING

    def __str__(self) -> str:
        if self.message:
            return f"{self.outcome}: {self.message}"
        return str(self.outcome)
