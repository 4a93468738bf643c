"""Exceptions related to chart-controller.

Every exception raised out of a reconcile handler is retryable: the work
queue that invoked the handler backs off and calls it again.
"""

__all__ = [
    "ChartControllerException",
    "InputException",
    "ObjectNotFoundError",
    "ApplyException",
    "JobReplacedError",
]


class ChartControllerException(Exception):
    """Generic base exception used for this library."""


class InputException(ChartControllerException):
    """Raised when the input objects or values are not formatted as expected."""


class ObjectNotFoundError(ChartControllerException):
    """Raised when an object is not found in a cache or the store."""

    def __init__(self, kind: str, namespace: str | None, name: str) -> None:
        resource = f"{namespace}/{name}" if namespace else name
        super().__init__(f"{kind} {resource} not found")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class ApplyException(ChartControllerException):
    """Raised when a desired object set could not be applied."""


class JobReplacedError(ApplyException):
    """Raised after an existing Job was deleted so it can be recreated.

    Job specs are immutable once created, so a change is applied by deleting
    the old Job and letting the next reconcile create it again.
    """

    def __init__(self, namespace: str, name: str) -> None:
        super().__init__(f"replace job {namespace}/{name}")
        self.namespace = namespace
        self.name = name
