"""
dagmesh Exceptions
==================

Public operations report expected failures (unknown ids, illegal transitions,
invalid graphs) as structured results. These exceptions are raised for
programmer errors and used internally to drive retries.
"""


class DagMeshError(Exception):
    """Base class for all dagmesh errors."""


class GraphValidationError(DagMeshError):
    """Raised when an algorithm that requires a valid DAG is given an invalid one."""

    def __init__(self, message: str, cycle: list[str] | None = None):
        super().__init__(message)
        self.cycle = cycle or []


class ExecutionError(DagMeshError):
    """Raised when a dispatched action fails."""


class ExecutionTimeout(ExecutionError):
    """Raised when a dispatched action misses its deadline."""


class RoutingError(ExecutionError):
    """Raised when a workflow step cannot be delivered to its agent."""


class LifecycleError(DagMeshError, ValueError):
    """Raised on an illegal lifecycle transition, e.g. re-creating an active DAG."""
