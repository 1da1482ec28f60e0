"""Error taxonomy for the workflow engine."""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for all engine errors."""


class StructuralError(WorkflowError):
    """A workflow graph or definition is malformed and must not execute."""

    def __init__(self, reason: str, message: str):
        self.reason = reason
        super().__init__(message)


class DispatchError(WorkflowError):
    """Raised for an unknown action type or AI sub-type."""


class HandlerError(WorkflowError):
    """An action handler reported an error result."""


class SuspendedStepError(WorkflowError):
    """A step could not complete because a collaborator is unavailable."""


class CycleLimitError(WorkflowError):
    """A node was revisited more often than the configured bound allows."""

    def __init__(self, node_id: str, limit: int):
        self.node_id = node_id
        self.limit = limit
        super().__init__(f"Node {node_id} exceeded the visit limit of {limit}")


class ExecutionCancelled(WorkflowError):
    """The execution was cancelled between two steps."""


class DefinitionNotFound(WorkflowError):
    """A workflow or rule id does not resolve."""


class EntityNotFound(WorkflowError):
    """The target entity of a trigger does not exist."""


class ImmutableExecutionError(WorkflowError):
    """A terminal execution or action record was mutated."""


class ExecutionNotFound(WorkflowError):
    """An execution id does not resolve."""


class StorageError(WorkflowError):
    """A definition file could not be written or removed."""
