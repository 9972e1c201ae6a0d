"""Failure kinds that are absorbed inside the service and never reach a client."""

from __future__ import annotations


class CollaboratorDegraded(RuntimeError):
    """An external provider (understanding, search, analysis) failed or timed out."""

    def __init__(self, collaborator: str, message: str) -> None:
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator


class StorageTransient(RuntimeError):
    """The counter store, cache or persistent store could not be reached."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation
