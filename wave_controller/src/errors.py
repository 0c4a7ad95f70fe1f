from __future__ import annotations


class WaveError(RuntimeError):
    """Base class for reconcile failures raised by the engine itself.

    Transport failures surface as ``kubernetes.client.ApiException``; both
    kinds abort the current reconcile attempt and lead to a backed-off retry.
    """


class ChildNotFoundError(WaveError):
    """A required ConfigMap or Secret referenced by a workload does not exist."""

    def __init__(self, kind: str, namespace: str, name: str) -> None:
        super().__init__(f"{kind} {namespace}/{name} not found")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class ConflictRetriesExhaustedError(WaveError):
    """An optimistic-concurrency write kept conflicting past the retry bound."""

    def __init__(self, kind: str, namespace: str, name: str, attempts: int) -> None:
        super().__init__(
            f"Gave up updating {kind} {namespace}/{name} after {attempts} conflicting attempts"
        )
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.attempts = attempts
