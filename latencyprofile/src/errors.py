from __future__ import annotations


class LatencyProfileError(RuntimeError):
    """Base class for errors that abort a sync cycle."""


class UnknownProfileError(LatencyProfileError):
    """Raised when ``spec.workerLatencyProfile`` holds an unrecognized value.

    The previously published status is left untouched; guessing a mapping
    for an unknown tier would report a verdict nobody asked for.
    """

    def __init__(self, profile: str) -> None:
        super().__init__(f"unknown worker latency profile found: {profile!r}")
        self.profile = profile


class SnapshotLookupError(LatencyProfileError):
    """Raised when the ConfigMap for a running revision cannot be read."""

    def __init__(self, name: str, namespace: str, detail: str) -> None:
        super().__init__(f"failed to read config map {name} in namespace {namespace}: {detail}")
        self.name = name
        self.namespace = namespace


class SnapshotNotFoundError(SnapshotLookupError):
    """Raised when a revision reported by the operator has no ConfigMap."""

    def __init__(self, name: str, namespace: str) -> None:
        super().__init__(name, namespace, "not found")


class SnapshotDecodeError(LatencyProfileError):
    """Raised when a revision ConfigMap does not carry a decodable config document."""


class ConflictRetriesExhaustedError(LatencyProfileError):
    """Raised when a status write kept hitting ``409 Conflict`` until the backoff ran out."""

    def __init__(self, resource: str, attempts: int) -> None:
        super().__init__(
            f"status update for {resource} still conflicting after {attempts} attempt(s)"
        )
        self.resource = resource
        self.attempts = attempts
