from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from latencyprofile.src.errors import UnknownProfileError

NODE_MONITOR_GRACE_PERIOD_ARGUMENT = "node-monitor-grace-period"

# Rendered the way kube-controller-manager's observed config writes durations.
DEFAULT_NODE_MONITOR_GRACE_PERIOD = "40s"
MEDIUM_NODE_MONITOR_GRACE_PERIOD = "2m0s"
LOW_NODE_MONITOR_GRACE_PERIOD = "5m0s"


class WorkerLatencyProfile(str, Enum):
    """Values accepted in ``config.openshift.io/v1`` ``Node.spec.workerLatencyProfile``."""

    UNSET = ""
    DEFAULT = "Default"
    MEDIUM = "MediumUpdateAverageReaction"
    LOW = "LowUpdateSlowReaction"


@dataclass(frozen=True)
class ResolvedProfile:
    """Expected controller-manager arguments for one worker latency profile.

    ``unset`` is true only for the empty profile, in which case ``settings``
    is empty and callers must take the ``ProfileEmpty`` path instead of
    evaluating revisions.
    """

    profile: WorkerLatencyProfile
    settings: dict[str, str] = field(default_factory=dict)

    @property
    def unset(self) -> bool:
        return self.profile is WorkerLatencyProfile.UNSET


def resolve_profile(value: str | None) -> ResolvedProfile:
    """Map a profile selector to the extended arguments it implies.

    Raises :class:`UnknownProfileError` for anything outside the four known
    tokens rather than falling back to an empty mapping.
    """
    try:
        profile = WorkerLatencyProfile(value or "")
    except ValueError as exc:
        raise UnknownProfileError(str(value)) from exc

    match profile:
        case WorkerLatencyProfile.UNSET:
            return ResolvedProfile(profile=profile)
        case WorkerLatencyProfile.DEFAULT:
            grace_period = DEFAULT_NODE_MONITOR_GRACE_PERIOD
        case WorkerLatencyProfile.MEDIUM:
            grace_period = MEDIUM_NODE_MONITOR_GRACE_PERIOD
        case WorkerLatencyProfile.LOW:
            grace_period = LOW_NODE_MONITOR_GRACE_PERIOD
        case _:
            raise UnknownProfileError(str(value))

    return ResolvedProfile(
        profile=profile,
        settings={NODE_MONITOR_GRACE_PERIOD_ARGUMENT: grace_period},
    )
