from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from kubernetes.client import ApiException

from latencyprofile.src.profiles import ResolvedProfile

CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

REASON_PROFILE_EMPTY = "ProfileEmpty"
REASON_PROFILE_UPDATED = "ProfileUpdated"
REASON_PROFILE_UPDATE_TRIGGERED = "ProfileUpdateTriggered"

MESSAGE_PROFILE_EMPTY = "worker latency profile not set on cluster"
MESSAGE_PROFILE_UPDATED = "all kube-controller-manager(s) have updated latency profile"
MESSAGE_PROFILE_UPDATING = "kube-controller-manager(s) are updating latency profile"

OPERATOR_DEGRADED_CONDITION = "LatencyProfileControllerDegraded"


class ConditionKind(str, Enum):
    """Condition types published under ``status.workerLatencyProfileStatus``."""

    DEGRADED = "KubeControllerManagerDegraded"
    PROGRESSING = "KubeControllerManagerProgressing"
    COMPLETED = "KubeControllerManagerComplete"


@dataclass(frozen=True)
class Condition:
    """A desired condition value, before it is merged into a stored list.

    ``lastTransitionTime`` is not part of the desired value; it is assigned
    by :func:`set_condition` when the stored status actually changes.
    """

    type: str
    status: str = CONDITION_UNKNOWN
    reason: str = ""
    message: str = ""

    def to_dict(self, last_transition_time: str) -> dict[str, str]:
        return {
            "type": self.type,
            "status": self.status,
            "lastTransitionTime": last_transition_time,
            "reason": self.reason,
            "message": self.message,
        }


def derive_conditions(resolved: ResolvedProfile, converged: bool = False) -> tuple[Condition, ...]:
    """Map the profile and the fleet verdict onto the three rollout conditions.

    ``converged`` is ignored for the unset profile.  Degraded is always False
    here; it is kept as its own condition so other failure classes can set it
    without touching Progressing or Completed.
    """
    if resolved.unset:
        return (
            Condition(
                type=ConditionKind.DEGRADED.value,
                status=CONDITION_FALSE,
                reason=REASON_PROFILE_EMPTY,
                message=MESSAGE_PROFILE_EMPTY,
            ),
            Condition(
                type=ConditionKind.PROGRESSING.value,
                status=CONDITION_FALSE,
                reason=REASON_PROFILE_EMPTY,
            ),
            Condition(
                type=ConditionKind.COMPLETED.value,
                status=CONDITION_FALSE,
                reason=REASON_PROFILE_EMPTY,
            ),
        )

    if converged:
        return (
            Condition(
                type=ConditionKind.DEGRADED.value,
                status=CONDITION_FALSE,
                reason=REASON_PROFILE_UPDATED,
            ),
            Condition(
                type=ConditionKind.PROGRESSING.value,
                status=CONDITION_FALSE,
                reason=REASON_PROFILE_UPDATED,
            ),
            Condition(
                type=ConditionKind.COMPLETED.value,
                status=CONDITION_TRUE,
                reason=REASON_PROFILE_UPDATED,
                message=MESSAGE_PROFILE_UPDATED,
            ),
        )

    return (
        Condition(
            type=ConditionKind.DEGRADED.value,
            status=CONDITION_FALSE,
            reason=REASON_PROFILE_UPDATE_TRIGGERED,
        ),
        Condition(
            type=ConditionKind.PROGRESSING.value,
            status=CONDITION_TRUE,
            reason=REASON_PROFILE_UPDATE_TRIGGERED,
            message=MESSAGE_PROFILE_UPDATING,
        ),
        Condition(
            type=ConditionKind.COMPLETED.value,
            status=CONDITION_FALSE,
            reason=REASON_PROFILE_UPDATE_TRIGGERED,
        ),
    )


def operator_degraded_condition(error: BaseException | None) -> Condition:
    """Build the operational condition reported after every sync."""
    if error is None:
        return Condition(type=OPERATOR_DEGRADED_CONDITION, status=CONDITION_FALSE)
    return Condition(
        type=OPERATOR_DEGRADED_CONDITION,
        status=CONDITION_TRUE,
        reason="Error",
        message=describe_error(error),
    )


def describe_error(error: BaseException) -> str:
    """Render *error* as a condition message that stays the same across retries.

    ``str(ApiException)`` includes response headers such as ``Audit-Id`` and
    ``Date`` that change per request, so API errors are reduced to status,
    reason and the ``message`` of the returned ``Status`` object.
    """
    if not isinstance(error, ApiException):
        return str(error)
    summary = " ".join(str(part) for part in (error.status, error.reason) if part)
    detail = _status_message(error.body)
    if detail:
        return f"{summary}: {detail}" if summary else detail
    return summary or "Kubernetes API error"


def _status_message(body: Any) -> str:
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if not body or not isinstance(body, str):
        return ""
    try:
        document = json.loads(body)
    except ValueError:
        return ""
    if isinstance(document, dict) and isinstance(document.get("message"), str):
        return document["message"]
    return ""


def find_condition(conditions: list[dict[str, Any]], condition_type: str) -> dict[str, Any] | None:
    for condition in conditions:
        if condition.get("type") == condition_type:
            return condition
    return None


def set_condition(conditions: list[dict[str, Any]], new: Condition, now: str) -> None:
    """Merge *new* into *conditions* in place.

    ``lastTransitionTime`` moves to *now* only when the condition is added or
    its status changes.  Reason and message are always overwritten.
    """
    existing = find_condition(conditions, new.type)
    if existing is None:
        conditions.append(new.to_dict(last_transition_time=now))
        return

    if existing.get("status") != new.status:
        existing["status"] = new.status
        existing["lastTransitionTime"] = now

    existing["reason"] = new.reason
    existing["message"] = new.message
