from __future__ import annotations

import copy
import logging
import random
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException, CustomObjectsApi

from latencyprofile.src.conditions import Condition, set_condition
from latencyprofile.src.errors import ConflictRetriesExhaustedError
from latencyprofile.src.kube import (
    KUBE_CONTROLLER_MANAGER,
    NODE_CONFIG,
    ClusterResource,
    get_cluster_object,
    replace_cluster_object_status,
)
from latencyprofile.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

NODE_CONDITIONS_PATH = ("workerLatencyProfileStatus", "conditions")
OPERATOR_CONDITIONS_PATH = ("conditions",)


@dataclass(frozen=True)
class Backoff:
    """Retry schedule for conflicting status writes.

    The defaults match the usual retry-on-conflict schedule: four attempts
    starting at 10 ms, growing five-fold, with 10 % jitter.
    """

    steps: int = 4
    duration: float = 0.01
    factor: float = 5.0
    jitter: float = 0.1
    cap: float = 5.0

    def delays(self) -> Iterator[float]:
        delay = self.duration
        for _ in range(max(0, self.steps - 1)):
            yield delay * (1 + self.jitter * random.random())  # noqa: S311
            delay = min(delay * self.factor, self.cap)


DEFAULT_BACKOFF = Backoff()


def update_status(
    resource: str,
    read: Callable[[], dict[str, Any]],
    write: Callable[[dict[str, Any]], Any],
    mutate: Callable[[dict[str, Any]], dict[str, Any]],
    *,
    backoff: Backoff = DEFAULT_BACKOFF,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> bool:
    """Read-modify-write an object's ``status`` under optimistic concurrency.

    Every attempt reads the object fresh so the write always carries the
    ``resourceVersion`` of its own read.  *mutate* receives a deep copy of
    the current status and returns the desired one.  When the result equals
    what was read, nothing is written and ``False`` is returned.

    Only ``409 Conflict`` is retried; any other ``ApiException`` propagates
    immediately.  When the schedule runs out,
    :class:`ConflictRetriesExhaustedError` is raised.
    """
    delays = backoff.delays()
    attempts = 0
    while True:
        attempts += 1
        obj = read()
        old_status = obj.get("status") or {}
        new_status = mutate(copy.deepcopy(old_status))
        if new_status == old_status:
            LOGGER.debug("Status of %s already up to date; skipping write", resource)
            return False

        try:
            write({**obj, "status": new_status})
        except ApiException as exc:
            if exc.status != 409:
                raise
            METRICS.status_conflicts_total.labels(resource=resource).inc()
            delay = next(delays, None)
            if delay is None:
                raise ConflictRetriesExhaustedError(resource, attempts) from exc
            LOGGER.info(
                "Status update for %s conflicted (attempt %d); retrying in %.3fs",
                resource,
                attempts,
                delay,
            )
            sleep_fn(delay)
            continue

        METRICS.status_writes_total.labels(resource=resource).inc()
        return True


def merge_conditions(
    status: dict[str, Any],
    path: tuple[str, ...],
    conditions: Iterable[Condition],
    now: str,
) -> dict[str, Any]:
    """Merge *conditions* into the list found at *path* inside *status*.

    Intermediate objects are created when missing.  *status* is modified in
    place and returned.
    """
    container = status
    for key in path[:-1]:
        child = container.get(key)
        if not isinstance(child, dict):
            child = {}
            container[key] = child
        container = child

    stored = container.get(path[-1])
    if not isinstance(stored, list):
        stored = []
        container[path[-1]] = stored

    for condition in conditions:
        set_condition(stored, condition, now)
    return status


def update_conditions(
    custom_api: CustomObjectsApi,
    resource: ClusterResource,
    name: str,
    path: tuple[str, ...],
    conditions: Iterable[Condition],
    now_fn: Callable[[], str],
    *,
    backoff: Backoff = DEFAULT_BACKOFF,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> bool:
    """Commit *conditions* to the status of ``resource/name``.  Returns True if written."""
    desired = tuple(conditions)
    return update_status(
        resource=f"{resource.display_name}/{name}",
        read=lambda: get_cluster_object(custom_api, resource, name),
        write=lambda body: replace_cluster_object_status(custom_api, resource, name, body),
        mutate=lambda status: merge_conditions(status, path, desired, now_fn()),
        backoff=backoff,
        sleep_fn=sleep_fn,
    )


def update_node_config_conditions(
    custom_api: CustomObjectsApi,
    name: str,
    conditions: Iterable[Condition],
    now_fn: Callable[[], str],
    **kwargs: Any,
) -> bool:
    return update_conditions(
        custom_api, NODE_CONFIG, name, NODE_CONDITIONS_PATH, conditions, now_fn, **kwargs
    )


def update_operator_conditions(
    custom_api: CustomObjectsApi,
    name: str,
    conditions: Iterable[Condition],
    now_fn: Callable[[], str],
    **kwargs: Any,
) -> bool:
    return update_conditions(
        custom_api,
        KUBE_CONTROLLER_MANAGER,
        name,
        OPERATOR_CONDITIONS_PATH,
        conditions,
        now_fn,
        **kwargs,
    )
