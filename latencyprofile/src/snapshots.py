from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import ApiException

from latencyprofile.src.errors import (
    SnapshotDecodeError,
    SnapshotLookupError,
    SnapshotNotFoundError,
)

LOGGER = logging.getLogger(__name__)

CONFIG_MAP_KEY = "config.yaml"


@dataclass(frozen=True)
class ConfigSnapshot:
    """Decoded kube-controller-manager config observed for one revision."""

    revision: int
    config_map_name: str
    extended_arguments: dict[str, list[str]] = field(default_factory=dict)


def revision_config_map_name(base_name: str, revision: int) -> str:
    return f"{base_name}-{revision}"


def unique_revisions(node_statuses: Iterable[Mapping[str, Any]] | None) -> list[int]:
    """Return the distinct ``currentRevision`` values in first-seen order.

    Fleets routinely run many replicas on few revisions, so lookups are
    issued per revision rather than per replica.  A node status without a
    ``currentRevision`` counts as revision ``0``.
    """
    seen: set[int] = set()
    revisions: list[int] = []
    for node_status in node_statuses or ():
        revision = int(node_status.get("currentRevision") or 0)
        if revision in seen:
            continue
        seen.add(revision)
        revisions.append(revision)
    return revisions


def decode_snapshot(config_map: Any, revision: int) -> ConfigSnapshot:
    """Decode the JSON config document stored under ``config.yaml``.

    Raises :class:`SnapshotDecodeError` when the key is missing, the payload
    is not JSON, or ``extendedArguments`` is not a mapping of string lists.
    """
    metadata = getattr(config_map, "metadata", None)
    name = getattr(metadata, "name", None) or "<unknown>"
    namespace = getattr(metadata, "namespace", None) or "<unknown>"
    data = getattr(config_map, "data", None) or {}

    raw = data.get(CONFIG_MAP_KEY)
    if raw is None:
        raise SnapshotDecodeError(
            f"could not find {CONFIG_MAP_KEY} in {name} config map from {namespace} namespace"
        )

    try:
        document = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise SnapshotDecodeError(
            f"could not decode {CONFIG_MAP_KEY} in {name} config map: {exc}"
        ) from exc
    if not isinstance(document, dict):
        raise SnapshotDecodeError(f"{CONFIG_MAP_KEY} in {name} config map is not an object")

    raw_arguments = document.get("extendedArguments") or {}
    if not isinstance(raw_arguments, dict):
        raise SnapshotDecodeError(f"extendedArguments in {name} config map is not an object")

    extended_arguments: dict[str, list[str]] = {}
    for argument, values in raw_arguments.items():
        if values is None:
            values = []
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            raise SnapshotDecodeError(
                f"extendedArguments[{argument!r}] in {name} config map is not a list of strings"
            )
        extended_arguments[argument] = list(values)

    return ConfigSnapshot(
        revision=revision,
        config_map_name=name,
        extended_arguments=extended_arguments,
    )


def fetch_revision_snapshots(
    read_config_map: Callable[[str, str], Any],
    revisions: Iterable[int],
    *,
    namespace: str,
    base_name: str,
    max_workers: int = 4,
) -> list[ConfigSnapshot]:
    """Fetch and decode one snapshot per distinct revision.

    Lookups run concurrently, but every lookup finishes before this returns;
    the first failure (in revision order) is raised and no partial result is
    produced.  ``read_config_map`` is called as ``read_config_map(name,
    namespace)``.
    """
    distinct = list(dict.fromkeys(revisions))
    if not distinct:
        return []

    def _fetch(revision: int) -> ConfigSnapshot:
        name = revision_config_map_name(base_name, revision)
        try:
            config_map = read_config_map(name, namespace)
        except ApiException as exc:
            if exc.status == 404:
                raise SnapshotNotFoundError(name, namespace) from exc
            raise SnapshotLookupError(name, namespace, str(exc.reason)) from exc
        return decode_snapshot(config_map, revision)

    workers = max(1, min(max_workers, len(distinct)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="snapshot") as pool:
        futures = [pool.submit(_fetch, revision) for revision in distinct]
        # Leaving the context manager waits for every outstanding lookup.
    snapshots = [future.result() for future in futures]

    LOGGER.debug(
        "Fetched %d config snapshot(s) for revisions %s",
        len(snapshots),
        ", ".join(str(r) for r in distinct),
    )
    return snapshots


def snapshot_matches(expected: Mapping[str, str], snapshot: ConfigSnapshot) -> bool:
    """Return True if *snapshot* carries every expected argument value.

    An argument missing from the snapshot fails.  An argument present with an
    empty value list asserts nothing and passes.  Otherwise the first value
    must equal the expected value exactly.
    """
    for argument, expected_value in expected.items():
        values = snapshot.extended_arguments.get(argument)
        if values is None:
            return False
        if values and values[0] != expected_value:
            return False
    return True


def snapshots_converged(
    expected: Mapping[str, str], snapshots: Iterable[ConfigSnapshot]
) -> bool:
    """Return True only when every snapshot matches every expected argument."""
    for snapshot in snapshots:
        if not snapshot_matches(expected, snapshot):
            LOGGER.info(
                "Revision %d (%s) has not picked up the expected arguments yet",
                snapshot.revision,
                snapshot.config_map_name,
            )
            return False
    return True
