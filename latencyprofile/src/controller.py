from __future__ import annotations

import logging
import queue
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api, CustomObjectsApi

from latencyprofile.src.conditions import derive_conditions, operator_degraded_condition
from latencyprofile.src.config import ControllerConfig
from latencyprofile.src.errors import (
    ConflictRetriesExhaustedError,
    LatencyProfileError,
    SnapshotDecodeError,
    SnapshotLookupError,
    UnknownProfileError,
)
from latencyprofile.src.kube import (
    KUBE_CONTROLLER_MANAGER,
    NODE_CONFIG,
    get_cluster_object,
    read_config_map,
)
from latencyprofile.src.metrics import METRICS
from latencyprofile.src.profiles import ResolvedProfile, resolve_profile
from latencyprofile.src.snapshots import (
    fetch_revision_snapshots,
    snapshots_converged,
    unique_revisions,
)
from latencyprofile.src.status import (
    DEFAULT_BACKOFF,
    Backoff,
    update_node_config_conditions,
    update_operator_conditions,
)

_STOP_TOKEN = "__stop__"


@dataclass(frozen=True)
class WatchSource:
    """One watched input: a list function plus the arguments it is streamed with."""

    name: str
    list_fn: Callable[..., Any]
    kwargs: dict[str, Any] = field(default_factory=dict)


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``).

    Condition ``lastTransitionTime`` values use this second-precision form,
    which is what the API server stores for ``metav1.Time``.
    """
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _resource_version(obj: Any) -> str | None:
    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(obj, "metadata", None), "resource_version", None)


def _error_reason(exc: BaseException) -> str:
    if isinstance(exc, UnknownProfileError):
        return "unknown_profile"
    if isinstance(exc, SnapshotDecodeError):
        return "snapshot_decode"
    if isinstance(exc, SnapshotLookupError):
        return "snapshot_lookup"
    if isinstance(exc, ConflictRetriesExhaustedError):
        return "status_conflict"
    if isinstance(exc, ApiException):
        return "api"
    return "unexpected"


class LatencyProfileController:
    """Reports whether the cluster's worker latency profile has reached every
    kube-controller-manager revision.

    Each sync resolves ``spec.workerLatencyProfile`` on the ``Node`` config
    object into expected extended arguments, reads the ``config-<revision>``
    ConfigMap for every distinct revision the operator reports, and publishes
    the verdict as ``KubeControllerManagerDegraded`` / ``Progressing`` /
    ``Complete`` conditions under ``status.workerLatencyProfileStatus``.

    Independently of that verdict, every sync reports its own health as the
    ``LatencyProfileControllerDegraded`` condition on the operator resource,
    so "the rollout is stuck" and "the controller is broken" stay distinct.

    Syncs are driven by three watch streams (node config, operator, target
    namespace ConfigMaps) and a periodic resync.  Watch threads only enqueue
    triggers; a single loop drains and coalesces them, so syncs never
    overlap.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        custom_api: CustomObjectsApi,
        config: ControllerConfig | None = None,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
        status_backoff: Backoff = DEFAULT_BACKOFF,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.core_api = core_api
        self.custom_api = custom_api
        self.config = config or ControllerConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn
        self.status_backoff = status_backoff
        self.sleep_fn = sleep_fn

        self.ready = threading.Event()
        self.aborted = threading.Event()
        self._external_stop = threading.Event()
        self._triggers: queue.Queue[str] = queue.Queue()
        self._next_resync: float | None = None
        self._active_watchers: set[watch.Watch] = set()
        self._watcher_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync(self) -> None:
        """Run one reconcile cycle and report its outcome on the operator resource.

        The operational condition is written whether or not the cycle
        succeeded.  A failure to write it takes precedence; otherwise the
        cycle's own error, if any, is re-raised.
        """
        started = time.monotonic()
        sync_error: Exception | None = None
        try:
            self.update_latency_profile_synced_status()
        except Exception as exc:
            sync_error = exc

        try:
            update_operator_conditions(
                self.custom_api,
                self.config.operator_name,
                [operator_degraded_condition(sync_error)],
                self.now_fn,
                backoff=self.status_backoff,
                sleep_fn=self.sleep_fn,
            )
        except Exception as exc:
            if sync_error is not None:
                self.logger.error("Latency profile sync failed: %s", sync_error)
            self._record_failure(exc)
            raise
        finally:
            METRICS.sync_duration_seconds.observe(time.monotonic() - started)

        if sync_error is not None:
            self._record_failure(sync_error)
            raise sync_error
        METRICS.syncs_total.labels(result="success").inc()

    @staticmethod
    def _record_failure(exc: BaseException) -> None:
        METRICS.syncs_total.labels(result="error").inc()
        METRICS.sync_errors_total.labels(reason=_error_reason(exc)).inc()

    def update_latency_profile_synced_status(self) -> bool:
        """Evaluate the fleet and commit the rollout conditions.

        Returns True when the node config status was written.  A missing
        node config object is not an error; there is simply nothing to
        report on.  Unknown profiles and lookup failures raise before any
        condition is touched, so the published verdict is never half-computed.
        """
        node_config = self._read_node_config()
        if node_config is None:
            self._reset_rollout_gauges()
            self.logger.info(
                "Node config %s not found; skipping latency profile status",
                self.config.node_config_name,
            )
            return False

        spec = node_config.get("spec") or {}
        resolved = resolve_profile(spec.get("workerLatencyProfile"))

        if resolved.unset:
            # Arguments applied for a previous profile are not checked for removal.
            conditions = derive_conditions(resolved)
            self._reset_rollout_gauges()
        else:
            conditions = derive_conditions(resolved, self._revisions_converged(resolved))

        updated = update_node_config_conditions(
            self.custom_api,
            self.config.node_config_name,
            conditions,
            self.now_fn,
            backoff=self.status_backoff,
            sleep_fn=self.sleep_fn,
        )
        if updated:
            self.logger.info(
                "Updated worker latency profile status (profile=%r)",
                resolved.profile.value,
            )
        return updated

    def _read_node_config(self) -> dict[str, Any] | None:
        try:
            return get_cluster_object(self.custom_api, NODE_CONFIG, self.config.node_config_name)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise

    @staticmethod
    def _reset_rollout_gauges() -> None:
        METRICS.observed_revisions.set(0)
        METRICS.converged.set(0)

    def _revisions_converged(self, resolved: ResolvedProfile) -> bool:
        operator = get_cluster_object(
            self.custom_api, KUBE_CONTROLLER_MANAGER, self.config.operator_name
        )
        revisions = unique_revisions((operator.get("status") or {}).get("nodeStatuses"))
        METRICS.observed_revisions.set(len(revisions))

        snapshots = fetch_revision_snapshots(
            lambda name, namespace: read_config_map(self.core_api, name, namespace),
            revisions,
            namespace=self.config.target_namespace,
            base_name=self.config.config_map_base_name,
            max_workers=self.config.lookup_workers,
        )
        converged = snapshots_converged(resolved.settings, snapshots)
        METRICS.converged.set(1 if converged else 0)
        self.logger.info(
            "Evaluated %d revision(s) for profile %r: converged=%s",
            len(revisions),
            resolved.profile.value,
            converged,
        )
        return converged

    # ------------------------------------------------------------------
    # Trigger queue
    # ------------------------------------------------------------------

    def enqueue(self, source: str) -> None:
        """Request a sync.  Bursts of triggers are coalesced by :meth:`process_next`."""
        METRICS.triggers_total.labels(source=source).inc()
        self._triggers.put(source)

    def _drain_triggers(self) -> set[str]:
        sources: set[str] = set()
        while True:
            try:
                sources.add(self._triggers.get_nowait())
            except queue.Empty:
                return sources

    def process_next(self, timeout: float = 1.0) -> frozenset[str] | None:
        """Wait up to *timeout* seconds for triggers and run at most one sync.

        Every trigger queued by the time the sync starts is folded into it.
        When no trigger arrives before the resync deadline, a ``resync``
        sync runs instead.  Returns the trigger sources that were handled, or
        ``None`` when nothing ran.
        """
        wait = timeout
        if self._next_resync is not None:
            wait = max(0.0, min(timeout, self._next_resync - time.monotonic()))

        try:
            sources = {self._triggers.get(timeout=wait)}
        except queue.Empty:
            if self._next_resync is None or time.monotonic() < self._next_resync:
                return None
            METRICS.triggers_total.labels(source="resync").inc()
            sources = {"resync"}

        sources |= self._drain_triggers()
        sources.discard(_STOP_TOKEN)
        if not sources:
            return None

        self._run_sync(sources)
        self._next_resync = time.monotonic() + self.config.resync_seconds
        return frozenset(sources)

    def _run_sync(self, sources: set[str]) -> None:
        self.logger.debug("Running sync for trigger(s): %s", ", ".join(sorted(sources)))
        try:
            self.sync()
        except LatencyProfileError as exc:
            self.logger.error("Latency profile sync failed: %s", exc)
        except ApiException as exc:
            self.logger.error(
                "Latency profile sync failed: Kubernetes API error (status=%s, reason=%s)",
                exc.status,
                exc.reason,
            )
        except Exception:
            self.logger.exception("Unexpected error during latency profile sync")

    # ------------------------------------------------------------------
    # Watches
    # ------------------------------------------------------------------

    def watch_sources(self) -> tuple[WatchSource, ...]:
        return (
            WatchSource(
                name="node_config",
                list_fn=self.custom_api.list_cluster_custom_object,
                kwargs={
                    "group": NODE_CONFIG.group,
                    "version": NODE_CONFIG.version,
                    "plural": NODE_CONFIG.plural,
                    "field_selector": f"metadata.name={self.config.node_config_name}",
                },
            ),
            WatchSource(
                name="operator",
                list_fn=self.custom_api.list_cluster_custom_object,
                kwargs={
                    "group": KUBE_CONTROLLER_MANAGER.group,
                    "version": KUBE_CONTROLLER_MANAGER.version,
                    "plural": KUBE_CONTROLLER_MANAGER.plural,
                    "field_selector": f"metadata.name={self.config.operator_name}",
                },
            ),
            WatchSource(
                name="configmaps",
                list_fn=self.core_api.list_namespaced_config_map,
                kwargs={"namespace": self.config.target_namespace},
            ),
        )

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt every open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active = list(self._active_watchers)
        for watcher in active:
            watcher.stop()
        self._triggers.put(_STOP_TOKEN)

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _abort(self, message: str, *args: Any) -> None:
        self.logger.error(message, *args)
        self.aborted.set()
        self.request_stop()

    def watch_resource(self, source: WatchSource, stop: threading.Event) -> None:
        """Stream events for one source and turn each into a sync trigger.

        Reconnects with jittered exponential backoff (capped at 30 s) on
        errors.  ``410 Gone`` restarts the stream without a resource version.
        ``401`` / ``403`` abort the whole controller, since retrying cannot
        fix missing RBAC.
        """
        resource_version: str | None = None
        backoff_seconds = 1
        stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watchers.add(watcher)
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(source=source.name).inc()
                stream_count += 1
                stream = watcher.stream(
                    source.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.config.watch_timeout_seconds,
                    **source.kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    resource_version = _resource_version(obj) or resource_version
                    self.enqueue(source.name)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "Watch on %s expired, restarting without resource version", source.name
                    )
                    resource_version = None
                    continue
                METRICS.watch_errors_total.labels(source=source.name).inc()
                if exc.status in {401, 403}:
                    self._abort(
                        "Kubernetes API watch on %s denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        source.name,
                        exc.status,
                    )
                    return
                self.logger.exception("Kubernetes API watch error on %s", source.name)
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", source.name)
                METRICS.watch_errors_total.labels(source=source.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    self._active_watchers.discard(watcher)

    def _start_watchers(self, stop: threading.Event) -> list[threading.Thread]:
        threads = []
        for source in self.watch_sources():
            thread = threading.Thread(
                target=self.watch_resource,
                args=(source, stop),
                name=f"watch-{source.name}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)
        return threads

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: start the watches, then sync on triggers until shutdown.

        An initial ``startup`` trigger guarantees one sync right away; after
        that syncs follow watch events, or the resync interval when the
        cluster is quiet.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self.aborted.clear()
        self._next_resync = None

        threads = self._start_watchers(stop)
        self.ready.set()
        self.logger.info(
            "Watching %s/%s, %s/%s and config maps in %s (resync every %ss)",
            NODE_CONFIG.display_name,
            self.config.node_config_name,
            KUBE_CONTROLLER_MANAGER.display_name,
            self.config.operator_name,
            self.config.target_namespace,
            self.config.resync_seconds,
        )
        self.enqueue("startup")

        try:
            while not self._should_stop(stop):
                self.process_next(timeout=1.0)
        finally:
            self.request_stop()
            for thread in threads:
                thread.join(timeout=self.config.watch_timeout_seconds)
            self.ready.clear()
