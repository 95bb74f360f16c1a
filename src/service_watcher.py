# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.

"""Watch Kubernetes services and republish the events relevant to certificate management."""

import enum
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

import kubernetes

from kubernetes_service import API_ERRORS, GENCERT_LABEL, ClusterError

logger = logging.getLogger(__name__)


class EventKind(enum.Enum):
    """The two logical event channels consumed by the controller."""

    CREATED = "created"
    DELETED = "deleted"


@dataclass(frozen=True)
class ServiceEvent:
    """Metadata of a service as observed by a watch event."""

    kind: EventKind
    name: str
    namespace: str
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def gencert(self) -> str:
        """Value of the lifecycle label; empty when the label is absent."""
        return self.labels.get(GENCERT_LABEL, "")

    @property
    def identity(self) -> str:
        return f"{self.namespace}/{self.name}"


def classify(event_type: str, service: kubernetes.client.V1Service) -> Optional[ServiceEvent]:
    """Map a raw watch event to the event the controller should act upon.

    Additions and deletions are always forwarded. Updates are forwarded as creations only
    when they carry an issuance request (`gencert: "true"`), so settled services are not
    reprocessed on every unrelated change.

    Returns:
        The event to publish, or None if the event is irrelevant.
    """
    meta = service.metadata
    labels = dict(meta.labels or {})

    if event_type == "ADDED":
        kind = EventKind.CREATED
    elif event_type == "MODIFIED":
        if labels.get(GENCERT_LABEL) != "true":
            return None
        kind = EventKind.CREATED
    elif event_type == "DELETED":
        kind = EventKind.DELETED
    else:
        return None

    return ServiceEvent(kind=kind, name=meta.name or "", namespace=meta.namespace or "", labels=labels)


class ServiceWatcher:
    """Long-lived subscription to service events, published on a queue.

    Publishing blocks while the queue is full, so a slow consumer holds back the watch
    instead of events being dropped. A single stream keeps per-service ordering.
    """

    def __init__(
        self,
        events: "queue.Queue[ServiceEvent]",
        namespace: str = "",
        api: Optional[kubernetes.client.CoreV1Api] = None,
        reconnect_delay: float = 1.0,
    ):
        """Set up the watcher.

        Args:
            events: queue the classified events are published on.
            namespace: Optional; restrict the watch to one namespace, cluster-wide if empty.
            api: Optional; CoreV1Api to use, defaults to one on the default client.
            reconnect_delay: Optional; pause before re-establishing a broken stream.
        """
        self.events = events
        self.namespace = namespace
        self.api = api or kubernetes.client.CoreV1Api()
        self.reconnect_delay = reconnect_delay
        self.failure: Optional[BaseException] = None
        self._stop = threading.Event()
        self._watch: Optional[kubernetes.watch.Watch] = None
        self._thread: Optional[threading.Thread] = None

    def _list_func(self):
        if self.namespace:
            return self.api.list_namespaced_service, {"namespace": self.namespace}
        return self.api.list_service_for_all_namespaces, {}

    def _publish(self, event: ServiceEvent) -> None:
        while not self._stop.is_set():
            try:
                self.events.put(event, timeout=1.0)
                return
            except queue.Full:
                continue

    def run(self) -> None:
        """Stream events until stopped.

        A stream ending normally is re-established from the last seen resource version.
        Once events have been received, a broken stream is logged and re-established
        after `reconnect_delay` seconds.

        Raises:
            ClusterError: if the watch cannot be established in the first place.
        """
        func, kwargs = self._list_func()
        resource_version = None
        connected = False

        while not self._stop.is_set():
            self._watch = kubernetes.watch.Watch()
            stream_kwargs = dict(kwargs)
            if resource_version:
                stream_kwargs["resource_version"] = resource_version
            try:
                for raw in self._watch.stream(func, **stream_kwargs):
                    connected = True
                    if raw["type"] == "ERROR":
                        status = raw.get("raw_object") or {}
                        if status.get("code") == 410:
                            # history expired; start over with a fresh list
                            logger.info("Watch expired, restarting from a fresh list")
                            resource_version = None
                        else:
                            logger.warning("Watch error: %s", status.get("message", status))
                            self._stop.wait(self.reconnect_delay)
                        break

                    service = raw["object"]
                    resource_version = service.metadata.resource_version
                    event = classify(raw["type"], service)
                    logger.debug("Service %s: %s", raw["type"].lower(), service.metadata.name)
                    if event is not None:
                        self._publish(event)
                    if self._stop.is_set():
                        break
            except API_ERRORS as e:
                if not connected:
                    raise ClusterError(f"Watching services failed: {e}") from e
                if getattr(e, "status", None) == 410:
                    resource_version = None
                logger.warning("Service watch interrupted, reconnecting: %s", e)
                self._stop.wait(self.reconnect_delay)
            finally:
                self._watch.stop()

    def _run_guarded(self) -> None:
        try:
            self.run()
        except Exception as e:
            logger.error("Service watcher stopped: %s", e)
            self.failure = e
            self._stop.set()

    def start(self) -> threading.Thread:
        """Run the watcher on a daemon thread; failures are recorded in `failure`."""
        self._thread = threading.Thread(target=self._run_guarded, name="service-watcher", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stop.set()
        if self._watch is not None:
            self._watch.stop()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()
