"""Controller that creates and removes LVM snapshots for LVMSnapshot objects."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from .resources import (
    GROUP_OPENEBS_IO,
    VERSION_V1ALPHA1,
    NotFoundError,
    ObjectMeta,
    meta_namespace_key,
    object_meta_from_dict,
    split_meta_namespace_key,
)
from .volume import VolumeState
from .workqueue import ItemFastSlowRateLimiter, QueueController, RateLimitingQueue

logger = logging.getLogger(__name__)

# Label on a snapshot naming the volume it was taken from.
LVM_VOL_KEY = "openebs.io/persistent-volume"

_CACHE_SYNC_POLL = 0.1


@dataclass
class LVMSnapshotSpec:
    """Desired properties of a snapshot."""

    owner_node_id: str = ""
    vol_group: str = ""
    snap_size: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "ownerNodeID": self.owner_node_id,
            "volGroup": self.vol_group,
            "snapSize": self.snap_size,
        }


@dataclass
class LVMSnapshotStatus:
    """Observed state of a snapshot."""

    state: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"state": str(getattr(self.state, "value", self.state))}


@dataclass
class LVMSnapshot:
    """A snapshot of a logical volume on a node."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: LVMSnapshotSpec = field(default_factory=LVMSnapshotSpec)
    status: LVMSnapshotStatus = field(default_factory=LVMSnapshotStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def labels(self) -> dict[str, str]:
        return self.metadata.labels

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": f"{GROUP_OPENEBS_IO}/{VERSION_V1ALPHA1}",
            "kind": "LVMSnapshot",
            "metadata": self.metadata.to_dict(),
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }


class SnapshotBackend(Protocol):
    """Operations on the node's snapshots and on stored snapshot objects."""

    def create_snapshot(self, snap: LVMSnapshot) -> None: ...

    def destroy_snapshot(self, snap: LVMSnapshot) -> None: ...

    def remove_snap_finalizer(self, snap: LVMSnapshot) -> None: ...

    def update_snap_info(self, snap: LVMSnapshot) -> None: ...


class SnapshotLister(Protocol):
    def get(self, namespace: str, name: str) -> Mapping[str, Any]: ...


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise TypeError(f"{key} must be a mapping, got {type(value).__name__}")
    return value


def _text(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {value!r}")
    return value


def snapshot_from_unstructured(obj: Any) -> LVMSnapshot:
    """Convert the serialized form of an LVMSnapshot into an LVMSnapshot."""
    if not isinstance(obj, Mapping):
        raise TypeError(f"cannot convert {obj!r} to an lvm snapshot")
    metadata = obj.get("metadata")
    if not isinstance(metadata, Mapping):
        raise TypeError(f"object has no metadata: {obj!r}")
    spec = _section(obj, "spec")
    status = _section(obj, "status")
    return LVMSnapshot(
        metadata=object_meta_from_dict(metadata),
        spec=LVMSnapshotSpec(
            owner_node_id=_text(spec, "ownerNodeID"),
            vol_group=_text(spec, "volGroup"),
            snap_size=_text(spec, "snapSize"),
        ),
        status=LVMSnapshotStatus(state=_text(status, "state")),
    )


class SnapController(QueueController):
    """Creates and destroys the snapshots owned by this node."""

    def __init__(self, lister: SnapshotLister, backend: SnapshotBackend, node_id: str):
        # Failed items are retried after 5s for 12 attempts, then every 30s.
        super().__init__(
            RateLimitingQueue(ItemFastSlowRateLimiter(5.0, 30.0, 12), name="Snap")
        )
        self.lister = lister
        self.backend = backend
        self.node_id = node_id

    def is_deletion_candidate(self, snap: LVMSnapshot) -> bool:
        return snap.metadata.deletion_timestamp is not None

    def sync_handler(self, key: str) -> None:
        try:
            namespace, name = split_meta_namespace_key(key)
        except ValueError:
            logger.error("invalid resource key: %s", key)
            return
        try:
            obj = self.lister.get(namespace, name)
        except NotFoundError:
            logger.error("lvm snapshot '%s' has been deleted", key)
            return
        try:
            snap = snapshot_from_unstructured(obj)
        except (TypeError, ValueError) as exc:
            # An unreadable object carries no state to act on.
            logger.info("err %s, While converting unstructured obj to typed object", exc)
            return
        self.sync_snap(snap)

    def enqueue_snap(self, snap: Any) -> None:
        try:
            key = meta_namespace_key(snap)
        except TypeError as exc:
            logger.error("%s", exc)
            return
        self.workqueue.add(key)

    def sync_snap(self, snap: LVMSnapshot) -> None:
        """Bring the snapshot on the node in line with the LVMSnapshot object."""
        if self.is_deletion_candidate(snap):
            self.backend.destroy_snapshot(snap)
            self.backend.remove_snap_finalizer(snap)
        elif snap.status.state == VolumeState.PENDING:
            self.backend.create_snapshot(snap)
            self.backend.update_snap_info(snap)

    def add_snap(self, obj: Any) -> None:
        snap = self.get_structured_object(obj)
        if snap is None:
            logger.error("Couldn't get snaphot object %r", obj)
            return
        if snap.spec.owner_node_id != self.node_id:
            return
        logger.info("Got add event for Snapshot %s/%s", snap.spec.vol_group, snap.name)
        self.enqueue_snap(snap)

    def update_snap(self, old_obj: Any, new_obj: Any) -> None:
        snap = self.get_structured_object(new_obj)
        if snap is None:
            logger.error("Couldn't get snap object %r", new_obj)
            return
        if snap.spec.owner_node_id != self.node_id:
            return
        # An update matters only once the snapshot is being deleted.
        if self.is_deletion_candidate(snap):
            logger.info(
                "Got update event for Snapshot %s/%s@%s",
                snap.spec.vol_group,
                snap.labels.get(LVM_VOL_KEY, ""),
                snap.name,
            )
            self.enqueue_snap(snap)

    def delete_snap(self, obj: Any) -> None:
        snap = self.get_structured_object(obj)
        if snap is None:
            if not isinstance(obj, Mapping):
                logger.error("couldnt type assert obj: %r to unstructured obj", obj)
                return
            snap = obj.get("obj")
            if not isinstance(snap, LVMSnapshot):
                logger.error(
                    "tombstone contained object that is not a lvmsnapshot %r", obj
                )
                return
        if snap.spec.owner_node_id != self.node_id:
            return
        logger.info(
            "Got delete event for Snaphot %s/%s@%s",
            snap.spec.vol_group,
            snap.labels.get(LVM_VOL_KEY, ""),
            snap.name,
        )
        self.enqueue_snap(snap)

    def get_structured_object(self, obj: Any) -> LVMSnapshot | None:
        """Convert an event object into an LVMSnapshot, or None if it is not one."""
        try:
            return snapshot_from_unstructured(obj)
        except (TypeError, ValueError) as exc:
            logger.error("err %s, While converting unstructured obj to typed object", exc)
            return None

    def run(self, threadiness: int, stop_event: threading.Event) -> None:
        """Run workers until stop_event is set, then shut the queue down."""
        try:
            logger.info("Starting Snap controller")
            logger.info("Waiting for informer caches to sync")
            has_synced = getattr(self.lister, "has_synced", None)
            if has_synced is not None:
                while not has_synced():
                    if stop_event.wait(_CACHE_SYNC_POLL):
                        raise RuntimeError("failed to wait for caches to sync")
            logger.info("Starting Snap workers")
            self.start_workers(threadiness, stop_event)
            logger.info("Started Snap workers")
            stop_event.wait()
            logger.info("Shutting down Snap workers")
        finally:
            self.workqueue.shut_down()