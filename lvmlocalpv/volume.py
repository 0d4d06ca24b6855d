"""Controller that provisions and removes logical volumes for LVMVolume objects."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .resources import (
    GROUP_OPENEBS_IO,
    VERSION_V1ALPHA1,
    NotFoundError,
    ObjectMeta,
    VolumeGroup,
    meta_namespace_key,
    object_meta_from_dict,
    split_meta_namespace_key,
)
from .workqueue import ItemFastSlowRateLimiter, QueueController, RateLimitingQueue

logger = logging.getLogger(__name__)

_CAPACITY = re.compile(r"[+-]?[0-9]+")
_CACHE_SYNC_POLL = 0.1


class ErrorCode(str, Enum):
    """Why provisioning of a volume failed."""

    INTERNAL = "Internal"
    INSUFFICIENT_CAPACITY = "InsufficientCapacity"


class VolumeState(str, Enum):
    """Provisioning state of a volume."""

    PENDING = "Pending"
    READY = "Ready"
    FAILED = "Failed"


@dataclass
class VolumeError:
    """Error recorded in the status of a volume that failed to provision."""

    code: ErrorCode = ErrorCode.INTERNAL
    message: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code.value, "message": self.message}


class ExecError(Exception):
    """A failed LVM command, carrying what the command printed."""

    def __init__(self, message: str, output: bytes | str = b""):
        super().__init__(message)
        self.output = output

    @property
    def output_text(self) -> str:
        if isinstance(self.output, bytes):
            return self.output.decode("utf-8", errors="replace")
        return self.output


@dataclass
class LVMVolumeSpec:
    """Desired properties of a volume."""

    owner_node_id: str = ""
    vol_group: str = ""
    vg_pattern: str = ""
    capacity: str = ""
    shared: str = ""
    thin_provision: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "ownerNodeID": self.owner_node_id,
            "volGroup": self.vol_group,
            "vgPattern": self.vg_pattern,
            "capacity": self.capacity,
            "shared": self.shared,
            "thinProvision": self.thin_provision,
        }


@dataclass
class LVMVolumeStatus:
    """Observed provisioning state of a volume."""

    state: str = ""
    error: VolumeError | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"state": str(getattr(self.state, "value", self.state))}
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data


@dataclass
class LVMVolume:
    """A logical volume requested on a node."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: LVMVolumeSpec = field(default_factory=LVMVolumeSpec)
    status: LVMVolumeStatus = field(default_factory=LVMVolumeStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": f"{GROUP_OPENEBS_IO}/{VERSION_V1ALPHA1}",
            "kind": "LVMVolume",
            "metadata": self.metadata.to_dict(),
            "spec": self.spec.to_dict(),
            "status": self.status.to_dict(),
        }


class VolumeBackend(Protocol):
    """Operations on the node's volume groups and on stored volume objects."""

    def list_volume_groups(self) -> list[VolumeGroup]: ...

    def create_volume(self, vol: LVMVolume) -> None: ...

    def destroy_volume(self, vol: LVMVolume) -> None: ...

    def remove_vol_finalizer(self, vol: LVMVolume) -> None: ...

    def update_vol_info(self, vol: LVMVolume, state: VolumeState) -> None: ...

    def update_vol_group(self, vol: LVMVolume, vg_name: str) -> LVMVolume: ...


class VolumeLister(Protocol):
    def get(self, namespace: str, name: str) -> Mapping[str, Any]: ...


def _mapping(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise TypeError(f"{key} must be a mapping, got {type(value).__name__}")
    return value


def _string(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {value!r}")
    return value


def volume_from_unstructured(obj: Any) -> LVMVolume:
    """Convert the serialized form of an LVMVolume into an LVMVolume."""
    if not isinstance(obj, Mapping):
        raise TypeError(f"cannot convert {obj!r} to an lvm volume")
    metadata = obj.get("metadata")
    if not isinstance(metadata, Mapping):
        raise TypeError(f"object has no metadata: {obj!r}")
    spec = _mapping(obj, "spec")
    status = _mapping(obj, "status")
    error_data = _mapping(status, "error")
    error = None
    if error_data:
        error = VolumeError(
            code=ErrorCode(_string(error_data, "code")),
            message=_string(error_data, "message"),
        )
    return LVMVolume(
        metadata=object_meta_from_dict(metadata),
        spec=LVMVolumeSpec(
            owner_node_id=_string(spec, "ownerNodeID"),
            vol_group=_string(spec, "volGroup"),
            vg_pattern=_string(spec, "vgPattern"),
            capacity=_string(spec, "capacity"),
            shared=_string(spec, "shared"),
            thin_provision=_string(spec, "thinProvision"),
        ),
        status=LVMVolumeStatus(state=_string(status, "state"), error=error),
    )


def _quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


class VolController(QueueController):
    """Creates and destroys the logical volumes owned by this node."""

    def __init__(self, lister: VolumeLister, backend: VolumeBackend, node_id: str):
        # Failed items are retried after 5s for 12 attempts, then every 30s.
        super().__init__(
            RateLimitingQueue(ItemFastSlowRateLimiter(5.0, 30.0, 12), name="Vol")
        )
        self.lister = lister
        self.backend = backend
        self.node_id = node_id

    def is_deletion_candidate(self, vol: LVMVolume) -> bool:
        return vol.metadata.deletion_timestamp is not None

    def sync_handler(self, key: str) -> None:
        try:
            namespace, name = split_meta_namespace_key(key)
        except ValueError:
            logger.error("invalid resource key: %s", key)
            return
        logger.info("Getting lvmvol object name:%s, ns:%s from cache", name, namespace)
        try:
            obj = self.lister.get(namespace, name)
        except NotFoundError:
            logger.error("lvmvolume '%s' has been deleted", key)
            return
        self.sync_vol(volume_from_unstructured(obj))

    def add_vol(self, obj: Any) -> None:
        vol = self.get_structured_object(obj)
        if vol is None:
            logger.error("Couldn't get Vol object %r", obj)
            return
        if vol.spec.owner_node_id != self.node_id:
            return
        logger.info("Got add event for Vol %s", vol.name)
        self.enqueue_vol(vol)

    def update_vol(self, old_obj: Any, new_obj: Any) -> None:
        vol = self.get_structured_object(new_obj)
        if vol is None:
            logger.error("Couldn't get Vol object %r", new_obj)
            return
        if vol.spec.owner_node_id != self.node_id:
            return
        if self.is_deletion_candidate(vol):
            logger.info(
                "Got update event for deleted Vol %s, Deletion timestamp %s",
                vol.name,
                vol.metadata.deletion_timestamp,
            )
            self.enqueue_vol(vol)

    def delete_vol(self, obj: Any) -> None:
        vol = self.get_structured_object(obj)
        if vol is None:
            if not isinstance(obj, Mapping):
                logger.error("couldnt type assert obj: %r to unstructured obj", obj)
                return
            vol = obj.get("obj")
            if not isinstance(vol, LVMVolume):
                logger.error("tombstone contained object that is not a lvmvolume %r", obj)
                return
        if vol.spec.owner_node_id != self.node_id:
            return
        logger.info("Got delete event for Vol %s", vol.name)
        self.enqueue_vol(vol)

    def enqueue_vol(self, vol: Any) -> None:
        try:
            key = meta_namespace_key(vol)
        except TypeError as exc:
            logger.error("%s", exc)
            return
        self.workqueue.add(key)

    def get_structured_object(self, obj: Any) -> LVMVolume | None:
        """Convert an event object into an LVMVolume, or None if it is not one."""
        try:
            return volume_from_unstructured(obj)
        except (TypeError, ValueError) as exc:
            logger.error("err %s, While converting unstructured obj to typed object", exc)
            return None

    def sync_vol(self, vol: LVMVolume) -> None:
        """Bring the volume on the node in line with the LVMVolume object."""
        if self.is_deletion_candidate(vol):
            self.backend.destroy_volume(vol)
            self.backend.remove_vol_finalizer(vol)
            return

        if vol.status.state == VolumeState.FAILED:
            logger.warning(
                "Skipping retrying lvm volume provisioning as its already in failed state: %s",
                vol.status.error,
            )
            return
        if vol.status.state == VolumeState.READY:
            logger.info("lvm volume already provisioned")
            return

        # A volume group already chosen is tried first.
        if vol.spec.vol_group:
            try:
                self.backend.create_volume(vol)
            except Exception:  # noqa: BLE001 - fall back to the priority list
                pass
            else:
                self.backend.update_vol_info(vol, VolumeState.READY)
                return

        vgs = self.get_vg_priority_list(vol)

        error: Exception
        if not vgs:
            error = RuntimeError(
                "no vg available to serve volume request having "
                f"regex={_quote(vol.spec.vg_pattern)} & capacity={_quote(vol.spec.capacity)}"
            )
            logger.error("lvm volume %s - %s", vol.name, error)
        else:
            for vg in vgs:
                # Record the volume group first so a crash cannot leak a volume.
                try:
                    vol = self.backend.update_vol_group(vol, vg.name)
                except Exception as exc:
                    logger.error("failed to update volGroup to %s: %s", vg.name, exc)
                    raise
                try:
                    self.backend.create_volume(vol)
                except Exception as exc:  # noqa: BLE001 - try the next group
                    error = exc
                    continue
                self.backend.update_vol_info(vol, VolumeState.READY)
                return

        # Mark provisioning failed so the volume can be rescheduled elsewhere.
        vol.status.error = self.transform_lvm_error(error)
        self.backend.update_vol_info(vol, VolumeState.FAILED)

    def get_vg_priority_list(self, vol: LVMVolume) -> list[VolumeGroup]:
        """Volume groups that can hold the volume, least free space first."""
        try:
            pattern = re.compile(vol.spec.vg_pattern)
        except re.error as exc:
            raise ValueError(
                f"invalid regular expression {vol.spec.vg_pattern} "
                f"for lvm volume {vol.name}: {exc}"
            ) from exc
        if not _CAPACITY.fullmatch(vol.spec.capacity):
            raise ValueError(
                f"invalid requested capacity {vol.spec.capacity} for lvm volume {vol.name}"
            )
        capacity = int(vol.spec.capacity)

        try:
            vgs = self.backend.list_volume_groups()
        except Exception as exc:
            raise RuntimeError(f"failed to list vgs available on node: {exc}") from exc

        thin = vol.spec.thin_provision == "yes"
        candidates = [
            vg
            for vg in vgs
            if pattern.search(vg.name) and (thin or vg.free >= capacity)
        ]
        return sorted(candidates, key=lambda vg: vg.free)

    def transform_lvm_error(self, err: Exception) -> VolumeError:
        """Turn a provisioning failure into the error stored in the status."""
        vol_err = VolumeError(code=ErrorCode.INTERNAL, message=str(err))
        if isinstance(err, ExecError) and "insufficient free space" in err.output_text.lower():
            vol_err.code = ErrorCode.INSUFFICIENT_CAPACITY
        return vol_err

    def run(self, threadiness: int, stop_event: threading.Event) -> None:
        """Run workers until stop_event is set, then shut the queue down."""
        try:
            logger.info("Starting Vol controller")
            logger.info("Waiting for informer caches to sync")
            has_synced = getattr(self.lister, "has_synced", None)
            if has_synced is not None:
                while not has_synced():
                    if stop_event.wait(_CACHE_SYNC_POLL):
                        raise RuntimeError("failed to wait for caches to sync")
            logger.info("Starting Vol workers")
            self.start_workers(threadiness, stop_event)
            logger.info("Started Vol workers")
            stop_event.wait()
            logger.info("Shutting down Vol workers")
        finally:
            self.workqueue.shut_down()