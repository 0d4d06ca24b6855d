"""Resource identities and object metadata shared by the controllers."""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

GROUP_OPENEBS_IO = "local.openebs.io"
VERSION_V1ALPHA1 = "v1alpha1"


class NotFoundError(LookupError):
    """Raised when a requested object does not exist."""


@dataclass(frozen=True)
class GroupVersionResource:
    """Identifies a kind of resource served by the API server."""

    group: str
    version: str
    resource: str

    @property
    def group_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version

    def __str__(self) -> str:
        return f"{self.group}/{self.version}, Resource={self.resource}"


NODE_RESOURCE = GroupVersionResource(GROUP_OPENEBS_IO, VERSION_V1ALPHA1, "lvmnodes")
VOLUME_RESOURCE = GroupVersionResource(GROUP_OPENEBS_IO, VERSION_V1ALPHA1, "lvmvolumes")
SNAPSHOT_RESOURCE = GroupVersionResource(
    GROUP_OPENEBS_IO, VERSION_V1ALPHA1, "lvmsnapshots"
)

NODE_CONTROLLER_AGENT = "lvmnode-controller"
VOLUME_CONTROLLER_AGENT = "lvmvolume-controller"
SNAPSHOT_CONTROLLER_AGENT = "lvmsnap-controller"


@dataclass
class OwnerReference:
    """Reference from an object to the object that owns it."""

    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""
    controller: bool | None = None
    block_owner_deletion: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
        }
        if self.controller is not None:
            data["controller"] = self.controller
        if self.block_owner_deletion is not None:
            data["blockOwnerDeletion"] = self.block_owner_deletion
        return data


@dataclass
class ObjectMeta:
    """Metadata common to every stored object."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    resource_version: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    owner_references: list[OwnerReference] = field(default_factory=list)
    deletion_timestamp: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name}
        if self.namespace:
            data["namespace"] = self.namespace
        if self.uid:
            data["uid"] = self.uid
        if self.resource_version:
            data["resourceVersion"] = self.resource_version
        if self.labels:
            data["labels"] = dict(self.labels)
        if self.annotations:
            data["annotations"] = dict(self.annotations)
        if self.finalizers:
            data["finalizers"] = list(self.finalizers)
        if self.owner_references:
            data["ownerReferences"] = [ref.to_dict() for ref in self.owner_references]
        if self.deletion_timestamp is not None:
            data["deletionTimestamp"] = self.deletion_timestamp
        return data


@dataclass
class VolumeGroup:
    """An LVM volume group as seen on a node; sizes are in bytes."""

    name: str = ""
    uuid: str = ""
    size: int = 0
    free: int = 0
    lv_count: int = 0
    pv_count: int = 0
    snap_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "uuid": self.uuid,
            "size": str(self.size),
            "free": str(self.free),
            "lvCount": self.lv_count,
            "pvCount": self.pv_count,
            "snapCount": self.snap_count,
        }


_QUANTITY = re.compile(
    r"^(?P<number>[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)(?P<suffix>[A-Za-z]*)$"
)

_MULTIPLIERS: dict[str, Decimal] = {
    "": Decimal(1),
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "k": Decimal(10) ** 3,
    "M": Decimal(10) ** 6,
    "G": Decimal(10) ** 9,
    "T": Decimal(10) ** 12,
    "P": Decimal(10) ** 15,
    "E": Decimal(10) ** 18,
    "Ki": Decimal(2) ** 10,
    "Mi": Decimal(2) ** 20,
    "Gi": Decimal(2) ** 30,
    "Ti": Decimal(2) ** 40,
    "Pi": Decimal(2) ** 50,
    "Ei": Decimal(2) ** 60,
}


def _parse_quantity(value: Any) -> int:
    """Turn a quantity such as '10Gi' or 1024 into a whole number, rounding up."""
    if isinstance(value, bool):
        raise ValueError(f"invalid quantity {value!r}")
    if isinstance(value, int):
        return value
    if value is None:
        return 0
    text = str(value).strip()
    match = _QUANTITY.match(text)
    if not match or match.group("suffix") not in _MULTIPLIERS:
        raise ValueError(f"invalid quantity {value!r}")
    try:
        number = Decimal(match.group("number"))
    except InvalidOperation as exc:
        raise ValueError(f"invalid quantity {value!r}") from exc
    return math.ceil(number * _MULTIPLIERS[match.group("suffix")])


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a 'namespace/name' key into its namespace and name."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


def _metadata_of(obj: Any) -> ObjectMeta:
    if isinstance(obj, ObjectMeta):
        return obj
    meta = getattr(obj, "metadata", None)
    if isinstance(meta, ObjectMeta):
        return meta
    if isinstance(obj, Mapping) and isinstance(obj.get("metadata"), Mapping):
        return object_meta_from_dict(obj["metadata"])
    raise TypeError(f"object has no meta: {obj!r}")


def meta_namespace_key(obj: Any) -> str:
    """Return the 'namespace/name' key of an object, or its name if unnamespaced."""
    if isinstance(obj, str):
        return obj
    meta = _metadata_of(obj)
    return f"{meta.namespace}/{meta.name}" if meta.namespace else meta.name


def owner_reference_from_dict(data: Mapping[str, Any]) -> OwnerReference:
    """Build an OwnerReference from its serialized form."""
    return OwnerReference(
        api_version=data.get("apiVersion", ""),
        kind=data.get("kind", ""),
        name=data.get("name", ""),
        uid=data.get("uid", ""),
        controller=data.get("controller"),
        block_owner_deletion=data.get("blockOwnerDeletion"),
    )


def object_meta_from_dict(data: Mapping[str, Any]) -> ObjectMeta:
    """Build an ObjectMeta from its serialized form."""
    return ObjectMeta(
        name=data.get("name", ""),
        namespace=data.get("namespace", ""),
        uid=data.get("uid", ""),
        resource_version=data.get("resourceVersion", ""),
        labels=dict(data.get("labels") or {}),
        annotations=dict(data.get("annotations") or {}),
        finalizers=list(data.get("finalizers") or []),
        owner_references=[
            owner_reference_from_dict(ref) for ref in data.get("ownerReferences") or []
        ],
        deletion_timestamp=data.get("deletionTimestamp"),
    )


def volume_group_from_dict(data: Mapping[str, Any]) -> VolumeGroup:
    """Build a VolumeGroup from its serialized form."""
    return VolumeGroup(
        name=data.get("name", ""),
        uuid=data.get("uuid", ""),
        size=_parse_quantity(data.get("size")),
        free=_parse_quantity(data.get("free")),
        lv_count=int(data.get("lvCount", 0)),
        pv_count=int(data.get("pvCount", 0)),
        snap_count=int(data.get("snapCount", 0)),
    )