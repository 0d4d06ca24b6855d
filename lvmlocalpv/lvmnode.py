"""Controller that keeps this node's LVMNode object in line with its volume groups."""

from __future__ import annotations

import dataclasses
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
    OwnerReference,
    VolumeGroup,
    meta_namespace_key,
    object_meta_from_dict,
    split_meta_namespace_key,
    volume_group_from_dict,
)
from .workqueue import QueueController, RateLimitingQueue, default_controller_rate_limiter

logger = logging.getLogger(__name__)

_CACHE_SYNC_POLL = 0.1


@dataclass
class LVMNode:
    """The volume groups available on a node."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    volume_groups: list[VolumeGroup] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def owner_references(self) -> list[OwnerReference]:
        return self.metadata.owner_references

    @owner_references.setter
    def owner_references(self, refs: list[OwnerReference]) -> None:
        self.metadata.owner_references = refs

    def to_dict(self) -> dict[str, Any]:
        return {
            "apiVersion": f"{GROUP_OPENEBS_IO}/{VERSION_V1ALPHA1}",
            "kind": "LVMNode",
            "metadata": self.metadata.to_dict(),
            "volumeGroups": [vg.to_dict() for vg in self.volume_groups],
        }


class NodeBackend(Protocol):
    """Operations on the node's volume groups and on stored node objects."""

    def list_volume_groups(self) -> list[VolumeGroup]: ...

    def create_node(self, node: LVMNode) -> None: ...

    def update_node(self, node: LVMNode) -> None: ...


class NodeLister(Protocol):
    def get(self, namespace: str, name: str) -> Mapping[str, Any]: ...


def node_from_unstructured(obj: Any) -> LVMNode:
    """Convert the serialized form of an LVMNode into an LVMNode."""
    if not isinstance(obj, Mapping):
        raise TypeError(f"cannot convert {obj!r} to an lvm node")
    metadata = obj.get("metadata")
    if not isinstance(metadata, Mapping):
        raise TypeError(f"object has no metadata: {obj!r}")
    groups = obj.get("volumeGroups") or []
    if not isinstance(groups, list):
        raise TypeError(f"volumeGroups must be a list, got {type(groups).__name__}")
    volume_groups = []
    for group in groups:
        if not isinstance(group, Mapping):
            raise TypeError(f"volume group must be a mapping, got {group!r}")
        volume_groups.append(volume_group_from_dict(group))
    return LVMNode(metadata=object_meta_from_dict(metadata), volume_groups=volume_groups)


class NodeController(QueueController):
    """Publishes the volume groups of this node in its LVMNode object."""

    def __init__(
        self,
        lister: NodeLister,
        backend: NodeBackend,
        node_id: str,
        namespace: str,
        owner_ref: OwnerReference,
        poll_interval: float,
    ):
        super().__init__(RateLimitingQueue(default_controller_rate_limiter(), name="Node"))
        self.lister = lister
        self.backend = backend
        self.node_id = node_id
        self.namespace = namespace
        self.owner_ref = owner_ref
        self.poll_interval = poll_interval

    def sync_handler(self, key: str) -> None:
        try:
            namespace, name = split_meta_namespace_key(key)
        except ValueError:
            logger.error("invalid resource key: %s", key)
            return
        self.sync_node(namespace, name)

    def sync_node(self, namespace: str, name: str) -> None:
        """Create or update the LVMNode object so it matches the node."""
        try:
            cached = self.lister.get(namespace, name)
        except NotFoundError:
            cached = None

        node: LVMNode | None = None
        if cached is not None:
            node = self.get_structured_object(cached)
            if node is None:
                raise ValueError(f"couldn't get node object {cached!r}")

        vgs = self.backend.list_volume_groups()

        if node is None:
            node = LVMNode(
                metadata=ObjectMeta(
                    name=name,
                    namespace=namespace,
                    owner_references=[dataclasses.replace(self.owner_ref)],
                ),
                volume_groups=list(vgs),
            )
            logger.info("lvm node controller: creating new node object for %s", node)
            try:
                self.backend.create_node(node)
            except Exception as exc:
                raise RuntimeError(f"create lvm node {namespace}/{name}: {exc}") from exc
            logger.info("lvm node controller: created node object %s/%s", namespace, name)
            return

        update_required = False
        refs, changed = self.is_owner_refs_update_required(node.owner_references)
        if changed:
            logger.info(
                "lvm node controller: node owner references updated current=%s, required=%s",
                node.owner_references,
                refs,
            )
            node.owner_references = refs
            update_required = True

        if node.volume_groups != list(vgs):
            logger.info(
                "lvm node controller: node volume groups updated current=%s, required=%s",
                node.volume_groups,
                vgs,
            )
            node.volume_groups = list(vgs)
            update_required = True

        if not update_required:
            return

        logger.info("lvm node controller: updating node object with %s", node)
        try:
            self.backend.update_node(node)
        except Exception as exc:
            raise RuntimeError(f"update lvm node {namespace}/{name}: {exc}") from exc
        logger.info("lvm node controller: updated node object %s/%s", namespace, name)

    def get_structured_object(self, obj: Any) -> LVMNode | None:
        """Convert an event object into an LVMNode, or None if it is not one."""
        try:
            return node_from_unstructured(obj)
        except (TypeError, ValueError) as exc:
            logger.error("err %s, While converting unstructured obj to typed object", exc)
            return None

    def add_node(self, obj: Any) -> None:
        node = self.get_structured_object(obj)
        if node is None:
            logger.error("Couldn't get node object %r", obj)
            return
        logger.info("Got add event for lvm node %s/%s", node.namespace, node.name)
        self.enqueue_node(node)

    def update_node(self, old_obj: Any, new_obj: Any) -> None:
        node = self.get_structured_object(new_obj)
        if node is None:
            logger.error("Couldn't get node object %r", new_obj)
            return
        logger.info("Got update event for lvm node %s/%s", node.namespace, node.name)
        self.enqueue_node(node)

    def delete_node(self, obj: Any) -> None:
        node = self.get_structured_object(obj)
        if node is None:
            if not isinstance(obj, Mapping):
                logger.error("couldnt type assert obj: %r to unstructured obj", obj)
                return
            node = obj.get("obj")
            if not isinstance(node, LVMNode):
                logger.error("tombstone contained object that is not a lvmnode %r", obj)
                return
        logger.info("Got delete event for node %s/%s", node.namespace, node.name)
        self.enqueue_node(node)

    def enqueue_node(self, node: LVMNode) -> None:
        """Queue the node's key if it is this node's object."""
        if node.namespace != self.namespace or node.name != self.node_id:
            logger.warning("skipping lvm node object %s/%s", node.namespace, node.name)
            return
        try:
            key = meta_namespace_key(node)
        except TypeError as exc:
            logger.error("%s", exc)
            return
        self.workqueue.add(key)

    def is_owner_refs_update_required(
        self, owner_refs: list[OwnerReference]
    ) -> tuple[list[OwnerReference], bool]:
        """Return the owner references the node should carry and whether they changed."""
        required = self.owner_ref
        refs = list(owner_refs)
        for index, ref in enumerate(refs):
            if ref.uid != required.uid:
                continue
            if ref.controller != required.controller:
                refs[index] = dataclasses.replace(ref, controller=required.controller)
                return refs, True
            return refs, False
        refs.append(dataclasses.replace(required))
        return refs, True

    def run(self, threadiness: int, stop_event: threading.Event) -> None:
        """Run workers and resync every poll interval until stop_event is set."""
        try:
            logger.info("Starting Node controller")
            logger.info("Waiting for informer caches to sync")
            has_synced = getattr(self.lister, "has_synced", None)
            if has_synced is not None:
                while not has_synced():
                    if stop_event.wait(_CACHE_SYNC_POLL):
                        raise RuntimeError("failed to wait for caches to sync")
            logger.info("Starting Node workers")
            self.start_workers(threadiness, stop_event)
            logger.info("Started Node workers")
            item = f"{self.namespace}/{self.node_id}"
            while not stop_event.is_set():
                self.workqueue.add(item)
                stop_event.wait(self.poll_interval)
            logger.info("Shutting down Node controller")
        finally:
            self.workqueue.shut_down()