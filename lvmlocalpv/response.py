"""Builders for the CSI responses returned by the driver."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

_INT32_RANGE = 1 << 32
_INT32_HALF = 1 << 31


def _to_int32(value: int) -> int:
    """Wrap an integer into the signed 32-bit range."""
    return (value + _INT32_HALF) % _INT32_RANGE - _INT32_HALF


@dataclass
class Topology:
    """Accessibility segments of a volume."""

    segments: dict[str, str] = field(default_factory=dict)


@dataclass
class Volume:
    """A provisioned volume as reported to the container orchestrator."""

    volume_id: str = ""
    capacity_bytes: int = 0
    volume_context: dict[str, str] = field(default_factory=dict)
    content_source: Any = None
    accessible_topology: list[Topology] = field(default_factory=list)


@dataclass
class Timestamp:
    """A point in time as seconds and nanoseconds."""

    seconds: int = 0
    nanos: int = 0


@dataclass
class Snapshot:
    """A snapshot as reported to the container orchestrator."""

    size_bytes: int = 0
    snapshot_id: str = ""
    source_volume_id: str = ""
    creation_time: Timestamp | None = None
    ready_to_use: bool = False


@dataclass
class CreateVolumeResponse:
    volume: Volume = field(default_factory=Volume)


@dataclass
class DeleteVolumeResponse:
    pass


@dataclass
class ControllerExpandVolumeResponse:
    capacity_bytes: int = 0
    node_expansion_required: bool = False


@dataclass
class CreateSnapshotResponse:
    snapshot: Snapshot = field(default_factory=Snapshot)


class CreateVolumeResponseBuilder:
    """Builds a CreateVolumeResponse step by step."""

    def __init__(self) -> None:
        self._response = CreateVolumeResponse(volume=Volume())

    def with_name(self, name: str) -> CreateVolumeResponseBuilder:
        self._response.volume.volume_id = name
        return self

    def with_capacity(self, capacity: int) -> CreateVolumeResponseBuilder:
        self._response.volume.capacity_bytes = capacity
        return self

    def with_context(self, ctx: dict[str, str]) -> CreateVolumeResponseBuilder:
        self._response.volume.volume_context = ctx
        return self

    def with_content_source(self, source: Any) -> CreateVolumeResponseBuilder:
        self._response.volume.content_source = source
        return self

    def with_topology(self, topology: dict[str, str]) -> CreateVolumeResponseBuilder:
        self._response.volume.accessible_topology = [Topology(segments=topology)]
        return self

    def build(self) -> CreateVolumeResponse:
        return self._response


class DeleteVolumeResponseBuilder:
    """Builds a DeleteVolumeResponse."""

    def __init__(self) -> None:
        self._response = DeleteVolumeResponse()

    def build(self) -> DeleteVolumeResponse:
        return self._response


class ControllerExpandVolumeResponseBuilder:
    """Builds a ControllerExpandVolumeResponse step by step."""

    def __init__(self) -> None:
        self._response = ControllerExpandVolumeResponse()

    def with_capacity_bytes(self, capacity: int) -> ControllerExpandVolumeResponseBuilder:
        self._response.capacity_bytes = capacity
        return self

    def with_node_expansion_required(
        self, required: bool
    ) -> ControllerExpandVolumeResponseBuilder:
        self._response.node_expansion_required = required
        return self

    def build(self) -> ControllerExpandVolumeResponse:
        return self._response


class CreateSnapshotResponseBuilder:
    """Builds a CreateSnapshotResponse step by step."""

    def __init__(self) -> None:
        self._response = CreateSnapshotResponse(snapshot=Snapshot())

    def with_size(self, size: int) -> CreateSnapshotResponseBuilder:
        self._response.snapshot.size_bytes = size
        return self

    def with_snapshot_id(self, snapshot_id: str) -> CreateSnapshotResponseBuilder:
        self._response.snapshot.snapshot_id = snapshot_id
        return self

    def with_source_volume_id(self, volume_id: str) -> CreateSnapshotResponseBuilder:
        self._response.snapshot.source_volume_id = volume_id
        return self

    def with_creation_time(self, tsec: int, tnsec: int) -> CreateSnapshotResponseBuilder:
        self._response.snapshot.creation_time = Timestamp(
            seconds=tsec, nanos=_to_int32(tnsec)
        )
        return self

    def with_ready_to_use(self, ready_to_use: bool) -> CreateSnapshotResponseBuilder:
        self._response.snapshot.ready_to_use = ready_to_use
        return self

    def build(self) -> CreateSnapshotResponse:
        return self._response