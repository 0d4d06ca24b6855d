import threading

import pytest

from lvmlocalpv.resources import NotFoundError, ObjectMeta
from lvmlocalpv.snapshot import (
    LVM_VOL_KEY,
    LVMSnapshot,
    LVMSnapshotSpec,
    LVMSnapshotStatus,
    SnapController,
    snapshot_from_unstructured,
)

NODE = "node-1"


class FakeLister:
    def __init__(self, objects=None, synced=True):
        self.objects = objects or {}
        self.synced = synced

    def get(self, namespace, name):
        try:
            return self.objects[(namespace, name)]
        except KeyError:
            raise NotFoundError(f"{namespace}/{name}") from None

    def has_synced(self):
        return self.synced


class FakeBackend:
    def __init__(self, fail_on=()):
        self.calls = []
        self.fail_on = set(fail_on)

    def _record(self, op, snap):
        self.calls.append((op, snap.name))
        if op in self.fail_on:
            raise RuntimeError(f"{op} failed")

    def create_snapshot(self, snap):
        self._record("create", snap)

    def destroy_snapshot(self, snap):
        self._record("destroy", snap)

    def remove_snap_finalizer(self, snap):
        self._record("finalizer", snap)

    def update_snap_info(self, snap):
        self._record("update", snap)


def make_dict(name="snap1", owner=NODE, state="Pending", deleted=False):
    meta = {
        "name": name,
        "namespace": "openebs",
        "labels": {LVM_VOL_KEY: "pvc-1"},
    }
    if deleted:
        meta["deletionTimestamp"] = "2021-01-01T00:00:00Z"
    return {
        "metadata": meta,
        "spec": {"ownerNodeID": owner, "volGroup": "lvmvg"},
        "status": {"state": state},
    }


def make_controller(objects=None, backend=None, synced=True):
    backend = backend or FakeBackend()
    ctrl = SnapController(FakeLister(objects, synced), backend, NODE)
    return ctrl, backend


def queued_keys(ctrl):
    keys = []
    while len(ctrl.workqueue):
        item = ctrl.workqueue.get(timeout=1)
        ctrl.workqueue.done(item)
        keys.append(item)
    return keys


def test_from_unstructured_fields():
    snap = snapshot_from_unstructured(make_dict())
    assert snap.name == "snap1"
    assert snap.namespace == "openebs"
    assert snap.spec.owner_node_id == NODE
    assert snap.spec.vol_group == "lvmvg"
    assert snap.status.state == "Pending"
    assert snap.labels[LVM_VOL_KEY] == "pvc-1"


def test_round_trip():
    snap = LVMSnapshot(
        metadata=ObjectMeta(name="s", namespace="ns", labels={LVM_VOL_KEY: "v"}),
        spec=LVMSnapshotSpec(owner_node_id=NODE, vol_group="vg", snap_size="10"),
        status=LVMSnapshotStatus(state="Ready"),
    )
    assert snapshot_from_unstructured(snap.to_dict()) == snap


def test_from_unstructured_rejects_non_mapping():
    with pytest.raises(TypeError):
        snapshot_from_unstructured("not a snapshot")


def test_from_unstructured_requires_metadata():
    with pytest.raises(TypeError):
        snapshot_from_unstructured({"spec": {}})


def test_sync_snap_pending_creates_then_updates():
    ctrl, backend = make_controller()
    ctrl.sync_snap(snapshot_from_unstructured(make_dict()))
    assert backend.calls == [("create", "snap1"), ("update", "snap1")]


def test_sync_snap_deleted_destroys_then_removes_finalizer():
    ctrl, backend = make_controller()
    ctrl.sync_snap(snapshot_from_unstructured(make_dict(deleted=True)))
    assert backend.calls == [("destroy", "snap1"), ("finalizer", "snap1")]


def test_sync_snap_ready_does_nothing():
    ctrl, backend = make_controller()
    ctrl.sync_snap(snapshot_from_unstructured(make_dict(state="Ready")))
    assert backend.calls == []


def test_sync_snap_create_failure_skips_update():
    ctrl, backend = make_controller(backend=FakeBackend(fail_on={"create"}))
    with pytest.raises(RuntimeError):
        ctrl.sync_snap(snapshot_from_unstructured(make_dict()))
    assert backend.calls == [("create", "snap1")]


def test_sync_snap_destroy_failure_keeps_finalizer():
    ctrl, backend = make_controller(backend=FakeBackend(fail_on={"destroy"}))
    with pytest.raises(RuntimeError):
        ctrl.sync_snap(snapshot_from_unstructured(make_dict(deleted=True)))
    assert backend.calls == [("destroy", "snap1")]


def test_is_deletion_candidate():
    ctrl, _ = make_controller()
    assert ctrl.is_deletion_candidate(snapshot_from_unstructured(make_dict(deleted=True)))
    assert not ctrl.is_deletion_candidate(snapshot_from_unstructured(make_dict()))


def test_sync_handler_uses_lister():
    ctrl, backend = make_controller({("openebs", "snap1"): make_dict()})
    ctrl.sync_handler("openebs/snap1")
    assert backend.calls == [("create", "snap1"), ("update", "snap1")]


def test_sync_handler_missing_object_is_ignored():
    ctrl, backend = make_controller()
    ctrl.sync_handler("openebs/gone")
    assert backend.calls == []


def test_sync_handler_invalid_key_is_ignored():
    ctrl, backend = make_controller({("openebs", "snap1"): make_dict()})
    ctrl.sync_handler("a/b/c")
    assert backend.calls == []


def test_add_snap_enqueues_owned():
    ctrl, _ = make_controller()
    ctrl.add_snap(make_dict())
    assert queued_keys(ctrl) == ["openebs/snap1"]


def test_add_snap_skips_other_node():
    ctrl, _ = make_controller()
    ctrl.add_snap(make_dict(owner="other"))
    assert len(ctrl.workqueue) == 0


def test_add_snap_ignores_garbage():
    ctrl, _ = make_controller()
    ctrl.add_snap(42)
    assert len(ctrl.workqueue) == 0


def test_update_snap_only_enqueues_deletion_candidates():
    ctrl, _ = make_controller()
    ctrl.update_snap(make_dict(), make_dict())
    assert len(ctrl.workqueue) == 0
    ctrl.update_snap(make_dict(), make_dict(deleted=True))
    assert queued_keys(ctrl) == ["openebs/snap1"]


def test_delete_snap_enqueues_owned():
    ctrl, _ = make_controller()
    ctrl.delete_snap(make_dict())
    assert queued_keys(ctrl) == ["openebs/snap1"]


def test_delete_snap_from_tombstone():
    ctrl, _ = make_controller()
    snap = snapshot_from_unstructured(make_dict(name="snap2"))
    ctrl.delete_snap({"key": "openebs/snap2", "obj": snap})
    assert queued_keys(ctrl) == ["openebs/snap2"]


def test_delete_snap_tombstone_with_wrong_object():
    ctrl, _ = make_controller()
    ctrl.delete_snap({"key": "openebs/x", "obj": "nope"})
    assert len(ctrl.workqueue) == 0


def test_get_structured_object_returns_none_for_bad_input():
    ctrl, _ = make_controller()
    assert ctrl.get_structured_object(["x"]) is None
    assert ctrl.get_structured_object(make_dict()).name == "snap1"


def test_process_next_work_item_syncs_queued_key():
    ctrl, backend = make_controller({("openebs", "snap1"): make_dict()})
    ctrl.enqueue_snap(snapshot_from_unstructured(make_dict()))
    assert ctrl.process_next_work_item() is True
    assert backend.calls == [("create", "snap1"), ("update", "snap1")]
    assert ctrl.workqueue.num_requeues("openebs/snap1") == 0


def test_process_next_work_item_failure_counts_requeue():
    ctrl, _ = make_controller(
        {("openebs", "snap1"): make_dict()}, FakeBackend(fail_on={"create"})
    )
    ctrl.enqueue_snap(snapshot_from_unstructured(make_dict()))
    assert ctrl.process_next_work_item() is True
    assert ctrl.workqueue.num_requeues("openebs/snap1") == 1
    ctrl.workqueue.shut_down()


def test_run_fails_when_caches_never_sync():
    ctrl, _ = make_controller(synced=False)
    stop = threading.Event()
    stop.set()
    with pytest.raises(RuntimeError):
        ctrl.run(1, stop)
    assert ctrl.workqueue.shutting_down


def test_run_returns_and_shuts_down_on_stop():
    ctrl, _ = make_controller()
    stop = threading.Event()
    stop.set()
    ctrl.run(2, stop)
    assert ctrl.workqueue.shutting_down
    assert ctrl.process_next_work_item() is False