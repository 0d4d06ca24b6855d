# lvmlocalpv

Building blocks for a node agent that provisions LVM-backed local persistent
volumes for a container orchestrator.

## Modules

- `lvmlocalpv.response` – builders for CSI responses:
  `CreateVolumeResponseBuilder`, `DeleteVolumeResponseBuilder`,
  `ControllerExpandVolumeResponseBuilder` and `CreateSnapshotResponseBuilder`.
  Each `with_*` method sets one field and returns the builder; `build()`
  returns the response dataclass.
- `lvmlocalpv.version` – `current()`, `get()`, `get_build_meta()`,
  `get_git_commit()`, `get_version_details()` and `verbose()`. When the
  module-level `VERSION`, `VERSION_META` or `GIT_COMMIT` are empty, the
  values are read from the `VERSION` and `BUILDMETA` files under `$GOPATH`,
  or from `git rev-parse --verify HEAD`.
- `lvmlocalpv.resources` – `ObjectMeta`, `OwnerReference`, `VolumeGroup`,
  `GroupVersionResource`, `NotFoundError`, the `namespace/name` key helpers
  `split_meta_namespace_key()` and `meta_namespace_key()`, and
  `*_from_dict()` converters for the serialized forms. Volume group sizes
  accept quantities such as `"10Gi"`.
- `lvmlocalpv.workqueue` – `RateLimitingQueue`, a de-duplicating work queue
  with delayed and rate-limited adds; the limiters
  `ItemFastSlowRateLimiter`, `ItemExponentialFailureRateLimiter` and
  `default_controller_rate_limiter()`; and `QueueController`, the worker loop
  the controllers share.
- `lvmlocalpv.volume` – `VolController` and the `LVMVolume` model. It
  destroys volumes marked for deletion, and otherwise creates pending volumes
  in the chosen volume group or, failing that, in the matching group with
  the least free space that fits, recording `Ready` or `Failed` in the
  status.
- `lvmlocalpv.snapshot` – `SnapController` and the `LVMSnapshot` model.
- `lvmlocalpv.lvmnode` – `NodeController` and the `LVMNode` model. It creates
  or updates this node's object so that its volume groups and owner
  reference match the node, and re-queues it every poll interval.

## Building a response

```python
from lvmlocalpv.response import CreateVolumeResponseBuilder

resp = (
    CreateVolumeResponseBuilder()
    .with_name("pvc-1234")
    .with_capacity(5368709120)
    .with_topology({"openebs.io/nodename": "node-1"})
    .build()
)
print(resp.volume.volume_id, resp.volume.capacity_bytes)
```

## Driving the work queue

```python
from lvmlocalpv.workqueue import RateLimitingQueue, default_controller_rate_limiter

queue = RateLimitingQueue(default_controller_rate_limiter(), name="example")
queue.add("openebs/pvc-1234")
key = queue.get(timeout=1.0)
try:
    ...  # reconcile the object named by key
    queue.forget(key)
finally:
    queue.done(key)
queue.shut_down()
```

`get()` raises `TimeoutError` when the timeout passes and `ShutDownError`
once the queue is shut down and empty.

## Wiring a controller

Each controller takes a lister and a backend:

- the lister has `get(namespace, name)`, returning the object's serialized
  form as a mapping or raising `NotFoundError`, and may have `has_synced()`,
  which `run()` waits on before starting workers;
- the backend carries out the operations, for example `VolumeBackend` has
  `list_volume_groups()`, `create_volume()`, `destroy_volume()`,
  `remove_vol_finalizer()`, `update_vol_info()` and `update_vol_group()`.

Event handlers (`add_vol`, `update_vol`, `delete_vol` and their snapshot and
node counterparts) take serialized objects and queue the keys of those that
belong to this node. `run(threadiness, stop_event)` blocks until the
`threading.Event` is set, then shuts the queue down.

## What this package does not do

It has no command to start, no cluster client and no CSI gRPC server, and it
runs no LVM commands itself: listing volume groups, creating and removing
volumes and snapshots, and reading and writing the stored objects are all
left to the lister and backend you supply.

## Running the tests

```
pip install .[test]
pytest
```