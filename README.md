# roverkit

Building blocks for a mobile robot's software stack.

| Module | What it provides |
| --- | --- |
| `roverkit.callbacks` | `CallbackStorage`, `CallbacksRef`, `try_drop_this_callback`, `retain_this_callback` |
| `roverkit.subscriber` | `Subscriber`, a bounded or unbounded queue that is fed by callbacks and read with `await recv()` |
| `roverkit.runtime` | a shared background asyncio loop: `get_runtime`, `block_on`, `end_runtime`, `end_runtime_and_wait`, `RuntimeDropGuard`, `duration_warning` |
| `roverkit.projection` | `depth_to_points`, which turns a depth image into homogeneous points |
| `roverkit.obstacles` | `Occupancy`, `points_to_obstacles`, `filter_obstacles`, `expand_obstacles` |
| `roverkit.heightmap` | `height_to_gradient`, `gradient_to_obstacles`, `points_to_sum`, `sum_to_height`, `points_to_height` |
| `roverkit.pipeline` | `DepthProjectorBuilder`, `DepthProjector`, `ThalassicBuilder`, `ThalassicPipeline`, `PipelineRef` |
| `roverkit.clustering` | `Clusterer`, which finds centroids in a heatmap with DBSCAN |

All grid and point work uses NumPy and SciPy on the CPU.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Callbacks

Every callback in a `CallbackStorage` gets the same arguments. A callback can remove
itself by calling `try_drop_this_callback()` while it runs. With `clone_args=True`,
each callback gets its own shallow copy of every argument.

```python
from roverkit.callbacks import CallbackStorage, try_drop_this_callback

storage = CallbackStorage()
seen = []

def once(value):
    seen.append(value)
    try_drop_this_callback()

storage.add_fn(once)
storage.call(1)
storage.call(2)
assert seen == [1] and storage.is_empty()
```

`storage.get_ref()` returns a `CallbacksRef` that holds a weak reference to the storage.
Use it to add callbacks later. Once the storage is gone, `add_fn` and `add_fn_mut`
return the callback instead of adding it.

## Subscribers

```python
from roverkit.subscriber import Subscriber

sub = Subscriber(4)              # keeps at most four values; Subscriber.unbounded() has no limit
callback = sub.create_callback() # drops the oldest value when full
callback("scan")
assert sub.try_recv() == "scan"
```

`create_conservative_callback()` drops the new value when the queue is full. The subscriber
reports `is_closed()` once every callback it created is gone. After that, `recv()` returns
`None` when the queue is empty, and `recv_or_never()` waits forever.

## Runtime

`get_runtime()` starts an asyncio loop on a background thread the first time it is called,
using `RuntimeConfig()` defaults. Call `RuntimeConfig(...).build()` first to choose other
settings. `block_on(coro)` runs a coroutine on that loop from another thread and returns its
result.

`end_runtime()` asks the loop to stop once every attached `RuntimeDropGuard` has been
released. `end_runtime_and_wait()` does the same and blocks until the loop has stopped.
`attach_drop_guard()` and `detach_drop_guard()` keep one guard per thread.

```python
import asyncio
from roverkit.runtime import block_on, end_runtime_and_wait

async def answer():
    await asyncio.sleep(0)
    return 42

assert block_on(answer()) == 42
end_runtime_and_wait()
```

`duration_warning(label, threshold=1.0)` is a context manager. It logs a warning if the
block takes longer than `threshold` seconds, and it yields a `Timing` whose `elapsed` is
set when the block ends.

## Obstacle mapping

```python
import numpy as np
from roverkit.pipeline import DepthProjectorBuilder, ThalassicBuilder

pipeline = ThalassicBuilder(
    heightmap_dimensions=(64, 64),
    cell_size=0.05,
    max_point_count=64 * 48,
    feature_size_cells=2,
    min_feature_count=3,
).build()
projector = DepthProjectorBuilder(
    image_size=(64, 48),
    focal_length_px=60.0,
    principal_point_px=(32.0, 24.0),
    max_depth=5.0,
).build(pipeline.get_ref())

depths = np.full(64 * 48, 1000, dtype=np.uint16)
projector.project(depths, np.eye(4), 0.001)   # 0.001 metres per depth unit
grid = pipeline.process()                     # (64, 64) array of Occupancy values
```

When the projector is built, it reads its sampling stride from the `STRIDE` environment
variable, which defaults to 4. `process()` returns `None` if no new point cloud is waiting.
The robot radius defaults to 0.25 m and can be changed with `set_radius`. The maximum safe
slope is 45°. `reset_heightmap()` forgets every cell observed so far.

## Clustering

```python
from roverkit.clustering import Clusterer

heatmap = [0.0] * 100
heatmap[55] = 1.0
clusterer = Clusterer(
    tolerance=0.5,
    heatmap_scale=0.1,
    heatmap_width=10,
    min_points=3,
    density=lambda v: int(v * 4),
)
print(list(clusterer.cluster(heatmap)))   # [(0.5, 0.5)]
```

## What it does not do

- The package has no type for lending a value to other threads and taking it back later.
  `Subscriber` and `CallbackStorage` are its only ways to pass data between threads.
- It has no base class for running blocking tasks on threads and logging their results.
- It installs no command-line program. Everything is used as a library.