# initpose

`initpose` works out where a robot is on a prebuilt point-cloud map, using
the lidar scans it is receiving.

It collects a short burst of scans, merges them and registers the result
against the map. If you give it a rough starting pose, it first tries a set of
evenly spaced headings around the vertical axis and keeps the best one. It
then refines that estimate coarse to fine: NDT, then ICP if enabled, then
GICP. Each stage runs on its own downsampled copy of the map. The best result
is handed out as a map → odometry transform.

## Modules

- `initpose.pointcloud`: clouds are `numpy` arrays of shape `(N, 3)`.
  - `load_pcd` reads the x, y and z fields of a PCD file stored as `ascii`,
    `binary` or `binary_compressed`. It raises `PcdError` on unreadable or
    malformed files.
  - `save_pcd` writes an ASCII PCD file.
  - Filters: `voxel_downsample`, `crop_box`, `transform_points`,
    `merge_clouds`, `grid_centroids` and `filter_min_radius`.
- `initpose.transforms`:
  - Conversions: `quaternion_to_matrix`, `matrix_to_quaternion`,
    `pose_to_matrix` and `rotation_about_z`.
  - Error measures: `translation_error` and `orientation_error` (in radians).
  - The frozen `TransformStamped` record, with `from_matrix` and `to_matrix`.
- `initpose.registration`:
  - `icp` (point-to-point), `ndt` (normal distributions transform) and
    `gicp` (generalized, plane-to-plane ICP). Each returns a
    `RegistrationResult` with `transform`, `fitness_score`, `has_converged`
    and `iterations`.
  - `fitness_score` gives the mean squared nearest-neighbour distance. It
    returns the largest float when a cloud is empty.
  - `inlier_ratio` gives the fraction of source points within a distance of
    the target.
- `initpose.alignment`: the `InitPoseAlignment` pipeline. It is configured
  by `AlignmentConfig` and returns `AlignmentResult` values.
- `initpose.tf_publisher`: `InitTFPublisher` takes each incoming
  `TransformStamped`, replaces its frame names with the configured ones
  (`map` and `odom_init` by default) and passes it to a broadcaster callable.
  It returns the rewritten transform and keeps the last one in `latest`.
- `initpose.launcher`:
  - `CommandLauncher.start_launch(LaunchConfig(...))` checks that the
    workspace and its `install/<setup_file>` exist. It then runs
    `ros2 launch <package> <launch file>` in a new `gnome-terminal` window.
  - `CommandLauncher.execute_existed_bash_command` runs `./<command>` in such
    a window.
  - `kill_existing_process` sends SIGTERM, falling back to SIGKILL, to every
    process that `pgrep -f` matches for a package name. It returns `True`
    when none is left afterwards.

## Usage

```python
import numpy as np

from initpose.alignment import AlignmentConfig, InitPoseAlignment

config = AlignmentConfig.from_mapping({
    "accumulate_time": 15,
    "use_initial_pose": True,
    "initial_pose.position.x": 2.0,
    "initial_pose.position.y": -1.0,
})

def on_transform(tf):
    print(tf.frame_id, "->", tf.child_frame_id)
    print(tf.to_matrix())

def on_status(got_pose):
    print("pose found" if got_pose else "working")

node = InitPoseAlignment.from_pcd(
    config,
    "map.pcd",
    on_transform=on_transform,
    on_status=on_status,
    seed=0,
)

for scan in scans:          # each scan: np.ndarray of shape (N, 3)
    result = node.on_lidar(scan)
```

Each scan received before alignment is done reports status `0`.

- **Collecting.** The first `accumulate_time` scans are only stored.
- **Aligning.** Every later scan replaces the oldest stored one and triggers
  an alignment attempt. When the attempt produces a result, `on_lidar`
  returns the best `AlignmentResult`. Its transform is also passed to
  `on_transform` and status `1` is reported.
- **Aligned.** Once a result scores below `fitness_score_threshold`, the
  pipeline counts as aligned. From then on, each scan just republishes the
  stored transform.

`publish_map()` passes the map cloud and the map frame name to the `on_map`
callback, as long as alignment is not yet done.

You can supply a new starting guess at any time:

```python
node.set_initial_pose((1.5, 0.0, 0.0), (0.0, 0.0, 0.0, 1.0))
```

This clears the stored scans and starts the search again.

## Configuration

`AlignmentConfig.from_mapping` accepts the flat parameter names listed
below. It raises `KeyError` for an unknown name and `TypeError` for a value
of the wrong type. Any name you leave out keeps its default.

- General:
  - `voxel_leaf_size`, `max_distance`, `accumulate_time`
  - `orientation_search_steps`, `multi_align_attempts`
  - `fitness_score_threshold`, `good_fitness_score_threshold`
- Frames: `map_frame_id`, `odom_frame_id`
- Stages: `use_multi_resolution`, `use_icp`
- Scan preprocessing:
  - `use_cartesian_grid`, `grid_size`
  - `use_height_threshold`, `min_height`, `max_height`
  - `use_radius_filter`: drops points within 1 m horizontally of the sensor.
- Per stage: `ndt_*`, `icp_*` and `gicp_*` leaf sizes, iteration limits and
  correspondence distances.
- Starting pose: `use_initial_pose` and the
  `initial_pose.position.*` / `initial_pose.orientation.*` entries.

When multi-resolution refinement is off, the pipeline runs GICP several times
instead. It starts from the guess and from randomly perturbed copies of it.
Pass `seed` to make those perturbations repeatable.

## What it does not do

The package does not connect to any robot middleware. It does not subscribe
to scan or pose topics, broadcast transforms over a network, or run timers.
You feed scans and poses in yourself and receive results through the
callbacks. No command-line program is installed.

## Requirements

Python 3.10 or newer, with `numpy` and `scipy`. The launcher functions also
need `bash`, `gnome-terminal` and `pgrep` to be available.