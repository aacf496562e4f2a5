"""Initial pose alignment of lidar scans against a prior point cloud map."""

from __future__ import annotations

import logging
import math
import os
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, fields, replace
from typing import Any, Optional

import numpy as np

from .pointcloud import (
    crop_box,
    filter_min_radius,
    grid_centroids,
    load_pcd,
    merge_clouds,
    voxel_downsample,
)
from .registration import gicp, icp, inlier_ratio, ndt
from .transforms import (
    TransformStamped,
    orientation_error,
    pose_to_matrix,
    rotation_about_z,
    translation_error,
)

logger = logging.getLogger(__name__)

TransformCallback = Callable[[TransformStamped], None]
StatusCallback = Callable[[int], None]
MapCallback = Callable[[np.ndarray, str], None]

_POSITION_PREFIX = "initial_pose.position."
_ORIENTATION_PREFIX = "initial_pose.orientation."
_POSITION_AXES = ("x", "y", "z")
_ORIENTATION_AXES = ("x", "y", "z", "w")

_POSITION_NOISE = 0.5
_ANGLE_NOISE = 0.1
_GRID_MIN_POINTS = 3
_RADIUS_FILTER = 1.0


def _coerce(name: str, value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise TypeError(f"parameter {name!r} must be a bool, got {value!r}")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"parameter {name!r} must be an integer, got {value!r}")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"parameter {name!r} must be a number, got {value!r}")
        return float(value)
    if isinstance(default, str):
        if not isinstance(value, str):
            raise TypeError(f"parameter {name!r} must be a string, got {value!r}")
        return value
    if isinstance(default, tuple):
        items = tuple(value)
        if len(items) != len(default):
            raise TypeError(f"parameter {name!r} needs {len(default)} values")
        return tuple(_coerce(name, item, 0.0) for item in items)
    return value


@dataclass(frozen=True)
class AlignmentConfig:
    """Parameters of the alignment node, with their defaults."""

    target_pcd_file: str = "test.pcd"
    map_frame_id: str = "map"
    odom_frame_id: str = "odom_init"
    robot_frame_id: str = "base_frame"
    accumulate_time: int = 15
    orientation_search_steps: int = 18
    multi_align_attempts: int = 8
    max_distance: float = 30.0
    voxel_leaf_size: float = 0.1
    fitness_score_threshold: float = 5.0
    good_fitness_score_threshold: float = 0.5
    use_preprocess: bool = False
    use_radius_filter: bool = False
    filter_radius: float = 1.0
    use_initial_pose: bool = True
    initial_position: tuple[float, float, float] = (0.0, 0.0, 0.0)
    initial_orientation: tuple[float, float, float, float] = (0.0, 0.0, 0.0, 1.0)
    use_multi_resolution: bool = True
    use_icp: bool = False
    use_cartesian_grid: bool = False
    grid_size: float = 0.5
    use_height_threshold: bool = False
    min_height: float = -1.0
    max_height: float = 3.0
    ndt_leaf_size: float = 0.5
    ndt_max_iterations: int = 30
    ndt_max_correspondence_distance: float = 2.0
    icp_leaf_size: float = 0.25
    icp_max_iterations: int = 50
    icp_max_correspondence_distance: float = 0.5
    gicp_leaf_size: float = 0.1
    gicp_max_iterations: int = 100
    gicp_max_correspondence_distance: float = 0.1

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> AlignmentConfig:
        """Build a configuration from parameter names as the node declares them.

        Pose entries may be given as ``initial_pose.position.x`` and the like.
        Unknown names raise ``KeyError``; values of the wrong type ``TypeError``.
        """
        defaults = cls()
        known = {f.name for f in fields(cls)}
        position = list(defaults.initial_position)
        orientation = list(defaults.initial_orientation)
        settings: dict[str, Any] = {}
        for name, value in values.items():
            if name.startswith(_POSITION_PREFIX):
                axis = name[len(_POSITION_PREFIX):]
                if axis not in _POSITION_AXES:
                    raise KeyError(f"unknown parameter {name!r}")
                position[_POSITION_AXES.index(axis)] = _coerce(name, value, 0.0)
            elif name.startswith(_ORIENTATION_PREFIX):
                axis = name[len(_ORIENTATION_PREFIX):]
                if axis not in _ORIENTATION_AXES:
                    raise KeyError(f"unknown parameter {name!r}")
                orientation[_ORIENTATION_AXES.index(axis)] = _coerce(name, value, 0.0)
            elif name in known:
                settings[name] = _coerce(name, value, getattr(defaults, name))
            else:
                raise KeyError(f"unknown parameter {name!r}")
        settings.setdefault("initial_position", tuple(position))
        settings.setdefault("initial_orientation", tuple(orientation))
        return replace(defaults, **settings)


@dataclass
class AlignmentResult:
    """Outcome of one alignment stage."""

    transform: np.ndarray
    fitness_score: float
    has_converged: bool = False
    inlier_ratio: float = 0.0
    translation_error: float = 0.0
    orientation_error: float = 0.0


def _cloud(points: object) -> np.ndarray:
    array = np.asarray(points, dtype=float)
    if array.size == 0:
        return np.empty((0, 3))
    if array.ndim != 2 or array.shape[1] != 3:
        raise ValueError(f"expected an (N, 3) array of points, got shape {array.shape}")
    return array


@dataclass
class _Stage:
    name: str
    leaf_size: float
    map_index: int
    run: Callable[..., AlignmentResult]
    max_iterations: int
    max_correspondence_distance: float


class InitPoseAlignment:
    """Finds the map-to-odometry transform by registering accumulated scans to a map."""

    def __init__(
        self,
        config: Optional[AlignmentConfig] = None,
        target_cloud: object = None,
        *,
        on_transform: Optional[TransformCallback] = None,
        on_status: Optional[StatusCallback] = None,
        on_map: Optional[MapCallback] = None,
        seed: Optional[int] = None,
    ) -> None:
        self.config = config if config is not None else AlignmentConfig()
        self._on_transform = on_transform
        self._on_status = on_status
        self._on_map = on_map
        self._rng = np.random.default_rng(seed)

        self.accumulated_clouds: list[np.ndarray] = []
        self.multi_res_maps: list[np.ndarray] = []
        self.initial_guess = np.eye(4)
        self.transform_result = np.eye(4)
        self.initial_position = np.zeros(3)
        self.has_initial_pose = False
        self.has_aligned = False
        self.is_first_time = True

        target = _cloud(target_cloud if target_cloud is not None else [])
        logger.info("Map point cloud loaded. Point count: %d", len(target))
        self.target_cloud = self._preprocess_map(target)

        if self.config.use_multi_resolution:
            self._prepare_multi_resolution_maps()

        if self.config.use_initial_pose:
            self._apply_initial_pose(self.config.initial_position, self.config.initial_orientation)

    @classmethod
    def from_pcd(
        cls,
        config: Optional[AlignmentConfig] = None,
        path: Optional[str | os.PathLike[str]] = None,
        *,
        on_transform: Optional[TransformCallback] = None,
        on_status: Optional[StatusCallback] = None,
        on_map: Optional[MapCallback] = None,
        seed: Optional[int] = None,
    ) -> InitPoseAlignment:
        """Create an aligner whose map is read from a PCD file.

        Without ``path`` the configured ``target_pcd_file`` is read.
        """
        config = config if config is not None else AlignmentConfig()
        cloud = load_pcd(path if path is not None else config.target_pcd_file)
        return cls(
            config,
            cloud,
            on_transform=on_transform,
            on_status=on_status,
            on_map=on_map,
            seed=seed,
        )

    def _preprocess_map(self, target: np.ndarray) -> np.ndarray:
        cfg = self.config
        if len(target) == 0:
            logger.warning("Map point cloud is empty, cannot preprocess.")
            return target
        processed = voxel_downsample(target, cfg.voxel_leaf_size)
        if cfg.use_height_threshold:
            processed = crop_box(
                processed,
                (-cfg.max_distance, -cfg.max_distance, cfg.min_height),
                (cfg.max_distance, cfg.max_distance, cfg.max_height),
            )
        logger.info("Map preprocessing completed. Downsampled points: %d", len(processed))
        return processed

    def _prepare_multi_resolution_maps(self) -> None:
        cfg = self.config
        self.multi_res_maps = []
        for leaf_size in (cfg.ndt_leaf_size, cfg.icp_leaf_size, cfg.gicp_leaf_size):
            downsampled = voxel_downsample(self.target_cloud, leaf_size)
            self.multi_res_maps.append(downsampled)
            logger.info(
                "Multi-resolution map - leaf size: %.2f, points: %d", leaf_size, len(downsampled)
            )

    def _apply_initial_pose(self, position: Sequence[float], orientation: Sequence[float]) -> None:
        self.initial_guess = pose_to_matrix(position, orientation)
        self.initial_position = np.array([float(v) for v in position])
        self.has_initial_pose = True

    def _status(self, value: int) -> None:
        if self._on_status is not None:
            self._on_status(value)

    def set_initial_pose(self, position: Sequence[float], orientation: Sequence[float]) -> None:
        """Take a new initial pose and restart alignment from scratch."""
        self._apply_initial_pose(position, orientation)
        x, y, z = self.initial_position
        logger.info("Initial pose: x=%.2f, y=%.2f, z=%.2f", x, y, z)
        self.has_aligned = False
        self.is_first_time = True
        self.accumulated_clouds.clear()

    def publish_map(self) -> bool:
        """Hand the map cloud to the map callback unless alignment is done."""
        if self.has_aligned:
            return False
        if self._on_map is not None:
            self._on_map(self.target_cloud, self.config.map_frame_id)
        return True

    def on_lidar(self, cloud: object) -> Optional[AlignmentResult]:
        """Process one lidar scan; return the best result when alignment ran."""
        if self.has_aligned:
            self.publish_transform(self.transform_result)
            return None

        cfg = self.config
        scan = _cloud(cloud)
        self._status(0)

        if len(self.accumulated_clouds) < cfg.accumulate_time:
            self.accumulated_clouds.append(scan)
            logger.info(
                "Accumulating point clouds %d/%d",
                len(self.accumulated_clouds),
                cfg.accumulate_time,
            )
            return None
        if self.accumulated_clouds:
            self.accumulated_clouds.pop(0)
        self.accumulated_clouds.append(scan)

        processed = self.process_accumulated_clouds()
        downsampled = voxel_downsample(processed, cfg.voxel_leaf_size)
        results: list[AlignmentResult] = []
        use_stages = bool(self.multi_res_maps) and cfg.use_multi_resolution

        if self.has_initial_pose and self.is_first_time:
            logger.info("Using initial pose: orientation search and multi-stage alignment.")
            orientation_result = self.search_best_orientation(downsampled, self.initial_guess)
            results.append(orientation_result)
            if orientation_result.fitness_score < cfg.good_fitness_score_threshold:
                logger.info("Orientation search found a good match.")
            current = orientation_result.transform
            if use_stages:
                self._refine(scan, current, results)
            else:
                logger.warning("Multi-resolution maps unavailable. Using fallback alignment.")
                results.append(self.multiple_alignment_attempts(downsampled, current))
            self.is_first_time = False
        else:
            logger.info("No initial pose. Aligning from the identity transform.")
            if use_stages:
                self._refine(scan, np.eye(4), results)
            else:
                logger.warning("Multi-resolution maps unavailable. Using fallback alignment.")
                results.append(self.multiple_alignment_attempts(downsampled, np.eye(4)))

        if not results:
            logger.warning("No alignment stage converged.")
            return None

        best = min(results, key=lambda result: result.fitness_score)
        if best.fitness_score < cfg.fitness_score_threshold:
            self.has_aligned = True
            logger.info("Alignment successful. Score: %.4f", best.fitness_score)
        if best.fitness_score < cfg.good_fitness_score_threshold:
            logger.info("Alignment is very good.")

        self.transform_result = best.transform
        self.publish_transform(self.transform_result)
        self._status(1)
        return best

    def _refine(
        self, scan: np.ndarray, transform: np.ndarray, results: list[AlignmentResult]
    ) -> np.ndarray:
        cfg = self.config
        stages = [
            _Stage("NDT", cfg.ndt_leaf_size, 0, self.ndt_alignment,
                   cfg.ndt_max_iterations, cfg.ndt_max_correspondence_distance),
        ]
        if cfg.use_icp:
            stages.append(
                _Stage("ICP", cfg.icp_leaf_size, 1, self.icp_alignment,
                       cfg.icp_max_iterations, cfg.icp_max_correspondence_distance)
            )
        stages.append(
            _Stage("GICP", cfg.gicp_leaf_size, 2, self.gicp_alignment,
                   cfg.gicp_max_iterations, cfg.gicp_max_correspondence_distance)
        )
        for stage in stages:
            source = voxel_downsample(scan, stage.leaf_size)
            result = stage.run(
                source,
                self.multi_res_maps[stage.map_index],
                transform,
                stage.max_iterations,
                stage.max_correspondence_distance,
            )
            if result.has_converged:
                results.append(result)
                transform = result.transform
                logger.info("%s stage succeeded. Score: %.4f", stage.name, result.fitness_score)
            else:
                logger.warning("%s stage did not converge. Keeping previous result.", stage.name)
        return transform

    def process_accumulated_clouds(self) -> np.ndarray:
        """Merge the accumulated scans, optionally reduced to grid-cell centroids."""
        cfg = self.config
        if cfg.use_cartesian_grid:
            merged = merge_clouds(self.accumulated_clouds)
            horizontal = np.hypot(merged[:, 0], merged[:, 1])
            keep = (
                (horizontal <= cfg.max_distance)
                & (merged[:, 2] >= cfg.min_height)
                & (merged[:, 2] <= cfg.max_height)
            )
            result = grid_centroids(merged[keep], cfg.grid_size, _GRID_MIN_POINTS)
            logger.info("Used Cartesian grid. Extracted features: %d", len(result))
        else:
            result = merge_clouds(self.accumulated_clouds)
            logger.info("Merged point cloud size: %d", len(result))

        if cfg.use_radius_filter:
            # The cut-off is a fixed metre; filter_radius is not consulted here.
            return filter_min_radius(result, _RADIUS_FILTER)
        return result

    def search_best_orientation(self, source: object, initial_guess: object) -> AlignmentResult:
        """Try evenly spaced yaw angles at the guessed position and keep the best fit."""
        steps = self.config.orientation_search_steps
        if steps < 1:
            raise ValueError("orientation_search_steps must be at least 1")
        guess = np.asarray(initial_guess, dtype=float)
        results: list[AlignmentResult] = []
        for i in range(steps):
            angle = i * (2.0 * math.pi / steps)
            transform = np.eye(4)
            transform[:3, :3] = rotation_about_z(angle)
            transform[:3, 3] = guess[:3, 3]
            outcome = icp(
                source,
                self.target_cloud,
                transform,
                max_iterations=20,
                max_correspondence_distance=1.0,
                transformation_epsilon=1e-6,
                euclidean_fitness_epsilon=0.0,
            )
            results.append(
                AlignmentResult(
                    transform=outcome.transform,
                    fitness_score=outcome.fitness_score,
                    has_converged=outcome.has_converged,
                    orientation_error=orientation_error(outcome.transform, transform),
                )
            )
            logger.debug(
                "Orientation search %d/%d, angle: %.1f deg, score: %.4f",
                i + 1, steps, math.degrees(angle), outcome.fitness_score,
            )
        best_index = min(range(steps), key=lambda index: results[index].fitness_score)
        best = results[best_index]
        logger.info(
            "Best orientation found: angle %.1f deg, score: %.4f",
            math.degrees(best_index * 2.0 * math.pi / steps), best.fitness_score,
        )
        return best

    def _result(
        self,
        source: object,
        target: object,
        transform: np.ndarray,
        fitness: float,
        converged: bool,
        max_correspondence_distance: float,
    ) -> AlignmentResult:
        return AlignmentResult(
            transform=transform,
            fitness_score=fitness,
            has_converged=converged,
            inlier_ratio=inlier_ratio(source, target, transform, max_correspondence_distance),
            translation_error=translation_error(transform, self.initial_guess),
            orientation_error=orientation_error(transform, self.initial_guess),
        )

    def ndt_alignment(
        self,
        source: object,
        target: object,
        initial_guess: object,
        max_iterations: int,
        max_correspondence_distance: float,
    ) -> AlignmentResult:
        """Normal distributions transform stage."""
        started = time.perf_counter()
        outcome = ndt(source, target, initial_guess, max_iterations=max_iterations,
                      resolution=0.5, step_size=0.1, transformation_epsilon=1e-8)
        logger.debug("NDT alignment time: %.0f ms", (time.perf_counter() - started) * 1000)
        return self._result(source, target, outcome.transform, outcome.fitness_score,
                            outcome.has_converged, max_correspondence_distance)

    def icp_alignment(
        self,
        source: object,
        target: object,
        initial_guess: object,
        max_iterations: int,
        max_correspondence_distance: float,
    ) -> AlignmentResult:
        """Point-to-point ICP stage."""
        started = time.perf_counter()
        outcome = icp(source, target, initial_guess, max_iterations=max_iterations,
                      max_correspondence_distance=max_correspondence_distance,
                      transformation_epsilon=1e-8, euclidean_fitness_epsilon=1e-6)
        logger.debug("ICP alignment time: %.0f ms", (time.perf_counter() - started) * 1000)
        return self._result(source, target, outcome.transform, outcome.fitness_score,
                            outcome.has_converged, max_correspondence_distance)

    def gicp_alignment(
        self,
        source: object,
        target: object,
        initial_guess: object,
        max_iterations: int,
        max_correspondence_distance: float,
    ) -> AlignmentResult:
        """Generalized ICP stage."""
        started = time.perf_counter()
        outcome = gicp(source, target, initial_guess, max_iterations=max_iterations,
                       max_correspondence_distance=max_correspondence_distance,
                       transformation_epsilon=1e-8, euclidean_fitness_epsilon=1e-6,
                       correspondence_randomness=20)
        logger.debug("GICP alignment time: %.0f ms", (time.perf_counter() - started) * 1000)
        return self._result(source, target, outcome.transform, outcome.fitness_score,
                            outcome.has_converged, max_correspondence_distance)

    def multiple_alignment_attempts(self, source: object, initial_guess: object) -> AlignmentResult:
        """Run GICP from the guess and from randomly perturbed copies of it.

        Converged results are preferred, then the lowest fitness score.
        """
        cfg = self.config
        attempts = cfg.multi_align_attempts
        if attempts < 1:
            raise ValueError("multi_align_attempts must be at least 1")
        guess = np.asarray(initial_guess, dtype=float)
        results: list[AlignmentResult] = []
        for i in range(attempts):
            current = guess.copy()
            if i > 0:
                dx, dy = self._rng.normal(0.0, _POSITION_NOISE, size=2)
                angle = float(self._rng.normal(0.0, _ANGLE_NOISE))
                current[:3, :3] = guess[:3, :3] @ rotation_about_z(angle)
                current[:3, 3] = guess[:3, 3] + np.array([dx, dy, 0.0])
                logger.debug(
                    "Attempt %d/%d: position perturbation=[%.2f, %.2f, 0.00], angle=%.2f deg",
                    i + 1, attempts, dx, dy, math.degrees(angle),
                )
            result = self.gicp_alignment(
                source, self.target_cloud, current, cfg.gicp_max_iterations, 1.0
            )
            results.append(result)
            logger.info(
                "Attempt %d/%d result: converged=%d, score=%.4f",
                i + 1, attempts, result.has_converged, result.fitness_score,
            )
        best = min(results, key=lambda result: (not result.has_converged, result.fitness_score))
        logger.info("Best result from multiple attempts: score=%.4f", best.fitness_score)
        if best.fitness_score < cfg.fitness_score_threshold and best.has_converged:
            self.has_aligned = True
            logger.info("Good alignment found in multiple attempts.")
        return best

    def publish_transform(self, transform: object) -> TransformStamped:
        """Stamp the map-to-odometry transform and hand it to the transform callback."""
        stamped = TransformStamped.from_matrix(
            transform,
            frame_id=self.config.map_frame_id,
            child_frame_id=self.config.odom_frame_id,
            stamp=time.time(),
        )
        if self._on_transform is not None:
            self._on_transform(stamped)
        return stamped


__all__ = ["AlignmentConfig", "AlignmentResult", "InitPoseAlignment"]