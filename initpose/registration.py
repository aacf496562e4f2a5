"""Rigid point cloud registration (ICP, NDT, generalized ICP) and fit metrics."""

from __future__ import annotations

import itertools
import math
import sys
from dataclasses import dataclass

import numpy as np
from scipy.spatial import cKDTree
from scipy.spatial.transform import Rotation

from .pointcloud import transform_points

WORST_SCORE = sys.float_info.max

_ROTATION_THRESHOLD = 0.99999
_MSE_ABSOLUTE = 1e-12
_MIN_CORRESPONDENCES = 3

_NDT_OUTLIER_RATIO = 0.55
_NDT_MIN_POINTS_PER_CELL = 6
_NDT_MIN_EIGEN_RATIO = 0.01

_GICP_EPSILON = 0.001
_GICP_ROTATION_EPSILON = 2e-3
_GICP_OPTIMIZER_ITERATIONS = 20


@dataclass(frozen=True)
class RegistrationResult:
    """Outcome of one registration run."""

    transform: np.ndarray
    fitness_score: float
    has_converged: bool
    iterations: int


def _points(points: object) -> np.ndarray:
    array = np.asarray(points, dtype=float)
    if array.size == 0:
        return np.empty((0, 3))
    if array.ndim != 2 or array.shape[1] != 3:
        raise ValueError(f"expected an (N, 3) array of points, got shape {array.shape}")
    return array


def _initial(initial_guess: object) -> np.ndarray:
    if initial_guess is None:
        return np.eye(4)
    matrix = np.array(initial_guess, dtype=float)
    if matrix.shape != (4, 4):
        raise ValueError(f"expected a 4x4 initial guess, got shape {matrix.shape}")
    return matrix


def _check_iterations(max_iterations: int) -> None:
    if max_iterations < 1:
        raise ValueError("max_iterations must be at least 1")


def _finish(
    source: np.ndarray, target: np.ndarray, transform: np.ndarray, converged: bool, iterations: int
) -> RegistrationResult:
    return RegistrationResult(
        transform=transform,
        fitness_score=fitness_score(source, target, transform),
        has_converged=converged,
        iterations=iterations,
    )


def fitness_score(
    source: object, target: object, transform: object = None, max_range: float = math.inf
) -> float:
    """Mean squared nearest-neighbour distance from the moved source to the target.

    Only squared distances not above ``max_range`` are averaged; when none
    qualifies, or a cloud is empty, the largest float is returned.
    """
    src = _points(source)
    tgt = _points(target)
    if len(src) == 0 or len(tgt) == 0:
        return WORST_SCORE
    moved = transform_points(src, _initial(transform))
    distances, _ = cKDTree(tgt).query(moved, k=1)
    squared = distances**2
    within = squared[squared <= max_range]
    if within.size == 0:
        return WORST_SCORE
    return float(within.mean())


def inlier_ratio(
    source: object, target: object, transform: object, distance_threshold: float
) -> float:
    """Fraction of moved source points within ``distance_threshold`` of the target."""
    src = _points(source)
    tgt = _points(target)
    if len(src) == 0 or len(tgt) == 0:
        return 0.0
    moved = transform_points(src, _initial(transform))
    distances, _ = cKDTree(tgt).query(moved, k=1)
    inliers = np.count_nonzero(distances**2 <= distance_threshold * distance_threshold)
    return inliers / len(src)


def _skew(vectors: np.ndarray) -> np.ndarray:
    result = np.zeros((len(vectors), 3, 3))
    x, y, z = vectors[:, 0], vectors[:, 1], vectors[:, 2]
    result[:, 0, 1], result[:, 0, 2] = -z, y
    result[:, 1, 0], result[:, 1, 2] = z, -x
    result[:, 2, 0], result[:, 2, 1] = -y, x
    return result


def _gauss_newton_step(points: np.ndarray, grads: np.ndarray, hessians: np.ndarray) -> np.ndarray:
    """Solve for a (translation, rotation vector) increment applied on the left."""
    jacobian = np.zeros((len(points), 3, 6))
    jacobian[:, :, :3] = np.eye(3)
    jacobian[:, :, 3:] = -_skew(points)
    gradient = np.einsum("nki,nk->i", jacobian, grads)
    hessian = np.einsum("nki,nkl,nlj->ij", jacobian, hessians, jacobian)
    return np.linalg.lstsq(hessian, -gradient, rcond=None)[0]


def _increment(delta: np.ndarray) -> np.ndarray:
    step = np.eye(4)
    step[:3, :3] = Rotation.from_rotvec(delta[3:]).as_matrix()
    step[:3, 3] = delta[:3]
    return step


def _rigid_fit(moving: np.ndarray, fixed: np.ndarray) -> np.ndarray:
    """Least-squares rigid transform taking ``moving`` onto ``fixed``."""
    moving_centre = moving.mean(axis=0)
    fixed_centre = fixed.mean(axis=0)
    covariance = (moving - moving_centre).T @ (fixed - fixed_centre)
    u, _, vt = np.linalg.svd(covariance)
    sign = np.sign(np.linalg.det(vt.T @ u.T)) or 1.0
    rotation = vt.T @ np.diag([1.0, 1.0, sign]) @ u.T
    step = np.eye(4)
    step[:3, :3] = rotation
    step[:3, 3] = fixed_centre - rotation @ moving_centre
    return step


def _transform_settled(step: np.ndarray, transformation_epsilon: float) -> bool:
    diagonal_sum = float(np.diagonal(step[:3, :3]).sum())
    cos_angle = 0.5 * (diagonal_sum - 1.0)
    translation_sq = float(np.dot(step[:3, 3], step[:3, 3]))
    return cos_angle >= _ROTATION_THRESHOLD and translation_sq <= transformation_epsilon


def _mse_settled(previous: float | None, current: float, relative: float) -> bool:
    if previous is None:
        return False
    change = abs(current - previous)
    if change < _MSE_ABSOLUTE:
        return True
    return previous > 0 and change / previous < relative


def icp(
    source: object,
    target: object,
    initial_guess: object = None,
    max_iterations: int = 50,
    max_correspondence_distance: float = 1.0,
    transformation_epsilon: float = 1e-8,
    euclidean_fitness_epsilon: float = 1e-6,
) -> RegistrationResult:
    """Point-to-point iterative closest point registration of source onto target."""
    _check_iterations(max_iterations)
    src, tgt = _points(source), _points(target)
    transform = _initial(initial_guess)
    if len(src) == 0 or len(tgt) == 0:
        return _finish(src, tgt, transform, False, 0)

    tree = cKDTree(tgt)
    max_sq = max_correspondence_distance**2
    previous_mse: float | None = None
    iterations = 0
    converged = False
    while True:
        moved = transform_points(src, transform)
        distances, indices = tree.query(moved, k=1)
        squared = distances**2
        mask = squared <= max_sq
        if np.count_nonzero(mask) < _MIN_CORRESPONDENCES:
            break
        step = _rigid_fit(moved[mask], tgt[indices[mask]])
        transform = step @ transform
        iterations += 1
        mse = float(squared[mask].mean())
        if (
            iterations >= max_iterations
            or _transform_settled(step, transformation_epsilon)
            or _mse_settled(previous_mse, mse, euclidean_fitness_epsilon)
        ):
            converged = True
            break
        previous_mse = mse
    return _finish(src, tgt, transform, converged, iterations)


def _ndt_constants(resolution: float) -> tuple[float, float]:
    c1 = 10.0 * (1.0 - _NDT_OUTLIER_RATIO)
    c2 = _NDT_OUTLIER_RATIO / resolution**3
    d3 = -math.log(c2)
    d1 = -math.log(c1 + c2) - d3
    d2 = -2.0 * math.log((-math.log(c1 * math.exp(-0.5) + c2) - d3) / d1)
    return d1, d2


def _ndt_cells(points: np.ndarray, resolution: float) -> tuple[np.ndarray, np.ndarray]:
    keys = np.floor(points / resolution).astype(np.int64)
    _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.ravel()
    means, inverses = [], []
    for cell in np.flatnonzero(counts >= _NDT_MIN_POINTS_PER_CELL):
        members = points[inverse == cell]
        values, vectors = np.linalg.eigh(np.cov(members, rowvar=False))
        largest = values.max()
        if largest <= 0.0:
            continue
        values = np.maximum(values, _NDT_MIN_EIGEN_RATIO * largest)
        means.append(members.mean(axis=0))
        inverses.append(vectors @ np.diag(1.0 / values) @ vectors.T)
    if not means:
        return np.empty((0, 3)), np.empty((0, 3, 3))
    return np.array(means), np.array(inverses)


def ndt(
    source: object,
    target: object,
    initial_guess: object = None,
    max_iterations: int = 30,
    resolution: float = 0.5,
    step_size: float = 0.1,
    transformation_epsilon: float = 1e-8,
) -> RegistrationResult:
    """Normal distributions transform registration of source onto target."""
    _check_iterations(max_iterations)
    if resolution <= 0 or step_size <= 0:
        raise ValueError("resolution and step_size must be positive")
    src, tgt = _points(source), _points(target)
    transform = _initial(initial_guess)
    if len(src) == 0 or len(tgt) == 0:
        return _finish(src, tgt, transform, False, 0)
    means, inv_covs = _ndt_cells(tgt, resolution)
    if len(means) == 0:
        return _finish(src, tgt, transform, False, 0)

    d1, d2 = _ndt_constants(resolution)
    scale = -d1 * d2
    tree = cKDTree(means)
    iterations = 0
    converged = False
    while True:
        moved = transform_points(src, transform)
        neighbours = tree.query_ball_point(moved, r=resolution)
        lengths = np.fromiter(map(len, neighbours), dtype=np.intp, count=len(neighbours))
        if lengths.sum() == 0:
            break
        rows = np.repeat(np.arange(len(moved)), lengths)
        cols = np.fromiter(itertools.chain.from_iterable(neighbours), dtype=np.intp)
        diff = moved[rows] - means[cols]
        cinv = inv_covs[cols]
        cd = np.einsum("nij,nj->ni", cinv, diff)
        weight = scale * np.exp(-0.5 * d2 * np.einsum("ni,ni->n", diff, cd))
        delta = _gauss_newton_step(
            moved[rows], weight[:, None] * cd, weight[:, None, None] * cinv
        )
        norm = float(np.linalg.norm(delta))
        if norm > step_size:
            delta *= step_size / norm
            norm = step_size
        transform = _increment(delta) @ transform
        iterations += 1
        if iterations >= max_iterations or norm < transformation_epsilon:
            converged = True
            break
    return _finish(src, tgt, transform, converged, iterations)


def _plane_covariances(points: np.ndarray, tree: cKDTree, k: int) -> np.ndarray:
    k = max(1, min(k, len(points)))
    _, indices = tree.query(points, k=k)
    neighbours = points[np.asarray(indices).reshape(len(points), k)]
    centred = neighbours - neighbours.mean(axis=1, keepdims=True)
    covariance = np.einsum("nki,nkj->nij", centred, centred) / k
    u, _, _ = np.linalg.svd(covariance)
    return np.einsum("nij,j,nkj->nik", u, np.array([1.0, 1.0, _GICP_EPSILON]), u)


def _gicp_settled(previous: np.ndarray, current: np.ndarray, transformation_epsilon: float) -> bool:
    change = np.abs(previous - current)
    rotation = change[:3, :3].max() / _GICP_ROTATION_EPSILON
    if transformation_epsilon <= 0:
        return False
    rest = max(change[:3, 3].max(), change[3, :].max()) / transformation_epsilon
    return max(rotation, rest) < 1.0


def gicp(
    source: object,
    target: object,
    initial_guess: object = None,
    max_iterations: int = 100,
    max_correspondence_distance: float = 0.1,
    transformation_epsilon: float = 1e-8,
    euclidean_fitness_epsilon: float = 1e-6,
    correspondence_randomness: int = 20,
) -> RegistrationResult:
    """Generalized (plane-to-plane) ICP registration of source onto target."""
    _check_iterations(max_iterations)
    src, tgt = _points(source), _points(target)
    transform = _initial(initial_guess)
    if len(src) == 0 or len(tgt) == 0:
        return _finish(src, tgt, transform, False, 0)

    target_tree = cKDTree(tgt)
    source_cov = _plane_covariances(src, cKDTree(src), correspondence_randomness)
    target_cov = _plane_covariances(tgt, target_tree, correspondence_randomness)
    max_sq = max_correspondence_distance**2
    previous_mse: float | None = None
    iterations = 0
    converged = False
    while True:
        moved = transform_points(src, transform)
        distances, indices = target_tree.query(moved, k=1)
        squared = distances**2
        mask = squared <= max_sq
        if np.count_nonzero(mask) < _MIN_CORRESPONDENCES:
            break
        matched = src[mask]
        fixed = tgt[indices[mask]]
        cs = source_cov[mask]
        ct = target_cov[indices[mask]]
        previous = transform
        for _ in range(_GICP_OPTIMIZER_ITERATIONS):
            rotation = transform[:3, :3]
            combined = ct + np.einsum("ij,njk,lk->nil", rotation, cs, rotation)
            weights = np.linalg.inv(combined)
            current = transform_points(matched, transform)
            diff = current - fixed
            grads = 2.0 * np.einsum("nij,nj->ni", weights, diff)
            step = _increment(_gauss_newton_step(current, grads, 2.0 * weights))
            transform = step @ transform
            if _transform_settled(step, transformation_epsilon):
                break
        iterations += 1
        mse = float(squared[mask].mean())
        if (
            iterations >= max_iterations
            or _gicp_settled(previous, transform, transformation_epsilon)
            or _mse_settled(previous_mse, mse, euclidean_fitness_epsilon)
        ):
            converged = True
            break
        previous_mse = mse
    return _finish(src, tgt, transform, converged, iterations)