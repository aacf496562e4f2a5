import sys

import numpy as np
import pytest

from initpose.pointcloud import transform_points
from initpose.registration import (
    RegistrationResult,
    fitness_score,
    gicp,
    icp,
    inlier_ratio,
    ndt,
)
from initpose.transforms import orientation_error, rotation_about_z, translation_error


def _transform(angle, translation):
    matrix = np.eye(4)
    matrix[:3, :3] = rotation_about_z(angle)
    matrix[:3, 3] = translation
    return matrix


@pytest.fixture
def cube_cloud():
    rng = np.random.default_rng(7)
    return rng.uniform(0.0, 2.0, size=(300, 3))


@pytest.fixture
def corner_cloud():
    rng = np.random.default_rng(3)
    n = 500
    u = rng.uniform(0.0, 2.0, size=(3, n))
    v = rng.uniform(0.0, 2.0, size=(3, n))
    floor = np.column_stack([u[0], v[0], np.full(n, 0.25)])
    wall_y = np.column_stack([u[1], np.full(n, 0.25), v[1]])
    wall_x = np.column_stack([np.full(n, 0.25), u[2], v[2]])
    return np.vstack([floor, wall_y, wall_x])


def test_icp_recovers_known_transform(cube_cloud):
    truth = _transform(0.02, (0.03, -0.02, 0.01))
    source = transform_points(cube_cloud, np.linalg.inv(truth))
    result = icp(source, cube_cloud, np.eye(4), max_iterations=100, max_correspondence_distance=1.0)
    assert isinstance(result, RegistrationResult)
    assert result.has_converged
    assert np.allclose(result.transform, truth, atol=1e-5)
    assert result.fitness_score < 1e-10


def test_icp_empty_source_does_not_converge(cube_cloud):
    guess = _transform(0.1, (1.0, 2.0, 3.0))
    result = icp(np.empty((0, 3)), cube_cloud, guess)
    assert not result.has_converged
    assert np.allclose(result.transform, guess)
    assert result.fitness_score == sys.float_info.max


def test_icp_too_few_correspondences_keeps_guess(cube_cloud):
    far = cube_cloud + 100.0
    result = icp(far, cube_cloud, None, max_correspondence_distance=0.5)
    assert not result.has_converged
    assert result.iterations == 0
    assert np.allclose(result.transform, np.eye(4))


def test_icp_rejects_bad_arguments(cube_cloud):
    with pytest.raises(ValueError):
        icp(cube_cloud, cube_cloud, np.eye(3))
    with pytest.raises(ValueError):
        icp(cube_cloud, cube_cloud, None, max_iterations=0)


def test_ndt_reduces_translation_offset(corner_cloud):
    truth = _transform(0.0, (0.1, -0.08, 0.06))
    source = transform_points(corner_cloud, np.linalg.inv(truth))
    before = translation_error(np.eye(4), truth)
    result = ndt(source, corner_cloud, np.eye(4), max_iterations=30, resolution=0.5, step_size=0.1)
    assert result.has_converged
    assert translation_error(result.transform, truth) < 0.5 * before


def test_ndt_stays_near_truth(corner_cloud):
    result = ndt(corner_cloud, corner_cloud, np.eye(4), max_iterations=30)
    assert result.has_converged
    assert translation_error(result.transform, np.eye(4)) < 0.05
    assert orientation_error(result.transform, np.eye(4)) < 0.05


def test_ndt_without_dense_cells_does_not_converge():
    sparse = np.array([[0.0, 0.0, 0.0], [3.0, 3.0, 3.0], [6.0, 0.0, 1.0]])
    result = ndt(sparse, sparse, None)
    assert not result.has_converged
    assert result.iterations == 0


def test_ndt_rejects_non_positive_resolution(corner_cloud):
    with pytest.raises(ValueError):
        ndt(corner_cloud, corner_cloud, None, resolution=0.0)


def test_gicp_recovers_known_transform(corner_cloud):
    truth = _transform(0.02, (0.05, -0.04, 0.03))
    source = transform_points(corner_cloud, np.linalg.inv(truth))
    result = gicp(
        source,
        corner_cloud,
        np.eye(4),
        max_iterations=30,
        max_correspondence_distance=0.5,
    )
    assert result.has_converged
    assert translation_error(result.transform, truth) < 0.01
    assert orientation_error(result.transform, truth) < 0.01


def test_gicp_far_apart_keeps_guess(corner_cloud):
    guess = _transform(0.3, (0.5, 0.5, 0.0))
    result = gicp(corner_cloud + 50.0, corner_cloud, guess, max_correspondence_distance=0.1)
    assert not result.has_converged
    assert np.allclose(result.transform, guess)


def test_fitness_score_identical_clouds_is_zero(cube_cloud):
    assert fitness_score(cube_cloud, cube_cloud, np.eye(4)) == pytest.approx(0.0, abs=1e-12)


def test_fitness_score_single_offset():
    offset = np.array([0.3, -0.4, 0.2])
    score = fitness_score(np.zeros((1, 3)), offset[None, :], np.eye(4))
    assert score == pytest.approx(float(np.sum(offset**2)))


def test_fitness_score_respects_max_range():
    source = np.array([[0.0, 0.0, 0.0], [5.0, 0.0, 0.0]])
    target = np.array([[0.0, 0.0, 0.0]])
    assert fitness_score(source, target, np.eye(4), max_range=1.0) == pytest.approx(0.0)
    assert fitness_score(source, target, np.eye(4)) == pytest.approx(25.0 / 2)
    assert fitness_score(source + 10.0, target, np.eye(4), max_range=1.0) == sys.float_info.max


def test_fitness_score_applies_transform(cube_cloud):
    motion = _transform(0.4, (1.0, -2.0, 0.5))
    moved = transform_points(cube_cloud, np.linalg.inv(motion))
    assert fitness_score(moved, cube_cloud, motion) == pytest.approx(0.0, abs=1e-12)


def test_inlier_ratio_counts_near_points():
    target = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0]])
    source = np.vstack([target + 0.01, [[10.0, 10.0, 10.0]]])
    ratio = inlier_ratio(source, target, np.eye(4), 0.1)
    assert ratio == pytest.approx(len(target) / len(source))


def test_inlier_ratio_invariants(cube_cloud):
    motion = _transform(-0.2, (0.5, 0.5, 0.0))
    moved = transform_points(cube_cloud, np.linalg.inv(motion))
    assert inlier_ratio(moved, cube_cloud, motion, 0.01) == pytest.approx(1.0)
    assert inlier_ratio(np.empty((0, 3)), cube_cloud, motion, 0.01) == 0.0
    assert 0.0 <= inlier_ratio(moved, cube_cloud, np.eye(4), 0.05) <= 1.0


def test_inlier_ratio_rejects_bad_transform(cube_cloud):
    with pytest.raises(ValueError):
        inlier_ratio(cube_cloud, cube_cloud, np.eye(2), 0.1)