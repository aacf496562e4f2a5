"""Point clouds as (N, 3) arrays: PCD input/output, filters and downsampling."""

from __future__ import annotations

import os
from collections.abc import Iterable, Sequence

import numpy as np


class PcdError(ValueError):
    """Raised when a PCD file cannot be read or is malformed."""


_TYPE_CODES = {
    ("F", 4): "f4",
    ("F", 8): "f8",
    ("I", 1): "i1",
    ("I", 2): "i2",
    ("I", 4): "i4",
    ("I", 8): "i8",
    ("U", 1): "u1",
    ("U", 2): "u2",
    ("U", 4): "u4",
    ("U", 8): "u8",
}


def _as_points(points: object) -> np.ndarray:
    array = np.asarray(points, dtype=float)
    if array.size == 0:
        return np.empty((0, 3))
    if array.ndim != 2 or array.shape[1] != 3:
        raise ValueError(f"expected an (N, 3) array of points, got shape {array.shape}")
    return array


def _lzf_decompress(data: bytes, expected: int) -> bytes:
    out = bytearray()
    pos = 0
    end = len(data)
    while pos < end:
        ctrl = data[pos]
        pos += 1
        if ctrl < 32:
            length = ctrl + 1
            if pos + length > end:
                raise PcdError("corrupt compressed data: literal run past end")
            out += data[pos : pos + length]
            pos += length
            continue
        length = ctrl >> 5
        ref = len(out) - ((ctrl & 0x1F) << 8) - 1
        if length == 7:
            if pos >= end:
                raise PcdError("corrupt compressed data: truncated length")
            length += data[pos]
            pos += 1
        if pos >= end:
            raise PcdError("corrupt compressed data: truncated reference")
        ref -= data[pos]
        pos += 1
        length += 2
        if ref < 0:
            raise PcdError("corrupt compressed data: reference before start")
        for _ in range(length):
            out.append(out[ref])
            ref += 1
    if len(out) != expected:
        raise PcdError(f"decompressed {len(out)} bytes, expected {expected}")
    return bytes(out)


def _parse_header(raw: bytes) -> tuple[dict[str, list[str]], int]:
    header: dict[str, list[str]] = {}
    offset = 0
    while True:
        newline = raw.find(b"\n", offset)
        if newline < 0:
            raise PcdError("PCD header has no DATA line")
        line = raw[offset:newline].decode("ascii", errors="replace").strip()
        offset = newline + 1
        if not line or line.startswith("#"):
            continue
        key, *values = line.split()
        header[key.upper()] = values
        if key.upper() == "DATA":
            return header, offset


def load_pcd(path: str | os.PathLike[str]) -> np.ndarray:
    """Read the x, y and z fields of a PCD file into an (N, 3) float array."""
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except OSError as exc:
        raise PcdError(f"cannot read {path}: {exc}") from exc

    header, offset = _parse_header(raw)
    try:
        fields = header["FIELDS"]
        sizes = [int(v) for v in header["SIZE"]]
        types = [v.upper() for v in header["TYPE"]]
        counts = [int(v) for v in header.get("COUNT", ["1"] * len(fields))]
        if "POINTS" in header:
            n_points = int(header["POINTS"][0])
        else:
            n_points = int(header["WIDTH"][0]) * int(header["HEIGHT"][0])
        data_kind = header["DATA"][0].lower()
    except (KeyError, IndexError, ValueError) as exc:
        raise PcdError(f"malformed PCD header: {exc}") from exc
    if not (len(fields) == len(sizes) == len(types) == len(counts)):
        raise PcdError("FIELDS, SIZE, TYPE and COUNT disagree in length")
    missing = [name for name in ("x", "y", "z") if name not in fields]
    if missing:
        raise PcdError(f"PCD file lacks fields: {', '.join(missing)}")
    dtypes = []
    for t, s in zip(types, sizes):
        code = _TYPE_CODES.get((t, s))
        if code is None:
            raise PcdError(f"unsupported field type {t}{s}")
        dtypes.append(np.dtype("<" + code))

    wanted = [fields.index(name) for name in ("x", "y", "z")]
    body = raw[offset:]

    if data_kind == "ascii":
        starts = np.cumsum([0, *counts])
        rows = [line.split() for line in body.decode("ascii").splitlines() if line.strip()]
        if len(rows) < n_points:
            raise PcdError(f"expected {n_points} points, found {len(rows)}")
        try:
            return np.array(
                [[float(row[starts[i]]) for i in wanted] for row in rows[:n_points]],
                dtype=float,
            ).reshape(-1, 3)
        except (IndexError, ValueError) as exc:
            raise PcdError(f"malformed ASCII point data: {exc}") from exc

    if data_kind == "binary":
        record = np.dtype(
            [(f"f{i}", dt, (c,)) for i, (dt, c) in enumerate(zip(dtypes, counts))]
        )
        if len(body) < record.itemsize * n_points:
            raise PcdError("binary point data is truncated")
        table = np.frombuffer(body, dtype=record, count=n_points)
        return np.column_stack([table[f"f{i}"][:, 0].astype(float) for i in wanted]).reshape(-1, 3)

    if data_kind == "binary_compressed":
        if len(body) < 8:
            raise PcdError("compressed point data is truncated")
        compressed_size = int.from_bytes(body[0:4], "little")
        uncompressed_size = int.from_bytes(body[4:8], "little")
        if len(body) < 8 + compressed_size:
            raise PcdError("compressed point data is truncated")
        plain = _lzf_decompress(body[8 : 8 + compressed_size], uncompressed_size)
        columns = {}
        position = 0
        for index, (dt, count) in enumerate(zip(dtypes, counts)):
            width = dt.itemsize * count * n_points
            if position + width > len(plain):
                raise PcdError("compressed point data is shorter than declared")
            if index in wanted:
                values = np.frombuffer(plain, dtype=dt, count=count * n_points, offset=position)
                columns[index] = values.reshape(n_points, count)[:, 0].astype(float)
            position += width
        return np.column_stack([columns[i] for i in wanted]).reshape(-1, 3)

    raise PcdError(f"unsupported DATA encoding: {data_kind}")


def save_pcd(path: str | os.PathLike[str], points: object) -> None:
    """Write points to an ASCII PCD file with x, y and z fields."""
    cloud = _as_points(points)
    lines = [
        "# .PCD v0.7 - Point Cloud Data file format",
        "VERSION 0.7",
        "FIELDS x y z",
        "SIZE 4 4 4",
        "TYPE F F F",
        "COUNT 1 1 1",
        f"WIDTH {len(cloud)}",
        "HEIGHT 1",
        "VIEWPOINT 0 0 0 1 0 0 0",
        f"POINTS {len(cloud)}",
        "DATA ascii",
    ]
    lines.extend(" ".join(repr(float(v)) for v in point) for point in cloud)
    with open(path, "w", encoding="ascii") as handle:
        handle.write("\n".join(lines) + "\n")


def voxel_downsample(points: object, leaf_size: float) -> np.ndarray:
    """Replace the points in each cubic voxel of side ``leaf_size`` by their centroid.

    Non-finite points are dropped; voxels come out ordered by their linear index.
    """
    if leaf_size <= 0:
        raise ValueError("leaf_size must be positive")
    cloud = _as_points(points)
    cloud = cloud[np.isfinite(cloud).all(axis=1)]
    if len(cloud) == 0:
        return np.empty((0, 3))
    cells = np.floor(cloud / leaf_size).astype(np.int64)
    relative = cells - cells.min(axis=0)
    dims = relative.max(axis=0) + 1
    linear = relative[:, 0] + relative[:, 1] * dims[0] + relative[:, 2] * dims[0] * dims[1]
    _, inverse, counts = np.unique(linear, return_inverse=True, return_counts=True)
    inverse = inverse.ravel()
    sums = np.zeros((len(counts), 3))
    np.add.at(sums, inverse, cloud)
    return sums / counts[:, None]


def crop_box(points: object, min_point: Sequence[float], max_point: Sequence[float]) -> np.ndarray:
    """Keep the points inside the axis-aligned box, bounds included."""
    cloud = _as_points(points)
    low = np.asarray(min_point, dtype=float)[:3]
    high = np.asarray(max_point, dtype=float)[:3]
    inside = ((cloud >= low) & (cloud <= high)).all(axis=1)
    return cloud[inside]


def transform_points(points: object, transform: object) -> np.ndarray:
    """Apply a 4x4 homogeneous transform to every point."""
    cloud = _as_points(points)
    matrix = np.asarray(transform, dtype=float)
    if matrix.shape != (4, 4):
        raise ValueError(f"expected a 4x4 transform, got shape {matrix.shape}")
    return cloud @ matrix[:3, :3].T + matrix[:3, 3]


def merge_clouds(clouds: Iterable[object]) -> np.ndarray:
    """Concatenate clouds in order into a single cloud."""
    parts = [_as_points(cloud) for cloud in clouds]
    if not parts:
        return np.empty((0, 3))
    return np.concatenate(parts, axis=0)


def grid_centroids(points: object, grid_size: float, min_points: int) -> np.ndarray:
    """Centroids of grid cells holding at least ``min_points`` points.

    Cells are ordered lexicographically by their (x, y, z) cell index.
    """
    if grid_size <= 0:
        raise ValueError("grid_size must be positive")
    cloud = _as_points(points)
    if len(cloud) == 0:
        return np.empty((0, 3))
    cells = np.floor(cloud / grid_size).astype(np.int64)
    _, inverse, counts = np.unique(cells, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.ravel()
    sums = np.zeros((len(counts), 3))
    np.add.at(sums, inverse, cloud)
    keep = counts >= min_points
    return (sums[keep] / counts[keep, None]).reshape(-1, 3)


def filter_min_radius(points: object, radius: float) -> np.ndarray:
    """Keep points whose horizontal distance from the origin is at least ``radius``."""
    cloud = _as_points(points)
    horizontal = cloud[:, 0] ** 2 + cloud[:, 1] ** 2
    return cloud[horizontal >= radius * radius]