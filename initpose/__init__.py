"""Initial pose alignment of lidar scans against a point-cloud map: PCD input/output, registration, transforms and launch helpers."""

__version__ = "0.1.0"

__all__ = [
    "alignment",
    "launcher",
    "pointcloud",
    "registration",
    "tf_publisher",
    "transforms",
]