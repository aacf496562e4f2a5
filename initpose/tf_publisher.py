"""Relay of the map-to-odometry transform onto fixed frame names."""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from typing import Optional

from .transforms import TransformStamped

Broadcaster = Callable[[TransformStamped], None]


class InitTFPublisher:
    """Rewrites incoming transforms to the configured frames and broadcasts them.

    The broadcaster is called with every relayed transform. The last one sent
    is kept in ``latest``, as a latched static transform would be.
    """

    def __init__(
        self,
        broadcaster: Broadcaster,
        map_frame_id: str = "map",
        odom_frame_id: str = "odom_init",
    ) -> None:
        self.broadcaster = broadcaster
        self.map_frame_id = map_frame_id
        self.odom_frame_id = odom_frame_id
        self.latest: Optional[TransformStamped] = None

    def callback(self, msg: TransformStamped) -> TransformStamped:
        """Relay ``msg`` with its frames replaced; return the transform sent."""
        transform = dataclasses.replace(
            msg, frame_id=self.map_frame_id, child_frame_id=self.odom_frame_id
        )
        self.broadcaster(transform)
        self.latest = transform
        return transform

    __call__ = callback


__all__ = ["InitTFPublisher"]