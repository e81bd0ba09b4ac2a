"""
Shared fixtures for the cubepano test suite.
"""

import numpy as np
import pytest

from cubepano.modules.panel import default_panels
from cubepano.modules.pixel_map import PixelMapBuilder


@pytest.fixture
def make_buffers():
    """Factory for random uint8 panel buffers, one per panel."""
    def _make(panels, channels=3, seed=0):
        rng = np.random.default_rng(seed)
        shape_tail = (channels,) if channels else ()
        return [
            rng.integers(0, 256, size=(p.frame_height, p.frame_width) + shape_tail, dtype=np.uint8)
            for p in panels
        ]
    return _make


@pytest.fixture
def small_map():
    """32x16 panorama over six 8x8 faces."""
    return PixelMapBuilder.build(32, default_panels(8, 8))
