import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from .panel import Panel

logger = logging.getLogger(__name__)

MISS = -1

# Individual misses logged at DEBUG before only the summary is reported.
_MAX_LOGGED_MISSES = 20

STRATEGIES = ("vectorized", "adjacent")


@dataclass(frozen=True)
class PixelMap:
    """Per-destination-pixel lookup of (owning panel, source offset).

    ``owner[i]`` indexes into ``panels`` (or is ``MISS``) and ``offset[i]`` is
    the pixel offset inside that panel's frame, for ``i = y * width + x``.
    """
    width: int
    height: int
    owner: np.ndarray
    offset: np.ndarray
    panels: Tuple[Panel, ...]
    misses: int = 0
    usage: Tuple[int, ...] = field(default_factory=tuple)

    @property
    def size(self) -> int:
        return self.width * self.height

    @property
    def coverage(self) -> float:
        return 1.0 - self.misses / float(self.size)

    def owner_grid(self) -> np.ndarray:
        return self.owner.reshape(self.height, self.width)

    def offset_grid(self) -> np.ndarray:
        return self.offset.reshape(self.height, self.width)

    def panel_at(self, x: int, y: int) -> Optional[Panel]:
        idx = int(self.owner[y * self.width + x])
        return None if idx == MISS else self.panels[idx]

    def panel_names(self) -> List[str]:
        return [p.name for p in self.panels]


def angle_tables(width: int,
                 colatitude_range: Tuple[float, float] = (0.0, math.pi)
                 ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Precompute sin/cos of the longitude of every column and colatitude of every row.

    Columns span a full turn and rows span ``colatitude_range`` (default a half
    turn), both sampled at pixel centers.

    Returns:
        (sin_theta, cos_theta) of length ``width`` and (sin_phi, cos_phi) of
        length ``width // 2``.
    """
    height = width // 2
    x = np.arange(width, dtype=np.float64)
    theta = -((2 * np.pi) * (x + 0.5) / width - np.pi)

    phi_start, phi_end = float(colatitude_range[0]), float(colatitude_range[1])
    y = np.arange(height, dtype=np.float64)
    phi = phi_start + (phi_end - phi_start) * (y + 0.5) / height

    return np.sin(theta), np.cos(theta), np.sin(phi), np.cos(phi)


def _validate_width(width: int) -> int:
    if int(width) != width or width < 2 or int(width) % 2 != 0:
        raise ValueError(f"Panorama width must be an even integer >= 2, got {width}")
    return int(width)


class PixelMapBuilder:
    """Builds the panorama pixel map for a panel set."""

    @staticmethod
    def calculate_band_rows(width: int, height: int, band_pixels: int) -> int:
        """Rows per band so one band holds at most ``band_pixels`` destination pixels."""
        return max(1, min(height, band_pixels // max(width, 1)))

    @classmethod
    def build(cls,
              width: int,
              panels: Sequence[Panel],
              colatitude_range: Tuple[float, float] = (0.0, math.pi),
              strategy: str = "vectorized",
              band_pixels: int = 1 << 22) -> PixelMap:
        """Map every panorama pixel to its owning panel and source offset.

        Args:
            width: Panorama width in pixels, even; the height is ``width // 2``.
            panels: Candidate panels in fixed scan order.
            colatitude_range: Colatitude span covered by the panorama rows.
            strategy: ``'vectorized'`` (banded numpy sweep) or ``'adjacent'``
                (scalar sweep retrying the previous pixel's panel first).
            band_pixels: Upper bound on pixels evaluated at once by the
                vectorized sweep.

        Returns:
            PixelMap over the panels that own at least one pixel. Every input
            panel's ``used`` flag reflects whether it was kept.
        """
        width = _validate_width(width)
        panels = list(panels)
        if not panels:
            raise ValueError("At least one panel is required to build a pixel map")
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown strategy: {strategy}. Use one of {STRATEGIES}")
        phi_start, phi_end = colatitude_range
        if not (0.0 <= phi_start < phi_end <= math.pi):
            raise ValueError(f"Invalid colatitude range: {colatitude_range}")

        height = width // 2
        for panel in panels:
            panel.used = False

        tables = angle_tables(width, colatitude_range)
        if strategy == "adjacent":
            owner, offset = cls._sweep_adjacent(width, height, panels, tables)
        else:
            band_rows = cls.calculate_band_rows(width, height, band_pixels)
            owner, offset = cls._sweep_vectorized(width, height, panels, tables, band_rows)

        misses = cls._report_misses(owner, width)
        return cls._prune(width, height, owner, offset, panels, misses)

    @staticmethod
    def _sweep_adjacent(width: int, height: int, panels: List[Panel],
                        tables) -> Tuple[np.ndarray, np.ndarray]:
        """Scalar sweep, column by column (x outer, y inner).

        Walking down a column stays on one face for long runs, so the previous
        pixel's panel is tried first. Every direction has a single owner, so the
        visiting order only changes how often that guess hits.
        """
        sin_theta, cos_theta, sin_phi, cos_phi = (t.tolist() for t in tables)
        owner = np.full(width * height, MISS, dtype=np.int32)
        offset = np.zeros(width * height, dtype=np.int64)

        last_hit = 0
        for x in range(width):
            st, ct = sin_theta[x], cos_theta[x]
            for y in range(height):
                sp, cp = sin_phi[y], cos_phi[y]
                i = y * width + x
                index = panels[last_hit].locate(st, ct, sp, cp)
                if index is not None:
                    owner[i] = last_hit
                    offset[i] = index
                    continue
                for p, panel in enumerate(panels):
                    if p == last_hit:
                        continue
                    index = panel.locate(st, ct, sp, cp)
                    if index is not None:
                        owner[i] = p
                        offset[i] = index
                        last_hit = p
                        break
        return owner, offset

    @staticmethod
    def _sweep_vectorized(width: int, height: int, panels: List[Panel],
                          tables, band_rows: int) -> Tuple[np.ndarray, np.ndarray]:
        sin_theta, cos_theta, sin_phi, cos_phi = tables
        owner = np.full((height, width), MISS, dtype=np.int32)
        offset = np.zeros((height, width), dtype=np.int64)

        st = sin_theta[np.newaxis, :]
        ct = cos_theta[np.newaxis, :]
        for y_start in range(0, height, band_rows):
            y_end = min(height, y_start + band_rows)
            sp = sin_phi[y_start:y_end, np.newaxis]
            cp = cos_phi[y_start:y_end, np.newaxis]
            band_owner = owner[y_start:y_end]
            band_offset = offset[y_start:y_end]

            for p, panel in enumerate(panels):
                unclaimed = band_owner == MISS
                if not unclaimed.any():
                    break
                index = panel.locate_many(st, ct, sp, cp)
                hit = unclaimed & (index >= 0)
                band_owner[hit] = p
                band_offset[hit] = index[hit]

        return owner.reshape(-1), offset.reshape(-1)

    @staticmethod
    def _report_misses(owner: np.ndarray, width: int) -> int:
        missed = np.flatnonzero(owner == MISS)
        if missed.size == 0:
            return 0
        for i in missed[:_MAX_LOGGED_MISSES]:
            logger.debug("panel miss: (%d, %d)", i % width, i // width)
        logger.warning("Pixel map has %d unmapped pixel(s) out of %d; check the panel layout",
                       missed.size, owner.size)
        return int(missed.size)

    @staticmethod
    def _prune(width: int, height: int, owner: np.ndarray, offset: np.ndarray,
               panels: List[Panel], misses: int) -> PixelMap:
        hits = np.bincount(owner[owner != MISS], minlength=len(panels))
        for panel, count in zip(panels, hits):
            panel.used = bool(count > 0)

        keep = [p for p, panel in enumerate(panels) if panel.used]
        if len(keep) != len(panels):
            remap = np.full(len(panels), MISS, dtype=np.int32)
            remap[keep] = np.arange(len(keep), dtype=np.int32)
            owner = np.where(owner == MISS, MISS, remap[np.maximum(owner, 0)]).astype(np.int32)
            dropped = [panel.name for panel in panels if not panel.used]
            logger.info("Pruned unused panel(s): %s", ", ".join(dropped))

        owner.flags.writeable = False
        offset.flags.writeable = False
        active = tuple(panels[p] for p in keep)
        logger.info("Built %dx%d pixel map over %d panel(s)", width, height, len(active))
        return PixelMap(width=width, height=height, owner=owner, offset=offset,
                        panels=active, misses=misses,
                        usage=tuple(int(hits[p]) for p in keep))


def explain_plan_image(pixel_map: PixelMap) -> np.ndarray:
    """Render panel ownership: one red-tinted gray level per panel, misses black."""
    n = len(pixel_map.panels)
    palette = np.zeros((n + 1, 3), dtype=np.uint8)
    for i in range(n):
        gray = 255 * i // max(n - 1, 1)
        palette[i + 1] = (255, gray, gray)
    # shift by one so MISS lands on the black entry
    image = palette[pixel_map.owner.astype(np.int64) + 1]
    return image.reshape(pixel_map.height, pixel_map.width, 3)


def save_explain_plan(pixel_map: PixelMap, path: str) -> None:
    Image.fromarray(explain_plan_image(pixel_map)).save(path)
    logger.info("Saved panel explain plan to %s", path)
