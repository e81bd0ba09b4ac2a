import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
import torch

from .pixel_map import PixelMap

logger = logging.getLogger(__name__)

BACKENDS = ("auto", "cpu", "gpu")

PanelBuffers = Union[Sequence[Any], Mapping[str, Any]]


def to_numpy(buffer: Any) -> np.ndarray:
    if isinstance(buffer, torch.Tensor):
        return buffer.detach().cpu().numpy()
    return np.asarray(buffer)


def chunk_ranges(length: int, chunks: int) -> List[Tuple[int, int]]:
    """Split ``[0, length)`` into at most ``chunks`` disjoint contiguous ranges."""
    chunks = max(1, min(int(chunks), length)) if length > 0 else 1
    bounds = np.linspace(0, length, chunks + 1).astype(np.int64)
    return [(int(bounds[i]), int(bounds[i + 1])) for i in range(chunks) if bounds[i] < bounds[i + 1]]


class Compositor:
    """Applies a pixel map to per-panel buffers to produce one panorama frame.

    The CPU backend splits the destination index range into disjoint chunks
    and runs them on a thread pool; every call blocks until all chunks finish.
    """

    def __init__(self, workers: int = 1, backend: str = "cpu", device: Optional[str] = None):
        if int(workers) < 1:
            raise ValueError(f"workers must be >= 1, got {workers}")
        if backend not in BACKENDS:
            raise ValueError(f"Unknown backend: {backend}. Use one of {BACKENDS}")
        self.workers = int(workers)
        self.backend = backend
        self.device = device
        self._executor: Optional[ThreadPoolExecutor] = None
        self._device_maps = {}

    @property
    def use_gpu(self) -> bool:
        return (self.backend == 'gpu') or (self.backend == 'auto' and torch.cuda.is_available())

    def __enter__(self) -> "Compositor":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self._device_maps.clear()

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.workers,
                                                thread_name_prefix="cubepano-composite")
        return self._executor

    @staticmethod
    def prepare_buffers(pixel_map: PixelMap, panel_buffers: PanelBuffers) -> List[np.ndarray]:
        """Validate and flatten panel buffers to ``(frame_pixels, ...)`` arrays.

        Raises:
            ValueError: a buffer is missing or does not match its panel's frame.
        """
        panels = pixel_map.panels
        if isinstance(panel_buffers, Mapping):
            missing = [p.name for p in panels if p.name not in panel_buffers]
            if missing:
                raise ValueError(f"Missing buffers for panel(s): {', '.join(missing)}")
            ordered = [panel_buffers[p.name] for p in panels]
        else:
            ordered = list(panel_buffers)
            if len(ordered) != len(panels):
                raise ValueError(f"Expected {len(panels)} panel buffers, got {len(ordered)}")

        flat: List[np.ndarray] = []
        trailing = None
        dtype = None
        for panel, buffer in zip(panels, ordered):
            arr = to_numpy(buffer)
            if arr.ndim not in (2, 3) or arr.shape[:2] != (panel.frame_height, panel.frame_width):
                raise ValueError(
                    f"Buffer for {panel.name} must be ({panel.frame_height}, {panel.frame_width}[, C]), "
                    f"got {tuple(arr.shape)}"
                )
            if trailing is None:
                trailing, dtype = arr.shape[2:], arr.dtype
            elif arr.shape[2:] != trailing or arr.dtype != dtype:
                raise ValueError(
                    f"Buffer for {panel.name} has shape {tuple(arr.shape)} / {arr.dtype}, "
                    f"expected trailing shape {trailing} / {dtype}"
                )
            flat.append(arr.reshape((panel.frame_pixels,) + arr.shape[2:]))
        return flat

    @staticmethod
    def allocate(pixel_map: PixelMap, like: np.ndarray) -> np.ndarray:
        return np.zeros((pixel_map.height, pixel_map.width) + like.shape[1:], dtype=like.dtype)

    def composite(self, pixel_map: PixelMap, panel_buffers: PanelBuffers,
                  out: Optional[np.ndarray] = None) -> np.ndarray:
        """Build one panorama frame.

        Args:
            pixel_map: Map whose ``panels`` define the expected buffer order.
            panel_buffers: One buffer per active panel, as a sequence in
                ``pixel_map.panels`` order or a mapping keyed by panel name.
            out: Destination ``(height, width[, C])`` array to overwrite; miss
                pixels keep whatever it held. Allocated when None.

        Returns:
            The destination array.
        """
        sources = self.prepare_buffers(pixel_map, panel_buffers)
        expected = (pixel_map.height, pixel_map.width) + sources[0].shape[1:]
        if out is None:
            out = self.allocate(pixel_map, sources[0])
        elif out.shape != expected or not out.flags.c_contiguous:
            raise ValueError(f"Destination must be a contiguous array of shape {expected}, got {out.shape}")

        dest = out.reshape((pixel_map.size,) + sources[0].shape[1:])
        if self.use_gpu:
            self._composite_torch(pixel_map, sources, dest)
        else:
            self._composite_threads(pixel_map, sources, dest)
        return out

    def _composite_threads(self, pixel_map: PixelMap, sources: List[np.ndarray],
                           dest: np.ndarray) -> None:
        owner = pixel_map.owner
        offset = pixel_map.offset

        def run_chunk(bounds: Tuple[int, int]) -> None:
            start, end = bounds
            chunk_owner = owner[start:end]
            chunk_offset = offset[start:end]
            chunk_dest = dest[start:end]
            for p, src in enumerate(sources):
                sel = chunk_owner == p
                chunk_dest[sel] = src[chunk_offset[sel]]

        ranges = chunk_ranges(pixel_map.size, self.workers)
        if len(ranges) == 1:
            run_chunk(ranges[0])
            return
        # list() joins every chunk and re-raises the first failure
        list(self._pool().map(run_chunk, ranges))
        logger.debug("Composited %d pixels in %d chunks", pixel_map.size, len(ranges))

    def _device(self) -> torch.device:
        if self.device is not None:
            return torch.device(self.device)
        return torch.device('cuda' if torch.cuda.is_available() else 'cpu')

    def _maps_on_device(self, pixel_map: PixelMap, device: torch.device):
        key = (id(pixel_map), str(device))
        if key not in self._device_maps:
            # only one map is cached per device
            self._device_maps.clear()
            owner_t = torch.from_numpy(pixel_map.owner.astype(np.int64)).to(device)
            offset_t = torch.from_numpy(pixel_map.offset.copy()).to(device)
            self._device_maps[key] = (pixel_map, owner_t, offset_t)
        _, owner_t, offset_t = self._device_maps[key]
        return owner_t, offset_t

    def _composite_torch(self, pixel_map: PixelMap, sources: List[np.ndarray],
                         dest: np.ndarray) -> None:
        device = self._device()
        owner_t, offset_t = self._maps_on_device(pixel_map, device)
        dest_t = torch.from_numpy(dest).to(device)
        for p, src in enumerate(sources):
            sel = owner_t == p
            src_t = torch.from_numpy(np.ascontiguousarray(src)).to(device)
            dest_t[sel] = src_t[offset_t[sel]]
        # on the CPU the tensor shares memory with dest
        if device.type != 'cpu':
            dest[...] = dest_t.cpu().numpy()


_CV_INTERPOLATION = {
    'nearest': cv2.INTER_NEAREST,
    'bilinear': cv2.INTER_LINEAR,
    'bicubic': cv2.INTER_CUBIC,
    'lanczos': cv2.INTER_LANCZOS4,
    'area': cv2.INTER_AREA,
}


def resize_for_preview(image: np.ndarray, width: int, interpolation: str = 'area') -> np.ndarray:
    """Aspect-preserving resize of a composite frame for display.

    Args:
        image: Panorama frame (H, W[, C]).
        width: Target width; the height follows the source aspect ratio.
        interpolation: 'nearest', 'bilinear', 'bicubic', 'lanczos' or 'area'.
    """
    h, w = image.shape[:2]
    if width < 1:
        raise ValueError(f"Preview width must be >= 1, got {width}")
    out_h = max(1, int(round(h * width / float(w))))
    cv_interp = _CV_INTERPOLATION.get(interpolation, cv2.INTER_AREA)
    return cv2.resize(image, (int(width), out_h), interpolation=cv_interp)
