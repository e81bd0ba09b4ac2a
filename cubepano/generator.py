import dataclasses
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import CameraConfig, ComputeConfig, GeneratorConfig, OutputConfig
from .modules.compositor import Compositor, resize_for_preview, to_numpy
from .modules.frame_writer import FrameWriter
from .modules.panel import CameraParams, CameraRig, Panel, default_panels
from .modules.pixel_map import PixelMap, PixelMapBuilder, save_explain_plan

logger = logging.getLogger(__name__)

Renderer = Callable[[CameraParams, int, int], Any]


class Monoscopic360Generator:
    """Turns six cube-face renders per frame into one equirectangular panorama.

    Per frame::

        generator.begin_frame()
        for i in range(generator.component_count):
            params = generator.render_panel(i)
            generator.submit_panel_buffer(i, render(params))
        panorama = generator.finalize_frame()

    The pixel map is built on the first ``begin_frame`` and reused until the
    output width, the panel layout or the colatitude range changes.
    """

    def __init__(self,
                 frame_width: int,
                 frame_height: int,
                 camera: Optional[CameraConfig] = None,
                 output: Optional[OutputConfig] = None,
                 compute: Optional[ComputeConfig] = None,
                 panels: Optional[Sequence[Panel]] = None):
        self.config = GeneratorConfig(frame_width, frame_height,
                                      camera=camera or CameraConfig(),
                                      output=output or OutputConfig(),
                                      compute=compute or ComputeConfig()).validate()
        self._rig = CameraRig.from_config(self.config.camera)
        self._panels: List[Panel] = list(panels) if panels is not None else default_panels(frame_width, frame_height)
        self._compositor = Compositor(self.config.compute.workers, self.config.compute.backend)
        self._writer = self._make_writer()
        self._lock = threading.RLock()

        self._pixel_map: Optional[PixelMap] = None
        self._composite: Optional[np.ndarray] = None
        self._submitted: Dict[int, np.ndarray] = {}
        self._in_frame = False
        self._frame_index = 0
        self.preview: Optional[np.ndarray] = None

    @classmethod
    def from_config(cls, config: GeneratorConfig,
                    panels: Optional[Sequence[Panel]] = None) -> "Monoscopic360Generator":
        return cls(config.frame_width, config.frame_height, camera=config.camera,
                   output=config.output, compute=config.compute, panels=panels)

    def __enter__(self) -> "Monoscopic360Generator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._compositor.close()

    # =============================
    # Configuration
    # =============================
    def _make_writer(self) -> Optional[FrameWriter]:
        out = self.config.output
        if out.save_location is None:
            return None
        return FrameWriter(out.save_location, frame_limit=out.frame_limit, file_format=out.image_format)

    def _require_idle(self, action: str) -> None:
        if self._in_frame:
            raise RuntimeError(f"Cannot {action} while a frame is in progress")

    def invalidate(self) -> None:
        """Drop the cached pixel map and composite frame."""
        with self._lock:
            self._pixel_map = None
            self._composite = None

    def set_output_size_and_location(self, size: int, save_location: Optional[str] = None) -> "Monoscopic360Generator":
        if int(size) != size or size < 2 or int(size) % 2 != 0:
            raise ValueError(f"Size must be an even number, got {size}")
        with self._lock:
            self._require_idle("change the output size")
            self.config.output.panorama_width = int(size)
            self.config.output.save_location = save_location
            self._writer = self._make_writer()
            self.invalidate()
        return self

    def set_panel_explain_plan_location(self, location: Optional[str]) -> "Monoscopic360Generator":
        self.config.output.explain_plan_location = location
        return self

    def skip_displaying_composite_frame(self) -> "Monoscopic360Generator":
        self.config.output.display_preview = False
        self.preview = None
        return self

    def set_thread_count(self, thread_count: int) -> "Monoscopic360Generator":
        with self._lock:
            self._require_idle("change the thread count")
            compositor = Compositor(thread_count, self.config.compute.backend)
            self._compositor.close()
            self._compositor = compositor
            self.config.compute.workers = int(thread_count)
        return self

    def set_panels(self, panels: Sequence[Panel]) -> "Monoscopic360Generator":
        panels = list(panels)
        if not panels:
            raise ValueError("At least one panel is required")
        with self._lock:
            self._require_idle("change the panel layout")
            self._panels = panels
            self.invalidate()
        return self

    def set_colatitude_range(self, colatitude_range: Tuple[float, float]) -> "Monoscopic360Generator":
        with self._lock:
            self._require_idle("change the colatitude range")
            self.config.compute.colatitude_range = tuple(colatitude_range)
            self.invalidate()
        return self

    def set_camera(self,
                   position: Optional[Sequence[float]] = None,
                   target: Optional[Sequence[float]] = None,
                   up: Optional[Sequence[float]] = None,
                   frustum_near: Optional[float] = None,
                   frustum_far: Optional[float] = None) -> "Monoscopic360Generator":
        """Move the primary camera. Panel bases are derived from it on the next ``render_panel``."""
        with self._lock:
            self._require_idle("move the camera")
            changes: Dict[str, Any] = {}
            if position is not None:
                changes['position'] = tuple(float(v) for v in position)
            if target is not None:
                changes['target'] = tuple(float(v) for v in target)
            if up is not None:
                changes['up'] = tuple(float(v) for v in up)
            if frustum_near is not None:
                changes['frustum_near'] = float(frustum_near)
            if frustum_far is not None:
                changes['frustum_far'] = float(frustum_far)
            cam = dataclasses.replace(self.config.camera, **changes)
            # validate a copy so a rejected camera leaves the old one in place
            dataclasses.replace(self.config, camera=cam).validate()
            self.config.camera = cam
            self._rig = CameraRig.from_config(cam)
        return self

    # =============================
    # Pixel map
    # =============================
    @property
    def panorama_width(self) -> int:
        return self.config.resolved_panorama_width()

    @property
    def camera_rig(self) -> CameraRig:
        return self._rig

    @property
    def frame_index(self) -> int:
        return self._frame_index

    @property
    def pixel_map(self) -> PixelMap:
        """The cached pixel map, built on first access."""
        with self._lock:
            if self._pixel_map is None:
                self._pixel_map = self._build_pixel_map()
            return self._pixel_map

    def _build_pixel_map(self) -> PixelMap:
        compute = self.config.compute
        pixel_map = PixelMapBuilder.build(self.panorama_width, self._panels,
                                          colatitude_range=compute.colatitude_range,
                                          strategy=compute.strategy)
        location = self.config.output.explain_plan_location
        if location is not None:
            save_explain_plan(pixel_map, location)
        return pixel_map

    @property
    def panels(self) -> Tuple[Panel, ...]:
        """Active panels, in the order their buffers are expected."""
        return self.pixel_map.panels

    @property
    def component_count(self) -> int:
        return len(self.panels)

    def component_frame_name(self, index: int) -> str:
        panels = self.panels
        if 0 <= index < len(panels):
            return panels[index].name
        return ""

    # =============================
    # Frame protocol
    # =============================
    def begin_frame(self) -> int:
        """Start a frame, building the pixel map if needed. Returns the frame index."""
        with self._lock:
            self._require_idle("begin a frame")
            _ = self.pixel_map
            self._submitted = {}
            self._in_frame = True
            return self._frame_index

    def _require_frame(self) -> None:
        if not self._in_frame:
            raise RuntimeError("No frame in progress; call begin_frame() first")

    def _panel_index(self, key: Union[int, str]) -> int:
        panels = self.panels
        if isinstance(key, str):
            for i, panel in enumerate(panels):
                if panel.name == key:
                    return i
            raise KeyError(f"No active panel named {key}")
        if not 0 <= key < len(panels):
            raise IndexError(f"Panel index {key} out of range for {len(panels)} active panels")
        return int(key)

    def render_panel(self, key: Union[int, str]) -> CameraParams:
        """Camera parameters the renderer should use for one active panel."""
        self._require_frame()
        return self.panels[self._panel_index(key)].orient(self._rig)

    def submit_panel_buffer(self, key: Union[int, str], pixels: Any) -> None:
        self._require_frame()
        index = self._panel_index(key)
        panel = self.panels[index]
        arr = to_numpy(pixels)
        if arr.ndim not in (2, 3) or arr.shape[:2] != (panel.frame_height, panel.frame_width):
            raise ValueError(
                f"Buffer for {panel.name} must be ({panel.frame_height}, {panel.frame_width}[, C]), "
                f"got {tuple(arr.shape)}"
            )
        self._submitted[index] = arr

    def abort_frame(self) -> None:
        with self._lock:
            self._submitted = {}
            self._in_frame = False

    def _composite_buffer(self, sample: np.ndarray) -> np.ndarray:
        pixel_map = self.pixel_map
        shape = (pixel_map.height, pixel_map.width) + sample.shape[2:]
        if self._composite is None or self._composite.shape != shape or self._composite.dtype != sample.dtype:
            self._composite = np.zeros(shape, dtype=sample.dtype)
        return self._composite

    def finalize_frame(self) -> np.ndarray:
        """Composite the submitted buffers into the panorama.

        Returns:
            The composite frame. The array is reused by the next frame; copy it
            to keep it.
        """
        with self._lock:
            self._require_frame()
            panels = self.panels
            missing = [p.name for i, p in enumerate(panels) if i not in self._submitted]
            if missing:
                raise RuntimeError(f"Missing panel buffers for: {', '.join(missing)}")

            buffers = [self._submitted[i] for i in range(len(panels))]
            try:
                frame = self._compositor.composite(self.pixel_map, buffers,
                                                   out=self._composite_buffer(buffers[0]))
            finally:
                self._submitted = {}
                self._in_frame = False

            if self._writer is not None:
                self._writer.write(frame, self._frame_index)

            out = self.config.output
            if out.display_preview:
                width = out.preview_width or self.config.frame_width
                self.preview = resize_for_preview(frame, width, out.preview_interpolation)

            self._frame_index += 1
            return frame

    def render_frame(self, renderer: Renderer) -> np.ndarray:
        """Run the whole frame protocol with ``renderer(params, width, height) -> buffer``."""
        self.begin_frame()
        try:
            for i, panel in enumerate(self.panels):
                params = self.render_panel(i)
                self.submit_panel_buffer(i, renderer(params, panel.frame_width, panel.frame_height))
        except Exception:
            self.abort_frame()
            raise
        return self.finalize_frame()
