import math
from dataclasses import dataclass, field
from typing import Optional, Tuple

Vec3 = Tuple[float, float, float]


@dataclass
class CameraConfig:
    position: Vec3 = (0.0, 0.0, 0.0)
    target: Vec3 = (0.0, 0.0, -1.0)
    up: Vec3 = (0.0, 1.0, 0.0)
    frustum_near: float = 0.1
    frustum_far: float = 1000.0


@dataclass
class OutputConfig:
    # None means 3 x frame width
    panorama_width: Optional[int] = None
    # frame-numbered template, e.g. "frames/pano-####.png"; None disables saving
    save_location: Optional[str] = None
    explain_plan_location: Optional[str] = None
    display_preview: bool = True
    # None means the frame width
    preview_width: Optional[int] = None
    preview_interpolation: str = "area"
    # 0 = no limit
    frame_limit: int = 0
    image_format: Optional[str] = None


@dataclass
class ComputeConfig:
    workers: int = 1
    backend: str = "cpu"          # "cpu", "gpu" or "auto"
    strategy: str = "vectorized"  # "vectorized" or "adjacent"
    colatitude_range: Tuple[float, float] = (0.0, math.pi)


@dataclass
class GeneratorConfig:
    frame_width: int
    frame_height: int
    camera: CameraConfig = field(default_factory=CameraConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    compute: ComputeConfig = field(default_factory=ComputeConfig)

    def resolved_panorama_width(self) -> int:
        if self.output.panorama_width is None:
            return 3 * self.frame_width
        return self.output.panorama_width

    def validate(self) -> "GeneratorConfig":
        if self.frame_width < 1 or self.frame_height < 1:
            raise ValueError(f"Frame size must be positive, got {self.frame_width}x{self.frame_height}")
        width = self.resolved_panorama_width()
        if width < 2 or width % 2 != 0:
            raise ValueError(f"Panorama width must be an even integer >= 2, got {width}")
        if self.compute.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.compute.workers}")
        if self.output.frame_limit < 0:
            raise ValueError(f"frame_limit must be >= 0, got {self.output.frame_limit}")
        if self.camera.frustum_near <= 0 or self.camera.frustum_far <= self.camera.frustum_near:
            raise ValueError("Camera frustum needs 0 < near < far")
        return self
