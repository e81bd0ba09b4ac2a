from .config import (
    CameraConfig,
    ComputeConfig,
    GeneratorConfig,
    OutputConfig,
)
from .generator import Monoscopic360Generator
from .modules.compositor import Compositor, resize_for_preview
from .modules.frame_writer import DiskSpaceError, FrameWriter, check_disk_space, insert_frame
from .modules.geometry import Vector
from .modules.panel import (
    CameraParams,
    CameraRig,
    Orientation,
    Panel,
    default_panels,
    dominant_orientation,
    parse_panel_order,
    split_panel,
    tiled_panels,
)
from .modules.pixel_map import (
    MISS,
    PixelMap,
    PixelMapBuilder,
    angle_tables,
    explain_plan_image,
    save_explain_plan,
)

__version__ = "0.1.0"

__all__ = [
    'CameraConfig', 'ComputeConfig', 'GeneratorConfig', 'OutputConfig',
    'Monoscopic360Generator',
    'Compositor', 'resize_for_preview',
    'DiskSpaceError', 'FrameWriter', 'check_disk_space', 'insert_frame',
    'Vector',
    'CameraParams', 'CameraRig', 'Orientation', 'Panel',
    'default_panels', 'dominant_orientation', 'parse_panel_order', 'split_panel', 'tiled_panels',
    'MISS', 'PixelMap', 'PixelMapBuilder', 'angle_tables',
    'explain_plan_image', 'save_explain_plan',
]
