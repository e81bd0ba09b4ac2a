import logging
import os
import re
import shutil
from io import BytesIO
from typing import Optional

import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

_MB = 2 ** 20
_GB = float(2 ** 30)

_FRAME_PLACEHOLDER = re.compile(r"#+")


class DiskSpaceError(RuntimeError):
    """Not enough free disk space for the requested frames."""


def insert_frame(template: str, frame_number: int) -> str:
    """Replace the first run of ``#`` with the zero-padded frame number.

    ``'out/frame-####.png'`` with frame 7 gives ``'out/frame-0007.png'``.
    Templates without a placeholder are returned unchanged.
    """
    match = _FRAME_PLACEHOLDER.search(template)
    if match is None:
        return template
    digits = str(int(frame_number)).zfill(match.end() - match.start())
    return template[:match.start()] + digits + template[match.end():]


def _to_pil(image: np.ndarray) -> Image.Image:
    arr = np.asarray(image)
    if arr.dtype != np.uint8:
        # float frames are expected in [0, 1]
        arr = (np.clip(arr, 0.0, 1.0) * 255).astype(np.uint8)
    if arr.ndim == 3 and arr.shape[2] == 1:
        arr = arr[:, :, 0]
    return Image.fromarray(arr)


def _format_for(path: str) -> str:
    ext = os.path.splitext(path)[1].lower().lstrip('.')
    return {'jpg': 'JPEG', 'jpeg': 'JPEG', 'tif': 'TIFF', 'tiff': 'TIFF'}.get(ext, ext.upper() or 'PNG')


def encoded_frame_size(image: np.ndarray, file_format: str = "PNG") -> int:
    """Size in bytes of ``image`` encoded in memory."""
    buffered = BytesIO()
    _to_pil(image).save(buffered, format=file_format)
    return len(buffered.getvalue())


def check_disk_space(directory: str, frame_bytes: int, frame_limit: int = 0) -> int:
    """Fail fast when ``frame_limit`` frames of ``frame_bytes`` will not fit.

    Args:
        directory: Directory the frames are written to.
        frame_bytes: Estimated size of one frame on disk.
        frame_limit: Number of frames to be written; 0 means unlimited.

    Returns:
        Number of frames that fit in the available space.

    Raises:
        DiskSpaceError: ``frame_limit`` frames exceed the free space.
    """
    usable = shutil.disk_usage(directory).free
    frame_bytes = max(int(frame_bytes), 1)

    logger.info("Saving frames to directory %s", os.path.abspath(directory))
    logger.info("There is %.2fGB available", usable / _GB)
    logger.info("Saving each frame takes about %dMB", frame_bytes // _MB)

    if frame_limit > 0:
        total = frame_bytes * frame_limit
        logger.info("Saving %d frames will take %.2fGB", frame_limit, total / _GB)
        if total > usable:
            raise DiskSpaceError(
                f"Not enough disk space to save requested frames: need {total / _GB:.2f}GB, "
                f"have {usable / _GB:.2f}GB"
            )
    capacity = usable // frame_bytes
    if frame_limit <= 0:
        logger.info("Available space for about %d frames", capacity)
    return int(capacity)


class FrameWriter:
    """Writes composite frames to frame-numbered files.

    The disk check runs once, against the first frame's encoded size, before
    that frame is written.
    """

    def __init__(self, template: str, frame_limit: int = 0, file_format: Optional[str] = None):
        self.template = template
        self.frame_limit = int(frame_limit)
        self.file_format = file_format or _format_for(template)
        self._checked = False

    def path_for(self, frame_number: int) -> str:
        return insert_frame(self.template, frame_number)

    def write(self, image: np.ndarray, frame_number: int) -> str:
        path = self.path_for(frame_number)
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)

        if not self._checked:
            check_disk_space(directory, encoded_frame_size(image, self.file_format), self.frame_limit)
            self._checked = True

        _to_pil(image).save(path, format=self.file_format)
        logger.debug("Wrote frame %d to %s", frame_number, path)
        return path
