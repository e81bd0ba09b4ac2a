import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from scipy.spatial.transform import Rotation

from .geometry import Vector


class Orientation(Enum):
    FRONT = "front"
    REAR = "rear"
    LEFT = "left"
    RIGHT = "right"
    ABOVE = "above"
    BELOW = "below"

    @classmethod
    def parse(cls, token: "str | Orientation") -> "Orientation":
        """Resolve a face token (``F``, ``back``, ``top``, ``BELOW``...) to an orientation."""
        if isinstance(token, cls):
            return token
        key = str(token).strip().lower()
        if key not in _ORIENTATION_SYNONYMS:
            raise ValueError(
                f"Unknown face token '{token}'. Use one of: "
                + ", ".join(sorted(_ORIENTATION_SYNONYMS.keys()))
            )
        return _ORIENTATION_SYNONYMS[key]


_ORIENTATION_SYNONYMS = {
    "f": Orientation.FRONT,
    "front": Orientation.FRONT,
    "b": Orientation.REAR,
    "back": Orientation.REAR,
    "rear": Orientation.REAR,
    "l": Orientation.LEFT,
    "left": Orientation.LEFT,
    "r": Orientation.RIGHT,
    "right": Orientation.RIGHT,
    "u": Orientation.ABOVE,
    "up": Orientation.ABOVE,
    "top": Orientation.ABOVE,
    "above": Orientation.ABOVE,
    "d": Orientation.BELOW,
    "down": Orientation.BELOW,
    "bottom": Orientation.BELOW,
    "below": Orientation.BELOW,
}

# Fixed scan order used by the pixel-map builder when the adjacency guess fails.
DEFAULT_SCAN_ORDER = (
    Orientation.ABOVE,
    Orientation.FRONT,
    Orientation.REAR,
    Orientation.LEFT,
    Orientation.RIGHT,
    Orientation.BELOW,
)


def dominant_orientation(polar_x: float, polar_y: float, polar_z: float) -> Orientation:
    """The face whose axis dominates a direction.

    Exact ties between axes go to ABOVE/BELOW first, then FRONT/REAR, then
    LEFT/RIGHT, so every nonzero direction has exactly one owning face.
    """
    ax, ay, az = abs(polar_x), abs(polar_y), abs(polar_z)
    if ay >= ax and ay >= az:
        return Orientation.ABOVE if polar_y < 0 else Orientation.BELOW
    if az >= ax:
        return Orientation.FRONT if polar_z < 0 else Orientation.REAR
    return Orientation.LEFT if polar_x < 0 else Orientation.RIGHT


def dominant_mask(orientation: Orientation, polar_x: np.ndarray,
                  polar_y: np.ndarray, polar_z: np.ndarray) -> np.ndarray:
    """Boolean mask of directions whose ``dominant_orientation`` is ``orientation``."""
    ax, ay, az = np.abs(polar_x), np.abs(polar_y), np.abs(polar_z)
    on_y = (ay >= ax) & (ay >= az)
    on_z = ~on_y & (az >= ax)
    on_x = ~(on_y | on_z)
    if orientation is Orientation.ABOVE:
        return on_y & (polar_y < 0)
    if orientation is Orientation.BELOW:
        return on_y & ~(polar_y < 0)
    if orientation is Orientation.FRONT:
        return on_z & (polar_z < 0)
    if orientation is Orientation.REAR:
        return on_z & ~(polar_z < 0)
    if orientation is Orientation.LEFT:
        return on_x & (polar_x < 0)
    if orientation is Orientation.RIGHT:
        return on_x & ~(polar_x < 0)
    raise ValueError(f"Unknown orientation: {orientation}")


@dataclass(frozen=True)
class CameraParams:
    """Camera setup the external renderer needs to draw one panel."""
    position: Vector
    target: Vector
    up: Vector
    direction: Vector
    frustum_left: float
    frustum_right: float
    frustum_bottom: float
    frustum_top: float
    frustum_near: float
    frustum_far: float

    def as_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position.as_tuple(),
            "target": self.target.as_tuple(),
            "up": self.up.as_tuple(),
            "direction": self.direction.as_tuple(),
            "frustum": (self.frustum_left, self.frustum_right,
                        self.frustum_bottom, self.frustum_top,
                        self.frustum_near, self.frustum_far),
        }


@dataclass(frozen=True)
class CameraRig:
    """Primary (FRONT) camera. Every panel derives its own basis from this one."""
    position: Vector
    target: Vector
    up: Vector
    frustum_near: float = 0.1
    frustum_far: float = 1000.0

    @property
    def direction(self) -> Vector:
        return self.target - self.position

    def with_target(self, target: Sequence[float]) -> "CameraRig":
        return CameraRig(self.position, Vector.from_iterable(target), self.up,
                         self.frustum_near, self.frustum_far)

    def with_position(self, position: Sequence[float]) -> "CameraRig":
        return CameraRig(Vector.from_iterable(position), self.target, self.up,
                         self.frustum_near, self.frustum_far)

    @classmethod
    def from_config(cls, camera) -> "CameraRig":
        return cls(Vector.from_iterable(camera.position),
                   Vector.from_iterable(camera.target),
                   Vector.from_iterable(camera.up),
                   float(camera.frustum_near),
                   float(camera.frustum_far))

    @classmethod
    def from_rotation(cls,
                      position: Sequence[float] = (0.0, 0.0, 0.0),
                      yaw: float = 0.0,
                      pitch: float = 0.0,
                      roll: float = 0.0,
                      distance: float = 1.0,
                      frustum_near: float = 0.1,
                      frustum_far: float = 1000.0,
                      forward: Sequence[float] = (0.0, 0.0, -1.0),
                      up: Sequence[float] = (0.0, 1.0, 0.0)) -> "CameraRig":
        """Build a rig by rotating a forward/up pair.

        Args:
            position: Camera position.
            yaw: Rotation about the up axis in degrees.
            pitch: Rotation about the lateral (x) axis in degrees.
            roll: Rotation about the view axis in degrees.
            distance: Distance from position to target.
            forward, up: Unrotated view direction and up vector.

        Returns:
            CameraRig looking along the rotated forward vector.
        """
        rotation = Rotation.from_euler('yxz', [yaw, pitch, roll], degrees=True)
        fwd = rotation.apply(np.asarray(forward, dtype=np.float64))
        up_r = rotation.apply(np.asarray(up, dtype=np.float64))
        fwd = fwd / np.linalg.norm(fwd) * float(distance)
        pos = Vector.from_iterable(position)
        return cls(pos, pos + Vector.from_iterable(fwd), Vector.from_iterable(up_r),
                   float(frustum_near), float(frustum_far))


class Panel:
    """One cube face (or a tile of one) rendered into its own source frame.

    The sub-rectangle ``[start_x, end_x) x [start_y, end_y)`` is in normalized
    face coordinates; the panel's frame of ``frame_width`` x ``frame_height``
    pixels covers exactly that part of the face. Edges lying on the face border
    are closed, and directions exactly on the border clamp to the outermost
    frame pixel.
    """

    def __init__(self,
                 orientation: "Orientation | str",
                 frame_width: int,
                 frame_height: int,
                 start_x: float = 0.0,
                 end_x: float = 1.0,
                 start_y: float = 0.0,
                 end_y: float = 1.0,
                 tile: int = 0):
        self.orientation = Orientation.parse(orientation)
        if int(frame_width) < 1 or int(frame_height) < 1:
            raise ValueError(f"Panel frame size must be positive, got {frame_width}x{frame_height}")
        if not (0.0 <= start_x < end_x <= 1.0):
            raise ValueError(f"Invalid panel x range [{start_x}, {end_x})")
        if not (0.0 <= start_y < end_y <= 1.0):
            raise ValueError(f"Invalid panel y range [{start_y}, {end_y})")
        self.frame_width = int(frame_width)
        self.frame_height = int(frame_height)
        self.start_x = float(start_x)
        self.end_x = float(end_x)
        self.start_y = float(start_y)
        self.end_y = float(end_y)
        self.tile = int(tile)
        self.used = False

    @property
    def name(self) -> str:
        return f"{self.orientation.name}-{self.tile}"

    @property
    def frame_pixels(self) -> int:
        return self.frame_width * self.frame_height

    def __repr__(self) -> str:
        return (f"Panel({self.name}, x=[{self.start_x}, {self.end_x}), "
                f"y=[{self.start_y}, {self.end_y}), frame={self.frame_width}x{self.frame_height})")

    def _face_axes(self, polar_x, polar_y, polar_z):
        """Return (depth, u, v): distance along the face normal and the two in-face axes."""
        o = self.orientation
        if o is Orientation.FRONT:
            return -polar_z, polar_x, polar_y
        if o is Orientation.REAR:
            return polar_z, -polar_x, polar_y
        if o is Orientation.ABOVE:
            return -polar_y, polar_x, -polar_z
        if o is Orientation.BELOW:
            return polar_y, polar_x, polar_z
        if o is Orientation.LEFT:
            return -polar_x, -polar_z, polar_y
        if o is Orientation.RIGHT:
            return polar_x, polar_z, polar_y
        raise ValueError(f"Unknown orientation: {o}")

    @staticmethod
    def _contains(value, start, end):
        # face edges are closed so the owning face always claims its border pixels
        if start == 0.0 and end == 1.0:
            return True
        if start == 0.0:
            return value < end
        if end == 1.0:
            return value >= start
        return start <= value < end

    def locate(self, sin_theta: float, cos_theta: float,
               sin_phi: float, cos_phi: float) -> Optional[int]:
        """Find the source pixel for a panorama direction.

        A direction belongs to the face of its dominant axis only (see
        ``dominant_orientation``), so neighbouring faces never both claim a
        pixel center that falls on a cube edge.

        Args:
            sin_theta, cos_theta: Longitude angle of the panorama column.
            sin_phi, cos_phi: Colatitude angle of the panorama row.

        Returns:
            Offset ``y * frame_width + x`` into this panel's frame, or None when
            the direction is outside the panel.
        """
        polar_x = -0.5 * sin_phi * sin_theta
        polar_y = -0.5 * cos_phi
        polar_z = -0.5 * sin_phi * cos_theta
        if dominant_orientation(polar_x, polar_y, polar_z) is not self.orientation:
            return None

        depth, u, v = self._face_axes(polar_x, polar_y, polar_z)
        scale = 0.5 / depth
        panel_x = 0.5 + scale * u
        panel_y = 0.5 + scale * v
        if not (self._contains(panel_x, self.start_x, self.end_x)
                and self._contains(panel_y, self.start_y, self.end_y)):
            return None

        frame_x = self.frame_width * (panel_x - self.start_x) / (self.end_x - self.start_x)
        frame_y = self.frame_height * (panel_y - self.start_y) / (self.end_y - self.start_y)
        fx = min(max(math.floor(frame_x), 0), self.frame_width - 1)
        fy = min(max(math.floor(frame_y), 0), self.frame_height - 1)
        return fy * self.frame_width + fx

    def locate_many(self, sin_theta: np.ndarray, cos_theta: np.ndarray,
                    sin_phi: np.ndarray, cos_phi: np.ndarray) -> np.ndarray:
        """Vectorized ``locate`` over broadcastable arrays; -1 marks no match."""
        polar_x = -0.5 * sin_phi * sin_theta
        polar_y = -0.5 * cos_phi
        polar_z = -0.5 * sin_phi * cos_theta
        inside = dominant_mask(self.orientation, polar_x, polar_y, polar_z)

        depth, u, v = self._face_axes(polar_x, polar_y, polar_z)
        with np.errstate(divide='ignore', invalid='ignore'):
            scale = 0.5 / depth
            panel_x = 0.5 + scale * u
            panel_y = 0.5 + scale * v
            if self.start_x > 0.0:
                inside = inside & (panel_x >= self.start_x)
            if self.end_x < 1.0:
                inside = inside & (panel_x < self.end_x)
            if self.start_y > 0.0:
                inside = inside & (panel_y >= self.start_y)
            if self.end_y < 1.0:
                inside = inside & (panel_y < self.end_y)
            frame_x = self.frame_width * (panel_x - self.start_x) / (self.end_x - self.start_x)
            frame_y = self.frame_height * (panel_y - self.start_y) / (self.end_y - self.start_y)

        fx = np.clip(np.floor(np.where(inside, frame_x, 0.0)), 0, self.frame_width - 1).astype(np.int64)
        fy = np.clip(np.floor(np.where(inside, frame_y, 0.0)), 0, self.frame_height - 1).astype(np.int64)
        return np.where(inside, fy * self.frame_width + fx, -1)

    def orient(self, rig: CameraRig) -> CameraParams:
        """Derive this panel's camera from the primary camera."""
        d = rig.direction
        u = rig.up
        o = self.orientation
        if o is Orientation.FRONT:
            direction, up = d, u
        elif o is Orientation.REAR:
            direction, up = d.negated(), u
        elif o is Orientation.LEFT:
            direction, up = u.cross(d), u
        elif o is Orientation.RIGHT:
            direction, up = d.cross(u), u
        elif o is Orientation.ABOVE:
            direction, up = u.mult(d.magnitude()).negated(), d.normalized()
        elif o is Orientation.BELOW:
            direction, up = u.mult(d.magnitude()), d.normalized().negated()
        else:
            raise ValueError(f"Unknown orientation: {o}")

        near = rig.frustum_near
        return CameraParams(
            position=rig.position,
            target=rig.position + direction,
            up=up,
            direction=direction,
            frustum_left=near * (2 * self.start_x - 1),
            frustum_right=near * (2 * self.end_x - 1),
            frustum_bottom=near * (1 - 2 * self.end_y),
            frustum_top=near * (1 - 2 * self.start_y),
            frustum_near=near,
            frustum_far=rig.frustum_far,
        )


def parse_panel_order(order: "str | Sequence[Orientation | str]") -> List[Orientation]:
    """Resolve a face order such as ``'F,R,B,L,U,D'`` or ``['front', 'top']``.

    Any non-empty subset of the six faces is allowed; each may appear once.
    """
    tokens = order.replace(",", " ").split() if isinstance(order, str) else list(order)
    faces = [Orientation.parse(token) for token in tokens]
    if not faces:
        raise ValueError("panel order must name at least one face")
    if len(set(faces)) != len(faces):
        raise ValueError(f"panel order names a face twice: {[f.name for f in faces]}")
    return faces


def split_panel(orientation: "Orientation | str", columns: int, rows: int,
                frame_width: int, frame_height: int) -> List[Panel]:
    """Tile one face into ``columns x rows`` sub-panels, numbered row-major."""
    if columns < 1 or rows < 1:
        raise ValueError(f"columns and rows must be >= 1, got {columns}x{rows}")
    panels = []
    for row in range(rows):
        for col in range(columns):
            panels.append(Panel(orientation, frame_width, frame_height,
                                start_x=col / columns, end_x=(col + 1) / columns,
                                start_y=row / rows, end_y=(row + 1) / rows,
                                tile=row * columns + col))
    return panels


def tiled_panels(columns: int, rows: int, frame_width: int, frame_height: int,
                 order: "str | Sequence[Orientation | str] | None" = None) -> List[Panel]:
    faces = DEFAULT_SCAN_ORDER if order is None else parse_panel_order(order)
    panels: List[Panel] = []
    for face in faces:
        panels.extend(split_panel(face, columns, rows, frame_width, frame_height))
    return panels


def default_panels(frame_width: int, frame_height: int,
                   order: "str | Sequence[Orientation | str] | None" = None) -> List[Panel]:
    """The six full-face panels in the builder's fixed scan order."""
    return tiled_panels(1, 1, frame_width, frame_height, order=order)
