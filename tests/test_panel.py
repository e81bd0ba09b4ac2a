import math

import numpy as np
import pytest

from cubepano.modules.geometry import Vector
from cubepano.modules.panel import (
    CameraRig,
    Orientation,
    Panel,
    default_panels,
    dominant_mask,
    dominant_orientation,
    parse_panel_order,
    split_panel,
    tiled_panels,
)
from cubepano.modules.pixel_map import angle_tables


def default_rig():
    return CameraRig(Vector(0.0, 0.0, 0.0), Vector(0.0, 0.0, -1.0), Vector(0.0, 1.0, 0.0),
                     frustum_near=0.5, frustum_far=100.0)


def matches(panels, *angles):
    return [p.orientation for p in panels if p.locate(*angles) is not None]


def test_orientation_parse_synonyms():
    assert Orientation.parse("F") is Orientation.FRONT
    assert Orientation.parse("back") is Orientation.REAR
    assert Orientation.parse("Top") is Orientation.ABOVE
    assert Orientation.parse("BELOW") is Orientation.BELOW
    assert Orientation.parse(" l ") is Orientation.LEFT
    assert Orientation.parse(Orientation.RIGHT) is Orientation.RIGHT
    with pytest.raises(ValueError):
        Orientation.parse("sideways")


@pytest.mark.parametrize("kwargs", [
    dict(start_x=0.5, end_x=0.5),
    dict(start_x=-0.1),
    dict(end_y=1.5),
    dict(start_y=0.8, end_y=0.2),
])
def test_panel_rejects_bad_subrectangle(kwargs):
    with pytest.raises(ValueError):
        Panel(Orientation.FRONT, 8, 8, **kwargs)


def test_panel_rejects_empty_frame():
    with pytest.raises(ValueError):
        Panel(Orientation.FRONT, 0, 8)


def test_panel_name_and_defaults():
    panel = Panel("U", 4, 2, tile=3)
    assert panel.name == "ABOVE-3"
    assert panel.used is False
    assert panel.frame_pixels == 8


def test_straight_ahead_resolves_to_front_center():
    panels = default_panels(8, 8)
    # theta = 0, phi = pi / 2
    assert matches(panels, 0.0, 1.0, 1.0, 0.0) == [Orientation.FRONT]
    front = panels[1]
    assert front.orientation is Orientation.FRONT
    assert front.locate(0.0, 1.0, 1.0, 0.0) == 4 * 8 + 4


@pytest.mark.parametrize("theta", np.linspace(-math.pi, math.pi, 13))
def test_straight_up_resolves_to_above_for_any_theta(theta):
    panels = default_panels(8, 8)
    angles = (math.sin(theta), math.cos(theta), 0.0, 1.0)
    assert matches(panels, *angles) == [Orientation.ABOVE]
    above = [p for p in panels if p.orientation is Orientation.ABOVE][0]
    assert above.locate(*angles) == 4 * 8 + 4


def test_straight_down_resolves_to_below():
    panels = default_panels(8, 8)
    assert matches(panels, 0.3, math.sqrt(1 - 0.09), 0.0, -1.0) == [Orientation.BELOW]


def test_axis_directions_pick_matching_face():
    panels = default_panels(6, 6)
    # theta = pi: rear; theta = pi/2: polarX < 0, left; theta = -pi/2: right
    assert matches(panels, 0.0, -1.0, 1.0, 0.0) == [Orientation.REAR]
    assert matches(panels, 1.0, 0.0, 1.0, 0.0) == [Orientation.LEFT]
    assert matches(panels, -1.0, 0.0, 1.0, 0.0) == [Orientation.RIGHT]


@pytest.mark.parametrize("width", [20, 28, 40])
def test_locate_many_agrees_with_locate(width):
    sin_t, cos_t, sin_p, cos_p = angle_tables(width)
    panels = default_panels(7, 5) + split_panel(Orientation.FRONT, 2, 3, 4, 4) + split_panel("U", 3, 3, 3, 3)
    for panel in panels:
        grid = panel.locate_many(sin_t[np.newaxis, :], cos_t[np.newaxis, :],
                                 sin_p[:, np.newaxis], cos_p[:, np.newaxis])
        assert grid.shape == (width // 2, width)
        for y in range(width // 2):
            for x in range(width):
                scalar = panel.locate(float(sin_t[x]), float(cos_t[x]), float(sin_p[y]), float(cos_p[y]))
                assert grid[y, x] == (-1 if scalar is None else scalar)


def test_dominant_orientation_breaks_ties_in_fixed_order():
    # |y| wins over |z| wins over |x| on exact ties
    assert dominant_orientation(0.5, -0.5, 0.5) is Orientation.ABOVE
    assert dominant_orientation(-0.5, 0.5, -0.5) is Orientation.BELOW
    assert dominant_orientation(0.5, 0.1, -0.5) is Orientation.FRONT
    assert dominant_orientation(-0.5, 0.1, 0.5) is Orientation.REAR
    assert dominant_orientation(-0.5, 0.1, 0.2) is Orientation.LEFT
    assert dominant_orientation(0.5, 0.0, 0.0) is Orientation.RIGHT


def test_dominant_mask_matches_scalar():
    rng = np.random.default_rng(7)
    points = rng.choice([-0.5, -0.25, 0.0, 0.25, 0.5], size=(400, 3))
    points = points[np.abs(points).sum(axis=1) > 0]
    for orientation in Orientation:
        mask = dominant_mask(orientation, points[:, 0], points[:, 1], points[:, 2])
        expected = [dominant_orientation(*p) is orientation for p in points.tolist()]
        assert mask.tolist() == expected


def test_cube_edge_direction_has_one_owner():
    # theta = -pi/4 sits on the FRONT/RIGHT edge
    panels = default_panels(8, 8)
    s = math.sqrt(0.5)
    hits = [(p.orientation, p.locate(-s, s, 1.0, 0.0)) for p in panels]
    owners = [(o, i) for o, i in hits if i is not None]
    assert len(owners) == 1
    assert owners[0][0] is dominant_orientation(0.5 * s, -0.0, -0.5 * s)
    # the owner clamps the edge to its last or first column
    assert owners[0][1] % 8 in (0, 7)


def test_half_panel_only_claims_its_half_of_the_face():
    width = height = 8
    full = Panel(Orientation.FRONT, width, height)
    half = Panel(Orientation.FRONT, width, height, start_x=0.5, end_x=1.0)
    sin_t, cos_t, sin_p, cos_p = angle_tables(64)

    claimed = 0
    for y in range(len(sin_p)):
        for x in range(len(sin_t)):
            angles = (float(sin_t[x]), float(cos_t[x]), float(sin_p[y]), float(cos_p[y]))
            full_offset = full.locate(*angles)
            half_offset = half.locate(*angles)
            in_right_half = full_offset is not None and full_offset % width >= width // 2
            assert (half_offset is not None) == in_right_half
            if half_offset is not None:
                claimed += 1
                assert 0 <= half_offset < width * height
                assert half_offset // width == full_offset // width
    assert claimed > 0


def test_orient_derives_six_bases():
    rig = default_rig()
    params = {p.orientation: p.orient(rig) for p in default_panels(8, 8)}

    assert params[Orientation.FRONT].direction == Vector(0.0, 0.0, -1.0)
    assert params[Orientation.REAR].direction == Vector(0.0, 0.0, 1.0)
    assert params[Orientation.LEFT].direction == Vector(-1.0, 0.0, 0.0)
    assert params[Orientation.RIGHT].direction == Vector(1.0, 0.0, 0.0)
    assert params[Orientation.ABOVE].direction == Vector(0.0, -1.0, 0.0)
    assert params[Orientation.BELOW].direction == Vector(0.0, 1.0, 0.0)

    assert params[Orientation.ABOVE].up == Vector(0.0, 0.0, -1.0)
    assert params[Orientation.BELOW].up == Vector(0.0, 0.0, 1.0)
    for o in (Orientation.FRONT, Orientation.REAR, Orientation.LEFT, Orientation.RIGHT):
        assert params[o].up == rig.up

    for p in params.values():
        assert p.position == rig.position
        assert p.target == rig.position + p.direction
        assert abs(p.direction.dot(p.up)) < 1e-12


def test_orient_keeps_direction_length_for_polar_faces():
    rig = CameraRig(Vector(1.0, 2.0, 3.0), Vector(1.0, 2.0, -1.0), Vector(0.0, 1.0, 0.0))
    above = Panel(Orientation.ABOVE, 4, 4).orient(rig)
    assert math.isclose(above.direction.magnitude(), rig.direction.magnitude())
    assert math.isclose(above.up.magnitude(), 1.0)


def test_frustum_follows_subrectangle():
    rig = default_rig()
    full = Panel(Orientation.FRONT, 8, 8).orient(rig)
    assert (full.frustum_left, full.frustum_right, full.frustum_bottom, full.frustum_top) == (-0.5, 0.5, -0.5, 0.5)
    assert (full.frustum_near, full.frustum_far) == (0.5, 100.0)

    tile = Panel(Orientation.FRONT, 8, 8, start_x=0.5, end_x=1.0, start_y=0.0, end_y=0.5).orient(rig)
    assert (tile.frustum_left, tile.frustum_right) == (0.0, 0.5)
    assert (tile.frustum_bottom, tile.frustum_top) == (0.0, 0.5)
    assert tile.as_dict()["frustum"] == (0.0, 0.5, 0.0, 0.5, 0.5, 100.0)


def test_rig_from_rotation_yaw():
    rig = CameraRig.from_rotation(position=(0.0, 0.0, 0.0), yaw=90.0, distance=2.0)
    d = rig.direction
    assert math.isclose(d.x, -2.0, abs_tol=1e-9)
    assert abs(d.y) < 1e-9 and abs(d.z) < 1e-9
    assert math.isclose(rig.up.y, 1.0, abs_tol=1e-9)


def test_rig_with_target_recomputes_direction():
    rig = default_rig().with_target((2.0, 0.0, 0.0))
    assert rig.direction == Vector(2.0, 0.0, 0.0)
    moved = rig.with_position((1.0, 0.0, 0.0))
    assert moved.direction == Vector(1.0, 0.0, 0.0)


def test_parse_panel_order():
    order = parse_panel_order("F,R,B,L,U,D")
    assert order == [Orientation.FRONT, Orientation.RIGHT, Orientation.REAR,
                     Orientation.LEFT, Orientation.ABOVE, Orientation.BELOW]
    assert parse_panel_order("front right, back left up down") == order
    assert parse_panel_order(["top", Orientation.FRONT]) == [Orientation.ABOVE, Orientation.FRONT]
    with pytest.raises(ValueError):
        parse_panel_order("")
    with pytest.raises(ValueError):
        parse_panel_order("F,F,B")
    with pytest.raises(ValueError):
        parse_panel_order("F,sideways")


def test_split_and_tiled_panels():
    tiles = split_panel("F", 2, 1, 16, 16)
    assert [(t.tile, t.start_x, t.end_x) for t in tiles] == [(0, 0.0, 0.5), (1, 0.5, 1.0)]
    assert [t.name for t in tiles] == ["FRONT-0", "FRONT-1"]

    everything = tiled_panels(2, 2, 4, 4)
    assert len(everything) == 24
    assert len({p.name for p in everything}) == 24
    with pytest.raises(ValueError):
        split_panel("F", 0, 1, 4, 4)

    upper = tiled_panels(1, 1, 4, 4, order="U,F")
    assert [p.name for p in upper] == ["ABOVE-0", "FRONT-0"]
    with pytest.raises(ValueError):
        tiled_panels(1, 1, 4, 4, order=["F", "front"])


def test_default_panels_scan_order():
    assert [p.orientation for p in default_panels(2, 2)] == [
        Orientation.ABOVE, Orientation.FRONT, Orientation.REAR,
        Orientation.LEFT, Orientation.RIGHT, Orientation.BELOW,
    ]
