import numpy as np
import pytest

from errors_core import InvalidFormat, ModelFormatError, NoGeometryData, UnsupportedFormat
from formats_core import (
    is_binary_stl_marker,
    looks_like_ascii_stl,
    looks_like_binary_stl,
    looks_like_obj,
    parse_model_bytes,
    parse_obj,
    parse_stl,
)
from geometry_core import mesh_volume_cm3
from tests.helpers_mesh import (
    CUBE_FACES,
    CUBE_VERTICES,
    ascii_stl_bytes,
    binary_stl_bytes,
    cube_obj_bytes,
    cube_triangles,
)


def test_binary_stl_cube():
    mesh = parse_stl(binary_stl_bytes(cube_triangles()))
    assert mesh.meta["encoding"] == "binary"
    assert mesh.triangle_count == 12
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0, rel=1e-6)


def test_ascii_stl_cube():
    data = ascii_stl_bytes(cube_triangles())
    assert not is_binary_stl_marker(data)
    mesh = parse_stl(data)
    assert mesh.meta["encoding"] == "ascii"
    assert mesh.triangle_count == 12
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0, rel=1e-6)


def test_stl_shorter_than_84_bytes_is_invalid():
    with pytest.raises(InvalidFormat, match="too short"):
        parse_stl(b"solid x\nendsolid x\n")
    with pytest.raises(InvalidFormat):
        parse_stl(b"\0" * 83)


def test_binary_stl_stops_early_on_truncated_buffer():
    full = binary_stl_bytes(cube_triangles())
    truncated = full[: 84 + 50 * 5 + 20]
    mesh = parse_stl(truncated)
    assert mesh.triangle_count == 5
    assert mesh.meta["declared_triangles"] == 12


def test_binary_stl_skips_nonfinite_triangles():
    tris = cube_triangles() + [((float("nan"), 0, 0), (1, 0, 0), (0, 1, 0))]
    mesh = parse_stl(binary_stl_bytes(tris))
    assert mesh.triangle_count == 12
    assert np.isfinite(mesh.triangles).all()


def test_ascii_partial_triangle_is_reset_at_endfacet():
    head = "solid " + "p" * 96
    body = "\n".join([
        "facet normal 0 0 0", "outer loop",
        "vertex 0 0 0", "vertex 1 0 0",
        "endloop", "endfacet",
        "facet normal 0 0 0", "outer loop",
        "vertex 0 0 0", "vertex 1 0 0", "vertex 0 1 0",
        "endloop", "endfacet",
        "endsolid p",
    ])
    mesh = parse_stl((head + "\n" + body + "\n").encode("ascii"))
    assert mesh.triangle_count == 1
    assert np.allclose(mesh.triangles[0], [[0, 0, 0], [1, 0, 0], [0, 1, 0]])


def test_ascii_stl_ignores_unparsable_vertex_lines():
    text = ascii_stl_bytes(cube_triangles()).decode("ascii")
    text = text.replace("endsolid cube", "vertex a b c\nendsolid cube")
    mesh = parse_stl(text.encode("ascii"))
    assert mesh.triangle_count == 12


def test_obj_fan_triangulation_matches_stl_volume():
    stl_volume = mesh_volume_cm3(parse_stl(binary_stl_bytes(cube_triangles())))
    quads = parse_obj(cube_obj_bytes(quads=True))
    tris = parse_obj(cube_obj_bytes(quads=False))

    assert quads.triangle_count == 12
    assert mesh_volume_cm3(quads) == pytest.approx(stl_volume, rel=1e-6)
    assert mesh_volume_cm3(tris) == pytest.approx(stl_volume, rel=1e-6)


def test_obj_pentagon_gives_three_triangles():
    data = b"v 0 0 0\nv 2 0 0\nv 3 1 0\nv 1 2 0\nv -1 1 0\nf 1 2 3 4 5\nf 1 2\n"
    mesh = parse_obj(data)
    assert mesh.triangle_count == 3
    assert mesh.meta["face_count"] == 1


@pytest.mark.parametrize("bad_line", ["v 9 9", "v a b c", "v 1 2 nope"])
def test_obj_broken_vertex_line_keeps_its_index(bad_line):
    lines = [bad_line] + [f"v {x} {y} {z}" for x, y, z in CUBE_VERTICES]
    lines += ["f " + " ".join(str(i + 2) for i in t) for t in CUBE_FACES]
    mesh = parse_obj(("\n".join(lines) + "\n").encode("ascii"))
    assert mesh.meta["vertex_count"] == 9
    assert mesh.triangle_count == 12
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0)


def test_obj_without_vertices_raises():
    with pytest.raises(NoGeometryData):
        parse_obj(b"# nothing here\nvn 0 0 1\nvt 0 0\n")


def test_obj_point_cloud_uses_bbox_estimate():
    mesh = parse_obj(cube_obj_bytes(with_faces=False))
    assert mesh.is_empty
    assert mesh.meta["bbox_volume_cm3"] == pytest.approx(0.6)


def test_dispatcher_uses_lowercased_extension():
    assert parse_model_bytes("CUBE.STL", binary_stl_bytes(cube_triangles())).triangle_count == 12
    assert parse_model_bytes("part.Obj", cube_obj_bytes()).triangle_count == 12


@pytest.mark.parametrize("name", ["model.ply", "model", "archive.zip", ""])
def test_dispatcher_rejects_unknown_extensions(name):
    with pytest.raises(UnsupportedFormat, match="Unsupported file format"):
        parse_model_bytes(name, binary_stl_bytes(cube_triangles()))


def test_typed_errors_are_value_errors():
    assert issubclass(InvalidFormat, ModelFormatError)
    assert issubclass(ModelFormatError, ValueError)
    assert InvalidFormat("x").kind == "InvalidFormat"


def test_format_sniffers():
    binary = binary_stl_bytes(cube_triangles())
    ascii_ = ascii_stl_bytes(cube_triangles())
    obj = cube_obj_bytes()

    assert is_binary_stl_marker(binary)
    assert looks_like_binary_stl(binary)
    assert not looks_like_binary_stl(binary + b"\0")
    assert looks_like_ascii_stl(ascii_)
    assert not looks_like_ascii_stl(obj)
    assert looks_like_obj(obj)
    assert not looks_like_obj(binary)
