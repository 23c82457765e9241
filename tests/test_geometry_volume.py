import numpy as np
import pytest

from geometry_core import (
    empty_mesh,
    mesh_dimensions_mm,
    mesh_from_indexed,
    mesh_from_triangles,
    mesh_volume_cm3,
    reference_point,
    signed_tetra_volume,
    signed_volumes_mm3,
)
from tests.helpers_mesh import CUBE_FACES, CUBE_VERTICES, cube_triangles


def test_signed_tetra_volume_unit_simplex():
    assert signed_tetra_volume((1, 0, 0), (0, 1, 0), (0, 0, 1)) == pytest.approx(1.0 / 6.0)
    assert signed_tetra_volume((0, 1, 0), (1, 0, 0), (0, 0, 1)) == pytest.approx(-1.0 / 6.0)


def test_cube_10mm_is_one_cm3():
    mesh = mesh_from_triangles(cube_triangles())
    assert mesh.triangle_count == 12
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0, rel=1e-12)


@pytest.mark.parametrize("offset", [(-5.0, -5.0, -5.0), (1e4, -5e3, 123.0), (0.25, 0.5, 1e5)])
def test_volume_invariant_to_translation(offset):
    mesh = mesh_from_triangles(cube_triangles(offset=offset))
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0, rel=1e-9)


def test_reversed_winding_keeps_absolute_volume():
    reversed_tris = [(c, b, a) for a, b, c in cube_triangles()]
    mesh = mesh_from_triangles(reversed_tris)
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0, rel=1e-12)
    assert signed_volumes_mm3(mesh).sum() == pytest.approx(-1000.0)


def test_reference_point_is_vertex_centroid():
    mesh = mesh_from_triangles(cube_triangles())
    assert np.allclose(reference_point(mesh), [5.0, 5.0, 5.0])
    assert np.array_equal(reference_point(empty_mesh()), np.zeros(3))


def test_nonfinite_triangles_are_skipped_not_fatal():
    tris = cube_triangles() + [((np.nan, 0, 0), (1, 0, 0), (0, 1, 0)), ((np.inf, 0, 0), (1, 1, 0), (0, 1, 1))]
    mesh = mesh_from_triangles(tris)
    assert mesh.triangle_count == 12
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0)


def test_indexed_mesh_drops_out_of_range_indices():
    faces = list(CUBE_FACES) + [(0, 1, 99), (-1, 2, 3)]
    mesh = mesh_from_indexed(np.array(CUBE_VERTICES), np.array(faces))
    assert mesh.triangle_count == 12
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0)


def test_empty_and_open_meshes():
    assert mesh_volume_cm3(empty_mesh()) == 0.0
    assert mesh_from_triangles([]).is_empty

    single = mesh_from_triangles([((0, 0, 0), (1, 0, 0), (0, 1, 0))])
    assert np.isfinite(mesh_volume_cm3(single))


def test_mesh_dimensions_and_copy():
    mesh = mesh_from_triangles(cube_triangles(offset=(3, 4, 5), scale=2.0), {"type": "stl"})
    assert mesh_dimensions_mm(mesh) == pytest.approx((20.0, 20.0, 20.0))

    clone = mesh.copy()
    assert clone.triangles is not mesh.triangles
    assert clone.meta == mesh.meta and clone.meta is not mesh.meta
