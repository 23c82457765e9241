import io
import zipfile

import pytest

from errors_core import InvalidFormat, NoMeshData
from formats_core import find_elements, mesh_from_model_xml, parse_3mf, unit_to_mm
from geometry_core import mesh_volume_cm3
from tests.helpers_mesh import (
    CUBE_FACES,
    CUBE_VERTICES,
    binary_stl_bytes,
    components_only_model_xml,
    cube_3mf_bytes,
    cube_obj_bytes,
    cube_triangles,
    model_xml_bytes,
    zip_bytes,
)


def test_3mf_millimeter_cube():
    mesh = parse_3mf(cube_3mf_bytes())
    assert mesh.meta["type"] == "3mf"
    assert mesh.meta["unit"] == "millimeter"
    assert mesh.triangle_count == 12
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0)


def test_3mf_meter_unit_matches_millimeter():
    mm = mesh_volume_cm3(parse_3mf(cube_3mf_bytes(unit="millimeter")))
    m = mesh_volume_cm3(parse_3mf(cube_3mf_bytes(unit="meter", scale=1.0 / 1000.0)))
    assert m == pytest.approx(mm, rel=1e-9)


@pytest.mark.parametrize(
    "unit,scale",
    [("inch", 1.0 / 25.4), ("centimeter", 0.1), ("micron", 1000.0), ("foot", 1.0 / 304.8)],
)
def test_3mf_units_are_converted_before_volume(unit, scale):
    mesh = parse_3mf(cube_3mf_bytes(unit=unit, scale=scale))
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0, rel=1e-9)


def test_unit_table_defaults():
    assert unit_to_mm(None) == 1.0
    assert unit_to_mm("parsec") == 1.0
    assert unit_to_mm(" Meter ") == 1000.0


def test_3mf_missing_unit_defaults_to_millimeter():
    mesh = parse_3mf(cube_3mf_bytes(unit=None))
    assert mesh.meta["unit"] == "millimeter"
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0)


def test_3mf_unnamespaced_model():
    mesh = parse_3mf(cube_3mf_bytes(namespaced=False))
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0)


def test_3mf_custom_declared_namespace():
    xml = model_xml_bytes().replace(
        b"http://schemas.microsoft.com/3dmanufacturing/core/2015/02", b"urn:example:other"
    )
    mesh = mesh_from_model_xml(xml, "3D/3dmodel.model")
    assert mesh.triangle_count == 12


def test_3mf_mesh_in_other_namespace_found_by_local_name():
    vs = "".join(f'<m:vertex x="{x}" y="{y}" z="{z}"/>' for x, y, z in CUBE_VERTICES)
    ts = "".join(f'<m:triangle v1="{a}" v2="{b}" v3="{c}"/>' for a, b, c in CUBE_FACES)
    xml = (
        '<model unit="millimeter" xmlns="http://schemas.microsoft.com/3dmanufacturing/core/2015/02" '
        'xmlns:m="urn:example:mesh"><resources><object id="1">'
        f'<m:mesh><m:vertices>{vs}</m:vertices><m:triangles>{ts}</m:triangles></m:mesh>'
        '</object></resources></model>'
    ).encode("utf-8")
    mesh = mesh_from_model_xml(xml)
    assert mesh.triangle_count == 12
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0)


def test_find_elements_lookup_order():
    import xml.etree.ElementTree as ET

    root = ET.fromstring(model_xml_bytes(namespaced=True))
    assert len(find_elements(root, "vertex", "")) == 8
    root = ET.fromstring(model_xml_bytes(namespaced=False))
    assert len(find_elements(root, "triangle", "")) == 12


def test_3mf_out_of_range_triangles_are_skipped():
    faces = list(CUBE_FACES) + [(0, 1, 99)]
    mesh = parse_3mf(zip_bytes({"3D/3dmodel.model": model_xml_bytes(CUBE_VERTICES, faces)}))
    assert mesh.triangle_count == 12
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0)


def test_3mf_indices_are_local_to_each_mesh():
    one = model_xml_bytes().decode("utf-8")
    mesh_block = one[one.index("<mesh>"): one.index("</mesh>") + len("</mesh>")]
    shifted = model_xml_bytes(scale=1.0).decode("utf-8").replace(
        "</object>", "</object><object id=\"2\" type=\"model\">" + mesh_block.replace('x="0.0"', 'x="20.0"').replace('x="10.0"', 'x="30.0"') + "</object>", 1
    )
    mesh = parse_3mf(zip_bytes({"3D/3dmodel.model": shifted.encode("utf-8")}))
    assert mesh.triangle_count == 24
    assert mesh_volume_cm3(mesh) == pytest.approx(2.0)


def test_3mf_uses_first_model_part_with_mesh():
    data = zip_bytes({
        "3D/3dmodel.model": components_only_model_xml(),
        "3D/Objects/object_1.model": model_xml_bytes(),
    })
    mesh = parse_3mf(data)
    assert mesh.meta["model_path"] == "3D/Objects/object_1.model"
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0)


def test_3mf_loose_stl_entry_without_model():
    data = zip_bytes({"parts/cube.stl": binary_stl_bytes(cube_triangles())})
    mesh = parse_3mf(data)
    assert mesh.meta["container"] == "3mf"
    assert mesh.meta["entry"] == "parts/cube.stl"
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0)


def test_3mf_loose_obj_entry_without_model():
    mesh = parse_3mf(zip_bytes({"cube.OBJ": cube_obj_bytes()}))
    assert mesh.meta["type"] == "obj"
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0)


def test_3mf_broken_model_falls_back_to_sniffed_entry():
    data = zip_bytes({
        "3D/3dmodel.model": b"<model><resources><object",
        "3D/payload.bin": binary_stl_bytes(cube_triangles()),
    })
    mesh = parse_3mf(data)
    assert mesh.meta["entry"] == "3D/payload.bin"
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0)


def test_3mf_broken_loose_entry_is_skipped():
    data = zip_bytes({"a.stl": b"solid x\n", "b.obj": cube_obj_bytes()})
    mesh = parse_3mf(data)
    assert mesh.meta["entry"] == "b.obj"
    assert mesh_volume_cm3(mesh) == pytest.approx(1.0)


def test_3mf_only_broken_loose_entries_raise_no_mesh():
    with pytest.raises(NoMeshData):
        parse_3mf(zip_bytes({"a.stl": b"solid x\n"}))


def test_3mf_without_mesh_data_raises():
    data = zip_bytes({"_rels/.rels": b"<Relationships/>", "Metadata/thumbnail.png": b"\x89PNG"})
    with pytest.raises(NoMeshData):
        parse_3mf(data)


def test_3mf_components_only_raises_no_mesh():
    with pytest.raises(NoMeshData):
        parse_3mf(zip_bytes({"3D/3dmodel.model": components_only_model_xml()}))


def test_3mf_not_a_zip_is_invalid():
    with pytest.raises(InvalidFormat, match="Invalid 3MF archive"):
        parse_3mf(b"PK\x03\x04 definitely not a zip archive")


def test_3mf_corrupt_entry_is_invalid():
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("3D/3dmodel.model", model_xml_bytes() * 4)
    raw = bytearray(buf.getvalue())
    # портим сжатые данные первой записи, оставляя центральный каталог целым
    start = 30 + len("3D/3dmodel.model")
    for i in range(start + 5, start + 60):
        raw[i] ^= 0xFF
    with pytest.raises(InvalidFormat):
        parse_3mf(bytes(raw))
