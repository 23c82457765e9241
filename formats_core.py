# -*- coding: utf-8 -*-
"""
formats_core.py: разбор файлов моделей (STL / OBJ / 3MF) из байтов в общий Mesh.

Правила:
- Формат выбирается только по расширению имени файла (stl / obj / 3mf), без угадывания.
  Контент "нюхается" лишь внутри 3MF, когда в архиве нет пригодного .model.
- Битые/вырожденные треугольники пропускаются, весь файл из-за них не отбрасывается.
- Парсеры бросают типизированные ошибки (errors_core); перевод ошибки в оценку по размеру
  файла делает оркестратор (core_calc), не парсер.
"""
from __future__ import annotations

import io
import logging
import os
import struct
import zipfile
import zlib
import xml.etree.ElementTree as ET
from typing import List, Optional

import numpy as np

from errors_core import InvalidFormat, ModelFormatError, NoGeometryData, NoMeshData, UnsupportedFormat
from geometry_core import Mesh, empty_mesh, mesh_from_indexed, mesh_from_triangles, volume_bbox_cm3

log = logging.getLogger(f"printcalc.{__name__}")

SUPPORTED_EXTS = ("stl", "obj", "3mf")

# ---------- STL ----------
STL_HEADER_BYTES = 80
STL_PREAMBLE_BYTES = 84          # заголовок + uint32 числа треугольников
STL_RECORD_BYTES = 50            # normal 12 + 3×12 вершины + 2 attribute
_STL_RECORD = np.dtype([
    ("normal", "<f4", (3,)),
    ("v", "<f4", (3, 3)),
    ("attr", "<u2"),
])

# ---------- OBJ ----------
OBJ_POINT_CLOUD_FILL = 0.6       # доля bbox, считаемая материалом для облака точек без граней

# ---------- 3MF ----------
NS_CORE = "http://schemas.microsoft.com/3dmanufacturing/core/2015/02"
MAX_3MF_ENTRY_BYTES = 256 * 1024 * 1024
_SNIFF_BYTES = 64 * 1024
_NON_MESH_SUFFIXES = (".xml", ".rels", ".png", ".jpg", ".jpeg", ".model", ".config")


def file_extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower().lstrip(".")


def parse_model_bytes(filename: str, data: bytes) -> Mesh:
    """Диспетчер: выбирает декодер по расширению (в нижнем регистре)."""
    ext = file_extension(filename)
    if ext == "stl":
        return parse_stl(data)
    if ext == "obj":
        return parse_obj(data)
    if ext == "3mf":
        return parse_3mf(data)
    raise UnsupportedFormat(f"Unsupported file format: {ext or '<none>'} ({os.path.basename(filename or '')})")


# ---------- Предикаты распознавания формата ----------
def is_binary_stl_marker(data: bytes) -> bool:
    """
    Эвристика бинарного STL: байт по смещению 80 (младший байт счётчика треугольников)
    вне печатного ASCII [32, 126]. Может ошибиться на специально собранных файлах:
    это принятое приближение.
    """
    if len(data) <= STL_HEADER_BYTES:
        return False
    b = data[STL_HEADER_BYTES]
    return b < 32 or b > 126


def looks_like_ascii_stl(prefix: bytes) -> bool:
    stripped = prefix.lstrip()
    if not stripped.lower().startswith(b"solid"):
        return False
    text = prefix[:_SNIFF_BYTES].decode("utf-8", errors="ignore").lower()
    return ("facet" in text) and ("vertex" in text)


def looks_like_binary_stl(data: bytes) -> bool:
    """Бинарный STL узнаётся по точному размеру: 84 + 50 × count."""
    if len(data) < STL_PREAMBLE_BYTES:
        return False
    count = struct.unpack_from("<I", data, STL_HEADER_BYTES)[0]
    return STL_PREAMBLE_BYTES + STL_RECORD_BYTES * count == len(data)


def looks_like_stl(data: bytes) -> bool:
    return looks_like_binary_stl(data) or looks_like_ascii_stl(data[:_SNIFF_BYTES])


def looks_like_obj(data: bytes) -> bool:
    """Текст, в котором есть хотя бы одна строка вершины `v x y z`."""
    head = data[:_SNIFF_BYTES]
    if b"\0" in head:
        return False
    text = head.decode("utf-8", errors="ignore")
    return any(line.strip().startswith("v ") for line in text.splitlines())


# ---------- STL ----------
def parse_stl(data: bytes) -> Mesh:
    if len(data) < STL_PREAMBLE_BYTES:
        raise InvalidFormat(f"Invalid STL file: too short ({len(data)} bytes)")
    if is_binary_stl_marker(data):
        return _parse_binary_stl(data)
    return _parse_ascii_stl(data)


def _parse_binary_stl(data: bytes) -> Mesh:
    declared = struct.unpack_from("<I", data, STL_HEADER_BYTES)[0]
    available = (len(data) - STL_PREAMBLE_BYTES) // STL_RECORD_BYTES
    count = min(declared, available)
    if count < declared:
        log.warning("binary STL stopped early: %d of %d declared triangles present", count, declared)
    records = np.frombuffer(data, dtype=_STL_RECORD, count=count, offset=STL_PREAMBLE_BYTES)
    mesh = mesh_from_triangles(
        records["v"].astype(np.float64),
        {"type": "stl", "encoding": "binary", "declared_triangles": int(declared)},
    )
    log.debug("binary STL: %d/%d triangles parsed", mesh.triangle_count, declared)
    return mesh


def _parse_ascii_stl(data: bytes) -> Mesh:
    text = data.decode("utf-8", errors="replace")
    triangles: list = []
    current: list = []
    for line in text.splitlines():
        t = line.strip()
        if t.startswith("vertex"):
            parts = t.split()
            if len(parts) < 4:
                continue
            try:
                v = (float(parts[1]), float(parts[2]), float(parts[3]))
            except ValueError:
                continue
            current.append(v)
            if len(current) == 3:
                triangles.append(tuple(current))
                current = []
        elif t.startswith("endfacet") or t.startswith("endsolid"):
            # незакрытый треугольник не переносится в следующую грань
            current = []
    mesh = mesh_from_triangles(triangles, {"type": "stl", "encoding": "ascii"})
    log.debug("ASCII STL: %d triangles parsed", mesh.triangle_count)
    return mesh


# ---------- OBJ ----------
def parse_obj(data: bytes) -> Mesh:
    """
    OBJ: `v x y z`: вершины (индексация с 1), `f a/b/c ...`: грани.
    Многоугольники триангулируются веером от первой вершины: n вершин -> n-2 треугольника.
    Без граней объём оценивается по bbox × 0.6 (грубая поправка для облака точек).
    """
    text = data.decode("utf-8", errors="replace")
    verts: list = []
    faces: List[List[int]] = []
    for line in text.splitlines():
        t = line.strip()
        if t.startswith("v "):
            parts = t.split()
            try:
                verts.append((float(parts[1]), float(parts[2]), float(parts[3])))
            except (IndexError, ValueError):
                # любая строка `v` занимает слот, чтобы не сдвинуть индексы граней
                verts.append((np.nan, np.nan, np.nan))
        elif t.startswith("f "):
            idx = []
            for tok in t.split()[1:]:
                head = tok.split("/")[0]
                try:
                    i = int(head)
                except ValueError:
                    continue
                if i > 0:
                    idx.append(i - 1)
            if len(idx) >= 3:
                faces.append(idx)

    V = np.array(verts, dtype=np.float64).reshape(-1, 3)
    finite_V = V[np.isfinite(V).all(axis=1)]
    if finite_V.shape[0] == 0:
        raise NoGeometryData("No vertices found in OBJ file")

    meta = {"type": "obj", "vertex_count": int(V.shape[0]), "face_count": len(faces)}
    if not faces:
        est = volume_bbox_cm3(finite_V) * OBJ_POINT_CLOUD_FILL
        log.warning("OBJ has %d vertices and no faces, bbox estimate %.4f cm3", finite_V.shape[0], est)
        meta["bbox_volume_cm3"] = est
        return empty_mesh(meta)

    fan = [(f[0], f[i], f[i + 1]) for f in faces for i in range(1, len(f) - 1)]
    mesh = mesh_from_indexed(V, np.array(fan, dtype=np.int64), meta)
    log.debug("OBJ: %d vertices, %d faces, %d triangles", V.shape[0], len(faces), mesh.triangle_count)
    return mesh


# ---------- 3MF ----------
def unit_to_mm(unit_str: Optional[str]) -> float:
    unit = (unit_str or "millimeter").strip().lower()
    return {
        "micron": 0.001, "millimeter": 1.0, "centimeter": 10.0, "meter": 1000.0, "inch": 25.4, "foot": 304.8
    }.get(unit, 1.0)


def _local_name(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _namespace_of(el: ET.Element) -> str:
    if isinstance(el.tag, str) and el.tag.startswith("{"):
        return el.tag[1:].split("}", 1)[0]
    return ""


def find_elements(parent: ET.Element, local: str, ns: str = "") -> List[ET.Element]:
    """
    Поиск элементов с устойчивостью к пространствам имён, по порядку:
    1) неквалифицированный тег; 2) тег в объявленном (или базовом 3MF) namespace;
    3) перебор всех элементов по локальному имени.
    """
    found = list(parent.iter(local))
    if found:
        return found
    found = list(parent.iter(f"{{{ns or NS_CORE}}}{local}"))
    if found:
        return found
    return [el for el in parent.iter() if _local_name(el.tag) == local]


def _float_attr(el: ET.Element, name: str) -> float:
    try:
        return float(el.get(name, "0"))
    except ValueError:
        return float("nan")


def _int_attr(el: ET.Element, name: str) -> int:
    try:
        return int(el.get(name, "-1"))
    except ValueError:
        return -1


def mesh_from_model_xml(raw: bytes, model_path: str = "") -> Mesh:
    """
    Разбор XML-части 3MF. Координаты переводятся в мм по атрибуту unit корня ДО расчёта объёма.
    Индексы треугольников относятся к вершинам своего <mesh>, а не к глобальному списку.
    """
    try:
        root = ET.fromstring(raw)
    except ET.ParseError as e:
        log.warning("3MF model %s is not valid XML: %s", model_path, e)
        return empty_mesh({"type": "3mf", "model_path": model_path})

    unit = root.get("unit") or "millimeter"
    scale = unit_to_mm(unit)
    ns = _namespace_of(root)
    log.debug("3MF model %s: unit=%s factor=%s", model_path, unit, scale)

    parts = []
    meshes = find_elements(root, "mesh", ns)
    for mesh_el in meshes:
        vs = find_elements(mesh_el, "vertices", ns)
        ts = find_elements(mesh_el, "triangles", ns)
        if not vs or not ts:
            continue
        V = np.array(
            [(_float_attr(v, "x"), _float_attr(v, "y"), _float_attr(v, "z"))
             for v in find_elements(vs[0], "vertex", ns)],
            dtype=np.float64,
        ).reshape(-1, 3) * scale
        T = np.array(
            [(_int_attr(t, "v1"), _int_attr(t, "v2"), _int_attr(t, "v3"))
             for t in find_elements(ts[0], "triangle", ns)],
            dtype=np.int64,
        ).reshape(-1, 3)
        part = mesh_from_indexed(V, T)
        if not part.is_empty:
            parts.append(part.triangles)

    meta = {"type": "3mf", "unit": unit, "unit_scale_mm": scale, "model_path": model_path, "mesh_count": len(meshes)}
    if not parts:
        return empty_mesh(meta)
    return Mesh(np.concatenate(parts, axis=0), meta)


def _best_guess_entry(entries: List[zipfile.ZipInfo]) -> Optional[zipfile.ZipInfo]:
    """Явные .stl/.obj, затем файлы из 3D/, затем любой не-служебный файл."""
    ranked = (
        [i for i in entries if i.filename.lower().endswith((".stl", ".obj"))]
        + [i for i in entries if "3d/" in i.filename.lower() and not i.filename.lower().endswith(_NON_MESH_SUFFIXES)]
        + [i for i in entries if not i.filename.lower().endswith(_NON_MESH_SUFFIXES)]
    )
    return ranked[0] if ranked else None


def _read_entry(zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> bytes:
    if info.file_size > MAX_3MF_ENTRY_BYTES:
        raise InvalidFormat(
            f"3MF limit exceeded: entry_bytes={info.file_size} > {MAX_3MF_ENTRY_BYTES} ({info.filename})"
        )
    try:
        return zf.read(info)
    except (zipfile.BadZipFile, zlib.error, EOFError) as e:
        raise InvalidFormat(f"Corrupt 3MF entry {info.filename}: {e}") from None
    except (RuntimeError, NotImplementedError) as e:
        # зашифрованная запись или неподдерживаемый метод сжатия
        raise InvalidFormat(f"Unreadable 3MF entry {info.filename}: {e}") from None


def _with_container(mesh: Mesh, entry: str) -> Mesh:
    meta = dict(mesh.meta)
    meta.update({"container": "3mf", "entry": entry})
    return Mesh(mesh.triangles, meta)


def parse_3mf(data: bytes) -> Mesh:
    """
    Порядок поиска геометрии в 3MF (zip):
    1) первая .model-часть, из которой извлекается меш;
    2) если .model нет: вложенный .stl / .obj;
    3) иначе: лучший кандидат архива как сырые STL/OBJ байты (по содержимому);
    4) ничего не нашлось: NoMeshData.
    """
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as e:
        raise InvalidFormat(f"Invalid 3MF archive: {e}") from None

    with zf:
        entries = [i for i in zf.infolist() if not i.is_dir()]
        models = [i for i in entries if i.filename.lower().endswith(".model")]

        if models:
            for info in models:
                mesh = mesh_from_model_xml(_read_entry(zf, info), info.filename)
                if not mesh.is_empty:
                    return mesh
            log.warning("3MF: no mesh data in %d .model part(s), trying raw entries", len(models))
        else:
            for info in entries:
                name = info.filename.lower()
                parser = parse_stl if name.endswith(".stl") else parse_obj if name.endswith(".obj") else None
                if parser is None:
                    continue
                try:
                    return _with_container(parser(_read_entry(zf, info)), info.filename)
                except ModelFormatError as e:
                    log.warning("3MF: skipping entry %s: %s", info.filename, e)

        guess = _best_guess_entry(entries)
        if guess is not None:
            mesh = None
            try:
                payload = _read_entry(zf, guess)
                if looks_like_stl(payload):
                    mesh = parse_stl(payload)
                elif looks_like_obj(payload):
                    mesh = parse_obj(payload)
            except ModelFormatError as e:
                log.warning("3MF: raw entry %s unusable: %s", guess.filename, e)
            if mesh is not None and (not mesh.is_empty or "bbox_volume_cm3" in mesh.meta):
                log.info("3MF: using raw entry %s", guess.filename)
                return _with_container(mesh, guess.filename)

    raise NoMeshData("No mesh data found in 3MF archive")
