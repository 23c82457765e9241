# -*- coding: utf-8 -*-
"""
geometry_core.py: геометрические примитивы и расчёт объёма.

Представление:
- Vertex  : (x, y, z) в миллиметрах;
- Triangle: три Vertex в порядке из исходного файла (обход сохраняется, но на итоговый
             объём не влияет: берём модуль суммы);
- Mesh    : "суп" треугольников, массив (M, 3, 3) float64. Замкнутость не требуется.

Объём считается в два прохода: сначала центроид всех вершин (ReferencePoint),
затем сумма знаковых объёмов тетраэдров (ref, v1, v2, v3). Центроид в качестве вершины
тетраэдров убирает потерю точности, когда модель отцентрирована в начале координат.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Sequence, Tuple

import numpy as np

log = logging.getLogger(f"printcalc.{__name__}")

Vertex = Tuple[float, float, float]
Triangle = Tuple[Vertex, Vertex, Vertex]

_EMPTY_SOUP = np.zeros((0, 3, 3), dtype=np.float64)


@dataclass(frozen=True)
class Mesh:
    """Набор треугольников одной модели + метаданные источника (тип файла, единицы и т.п.)."""

    triangles: np.ndarray
    meta: dict = field(default_factory=dict)

    @property
    def triangle_count(self) -> int:
        return int(self.triangles.shape[0])

    @property
    def is_empty(self) -> bool:
        return self.triangles.shape[0] == 0

    @property
    def vertices(self) -> np.ndarray:
        """Все вершины треугольников подряд, (3M, 3). Повторы не схлопываются."""
        return self.triangles.reshape(-1, 3)

    def copy(self) -> "Mesh":
        return Mesh(self.triangles.copy(), dict(self.meta))


def empty_mesh(meta: dict | None = None) -> Mesh:
    return Mesh(_EMPTY_SOUP.copy(), dict(meta or {}))


def mesh_from_triangles(triangles: Iterable[Triangle] | np.ndarray, meta: dict | None = None) -> Mesh:
    """
    Собирает Mesh из последовательности треугольников.
    Треугольники с нечисловыми/бесконечными координатами пропускаются, а не валят весь меш.
    """
    arr = np.asarray(triangles if isinstance(triangles, np.ndarray) else list(triangles), dtype=np.float64)
    if arr.size == 0:
        return empty_mesh(meta)
    arr = arr.reshape(-1, 3, 3)
    finite = np.isfinite(arr).all(axis=(1, 2))
    skipped = int((~finite).sum())
    if skipped:
        log.debug("skipped %d triangles with non-finite coordinates", skipped)
        arr = arr[finite]
    return Mesh(np.ascontiguousarray(arr), dict(meta or {}))


def mesh_from_indexed(V_mm: np.ndarray, T: np.ndarray, meta: dict | None = None) -> Mesh:
    """
    Индексированный меш (вершины + тройки индексов) -> суп треугольников.
    Тройки с индексами вне диапазона [0, len(V)) отбрасываются.
    """
    V_mm = np.asarray(V_mm, dtype=np.float64).reshape(-1, 3)
    T = np.asarray(T, dtype=np.int64).reshape(-1, 3)
    if V_mm.size == 0 or T.size == 0:
        return empty_mesh(meta)
    valid = ((T >= 0) & (T < V_mm.shape[0])).all(axis=1)
    dropped = int((~valid).sum())
    if dropped:
        log.debug("dropped %d triangles referencing missing vertices", dropped)
    return mesh_from_triangles(V_mm[T[valid]], meta)


# ---------- Объём ----------
def signed_tetra_volume(p1: Sequence[float], p2: Sequence[float], p3: Sequence[float]) -> float:
    """Знаковый объём тетраэдра (0, p1, p2, p3): dot(p1, cross(p2, p3)) / 6."""
    cx = p2[1] * p3[2] - p2[2] * p3[1]
    cy = p2[2] * p3[0] - p2[0] * p3[2]
    cz = p2[0] * p3[1] - p2[1] * p3[0]
    return (p1[0] * cx + p1[1] * cy + p1[2] * cz) / 6.0


def reference_point(mesh: Mesh) -> np.ndarray:
    """Центроид всех вершин треугольников. Для пустого меша: (0, 0, 0)."""
    if mesh.is_empty:
        return np.zeros(3, dtype=np.float64)
    return mesh.vertices.mean(axis=0)


def signed_volumes_mm3(mesh: Mesh, ref: np.ndarray | None = None) -> np.ndarray:
    """Знаковые объёмы тетраэдров (ref, v1, v2, v3) по каждому треугольнику, мм³."""
    if mesh.is_empty:
        return np.zeros(0, dtype=np.float64)
    ref = reference_point(mesh) if ref is None else np.asarray(ref, dtype=np.float64)
    p = mesh.triangles - ref
    with np.errstate(over="ignore", invalid="ignore"):
        vol6 = np.einsum("ij,ij->i", p[:, 0], np.cross(p[:, 1], p[:, 2]))
    return vol6 / 6.0


def mesh_volume_cm3(mesh: Mesh) -> float:
    """
    Объём по центроиду: |Σ signed_tetra| / 1000.
    Нефинитный вклад отдельного треугольника отбрасывается, расчёт не прерывается.
    """
    vols = signed_volumes_mm3(mesh)
    if vols.size == 0:
        return 0.0
    finite = np.isfinite(vols)
    if not finite.all():
        log.debug("discarded %d non-finite tetra contributions", int((~finite).sum()))
    total_mm3 = float(vols[finite].sum())
    if total_mm3 == 0.0 and finite.any():
        log.warning("zero volume from %d valid triangles", int(finite.sum()))
    return abs(total_mm3) / 1000.0


# ---------- Габариты ----------
def bbox_mm(points: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    P = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    if P.size == 0:
        z = np.zeros(3, dtype=np.float64)
        return z, z.copy()
    return P.min(axis=0), P.max(axis=0)


def volume_bbox_cm3(points: np.ndarray) -> float:
    mins, maxs = bbox_mm(points)
    dx, dy, dz = (maxs - mins)
    return float(dx * dy * dz) / 1000.0


def mesh_dimensions_mm(mesh: Mesh) -> tuple[float, float, float]:
    """Габариты модели (ширина, глубина, высота) по осям X/Y/Z, мм."""
    mins, maxs = bbox_mm(mesh.vertices)
    dx, dy, dz = (maxs - mins)
    return float(dx), float(dy), float(dz)
