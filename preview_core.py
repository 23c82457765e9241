# -*- coding: utf-8 -*-
"""
preview_core: PNG-превью модели для уведомления о заказе (server-side, CPU-only).

Задача:
- узнаваемая 3D-форма детали без GPU / OpenGL
- тот же разбор файла, что и в расчёте цены (formats_core -> Mesh), без второго парсера
- всегда возвращаем PNG: при любой проблеме: заглушка, а не исключение

Политика:
- лёгкий меш: треугольный рендер (normal)
- тяжёлый: decimation через trimesh -> треугольный рендер (simplified)
- decimation недоступен/упал или меш огромный: depthmap по точкам поверхности (fallback)
- файл слишком большой / не разобрался / пустой: placeholder / error

Это НЕ настоящий рендерер: ортографическая проекция + painter's algorithm + Lambert.
"""
from __future__ import annotations

import logging
import math
import os
import time
from dataclasses import asdict, dataclass
from io import BytesIO
from typing import Any, Dict, Optional, Tuple

import numpy as np
import trimesh
from PIL import Image, ImageDraw, ImageFilter

from errors_core import ModelFormatError
from formats_core import parse_model_bytes
from geometry_core import Mesh, mesh_dimensions_mm

log = logging.getLogger(f"printcalc.{__name__}")


@dataclass(frozen=True)
class PreviewLimits:
    """Лимиты: предсказуемое время работы на тяжёлых файлах."""
    max_file_mb: int = 200                 # больше: сразу заглушка
    max_faces_hard: int = 3_000_000        # выше: без decimation, сразу depthmap
    max_faces_render: int = 120_000        # сколько граней максимум рисуем треугольниками
    target_faces_simplify: int = 100_000
    max_points_depthmap: int = 280_000
    min_points_depthmap: int = 80_000


@dataclass(frozen=True)
class PreviewStyle:
    size_px: int = 320
    padding: float = 0.08
    bg_rgb: Tuple[int, int, int] = (248, 249, 251)

    fg_min: int = 90
    fg_max: int = 235

    outline_rgb: Tuple[int, int, int] = (55, 55, 55)
    shadow_strength: float = 0.35
    shadow_blur: int = 6
    shadow_offset: Tuple[int, int] = (6, 8)

    light_dir: Tuple[float, float, float] = (-0.30, -0.55, 0.78)

    yaw_deg: float = 35.0
    pitch_deg: float = 22.0


@dataclass
class PreviewResult:
    status: str                 # normal | simplified | fallback | placeholder | error
    png_bytes: bytes
    meta: Dict[str, Any]


def default_config_dict() -> Dict[str, Any]:
    return {"limits": asdict(PreviewLimits()), "style": asdict(PreviewStyle())}


def generate_preview_bytes(
    filename: str,
    data: bytes,
    *,
    limits: PreviewLimits = PreviewLimits(),
    style: PreviewStyle = PreviewStyle(),
) -> PreviewResult:
    """Разобрать байты модели и отрисовать PNG. Исключений формата наружу не бросает."""
    t0 = time.perf_counter()
    meta: Dict[str, Any] = {
        "file": os.path.basename(filename or ""),
        "file_mb": round(len(data or b"") / (1024 * 1024), 3),
        "faces_in": None,
        "faces_used": None,
        "mode": None,
        "ms": None,
        "error": None,
    }

    if meta["file_mb"] > limits.max_file_mb:
        return _placeholder_result("placeholder", "FILE TOO LARGE", meta, style, t0)
    if not data:
        meta["error"] = "empty_file"
        return _placeholder_result("error", "NO DATA", meta, style, t0)

    try:
        mesh = parse_model_bytes(filename, data)
    except ModelFormatError as e:
        meta["error"] = f"{e.kind}: {e}"
        log.info("preview %s: %s", meta["file"], meta["error"])
        return _placeholder_result("error", "BAD MODEL", meta, style, t0)

    return preview_from_mesh(mesh, limits=limits, style=style, meta=meta, t0=t0)


def preview_from_mesh(
    mesh: Mesh,
    *,
    limits: PreviewLimits = PreviewLimits(),
    style: PreviewStyle = PreviewStyle(),
    meta: Optional[Dict[str, Any]] = None,
    t0: Optional[float] = None,
) -> PreviewResult:
    t0 = time.perf_counter() if t0 is None else t0
    meta = {} if meta is None else meta

    if mesh.is_empty:
        meta["error"] = "mesh_empty"
        return _placeholder_result("placeholder", "NO MESH", meta, style, t0)

    meta["dimensions_mm"] = [round(x, 2) for x in mesh_dimensions_mm(mesh)]
    tm = to_trimesh(mesh)
    faces_in = int(tm.faces.shape[0])
    meta["faces_in"] = faces_in
    if faces_in == 0:
        meta["error"] = "degenerate_mesh"
        return _placeholder_result("placeholder", "EMPTY", meta, style, t0)

    if faces_in > limits.max_faces_hard:
        return _depthmap_result(tm, meta, limits, style, t0)

    if faces_in <= limits.max_faces_render:
        png = _render_triangles_png(tm, style=style)
        meta["mode"] = "normal"
        meta["faces_used"] = faces_in
        meta["ms"] = _ms(t0)
        return PreviewResult(status="normal", png_bytes=png, meta=meta)

    dec = _try_decimate(tm, target_faces=min(limits.target_faces_simplify, limits.max_faces_render))
    if dec is not None:
        png = _render_triangles_png(dec, style=style)
        meta["mode"] = "simplified"
        meta["faces_used"] = int(dec.faces.shape[0])
        meta["ms"] = _ms(t0)
        return PreviewResult(status="simplified", png_bytes=png, meta=meta)

    return _depthmap_result(tm, meta, limits, style, t0)


def generate_preview_file(
    filename: str,
    data: bytes,
    out_png_path: str,
    *,
    limits: PreviewLimits = PreviewLimits(),
    style: PreviewStyle = PreviewStyle(),
    make_dirs: bool = True,
) -> PreviewResult:
    """Сгенерировать превью и сохранить PNG на диск."""
    if make_dirs:
        os.makedirs(os.path.dirname(out_png_path) or ".", exist_ok=True)

    res = generate_preview_bytes(filename, data, limits=limits, style=style)
    with open(out_png_path, "wb") as f:
        f.write(res.png_bytes)
    res.meta["out_png"] = out_png_path
    return res


# ---------------------------- Mesh -> trimesh ----------------------------

def to_trimesh(mesh: Mesh) -> trimesh.Trimesh:
    """
    Суп треугольников -> индексированный Trimesh.
    process=True сваривает совпадающие вершины; вырожденные и повторные грани убираются.
    """
    verts = mesh.vertices
    faces = np.arange(verts.shape[0], dtype=np.int64).reshape(-1, 3)
    tm = trimesh.Trimesh(vertices=verts, faces=faces, process=True)
    tm.update_faces(tm.nondegenerate_faces())
    tm.update_faces(tm.unique_faces())
    tm.remove_unreferenced_vertices()
    return tm


def _try_decimate(tm: trimesh.Trimesh, target_faces: int) -> Optional[trimesh.Trimesh]:
    """
    trimesh.simplify_quadric_decimation. Бэкенд (fast-simplification) ставится отдельно;
    без него trimesh бросает ImportError, и мы уходим в depthmap.
    """
    if tm.faces.shape[0] <= target_faces:
        return tm
    try:
        dec = tm.simplify_quadric_decimation(face_count=target_faces)
    except (ImportError, ValueError, TypeError) as e:
        log.debug("decimation unavailable: %s: %s", type(e).__name__, e)
        return None
    if not isinstance(dec, trimesh.Trimesh) or dec.is_empty or dec.faces.shape[0] == 0:
        return None
    dec.update_faces(dec.nondegenerate_faces())
    dec.remove_unreferenced_vertices()
    return dec


# ---------------------------- Rendering helpers ----------------------------

def _ms(t0: float) -> int:
    return int((time.perf_counter() - t0) * 1000)


def _placeholder_result(status: str, text: str, meta: Dict[str, Any], style: PreviewStyle, t0: float) -> PreviewResult:
    meta["mode"] = "placeholder"
    meta["ms"] = _ms(t0)
    return PreviewResult(status=status, png_bytes=_placeholder_png(style, text=text), meta=meta)


def _depthmap_result(tm: trimesh.Trimesh, meta: Dict[str, Any], limits: PreviewLimits,
                     style: PreviewStyle, t0: float) -> PreviewResult:
    png = _render_depthmap_png(tm, limits=limits, style=style)
    meta["mode"] = "fallback_depthmap"
    meta["ms"] = _ms(t0)
    return PreviewResult(status="fallback", png_bytes=png, meta=meta)


def _unit(v: np.ndarray) -> np.ndarray:
    n = float(np.linalg.norm(v))
    return v if n <= 1e-12 else (v / n)


def _pca_axes(points: np.ndarray) -> np.ndarray:
    """PCA-оси для стабильного вида."""
    X = points - points.mean(axis=0, keepdims=True)
    cov = (X.T @ X) / max(1, (X.shape[0] - 1))
    _, eigvecs = np.linalg.eigh(cov)
    axes = eigvecs[:, ::-1]

    # знак осей фиксируем, чтобы картинка не "флипала" между запусками
    if axes[0, 0] < 0:
        axes[:, 0] *= -1
    if axes[1, 1] < 0:
        axes[:, 1] *= -1
    if np.linalg.det(axes) < 0:
        axes[:, 2] *= -1
    return axes


def _normalize_vertices(vertices: np.ndarray) -> np.ndarray:
    """Центр bbox в ноль, наибольший габарит = 1."""
    vmin = vertices.min(axis=0)
    vmax = vertices.max(axis=0)
    v = vertices - (vmin + vmax) * 0.5
    scale = float(np.max(vmax - vmin))
    if scale <= 1e-12:
        scale = 1.0
    return v / scale


def _apply_tilt(points: np.ndarray, *, yaw_deg: float, pitch_deg: float) -> np.ndarray:
    yaw = math.radians(yaw_deg)
    pitch = math.radians(pitch_deg)
    cy, sy = math.cos(yaw), math.sin(yaw)
    cp, sp = math.cos(pitch), math.sin(pitch)

    Rz = np.array([[cy, -sy, 0.0],
                   [sy,  cy, 0.0],
                   [0.0, 0.0, 1.0]], dtype=np.float64)
    Rx = np.array([[1.0, 0.0, 0.0],
                   [0.0,  cp, -sp],
                   [0.0,  sp,  cp]], dtype=np.float64)
    return points @ (Rz @ Rx)


def _fit_to_canvas(xy: np.ndarray, style: PreviewStyle):
    """Масштаб и сдвиг 2D-точек в пиксели холста (ось Y вниз)."""
    xy_min = xy.min(axis=0)
    span = np.maximum(xy.max(axis=0) - xy_min, 1e-9)
    S = int(style.size_px)
    pad = float(style.padding)
    k = (1.0 - 2.0 * pad) * (S - 1) / float(np.max(span))

    def to_px(p: np.ndarray) -> np.ndarray:
        q = (p - xy_min) * k
        q[..., 1] = (span[1] * k) - q[..., 1]
        return q + pad * (S - 1)

    return to_px


def _render_triangles_png(tm: trimesh.Trimesh, *, style: PreviewStyle) -> bytes:
    verts = np.asarray(tm.vertices, dtype=np.float64)
    faces = np.asarray(tm.faces, dtype=np.int64)
    if verts.size == 0 or faces.size == 0:
        return _placeholder_png(style, text="EMPTY")

    verts = _normalize_vertices(verts)
    vr = _apply_tilt(verts @ _pca_axes(verts), yaw_deg=style.yaw_deg, pitch_deg=style.pitch_deg)

    tri = vr[faces]
    xy = tri[:, :, :2].copy()
    z = tri[:, :, 2].mean(axis=1)

    v0, v1, v2 = tri[:, 0], tri[:, 1], tri[:, 2]
    n = np.cross(v1 - v0, v2 - v0)
    nlen = np.linalg.norm(n, axis=1, keepdims=True)
    n = np.where(nlen == 0, 0, n / np.maximum(nlen, 1e-12))

    light = _unit(np.array(style.light_dir, dtype=np.float64))
    intensity = np.power(np.clip(n @ light, 0.0, 1.0), 0.75)

    to_px = _fit_to_canvas(xy.reshape(-1, 2), style)
    px = to_px(xy)

    S = int(style.size_px)
    img = Image.new("RGB", (S, S), style.bg_rgb)
    draw = ImageDraw.Draw(img)
    fg_min, fg_max = int(style.fg_min), int(style.fg_max)

    # painter's algorithm: от дальних к ближним
    for i in np.argsort(z):
        shade = fg_min + int((fg_max - fg_min) * float(intensity[i]))
        draw.polygon([tuple(map(float, p)) for p in px[i]], fill=(shade, shade, shade))

    return _encode_png(img)


def _render_depthmap_png(tm: trimesh.Trimesh, *, limits: PreviewLimits, style: PreviewStyle) -> bytes:
    """Цельный силуэт через z-буфер по точкам поверхности + контур и мягкая тень."""
    verts = np.asarray(tm.vertices, dtype=np.float64)
    faces_n = int(tm.faces.shape[0])
    if verts.size == 0 or faces_n == 0:
        return _placeholder_png(style, text="EMPTY")

    n_points = int(min(max(limits.min_points_depthmap, faces_n // 2), limits.max_points_depthmap))
    pts = tm.sample(n_points)  # по площади граней

    pts = _normalize_vertices(np.asarray(pts, dtype=np.float64))
    pr = _apply_tilt(pts @ _pca_axes(pts), yaw_deg=style.yaw_deg, pitch_deg=style.pitch_deg)

    S = int(style.size_px)
    q = _fit_to_canvas(pr[:, :2], style)(pr[:, :2].copy())
    xi = np.clip(q[:, 0].astype(np.int32), 0, S - 1)
    yi = np.clip(q[:, 1].astype(np.int32), 0, S - 1)

    zbuf = np.full((S, S), -np.inf, dtype=np.float32)
    np.maximum.at(zbuf, (yi, xi), pr[:, 2].astype(np.float32))
    mask = np.isfinite(zbuf)
    if not mask.any():
        return _placeholder_png(style, text="PREVIEW")

    zmin = float(np.min(zbuf[mask]))
    zmax = float(np.max(zbuf[mask]))
    denom = (zmax - zmin) if (zmax - zmin) > 1e-9 else 1.0
    zn = (zbuf - zmin) / denom
    zn[~mask] = 0.0

    m_img = Image.fromarray(mask.astype(np.uint8) * 255)
    m_img = m_img.filter(ImageFilter.MaxFilter(7)).filter(ImageFilter.MinFilter(7))
    mask2 = np.array(m_img) > 0

    d_img = Image.fromarray((zn * 255).astype(np.uint8)).filter(ImageFilter.BoxBlur(2))
    zn2 = np.array(d_img).astype(np.float32) / 255.0

    # псевдонормали из градиента глубины
    dz_dy, dz_dx = np.gradient(zn2)
    nx, ny, nz_ = -dz_dx, -dz_dy, np.ones_like(dz_dx)
    nlen = np.sqrt(nx * nx + ny * ny + nz_ * nz_) + 1e-9
    light = _unit(np.array(style.light_dir, dtype=np.float32))
    inten = np.clip((nx * light[0] + ny * light[1] + nz_ * light[2]) / nlen, 0.0, 1.0)
    inten = np.power(inten, 0.75)
    shade = (style.fg_min + (style.fg_max - style.fg_min) * inten).astype(np.uint8)

    shadow = m_img.filter(ImageFilter.GaussianBlur(int(style.shadow_blur)))
    shadow_np = (np.array(shadow).astype(np.float32) / 255.0) * float(style.shadow_strength)
    dx, dy = style.shadow_offset
    shadow_canvas = np.zeros((S, S), dtype=np.float32)
    y0, x0 = max(0, dy), max(0, dx)
    shadow_canvas[y0:, x0:] = shadow_np[: S - y0, : S - x0]
    shadow_canvas = np.clip(shadow_canvas, 0.0, 0.8)

    img = np.zeros((S, S, 3), dtype=np.float32)
    img[:, :] = np.array(style.bg_rgb, dtype=np.float32)
    img *= (1.0 - shadow_canvas[:, :, None])
    img[mask2] = np.stack([shade, shade, shade], axis=-1).astype(np.float32)[mask2]

    er = m_img.filter(ImageFilter.MinFilter(3))
    edge = (np.array(m_img) > 0) & (np.array(er) == 0)
    img[edge] = np.array(style.outline_rgb, dtype=np.float32)

    return _encode_png(Image.fromarray(np.clip(img, 0, 255).astype(np.uint8)))


def _placeholder_png(style: PreviewStyle, *, text: str = "PREVIEW") -> bytes:
    S = int(style.size_px)
    img = Image.new("RGB", (S, S), style.bg_rgb)
    draw = ImageDraw.Draw(img)

    pad = max(8, S // 20)
    draw.rectangle((pad, pad, S - pad, S - pad), outline=(200, 200, 200), width=2)

    msg = (text or "PREVIEW")[:18]
    draw.text(((S - 6 * len(msg)) / 2, (S - 10) / 2), msg, fill=(120, 120, 120))
    return _encode_png(img)


def _encode_png(img: Image.Image) -> bytes:
    buf = BytesIO()
    img.save(buf, format="PNG", optimize=True)
    return buf.getvalue()
