# -*- coding: utf-8 -*-
"""
CLI-версия калькулятора печати (FDM): .stl / .obj / .3mf -> объём, филамент, время, цена.

Примеры:
  python cli_calculator.py cube.stl --material pla --infill 25 --json
  python cli_calculator.py a.stl b.3mf --qty 5 --speed fast --delivery delivery --distance-km 12
  python cli_calculator.py part.obj --preview-dir previews --verbose

Ключевые гарантии:
• Расчёт целиком в core_calc (compute_estimate / estimate_file); CLI только собирает параметры и печатает.
• Поддержка materials.json и pricing.json (+ точечные override'ы флагом --set).
• Параллель по файлам (--workers N) с детерминированным порядком результата (по имени файла).


=============================
Кратко для backend-разработчика
=============================
Коды возврата: 0: всё посчитано; 1: хотя бы один файл не посчитан; 2: ошибка конфигурации/параметров.

Стабильный JSON-контракт (--json):
  {
    "success": <bool>,              # false, если есть ошибки по файлам
    "count": <int>,                 # число файлов во входе
    "count_ok": <int>,
    "count_failed": <int>,
    "errors": [{"file": "...", "kind": "InvalidFormat|UnsupportedFormat|...", "error": "..."}],
    "per_object": [
      {
        "file": "<имя файла>",
        "format": "stl|obj|3mf|null",
        "volume": <float>,            # см³, 1 знак
        "volumeSource": "mesh|bbox|file_size",
        "filamentGrams": <float>,
        "filamentMeters": <float>,
        "estimatedTime": <float>,     # минуты на весь тираж
        "manufacturingPrice": <float>,
        "deliveryPrice": <float>,     # если бы файл заказывали отдельно
        "price": <float>,
        "unitPrice": <float>,
        "discountPct": <float>,
        "dimensionsMm": [x, y, z] | null,
        "fallbackReason": "<строка>" | null,
        "preview": {"status": "...", "png": "<путь>"}   # только с --preview-dir
      }, ...
    ],
    "summary": {                     # весь набор файлов как один заказ: доставка: одна поездка
      "currency": "CAD",
      "settings": {...},
      "volume": ..., "filamentGrams": ..., "filamentMeters": ..., "estimatedTime": ...,
      "manufacturingPrice": ..., "deliveryPrice": ..., "price": ...
    } | null,
    "time_s": <float>
  }

Конфиги (materials.json / pricing.json):
  • По умолчанию берутся из cwd (если есть оба файла), иначе рядом со скриптом.
  • --config-dir задаёт папку явно; --set key=val переопределяет отдельные поля pricing.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from typing import List

import core_calc as core
import preview_core

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


# ---------- Утилиты ----------
def set_by_dotted_path(d: dict, path: str, value):
    """Устанавливает значение по точечному пути (например, 'delivery.rate_per_hour'). Создаёт вложенные словари."""
    keys = path.split('.')
    cur = d
    for k in keys[:-1]:
        if k not in cur or not isinstance(cur[k], dict):
            cur[k] = {}
        cur = cur[k]
    cur[keys[-1]] = value


def parse_kv_override(pairs):
    """Парсит список key=val из --set. Приводит val к bool/int/float, иначе оставляет строкой."""
    out = {}
    for kv in pairs or []:
        if '=' not in kv:
            raise ValueError(f"Invalid override '{kv}', expected key=val")
        k, v = kv.split('=', 1)
        if not k.strip():
            raise ValueError(f"Invalid override '{kv}', empty key")
        vv = v
        try:
            if v.lower() in ('true', 'false'):
                vv = (v.lower() == 'true')
            elif '.' in v:
                vv = float(v)
            else:
                vv = int(v)
        except ValueError:
            pass
        set_by_dotted_path(out, k.strip(), vv)
    return out


# ---------- Загрузка конфигов ----------
class ConfigError(Exception):
    """Ошибка конфигурации CLI (нет файла, неверный JSON, валидация и т.д.)."""


def resolve_config_paths(config_dir: str | None = None) -> tuple[str, str]:
    """Пути к materials.json и pricing.json по config_dir / cwd / директории скрипта."""
    if config_dir:
        base_dir = os.path.abspath(os.path.expanduser(config_dir))
    else:
        cwd = os.getcwd()
        if os.path.exists(os.path.join(cwd, "materials.json")) and os.path.exists(os.path.join(cwd, "pricing.json")):
            base_dir = cwd
        else:
            base_dir = BASE_DIR
    return (
        os.path.join(base_dir, "materials.json"),
        os.path.join(base_dir, "pricing.json"),
    )


def _config_error(name: str, e: Exception) -> ConfigError:
    if isinstance(e, FileNotFoundError):
        return ConfigError(f"Config file not found: {e.filename or e}")
    if isinstance(e, json.JSONDecodeError):
        return ConfigError(f"{name}: JSON error ({e.msg}, line {e.lineno}, column {e.colno})")
    return ConfigError(str(e))


def load_configs_via_core(config_dir: str | None, override: dict | None = None) -> tuple[dict, dict, str, str]:
    """Загружает materials/pricing через core_calc как единую точку правды."""
    materials_path, pricing_path = resolve_config_paths(config_dir)
    try:
        density = core.load_materials_json(materials_path)
    except (FileNotFoundError, ValueError) as e:
        raise _config_error("materials.json", e) from None

    try:
        pricing = core.load_pricing_json(pricing_path, base=core.DEFAULT_PRICING, override=override)
    except (FileNotFoundError, ValueError) as e:
        raise _config_error("pricing.json", e) from None
    return density, pricing, materials_path, pricing_path


def finalize_json_payload(payload: dict, errors: List[dict], count_ok: int) -> dict:
    """Добавляет поля ошибок и итоговые счётчики для JSON-вывода."""
    payload["errors"] = list(errors)
    payload["count_failed"] = len(errors)
    payload["count_ok"] = int(count_ok)
    payload["success"] = len(errors) == 0
    return payload


def _error_row(path: str, exc: Exception) -> dict:
    return {
        "file": os.path.basename(path),
        "kind": getattr(exc, "kind", type(exc).__name__),
        "error": str(exc),
    }


# ---------- Расчёт одного файла ----------
def _write_preview(path: str, outcome, preview_dir: str) -> dict:
    out_png = os.path.join(preview_dir, os.path.splitext(os.path.basename(path))[0] + ".png")
    os.makedirs(preview_dir, exist_ok=True)
    if isinstance(outcome, core.Parsed):
        res = preview_core.preview_from_mesh(outcome.mesh, meta={"file": os.path.basename(path)})
        with open(out_png, "wb") as f:
            f.write(res.png_bytes)
    else:
        with open(path, "rb") as f:
            data = f.read()
        res = preview_core.generate_preview_file(path, data, out_png)
    return {"status": res.status, "png": out_png}


def _compute_one_file(
    path: str,
    *,
    settings: core.PrintSettings,
    densities: dict,
    pricing: dict,
    preview_dir: str | None = None,
) -> dict:
    """Процесс-воркер: считает один файл и возвращает строку per_object."""
    if not os.path.exists(path):
        raise FileNotFoundError(f"File not found: {path}")

    outcome = core.load_outcome(path)
    est = core.estimate_from_outcome(outcome, settings, densities=densities, pricing=pricing)

    row = {"file": os.path.basename(path), "format": est.meta.get("format")}
    row.update(est.to_dict())
    row["unitPrice"] = est.price.unit_price
    row["discountPct"] = est.price.discount_pct
    dims = est.meta.get("dimensions_mm")
    row["dimensionsMm"] = list(dims) if dims else None
    row["fallbackReason"] = est.meta.get("fallback_reason")
    # для текстового отчёта: объект оценки целиком (в JSON не попадает)
    row["_estimate"] = est

    if preview_dir:
        row["preview"] = _write_preview(path, outcome, preview_dir)
    return row


# ---------- Расчёт набора файлов ----------
def summarize(results: List[dict], settings: core.PrintSettings, pricing: dict) -> dict | None:
    """
    Сводка по всем файлам как по одному заказу.
    Производство: сумма по файлам, доставка: одна поездка на весь заказ.
    """
    if not results:
        return None
    manufacturing = sum(float(r["manufacturingPrice"]) for r in results)
    delivery = 0.0
    if settings.delivery == "delivery":
        delivery = core.calc_delivery_price(settings.distance_km, pricing)
    return {
        "currency": pricing.get("currency", core.DEFAULT_PRICING["currency"]),
        "settings": settings.to_dict(),
        "volume": core.round_half_up(sum(float(r["volume"]) for r in results), 1),
        "filamentGrams": core.round_half_up(sum(float(r["filamentGrams"]) for r in results), 1),
        "filamentMeters": core.round_half_up(sum(float(r["filamentMeters"]) for r in results), 1),
        "estimatedTime": core.round_half_up(sum(float(r["estimatedTime"]) for r in results), 1),
        "manufacturingPrice": core.round_half_up(manufacturing, 2),
        "deliveryPrice": core.round_half_up(delivery, 2),
        "price": core.round_half_up(manufacturing + delivery, 2),
    }


def compute_for_files(
    files: List[str],
    *,
    settings: core.PrintSettings,
    densities: dict,
    pricing: dict,
    as_json: bool,
    workers: int = 1,
    preview_dir: str | None = None,
    errors: List[dict] | None = None,
) -> dict:
    """
    Считает набор файлов с опциональной параллелью.
    Возвращает JSON payload (as_json=True) или {"text": "..."}.
    """
    t0 = time.time()
    results: List[dict] = []
    errors = errors if errors is not None else []
    file_list = list(files)
    kwargs = dict(settings=settings, densities=densities, pricing=pricing, preview_dir=preview_dir)

    if workers and workers > 1 and len(file_list) > 1:
        with ProcessPoolExecutor(max_workers=int(workers)) as ex:
            futs = {ex.submit(_compute_one_file, p, **kwargs): p for p in file_list}
            for fut in as_completed(futs):
                path = futs[fut]
                try:
                    results.append(fut.result())
                except (ValueError, OSError) as exc:
                    errors.append(_error_row(path, exc))
    else:
        for p in file_list:
            try:
                results.append(_compute_one_file(p, **kwargs))
            except (ValueError, OSError) as exc:
                errors.append(_error_row(p, exc))

    # стабильный порядок для вывода/тестов
    results.sort(key=lambda r: r["file"])
    errors.sort(key=lambda e: e["file"])
    estimates = [r.pop("_estimate") for r in results]
    summary = summarize(results, settings, pricing)
    calc_time_s = time.time() - t0

    if as_json:
        payload = {
            "success": True,
            "count": len(file_list),
            "per_object": results,
            "summary": summary,
            "time_s": calc_time_s,
        }
        return finalize_json_payload(payload, errors, len(results))

    currency = pricing.get("currency")
    lines: List[str] = []
    for r, est in zip(results, estimates):
        lines.append(core.render_report(est, settings, file_name=r["file"], currency=currency))
        lines.append("\n")
    if summary and len(results) > 1:
        lines.append(f"Order ({len(results)} files): manufacturing {summary['manufacturingPrice']:.2f}, "
                     f"delivery {summary['deliveryPrice']:.2f}, TOTAL {summary['price']:.2f} {summary['currency']}\n")
    lines.append(f"Calculation time: {calc_time_s:.4f} s")
    return {"text": "".join(lines).rstrip()}


# ---------- CLI ----------
def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="3D print estimate (FDM): .stl / .obj / .3mf -> volume, filament, time, price")
    ap.add_argument('files', nargs='+', help='Model files (.stl / .obj / .3mf)')
    ap.add_argument('--set', dest='overrides', action='append',
                    help='Override a pricing field (key=val, e.g. delivery.rate_per_hour=30). Repeatable.')
    ap.add_argument('--config-dir', default=None,
                    help='Folder with materials.json and pricing.json (default: cwd or next to the script)')

    ap.add_argument('--material', default=core.DEFAULT_MATERIAL, help='Material key from materials.json')
    ap.add_argument('--infill', type=float, default=20.0, help='Infill percent (0-100)')
    ap.add_argument('--layer-height', type=float, default=0.2, help='Layer height, mm')
    ap.add_argument('--qty', type=int, default=1, help='Quantity of each model')
    ap.add_argument('--speed', choices=list(core.SPEED_CLASSES), default='regular', help='Speed class')
    ap.add_argument('--delivery', choices=list(core.DELIVERY_MODES), default='pickup', help='pickup or delivery')
    ap.add_argument('--distance-km', type=float, default=None, help='Delivery distance, km (with --delivery delivery)')

    fmt = ap.add_mutually_exclusive_group()
    fmt.add_argument('--json', action='store_true', help='JSON output')
    fmt.add_argument('--text', action='store_true', help='Text report (default)')

    ap.add_argument('--workers', type=int, default=1, help='Worker processes for several files (>1 enables multiprocessing)')
    ap.add_argument('--preview-dir', default=None, help='Write a PNG preview per model into this folder')
    ap.add_argument('--verbose', action='store_true', help='Debug logging to stderr')
    return ap


def main(argv: List[str] | None = None):
    """Точка входа CLI: аргументы -> конфиги -> PrintSettings -> compute_for_files -> stdout."""
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    if hasattr(sys.stderr, "reconfigure"):
        sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    args = build_arg_parser().parse_args(argv)
    core.setup_logging(logging.DEBUG if args.verbose else logging.WARNING)

    try:
        overrides = parse_kv_override(args.overrides)
    except ValueError as e:
        print(f"Invalid --set: {e}", file=sys.stderr)
        sys.exit(2)

    try:
        dens, pricing, materials_path, pricing_path = load_configs_via_core(args.config_dir, overrides)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(2)

    print(f"[cli] using materials: {materials_path}", file=sys.stderr)
    print(f"[cli] using pricing  : {pricing_path}", file=sys.stderr)

    material = (args.material or "").strip().lower()
    if material not in dens:
        print(f"Material '{args.material}' not found in {materials_path}", file=sys.stderr)
        sys.exit(2)

    try:
        settings = core.PrintSettings(
            material=material,
            infill=args.infill,
            layer_height=args.layer_height,
            qty=args.qty,
            speed=args.speed,
            delivery=args.delivery,
            distance_km=args.distance_km,
        )
    except ValueError as e:
        print(f"Invalid settings: {e}", file=sys.stderr)
        sys.exit(2)

    errors: List[dict] = []
    payload = compute_for_files(
        args.files,
        settings=settings, densities=dens, pricing=pricing,
        as_json=bool(args.json),
        workers=int(max(1, args.workers)),
        preview_dir=args.preview_dir,
        errors=errors,
    )

    if errors and not args.json:
        for err in errors:
            print(f"[cli] file {err.get('file')}: {err.get('error')}", file=sys.stderr)

    if args.json:
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    else:
        print(payload["text"])

    if errors:
        sys.exit(1)


if __name__ == '__main__':
    main()
