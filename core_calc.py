# -*- coding: utf-8 -*-
"""
core_calc.py: чистое ядро калькулятора печати (FDM): объём -> филамент -> время -> цена.

Цели:
- Никакого UI. Один источник правды для оценки филамента, времени, цены и текста отчёта.
- CLI и любой внешний сервис (форма заказа): тонкие оболочки над compute_estimate().
- Парсинг файлов живёт в formats_core, геометрия: в geometry_core.

Политика ошибок:
- Ошибка разбора файла (кроме неподдерживаемого расширения) не валит расчёт:
  объём оценивается по размеру файла. Это видно по типу ParseOutcome.
- Нефинитный или неположительный результат на любом шаге -> EstimationFailed.
"""
from __future__ import annotations

import json
import logging
import math
import os
import sys
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional, Tuple, Union

import numpy as np

from errors_core import EstimationFailed, ModelFormatError, UnsupportedFormat
from formats_core import parse_model_bytes
from geometry_core import Mesh, mesh_dimensions_mm, mesh_volume_cm3

log = logging.getLogger(f"printcalc.{__name__}")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# ---------- Утилиты ----------
def nz(v, d=0.0) -> float:
    try:
        f = float(v)
        if np.isfinite(f):
            return f
    except (TypeError, ValueError):
        pass
    return d


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Округление "как в школе": 1.25 -> 1.3 (а не банковское 1.2)."""
    q = Decimal(1).scaleb(-ndigits)
    return float(Decimal(str(float(value))).quantize(q, rounding=ROUND_HALF_UP))


def _hm(minutes: float) -> str:
    minutes = max(0.0, nz(minutes))
    h = int(minutes // 60)
    m = int(round(minutes - h * 60))
    if m == 60:
        h, m = h + 1, 0
    return f"{h}h {m:02d}m"


def _money(v: float, currency: str = "CAD") -> str:
    return f"{nz(v):,.2f} {currency}"


def _line(label: str, value: float, currency: str, width: int = 16) -> str:
    return f"  {label:<26}{_money(value, currency):>{width}}\n"


def deep_merge(dst: dict, src: dict) -> dict:
    """Глубокое слияние словарей src в dst (in-place). Возвращает dst."""
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            deep_merge(dst[k], v)
        else:
            dst[k] = v
    return dst


def coerce_qty(qty) -> int:
    """
    Приводит qty к int и валидирует (>=1).
    Единая правда для CLI и PrintSettings: исключает нулевые/отрицательные значения и дробные строки.
    """
    try:
        q = int(qty)
    except (TypeError, ValueError) as e:
        raise ValueError(f"qty must be int >= 1, got: {qty!r}") from e
    if q < 1 or (isinstance(qty, float) and q != qty):
        raise ValueError(f"qty must be int >= 1, got: {qty!r}")
    return q


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """
    Настраивает логгер пакета "printcalc" (все модули пишут в его поддерево).
    Повторный вызов не дублирует вывод: старые обработчики снимаются.
    Поток: stderr, чтобы не мешать JSON на stdout у CLI.
    """
    logger = logging.getLogger("printcalc")
    logger.setLevel(level)
    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S")
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        fh = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        fh.setLevel(level)
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    logger.debug("logging initialized (level=%s)", logging.getLevelName(level))


# ---------- Defaults ----------
DEFAULT_MATERIAL = "pla"
DEFAULT_MATERIALS_DENSITY = {"pla": 1.24, "petg": 1.27, "abs": 1.04, "tpu": 1.20}

SPEED_CLASSES = ("instant", "fast", "regular")
DELIVERY_MODES = ("pickup", "delivery")

DEFAULT_PRICING = {
    "currency": "CAD",
    "base_rate_per_hour": 15.0,
    "minimum_charge": 10.0,
    "speed_multipliers": {"instant": 5.0, "fast": 2.5, "regular": 1.0},
    # [мин. тираж, скидка %], проверяются от большего порога к меньшему
    "quantity_discounts": [[10, 15], [5, 10], [3, 5]],
    "delivery": {"avg_speed_kmh": 40.0, "rate_per_hour": 25.0, "minimum_fee": 10.0},
}

# Эвристическая модель FDM (фиксированные константы, не параметры заказа)
LINE_WIDTH_MM = 0.4
PERIMETER_COUNT = 2
TOP_BOTTOM_LAYERS = 3
WASTE_FACTOR = 1.08
FILAMENT_RADIUS_MM = 0.875            # пруток 1.75 мм

PERIMETER_SPEED_MM_S = 50.0
INFILL_SPEED_MM_S = 60.0
FIRST_LAYER_SPEED_MM_S = 20.0
LAYER_CHANGE_S = 5.0
TIME_HEIGHT_FACTOR = 0.8
TIME_BUFFER = 1.2

FALLBACK_CM3_PER_MB = 15.0
MIN_FALLBACK_CM3 = 0.1


# ---------- Config loading ----------
def get_default_config_dir() -> str:
    """
    Папка, относительно которой по умолчанию ищем materials.json / pricing.json.
    Детерминированно: рядом с core_calc.py.
    """
    return os.path.dirname(os.path.abspath(__file__))


def get_default_materials_path(config_dir: str | None = None) -> str:
    base = config_dir or get_default_config_dir()
    return os.path.join(base, "materials.json")


def get_default_pricing_path(config_dir: str | None = None) -> str:
    base = config_dir or get_default_config_dir()
    return os.path.join(base, "pricing.json")


def load_materials_json(path: str) -> dict:
    """
    materials.json -> {material: density_g_cm3}
    Формат: { "pla": {"density_g_cm3": 1.24}, ... }. Ключи приводятся к нижнему регистру.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    if not isinstance(data, dict) or not data:
        raise ValueError("materials.json: expected object {material: {...}}")

    density = {}
    for name, row in data.items():
        if not isinstance(row, dict):
            raise ValueError(f"materials.json: invalid row for '{name}'")
        if "density_g_cm3" not in row:
            raise ValueError(f"materials.json: '{name}' missing density_g_cm3")
        d = nz(row["density_g_cm3"], 0.0)
        if d <= 0:
            raise ValueError(f"materials.json: '{name}' density_g_cm3 must be > 0, got {row['density_g_cm3']!r}")
        density[str(name).strip().lower()] = d
    return density


def load_pricing_json(path: str, *, base: dict | None = None, override: dict | None = None) -> dict:
    """
    pricing.json -> pricing dict.
    base: если задан, то в его копию мерджится файл (удобно для DEFAULT_PRICING).
    override: мердж поверх результата (например, --set в CLI).
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)

    with open(path, "r", encoding="utf-8") as f:
        cfg = json.load(f)

    if not isinstance(cfg, dict) or not cfg:
        raise ValueError("pricing.json: expected object")

    out = json.loads(json.dumps(base)) if isinstance(base, dict) else {}
    deep_merge(out, cfg)
    if override:
        deep_merge(out, override)
    return out


def _pricing(pricing: dict | None) -> dict:
    return pricing if pricing is not None else DEFAULT_PRICING


def material_density(material: str, densities: dict | None = None) -> float:
    """Плотность материала, г/см³. Неизвестный материал считается как PLA."""
    table = densities if densities is not None else DEFAULT_MATERIALS_DENSITY
    key = (material or "").strip().lower()
    if key in table:
        return float(table[key])
    log.debug("unknown material %r, using %s density", material, DEFAULT_MATERIAL)
    return float(table.get(DEFAULT_MATERIAL, DEFAULT_MATERIALS_DENSITY[DEFAULT_MATERIAL]))


# ---------- Параметры заказа ----------
@dataclass(frozen=True)
class PrintSettings:
    """
    Параметры печати одного заказа. Нормализуются и проверяются при создании:
    infill зажимается в [0, 100], speed и delivery приводятся к нижнему регистру,
    для самовывоза расстояние отбрасывается.
    """

    material: str = DEFAULT_MATERIAL
    infill: float = 20.0
    layer_height: float = 0.2
    qty: int = 1
    speed: str = "regular"
    delivery: str = "pickup"
    distance_km: Optional[float] = None

    def __post_init__(self):
        set_ = object.__setattr__
        set_(self, "material", (self.material or DEFAULT_MATERIAL).strip().lower())
        set_(self, "infill", max(0.0, min(100.0, nz(self.infill, 0.0))))

        lh = nz(self.layer_height, 0.0)
        if lh <= 0:
            raise ValueError(f"layer_height must be > 0, got: {self.layer_height!r}")
        set_(self, "layer_height", lh)
        set_(self, "qty", coerce_qty(self.qty))

        speed = (self.speed or "regular").strip().lower()
        set_(self, "speed", speed)

        delivery = (self.delivery or "pickup").strip().lower()
        if delivery not in DELIVERY_MODES:
            raise ValueError(f"delivery must be one of {DELIVERY_MODES}, got: {self.delivery!r}")
        set_(self, "delivery", delivery)

        if delivery == "pickup" or self.distance_km is None:
            set_(self, "distance_km", None)
        else:
            try:
                d = float(self.distance_km)
            except (TypeError, ValueError) as e:
                raise ValueError(f"distance_km must be a number >= 0, got: {self.distance_km!r}") from e
            if not math.isfinite(d) or d < 0:
                raise ValueError(f"distance_km must be a number >= 0, got: {self.distance_km!r}")
            set_(self, "distance_km", d)

    @classmethod
    def from_dict(cls, data: dict) -> "PrintSettings":
        """Принимает и snake_case, и camelCase поля формы заказа (layerHeight, deliveryDistance)."""
        data = data or {}

        def pick(*keys, default=None):
            for k in keys:
                if k in data and data[k] is not None and data[k] != "":
                    return data[k]
            return default

        return cls(
            material=pick("material", default=DEFAULT_MATERIAL),
            infill=pick("infill", default=20.0),
            layer_height=pick("layer_height", "layerHeight", default=0.2),
            qty=pick("qty", "quantity", default=1),
            speed=pick("speed", default="regular"),
            delivery=pick("delivery", default="pickup"),
            distance_km=pick("distance_km", "deliveryDistance", "distance"),
        )

    def to_dict(self) -> dict:
        return {
            "material": self.material,
            "infill": self.infill,
            "layerHeight": self.layer_height,
            "quantity": self.qty,
            "speed": self.speed,
            "delivery": self.delivery,
            "deliveryDistance": self.distance_km,
        }


@dataclass(frozen=True)
class PriceBreakdown:
    manufacturing_price: float
    delivery_price: float
    total_price: float
    unit_price: float = 0.0
    discount_pct: float = 0.0


@dataclass(frozen=True)
class PrintEstimate:
    """Итог расчёта: округлённые значения, готовые для уведомления о заказе."""

    volume_cm3: float
    filament_grams: float
    filament_meters: float
    time_min: float
    price: PriceBreakdown
    volume_source: str = "mesh"
    meta: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "volume": self.volume_cm3,
            "filamentGrams": self.filament_grams,
            "filamentMeters": self.filament_meters,
            "estimatedTime": self.time_min,
            "manufacturingPrice": self.price.manufacturing_price,
            "deliveryPrice": self.price.delivery_price,
            "price": self.price.total_price,
            "volumeSource": self.volume_source,
        }


# ---------- Оценка филамента и времени ----------
def estimate_filament_grams(volume_cm3: float, settings: PrintSettings, densities: dict | None = None) -> float:
    """
    Масса филамента на весь тираж, г.
    Модель: стенки (2 периметра × 0.4 мм) + крышки/дно (по 3 слоя) + заполнение внутреннего объёма,
    всё ×1.08 на отходы/поддержки. Высота детали оценивается как cbrt(V).
    """
    v = nz(volume_cm3)
    if v <= 0:
        return 0.0
    density = material_density(settings.material, densities)
    v_mm3 = v * 1000.0

    height = max(0.1, float(np.cbrt(v_mm3)))
    base_area = max(1.0, v_mm3 / height)
    perimeter = math.sqrt(base_area) * 4.0

    walls = perimeter * height * LINE_WIDTH_MM * PERIMETER_COUNT
    top_bottom = base_area * settings.layer_height * TOP_BOTTOM_LAYERS * 2
    shell_cm3 = max(0.0, (walls + top_bottom) / 1000.0)
    infill_cm3 = max(0.0, (v - shell_cm3) * (settings.infill / 100.0))

    material_cm3 = (shell_cm3 + infill_cm3) * WASTE_FACTOR
    return max(0.0, material_cm3 * density * settings.qty)


def estimate_filament_meters(grams: float, material: str, densities: dict | None = None) -> float:
    """Длина прутка 1.75 мм, м: г -> см³ -> мм³ / площадь сечения -> мм -> м."""
    density = material_density(material, densities)
    volume_mm3 = nz(grams) / density * 1000.0
    length_mm = volume_mm3 / (math.pi * FILAMENT_RADIUS_MM ** 2)
    return length_mm / 1000.0


def estimate_print_time_min(volume_cm3: float, settings: PrintSettings) -> float:
    """
    Время печати всего тиража, мин.
    Высота здесь cbrt(V)×0.8: отдельная оценка, не та же, что в модели массы.
    """
    v = nz(volume_cm3)
    if v <= 0:
        return 0.0
    v_mm3 = v * 1000.0
    height = float(np.cbrt(v_mm3)) * TIME_HEIGHT_FACTOR
    if not math.isfinite(height / settings.layer_height):
        return float("inf")
    layers = max(1, math.ceil(height / settings.layer_height))
    base_area = v_mm3 / height

    perimeter_len = math.sqrt(base_area) * 4.0 * PERIMETER_COUNT
    perimeter_s = perimeter_len * layers / PERIMETER_SPEED_MM_S
    infill_len = base_area * (settings.infill / 100.0) / LINE_WIDTH_MM
    infill_s = infill_len * layers / INFILL_SPEED_MM_S
    first_layer_s = perimeter_len / FIRST_LAYER_SPEED_MM_S
    layer_change_s = layers * LAYER_CHANGE_S

    total_s = perimeter_s + infill_s + first_layer_s + layer_change_s
    return total_s / 60.0 * TIME_BUFFER * settings.qty


# ---------- Цена ----------
def speed_multiplier(speed: str, pricing: dict | None = None) -> float:
    table = _pricing(pricing).get("speed_multipliers", {})
    if speed in table:
        return nz(table[speed], 1.0)
    log.warning("unknown speed class %r, using multiplier 1.0", speed)
    return 1.0


def quantity_discount(qty: int, pricing: dict | None = None) -> float:
    """Скидка за тираж, доля (0.15 = 15%)."""
    tiers = _pricing(pricing).get("quantity_discounts") or []
    for min_qty, pct in sorted(tiers, key=lambda t: nz(t[0]), reverse=True):
        if qty >= nz(min_qty):
            return nz(pct) / 100.0
    return 0.0


def calc_delivery_price(distance_km: float | None, pricing: dict | None = None) -> float:
    """Доставка: время поездки туда-обратно по средней скорости × ставка, не меньше минимума."""
    if distance_km is None:
        return 0.0
    d = _pricing(pricing).get("delivery", {})
    speed_kmh = nz(d.get("avg_speed_kmh"), 40.0)
    if speed_kmh <= 0:
        raise ValueError(f"delivery.avg_speed_kmh must be > 0, got: {d.get('avg_speed_kmh')!r}")
    round_trip_h = 2.0 * (nz(distance_km) / speed_kmh)
    fee = round_trip_h * nz(d.get("rate_per_hour"), 25.0)
    return max(nz(d.get("minimum_fee"), 10.0), fee)


def calc_price(time_min: float, settings: PrintSettings, pricing: dict | None = None) -> PriceBreakdown:
    """
    Цена по времени печати (time_min: время всего тиража).
    За единицу: max(минимальный чек, часы × ставка × множитель скорости), затем скидка за тираж.
    """
    p = _pricing(pricing)
    base_cost = nz(time_min) / 60.0 * nz(p.get("base_rate_per_hour"), 15.0)
    unit = max(nz(p.get("minimum_charge"), 10.0), base_cost * speed_multiplier(settings.speed, p))

    discount = quantity_discount(settings.qty, p)
    unit_discounted = unit * (1.0 - discount)
    manufacturing = unit_discounted * settings.qty

    delivery = 0.0
    if settings.delivery == "delivery":
        delivery = calc_delivery_price(settings.distance_km, p)

    return PriceBreakdown(
        manufacturing_price=manufacturing,
        delivery_price=delivery,
        total_price=manufacturing + delivery,
        unit_price=unit_discounted,
        discount_pct=discount * 100.0,
    )


# ---------- Результат разбора ----------
@dataclass(frozen=True)
class Parsed:
    """Файл разобран, объём посчитан по мешу (или по bbox облака точек OBJ)."""

    mesh: Mesh
    volume_cm3: float
    source: str = "mesh"


@dataclass(frozen=True)
class Fallback:
    """Разбор не удался или дал негодный объём: объём оценён по размеру файла."""

    volume_cm3: float
    reason: str
    source: str = "file_size"


@dataclass(frozen=True)
class Failed:
    error: ValueError


ParseOutcome = Union[Parsed, Fallback, Failed]


def fallback_volume_cm3(size_bytes: int) -> float:
    """Грубая оценка по размеру файла: 15 см³ на МБ, не меньше 0.1 см³."""
    size_mb = max(0, int(size_bytes)) / (1024 * 1024)
    return max(MIN_FALLBACK_CM3, size_mb * FALLBACK_CM3_PER_MB)


def compute_volume_cm3(mesh: Mesh) -> Tuple[float, str]:
    """Объём меша и его источник: "mesh" или "bbox" (OBJ без граней)."""
    if mesh.is_empty and mesh.meta.get("bbox_volume_cm3") is not None:
        return nz(mesh.meta["bbox_volume_cm3"]), "bbox"
    return mesh_volume_cm3(mesh), "mesh"


def parse_outcome(filename: str, data: bytes) -> ParseOutcome:
    """
    Разбор байтов файла в ParseOutcome. Исключений наружу не бросает для ожидаемых
    ошибок формата (включая пустой файл): они становятся Fallback,
    а неподдерживаемое расширение: Failed.
    """
    name = os.path.basename(filename or "")
    try:
        mesh = parse_model_bytes(filename, data)
    except UnsupportedFormat as e:
        return Failed(e)
    except ModelFormatError as e:
        vol = fallback_volume_cm3(len(data))
        log.warning("%s: %s; using file-size estimate %.3f cm3", name, e, vol)
        return Fallback(vol, f"{e.kind}: {e}")

    volume, source = compute_volume_cm3(mesh)
    if not (math.isfinite(volume) and volume > 0):
        vol = fallback_volume_cm3(len(data))
        log.warning("%s: invalid volume %r from %d triangles; using file-size estimate %.3f cm3",
                    name, volume, mesh.triangle_count, vol)
        return Fallback(vol, f"invalid volume {volume!r}")

    log.info("%s: %.4f cm3 (%s, %d triangles)", name, volume, source, mesh.triangle_count)
    return Parsed(mesh, volume, source)


def estimate_from_volume(
    volume_cm3: float,
    settings: PrintSettings,
    *,
    densities: dict | None = None,
    pricing: dict | None = None,
    volume_source: str = "mesh",
    meta: dict | None = None,
) -> PrintEstimate:
    """Оценка по готовому объёму. Все промежуточные значения проверяются на конечность."""
    v = float(volume_cm3) if volume_cm3 is not None else float("nan")
    if not (math.isfinite(v) and v > 0):
        raise EstimationFailed(f"Failed to estimate: volume must be a finite number > 0, got {volume_cm3!r}")

    grams = estimate_filament_grams(v, settings, densities)
    meters = estimate_filament_meters(grams, settings.material, densities)
    time_min = estimate_print_time_min(v, settings)
    price = calc_price(time_min, settings, pricing)

    values = {
        "filament_grams": grams,
        "filament_meters": meters,
        "time_min": time_min,
        "manufacturing_price": price.manufacturing_price,
        "delivery_price": price.delivery_price,
        "total_price": price.total_price,
    }
    bad = [k for k, val in values.items() if not math.isfinite(val)]
    if bad:
        raise EstimationFailed(f"Failed to estimate: non-finite {', '.join(bad)} for volume {v!r}")

    return PrintEstimate(
        volume_cm3=round_half_up(v, 1),
        filament_grams=round_half_up(grams, 1),
        filament_meters=round_half_up(meters, 1),
        time_min=round_half_up(time_min, 1),
        price=PriceBreakdown(
            manufacturing_price=round_half_up(price.manufacturing_price, 2),
            delivery_price=round_half_up(price.delivery_price, 2),
            total_price=round_half_up(price.total_price, 2),
            unit_price=round_half_up(price.unit_price, 2),
            discount_pct=price.discount_pct,
        ),
        volume_source=volume_source,
        meta=dict(meta or {}),
    )


def estimate_from_outcome(
    outcome: ParseOutcome,
    settings: PrintSettings,
    *,
    densities: dict | None = None,
    pricing: dict | None = None,
) -> PrintEstimate:
    if isinstance(outcome, Failed):
        # новый экземпляр на каждый raise: Failed может лежать в кэше
        raise type(outcome.error)(str(outcome.error))
    if isinstance(outcome, Fallback):
        meta = {"fallback_reason": outcome.reason}
    else:
        mesh = outcome.mesh
        meta = {"format": mesh.meta.get("type"), "triangles": mesh.triangle_count}
        if not mesh.is_empty:
            meta["dimensions_mm"] = tuple(round_half_up(x, 2) for x in mesh_dimensions_mm(mesh))
    return estimate_from_volume(
        outcome.volume_cm3, settings,
        densities=densities, pricing=pricing,
        volume_source=outcome.source, meta=meta,
    )


def compute_estimate(
    filename: str,
    data: bytes,
    settings: PrintSettings,
    densities: dict | None = None,
    pricing: dict | None = None,
) -> PrintEstimate:
    """Главная точка входа: имя файла (для расширения) + байты + параметры -> PrintEstimate."""
    outcome = parse_outcome(filename, data)
    return estimate_from_outcome(outcome, settings, densities=densities, pricing=pricing)


# ---------- Кэш разбора файлов с диска ----------
MAX_CACHE_ENTRIES = 64
_outcome_cache: "OrderedDict[tuple, ParseOutcome]" = OrderedDict()


def _outcome_cache_key(path: str) -> tuple:
    full_path = os.path.normpath(os.path.abspath(path))
    stat = os.stat(full_path)
    return full_path, stat.st_mtime, stat.st_size


def _copy_outcome(outcome: ParseOutcome) -> ParseOutcome:
    if isinstance(outcome, Parsed):
        return Parsed(outcome.mesh.copy(), outcome.volume_cm3, outcome.source)
    return outcome


def _outcome_cache_get(key: tuple) -> ParseOutcome | None:
    cached = _outcome_cache.get(key)
    if cached is None:
        return None
    _outcome_cache.move_to_end(key)
    return _copy_outcome(cached)


def _outcome_cache_set(key: tuple, outcome: ParseOutcome) -> None:
    _outcome_cache[key] = outcome
    _outcome_cache.move_to_end(key)
    while len(_outcome_cache) > MAX_CACHE_ENTRIES:
        _outcome_cache.popitem(last=False)


def clear_cache() -> None:
    _outcome_cache.clear()


def load_outcome(path: str) -> ParseOutcome:
    """Читает файл целиком и разбирает его; результат кэшируется по (путь, mtime, размер)."""
    key = _outcome_cache_key(path)
    cached = _outcome_cache_get(key)
    if cached is not None:
        log.debug("cache hit: %s", key[0])
        return cached
    with open(path, "rb") as f:
        data = f.read()
    outcome = parse_outcome(path, data)
    _outcome_cache_set(key, _copy_outcome(outcome))
    return outcome


def estimate_file(
    path: str,
    settings: PrintSettings,
    densities: dict | None = None,
    pricing: dict | None = None,
) -> PrintEstimate:
    return estimate_from_outcome(load_outcome(path), settings, densities=densities, pricing=pricing)


# ---------- Форматирование отчёта ----------
def render_report(estimate: PrintEstimate, settings: PrintSettings, *,
                  file_name: str = "", currency: str | None = None, calc_time_s: float | None = None) -> str:
    cur = currency or DEFAULT_PRICING["currency"]
    p = estimate.price
    head = []
    if file_name:
        head.append(f"File: {file_name}\n")
    src = {"mesh": "mesh", "bbox": "bounding box", "file_size": "file size estimate"}.get(
        estimate.volume_source, estimate.volume_source)
    head.append(f"• Volume: {estimate.volume_cm3:.1f} cm³ ({src})\n")
    dims = estimate.meta.get("dimensions_mm")
    if dims:
        head.append(f"• Size: {dims[0]:.1f} × {dims[1]:.1f} × {dims[2]:.1f} mm\n")
    head.append(f"• Material: {settings.material.upper()} | infill {settings.infill:g}% | "
                f"layer {settings.layer_height:g} mm | qty {settings.qty}\n")
    head.append(f"• Filament: {estimate.filament_grams:.1f} g / {estimate.filament_meters:.1f} m\n")
    head.append(f"• Print time: {_hm(estimate.time_min)} ({settings.speed})\n")
    head.append("-" * 42 + "\n")

    body = []
    if p.discount_pct:
        body.append(f"  Quantity discount: {p.discount_pct:g}%\n")
    body.append(_line("Manufacturing", p.manufacturing_price, cur))
    if settings.delivery == "delivery":
        dist = f"{settings.distance_km:g} km" if settings.distance_km is not None else "distance unknown"
        body.append(_line(f"Delivery ({dist})", p.delivery_price, cur))
    else:
        body.append(_line("Pickup", 0.0, cur))
    body.append("-" * 42 + "\n")
    body.append(f"TOTAL: {_money(p.total_price, cur)}\n")
    if calc_time_s is not None:
        body.append(f"Calculation time: {calc_time_s:.4f} s\n")
    return "".join(head + body)
