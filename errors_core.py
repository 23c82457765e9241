# -*- coding: utf-8 -*-
"""
errors_core.py: типизированные ошибки ядра расчёта.

Все ошибки наследуют ValueError: старый код, ловящий ValueError, продолжает работать,
а новый может различать вид ошибки по классу или по полю `kind`.
"""
from __future__ import annotations


class ModelFormatError(ValueError):
    """Базовая ошибка разбора файла модели."""

    kind = "ModelFormatError"


class UnsupportedFormat(ModelFormatError):
    """Расширение файла не входит в {stl, obj, 3mf}."""

    kind = "UnsupportedFormat"


class InvalidFormat(ModelFormatError):
    """Буфер слишком короткий, битый заголовок или архив."""

    kind = "InvalidFormat"


class NoGeometryData(ModelFormatError):
    """В файле нет ни одной разбираемой вершины."""

    kind = "NoGeometryData"


class NoMeshData(ModelFormatError):
    """В 3MF-архиве не нашлось данных меша."""

    kind = "NoMeshData"


class EstimationFailed(ValueError):
    """Итоговая оценка невозможна: объём или производные значения не конечны/не положительны."""

    kind = "EstimationFailed"
