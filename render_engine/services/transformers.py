from __future__ import annotations

from decimal import Decimal
from typing import Any, Iterable

from render_engine.errors import EngineError
from render_engine.schemas import ChartData, ChartDataset, ChartSpecification
from render_engine.settings import Settings

_NO_GROUPING = {"", "none"}


def _to_float(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    return float(text)


def _label(value: Any) -> str:
    if value is None:
        return "Unknown"
    if hasattr(value, "isoformat"):
        return value.isoformat()[:10]
    return str(value)


def _grouping(chart: ChartSpecification) -> str | None:
    if chart.group_by is None or chart.group_by.strip().lower() in _NO_GROUPING:
        return None
    return chart.group_by.strip()


def _measure_type(rows: list[dict[str, Any]]) -> str:
    for row in rows:
        value = row.get("measure_type")
        if value:
            return str(value)
    return "number"


class ChartTransformer:
    chart_type = ""
    group_by_affects_fetch = False

    def transform(self, rows: list[dict[str, Any]], chart: ChartSpecification) -> ChartData:
        raise NotImplementedError


class TimeSeriesTransformer(ChartTransformer):
    """Date-indexed series; one dataset per group value when grouped."""

    def __init__(self, chart_type: str) -> None:
        self.chart_type = chart_type

    def transform(self, rows: list[dict[str, Any]], chart: ChartSpecification) -> ChartData:
        if not rows:
            return ChartData(measure_type=_measure_type(rows))
        group_by = _grouping(chart)
        default_label = chart.measure or chart.chart_name or "value"

        labels: list[str] = []
        series: dict[str, dict[str, float]] = {}
        for row in rows:
            if "date_index" not in row:
                raise EngineError(
                    status_code=422,
                    code="invalid_chart_config",
                    message=f"{self.chart_type} charts require a date_index column",
                )
            label = _label(row["date_index"])
            if label not in labels:
                labels.append(label)
            series_name = _label(row.get(group_by)) if group_by else default_label
            bucket = series.setdefault(series_name, {})
            value = _to_float(row.get("measure_value"))
            if value is not None:
                bucket[label] = bucket.get(label, 0.0) + value

        labels.sort()
        datasets = [
            ChartDataset(label=name, data=[values.get(label) for label in labels])
            for name, values in sorted(series.items())
        ]
        return ChartData(labels=labels, datasets=datasets, measure_type=_measure_type(rows))


class CategoryTransformer(ChartTransformer):
    """Totals per category: the group value, or the date when ungrouped."""

    def __init__(self, chart_type: str) -> None:
        self.chart_type = chart_type

    def transform(self, rows: list[dict[str, Any]], chart: ChartSpecification) -> ChartData:
        group_by = _grouping(chart) or "date_index"
        totals: dict[str, float] = {}
        for row in rows:
            name = _label(row.get(group_by))
            value = _to_float(row.get("measure_value"))
            totals[name] = totals.get(name, 0.0) + (value or 0.0)

        labels = sorted(totals)
        dataset = ChartDataset(label=chart.measure or chart.chart_name or "value", data=[totals[name] for name in labels])
        return ChartData(labels=labels, datasets=[dataset] if labels else [], measure_type=_measure_type(rows))


class NumberTransformer(ChartTransformer):
    chart_type = "number"

    def transform(self, rows: list[dict[str, Any]], chart: ChartSpecification) -> ChartData:
        values = [_to_float(row.get("measure_value")) for row in rows]
        total = sum(value for value in values if value is not None)
        label = chart.measure or chart.chart_name or "value"
        return ChartData(
            labels=[label],
            datasets=[ChartDataset(label=label, data=[total])],
            measure_type=_measure_type(rows),
            value=total,
        )


class TableTransformer(ChartTransformer):
    chart_type = "table"

    def transform(self, rows: list[dict[str, Any]], chart: ChartSpecification) -> ChartData:
        _ = chart
        columns: list[str] = []
        for row in rows:
            for column in row:
                if column not in columns:
                    columns.append(column)
        return ChartData(columns=columns, rows=[dict(row) for row in rows], measure_type=_measure_type(rows))


class TransformerRegistry:
    def __init__(self, transformers: Iterable[ChartTransformer], *, group_by_fetch_affecting: Iterable[str] = ()) -> None:
        self._items: dict[str, ChartTransformer] = {}
        for transformer in transformers:
            self._items[transformer.chart_type] = transformer
        self._fetch_affecting = {item.strip().lower() for item in group_by_fetch_affecting if item.strip()}

    @property
    def chart_types(self) -> list[str]:
        return sorted(self._items)

    def get(self, chart_type: str) -> ChartTransformer:
        transformer = self._items.get(chart_type.strip().lower())
        if transformer is None:
            raise EngineError(
                status_code=422,
                code="unknown_chart_type",
                message=f"Unsupported chart type: {chart_type}",
            )
        return transformer

    def group_by_affects_fetch(self, chart_type: str) -> bool:
        normalized = chart_type.strip().lower()
        if normalized in self._fetch_affecting:
            return True
        transformer = self._items.get(normalized)
        return bool(transformer and transformer.group_by_affects_fetch)

    def transform(self, chart_type: str, rows: list[dict[str, Any]], chart: ChartSpecification) -> ChartData:
        return self.get(chart_type).transform(rows, chart)


def build_default_registry(settings: Settings) -> TransformerRegistry:
    transformers: list[ChartTransformer] = [
        TimeSeriesTransformer("line"),
        TimeSeriesTransformer("bar"),
        TimeSeriesTransformer("stacked-bar"),
        TimeSeriesTransformer("horizontal-bar"),
        TimeSeriesTransformer("area"),
        CategoryTransformer("pie"),
        CategoryTransformer("doughnut"),
        CategoryTransformer("progress-bar"),
        NumberTransformer(),
        TableTransformer(),
    ]
    return TransformerRegistry(transformers, group_by_fetch_affecting=settings.group_by_fetch_affecting_chart_types)
