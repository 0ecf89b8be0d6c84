"""Prometheus text exposition for the proxy's counters, gauges and latency."""

from __future__ import annotations

from typing import Dict, Iterable, Sequence, Tuple, Union


LabelValues = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_labels(names: Sequence[str], values: LabelValues, extra: str = "") -> str:
    pairs = [f'{name}="{_escape(value)}"' for name, value in zip(names, values)]
    if extra:
        pairs.append(extra)
    return "{" + ",".join(pairs) + "}" if pairs else ""


class _Series:
    """Values of one metric family keyed by label values.

    A family declared without labels has exactly one series. A labelled
    family renders one line per label combination seen so far, plus every
    combination listed in ``initial`` so dashboards see zeros before the
    first event.
    """

    kind = "untyped"

    def __init__(
        self,
        name: str,
        description: str = "",
        labels: Sequence[str] = (),
        initial: Iterable[Dict[str, str]] = (),
    ) -> None:
        self.name = name
        self.description = description
        self.label_names = tuple(labels)
        self._values: Dict[LabelValues, float] = {}
        if not self.label_names:
            self._values[()] = 0.0
        for combination in initial:
            self._values[self._key(combination)] = 0.0

    def _key(self, labels: Dict[str, str]) -> LabelValues:
        if set(labels) != set(self.label_names):
            raise ValueError(f"{self.name} expects labels {self.label_names}, got {tuple(labels)}")
        return tuple(str(labels[name]) for name in self.label_names)

    def value(self, **labels: str) -> float:
        return self._values.get(self._key(labels), 0.0)

    def _header(self) -> list[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]

    def render(self) -> str:
        lines = self._header()
        for values in sorted(self._values):
            lines.append(f"{self.name}{_format_labels(self.label_names, values)} {self._values[values]}")
        return "\n".join(lines) + "\n"


class Counter(_Series):
    kind = "counter"

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("Counters only go up")
        key = self._key(labels)
        self._values[key] = self._values.get(key, 0.0) + amount


class Gauge(_Series):
    kind = "gauge"

    def set(self, value: float, **labels: str) -> None:
        self._values[self._key(labels)] = float(value)


class Histogram:
    """Cumulative latency buckets, rendered with the implicit ``+Inf`` bucket."""

    def __init__(self, name: str, buckets: Sequence[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._bounds = sorted(buckets)
        self._counts = [0] * len(self._bounds)
        self._sum = 0.0
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for index, bound in enumerate(self._bounds):
            if value <= bound:
                self._counts[index] += 1

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} histogram"]
        for bound, count in zip(self._bounds, self._counts):
            lines.append(f'{self.name}_bucket{{le="{bound}"}} {count}')
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


Metric = Union[Counter, Gauge, Histogram]


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, Metric] = {}

    def register(self, metric: Metric) -> Metric:
        if metric.name in self._metrics:
            raise ValueError(f"Metric {metric.name} is already registered")
        self._metrics[metric.name] = metric
        return metric

    def get(self, name: str) -> Metric:
        return self._metrics[name]

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()
