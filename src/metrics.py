"""In-process metrics for the store server.

Counters, gauges and histograms are kept in a module-level registry and can
be rendered in the Prometheus text exposition format, one metric sample per
line.  The ``METRICS`` protocol command streams these lines to admins.
"""

from collections import defaultdict
from threading import Lock
from typing import Dict, Iterable, List, Tuple

LabelKey = Tuple[str, ...]


class Metric:
    """Base class for all metrics."""

    kind = "untyped"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        self.name = name
        self.description = description
        self.label_names = list(label_names)
        self._lock = Lock()
        _METRIC_REGISTRY.append(self)

    def _key(self, labels: Dict[str, str]) -> LabelKey:
        return tuple(str(labels.get(k, "")) for k in self.label_names)

    def _format_labels(self, key: LabelKey, extra: str = "") -> str:
        pairs = [f'{name}="{value}"' for name, value in zip(self.label_names, key)]
        if extra:
            pairs.append(extra)
        return "{" + ",".join(pairs) + "}" if pairs else ""

    def header(self) -> List[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]

    def samples(self) -> List[str]:
        raise NotImplementedError


class Counter(Metric):
    """Monotonic counter, e.g. ``COMMANDS_TOTAL.inc(command="LIST", status="ok")``."""

    kind = "counter"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        super().__init__(name, description, label_names)
        self._values: Dict[LabelKey, int] = defaultdict(int)

    def inc(self, amount: int = 1, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] += amount

    def value(self, **labels: str) -> int:
        with self._lock:
            return self._values.get(self._key(labels), 0)

    def samples(self) -> List[str]:
        with self._lock:
            return [f"{self.name}{self._format_labels(k)} {v}" for k, v in self._values.items()]


class Gauge(Metric):
    """Value that can go up and down."""

    kind = "gauge"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        super().__init__(name, description, label_names)
        self._values: Dict[LabelKey, float] = {}

    def set(self, value: float, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def dec(self, amount: float = 1.0, **labels: str) -> None:
        self.inc(-amount, **labels)

    def value(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def samples(self) -> List[str]:
        with self._lock:
            return [f"{self.name}{self._format_labels(k)} {v}" for k, v in self._values.items()]


class Histogram(Metric):
    """Histogram with fixed ascending bucket bounds plus an implicit ``+Inf``."""

    kind = "histogram"

    def __init__(self, name: str, description: str, label_names: Iterable[str], buckets: Iterable[float]):
        super().__init__(name, description, label_names)
        self.buckets = sorted(float(b) for b in buckets)
        # Non-cumulative per-bucket counts; cumulated when rendered
        self._counts: Dict[LabelKey, List[int]] = defaultdict(lambda: [0] * len(self.buckets))
        self._sums: Dict[LabelKey, float] = defaultdict(float)
        self._totals: Dict[LabelKey, int] = defaultdict(int)

    def observe(self, value: float, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            for idx, upper in enumerate(self.buckets):
                if value <= upper:
                    self._counts[key][idx] += 1
                    break
            self._totals[key] += 1
            self._sums[key] += float(value)

    def samples(self) -> List[str]:
        lines: List[str] = []
        with self._lock:
            for key, total in self._totals.items():
                cumulative = 0
                for idx, upper in enumerate(self.buckets):
                    cumulative += self._counts[key][idx]
                    labels = self._format_labels(key, f'le="{upper}"')
                    lines.append(f"{self.name}_bucket{labels} {cumulative}")
                inf_labels = self._format_labels(key, 'le="+Inf"')
                lines.append(f"{self.name}_bucket{inf_labels} {total}")
                lines.append(f"{self.name}_sum{self._format_labels(key)} {self._sums[key]}")
                lines.append(f"{self.name}_count{self._format_labels(key)} {total}")
        return lines


_METRIC_REGISTRY: List[Metric] = []


def exposition_lines() -> List[str]:
    """Render every registered metric, headers included."""
    lines: List[str] = []
    for metric in _METRIC_REGISTRY:
        lines.extend(metric.header())
        lines.extend(metric.samples())
    return lines


# -----------------------------------------------------------------------------
# Metrics used by the store server.
# -----------------------------------------------------------------------------

CONNECTIONS_ACTIVE = Gauge(
    name="store_connections_active",
    description="Client connections currently open",
)

CONNECTIONS_TOTAL = Counter(
    name="store_connections_total",
    description="Client connections accepted since start",
)

# status is "ok" or the ERR reason token sent back to the client
COMMANDS_TOTAL = Counter(
    name="store_commands_total",
    description="Protocol commands handled, labelled by command and status",
    label_names=["command", "status"],
)

COMMAND_DURATION_SECONDS = Histogram(
    name="store_command_duration_seconds",
    description="Time spent handling one protocol command",
    label_names=["command"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
)

SALES_TOTAL = Counter(
    name="store_sales_total",
    description="Completed sales, labelled by kind (SALE or SALE_MULTI) and customer tier",
    label_names=["kind", "tier"],
)

SALE_ERRORS_TOTAL = Counter(
    name="store_sale_errors_total",
    description="Rejected sales, labelled by reason",
    label_names=["reason"],
)

GIFTS_TOTAL = Counter(
    name="store_gifts_total",
    description="Gift outcomes for gift-eligible sales (GRANTED or OUT_OF_STOCK)",
    label_names=["outcome"],
)

LOGINS_TOTAL = Counter(
    name="store_logins_total",
    description="Login attempts, labelled by result",
    label_names=["result"],
)
