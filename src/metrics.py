"""In-process checkout metrics in the Prometheus text format.

Counters, gauges and histograms are plain objects registered in a module
registry; ``generate_metrics_text()`` renders all of them.  Updates take a
per-metric lock because monitor callbacks may run on timer threads.
"""

from collections import defaultdict
from threading import Lock
from typing import Dict, Iterable, Iterator, List, Tuple

LabelValues = Tuple[str, ...]

_METRIC_REGISTRY: List["Metric"] = []


class Metric:
    """Base class: name, help text, label names and a lock."""

    kind = "untyped"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        self.name = name
        self.description = description
        self.label_names = list(label_names)
        self._lock = Lock()
        _METRIC_REGISTRY.append(self)

    def _key(self, labels: Dict[str, str]) -> LabelValues:
        return tuple(str(labels.get(k, "")) for k in self.label_names)

    def _render_labels(self, values: LabelValues, extra: Tuple[Tuple[str, str], ...] = ()) -> str:
        pairs = list(zip(self.label_names, values)) + list(extra)
        if not pairs:
            return ""
        return "{" + ",".join(f'{k}="{v}"' for k, v in pairs) + "}"

    def samples(self) -> Iterator[Tuple[str, str, float]]:  # pragma: no cover
        """Yield (suffix, rendered labels, value) triples."""
        raise NotImplementedError

    def to_prometheus(self) -> List[str]:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]
        with self._lock:
            lines.extend(f"{self.name}{suffix}{labels} {value}" for suffix, labels, value in self.samples())
        return lines


class Counter(Metric):
    """Monotonic count, e.g. ``DISPATCH_TOTAL.inc(method="push", outcome="pending")``."""

    kind = "counter"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        super().__init__(name, description, label_names)
        self._values: Dict[LabelValues, float] = defaultdict(float)

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        with self._lock:
            self._values[self._key(labels)] += amount

    def value(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def samples(self) -> Iterator[Tuple[str, str, float]]:
        for key, value in self._values.items():
            yield "", self._render_labels(key), value


class Gauge(Metric):
    """A value that can go up and down (active monitors, for example)."""

    kind = "gauge"

    def __init__(self, name: str, description: str, label_names: Iterable[str] = ()):
        super().__init__(name, description, label_names)
        self._values: Dict[LabelValues, float] = {}

    def set(self, value: float, **labels: str) -> None:
        with self._lock:
            self._values[self._key(labels)] = float(value)

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def dec(self, amount: float = 1.0, **labels: str) -> None:
        self.inc(-amount, **labels)

    def value(self, **labels: str) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def samples(self) -> Iterator[Tuple[str, str, float]]:
        for key, value in self._values.items():
            yield "", self._render_labels(key), value


class Histogram(Metric):
    """Cumulative-bucket histogram.  Buckets are upper bounds; ``+Inf`` is implicit."""

    kind = "histogram"

    def __init__(self, name: str, description: str, label_names: Iterable[str], buckets: Iterable[float]):
        super().__init__(name, description, label_names)
        self.buckets = sorted(float(b) for b in buckets)
        self._counts: Dict[LabelValues, List[int]] = defaultdict(lambda: [0] * len(self.buckets))
        self._sums: Dict[LabelValues, float] = defaultdict(float)
        self._totals: Dict[LabelValues, int] = defaultdict(int)

    def observe(self, value: float, **labels: str) -> None:
        key = self._key(labels)
        with self._lock:
            counts = self._counts[key]
            for idx, upper in enumerate(self.buckets):
                if value <= upper:
                    counts[idx] += 1
            self._totals[key] += 1
            self._sums[key] += float(value)

    def count(self, **labels: str) -> int:
        with self._lock:
            return self._totals.get(self._key(labels), 0)

    def samples(self) -> Iterator[Tuple[str, str, float]]:
        for key, total in self._totals.items():
            # counts are already cumulative: observe() bumps every bucket >= value
            for idx, upper in enumerate(self.buckets):
                yield "_bucket", self._render_labels(key, (("le", str(upper)),)), self._counts[key][idx]
            yield "_bucket", self._render_labels(key, (("le", "+Inf"),)), total
            yield "_sum", self._render_labels(key), self._sums[key]
            yield "_count", self._render_labels(key), total


def generate_metrics_text() -> bytes:
    """Render every registered metric."""
    lines: List[str] = []
    for metric in _METRIC_REGISTRY:
        lines.extend(metric.to_prometheus())
    return "\n".join(lines).encode("utf-8")


# -----------------------------------------------------------------------------
# Checkout metrics
# -----------------------------------------------------------------------------

# Dispatch outcomes: confirmed / pending / redirect / duplicate / error
DISPATCH_TOTAL = Counter(
    name="checkout_dispatch_total",
    description="Orders dispatched to a payment gateway, by method and outcome",
    label_names=["method", "outcome"],
)

# Time spent in gateway initiation, by payment method
CHECKOUT_DURATION_SECONDS = Histogram(
    name="checkout_duration_seconds",
    description="Duration of gateway initiation calls in seconds",
    label_names=["payment_method"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

CHECKOUT_ERROR_TOTAL = Counter(
    name="checkout_error_total",
    description="Checkout errors by exception type",
    label_names=["type"],
)

# One sample per status poll: pending / completed / failed / error
PAYMENT_POLLS_TOTAL = Counter(
    name="payment_status_polls_total",
    description="Payment status polls by result",
    label_names=["result"],
)

PAYMENT_MONITOR_OUTCOME_TOTAL = Counter(
    name="payment_monitor_outcome_total",
    description="Payment status monitors finished, by terminal state",
    label_names=["state"],
)

ACTIVE_PAYMENT_MONITORS = Gauge(
    name="payment_monitors_active",
    description="Payment status monitors currently polling",
)

SETTLEMENT_CALLBACKS_TOTAL = Counter(
    name="settlement_callbacks_total",
    description="Provider settlement callbacks applied, by resulting status",
    label_names=["status"],
)
