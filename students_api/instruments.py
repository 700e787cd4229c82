# students_api/instruments.py
import math
import re
import threading
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Dict, List, Mapping, NamedTuple, Tuple, Union

import prometheus_client
from prometheus_client import CollectorRegistry, generate_latest

from .errors import InvalidDeltaError, LabelSchemaError

# one sample line per series; no *_created companions
prometheus_client.disable_created_metrics()

INF = float("inf")

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


@dataclass(frozen=True)
class LabelSet:
    """Ordered (name, value) pairs identifying one series of an instrument."""
    pairs: Tuple[Tuple[str, str], ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "pairs", tuple((str(k), str(v)) for k, v in self.pairs))

    @classmethod
    def of(cls, **labels) -> "LabelSet":
        return cls(tuple(labels.items()))

    def names(self):
        return tuple(k for k, _ in self.pairs)

    def values(self):
        return tuple(v for _, v in self.pairs)

    def as_dict(self) -> Dict[str, str]:
        return dict(self.pairs)


EMPTY = LabelSet()

LabelsLike = Union[LabelSet, Mapping[str, object], None]


class HistogramSnapshot(NamedTuple):
    buckets: Tuple[Tuple[float, int], ...]
    count: int
    sum: float


class _Slot:
    __slots__ = ("metric", "lock")

    def __init__(self, metric):
        self.metric = metric
        self.lock = threading.Lock()


class _Child:
    # REQUESTS.labels(route="/").inc()
    __slots__ = ("_instrument", "_labels")

    def __init__(self, instrument, labels: LabelSet):
        self._instrument = instrument
        self._labels = labels

    def inc(self, amount=1.0):
        self._instrument.increment(self._labels, amount)

    def dec(self, amount=1.0):
        self._instrument.decrement(self._labels, amount)

    def set(self, value):
        self._instrument.set(self._labels, value)

    def observe(self, value):
        self._instrument.observe(self._labels, value)


class Instrument:
    """A prometheus_client metric keyed by LabelSet.

    Each instrument keeps the library metric on a registry of its own so a
    single family can be rendered or read back without touching the others.
    """
    kind = "untyped"
    metric_class = None

    def __init__(self, name: str, help: str, labelnames=(), **kwargs):
        if not _NAME_RE.match(name or ""):
            raise ValueError(f"invalid metric name: {name!r}")
        labelnames = tuple(labelnames)
        for label in labelnames:
            if not _LABEL_RE.match(label) or label.startswith("__"):
                raise ValueError(f"invalid label name for {name}: {label!r}")
        if len(set(labelnames)) != len(labelnames):
            raise ValueError(f"duplicate label names for {name}: {labelnames}")
        self.name = name
        self.help = help
        self.labelnames = labelnames
        self.collector_registry = CollectorRegistry()
        self.collector = self.metric_class(
            name, help, labelnames, registry=self.collector_registry, **kwargs
        )
        self._lock = threading.Lock()
        self._slots: Dict[LabelSet, _Slot] = {}
        if not labelnames:
            self._slots[EMPTY] = _Slot(self.collector)

    def __repr__(self):
        return f"{type(self).__name__}({self.name!r}, labelnames={self.labelnames})"

    @property
    def sample_name(self):
        return self.name

    def _labelset(self, labels: LabelsLike) -> LabelSet:
        if labels is None:
            got, values = (), {}
        elif isinstance(labels, LabelSet):
            if labels.names() == self.labelnames:
                return labels
            got, values = labels.names(), labels.as_dict()
        else:
            got, values = tuple(labels.keys()), labels
        if len(got) != len(self.labelnames) or set(got) != set(self.labelnames):
            raise LabelSchemaError(self.name, self.labelnames, got)
        return LabelSet(tuple((n, values[n]) for n in self.labelnames))

    def _slot(self, labelset: LabelSet) -> _Slot:
        slot = self._slots.get(labelset)
        if slot is None:
            with self._lock:
                slot = self._slots.get(labelset)
                if slot is None:
                    slot = _Slot(self.collector.labels(*labelset.values()))
                    self._slots[labelset] = slot
        return slot

    def _read(self, labels: LabelsLike) -> float:
        labelset = self._labelset(labels)
        if labelset not in self._slots:
            return 0.0
        value = self.collector_registry.get_sample_value(self.sample_name, labelset.as_dict())
        return 0.0 if value is None else value

    def labels(self, **labels) -> _Child:
        return _Child(self, self._labelset(labels))

    def labelsets(self) -> List[LabelSet]:
        with self._lock:
            return list(self._slots)

    def expose(self) -> List[str]:
        return generate_latest(self.collector_registry).decode("utf-8").splitlines()


class Counter(Instrument):
    kind = "counter"
    metric_class = prometheus_client.Counter

    @property
    def sample_name(self):
        return self.name if self.name.endswith("_total") else self.name + "_total"

    def increment(self, labels: LabelsLike = None, delta=1.0):
        if delta < 0 or math.isnan(delta):
            raise InvalidDeltaError(self.name, delta)
        self._slot(self._labelset(labels)).metric.inc(delta)

    def value(self, labels: LabelsLike = None) -> float:
        return self._read(labels)


class Gauge(Instrument):
    kind = "gauge"
    metric_class = prometheus_client.Gauge

    def set(self, labels: LabelsLike, value):
        self._slot(self._labelset(labels)).metric.set(float(value))

    def increment(self, labels: LabelsLike = None, delta=1.0):
        self._slot(self._labelset(labels)).metric.inc(delta)

    def decrement(self, labels: LabelsLike = None, delta=1.0):
        self._slot(self._labelset(labels)).metric.dec(delta)

    def value(self, labels: LabelsLike = None) -> float:
        return self._read(labels)


def _normalise_buckets(buckets):
    bounds = [float(b) for b in buckets]
    if bounds and bounds[-1] == INF:
        bounds.pop()
    if not bounds:
        raise ValueError("histogram needs at least one finite bucket")
    if any(math.isinf(b) or math.isnan(b) for b in bounds):
        raise ValueError(f"histogram buckets must be finite: {list(buckets)}")
    if any(a >= b for a, b in zip(bounds, bounds[1:])):
        raise ValueError(f"histogram buckets must be strictly ascending: {list(buckets)}")
    return tuple(bounds) + (INF,)


class Histogram(Instrument):
    kind = "histogram"
    metric_class = prometheus_client.Histogram

    def __init__(self, name: str, help: str, labelnames=(), buckets=DEFAULT_BUCKETS):
        if "le" in labelnames:
            raise ValueError(f"histogram {name} cannot use the reserved label 'le'")
        self.buckets = _normalise_buckets(buckets)
        super().__init__(name, help, labelnames, buckets=self.buckets)

    def observe(self, labels: LabelsLike, value):
        value = float(value)
        if math.isnan(value):
            raise ValueError(f"histogram {self.name} cannot observe NaN")
        slot = self._slot(self._labelset(labels))
        # buckets, sum and count of one series move together
        with slot.lock:
            slot.metric.observe(value)

    def snapshot(self, labels: LabelsLike = None) -> HistogramSnapshot:
        labelset = self._labelset(labels)
        slot = self._slots.get(labelset)
        if slot is None:
            return HistogramSnapshot(tuple((b, 0) for b in self.buckets), 0, 0.0)
        wanted = labelset.as_dict()
        with slot.lock:
            samples = [
                s for family in self.collector.collect() for s in family.samples
                if {k: v for k, v in s.labels.items() if k != "le"} == wanted
            ]
        buckets = tuple(
            (float(s.labels["le"]), int(s.value)) for s in samples if s.name == self.name + "_bucket"
        )
        by_name = {s.name: s.value for s in samples}
        return HistogramSnapshot(buckets, int(by_name[self.name + "_count"]), by_name[self.name + "_sum"])

    def expose(self) -> List[str]:
        # no new series and no half-applied observation while rendering
        with self._lock, ExitStack() as stack:
            for slot in self._slots.values():
                stack.enter_context(slot.lock)
            return super().expose()
