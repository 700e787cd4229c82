# students_api/registry.py
import logging
import threading
from typing import Callable, Dict, List, Mapping, Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

from .errors import DuplicateNameError
from .instruments import DEFAULT_BUCKETS, Counter, Gauge, Histogram, Instrument
from .logging_utils import log_event

RuntimeSource = Callable[[], Mapping[str, float]]


class _Families:
    # generate_latest only needs collect()
    def __init__(self, families):
        self._families = families

    def collect(self):
        return iter(self._families)


def runtime_families(samples: Mapping[str, float], skip=()):
    out = []
    for name, value in samples.items():
        if name in skip:
            continue
        help = f"Process runtime sample {name}."
        if name.endswith("_total"):
            out.append(CounterMetricFamily(name, help, value=value))
        else:
            out.append(GaugeMetricFamily(name, help, value=value))
    return out


class MetricRegistry:
    """Explicit set of instruments, rendered one family at a time.

    Every instrument is also registered on `collector_registry`, which rejects
    clashing time series the same way prometheus_client's default registry does.
    """
    content_type = CONTENT_TYPE_LATEST

    def __init__(self):
        self._lock = threading.Lock()
        self._instruments: Dict[str, Instrument] = {}
        self._runtime_sources: List[RuntimeSource] = []
        self.collector_registry = CollectorRegistry()
        self.collect_errors = 0

    def register(self, instrument: Instrument) -> Instrument:
        with self._lock:
            if instrument.name in self._instruments:
                raise DuplicateNameError(instrument.name)
            try:
                self.collector_registry.register(instrument.collector)
            except ValueError as e:
                raise DuplicateNameError(instrument.name) from e
            self._instruments[instrument.name] = instrument
        return instrument

    def counter(self, name, help, labelnames=()) -> Counter:
        return self.register(Counter(name, help, labelnames))

    def gauge(self, name, help, labelnames=()) -> Gauge:
        return self.register(Gauge(name, help, labelnames))

    def histogram(self, name, help, labelnames=(), buckets=DEFAULT_BUCKETS) -> Histogram:
        return self.register(Histogram(name, help, labelnames, buckets=buckets))

    def get(self, name) -> Optional[Instrument]:
        return self._instruments.get(name)

    def get_sample_value(self, name, labels=None):
        return self.collector_registry.get_sample_value(name, labels or {})

    def __contains__(self, name):
        return name in self._instruments

    def __iter__(self):
        return iter(self._snapshot())

    def add_runtime_source(self, source: RuntimeSource):
        with self._lock:
            self._runtime_sources.append(source)

    def _snapshot(self):
        with self._lock:
            return list(self._instruments.values())

    def _collect_failed(self, target, exc):
        with self._lock:
            self.collect_errors += 1
        log_event("metrics_collect_error", level=logging.ERROR, metric=target, error=repr(exc))

    def collect(self):
        # a family that fails to render is skipped, the rest still go out
        for instrument in self._snapshot():
            try:
                lines = instrument.expose()
            except Exception as e:
                self._collect_failed(instrument.name, e)
                continue
            yield from lines

        with self._lock:
            sources = list(self._runtime_sources)
        for source in sources:
            try:
                families = runtime_families(source(), skip=self._instruments)
                lines = generate_latest(_Families(families)).decode("utf-8").splitlines()
            except Exception as e:
                self._collect_failed(getattr(source, "__name__", repr(source)), e)
                continue
            yield from lines

    def render(self) -> str:
        return "\n".join(self.collect()) + "\n"
