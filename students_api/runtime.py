# students_api/runtime.py
from prometheus_client import CollectorRegistry, GCCollector, ProcessCollector


class ProcessRuntimeSource:
    """Resident memory, CPU time, open fds and GC totals of this process.

    The collectors live on a private registry; labelled GC samples are summed
    per name.
    """

    def __init__(self):
        self.registry = CollectorRegistry()
        ProcessCollector(registry=self.registry)
        GCCollector(registry=self.registry)

    def __call__(self):
        out = {}
        for family in self.registry.collect():
            for sample in family.samples:
                out[sample.name] = out.get(sample.name, 0.0) + float(sample.value)
        return out
