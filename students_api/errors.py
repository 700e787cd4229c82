# students_api/errors.py


class MetricsError(ValueError):
    """Base class for metric registration and observation errors."""


class DuplicateNameError(MetricsError):
    def __init__(self, name: str):
        super().__init__(f"metric already registered: {name}")
        self.name = name


class InvalidDeltaError(MetricsError):
    def __init__(self, name: str, delta: float):
        super().__init__(f"counter {name} cannot be incremented by {delta!r}")
        self.name = name
        self.delta = delta


class LabelSchemaError(MetricsError):
    def __init__(self, name: str, expected, got):
        super().__init__(
            f"metric {name} expects labels {list(expected)}, got {list(got)}"
        )
        self.name = name
        self.expected = tuple(expected)
        self.got = tuple(got)
