"""metricsync: background metrics-refresh pipeline and hierarchy validator."""

__version__ = "1.0.0"
