from betwatch.metrics.prometheus import MetricsCollector

__all__ = ["MetricsCollector"]
