from .health_aggregator import HealthAggregator

__all__ = ['HealthAggregator']
