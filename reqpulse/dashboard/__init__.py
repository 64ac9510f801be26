from reqpulse.dashboard.aggregator import ClientAggregator, RollingSeries, SeriesPoint

__all__ = ["ClientAggregator", "RollingSeries", "SeriesPoint"]
