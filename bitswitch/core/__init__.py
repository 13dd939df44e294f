"""Core infrastructure: configuration, logging, metrics, persistence and resilience."""
