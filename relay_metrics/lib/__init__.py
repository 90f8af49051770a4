"""Shared infrastructure: configuration, logging, storage, self-metrics."""
