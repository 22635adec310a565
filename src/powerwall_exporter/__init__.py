"""Prometheus exporter for the Tesla Powerwall gateway."""

__version__ = "0.2.0"
