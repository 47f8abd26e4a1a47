"""Durable job queue and OAuth credential lifecycle for auto-flow."""

__version__ = "0.1.0"
