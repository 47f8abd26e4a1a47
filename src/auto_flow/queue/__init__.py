"""Durable job queue: SQLite-backed store, polling worker and periodic producers.

Jobs are claimed with a compare-and-swap on their status column, so any number
of worker processes can share one database without a broker. Delivery is
at-least-once: handlers must be idempotent.
"""
