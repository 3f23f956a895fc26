"""
Core modules for AI Usage Monitor.

This package contains usage aggregation, budget and alert evaluation,
and the polling scheduler.
"""
