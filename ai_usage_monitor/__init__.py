"""
AI Usage Monitor.

Polls AI provider usage APIs, stores normalized metrics and evaluates
budgets and alerts against them.
"""

__version__ = "0.1.0"
