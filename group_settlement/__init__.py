"""
Table-session and group-settlement coordinator.

Tracks diners sharing a table, their individually owned orders, and how the
group pays: equal, per item, custom amounts, or one diner treating another.
"""

__version__ = "1.0.0"
