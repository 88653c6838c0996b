"""
Shared infrastructure for the group settlement backend.

Subpackages:
    config          Settings, structured logging, status constants
    infrastructure  Database sessions, keyed locks, notification events
    utils           Exception taxonomy, output schemas
"""
