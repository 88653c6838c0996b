"""
Utilities: exception taxonomy and output schemas.
"""
