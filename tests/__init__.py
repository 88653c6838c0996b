"""Group settlement test suite."""
