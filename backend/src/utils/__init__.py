"""
Utility modules for the scheduling backend.

Shared helpers for wall-clock arithmetic, clinic-timezone handling, and
ownership lookups used across services.
"""
