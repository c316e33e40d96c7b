"""
Core utilities shared by the roster bot: structured logging, retry helpers
and registered name validation.
"""
