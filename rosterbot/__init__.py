"""
rosterbot - Discord guild roster reconciliation bot.

Keeps an in-memory roster of guild members in sync with the member record
store, maintains the managed "missing X" roles and exports the roster to a
Google Sheets tab.
"""

__version__ = "1.0.0"
