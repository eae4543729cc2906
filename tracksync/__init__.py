"""Offline-first sync engine for a Redmine issue cache"""

__version__ = "1.0.0"
