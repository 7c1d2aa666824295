"""
memsqlite - Claude Code conversation logs in a queryable SQLite store.
"""

__version__ = "0.1.0"
