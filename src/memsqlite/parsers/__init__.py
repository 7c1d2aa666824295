"""Parsing and transformation of Claude Code JSONL logs."""
