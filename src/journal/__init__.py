"""Append-only JSONL journal of fills, closed trades and risk events."""

from journal.writer import JournalWriter

__all__ = ["JournalWriter"]
