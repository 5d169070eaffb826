"""SQLite storage layer for task orchestration."""
