"""SQLite persistence for users, token allocations and generation jobs."""
