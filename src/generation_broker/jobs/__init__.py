"""Persistent generation job queue with retries and dead-lettering."""
