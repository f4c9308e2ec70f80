"""Shared daily token economy: pools, allocations, reservations, rotation."""
