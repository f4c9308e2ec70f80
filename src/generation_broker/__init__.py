"""Generation job broker with a shared daily token economy."""

__version__ = "0.1.0"
