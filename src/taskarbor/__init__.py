"""taskarbor — durable task-tree execution sessions."""

__version__ = "0.3.0"
