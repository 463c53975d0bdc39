"""Workflow step providers, the registry that holds them, and a rate limiter."""

__version__ = "0.1.0"