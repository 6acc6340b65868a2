"""Durable product sentiment workflows."""

__version__ = "1.0.0"
