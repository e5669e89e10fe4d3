"""Flowbot — declarative bot specifications on an event-driven execution engine."""

__version__ = "0.1.0"
