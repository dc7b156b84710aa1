"""Narrative continuity memory for long-form generative writing projects."""

__version__ = "0.1.0"
