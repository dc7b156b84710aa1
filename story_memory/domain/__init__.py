"""Domain models and helpers for story memory."""
