"""Models module."""
