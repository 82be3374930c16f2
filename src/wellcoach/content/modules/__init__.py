"""Bundled training module definitions."""
