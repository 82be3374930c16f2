"""Bundled training content."""
