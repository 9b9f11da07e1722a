"""Manifest parsing and validation."""
