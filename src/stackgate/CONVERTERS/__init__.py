"""Renderers that turn a stack definition into other formats."""
