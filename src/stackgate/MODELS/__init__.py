"""Pydantic models for stack definitions and runtime state."""
