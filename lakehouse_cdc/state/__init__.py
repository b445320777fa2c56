"""Durable checkpoints and schema versions."""
