"""Configuration, errors and shared helpers."""
