"""Shared plumbing for engine services: logging, errors, configuration."""
