"""Builders and store doubles shared across the test suite."""
