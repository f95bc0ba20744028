"""Shared helpers for tasksync."""
