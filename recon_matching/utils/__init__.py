"""Utility functions and helpers."""

from .exceptions import raise_matching_error

__all__ = ["raise_matching_error"]
