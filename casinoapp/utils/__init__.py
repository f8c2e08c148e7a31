"""Utility helpers for the casino application."""

from .time_utils import format_remaining, now_utc

__all__ = ["format_remaining", "now_utc"]
