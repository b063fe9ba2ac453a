"""Shared utilities for querypipe."""

from querypipe.utils.time import epoch_seconds, seconds_since, utc_now

__all__ = ["epoch_seconds", "seconds_since", "utc_now"]
