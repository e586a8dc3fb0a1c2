"""
Utilities Module
================

Helper functions and utility classes.
"""

from app.utils.helpers import ensure_utc, format_datetime, from_millis, parse_datetime, utc_now

__all__ = ["ensure_utc", "format_datetime", "from_millis", "parse_datetime", "utc_now"]
