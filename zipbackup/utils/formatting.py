"""Human-readable formatting helpers for log lines."""

from datetime import timedelta
from typing import Optional, Union


KILOBYTE = 1024
MEGABYTE = KILOBYTE * 1024
GIGABYTE = MEGABYTE * 1024
TERABYTE = GIGABYTE * 1024


def format_file_size(size: Optional[Union[int, float]], decimal_places: int = 2) -> str:
    """
    Format a byte count as a human-readable string.

    Args:
        size: Size in bytes (None when the size is unknown)
        decimal_places: Decimal places for KB and larger units

    Returns:
        Formatted size, e.g. '1.50 MB'
    """
    if size is None:
        return 'unknown'

    if size > TERABYTE:
        return f"{size / TERABYTE:,.{decimal_places}f} TB"
    if size > GIGABYTE:
        return f"{size / GIGABYTE:,.{decimal_places}f} GB"
    if size > MEGABYTE:
        return f"{size / MEGABYTE:,.{decimal_places}f} MB"
    if size > KILOBYTE:
        return f"{size / KILOBYTE:,.{decimal_places}f} KB"
    return f"{int(size):,} B"


def format_duration(seconds: float) -> str:
    """Format elapsed seconds as H:MM:SS."""
    return str(timedelta(seconds=int(seconds)))
