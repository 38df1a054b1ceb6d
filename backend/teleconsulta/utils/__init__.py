"""Utility modules for the application."""
from teleconsulta.utils.logger import (
    safe_print,
    safe_repr,
    log
)
from teleconsulta.utils.timefmt import (
    utcnow,
    format_duration
)

__all__ = [
    'safe_print',
    'safe_repr',
    'log',
    'utcnow',
    'format_duration'
]
