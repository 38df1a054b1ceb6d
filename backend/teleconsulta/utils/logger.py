"""Safe logging utility that handles Unicode characters in participant names."""
import sys
from datetime import datetime
from typing import Any

# Configure stdout/stderr for UTF-8 on Windows
if sys.platform == 'win32':
    if hasattr(sys.stdout, 'reconfigure'):
        sys.stdout.reconfigure(encoding='utf-8', errors='replace')
    if hasattr(sys.stderr, 'reconfigure'):
        sys.stderr.reconfigure(encoding='utf-8', errors='replace')


def _ascii(value: Any) -> Any:
    if isinstance(value, str):
        return value.encode('ascii', errors='replace').decode('ascii')
    if isinstance(value, dict):
        return {_ascii(k): _ascii(v) for k, v in value.items()}
    return value


def safe_print(*args, **kwargs):
    """
    Safe print function that handles Unicode characters.
    Falls back to an ASCII rendition when the console cannot encode the output.
    """
    try:
        print(*args, **kwargs)
    except (UnicodeEncodeError, UnicodeDecodeError):
        print(*[_ascii(arg) for arg in args], **kwargs)


def safe_repr(obj: Any) -> str:
    """
    Safe representation function that handles Unicode characters.
    """
    try:
        return repr(obj)
    except (UnicodeEncodeError, UnicodeDecodeError):
        return str(obj).encode('ascii', errors='replace').decode('ascii')


def log(message: str, data: Any = None, tag: str = "Teleconsulta"):
    """Print a timestamped, tagged line: ``[HH:MM:SS] [tag] message``."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    if data is not None:
        safe_print(f"[{timestamp}] [{tag}] {message}", safe_repr(data))
    else:
        safe_print(f"[{timestamp}] [{tag}] {message}")
