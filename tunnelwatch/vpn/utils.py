"""Utility functions for VPN monitoring."""

import subprocess
from typing import List, Optional, Tuple

from .exceptions import ProbeTimeout, ProbeUnavailable
from ..logging_utility import logger


def run_command(cmd: List[str], check: bool = True, timeout: Optional[float] = None) -> Tuple[str, str]:
    """
    Run a command and return its output.

    Args:
        cmd: Command as list of strings
        check: Whether to raise exception on non-zero exit
        timeout: Seconds before the command is abandoned

    Returns:
        Tuple of (stdout, stderr)

    Raises:
        ProbeUnavailable: the executable is missing or exited with an error
        ProbeTimeout: the command did not finish within ``timeout``
    """
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=check, timeout=timeout)
        return result.stdout, result.stderr
    except FileNotFoundError:
        raise ProbeUnavailable(f"Command not found: {cmd[0]}")
    except PermissionError as e:
        raise ProbeUnavailable(f"Permission denied running {cmd[0]}: {e}")
    except subprocess.TimeoutExpired:
        logger.warning(f"Command timed out after {timeout}s: {' '.join(cmd)}")
        raise ProbeTimeout(f"Command timed out after {timeout}s: {' '.join(cmd)}")
    except subprocess.CalledProcessError as e:
        raise ProbeUnavailable(f"Command failed: {' '.join(cmd)}\n{(e.stderr or '').strip()}")


def format_bytes_speed(bytes_per_sec: float) -> str:
    """Format a byte rate with B/s, KB/s or MB/s (decimal units)."""
    if bytes_per_sec >= 1_000_000:
        return f"{bytes_per_sec / 1_000_000:.1f} MB/s"
    if bytes_per_sec >= 1_000:
        return f"{bytes_per_sec / 1_000:.1f} KB/s"
    return f"{bytes_per_sec:.0f} B/s"


def format_bytes(count: float) -> str:
    for unit in ['B', 'KiB', 'MiB', 'GiB', 'TiB']:
        if count < 1024:
            return f"{count:.0f} {unit}" if unit == 'B' else f"{count:.1f} {unit}"
        count /= 1024
    return f"{count:.1f} PiB"


def format_duration(seconds: float) -> str:
    """
    Format a duration as ``Xd XXh`` (a day or more) or ``HH:MM:SS``.
    """
    secs = max(int(seconds), 0)
    if secs >= 86400:
        return f"{secs // 86400}d {(secs % 86400) // 3600:02}h"
    return f"{secs // 3600:02}:{(secs % 3600) // 60:02}:{secs % 60:02}"


def truncate(text: str, max_chars: int) -> str:
    """Cut ``text`` to ``max_chars`` characters, ending with '...' when cut."""
    if len(text) > max_chars:
        return text[:max(max_chars - 3, 0)] + "..."
    return text
