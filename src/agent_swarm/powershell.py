"""PowerShell command-line helpers shared by Hyper-V and the DPAPI key store."""

from typing import Any, List


def ps_quote(value: Any) -> str:
    """Single-quote *value* for a PowerShell command line."""
    return "'" + str(value).replace("'", "''") + "'"


def powershell_command(script: str) -> List[str]:
    return ["powershell.exe", "-NoProfile", "-NonInteractive", "-Command", script]
