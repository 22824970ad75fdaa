"""Subprocess process runner implementation."""

import subprocess
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from ..exceptions import ProviderOperationError
from ..interfaces.process import ProcessResult, ProcessRunner

log = structlog.get_logger(__name__)


class SubprocessRunner(ProcessRunner):
    """Run processes using the subprocess module."""

    def run(
        self,
        command: List[str],
        check: bool = True,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessResult:
        """Run a command, returning stripped stdout/stderr."""
        log.debug("tool_run", tool=command[0], argc=len(command))
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                timeout=timeout,
                input=input,
                cwd=str(cwd) if cwd else None,
                env=env,
                text=True,
            )
        except FileNotFoundError as e:
            raise ProviderOperationError(f"{command[0]} not found", str(e)) from e
        except subprocess.TimeoutExpired as e:
            raise ProviderOperationError(
                f"{' '.join(command)} timed out after {timeout}s"
            ) from e

        processed = ProcessResult(
            returncode=result.returncode,
            stdout=(result.stdout or "").strip(),
            stderr=(result.stderr or "").strip(),
        )
        if check and not processed.success:
            raise ProviderOperationError(
                f"{' '.join(command)} failed",
                processed.stderr or processed.stdout or f"exit code {processed.returncode}",
                returncode=processed.returncode,
            )
        return processed

    def ok(self, command: List[str], timeout: Optional[float] = None) -> bool:
        """Run a command, return True if it exits 0."""
        try:
            return self.run(command, check=False, timeout=timeout).success
        except ProviderOperationError:
            return False

    def spawn_detached(self, command: List[str]) -> None:
        """Start a background process in its own session, discarding output."""
        try:
            subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise ProviderOperationError(f"Failed to launch {command[0]}", str(e)) from e
