"""Abstract interface for running external tools."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional


@dataclass
class ProcessResult:
    """Result of process execution."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


class ProcessRunner(ABC):
    """The one place hypervisor and keystore tooling gets invoked.

    ``run`` raises ProviderOperationError on a non-zero exit (with the
    tool's stderr preserved) unless ``check=False``. ``ok`` never raises.
    """

    @abstractmethod
    def run(
        self,
        command: List[str],
        check: bool = True,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessResult:
        """Run a command and capture its output."""
        pass

    @abstractmethod
    def ok(self, command: List[str], timeout: Optional[float] = None) -> bool:
        """Run a command and report whether it exited 0."""
        pass

    @abstractmethod
    def spawn_detached(self, command: List[str]) -> None:
        """Start a long-lived background process and return immediately."""
        pass
