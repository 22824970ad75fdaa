"""Abstract seams between the orchestrator and host tooling."""

from .process import ProcessResult, ProcessRunner
from .provider import Provider, SshInfo, VmInfo, VmStatus

__all__ = [
    "ProcessResult",
    "ProcessRunner",
    "Provider",
    "SshInfo",
    "VmInfo",
    "VmStatus",
]
