"""
agent-swarm - Disposable, isolated VMs for agents working on one codebase.

A long-lived project VM acts as a golden template; task VMs are
copy-on-write clones of it, created and discarded per unit of work.
"""

__version__ = "0.3.0"
__author__ = "agent-swarm contributors"

from agent_swarm.orchestrator import Orchestrator
from agent_swarm.secrets import SecretBackend

__all__ = ["Orchestrator", "SecretBackend", "__version__"]
