#!/usr/bin/env python3
"""
Pydantic models for agent-swarm configuration.
"""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class VMSettings(BaseModel):
    """Sizing and login settings applied to every VM."""

    cpus: int = Field(default=2, ge=1, le=128, description="Number of vCPUs")
    memory_mb: int = Field(default=4096, ge=512, le=131072, description="RAM in MB")
    disk_size_gb: int = Field(default=20, ge=1, le=2048, description="Project disk size in GB")
    user: str = Field(default="worker", description="Login user created by first-boot setup")
    ssh_port: int = Field(default=22, ge=1, le=65535)

    @field_validator("user")
    @classmethod
    def user_must_be_valid(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("VM user cannot be empty")
        return v.strip()


class ReadinessSettings(BaseModel):
    """Bounds for the polling loops run after a VM is launched."""

    ip_interval: float = Field(default=3.0, gt=0)
    ip_timeout: float = Field(default=90.0, ge=0)
    ssh_interval: float = Field(default=3.0, gt=0)
    ssh_timeout: float = Field(default=120.0, ge=0)
    provisioning_interval: float = Field(default=5.0, gt=0)
    provisioning_timeout: float = Field(default=600.0, ge=0)
    stop_interval: float = Field(default=2.0, gt=0)
    stop_timeout: float = Field(default=30.0, ge=0)
    ssh_info_timeout: float = Field(default=15.0, ge=0)
    list_ip_timeout: float = Field(default=5.0, ge=0)


class SwarmConfig(BaseModel):
    """Complete agent-swarm configuration with validation."""

    vm: VMSettings = Field(default_factory=VMSettings)
    readiness: ReadinessSettings = Field(default_factory=ReadinessSettings)
    max_workers: int = Field(default=8, ge=1, le=64, description="Bulk operation parallelism")
    log_level: str = Field(default="WARNING")
    vm_helper: Optional[Path] = Field(
        default=None, description="Path to the macOS virtualization helper binary"
    )

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_valid(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"log_level must be one of: {sorted(valid)}")
        return v.upper()

    def save(self, path: Path) -> None:
        """Save configuration to YAML file."""
        import yaml

        config_dict = self.model_dump(mode="json", exclude_none=True)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.dump(config_dict, default_flow_style=False, sort_keys=False))

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "SwarmConfig":
        """Load configuration from YAML; a missing file yields the defaults."""
        import yaml

        from agent_swarm.paths import config_path

        path = path or config_path()
        if not path.exists():
            return cls()
        data = yaml.safe_load(path.read_text()) or {}
        return cls.model_validate(data)
