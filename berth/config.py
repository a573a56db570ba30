"""Berth configuration management.

Configuration sources (in priority order):
1. Environment variables (BERTH_ prefix, ``__`` for nesting)
2. Config file (berth.yaml)
3. Defaults
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DockerConfig(BaseModel):
    """Container runtime (docker CLI) configuration."""

    binary: str = "docker"
    # Port the dev server inside the primary container listens on
    container_port: int = 8080
    stop_timeout: int = 5
    labels: dict[str, str] = Field(default_factory=lambda: {"berth.managed": "true"})


class ResourceSpec(BaseModel):
    """CPU, memory and pids ceilings for one container."""

    cpus: float = 1.0
    memory: str = "512m"
    pids: int = 256


class ImageConfig(BaseModel):
    """Image selection by project content."""

    default: str = "node:20-alpine"
    # Checked in order; first matching marker wins
    by_marker: dict[str, str] = Field(
        default_factory=lambda: {
            "package.json": "node:20-alpine",
            "*.py": "python:3.11-slim",
            "*.java": "eclipse-temurin:17-jdk",
            "*.c": "gcc:12",
            "*.cpp": "gcc:12",
        }
    )
    prepull: list[str] = Field(
        default_factory=lambda: [
            "node:20-alpine",
            "python:3.11-slim",
            "gcc:12",
            "eclipse-temurin:17-jdk",
        ]
    )


class WorkspaceConfig(BaseModel):
    """Workspace materialization configuration."""

    # Host directory for projects not present in the project source
    projects_root: str = "./projects"
    # Mount path inside the container (fixed)
    mount_path: str = "/workspace"
    materialize_mode: Literal["tempdir", "volume"] = "tempdir"
    temp_prefix: str = "berth-"
    # Parent of per-session temp dirs; None uses the system temp dir
    temp_root: str | None = None


class WebConfig(BaseModel):
    """Static web preview configuration."""

    port: int = 8088
    host: str = "localhost"
    image: str = "nginx:alpine"
    # Seconds to wait for nginx to answer; 0 disables the check
    ready_timeout: float = 5.0


class WarmPoolConfig(BaseModel):
    """Warm pool of reusable run containers."""

    enabled: bool = True
    idle_ttl_seconds: int = 600
    interval_seconds: int = 60
    resources: ResourceSpec = Field(default_factory=ResourceSpec)
    # Drop all capabilities and forbid privilege escalation in pool containers
    harden: bool = True


class StateConfig(BaseModel):
    """On-disk engine state."""

    state_dir: str = "./.berth"
    snapshot_file: str = "sessions.json"

    @property
    def snapshot_path(self) -> Path:
        return Path(self.state_dir) / self.snapshot_file

    @property
    def web_config_dir(self) -> Path:
        return Path(self.state_dir) / "web"


class RunnerConfig(BaseModel):
    """Ad-hoc file runner limits."""

    default_timeout: float = 20.0
    max_history: int = 100
    stdin_max_bytes: int = 1024 * 1024
    arg_max_count: int = 64
    arg_max_len: int = 1024
    env_max_count: int = 64
    env_val_max_len: int = 2048
    # Runtime image per source extension
    images: dict[str, str] = Field(
        default_factory=lambda: {
            ".js": "node:20-alpine",
            ".jsx": "node:20-alpine",
            ".ts": "node:20-alpine",
            ".tsx": "node:20-alpine",
            ".py": "python:3.11-slim",
            ".java": "eclipse-temurin:17-jdk",
            ".c": "gcc:12",
            ".cpp": "gcc:12",
            ".go": "golang:1.22",
            ".rs": "rust:1-slim",
            ".php": "php:8.3-cli",
            ".rb": "ruby:3.3-slim",
            ".swift": "swift:5.10",
            ".kt": "zenika/kotlin:1.9",
            ".scala": "sbtscala/scala-sbt:eclipse-temurin-17.0.10_7_1.9.9_3.4.0",
            ".sh": "bash:5",
        }
    )


class LoggingConfig(BaseModel):
    level: str = "INFO"
    json_output: bool = False


class Settings(BaseSettings):
    """Berth engine settings."""

    model_config = SettingsConfigDict(
        env_prefix="BERTH_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    docker: DockerConfig = Field(default_factory=DockerConfig)
    resources: ResourceSpec = Field(default_factory=ResourceSpec)
    images: ImageConfig = Field(default_factory=ImageConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    warm_pool: WarmPoolConfig = Field(default_factory=WarmPoolConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment wins over values passed in from the YAML file
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def _load_config_file() -> dict:
    """Read the first YAML config file found; empty when there is none.

    Candidates, first match wins:
    1. BERTH_CONFIG_FILE environment variable
    2. ./berth.yaml
    3. /etc/berth/config.yaml
    """
    config_paths = [
        os.environ.get("BERTH_CONFIG_FILE"),
        Path("berth.yaml"),
        Path("/etc/berth/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Build the settings once per process.

    The YAML file supplies initial values; environment variables override
    them via pydantic-settings.
    """
    file_config = _load_config_file()
    return Settings(**file_config)
