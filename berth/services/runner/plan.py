"""Execution plans for running a single source file."""

from __future__ import annotations

import posixpath
import re
import uuid
from dataclasses import dataclass, field
from typing import Mapping, Sequence

from berth.config import RunnerConfig
from berth.errors import ValidationError

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class RunPlan:
    """Commands to run in order; args and stdin go to the last step."""

    image: str
    steps: list[list[str]] = field(default_factory=list)


def plan_for(file_name: str, images: Mapping[str, str], *, args: Sequence[str] = ()) -> RunPlan:
    """Build the plan for ``file_name`` (a path relative to the working dir).

    Raises:
        ValidationError: For unsupported extensions
    """
    stem, ext = posixpath.splitext(posixpath.basename(file_name))
    ext = ext.lower()
    image = images.get(ext)
    if image is None:
        raise ValidationError(
            f"Unsupported file type: {ext or file_name}",
            details={"file": file_name, "supported": sorted(images)},
        )

    # Compiled artifacts go to /tmp so the workspace stays clean
    out = f"/tmp/berth-run-{uuid.uuid4().hex[:8]}"

    if ext in (".js", ".jsx"):
        steps = [["node", file_name]]
    elif ext in (".ts", ".tsx"):
        steps = [["npx", "--yes", "ts-node", file_name]]
    elif ext == ".py":
        steps = [["python", file_name]]
    elif ext == ".java":
        steps = [["javac", "-d", out, file_name], ["java", "-cp", out, stem]]
    elif ext == ".c":
        steps = [["gcc", "-O2", "-o", out, file_name], [out]]
    elif ext == ".cpp":
        steps = [["g++", "-std=c++17", "-O2", "-o", out, file_name], [out]]
    elif ext == ".go":
        steps = [["go", "run", file_name]]
    elif ext == ".rs":
        steps = [["rustc", "-O", "-o", out, file_name], [out]]
    elif ext == ".php":
        steps = [["php", file_name]]
    elif ext == ".rb":
        steps = [["ruby", file_name]]
    elif ext == ".swift":
        steps = [["swift", file_name]]
    elif ext == ".kt":
        jar = f"{out}.jar"
        steps = [["kotlinc", file_name, "-include-runtime", "-d", jar], ["java", "-jar", jar]]
    elif ext == ".scala":
        steps = [["scala", file_name]]
    elif ext == ".sh":
        steps = [["bash", file_name]]
    else:
        raise ValidationError(f"Unsupported file type: {ext}", details={"file": file_name})

    steps[-1] = steps[-1] + list(args)
    return RunPlan(image=image, steps=steps)


def sanitize_inputs(
    config: RunnerConfig,
    *,
    args: Sequence[str] = (),
    env: Mapping[str, str] | None = None,
    stdin: str | None = None,
) -> tuple[list[str], dict[str, str], str | None]:
    """Validate run inputs against the configured limits.

    Raises:
        ValidationError: On the first violated limit
    """
    args = [str(a) for a in args]
    if len(args) > config.arg_max_count:
        raise ValidationError(f"Too many arguments (max {config.arg_max_count})")
    for arg in args:
        if len(arg) > config.arg_max_len:
            raise ValidationError(f"Argument too long (max {config.arg_max_len} chars)")
        if "\x00" in arg:
            raise ValidationError("Arguments must not contain null bytes")

    clean_env: dict[str, str] = {}
    env = env or {}
    if len(env) > config.env_max_count:
        raise ValidationError(f"Too many environment variables (max {config.env_max_count})")
    for key, value in env.items():
        if not _ENV_KEY_RE.match(key):
            raise ValidationError(f"Invalid environment variable name: {key!r}")
        value = str(value)
        if len(value) > config.env_val_max_len:
            raise ValidationError(f"Environment value for {key} too long (max {config.env_val_max_len})")
        clean_env[key] = value

    if stdin is not None and len(stdin.encode("utf-8")) > config.stdin_max_bytes:
        raise ValidationError(f"stdin too large (max {config.stdin_max_bytes} bytes)")

    return args, clean_env, stdin
