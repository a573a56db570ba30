"""LogicalShell - pure command-string handling for the execution channel.

Commands run one ``docker exec`` per ``&&`` segment, so directory changes
have to be tracked here instead of by a long-lived shell:

- ``cd`` segments are resolved locally and never spawn a process
- every other segment is wrapped with a trailing ``pwd`` trailer whose output
  is stripped before anything reaches the caller
"""

from __future__ import annotations

import posixpath
import re
import shlex
from dataclasses import dataclass

WORKSPACE_HOME = "/workspace"

SENTINEL = "__BERTH_PWD_7f3a9c__"
_MARKER = "\n" + SENTINEL

_CD_RE = re.compile(r"^cd(?:\s+(.*))?$", re.DOTALL)
# Characters that make a "cd ..." segment more than a plain directory change
_SHELL_META = set(";|&<>$`(){}")

_WRAPPERS = {"sudo", "command", "exec", "time", "nohup", "env"}
_MUTATING_COMMANDS = {
    "mkdir",
    "rm",
    "rmdir",
    "mv",
    "cp",
    "touch",
    "ln",
    "tee",
    "truncate",
    "unzip",
    "tar",
    "patch",
    "vi",
    "vim",
    "nano",
    "emacs",
    "ed",
}
_MUTATING_SUBCOMMANDS = {
    "git": {"checkout", "clone", "pull", "reset", "init", "mv", "rm", "restore", "switch", "merge", "stash", "apply"},
    "npm": {"install", "i", "ci", "uninstall", "remove", "init", "update"},
    "yarn": {"add", "install", "remove", "init"},
    "pnpm": {"add", "install", "i", "remove", "init"},
    "pip": {"install", "uninstall"},
    "pip3": {"install", "uninstall"},
}
_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_REDIRECT_RE = re.compile(r"(?<![<>])(>>?)(?!&)\s*(\S*)")


@dataclass
class CdRequest:
    """A segment that is only a directory change; ``target`` None means home."""

    target: str | None


def _mask_quotes(text: str) -> str:
    """Replace quoted and escaped characters with ``_``, preserving offsets."""
    out: list[str] = []
    quote: str | None = None
    escaped = False
    for ch in text:
        if escaped:
            out.append("_")
            escaped = False
        elif ch == "\\" and quote != "'":
            out.append("_")
            escaped = True
        elif quote is not None:
            if ch == quote:
                quote = None
                out.append(ch)
            else:
                out.append("_")
        elif ch in ("'", '"'):
            quote = ch
            out.append(ch)
        else:
            out.append(ch)
    return "".join(out)


def split_chain(command: str) -> list[str]:
    """Split on top-level ``&&`` into trimmed, non-empty segments."""
    masked = _mask_quotes(command)
    segments: list[str] = []
    start = 0
    index = masked.find("&&")
    while index != -1:
        segments.append(command[start:index])
        start = index + 2
        index = masked.find("&&", start)
    segments.append(command[start:])
    return [s.strip() for s in segments if s.strip()]


def parse_cd(segment: str) -> CdRequest | None:
    """Recognise ``cd``, ``cd ~`` and ``cd <target>``; None for anything else."""
    match = _CD_RE.match(segment.strip())
    if match is None:
        return None
    raw = (match.group(1) or "").strip()
    if not raw:
        return CdRequest(target=None)
    if any(ch in _SHELL_META for ch in _mask_quotes(raw)):
        return None
    try:
        tokens = shlex.split(raw)
    except ValueError:
        return None
    if len(tokens) != 1:
        return None
    return CdRequest(target=tokens[0])


def resolve_cd(cwd: str, target: str | None, *, home: str = WORKSPACE_HOME) -> str:
    """Resolve a ``cd`` target against the current logical directory."""
    if target is None or target == "~":
        return home
    if target.startswith("~/"):
        return posixpath.normpath(posixpath.join(home, target[2:]))
    if target.startswith("/"):
        return posixpath.normpath(target)
    return posixpath.normpath(posixpath.join(cwd, target))


def wrap_with_cwd_trailer(segment: str) -> str:
    """Append a ``pwd`` trailer that preserves the segment's exit status."""
    return (
        f"{segment}\n"
        "__berth_rc=$?\n"
        f"printf '\\n{SENTINEL}%s\\n' \"$(pwd)\"\n"
        "exit $__berth_rc"
    )


class CwdTrailerFilter:
    """Streaming filter that removes the trailer from stdout chunks.

    Any tail that could be the start of the trailer marker is held back until
    the next chunk shows whether it is.
    """

    def __init__(self) -> None:
        self._pending = ""
        self._captured: str | None = None

    def feed(self, chunk: str) -> str:
        if self._captured is not None:
            self._captured += chunk
            return ""
        buffer = self._pending + chunk
        index = buffer.find(_MARKER)
        if index != -1:
            self._pending = ""
            self._captured = buffer[index + len(_MARKER) :]
            return buffer[:index]

        hold = 0
        for size in range(min(len(_MARKER) - 1, len(buffer)), 0, -1):
            if _MARKER.startswith(buffer[-size:]):
                hold = size
                break
        if hold:
            self._pending = buffer[-hold:]
            return buffer[:-hold]
        self._pending = ""
        return buffer

    def flush(self) -> tuple[str, str | None]:
        """Return any held-back output and the reported directory, if seen."""
        remaining, self._pending = self._pending, ""
        if self._captured is None:
            return remaining, None
        directory = self._captured.split("\n", 1)[0].strip()
        return remaining, directory or None


def strip_cwd_trailer(stdout: str) -> tuple[str, str | None]:
    """Remove the trailer from complete stdout; returns (clean, directory)."""
    trailer = CwdTrailerFilter()
    clean = trailer.feed(stdout)
    remaining, directory = trailer.flush()
    return clean + remaining, directory


def _command_words(part: str) -> list[str]:
    try:
        words = shlex.split(part)
    except ValueError:
        words = part.split()
    while words and (_ASSIGNMENT_RE.match(words[0]) or words[0] in _WRAPPERS):
        words = words[1:]
    return words


def _writes_file(masked: str) -> bool:
    for match in _REDIRECT_RE.finditer(masked):
        target = match.group(2)
        if target and target != "/dev/null":
            return True
    return False


def is_mutating(segment: str) -> bool:
    """Heuristic: could this segment change files in the workspace?"""
    masked = _mask_quotes(segment)
    if _writes_file(masked):
        return True

    # Split on unquoted ; | & so pipelines and lists are checked part by part
    start = 0
    parts: list[str] = []
    for index, ch in enumerate(masked):
        if ch in ";|&":
            parts.append(segment[start:index])
            start = index + 1
    parts.append(segment[start:])

    for part in parts:
        words = _command_words(part.strip())
        if not words:
            continue
        program = posixpath.basename(words[0])
        if program in _MUTATING_COMMANDS:
            return True
        if program == "sed" and any(w == "-i" or w.startswith("-i") for w in words[1:]):
            return True
        subcommands = _MUTATING_SUBCOMMANDS.get(program)
        if subcommands and len(words) > 1 and words[1] in subcommands:
            return True
    return False
