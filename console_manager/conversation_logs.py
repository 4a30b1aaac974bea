"""Conversation log discovery and reading.

Logs live at ``<conversations_dir>/<encoded project path>/<session id>.jsonl``.
They are only ever read here.
"""

import asyncio
import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple
import logging

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATIONS_DIR = "~/.claude/projects"
DEFAULT_WRAPPER_LOG = "~/.claude/pid-session-map.log"
JSONL_TAIL_BYTES = 200_000


def encode_project_path(project_path: str) -> str:
    """Directory name used for a project's logs."""
    return project_path.replace("/", "-")


@dataclass
class ConversationLogFile:
    """A log file on disk with its timestamps (epoch seconds)."""
    session_id: str
    path: Path
    created_at: float
    modified_at: float


@dataclass
class ConversationData:
    """Structured text extracted from a conversation log."""
    user_prompts: List[str] = field(default_factory=list)
    responses: List[str] = field(default_factory=list)
    tool_inputs: List[str] = field(default_factory=list)

    def searchable_text(self) -> str:
        """All text joined by newlines, prompts first."""
        parts = [p for p in self.user_prompts if p]
        parts.extend(r for r in self.responses if r)
        parts.extend(t for t in self.tool_inputs if t)
        return "\n".join(parts)


class ConversationLogCache(Protocol):
    """Read contract for structured conversation data."""

    def get_cached_structured_data(self, path: Path) -> Optional[ConversationData]:
        ...

    async def get_structured_data(self, path: Path) -> Optional[ConversationData]:
        ...


def _stringify_input(value) -> Optional[str]:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return None


def _read_tail(path: Path, max_bytes: int) -> str:
    size = path.stat().st_size
    with open(path, "rb") as f:
        if size > max_bytes:
            f.seek(size - max_bytes)
            raw = f.read(max_bytes).decode("utf-8", errors="replace")
            # Drop the line the seek cut in half
            newline = raw.find("\n")
            if newline > 0:
                raw = raw[newline + 1:]
            return raw
        return f.read().decode("utf-8", errors="replace")


def parse_jsonl(path: Path, max_bytes: int = JSONL_TAIL_BYTES) -> ConversationData:
    """
    Extract text from a JSONL conversation log.

    Only the last ``max_bytes`` of large files are read. Unparseable lines
    are skipped.

    Args:
        path: Log file
        max_bytes: Tail size limit

    Returns:
        ConversationData, empty if the file cannot be read
    """
    data = ConversationData()
    try:
        raw = _read_tail(path, max_bytes)
    except OSError as e:
        logger.debug(f"Cannot read conversation log {path}: {e}")
        return data

    for line in raw.split("\n"):
        if not line.strip():
            continue
        try:
            msg = json.loads(line)
        except ValueError:
            continue
        if not isinstance(msg, dict):
            continue

        message = msg.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        is_user = msg.get("type") == "user"

        if isinstance(content, str) and content:
            (data.user_prompts if is_user else data.responses).append(content)
        elif isinstance(content, list):
            for block in content:
                if not isinstance(block, dict):
                    continue
                block_type = block.get("type")
                if block_type == "text" and block.get("text"):
                    (data.user_prompts if is_user else data.responses).append(block["text"])
                elif block_type == "tool_use" and block.get("input"):
                    text = _stringify_input(block["input"])
                    if text:
                        data.tool_inputs.append(text)
                elif block_type == "tool_result":
                    result = block.get("content")
                    if isinstance(result, str):
                        data.responses.append(result)
                    elif isinstance(result, list):
                        for item in result:
                            if isinstance(item, dict) and item.get("type") == "text" and item.get("text"):
                                data.responses.append(item["text"])

        # Standalone result messages
        if isinstance(msg.get("result"), str) and msg["result"]:
            data.responses.append(msg["result"])

    return data


class JsonlConversationLogCache:
    """Default ConversationLogCache that parses logs on demand, memoised by mtime."""

    def __init__(self, max_bytes: int = JSONL_TAIL_BYTES):
        self.max_bytes = max_bytes
        self._memo: Dict[Path, Tuple[float, ConversationData]] = {}

    def get_cached_structured_data(self, path: Path) -> Optional[ConversationData]:
        """Return parsed data only if it is already memoised for the current mtime."""
        entry = self._memo.get(path)
        if entry is None:
            return None
        try:
            mtime = path.stat().st_mtime
        except OSError:
            self._memo.pop(path, None)
            return None
        return entry[1] if entry[0] == mtime else None

    async def get_structured_data(self, path: Path) -> Optional[ConversationData]:
        cached = self.get_cached_structured_data(path)
        if cached is not None:
            return cached
        try:
            mtime = path.stat().st_mtime
        except OSError:
            return None
        data = await asyncio.to_thread(parse_jsonl, path, self.max_bytes)
        self._memo[path] = (mtime, data)
        return data


class ConversationLogs:
    """Locates conversation logs and the wrapper pid log."""

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}
        paths = self.config.get("paths", {})
        self.conversations_dir = Path(
            paths.get("conversations_dir", DEFAULT_CONVERSATIONS_DIR)
        ).expanduser()
        self.wrapper_log = Path(paths.get("wrapper_log", DEFAULT_WRAPPER_LOG)).expanduser()

        identifier = self.config.get("identifier", {})
        self.time_proximity_seconds = identifier.get("time_proximity_seconds", 60)

    def project_dir(self, project_path: str) -> Path:
        return self.conversations_dir / encode_project_path(project_path)

    def has_project_dir(self, project_path: str) -> bool:
        return self.project_dir(project_path).is_dir()

    def log_path(self, project_path: str, session_id: str) -> Path:
        return self.project_dir(project_path) / f"{session_id}.jsonl"

    def log_exists(self, project_path: str, session_id: str) -> bool:
        return self.log_path(project_path, session_id).is_file()

    def list_logs(self, project_path: str) -> List[ConversationLogFile]:
        """
        All logs for a project with creation and modification times.

        Creation time falls back to ctime where the filesystem has no birth time.
        """
        directory = self.project_dir(project_path)
        logs: List[ConversationLogFile] = []
        try:
            entries = list(os.scandir(directory))
        except OSError:
            return logs

        for entry in entries:
            if not entry.name.endswith(".jsonl") or not entry.is_file():
                continue
            try:
                st = entry.stat()
            except OSError:
                continue
            created = getattr(st, "st_birthtime", None) or st.st_ctime
            logs.append(ConversationLogFile(
                session_id=entry.name[: -len(".jsonl")],
                path=Path(entry.path),
                created_at=created,
                modified_at=st.st_mtime,
            ))
        return logs

    def read_wrapper_log(self) -> Dict[int, str]:
        """
        Parse ``pid|session id|...`` lines.

        Returns:
            Dict of pid -> session id; the first entry for a pid wins
        """
        mapping: Dict[int, str] = {}
        try:
            content = self.wrapper_log.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return mapping

        for line in content.splitlines():
            parts = line.split("|")
            if len(parts) < 2 or not parts[0].strip().isdigit() or not parts[1].strip():
                continue
            mapping.setdefault(int(parts[0].strip()), parts[1].strip())
        return mapping

    def find_closest_log(self, project_path: str, process_start: datetime) -> Optional[str]:
        """
        Session id of the single log created or modified closest to process start.

        Only logs within the proximity tolerance are considered.
        """
        start = process_start.timestamp()
        best: Optional[str] = None
        best_delta = float(self.time_proximity_seconds)
        for log in self.list_logs(project_path):
            delta = min(abs(log.created_at - start), abs(log.modified_at - start))
            if delta <= best_delta:
                best, best_delta = log.session_id, delta
        return best
