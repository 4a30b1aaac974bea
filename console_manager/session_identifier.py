"""Fuzzy identification of the conversation shown in a tmux pane.

Stage 1 ranks candidate conversation logs by how many 4-word n-grams from the
bottom of the pane occur in each log's text. Stage 2 verifies the best few by
measuring how much of the screen is covered by chunks of the log, then combines
both with a creation-time proximity score.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set
import logging

from .conversation_logs import (
    ConversationLogCache,
    ConversationLogFile,
    ConversationLogs,
    parse_jsonl,
)
from .models import IdentificationResult
from .tmux_controller import TmuxController

logger = logging.getLogger(__name__)

ANSI_RE = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")
TUI_CHARS_RE = re.compile(
    "[─│╭╮╯╰┌┐└┘├┤┬┴┼▐▛▜▝▘▚▞█▌▀▄░▒▓●✻◇◆▸▹⎿⏵╵╶╷╴╋━┃┅┇┈┉┊┋╌╍╎╏═║╒╓╔╕╖╗╘╙╚╛╜╝╞╟╠╡╢╣╤╥╦╧╨╩╪╫╬]"
)
PROMPT_RE = re.compile(r"^[❯>]\s*")
LINE_NUMBER_RE = re.compile(r"^\s*\d{1,6}\s*[+\-]?\s")
DIFF_MARKER_RE = re.compile(r"^[+\-]\s+")
WHITESPACE_RE = re.compile(r"[ \t]+")
WORD_TRIM_RE = re.compile(r"^[^a-z0-9]+|[^a-z0-9]+$")

NGRAM_SIZE = 4
MIN_LINE_LENGTH = 5
MIN_CHUNK_LENGTH = 20


@dataclass
class ScoringWeights:
    """Composite score weights and acceptance floors."""
    match_ratio: float = 0.4
    coverage: float = 0.3
    birth_time: float = 0.3
    min_composite: float = 0.10
    min_content: float = 0.08

    @classmethod
    def from_config(cls, config: dict) -> "ScoringWeights":
        weights = config.get("identifier", {}).get("weights", {})
        defaults = cls()
        return cls(
            match_ratio=weights.get("match_ratio", defaults.match_ratio),
            coverage=weights.get("coverage", defaults.coverage),
            birth_time=weights.get("birth_time", defaults.birth_time),
            min_composite=weights.get("min_composite", defaults.min_composite),
            min_content=weights.get("min_content", defaults.min_content),
        )


@dataclass
class Candidate:
    """A conversation log with its searchable text."""
    session_id: str
    text: str
    created_at: float
    modified_at: float


def extract_screen_lines(raw: str) -> List[str]:
    """Clean captured pane text into lowercase lines, oldest first."""
    lines: List[str] = []
    for line in raw.split("\n"):
        clean = ANSI_RE.sub("", line).replace("\r", "")
        clean = TUI_CHARS_RE.sub("", clean)
        clean = PROMPT_RE.sub("", clean)
        clean = LINE_NUMBER_RE.sub("", clean)
        clean = DIFF_MARKER_RE.sub("", clean)
        clean = WHITESPACE_RE.sub(" ", clean).strip().lower()
        if len(clean) >= MIN_LINE_LENGTH:
            lines.append(clean)
    return lines


def extract_screen_ngrams(lines: List[str], max_ngrams: int = 150) -> List[str]:
    """
    Overlapping 4-word n-grams, newest lines first.

    Words are trimmed of punctuation at their edges and words of two
    characters or fewer are dropped.
    """
    ngrams: Dict[str, None] = {}
    for line in reversed(lines):
        words = [WORD_TRIM_RE.sub("", w) for w in line.split()]
        words = [w for w in words if len(w) > 2]
        if len(words) < NGRAM_SIZE:
            continue
        for i in range(len(words) - NGRAM_SIZE + 1):
            if len(ngrams) >= max_ngrams:
                return list(ngrams)
            ngrams[" ".join(words[i:i + NGRAM_SIZE])] = None
    return list(ngrams)


def extract_chunks(text: str) -> List[str]:
    """Lines of a log's text long enough to verify against the screen."""
    chunks = []
    for line in text.split("\n"):
        stripped = line.strip()
        if len(stripped) >= MIN_CHUNK_LENGTH:
            chunks.append(stripped.lower())
    return chunks


def screen_coverage(screen_text: str, chunks: Iterable[str]) -> float:
    """Fraction of screen characters covered by any occurrence of any chunk."""
    total = len(screen_text)
    if total == 0:
        return 0.0
    covered = bytearray(total)
    for chunk in chunks:
        start = screen_text.find(chunk)
        while start != -1:
            end = min(start + len(chunk), total)
            covered[start:end] = b"\x01" * (end - start)
            start = screen_text.find(chunk, end)
    return sum(covered) / total


def birth_time_score(delta_seconds: float) -> float:
    delta = abs(delta_seconds)
    if delta < 10 * 60:
        return 1.0
    if delta < 30 * 60:
        return 0.5
    if delta < 60 * 60:
        return 0.2
    return 0.0


def score_candidates(
    screen_lines: List[str],
    candidates: List[Candidate],
    process_start: float,
    weights: Optional[ScoringWeights] = None,
    recent_lines: int = 100,
    max_ngrams: int = 150,
    max_verified: int = 5,
) -> Optional[IdentificationResult]:
    """
    Run both matching stages over already-captured text.

    Args:
        screen_lines: Output of extract_screen_lines
        candidates: Logs with their searchable text
        process_start: Process start as epoch seconds
        weights: Composite weights and floors
        recent_lines: How many of the newest screen lines feed stage 1
        max_ngrams: Stage 1 n-gram cap
        max_verified: How many stage 1 leaders are verified in stage 2

    Returns:
        Best accepted candidate, or None if nothing clears either floor
    """
    weights = weights or ScoringWeights()
    ngrams = extract_screen_ngrams(screen_lines[-recent_lines:], max_ngrams)
    total = len(ngrams)

    ranked = []
    for candidate in candidates:
        text = candidate.text.lower()
        matched = sum(1 for ngram in ngrams if ngram in text)
        ranked.append((candidate, matched))
    ranked.sort(key=lambda item: (-item[1], abs(item[0].created_at - process_start)))

    screen_text = "\n".join(screen_lines)
    best: Optional[IdentificationResult] = None

    for candidate, matched in [item for item in ranked if item[1] > 0][:max_verified]:
        ratio = matched / total if total else 0.0
        coverage = screen_coverage(screen_text, extract_chunks(candidate.text))
        birth = birth_time_score(candidate.created_at - process_start)

        content = weights.match_ratio * ratio + weights.coverage * coverage
        composite = content + weights.birth_time * birth
        if composite < weights.min_composite and content < weights.min_content:
            continue

        if best is None or composite > best.match_details["composite_score"]:
            best = IdentificationResult(
                session_id=candidate.session_id,
                confidence=min(composite, 1.0),
                match_details={
                    "matched_ngrams": matched,
                    "total_ngrams": total,
                    "match_ratio": ratio,
                    "coverage": coverage,
                    "birth_time_score": birth,
                    "content_score": content,
                    "composite_score": composite,
                },
            )

    return best


class SessionIdentifier:
    """Identifies tmux panes by content, caching results per pid."""

    def __init__(
        self,
        tmux: TmuxController,
        logs: ConversationLogs,
        log_cache: ConversationLogCache,
        config: Optional[dict] = None,
    ):
        self.tmux = tmux
        self.logs = logs
        self.log_cache = log_cache
        self.config = config or {}

        identifier = self.config.get("identifier", {})
        self.weights = ScoringWeights.from_config(self.config)
        self.retry_cooldown_seconds = identifier.get("retry_cooldown_seconds", 30)
        self.min_capture_chars = identifier.get("min_capture_chars", 50)
        self.min_screen_lines = identifier.get("min_screen_lines", 3)
        self.recent_lines = identifier.get("recent_lines", 100)
        self.max_ngrams = identifier.get("max_ngrams", 150)
        self.max_verified = identifier.get("max_verified_candidates", 5)
        self.pool_size = identifier.get("candidate_pool_size", 8)
        self.mtime_window_seconds = identifier.get("mtime_window_seconds", 2 * 60 * 60)
        self.birth_window_seconds = identifier.get("birth_window_seconds", 30 * 60)
        self.min_cached_text = identifier.get("min_cached_text_chars", 100)
        self.min_candidate_text = identifier.get("min_candidate_text_chars", 50)

        self.identified: Dict[int, IdentificationResult] = {}
        self.last_attempt: Dict[int, float] = {}

    def get_cached(self, pid: int) -> Optional[IdentificationResult]:
        return self.identified.get(pid)

    def should_attempt(self, pid: int) -> bool:
        """Not yet identified and outside the retry cooldown."""
        if pid in self.identified:
            return False
        last = self.last_attempt.get(pid)
        return last is None or time.monotonic() - last >= self.retry_cooldown_seconds

    def purge(self, active_pids: Set[int]) -> None:
        """Forget every pid that is no longer running."""
        for cache in (self.identified, self.last_attempt):
            for pid in [p for p in cache if p not in active_pids]:
                del cache[pid]

    def select_candidates(self, project_path: str, process_start: float) -> List[ConversationLogFile]:
        """
        Bounded candidate pool for a process.

        Eligible logs were modified recently or created near process start.
        The pool is the union of the nearest by creation time, the nearest by
        modification time and the most recently modified.
        """
        now = time.time()
        eligible = [
            log for log in self.logs.list_logs(project_path)
            if now - log.modified_at <= self.mtime_window_seconds
            or abs(log.created_at - process_start) < self.birth_window_seconds
        ]

        by_birth = sorted(eligible, key=lambda log: abs(log.created_at - process_start))
        by_mtime = sorted(eligible, key=lambda log: abs(log.modified_at - process_start))
        by_recent = sorted(eligible, key=lambda log: -log.modified_at)

        pool: Dict[str, ConversationLogFile] = {}
        for group in (by_birth, by_mtime, by_recent):
            for log in group[: self.pool_size]:
                pool.setdefault(log.session_id, log)
        return list(pool.values())

    async def load_candidate_text(self, path: Path) -> str:
        """Searchable text for a log, parsing it directly when the cache has too little."""
        data = self.log_cache.get_cached_structured_data(path)
        if data is None:
            data = await self.log_cache.get_structured_data(path)
        text = data.searchable_text() if data else ""
        if len(text) < self.min_cached_text:
            parsed = await asyncio.to_thread(parse_jsonl, path)
            text = parsed.searchable_text()
        return text

    async def identify(
        self, tmux_session: str, project_path: str, process_start: datetime
    ) -> Optional[IdentificationResult]:
        """
        Capture a pane and match it against the project's conversation logs.

        Args:
            tmux_session: Session whose pane is captured
            project_path: Project whose logs are candidates
            process_start: When the client process started

        Returns:
            IdentificationResult, or None when nothing matches well enough
            or identification failed
        """
        try:
            return await self._identify(tmux_session, project_path, process_start)
        except Exception as e:
            logger.error(f"Identification of tmux {tmux_session} failed: {e}")
            return None

    async def _identify(
        self, tmux_session: str, project_path: str, process_start: datetime
    ) -> Optional[IdentificationResult]:
        raw = await asyncio.to_thread(self.tmux.capture_pane, tmux_session)
        if not raw or len(raw.strip()) < self.min_capture_chars:
            logger.debug(f"Capture of {tmux_session} too short to identify")
            return None

        screen_lines = extract_screen_lines(raw)
        if len(screen_lines) < self.min_screen_lines:
            return None

        start = process_start.timestamp()
        candidates: List[Candidate] = []
        for log in self.select_candidates(project_path, start):
            text = await self.load_candidate_text(log.path)
            if len(text) < self.min_candidate_text:
                continue
            candidates.append(Candidate(
                session_id=log.session_id,
                text=text,
                created_at=log.created_at,
                modified_at=log.modified_at,
            ))

        if not candidates:
            logger.debug(f"No candidate logs for {tmux_session} in {project_path}")
            return None

        result = score_candidates(
            screen_lines,
            candidates,
            start,
            weights=self.weights,
            recent_lines=self.recent_lines,
            max_ngrams=self.max_ngrams,
            max_verified=self.max_verified,
        )
        if result:
            logger.info(
                f"Identified tmux {tmux_session} as {result.session_id} "
                f"(confidence {result.confidence:.0%})"
            )
        return result

    async def identify_for_pid(
        self, pid: int, tmux_session: str, project_path: str, process_start: datetime
    ) -> Optional[IdentificationResult]:
        """
        Identify a process's pane at most once per cooldown.

        The attempt is recorded before any work so overlapping calls for the
        same pid do not both capture. Returns None without doing anything when
        the pid is already identified or still cooling down.
        """
        if not self.should_attempt(pid):
            return None
        self.last_attempt[pid] = time.monotonic()

        result = await self.identify(tmux_session, project_path, process_start)
        if result:
            self.identified[pid] = result
        return result
