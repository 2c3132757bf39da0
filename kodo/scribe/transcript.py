"""
Transcript Cursor

Tracks, per session, the byte offset of the last fully processed line of a
growing JSONL transcript so that repeated hook invocations only see new
events.

Rules:
- Only complete lines are delivered; a trailing partial line is held back
  and picked up by the next call
- A missing transcript means "nothing new yet", never an error
- The stored offset only moves forward, and only on commit()
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Union

from ..common.schemas import EvidenceRef, SessionCursor, utcnow
from ..common.store import RecordStore

logger = logging.getLogger("kodo.scribe.transcript")

_SCAN_CHUNK = 64 * 1024
_EXCERPT_CHARS = 240

# Transcript line types that carry conversational text
_MESSAGE_TYPES = ("user", "assistant")


@dataclass
class TranscriptEvent:
    """A structured event parsed from one transcript line"""
    session_id: str
    offset: int  # byte offset of the line start
    kind: str  # "user", "assistant", "observation", "tool_result", "system"
    text: str
    event_id: Optional[str] = None
    timestamp: Optional[str] = None

    def evidence(self, excerpt: Optional[str] = None) -> EvidenceRef:
        """Build an evidence reference pointing back at this event"""
        quote = " ".join((excerpt or self.text).split())
        if len(quote) > _EXCERPT_CHARS:
            quote = quote[: _EXCERPT_CHARS - 3] + "..."
        return EvidenceRef(
            session_id=self.session_id,
            offset=self.offset,
            event_id=self.event_id,
            excerpt=quote,
        )


def _block_text(block) -> str:
    if isinstance(block, str):
        return block
    if isinstance(block, dict):
        if block.get("type") == "text":
            return block.get("text", "")
        content = block.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "\n".join(_block_text(b) for b in content)
    return ""


def parse_event(entry: dict, session_id: str, offset: int) -> Optional[TranscriptEvent]:
    """
    Convert one decoded transcript line into a TranscriptEvent.

    Understands the Claude Code transcript shape
    (``{"type": "user", "message": {"role": ..., "content": ...}}``) and
    plain observation lines (``{"type": "observation", "text": ...}``).

    Returns:
        TranscriptEvent, or None if the line carries no text
    """
    line_type = entry.get("type", "")
    event_id = entry.get("uuid") or entry.get("id")
    timestamp = entry.get("timestamp")

    if line_type == "observation":
        text = entry.get("text") or entry.get("content") or ""
        if not isinstance(text, str):
            text = json.dumps(text)
        kind = "observation"
    elif line_type in _MESSAGE_TYPES or "message" in entry or "role" in entry:
        message = entry.get("message", entry)
        if not isinstance(message, dict):
            return None
        kind = message.get("role") or line_type or "system"
        content = message.get("content", "")
        if isinstance(content, str):
            text = content
        elif isinstance(content, list):
            text_blocks = [b for b in content if isinstance(b, dict) and b.get("type") == "text"]
            tool_blocks = [b for b in content if isinstance(b, dict) and b.get("type") == "tool_result"]
            if text_blocks:
                text = "\n".join(b.get("text", "") for b in text_blocks)
            elif tool_blocks:
                text = "\n".join(_block_text(b) for b in tool_blocks)
                kind = "tool_result"
            else:
                text = "\n".join(_block_text(b) for b in content if isinstance(b, str))
        else:
            return None
    else:
        return None

    text = text.strip()
    if not text:
        return None

    return TranscriptEvent(
        session_id=session_id,
        offset=offset,
        kind=kind,
        text=text,
        event_id=event_id,
        timestamp=timestamp,
    )


class NewEvents:
    """
    Lazy, finite, restartable sequence of events in ``[start_offset, end_offset)``.

    Iterating opens the transcript and parses lines on demand; iterating a
    second time yields the same events.
    """

    def __init__(
        self,
        session_id: str,
        transcript_path: Optional[Path],
        start_offset: int,
        end_offset: int,
        reset: bool = False,
    ):
        self.session_id = session_id
        self.transcript_path = transcript_path
        self.start_offset = start_offset
        self.end_offset = max(start_offset, end_offset)
        self.reset = reset  # transcript shrank and the range restarted at 0

    @classmethod
    def empty(cls, session_id: str, transcript_path: Optional[Path], offset: int = 0) -> "NewEvents":
        return cls(session_id, transcript_path, offset, offset)

    @property
    def is_empty(self) -> bool:
        return self.end_offset <= self.start_offset

    @property
    def byte_count(self) -> int:
        return self.end_offset - self.start_offset

    def __iter__(self) -> Iterator[TranscriptEvent]:
        if self.is_empty or self.transcript_path is None:
            return

        try:
            f = open(self.transcript_path, "rb")
        except FileNotFoundError:
            logger.debug("Transcript disappeared: %s", self.transcript_path)
            return

        with f:
            f.seek(self.start_offset)
            position = self.start_offset
            while position < self.end_offset:
                raw = f.readline()
                if not raw:
                    break
                line_offset = position
                position += len(raw)
                if position > self.end_offset:
                    break

                line = raw.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skipping malformed transcript line at offset %d", line_offset)
                    continue
                if not isinstance(entry, dict):
                    continue

                event = parse_event(entry, self.session_id, line_offset)
                if event is not None:
                    yield event

    def to_list(self) -> List[TranscriptEvent]:
        return list(self)


def _last_line_boundary(path: Path, start: int, size: int) -> int:
    """Offset just past the last newline in ``[start, size)``, or ``start``"""
    with open(path, "rb") as f:
        position = size
        while position > start:
            chunk_start = max(start, position - _SCAN_CHUNK)
            f.seek(chunk_start)
            chunk = f.read(position - chunk_start)
            newline = chunk.rfind(b"\n")
            if newline != -1:
                return chunk_start + newline + 1
            position = chunk_start
    return start


def _is_complete_record(path: Path, start: int, size: int) -> bool:
    """True when the bytes in ``[start, size)`` hold one whole JSON object"""
    with open(path, "rb") as f:
        f.seek(start)
        raw = f.read(size - start)
    try:
        entry = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return False
    return isinstance(entry, dict)


class TranscriptCursor:
    """
    Per-session transcript cursor backed by the record store.

    Usage:
        events = cursor.advance(session_id, transcript_path)
        for event in events: ...
        cursor.commit(events)
    """

    def __init__(self, store: RecordStore):
        self._store = store

    def offset(self, session_id: str) -> int:
        cursor = self._store.load_cursor(session_id)
        return cursor.byte_offset if cursor else 0

    def advance(
        self,
        session_id: str,
        transcript_path: Union[str, Path],
        include_tail: bool = False,
    ) -> NewEvents:
        """
        Return the events appended since the last commit.

        Args:
            session_id: Session identifier
            transcript_path: Path to the session's JSONL transcript
            include_tail: Also deliver a final line that lacks its newline,
                provided it already parses as a JSON object (session flush)

        Returns:
            NewEvents (empty when the transcript is missing or unchanged)
        """
        path = Path(transcript_path)
        cursor = self._store.load_cursor(session_id)
        start = 0
        if cursor and cursor.transcript_path == str(path):
            start = cursor.byte_offset

        try:
            size = path.stat().st_size
        except FileNotFoundError:
            logger.debug("Transcript unavailable for session %s: %s", session_id, path)
            return NewEvents.empty(session_id, None, start)

        reset = False
        if start > size:
            logger.warning(
                "Transcript %s shrank below cursor (%d > %d); reprocessing from start",
                path, start, size,
            )
            start = 0
            reset = True

        end = _last_line_boundary(path, start, size)
        if include_tail and end < size and _is_complete_record(path, end, size):
            end = size
        return NewEvents(session_id, path, start, end, reset=reset)

    def commit(self, events: NewEvents) -> Optional[SessionCursor]:
        """
        Persist ``events.end_offset`` as the session's processed offset.

        The offset never decreases, except when the transcript shrank
        below it (the offset must never exceed the transcript length).
        A commit of an unavailable transcript leaves the cursor untouched.
        """
        existing = self._store.load_cursor(events.session_id)
        if events.transcript_path is None:
            return existing

        path = str(events.transcript_path)
        offset = events.end_offset
        if existing and existing.transcript_path == path and not events.reset:
            offset = max(existing.byte_offset, offset)

        cursor = SessionCursor(
            session_id=events.session_id,
            transcript_path=path,
            byte_offset=offset,
            last_processed_at=utcnow(),
        )
        return self._store.save_cursor(cursor)

    def reset(self, session_id: str) -> None:
        """Explicit force-reprocess: rewind the session to offset 0"""
        cursor = self._store.load_cursor(session_id)
        if cursor is None:
            return
        cursor.byte_offset = 0
        cursor.last_processed_at = utcnow()
        self._store.save_cursor(cursor)
        logger.info("Reset transcript cursor for session %s", session_id)
