"""
Meeting transcripts: WebVTT captions and Zoom chat exports.

Only what summarisation needs is parsed: cue timings and cue text.
Cue settings, styles, regions and NOTE blocks are skipped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_TIMING = re.compile(
    r"^\s*(?P<start>(?:\d+:)?\d{1,2}:\d{2}[.,]\d{3})\s+-->\s+(?P<end>(?:\d+:)?\d{1,2}:\d{2}[.,]\d{3})"
)
_TAG = re.compile(r"<[^>]+>")

ZOOM_CHAT_CUE_MS = 5000


class SubtitlesError(ValueError):
    pass


@dataclass
class Cue:
    start_ms: int
    end_ms: int
    lines: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return " ".join(line.strip() for line in self.lines if line.strip())


def _parse_timestamp(value: str) -> int:
    parts = value.replace(",", ".").split(":")
    if len(parts) == 2:
        parts.insert(0, "0")
    hours, minutes = int(parts[0]), int(parts[1])
    seconds, _, millis = parts[2].partition(".")
    return ((hours * 60 + minutes) * 60 + int(seconds)) * 1000 + int(millis.ljust(3, "0")[:3])


def _format_ms(value: int) -> str:
    total = (value + 500) // 1000
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours == 0:
        return f"{minutes:02d}:{seconds:02d}"
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def _format_vtt_ms(value: int) -> str:
    seconds, millis = divmod(value, 1000)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}"


class Subtitles:
    def __init__(self, cues: list[Cue] | None = None):
        self.cues = cues or []

    @classmethod
    def from_vtt(cls, data: str | bytes) -> "Subtitles":
        if isinstance(data, bytes):
            data = data.decode("utf-8-sig", errors="replace")
        text = data.replace("\r\n", "\n").replace("\r", "\n").lstrip("\ufeff")
        if not text.lstrip().startswith("WEBVTT"):
            raise SubtitlesError("invalid WebVTT: missing header")

        cues: list[Cue] = []
        for block in re.split(r"\n{2,}", text):
            lines = block.split("\n")
            for i, line in enumerate(lines):
                match = _TIMING.match(line)
                if match is None:
                    continue
                cue = Cue(
                    start_ms=_parse_timestamp(match.group("start")),
                    end_ms=_parse_timestamp(match.group("end")),
                    lines=[_TAG.sub("", l) for l in lines[i + 1:]],
                )
                cues.append(cue)
                break
        return cls(cues)

    @classmethod
    def from_zoom_chat(cls, data: str | bytes) -> "Subtitles":
        """Zoom chat export: one `HH:MM:SS text` line per message."""
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        cues = []
        for line in data.splitlines():
            if not line.strip():
                continue
            try:
                start = _parse_timestamp(line[:8] + ".000")
            except ValueError as e:
                raise SubtitlesError(f"invalid chat timestamp: {line[:8]!r}") from e
            cues.append(Cue(start_ms=start, end_ms=start + ZOOM_CHAT_CUE_MS, lines=[line[9:]]))
        return cls(cues)

    def is_empty(self) -> bool:
        return not self.cues

    def format_for_llm(self) -> str:
        out = [f"{_format_ms(c.start_ms)} to {_format_ms(c.end_ms)} - {c.text}" for c in self.cues]
        return "\n".join(out).strip()

    def format_text_only(self) -> str:
        return " ".join(c.text for c in self.cues).strip()

    def format_vtt(self) -> str:
        out = ["WEBVTT", ""]
        for i, cue in enumerate(self.cues, start=1):
            out.append(str(i))
            out.append(f"{_format_vtt_ms(cue.start_ms)} --> {_format_vtt_ms(cue.end_ms)}")
            out.extend(cue.lines)
            out.append("")
        return "\n".join(out)
