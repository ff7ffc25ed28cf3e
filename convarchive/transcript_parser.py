"""
Turn recovery for free-form transcripts (.md / .txt).

Transcripts mark speakers with line prefixes such as "Human:", "**Assistant:**"
or "## Claude:". Everything up to the next marker belongs to the current
speaker.
"""

import re
from dataclasses import dataclass
from pathlib import PurePosixPath

from convarchive.hash_utils import HashUtils, IDGenerator
from convarchive.logger import get_logger
from convarchive.models import Conversation, FormatVariant, Message, Role
from convarchive.normalization_utils import BatchClock
logger = get_logger(__name__)

DEFAULT_TRANSCRIPT_PLATFORM = "Claude"

SPEAKER_LABELS: dict[str, Role] = {
    "human": Role.HUMAN,
    "user": Role.HUMAN,
    "you": Role.HUMAN,
    "assistant": Role.ASSISTANT,
    "ai": Role.ASSISTANT,
    "claude": Role.ASSISTANT,
    "chatgpt": Role.ASSISTANT,
    "gemini": Role.ASSISTANT,
}

# Assistant labels that also name the platform the transcript came from
PLATFORM_LABELS = {
    "claude": "Claude",
    "chatgpt": "ChatGPT",
    "gemini": "Gemini",
}

# Optional heading hashes, optional bold (** or __) around the label and/or the colon
MARKER_PATTERN = re.compile(
    r"^\s*(?:#{1,6}\s*)?(?:\*\*|__)?\s*"
    r"(?P<label>" + "|".join(SPEAKER_LABELS) + r")"
    r"\s*(?:\*\*|__)?\s*:\s*(?:\*\*|__)?[ \t]*(?P<rest>.*)$",
    re.IGNORECASE,
)

@dataclass(frozen=True)
class TranscriptTurn:
    role: Role
    content: str
    label: str

class TranscriptParser:
    """
    Two-state line machine (in-human-turn / in-assistant-turn) with an accumulator.

    A marker line flushes the accumulator under the previous speaker, switches
    speaker, and seeds the accumulator with the rest of the marker line. Any
    other line is appended. Consecutive markers for the same speaker produce
    separate turns.
    """

    def __init__(self, default_platform: str = DEFAULT_TRANSCRIPT_PLATFORM, id_generator: IDGenerator | None = None):
        self.default_platform = default_platform
        self.id_gen = id_generator or IDGenerator()

    @staticmethod
    def _flush(turns: list[TranscriptTurn], role: Role, label: str, buffer: list[str]):
        content = "\n".join(buffer).strip()
        if content:
            turns.append(TranscriptTurn(role=role, content=content, label=label))

    def parse(self, text: str) -> list[TranscriptTurn]:
        turns: list[TranscriptTurn] = []
        state = Role.HUMAN
        label = ""
        buffer: list[str] = []

        # Only "\n" ends a line; other Unicode line breaks are content
        for line in text.split("\n"):
            line = line.removesuffix("\r")
            match = MARKER_PATTERN.match(line)
            if match:
                self._flush(turns, state, label, buffer)
                label = match.group("label").lower()
                state = SPEAKER_LABELS[label]
                buffer = [match.group("rest")]
            else:
                buffer.append(line)

        self._flush(turns, state, label, buffer)
        return turns

    def _detect_platform(self, turns: list[TranscriptTurn]) -> str:
        for turn in turns:
            if turn.label in PLATFORM_LABELS:
                return PLATFORM_LABELS[turn.label]
        return self.default_platform

    def parse_conversation(self, text: str, source_name: str, clock: BatchClock) -> Conversation | None:
        """Parse a transcript into a Conversation; None when no turn has content."""
        turns = self.parse(text)
        if not turns:
            logger.debug(f"No transcript turns found in {source_name}")
            return None

        platform = self._detect_platform(turns)
        content_hash = HashUtils.sha256_string(text)

        # Transcripts carry no timestamps; every turn shares the batch instant so order is kept
        messages = [
            Message(
                id=f"msg_{index}",
                timestamp=clock.now,
                role=turn.role,
                content=turn.content,
                platform=platform,
                metadata={"timestamp_imputed": True},
            )
            for index, turn in enumerate(turns)
        ]

        return Conversation.build(
            conversation_id=self.id_gen.generate(["transcript", source_name, content_hash]),
            title=f"Conversation from {PurePosixPath(source_name).name}",
            platform=platform,
            messages=messages,
            metadata={
                "source": source_name,
                "format": str(FormatVariant.TRANSCRIPT_TEXT),
                "content_sha256": content_hash,
            },
        )
