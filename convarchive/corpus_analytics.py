"""
Query and analytics helpers over a loaded corpus: keyword themes, the inquiry
pattern, free-text/platform/date filtering and per-platform statistics.
"""

from collections import Counter
from dataclasses import asdict, dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import Any, Iterable, Sequence

import pendulum

from convarchive.logger import get_logger
from convarchive.models import Conversation, Role
logger = get_logger(__name__)

DEFAULT_THEME_KEYWORDS = (
    "consciousness",
    "collaboration",
    "ai",
    "pattern",
    "recognition",
    "memory",
    "growth",
    "rivalry",
    "competition",
    "cooperation",
)

DEFAULT_THEME_THRESHOLD = 2

ALL_PLATFORMS = "all"

# ===| THEMES |===

@dataclass(frozen=True)
class Theme:
    keyword: str
    frequency: int

class PatternType(StrEnum):
    RECURRING_THEME = "recurring_theme"
    INQUIRY_PATTERN = "inquiry_pattern"

@dataclass(frozen=True)
class Pattern:
    type: PatternType
    description: str
    frequency: int
    examples: tuple[str, ...] = ()

class ThemeDetector:
    """
    Counts, per keyword, how many messages mention it (case-insensitive substring).

    A message mentioning a keyword twice still counts once. Only keywords seen
    in more than `threshold` messages are reported, most frequent first.
    """

    def __init__(self, keywords: Iterable[str] = DEFAULT_THEME_KEYWORDS, threshold: int = DEFAULT_THEME_THRESHOLD):
        self.keywords = tuple(k.lower() for k in keywords if k)
        self.threshold = threshold

    def count(self, conversations: Iterable[Conversation]) -> Counter:
        counts: Counter = Counter()
        for conv in conversations:
            for msg in conv.messages:
                text = msg.content.lower()
                counts.update(k for k in self.keywords if k in text)
        return counts

    def detect(self, conversations: Iterable[Conversation]) -> list[Theme]:
        counts = self.count(conversations)
        logger.debug(f"Keyword message counts: {dict(counts)}")
        # Keyword order breaks frequency ties
        ranked = sorted(
            (k for k in self.keywords if counts[k] > self.threshold),
            key=lambda k: -counts[k],
        )
        return [Theme(keyword=k, frequency=counts[k]) for k in ranked]

def count_questions(conversations: Iterable[Conversation]) -> int:
    """Number of human messages containing a question mark."""
    return sum(
        1
        for conv in conversations
        for msg in conv.messages
        if msg.role == Role.HUMAN and "?" in msg.content
    )

def detect_patterns(conversations: Sequence[Conversation], detector: ThemeDetector | None = None) -> list[Pattern]:
    """Recurring themes followed by the inquiry pattern (always present, possibly zero)."""
    detector = detector or ThemeDetector()

    patterns = [
        Pattern(
            type=PatternType.RECURRING_THEME,
            description=f'Frequent discussions about "{theme.keyword}"',
            frequency=theme.frequency,
            examples=(f"Found in {theme.frequency} messages",),
        )
        for theme in detector.detect(conversations)
    ]

    questions = count_questions(conversations)
    patterns.append(
        Pattern(
            type=PatternType.INQUIRY_PATTERN,
            description="Questions asked by the human side",
            frequency=questions,
            examples=(f"{questions} questions across all conversations",),
        )
    )
    return patterns

# ===| FILTERING |===

class DatePreset(StrEnum):
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"

@dataclass(frozen=True)
class DateRange:
    """Inclusive instant range; either bound may be None (open)."""
    start: pendulum.DateTime | None = None
    end: pendulum.DateTime | None = None

    @classmethod
    def last(cls, period: str, now: pendulum.DateTime | None = None) -> "DateRange":
        """The trailing week, month or year up to now."""
        now = now or pendulum.now("UTC")
        preset = DatePreset(period)
        if preset == DatePreset.WEEK:
            start = now.subtract(weeks=1)
        elif preset == DatePreset.MONTH:
            start = now.subtract(months=1)
        else:
            start = now.subtract(years=1)
        return cls(start=start, end=now)

    def contains(self, start: pendulum.DateTime, end: pendulum.DateTime) -> bool:
        """True when [start, end] lies entirely inside the range."""
        if self.start is not None and start < self.start:
            return False
        if self.end is not None and end > self.end:
            return False
        return True

@dataclass(frozen=True)
class QueryFilter:
    """
    Conjunction of:
      - free text: case-insensitive substring of the title or any message
      - platform: case-insensitive exact match, "all" or "" matches everything
      - date_range: the conversation's [start_date, end_date] inside the range
    """
    text: str = ""
    platform: str = ALL_PLATFORMS
    date_range: DateRange | None = None

    def _matches_text(self, conv: Conversation) -> bool:
        needle = self.text.strip().lower()
        if not needle:
            return True
        if needle in conv.title.lower():
            return True
        return any(needle in msg.content.lower() for msg in conv.messages)

    def _matches_platform(self, conv: Conversation) -> bool:
        wanted = (self.platform or "").strip().lower()
        if wanted in ("", ALL_PLATFORMS):
            return True
        return conv.platform.lower() == wanted

    def matches(self, conv: Conversation) -> bool:
        if not self._matches_platform(conv):
            return False
        if self.date_range is not None and not self.date_range.contains(conv.start_date, conv.end_date):
            return False
        return self._matches_text(conv)

    def apply(self, conversations: Iterable[Conversation]) -> list[Conversation]:
        return [c for c in conversations if self.matches(c)]

# ===| STATISTICS |===

@dataclass(frozen=True)
class PlatformStatistics:
    platform: str
    conversations: int
    messages: int

@dataclass(frozen=True)
class CorpusStatistics:
    total_conversations: int
    total_messages: int
    average_messages_per_conversation: int
    platforms: list[PlatformStatistics] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

def corpus_statistics(conversations: Sequence[Conversation]) -> CorpusStatistics:
    """Totals and per-platform counts; platforms appear in first-seen order."""
    per_platform: dict[str, list[int]] = {}
    total_messages = 0
    for conv in conversations:
        counts = per_platform.setdefault(conv.platform, [0, 0])
        counts[0] += 1
        counts[1] += conv.message_count
        total_messages += conv.message_count

    total = len(conversations)
    if total == 0:
        average = 0
    else:
        average = int((Decimal(total_messages) / Decimal(total)).quantize(Decimal(1), rounding=ROUND_HALF_UP))

    return CorpusStatistics(
        total_conversations=total,
        total_messages=total_messages,
        average_messages_per_conversation=average,
        platforms=[
            PlatformStatistics(platform=name, conversations=c, messages=m)
            for name, (c, m) in per_platform.items()
        ],
    )
