"""
Builds one normalized corpus out of directories, loose files and ZIP bundles of
chat exports, with per-file failure isolation.

Every source is an independent transformation: a bad file adds an entry to the
error list and never costs another file its data.
"""

import json
import threading
from argparse import ArgumentParser
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

import yaml

from convarchive.archive_expander import ArchiveExpander, decode_text
from convarchive.hash_utils import DEFAULT_ID_NAMESPACE, IDGenerator
from convarchive.logger import get_logger, set_verbose
from convarchive.models import ArchiveError, Conversation, UnrecognizedShapeError
from convarchive.normalization_utils import BatchClock
from convarchive.schema_normalization import DualShapePolicy, ExportMapping, SchemaNormalizer
from convarchive.transcript_parser import DEFAULT_TRANSCRIPT_PLATFORM, TranscriptParser
logger = get_logger(__name__)

# ===| CONFIG |===

@dataclass
class LoaderConfig:
    """Configuration for corpus loading."""
    json_extensions: tuple[str, ...] = (".json",)
    transcript_extensions: tuple[str, ...] = (".md", ".markdown", ".txt")
    archive_extensions: tuple[str, ...] = (".zip",)

    # Walk bounds; symlinked directories are never followed
    max_depth: int = 32
    max_files: int = 100_000
    max_file_bytes: int = 256 * 1024 * 1024

    # 1 means sequential
    max_workers: int = 1

    dual_shape_policy: DualShapePolicy = DualShapePolicy.PREFER_MAPPING
    transcript_platform: str = DEFAULT_TRANSCRIPT_PLATFORM
    export_mapping_path: Path | None = None
    id_namespace: str = DEFAULT_ID_NAMESPACE

    @classmethod
    def from_yaml(cls, path: Path) -> "LoaderConfig":
        """Load from YAML; a relative export_mapping_path is taken relative to the YAML file."""
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise TypeError(f"Expected YAML top-level mapping (dict), got {type(data).__name__}")

        config = cls.from_dict(data)
        if config.export_mapping_path is not None and not config.export_mapping_path.is_absolute():
            config.export_mapping_path = path.parent / config.export_mapping_path
        return config

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LoaderConfig":
        config = cls()
        for key in ("json_extensions", "transcript_extensions", "archive_extensions"):
            if data.get(key) is not None:
                setattr(config, key, tuple(str(ext).lower() for ext in data[key]))
        for key in ("max_depth", "max_files", "max_file_bytes", "max_workers"):
            if data.get(key) is not None:
                setattr(config, key, int(data[key]))
        if data.get("dual_shape_policy") is not None:
            config.dual_shape_policy = DualShapePolicy(data["dual_shape_policy"])
        if data.get("transcript_platform") is not None:
            config.transcript_platform = str(data["transcript_platform"])
        if data.get("export_mapping_path") is not None:
            config.export_mapping_path = Path(data["export_mapping_path"])
        if data.get("id_namespace") is not None:
            config.id_namespace = str(data["id_namespace"])
        return config

# ===| RESULTS |===

class SourceKind(StrEnum):
    JSON = "json"
    TRANSCRIPT = "transcript"
    ARCHIVE = "archive"

class LoadStatus(StrEnum):
    """Outcome of a load, keeping "nothing to read" apart from "nothing readable"."""
    NO_SOURCES = "no_sources"
    NO_CONVERSATIONS = "no_conversations"
    PARTIAL = "partial"
    COMPLETE = "complete"

@dataclass(frozen=True)
class SourceFile:
    path: Path
    kind: SourceKind

@dataclass(frozen=True)
class LoadError:
    """A source (file, archive entry, or file#index) that failed, with a readable cause."""
    source: str
    summary: str

@dataclass
class LoadResult:
    conversations: list[Conversation] = field(default_factory=list)
    errors: list[LoadError] = field(default_factory=list)
    sources_found: int = 0

    @property
    def status(self) -> LoadStatus:
        if self.sources_found == 0:
            return LoadStatus.NO_SOURCES
        if not self.conversations:
            return LoadStatus.NO_CONVERSATIONS
        if self.errors:
            return LoadStatus.PARTIAL
        return LoadStatus.COMPLETE

    @property
    def no_sources_found(self) -> bool:
        return self.status == LoadStatus.NO_SOURCES

    def merge(self, other: "LoadResult"):
        self.conversations.extend(other.conversations)
        self.errors.extend(other.errors)

    def add_error(self, source: str, summary: str):
        logger.warning(f"Failed to load {source}: {summary}")
        self.errors.append(LoadError(source=source, summary=summary))

# ===| LOADER |===

class CorpusLoader:
    """
    Discovers candidate files under one or more roots and normalizes them.

    Holds no results between calls; every load returns a fresh LoadResult.
    """

    def __init__(self, config: LoaderConfig | None = None):
        self.config = config or LoaderConfig()

        if self.config.export_mapping_path is not None:
            export_mapping = ExportMapping.from_yaml(self.config.export_mapping_path)
        else:
            export_mapping = ExportMapping()

        self.id_gen = IDGenerator(self.config.id_namespace)
        self.schema_normalizer = SchemaNormalizer(export_mapping, self.config.dual_shape_policy)
        self.transcript_parser = TranscriptParser(self.config.transcript_platform, self.id_gen)
        self.archive_expander = ArchiveExpander(
            extensions=self.config.json_extensions + self.config.transcript_extensions,
            max_entry_bytes=self.config.max_file_bytes,
        )
        self._cancelled = threading.Event()

    def cancel(self):
        """Stop submitting new sources; work already running finishes."""
        self._cancelled.set()

    def classify(self, name: str) -> SourceKind | None:
        lowered = name.lower()
        if lowered.endswith(self.config.json_extensions):
            return SourceKind.JSON
        if lowered.endswith(self.config.transcript_extensions):
            return SourceKind.TRANSCRIPT
        if lowered.endswith(self.config.archive_extensions):
            return SourceKind.ARCHIVE
        return None

    # ---- discovery ----

    def discover(self, roots: Iterable[str | Path]) -> tuple[list[SourceFile], list[LoadError]]:
        """Find candidate files under the roots, bounded by max_depth and max_files."""
        files: list[SourceFile] = []
        errors: list[LoadError] = []
        visited: set[Path] = set()

        for root in roots:
            root = Path(root)
            if not root.exists():
                logger.warning(f"Input path does not exist: {root}")
                continue
            if root.is_dir():
                self._walk(root, 0, files, errors, visited)
            elif root.is_file():
                kind = self.classify(root.name)
                if kind is None:
                    logger.debug(f"Skipping unsupported file {root}")
                elif len(files) < self.config.max_files:
                    files.append(SourceFile(root, kind))

        return files, errors

    def _walk(self, directory: Path, depth: int, files: list[SourceFile], errors: list[LoadError], visited: set[Path]):
        real = directory.resolve()
        if real in visited:
            return
        visited.add(real)

        if depth > self.config.max_depth:
            logger.warning(f"Not descending into {directory}: deeper than max_depth={self.config.max_depth}")
            return

        try:
            children = sorted(directory.iterdir())
        except OSError as e:
            errors.append(LoadError(str(directory), f"Unreadable directory: {e}"))
            return

        for child in children:
            if len(files) >= self.config.max_files:
                logger.warning(f"Reached max_files={self.config.max_files}, ignoring the rest of {directory}")
                return
            if child.is_symlink() and child.is_dir():
                logger.debug(f"Not following symlinked directory {child}")
            elif child.is_dir():
                self._walk(child, depth + 1, files, errors, visited)
            elif child.is_file():
                kind = self.classify(child.name)
                if kind is not None:
                    files.append(SourceFile(child, kind))

    # ---- per-source transformations ----

    def load_text(self, source_name: str, text: str, kind: SourceKind, clock: BatchClock) -> LoadResult:
        """Normalize one decoded JSON document or transcript."""
        result = LoadResult()

        if kind == SourceKind.JSON:
            try:
                document = json.loads(text)
            except (json.JSONDecodeError, RecursionError) as e:
                result.add_error(source_name, f"Malformed JSON: {e}")
                return result
            try:
                normalized = self.schema_normalizer.normalize_document(document, source_name, clock)
            except UnrecognizedShapeError as e:
                result.add_error(source_name, f"Unrecognized JSON shape: {e}")
                return result
            result.conversations.extend(normalized.conversations)
            for identifier, summary in normalized.errors:
                result.errors.append(LoadError(identifier, summary))

        elif kind == SourceKind.TRANSCRIPT:
            conversation = self.transcript_parser.parse_conversation(text, source_name, clock)
            if conversation is not None:
                result.conversations.append(conversation)

        else:
            raise ValueError(f"{kind} sources are not text")

        return result

    def load_bytes(self, source_name: str, data: bytes, kind: SourceKind, clock: BatchClock) -> LoadResult:
        if kind == SourceKind.ARCHIVE:
            return self.load_archive(data, source_name, clock)
        try:
            text = decode_text(data)
        except UnicodeDecodeError as e:
            result = LoadResult()
            result.add_error(source_name, f"Not UTF-8 text: {e}")
            return result
        return self.load_text(source_name, text, kind, clock)

    def load_archive(self, archive: Path | bytes, source_name: str, clock: BatchClock) -> LoadResult:
        """Normalize every text entry of a ZIP; bad entries are recorded and skipped."""
        result = LoadResult()
        try:
            for entry in self.archive_expander.expand(archive):
                if self._cancelled.is_set():
                    break
                entry_name = f"{source_name}!{entry.name}"
                if not entry.ok:
                    result.errors.append(LoadError(entry_name, entry.error or "Unreadable archive entry"))
                    continue
                kind = self.classify(entry.name)
                if kind is None or kind == SourceKind.ARCHIVE:
                    continue
                result.merge(self._isolated(entry_name, lambda: self.load_text(entry_name, entry.text or "", kind, clock)))
        except ArchiveError as e:
            result.add_error(source_name, str(e))
        return result

    def _load_source(self, source: SourceFile, clock: BatchClock) -> LoadResult:
        name = str(source.path)
        if source.kind == SourceKind.ARCHIVE:
            return self.load_archive(source.path, name, clock)

        result = LoadResult()
        try:
            size = source.path.stat().st_size
            if size > self.config.max_file_bytes:
                result.add_error(name, f"File is {size} bytes, over the {self.config.max_file_bytes} byte limit")
                return result
            data = source.path.read_bytes()
        except OSError as e:
            result.add_error(name, f"Unreadable file: {e}")
            return result
        return self.load_bytes(name, data, source.kind, clock)

    def _isolated(self, source_name: str, task: Callable[[], LoadResult]) -> LoadResult:
        """Run one source's work; anything but exhaustion-class failures becomes a LoadError."""
        try:
            return task()
        except (MemoryError, OSError):
            raise
        except Exception as e:
            logger.exception(f"Unexpected failure while loading {source_name}")
            result = LoadResult()
            result.errors.append(LoadError(source_name, f"{type(e).__name__}: {e}"))
            return result

    # ---- orchestration ----

    def _run(self, tasks: Sequence[tuple[str, Callable[[], LoadResult]]]) -> LoadResult:
        """Run tasks sequentially or in a bounded pool; merge in submission order."""
        fragments: list[LoadResult | None] = [None] * len(tasks)

        if self.config.max_workers <= 1:
            for index, (name, task) in enumerate(tasks):
                if self._cancelled.is_set():
                    logger.info(f"Load cancelled, {len(tasks) - index} sources not started")
                    break
                logger.debug(f"Loading {name}")
                fragments[index] = self._isolated(name, task)
        else:
            futures: dict[Future, int] = {}
            with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
                for index, (name, task) in enumerate(tasks):
                    if self._cancelled.is_set():
                        logger.info(f"Load cancelled, {len(tasks) - index} sources not submitted")
                        break
                    futures[pool.submit(self._isolated, name, task)] = index
            # Leaving the with-block waits for everything submitted
            for future, index in futures.items():
                fragments[index] = future.result()

        merged = LoadResult()
        for fragment in fragments:
            if fragment is not None:
                merged.merge(fragment)
        return merged

    def load(self, roots: Iterable[str | Path] | str | Path, clock: BatchClock | None = None) -> LoadResult:
        """
        Load every candidate file under the roots (directories, files, ZIP archives).

        Returns the union of normalized conversations (discovery order, then
        in-file order) plus one LoadError per failed file, entry or conversation.
        """
        if isinstance(roots, (str, Path)):
            roots = [roots]
        clock = clock or BatchClock.start()
        self._cancelled.clear()

        sources, discovery_errors = self.discover(roots)
        if not sources:
            logger.info("No conversation sources found")
        else:
            logger.info(f"Found {len(sources)} candidate files")

        tasks = [
            (str(source.path), lambda source=source: self._load_source(source, clock))
            for source in sources
        ]
        result = self._run(tasks)
        result.errors[:0] = discovery_errors
        result.sources_found = len(sources)

        logger.info(
            f"Loaded {len(result.conversations)} conversations from {len(sources)} sources "
            f"with {len(result.errors)} errors"
        )
        return result

    def load_blobs(self, blobs: Iterable[tuple[str, bytes]], clock: BatchClock | None = None) -> LoadResult:
        """Load in-memory (filename, bytes) pairs, e.g. from a file picker. The extension decides the format."""
        clock = clock or BatchClock.start()
        self._cancelled.clear()

        tasks = []
        for name, data in blobs:
            kind = self.classify(name)
            if kind is None:
                logger.debug(f"Skipping unsupported file {name}")
                continue
            tasks.append((name, lambda name=name, data=data, kind=kind: self.load_bytes(name, data, kind, clock)))

        result = self._run(tasks)
        result.sources_found = len(tasks)
        return result

def write_corpus_json(path: Path, result: LoadResult, statistics: dict[str, Any] | None = None):
    """Write the normalized corpus, its errors and optional statistics as one JSON document."""
    payload = {
        "status": str(result.status),
        "conversations": [c.to_dict() for c in result.conversations],
        "errors": [{"source": e.source, "summary": e.summary} for e in result.errors],
    }
    if statistics is not None:
        payload["statistics"] = statistics

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2, default=str)

def main(argv: Sequence[str] | None = None) -> int:
    from convarchive.corpus_analytics import ThemeDetector, corpus_statistics

    parser = ArgumentParser(description="Load chat exports into one normalized conversation corpus.")
    parser.add_argument(
        "--input",
        type=Path,
        nargs="+",
        required=True,
        help="Directories, export files or .zip bundles to load.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Optional path for the normalized corpus JSON.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional loader config YAML.",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Parallel file workers (default from config, 1 = sequential).",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    args = parser.parse_args(argv)

    if args.verbose:
        set_verbose(True)

    config = LoaderConfig.from_yaml(args.config) if args.config else LoaderConfig()
    if args.workers is not None:
        config.max_workers = args.workers

    result = CorpusLoader(config).load(args.input)
    stats = corpus_statistics(result.conversations)
    themes = ThemeDetector().detect(result.conversations)

    logger.info("=" * 50)
    logger.info("Corpus Summary")
    logger.info("=" * 50)
    logger.info(f"  Status:                  {result.status}")
    logger.info(f"  Sources found:           {result.sources_found:,}")
    logger.info(f"  Conversations:           {stats.total_conversations:,}")
    logger.info(f"  Messages:                {stats.total_messages:,}")
    logger.info(f"  Avg messages/conv:       {stats.average_messages_per_conversation}")
    for platform in stats.platforms:
        logger.info(f"  {platform.platform + ':':<24} {platform.conversations:,} conversations, {platform.messages:,} messages")
    if themes:
        logger.info("  Themes:                  " + ", ".join(f"{t.keyword} ({t.frequency})" for t in themes))
    for error in result.errors:
        logger.info(f"  Failed: {error.source}: {error.summary}")

    if args.output:
        write_corpus_json(args.output, result, stats.to_dict())
        logger.info(f"Wrote corpus to {args.output}")

    return 1 if result.status == LoadStatus.NO_SOURCES else 0

if __name__ == "__main__":
    raise SystemExit(main())
