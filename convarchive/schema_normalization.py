"""
Reconciles the near-isomorphic JSON export shapes into canonical records.

Supported shapes:
- an array of conversation-like objects
- a single conversation exposing a flat message list ("messages", "chat_messages")
- a single conversation exposing a node mapping ("mapping"), resolved through
  TreeConversationResolver

Field names differ between platforms, so every lookup goes through an
ExportMapping: ordered lists of JSON pointers, first non-null value wins.
"""

import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

import pendulum
import yaml

from convarchive.logger import get_logger
from convarchive.models import (
    DEFAULT_TITLE,
    UNKNOWN_PLATFORM,
    Conversation,
    FormatVariant,
    Message,
    TreeStructureError,
    UnrecognizedShapeError,
)
from convarchive.normalization_utils import (
    BatchClock,
    JSONPointer,
    RoleNormalizer,
    TimestampUtils,
    TimeUnit,
    canonical_platform,
)
from convarchive.tree_resolution import TreeConversationResolver
logger = get_logger(__name__)

# ===| CONFIG |===

@dataclass(frozen=True, slots=True)
class TimestampField:
    """A JSON pointer to a timestamp plus the unit that field is exported in."""
    path: str
    unit: TimeUnit

def _default_timestamp_fields() -> list[TimestampField]:
    return [
        TimestampField("/timestamp", TimeUnit.MILLISECONDS),
        TimestampField("/create_time", TimeUnit.SECONDS),
        TimestampField("/created_at", TimeUnit.ISO),
        TimestampField("/createdAt", TimeUnit.ISO),
    ]

@dataclass(slots=True)
class ExportMapping:
    """JSON pointers and rules for reading the supported export formats."""
    format_version: str = "1.0"

    conversation_id_paths: list[str] = field(default_factory=lambda: ["/id", "/conversation_id", "/uuid"])
    conversation_title_paths: list[str] = field(default_factory=lambda: ["/title", "/name"])
    conversation_platform_paths: list[str] = field(default_factory=lambda: ["/platform"])
    conversation_model_paths: list[str] = field(default_factory=lambda: ["/default_model_slug", "/model"])
    conversation_metadata_path: str = "/metadata"

    mapping_path: str = "/mapping"
    current_node_path: str = "/current_node"
    messages_paths: list[str] = field(default_factory=lambda: ["/messages", "/chat_messages"])

    message_id_paths: list[str] = field(default_factory=lambda: ["/id", "/uuid", "/message_id"])
    message_role_paths: list[str] = field(default_factory=lambda: ["/role", "/author/role", "/sender"])
    message_content_paths: list[str] = field(default_factory=lambda: ["/content", "/text", "/parts"])
    message_model_paths: list[str] = field(default_factory=lambda: ["/metadata/model_slug", "/model"])
    message_metadata_path: str = "/metadata"
    message_timestamp_fields: list[TimestampField] = field(default_factory=_default_timestamp_fields)

    # Platform implied by the container a conversation's messages were found in
    platform_by_container: dict[str, str] = field(default_factory=lambda: {
        "/mapping": "ChatGPT",
        "/chat_messages": "Claude",
    })

    role_mapping: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, path: Path) -> "ExportMapping":
        """Load and validate export mapping from YAML file."""
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise TypeError(f"Expected YAML top-level mapping (dict), got {type(data).__name__}")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExportMapping":
        """Create from dictionary; keys that are absent keep their defaults."""
        mapping = cls()
        for key in (
            "format_version",
            "conversation_id_paths",
            "conversation_title_paths",
            "conversation_platform_paths",
            "conversation_model_paths",
            "conversation_metadata_path",
            "mapping_path",
            "current_node_path",
            "messages_paths",
            "message_id_paths",
            "message_role_paths",
            "message_content_paths",
            "message_model_paths",
            "message_metadata_path",
            "platform_by_container",
            "role_mapping",
        ):
            if data.get(key) is not None:
                setattr(mapping, key, data[key])

        timestamp_fields = data.get("message_timestamp_fields")
        if timestamp_fields is not None:
            mapping.message_timestamp_fields = [
                TimestampField(path=str(item["path"]), unit=TimeUnit(str(item["unit"]).lower()))
                for item in timestamp_fields
            ]
        return mapping

class DualShapePolicy(StrEnum):
    """What to do with an object that has both a node mapping and a message list."""
    PREFER_MAPPING = "prefer_mapping"
    BOTH = "both"

@dataclass
class NormalizationResult:
    conversations: list[Conversation] = field(default_factory=list)
    errors: list[tuple[str, str]] = field(default_factory=list)

# ===| CONTENT |===

def extract_text(content: Any) -> str:
    """
    Flatten a message content value into one string.

    Accepts plain strings, ordered lists of fragments (strings or {"text": ...} /
    {"content": ...} blocks) and {"parts": [...]} objects. Fragments are
    concatenated in order without a separator; anything else contributes nothing.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(extract_text(item) for item in content)
    if isinstance(content, dict):
        for key in ("parts", "text", "content"):
            if key in content:
                return extract_text(content[key])
    return ""

# ===| NORMALIZER |===

class SchemaNormalizer:
    """Turns parsed JSON documents into canonical Conversation records."""

    def __init__(
        self,
        export_mapping: ExportMapping | None = None,
        dual_shape_policy: DualShapePolicy = DualShapePolicy.PREFER_MAPPING,
        resolver: TreeConversationResolver | None = None,
    ):
        self.export_mapping = export_mapping or ExportMapping()
        self.dual_shape_policy = DualShapePolicy(dual_shape_policy)
        # Sibling ranking in trees reads the same configured timestamp fields as messages
        self.resolver = resolver or TreeConversationResolver(timestamp_of=self.source_timestamp)
        self.roles = RoleNormalizer(self.export_mapping.role_mapping)

    def detect_shapes(self, data: Any) -> list[FormatVariant]:
        """Format variants a single conversation object satisfies, in precedence order."""
        if not isinstance(data, dict):
            return []
        shapes = []
        if isinstance(JSONPointer.resolve_safe(self.export_mapping.mapping_path, data), dict):
            shapes.append(FormatVariant.TREE_MAPPING)
        _, messages = JSONPointer.first_present(self.export_mapping.messages_paths, data)
        if isinstance(messages, list):
            shapes.append(FormatVariant.FLAT_MESSAGES)
        return shapes

    def _selected_shapes(self, shapes: list[FormatVariant]) -> list[FormatVariant]:
        if self.dual_shape_policy == DualShapePolicy.BOTH:
            return shapes
        return shapes[:1]

    def normalize_document(self, document: Any, source_name: str, clock: BatchClock) -> NormalizationResult:
        """
        Normalize a whole parsed JSON file.

        A per-conversation structural failure is recorded and the remaining
        conversations continue. A document that is not conversation-shaped at
        all raises UnrecognizedShapeError.
        """
        result = NormalizationResult()

        if isinstance(document, list):
            candidates = []
            for index, item in enumerate(document):
                shapes = self.detect_shapes(item)
                if not shapes:
                    logger.debug(f"Skipping non-conversation item {index} in {source_name}")
                    continue
                candidates.append((f"{source_name}#{index}", item, shapes))
        elif isinstance(document, dict):
            shapes = self.detect_shapes(document)
            if not shapes:
                raise UnrecognizedShapeError(
                    f"JSON object has neither a node mapping nor a message list (keys: {sorted(document)[:10]})"
                )
            candidates = [(source_name, document, shapes)]
        else:
            raise UnrecognizedShapeError(f"Expected a JSON object or array, got {type(document).__name__}")

        for identifier, item, shapes in candidates:
            selected = self._selected_shapes(shapes)
            for variant in selected:
                try:
                    conversation = self.normalize_conversation(item, identifier, clock, variant)
                except TreeStructureError as e:
                    logger.warning(f"Dropping conversation {identifier}: {e}")
                    result.errors.append((identifier, f"Structural error: {e}"))
                    continue
                if conversation is None:
                    continue
                if variant == FormatVariant.FLAT_MESSAGES and len(selected) > 1:
                    # Legacy pass-through keeps both readings; keep ids distinct
                    conversation = Conversation.build(
                        conversation_id=f"{conversation.id}:messages",
                        title=conversation.title,
                        platform=conversation.platform,
                        messages=conversation.messages,
                        metadata=conversation.metadata,
                    )
                result.conversations.append(conversation)

        return result

    def normalize_conversation(
        self,
        data: dict[str, Any],
        source_name: str,
        clock: BatchClock,
        variant: FormatVariant | None = None,
    ) -> Conversation | None:
        """
        Normalize one conversation object under the given (or detected) variant.

        Returns None when no message has content. Raises TreeStructureError for
        unresolvable node mappings and UnrecognizedShapeError for other objects.
        """
        if variant is None:
            shapes = self.detect_shapes(data)
            if not shapes:
                raise UnrecognizedShapeError(f"{source_name} is not a conversation object")
            variant = shapes[0]

        mapping = self.export_mapping
        platform = self._platform(data, variant)

        if variant == FormatVariant.TREE_MAPPING:
            messages, extra = self._tree_messages(data, platform, clock)
        elif variant == FormatVariant.FLAT_MESSAGES:
            messages, extra = self._flat_messages(data, platform, clock)
        else:
            raise UnrecognizedShapeError(f"{variant} is not a JSON conversation format")

        if not messages:
            logger.debug(f"Conversation in {source_name} has no non-empty messages, dropping it")
            return None

        _, source_id = JSONPointer.first_present(mapping.conversation_id_paths, data)
        if source_id not in (None, ""):
            conversation_id = str(source_id)
        else:
            # Not stable across loads; only sources with ids get deterministic ids
            conversation_id = f"conv_{int(clock.now.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"

        _, title = JSONPointer.first_present(mapping.conversation_title_paths, data)
        title = str(title).strip() if title is not None else ""

        metadata: dict[str, Any] = {}
        source_metadata = JSONPointer.resolve_safe(mapping.conversation_metadata_path, data)
        if isinstance(source_metadata, dict):
            metadata.update(source_metadata)
        _, model = JSONPointer.first_present(mapping.conversation_model_paths, data)
        if model is not None:
            metadata["model"] = model
        metadata.update(extra)
        metadata["source"] = source_name
        metadata["format"] = str(variant)

        return Conversation.build(
            conversation_id=conversation_id,
            title=title or DEFAULT_TITLE,
            platform=platform,
            messages=messages,
            metadata=metadata,
        )

    def _platform(self, data: dict[str, Any], variant: FormatVariant) -> str:
        mapping = self.export_mapping
        _, explicit = JSONPointer.first_present(mapping.conversation_platform_paths, data)
        if explicit is not None and canonical_platform(explicit) != UNKNOWN_PLATFORM:
            return canonical_platform(explicit)

        if variant == FormatVariant.TREE_MAPPING:
            container = mapping.mapping_path
        else:
            container, _ = JSONPointer.first_present(mapping.messages_paths, data)
        return mapping.platform_by_container.get(container or "", UNKNOWN_PLATFORM)

    def _tree_messages(self, data: dict[str, Any], platform: str, clock: BatchClock) -> tuple[list[Message], dict[str, Any]]:
        node_mapping = JSONPointer.resolve_safe(self.export_mapping.mapping_path, data)
        current_node = JSONPointer.resolve_safe(self.export_mapping.current_node_path, data)

        resolved = self.resolver.resolve(node_mapping, current_node)

        messages: list[Message] = []
        seen_ids: set[str] = set()
        for index, (node_id, raw) in enumerate(resolved.message_nodes):
            message = self._build_message(raw, index, platform, clock, seen_ids, node_id=node_id)
            if message is not None:
                messages.append(message)

        extra = {
            "leaf_strategy": str(resolved.strategy),
            "leaf_node": resolved.leaf_id,
            "abandoned_nodes": len(node_mapping) - len(resolved.node_ids),
        }
        # Path order is authoritative for tree exports; no timestamp sort here
        return messages, extra

    def _flat_messages(self, data: dict[str, Any], platform: str, clock: BatchClock) -> tuple[list[Message], dict[str, Any]]:
        _, raw_messages = JSONPointer.first_present(self.export_mapping.messages_paths, data)

        messages: list[Message] = []
        seen_ids: set[str] = set()
        for index, raw in enumerate(raw_messages or []):
            if not isinstance(raw, dict):
                logger.debug(f"Skipping non-object message at index {index}")
                continue
            message = self._build_message(raw, index, platform, clock, seen_ids)
            if message is not None:
                messages.append(message)

        # sorted() is stable, so equal (e.g. imputed) timestamps keep source order
        return sorted(messages, key=lambda m: m.timestamp), {}

    def source_timestamp(self, raw: dict[str, Any]) -> pendulum.DateTime | None:
        """First usable instant among the configured timestamp fields, or None."""
        for ts_field in self.export_mapping.message_timestamp_fields:
            value = JSONPointer.resolve_safe(ts_field.path, raw)
            if value is None:
                continue
            instant = TimestampUtils.parse_instant(value, ts_field.unit)
            if instant is not None:
                return instant
        return None

    def _message_timestamp(self, raw: dict[str, Any], clock: BatchClock) -> tuple[pendulum.DateTime, bool]:
        instant = self.source_timestamp(raw)
        if instant is None:
            return clock.now, True
        return instant, False

    def _build_message(
        self,
        raw: dict[str, Any],
        index: int,
        platform: str,
        clock: BatchClock,
        seen_ids: set[str],
        node_id: str | None = None,
    ) -> Message | None:
        mapping = self.export_mapping

        text = ""
        for pointer in mapping.message_content_paths:
            text = extract_text(JSONPointer.resolve_safe(pointer, raw)).strip()
            if text:
                break
        if not text:
            return None

        _, source_id = JSONPointer.first_present(mapping.message_id_paths, raw)
        message_id = str(source_id) if source_id not in (None, "") else (node_id or f"msg_{index}")
        if message_id in seen_ids:
            message_id = f"{message_id}_{index}"
        seen_ids.add(message_id)

        _, role_label = JSONPointer.first_present(mapping.message_role_paths, raw)
        timestamp, imputed = self._message_timestamp(raw, clock)

        metadata: dict[str, Any] = {}
        source_metadata = JSONPointer.resolve_safe(mapping.message_metadata_path, raw)
        if isinstance(source_metadata, dict):
            metadata.update(source_metadata)
        _, model = JSONPointer.first_present(mapping.message_model_paths, raw)
        if model is not None:
            metadata["model"] = model
        if node_id is not None:
            metadata["node_id"] = node_id
        metadata["timestamp_imputed"] = imputed

        return Message(
            id=message_id,
            timestamp=timestamp,
            role=self.roles.normalize(role_label),
            content=text,
            platform=platform,
            metadata=metadata,
        )
