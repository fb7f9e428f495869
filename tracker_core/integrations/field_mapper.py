"""
Tracker Core Field Mapper: Provider-Agnostic Schema Mapping.

Converts provider-specific records into the universal task model and back:
- Path access with dotted keys and bracketed indices (``a.b[0].c``)
- Declarative FieldMappingConfig rules applied in list order
- Closed set of transforms plus a registry of named custom transforms
- Status / priority / user / label normalization tables
"""
from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Iterable, Literal, Mapping, Optional, Union
import logging
import re

from pydantic import BaseModel

from tracker_core.integrations.errors import (
    MappingConfigError,
    MissingRequiredFieldError,
    UnknownTransformError,
)
from tracker_core.integrations.types import (
    PRIORITY_NAMES,
    StatusCategory,
    TrackerLabel,
    TrackerPriority,
    TrackerStatus,
    TrackerUser,
    provider_name,
)

logger = logging.getLogger(__name__)


class _Missing:
    """Sentinel for a path that does not resolve. Distinct from an explicit None."""

    _instance: Optional["_Missing"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


# ---------------------------------------------------------------------------
# Mapping configuration
# ---------------------------------------------------------------------------

class TransformKind(str, Enum):
    DIRECT = "direct"
    DATE = "date"
    UNIX_MS = "unix_ms"
    UNIX_S = "unix_s"
    STATUS = "status"
    PRIORITY = "priority"
    USER = "user"
    USERS = "users"
    LABELS = "labels"
    MARKDOWN_TO_HTML = "markdown_to_html"
    HTML_TO_MARKDOWN = "html_to_markdown"
    CUSTOM = "custom"


_BUILTIN_TRANSFORMS = frozenset(kind.value for kind in TransformKind)

MappingDirection = Literal["inbound", "outbound", "bidirectional"]


@dataclass(frozen=True)
class FieldMappingConfig:
    """One mapping rule between a provider field and a universal field."""
    source_field: str                 # Provider-side path, e.g. "state.name"
    target_field: str                 # Universal path, e.g. "status"
    transform: Optional[str] = None   # TransformKind value or registered custom name
    custom_transform: Optional[str] = None  # Registry name when transform == "custom"
    default_value: Any = MISSING
    required: bool = False
    direction: MappingDirection = "bidirectional"


@dataclass(frozen=True)
class StatusMapping:
    source: str
    category: StatusCategory
    target_name: Optional[str] = None


@dataclass(frozen=True)
class PriorityMapping:
    source: Union[str, int]
    level: int
    name: str


@dataclass
class TransformContext:
    """Extra data a transform may consult (project statuses, members)."""
    source_provider: str = ""
    target_provider: str = ""
    statuses: list[TrackerStatus] = field(default_factory=list)
    members: list[TrackerUser] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


TransformFunction = Callable[[Any, TransformContext], Any]


@dataclass(frozen=True)
class CustomTransform:
    fn: TransformFunction
    inverse: Optional[TransformFunction] = None


# ---------------------------------------------------------------------------
# Path access
# ---------------------------------------------------------------------------

_PART = re.compile(r"^([^\[\]]*)((?:\[\d+\])*)$")
_INDEX = re.compile(r"\[(\d+)\]")

PathSegment = Union[str, int]


@lru_cache(maxsize=1024)
def parse_path(path: str) -> tuple[PathSegment, ...]:
    """Split ``a.b[0].c`` into ``("a", "b", 0, "c")``. Numeric dotted parts become indices."""
    segments: list[PathSegment] = []
    for part in path.split("."):
        match = _PART.match(part)
        if not part or match is None:
            raise MappingConfigError(f"Invalid field path: {path!r}")
        key, indices = match.groups()
        if key:
            segments.append(int(key) if key.isdigit() else key)
        elif not indices:
            raise MappingConfigError(f"Invalid field path: {path!r}")
        segments.extend(int(i) for i in _INDEX.findall(indices))
    return tuple(segments)


def _child(node: Any, segment: PathSegment) -> Any:
    if isinstance(segment, int):
        if isinstance(node, (list, tuple)):
            return node[segment] if segment < len(node) else MISSING
        if isinstance(node, Mapping):
            return node.get(str(segment), MISSING)
        return MISSING
    if isinstance(node, Mapping):
        return node.get(segment, MISSING)
    return MISSING


def get_path(obj: Any, path: str) -> Any:
    """Resolve ``path`` in ``obj``. Returns MISSING for absent or mistyped nodes, never raises."""
    current = obj
    for segment in parse_path(path):
        current = _child(current, segment)
        if current is MISSING:
            return MISSING
    return current


def _assign(container: Any, segment: PathSegment, value: Any, path: str) -> None:
    if isinstance(container, list):
        if not isinstance(segment, int):
            raise MappingConfigError(f"Cannot set {path!r}: key {segment!r} on a list")
        if segment >= len(container):
            container.extend([None] * (segment + 1 - len(container)))
        container[segment] = value
    elif isinstance(container, dict):
        container[str(segment) if isinstance(segment, int) else segment] = value
    else:
        raise MappingConfigError(
            f"Cannot set {path!r}: {segment!r} is under a {type(container).__name__}"
        )


def set_path(obj: dict[str, Any], path: str, value: Any) -> None:
    """Write ``value`` at ``path``, creating dicts/lists on the way. Lists are padded with None."""
    segments = parse_path(path)
    current: Any = obj
    for segment, next_segment in zip(segments, segments[1:]):
        child = _child(current, segment)
        if child is MISSING or child is None:
            child = [] if isinstance(next_segment, int) else {}
            _assign(current, segment, child, path)
        elif not isinstance(child, (dict, list)):
            raise MappingConfigError(
                f"Cannot set {path!r}: {segment!r} holds a {type(child).__name__}"
            )
        current = child
    _assign(current, segments[-1], value, path)


# ---------------------------------------------------------------------------
# Built-in value transforms
# ---------------------------------------------------------------------------

def _parse_date(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _parse_epoch(value, 1000)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable date value", extra={"value": text})
        return None


def _parse_epoch(value: Any, scale: int) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromtimestamp(int(value) / scale, tz=timezone.utc)
    except (ValueError, TypeError, OverflowError, OSError):
        logger.debug("Unparseable timestamp value", extra={"value": value})
        return None


def _to_epoch(value: Any, scale: int) -> Any:
    if isinstance(value, datetime):
        return int(value.timestamp() * scale)
    return value


def markdown_to_html(value: Any) -> Any:
    if not isinstance(value, str) or not value:
        return value
    value = re.sub(r"\*\*(.*?)\*\*", r"<strong>\1</strong>", value)
    value = re.sub(r"\*(.*?)\*", r"<em>\1</em>", value)
    value = re.sub(r"`(.*?)`", r"<code>\1</code>", value)
    return value.replace("\n", "<br>")


def html_to_markdown(value: Any) -> Any:
    if not isinstance(value, str) or not value:
        return value
    value = re.sub(r"<(?:strong|b)>(.*?)</(?:strong|b)>", r"**\1**", value)
    value = re.sub(r"<(?:em|i)>(.*?)</(?:em|i)>", r"*\1*", value)
    value = re.sub(r"<code>(.*?)</code>", r"`\1`", value)
    value = re.sub(r"<br\s*/?>", "\n", value)
    return re.sub(r"<[^>]+>", "", value)


def _dump(value: Any) -> Any:
    """Universal records are stored as plain dicts in mapped output."""
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, list):
        return [_dump(v) for v in value]
    return value


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _attr(value: Any, key: str) -> Any:
    if isinstance(value, BaseModel):
        return getattr(value, key, None)
    if isinstance(value, Mapping):
        return value.get(key)
    return value


# ---------------------------------------------------------------------------
# FieldMapper
# ---------------------------------------------------------------------------

class FieldMapper:
    """
    Bidirectional mapper between provider records and universal dicts.

    Usage::

        mapper = FieldMapper(status_mappings=[StatusMapping("Done", StatusCategory.DONE)])
        task = mapper.map_to_universal(linear_issue, "linear", LINEAR_TASK_MAPPINGS)
    """

    def __init__(
        self,
        status_mappings: Optional[Iterable[StatusMapping]] = None,
        priority_mappings: Optional[Iterable[PriorityMapping]] = None,
        custom_transforms: Optional[Mapping[str, Union[TransformFunction, CustomTransform]]] = None,
    ):
        self._status_mappings: dict[str, StatusMapping] = {}
        self._priority_mappings: dict[str, PriorityMapping] = {}
        self._custom_transforms: dict[str, CustomTransform] = {}

        self.add_status_mappings(status_mappings or [])
        self.add_priority_mappings(priority_mappings or [])
        for name, transform in (custom_transforms or {}).items():
            if isinstance(transform, CustomTransform):
                self._custom_transforms[name] = transform
            else:
                self.add_transform(name, transform)

    # --- Registration ---

    def add_transform(
        self,
        name: str,
        fn: TransformFunction,
        inverse: Optional[TransformFunction] = None,
    ) -> None:
        self._custom_transforms[name] = CustomTransform(fn, inverse)

    def add_status_mappings(self, mappings: Iterable[StatusMapping]) -> None:
        for mapping in mappings:
            self._status_mappings[mapping.source.lower()] = mapping

    def add_priority_mappings(self, mappings: Iterable[PriorityMapping]) -> None:
        for mapping in mappings:
            if not 0 <= mapping.level <= 4:
                raise MappingConfigError(f"Priority level out of range: {mapping.level}")
            self._priority_mappings[str(mapping.source).lower()] = mapping

    def validate_mappings(self, mappings: Iterable[FieldMappingConfig]) -> None:
        """Fail fast on unknown transforms or bad paths before any record is touched."""
        for rule in mappings:
            parse_path(rule.source_field)
            parse_path(rule.target_field)
            self._resolve_custom(rule)

    def _resolve_custom(self, rule: FieldMappingConfig) -> Optional[CustomTransform]:
        if rule.transform is None:
            return None
        if rule.transform == TransformKind.CUSTOM.value:
            name = rule.custom_transform
            if not name or name not in self._custom_transforms:
                raise UnknownTransformError(name or "custom")
            return self._custom_transforms[name]
        if rule.transform in _BUILTIN_TRANSFORMS:
            return None
        if rule.transform in self._custom_transforms:
            return self._custom_transforms[rule.transform]
        raise UnknownTransformError(rule.transform)

    # --- Normalization tables ---

    def map_status(
        self, status: Any, context: Optional[TransformContext] = None
    ) -> Optional[TrackerStatus]:
        """Normalize a status name or object. Unknown names fall back to category todo."""
        if status is None or status == "":
            return None
        if isinstance(status, TrackerStatus):
            return status

        color = None
        if isinstance(status, Mapping):
            name = str(_first(status, "name", "title", "label") or "")
            status_id = str(_first(status, "id", "gid") or name)
            color = status.get("color")
        else:
            name = str(status)
            status_id = name
        if not name:
            return None

        mapping = self._status_mappings.get(name.lower())
        if mapping is not None:
            return TrackerStatus(
                id=status_id,
                name=mapping.target_name or name,
                category=mapping.category,
                color=color,
            )

        if context is not None:
            for known in context.statuses:
                if known.name.lower() == name.lower() or known.id == status_id:
                    return TrackerStatus(
                        id=status_id,
                        name=name,
                        category=known.category,
                        color=color or known.color,
                    )

        return TrackerStatus(id=status_id, name=name, category=StatusCategory.TODO, color=color)

    def map_priority(
        self, priority: Any, context: Optional[TransformContext] = None
    ) -> Optional[TrackerPriority]:
        if priority is None:
            return None
        if isinstance(priority, TrackerPriority):
            return priority

        value = priority
        if isinstance(priority, Mapping):
            value = _first(priority, "id", "level", "value", "name")
            if value is None:
                return None

        mapping = self._priority_mappings.get(str(value).lower())
        if mapping is not None:
            return TrackerPriority(level=mapping.level, name=mapping.name)

        if isinstance(value, (int, float)) and not isinstance(value, bool):
            level = int(min(4, max(0, value)))
            return TrackerPriority(level=level, name=PRIORITY_NAMES[level])
        return None

    def map_user(
        self, user: Any, context: Optional[TransformContext] = None
    ) -> Optional[TrackerUser]:
        if user is None or user == "":
            return None
        if isinstance(user, TrackerUser):
            return user

        if isinstance(user, (str, int)) and not isinstance(user, bool):
            user_id = str(user)
            if context is not None:
                for member in context.members:
                    if user_id in (member.id, member.external_id):
                        return member
            return TrackerUser(id=user_id, external_id=user_id, name="Unknown")

        if not isinstance(user, Mapping):
            return None
        user_id = str(_first(user, "id", "gid") or "")
        return TrackerUser(
            id=user_id,
            external_id=user_id,
            name=str(_first(user, "name", "displayName", "display_name", "username") or "Unknown"),
            email=user.get("email"),
            avatar_url=_first(user, "avatarUrl", "avatar_url", "photo"),
        )

    def map_labels(
        self, labels: Any, context: Optional[TransformContext] = None
    ) -> list[TrackerLabel]:
        if not isinstance(labels, (list, tuple)):
            return []
        result = []
        for label in labels:
            if isinstance(label, TrackerLabel):
                result.append(label)
            elif isinstance(label, str):
                result.append(TrackerLabel(id=label, name=label))
            elif isinstance(label, Mapping):
                result.append(TrackerLabel(
                    id=str(_first(label, "id", "gid") or ""),
                    name=str(_first(label, "name", "title") or ""),
                    color=label.get("color"),
                ))
        return result

    # --- Transforms ---

    def apply_transform(
        self,
        value: Any,
        transform: str,
        context: Optional[TransformContext] = None,
        custom_transform: Optional[str] = None,
        outbound: bool = False,
    ) -> Any:
        """Apply one transform. ``outbound=True`` applies its inverse (universal -> provider)."""
        context = context or TransformContext()
        rule = FieldMappingConfig("_", "_", transform=transform, custom_transform=custom_transform)
        custom = self._resolve_custom(rule)
        if custom is not None:
            fn = (custom.inverse or custom.fn) if outbound else custom.fn
            return fn(value, context)

        kind = TransformKind(transform)
        if outbound:
            return self._outbound(value, kind)
        return self._inbound(value, kind, context)

    def _inbound(self, value: Any, kind: TransformKind, context: TransformContext) -> Any:
        if kind is TransformKind.DIRECT:
            return value
        if kind is TransformKind.DATE:
            return _parse_date(value)
        if kind is TransformKind.UNIX_MS:
            return _parse_epoch(value, 1000)
        if kind is TransformKind.UNIX_S:
            return _parse_epoch(value, 1)
        if kind is TransformKind.STATUS:
            return self.map_status(value, context)
        if kind is TransformKind.PRIORITY:
            return self.map_priority(value, context)
        if kind is TransformKind.USER:
            return self.map_user(value, context)
        if kind is TransformKind.USERS:
            if not isinstance(value, (list, tuple)):
                return []
            users = (self.map_user(u, context) for u in value)
            return [u for u in users if u is not None]
        if kind is TransformKind.LABELS:
            return self.map_labels(value, context)
        if kind is TransformKind.MARKDOWN_TO_HTML:
            return markdown_to_html(value)
        if kind is TransformKind.HTML_TO_MARKDOWN:
            return html_to_markdown(value)
        raise UnknownTransformError(kind.value)

    @staticmethod
    def _outbound(value: Any, kind: TransformKind) -> Any:
        if kind is TransformKind.DIRECT:
            return value
        if kind is TransformKind.DATE:
            return value.isoformat() if isinstance(value, datetime) else value
        if kind is TransformKind.UNIX_MS:
            return _to_epoch(value, 1000)
        if kind is TransformKind.UNIX_S:
            return _to_epoch(value, 1)
        if kind is TransformKind.STATUS:
            return _attr(value, "name")
        if kind is TransformKind.PRIORITY:
            return _attr(value, "level")
        if kind is TransformKind.USER:
            return _attr(value, "external_id")
        if kind is TransformKind.USERS:
            return [_attr(u, "external_id") for u in value or []]
        if kind is TransformKind.LABELS:
            return [_attr(label, "name") for label in value or []]
        if kind is TransformKind.MARKDOWN_TO_HTML:
            return html_to_markdown(value)
        if kind is TransformKind.HTML_TO_MARKDOWN:
            return markdown_to_html(value)
        raise UnknownTransformError(kind.value)

    # --- Record mapping ---

    def map_to_universal(
        self,
        record: Mapping[str, Any],
        provider: Any,
        mappings: Iterable[FieldMappingConfig],
        context: Optional[TransformContext] = None,
    ) -> dict[str, Any]:
        """
        Map a provider record to a universal dict (partial TrackerTask shape).

        Absent values (MISSING or None) take the rule's default; a still-absent
        required field raises MissingRequiredFieldError. Transforms that yield
        None leave the target unset.
        """
        rules = list(mappings)
        self.validate_mappings(rules)
        name = provider_name(provider)
        ctx = replace(context or TransformContext(), source_provider=name, target_provider="universal")

        result: dict[str, Any] = {"provider": name}
        for rule in rules:
            if rule.direction == "outbound":
                continue

            value = get_path(record, rule.source_field)
            if value is MISSING or value is None:
                value = rule.default_value
            if value is MISSING or value is None:
                if rule.required:
                    raise MissingRequiredFieldError(rule.source_field, name)
                continue

            if rule.transform is not None:
                value = self.apply_transform(value, rule.transform, ctx, rule.custom_transform)
            if value is None:
                continue
            set_path(result, rule.target_field, _dump(value))

        return result

    def map_from_universal(
        self,
        universal: Union[Mapping[str, Any], BaseModel],
        provider: Any,
        mappings: Iterable[FieldMappingConfig],
        context: Optional[TransformContext] = None,
    ) -> dict[str, Any]:
        """Map a universal record (dict or pydantic model) to the provider's shape."""
        rules = list(mappings)
        self.validate_mappings(rules)
        name = provider_name(provider)
        ctx = replace(context or TransformContext(), source_provider="universal", target_provider=name)
        if isinstance(universal, BaseModel):
            universal = universal.model_dump()

        result: dict[str, Any] = {}
        for rule in rules:
            if rule.direction == "inbound":
                continue

            value = get_path(universal, rule.target_field)
            if value is MISSING or value is None:
                value = rule.default_value
            if value is MISSING or value is None:
                continue

            if rule.transform is not None:
                value = self.apply_transform(
                    value, rule.transform, ctx, rule.custom_transform, outbound=True
                )
            if value is None:
                continue
            set_path(result, rule.source_field, value)

        return result
