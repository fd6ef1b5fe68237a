"""Storage mapping for compose files.

Rewrites named-volume references in ``services.<name>.volumes`` into host bind
mounts under the app data root. The rewrite is line oriented rather than a
full YAML round trip so user formatting and comments survive untouched.
"""

import os
import posixpath
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from ..models.enums import StorageMappingStrategy
from .exceptions import MaterializationError

logger = structlog.get_logger()

KEY_LINE = re.compile(r"^([A-Za-z0-9_.-]+):(\s*#.*)?$")
LIST_ITEM_LINE = re.compile(r"^(\s*-\s+)(.+)$")
TOP_LEVEL_VOLUMES_LINE = re.compile(r"^volumes:(\s*#.*)?$")
VOLUME_DEFINITION_INDENT = 2


@dataclass
class ListItem:
    """A YAML sequence item split into its editable parts."""

    prefix: str
    spec: str
    quote: str | None
    comment: str


@dataclass
class VolumeSpec:
    """Short-syntax volume mapping ``source:target[:mode]``."""

    source: str
    target: str
    mode: str | None = None

    def render(self, source: str | None = None) -> str:
        parts = [source or self.source, self.target]
        if self.mode:
            parts.append(self.mode)
        return ":".join(parts)


@dataclass
class StorageRewriteResult:
    """Rewritten compose text plus what the rewrite touched."""

    compose_content: str
    bind_mount_directories: set[str] = field(default_factory=set)
    converted_named_volumes: set[str] = field(default_factory=set)


@dataclass
class StorageReferences:
    """Storage a compose file still points at."""

    bind_mount_directories: set[str] = field(default_factory=set)
    named_volume_sources: set[str] = field(default_factory=set)


def split_lines(content: str) -> list[str]:
    return re.split(r"\r?\n", content)


def indentation(line: str) -> int:
    return len(line) - len(line.lstrip())


def is_blank_or_comment(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith("#")


def parse_list_item(line: str) -> ListItem | None:
    """Split ``  - "spec"  # comment`` into prefix, spec, quote and comment."""
    match = LIST_ITEM_LINE.match(line)
    if not match:
        return None

    prefix = match.group(1)
    remainder = match.group(2).rstrip()

    quote_state = None
    comment_start = -1
    for index, char in enumerate(remainder):
        if char in ("'", '"'):
            if quote_state == char:
                quote_state = None
            elif quote_state is None:
                quote_state = char
            continue
        if char == "#" and quote_state is None and index > 0 and remainder[index - 1].isspace():
            comment_start = index
            break

    comment = ""
    if comment_start >= 0:
        spec_part = remainder[:comment_start].rstrip()
        comment = remainder[len(spec_part):]
        remainder = spec_part

    quote = None
    if len(remainder) >= 2 and remainder[0] == remainder[-1] and remainder[0] in ("'", '"'):
        quote = remainder[0]
        remainder = remainder[1:-1]

    spec = remainder.strip()
    if not spec:
        return None
    return ListItem(prefix=prefix, spec=spec, quote=quote, comment=comment)


def parse_volume_spec(spec: str) -> VolumeSpec | None:
    """Parse ``source:target[:mode]``; anything else is not a simple mapping."""
    # "key: value" means a mapping entry (long syntax), not a short volume string
    if ": " in spec:
        return None

    parts = spec.split(":")
    if len(parts) < 2:
        return None

    source = parts[0].strip()
    target = parts[1].strip()
    if not source or not target or not target.startswith("/"):
        return None

    mode = ":".join(parts[2:]).strip()
    return VolumeSpec(source=source, target=target, mode=mode or None)


def is_named_volume_source(source: str) -> bool:
    """True for bare volume names; false for anything that looks like a path."""
    if not source or source in (".", ".."):
        return False
    if source.startswith(("/", "./", "../", "~", "$")):
        return False
    return "/" not in source


def is_path_within_root(candidate: str | Path, root: str | Path) -> bool:
    relative = os.path.relpath(os.path.normpath(candidate), os.path.normpath(root))
    return relative == "." or (
        relative != ".." and not relative.startswith(".." + os.sep) and not os.path.isabs(relative)
    )


def is_path_below_root(candidate: str | Path, root: str | Path) -> bool:
    """Like ``is_path_within_root``, but the root itself does not count."""
    return is_path_within_root(candidate, root) and os.path.normpath(candidate) != os.path.normpath(
        root
    )


def paths_overlap(first: str | Path, second: str | Path) -> bool:
    """True when one path is the other or contains it."""
    return is_path_within_root(first, second) or is_path_within_root(second, first)


def normalize_container_target(target: str) -> str:
    """Container path as a relative host path; ``.`` and ``..`` segments are dropped."""
    segments = [
        segment
        for segment in posixpath.normpath(target).split("/")
        if segment and segment not in (".", "..")
    ]
    if not segments:
        return "data"
    return os.path.join(*segments)


def resolve_named_volume_bind_source(
    app_data_root: str | Path,
    app_id: str,
    source: str,
    target: str,
    strategy: StorageMappingStrategy,
) -> str:
    """Host directory that replaces a named volume."""
    app_data_root = str(app_data_root)
    if strategy is StorageMappingStrategy.LEGACY_NAMED_SOURCE:
        return os.path.join(app_data_root, source)

    if not app_id.strip():
        raise MaterializationError("appId is required for app_target_path storage mapping")

    app_root = os.path.join(app_data_root, app_id)
    if os.path.normpath(app_root) != app_root or not is_path_within_root(app_root, app_data_root):
        raise MaterializationError(f'appId "{app_id}" is not a safe storage directory name')

    bind_source = os.path.join(app_root, normalize_container_target(target))
    if not is_path_within_root(bind_source, app_root):
        raise MaterializationError(
            f'Generated bind mount path escapes app root for appId "{app_id}"'
        )
    return bind_source


def _find_section_end(lines: list[str], start: int) -> int:
    for index in range(start, len(lines)):
        if not is_blank_or_comment(lines[index]) and indentation(lines[index]) == 0:
            return index
    return len(lines)


def remove_top_level_volume_definitions(lines: list[str], names: set[str]) -> None:
    """Drop top-level ``volumes:`` entries named in ``names``, in place.

    The whole section goes when every entry in it is removed.
    """
    if not names:
        return

    index = 0
    while index < len(lines):
        line = lines[index]
        if not (indentation(line) == 0 and TOP_LEVEL_VOLUMES_LINE.match(line.strip())):
            index += 1
            continue

        section_start = index
        section_end = _find_section_end(lines, index + 1)
        entries: list[tuple[str, int, int]] = []

        cursor = section_start + 1
        while cursor < section_end:
            entry_line = lines[cursor]
            entry_match = KEY_LINE.match(entry_line.strip())
            if (
                is_blank_or_comment(entry_line)
                or indentation(entry_line) != VOLUME_DEFINITION_INDENT
                or not entry_match
            ):
                cursor += 1
                continue

            end = cursor + 1
            while end < section_end:
                nested = lines[end]
                if not is_blank_or_comment(nested) and indentation(nested) <= VOLUME_DEFINITION_INDENT:
                    break
                end += 1

            entries.append((entry_match.group(1), cursor, end))
            cursor = end

        removable = [entry for entry in entries if entry[0] in names]
        if not removable:
            index = section_end
            continue

        if len(removable) == len(entries):
            del lines[section_start:section_end]
            continue

        for _, start, end in sorted(removable, key=lambda entry: entry[1], reverse=True):
            del lines[start:end]
        index = section_start + 1


def iter_service_volume_items(lines: list[str]):
    """Yield ``(index, ListItem)`` for list items under ``services.<name>.volumes``."""
    path_stack: list[tuple[int, str]] = []

    for index, line in enumerate(lines):
        if is_blank_or_comment(line):
            continue

        indent = indentation(line)
        while path_stack and indent <= path_stack[-1][0]:
            path_stack.pop()

        key_match = KEY_LINE.match(line.strip())
        if key_match:
            path_stack.append((indent, key_match.group(1)))
            continue

        item = parse_list_item(line)
        if item is None:
            continue

        keys = [key for _, key in path_stack]
        if len(keys) == 3 and keys[0] == "services" and keys[2] == "volumes":
            yield index, item


class BaseStorageRewriter(ABC):
    """Converts compose storage declarations into host bind mounts."""

    def __init__(self, app_data_root: str | Path):
        self.app_data_root = str(app_data_root)
        self.logger = logger.bind(component=self.__class__.__name__.lower())

    @abstractmethod
    def rewrite(
        self,
        compose_content: str,
        app_id: str,
        strategy: StorageMappingStrategy = StorageMappingStrategy.LEGACY_NAMED_SOURCE,
    ) -> StorageRewriteResult:
        """Rewrite named volumes into bind mounts under the app data root."""

    @abstractmethod
    def collect_references(self, compose_content: str) -> StorageReferences:
        """List the managed bind mounts and named volumes a compose file uses."""


class LineStorageRewriter(BaseStorageRewriter):
    """Line-oriented rewriter that preserves quoting, comments and layout."""

    def rewrite(
        self,
        compose_content: str,
        app_id: str,
        strategy: StorageMappingStrategy = StorageMappingStrategy.LEGACY_NAMED_SOURCE,
    ) -> StorageRewriteResult:
        lines = split_lines(compose_content)
        result = StorageRewriteResult(compose_content=compose_content)

        for index, item in list(iter_service_volume_items(lines)):
            volume = parse_volume_spec(item.spec)
            if volume is None or not is_named_volume_source(volume.source):
                continue

            bind_source = resolve_named_volume_bind_source(
                self.app_data_root, app_id, volume.source, volume.target, strategy
            )
            rewritten = volume.render(source=bind_source)
            if item.quote:
                rewritten = f"{item.quote}{rewritten}{item.quote}"
            lines[index] = f"{item.prefix}{rewritten}{item.comment}"

            result.converted_named_volumes.add(volume.source)
            result.bind_mount_directories.add(bind_source)

        remove_top_level_volume_definitions(lines, result.converted_named_volumes)
        result.compose_content = "\n".join(lines)

        self.logger.info(
            "Rewrote compose storage bindings",
            app_id=app_id,
            strategy=strategy.value,
            converted_named_volumes=sorted(result.converted_named_volumes),
            bind_mounts=len(result.bind_mount_directories),
        )
        return result

    def collect_references(self, compose_content: str) -> StorageReferences:
        references = StorageReferences()
        lines = split_lines(compose_content)

        for _, item in iter_service_volume_items(lines):
            volume = parse_volume_spec(item.spec)
            if volume is None:
                continue
            # the app data root itself holds every app's data and is never a cleanup target
            if os.path.isabs(volume.source) and is_path_below_root(
                volume.source, self.app_data_root
            ):
                references.bind_mount_directories.add(volume.source)
            elif is_named_volume_source(volume.source):
                references.named_volume_sources.add(volume.source)

        return references
