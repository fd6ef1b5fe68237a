"""Structural compose parsing for inline compose sources."""

import re
from dataclasses import dataclass, field
from typing import Any

import structlog
import yaml  # type: ignore[import-untyped]

logger = structlog.get_logger()

LEADING_DIGITS = re.compile(r"^\s*(\d+)")


@dataclass
class ParsedComposeService:
    """The parts of a compose service the install path looks at."""

    name: str
    image: str | None = None
    ports: list[str] = field(default_factory=list)
    environment: dict[str, str] = field(default_factory=dict)
    volumes: list[str] = field(default_factory=list)


@dataclass
class ParsedComposeFile:
    services: dict[str, ParsedComposeService] = field(default_factory=dict)


def _parse_ports(raw_ports: Any) -> list[str]:
    ports: list[str] = []
    if not isinstance(raw_ports, list):
        return ports
    for port in raw_ports:
        if isinstance(port, (str, int)):
            ports.append(str(port))
        elif isinstance(port, dict) and port.get("target"):
            published = port.get("published") or port["target"]
            ports.append(f"{published}:{port['target']}")
    return ports


def _parse_environment(raw_env: Any) -> dict[str, str]:
    environment: dict[str, str] = {}
    if isinstance(raw_env, list):
        for entry in raw_env:
            if not isinstance(entry, str):
                continue
            key, _, value = entry.partition("=")
            if key:
                environment[key] = value
    elif isinstance(raw_env, dict):
        for key, value in raw_env.items():
            environment[str(key)] = "" if value is None else str(value)
    return environment


def _parse_volumes(raw_volumes: Any) -> list[str]:
    volumes: list[str] = []
    if not isinstance(raw_volumes, list):
        return volumes
    for volume in raw_volumes:
        if isinstance(volume, str):
            volumes.append(volume)
        elif isinstance(volume, dict) and volume.get("source") and volume.get("target"):
            volumes.append(f"{volume['source']}:{volume['target']}")
    return volumes


def parse_compose_file(content: str) -> ParsedComposeFile | None:
    """Parse compose YAML; None when it is not a compose file with services."""
    try:
        compose_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        logger.warning("Failed to parse compose file", error=str(e))
        return None

    if not isinstance(compose_data, dict) or not isinstance(compose_data.get("services"), dict):
        return None

    parsed = ParsedComposeFile()
    for name, config in compose_data["services"].items():
        config = config if isinstance(config, dict) else {}
        image = config.get("image")
        parsed.services[str(name)] = ParsedComposeService(
            name=str(name),
            image=str(image) if image is not None else None,
            ports=_parse_ports(config.get("ports")),
            environment=_parse_environment(config.get("environment")),
            volumes=_parse_volumes(config.get("volumes")),
        )
    return parsed


def extract_primary_service(
    parsed: ParsedComposeFile, app_id: str | None = None
) -> ParsedComposeService | None:
    """Service named after the app (exact or containing match), else the first one."""
    if not parsed.services:
        return None

    if app_id:
        needle = app_id.lower()
        for name, service in parsed.services.items():
            if name.lower() == needle or needle in name.lower():
                return service

    return next(iter(parsed.services.values()))


def parse_first_published_port(ports: list[str] | None) -> int | None:
    """Host port of the first ``[ip:]host:container[/proto]`` mapping."""
    for mapping in ports or []:
        mapping_part = mapping.split("/")[0]
        parts = [part for part in mapping_part.split(":") if part]
        if not parts:
            continue
        published = parts[-2] if len(parts) >= 2 else parts[0]
        match = LEADING_DIGITS.match(published)
        if match:
            return int(match.group(1))
    return None
