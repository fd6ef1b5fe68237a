"""Image update detection by comparing local and registry digests."""

import asyncio
import json
import os
import time
from collections import OrderedDict
from typing import Any

import structlog
from pydantic import BaseModel

from ..constants import ENV_FILE_NAME
from ..models.stack import ComposeTarget, UpdateState
from .compose_runner import ComposeRunner
from .settings import HomestackSettings, get_settings
from .subprocess_manager import SubprocessManager, get_subprocess_manager

logger = structlog.get_logger()

DIGEST_CACHE_MAX_ENTRIES = 1000


class DigestCacheEntry(BaseModel):
    """Cached digest lookup; a None digest is cached too."""

    digest: str | None
    expires_at: float

    @property
    def is_expired(self) -> bool:
        return time.monotonic() > self.expires_at


class DigestCache:
    """Bounded TTL cache keyed by image reference."""

    def __init__(self, ttl_seconds: float, max_entries: int = DIGEST_CACHE_MAX_ENTRIES):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: OrderedDict[str, DigestCacheEntry] = OrderedDict()

    def get(self, image: str) -> DigestCacheEntry | None:
        entry = self._entries.get(image)
        if entry is None:
            return None
        if entry.is_expired:
            del self._entries[image]
            return None
        self._entries.move_to_end(image)
        return entry

    def set(self, image: str, digest: str | None) -> None:
        self._entries[image] = DigestCacheEntry(
            digest=digest, expires_at=time.monotonic() + self.ttl_seconds
        )
        self._entries.move_to_end(image)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)


def _non_empty(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def digest_from_reference(reference: str) -> str | None:
    """``repo@sha256:...`` -> ``sha256:...``; None when the reference carries no digest."""
    _, separator, digest = reference.rpartition("@")
    if not separator:
        return None
    return _non_empty(digest)


def parse_local_digest(stdout: str) -> str | None:
    """First digest in ``docker image inspect --format {{json .RepoDigests}}`` output."""
    try:
        repo_digests = json.loads(stdout.strip())
    except json.JSONDecodeError:
        return None
    if not isinstance(repo_digests, list):
        return None
    for repo_digest in repo_digests:
        if isinstance(repo_digest, str):
            digest = digest_from_reference(repo_digest)
            if digest:
                return digest
    return None


def _digest_from_manifest(parsed: Any) -> str | None:
    if isinstance(parsed, list):
        for entry in parsed:
            digest = _digest_from_manifest(entry)
            if digest:
                return digest
        return None

    if not isinstance(parsed, dict):
        return None

    descriptor = parsed.get("Descriptor")
    if isinstance(descriptor, dict):
        digest = _non_empty(descriptor.get("digest"))
        if digest:
            return digest

    digest = _non_empty(parsed.get("digest"))
    if digest:
        return digest

    manifests = parsed.get("manifests")
    if isinstance(manifests, list):
        for manifest in manifests:
            if isinstance(manifest, dict):
                digest = _non_empty(manifest.get("digest"))
                if digest:
                    return digest
    return None


def parse_remote_digest(stdout: str) -> str | None:
    """Registry digest from ``docker manifest inspect`` output (verbose or not)."""
    text = stdout.strip()
    if not text:
        return None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return None
    return _digest_from_manifest(parsed)


class ImageUpdateResolver:
    """Reports whether a stack's images have newer registry digests than local ones."""

    def __init__(
        self,
        compose_runner: ComposeRunner,
        subprocess_manager: SubprocessManager | None = None,
        settings: HomestackSettings | None = None,
    ):
        self.compose_runner = compose_runner
        self.subprocess_manager = subprocess_manager or get_subprocess_manager()
        self.settings = settings or get_settings()
        self.local_cache = DigestCache(self.settings.local_digest_ttl)
        self.remote_cache = DigestCache(self.settings.remote_digest_ttl)
        self.logger = logger.bind(component="update_resolver")

    async def _docker(self, args: list[str]) -> str:
        result = await self.subprocess_manager.run_command(
            ["docker", *args],
            timeout=self.settings.docker_cli_timeout,
            check=True,
        )
        return result.stdout

    async def resolve_local_digest(self, image: str) -> str | None:
        cached = self.local_cache.get(image)
        if cached is not None:
            return cached.digest

        try:
            stdout = await self._docker(
                ["image", "inspect", image, "--format", "{{json .RepoDigests}}"]
            )
            digest = parse_local_digest(stdout)
        except Exception as e:
            self.logger.warning("Unable to resolve local image digest", image=image, error=str(e))
            digest = None

        self.local_cache.set(image, digest)
        return digest

    async def resolve_remote_digest(self, image: str) -> str | None:
        pinned = digest_from_reference(image)
        if pinned:
            return pinned

        cached = self.remote_cache.get(image)
        if cached is not None:
            return cached.digest

        try:
            digest = parse_remote_digest(
                await self._docker(["manifest", "inspect", "--verbose", image])
            )
            if not digest:
                digest = parse_remote_digest(await self._docker(["manifest", "inspect", image]))
        except Exception as e:
            self.logger.warning("Unable to resolve remote image digest", image=image, error=str(e))
            digest = None

        self.remote_cache.set(image, digest)
        return digest

    async def resolve_image_state(self, image: str) -> UpdateState:
        local_digest, remote_digest = await asyncio.gather(
            self.resolve_local_digest(image), self.resolve_remote_digest(image)
        )
        return UpdateState(
            image=image,
            local_digest=local_digest,
            remote_digest=remote_digest,
            update_available=bool(
                local_digest and remote_digest and local_digest != remote_digest
            ),
        )

    async def resolve_update_state(self, compose_path: str, stack_name: str) -> UpdateState:
        """First image with differing digests, else the first image with any digest."""
        target = ComposeTarget(
            compose_path=compose_path,
            env_path=os.path.join(os.path.dirname(compose_path), ENV_FILE_NAME),
            stack_name=stack_name,
        )
        images = await self.compose_runner.extract_images(target)

        fallback: UpdateState | None = None
        for image in images:
            state = await self.resolve_image_state(image)
            if state.update_available:
                self.logger.info(
                    "Image update available",
                    stack_name=stack_name,
                    image=image,
                    local_digest=state.local_digest,
                    remote_digest=state.remote_digest,
                )
                return state
            if fallback is None and (state.local_digest or state.remote_digest):
                fallback = state

        if fallback is None:
            return UpdateState(update_available=False)
        return fallback
