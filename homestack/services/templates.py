"""Template lookup for catalog and user-defined apps."""

import asyncio
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from ..core.exceptions import ConfigurationError
from ..models.template import StoreTemplate

logger = structlog.get_logger()


class TemplateCatalog:
    """In-memory catalog and custom templates keyed by app id."""

    def __init__(
        self,
        catalog: list[StoreTemplate] | None = None,
        custom: list[StoreTemplate] | None = None,
    ):
        self._catalog = {template.app_id: template for template in catalog or []}
        self._custom = {template.app_id: template for template in custom or []}

    async def find_catalog_template(self, app_id: str) -> StoreTemplate | None:
        return self._catalog.get(app_id)

    async def find_custom_template(self, app_id: str) -> StoreTemplate | None:
        return self._custom.get(app_id)

    async def find_template(self, app_id: str) -> StoreTemplate | None:
        """Catalog template first, then a custom one."""
        return await self.find_catalog_template(app_id) or await self.find_custom_template(app_id)

    def add_custom_template(self, template: StoreTemplate) -> None:
        if not template.is_custom:
            raise ConfigurationError(
                f"Custom template {template.app_id} must carry compose_content"
            )
        self._custom[template.app_id] = template

    def list_templates(self) -> list[StoreTemplate]:
        merged = {**self._custom, **self._catalog}
        return [merged[app_id] for app_id in sorted(merged)]

    def __len__(self) -> int:
        return len(self._catalog) + len(self._custom)


def _build_templates(entries: Any, section: str, source: Path) -> list[StoreTemplate]:
    if not entries:
        return []
    if not isinstance(entries, list):
        raise ConfigurationError(f"'{section}' in {source} must be a list of templates")

    templates = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Invalid template entry in '{section}' of {source}")
        entry = dict(entry)
        entry.setdefault("template_name", entry.get("app_id"))
        entry.setdefault("name", entry.get("app_id"))
        try:
            templates.append(StoreTemplate(**entry))
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid template {entry.get('app_id')!r} in {source}: {e}"
            ) from e
    return templates


async def load_template_catalog(templates_file: Path | str | None) -> TemplateCatalog:
    """Load templates from a YAML file with ``templates`` and ``custom`` lists.

    A missing or unset file yields an empty catalog.
    """
    if templates_file is None:
        return TemplateCatalog()

    path = Path(templates_file)
    if not path.exists():
        logger.warning("Templates file not found", templates_file=str(path))
        return TemplateCatalog()

    try:
        content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        loaded = yaml.safe_load(content)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load templates from {path}: {e}") from e

    if not isinstance(loaded, dict):
        loaded = {}

    catalog = TemplateCatalog(
        catalog=_build_templates(loaded.get("templates"), "templates", path),
        custom=_build_templates(loaded.get("custom"), "custom", path),
    )
    logger.info("Loaded app templates", templates_file=str(path), count=len(catalog))
    return catalog
