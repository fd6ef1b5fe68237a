"""App store template models."""

from pydantic import Field

from .operation import StoreModel


class EnvDefinition(StoreModel):
    """Environment variable a template declares."""

    name: str
    label: str | None = None
    description: str | None = None
    default: str | None = None


class StoreTemplate(StoreModel):
    """Catalog or user-defined template an app is installed from.

    Catalog templates point at a stack file in a repository; custom templates
    carry their compose definition inline.
    """

    app_id: str
    template_name: str
    name: str
    description: str = ""
    repository_url: str | None = None
    stack_file: str | None = None
    compose_content: str | None = None
    env: list[EnvDefinition] = Field(default_factory=list)

    @property
    def is_custom(self) -> bool:
        return self.compose_content is not None

    @property
    def allowed_env_keys(self) -> list[str]:
        return [definition.name for definition in self.env]

    @property
    def env_defaults(self) -> dict[str, str]:
        return {
            definition.name: definition.default
            for definition in self.env
            if definition.default is not None
        }
