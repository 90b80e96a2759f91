from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Annotated, Any, Literal, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from azure_openai_proxy.settings import Settings

logger = logging.getLogger("uvicorn.error")

DEFAULT_PORT = 3000
DEFAULT_API_VERSION = "2024-08-01-preview"
DEFAULT_MODELS: dict[str, str] = {
    "gpt-4o-mini": "gpt-4o-mini",
    "gpt-4o": "gpt-4o",
    "o3-mini": "o3-mini",
}


class ConfigLoadError(ValueError):
    def __init__(self, path: str | Path, reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Could not load proxy config from '{self.path}': {reason}")


class DeploymentEntry(BaseModel):
    """Bare deployment name; endpoint and API version come from the defaults."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["deployment"] = "deployment"
    deployment: str = Field(min_length=1)


class StructuredEntry(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )

    kind: Literal["structured"] = "structured"
    deployment: str = Field(min_length=1)
    endpoint: str | None = None
    api_version: str | None = Field(default=None, alias="apiVersion")
    model_name: str | None = Field(default=None, alias="modelName")


ModelEntry = Annotated[
    Union[DeploymentEntry, StructuredEntry],
    Field(discriminator="kind"),
]


class ProxyConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    port: int = DEFAULT_PORT
    default_endpoint: str | None = Field(default=None, alias="defaultEndpoint")
    default_api_version: str = Field(
        default=DEFAULT_API_VERSION, alias="defaultApiVersion"
    )
    models: dict[str, ModelEntry] = Field(
        default_factory=lambda: dict(DEFAULT_MODELS), validate_default=True
    )

    @field_validator("models", mode="before")
    @classmethod
    def _coerce_models(cls, value: Any) -> Any:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("'models' must be an object mapping model names to entries.")
        return _tag_model_entries(value)

    def model_names(self) -> list[str]:
        return list(self.models.keys())


def _tag_model_entries(raw: dict[str, Any]) -> dict[str, Any]:
    tagged: dict[str, Any] = {}
    for name, entry in raw.items():
        if isinstance(entry, str):
            tagged[name] = {"kind": "deployment", "deployment": entry}
        elif isinstance(entry, dict):
            tagged[name] = {**entry, "kind": "structured"}
        else:
            # Already-built entries pass through; anything else fails validation.
            tagged[name] = entry
    return tagged


def _read_config_document(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            if path.suffix.lower() == ".json":
                payload = json.load(handle)
            else:
                payload = yaml.safe_load(handle)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise ConfigLoadError(path, str(exc)) from exc
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigLoadError(path, "expected an object at the top level")
    return payload


def _validation_summary(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts) or str(exc)


def build_proxy_config(document: dict[str, Any], settings: Settings) -> ProxyConfig:
    merged: dict[str, Any] = {
        "port": DEFAULT_PORT,
        "defaultApiVersion": DEFAULT_API_VERSION,
        "models": dict(DEFAULT_MODELS),
    }
    merged.update(document)
    if settings.port is not None:
        merged["port"] = settings.port
    if settings.azure_endpoint:
        merged["defaultEndpoint"] = settings.azure_endpoint
    if settings.azure_openai_api_version:
        merged["defaultApiVersion"] = settings.azure_openai_api_version
    return ProxyConfig.model_validate(merged)


def load_proxy_config(settings: Settings) -> ProxyConfig:
    path = settings.config_path
    try:
        if not path.exists():
            logger.info("config_file_missing path=%s using=defaults", path)
            return build_proxy_config({}, settings)
        document = _read_config_document(path)
        try:
            config = build_proxy_config(document, settings)
        except ValidationError as exc:
            raise ConfigLoadError(path, _validation_summary(exc)) from exc
    except ConfigLoadError as exc:
        logger.warning(
            "config_load_failed path=%s reason=%s using=defaults",
            exc.path,
            exc.reason,
        )
        return build_proxy_config({}, settings)

    logger.info("config_loaded path=%s models=%d", path, len(config.models))
    return config
