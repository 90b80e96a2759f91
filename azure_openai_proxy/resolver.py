from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from azure_openai_proxy.config import DeploymentEntry, ProxyConfig

logger = logging.getLogger("uvicorn.error")


class ModelNotConfiguredError(ValueError):
    def __init__(self, requested_model: Any):
        self.requested_model = requested_model
        super().__init__(f"Model {requested_model} not configured")


@dataclass(frozen=True, slots=True)
class ResolvedTarget:
    deployment: str
    endpoint: str
    api_version: str
    model_name_override: str | None = None


def resolve_model(model_name: Any, config: ProxyConfig) -> ResolvedTarget | None:
    """Map a client-facing model name onto its Azure deployment target.

    Returns ``None`` when the model is not configured, or when the merged
    entry has no endpoint or API version to call.
    """
    if not isinstance(model_name, str) or not model_name:
        return None
    entry = config.models.get(model_name)
    if entry is None:
        return None

    if isinstance(entry, DeploymentEntry):
        endpoint = config.default_endpoint or ""
        api_version = config.default_api_version
        override = None
    else:
        endpoint = entry.endpoint or config.default_endpoint or ""
        api_version = entry.api_version or config.default_api_version
        override = entry.model_name or None

    if not endpoint or not api_version:
        logger.warning(
            "model_target_incomplete model=%s deployment=%s has_endpoint=%s has_api_version=%s",
            model_name,
            entry.deployment,
            bool(endpoint),
            bool(api_version),
        )
        return None

    return ResolvedTarget(
        deployment=entry.deployment,
        endpoint=endpoint,
        api_version=api_version,
        model_name_override=override,
    )
