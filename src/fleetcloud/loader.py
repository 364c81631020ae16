"""Resource file loading with validation.

SECURITY: The file size is checked before reading and YAML is parsed with
safe_load only. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_RESOURCE_FILE_SIZE_BYTES
from .errors import InvalidConfig
from .models import CloudFile, format_validation_error
from .resources import ResourceConfig, ResourceSet

logger = logging.getLogger(__name__)


@dataclass
class CloudDocument:
    """A validated resource file."""

    resources: ResourceSet
    providers: dict[str, dict[str, Any]] = field(default_factory=dict)
    source: Path | None = None

    def provider_names(self) -> list[str]:
        """Providers that are configured or referenced by a resource."""
        return sorted(set(self.providers) | set(self.resources.providers()))


def parse_cloud_file(data: Any, source: str = "<data>") -> CloudDocument:
    """Validate already-parsed YAML content.

    Raises:
        InvalidConfig: If the content is not a mapping or fails validation.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise InvalidConfig(f"Resource file must contain a YAML mapping: {source}")

    try:
        parsed = CloudFile.model_validate(data)
    except ValidationError as e:
        raise InvalidConfig(format_validation_error(e, source)) from e

    resources = ResourceSet()
    for entry in parsed.resources:
        resource = ResourceConfig(
            resource_type=entry.resource_type,
            id=entry.id,
            provider=entry.provider,
            config=entry.config,
        )
        if resource.key in resources:
            logger.warning(
                "Duplicate resource declaration, the last one wins",
                extra={"resource": resource.key, "source": source},
            )
        resources.add(resource)

    return CloudDocument(resources=resources, providers=parsed.providers)


def load_cloud_file(path: Path) -> CloudDocument:
    """Load and validate a resource file from YAML.

    Args:
        path: Path to the resource file.

    Returns:
        The declared resources and per-provider settings.

    Raises:
        InvalidConfig: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise InvalidConfig(f"Resource file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise InvalidConfig(f"Failed to stat resource file {path}: {e}") from e

    if file_size > MAX_RESOURCE_FILE_SIZE_BYTES:
        raise InvalidConfig(
            f"Resource file exceeds maximum size of {MAX_RESOURCE_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise InvalidConfig(f"Failed to read resource file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise InvalidConfig(f"Invalid YAML in {path}: {e}") from e

    document = parse_cloud_file(raw_data, str(path))
    document.source = path

    logger.info(
        "Loaded resource file",
        extra={
            "path": str(path),
            "resource_count": len(document.resources),
            "providers": document.provider_names(),
        },
    )
    return document
