"""YAML manifest parser."""
from typing import Any, Dict, Optional, Type, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from ..errors import ManifestError
from .schema import DeploymentManifest, UpgradeManifest

M = TypeVar("M", bound=BaseModel)


class ManifestParser:
    """Parser for YAML deployment manifests."""

    @staticmethod
    def load(file_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None,
             model: Type[M] = DeploymentManifest) -> M:
        """Load and validate a YAML manifest, applying CLI overrides on top.

        Args:
            file_path: Path to the YAML manifest file. Optional when every
                required value comes from overrides.
            overrides: Values keyed by field name; nested fields use dot
                notation (e.g., "identities.fulfillment_app_id"). ``None``
                values are ignored.
            model: Manifest model to validate against.

        Returns:
            The validated manifest.

        Raises:
            FileNotFoundError: If the manifest file doesn't exist.
            ManifestError: If the YAML is malformed or the manifest is invalid.
        """
        data: Dict[str, Any] = {}
        if file_path:
            with open(file_path, 'r') as f:
                try:
                    data = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ManifestError(f"Failed to parse manifest {file_path}: {e}") from e
            if not isinstance(data, dict):
                raise ManifestError(f"Manifest {file_path} must be a mapping")

        for field_path, value in (overrides or {}).items():
            if value is not None:
                _apply_override(model, data, field_path, value)

        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ManifestError(_format_validation_error(e)) from e

    @staticmethod
    def load_upgrade(file_path: Optional[str] = None,
                     overrides: Optional[Dict[str, Any]] = None) -> UpgradeManifest:
        return ManifestParser.load(file_path, overrides, model=UpgradeManifest)


def _apply_override(model: Type[BaseModel], data: Dict[str, Any], field_path: str, value: Any) -> None:
    """Set a value in raw manifest data under the key the model reads first."""
    head, _, rest = field_path.partition(".")
    if head not in model.model_fields:
        raise KeyError(f"Field path '{field_path}' is invalid at '{head}'")
    field = model.model_fields[head]
    key = field.alias or head

    # Drop a snake_case duplicate so the alias key is the only one left
    existing = data.pop(head, None) if key != head else None
    existing = data.get(key, existing)

    if rest:
        nested = dict(existing or {})
        _apply_override(field.annotation, nested, rest, value)
        data[key] = nested
    else:
        data[key] = value


def _format_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        problems.append(f"{location}: {item['msg']}")
    return "Invalid deployment parameters:\n  " + "\n  ".join(problems)
