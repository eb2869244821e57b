"""Policy file loading with validation.

All file operations enforce a size limit. Input validation is performed
at the boundary so a malformed policy never reaches a live fleet.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_POLICY_FILE_SIZE_BYTES
from .models import PolicySpec

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when policy loading or validation fails."""

    pass


def load_policy(policy_path: Path) -> PolicySpec:
    """Load and validate a reconciliation policy from YAML.

    Args:
        policy_path: Path to the policy file.

    Returns:
        Validated policy.

    Raises:
        SpecLoadError: If the policy cannot be loaded or fails validation.
    """
    if not policy_path.exists():
        raise SpecLoadError(f"Policy file not found: {policy_path}")

    try:
        file_size = policy_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat policy file {policy_path}: {e}") from e

    if file_size > MAX_POLICY_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Policy file exceeds maximum size of {MAX_POLICY_FILE_SIZE_BYTES} bytes: {policy_path}"
        )

    try:
        content = policy_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read policy file {policy_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {policy_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Policy file must contain a YAML mapping: {policy_path}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {policy_path}")
    else:
        spec_data = raw_data

    try:
        policy = PolicySpec.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {policy_path}:\n{error_list}") from e

    logger.info(
        "Loaded policy for field '%s' from %s",
        policy.field_name,
        policy_path,
    )
    return policy
