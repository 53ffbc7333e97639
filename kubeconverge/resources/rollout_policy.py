"""``required-rollout`` annotation handling for Deployments and DaemonSets.

Accepted values:
    full            -- every replica updated and available (default)
    none            -- accept as soon as the controller observed the spec
    maxUnavailable  -- at least ``desired - maxUnavailable`` replicas ready
    NN%             -- at least NN percent of desired replicas ready
"""

from __future__ import annotations

import math
import re
from typing import Any

from kubeconverge.resources.base import annotation_key
from kubeconverge.utils.data import as_int

REQUIRED_ROLLOUT_SUFFIX: str = "required-rollout"
REQUIRED_ROLLOUT_ANNOTATION: str = annotation_key(REQUIRED_ROLLOUT_SUFFIX)
REQUIRED_ROLLOUT_TYPES: tuple[str, ...] = ("maxUnavailable", "full", "none")
DEFAULT_REQUIRED_ROLLOUT: str = "full"

_PERCENT = re.compile(r"^\d+%$")


def is_percent(value: Any) -> bool:
    return isinstance(value, str) and bool(_PERCENT.match(value.strip()))


def is_valid_rollout(value: str) -> bool:
    return value in REQUIRED_ROLLOUT_TYPES or is_percent(value)


def rollout_annotation_error(value: str) -> str:
    acceptable = ", ".join(REQUIRED_ROLLOUT_TYPES)
    return f"'{REQUIRED_ROLLOUT_ANNOTATION}: {value}' is invalid. Acceptable values: {acceptable}"


def min_available_replicas(desired: int, required_rollout: str, max_unavailable: Any) -> int:
    """Return the minimum number of replicas that must be ready and available."""
    if is_percent(required_rollout):
        return math.ceil(desired * as_int(required_rollout) / 100.0)
    if isinstance(max_unavailable, str) and "%" in max_unavailable:
        return math.ceil(desired * (100 - as_int(max_unavailable)) / 100.0)
    return desired - as_int(max_unavailable)


def validate_rollout(required_rollout: str, strategy: str) -> list[str]:
    """Return validation errors for the annotation value and update strategy."""
    errors: list[str] = []
    if not is_valid_rollout(required_rollout):
        errors.append(rollout_annotation_error(required_rollout))
    if required_rollout.lower() == "maxunavailable" and strategy and strategy.lower() != "rollingupdate":
        errors.append(f"'{REQUIRED_ROLLOUT_ANNOTATION}: {required_rollout}' is incompatible with strategy '{strategy}'")
    return errors
