"""Small shared helpers."""

from kubeconverge.utils.data import as_int, dig, find_condition
from kubeconverge.utils.duration import parse_duration

__all__ = ["as_int", "dig", "find_condition", "parse_duration"]
