"""Value normalization for desired/observed comparison.

Backends reformat what they store: numbers come back as strings, enum-like
values change case, defaults appear that were never declared. Comparing raw
values would report phantom updates on every plan, so each property passes
through type-aware normalization rules before comparison.

DESIGN PHILOSOPHY:
- Only properties present in the desired config are compared; anything the
  backend adds on its own is not drift.
- Empty equivalence: [], {}, "" and missing are the same value.
- Type coercion: "2" vs 2, "true" vs True.
- Order independence for unordered collections (tags, ssh keys).

Rules are matched by resource type and dotted property path, both of which
accept glob patterns ("*" within one segment, "**" across segments).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    EMPTY_EQUIVALENCE = "empty_equivalence"
    BOOLEAN_NORMALIZE = "boolean_normalize"
    NUMERIC_STRING = "numeric_string"
    CASE_INSENSITIVE = "case_insensitive"
    WHITESPACE_NORMALIZE = "whitespace_normalize"
    ARRAY_UNORDERED = "array_unordered"
    DEFAULT_VALUE = "default_value"
    TRAILING_DOT = "trailing_dot"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        resource_type: Resource type to match (supports wildcards)
        path_pattern: Property path pattern to match (supports wildcards)
        normalization_type: Type of normalization to apply
        params: Additional parameters for the normalization
        reason: Human-readable explanation
    """

    resource_type: str
    path_pattern: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    def matches(self, resource_type: str, path: str) -> bool:
        if self.resource_type != "*" and not _glob_match(
            resource_type.lower(), self.resource_type.lower()
        ):
            return False
        return self.path_pattern == "*" or _glob_match(path.lower(), self.path_pattern.lower())


def _glob_match(value: str, pattern: str) -> bool:
    """Glob matching where * stays within a path segment and ** spans segments."""
    regex_pattern = "^"
    i = 0
    while i < len(pattern):
        if pattern[i:i + 2] == "**":
            regex_pattern += ".*"
            i += 2
        elif pattern[i] == "*":
            regex_pattern += "[^.]*"
            i += 1
        else:
            regex_pattern += re.escape(pattern[i])
            i += 1
    regex_pattern += "$"
    return bool(re.match(regex_pattern, value))


# Default rules for the built-in resource types
DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule(
        resource_type="*",
        path_pattern="**tags",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty tag list equals missing tags",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="**tags",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Tag order doesn't matter",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="**.enabled",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean flags may be string or bool",
    ),

    # server
    NormalizationRule(
        resource_type="server",
        path_pattern="core",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="CPU count reported as string by some CLI versions",
    ),
    NormalizationRule(
        resource_type="server",
        path_pattern="memory",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Memory size reported as string by some CLI versions",
    ),
    NormalizationRule(
        resource_type="server",
        path_pattern="ssh_keys",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="SSH key order doesn't matter",
    ),

    # dns-record
    NormalizationRule(
        resource_type="dns-record",
        path_pattern="type",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Record types are case-insensitive",
    ),
    NormalizationRule(
        resource_type="dns-record",
        path_pattern="content",
        normalization_type=NormalizationType.TRAILING_DOT,
        reason="Hostnames may be returned fully qualified",
    ),
    NormalizationRule(
        resource_type="dns-record",
        path_pattern="content",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Hostnames and IPv6 addresses are case-insensitive",
    ),
    NormalizationRule(
        resource_type="dns-record",
        path_pattern="ttl",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": 1},
        reason="TTL defaults to automatic (1)",
    ),
    NormalizationRule(
        resource_type="dns-record",
        path_pattern="ttl",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="TTL may be string or number",
    ),
    NormalizationRule(
        resource_type="dns-record",
        path_pattern="proxied",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": False},
        reason="Records are not proxied by default",
    ),
    NormalizationRule(
        resource_type="dns-record",
        path_pattern="proxied",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Proxied flag may be string or bool",
    ),

    # r2-bucket
    NormalizationRule(
        resource_type="r2-bucket",
        path_pattern="location",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Location hints are case-insensitive",
    ),
]


@dataclass(frozen=True)
class PropertyChange:
    """One property that differs between desired and observed."""

    path: str
    desired: Any
    observed: Any

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "desired": self.desired, "observed": self.observed}


class DiffNormalizer:
    """Normalizes property values and compares desired against observed config."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    @property
    def rules(self) -> list[NormalizationRule]:
        return list(self._rules)

    def normalize_value(self, value: Any, resource_type: str, path: str) -> Any:
        """Apply every matching rule, in order, to a value."""
        normalized = value
        for rule in self._rules:
            if rule.matches(resource_type, path):
                normalized = self._apply_normalization(normalized, rule)
        return normalized

    def _apply_normalization(self, value: Any, rule: NormalizationRule) -> Any:
        match rule.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                return self._normalize_empty(value)
            case NormalizationType.BOOLEAN_NORMALIZE:
                return self._normalize_boolean(value)
            case NormalizationType.NUMERIC_STRING:
                return self._normalize_numeric_string(value)
            case NormalizationType.CASE_INSENSITIVE:
                return value.lower() if isinstance(value, str) else value
            case NormalizationType.WHITESPACE_NORMALIZE:
                return self._normalize_whitespace(value)
            case NormalizationType.ARRAY_UNORDERED:
                return self._normalize_array_order(value)
            case NormalizationType.DEFAULT_VALUE:
                return rule.params.get("default") if value is None else value
            case NormalizationType.TRAILING_DOT:
                return value.rstrip(".") if isinstance(value, str) else value
            case _:
                return value

    def _normalize_empty(self, value: Any) -> Any:
        """[], {}, "" and None all become None."""
        if isinstance(value, str | list | tuple | dict) and len(value) == 0:
            return None
        return value

    def _normalize_boolean(self, value: Any) -> Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            if value.lower() in ("true", "yes", "1", "on"):
                return True
            if value.lower() in ("false", "no", "0", "off"):
                return False
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        return value

    def _normalize_numeric_string(self, value: Any) -> Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, int | float):
            return value
        if isinstance(value, str):
            try:
                if "." in value:
                    return float(value)
                return int(value)
            except ValueError:
                pass
        return value

    def _normalize_whitespace(self, value: Any) -> Any:
        if isinstance(value, str):
            value = value.replace("\r\n", "\n").replace("\r", "\n")
            value = "\n".join(" ".join(line.split()) for line in value.split("\n"))
            value = value.strip()
        return value

    def _normalize_array_order(self, value: Any) -> Any:
        """Sort lists so order is irrelevant; returns a tuple."""
        if isinstance(value, list | tuple):
            return tuple(sorted(value, key=lambda x: str(x)))
        return value

    def are_equivalent(
        self,
        desired: Any,
        observed: Any,
        resource_type: str,
        path: str,
    ) -> bool:
        """Check if two values are semantically equivalent."""
        return self.normalize_value(desired, resource_type, path) == self.normalize_value(
            observed, resource_type, path
        )

    def compare_config(
        self,
        resource_type: str,
        desired: dict[str, Any],
        observed: dict[str, Any],
    ) -> list[PropertyChange]:
        """List properties whose desired value differs from the observed one.

        Nested mappings are walked recursively with dotted paths. Keys that
        only exist in `observed` are ignored.
        """
        changes: list[PropertyChange] = []
        self._compare(resource_type, desired, observed, "", changes)
        if not changes:
            logger.debug(
                "Config matches observed state",
                extra={"resource_type": resource_type},
            )
        return changes

    def _compare(
        self,
        resource_type: str,
        desired: dict[str, Any],
        observed: dict[str, Any],
        prefix: str,
        changes: list[PropertyChange],
    ) -> None:
        for name in sorted(desired):
            path = f"{prefix}{name}"
            want = desired[name]
            have = observed.get(name) if isinstance(observed, dict) else None
            if isinstance(want, dict) and want:
                self._compare(
                    resource_type, want, have if isinstance(have, dict) else {},
                    f"{path}.", changes,
                )
                continue
            if not self.are_equivalent(want, have, resource_type, path):
                changes.append(PropertyChange(path=path, desired=want, observed=have))
