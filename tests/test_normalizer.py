"""Tests for diff normalization rules engine."""

from __future__ import annotations

import pytest

from fleetcloud.normalizer import (
    DEFAULT_NORMALIZATION_RULES,
    DiffNormalizer,
    NormalizationRule,
    NormalizationType,
    PropertyChange,
)


class TestNormalizationRule:
    """Tests for NormalizationRule matching."""

    def test_matches_exact_resource_type(self) -> None:
        """Test exact resource type matching."""
        rule = NormalizationRule(
            resource_type="server",
            path_pattern="*",
            normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        )

        assert rule.matches("server", "tags") is True
        assert rule.matches("dns-record", "tags") is False

    def test_matches_glob_resource_type(self) -> None:
        """Test glob pattern in resource type."""
        rule = NormalizationRule(
            resource_type="dns-*",
            path_pattern="*",
            normalization_type=NormalizationType.CASE_INSENSITIVE,
        )

        assert rule.matches("dns-record", "type") is True
        assert rule.matches("server", "type") is False

    def test_single_star_stays_within_segment(self) -> None:
        """Test that * does not cross a dot but ** does."""
        single = NormalizationRule("*", "network.*", NormalizationType.CASE_INSENSITIVE)
        double = NormalizationRule("*", "network.**", NormalizationType.CASE_INSENSITIVE)

        assert single.matches("server", "network.zone") is True
        assert single.matches("server", "network.nic.ip") is False
        assert double.matches("server", "network.nic.ip") is True

    def test_matching_is_case_insensitive(self) -> None:
        """Test that type and path matching ignore case."""
        rule = NormalizationRule("Server", "Core", NormalizationType.NUMERIC_STRING)

        assert rule.matches("server", "core") is True


class TestDiffNormalizer:
    """Tests for DiffNormalizer value normalization."""

    @pytest.fixture
    def normalizer(self) -> DiffNormalizer:
        return DiffNormalizer()

    def test_default_rules_loaded(self, normalizer: DiffNormalizer) -> None:
        """Test that default rules are included."""
        assert len(normalizer.rules) == len(DEFAULT_NORMALIZATION_RULES)

    def test_default_rules_can_be_disabled(self) -> None:
        """Test that only custom rules apply when defaults are off."""
        rule = NormalizationRule("server", "os", NormalizationType.CASE_INSENSITIVE)
        normalizer = DiffNormalizer(rules=[rule], enable_default_rules=False)

        assert normalizer.rules == [rule]
        assert normalizer.are_equivalent("2", 2, "server", "core") is False

    def test_numeric_string_equivalence(self, normalizer: DiffNormalizer) -> None:
        """Test that "4" and 4 are the same core count."""
        assert normalizer.are_equivalent(4, "4", "server", "core") is True
        assert normalizer.are_equivalent(4, "8", "server", "core") is False

    def test_tags_are_unordered_and_empty_equivalent(self, normalizer: DiffNormalizer) -> None:
        """Test tag order and empty lists do not count as changes."""
        assert normalizer.are_equivalent(["a", "b"], ["b", "a"], "server", "tags") is True
        assert normalizer.are_equivalent([], None, "server", "tags") is True

    def test_dns_content_trailing_dot_and_case(self, normalizer: DiffNormalizer) -> None:
        """Test that a fully qualified, upper-case target equals the declared one."""
        assert normalizer.are_equivalent(
            "origin.example.com", "Origin.Example.com.", "dns-record", "content"
        ) is True

    def test_dns_ttl_default(self, normalizer: DiffNormalizer) -> None:
        """Test that a missing TTL equals automatic (1)."""
        assert normalizer.are_equivalent(1, None, "dns-record", "ttl") is True
        assert normalizer.are_equivalent("300", 300, "dns-record", "ttl") is True

    def test_dns_proxied_boolean(self, normalizer: DiffNormalizer) -> None:
        """Test that proxied flags compare as booleans."""
        assert normalizer.are_equivalent(True, "true", "dns-record", "proxied") is True
        assert normalizer.are_equivalent(False, None, "dns-record", "proxied") is True

    def test_rules_do_not_leak_across_types(self, normalizer: DiffNormalizer) -> None:
        """Test that server rules do not affect bucket properties."""
        assert normalizer.are_equivalent("2", 2, "r2-bucket", "core") is False


class TestCompareConfig:
    """Tests for desired/observed config comparison."""

    @pytest.fixture
    def normalizer(self) -> DiffNormalizer:
        return DiffNormalizer()

    def test_no_changes(self, normalizer: DiffNormalizer) -> None:
        """Test equivalent configs produce no changes."""
        changes = normalizer.compare_config(
            "server", {"core": 2, "memory": 4}, {"core": "2", "memory": 4}
        )

        assert changes == []

    def test_observed_only_keys_are_ignored(self, normalizer: DiffNormalizer) -> None:
        """Test that backend-added properties are not reported."""
        changes = normalizer.compare_config(
            "server", {"core": 2}, {"core": 2, "ip_address": "10.0.0.1"}
        )

        assert changes == []

    def test_changed_values_reported_in_key_order(self, normalizer: DiffNormalizer) -> None:
        """Test that each differing property is reported with both values."""
        changes = normalizer.compare_config(
            "server", {"memory": 8, "core": 4}, {"core": 2, "memory": 4}
        )

        assert changes == [
            PropertyChange(path="core", desired=4, observed=2),
            PropertyChange(path="memory", desired=8, observed=4),
        ]

    def test_nested_paths(self, normalizer: DiffNormalizer) -> None:
        """Test that nested mappings are compared with dotted paths."""
        changes = normalizer.compare_config(
            "server",
            {"network": {"zone": "tk1a", "public": True}},
            {"network": {"zone": "is1a", "public": True}},
        )

        assert [c.path for c in changes] == ["network.zone"]

    def test_missing_observed_value_is_a_change(self, normalizer: DiffNormalizer) -> None:
        """Test that a declared property absent from observed state is reported."""
        changes = normalizer.compare_config("server", {"core": 2}, {})

        assert changes == [PropertyChange(path="core", desired=2, observed=None)]
