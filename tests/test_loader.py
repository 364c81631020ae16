"""Tests for resource file loading."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
import yaml

from fleetcloud.config import MAX_RESOURCE_FILE_SIZE_BYTES
from fleetcloud.errors import InvalidConfig
from fleetcloud.loader import load_cloud_file, parse_cloud_file

EXAMPLE = {
    "providers": {
        "sakura-cloud": {"zone": "is1a"},
        "cloudflare": None,
    },
    "resources": [
        {
            "type": "server",
            "id": "web-01",
            "provider": "sakura-cloud",
            "config": {"plan": "2core-4gb", "os": "ubuntu"},
        },
        {
            "type": "dns-record",
            "id": "www/CNAME",
            "provider": "cloudflare",
            "config": {"type": "CNAME", "content": "web-01.example.com"},
        },
    ],
}


class TestParseCloudFile:
    """Tests for parse_cloud_file."""

    def test_resources_and_providers(self) -> None:
        """Test a complete document parses into resources and settings."""
        document = parse_cloud_file(EXAMPLE)

        assert sorted(document.resources.keys()) == ["dns-record:www/CNAME", "server:web-01"]
        assert document.providers == {"sakura-cloud": {"zone": "is1a"}, "cloudflare": {}}
        assert document.resources.get("server", "web-01").get_config("plan") == "2core-4gb"

    def test_provider_names_include_referenced(self) -> None:
        """Test providers used by resources count even without a settings block."""
        document = parse_cloud_file(
            {"resources": [{"type": "server", "id": "a", "provider": "sakura-cloud"}]}
        )

        assert document.provider_names() == ["sakura-cloud"]

    def test_empty_document(self) -> None:
        """Test an empty file declares nothing."""
        document = parse_cloud_file(None)

        assert len(document.resources) == 0
        assert document.provider_names() == []

    def test_non_mapping_rejected(self) -> None:
        """Test a top-level list raises InvalidConfig."""
        with pytest.raises(InvalidConfig) as exc_info:
            parse_cloud_file(["server"])

        assert "mapping" in str(exc_info.value)

    def test_validation_errors_listed(self) -> None:
        """Test each invalid entry is reported with its location."""
        with pytest.raises(InvalidConfig) as exc_info:
            parse_cloud_file({"resources": [{"type": "server", "id": "a"}]}, "fleet.yaml")

        message = str(exc_info.value)
        assert "fleet.yaml" in message
        assert "resources.0.provider" in message

    def test_colon_in_type_rejected(self) -> None:
        """Test a type containing a colon is reported at its location."""
        with pytest.raises(InvalidConfig) as exc_info:
            parse_cloud_file({"resources": [{"type": "a:b", "id": "c", "provider": "p"}]})

        assert "resources.0.type" in str(exc_info.value)

    def test_duplicate_declaration_last_wins(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test a repeated (type, id) keeps the later entry and warns."""
        data = {
            "resources": [
                {"type": "server", "id": "a", "provider": "p", "config": {"core": 1}},
                {"type": "server", "id": "a", "provider": "p", "config": {"core": 2}},
            ]
        }

        with caplog.at_level(logging.WARNING):
            document = parse_cloud_file(data)

        assert document.resources.get("server", "a").get_config("core") == 2
        assert "Duplicate resource declaration" in caplog.text


class TestLoadCloudFile:
    """Tests for load_cloud_file."""

    def test_load_from_disk(self, tmp_path: Path) -> None:
        """Test a YAML file on disk loads and records its source."""
        path = tmp_path / "fleetcloud.yaml"
        path.write_text(yaml.safe_dump(EXAMPLE))

        document = load_cloud_file(path)

        assert document.source == path
        assert len(document.resources) == 2

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test a missing file raises InvalidConfig."""
        with pytest.raises(InvalidConfig) as exc_info:
            load_cloud_file(tmp_path / "absent.yaml")

        assert "not found" in str(exc_info.value)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test unparseable YAML raises InvalidConfig."""
        path = tmp_path / "fleetcloud.yaml"
        path.write_text("resources: [unclosed")

        with pytest.raises(InvalidConfig) as exc_info:
            load_cloud_file(path)

        assert "Invalid YAML" in str(exc_info.value)

    def test_oversized_file(self, tmp_path: Path) -> None:
        """Test files over the size limit are refused before parsing."""
        path = tmp_path / "fleetcloud.yaml"
        path.write_text("#" * (MAX_RESOURCE_FILE_SIZE_BYTES + 1))

        with pytest.raises(InvalidConfig) as exc_info:
            load_cloud_file(path)

        assert "maximum size" in str(exc_info.value)

    def test_unsafe_tags_rejected(self, tmp_path: Path) -> None:
        """Test Python object tags are not constructed."""
        path = tmp_path / "fleetcloud.yaml"
        path.write_text("resources: !!python/object/apply:os.system ['true']\n")

        with pytest.raises(InvalidConfig):
            load_cloud_file(path)
