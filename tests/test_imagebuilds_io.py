"""Tests for ImageBuild manifest import/export."""

import json

import pytest
import yaml
from pydantic import ValidationError

from imagebuild.imagebuilds.io import (
    load_manifest,
    manifest_to_yaml_string,
    object_to_manifest,
    parse_manifest,
)
from imagebuild.types import Phase

MANIFEST_YAML = """\
apiVersion: imagebuild.dev/v1
kind: ImageBuild
metadata:
  name: app
  namespace: builds
  annotations:
    team: platform
spec:
  context: https://example.com/ctx.tgz
  images:
    - reg.example.com/team/app:1.0
  buildArgs:
    - VERSION=1.0
  disableCacheImport: true
  amqpOverrides:
    queueName: team-status
"""


class TestParseManifest:
    """Tests for parse_manifest function."""

    def test_full_manifest(self):
        """Should map metadata and camelCase spec fields."""
        obj = parse_manifest(yaml.safe_load(MANIFEST_YAML))

        assert obj.key == "builds/app"
        assert obj.annotations == {"team": "platform"}
        assert obj.spec.images == ["reg.example.com/team/app:1.0"]
        assert obj.spec.build_args == ["VERSION=1.0"]
        assert obj.spec.disable_cache_import is True
        assert obj.spec.disable_cache_export is False
        assert obj.spec.amqp_overrides.queue_name == "team-status"
        assert obj.status.phase == Phase.UNSET

    def test_default_namespace(self):
        """A manifest without namespace should land in default."""
        obj = parse_manifest(
            {"metadata": {"name": "app"}, "spec": {"context": "c", "images": ["a"]}}
        )

        assert obj.namespace == "default"

    def test_with_status(self):
        """An existing status should be loaded."""
        obj = parse_manifest(
            {
                "metadata": {"name": "app"},
                "spec": {"context": "c", "images": ["a"]},
                "status": {
                    "phase": "Running",
                    "transitions": [{"previousPhase": "", "phase": "Running"}],
                },
            }
        )

        assert obj.status.phase == Phase.RUNNING
        assert obj.status.transitions[0].processed is False

    def test_wrong_kind(self):
        """Other kinds should be rejected."""
        with pytest.raises(ValueError, match="kind"):
            parse_manifest({"kind": "Pod", "metadata": {"name": "x"}})

    def test_empty_images(self):
        """A spec without images should fail validation."""
        with pytest.raises(ValidationError):
            parse_manifest(
                {"metadata": {"name": "app"}, "spec": {"context": "c", "images": []}}
            )

    def test_unknown_spec_field(self):
        """Unknown spec fields should fail validation."""
        with pytest.raises(ValidationError):
            parse_manifest(
                {
                    "metadata": {"name": "app"},
                    "spec": {"context": "c", "images": ["a"], "platforms": ["arm64"]},
                }
            )


class TestLoadManifest:
    """Tests for load_manifest function."""

    def test_yaml(self, tmp_path):
        """Should load YAML manifests."""
        path = tmp_path / "build.yaml"
        path.write_text(MANIFEST_YAML)

        assert load_manifest(path).name == "app"

    def test_json(self, tmp_path):
        """Should load JSON manifests."""
        path = tmp_path / "build.json"
        path.write_text(json.dumps(yaml.safe_load(MANIFEST_YAML)))

        assert load_manifest(path).namespace == "builds"

    def test_unsupported_extension(self, tmp_path):
        """Other extensions should be rejected."""
        path = tmp_path / "build.toml"
        path.write_text("")

        with pytest.raises(ValueError, match="Unsupported file extension"):
            load_manifest(path)

    def test_yaml_list(self, tmp_path):
        """A YAML document that is not a mapping should be rejected."""
        path = tmp_path / "build.yml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ValueError, match="mapping"):
            load_manifest(path)


class TestObjectToManifest:
    """Tests for manifest export."""

    def test_round_trip(self):
        """An exported manifest should parse back to the same object."""
        obj = parse_manifest(yaml.safe_load(MANIFEST_YAML))

        manifest = object_to_manifest(obj)
        text = manifest_to_yaml_string(manifest)

        assert manifest["apiVersion"] == "imagebuild.dev/v1"
        assert manifest["spec"]["amqpOverrides"] == {"queueName": "team-status"}
        assert parse_manifest(yaml.safe_load(text)) == obj
