"""Unit tests for manifests.py - Manifest loading."""

import pytest

from composite.manifests import ManifestError, load_manifest_file, load_manifests

TWO_DOCUMENTS = """
apiVersion: v1
kind: Service
metadata:
  name: web
  namespace: default
spec:
  ports:
    - port: 80
---
apiVersion: v1
kind: ConfigMap
metadata:
  name: settings
data:
  mode: production
"""


class TestLoadManifests:
    """Tests for load_manifests()."""

    def test_multiple_documents(self):
        objects = load_manifests(TWO_DOCUMENTS)

        assert [(o.gvk.kind, o.name) for o in objects] == [
            ("Service", "web"),
            ("ConfigMap", "settings"),
        ]
        assert objects[0].object["spec"]["ports"] == [{"port": 80}]

    def test_skips_empty_documents(self):
        objects = load_manifests("---\n" + TWO_DOCUMENTS + "\n---\n")
        assert len(objects) == 2

    def test_json(self):
        objects = load_manifests(
            '{"apiVersion": "apps/v1", "kind": "Deployment", "metadata": {"name": "d"}}'
        )
        assert objects[0].gvk.group == "apps"

    def test_flattens_lists(self):
        text = """
apiVersion: v1
kind: List
items:
  - apiVersion: v1
    kind: ConfigMap
    metadata: {name: a}
  - apiVersion: v1
    kind: ConfigMap
    metadata: {name: b}
"""
        assert [o.name for o in load_manifests(text)] == ["a", "b"]

    def test_empty_text(self):
        assert load_manifests("") == []

    def test_invalid_yaml(self):
        with pytest.raises(ManifestError, match="invalid YAML"):
            load_manifests("key: [unclosed")

    def test_not_a_mapping(self):
        with pytest.raises(ManifestError, match="not a mapping"):
            load_manifests("- just\n- a list\n")

    def test_missing_kind(self):
        with pytest.raises(ManifestError, match="apiVersion or kind"):
            load_manifests("apiVersion: v1\nmetadata:\n  name: x\n")


class TestLoadManifestFile:
    """Tests for load_manifest_file()."""

    def test_reads_file(self, tmp_path):
        path = tmp_path / "children.yaml"
        path.write_text(TWO_DOCUMENTS)

        assert len(load_manifest_file(path)) == 2
        assert len(load_manifest_file(str(path))) == 2
