"""Tests for desired-state document loading."""

import base64
import hashlib
import zipfile
from pathlib import Path

import pytest
import yaml
from aws_mock import build_document

from converger.config import MAX_DOCUMENT_FILE_SIZE_BYTES
from converger.spec_loader import (
    SpecLoadError,
    compute_digest,
    document_hash,
    load_desired,
    parse_document,
)


def write_yaml(path: Path, data: object) -> Path:
    path.write_text(yaml.safe_dump(data, sort_keys=False))
    return path


@pytest.fixture
def artifact(tmp_path: Path) -> Path:
    path = tmp_path / "build" / "report.zip"
    path.parent.mkdir()
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("report.py", "def handler(event, context):\n    return 'ok'\n")
    return path


class TestLoadDesired:
    """Tests for load_desired()."""

    def test_flat_document(self, tmp_path: Path) -> None:
        """Test loading a flat document with an object-store artifact."""
        path = write_yaml(tmp_path / "deployment.yaml", build_document())

        desired = load_desired(path)

        assert desired.name == "nightly-report"
        assert desired.code_artifact_ref.location == "s3://artifacts/nightly-report/v1.zip"
        assert desired.schedule == "cron(0 3 * * ? *)"

    def test_kubernetes_style_wrapper(self, tmp_path: Path) -> None:
        """Test the apiVersion/kind/metadata/spec form."""
        spec = build_document()
        del spec["name"]
        document = {
            "apiVersion": "converger/v1",
            "kind": "ScheduledFunction",
            "metadata": {"name": "nightly-report"},
            "spec": spec,
        }
        path = write_yaml(tmp_path / "deployment.yaml", document)

        desired = load_desired(path)

        assert desired.name == "nightly-report"

    def test_unsupported_kind(self, tmp_path: Path) -> None:
        """Test that other kinds are rejected."""
        document = {"apiVersion": "v1", "kind": "ConfigMap", "spec": build_document()}
        path = write_yaml(tmp_path / "deployment.yaml", document)

        with pytest.raises(SpecLoadError, match="Unsupported kind"):
            load_desired(path)

    def test_local_artifact_digest_computed(self, tmp_path: Path, artifact: Path) -> None:
        """Test that a local zip is pinned to its absolute path and digest."""
        document = build_document(
            codeArtifactRef={"location": "build/report.zip", "handler": "report.handler"}
        )
        path = write_yaml(tmp_path / "deployment.yaml", document)

        desired = load_desired(path)

        expected = base64.b64encode(hashlib.sha256(artifact.read_bytes()).digest()).decode()
        assert desired.code_artifact_ref.digest == expected
        assert desired.code_artifact_ref.location == str(artifact.resolve())

    def test_local_artifact_digest_mismatch(self, tmp_path: Path, artifact: Path) -> None:
        """Test that a declared digest must match the artifact content."""
        document = build_document(
            codeArtifactRef={"location": str(artifact), "digest": "bm90LXRoZS1kaWdlc3Q="}
        )
        path = write_yaml(tmp_path / "deployment.yaml", document)

        with pytest.raises(SpecLoadError, match="does not match"):
            load_desired(path)

    def test_local_artifact_missing(self, tmp_path: Path) -> None:
        """Test that a missing local artifact is reported."""
        document = build_document(codeArtifactRef={"location": "build/missing.zip"})
        path = write_yaml(tmp_path / "deployment.yaml", document)

        with pytest.raises(SpecLoadError, match="Code artifact not found"):
            load_desired(path)

    def test_validation_errors_are_formatted(self, tmp_path: Path) -> None:
        """Test that pydantic errors are listed with their location."""
        path = write_yaml(
            tmp_path / "deployment.yaml",
            build_document(resources={"memoryMb": 1, "timeoutSeconds": 5}),
        )

        with pytest.raises(SpecLoadError) as exc_info:
            load_desired(path)

        assert "resources.memoryMb" in str(exc_info.value)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test that malformed YAML is reported."""
        path = tmp_path / "deployment.yaml"
        path.write_text("name: [unclosed\n")

        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_desired(path)

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        """Test that a YAML list is rejected."""
        path = write_yaml(tmp_path / "deployment.yaml", ["a", "b"])

        with pytest.raises(SpecLoadError, match="mapping"):
            load_desired(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing document is reported."""
        with pytest.raises(SpecLoadError, match="not found"):
            load_desired(tmp_path / "absent.yaml")

    def test_oversized_document(self, tmp_path: Path) -> None:
        """Test that documents above the size limit are refused unread."""
        path = tmp_path / "huge.yaml"
        path.write_bytes(b"#" * (MAX_DOCUMENT_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError, match="exceeds maximum size"):
            load_desired(path)

    def test_yaml_tags_not_executed(self, tmp_path: Path) -> None:
        """Test that python object tags are refused by the safe loader."""
        path = tmp_path / "deployment.yaml"
        path.write_text("name: !!python/object/apply:os.system ['true']\n")

        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_desired(path)


class TestHelpers:
    """Tests for digest helpers and parse_document()."""

    def test_compute_digest(self) -> None:
        """Test the provider's base64 SHA-256 form."""
        assert compute_digest(b"") == "47DEQpj8HBSa+/TImW+5JCeuQeRkm5NMpJWZG3hSuFU="

    def test_document_hash(self, tmp_path: Path) -> None:
        """Test the hex hash used for provenance."""
        path = tmp_path / "deployment.yaml"
        path.write_bytes(b"name: x\n")

        assert document_hash(path) == hashlib.sha256(b"name: x\n").hexdigest()

    def test_parse_document_spec_name_wins(self) -> None:
        """Test that spec.name takes precedence over metadata.name."""
        document = {
            "apiVersion": "converger/v1",
            "metadata": {"name": "from-metadata"},
            "spec": build_document(name="from-spec"),
        }

        assert parse_document(document).name == "from-spec"
