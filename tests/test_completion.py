import pytest

from chunked_upload.completion import bytes_written, is_complete
from chunked_upload.errors import ChunkOverflowError


def test_missing_artifact_has_zero_bytes(tmp_path):
    assert bytes_written(tmp_path / "nothing") == 0
    assert not is_complete(tmp_path / "nothing", 10)


def test_complete_only_on_exact_size(tmp_path):
    artifact = tmp_path / "artifact"
    artifact.write_bytes(b"x" * 9)
    assert not is_complete(artifact, 10)

    artifact.write_bytes(b"x" * 10)
    assert is_complete(artifact, 10)


def test_overshoot_is_an_error_not_completion(tmp_path):
    artifact = tmp_path / "artifact"
    artifact.write_bytes(b"x" * 11)

    with pytest.raises(ChunkOverflowError) as excinfo:
        is_complete(artifact, 10)

    assert "11" in excinfo.value.message
    assert excinfo.value.status_code == 400


def test_empty_declared_size(tmp_path):
    artifact = tmp_path / "artifact"
    artifact.write_bytes(b"")

    assert is_complete(artifact, 0)
