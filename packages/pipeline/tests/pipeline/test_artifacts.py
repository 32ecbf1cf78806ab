from __future__ import annotations

from pathlib import Path

import pytest

from appsec_pipeline.core import (
    ArtifactCollisionError,
    DefinitionError,
    NoArtifactsFound,
    sha256_bytes,
)
from appsec_pipeline.pipeline import ArtifactCollector


def _tree(root: Path) -> None:
    (root / "debug").mkdir(parents=True)
    (root / "debug" / "app-debug.apk").write_bytes(b"apk")
    (root / "debug" / "output-metadata.json").write_text("{}")


def test_collect_keeps_relative_paths_and_fingerprints(tmp_path: Path) -> None:
    src = tmp_path / "outputs"
    _tree(src)
    collector = ArtifactCollector(tmp_path / "reports" / "b1")

    refs = collector.collect("**/*.apk", "apk", base=src, stage="Build")

    assert [r.path for r in refs] == ["apk/debug/app-debug.apk"]
    assert refs[0].bytes == 3
    assert refs[0].sha256 == sha256_bytes(b"apk")
    assert (tmp_path / "reports" / "b1" / "apk" / "debug" / "app-debug.apk").read_bytes() == b"apk"

    out = tmp_path / "reports" / "b1" / "sha256sums.txt"
    assert collector.write_fingerprints(out) == 1
    assert out.read_text() == f"{sha256_bytes(b'apk')}  apk/debug/app-debug.apk\n"


def test_fingerprint_off_leaves_sha_empty(tmp_path: Path) -> None:
    src = tmp_path / "outputs"
    _tree(src)
    collector = ArtifactCollector(tmp_path / "reports")
    refs = collector.collect("**/*.json", "meta", base=src, stage="Build", fingerprint=False)
    assert refs[0].sha256 is None
    assert collector.write_fingerprints(tmp_path / "reports" / "sha256sums.txt") == 0


def test_empty_match_is_allowed_or_fails(tmp_path: Path) -> None:
    collector = ArtifactCollector(tmp_path / "reports")

    assert collector.collect("*.html", "dependency-check", base=tmp_path, stage="Dep") == []
    assert collector.collect("*.html", "x", base=tmp_path / "missing", stage="Dep") == []
    assert not (tmp_path / "reports" / "dependency-check").exists()

    with pytest.raises(NoArtifactsFound):
        collector.collect(
            "*.html", "dependency-check", base=tmp_path, stage="Dep", allow_empty=False
        )


def test_other_stage_cannot_overwrite(tmp_path: Path) -> None:
    src = tmp_path / "outputs"
    _tree(src)
    collector = ArtifactCollector(tmp_path / "reports")

    collector.collect("**/*.apk", "apk", base=src, stage="Build")
    # the owner may refresh its own file
    collector.collect("**/*.apk", "apk", base=src, stage="Build")

    with pytest.raises(ArtifactCollisionError):
        collector.collect("**/*.apk", "apk", base=src, stage="Other")
    assert len(collector.collected()) == 1


def test_rejected_collect_copies_nothing(tmp_path: Path) -> None:
    src = tmp_path / "outputs"
    _tree(src)
    collector = ArtifactCollector(tmp_path / "reports")
    collector.collect("**/*.json", "out", base=src, stage="Build")

    # app-debug.apk sorts before the owned output-metadata.json
    with pytest.raises(ArtifactCollisionError):
        collector.collect("**/*", "out", base=src, stage="Other")

    assert not (tmp_path / "reports" / "out" / "debug" / "app-debug.apk").exists()
    assert [a.path for a in collector.collected()] == ["out/debug/output-metadata.json"]


@pytest.mark.parametrize("dest", ["/abs", "../escape", "a/../../b"])
def test_destination_must_stay_inside(tmp_path: Path, dest: str) -> None:
    src = tmp_path / "outputs"
    _tree(src)
    collector = ArtifactCollector(tmp_path / "reports")
    with pytest.raises(DefinitionError):
        collector.collect("**/*.apk", dest, base=src, stage="Build")
