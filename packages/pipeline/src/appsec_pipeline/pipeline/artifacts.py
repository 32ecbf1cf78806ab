from __future__ import annotations

import threading
from pathlib import Path, PurePosixPath

import structlog

from appsec_pipeline.core import (
    ArtifactCollisionError,
    DefinitionError,
    NoArtifactsFound,
    copy_file,
    file_size,
    is_within,
    relpath_posix,
    sha256_file,
    write_sha256_sum_txt,
)

from .types import ArtifactRef

log = structlog.get_logger(__name__)


def _glob(base: Path, pattern: str) -> list[Path]:
    if PurePosixPath(pattern).is_absolute():
        raise DefinitionError(f"archive pattern must be relative: {pattern!r}")
    return sorted(p for p in base.glob(pattern) if p.is_file())


class ArtifactCollector:
    """
    Sole writer of one build's report directory.

    Copies are serialized, and each report file belongs to the first stage
    that wrote it: another stage writing the same path is an error, while the
    owning stage may refresh its own file.
    """

    def __init__(self, report_dir: Path) -> None:
        self.report_dir = Path(report_dir)
        self._lock = threading.Lock()
        self._owners: dict[str, str] = {}
        self._collected: dict[str, ArtifactRef] = {}

    def _resolve_dest(self, dest: str) -> Path:
        p = PurePosixPath(dest)
        if p.is_absolute() or ".." in p.parts:
            raise DefinitionError(
                f"archive destination must be relative to the report dir: {dest!r}"
            )
        return self.report_dir / p

    def collect(
        self,
        pattern: str,
        dest: str,
        *,
        base: Path,
        stage: str,
        fingerprint: bool = True,
        allow_empty: bool = True,
    ) -> list[ArtifactRef]:
        """
        Copy files matching `pattern` under `base` into `dest`, keeping their
        path relative to `base`. Returns the collected artifacts; an empty
        list when nothing matched and `allow_empty` is set.
        """
        base = Path(base)
        dest_dir = self._resolve_dest(dest)
        matches = _glob(base, pattern) if base.is_dir() else []

        if not matches:
            if not allow_empty:
                raise NoArtifactsFound(pattern=pattern, base=str(base))
            log.info("artifacts.none", stage=stage, pattern=pattern, base=str(base))
            return []

        out: list[ArtifactRef] = []
        with self._lock:
            # every target is checked before the first copy
            plan: list[tuple[Path, Path, str]] = []
            for src in matches:
                target = dest_dir / relpath_posix(src, base)
                if not is_within(target, self.report_dir):
                    raise DefinitionError(f"artifact escapes report dir: {target}")

                rel = relpath_posix(target, self.report_dir)
                owner = self._owners.get(rel)
                if owner is not None and owner != stage:
                    raise ArtifactCollisionError(
                        f"{rel} already written by stage {owner!r}, refusing write from {stage!r}"
                    )
                plan.append((src, target, rel))

            dest_dir.mkdir(parents=True, exist_ok=True)
            for src, target, rel in plan:
                copy_file(src, target)
                digest = sha256_file(target).sha256 if fingerprint else None
                ref = ArtifactRef(
                    path=rel, bytes=file_size(target), stage=stage, sha256=digest
                )
                self._owners[rel] = stage
                self._collected[rel] = ref
                out.append(ref)

        log.info(
            "artifacts.collected",
            stage=stage,
            pattern=pattern,
            dest=dest,
            files=len(out),
        )
        return out

    def collected(self) -> list[ArtifactRef]:
        with self._lock:
            return [self._collected[k] for k in sorted(self._collected)]

    def write_fingerprints(self, path: Path) -> int:
        """
        Write sha256sums.txt for every fingerprinted artifact. Returns the
        number of entries.
        """
        entries = {a.path: a.sha256 for a in self.collected() if a.sha256}
        if not entries:
            return 0
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        write_sha256_sum_txt(path, entries)
        return len(entries)
