import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterable


def ensure_parent(path: Path) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)


def safe_unlink(path: os.PathLike[str] | str) -> None:
    try:
        Path(path).unlink(missing_ok=True)
    except OSError:
        return


def relpath_posix(path: Path, base_dir: Path) -> str:
    return Path(path).relative_to(base_dir).as_posix()


def file_size(path: Path) -> int:
    return int(Path(path).stat().st_size)


def is_within(path: Path, root: Path) -> bool:
    """True when `path` resolves to `root` or somewhere below it."""
    try:
        Path(path).resolve().relative_to(Path(root).resolve())
    except ValueError:
        return False
    return True


def fsync_dir(parent: Path) -> None:
    """
    Ensure directory entry durability after atomic rename.
    """
    fd: int | None = None
    try:
        fd = os.open(parent, os.O_RDONLY)
        os.fsync(fd)
    finally:
        if fd is not None:
            os.close(fd)


def _atomic_write(path: Path, data: bytes, *, mode: int) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd: int | None = None
    tmp_path: Path | None = None
    try:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.",
            suffix=".tmp",
            dir=str(path.parent),
        )
        tmp_path = Path(tmp_name)

        with os.fdopen(fd, "wb") as f:
            fd = None
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
        fsync_dir(path.parent)
    finally:
        if fd is not None:
            os.close(fd)
        if tmp_path is not None and tmp_path.exists():
            safe_unlink(tmp_path)


def atomic_write_text(
    path: Path,
    text: str,
    *,
    encoding: str = "utf-8",
    mode: int = 0o644,
) -> None:
    """
    Atomically write text to `path`.

    Readers see either the previous complete file or the new one; the temp
    file lives in the same directory so `os.replace` stays atomic.
    """
    _atomic_write(path, text.encode(encoding), mode=mode)


def atomic_write_bytes(path: Path, data: bytes, *, mode: int = 0o644) -> None:
    _atomic_write(path, data, mode=mode)


def append_text(path: Path, text: str, *, encoding: str = "utf-8") -> None:
    ensure_parent(path)
    with Path(path).open("a", encoding=encoding) as f:
        f.write(text)


def copy_file(src: Path, dst: Path) -> None:
    """
    Copy with metadata. Build tools rewrite their outputs in place, so
    hardlinks would let a later step mutate an archived file.
    """
    ensure_parent(dst)
    shutil.copy2(src, dst)


def remove_tree(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)


def prune_dirs(
    root: Path,
    *,
    keep: int,
    exclude: Iterable[str] = (),
    marker: str | None = None,
) -> list[Path]:
    """
    Keep the `keep` most recently modified sub-directories of `root` and
    delete the rest. Names in `exclude` are never removed; with `marker`,
    only directories containing that file are candidates.
    """
    root = Path(root)
    if keep < 0 or not root.is_dir():
        return []

    skip = set(exclude)
    dirs = [
        p
        for p in root.iterdir()
        if p.is_dir()
        and p.name not in skip
        and (marker is None or (p / marker).is_file())
    ]
    dirs.sort(key=lambda p: (p.stat().st_mtime, p.name), reverse=True)

    removed = dirs[keep:]
    for p in removed:
        remove_tree(p)
    return removed
