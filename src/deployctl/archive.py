"""Release archives: source manifests, cloning and reproducible tarballs.

A release archive is a gzip-compressed tar whose bytes depend only on the
file names and contents it holds. Entries are sorted, timestamps and
ownership are zeroed and permission bits are reduced to 0644/0755, so
building the same manifest twice yields identical archives.
"""
from __future__ import annotations

import gzip
import hashlib
import logging
import os
import shutil
import subprocess
import tarfile
import tempfile
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath

LOGGER = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".tar.gz"
_MISSING_PREVIEW = 10


class ArchiveError(RuntimeError):
    """Raised when a release archive cannot be assembled."""


@dataclass(frozen=True, slots=True)
class Release:
    """One versioned deployment attempt."""

    id: str
    sources: tuple[str, ...] = ()
    archive_path: Path | None = None
    created_at: str = field(
        default_factory=lambda: datetime.now(tz=UTC).isoformat(timespec="seconds")
    )

    def __post_init__(self) -> None:
        """Reject identifiers that cannot name files and directories."""
        if not self.id.strip() or "/" in self.id or self.id in {".", ".."}:
            raise ArchiveError(f"Invalid release identifier: {self.id!r}")


@dataclass(frozen=True, slots=True)
class Archive:
    """A built release archive."""

    release: Release
    path: Path
    checksum: str
    checksum_file: Path
    size_bytes: int

    @property
    def files(self) -> tuple[str, ...]:
        """Return the archived paths in archive order."""
        return self.release.sources

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "release": self.release.id,
            "path": str(self.path),
            "checksum": self.checksum,
            "checksum_file": str(self.checksum_file),
            "size_bytes": self.size_bytes,
            "files": len(self.files),
        }


def new_release_id(now: datetime | None = None) -> str:
    """Return a timestamp release id such as ``20261018143000``."""
    moment = now or datetime.now(tz=UTC)
    return moment.strftime("%Y%m%d%H%M%S")


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = archive_path.with_name(f"{archive_path.name}.sha256")
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


# ----------------------------------------------------------------------
# Sources
# ----------------------------------------------------------------------
def clone_source(
    url: str,
    destination: Path,
    *,
    ref: str | None = None,
    git_bin: str = "git",
    timeout: float = 600.0,
) -> Path:
    """Shallow-clone *url* into *destination* and return the checkout path."""
    if destination.exists() and any(destination.iterdir()):
        raise ArchiveError(f"Clone destination is not empty: {destination}")
    git = shutil.which(git_bin)
    if git is None:
        raise ArchiveError(f"The '{git_bin}' command is required to clone sources.")
    destination.parent.mkdir(parents=True, exist_ok=True)

    cmd = [git, "clone", "--depth", "1"]
    if ref:
        cmd.extend(["--branch", ref])
    cmd.extend([url, str(destination)])
    _run_git(cmd, timeout=timeout, action=f"git clone {url}")
    return destination


def git_manifest(root: Path, *, git_bin: str = "git", timeout: float = 60.0) -> list[str]:
    """Return the version-controlled files under *root* (``git ls-files``)."""
    git = shutil.which(git_bin)
    if git is None:
        raise ArchiveError(f"The '{git_bin}' command is required to list tracked files.")
    result = _run_git(
        [git, "-C", str(root), "ls-files", "-z"],
        timeout=timeout,
        action=f"git ls-files in {root}",
    )
    return [item for item in result.stdout.split("\0") if item]


def directory_manifest(root: Path, relative: str) -> list[str]:
    """Return every file below ``root/relative`` as root-relative POSIX paths."""
    base = root / relative
    if not base.exists():
        raise ArchiveError(f"Vendored directory does not exist: {base}")
    if not base.is_dir():
        return [_normalise_member(relative)]
    return sorted(
        path.relative_to(root).as_posix()
        for path in base.rglob("*")
        if path.is_file() or path.is_symlink()
    )


def _run_git(
    cmd: Sequence[str],
    *,
    timeout: float,
    action: str,
) -> subprocess.CompletedProcess[str]:
    try:
        result = subprocess.run(  # noqa: S603 - controlled command execution
            list(cmd),
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise ArchiveError(f"{action} timed out after {timeout:.0f}s") from exc
    if result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "no output"
        raise ArchiveError(f"{action} failed (exit {result.returncode}): {message}")
    return result


def _normalise_member(value: str) -> str:
    posix = PurePosixPath(value.replace(os.sep, "/"))
    if posix.is_absolute() or ".." in posix.parts:
        raise ArchiveError(f"Archive paths must be relative to the source directory: {value!r}")
    normalised = posix.as_posix()
    if normalised in {"", "."}:
        raise ArchiveError("Archive paths must name a file or directory.")
    return normalised


# ----------------------------------------------------------------------
# Builder
# ----------------------------------------------------------------------
class ArchiveBuilder:
    """Assemble reproducible release archives from file manifests."""

    def __init__(
        self,
        source_dir: Path,
        archive_dir: Path,
        *,
        archive_name: str = "release",
        compresslevel: int = 6,
    ) -> None:
        """Store the source tree, output directory and naming scheme."""
        self.source_dir = source_dir.expanduser()
        self.archive_dir = archive_dir.expanduser()
        self.archive_name = archive_name
        self.compresslevel = compresslevel

    def archive_path_for(self, release_id: str) -> Path:
        """Return where the archive for *release_id* is written."""
        return self.archive_dir / f"{self.archive_name}-{release_id}{ARCHIVE_SUFFIX}"

    def collect(self, source_lists: Iterable[Iterable[str]]) -> list[str]:
        """Merge manifests into one sorted, de-duplicated file list.

        Directory entries are expanded to the files beneath them. Raises
        :class:`ArchiveError` naming the paths that do not exist.
        """
        requested: set[str] = set()
        for manifest in source_lists:
            for item in manifest:
                requested.add(_normalise_member(item))

        missing = sorted(
            item
            for item in requested
            if not (self.source_dir / item).exists() and not (self.source_dir / item).is_symlink()
        )
        if missing:
            preview = ", ".join(missing[:_MISSING_PREVIEW])
            extra = len(missing) - _MISSING_PREVIEW
            suffix = f" (and {extra} more)" if extra > 0 else ""
            raise ArchiveError(f"Missing source paths in {self.source_dir}: {preview}{suffix}")

        files: set[str] = set()
        for item in requested:
            path = self.source_dir / item
            if path.is_dir() and not path.is_symlink():
                files.update(directory_manifest(self.source_dir, item))
            else:
                files.add(item)
        return sorted(files)

    def build(self, release: Release, source_lists: Iterable[Iterable[str]]) -> Archive:
        """Build the archive for *release* from *source_lists*.

        The archive is written to a temporary file in the archive directory
        and renamed into place, so readers never observe a partial file and
        rebuilding a release replaces the previous archive atomically.
        """
        files = self.collect(source_lists)
        if not files:
            raise ArchiveError("Nothing to archive: the combined manifest is empty.")

        target = release.archive_path or self.archive_path_for(release.id)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "wb") as raw:
                self._write_tarball(raw, files)
            os.replace(tmp_path, target)
        except OSError as exc:
            raise ArchiveError(f"Failed to write archive {target}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

        try:
            os.chmod(target, 0o640)
        except OSError:
            pass

        checksum = compute_checksum(target)
        checksum_file = write_checksum_file(target, checksum)
        LOGGER.debug("Built %s with %d files (sha256=%s)", target, len(files), checksum)
        return Archive(
            release=replace(release, sources=tuple(files), archive_path=target),
            path=target,
            checksum=checksum,
            checksum_file=checksum_file,
            size_bytes=target.stat().st_size,
        )

    def _write_tarball(self, raw: object, files: Sequence[str]) -> None:
        with gzip.GzipFile(
            filename="",
            mode="wb",
            fileobj=raw,  # type: ignore[arg-type]
            compresslevel=self.compresslevel,
            mtime=0,
        ) as compressed:
            with tarfile.open(fileobj=compressed, mode="w", format=tarfile.GNU_FORMAT) as tar:
                for name in files:
                    path = self.source_dir / name
                    info = tar.gettarinfo(str(path), arcname=name)
                    _normalise_tarinfo(info)
                    if info.isfile():
                        with path.open("rb") as handle:
                            tar.addfile(info, handle)
                    else:
                        tar.addfile(info)


def _normalise_tarinfo(info: tarfile.TarInfo) -> None:
    info.mtime = 0
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    if info.issym():
        info.mode = 0o777
    elif info.mode & 0o111:
        info.mode = 0o755
    else:
        info.mode = 0o644


__all__ = [
    "ARCHIVE_SUFFIX",
    "Archive",
    "ArchiveBuilder",
    "ArchiveError",
    "Release",
    "clone_source",
    "compute_checksum",
    "directory_manifest",
    "git_manifest",
    "new_release_id",
    "write_checksum_file",
]
