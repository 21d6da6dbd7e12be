# cache.py
from __future__ import annotations

import hashlib
import io
import json
import os
import platform
import tarfile
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from .errors import StoreError
from .model import CacheKey

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Dependency caching, the way the pipelines declare it:
#   key = "<runner.os>-cargo-" + hash(Cargo.lock bytes after generate-lockfile)
#
# Two jobs on the same OS with byte-identical lockfiles share a cache entry;
# any lockfile change moves to a fresh key.
#
# Cache artifact:
#   a tar.gz of the declared cache paths (~/.cargo/bin, ~/.cargo/git,
#   ~/.cargo/registry) plus a manifest.json of what was packed.
#   Stores treat the artifact as opaque bytes.
#
# Usage in the job runner (high-level):
#   key = derive_cache_key(os_id, lockfile_bytes)
#   contents = store.restore(key)        # None on miss
#   if contents is not None:
#       archiver.unpack(contents)
#   ... run tests ...
#   store.save(key, archiver.pack())
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".matrixci/cache"
MANIFEST_NAME = ".matrixci_cache_manifest.json"

# platform.system() -> runner.os
_HOST_OS = {
    "Darwin": "macOS",
    "Windows": "Windows",
    "Linux": "Linux",
}

# runs-on label prefix -> runner.os
_RUNNER_LABELS = {
    "macos": "macOS",
    "windows": "Windows",
    "ubuntu": "Linux",
    "linux": "Linux",
}


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _iter_entries_under(root: Path) -> Iterable[Path]:
    # deterministic traversal; symlinks are yielded as entries, never followed
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = Path(dirpath)
        for name in sorted(filenames):
            yield base / name
        for name in dirnames:
            if (base / name).is_symlink():
                yield base / name


def host_os_id() -> str:
    system = platform.system()
    return _HOST_OS.get(system, system or "Unknown")


def os_id_for_runner(runs_on: str | None) -> str:
    """
    Map a runs-on label (macos-latest, windows-2022, ubuntu-22.04, ...)
    to the runner OS name used in cache keys. Unknown labels fall back
    to the host OS.
    """
    if runs_on:
        label = runs_on.strip().lower()
        for prefix, os_id in _RUNNER_LABELS.items():
            if label.startswith(prefix):
                return os_id
    return host_os_id()


def derive_cache_key(os_id: str, lockfile: bytes, *, prefix: str = "cargo") -> CacheKey:
    """
    Derive the cache key for a job.

    `lockfile` must be the bytes as they exist AFTER lockfile generation;
    hashing a stale or absent lockfile would keep serving an old cache.
    """
    if not os_id:
        raise ValueError("os_id must be a non-empty string")
    return CacheKey(os=os_id, digest=_sha256_bytes(lockfile), prefix=prefix)


def read_lockfiles(root: str | Path, pattern: str = "**/Cargo.lock") -> bytes:
    """
    Concatenate every lockfile matching `pattern` under `root`, in sorted
    path order. Workspaces with a single Cargo.lock give exactly its bytes.
    No match gives b"".
    """
    base = Path(root)
    files = sorted(p for p in base.glob(pattern) if p.is_file())
    return b"".join(p.read_bytes() for p in files)


# ---------------------------------------------------------------------
# Archiving cache paths <-> opaque bytes
# ---------------------------------------------------------------------

class CacheArchiver:
    """
    Packs the declared cache paths into a tar.gz blob and unpacks it back.

    Members are stored as "<index>/<relative path>" where index is the
    position of the entry in `paths`, so home-relative paths (~/.cargo/...)
    round-trip to wherever `~` points on the restoring host.
    """

    def __init__(self, paths: Iterable[str]):
        self.paths: List[str] = list(paths)

    def _resolved(self) -> List[Path]:
        return [Path(p).expanduser() for p in self.paths]

    def pack(self) -> bytes:
        buf = io.BytesIO()
        packed: Dict[str, int] = {}
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            for idx, src in enumerate(self._resolved()):
                if not src.exists():
                    continue
                if src.is_file():
                    tar.add(str(src), arcname=str(idx), recursive=False)
                    packed[self.paths[idx]] = 1
                    continue
                count = 0
                # tarfile records repeated inodes as hard links, symlinks as links
                for f in _iter_entries_under(src):
                    rel = f.relative_to(src).as_posix()
                    tar.add(str(f), arcname=f"{idx}/{rel}", recursive=False)
                    count += 1
                packed[self.paths[idx]] = count

            payload = json.dumps(
                {"paths": self.paths, "files": packed, "packed_at_unix": int(time.time())},
                sort_keys=True,
                indent=2,
            ).encode("utf-8")
            info = tarfile.TarInfo(name=MANIFEST_NAME)
            info.size = len(payload)
            info.mtime = int(time.time())
            tar.addfile(info, fileobj=io.BytesIO(payload))
        return buf.getvalue()

    def unpack(self, contents: bytes) -> int:
        """
        Extract a blob produced by pack() back in place.

        Each member is renamed from "<index>/<rel>" to "<rel>" and extracted by
        tarfile under its cache path, so modes, hard links and symlinks survive.
        The "data" extraction filter rejects members or links that would land
        outside their cache path. Returns the number of entries extracted.
        """
        targets = self._resolved()
        written = 0
        try:
            with tarfile.open(fileobj=io.BytesIO(contents), mode="r:gz") as tar:
                for member in tar.getmembers():
                    if member.isdir() or member.name == MANIFEST_NAME:
                        continue
                    placed = _place(member, targets)
                    if placed is None:
                        continue
                    dest_root, name = placed
                    if member.islnk():
                        link_head, _, link_rel = member.linkname.partition("/")
                        if link_head != member.name.partition("/")[0]:
                            raise StoreError(
                                "cache archive links across cache paths",
                                details={"member": member.name, "link": member.linkname},
                            )
                        member.linkname = link_rel
                    member.name = name
                    dest_root.mkdir(parents=True, exist_ok=True)
                    tar.extract(member, path=str(dest_root), filter="data")
                    written += 1
        except (tarfile.TarError, OSError, EOFError) as e:
            raise StoreError("cache archive could not be extracted", details={"error": str(e)}) from e
        return written


def _place(member: tarfile.TarInfo, targets: List[Path]) -> Optional[tuple]:
    """(directory to extract into, member name inside it), or None if unknown."""
    head, _, rel = member.name.partition("/")
    if not head.isdigit() or int(head) >= len(targets):
        return None
    base = targets[int(head)]
    if not rel:
        # single-file cache path
        return base.parent, base.name
    return base, rel


# ---------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------

class CacheStore(Protocol):
    def restore(self, key: CacheKey) -> Optional[bytes]:
        """Return the contents saved under `key`, or None on a miss."""
        ...

    def save(self, key: CacheKey, contents: bytes) -> None:
        """Store `contents` under `key` (last write wins)."""
        ...


class FileCacheStore:
    """
    File-based cache store:
      root/
        <key>.tar.gz

    Writes go to a unique temp file and are renamed into place, so racing
    writers give last-write-wins and readers never see a partial archive.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).expanduser().resolve()

    def artifact_path(self, key: CacheKey) -> Path:
        return self.root / f"{key}.tar.gz"

    def restore(self, key: CacheKey) -> Optional[bytes]:
        art = self.artifact_path(key)
        if not art.exists():
            return None
        try:
            return art.read_bytes()
        except OSError as e:
            raise StoreError("cache read failed", details={"key": str(key), "error": str(e)}) from e

    def save(self, key: CacheKey, contents: bytes) -> None:
        art = self.artifact_path(key)
        tmp = self.root / f".{key}.{uuid.uuid4().hex}.tmp"
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(contents)
            tmp.replace(art)
        except OSError as e:
            raise StoreError("cache write failed", details={"key": str(key), "error": str(e)}) from e
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

    def keys(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(p.name[: -len(".tar.gz")] for p in self.root.glob("*.tar.gz"))

    def prune(self, keep: int = 3) -> List[Path]:
        """
        Keep only the newest N artifacts.
        Uses file mtime as "newest". Returns the removed paths.
        """
        if not self.root.exists():
            return []
        tars = sorted(self.root.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        removed = tars[keep:]
        for p in removed:
            p.unlink(missing_ok=True)
        return removed


class MemoryCacheStore:
    """In-process store; thread-safe, last write wins."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.saves = 0
        self.restores = 0

    def restore(self, key: CacheKey) -> Optional[bytes]:
        with self._lock:
            self.restores += 1
            return self._data.get(str(key))

    def save(self, key: CacheKey, contents: bytes) -> None:
        with self._lock:
            self.saves += 1
            self._data[str(key)] = contents

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return str(key) in self._data
