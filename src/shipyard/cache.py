# cache.py
from __future__ import annotations

import gzip
import hashlib
import io
import json
import os
import platform
import re
import tarfile
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import CacheIntegrityError, ConfigurationError
from .logging import get_logger

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Step-level caching, addressed by content:
#   key  = expanded cache_key template, e.g. "deps-{os}-{hash:poetry.lock}"
#   blob = deterministic tar.gz of the step's declared cache_paths
#
# Entries are write-once. Saving the same bytes under an existing key is a
# no-op; saving different bytes is a CacheIntegrityError.
#
# On disk:
#   root/
#     <sha256(key)>.blob
#     <sha256(key)>.json     (CacheEntry metadata)
# ---------------------------------------------------------------------


DEFAULT_CACHE_DIR = ".shipyard/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".shipyard/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

log = get_logger("shipyard.cache")


@dataclass
class CacheEntry:
    key: str
    digest: str  # sha256 of the blob
    size: int
    created_at: float
    last_access: float


def _sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    # same object -> same bytes, whatever the dict order
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> Optional[str]:
    """p relative to root, without following symlinks. None when p lies outside root."""
    rel = os.path.relpath(os.path.abspath(p), os.path.abspath(root))
    if rel == os.pardir or rel.startswith(os.pardir + os.sep):
        return None
    return Path(rel).as_posix()


def _iter_files_under(root: Path) -> Iterable[Path]:
    # symlinks are entries of their own; linked directories are not descended into
    return (p for p in sorted(root.rglob("*")) if p.is_symlink() or p.is_file())


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    for g in globs:
        if rel_path.match(g):
            return True
        # "dir/**" also covers files directly below dir
        if g.endswith("/**") and f"{rel}/".startswith(g[:-2]):
            return True
    return False


def _fingerprint(path: Path) -> str:
    if path.is_symlink():
        return "link:" + os.readlink(path)
    return _hash_file_contents(path)


def _hash_file_contents(path: Path, chunk_size: int = 1 << 20) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: List[str]) -> List[Path]:
    """
    Expand patterns into existing paths under root, first match first:
    a file ("poetry.lock"), a directory ("target/") or a glob ("**/*.lock").
    """
    found: Dict[str, Path] = {}
    for pat in (p.strip() for p in patterns):
        if not pat:
            continue
        direct = root / pat
        matches = [direct] if direct.exists() or direct.is_symlink() else sorted(root.glob(pat))
        for m in matches:
            found.setdefault(os.path.abspath(m), m)
    return list(found.values())


def _iter_matched_files(root: Path, patterns: List[str], excludes: List[str]) -> Iterator[Tuple[str, Path]]:
    for p in _resolve_globs(root, patterns):
        if p.is_symlink() or p.is_file():
            files = [p]
        elif p.is_dir():
            files = list(_iter_files_under(p))
        else:
            continue
        for f in files:
            rel = _relpath(f, root)
            if rel is None:
                log.warning("cache: ignoring %s, it is outside %s", f, root)
                continue
            if not _matches_any_glob(rel, excludes):
                yield rel, f


def hash_files(root: str | Path, patterns: List[str], *, excludes: Optional[List[str]] = None) -> str:
    """
    Fingerprint the files matched by patterns: relative paths + contents
    (a symlink contributes its target path, not what it points to),
    in a stable order. No matches hash to a fixed value, not an error.
    """
    root_p = Path(root).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
    fps = sorted((rel, _fingerprint(f)) for rel, f in _iter_matched_files(root_p, patterns, exclude_globs))
    return _sha256_str(_json_dumps_stable({"files": fps}))


_PLACEHOLDER = re.compile(r"\{([a-z]+)(?::([^}]*))?\}")
_PLACEHOLDER_NAMES = ("hash", "job", "os", "env")


def check_cache_key_template(template: str) -> None:
    """Reject unknown or incomplete placeholders before anything runs."""
    for m in _PLACEHOLDER.finditer(template):
        name, arg = m.group(1), m.group(2)
        if name not in _PLACEHOLDER_NAMES:
            raise ConfigurationError(f"Cache key {template!r}: unknown placeholder {{{name}}}")
        if name in ("hash", "env") and not (arg or "").strip():
            raise ConfigurationError(f"Cache key {template!r}: {{{name}:...}} needs an argument")


def resolve_cache_key(
    template: str,
    workspace: str | Path = ".",
    *,
    job: str = "",
    env: Optional[Dict[str, str]] = None,
) -> str:
    """
    Expand a cache key template into a concrete key.

      {hash:a.lock,b/**}  sha256 fingerprint of the matched files
      {job}               job name
      {os}                platform, e.g. "linux-x86_64"
      {env:NAME}          value of an environment variable ("" if unset)
    """
    check_cache_key_template(template)
    env = os.environ if env is None else env

    def expand(m: re.Match) -> str:
        name, arg = m.group(1), m.group(2)
        if name == "hash":
            return hash_files(workspace, [a for a in arg.split(",") if a.strip()])
        if name == "job":
            return job
        if name == "os":
            return f"{platform.system().lower()}-{platform.machine().lower()}"
        return env.get(arg, "")

    return _PLACEHOLDER.sub(expand, template)


# ---------------------------------------------------------------------
# Blob packing
# ---------------------------------------------------------------------

def pack_paths(workspace: str | Path, paths: List[str], *, excludes: Optional[List[str]] = None) -> bytes:
    """
    Pack files under `paths` (relative to workspace) into a tar.gz.

    The archive is byte-for-byte reproducible for identical file contents:
    members are sorted and mtimes/owners are zeroed, so saving unchanged
    state again never trips the write-once check. Symlinks are stored as
    links (a virtualenv's interpreter link stays a link).
    """
    root = Path(workspace).resolve()
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
    members = sorted(dict(_iter_matched_files(root, paths, exclude_globs)).items())

    buf = io.BytesIO()
    with gzip.GzipFile(fileobj=buf, mode="wb", mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for rel, f in members:
                info = tar.gettarinfo(str(f), arcname=rel)
                info.mtime = 0
                info.uid = info.gid = 0
                info.uname = info.gname = ""
                if info.issym():
                    tar.addfile(info)
                    continue
                if info.islnk():
                    # hard link to an earlier member: store the content again
                    info.type = tarfile.REGTYPE
                    info.linkname = ""
                    info.size = f.stat().st_size
                with f.open("rb") as fh:
                    tar.addfile(info, fileobj=fh)
    return buf.getvalue()


def unpack_blob(blob: bytes, workspace: str | Path) -> List[str]:
    """Extract a packed blob into workspace. Returns the restored relative paths."""
    root = Path(workspace).resolve()
    restored: List[str] = []
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        for member in tar.getmembers():
            dest = Path(os.path.abspath(root / member.name))
            if not dest.is_relative_to(root) or not dest.parent.resolve().is_relative_to(root):
                log.warning("cache: refusing to restore %r outside the workspace", member.name)
                continue

            if member.issym():
                if dest.is_dir() and not dest.is_symlink():
                    log.warning("cache: not replacing directory %s with a symlink", member.name)
                    continue
                dest.parent.mkdir(parents=True, exist_ok=True)
                if dest.is_symlink() or dest.exists():
                    dest.unlink()
                # the link target itself may point anywhere, e.g. a system interpreter
                os.symlink(member.linkname, dest)
                restored.append(member.name)
                continue

            if not member.isfile():
                continue
            target = dest.resolve()
            if not target.is_relative_to(root):
                log.warning("cache: refusing to restore %r outside the workspace", member.name)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            src = tar.extractfile(member)
            if src is None:
                continue
            with src, target.open("wb") as out:
                out.write(src.read())
            os.chmod(target, member.mode & 0o777)
            restored.append(member.name)
    return restored


# ---------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------

class CacheStore:
    """
    File-based, content-addressed cache store shared by every job executor.

    - put() is write-once per key and idempotent for identical content
    - get() pins the entry so an eviction sweep cannot remove it mid-read
    - evict() drops least-recently-used entries while over capacity_bytes
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR, capacity_bytes: Optional[int] = None):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.capacity_bytes = capacity_bytes

        self._lock = threading.Lock()  # guards the maps below
        self._index: Dict[str, CacheEntry] = {}
        self._pins: Dict[str, int] = {}
        self._key_locks: Dict[str, threading.Lock] = {}
        self._load_index()

    # ---- paths / locks ----

    def _slot(self, key: str) -> str:
        return _sha256_str(key)

    def blob_path(self, key: str) -> Path:
        return self.root / f"{self._slot(key)}.blob"

    def meta_path(self, key: str) -> Path:
        return self.root / f"{self._slot(key)}.json"

    def _key_lock(self, key: str) -> threading.Lock:
        with self._lock:
            return self._key_locks.setdefault(key, threading.Lock())

    def _load_index(self) -> None:
        for meta in sorted(self.root.glob("*.json")):
            try:
                entry = CacheEntry(**json.loads(meta.read_text(encoding="utf-8")))
            except (OSError, ValueError, TypeError) as e:
                log.warning("cache: ignoring unreadable metadata %s: %s", meta.name, e)
                continue
            if self.blob_path(entry.key).exists():
                self._index[entry.key] = entry

    def _write_meta(self, entry: CacheEntry) -> None:
        meta = self.meta_path(entry.key)
        tmp = meta.with_suffix(f".json.{threading.get_ident()}.tmp")
        tmp.write_text(json.dumps(asdict(entry), sort_keys=True), encoding="utf-8")
        tmp.replace(meta)

    @contextmanager
    def _pinned(self, key: str) -> Iterator[None]:
        with self._lock:
            self._pins[key] = self._pins.get(key, 0) + 1
        try:
            yield
        finally:
            with self._lock:
                self._pins[key] -= 1
                if not self._pins[key]:
                    del self._pins[key]

    # ---- public API ----

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._index

    def entries(self) -> List[CacheEntry]:
        with self._lock:
            return sorted(self._index.values(), key=lambda e: e.last_access)

    @property
    def total_size(self) -> int:
        with self._lock:
            return sum(e.size for e in self._index.values())

    def put(self, key: str, blob: bytes) -> CacheEntry:
        """
        Store blob under key.

        Raises CacheIntegrityError if key already holds different content.
        Concurrent puts of the same key serialize on a per-key lock, so at
        most one of them writes and every caller with identical bytes succeeds.
        """
        digest = _sha256_bytes(blob)
        with self._key_lock(key):
            with self._lock:
                existing = self._index.get(key)
            if existing is not None:
                if existing.digest != digest:
                    raise CacheIntegrityError(
                        "Cache key already holds different content",
                        details={"key": key, "stored": existing.digest[:12], "new": digest[:12]},
                    )
                return existing

            art = self.blob_path(key)
            tmp = art.with_suffix(f".blob.{threading.get_ident()}.tmp")
            try:
                tmp.write_bytes(blob)
                tmp.replace(art)
            finally:
                tmp.unlink(missing_ok=True)

            now = time.time()
            entry = CacheEntry(key=key, digest=digest, size=len(blob), created_at=now, last_access=now)
            self._write_meta(entry)
            with self._lock:
                self._index[key] = entry
            log.debug("cache: saved %s (%d bytes)", key, len(blob))

        if self.capacity_bytes is not None:
            self.evict()
        return entry

    def get(self, key: str) -> Optional[bytes]:
        """Return the blob for key, or None on a miss."""
        with self._pinned(key):
            with self._lock:
                entry = self._index.get(key)
            if entry is None:
                return None
            try:
                blob = self.blob_path(key).read_bytes()
            except FileNotFoundError:
                log.warning("cache: blob for %s is missing, dropping the entry", key)
                self._drop(key, entry)
                return None
            if _sha256_bytes(blob) != entry.digest:
                log.warning("cache: corrupt blob for %s, dropping the entry", key)
                self._drop(key, entry)
                return None
            entry.last_access = time.time()
            self._write_meta(entry)
            return blob

    # Backend-interface names
    def restore(self, key: str) -> Optional[bytes]:
        return self.get(key)

    def save(self, key: str, blob: bytes) -> bool:
        self.put(key, blob)
        return True

    def _drop(self, key: str, entry: CacheEntry) -> None:
        """Forget a damaged entry so the next put() under key can write again."""
        with self._key_lock(key):
            with self._lock:
                if self._index.get(key) is not entry:
                    return  # already replaced
                del self._index[key]
            self._unlink(key)

    def _unlink(self, key: str) -> None:
        self.blob_path(key).unlink(missing_ok=True)
        self.meta_path(key).unlink(missing_ok=True)

    def _remove(self, key: str) -> bool:
        """Remove one entry unless it is pinned. Takes the entry's lock briefly."""
        with self._key_lock(key):
            with self._lock:
                if self._pins.get(key) or key not in self._index:
                    return False
                del self._index[key]
            self._unlink(key)
        log.debug("cache: evicted %s", key)
        return True

    def evict(self, capacity_bytes: Optional[int] = None) -> List[str]:
        """Drop least-recently-used entries until the store fits capacity_bytes."""
        capacity = self.capacity_bytes if capacity_bytes is None else capacity_bytes
        if capacity is None:
            return []
        removed: List[str] = []
        for entry in self.entries():
            if self.total_size <= capacity:
                break
            if self._remove(entry.key):
                removed.append(entry.key)
        return removed

    def prune(self, max_age: float) -> List[str]:
        """Drop entries not accessed within max_age seconds."""
        cutoff = time.time() - max_age
        return [e.key for e in self.entries() if e.last_access < cutoff and self._remove(e.key)]
