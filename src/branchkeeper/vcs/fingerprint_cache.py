"""Memoized git answers keyed by commit fingerprints.

Three questions are cached independently: is a branch behind its base, has
someone other than the bot modified it, and does it conflict with its base.
Each answer is stored under the full ``(branch, branch_sha, base, base_sha)``
key and is only ever returned for that exact key. When a branch moves to a
new sha its older entries are dropped; an existing entry is never rewritten.

Storage goes through the :class:`CacheStore` port. :class:`RepositoryCacheStore`
persists one JSON document per repository (atomic temp-file + rename writes);
:class:`MemoryCacheStore` keeps everything in process.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from ..observability import log_debug, log_warning

BEHIND_BASE = "behind_base"
MODIFIED = "modified"
CONFLICTED = "conflicted"
BRANCH_FINGERPRINTS = "branch_fingerprints"

CACHE_SCHEMA_VERSION = 1


class CacheStore(Protocol):
    """Repository-scoped key/value storage."""

    def get(self, namespace: str, key: str) -> Any: ...

    def set(self, namespace: str, key: str, value: Any) -> None: ...

    def delete(self, namespace: str) -> None: ...

    def clear(self) -> None: ...


class MemoryCacheStore:
    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, namespace: str, key: str) -> Any:
        with self._lock:
            return self._data.get(namespace, {}).get(key)

    def set(self, namespace: str, key: str, value: Any) -> None:
        with self._lock:
            self._data.setdefault(namespace, {})[key] = value

    def delete(self, namespace: str) -> None:
        with self._lock:
            self._data.pop(namespace, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


def _repository_id(repository: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "_", repository).strip("_") or "repository"
    digest = hashlib.sha256(repository.encode("utf-8")).hexdigest()[:12]
    return f"{slug[:80]}-{digest}"


class RepositoryCacheStore:
    """JSON-file backed store, one document per repository.

    The file is read once on construction; every ``set`` rewrites it
    atomically. A missing or corrupted file starts an empty cache.
    """

    def __init__(self, cache_dir: Path, repository: str):
        self.path = Path(cache_dir) / "repository" / f"{_repository_id(repository)}.json"
        self.repository = repository
        self._lock = threading.Lock()
        self._data: Dict[str, Dict[str, Any]] = self._read()

    def _read(self) -> Dict[str, Dict[str, Any]]:
        try:
            if self.path.exists():
                payload = json.loads(self.path.read_text(encoding="utf-8"))
                if payload.get("version") != CACHE_SCHEMA_VERSION:
                    log_debug("[CACHE] Discarding cache with old schema", path=str(self.path))
                    return {}
                if payload.get("repository") != self.repository:
                    log_warning("[CACHE] Cache file belongs to another repository", path=str(self.path))
                    return {}
                data = payload.get("data", {})
                if not isinstance(data, dict):
                    raise TypeError("cache data is not an object")
                return data
        except json.JSONDecodeError as e:
            log_warning(f"[CACHE] Corrupted cache file at {self.path}, starting empty. JSON error: {e}")
        except (KeyError, TypeError, AttributeError) as e:
            log_warning(f"[CACHE] Invalid cache structure at {self.path}, starting empty: {e}")
        return {}

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "version": CACHE_SCHEMA_VERSION,
            "repository": self.repository,
            "data": self._data,
        }
        fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".repo_cache_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, sort_keys=True)
            os.replace(temp_path, self.path)
        except Exception:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass
            raise

    def get(self, namespace: str, key: str) -> Any:
        with self._lock:
            return self._data.get(namespace, {}).get(key)

    def set(self, namespace: str, key: str, value: Any) -> None:
        with self._lock:
            self._data.setdefault(namespace, {})[key] = value
            self._write()

    def delete(self, namespace: str) -> None:
        with self._lock:
            if self._data.pop(namespace, None) is not None:
                self._write()

    def clear(self) -> None:
        """Drop every cached answer for the repository (repository reset)."""
        with self._lock:
            self._data = {}
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass


@dataclass(frozen=True)
class FingerprintKey:
    branch: str
    branch_sha: Optional[str]
    base: Optional[str] = None
    base_sha: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "branch_sha": self.branch_sha,
            "base": self.base,
            "base_sha": self.base_sha,
        }


class FingerprintCache:
    """One question's answers, e.g. ``conflicted``.

    Entries are kept per branch as a list of ``{key..., "result": bool}``.
    """

    def __init__(self, store: CacheStore, question: str):
        self.store = store
        self.question = question

    def get(self, key: FingerprintKey) -> Optional[bool]:
        if not key.branch_sha:
            return None
        entries = self.store.get(self.question, key.branch) or []
        wanted = key.to_dict()
        for entry in entries:
            if all(entry.get(name) == value for name, value in wanted.items()):
                result = entry.get("result")
                if isinstance(result, bool):
                    return result
        return None

    def set(self, key: FingerprintKey, value: bool) -> None:
        if not key.branch_sha:
            return
        wanted = key.to_dict()
        entries = self.store.get(self.question, key.branch) or []
        kept = []
        for entry in entries:
            if entry.get("branch_sha") != key.branch_sha:
                # Branch moved on; old answers can never match again
                continue
            if all(entry.get(name) == val for name, val in wanted.items()):
                log_debug(
                    "[CACHE] Entry already recorded",
                    question=self.question,
                    branch=key.branch,
                )
                return
            kept.append(entry)
        kept.append({**wanted, "result": bool(value)})
        self.store.set(self.question, key.branch, kept)


class FingerprintCaches:
    """The three fingerprint caches plus the branch content fingerprints."""

    def __init__(self, store: CacheStore):
        self.store = store
        self.behind_base = FingerprintCache(store, BEHIND_BASE)
        self.modified = FingerprintCache(store, MODIFIED)
        self.conflicted = FingerprintCache(store, CONFLICTED)

    @classmethod
    def from_store(cls, store: CacheStore) -> "FingerprintCaches":
        return cls(store)

    def get_branch_fingerprint(self, branch: str, branch_sha: Optional[str]) -> Optional[str]:
        if not branch_sha:
            return None
        entry = self.store.get(BRANCH_FINGERPRINTS, branch)
        if isinstance(entry, dict) and entry.get("branch_sha") == branch_sha:
            return entry.get("fingerprint")
        return None

    def set_branch_fingerprint(self, branch: str, branch_sha: str, fingerprint: str) -> None:
        self.store.set(
            BRANCH_FINGERPRINTS,
            branch,
            {"branch_sha": branch_sha, "fingerprint": fingerprint},
        )

    def reset(self) -> None:
        self.store.clear()
