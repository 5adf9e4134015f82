"""
Build caches - keyed restore/save of directory trees

A BuildCache renders its key templates once per run, restores by walking
its restore keys (exact match first, then the most recent prefix match)
and saves either in place (overwrite) or as a new entry (append).
"""
import hashlib
import logging
import platform
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional
from ..errors import CacheCorruptError, CacheError, ConfigurationError
from ..interfaces import ICacheStore
from ..models import CacheEntry, RestoreResult
from .archive import pack_paths, unpack_overlay

logger = logging.getLogger(__name__)

MODE_OVERWRITE = "overwrite"
MODE_APPEND = "append"
SAVE_ALWAYS = "always"
SAVE_ON_SUCCESS = "on_success"

_PLACEHOLDER_RE = re.compile(r"\{([^{}]+)\}")


@dataclass
class CacheSpec:
    """Declarative cache definition from the pipeline file"""
    name: str
    key: str
    paths: List[str]
    restore_keys: List[str] = field(default_factory=list)
    mode: str = MODE_OVERWRITE
    save_when: str = SAVE_ALWAYS

    def validate(self) -> None:
        if self.mode not in (MODE_OVERWRITE, MODE_APPEND):
            raise ConfigurationError(f"Cache {self.name}: unknown mode '{self.mode}'")
        if self.save_when not in (SAVE_ALWAYS, SAVE_ON_SUCCESS):
            raise ConfigurationError(f"Cache {self.name}: unknown save_when '{self.save_when}'")
        if not self.paths:
            raise ConfigurationError(f"Cache {self.name}: no paths configured")
        for template in [self.key] + self.restore_keys:
            for placeholder in _PLACEHOLDER_RE.findall(template):
                if placeholder not in ('arch', 'branch', 'epoch') and not placeholder.startswith('checksum:'):
                    raise ConfigurationError(f"Cache {self.name}: unknown placeholder {{{placeholder}}}")


@dataclass
class KeyContext:
    """Values substituted into cache key templates"""
    root: Path
    branch: str = "main"
    arch: str = field(default_factory=platform.machine)
    epoch: int = field(default_factory=lambda: int(time.time()))


def file_checksum(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def render_key(template: str, context: KeyContext) -> str:
    """Substitute {arch}, {branch}, {epoch} and {checksum:FILE}"""
    def substitute(match):
        placeholder = match.group(1)
        if placeholder == 'arch':
            return context.arch
        if placeholder == 'branch':
            return context.branch
        if placeholder == 'epoch':
            return str(context.epoch)
        if placeholder.startswith('checksum:'):
            path = Path(context.root) / placeholder.split(':', 1)[1]
            try:
                return file_checksum(path)
            except OSError as e:
                raise ConfigurationError(f"Cannot checksum {path} for cache key: {e}")
        raise ConfigurationError(f"Unknown cache key placeholder {{{placeholder}}}")
    return _PLACEHOLDER_RE.sub(substitute, template)


class BuildCache:
    """One keyed cache over a store"""

    def __init__(self, spec: CacheSpec, store: ICacheStore, context: KeyContext):
        spec.validate()
        self.spec = spec
        self.store = store
        self.context = context
        self.key = render_key(spec.key, context)
        self.restore_keys = self._lookup_order()

    def _lookup_order(self) -> List[str]:
        keys = [self.key]
        for template in self.spec.restore_keys:
            rendered = render_key(template, self.context)
            if rendered not in keys:
                keys.append(rendered)
        return keys

    @property
    def name(self) -> str:
        return self.spec.name

    def _candidates(self, lookup_key: str) -> List[str]:
        matches = [entry.key for entry in self.store.entries(lookup_key)]
        if lookup_key in matches:
            matches.remove(lookup_key)
            matches.insert(0, lookup_key)
        return matches

    def restore(self) -> RestoreResult:
        """Restore the best available entry over the cached paths"""
        result = RestoreResult(cache_name=self.name, requested_keys=list(self.restore_keys))
        tried = set()
        try:
            for tier, lookup_key in enumerate(self.restore_keys):
                for candidate in self._candidates(lookup_key):
                    if candidate in tried:
                        continue
                    tried.add(candidate)
                    if self._restore_entry(candidate, result):
                        result.hit_key = candidate
                        result.tier = tier
                        result.exact_hit = candidate == self.key
                        logger.info(f"Cache {self.name}: restored {candidate} "
                                    f"({'exact' if result.exact_hit else f'tier {tier}'})")
                        return result
        except CacheError as e:
            logger.warning(f"Cache {self.name}: store unavailable during restore, starting cold: {e}")
            result.skipped_entries.append(f"<store>: {e}")
            return result

        logger.info(f"Cache {self.name}: no entry for {self.restore_keys}, starting cold")
        return result

    def _restore_entry(self, key: str, result: RestoreResult) -> bool:
        try:
            payload = self.store.get(key)
            if payload is None:
                return False
            unpack_overlay(payload, self.context.root)
            return True
        except CacheCorruptError as e:
            logger.warning(f"Cache {self.name}: skipping corrupt entry {key}: {e}")
            result.skipped_entries.append(key)
            return False

    def _save_key(self) -> str:
        if self.spec.mode == MODE_OVERWRITE:
            return self.key
        key = self.key
        suffix = 1
        while self.store.exists(key):
            key = f"{self.key}-{suffix}"
            suffix += 1
        return key

    def save(self) -> CacheEntry:
        """Archive the cached paths and store them under this run's key"""
        payload = pack_paths(self.context.root, self.spec.paths)
        key = self._save_key()
        entry = self.store.put(key, payload)
        logger.info(f"Cache {self.name}: saved {key} ({entry.size} bytes, mode {self.spec.mode})")
        return entry


class CacheScope:
    """Restore results and save outcomes of the caches around one job"""

    def __init__(self, caches: List[BuildCache]):
        self.caches = caches
        self.restores: Dict[str, RestoreResult] = {}
        self.saved: Dict[str, CacheEntry] = {}
        self.warnings: List[str] = []
        self.succeeded = False

    def exact_hit(self, name: Optional[str] = None) -> bool:
        """True when the named cache (or every cache) restored its exact key"""
        if name is not None:
            restore = self.restores.get(name)
            return bool(restore and restore.exact_hit)
        return bool(self.restores) and all(r.exact_hit for r in self.restores.values())


@contextmanager
def cache_scope(caches: List[BuildCache]):
    """
    Restore every cache before the body and save on every exit path.

    Caches with save_when=on_success are saved only when the body completes
    without raising. Save failures are collected as warnings and never
    replace the body's own exception.
    """
    scope = CacheScope(caches)
    for cache in caches:
        scope.restores[cache.name] = cache.restore()
    try:
        yield scope
        scope.succeeded = True
    finally:
        for cache in caches:
            if cache.spec.save_when == SAVE_ON_SUCCESS and not scope.succeeded:
                logger.info(f"Cache {cache.name}: job failed, skipping save")
                continue
            try:
                scope.saved[cache.name] = cache.save()
            except Exception as e:
                message = f"Cache {cache.name}: save failed: {e}"
                logger.error(message)
                scope.warnings.append(message)
