"""
Cache - dependency and fuzz-state caches over pluggable stores
"""
from .cache import BuildCache, CacheSpec, KeyContext, cache_scope, render_key
from .store import LocalCacheStore, ValkeyCacheStore, open_store

__all__ = [
    'BuildCache',
    'CacheSpec',
    'KeyContext',
    'cache_scope',
    'render_key',
    'LocalCacheStore',
    'ValkeyCacheStore',
    'open_store',
]
