"""Centralized constants for plugin operations, branch labels and engine limits.

This module provides a single source of truth for operation names
and engine-wide defaults, eliminating duplicate string arrays across the
codebase.
"""

from typing import FrozenSet

# Plugin version recorded in checksums for nodes without an explicit version
BUILTIN_PLUGIN_VERSION = 'builtin'

# =============================================================================
# PLUGIN OPERATIONS
# =============================================================================

TEXT_TRANSFORM_OPERATIONS: FrozenSet[str] = frozenset([
    'caesar',
    'reverse',
    'sha256',
    'uppercase',
    'lowercase',
])

DATA_AGGREGATOR_OPERATIONS: FrozenSet[str] = frozenset([
    'merge',
    'pick',
    'omit',
    'map',
    'filter',
    'reduce',
    'flatten',
])

# =============================================================================
# EDGE CONDITIONS (IF branches)
# =============================================================================

TRUE_BRANCH_LABELS: FrozenSet[str] = frozenset(['true', 'IF'])
FALSE_BRANCH_LABELS: FrozenSet[str] = frozenset(['false', 'ELSE'])

# =============================================================================
# RETRY DEFAULTS
# =============================================================================

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_MS = 1000
DEFAULT_BACKOFF_MULTIPLIER = 2.0
MAX_BACKOFF_MS = 60_000
BACKOFF_JITTER_RATIO = 0.2

# =============================================================================
# CACHE KEYS
# =============================================================================

API_PROXY_CACHE_PREFIX = 'apiproxy'
DLQ_KEY_PREFIX = 'dlq'
