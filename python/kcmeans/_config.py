"""Backend configuration for the kcmeans package.

Controls which engine computes level summaries and cluster-map lookups.

Resolution order (first match wins):
    1. The ``backend`` argument of the call.
    2. Programmatic override via :func:`set_backend`.
    3. The ``KCMEANS_BACKEND`` environment variable.
    4. ``"polars"``.

Valid backend names are ``"polars"`` and ``"duckdb"`` (case-insensitive).

Examples:
    Use DuckDB globally from the shell::

        export KCMEANS_BACKEND=duckdb

    Use DuckDB programmatically::

        import kcmeans
        kcmeans.set_backend("duckdb")

    Restore the default resolution order::

        kcmeans.set_backend("auto")
"""

from __future__ import annotations

import os

BACKENDS = ("polars", "duckdb")
DEFAULT_BACKEND = "polars"

# None means "no programmatic override has been set".
_backend_override: str | None = None


def get_backend() -> str:
    """Return the active default backend name (``"polars"`` or ``"duckdb"``)."""
    if _backend_override is not None:
        return _backend_override

    env = os.environ.get("KCMEANS_BACKEND", "").strip().lower()
    if env in BACKENDS:
        return env

    return DEFAULT_BACKEND


def set_backend(name: str) -> None:
    """Override the default backend.

    Args:
        name: One of ``"polars"``, ``"duckdb"``, or ``"auto"``
            (case-insensitive). ``"auto"`` clears the override.

    Raises:
        ValueError: If *name* is not a recognised backend.
    """
    global _backend_override
    key = name.strip().lower()
    if key == "auto":
        _backend_override = None
    elif key in BACKENDS:
        _backend_override = key
    else:
        raise ValueError(
            f"backend must be 'polars', 'duckdb' or 'auto', got '{name}'"
        )


def resolve_backend(backend: str | None) -> str:
    """Return *backend* if given (validated), else the active default."""
    if backend is None:
        return get_backend()
    key = backend.strip().lower()
    if key not in BACKENDS:
        raise ValueError(f"backend must be 'polars' or 'duckdb', got '{backend}'")
    return key
