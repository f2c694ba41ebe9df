from __future__ import annotations

# Runtime package version from the installed distribution metadata.
try:
    from importlib.metadata import version as _pkg_version

    __version__ = _pkg_version("tasktree")
except Exception:  # pragma: no cover
    # source checkout without an install
    __version__ = "0.0.0"

from .coordinator.coordinator import CompletionReport, Coordinator
from .core.config import CoordinatorConfig

__all__ = [
    "CompletionReport",
    "Coordinator",
    "CoordinatorConfig",
    "__version__",
]
