"""tuneforge: deploy and verify a fixed set of host tuning files.

Core design goals:
- One configuration state, deterministic rendering
- Atomic, symlink-safe installs
- Read-only diff
- Static and runtime verification kept apart
- Centralized logging
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
