"""deliverybot: purchase delivery over Discord."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("deliverybot")
except PackageNotFoundError:  # source checkout without install
    __version__ = "0.0.0"

__all__ = ["__version__"]
