"""Metrics exported by the messaging backend."""

from . import metrics, registry

__all__ = ["metrics", "registry"]
