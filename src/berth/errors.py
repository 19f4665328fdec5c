"""Host-side exception types.

Only configuration problems are raised to callers. Everything that goes wrong
while a container is running is folded into a ``ContainerOutput`` value.
"""

from __future__ import annotations


class BerthError(Exception):
    """Base class for berth errors."""


class ConfigurationError(BerthError, ValueError):
    """Invalid configuration detected at startup or before a spawn."""
