"""Package-level exception types.

Convention:
- ``InvalidPathError``: a local path was empty or tried to leave the workspace. Raised before
  any filesystem or remote call is made.
- ``ConfigError``: configuration could not be resolved at activation time.
- ``ManagerClosedError``: a memory manager was used after ``close()``.
- ``RemoteProtocolError``: the remote service answered, but not with what the contract promises.

Remote HTTP failures are raised as ``ovmemory.remote.errors.OpenVikingHttpError`` and are
classified by ``ovmemory.remote.errors.classify_error``.
"""

from __future__ import annotations


class OVMemoryError(Exception):
    """Base class for errors raised by this package."""


class InvalidPathError(OVMemoryError, ValueError):
    """Raised when a relative path is empty or escapes the workspace root."""


class ConfigError(OVMemoryError):
    """Raised when plugin configuration is missing or invalid."""


class ManagerClosedError(OVMemoryError):
    """Raised when a closed memory manager is used."""


class RemoteProtocolError(OVMemoryError):
    """Raised when a remote response is missing data the caller depends on."""
