"""
Error taxonomy for the sync daemon.

- UnavailableError: the local store API is unreachable or answered with a
  non-success status. Retried with bounded attempts at startup, skipped
  mid-loop.
- CredentialError: the signing key cannot be read or the token cannot be
  signed. Surfaces as a connect failure.
- TransportError: broker-level failure. Logged, never fatal.
- MalformedMessageError: an inbound broker message could not be decoded or
  parsed. Logged and dropped.
- StartupError: a startup step exhausted its retries. The only fatal error.

CHANGELOG:
- 2026-10-12: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all sync daemon errors."""


class UnavailableError(SyncError):
    """The local store API could not serve the request."""


class CredentialError(SyncError):
    """A broker credential could not be produced."""


class TransportError(SyncError):
    """The broker transport reported a failure."""


class MalformedMessageError(SyncError):
    """An inbound broker message could not be decoded."""


class StartupError(SyncError):
    """A startup step failed permanently; the process must exit."""
