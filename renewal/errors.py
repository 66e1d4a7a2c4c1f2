"""
Error taxonomy for one renewal run.

Every error raised by a renewal component derives from RenewalError so the
CLI can report a failed run with one except clause.  ACME-phase errors keep
the authority's RFC 7807 problem document (type + detail) in ``problem``;
the underlying transport/protocol exception is always chained with
``raise ... from``.
"""
from __future__ import annotations

from typing import Optional


class RenewalError(Exception):
    """Base class for all failures of a renewal run."""


class FirewallUpdateError(RenewalError):
    """The perimeter rule could not be found or its action could not be persisted."""


class PublishError(RenewalError):
    """The challenge response could not be written to object storage."""


class PackagingError(RenewalError):
    """The issued certificate could not be turned into a PKCS#12 package."""


class GatewayUpdateError(RenewalError):
    """The gateway rejected the new certificate or the slot does not exist."""


# ─── ACME phase ───────────────────────────────────────────────────────────────


class AcmePhaseError(RenewalError):
    """Fatal for the run; never retried until the next scheduled run."""

    def __init__(self, message: str, problem: Optional[dict] = None) -> None:
        self.problem = problem or {}
        super().__init__(message)

    @property
    def problem_type(self) -> str:
        return self.problem.get("type", "")

    @property
    def detail(self) -> str:
        return self.problem.get("detail", "")


class DirectoryError(AcmePhaseError):
    pass


class AccountError(AcmePhaseError):
    pass


class OrderError(AcmePhaseError):
    pass


class AuthorizationError(AcmePhaseError):
    pass


class ChallengeError(AcmePhaseError):
    pass


class FinalizationError(AcmePhaseError):
    pass


class PollingTimeoutError(AcmePhaseError):
    """The authority did not reach the awaited order state before the deadline."""
