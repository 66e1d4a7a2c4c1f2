"""
Data model for one renewal run.

Design notes:
  - RenewalRequest is built once at process start (see config.Settings.to_request)
    and passed explicitly; components never read settings themselves.
  - The firewall target is a single optional object, so "some firewall fields
    set, others missing" cannot be represented past construction.
  - AcmeOrder is the only mutable record.  It is owned by AcmeOrderDriver and
    thrown away at the end of the run.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes

CHALLENGE_PATH_PREFIX = ".well-known/acme-challenge"


# ─── Request ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StorageTarget:
    account: str
    container: str
    resource_group: str = ""


@dataclass(frozen=True)
class GatewayTarget:
    resource_group: str
    name: str


@dataclass(frozen=True)
class FirewallTarget:
    resource_group: str
    group: str          # network security group holding the rule
    rule: str

    @classmethod
    def from_parts(
        cls, resource_group: str, group: str, rule: str
    ) -> Optional["FirewallTarget"]:
        """Return a target when all parts are set, None when none are set."""
        parts = [resource_group, group, rule]
        if not any(parts):
            return None
        if not all(parts):
            raise ValueError(
                "Firewall resource group, group and rule must be set together "
                f"(got resource_group={resource_group!r}, group={group!r}, rule={rule!r})"
            )
        return cls(resource_group=resource_group, group=group, rule=rule)


@dataclass(frozen=True)
class RenewalRequest:
    domain: str
    contact_email: str
    gateway: GatewayTarget
    certificate_slot: str
    package_secret: str = field(repr=False)
    storage: StorageTarget
    firewall: Optional[FirewallTarget] = None

    def __post_init__(self) -> None:
        if not self.domain:
            raise ValueError("domain is required")
        if not self.certificate_slot:
            raise ValueError("certificate_slot is required")
        if not self.package_secret:
            raise ValueError("package_secret is required")


# ─── Firewall ─────────────────────────────────────────────────────────────────


class FirewallState(enum.Enum):
    CLOSED = "closed"
    OPEN = "open"


class RuleAction(str, enum.Enum):
    ALLOW = "Allow"
    DENY = "Deny"


# ─── ACME ─────────────────────────────────────────────────────────────────────


class DriverStep(enum.Enum):
    INIT = "init"
    DIRECTORY_FETCHED = "directory_fetched"
    ACCOUNT_READY = "account_ready"
    ORDER_CREATED = "order_created"
    AUTHORIZATION_FETCHED = "authorization_fetched"
    CHALLENGE_READY = "challenge_ready"
    CHALLENGE_PUBLISHED = "challenge_published"
    CHALLENGE_COMPLETED = "challenge_completed"
    FINALIZING = "finalizing"
    ISSUED = "issued"
    INVALID = "invalid"


@dataclass(frozen=True)
class ChallengeArtifact:
    token: str
    content: str        # key authorization: token + "." + account key thumbprint

    @property
    def path(self) -> str:
        """Object path relative to the container root."""
        return f"{CHALLENGE_PATH_PREFIX}/{self.token}"

    @property
    def url_path(self) -> str:
        return f"/{self.path}"


@dataclass
class AcmeOrder:
    domain: str
    step: DriverStep = DriverStep.INIT
    directory: dict = field(default_factory=dict)
    account_url: str = ""
    nonce: str = ""
    order_url: str = ""
    status: str = ""                        # pending | ready | processing | valid | invalid
    authorization_url: str = ""
    challenge_url: str = ""
    finalize_url: str = ""
    certificate_url: Optional[str] = None


@dataclass(frozen=True)
class IssuedCertificate:
    domain: str
    full_chain_pem: str                     # as delivered by the authority
    private_key_pem: str = field(repr=False)


# ─── Packaging / result ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class CertificatePackage:
    pfx: bytes = field(repr=False)
    password: str = field(repr=False)
    certificate: x509.Certificate
    private_key: PrivateKeyTypes = field(repr=False)
    chain: List[x509.Certificate]           # issuer of the leaf first, top-most last
    friendly_name: str = ""


@dataclass(frozen=True)
class RenewalResult:
    domain: str
    serial_number: int
    not_valid_after: datetime
    firewall_managed: bool
