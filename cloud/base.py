"""
Cloud capabilities used by a renewal run.

  ObjectStore     — write / delete one object (the challenge response file)
  FirewallClient  — read a perimeter rule and flip its action
  GatewayClient   — read the full gateway config, replace a certificate slot,
                    write the full config back

Implementations raise CloudError (or a subclass) for any backend failure;
the renewal components translate those into their own error types.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from renewal.models import CertificatePackage, RuleAction


class CloudError(Exception):
    """A backend call failed."""


class SlotNotFoundError(CloudError):
    """The gateway configuration has no certificate slot with the given name."""


# ─── Object storage ───────────────────────────────────────────────────────────


class ObjectStore(ABC):
    @abstractmethod
    def put_object(self, container: str, path: str, data: bytes, content_type: str) -> None:
        """Create or overwrite *path* in *container*."""

    @abstractmethod
    def delete_object(self, container: str, path: str) -> None:
        """Delete *path*.  Deleting an object that does not exist is not an error."""


# ─── Firewall ─────────────────────────────────────────────────────────────────


class FirewallClient(ABC):
    @abstractmethod
    def get_rule(self, resource_group: str, group: str, name: str) -> Optional[dict]:
        """Return the rule document, or None when the group has no such rule."""

    @abstractmethod
    def set_rule_action(
        self, resource_group: str, group: str, name: str, action: "RuleAction"
    ) -> None:
        """Persist *action* on the rule.  Must not return before the write is accepted."""


# ─── Gateway ──────────────────────────────────────────────────────────────────


class GatewayClient(ABC):
    @abstractmethod
    def get_config(self, resource_group: str, name: str) -> dict:
        """Fetch the complete gateway configuration document."""

    @abstractmethod
    def set_certificate(self, config: dict, slot_name: str, package: "CertificatePackage") -> dict:
        """
        Return a copy of *config* with the named slot holding *package*.
        Raises SlotNotFoundError when the slot does not exist.
        """

    @abstractmethod
    def apply(self, config: dict) -> None:
        """Write the complete configuration back as one update."""
