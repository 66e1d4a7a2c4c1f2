"""
GatewayClient backed by an Azure Application Gateway.

Replacing a certificate is a full-resource update: GET the gateway, swap the
PFX of one entry in ``properties.sslCertificates``, PUT the whole document.
Resource Manager applies the PUT as a single operation; the previous
certificate stays in service until it succeeds.
"""
from __future__ import annotations

import base64
import copy
import logging

from cloud.arm import ArmSession
from cloud.base import GatewayClient, SlotNotFoundError
from renewal.models import CertificatePackage

logger = logging.getLogger(__name__)

_NETWORK_API_VERSION = "2023-09-01"


class AppGatewayClient(GatewayClient):
    def __init__(self, arm: ArmSession) -> None:
        self.arm = arm

    def get_config(self, resource_group: str, name: str) -> dict:
        path = self.arm.resource_path(resource_group, f"Microsoft.Network/applicationGateways/{name}")
        return self.arm.get(path, _NETWORK_API_VERSION)

    def set_certificate(self, config: dict, slot_name: str, package: CertificatePackage) -> dict:
        updated = copy.deepcopy(config)
        slots = updated.get("properties", {}).get("sslCertificates", [])
        for slot in slots:
            if slot.get("name") == slot_name:
                props = slot.setdefault("properties", {})
                props["data"] = base64.b64encode(package.pfx).decode("ascii")
                props["password"] = package.password
                # A Key Vault reference would take precedence over inline data.
                props.pop("keyVaultSecretId", None)
                props.pop("publicCertData", None)
                return updated
        available = ", ".join(s.get("name", "?") for s in slots) or "none"
        raise SlotNotFoundError(
            f"Gateway {config.get('name', '?')!r} has no certificate {slot_name!r} (available: {available})"
        )

    def apply(self, config: dict) -> None:
        resource_id = config.get("id")
        if not resource_id:
            raise ValueError("Gateway configuration has no resource id")
        logger.info("Writing configuration of gateway %s", config.get("name", resource_id))
        self.arm.put(resource_id, config, _NETWORK_API_VERSION)
