"""
GatewayInstaller — puts the new package into the gateway's certificate slot.

Read the whole gateway configuration, replace one slot, write the whole
configuration back.  On failure the gateway keeps serving its previous
certificate.
"""
from __future__ import annotations

import logging

from cloud.base import CloudError, GatewayClient, SlotNotFoundError
from renewal.errors import GatewayUpdateError
from renewal.models import CertificatePackage, GatewayTarget

logger = logging.getLogger(__name__)


class GatewayInstaller:
    def __init__(self, client: GatewayClient) -> None:
        self.client = client

    def install(self, gateway: GatewayTarget, slot_name: str, package: CertificatePackage) -> None:
        try:
            config = self.client.get_config(gateway.resource_group, gateway.name)
            updated = self.client.set_certificate(config, slot_name, package)
            self.client.apply(updated)
        except SlotNotFoundError as exc:
            raise GatewayUpdateError(str(exc)) from exc
        except (CloudError, ValueError) as exc:
            raise GatewayUpdateError(
                f"Updating certificate {slot_name!r} on gateway {gateway.name!r} failed: {exc}"
            ) from exc
        logger.info(
            "Installed certificate %s (expires %s) in slot %s of gateway %s",
            package.friendly_name, package.certificate.not_valid_after_utc.isoformat(),
            slot_name, gateway.name,
        )
