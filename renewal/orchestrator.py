"""
RenewalOrchestrator — one unattended renewal run.

Sequence:
  open firewall → drive ACME order to ISSUED → package → retract challenge
  → close firewall → install on gateway

The firewall window is a context manager, so it is closed exactly once on
every exit path that opened it: normal completion, an ACME/packaging error,
or an interrupt during one of the polling waits.  Errors raised inside the
window propagate unchanged after that close.  Installation happens outside
the window; its failure needs no rollback because the gateway keeps its
previous certificate.
"""
from __future__ import annotations

import logging

from renewal.challenge import ChallengeChannel
from renewal.firewall import FirewallWindow
from renewal.installer import GatewayInstaller
from renewal.models import RenewalRequest, RenewalResult
from renewal.order import AcmeOrderDriver
from renewal.packager import CertificatePackager

logger = logging.getLogger(__name__)


class RenewalOrchestrator:
    def __init__(
        self,
        firewall: FirewallWindow,
        channel: ChallengeChannel,
        driver: AcmeOrderDriver,
        packager: CertificatePackager,
        installer: GatewayInstaller,
    ) -> None:
        self.firewall = firewall
        self.channel = channel
        self.driver = driver
        self.packager = packager
        self.installer = installer

    def run(self, request: RenewalRequest) -> RenewalResult:
        logger.info("Starting certificate renewal for %s", request.domain)

        with self.firewall:
            try:
                issued = self.driver.run(request)
                package = self.packager.package(issued, request.package_secret)
            finally:
                if self.driver.artifact is not None:
                    self.channel.retract(self.driver.artifact)

        logger.info("Firewall window closed — installing certificate on %s", request.gateway.name)
        self.installer.install(request.gateway, request.certificate_slot, package)

        result = RenewalResult(
            domain=request.domain,
            serial_number=package.certificate.serial_number,
            not_valid_after=package.certificate.not_valid_after_utc,
            firewall_managed=self.firewall.managed,
        )
        logger.info(
            "Renewal of %s complete — new certificate valid until %s",
            result.domain, result.not_valid_after.isoformat(),
        )
        return result
