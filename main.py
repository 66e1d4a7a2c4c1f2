"""
Gateway certificate renewal — CLI entry point.

Usage:
  python main.py --once               # Renew now, exit non-zero on failure
  python main.py --schedule           # Renew daily at SCHEDULE_TIME (local time)
  python main.py --check-config       # Validate settings and print the run plan
  python main.py --once --domain www.example.org   # Override DOMAIN for this run
"""
from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from typing import Optional

import structlog

# ── Logging setup ─────────────────────────────────────────────────────────────

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger(__name__)
events = structlog.get_logger("renewal.run")


# ── Wiring ────────────────────────────────────────────────────────────────────


def build_orchestrator(settings, request):
    """Wire the Azure-backed capabilities and renewal components for one run."""
    from acme.client import make_client
    from acme.keystore import AccountKeyStore
    from cloud.appgateway import AppGatewayClient
    from cloud.arm import ArmSession
    from cloud.blob import BlobObjectStore
    from cloud.nsg import NsgFirewall
    from renewal.challenge import ChallengeChannel
    from renewal.firewall import FirewallWindow
    from renewal.installer import GatewayInstaller
    from renewal.orchestrator import RenewalOrchestrator
    from renewal.order import AcmeOrderDriver
    from renewal.packager import CertificatePackager

    arm = ArmSession(settings.AZURE_MANAGEMENT_TOKEN, settings.AZURE_SUBSCRIPTION_ID)
    channel = ChallengeChannel(
        BlobObjectStore(request.storage.account, settings.AZURE_STORAGE_TOKEN),
        request.storage.container,
    )
    firewall = FirewallWindow(
        NsgFirewall(arm) if request.firewall else None,
        request.firewall,
        propagation_seconds=settings.FIREWALL_PROPAGATION_SECONDS,
    )
    driver = AcmeOrderDriver(
        make_client(settings),
        channel,
        key_store=AccountKeyStore(settings.ACCOUNT_KEY_PATH),
        eab_key_id=settings.ACME_EAB_KEY_ID,
        eab_hmac_key=settings.ACME_EAB_HMAC_KEY,
        order_poll_interval=settings.ORDER_POLL_INTERVAL,
        certificate_poll_interval=settings.CERTIFICATE_POLL_INTERVAL,
        poll_timeout=settings.POLL_TIMEOUT_SECONDS,
    )
    return RenewalOrchestrator(
        firewall=firewall,
        channel=channel,
        driver=driver,
        packager=CertificatePackager(legacy_encryption=settings.PFX_LEGACY_ENCRYPTION),
        installer=GatewayInstaller(AppGatewayClient(arm)),
    )


def load_request(settings, domain: Optional[str] = None):
    request = settings.to_request()
    if domain:
        request = dataclasses.replace(request, domain=domain.strip().lower().rstrip("."))
    return request


# ── Runners ───────────────────────────────────────────────────────────────────


def run_once(domain: Optional[str] = None) -> int:
    """Execute one renewal run and return the process exit status."""
    from config import settings
    from renewal.errors import GatewayUpdateError, RenewalError

    try:
        request = load_request(settings, domain)
    except ValueError as exc:
        log.error("Invalid configuration: %s", exc)
        return 2

    orchestrator = build_orchestrator(settings, request)
    try:
        result = orchestrator.run(request)
    except GatewayUpdateError as exc:
        log.critical(
            "Certificate for %s was issued but NOT installed; the previous certificate remains active: %s",
            request.domain, exc,
        )
        events.error("renewal_failed", domain=request.domain, stage="install", error=str(exc))
        return 1
    except RenewalError as exc:
        log.error("Renewal of %s failed: %s", request.domain, exc)
        events.error("renewal_failed", domain=request.domain, error_type=type(exc).__name__, error=str(exc))
        return 1

    events.info(
        "renewal_succeeded",
        domain=result.domain,
        serial=f"{result.serial_number:x}",
        not_valid_after=result.not_valid_after.isoformat(),
        firewall_managed=result.firewall_managed,
    )
    return 0


def run_scheduled(domain: Optional[str] = None) -> None:
    """Run once a day; a failed run is retried by the next day's run."""
    import schedule
    import time
    from config import settings

    log.info("Scheduling daily certificate renewal at %s (host local time)", settings.SCHEDULE_TIME)

    def job() -> None:
        log.info("Scheduled run triggered")
        try:
            run_once(domain=domain)
        except Exception as exc:
            log.exception("Scheduled run crashed: %s", exc)

    schedule.every().day.at(settings.SCHEDULE_TIME).do(job)

    log.info("Entering schedule loop — press Ctrl+C to stop")
    while True:
        schedule.run_pending()
        time.sleep(60)


def check_config(domain: Optional[str] = None) -> int:
    from config import settings

    try:
        request = load_request(settings, domain)
    except ValueError as exc:
        log.error("Invalid configuration: %s", exc)
        return 2
    print(f"Domain:          {request.domain}")
    print(f"ACME directory:  {settings.ACME_DIRECTORY_URL}")
    print(f"Challenge store: {request.storage.account}/{request.storage.container}")
    print(f"Gateway:         {request.gateway.resource_group}/{request.gateway.name} "
          f"(slot {request.certificate_slot})")
    if request.firewall:
        print(f"Firewall rule:   {request.firewall.resource_group}/{request.firewall.group}/"
              f"{request.firewall.rule} (propagation wait {settings.FIREWALL_PROPAGATION_SECONDS:.0f}s)")
    else:
        print("Firewall rule:   not managed")
    return 0


# ── CLI ───────────────────────────────────────────────────────────────────────


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Renew and install the gateway TLS certificate via ACME HTTP-01",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --once
  python main.py --schedule
  python main.py --check-config
  python main.py --once --domain www.example.org
        """,
    )
    parser.add_argument("--once", action="store_true", help="Run one renewal immediately and exit")
    parser.add_argument(
        "--schedule", action="store_true", help="Renew daily at SCHEDULE_TIME (local time) until interrupted"
    )
    parser.add_argument(
        "--check-config", action="store_true", help="Validate settings, print the run plan and exit"
    )
    parser.add_argument("--domain", metavar="DOMAIN", help="Override DOMAIN for this invocation")

    args = parser.parse_args()

    if args.check_config:
        sys.exit(check_config(domain=args.domain))
    elif args.once:
        sys.exit(run_once(domain=args.domain))
    elif args.schedule:
        run_scheduled(domain=args.domain)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
