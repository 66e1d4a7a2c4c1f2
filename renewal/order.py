"""
AcmeOrderDriver — takes one domain from directory discovery to an issued
certificate.

Step sequence (AcmeOrder.step):

  INIT → DIRECTORY_FETCHED → ACCOUNT_READY → ORDER_CREATED
       → AUTHORIZATION_FETCHED → CHALLENGE_READY → CHALLENGE_PUBLISHED
       → CHALLENGE_COMPLETED → FINALIZING → ISSUED

INVALID is terminal: the authority rejected the authorization or the order.
Nothing is retried inside a run; the next scheduled run is the retry.

Polling is sleep-then-recheck because the authority has no push channel:
every ``order_poll_interval`` seconds until the order leaves ``pending``,
then every ``certificate_poll_interval`` seconds after finalization until a
certificate URL appears.  Each phase gives up after ``poll_timeout`` seconds
with PollingTimeoutError.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

import requests
from josepy.jwk import JWKRSA

from acme import jws as jwslib
from acme.client import AcmeClient, AcmeError
from acme.crypto import create_csr, generate_rsa_key, private_key_to_pem
from acme.keystore import AccountKeyStore
from renewal.challenge import ChallengeChannel
from renewal.errors import (
    AccountError,
    AcmePhaseError,
    AuthorizationError,
    ChallengeError,
    DirectoryError,
    FinalizationError,
    OrderError,
    PollingTimeoutError,
)
from renewal.models import (
    AcmeOrder,
    ChallengeArtifact,
    DriverStep,
    IssuedCertificate,
    RenewalRequest,
)

logger = logging.getLogger(__name__)

CHALLENGE_TYPE = "http-01"

_REQUIRED_DIRECTORY_KEYS = ("newNonce", "newAccount", "newOrder")


class AcmeOrderDriver:
    def __init__(
        self,
        client: AcmeClient,
        channel: ChallengeChannel,
        key_store: Optional[AccountKeyStore] = None,
        eab_key_id: str = "",
        eab_hmac_key: str = "",
        order_poll_interval: float = 10.0,
        certificate_poll_interval: float = 15.0,
        poll_timeout: float = 600.0,
        domain_key_size: int = 2048,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.channel = channel
        self.key_store = key_store or AccountKeyStore()
        self.eab_key_id = eab_key_id
        self.eab_hmac_key = eab_hmac_key
        self.order_poll_interval = order_poll_interval
        self.certificate_poll_interval = certificate_poll_interval
        self.poll_timeout = poll_timeout
        self.domain_key_size = domain_key_size
        self._sleep = sleep
        self._clock = clock

        self.order: Optional[AcmeOrder] = None
        self.artifact: Optional[ChallengeArtifact] = None   # set once published

    def run(self, request: RenewalRequest) -> IssuedCertificate:
        """Drive a fresh order for ``request.domain``; raises AcmePhaseError subclasses."""
        self.order = order = AcmeOrder(domain=request.domain)
        self.artifact = None
        try:
            return self._run(order, request)
        except AcmePhaseError:
            logger.error("ACME order for %s failed at step %s", order.domain, order.step.value)
            raise

    def _run(self, order: AcmeOrder, request: RenewalRequest) -> IssuedCertificate:
        self._fetch_directory(order)
        account_key = self._ensure_account(order, request.contact_email)
        self._create_order(order, account_key)

        authz = self._fetch_authorization(order, account_key)
        if authz.get("status") == "valid":
            logger.info("Authorization for %s is already valid — no challenge needed", order.domain)
        else:
            artifact = self._select_challenge(order, authz, account_key)
            self.channel.publish(artifact)
            self.artifact = artifact
            order.step = DriverStep.CHALLENGE_PUBLISHED
            self._complete_challenge(order, account_key)

        self._await_validation(order, account_key)

        order.step = DriverStep.FINALIZING
        domain_key = generate_rsa_key(self.domain_key_size)
        self._finalize(order, account_key, create_csr(domain_key, order.domain))
        full_chain_pem = self._download(order, account_key)

        order.step = DriverStep.ISSUED
        logger.info("Certificate for %s issued (%d bytes of PEM)", order.domain, len(full_chain_pem))
        return IssuedCertificate(
            domain=order.domain,
            full_chain_pem=full_chain_pem,
            private_key_pem=private_key_to_pem(domain_key),
        )

    # ── Steps ─────────────────────────────────────────────────────────────

    def _fetch_directory(self, order: AcmeOrder) -> None:
        directory = self._call(DirectoryError, "directory discovery", self.client.get_directory)
        missing = [k for k in _REQUIRED_DIRECTORY_KEYS if k not in directory]
        if missing:
            raise DirectoryError(f"ACME directory is missing {', '.join(missing)}")
        order.directory = directory
        order.step = DriverStep.DIRECTORY_FETCHED

    def _ensure_account(self, order: AcmeOrder, contact_email: str) -> JWKRSA:
        try:
            account_key, cached = self.key_store.load()
        except (OSError, ValueError) as exc:
            raise AccountError(f"Could not load the ACME account key: {exc}") from exc

        account_url: Optional[str] = None
        if cached:
            account_url = self._signed(
                AccountError, "account lookup", self.client.lookup_account, account_key
            )
            if not account_url:
                logger.warning("Cached account key is not registered — registering it")
        if not account_url:
            account_url = self._signed(
                AccountError, "account registration", self.client.create_account, account_key,
                contact=[f"mailto:{contact_email}"] if contact_email else None,
                eab_key_id=self.eab_key_id,
                eab_hmac_key=self.eab_hmac_key,
            )
        if not account_url:
            raise AccountError("Authority did not return an account URL")

        order.account_url = account_url
        order.step = DriverStep.ACCOUNT_READY
        logger.info("Using ACME account %s", account_url)
        return account_key

    def _create_order(self, order: AcmeOrder, account_key: JWKRSA) -> None:
        body, order.order_url = self._signed(
            OrderError, "new order", self.client.create_order,
            [order.domain], account_key, order.account_url,
        )
        order.status = body.get("status", "")
        if order.status == "invalid":
            order.step = DriverStep.INVALID
            raise OrderError(f"Order for {order.domain} was created invalid", problem=body.get("error"))

        authorizations = body.get("authorizations") or []
        if not order.order_url or not authorizations or not body.get("finalize"):
            raise OrderError(f"Malformed order for {order.domain}: {body}")
        order.authorization_url = authorizations[0]
        order.finalize_url = body["finalize"]
        order.step = DriverStep.ORDER_CREATED
        logger.info("Created order %s for %s", order.order_url, order.domain)

    def _fetch_authorization(self, order: AcmeOrder, account_key: JWKRSA) -> dict:
        authz = self._signed(
            AuthorizationError, "authorization fetch", self.client.get_authorization,
            order.authorization_url, account_key, order.account_url,
        )
        if authz.get("status") == "invalid":
            order.step = DriverStep.INVALID
            raise AuthorizationError(
                f"Authorization for {order.domain} is invalid", problem=_challenge_problem(authz)
            )
        order.step = DriverStep.AUTHORIZATION_FETCHED
        return authz

    def _select_challenge(self, order: AcmeOrder, authz: dict, account_key: JWKRSA) -> ChallengeArtifact:
        for challenge in authz.get("challenges", []):
            if challenge.get("type") == CHALLENGE_TYPE:
                token = challenge.get("token")
                if not token or not challenge.get("url"):
                    raise ChallengeError(f"Malformed {CHALLENGE_TYPE} challenge: {challenge}")
                order.challenge_url = challenge["url"]
                order.step = DriverStep.CHALLENGE_READY
                return ChallengeArtifact(
                    token=token, content=jwslib.compute_key_authorization(token, account_key)
                )
        offered = ", ".join(c.get("type", "?") for c in authz.get("challenges", [])) or "none"
        raise ChallengeError(
            f"Authority offered no {CHALLENGE_TYPE} challenge for {order.domain} (offered: {offered})"
        )

    def _complete_challenge(self, order: AcmeOrder, account_key: JWKRSA) -> None:
        body = self._signed(
            ChallengeError, "challenge response", self.client.respond_to_challenge,
            order.challenge_url, account_key, order.account_url,
        )
        if body.get("status") == "invalid":
            order.step = DriverStep.INVALID
            raise ChallengeError(f"Challenge for {order.domain} was rejected", problem=body.get("error"))
        order.step = DriverStep.CHALLENGE_COMPLETED
        logger.info("Asked the authority to validate %s", order.domain)

    def _await_validation(self, order: AcmeOrder, account_key: JWKRSA) -> None:
        body = self._poll_order(
            order, account_key, self.order_poll_interval,
            lambda o: o.get("status") != "pending",
            AuthorizationError, "validation",
        )
        if order.status == "invalid":
            order.step = DriverStep.INVALID
            problem = self._authorization_problem(order, account_key, body)
            raise AuthorizationError(f"Validation of {order.domain} failed", problem=problem)
        if order.status != "ready":
            raise OrderError(f"Unexpected order status {order.status!r} after validation of {order.domain}")
        logger.info("Order for %s is ready for finalization", order.domain)

    def _finalize(self, order: AcmeOrder, account_key: JWKRSA, csr_der: bytes) -> None:
        body = self._signed(
            FinalizationError, "finalization", self.client.finalize_order,
            order.finalize_url, csr_der, account_key, order.account_url,
        )
        order.status = body.get("status", order.status)
        order.certificate_url = body.get("certificate")
        if order.status == "invalid":
            order.step = DriverStep.INVALID
            raise FinalizationError(
                f"Order for {order.domain} became invalid on finalization", problem=body.get("error")
            )
        if order.certificate_url:
            return

        body = self._poll_order(
            order, account_key, self.certificate_poll_interval,
            lambda o: bool(o.get("certificate")) or o.get("status") == "invalid",
            FinalizationError, "certificate issuance",
        )
        if order.status == "invalid":
            order.step = DriverStep.INVALID
            raise FinalizationError(
                f"Order for {order.domain} became invalid during issuance", problem=body.get("error")
            )
        order.certificate_url = body["certificate"]

    def _download(self, order: AcmeOrder, account_key: JWKRSA) -> str:
        pem = self._signed(
            FinalizationError, "certificate download", self.client.download_certificate,
            order.certificate_url, account_key, order.account_url,
        )
        if "-----BEGIN CERTIFICATE-----" not in pem:
            raise FinalizationError(f"Certificate download for {order.domain} returned no PEM data")
        return pem

    # ── Polling ───────────────────────────────────────────────────────────

    def _poll_order(
        self,
        order: AcmeOrder,
        account_key: JWKRSA,
        interval: float,
        done: Callable[[dict], bool],
        error_cls: type[AcmePhaseError],
        phase: str,
    ) -> dict:
        deadline = self._clock() + self.poll_timeout
        while True:
            self._sleep(interval)
            body = self._signed(
                error_cls, f"order poll ({phase})", self.client.get_order,
                order.order_url, account_key, order.account_url,
            )
            order.status = body.get("status", "")
            if done(body):
                return body
            if self._clock() >= deadline:
                raise PollingTimeoutError(
                    f"Order for {order.domain} still {order.status!r} after "
                    f"{self.poll_timeout:.0f}s waiting for {phase}"
                )
            logger.info("Order for %s is %s — checking again in %.0fs", order.domain, order.status, interval)

    def _authorization_problem(self, order: AcmeOrder, account_key: JWKRSA, order_body: dict) -> Optional[dict]:
        """Best-effort lookup of why validation failed; falls back to the order's error."""
        try:
            authz = self._signed(
                AuthorizationError, "authorization fetch", self.client.get_authorization,
                order.authorization_url, account_key, order.account_url,
            )
        except AuthorizationError as exc:
            logger.warning("Could not fetch authorization details for %s: %s", order.domain, exc)
            return order_body.get("error")
        return _challenge_problem(authz) or order_body.get("error")

    # ── Client call plumbing ──────────────────────────────────────────────

    def _signed(
        self,
        error_cls: type[AcmePhaseError],
        what: str,
        fn: Callable[..., tuple],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        Call a signed client method, threading the order's nonce through it.

        Client methods return their payload followed by the next nonce; this
        returns the payload alone (or a tuple when there are several values).
        """
        order = self.order
        if order is None:
            raise RuntimeError("No order in progress")
        if not order.nonce:
            order.nonce = self._call(error_cls, "nonce", self.client.get_nonce, order.directory)
        *result, order.nonce = self._call(
            error_cls, what, fn, *args, nonce=order.nonce, directory=order.directory, **kwargs
        )
        return result[0] if len(result) == 1 else tuple(result)

    @staticmethod
    def _call(
        error_cls: type[AcmePhaseError], what: str, fn: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Any:
        try:
            return fn(*args, **kwargs)
        except AcmeError as exc:
            raise error_cls(f"ACME {what} failed: {exc}", problem=exc.body) from exc
        except (requests.RequestException, ValueError, KeyError) as exc:
            raise error_cls(f"ACME {what} failed: {exc!r}") from exc


def _challenge_problem(authz: dict) -> Optional[dict]:
    for challenge in authz.get("challenges", []):
        if challenge.get("error"):
            return challenge["error"]
    return None
