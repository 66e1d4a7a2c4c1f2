"""
Low-level ACME RFC 8555 HTTP client.

This client is intentionally **stateless**: directory, account URL and nonce
are passed in by the caller (AcmeOrderDriver) and every signed call returns
the next nonce, which makes it easy to test against mocked HTTP.

RFC 8555 compliance notes
--------------------------
* POST-as-GET: orders, authorizations and certificates are fetched with a
  signed empty payload, never with plain GET.
* badNonce retry: servers return a fresh ``Replay-Nonce`` header even on error
  responses.  ``_post_signed`` re-signs with it up to ``_NONCE_RETRIES`` times.
"""
from __future__ import annotations

import base64
from typing import TYPE_CHECKING, Optional

import requests
from josepy.jwk import JWKRSA

from acme import jws as jwslib

if TYPE_CHECKING:
    from config import Settings

_NONCE_RETRIES = 3

PEM_CHAIN_CONTENT_TYPE = "application/pem-certificate-chain"


class AcmeError(Exception):
    """Raised when the ACME server returns an error response."""

    def __init__(self, status_code: int, body: dict, new_nonce: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.new_nonce = new_nonce
        problem_type = body.get("type", "unknown")
        detail = body.get("detail", str(body))
        super().__init__(f"ACME {status_code}: {problem_type} — {detail}")


class AcmeClient:
    """Implements the client side of RFC 8555 for a single directory URL."""

    def __init__(
        self,
        directory_url: str,
        timeout: int = 30,
        ca_bundle: str = "",
        insecure: bool = False,
    ) -> None:
        self.directory_url = directory_url
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": "gateway-cert-renewal/1.0"})

        if insecure:
            import urllib3
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self._session.verify = False
        elif ca_bundle:
            self._session.verify = ca_bundle

    # ── Directory & nonce ─────────────────────────────────────────────────

    def get_directory(self) -> dict:
        """GET /directory — discover ACME endpoint URLs."""
        resp = self._session.get(self.directory_url, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def get_nonce(self, directory: dict) -> str:
        """HEAD /newNonce — fetch a fresh anti-replay nonce."""
        resp = self._session.head(directory["newNonce"], timeout=self.timeout)
        nonce = resp.headers.get("Replay-Nonce")
        if not nonce:
            raise AcmeError(resp.status_code, {"detail": "No Replay-Nonce header"})
        return nonce

    # ── Account ───────────────────────────────────────────────────────────

    def create_account(
        self,
        account_key: JWKRSA,
        nonce: str,
        directory: dict,
        contact: Optional[list[str]] = None,
        eab_key_id: str = "",
        eab_hmac_key: str = "",
    ) -> tuple[str, str]:
        """
        POST /newAccount, with EAB binding when credentials are provided.
        Returns (account_url, new_nonce).
        """
        new_account_url = directory["newAccount"]
        payload: dict = {"termsOfServiceAgreed": True}
        if contact:
            payload["contact"] = contact
        if eab_key_id and eab_hmac_key:
            payload["externalAccountBinding"] = jwslib.create_eab_jws(
                account_key, eab_key_id, eab_hmac_key, new_account_url
            )

        resp = self._post_signed(payload, account_key, nonce, new_account_url, directory=directory)
        return resp.headers.get("Location", ""), resp.headers.get("Replay-Nonce", "")

    def lookup_account(
        self,
        account_key: JWKRSA,
        nonce: str,
        directory: dict,
    ) -> tuple[Optional[str], str]:
        """
        POST /newAccount with onlyReturnExisting=True.
        Returns (account_url or None, new_nonce).
        """
        try:
            resp = self._post_signed(
                {"onlyReturnExisting": True}, account_key, nonce, directory["newAccount"],
                directory=directory,
            )
        except AcmeError as e:
            if e.body.get("type", "").endswith(":accountDoesNotExist"):
                return None, e.new_nonce
            raise
        return resp.headers.get("Location"), resp.headers.get("Replay-Nonce", "")

    # ── Orders ────────────────────────────────────────────────────────────

    def create_order(
        self,
        domains: list[str],
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
        directory: dict,
    ) -> tuple[dict, str, str]:
        """
        POST /newOrder.
        Returns (order_body, order_url, new_nonce).
        """
        payload = {"identifiers": [{"type": "dns", "value": d} for d in domains]}
        resp = self._post_signed(
            payload, account_key, nonce, directory["newOrder"], account_url, directory=directory
        )
        return resp.json(), resp.headers.get("Location", ""), resp.headers.get("Replay-Nonce", "")

    def get_order(
        self,
        order_url: str,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
        directory: Optional[dict] = None,
    ) -> tuple[dict, str]:
        """POST-as-GET an order.  Returns (order_body, new_nonce)."""
        resp = self._post_signed(None, account_key, nonce, order_url, account_url, directory=directory)
        return resp.json(), resp.headers.get("Replay-Nonce", "")

    # ── Authorizations & challenges ───────────────────────────────────────

    def get_authorization(
        self,
        auth_url: str,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
        directory: Optional[dict] = None,
    ) -> tuple[dict, str]:
        """POST-as-GET an authorization.  Returns (authz_body, new_nonce)."""
        resp = self._post_signed(None, account_key, nonce, auth_url, account_url, directory=directory)
        return resp.json(), resp.headers.get("Replay-Nonce", "")

    def respond_to_challenge(
        self,
        challenge_url: str,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
        directory: Optional[dict] = None,
    ) -> tuple[dict, str]:
        """
        POST the challenge URL with payload {} to tell the CA to validate.
        Returns (challenge_body, new_nonce).
        """
        resp = self._post_signed({}, account_key, nonce, challenge_url, account_url, directory=directory)
        return resp.json(), resp.headers.get("Replay-Nonce", "")

    # ── Finalization & certificate download ───────────────────────────────

    def finalize_order(
        self,
        finalize_url: str,
        csr_der: bytes,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
        directory: Optional[dict] = None,
    ) -> tuple[dict, str]:
        """
        POST /finalize with the DER-encoded CSR.
        Returns (order_body, new_nonce).
        """
        csr_b64 = base64.urlsafe_b64encode(csr_der).rstrip(b"=").decode()
        resp = self._post_signed(
            {"csr": csr_b64}, account_key, nonce, finalize_url, account_url, directory=directory
        )
        return resp.json(), resp.headers.get("Replay-Nonce", "")

    def download_certificate(
        self,
        cert_url: str,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
        directory: Optional[dict] = None,
    ) -> tuple[str, str]:
        """POST-as-GET the certificate URL.  Returns (full_chain_pem, new_nonce)."""
        resp = self._post_signed(
            None, account_key, nonce, cert_url, account_url,
            accept=PEM_CHAIN_CONTENT_TYPE, directory=directory,
        )
        return resp.text, resp.headers.get("Replay-Nonce", "")

    # ── Internal ──────────────────────────────────────────────────────────

    def _post_signed(
        self,
        payload: dict | None,
        account_key: JWKRSA,
        nonce: str,
        url: str,
        account_url: str | None = None,
        accept: str = "application/json",
        directory: dict | None = None,
    ) -> requests.Response:
        """
        Sign *payload* and POST it to *url*, retrying on ``badNonce``.

        The retry re-signs with the nonce from the error response; only when
        that header is missing is a new nonce fetched from the directory.
        """
        current_nonce = nonce
        for attempt in range(_NONCE_RETRIES):
            body = jwslib.sign_request(payload, account_key, current_nonce, url, account_url)
            resp = self._session.post(
                url,
                json=body,
                headers={"Content-Type": "application/jose+json", "Accept": accept},
                timeout=self.timeout,
            )
            if resp.ok:
                return resp

            try:
                error_body = resp.json()
            except ValueError:
                error_body = {"detail": resp.text}

            if "badNonce" in error_body.get("type", "") and attempt < _NONCE_RETRIES - 1:
                fresh = resp.headers.get("Replay-Nonce")
                if fresh:
                    current_nonce = fresh
                    continue
                if directory is None:
                    directory = self.get_directory()
                current_nonce = self.get_nonce(directory)
                continue

            raise AcmeError(resp.status_code, error_body, resp.headers.get("Replay-Nonce", ""))

        raise AcmeError(0, {"detail": "Exceeded nonce retry limit"})


def make_client(settings: "Settings") -> AcmeClient:
    """Create an AcmeClient from application settings."""
    return AcmeClient(
        directory_url=settings.ACME_DIRECTORY_URL,
        timeout=settings.ACME_HTTP_TIMEOUT,
        ca_bundle=settings.ACME_CA_BUNDLE,
        insecure=settings.ACME_INSECURE,
    )
