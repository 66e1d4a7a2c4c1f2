"""
Account key, JWK thumbprint and JWS signing for RFC 8555 requests.

Uses *josepy* for the JWK representation and the RFC 7638 thumbprint.

Responsibilities (boundary with acme/crypto.py):
  - Generate / serialize the **account** RSA key
  - Compute the HTTP-01 key authorization (token + "." + thumbprint)
  - Sign ACME POST bodies as flattened JWS (jwk or kid header)
  - Build the EAB inner JWS for CAs that require external account binding
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from josepy.jwk import JWKRSA


# ─── Account key ──────────────────────────────────────────────────────────────


def generate_account_key(key_size: int = 2048) -> JWKRSA:
    """Generate a new RSA account key wrapped in a josepy JWKRSA."""
    return JWKRSA(key=rsa.generate_private_key(public_exponent=65537, key_size=key_size))


def account_key_to_pem(jwk: JWKRSA) -> bytes:
    return jwk.key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def account_key_from_pem(pem: bytes) -> JWKRSA:
    private_key = serialization.load_pem_private_key(pem, password=None)
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise ValueError("ACME account key must be an RSA key")
    return JWKRSA(key=private_key)


# ─── Key authorization ────────────────────────────────────────────────────────


def compute_jwk_thumbprint(jwk: JWKRSA) -> str:
    """base64url SHA-256 thumbprint of the public JWK (RFC 7638)."""
    return _b64url(jwk.public_key().thumbprint(hash_function=hashes.SHA256))


def compute_key_authorization(token: str, jwk: JWKRSA) -> str:
    """Return the HTTP-01 key authorization served for *token*."""
    return f"{token}.{compute_jwk_thumbprint(jwk)}"


# ─── JWS signing ─────────────────────────────────────────────────────────────


def public_jwk(jwk: JWKRSA) -> dict[str, Any]:
    return jwk.public_key().to_partial_json()


def sign_request(
    payload: dict | None,
    account_key: JWKRSA,
    nonce: str,
    url: str,
    account_url: str | None = None,
) -> dict:
    """
    Sign an ACME request and return the flattened JWS body to POST.

    ``payload=None`` produces a POST-as-GET (empty payload).  Without
    *account_url* the protected header embeds the public JWK (newAccount);
    with it the header uses "kid".
    """
    header: dict[str, Any] = {"alg": "RS256", "nonce": nonce, "url": url}
    if account_url:
        header["kid"] = account_url
    else:
        header["jwk"] = public_jwk(account_key)

    protected = _b64url(json.dumps(header).encode())
    payload_b64 = "" if payload is None else _b64url(json.dumps(payload).encode())
    signature = account_key.key.sign(
        f"{protected}.{payload_b64}".encode(), padding.PKCS1v15(), hashes.SHA256()
    )
    return {"protected": protected, "payload": payload_b64, "signature": _b64url(signature)}


def create_eab_jws(
    account_key: JWKRSA, eab_kid: str, eab_hmac_key_b64url: str, new_account_url: str
) -> dict:
    """
    Build the externalAccountBinding JWS (RFC 8555 §7.3.4).

    Raises ValueError for an empty key id or an HMAC key shorter than 128 bits.
    """
    if not eab_kid.strip():
        raise ValueError("EAB key ID cannot be empty")
    try:
        hmac_key = _b64url_decode(eab_hmac_key_b64url)
    except (ValueError, TypeError) as exc:
        raise ValueError(f"EAB HMAC key is not valid base64url: {exc}") from exc
    if len(hmac_key) < 16:
        raise ValueError(f"EAB HMAC key is too short: {len(hmac_key)} bytes, need at least 16")

    protected = _b64url(
        json.dumps({"alg": "HS256", "kid": eab_kid, "url": new_account_url}).encode()
    )
    payload = _b64url(json.dumps(public_jwk(account_key)).encode())
    mac = hmac.new(hmac_key, f"{protected}.{payload}".encode(), hashlib.sha256).digest()
    return {"protected": protected, "payload": payload, "signature": _b64url(mac)}


# ─── Internal helpers ─────────────────────────────────────────────────────────


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _b64url_decode(s: str) -> bytes:
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))
