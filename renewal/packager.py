"""
CertificatePackager — turns the issued PEM chain and key into a
password-protected PKCS#12 the gateway can import.

The order of the chain delivered by the authority is not trusted.  The
package is exported once as delivered, reloaded with the package secret, and
re-exported with a chain rebuilt by walking issuer links from the leaf:
at each hop the next certificate is the one that actually signed the
current one (name match *and* signature check).  The result is
leaf → intermediate(s) → top-most certificate, whatever order came in.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.hazmat.primitives.serialization import pkcs12

from renewal.errors import PackagingError
from renewal.models import CertificatePackage, IssuedCertificate

logger = logging.getLogger(__name__)


class CertificatePackager:
    def __init__(self, legacy_encryption: bool = False) -> None:
        # Older gateway firmware only imports SHA1/3DES-protected PFX files.
        self.legacy_encryption = legacy_encryption

    def package(self, issued: IssuedCertificate, secret: str) -> CertificatePackage:
        if not secret:
            raise PackagingError("A package secret is required")
        key = _load_key(issued.private_key_pem)
        certificates = _load_certificates(issued.full_chain_pem)
        leaf = _find_leaf(certificates, key)
        delivered_chain = [c for c in certificates if c != leaf]

        name = issued.domain.encode()
        initial = self._export(name, key, leaf, delivered_chain, secret)

        try:
            reloaded_key, reloaded_leaf, reloaded_chain = pkcs12.load_key_and_certificates(
                initial, secret.encode()
            )
        except ValueError as exc:
            raise PackagingError(f"Could not reload the exported package: {exc}") from exc
        if reloaded_key is None or reloaded_leaf is None:
            raise PackagingError("Exported package lost its key or certificate")

        chain = build_trust_path(reloaded_leaf, reloaded_chain)
        pfx = self._export(name, reloaded_key, reloaded_leaf, chain, secret)
        logger.info(
            "Packaged certificate for %s (serial %x) with a %d-certificate chain",
            issued.domain, reloaded_leaf.serial_number, len(chain),
        )
        return CertificatePackage(
            pfx=pfx,
            password=secret,
            certificate=reloaded_leaf,
            private_key=reloaded_key,
            chain=chain,
            friendly_name=issued.domain,
        )

    def _export(
        self,
        name: bytes,
        key: PrivateKeyTypes,
        leaf: x509.Certificate,
        chain: Sequence[x509.Certificate],
        secret: str,
    ) -> bytes:
        if self.legacy_encryption:
            encryption = (
                serialization.PrivateFormat.PKCS12.encryption_builder()
                .kdf_rounds(50000)
                .key_cert_algorithm(pkcs12.PBES.PBESv1SHA1And3KeyTripleDESCBC)
                .hmac_hash(hashes.SHA1())
                .build(secret.encode())
            )
        else:
            encryption = serialization.BestAvailableEncryption(secret.encode())
        try:
            return pkcs12.serialize_key_and_certificates(name, key, leaf, list(chain) or None, encryption)
        except (ValueError, TypeError) as exc:
            raise PackagingError(f"PKCS#12 export failed: {exc}") from exc


def build_trust_path(
    leaf: x509.Certificate, candidates: Optional[Sequence[x509.Certificate]]
) -> List[x509.Certificate]:
    """
    Order *candidates* into the issuer path above *leaf* (nearest issuer first).

    Raises PackagingError when chain material was supplied but none of it
    issued the leaf.  Certificates left over once the path ends (at a
    self-signed root or at a certificate whose issuer is absent) are dropped.
    """
    remaining: List[x509.Certificate] = []
    for cert in candidates or []:
        if cert != leaf and cert not in remaining:
            remaining.append(cert)
    supplied = len(remaining)

    path: List[x509.Certificate] = []
    current = leaf
    while remaining and not _is_self_signed(current):
        issuer = next((c for c in remaining if _directly_issued_by(current, c)), None)
        if issuer is None:
            break
        path.append(issuer)
        remaining.remove(issuer)
        current = issuer

    if supplied and not path:
        raise PackagingError(
            f"No certificate in the supplied chain issued {leaf.subject.rfc4514_string()}"
        )
    for cert in remaining:
        logger.warning("Dropping certificate outside the trust path: %s", cert.subject.rfc4514_string())
    return path


def _directly_issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    try:
        cert.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature, UnsupportedAlgorithm):
        return False
    return True


def _is_self_signed(cert: x509.Certificate) -> bool:
    return cert.issuer == cert.subject and _directly_issued_by(cert, cert)


def _load_key(pem: str) -> PrivateKeyTypes:
    try:
        return serialization.load_pem_private_key(pem.encode(), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise PackagingError(f"Could not parse the certificate private key: {exc}") from exc


def _load_certificates(pem: str) -> List[x509.Certificate]:
    try:
        return x509.load_pem_x509_certificates(pem.encode())
    except ValueError as exc:
        raise PackagingError(f"Could not parse the issued certificate chain: {exc}") from exc


def _find_leaf(certificates: Sequence[x509.Certificate], key: PrivateKeyTypes) -> x509.Certificate:
    """The leaf is the certificate carrying our public key, wherever it sits in the PEM."""
    wanted = _spki(key.public_key())
    for cert in certificates:
        if _spki(cert.public_key()) == wanted:
            return cert
    raise PackagingError("No certificate in the issued chain matches the private key")


def _spki(public_key) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
