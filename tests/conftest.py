"""
Shared pytest fixtures.

Test PKI
--------
``pki`` is a throwaway two-level CA (EC root → EC intermediate) that can sign
leaf certificates for any public key, so packaging and chain-ordering tests
use real signatures.

Fake capabilities
-----------------
In-memory ObjectStore / FirewallClient / GatewayClient that record every
call and can be told to fail.  The fake firewall starts with the rule set to
Deny, so "rule action is Deny at the end" is the firewall-closed property.

Scripted ACME server
--------------------
``acme_server`` registers `responses` callbacks for a complete RFC 8555 flow
at https://acme.test.  Finalization really issues a certificate for the
submitted CSR, so the driver's domain key matches the downloaded leaf.
"""
from __future__ import annotations

import base64
import datetime
import json
from typing import List, Optional

import pytest
import responses as resp_lib
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from acme.client import AcmeClient
from cloud.base import CloudError, FirewallClient, GatewayClient, ObjectStore, SlotNotFoundError
from renewal.models import (
    FirewallTarget,
    GatewayTarget,
    RenewalRequest,
    RuleAction,
    StorageTarget,
)

ACME_BASE = "https://acme.test"
DIRECTORY_URL = f"{ACME_BASE}/directory"
FAKE_DIRECTORY = {
    "newNonce": f"{ACME_BASE}/newNonce",
    "newAccount": f"{ACME_BASE}/newAccount",
    "newOrder": f"{ACME_BASE}/newOrder",
    "revokeCert": f"{ACME_BASE}/revokeCert",
    "keyChange": f"{ACME_BASE}/keyChange",
}
ACCOUNT_URL = f"{ACME_BASE}/acct/1"
ORDER_URL = f"{ACME_BASE}/order/1"
AUTHZ_URL = f"{ACME_BASE}/authz/1"
CHALLENGE_URL = f"{ACME_BASE}/chall/1"
FINALIZE_URL = f"{ACME_BASE}/finalize/1"
CERT_URL = f"{ACME_BASE}/cert/1"
CHALLENGE_TOKEN = "evaGxfADs6pSRb2LAv9IZf17Dt3juxGJ-PCt92wr-oA"

SECRET = "s3cret-pfx-password"

# Settings values that make Settings.to_request() succeed (no firewall).
COMPLETE_SETTINGS = dict(
    DOMAIN="example.org",
    CONTACT_EMAIL="ops@example.org",
    PFX_PASSWORD="pfx-secret",
    AZURE_SUBSCRIPTION_ID="sub-1",
    AZURE_MANAGEMENT_TOKEN="arm-token",
    AZURE_STORAGE_TOKEN="storage-token",
    STORAGE_ACCOUNT="acmechallenges",
    GATEWAY_RESOURCE_GROUP="rg-gw",
    GATEWAY_NAME="gw",
    GATEWAY_CERTIFICATE_NAME="gateway-cert",
)


# ─── Test PKI ─────────────────────────────────────────────────────────────────


def _name(cn: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class TestPki:
    __test__ = False  # not a test class

    def __init__(self) -> None:
        self.root_key = ec.generate_private_key(ec.SECP256R1())
        self.root = (
            x509.CertificateBuilder()
            .subject_name(_name("Test Root"))
            .issuer_name(_name("Test Root"))
            .public_key(self.root_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(_now() - datetime.timedelta(days=1))
            .not_valid_after(_now() + datetime.timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(self.root_key, hashes.SHA256())
        )
        self.intermediate_key = ec.generate_private_key(ec.SECP256R1())
        self.intermediate = (
            x509.CertificateBuilder()
            .subject_name(_name("Test Intermediate"))
            .issuer_name(self.root.subject)
            .public_key(self.intermediate_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(_now() - datetime.timedelta(days=1))
            .not_valid_after(_now() + datetime.timedelta(days=1825))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .sign(self.root_key, hashes.SHA256())
        )

    def issue(self, public_key, domain: str = "example.org") -> x509.Certificate:
        return (
            x509.CertificateBuilder()
            .subject_name(_name(domain))
            .issuer_name(self.intermediate.subject)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(_now() - datetime.timedelta(minutes=5))
            .not_valid_after(_now() + datetime.timedelta(days=90))
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
            .sign(self.intermediate_key, hashes.SHA256())
        )

    def chain_pem(self, leaf: x509.Certificate, order: str = "delivered") -> str:
        certs = {
            "delivered": [leaf, self.intermediate, self.root],
            "reversed": [leaf, self.root, self.intermediate],
            "fully_reversed": [self.root, self.intermediate, leaf],
        }[order]
        return "".join(c.public_bytes(serialization.Encoding.PEM).decode() for c in certs)


@pytest.fixture(scope="session")
def pki() -> TestPki:
    return TestPki()


# ─── Fake capabilities ────────────────────────────────────────────────────────


class FakeObjectStore(ObjectStore):
    def __init__(self) -> None:
        self.objects: dict = {}
        self.puts: List[tuple] = []
        self.deletes: List[tuple] = []
        self.fail_put = False
        self.fail_delete = False

    def put_object(self, container: str, path: str, data: bytes, content_type: str) -> None:
        self.puts.append((container, path, data, content_type))
        if self.fail_put:
            raise CloudError("storage unavailable")
        self.objects[(container, path)] = data

    def delete_object(self, container: str, path: str) -> None:
        self.deletes.append((container, path))
        if self.fail_delete:
            raise CloudError("storage unavailable")
        self.objects.pop((container, path), None)


class FakeFirewall(FirewallClient):
    def __init__(self, rule: str = "allow-acme-http") -> None:
        self.rules = {rule: RuleAction.DENY}
        self.calls: List[tuple] = []
        self.fail_actions: set = set()
        # Raised as-is on a Deny write, for failures outside the CloudError family.
        self.deny_error: Optional[Exception] = None

    def get_rule(self, resource_group: str, group: str, name: str) -> Optional[dict]:
        self.calls.append(("get_rule", group, name))
        if name not in self.rules:
            return None
        return {"name": name, "properties": {"access": self.rules[name].value}}

    def set_rule_action(self, resource_group: str, group: str, name: str, action: RuleAction) -> None:
        self.calls.append(("set_rule_action", group, name, action))
        if action is RuleAction.DENY and self.deny_error is not None:
            raise self.deny_error
        if action in self.fail_actions:
            raise CloudError(f"cannot persist {action.value}")
        self.rules[name] = action

    def actions(self) -> List[RuleAction]:
        return [c[3] for c in self.calls if c[0] == "set_rule_action"]


class FakeGateway(GatewayClient):
    def __init__(self, slots=("gateway-cert",)) -> None:
        self.config = {
            "id": "/subscriptions/sub/resourceGroups/rg-gw/providers/Microsoft.Network/applicationGateways/gw",
            "name": "gw",
            "properties": {
                "sslCertificates": [{"name": s, "properties": {"data": "old"}} for s in slots],
            },
        }
        self.reads = 0
        self.applied: List[dict] = []
        self.installed: List[tuple] = []
        self.fail_apply = False

    def get_config(self, resource_group: str, name: str) -> dict:
        self.reads += 1
        return json.loads(json.dumps(self.config))

    def set_certificate(self, config: dict, slot_name: str, package) -> dict:
        for slot in config["properties"]["sslCertificates"]:
            if slot["name"] == slot_name:
                slot["properties"]["data"] = base64.b64encode(package.pfx).decode()
                slot["properties"]["password"] = package.password
                self.installed.append((slot_name, package))
                return config
        raise SlotNotFoundError(f"no slot {slot_name}")

    def apply(self, config: dict) -> None:
        if self.fail_apply:
            raise CloudError("ApplicationGatewayCertificateDataOrPasswordInvalid")
        self.applied.append(config)
        self.config = config


@pytest.fixture()
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture()
def fake_firewall() -> FakeFirewall:
    return FakeFirewall()


@pytest.fixture()
def fake_gateway() -> FakeGateway:
    return FakeGateway()


# ─── Requests ─────────────────────────────────────────────────────────────────


def make_request(firewall: bool = True, domain: str = "example.org") -> RenewalRequest:
    return RenewalRequest(
        domain=domain,
        contact_email="ops@example.org",
        gateway=GatewayTarget(resource_group="rg-gw", name="gw"),
        certificate_slot="gateway-cert",
        package_secret=SECRET,
        storage=StorageTarget(account="acmechallenges", container="$web"),
        firewall=FirewallTarget("rg-net", "nsg-gw", "allow-acme-http") if firewall else None,
    )


# ─── Scripted ACME server ─────────────────────────────────────────────────────


def decode_jws_payload(request) -> Optional[dict]:
    body = json.loads(request.body)
    if not body["payload"]:
        return None
    raw = body["payload"]
    return json.loads(base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4)))


class FakeAcmeServer:
    """
    Knobs (set before the run):
      authz_status        initial authorization status ("pending" | "valid" | "invalid")
      validation_result   order status once validation finishes ("ready" | "invalid")
      pending_polls       order polls answered "pending" after the challenge response
      processing_polls    order polls answered "processing" after finalization
      chain_order         how the PEM chain is delivered (see TestPki.chain_pem)
      offer_http01        whether the authorization offers an http-01 challenge
    """

    def __init__(self, rsps: resp_lib.RequestsMock, pki: TestPki) -> None:
        self.rsps = rsps
        self.pki = pki
        self.authz_status = "pending"
        self.validation_result = "ready"
        self.pending_polls = 1
        self.processing_polls = 1
        self.chain_order = "delivered"
        self.offer_http01 = True

        self.nonce_counter = 0
        self.challenge_responded = False
        self.finalized = False
        self.leaf: Optional[x509.Certificate] = None
        self.order_polls = 0
        self.registered_contact: Optional[list] = None
        self._register()

    def _nonce(self) -> dict:
        self.nonce_counter += 1
        return {"Replay-Nonce": f"nonce-{self.nonce_counter}"}

    def _json(self, status: int, body: dict, extra: Optional[dict] = None):
        headers = {**self._nonce(), **(extra or {})}
        return status, headers, json.dumps(body)

    def _register(self) -> None:
        r = self.rsps
        r.add(resp_lib.GET, DIRECTORY_URL, json=FAKE_DIRECTORY)
        r.add_callback(resp_lib.HEAD, FAKE_DIRECTORY["newNonce"], callback=lambda req: (200, self._nonce(), ""))
        r.add_callback(resp_lib.POST, FAKE_DIRECTORY["newAccount"], callback=self._new_account)
        r.add_callback(resp_lib.POST, FAKE_DIRECTORY["newOrder"], callback=self._new_order)
        r.add_callback(resp_lib.POST, AUTHZ_URL, callback=self._authz)
        r.add_callback(resp_lib.POST, CHALLENGE_URL, callback=self._challenge)
        r.add_callback(resp_lib.POST, ORDER_URL, callback=self._order)
        r.add_callback(resp_lib.POST, FINALIZE_URL, callback=self._finalize)
        r.add_callback(resp_lib.POST, CERT_URL, callback=self._cert)

    def _new_account(self, request):
        payload = decode_jws_payload(request) or {}
        if payload.get("onlyReturnExisting"):
            return self._json(400, {"type": "urn:ietf:params:acme:error:accountDoesNotExist"})
        self.registered_contact = payload.get("contact")
        return self._json(201, {"status": "valid"}, {"Location": ACCOUNT_URL})

    def _new_order(self, request):
        return self._json(201, self._order_body("pending"), {"Location": ORDER_URL})

    def _order_body(self, status: str, certificate: bool = False) -> dict:
        body = {
            "status": status,
            "identifiers": [{"type": "dns", "value": "example.org"}],
            "authorizations": [AUTHZ_URL],
            "finalize": FINALIZE_URL,
        }
        if certificate:
            body["certificate"] = CERT_URL
        if status == "invalid":
            body["error"] = {"type": "urn:ietf:params:acme:error:unauthorized", "detail": "order invalid"}
        return body

    def _authz(self, request):
        status = self.authz_status
        challenge = {"type": "http-01", "url": CHALLENGE_URL, "token": CHALLENGE_TOKEN, "status": "pending"}
        if status == "invalid" or (self.challenge_responded and self.validation_result == "invalid"):
            status = "invalid"
            challenge["status"] = "invalid"
            challenge["error"] = {
                "type": "urn:ietf:params:acme:error:unauthorized",
                "detail": "Invalid response from http://example.org/.well-known/acme-challenge/x: 404",
            }
        challenges = [challenge] if self.offer_http01 else []
        challenges.append({"type": "dns-01", "url": f"{ACME_BASE}/chall/2", "token": "dnstoken"})
        return self._json(200, {"status": status, "identifier": {"type": "dns", "value": "example.org"},
                                "challenges": challenges})

    def _challenge(self, request):
        self.challenge_responded = True
        return self._json(200, {"type": "http-01", "status": "processing", "url": CHALLENGE_URL,
                                "token": CHALLENGE_TOKEN})

    def _order(self, request):
        self.order_polls += 1
        if not self.finalized:
            if self.authz_status == "valid" or self.challenge_responded:
                if self.pending_polls > 0:
                    self.pending_polls -= 1
                    return self._json(200, self._order_body("pending"))
                return self._json(200, self._order_body(self.validation_result))
            return self._json(200, self._order_body("pending"))
        if self.processing_polls > 0:
            self.processing_polls -= 1
            return self._json(200, self._order_body("processing"))
        return self._json(200, self._order_body("valid", certificate=True))

    def _finalize(self, request):
        payload = decode_jws_payload(request)
        raw = payload["csr"]
        csr = x509.load_der_x509_csr(base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4)))
        self.leaf = self.pki.issue(csr.public_key())
        self.finalized = True
        return self._json(200, self._order_body("processing"))

    def _cert(self, request):
        return 200, {**self._nonce(), "Content-Type": "application/pem-certificate-chain"}, \
            self.pki.chain_pem(self.leaf, self.chain_order)


@pytest.fixture()
def acme_server(pki):
    with resp_lib.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield FakeAcmeServer(rsps, pki)


@pytest.fixture()
def acme_client() -> AcmeClient:
    return AcmeClient(DIRECTORY_URL)


@pytest.fixture(scope="session")
def package(pki):
    """A real PKCS#12 package for example.org, built once per session."""
    from acme.crypto import generate_rsa_key, private_key_to_pem
    from renewal.models import IssuedCertificate
    from renewal.packager import CertificatePackager

    key = generate_rsa_key(2048)
    issued = IssuedCertificate(
        domain="example.org",
        full_chain_pem=pki.chain_pem(pki.issue(key.public_key())),
        private_key_pem=private_key_to_pem(key),
    )
    return CertificatePackager().package(issued, SECRET)
