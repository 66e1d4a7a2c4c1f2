"""
Application configuration via Pydantic Settings.
All values can be overridden by environment variables or a .env file.

Only main.py reads these settings.  It turns them into an immutable
RenewalRequest (``Settings.to_request``) plus the tuning knobs each component
takes as constructor arguments.
"""
from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from renewal.models import (
    FirewallTarget,
    GatewayTarget,
    RenewalRequest,
    StorageTarget,
)

_DIRECTORY_PRESETS = {
    "letsencrypt":         "https://acme-v02.api.letsencrypt.org/directory",
    "letsencrypt_staging": "https://acme-staging-v02.api.letsencrypt.org/directory",
    "zerossl":             "https://acme.zerossl.com/v2/DV90",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── CA ─────────────────────────────────────────────────────────────────
    CA_PROVIDER: Literal["letsencrypt", "letsencrypt_staging", "zerossl", "custom"] = "letsencrypt"
    ACME_DIRECTORY_URL: str = ""          # only consulted when CA_PROVIDER="custom"
    ACME_EAB_KEY_ID: str = ""
    ACME_EAB_HMAC_KEY: str = ""
    ACME_CA_BUNDLE: str = ""              # path to CA bundle; empty = system default
    ACME_INSECURE: bool = False           # skip TLS verification (testing only)
    ACME_HTTP_TIMEOUT: int = 30
    ACCOUNT_KEY_PATH: Optional[str] = None  # unset = fresh account key each run

    # ── Certificate ────────────────────────────────────────────────────────
    DOMAIN: str = ""
    CONTACT_EMAIL: str = ""
    PFX_PASSWORD: str = Field(default="", repr=False)
    PFX_LEGACY_ENCRYPTION: bool = False

    # ── Azure ──────────────────────────────────────────────────────────────
    AZURE_SUBSCRIPTION_ID: str = ""
    AZURE_MANAGEMENT_TOKEN: str = Field(default="", repr=False)
    AZURE_STORAGE_TOKEN: str = Field(default="", repr=False)

    STORAGE_ACCOUNT: str = ""
    STORAGE_RESOURCE_GROUP: str = ""
    STORAGE_CONTAINER: str = "$web"

    GATEWAY_RESOURCE_GROUP: str = ""
    GATEWAY_NAME: str = ""
    GATEWAY_CERTIFICATE_NAME: str = ""

    # All three or none; none disables firewall management.
    FIREWALL_RESOURCE_GROUP: str = ""
    FIREWALL_GROUP: str = ""
    FIREWALL_RULE: str = ""
    FIREWALL_PROPAGATION_SECONDS: float = 30.0

    # ── Polling ────────────────────────────────────────────────────────────
    ORDER_POLL_INTERVAL: float = 10.0
    CERTIFICATE_POLL_INTERVAL: float = 15.0
    POLL_TIMEOUT_SECONDS: float = 600.0

    # ── Scheduling ─────────────────────────────────────────────────────────
    SCHEDULE_TIME: str = "03:00"

    @field_validator("ORDER_POLL_INTERVAL", "CERTIFICATE_POLL_INTERVAL", "POLL_TIMEOUT_SECONDS")
    @classmethod
    def positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("polling intervals and timeout must be positive")
        return v

    @field_validator("DOMAIN")
    @classmethod
    def normalize_domain(cls, v: str) -> str:
        return v.strip().lower().rstrip(".")

    @model_validator(mode="after")
    def validate_firewall(self) -> "Settings":
        # Raises ValueError for a partial set.
        FirewallTarget.from_parts(self.FIREWALL_RESOURCE_GROUP, self.FIREWALL_GROUP, self.FIREWALL_RULE)
        return self

    @model_validator(mode="after")
    def resolve_acme_directory(self) -> "Settings":
        if self.CA_PROVIDER in _DIRECTORY_PRESETS:
            self.ACME_DIRECTORY_URL = _DIRECTORY_PRESETS[self.CA_PROVIDER]
        elif not self.ACME_DIRECTORY_URL:
            raise ValueError("ACME_DIRECTORY_URL must be set when CA_PROVIDER='custom'")
        return self

    def missing_required(self) -> list[str]:
        """Names of settings a renewal run cannot do without."""
        required = (
            "DOMAIN", "CONTACT_EMAIL", "PFX_PASSWORD", "AZURE_SUBSCRIPTION_ID",
            "AZURE_MANAGEMENT_TOKEN", "AZURE_STORAGE_TOKEN", "STORAGE_ACCOUNT",
            "STORAGE_CONTAINER", "GATEWAY_RESOURCE_GROUP", "GATEWAY_NAME",
            "GATEWAY_CERTIFICATE_NAME",
        )
        return [name for name in required if not getattr(self, name)]

    def to_request(self) -> RenewalRequest:
        missing = self.missing_required()
        if missing:
            raise ValueError(f"Missing required settings: {', '.join(missing)}")
        return RenewalRequest(
            domain=self.DOMAIN,
            contact_email=self.CONTACT_EMAIL,
            gateway=GatewayTarget(resource_group=self.GATEWAY_RESOURCE_GROUP, name=self.GATEWAY_NAME),
            certificate_slot=self.GATEWAY_CERTIFICATE_NAME,
            package_secret=self.PFX_PASSWORD,
            storage=StorageTarget(
                account=self.STORAGE_ACCOUNT,
                container=self.STORAGE_CONTAINER,
                resource_group=self.STORAGE_RESOURCE_GROUP,
            ),
            firewall=FirewallTarget.from_parts(
                self.FIREWALL_RESOURCE_GROUP, self.FIREWALL_GROUP, self.FIREWALL_RULE
            ),
        )


# Module-level singleton — read by main.py only.
settings = Settings()
