"""Configuration loader for setup-auth.

Loads from setupauth.toml with sensible defaults when the file is absent,
then layers environment variables on top. Configuration is loaded once at
startup and passed via dependency injection.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

from setupauth.exceptions import ValidationError

PLATFORMS = ("vercel", "netlify", "opennext")
OAUTH_PROVIDERS = ("gcp", "github", "azure", "linkedin")


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""


@dataclass(frozen=True)
class GcpConfig:
    organization_id: str = ""
    project_id: str = ""
    quota_project_id: str = ""
    trusted_domain: str = ""
    required_services: list[str] = field(default_factory=list)  # empty = built-in list


@dataclass(frozen=True)
class OAuthConfig:
    """What the consent screen, client and redirect URIs should look like."""

    platform: str = ""
    provider: str = "gcp"
    brand_name: str = ""
    support_email: str = ""
    client_id: str = ""
    client_secret: str = ""
    callback_path: str = ""
    project_name: str = ""
    vercel_project_name: str = ""
    production_url: str = ""
    deployment_url: str = ""
    additional_urls: list[str] = field(default_factory=list)
    wildcard_patterns: list[str] = field(default_factory=list)
    default_wildcards: bool = True

    def __repr__(self) -> str:
        secret_display = f"***{self.client_secret[-4:]}" if self.client_secret else ""
        return (
            f"OAuthConfig(platform={self.platform!r}, brand_name={self.brand_name!r}, "
            f"client_id={self.client_id!r}, client_secret={secret_display!r})"
        )


@dataclass(frozen=True)
class PropagationConfig:
    timeout_seconds: float = 30.0
    interval_seconds: float = 2.0


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 10.0
    jitter_seconds: float = 0.25


@dataclass(frozen=True)
class GatewayConfig:
    request_timeout_seconds: float = 60.0


@dataclass(frozen=True)
class ReconcileConfig:
    max_stale_token_retries: int = 3


@dataclass(frozen=True)
class OrgPolicyConfig:
    constraint: str = "constraints/serviceuser.services"
    verify_after_write: bool = True


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class Config:
    """Top-level setup-auth configuration."""

    gcp: GcpConfig = field(default_factory=GcpConfig)
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    propagation: PropagationConfig = field(default_factory=PropagationConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    orgpolicy: OrgPolicyConfig = field(default_factory=OrgPolicyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def organization_resource(self) -> str:
        return f"organizations/{self.gcp.organization_id}"

    @property
    def project_resource(self) -> str:
        return f"projects/{self.gcp.project_id}"


def default_config_candidates() -> list[Path]:
    return [
        Path.cwd() / "setupauth.toml",
        Path.home() / ".setupauth" / "setupauth.toml",
    ]


def _str_list(raw: object, *, name: str, path: Path) -> list[str]:
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        return [item.strip() for item in raw.split(",") if item.strip()]
    if not isinstance(raw, list):
        raise ConfigError(f"Invalid {name} in {path}: expected list of strings.")
    return [str(item).strip() for item in raw if str(item).strip()]


def _number(
    raw: object, default: float, *, name: str, path: Path, positive: bool = False,
) -> float:
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid {name} in {path}: expected a number.") from e
    if value < 0:
        raise ConfigError(f"Invalid {name} in {path}: must not be negative.")
    if positive and value == 0:
        raise ConfigError(f"Invalid {name} in {path}: must be greater than zero.")
    return value


def load_config(path: Path | None = None) -> Config:
    """Load configuration from a TOML file.

    If path is None, searches for setupauth.toml in the current directory
    then ~/.setupauth/. Returns default config if no file is found.
    """
    if path is None:
        for candidate in default_config_candidates():
            if candidate.exists():
                path = candidate
                break

    if path is None or not path.exists():
        return Config()

    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    gcp_data = raw.get("gcp", {})
    gcp = GcpConfig(
        organization_id=str(gcp_data.get("organization_id", "")).strip(),
        project_id=str(gcp_data.get("project_id", "")).strip(),
        quota_project_id=str(gcp_data.get("quota_project_id", "")).strip(),
        trusted_domain=str(gcp_data.get("trusted_domain", "")).strip(),
        required_services=_str_list(
            gcp_data.get("required_services"), name="gcp.required_services", path=path,
        ),
    )

    oauth_data = raw.get("oauth", {})
    oauth = OAuthConfig(
        platform=str(oauth_data.get("platform", "")).strip().lower(),
        provider=str(oauth_data.get("provider", "gcp")).strip().lower() or "gcp",
        brand_name=str(oauth_data.get("brand_name", "")).strip(),
        support_email=str(oauth_data.get("support_email", "")).strip(),
        client_id=str(oauth_data.get("client_id", "")).strip(),
        client_secret=str(oauth_data.get("client_secret", "")).strip(),
        callback_path=str(oauth_data.get("callback_path", "")).strip(),
        project_name=str(oauth_data.get("project_name", "")).strip(),
        vercel_project_name=str(oauth_data.get("vercel_project_name", "")).strip(),
        production_url=str(oauth_data.get("production_url", "")).strip(),
        deployment_url=str(oauth_data.get("deployment_url", "")).strip(),
        additional_urls=_str_list(
            oauth_data.get("additional_urls"), name="oauth.additional_urls", path=path,
        ),
        wildcard_patterns=_str_list(
            oauth_data.get("wildcard_patterns"), name="oauth.wildcard_patterns", path=path,
        ),
        default_wildcards=bool(oauth_data.get("default_wildcards", True)),
    )

    prop_data = raw.get("propagation", {})
    propagation = PropagationConfig(
        timeout_seconds=_number(
            prop_data.get("timeout_seconds"), 30.0,
            name="propagation.timeout_seconds", path=path,
        ),
        interval_seconds=_number(
            prop_data.get("interval_seconds"), 2.0,
            name="propagation.interval_seconds", path=path, positive=True,
        ),
    )

    retry_data = raw.get("retry", {})
    retry = RetryConfig(
        max_attempts=int(_number(
            retry_data.get("max_attempts"), 5, name="retry.max_attempts", path=path,
        )),
        base_delay_seconds=_number(
            retry_data.get("base_delay_seconds"), 1.0,
            name="retry.base_delay_seconds", path=path,
        ),
        multiplier=_number(
            retry_data.get("multiplier"), 2.0, name="retry.multiplier", path=path,
        ),
        max_delay_seconds=_number(
            retry_data.get("max_delay_seconds"), 10.0,
            name="retry.max_delay_seconds", path=path,
        ),
        jitter_seconds=_number(
            retry_data.get("jitter_seconds"), 0.25,
            name="retry.jitter_seconds", path=path,
        ),
    )

    gateway_data = raw.get("gateway", {})
    gateway = GatewayConfig(
        request_timeout_seconds=_number(
            gateway_data.get("request_timeout_seconds"), 60.0,
            name="gateway.request_timeout_seconds", path=path,
        ),
    )

    reconcile_data = raw.get("reconcile", {})
    reconcile = ReconcileConfig(
        max_stale_token_retries=int(_number(
            reconcile_data.get("max_stale_token_retries"), 3,
            name="reconcile.max_stale_token_retries", path=path,
        )),
    )

    orgpolicy_data = raw.get("orgpolicy", {})
    orgpolicy = OrgPolicyConfig(
        constraint=str(
            orgpolicy_data.get("constraint", "constraints/serviceuser.services")
        ).strip(),
        verify_after_write=bool(orgpolicy_data.get("verify_after_write", True)),
    )

    log_data = raw.get("logging", {})
    logging_cfg = LoggingConfig(level=str(log_data.get("level", "INFO")).upper())

    return Config(
        gcp=gcp,
        oauth=oauth,
        propagation=propagation,
        retry=retry,
        gateway=gateway,
        reconcile=reconcile,
        orgpolicy=orgpolicy,
        logging=logging_cfg,
    )


# env var -> (section, field)
_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "GCP_ORGANIZATION_ID": ("gcp", "organization_id"),
    "GCP_OAUTH_ORGANIZATION_ID": ("gcp", "organization_id"),
    "GCP_PROJECT_ID": ("gcp", "project_id"),
    "GCP_OAUTH_PROJECT_ID": ("gcp", "project_id"),
    "GCP_OAUTH_QUOTA_PROJECT_ID": ("gcp", "quota_project_id"),
    "EKG_ORG_PRIMARY_DOMAIN": ("gcp", "trusted_domain"),
    "PLATFORM": ("oauth", "platform"),
    "GCP_OAUTH_BRAND_NAME": ("oauth", "brand_name"),
    "EKG_PROJECT_LONG": ("oauth", "brand_name"),
    "GCP_OAUTH_CLIENT_ID": ("oauth", "client_id"),
    "GCP_OAUTH_CLIENT_SECRET": ("oauth", "client_secret"),
    "VERCEL_PROJECT_NAME": ("oauth", "vercel_project_name"),
    "PRODUCTION_URL": ("oauth", "production_url"),
    "EKG_PROJECT_NAME": ("oauth", "project_name"),
    "PROJECT_NAME": ("oauth", "project_name"),
    "ADDITIONAL_REDIRECT_URLS": ("oauth", "additional_urls"),
}

_PLACEHOLDERS = {"", "PLACEHOLDER"}


def apply_env_overrides(
    config: Config,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Return a copy of ``config`` with non-empty env vars applied.

    Earlier entries in the override table win over later aliases for the
    same field (e.g. GCP_ORGANIZATION_ID over GCP_OAUTH_ORGANIZATION_ID).
    """
    env = os.environ if environ is None else environ
    sections: dict[str, dict[str, object]] = {"gcp": {}, "oauth": {}}
    for name, (section, attr) in _ENV_OVERRIDES.items():
        value = str(env.get(name, "") or "").strip()
        if value in _PLACEHOLDERS or attr in sections[section]:
            continue
        if attr == "additional_urls":
            sections[section][attr] = [u.strip() for u in value.split(",") if u.strip()]
        elif attr == "platform":
            sections[section][attr] = value.lower()
        else:
            sections[section][attr] = value

    gcp = replace(config.gcp, **sections["gcp"]) if sections["gcp"] else config.gcp
    oauth = replace(config.oauth, **sections["oauth"]) if sections["oauth"] else config.oauth
    return replace(config, gcp=gcp, oauth=oauth)


def validate_for_provisioning(config: Config) -> None:
    """Fail fast with the exact option to set when provisioning input is incomplete."""
    oauth = config.oauth
    if not oauth.platform:
        raise ValidationError(
            "Platform type must be provided via --platform or PLATFORM env var."
        )
    if oauth.platform not in PLATFORMS:
        raise ValidationError(
            f"Invalid platform specified: {oauth.platform}. "
            f"Valid options are {', '.join(repr(p) for p in PLATFORMS)}."
        )
    if oauth.provider not in OAUTH_PROVIDERS:
        raise ValidationError(f"Unsupported OAuth provider: {oauth.provider}")
    if not config.gcp.project_id:
        raise ValidationError(
            "GCP Project ID must be provided via --gcp-oauth-project-id "
            "or GCP_PROJECT_ID env var."
        )
    if not config.gcp.organization_id:
        raise ValidationError(
            "GCP Organization ID must be provided via --gcp-oauth-organization-id "
            "or GCP_ORGANIZATION_ID env var."
        )
    if not config.gcp.trusted_domain:
        raise ValidationError(
            "Missing required trusted domain. Set [gcp] trusted_domain or the "
            "EKG_ORG_PRIMARY_DOMAIN env var (e.g. EKG_ORG_PRIMARY_DOMAIN=your-domain.com)."
        )
    if not oauth.brand_name:
        raise ValidationError(
            "Could not determine brand name. Set --oauth-brand-name, or "
            "GCP_OAUTH_BRAND_NAME or EKG_PROJECT_LONG in your environment."
        )
    if oauth.platform == "vercel" and not oauth.vercel_project_name:
        raise ValidationError(
            "Vercel project name must be provided via --vercel-project-name "
            "or VERCEL_PROJECT_NAME env var for Vercel platform."
        )
