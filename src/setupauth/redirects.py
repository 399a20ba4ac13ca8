"""Builds the redirect URIs an OAuth client must accept for a deployment."""

from __future__ import annotations

import logging

from setupauth.config import OAuthConfig
from setupauth.exceptions import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_PATHS: dict[str, str] = {
    "gcp": "/api/auth/callback/gcp",
    "github": "/api/auth/callback/github",
    "azure": "/api/auth/callback/azure-ad",
    "linkedin": "/api/auth/callback/linkedin",
}

DEFAULT_PROJECT_NAME = "your-project-name"


def callback_path_for(provider: str, override: str = "") -> str:
    if override:
        return override
    return DEFAULT_CALLBACK_PATHS.get(provider, f"/api/auth/callback/{provider}")


def project_name_for(oauth: OAuthConfig) -> str:
    if oauth.project_name:
        return oauth.project_name
    if oauth.platform == "vercel" and oauth.vercel_project_name:
        return oauth.vercel_project_name
    return DEFAULT_PROJECT_NAME


def production_url(platform: str, project_name: str, callback_path: str, custom_url: str = "") -> str | None:
    """The platform's canonical production callback URL, if it has one."""
    if platform == "vercel":
        return f"https://{project_name}.vercel.app{callback_path}"
    if platform == "netlify":
        return f"https://{project_name}.netlify.app{callback_path}"
    if platform == "opennext":
        # Custom domains only
        return f"{custom_url.rstrip('/')}{callback_path}" if custom_url else None
    raise ValidationError(f"Unsupported platform: {platform!r}")


def default_wildcard_patterns(platform: str, project_name: str, callback_path: str) -> list[str]:
    """Preview-deployment patterns for platforms with predictable preview hosts."""
    if platform == "vercel":
        return [f"https://{project_name}-*{callback_path}"]
    if platform == "netlify":
        return [f"https://deploy-preview-*--{project_name}{callback_path}"]
    return []


def build_redirect_uris(oauth: OAuthConfig) -> list[str]:
    """Every redirect URI the client should allow, de-duplicated in order.

    Order: production URL, current deployment URL, additional URLs, then
    wildcard patterns.
    """
    if not oauth.platform:
        raise ValidationError("Platform is not set. Pass --platform or set PLATFORM.")
    if not oauth.provider:
        raise ValidationError("OAuth provider is not set.")

    callback = callback_path_for(oauth.provider, oauth.callback_path)
    name = project_name_for(oauth)
    uris: dict[str, None] = {}

    production = production_url(oauth.platform, name, callback, oauth.production_url)
    if production:
        uris[production] = None

    if oauth.deployment_url:
        base = oauth.deployment_url.rstrip("/")
        if not base.startswith("https://"):
            base = f"https://{base.removeprefix('http://')}"
        uris[f"{base}{callback}"] = None
        logger.debug("Added current deployment URL: %s%s", base, callback)

    for url in oauth.additional_urls:
        if url.strip():
            uris[url.strip()] = None

    patterns = oauth.wildcard_patterns
    if not patterns and oauth.default_wildcards:
        patterns = default_wildcard_patterns(oauth.platform, name, callback)
    for pattern in patterns:
        if pattern.strip():
            uris[pattern.strip()] = None

    return list(uris)
