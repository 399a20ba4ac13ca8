"""CLI entry point for setup-auth."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import click
import yaml

from setupauth import __version__, api
from setupauth.config import (
    PLATFORMS,
    Config,
    ConfigError,
    apply_env_overrides,
    load_config,
)
from setupauth.events.bus import Event, EventBus
from setupauth.exceptions import ProvisioningFault, SetupAuthError
from setupauth.gateway.errors import ApiError
from setupauth.iam.model import ScopeKind
from setupauth.provisioning.state import ProvisioningState, save_state
from setupauth.results import ProvisioningResult

T = TypeVar("T")

SCOPE_CHOICES = click.Choice([k.value for k in ScopeKind], case_sensitive=False)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _fatal(message: str, remedy: str = "") -> None:
    click.echo(f"FATAL: {message}", err=True)
    if remedy:
        click.echo(f"Hint: {remedy}", err=True)
    sys.exit(1)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine, turning unexpected faults into a clean exit."""
    try:
        return asyncio.run(coro)
    except ProvisioningFault as e:
        cause = e.__cause__
        _fatal(f"{e}" + (f" (caused by {type(cause).__name__})" if cause else ""), e.remedy)
    except SetupAuthError as e:
        _fatal(str(e), e.remedy)
    except ApiError as e:
        _fatal(str(e))
    raise AssertionError("unreachable")


def _override(config: Config, section: str, **values: Any) -> Config:
    """Replace non-empty values in one config section."""
    updates = {k: v for k, v in values.items() if v not in (None, "", ())}
    if not updates:
        return config
    current = getattr(config, section)
    return dataclasses.replace(config, **{section: dataclasses.replace(current, **updates)})


def _progress_printer(event: Event) -> None:
    step = event.data.get("step", "")
    if event.event_type == "step_started":
        click.echo(f"-> {step}", err=True)
    elif event.event_type == "step_skipped":
        click.echo(f"   {step}: already in place", err=True)
    elif event.event_type == "step_completed":
        click.echo(f"   {step}: done", err=True)


def _event_bus() -> EventBus:
    bus = EventBus()
    bus.subscribe_all(_progress_printer)
    return bus


def _report(result: ProvisioningResult, state: ProvisioningState, state_file: Path | None) -> None:
    if state_file is not None:
        save_state(state, state_file)
    if not result.ok:
        _fatal(f"{result.failed_step}: {result.error}", result.remedy)
    click.echo(f"GCP_OAUTH_CLIENT_ID={result.client_id}")
    if result.client_secret:
        click.echo(f"GCP_OAUTH_CLIENT_SECRET={result.client_secret}")
    for uri in result.redirect_uris:
        click.echo(f"redirect_uri: {uri}")


@click.group()
@click.version_option(version=__version__, prog_name="setup-auth")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to setupauth.toml configuration file.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """setup-auth: provision OAuth on Google Cloud, unattended."""
    ctx.ensure_object(dict)
    try:
        config = apply_env_overrides(load_config(config_path))
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    _configure_logging("DEBUG" if verbose else config.logging.level)
    ctx.obj["config"] = config
    ctx.obj["config_path"] = config_path


@cli.command("gcp-setup-oauth")
@click.option("--platform", type=click.Choice(PLATFORMS), default=None)
@click.option("--gcp-oauth-organization-id", "organization_id", default=None)
@click.option("--gcp-oauth-project-id", "project_id", default=None)
@click.option("--trusted-domain", default=None, help="Only accept principals from this domain.")
@click.option("--oauth-brand-name", "brand_name", default=None)
@click.option("--vercel-project-name", default=None)
@click.option("--deployment-url", default=None, help="Current deployment URL.")
@click.option("--callback-path", default=None, help="Override the provider callback path.")
@click.option(
    "--state-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the run state (secrets masked) as YAML.",
)
@click.pass_context
def gcp_setup_oauth(
    ctx: click.Context,
    platform: str | None,
    organization_id: str | None,
    project_id: str | None,
    trusted_domain: str | None,
    brand_name: str | None,
    vercel_project_name: str | None,
    deployment_url: str | None,
    callback_path: str | None,
    state_file: Path | None,
) -> None:
    """Provision consent screen, OAuth client and redirect URIs."""
    config: Config = ctx.obj["config"]
    config = _override(
        config, "gcp",
        organization_id=organization_id,
        project_id=project_id,
        trusted_domain=trusted_domain,
    )
    config = _override(
        config, "oauth",
        platform=platform,
        brand_name=brand_name,
        vercel_project_name=vercel_project_name,
        deployment_url=deployment_url,
        callback_path=callback_path,
    )
    state = ProvisioningState()
    result = _run(api.provision(config, event_bus=_event_bus(), state=state))
    _report(result, state, state_file)


@cli.command("update-redirect-urls")
@click.option("--platform", type=click.Choice(PLATFORMS), default=None)
@click.option("--gcp-oauth-project-id", "project_id", default=None)
@click.option("--client-id", default=None, help="OAuth client id (GCP_OAUTH_CLIENT_ID).")
@click.option("--deployment-url", default=None, help="Current deployment URL.")
@click.option("--additional-url", "additional_urls", multiple=True, help="Extra redirect URI.")
@click.pass_context
def update_redirect_urls(
    ctx: click.Context,
    platform: str | None,
    project_id: str | None,
    client_id: str | None,
    deployment_url: str | None,
    additional_urls: tuple[str, ...],
) -> None:
    """Add missing redirect URIs to an existing OAuth client."""
    config: Config = ctx.obj["config"]
    config = _override(config, "gcp", project_id=project_id)
    config = _override(
        config, "oauth",
        platform=platform,
        client_id=client_id,
        deployment_url=deployment_url,
    )
    if additional_urls:
        config = _override(
            config, "oauth",
            additional_urls=list(config.oauth.additional_urls) + list(additional_urls),
        )
    state = ProvisioningState()
    result = _run(api.update_redirect_uris(config, event_bus=_event_bus(), state=state))
    _report(result, state, None)


@cli.command("check-permissions")
@click.option("--scope", "scope", type=SCOPE_CHOICES, required=True)
@click.pass_context
def check_permissions(ctx: click.Context, scope: str) -> None:
    """List the permissions missing at a scope. Exits 1 if any are missing."""
    config: Config = ctx.obj["config"]
    missing = _run(api.check_permissions(scope.lower(), config))
    if not missing:
        click.echo(f"All required {scope} permissions are present.")
        return
    click.echo(f"Missing {len(missing)} {scope} permission(s):")
    for permission in missing:
        click.echo(f"  - {permission}")
    sys.exit(1)


@cli.command()
@click.option("--scope", "scope", type=SCOPE_CHOICES, required=True)
@click.pass_context
def reconcile(ctx: click.Context, scope: str) -> None:
    """Grant the roles covering missing permissions at a scope."""
    config: Config = ctx.obj["config"]
    result = _run(api.reconcile(scope.lower(), config))
    if not result.ok:
        error = result.error
        _fatal(result.summary(), error.remedy if error is not None else "")
    click.echo(result.summary())


@cli.command("show-config")
@click.pass_context
def show_config(ctx: click.Context) -> None:
    """Print the effective configuration (secrets masked)."""
    config: Config = ctx.obj["config"]
    data = dataclasses.asdict(config)
    secret = data["oauth"].get("client_secret", "")
    if secret:
        data["oauth"]["client_secret"] = f"***{secret[-4:]}"
    click.echo(yaml.dump(data, default_flow_style=False, sort_keys=False).rstrip())


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
