import json
import webbrowser
from urllib.parse import parse_qs, urlencode, urlparse

import typer

from coderider_proxy.config import get_settings
from coderider_proxy.credentials import (
    ACCESS_TOKEN_ENV,
    CLIENT_ID_ENV,
    CLIENT_SECRET_ENV,
    REDIRECT_URI_ENV,
    REFRESH_TOKEN_ENV,
)
from coderider_proxy.errors import ProxyError, normalize_error_message
from coderider_proxy.redaction import mask_secret
from coderider_proxy.services import ServiceContainer, build_services

app = typer.Typer(help="CodeRider proxy: run the API server and manage GitLab OAuth credentials")

OAUTH_SETTINGS = {
    "client_id": CLIENT_ID_ENV,
    "client_secret": CLIENT_SECRET_ENV,
    "access_token": ACCESS_TOKEN_ENV,
    "refresh_token": REFRESH_TOKEN_ENV,
    "redirect_uri": REDIRECT_URI_ENV,
}
CALLBACK_PATH = "/auth/oauth-callback"


def _services() -> ServiceContainer:
    # The CLI never launches the re-authorization flow itself.
    return build_services(get_settings(), reauth_trigger=lambda: None)


def _extract_code(pasted: str) -> str:
    code = pasted.strip()
    if "?" in code or "code=" in code:
        query = parse_qs(urlparse(code).query)
        code = (query.get("code") or [""])[0]
    return code


def _client_credentials(services: ServiceContainer, no_prompt: bool) -> tuple[str, str]:
    client_id = services.resolver.client_id()
    client_secret = services.resolver.client_secret()

    if client_id and client_secret:
        typer.echo(f"Found saved GitLab application: client_id={mask_secret(client_id)}")
        if no_prompt or typer.confirm("Reuse the saved application?", default=True):
            return client_id, client_secret

    if no_prompt:
        typer.echo("GitLab application credentials are not configured; run oauth-setup interactively first.")
        raise typer.Exit(code=1)

    typer.echo(f"Create a GitLab application at {services.settings.oauth_applications_url}")
    typer.echo(f"- Redirect URI: {services.settings.public_base_url.rstrip('/')}{CALLBACK_PATH}")
    typer.echo("- Scope: api")
    client_id = typer.prompt("Application ID (client_id)").strip()
    client_secret = typer.prompt("Secret (client_secret)", hide_input=True).strip()
    if not client_id or not client_secret:
        typer.echo("client_id and client_secret must not be empty")
        raise typer.Exit(code=1)

    services.setting_store.set("client_id", client_id)
    services.setting_store.set("client_secret", client_secret)
    return client_id, client_secret


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8000, help="Bind port"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
):
    """Run the proxy API server."""
    import uvicorn

    uvicorn.run("coderider_proxy.main:app", host=host, port=port, reload=reload)


@app.command("oauth-setup")
def oauth_setup(
    no_prompt: bool = typer.Option(False, "--no-prompt", help="Reuse saved application credentials without asking"),
    paste: bool = typer.Option(False, help="Paste the redirected URL here instead of using the running server"),
):
    """One-time GitLab OAuth authorization. Tokens are saved to the setting store and the config file."""
    settings = get_settings()
    services = _services()
    client_id, _ = _client_credentials(services, no_prompt)
    base_url = settings.public_base_url.rstrip("/")

    if not paste or no_prompt:
        start_url = f"{base_url}/auth/oauth-start"
        typer.echo(f"Open this URL in a browser to authorize (the proxy server must be running):\n{start_url}")
        webbrowser.open(start_url)
        return

    redirect_uri = f"{base_url}{CALLBACK_PATH}"
    query = urlencode({"client_id": client_id, "redirect_uri": redirect_uri, "response_type": "code", "scope": "api"})
    auth_url = f"{settings.oauth_authorize_url}?{query}"
    typer.echo(f"\nSTEP 1: Open this URL in a browser and sign in:\n{auth_url}")
    webbrowser.open(auth_url)
    typer.echo("\nSTEP 2: After login, copy the FULL redirected URL and paste it below.")
    code = _extract_code(typer.prompt("Paste redirected URL (or just code)"))
    if not code:
        typer.echo("No authorization code detected.")
        raise typer.Exit(code=1)

    try:
        services.token_manager.complete_authorization(code, redirect_uri, settings.oauth_config_path)
    except ProxyError as exc:
        typer.echo(f"Token exchange failed: {normalize_error_message(exc.message)}")
        raise typer.Exit(code=1)
    typer.echo(f"Done. Tokens saved to the setting store and {settings.oauth_config_path}")


@app.command("set-setting")
def set_setting(
    key: str = typer.Argument(..., help="One of: " + ", ".join(OAUTH_SETTINGS)),
    value: str = typer.Argument(..., help="Value to persist"),
):
    if key not in OAUTH_SETTINGS:
        raise typer.BadParameter(f"unknown setting '{key}'; expected one of: {', '.join(OAUTH_SETTINGS)}")
    _services().setting_store.set(key, value)
    typer.echo(f"Saved {key}")


@app.command("show-settings")
def show_settings(include_secrets: bool = typer.Option(False, help="Print values unmasked")):
    """Show each OAuth setting as resolved, with the store value alongside."""
    services = _services()
    snapshot = services.resolver.file_snapshot
    report = {}
    for key, env_var in OAUTH_SETTINGS.items():
        values = {
            "resolved": services.resolver.resolve(key, env_var),
            "store": services.setting_store.get(key),
            "file": snapshot.get(key) or None,
        }
        if not include_secrets and key != "redirect_uri":
            values = {source: mask_secret(value) for source, value in values.items()}
        report[key] = {**values, "env_var": env_var}
    typer.echo(json.dumps(report, indent=2))


@app.command("sweep-sessions")
def sweep_sessions():
    """Delete sessions idle longer than the configured session TTL."""
    removed = _services().accounts.sweep_expired_sessions()
    typer.echo(f"Removed {removed} expired session(s)")


if __name__ == "__main__":
    app()
