"""CLI entry point for the NodeRef backend."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Coroutine, NoReturn, TypeVar

import click

from . import __version__
from .auth.errors import AuthError, CredentialDecryptionError, UnauthorizedError
from .auth.manager import AuthService
from .auth.store import CredentialRepository
from .config import Settings, load_settings
from .output import OutputHandler
from .server import BackendServer

# Logger for CLI
logger = logging.getLogger("noderef")

T = TypeVar("T")


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, env_path: str | None, verbose: bool) -> None:
    """NodeRef backend - authenticate against content servers."""
    ctx.ensure_object(dict)
    output = OutputHandler(json_mode)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["output"] = output

    try:
        settings = load_settings(Path(env_path) if env_path else None)
    except ValueError as e:
        output.error(e, help_text="Check the NODEREF_* environment variables.")
        return
    ctx.obj["settings"] = settings

    # Configure logging based on verbosity
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    elif settings.log_level:
        logging.basicConfig(
            level=settings.log_level.upper(),
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_service(ctx: click.Context) -> AuthService | NoReturn:
    """Build the auth service from context settings, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    settings: Settings = ctx.obj["settings"]
    try:
        repository = CredentialRepository(settings.data_dir, master_key=settings.master_key)
    except AuthError as e:
        output.error(e, help_text=f"Check permissions on {settings.data_dir}.")
        raise SystemExit(1)  # Never reached due to sys.exit in output.error
    logger.debug(f"Credentials in {settings.data_dir} (key source: {repository.key_source})")
    return AuthService(repository, policy=settings.polling, timeout=settings.http_timeout)


def run_async(ctx: click.Context, coro: Coroutine[Any, Any, T], help_text: str | None = None) -> T:
    """Run a coroutine, reporting auth errors through the output handler."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return asyncio.run(coro)
    except CredentialDecryptionError as e:
        output.error(e, help_text="Remove the affected servers and register them again.")
    except AuthError as e:
        output.error(e, help_text=help_text)
    raise SystemExit(1)  # Never reached due to sys.exit in output.error


async def _with_backend(service: AuthService, settings: Settings, coro_fn: Any) -> Any:
    """Run coro_fn() while the backend serves /auth/callback."""
    async with BackendServer(service, settings.host, settings.port):
        return await coro_fn()


@main.command()
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: NODEREF_PORT or any free port)")
@click.pass_context
def serve(ctx: click.Context, port: int | None) -> None:
    """Run the backend server until interrupted."""
    output: OutputHandler = ctx.obj["output"]
    settings: Settings = ctx.obj["settings"]
    service = get_service(ctx)

    server = BackendServer(
        service, settings.host, port if port is not None else settings.port
    )

    async def run() -> None:
        bound = await server.start()
        output.status(f"NodeRef backend listening on http://{settings.host}:{bound}")
        await server.serve_until_stopped()

    try:
        asyncio.run(run())
    except OSError as e:
        output.error(e, help_text="Is another process using the port?")


@main.group()
@click.pass_context
def server(ctx: click.Context) -> None:
    """Manage registered servers."""
    pass


@server.command("list")
@click.pass_context
def server_list(ctx: click.Context) -> None:
    """List registered servers."""
    output: OutputHandler = ctx.obj["output"]
    service = get_service(ctx)

    try:
        records = service.list_servers()
    except AuthError as e:
        output.error(e)
        return

    if not records:
        if ctx.obj["json_mode"]:
            output.success([])
        else:
            click.echo("No servers registered. Add one with 'noderef server add-basic' or 'noderef server add-oauth'.")
        return

    output.table(
        ["ID", "NAME", "URL", "AUTH", "ADMIN", "LAST ACCESSED"],
        [
            [
                str(r.id),
                r.name,
                r.base_url,
                r.auth_type,
                "yes" if r.is_admin else "no",
                r.last_accessed.isoformat(timespec="seconds") if r.last_accessed else "-",
            ]
            for r in records
        ],
    )


@server.command("remove")
@click.argument("server_id", type=int)
@click.pass_context
def server_remove(ctx: click.Context, server_id: int) -> None:
    """Remove a server and its credentials."""
    output: OutputHandler = ctx.obj["output"]
    service = get_service(ctx)

    try:
        removed = service.remove_server(server_id)
    except AuthError as e:
        output.error(e)
        return

    if not removed:
        output.error(
            ValueError(f"Server {server_id} not found"),
            help_text="Use 'noderef server list' to see registered servers.",
        )
        return
    output.success({"server_id": server_id, "removed": True}, f"Removed server {server_id}")


@server.command("add-basic")
@click.argument("name")
@click.argument("base_url")
@click.option("--username", "-u", prompt=True, help="Username")
@click.option("--password", prompt=True, hide_input=True, help="Password")
@click.pass_context
def server_add_basic(ctx: click.Context, name: str, base_url: str, username: str, password: str) -> None:
    """Validate a username and password and register the server."""
    output: OutputHandler = ctx.obj["output"]
    service = get_service(ctx)

    record = run_async(
        ctx,
        service.register_basic_server(name, base_url, username, password),
        help_text="Check the server URL and your credentials.",
    )
    admin = " (administrator)" if record.is_admin else ""
    output.success(record.to_dict(), f"Registered server {record.id}: {record.name}{admin}")


@server.command("add-oauth")
@click.argument("name")
@click.argument("base_url")
@click.option("--host", "provider_host", required=True, help="Identity provider URL, e.g. http://localhost:8180")
@click.option("--realm", required=True, help="Identity provider realm")
@click.option("--client-id", "client_id", required=True, help="Public client id")
@click.pass_context
def server_add_oauth(
    ctx: click.Context, name: str, base_url: str, provider_host: str, realm: str, client_id: str
) -> None:
    """Sign in through the identity provider and register the server."""
    output: OutputHandler = ctx.obj["output"]
    settings: Settings = ctx.obj["settings"]
    service = get_service(ctx)

    record = run_async(
        ctx,
        _with_backend(
            service,
            settings,
            lambda: service.register_oauth2_server(
                name, base_url, provider_host, realm, client_id, on_status=output.status
            ),
        ),
        help_text="Check the provider URL, realm and client id, then try again.",
    )
    admin = " (administrator)" if record.is_admin else ""
    output.success(record.to_dict(), f"Registered server {record.id}: {record.name}{admin}")


@main.group()
@click.pass_context
def auth(ctx: click.Context) -> None:
    """Inspect and renew server credentials."""
    pass


@auth.command("status")
@click.argument("server_id", type=int)
@click.pass_context
def auth_status(ctx: click.Context, server_id: int) -> None:
    """Show the authentication status of a server."""
    output: OutputHandler = ctx.obj["output"]
    service = get_service(ctx)

    try:
        status = service.get_auth_status(server_id)
    except AuthError as e:
        output.error(e, help_text="Use 'noderef server list' to see registered servers.")
        return

    if ctx.obj["json_mode"]:
        output.success(status.to_dict())
        return

    click.secho(f"{status.server_name} ({status.base_url})", bold=True)
    click.echo(f"  Auth type:      {status.auth_type}")
    if not status.authenticated:
        click.secho(f"  Status:         {status.error or 'Not authenticated'}", fg="yellow")
        return
    if status.expired:
        click.secho("  Status:         Token expired", fg="red")
    else:
        click.secho("  Status:         Authenticated", fg="green")
    if status.expires_at:
        click.echo(f"  Expires:        {status.expires_at} ({status.expires_in_human})")
    if status.auth_type == "oauth2":
        click.echo(f"  Refresh token:  {'yes' if status.has_refresh_token else 'no'}")
    click.echo(f"  Administrator:  {'yes' if status.is_admin else 'no'}")


@auth.command("login")
@click.argument("server_id", type=int)
@click.option("--username", "-u", default=None, help="Username (basic servers)")
@click.option("--password", default=None, help="Password (basic servers)")
@click.pass_context
def auth_login(ctx: click.Context, server_id: int, username: str | None, password: str | None) -> None:
    """Obtain fresh credentials for a server."""
    output: OutputHandler = ctx.obj["output"]
    settings: Settings = ctx.obj["settings"]
    service = get_service(ctx)

    record = service.repository.get_server(server_id)
    if record is None:
        output.error(
            ValueError(f"Server {server_id} not found"),
            help_text="Use 'noderef server list' to see registered servers.",
        )
        return

    if record.auth_type == "basic":
        username = username or click.prompt("Username")
        password = password or click.prompt("Password", hide_input=True)
        record = run_async(
            ctx,
            service.reauthenticate(server_id, username=username, password=password),
            help_text="Check your credentials.",
        )
    else:
        record = run_async(
            ctx,
            _with_backend(
                service,
                settings,
                lambda: service.reauthenticate(server_id, on_status=output.status),
            ),
        )

    output.success(record.to_dict(), f"Re-authenticated server {record.id}: {record.name}")


@auth.command("refresh")
@click.argument("server_id", type=int)
@click.pass_context
def auth_refresh(ctx: click.Context, server_id: int) -> None:
    """Refresh the access token of an OAuth2 server."""
    output: OutputHandler = ctx.obj["output"]
    service = get_service(ctx)

    result = run_async(ctx, service.refresh_tokens(server_id))
    if result["refreshed"]:
        output.success(result, f"Token refreshed (expires {result['tokenExpiry'] or 'never'})")
    else:
        output.error(
            UnauthorizedError(f"Token refresh failed for server {server_id}"),
            help_text=f"Run 'noderef auth login {server_id}' to sign in again.",
        )


@main.command()
@click.argument("server_id", type=int)
@click.pass_context
def whoami(ctx: click.Context, server_id: int) -> None:
    """Show the user a server's stored credentials belong to."""
    output: OutputHandler = ctx.obj["output"]
    service = get_service(ctx)

    async def fetch() -> dict[str, Any]:
        async with await service.authenticate(server_id) as client:
            return await client.current_user()

    user = run_async(
        ctx, fetch(), help_text=f"Run 'noderef auth login {server_id}' to sign in again."
    )
    display = user.get("displayName") or user.get("firstName") or user.get("id")
    output.success(user, f"{display} ({user.get('id')})")
