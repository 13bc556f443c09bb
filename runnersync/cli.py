"""runnersync command-line interface."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

from .config import SyncConfig
from .errors import SyncError
from .service import SyncService
from .session import SessionStore
from .storage import SqliteKeyValueStore
from .types import ChangeType, ConnectionStatus, SignalName


def _default_store_path() -> Path:
    return Path(click.get_app_dir("runnersync")) / "session.db"


def _load_config(path: str | None) -> SyncConfig:
    if path is None:
        return SyncConfig()
    try:
        return SyncConfig.from_file(path)
    except (OSError, ValueError) as exc:
        raise click.BadParameter(str(exc), param_hint="--config") from exc


def _open_store(path: str | None) -> SqliteKeyValueStore:
    return SqliteKeyValueStore(db_path=path or _default_store_path())


def _fail(message: str) -> NoReturn:
    click.echo(f"✗ {message}", err=True)
    sys.exit(1)


config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="JSON configuration file (apiBaseUrl, hubUrl, pollingInterval, ...).",
)
store_option = click.option(
    "--store",
    "store_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="SQLite file holding the persisted session.",
)


@click.group()
@click.version_option(package_name="runnersync")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def app(log_level: str) -> None:
    """runnersync CLI - admin session and realtime sync for 241 Runners."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@app.command()
@config_option
@store_option
def status(config_path: str | None, store_path: str | None) -> None:
    """Show whether a persisted session is still valid."""
    config = _load_config(config_path)
    sessions = SessionStore.from_config(config, _open_store(store_path))
    user = sessions.user if sessions.restore() else None
    if user is None:
        _fail("Not authenticated.")
    click.echo(f"✓ Authenticated as {user.email} ({user.role})")


@app.command()
@click.argument("email")
@click.option("--password", prompt=True, hide_input=True, help="Account password.")
@config_option
@store_option
def login(email: str, password: str, config_path: str | None, store_path: str | None) -> None:
    """Log in and persist the session."""
    config = _load_config(config_path)
    store = _open_store(store_path)

    async def _run() -> None:
        service = SyncService(config, store=store)
        try:
            await service.login(email, password)
        finally:
            await service.dispose()

    try:
        asyncio.run(_run())
    except SyncError as exc:
        _fail(str(exc))
    click.echo(f"✓ Logged in as {email}")


@app.command()
@store_option
def logout(store_path: str | None) -> None:
    """Forget the persisted session."""
    SessionStore(_open_store(store_path)).clear()
    click.echo("✓ Logged out successfully.")


def _print_event(name: str, data: Any) -> None:
    click.echo(json.dumps({"event": name, "data": data}, default=str))


async def _watch(config: SyncConfig, store: SqliteKeyValueStore) -> None:
    lost = asyncio.Event()

    def _on_session_lost(message: str) -> None:
        click.echo(f"✗ {message}", err=True)
        lost.set()

    async with SyncService(config, store=store, on_session_lost=_on_session_lost) as service:
        if not service.sessions.is_authenticated():
            raise SyncError("Not authenticated. Run 'runnersync login' first.")
        for name in [*ChangeType, *SignalName]:
            service.dispatcher.on(name, lambda data, name=name.value: _print_event(name, data))

        def _on_status(status: ConnectionStatus) -> None:
            click.echo(json.dumps({"event": "connectionStatus", "data": status.value}))

        service.realtime.on_status_change(_on_status)
        _on_status(service.realtime.status)
        await lost.wait()


@app.command()
@config_option
@store_option
def watch(config_path: str | None, store_path: str | None) -> None:
    """Stream change events as JSON lines until interrupted."""
    config = _load_config(config_path)
    store = _open_store(store_path)
    try:
        asyncio.run(_watch(config, store))
    except KeyboardInterrupt:
        pass
    except SyncError as exc:
        _fail(str(exc))


def main() -> None:  # pragma: no cover - thin wrapper
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
