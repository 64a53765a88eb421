"""CLI commands for devicecore."""

import asyncio
import importlib
import json
import os
import signal
from pathlib import Path

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from devicecore import __logo__, __version__

app = typer.Typer(
    name="devicecore",
    help=f"{__logo__} devicecore - edge device-service runtime",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} devicecore v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """devicecore - edge device-service runtime."""
    pass


def load_driver(spec: str):
    """Instantiate a driver from ``simulated`` or a ``module:Class`` path."""
    from devicecore.driver.simulated import SimulatedDriver

    name = spec.strip()
    if not name or name.lower() == "simulated":
        return SimulatedDriver()
    module_name, sep, attr = name.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"driver must be 'simulated' or 'module:Class', got {spec!r}")
    module = importlib.import_module(module_name)
    driver_cls = getattr(module, attr)
    return driver_cls()


# ============================================================================
# Config Commands
# ============================================================================


config_app = typer.Typer(help="Manage devicecore config")
app.add_typer(config_app, name="config")


@config_app.command("check")
def config_check(
    config: Path | None = typer.Option(None, "--config", "-c", help="Config path to validate"),
):
    """Validate config JSON/YAML structure and schema."""
    from devicecore.config.loader import convert_keys, get_config_path, load_raw_config
    from devicecore.config.schema import Config

    config_path = (config or get_config_path()).expanduser()
    if not config_path.exists():
        console.print(f"[red]Config file not found:[/red] {config_path}")
        raise typer.Exit(2)

    try:
        raw = load_raw_config(config_path)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        console.print(f"[red]Invalid config syntax:[/red] {escape(str(exc))}")
        raise typer.Exit(2) from exc
    except (OSError, ValueError) as exc:
        console.print(f"[red]Failed to read config:[/red] {escape(str(exc))}")
        raise typer.Exit(2) from exc

    try:
        cfg = Config.model_validate(convert_keys(raw))
    except ValueError as exc:
        console.print(f"[red]Schema validation failed:[/red] {escape(str(exc))}")
        raise typer.Exit(1) from exc

    console.print("[green]✓[/green] Config validation passed")
    console.print(f"path={config_path}")
    console.print(f"service={cfg.service.name} base={cfg.service.base_service_name}")
    console.print(
        f"message_bus={cfg.message_bus.type} "
        f"broker={cfg.message_bus.host}:{cfg.message_bus.port} "
        f"prefix={cfg.message_bus.base_topic_prefix}"
    )
    console.print(f"metadata={cfg.metadata.type} url={cfg.metadata.base_url}")
    console.print(
        "features="
        f"discovery={'on' if cfg.device.discovery.enabled else 'off'} "
        f"async_readings={'on' if cfg.device.enable_async_readings else 'off'} "
        f"data_transform={'on' if cfg.device.data_transform else 'off'} "
        f"control={'on' if cfg.control.enabled else 'off'}"
    )


@config_app.command("show")
def config_show(
    config: Path | None = typer.Option(None, "--config", "-c", help="Config path"),
):
    """Print the effective configuration as a table."""
    from devicecore.config.loader import load_config

    cfg = load_config(config)
    table = Table(title="devicecore config")
    table.add_column("Section", style="cyan")
    table.add_column("Key")
    table.add_column("Value")
    for section, values in cfg.model_dump(exclude={"driver"}).items():
        if not isinstance(values, dict):
            table.add_row("", section, str(values))
            continue
        for key, value in values.items():
            if key == "password" and value:
                value = "***"
            table.add_row(section, key, str(value))
    console.print(table)


# ============================================================================
# Service Commands
# ============================================================================


service_app = typer.Typer(help="Run the device service")
app.add_typer(service_app, name="service")


@service_app.command("serve")
def service_serve(
    config_path: Path | None = typer.Option(None, "--config", "-c", help="Config path"),
    driver: str = typer.Option("simulated", "--driver", "-d", help="Driver: simulated or module:Class"),
    bus: str | None = typer.Option(None, "--bus", help="Message bus override: mqtt/memory"),
    control_port: int | None = typer.Option(None, "--control-port", help="Control API port override"),
    logs: bool = typer.Option(False, "--logs/--no-logs", help="Show runtime logs"),
):
    """Start the device service, its driver and the control API."""
    from loguru import logger

    from devicecore.api.control_server import ControlServer
    from devicecore.config.loader import load_config
    from devicecore.errors import EdgeError
    from devicecore.runtime.service import ServiceRuntime

    config = load_config(config_path)
    if logs:
        logger.enable("devicecore")
    else:
        logger.disable("devicecore")

    if bus:
        config.message_bus.type = bus
    if control_port:
        config.control.port = control_port

    try:
        protocol_driver = load_driver(driver)
    except (ImportError, AttributeError, ValueError) as exc:
        console.print(f"[red]Cannot load driver:[/red] {escape(str(exc))}")
        raise typer.Exit(2) from exc

    console.print(f"{__logo__} Starting device service {config.service.name}")
    console.print(
        f"driver={protocol_driver.name} bus={config.message_bus.type} "
        f"metadata={config.metadata.type}"
    )
    if config.control.enabled:
        console.print(f"control-api=http://{config.control.host}:{config.control.port}")

    async def run() -> int:
        control: ControlServer | None = None
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        runtime = ServiceRuntime(config, protocol_driver)

        def _request_stop() -> None:
            stop_event.set()

        if os.name != "nt":
            signal.signal(signal.SIGINT, lambda *_: loop.call_soon_threadsafe(_request_stop))
            signal.signal(signal.SIGTERM, lambda *_: loop.call_soon_threadsafe(_request_stop))

        try:
            try:
                await runtime.start()
            except EdgeError as e:
                console.print(f"[red]Startup failed:[/red] {e}")
                return 1
            if config.control.enabled:
                control = ControlServer(
                    host=config.control.host,
                    port=config.control.port,
                    runtime=runtime,
                    loop=loop,
                    max_request_body_bytes=config.control.max_request_body_bytes,
                    request_timeout_seconds=config.control.request_timeout_seconds,
                )
                control.start()
            await stop_event.wait()
        except KeyboardInterrupt:
            pass
        finally:
            if control:
                control.stop()
            await runtime.stop()
        return 0

    code = asyncio.run(run())
    if code:
        raise typer.Exit(code)


if __name__ == "__main__":
    app()
