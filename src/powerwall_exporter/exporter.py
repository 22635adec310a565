#!/usr/bin/env python3
"""Prometheus exporter for the Tesla Powerwall gateway local API.

- Loads settings from a YAML config file (see config.py); device credentials
  may also come from .env / the environment
- Logs in to the gateway and collects its state on every scrape
- Exposes the metrics and a small landing page over HTTP

Run:
    python -m powerwall_exporter --config.file powerwall_exporter.yaml
Then scrape: http://localhost:9871/metrics
"""

from __future__ import annotations

import argparse
import asyncio
import html
import logging
import sys
from pathlib import Path
from typing import List, Optional

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from powerwall_exporter import __version__, util
from powerwall_exporter.client import PowerwallClient, PowerwallError
from powerwall_exporter.collector import EXPORTER_NAME, PowerwallCollector
from powerwall_exporter.config import DEFAULT_CONFIG_FILE, Config, ConfigError, load_config

CONSOLE: logging.Logger = util.CONSOLE

PROJECT_URL = "https://github.com/foogod/powerwall_exporter"

COLLECTOR_KEY = web.AppKey("collector", PowerwallCollector)
CONFIG_KEY = web.AppKey("config", Config)

INDEX_HTML = """<!doctype html>
<html>
<head>
        <meta charset="UTF-8">
        <title>{exporter} exporter</title>
</head>
<body>
        <h1>{exporter} exporter for Prometheus (Version {version})</h1>
        <p>Exported metrics are available at <a href="{metrics_path}">{metrics_path}</a></p>
        <h2>More information:</h2>
        <p><a href="{project_url}">{project_url}</a></p>
</body>
</html>
"""


async def _index_page(request: web.Request) -> web.Response:
    config = request.app[CONFIG_KEY]
    body = INDEX_HTML.format(
        exporter=html.escape(EXPORTER_NAME),
        version=html.escape(__version__),
        metrics_path=html.escape(config.web.metrics_path),
        project_url=html.escape(PROJECT_URL),
    )
    return web.Response(text=body, content_type="text/html")


async def _metrics(request: web.Request) -> web.Response:
    sink = await request.app[COLLECTOR_KEY].collect()
    return web.Response(
        body=generate_latest(sink),
        headers={"Content-Type": CONTENT_TYPE_LATEST},
    )


def build_app(config: Config, collector: PowerwallCollector) -> web.Application:
    app = web.Application()
    app[CONFIG_KEY] = config
    app[COLLECTOR_KEY] = collector
    app.router.add_get(config.web.metrics_path, _metrics)
    # Every other path gets the landing page
    app.router.add_get("/{tail:.*}", _index_page)
    return app


def _load_tls_cert(filename: str) -> str:
    """Read a PEM certificate file, raising ConfigError if it is not one."""
    try:
        pem = Path(filename).read_text(encoding="ascii")
    except (OSError, UnicodeDecodeError) as err:
        raise ConfigError(f"Unable to read TLS cert file: {err}") from err
    if "-----BEGIN CERTIFICATE-----" not in pem:
        raise ConfigError("Contents of TLS cert file do not appear to be a PEM-encoded certificate")
    CONSOLE.debug("Loaded TLS certificate", extra={"fields": {"file": str(Path(filename).resolve())}})
    return pem


def _new_client(config: Config) -> PowerwallClient:
    return PowerwallClient(
        config.device.gateway_address,
        config.device.login_email,
        config.device.login_password,
    )


async def _fetch_tls_cert(config: Config) -> None:
    if not config.device.tls_cert_file:
        raise ConfigError("tls-cert-file not specified in config file")
    async with _new_client(config) as client:
        pem = await client.fetch_tls_cert()
    Path(config.device.tls_cert_file).write_text(pem, encoding="ascii")
    CONSOLE.info("TLS certificate retrieved and written to %s", config.device.tls_cert_file)


async def _serve(config: Config) -> None:
    async with _new_client(config) as client:
        client.set_retry(config.device.retry_interval, config.device.retry_timeout)
        if config.device.tls_cert_file:
            try:
                client.set_tls_cert(_load_tls_cert(config.device.tls_cert_file))
            except ValueError as err:
                raise ConfigError(f"Error parsing cert file: {err}") from err

        collector = PowerwallCollector(client)
        CONSOLE.debug("Registered %d metrics", len(collector.describe()))
        runner = web.AppRunner(build_app(config, collector), access_log=None)
        await runner.setup()
        host, port = config.web.host_port()
        site = web.TCPSite(runner, host, port)
        await site.start()
        CONSOLE.info(
            "Listening for HTTP connections",
            extra={
                "fields": {
                    "listen_address": config.web.listen_address,
                    "metrics_path": config.web.metrics_path,
                }
            },
        )
        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="powerwall_exporter",
        description="Prometheus exporter for the Tesla Powerwall gateway",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug messages")
    parser.add_argument(
        "--log.style",
        dest="log_style",
        choices=util.LOG_STYLES,
        default="text",
        help="Style of log output to produce",
    )
    parser.add_argument(
        "--config.file",
        dest="config_file",
        default=DEFAULT_CONFIG_FILE,
        help="Path to config file",
    )
    parser.add_argument(
        "--fetchcert",
        action="store_true",
        help="Retrieve TLS cert and store it in cert file",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> None:
    config = load_config(args.config_file)
    if args.fetchcert:
        await _fetch_tls_cert(config)
    else:
        await _serve(config)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    util.setup_logging(debug=args.debug, style=args.log_style)
    CONSOLE.info("Starting %s exporter", EXPORTER_NAME, extra={"fields": {"version": __version__}})
    try:
        asyncio.run(_run(args), debug=False)
    except KeyboardInterrupt:
        CONSOLE.warning("Exporter aborted by user")
    except ConfigError as err:
        CONSOLE.error("%s", err)
        return 1
    except PowerwallError as err:
        CONSOLE.error("%s: %s", type(err).__name__, err)
        return 1
    except OSError as err:
        CONSOLE.error("%s: %s", type(err).__name__, err)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
