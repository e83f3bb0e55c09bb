"""
Command line entry point.

    providerbridge run                 start proxy + tunnel, serve until interrupted
    providerbridge serve               like run, but starts only when autoStart is set
    providerbridge models              list models reported by the provider
    providerbridge test-connection     exit 0 when the provider lists at least one model
    providerbridge config show|set|validate
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from typing import Any

from providerbridge.config.manager import ConfigurationManager
from providerbridge.config.secrets import FileSecretStore
from providerbridge.config.settings import settings
from providerbridge.core.errors import BridgeError
from providerbridge.core.service import BridgeService
from providerbridge.util.logger import create_logger, dispose_logger
from providerbridge.util.masking import mask_for_log


def _parse_value(raw: str) -> Any:
    lowered = raw.strip().lower()
    if lowered in {"true", "yes", "on"}:
        return True
    if lowered in {"false", "no", "off"}:
        return False
    return raw


def _stop_event() -> asyncio.Event:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, stop_event.set)
    return stop_event


async def _run(service: BridgeService) -> int:
    stop_event = _stop_event()
    try:
        status = await service.start_bridge()
    except BridgeError as exc:
        print(f"failed to start bridge [{exc.code.value}]: {exc.message}", file=sys.stderr)
        await service.shutdown()
        return 1

    print(f"bridge running at {status.url} -> {service.configuration.get_configuration().provider_url}")
    try:
        await stop_event.wait()
    finally:
        await service.shutdown()
    return 0


async def _serve(service: BridgeService, stop_event: asyncio.Event | None = None) -> int:
    """Stay up until interrupted; the bridge starts only when ``autoStart`` is set."""
    stop_event = stop_event or _stop_event()
    try:
        await service.handle_auto_start()
        summary = await service.status_summary()
        print(f"bridge {summary.label}")
        await stop_event.wait()
    finally:
        await service.shutdown()
    return 0


async def _models(service: BridgeService) -> int:
    models = await service.model_provider.get_models()
    if not models:
        print("no models available (is the provider running?)", file=sys.stderr)
        return 1
    for model in models:
        print(model.id)
    return 0


async def _test_connection(service: BridgeService) -> int:
    ok = await service.test_connection()
    url = service.configuration.get_configuration().provider_url
    print(f"{'connected to' if ok else 'cannot reach'} {url}")
    return 0 if ok else 1


def _config_command(manager: ConfigurationManager, args: argparse.Namespace) -> int:
    if args.config_action == "show":
        values = manager.get_configuration().model_dump()
        if values.get("tunnel_auth_token"):
            values["tunnel_auth_token"] = mask_for_log(values["tunnel_auth_token"])
        print(json.dumps(values, indent=2, ensure_ascii=False))
        return 0
    if args.config_action == "set":
        manager.update_configuration(args.key, _parse_value(args.value))
        print(f"updated {args.key}")
        return 0
    problems = manager.validate_configuration()
    for problem in problems:
        print(problem, file=sys.stderr)
    if not problems:
        print("configuration is valid")
    return 1 if problems else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="providerbridge",
        description="Expose a local inference provider through a tunnel.",
    )
    parser.add_argument("--config", default=None, help=f"bridge YAML file (default: {settings.config_path})")
    parser.add_argument("--secrets", default=None, help=f"secret store file (default: {settings.secrets_path})")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Verbose (use -v for debug)",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("run", help="start the proxy and tunnel and serve until interrupted")
    commands.add_parser("serve", help="stay up until interrupted, starting the bridge when autoStart is set")
    commands.add_parser("models", help="list provider models")
    commands.add_parser("test-connection", help="check that the provider answers with models")

    config = commands.add_parser("config", help="inspect or edit the bridge configuration")
    actions = config.add_subparsers(dest="config_action", required=True)
    actions.add_parser("show", help="print the configuration (token masked)")
    setter = actions.add_parser("set", help="set one configuration key")
    setter.add_argument("key")
    setter.add_argument("value")
    actions.add_parser("validate", help="report configuration problems")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logger = create_logger(
        "debug" if args.verbose else settings.log_level,
        settings.log_file or None,
    )
    try:
        manager = ConfigurationManager(
            args.config or settings.config_path,
            logger,
            secret_store=FileSecretStore(args.secrets or settings.secrets_path),
        )
        if args.command == "config":
            return _config_command(manager, args)

        service = BridgeService(manager, logger)
        if args.command == "run":
            return asyncio.run(_run(service))
        if args.command == "serve":
            return asyncio.run(_serve(service))
        if args.command == "models":
            return asyncio.run(_models(service))
        return asyncio.run(_test_connection(service))
    except BridgeError as exc:
        logger.error("%s failed [%s]: %s", args.command, exc.code.value, exc.message)
        return 1
    finally:
        dispose_logger(logger)


if __name__ == "__main__":
    sys.exit(main())
