from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys

from aihelper.config import AppConfig, load_config
from aihelper.observability import configure_logging
from aihelper.orchestrator import TaskOrchestrator
from aihelper.provider_selection import ProviderSelector
from aihelper.supervisor import SignalListenerRegistry
from aihelper.webhook import dispatch_event, verify_signature
from aihelper.workspace import WorkspaceManager


_DEFAULT_CONFIG_PATH = Path("aihelper.toml")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="aihelper")
    subparsers = parser.add_subparsers(dest="command", required=True)

    providers_parser = subparsers.add_parser(
        "providers", help="List AI command line tools that are installed and responding"
    )
    providers_parser.add_argument("--config", type=Path, default=_DEFAULT_CONFIG_PATH)
    providers_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )

    dispatch_parser = subparsers.add_parser(
        "dispatch", help="Dispatch one GitHub webhook delivery read from a JSON file"
    )
    dispatch_parser.add_argument("--config", type=Path, default=_DEFAULT_CONFIG_PATH)
    dispatch_parser.add_argument(
        "--event",
        type=str,
        required=True,
        help="GitHub event name (the X-GitHub-Event header)",
    )
    dispatch_parser.add_argument(
        "--payload",
        type=Path,
        required=True,
        help="Path to the raw JSON delivery body",
    )
    dispatch_parser.add_argument(
        "--signature",
        type=str,
        default=None,
        help="X-Hub-Signature-256 header value; checked when a webhook secret is set",
    )
    dispatch_parser.add_argument(
        "--wait",
        action="store_true",
        help=(
            "Wait for the started AI process to finish; without it the task is "
            "cleaned up when this command exits"
        ),
    )
    dispatch_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )

    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    config = _load_app_config(args.config)
    configure_logging(bool(getattr(args, "verbose", False)), log_dir=config.log_dir)

    if args.command == "providers":
        _cmd_providers(config)
        return
    if args.command == "dispatch":
        exit_code = _cmd_dispatch(
            config,
            event_name=str(args.event),
            payload_path=args.payload,
            signature=args.signature,
            wait=bool(args.wait),
        )
        if exit_code:
            raise SystemExit(exit_code)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _load_app_config(path: Path) -> AppConfig:
    if path.exists():
        return load_config(path)
    if path != _DEFAULT_CONFIG_PATH:
        raise FileNotFoundError(f"Config file not found: {path}")
    return AppConfig()


def _cmd_providers(config: AppConfig) -> None:
    selector = ProviderSelector.from_config(config)
    available = selector.available_providers()
    if not available:
        print("No AI providers available.")
        return
    for name in available:
        print(name)


def _cmd_dispatch(
    config: AppConfig,
    *,
    event_name: str,
    payload_path: Path,
    signature: str | None,
    wait: bool,
) -> int:
    body = payload_path.read_bytes()
    secret = config.webhook.secret()
    if secret and not verify_signature(secret, body, signature):
        print(json.dumps({"status": "failed", "message": "Invalid webhook signature"}))
        return 1

    payload = json.loads(body)
    if not isinstance(payload, dict):
        raise RuntimeError("Webhook payload must be a JSON object")

    signal_registry = SignalListenerRegistry()
    signal_registry.install()
    orchestrator = TaskOrchestrator(
        config=config.ai,
        selector=ProviderSelector.from_config(config),
        workspaces=WorkspaceManager(
            config.ai.working_dir,
            command_timeout_seconds=config.ai.command_timeout_seconds,
        ),
        signal_registry=signal_registry,
    )
    result = dispatch_event(orchestrator, event_name, payload, settings=config.webhook)
    print(json.dumps(result.to_json_dict(), indent=2))
    sys.stdout.flush()

    if wait and result.task is not None:
        supervisor = result.task.supervisor
        supervisor.wait()
        print(
            json.dumps(
                {
                    "task_id": result.task.task_id,
                    "outcome": supervisor.outcome,
                    "exit_code": supervisor.exit_code,
                }
            )
        )
    return 1 if result.status == "failed" else 0
