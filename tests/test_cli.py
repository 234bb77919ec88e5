from __future__ import annotations

import json
from pathlib import Path

import pytest

from aihelper import cli
from aihelper.config import WebhookConfig
from aihelper.models import DispatchResult
from aihelper.orchestrator import TaskOrchestrator
from aihelper.provider_selection import ProviderSelector
from aihelper.supervisor import SignalListenerRegistry


def _write_config(tmp_path: Path) -> Path:
    path = tmp_path / "aihelper.toml"
    path.write_text(
        f"""
[ai]
working_dir = "{tmp_path / 'work'}"

[webhook]
secret_env = "AIHELPER_TEST_WEBHOOK_SECRET"
""",
        encoding="utf-8",
    )
    return path


def _write_payload(tmp_path: Path, payload: dict[str, object]) -> Path:
    path = tmp_path / "delivery.json"
    path.write_bytes(json.dumps(payload).encode("utf-8"))
    return path


@pytest.fixture(autouse=True)
def quiet_signals(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "SignalListenerRegistry", lambda: SignalListenerRegistry(signals=()))
    monkeypatch.delenv("AIHELPER_TEST_WEBHOOK_SECRET", raising=False)


def test_build_parser_requires_command() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_dispatch_parser_requires_event_and_payload() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["dispatch", "--event", "issues"])

    args = cli.build_parser().parse_args(
        ["dispatch", "--event", "issues", "--payload", "d.json", "--wait", "-v"]
    )
    assert args.event == "issues"
    assert args.payload == Path("d.json")
    assert args.wait is True
    assert args.verbose is True
    assert args.signature is None


def test_providers_lists_available(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(ProviderSelector, "available_providers", lambda self: ["gemini"])

    cli.main(["providers", "--config", str(_write_config(tmp_path))])

    assert capsys.readouterr().out.strip() == "gemini"


def test_providers_reports_none(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(ProviderSelector, "available_providers", lambda self: [])

    cli.main(["providers", "--config", str(_write_config(tmp_path))])

    assert "No AI providers available." in capsys.readouterr().out


def test_missing_explicit_config_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError, match="Config file not found"):
        cli.main(["providers", "--config", str(tmp_path / "missing.toml")])


def test_dispatch_prints_ignored_result(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    payload = _write_payload(tmp_path, {"ref": "refs/heads/main"})

    cli.main(
        [
            "dispatch",
            "--config",
            str(_write_config(tmp_path)),
            "--event",
            "push",
            "--payload",
            str(payload),
        ]
    )

    result = json.loads(capsys.readouterr().out)
    assert result["status"] == "ignored"


def test_dispatch_rejects_bad_signature(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("AIHELPER_TEST_WEBHOOK_SECRET", "s3cret")
    payload = _write_payload(tmp_path, {"action": "opened"})

    with pytest.raises(SystemExit) as exc_info:
        cli.main(
            [
                "dispatch",
                "--config",
                str(_write_config(tmp_path)),
                "--event",
                "pull_request",
                "--payload",
                str(payload),
                "--signature",
                "sha256=bogus",
            ]
        )

    assert exc_info.value.code == 1
    assert "Invalid webhook signature" in capsys.readouterr().out


def test_dispatch_failed_result_exits_non_zero(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    seen: dict[str, object] = {}

    def fake_dispatch(
        orchestrator: TaskOrchestrator,
        event_name: str,
        payload: dict[str, object],
        *,
        settings: WebhookConfig,
    ) -> DispatchResult:
        seen["event_name"] = event_name
        seen["payload"] = payload
        seen["settings"] = settings
        return DispatchResult(status="failed", message="No AI providers are available.")

    monkeypatch.setattr(cli, "dispatch_event", fake_dispatch)
    payload = _write_payload(tmp_path, {"action": "opened"})

    with pytest.raises(SystemExit) as exc_info:
        cli.main(
            [
                "dispatch",
                "--config",
                str(_write_config(tmp_path)),
                "--event",
                "issues",
                "--payload",
                str(payload),
            ]
        )

    assert exc_info.value.code == 1
    assert seen["event_name"] == "issues"
    assert seen["payload"] == {"action": "opened"}
    assert isinstance(seen["settings"], WebhookConfig)
    result = json.loads(capsys.readouterr().out)
    assert result == {"status": "failed", "message": "No AI providers are available."}


def test_dispatch_rejects_non_object_payload(tmp_path: Path) -> None:
    payload = tmp_path / "delivery.json"
    payload.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(RuntimeError, match="must be a JSON object"):
        cli.main(
            [
                "dispatch",
                "--config",
                str(_write_config(tmp_path)),
                "--event",
                "issues",
                "--payload",
                str(payload),
            ]
        )
