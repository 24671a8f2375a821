from __future__ import annotations

import contextlib
from pathlib import Path

import pytest

from nats_query import HealthStatus, TransportError
from nq import cli


@pytest.fixture
def fake_broker(broker, monkeypatch: pytest.MonkeyPatch):
    opened: list = []

    @contextlib.asynccontextmanager
    async def _open(settings):
        opened.append(settings)
        yield broker

    broker.opened = opened
    monkeypatch.setattr(cli, "open_connection", _open)
    return broker


def test_cli_request_prints_reply_table(fake_broker, capsys: pytest.CaptureFixture[str]) -> None:
    fake_broker.respond("svc.status", {"status": "up", "node": {"id": "n1"}})
    code = cli.main(["--server", "nats.internal:4222", "request", "svc.status"])
    output = capsys.readouterr().out
    assert code == 0
    assert "node.id" in output
    assert "n1" in output
    assert fake_broker.opened[0].server_url == "nats://nats.internal:4222"


def test_cli_request_json_output(fake_broker, capsys: pytest.CaptureFixture[str]) -> None:
    fake_broker.respond("svc.status", [{"a": 1}, {"b": 2}])
    code = cli.main(["--json", "request", "svc.status"])
    output = capsys.readouterr().out
    assert code == 0
    assert '"columns"' in output
    assert '"b": null' in output


def test_cli_request_without_responder_fails(fake_broker, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["request", "svc.missing", "--timeout", "100ms"])
    output = capsys.readouterr().out
    assert code == 1
    assert "NoResponse" in output


def test_cli_script_command(fake_broker, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    fake_broker.respond_many("svc.ping", [{"node": "n1"}, {"node": "n2"}])
    script = tmp_path / "ping_all.py"
    script.write_text(
        "inbox = nc.new_inbox()\n"
        "sub = nc.subscribe_sync(inbox)\n"
        "nc.publish_request('svc.ping', inbox, '')\n"
        "rows = []\n"
        "while (m := sub.next_msg('100ms')) is not None:\n"
        "    rows.append(json.loads(m.data))\n"
        "print('replies', len(rows))\n"
        "result = rows\n",
        encoding="utf-8",
    )
    code = cli.main(["script", str(script)])
    output = capsys.readouterr().out
    assert code == 0
    assert "n2" in output
    assert "replies 2" in output


def test_cli_subscribe_stops_after_max_messages(
    fake_broker, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    original = fake_broker.subscribe

    async def subscribe_and_feed(subject: str):
        sub = await original(subject)
        await fake_broker.emit("sensors.kitchen", {"t": 21})
        return sub

    monkeypatch.setattr(fake_broker, "subscribe", subscribe_and_feed)
    code = cli.main(["subscribe", "sensors.*", "--max-messages", "1"])
    output = capsys.readouterr().out
    assert code == 0
    assert "21" in output
    assert fake_broker.active_subscriptions == 0


def test_cli_subscribe_timeout_is_failure(fake_broker, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["subscribe", "sensors.*", "--timeout", "50ms"])
    output = capsys.readouterr().out
    assert code == 1
    assert "Timeout" in output


def test_cli_missing_script_file_is_usage_error(fake_broker, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["script", "/nonexistent/check_nodes.py"])
    output = capsys.readouterr().out
    assert code == 2
    assert "cannot read script" in output
    assert fake_broker.opened == []


def test_cli_unknown_auth_mode_is_usage_error(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--auth", "kerberos", "health"])
    assert excinfo.value.code == 2


def test_cli_missing_connection_config_is_usage_error(capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["--connection-config", "/nonexistent.toml", "health"])
    assert code == 2
    assert "invalid connection settings" in capsys.readouterr().out


def test_cli_connection_failure_is_reported(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    @contextlib.asynccontextmanager
    async def _refuse(settings):
        raise TransportError("NATS connection error: refused")
        yield

    monkeypatch.setattr(cli, "open_connection", _refuse)
    code = cli.main(["request", "svc.status"])
    output = capsys.readouterr().out
    assert code == 1
    assert "TransportError" in output


def test_cli_health(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    seen: list = []

    async def _healthy(settings):
        seen.append(settings)
        return HealthStatus(ok=True, message="Data source is working")

    monkeypatch.setattr(cli, "check_health", _healthy)
    monkeypatch.setenv("NATS_PASSWORD", "from-env")
    code = cli.main(["--auth", "USERPASS", "--username", "grafana", "health"])
    output = capsys.readouterr().out
    assert code == 0
    assert "Data source is working" in output
    assert seen[0].password == "from-env"
    assert "from-env" not in output


def test_cli_health_failure(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    async def _down(settings):
        return HealthStatus(ok=False, message="NATS could not be connected to: refused")

    monkeypatch.setattr(cli, "check_health", _down)
    code = cli.main(["health"])
    assert code == 1
    assert "could not be connected" in capsys.readouterr().out


def test_cli_help_mentions_secret_environment(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--help"])
    assert excinfo.value.code == 0
    assert "NATS_PASSWORD" in capsys.readouterr().out
