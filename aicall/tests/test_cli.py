from __future__ import annotations

import hashlib
import json
from typing import Any

import httpx
import pytest
import respx
from typer.testing import CliRunner

from aicall.cli import app
from aicall.version import __version__

from .conftest import USER

runner = CliRunner()

LEDGER_URL = "http://ledger.cli.test"
STORE_URL = "http://store.cli.test"
JWKS_URL = "http://jwks.cli.test/api/jwks"


@pytest.fixture(autouse=True)
def endpoints(monkeypatch: Any) -> None:
    monkeypatch.delenv("AICALL_CONFIG", raising=False)
    monkeypatch.setenv("AICALL_LEDGER_URL", LEDGER_URL)
    monkeypatch.setenv("AICALL_STORE_ENDPOINT", STORE_URL)
    monkeypatch.setenv("AICALL_CALLER", USER)
    monkeypatch.setenv("AICALL_LEDGER_RETRIES", "1")
    monkeypatch.setenv("AICALL_STORE_RETRIES", "1")


def _record(rid: int, *, fulfilled: bool = False) -> dict:
    zero = "0x" + "00" * 32
    return {
        "id": rid,
        "requester": USER,
        "model": "COA",
        "prompt_digest": "0x" + "11" * 32,
        "result_digest": "0x" + "22" * 32 if fulfilled else zero,
        "report_digest": "0x" + "33" * 32 if fulfilled else zero,
        "status": "fulfilled" if fulfilled else "pending",
    }


def test_version() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert result.output.strip() == __version__


@respx.mock
def test_models_and_supported() -> None:
    respx.get(f"{LEDGER_URL}/models").mock(return_value=httpx.Response(200, json={"models": ["COA", "GPT"]}))
    respx.get(f"{LEDGER_URL}/models/COA").mock(
        return_value=httpx.Response(200, json={"name": "COA", "supported": True})
    )
    respx.get(f"{LEDGER_URL}/models/NOPE").mock(
        return_value=httpx.Response(200, json={"name": "NOPE", "supported": False})
    )

    result = runner.invoke(app, ["models"])
    assert result.exit_code == 0
    assert result.output.split() == ["COA", "GPT"]

    result = runner.invoke(app, ["models", "--json"])
    assert json.loads(result.output) == {"models": ["COA", "GPT"]}

    assert runner.invoke(app, ["supported", "COA"]).exit_code == 0
    result = runner.invoke(app, ["supported", "NOPE"])
    assert result.exit_code == 1
    assert "not supported" in result.output


@respx.mock
def test_status() -> None:
    respx.get(f"{LEDGER_URL}/requests/3").mock(return_value=httpx.Response(200, json=_record(3, fulfilled=True)))
    respx.get(f"{LEDGER_URL}/requests/9").mock(
        return_value=httpx.Response(404, json={"code": "INVALID_ID", "message": "unknown request id 9"})
    )

    result = runner.invoke(app, ["status", "3", "--json"])
    assert result.exit_code == 0
    assert json.loads(result.output)["status"] == "fulfilled"

    result = runner.invoke(app, ["status", "3"])
    assert "fulfilled" in result.output

    assert runner.invoke(app, ["status", "9"]).exit_code == 1


@respx.mock
def test_ledger_unreachable_exits_1() -> None:
    respx.get(f"{LEDGER_URL}/models").mock(side_effect=httpx.ConnectError("refused"))
    result = runner.invoke(app, ["models"])
    assert result.exit_code == 1


@respx.mock
def test_request_no_wait() -> None:
    prompt = "I want to transfer 10 USDT"
    key = hashlib.sha256(prompt.encode()).hexdigest()
    upload = respx.post(f"{STORE_URL}/v1/minio/object").mock(return_value=httpx.Response(200, text=key))
    submit = respx.post(f"{LEDGER_URL}/requests").mock(
        return_value=httpx.Response(
            201,
            json={
                "request_id": 4,
                "events": [
                    {
                        "kind": "Requested",
                        "seq": 1,
                        "id": 4,
                        "requester": USER,
                        "model": "COA",
                        "prompt_digest": "0x" + key,
                    }
                ],
            },
        )
    )

    result = runner.invoke(app, ["request", "--prompt", prompt, "--no-wait", "--json"])
    assert result.exit_code == 0, result.output
    out = json.loads(result.output)
    assert out["state"] == "submitted"
    assert out["request_id"] == 4

    assert upload.called
    sent = json.loads(submit.calls.last.request.content)
    assert sent == {"model": "COA", "prompt_digest": "0x" + key}
    assert submit.calls.last.request.headers["x-aicall-caller"] == USER


def test_request_needs_a_prompt() -> None:
    result = runner.invoke(app, ["request", "--no-wait"])
    assert result.exit_code == 2


@respx.mock
def test_wait_times_out_with_exit_2() -> None:
    route = respx.get(f"{LEDGER_URL}/requests/5").mock(return_value=httpx.Response(200, json=_record(5)))
    result = runner.invoke(app, ["wait", "5", "--interval", "10ms", "--timeout", "30ms"])
    assert result.exit_code == 2
    assert route.call_count >= 2


@respx.mock
def test_verify_token_file(tmp_path, jwks_doc, make_token) -> None:
    respx.get(JWKS_URL).mock(return_value=httpx.Response(200, json=jwks_doc))
    good = tmp_path / "report.jwt"
    good.write_text(make_token({"iat": 1_700_000_000, "result": "ok"}) + "\n")

    result = runner.invoke(app, ["verify", "--token-file", str(good), "--jwks-url", JWKS_URL])
    assert result.exit_code == 0, result.output
    assert result.output.startswith("valid")

    head, pay, sig = good.read_text().strip().split(".")
    bad = tmp_path / "bad.jwt"
    bad.write_text(".".join([head, pay, sig[:10] + ("A" if sig[10] != "A" else "B") + sig[11:]]))
    result = runner.invoke(app, ["verify", "--token-file", str(bad), "--jwks-url", JWKS_URL, "--json"])
    assert result.exit_code == 1
    assert json.loads(result.output)["valid"] is False

    result = runner.invoke(app, ["verify", "--token", "not-a-token", "--jwks-url", JWKS_URL])
    assert result.exit_code == 1


@respx.mock
def test_ping() -> None:
    route = respx.get(f"{STORE_URL}/v1/minio/health").mock(return_value=httpx.Response(200, json={"ok": True}))
    result = runner.invoke(app, ["ping"])
    assert result.exit_code == 0
    assert "ok" in result.output
    assert route.called

    route.mock(return_value=httpx.Response(503))
    assert runner.invoke(app, ["ping"]).exit_code == 1


def test_config_shows_addresses(monkeypatch: Any) -> None:
    monkeypatch.setenv("AICALL_LEDGER_ADDRESS", "0xLEDGER")
    monkeypatch.setenv("AICALL_FULFILLER_ADDRESS", "0xWORKER")

    result = runner.invoke(app, ["config", "--json"])
    assert result.exit_code == 0, result.output
    ledger = json.loads(result.output)["ledger"]
    assert (ledger["address"], ledger["fulfiller_address"]) == ("0xLEDGER", "0xWORKER")
    assert ledger["url"] == LEDGER_URL

    result = runner.invoke(app, ["config"])
    assert "[ledger]" in result.output
    assert "0xWORKER" in result.output
