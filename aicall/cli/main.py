"""
aicall.cli.main
===============

Command-line entry point.

Examples:
  # What can the ledger run?
  aicall models
  aicall supported COA

  # Full flow: upload, submit, wait, verify the attestation report
  aicall request --prompt "transfer 10 USDT to 0x742d…" --model COA --verify

  # Submit only, come back later
  aicall request --prompt-file prompt.txt --no-wait
  aicall status 7
  aicall wait 7 --timeout 10m

  # Check a report token by hand
  aicall verify --token-file report.jwt

  # Which endpoints, identities and addresses are in effect?
  aicall config

  # Local dev services
  aicall serve-ledger --admin 0xA… --fulfiller 0xF… --model COA
  aicall serve-store --port 8080

Endpoints and identities come from aicall.config (AICALL_* env vars or a
JSON file given with --config).

Exit codes: 0 success, 1 failure or negative answer, 2 timed out/cancelled
(the request may still be fulfilled; `aicall wait ID` resumes).
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from aicall.attest import AttestationVerifier, KeySetClient
from aicall.config import Config, parse_duration_seconds, load_config
from aicall.engine import CorrelationEngine, PollPolicy, RequestState
from aicall.errors import AICallError, RequestTimedOut
from aicall.ledger import HttpLedgerClient
from aicall.store import ContentStoreClient
from aicall.utils.retry import RetryPolicy
from aicall.version import __version__

log = logging.getLogger(__name__)

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="aicall: submit AI requests to the ledger, wait for fulfillment, verify attestations.",
)

EXIT_FAIL = 1
EXIT_PENDING = 2


# --------------------------- helpers ---------------------------


def _configure_logging(level: str) -> None:
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, level.upper(), logging.WARNING),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        logging.getLogger().setLevel(getattr(logging, level.upper(), logging.WARNING))


def _cfg(ctx: typer.Context) -> Config:
    cfg = ctx.obj.get("config") if isinstance(ctx.obj, dict) else None
    return cfg if cfg is not None else load_config()


def _ledger(cfg: Config) -> HttpLedgerClient:
    return HttpLedgerClient(
        cfg.ledger.url,
        cfg.ledger.caller,
        timeout=cfg.ledger.timeout_s,
        policy=RetryPolicy(attempts=cfg.ledger.retries, base=0.5, max_delay=4.0),
    )


def _verifier(cfg: Config, jwks_url: Optional[str] = None) -> AttestationVerifier:
    keys = KeySetClient(
        jwks_url or cfg.attest.jwks_url,
        timeout=cfg.attest.timeout_s,
        policy=cfg.attest.retry_policy(),
    )
    return AttestationVerifier(keys, leeway_s=cfg.attest.leeway_s)


def _policy(cfg: Config, interval: Optional[str], timeout: Optional[str]) -> PollPolicy:
    return PollPolicy(
        interval_s=parse_duration_seconds(interval, cfg.poll.interval_s),
        max_wait_s=parse_duration_seconds(timeout, cfg.poll.max_wait_s),
    )


def _echo_json(obj: Any) -> None:
    typer.echo(json.dumps(obj, indent=2, sort_keys=True, default=str))


def _fail(err: AICallError) -> None:
    typer.echo(f"error: {err}", err=True)
    raise typer.Exit(EXIT_PENDING if isinstance(err, RequestTimedOut) else EXIT_FAIL)


def _read_text(inline: Optional[str], path: Optional[Path], what: str) -> str:
    if inline and path:
        raise typer.BadParameter(f"use either --{what} or --{what}-file, not both")
    if path is not None:
        return path.read_text(encoding="utf-8").strip()
    if inline:
        return inline
    raise typer.BadParameter(f"--{what} or --{what}-file is required")


# --------------------------- root ---------------------------


@app.callback()
def _root(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", help="JSON config file (env still wins)."),
    log_level: str = typer.Option("WARNING", "--log-level", help="DEBUG, INFO, WARNING, ERROR."),
) -> None:
    _configure_logging(log_level)
    try:
        ctx.obj = {"config": load_config(file_path=config)}
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--config") from e


@app.command("version")
def version_cmd() -> None:
    """Print the package version."""
    typer.echo(__version__)


@app.command("config")
def config_cmd(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    """Show the effective configuration (defaults, file, env)."""
    d = _cfg(ctx).to_dict()
    if as_json:
        _echo_json(d)
        return
    for section, values in d.items():
        typer.echo(f"[{section}]")
        for k, v in values.items():
            typer.echo(f"  {k:>18}: {v}")


# --------------------------- ledger reads ---------------------------


@app.command("models")
def models_cmd(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    """List whitelisted models."""
    cfg = _cfg(ctx)

    async def _go() -> List[str]:
        async with _ledger(cfg) as ledger:
            return await ledger.list_models()

    try:
        models = asyncio.run(_go())
    except AICallError as e:
        _fail(e)
        return
    if as_json:
        _echo_json({"models": models})
    elif not models:
        typer.echo("(no models)")
    else:
        for m in models:
            typer.echo(m)


@app.command("supported")
def supported_cmd(ctx: typer.Context, name: str = typer.Argument(..., help="Model name.")) -> None:
    """Exit 0 when NAME is whitelisted, 1 otherwise."""
    cfg = _cfg(ctx)

    async def _go() -> bool:
        async with _ledger(cfg) as ledger:
            return await ledger.is_model_supported(name)

    try:
        ok = asyncio.run(_go())
    except AICallError as e:
        _fail(e)
        return
    typer.echo(f"{name}: {'supported' if ok else 'not supported'}")
    if not ok:
        raise typer.Exit(EXIT_FAIL)


@app.command("status")
def status_cmd(
    ctx: typer.Context,
    request_id: int = typer.Argument(..., help="Request id."),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    """Show the ledger record for a request."""
    cfg = _cfg(ctx)

    async def _go():
        async with _ledger(cfg) as ledger:
            return await ledger.get(request_id)

    try:
        rec = asyncio.run(_go())
    except AICallError as e:
        _fail(e)
        return
    if rec is None:
        typer.echo(f"request {request_id}: unknown", err=True)
        raise typer.Exit(EXIT_FAIL)
    d = rec.to_dict()
    if as_json:
        _echo_json(d)
        return
    for k in ("id", "status", "model", "requester", "prompt_digest", "result_digest", "report_digest"):
        typer.echo(f"{k:>14}: {d[k]}")


# --------------------------- request flow ---------------------------


def _engine(cfg: Config, ledger: HttpLedgerClient, verify: bool) -> CorrelationEngine:
    return CorrelationEngine(
        ledger,
        ContentStoreClient.from_settings(cfg.store),
        verifier=_verifier(cfg) if verify else None,
        policy=PollPolicy.from_settings(cfg.poll),
    )


def _print_outcome(d: Dict[str, Any]) -> None:
    typer.echo(f"state: {d['state']}")
    if d.get("request_id") is not None:
        typer.echo(f"request id: {d['request_id']}")
    if d.get("prompt_digest"):
        typer.echo(f"prompt digest: {d['prompt_digest']}")
    res = d.get("resolution")
    if res:
        typer.echo(f"result digest: {res['result_digest']}")
        typer.echo(f"report digest: {res['report_digest']}")
        typer.echo("result:")
        typer.echo(res["result"])
    att = d.get("attestation")
    if att:
        typer.echo(f"attestation: {'valid' if att['valid'] else 'INVALID'}" + (f" ({att['reason']})" if att.get("reason") else ""))
    if d.get("error"):
        err = d["error"]
        typer.echo(f"error: {err['code']}: {err['message']}", err=True)


@app.command("request")
def request_cmd(
    ctx: typer.Context,
    prompt: Optional[str] = typer.Option(None, "--prompt", help="Prompt text."),
    prompt_file: Optional[Path] = typer.Option(None, "--prompt-file", exists=True, dir_okay=False, help="Read the prompt from a file."),
    model: str = typer.Option("COA", "--model", help="Model name (must be whitelisted)."),
    no_wait: bool = typer.Option(False, "--no-wait", help="Submit and exit without polling."),
    verify: bool = typer.Option(False, "--verify", help="Verify the attestation report after resolution."),
    interval: Optional[str] = typer.Option(None, "--interval", help="Poll interval, e.g. 10s."),
    timeout: Optional[str] = typer.Option(None, "--timeout", help="Maximum wait, e.g. 5m."),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    """Upload a prompt, submit it and (by default) wait for the result."""
    cfg = _cfg(ctx)
    text = _read_text(prompt, prompt_file, "prompt")
    policy = _policy(cfg, interval, timeout)

    async def _go():
        async with _ledger(cfg) as ledger:
            engine = _engine(cfg, ledger, verify)
            return await engine.run(text, model, wait=not no_wait, verify=verify, policy=policy)

    outcome = asyncio.run(_go())
    d = outcome.to_dict()
    if as_json:
        _echo_json(d)
    else:
        _print_outcome(d)

    if outcome.state in (RequestState.TIMED_OUT, RequestState.CANCELLED):
        raise typer.Exit(EXIT_PENDING)
    if outcome.state is RequestState.FAILED:
        raise typer.Exit(EXIT_FAIL)
    if verify and outcome.resolution is not None and not outcome.verified:
        raise typer.Exit(EXIT_FAIL)


@app.command("wait")
def wait_cmd(
    ctx: typer.Context,
    request_id: int = typer.Argument(..., help="Request id."),
    interval: Optional[str] = typer.Option(None, "--interval", help="Poll interval, e.g. 10s."),
    timeout: Optional[str] = typer.Option(None, "--timeout", help="Maximum wait, e.g. 5m."),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    """Resume waiting for a submitted request and print its result."""
    cfg = _cfg(ctx)
    policy = _policy(cfg, interval, timeout)

    async def _go():
        async with _ledger(cfg) as ledger:
            return await _engine(cfg, ledger, False).resume(request_id, policy=policy)

    try:
        res = asyncio.run(_go())
    except AICallError as e:
        _fail(e)
        return
    if as_json:
        _echo_json(res.to_dict())
    else:
        typer.echo(f"request {request_id} fulfilled after {res.attempts} checks")
        typer.echo(res.result_text)


# --------------------------- attestation ---------------------------


@app.command("verify")
def verify_cmd(
    ctx: typer.Context,
    token: Optional[str] = typer.Option(None, "--token", help="Compact JWS report."),
    token_file: Optional[Path] = typer.Option(None, "--token-file", exists=True, dir_okay=False, help="Read the token from a file."),
    jwks_url: Optional[str] = typer.Option(None, "--jwks-url", help="Override the key-set URL."),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON."),
) -> None:
    """Verify an attestation report against the key set."""
    cfg = _cfg(ctx)
    tok = _read_text(token, token_file, "token")

    try:
        res = asyncio.run(_verifier(cfg, jwks_url).verify(tok))
    except AICallError as e:
        _fail(e)
        return
    if as_json:
        _echo_json(res.to_dict())
    else:
        typer.echo("valid" if res.valid else f"INVALID: {res.reason}")
        if res.payload is not None:
            typer.echo(json.dumps(res.payload, indent=2, sort_keys=True))
    if not res.valid:
        raise typer.Exit(EXIT_FAIL)


# --------------------------- store ---------------------------


@app.command("ping")
def ping_cmd(ctx: typer.Context) -> None:
    """Check that the content store answers."""
    cfg = _cfg(ctx)
    ok = asyncio.run(ContentStoreClient.from_settings(cfg.store).ping())
    typer.echo(f"{cfg.store.endpoint}{cfg.store.base_path}: {'ok' if ok else 'unreachable'}")
    if not ok:
        raise typer.Exit(EXIT_FAIL)


# --------------------------- dev servers ---------------------------


@app.command("serve-ledger")
def serve_ledger_cmd(
    admin: str = typer.Option(..., "--admin", help="Administrative authority identity."),
    fulfiller: str = typer.Option(..., "--fulfiller", help="Fulfillment authority identity."),
    model: List[str] = typer.Option([], "--model", help="Initial whitelisted model (repeatable)."),
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8600, "--port"),
) -> None:
    """Run an in-memory ledger over HTTP (development only)."""
    import uvicorn

    from aicall.ledger import RequestLedger
    from aicall.ledger.server import create_app

    try:
        ledger = RequestLedger(admin=admin, fulfillment_authority=fulfiller, models=model)
    except AICallError as e:
        _fail(e)
        return
    log.info("serving ledger on %s:%d with models %s", host, port, ", ".join(model) or "(none)")
    uvicorn.run(create_app(ledger), host=host, port=port)


@app.command("serve-store")
def serve_store_cmd(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8080, "--port"),
    base_path: str = typer.Option("/v1/minio", "--base-path"),
) -> None:
    """Run the in-memory reference content store (development only)."""
    import uvicorn

    from aicall.store.server import create_app

    uvicorn.run(create_app(base_path=base_path), host=host, port=port)


def main() -> None:  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
