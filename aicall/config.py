"""
aicall.config
-------------

Endpoints, identities, polling and retry settings for aicall clients and
dev services.

- Dataclasses with sane defaults:
    * LedgerSettings: ledger HTTP endpoint, caller identity, ledger and
      fulfillment-authority addresses (informational for clients).
    * StoreSettings: content store endpoint, base path, timeout, retry policy.
    * AttestSettings: key-set (JWKS) URL, timeout, retry policy, leeway.
    * PollSettings: polling interval and maximum total wait.
    * Config: the whole bundle.

- load_config(): defaults ← file (JSON) ← environment ← overrides.

Environment variables (prefix: AICALL_*)
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
AICALL_LEDGER_URL=http://127.0.0.1:8600
AICALL_LEDGER_ADDRESS=0x3d97…          # deployed ledger address (shown by `aicall config`)
AICALL_FULFILLER_ADDRESS=0x0DDF…       # fulfillment authority (shown by `aicall config`)
AICALL_CALLER=0xf39F…                  # identity sent with ledger writes

AICALL_STORE_ENDPOINT=http://127.0.0.1:8080
AICALL_STORE_BASE_PATH=/v1/minio
AICALL_STORE_TIMEOUT=30s
AICALL_STORE_RETRIES=3
AICALL_STORE_BACKOFF_BASE=1s
AICALL_STORE_BACKOFF_MAX=5s
AICALL_STORE_JITTER=none               # none | full | equal | decorrelated

AICALL_JWKS_URL=https://…/api/jwks
AICALL_JWKS_TIMEOUT=10s
AICALL_JWKS_RETRIES=3
AICALL_ATTEST_LEEWAY=0s
AICALL_JWKS_JITTER=none

AICALL_POLL_INTERVAL=10s
AICALL_POLL_TIMEOUT=5m

# Optional config file (JSON). Env still wins.
AICALL_CONFIG=/path/to/aicall.json

Durations accept "ms/s/m" suffixes; bare numbers are seconds.
"""

from __future__ import annotations

import dataclasses
import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from aicall.utils.retry import RetryPolicy

JITTER_MODES = frozenset(["none", "full", "equal", "decorrelated"])

_DUR_RE = re.compile(r"^\s*(?P<num>\d+(?:\.\d+)?)(?P<unit>ms|s|m)?\s*$", re.IGNORECASE)

DEFAULT_JWKS_URL = "https://confidentialcomputing.aizelnetwork.com/api/jwks"

# -----------------------------
# Helpers: parsing & validation
# -----------------------------


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(name)
    return v if v is not None and v != "" else default


def _parse_int(v: Optional[str], default: int) -> int:
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def parse_duration_seconds(v: Optional[str], default: float) -> float:
    if v is None:
        return default
    m = _DUR_RE.match(str(v))
    if not m:
        return default
    num = float(m.group("num"))
    unit = (m.group("unit") or "s").lower()
    if unit == "ms":
        return num / 1000.0
    if unit == "m":
        return num * 60.0
    return num


def _ensure_http(url: str) -> str:
    lower = url.lower()
    if not (lower.startswith("http://") or lower.startswith("https://")):
        raise ValueError(f"URL must start with http:// or https://, got: {url!r}")
    return url


def _load_file_config(path: Path) -> Dict[str, Any]:
    if not path.exists() or not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


# -----------------------------
# Dataclasses
# -----------------------------


@dataclass(frozen=True)
class LedgerSettings:
    url: str = "http://127.0.0.1:8600"
    caller: str = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
    address: str = "0x3d97Cd1DF617B9eaC567cC13c24D798C72bCdF69"
    fulfiller_address: str = "0x0DDFf27aB1eC8f88fdFAAF25CC6b984b1CFBc4e4"
    timeout_s: float = 10.0
    retries: int = 3


@dataclass(frozen=True)
class StoreSettings:
    endpoint: str = "http://127.0.0.1:8080"
    base_path: str = "/v1/minio"
    timeout_s: float = 30.0
    retries: int = 3
    backoff_base_s: float = 1.0
    backoff_max_s: float = 5.0
    jitter: str = "none"

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            attempts=self.retries, base=self.backoff_base_s, max_delay=self.backoff_max_s, jitter=self.jitter
        )


@dataclass(frozen=True)
class AttestSettings:
    jwks_url: str = DEFAULT_JWKS_URL
    timeout_s: float = 10.0
    retries: int = 3
    leeway_s: float = 0.0
    jitter: str = "none"

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=self.retries, base=0.5, max_delay=4.0, jitter=self.jitter)


@dataclass(frozen=True)
class PollSettings:
    interval_s: float = 10.0
    max_wait_s: float = 300.0


@dataclass(frozen=True)
class Config:
    ledger: LedgerSettings = dataclasses.field(default_factory=LedgerSettings)
    store: StoreSettings = dataclasses.field(default_factory=StoreSettings)
    attest: AttestSettings = dataclasses.field(default_factory=AttestSettings)
    poll: PollSettings = dataclasses.field(default_factory=PollSettings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ledger": dataclasses.asdict(self.ledger),
            "store": dataclasses.asdict(self.store),
            "attest": dataclasses.asdict(self.attest),
            "poll": dataclasses.asdict(self.poll),
        }


# -----------------------------
# Loader
# -----------------------------


def _apply_overrides(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shallow merge: keys in overrides replace keys in base; dictionaries merge 1-level deep.
    """
    out = dict(base)
    for k, v in overrides.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            nv = dict(out[k])
            nv.update(v)
            out[k] = nv
        else:
            out[k] = v
    return out


def load_config(
    file_path: Optional[Path] = None, overrides: Optional[Dict[str, Any]] = None
) -> Config:
    """
    Build a Config from (defaults) ← file (JSON) ← environment ← overrides.
    """
    d: Dict[str, Any] = Config().to_dict()

    path_env = _env("AICALL_CONFIG")
    p = file_path or (Path(path_env) if path_env else None)
    if p:
        file_cfg = _load_file_config(Path(p))
        if file_cfg:
            d = _apply_overrides(d, file_cfg)

    ledger = d["ledger"]
    store = d["store"]
    attest = d["attest"]
    poll = d["poll"]

    ledger.update(
        {
            "url": _env("AICALL_LEDGER_URL", ledger["url"]),
            "caller": _env("AICALL_CALLER", ledger["caller"]),
            "address": _env("AICALL_LEDGER_ADDRESS", ledger["address"]),
            "fulfiller_address": _env("AICALL_FULFILLER_ADDRESS", ledger["fulfiller_address"]),
            "timeout_s": parse_duration_seconds(_env("AICALL_LEDGER_TIMEOUT"), ledger["timeout_s"]),
            "retries": _parse_int(_env("AICALL_LEDGER_RETRIES"), ledger["retries"]),
        }
    )
    store.update(
        {
            "endpoint": _env("AICALL_STORE_ENDPOINT", store["endpoint"]),
            "base_path": _env("AICALL_STORE_BASE_PATH", store["base_path"]),
            "timeout_s": parse_duration_seconds(_env("AICALL_STORE_TIMEOUT"), store["timeout_s"]),
            "retries": _parse_int(_env("AICALL_STORE_RETRIES"), store["retries"]),
            "backoff_base_s": parse_duration_seconds(
                _env("AICALL_STORE_BACKOFF_BASE"), store["backoff_base_s"]
            ),
            "backoff_max_s": parse_duration_seconds(
                _env("AICALL_STORE_BACKOFF_MAX"), store["backoff_max_s"]
            ),
            "jitter": _env("AICALL_STORE_JITTER", store["jitter"]),
        }
    )
    attest.update(
        {
            "jwks_url": _env("AICALL_JWKS_URL", attest["jwks_url"]),
            "timeout_s": parse_duration_seconds(_env("AICALL_JWKS_TIMEOUT"), attest["timeout_s"]),
            "retries": _parse_int(_env("AICALL_JWKS_RETRIES"), attest["retries"]),
            "leeway_s": parse_duration_seconds(_env("AICALL_ATTEST_LEEWAY"), attest["leeway_s"]),
            "jitter": _env("AICALL_JWKS_JITTER", attest["jitter"]),
        }
    )
    poll.update(
        {
            "interval_s": parse_duration_seconds(_env("AICALL_POLL_INTERVAL"), poll["interval_s"]),
            "max_wait_s": parse_duration_seconds(_env("AICALL_POLL_TIMEOUT"), poll["max_wait_s"]),
        }
    )

    if overrides:
        d = _apply_overrides(d, overrides)

    cfg = Config(
        ledger=LedgerSettings(**d["ledger"]),
        store=StoreSettings(**d["store"]),
        attest=AttestSettings(**d["attest"]),
        poll=PollSettings(**d["poll"]),
    )
    _validate(cfg)
    return cfg


def _validate(cfg: Config) -> None:
    _ensure_http(cfg.ledger.url)
    _ensure_http(cfg.store.endpoint)
    _ensure_http(cfg.attest.jwks_url)
    if cfg.store.retries < 1 or cfg.attest.retries < 1 or cfg.ledger.retries < 1:
        raise ValueError("retry counts must be >= 1")
    for jitter in (cfg.store.jitter, cfg.attest.jitter):
        if jitter not in JITTER_MODES:
            raise ValueError(f"jitter must be one of {sorted(JITTER_MODES)}, got: {jitter!r}")
    if cfg.poll.interval_s <= 0:
        raise ValueError("poll interval must be > 0")
    if cfg.poll.max_wait_s < 0:
        raise ValueError("poll timeout must be >= 0")


__all__ = [
    "LedgerSettings",
    "StoreSettings",
    "AttestSettings",
    "PollSettings",
    "Config",
    "load_config",
    "DEFAULT_JWKS_URL",
    "JITTER_MODES",
    "parse_duration_seconds",
]
