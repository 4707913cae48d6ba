# config.py
"""Environment-driven settings for the reward daemon and the codes CLI.

Example .env:

    BOT_NSEC=nsec1...
    NWC_URL=nostr+walletconnect://<wallet pubkey>?relay=wss://...&secret=<hex>
    RELAYS=wss://relay.primal.net,wss://relay.damus.io
    ZAP_AMOUNT_SATS=21
    ENABLE_ZAP=true
    ENABLE_REPOST=true
    ENABLE_WHITELIST=true
    REQUIRED_HASHTAG=nostreward
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Tuple

from dotenv import load_dotenv

from errors import ConfigurationInvalid

BACKEND_DIR = Path(__file__).resolve().parent

# In production env vars usually come from systemd; this is then a no-op.
load_dotenv(BACKEND_DIR / ".env")

DEFAULT_RELAYS = (
    "wss://relay.primal.net",
    "wss://relay.damus.io",
)

TIMEOUT_POLICIES = ("fail", "assume_success")

_TRUE = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Paths:
    codes_file: Path
    whitelist_file: Path


@dataclass(frozen=True)
class Settings:
    bot_private_key: str
    nwc_url: str
    relays: Tuple[str, ...]
    zap_amount_sats: int
    zap_comment: str
    enable_zap: bool
    enable_repost: bool
    enable_whitelist: bool
    paths: Paths
    required_hashtag: str
    payment_timeout_sec: float = 30.0
    payment_timeout_policy: str = "fail"
    retry_poll_sec: float = 60.0
    status_api_host: str = "127.0.0.1"
    status_api_port: Optional[int] = None
    log_level: str = "INFO"

    def public_view(self) -> dict:
        """Settings that are safe to show to anyone (no keys, no wallet secret)."""
        return {
            "relays": list(self.relays),
            "zap_amount_sats": self.zap_amount_sats,
            "enable_zap": self.enable_zap,
            "enable_repost": self.enable_repost,
            "enable_whitelist": self.enable_whitelist,
            "required_hashtag": self.required_hashtag,
            "payment_timeout_sec": self.payment_timeout_sec,
            "payment_timeout_policy": self.payment_timeout_policy,
            "retry_poll_sec": self.retry_poll_sec,
        }


def _flag(env: Mapping[str, str], key: str) -> bool:
    return (env.get(key) or "").strip().lower() in _TRUE


def _resolve_path(raw: str) -> Path:
    p = Path(raw)
    if not p.is_absolute():
        p = Path.cwd() / p
    return p


def parse_relays(raw: str) -> Tuple[str, ...]:
    out: List[str] = []
    for r in (raw or "").split(","):
        r = r.strip()
        if not r:
            continue
        if not (r.startswith("wss://") or r.startswith("ws://")):
            r = f"wss://{r}"
        if r not in out:
            out.append(r)
    return tuple(out)


def normalize_hashtag(raw: str) -> str:
    return (raw or "").strip().lstrip("#").lower()


def load_paths(env: Optional[Mapping[str, str]] = None) -> Paths:
    env = os.environ if env is None else env
    return Paths(
        codes_file=_resolve_path((env.get("CODES_FILE") or "codes.json").strip()),
        whitelist_file=_resolve_path((env.get("WHITELIST_FILE") or "whitelist.json").strip()),
    )


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the environment, collecting every problem before failing."""
    env = os.environ if env is None else env
    problems: List[str] = []

    bot_key = (env.get("BOT_NSEC") or "").strip()
    if not bot_key:
        problems.append("BOT_NSEC is required. Set it in your .env file.")

    nwc_url = (env.get("NWC_URL") or "").strip()
    enable_zap = _flag(env, "ENABLE_ZAP")
    if enable_zap and not nwc_url:
        problems.append("NWC_URL is required when ENABLE_ZAP=true. Set it in your .env file.")

    relays = parse_relays(env.get("RELAYS") or "") or DEFAULT_RELAYS

    def _number(key: str, default: str, cast, minimum):
        raw = (env.get(key) or default).strip()
        try:
            v = cast(raw)
        except ValueError:
            problems.append(f"{key} must be a number (got {raw!r})")
            return cast(default)
        if v < minimum:
            problems.append(f"{key} must be >= {minimum} (got {raw})")
        return v

    zap_amount = _number("ZAP_AMOUNT_SATS", "21", int, 1)
    payment_timeout = _number("PAYMENT_TIMEOUT_SEC", "30", float, 1)
    retry_poll = _number("RETRY_POLL_SEC", "60", float, 1)

    policy = (env.get("PAYMENT_TIMEOUT_POLICY") or "fail").strip().lower()
    if policy not in TIMEOUT_POLICIES:
        problems.append(f"PAYMENT_TIMEOUT_POLICY must be one of {', '.join(TIMEOUT_POLICIES)} (got {policy!r})")

    hashtag = normalize_hashtag(env.get("REQUIRED_HASHTAG") or "nostreward")
    if not hashtag:
        problems.append("REQUIRED_HASHTAG must not be empty")

    api_port: Optional[int] = None
    raw_port = (env.get("STATUS_API_PORT") or "").strip()
    if raw_port:
        try:
            api_port = int(raw_port)
        except ValueError:
            problems.append(f"STATUS_API_PORT must be an integer (got {raw_port!r})")

    if problems:
        raise ConfigurationInvalid(problems)

    return Settings(
        bot_private_key=bot_key,
        nwc_url=nwc_url,
        relays=relays,
        zap_amount_sats=zap_amount,
        zap_comment=(env.get("ZAP_COMMENT") or "Zapped by Nostreward bot!").strip(),
        enable_zap=enable_zap,
        enable_repost=_flag(env, "ENABLE_REPOST"),
        enable_whitelist=_flag(env, "ENABLE_WHITELIST"),
        paths=load_paths(env),
        required_hashtag=hashtag,
        payment_timeout_sec=payment_timeout,
        payment_timeout_policy=policy,
        retry_poll_sec=retry_poll,
        status_api_host=(env.get("STATUS_API_HOST") or "127.0.0.1").strip(),
        status_api_port=api_port,
        log_level=(env.get("LOG_LEVEL") or "INFO").strip().upper(),
    )
