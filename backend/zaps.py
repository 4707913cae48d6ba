# zaps.py
"""Zap a note (NIP-57): lightning address -> LNURL-pay callback -> invoice,
then pay the invoice through the NWC wallet."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Sequence, Tuple

import bech32
import requests
from nostr.key import PrivateKey

from errors import (
    InvoiceRequestFailed,
    NoPaymentAddress,
    ReceiptsUnsupported,
    UnsupportedAddressFormat,
)
from config import Settings
from nwc import NwcClient, PaymentOutcome, TimeoutPolicy, parse_wallet_connect
from relay import Connector, Message, RelayPool, sign_event

logger = logging.getLogger(__name__)

KIND_ZAP_REQUEST = 9734

HTTP_TIMEOUT = (5, 30)  # connect, read in seconds


def _http_detail(resp: requests.Response) -> str:
    try:
        j = resp.json()
        if isinstance(j, dict):
            return str(j.get("reason") or j.get("detail") or json.dumps(j))[:300]
        return json.dumps(j)[:300]
    except ValueError:
        return (resp.text or "").strip()[:300]


def http_get_json(url: str, params: Optional[Dict[str, Any]] = None) -> Tuple[int, Any]:
    """GET url and return (status_code, parsed json or None)."""
    r = requests.get(url, params=params, timeout=HTTP_TIMEOUT, allow_redirects=True)
    try:
        body = r.json()
    except ValueError:
        body = None
    if r.status_code >= 400:
        logger.debug("GET %s -> %s: %s", url, r.status_code, _http_detail(r))
    return r.status_code, body


def lightning_address_url(address: str) -> str:
    """name@domain -> https://domain/.well-known/lnurlp/name (http for .onion)."""
    parts = (address or "").strip().split("@")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise NoPaymentAddress(f"invalid lightning address: {address!r}")
    name, domain = parts[0].lower(), parts[1].lower()
    scheme = "http" if domain.endswith(".onion") else "https"
    return f"{scheme}://{domain}/.well-known/lnurlp/{name}"


def encode_lnurl(url: str) -> str:
    return bech32.bech32_encode("lnurl", bech32.convertbits(url.encode("utf-8"), 8, 5))


class ZapResolver:
    """Turns (author, amount) into a payable invoice carrying a signed zap request."""

    def __init__(self, pool: RelayPool, key: PrivateKey, http_get=None):
        self.pool = pool
        self.key = key
        self._http_get = http_get or http_get_json

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> Tuple[int, Any]:
        return await asyncio.to_thread(self._http_get, url, params)

    async def lightning_address(self, author: str) -> str:
        profile = await self.pool.fetch_profile(author)
        if not profile:
            raise NoPaymentAddress(f"no profile found for {author[:12]}...")
        lud16 = str(profile.get("lud16") or "").strip()
        if lud16:
            return lud16
        if str(profile.get("lud06") or "").strip():
            raise UnsupportedAddressFormat(f"{author[:12]}... only has a lud06 LNURL, no lightning address")
        raise NoPaymentAddress(f"no lightning address in profile of {author[:12]}...")

    async def pay_info(self, address: str) -> Tuple[str, Dict[str, Any]]:
        url = lightning_address_url(address)
        try:
            status, info = await self._get(url)
        except requests.RequestException as e:
            raise NoPaymentAddress(f"LNURL lookup for {address} failed: {e}") from e
        if status >= 400 or not isinstance(info, dict):
            raise NoPaymentAddress(f"LNURL lookup for {address} failed (http {status})")
        if str(info.get("status") or "").upper() == "ERROR":
            raise NoPaymentAddress(f"LNURL lookup for {address} failed: {info.get('reason') or 'unreported reason'}")
        return url, info

    def zap_request(self, author: str, event_id: str, amount_msat: int, comment: str,
                    lnurl: str, relays: Sequence[str]) -> Dict[str, Any]:
        tags = [
            ["relays", *relays],
            ["amount", str(amount_msat)],
            ["lnurl", lnurl],
            ["p", author],
            ["e", event_id],
        ]
        return sign_event(self.key, KIND_ZAP_REQUEST, tags, comment or "")

    async def resolve_and_invoice(self, author: str, amount_msat: int, comment: str, event_id: str) -> str:
        address = await self.lightning_address(author)
        url, info = await self.pay_info(address)

        if info.get("allowsNostr") is not True or not info.get("nostrPubkey"):
            raise ReceiptsUnsupported(f"LN provider of {address} does not support nostr zaps")
        callback = str(info.get("callback") or "").strip()
        if not callback:
            raise InvoiceRequestFailed(f"LN provider of {address} has no callback")
        try:
            min_sendable = int(info.get("minSendable") or 0)
            max_sendable = int(info.get("maxSendable") or 0)
        except (TypeError, ValueError):
            min_sendable, max_sendable = 0, 0
        if min_sendable and amount_msat < min_sendable:
            raise InvoiceRequestFailed(f"{address} does not accept less than {min_sendable} msat")
        if max_sendable and amount_msat > max_sendable:
            raise InvoiceRequestFailed(f"{address} does not accept more than {max_sendable} msat")

        lnurl = encode_lnurl(url)
        zap_request = self.zap_request(author, event_id, amount_msat, comment, lnurl, self.pool.relays)
        params = {
            "amount": amount_msat,
            "nostr": json.dumps(zap_request, separators=(",", ":")),
            "lnurl": lnurl,
        }
        try:
            status, body = await self._get(callback, params)
        except requests.RequestException as e:
            raise InvoiceRequestFailed(f"invoice request to {address} failed: {e}") from e
        if status >= 400:
            raise InvoiceRequestFailed(f"invoice request to {address} failed (http {status})")
        if not isinstance(body, dict):
            raise InvoiceRequestFailed(f"invoice response from {address} is not a JSON object")
        if str(body.get("status") or "").upper() == "ERROR":
            raise InvoiceRequestFailed(f"invoice request error: {body.get('reason') or 'unreported reason'}")
        invoice = str(body.get("pr") or "").strip()
        if not invoice:
            raise InvoiceRequestFailed(f"invoice response from {address} has no invoice")
        return invoice


class Zapper:
    def __init__(self, resolver: ZapResolver, wallet: NwcClient, amount_sats: int, comment: str):
        self.resolver = resolver
        self.wallet = wallet
        self.amount_sats = amount_sats
        self.comment = comment

    async def zap(self, author: str, event_id: str, amount_sats: Optional[int] = None,
                  comment: Optional[str] = None) -> PaymentOutcome:
        sats = amount_sats or self.amount_sats
        logger.info("zapping note %s... by %s... with %d sats", event_id[:12], author[:12], sats)
        invoice = await self.resolver.resolve_and_invoice(author, sats * 1000, comment or self.comment, event_id)
        return await self.wallet.pay_invoice(invoice)

    async def zap_message(self, message: Message) -> PaymentOutcome:
        return await self.zap(message.author, message.id)

    async def zap_event_id(self, event_id: str, amount_sats: Optional[int] = None,
                           comment: Optional[str] = None) -> PaymentOutcome:
        event = await self.resolver.pool.fetch_event(event_id)
        return await self.zap(str(event["pubkey"]), event_id, amount_sats, comment)


def build_zapper(settings: Settings, pool: RelayPool, key: PrivateKey, connector: Optional[Connector] = None) -> Zapper:
    wallet = NwcClient(
        parse_wallet_connect(settings.nwc_url),
        timeout=settings.payment_timeout_sec,
        policy=TimeoutPolicy(settings.payment_timeout_policy),
        connector=connector,
    )
    return Zapper(ZapResolver(pool, key), wallet, settings.zap_amount_sats, settings.zap_comment)
