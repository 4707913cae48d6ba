# nwc.py
"""Nostr Wallet Connect (NIP-47) pay_invoice client.

One call = one short-lived relay connection:

  1) REQ for kind 23195 replies from the wallet tagged with our pubkey,
     since now-5s; wait for EOSE so nothing can slip past us,
  2) publish a kind 23194 request, NIP-04 encrypted to the wallet,
  3) wait on the same connection for OK=false (rejected) or a reply we can
     decrypt; anything we cannot decrypt or parse is someone else's traffic.

The relay gives us no request correlation; replies are matched by author,
p-tag, and the e-tag pointing at our request when the wallet sets one.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union
from urllib.parse import parse_qs, urlparse

from nostr.key import PrivateKey
from pydantic import BaseModel, Field, ValidationError

from errors import (
    ConfigurationInvalid,
    PaymentError,
    PaymentTimeout,
    RelayError,
    TransportRejected,
    WalletUnreachable,
)
from relay import Connector, RelayConnection, build_filter, sign_event, tag_values

logger = logging.getLogger(__name__)

KIND_NWC_REQUEST = 23194
KIND_NWC_RESPONSE = 23195

SINCE_SKEW_SEC = 5
DEFAULT_TIMEOUT_SEC = 30.0
SUBSCRIBE_TIMEOUT_SEC = 10.0


class TimeoutPolicy(str, enum.Enum):
    FAIL = "fail"
    ASSUME_SUCCESS = "assume_success"


@dataclass(frozen=True)
class WalletConnection:
    wallet_pubkey: str
    relay: str
    secret: str
    lud16: Optional[str] = None


def parse_wallet_connect(url: str) -> WalletConnection:
    """Parse nostr+walletconnect://<wallet pubkey>?relay=wss://...&secret=<hex>[&lud16=...]"""
    raw = (url or "").strip()
    if not raw.startswith("nostr+walletconnect:"):
        raise ConfigurationInvalid("Invalid NWC_URL. Expected format: nostr+walletconnect://pubkey?relay=wss://...&secret=hex")
    parsed = urlparse(raw.replace("nostr+walletconnect:", "http:", 1))
    params = parse_qs(parsed.query)
    pubkey = (parsed.hostname or parsed.path.strip("/") or "").lower()
    relay = (params.get("relay") or [""])[0]
    secret = (params.get("secret") or [""])[0]
    if len(pubkey) != 64 or not relay or len(secret) != 64:
        raise ConfigurationInvalid("Invalid NWC_URL. Expected format: nostr+walletconnect://pubkey?relay=wss://...&secret=hex")
    try:
        bytes.fromhex(pubkey)
        bytes.fromhex(secret)
    except ValueError as e:
        raise ConfigurationInvalid(f"Invalid NWC_URL: {e}") from e
    lud16 = (params.get("lud16") or [None])[0]
    return WalletConnection(wallet_pubkey=pubkey, relay=relay, secret=secret.lower(), lud16=lud16)


# ---------------------------
# Wire payloads
# ---------------------------
class PayInvoiceParams(BaseModel):
    invoice: str


class PayInvoiceRequest(BaseModel):
    method: str = "pay_invoice"
    params: PayInvoiceParams

    @classmethod
    def for_invoice(cls, invoice: str) -> "PayInvoiceRequest":
        return cls(params=PayInvoiceParams(invoice=invoice))


class PayInvoiceResult(BaseModel):
    preimage: str
    fees_paid: Optional[int] = None


class PayInvoiceError(BaseModel):
    code: str = "OTHER"
    message: str = Field(default="")


PayInvoiceResponse = Union[PayInvoiceResult, PayInvoiceError]


class UnrecognizedResponse(ValueError):
    pass


def parse_response(data: Any) -> PayInvoiceResponse:
    """Map a decrypted reply onto PayInvoiceResult | PayInvoiceError."""
    if not isinstance(data, dict):
        raise UnrecognizedResponse(f"reply is not an object: {type(data).__name__}")
    result_type = data.get("result_type")
    if result_type not in (None, "pay_invoice"):
        raise UnrecognizedResponse(f"unexpected result_type {result_type!r}")

    err = data.get("error")
    if err:
        if isinstance(err, dict):
            message = str(err.get("message") or json.dumps(err))
            return PayInvoiceError(code=str(err.get("code") or "OTHER"), message=message)
        return PayInvoiceError(message=str(err))

    result = data.get("result")
    if isinstance(result, dict) and result.get("preimage"):
        try:
            return PayInvoiceResult.model_validate(result)
        except ValidationError as e:
            raise UnrecognizedResponse(f"bad result: {e}") from e
    raise UnrecognizedResponse("reply has neither error nor result.preimage")


@dataclass(frozen=True)
class PaymentOutcome:
    preimage: Optional[str]
    confirmed: bool = True


@dataclass
class PaymentSession:
    invoice: str
    correlation_filter: Dict[str, Any]
    deadline: float
    request_id: str = ""


# ---------------------------
# Client
# ---------------------------
class NwcClient:
    def __init__(
        self,
        connection: WalletConnection,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        policy: TimeoutPolicy = TimeoutPolicy.FAIL,
        connector: Optional[Connector] = None,
        subscribe_timeout: float = SUBSCRIBE_TIMEOUT_SEC,
    ):
        self.connection = connection
        self.timeout = timeout
        self.policy = TimeoutPolicy(policy)
        self.connector = connector
        self.subscribe_timeout = subscribe_timeout
        self._key = PrivateKey(raw_secret=bytes.fromhex(connection.secret))

    @property
    def client_pubkey(self) -> str:
        return self._key.public_key.hex()

    def _decrypt(self, content: str) -> Optional[Any]:
        try:
            plain = self._key.decrypt_message(content, self.connection.wallet_pubkey)
            return json.loads(plain)
        except Exception:
            return None

    async def pay_invoice(self, invoice: str) -> PaymentOutcome:
        wallet = self.connection.wallet_pubkey
        try:
            conn = await RelayConnection.open(self.connection.relay, self.subscribe_timeout, self.connector)
        except RelayError as e:
            raise WalletUnreachable(str(e)) from e

        try:
            loop = asyncio.get_running_loop()
            session = PaymentSession(
                invoice=invoice,
                correlation_filter=build_filter(
                    kinds=[KIND_NWC_RESPONSE],
                    authors=[wallet],
                    pubkey_refs=[self.client_pubkey],
                    since=int(time.time()) - SINCE_SKEW_SEC,
                ),
                deadline=0.0,
            )
            sub_id = f"nwc-{int(time.time() * 1000) % 10 ** 8}"
            try:
                await conn.subscribe(sub_id, [session.correlation_filter], self.subscribe_timeout)
            except RelayError as e:
                raise WalletUnreachable(f"reply subscription not acknowledged: {e}") from e

            payload = PayInvoiceRequest.for_invoice(invoice).model_dump_json()
            content = self._key.encrypt_message(payload, wallet)
            request = sign_event(self._key, KIND_NWC_REQUEST, [["p", wallet]], content)
            session.request_id = request["id"]
            session.deadline = loop.time() + self.timeout

            try:
                await conn.publish(request)
            except RelayError as e:
                raise WalletUnreachable(str(e)) from e
            logger.info("pay_invoice request %s sent, waiting for wallet reply", request["id"][:12])

            return await self._await_reply(conn, sub_id, session)
        finally:
            await conn.close()

    async def _await_reply(self, conn: RelayConnection, sub_id: str, session: PaymentSession) -> PaymentOutcome:
        loop = asyncio.get_running_loop()
        wallet = self.connection.wallet_pubkey
        while True:
            remaining = session.deadline - loop.time()
            if remaining <= 0:
                return self._on_timeout(session)
            try:
                msg = await conn.next_message(remaining)
            except asyncio.TimeoutError:
                return self._on_timeout(session)
            except RelayError as e:
                raise WalletUnreachable(str(e)) from e

            kind = msg[0]
            if kind == "OK" and len(msg) >= 3 and msg[1] == session.request_id:
                if not msg[2]:
                    reason = msg[3] if len(msg) > 3 else ""
                    raise TransportRejected(f"relay rejected pay_invoice request: {reason}")
                continue
            if kind != "EVENT" or len(msg) < 3 or msg[1] != sub_id or not isinstance(msg[2], dict):
                continue

            event = msg[2]
            if event.get("pubkey") != wallet or int(event.get("kind") or 0) != KIND_NWC_RESPONSE:
                continue
            refs = tag_values(event, "e")
            if refs and session.request_id not in refs:
                continue
            data = self._decrypt(str(event.get("content") or ""))
            if data is None:
                logger.debug("ignoring reply %s: cannot decrypt", str(event.get("id"))[:12])
                continue
            try:
                response = parse_response(data)
            except UnrecognizedResponse as e:
                logger.warning("ignoring reply %s: %s", str(event.get("id"))[:12], e)
                continue

            if isinstance(response, PayInvoiceError):
                raise PaymentError(f"NWC error: {response.message}", code=response.code)
            logger.info("payment confirmed (preimage: %s...)", response.preimage[:16])
            return PaymentOutcome(preimage=response.preimage, confirmed=True)

    def _on_timeout(self, session: PaymentSession) -> PaymentOutcome:
        if self.policy is TimeoutPolicy.ASSUME_SUCCESS:
            logger.warning("no wallet reply for %s within %.0fs; treating as unconfirmed success",
                           session.request_id[:12], self.timeout)
            return PaymentOutcome(preimage=None, confirmed=False)
        raise PaymentTimeout(f"NWC payment timed out ({self.timeout:.0f}s)")
