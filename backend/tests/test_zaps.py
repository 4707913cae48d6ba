import json

import pytest
from nostr.key import PrivateKey

from errors import InvoiceRequestFailed, NoPaymentAddress, ReceiptsUnsupported, UnsupportedAddressFormat
from nwc import PaymentOutcome
from relay import verify_event
from zaps import KIND_ZAP_REQUEST, ZapResolver, Zapper, encode_lnurl, lightning_address_url

AUTHOR = "aa" * 32
NOTE = "bb" * 32
PAY_URL = "https://ln.example/.well-known/lnurlp/alice"


class StubPool:
    def __init__(self, profile=None, events=None):
        self.relays = ["wss://relay.example"]
        self.profile = profile
        self.events = events or {}

    async def fetch_profile(self, pubkey):
        return self.profile

    async def fetch_event(self, event_id):
        return self.events[event_id]


class StubHttp:
    def __init__(self, info=None, invoice=None, info_status=200, invoice_status=200):
        self.info = info if info is not None else {
            "callback": "https://ln.example/cb",
            "allowsNostr": True,
            "nostrPubkey": "cc" * 32,
            "minSendable": 1000,
            "maxSendable": 10_000_000,
        }
        self.invoice = invoice if invoice is not None else {"pr": "lnbc210n1stub"}
        self.info_status = info_status
        self.invoice_status = invoice_status
        self.calls = []

    def __call__(self, url, params=None):
        self.calls.append((url, params))
        if url == PAY_URL:
            return self.info_status, self.info
        return self.invoice_status, self.invoice


class StubWallet:
    def __init__(self):
        self.paid = []

    async def pay_invoice(self, invoice):
        self.paid.append(invoice)
        return PaymentOutcome(preimage="00" * 32)


def resolver(profile=None, http=None):
    return ZapResolver(StubPool(profile=profile), PrivateKey(), http_get=http or StubHttp())


def test_lightning_address_url():
    assert lightning_address_url("Alice@LN.example") == "https://ln.example/.well-known/lnurlp/alice"
    assert lightning_address_url("bob@abc.onion").startswith("http://")
    with pytest.raises(NoPaymentAddress):
        lightning_address_url("not-an-address")


def test_encode_lnurl_prefix():
    assert encode_lnurl(PAY_URL).startswith("lnurl1")


class TestResolve:
    @pytest.mark.asyncio
    async def test_invoice_with_signed_zap_request(self):
        http = StubHttp()
        invoice = await resolver({"lud16": "alice@ln.example"}, http).resolve_and_invoice(AUTHOR, 21000, "thanks", NOTE)
        assert invoice == "lnbc210n1stub"

        url, params = http.calls[-1]
        assert url == "https://ln.example/cb"
        assert params["amount"] == 21000
        zap_request = json.loads(params["nostr"])
        assert zap_request["kind"] == KIND_ZAP_REQUEST
        assert ["p", AUTHOR] in zap_request["tags"]
        assert ["e", NOTE] in zap_request["tags"]
        assert ["amount", "21000"] in zap_request["tags"]
        assert zap_request["content"] == "thanks"
        assert verify_event(zap_request)

    @pytest.mark.asyncio
    async def test_no_profile(self):
        with pytest.raises(NoPaymentAddress):
            await resolver(None).resolve_and_invoice(AUTHOR, 21000, "", NOTE)

    @pytest.mark.asyncio
    async def test_lud06_only(self):
        with pytest.raises(UnsupportedAddressFormat):
            await resolver({"lud06": "lnurl1xyz"}).resolve_and_invoice(AUTHOR, 21000, "", NOTE)

    @pytest.mark.asyncio
    async def test_provider_without_nostr(self):
        http = StubHttp(info={"callback": "https://ln.example/cb", "allowsNostr": False})
        with pytest.raises(ReceiptsUnsupported):
            await resolver({"lud16": "alice@ln.example"}, http).resolve_and_invoice(AUTHOR, 21000, "", NOTE)

    @pytest.mark.asyncio
    async def test_amount_out_of_range(self):
        with pytest.raises(InvoiceRequestFailed):
            await resolver({"lud16": "alice@ln.example"}).resolve_and_invoice(AUTHOR, 100, "", NOTE)

    @pytest.mark.asyncio
    async def test_callback_error(self):
        http = StubHttp(invoice={"status": "ERROR", "reason": "nope"})
        with pytest.raises(InvoiceRequestFailed, match="nope"):
            await resolver({"lud16": "alice@ln.example"}, http).resolve_and_invoice(AUTHOR, 21000, "", NOTE)

    @pytest.mark.asyncio
    async def test_lookup_http_error(self):
        http = StubHttp(info_status=404)
        with pytest.raises(NoPaymentAddress):
            await resolver({"lud16": "alice@ln.example"}, http).resolve_and_invoice(AUTHOR, 21000, "", NOTE)


@pytest.mark.asyncio
async def test_zapper_pays_resolved_invoice():
    pool = StubPool(profile={"lud16": "alice@ln.example"}, events={NOTE: {"id": NOTE, "pubkey": AUTHOR}})
    wallet = StubWallet()
    zapper = Zapper(ZapResolver(pool, PrivateKey(), http_get=StubHttp()), wallet, amount_sats=21, comment="gm")
    outcome = await zapper.zap_event_id(NOTE)
    assert outcome.confirmed
    assert wallet.paid == ["lnbc210n1stub"]
