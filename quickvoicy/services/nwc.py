"""
Nostr Wallet Connect (NIP-47) client.

Talks to the user's wallet through a Nostr relay:
- requests are kind 23194 events, NIP-04 encrypted to the wallet pubkey
- the wallet answers with kind 23195 events tagged with our request id

One client holds one relay websocket; requests on it are serialized.
"""
from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass
from urllib.parse import parse_qs, urlparse

import aiohttp
from coincurve import PrivateKey, PublicKey, PublicKeyXOnly
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from quickvoicy.core.config import settings
from quickvoicy.core.errors import WalletConnectionError, WalletError

logger = logging.getLogger(__name__)

URI_SCHEMES = ("nostr+walletconnect", "nostrwalletconnect")

KIND_NWC_REQUEST = 23194
KIND_NWC_RESPONSE = 23195

MSATS_PER_SAT = 1000


@dataclass(frozen=True)
class ConnectionInfo:
    wallet_pubkey: str
    relay_url: str
    secret: str
    lud16: str | None = None


@dataclass(frozen=True)
class WalletInvoice:
    invoice: str
    payment_hash: str | None


def _is_hex(value: str, length: int) -> bool:
    if len(value) != length:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


def parse_connection_uri(uri: str) -> ConnectionInfo:
    """
    Parse nostr+walletconnect://<wallet pubkey>?relay=<url>&secret=<hex>.

    A missing secret is replaced by a fresh random key. Raises
    WalletConnectionError on anything malformed.
    """
    uri = (uri or "").strip()
    try:
        parsed = urlparse(uri)
    except ValueError as e:
        raise WalletConnectionError("invalid wallet connection URI") from e
    if parsed.scheme.lower() not in URI_SCHEMES:
        raise WalletConnectionError("wallet URI must start with nostr+walletconnect://")

    # urlparse puts the pubkey in netloc for "scheme://pubkey" and in path for "scheme:pubkey"
    pubkey = (parsed.netloc or parsed.path).strip("/").lower()
    if not _is_hex(pubkey, 64):
        raise WalletConnectionError("wallet pubkey must be 64 hex characters")
    try:
        PublicKey(b"\x02" + bytes.fromhex(pubkey))
    except ValueError as e:
        raise WalletConnectionError("wallet pubkey is not a valid secp256k1 key") from e

    params = parse_qs(parsed.query)
    relays = [r for r in params.get("relay", []) if r.strip()]
    if not relays:
        raise WalletConnectionError("wallet URI has no relay")
    relay = relays[0].strip()
    if not relay.startswith(("wss://", "ws://")):
        raise WalletConnectionError("relay must be a ws:// or wss:// URL")

    secret = (params.get("secret") or [""])[0].strip().lower()
    if secret and not _is_hex(secret, 64):
        raise WalletConnectionError("wallet secret must be 64 hex characters")
    if not secret:
        secret = PrivateKey().secret.hex()

    lud16 = (params.get("lud16") or [None])[0]
    return ConnectionInfo(wallet_pubkey=pubkey, relay_url=relay, secret=secret, lud16=lud16)


# NIP-04 / NIP-01 primitives

def shared_secret(private_key: PrivateKey, xonly_pubkey_hex: str) -> bytes:
    """ECDH x-coordinate (unhashed), as NIP-04 uses it."""
    point = PublicKey(b"\x02" + bytes.fromhex(xonly_pubkey_hex))
    return point.multiply(private_key.secret).format(compressed=True)[1:]


def nip04_encrypt(private_key: PrivateKey, xonly_pubkey_hex: str, plaintext: str) -> str:
    key = shared_secret(private_key, xonly_pubkey_hex)
    iv = os.urandom(16)
    padder = padding.PKCS7(128).padder()
    data = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ct = encryptor.update(data) + encryptor.finalize()
    return f"{base64.b64encode(ct).decode()}?iv={base64.b64encode(iv).decode()}"


def nip04_decrypt(private_key: PrivateKey, xonly_pubkey_hex: str, content: str) -> str:
    try:
        ct_b64, iv_b64 = content.split("?iv=", 1)
        ct = base64.b64decode(ct_b64)
        iv = base64.b64decode(iv_b64)
    except ValueError as e:
        raise WalletError("malformed encrypted content") from e
    key = shared_secret(private_key, xonly_pubkey_hex)
    try:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        data = decryptor.update(ct) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        plain = unpadder.update(data) + unpadder.finalize()
        return plain.decode("utf-8")
    except ValueError as e:
        raise WalletError("could not decrypt wallet response") from e


def event_id(pubkey: str, created_at: int, kind: int, tags: list, content: str) -> str:
    serialized = json.dumps(
        [0, pubkey, created_at, kind, tags, content], separators=(",", ":"), ensure_ascii=False
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def sign_event(private_key: PrivateKey, kind: int, tags: list, content: str) -> dict:
    pubkey = private_key.public_key_xonly.format().hex()
    created_at = int(time.time())
    eid = event_id(pubkey, created_at, kind, tags, content)
    sig = private_key.sign_schnorr(bytes.fromhex(eid))
    return {
        "id": eid,
        "pubkey": pubkey,
        "created_at": created_at,
        "kind": kind,
        "tags": tags,
        "content": content,
        "sig": sig.hex(),
    }


def verify_event(event: dict) -> bool:
    try:
        expected = event_id(
            event["pubkey"], event["created_at"], event["kind"], event["tags"], event["content"]
        )
        if expected != event["id"]:
            return False
        return PublicKeyXOnly(bytes.fromhex(event["pubkey"])).verify(
            bytes.fromhex(event["sig"]), bytes.fromhex(event["id"])
        )
    except (KeyError, TypeError, ValueError):
        return False


class NWCClient:
    """
    Wallet client built from a connection URI.

    Usage:
        async with NWCClient(uri) as wallet:
            paid = await wallet.check_payment_status(payment_hash)
    """

    def __init__(self, uri: str, timeout: float | None = None):
        self.info = parse_connection_uri(uri)
        self.timeout = timeout if timeout is not None else settings.wallet_timeout_sec
        try:
            self._key = PrivateKey(bytes.fromhex(self.info.secret))
        except ValueError as e:
            raise WalletConnectionError("wallet secret is not a valid secp256k1 key") from e
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._lock = asyncio.Lock()

    @property
    def client_pubkey(self) -> str:
        return self._key.public_key_xonly.format().hex()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        if self.connected:
            return
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.info.relay_url, heartbeat=30),
                timeout=self.timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await self._close_session()
            raise WalletConnectionError(f"relay {self.info.relay_url} unreachable: {e}") from e
        logger.debug("Connected to relay %s", self.info.relay_url)

    async def disconnect(self) -> None:
        try:
            if self._ws is not None and not self._ws.closed:
                await self._ws.close()
        except Exception as e:
            logger.warning("Closing relay websocket %s failed: %s", self.info.relay_url, e)
        finally:
            self._ws = None
            await self._close_session()

    async def _close_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            try:
                await session.close()
            except Exception as e:
                logger.warning("Closing HTTP session failed: %s", e)

    async def __aenter__(self) -> NWCClient:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def create_invoice(self, amount: int, description: str) -> WalletInvoice:
        """Ask the wallet for a BOLT11 invoice of `amount` sats."""
        if amount <= 0:
            raise WalletError("amount must be positive")
        result = await self.request(
            "make_invoice",
            {"amount": int(amount) * MSATS_PER_SAT, "description": description or ""},
        )
        invoice = result.get("invoice")
        if not invoice:
            raise WalletError("wallet returned no invoice")
        return WalletInvoice(invoice=invoice, payment_hash=result.get("payment_hash") or None)

    async def check_payment_status(self, payment_hash: str) -> bool:
        """True when the wallet reports the invoice settled. Any failure reads as unpaid."""
        if not payment_hash:
            return False
        try:
            result = await self.request("lookup_invoice", {"payment_hash": payment_hash})
        except Exception as e:
            logger.debug("lookup_invoice %s failed: %s", payment_hash[:16], e)
            return False
        state = (result.get("state") or "").lower()
        if state:
            return state == "settled"
        return bool(result.get("settled_at") or result.get("preimage") or result.get("paid"))

    async def get_info(self) -> dict:
        return await self.request("get_info", {})

    async def request(self, method: str, params: dict) -> dict:
        if not self.connected:
            raise WalletConnectionError("wallet is not connected")
        async with self._lock:
            try:
                return await asyncio.wait_for(self._roundtrip(method, params), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                raise WalletError(f"{method}: wallet did not answer in {self.timeout:.0f}s") from e
            except (aiohttp.ClientError, OSError) as e:
                raise WalletError(f"{method}: relay error: {e}") from e

    async def _roundtrip(self, method: str, params: dict) -> dict:
        ws = self._ws
        payload = json.dumps({"method": method, "params": params})
        content = nip04_encrypt(self._key, self.info.wallet_pubkey, payload)
        event = sign_event(self._key, KIND_NWC_REQUEST, [["p", self.info.wallet_pubkey]], content)
        sub_id = uuid.uuid4().hex[:16]

        await ws.send_str(json.dumps([
            "REQ",
            sub_id,
            {"kinds": [KIND_NWC_RESPONSE], "authors": [self.info.wallet_pubkey], "#e": [event["id"]]},
        ]))
        await ws.send_str(json.dumps(["EVENT", event]))
        try:
            async for msg in ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    if msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                        break
                    continue
                reply = self._handle_relay_message(msg.data, sub_id, event["id"])
                if reply is not None:
                    return self._unwrap(method, reply)
            raise WalletError(f"{method}: relay closed the connection")
        finally:
            if not ws.closed:
                try:
                    await ws.send_str(json.dumps(["CLOSE", sub_id]))
                except Exception as e:
                    logger.debug("CLOSE %s failed: %s", sub_id, e)

    def _handle_relay_message(self, raw: str, sub_id: str, request_id: str) -> dict | None:
        try:
            frame = json.loads(raw)
        except ValueError:
            logger.debug("Ignoring non-JSON relay frame")
            return None
        if not isinstance(frame, list) or not frame:
            return None

        kind = frame[0]
        if kind == "OK" and len(frame) >= 3 and frame[1] == request_id and frame[2] is False:
            reason = frame[3] if len(frame) > 3 else ""
            raise WalletError(f"relay rejected request: {reason}")
        if kind == "NOTICE":
            logger.info("Relay notice from %s: %s", self.info.relay_url, frame[1:])
            return None
        if kind != "EVENT" or len(frame) < 3 or frame[1] != sub_id:
            return None

        ev = frame[2]
        if not isinstance(ev, dict) or ev.get("kind") != KIND_NWC_RESPONSE:
            return None
        if ev.get("pubkey") != self.info.wallet_pubkey:
            return None
        if not any(t[:2] == ["e", request_id] for t in ev.get("tags", []) if isinstance(t, list)):
            return None
        if not verify_event(ev):
            logger.warning("Dropping response with bad signature from %s", self.info.relay_url)
            return None
        try:
            return json.loads(nip04_decrypt(self._key, self.info.wallet_pubkey, ev["content"]))
        except ValueError as e:
            raise WalletError("wallet response is not valid JSON") from e

    @staticmethod
    def _unwrap(method: str, reply: dict) -> dict:
        error = reply.get("error")
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise WalletError(f"{method}: {message or code or 'wallet error'}", code=code)
        result = reply.get("result")
        if not isinstance(result, dict):
            raise WalletError(f"{method}: wallet returned no result")
        return result
