"""
Golem Base JSON-RPC Client

Talks to a Golem Base node over HTTP JSON-RPC using aiohttp. Reads use the
``golembase_*`` query methods; writes are RLP-encoded storage transactions
addressed to the storage processor, signed locally with eth-account and
submitted with ``eth_sendRawTransaction``.

Storage transaction payload::

    [
      [[btl, data, [[key, value], ...], [[key, number], ...]], ...],              # creates
      [[entity_key, btl, data, [[key, value], ...], [[key, number], ...]], ...],  # updates
      [entity_key, ...],                                                          # deletes
      [[entity_key, blocks], ...],                                                # extensions
    ]

The entity key of a create or update is read from the transaction receipt's
``GolemBaseStorageEntityCreated`` / ``GolemBaseStorageEntityUpdated`` log.
"""

from __future__ import annotations

import asyncio
import base64
import itertools
from typing import Any

import aiohttp
import rlp
import structlog
from eth_account import Account
from eth_utils import keccak

from golem_memory.core.domain.config import LedgerSettings, validate_private_key
from golem_memory.core.domain.errors import LedgerConfigurationError, LedgerRpcError
from golem_memory.core.interfaces.ledger import TxHashCallback

logger = structlog.get_logger(__name__)

STORAGE_ADDRESS = "0x0000000000000000000000000000000060138453"

ENTITY_CREATED_TOPIC = "0x" + keccak(text="GolemBaseStorageEntityCreated(uint256,uint256)").hex()
ENTITY_UPDATED_TOPIC = "0x" + keccak(text="GolemBaseStorageEntityUpdated(uint256,uint256)").hex()

GAS_HEADROOM = 1.2


def _entity_key_bytes(entity_key: str) -> bytes:
    raw = entity_key[2:] if entity_key.startswith("0x") else entity_key
    try:
        value = bytes.fromhex(raw)
    except ValueError as exc:
        raise LedgerRpcError(
            f"Invalid entity key: {entity_key}", retryable=False
        ) from exc
    if len(value) != 32:
        raise LedgerRpcError(f"Invalid entity key length: {entity_key}", retryable=False)
    return value


def _annotation_pairs(annotations: dict[str, str]) -> list[list[bytes]]:
    return [
        [key.encode("utf-8"), str(value).encode("utf-8")]
        for key, value in sorted(annotations.items())
    ]


def encode_storage_transaction(
    creates: list[tuple[int, bytes, dict[str, str]]] | None = None,
    updates: list[tuple[str, int, bytes, dict[str, str]]] | None = None,
    deletes: list[str] | None = None,
) -> bytes:
    """RLP-encode a storage transaction. Numeric annotations are not used."""
    create_items = [
        [btl, data, _annotation_pairs(annotations), []]
        for btl, data, annotations in creates or []
    ]
    update_items = [
        [_entity_key_bytes(key), btl, data, _annotation_pairs(annotations), []]
        for key, btl, data, annotations in updates or []
    ]
    delete_items = [_entity_key_bytes(key) for key in deletes or []]
    return rlp.encode([create_items, update_items, delete_items, []])


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(str(value), 16)


class GolemBaseRpcClient:
    """Implements ``LedgerClientProtocol`` against a Golem Base node."""

    def __init__(
        self,
        settings: LedgerSettings,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._settings = settings
        self._rpc_url = settings.rpc_url
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)
        self._account = None
        if settings.private_key is not None:
            key = validate_private_key(settings.private_key.get_secret_value())
            self._account = Account.from_key(key)
        address = settings.owner_address or (self._account.address if self._account else None)
        if not address:
            raise LedgerConfigurationError(
                "Either a private key or an owner address must be configured"
            )
        self._owner_address = address

    @property
    def owner_address(self) -> str:
        return self._owner_address

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._settings.request_timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # JSON-RPC transport
    # ------------------------------------------------------------------

    async def _call(self, method: str, *params: Any) -> Any:
        session = await self._get_session()
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params)}
        try:
            async with session.post(self._rpc_url, json=payload) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    logger.warning(
                        "ledger_rpc.http_error", method=method, status=resp.status, body=body[:200]
                    )
                    raise LedgerRpcError(
                        f"{method} failed with HTTP {resp.status}",
                        retryable=resp.status >= 500 or resp.status == 429,
                        details={"status": resp.status},
                    )
                data = await resp.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise LedgerRpcError(f"{method} transport error: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise LedgerRpcError(f"{method} timed out") from exc

        if not isinstance(data, dict):
            raise LedgerRpcError(f"{method} returned a malformed response", retryable=False)
        error = data.get("error")
        if error:
            message = error.get("message", "unknown error") if isinstance(error, dict) else str(error)
            code = error.get("code") if isinstance(error, dict) else None
            raise LedgerRpcError(f"{method}: {message}", rpc_code=code, retryable=False)
        return data.get("result")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def chain_id(self) -> int:
        return _to_int(await self._call("eth_chainId"))

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return _to_int(await self._call("eth_getTransactionCount", address, block))

    async def get_storage_value(self, entity_key: str) -> bytes:
        result = await self._call("golembase_getStorageValue", entity_key)
        if not result:
            return b""
        try:
            return base64.b64decode(result)
        except ValueError as exc:
            raise LedgerRpcError(
                "Storage value is not valid base64", retryable=False
            ) from exc

    async def get_entities_of_owner(self, owner: str) -> list[str]:
        result = await self._call("golembase_getEntitiesOfOwner", owner)
        return [str(key) for key in result or []]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_entity(
        self,
        data: bytes,
        btl: int,
        annotations: dict[str, str],
        nonce: int,
        on_tx_hash: TxHashCallback | None = None,
    ) -> str:
        payload = encode_storage_transaction(creates=[(btl, data, annotations)])
        receipt = await self._submit(payload, nonce, on_tx_hash)
        return self._entity_key_from_receipt(receipt, ENTITY_CREATED_TOPIC)

    async def update_entity(
        self,
        entity_key: str,
        data: bytes,
        btl: int,
        annotations: dict[str, str],
        nonce: int,
        on_tx_hash: TxHashCallback | None = None,
    ) -> str:
        payload = encode_storage_transaction(updates=[(entity_key, btl, data, annotations)])
        receipt = await self._submit(payload, nonce, on_tx_hash)
        return self._entity_key_from_receipt(receipt, ENTITY_UPDATED_TOPIC)

    async def delete_entity(self, entity_key: str, nonce: int) -> None:
        payload = encode_storage_transaction(deletes=[entity_key])
        await self._submit(payload, nonce, None)

    async def _submit(
        self,
        payload: bytes,
        nonce: int,
        on_tx_hash: TxHashCallback | None,
    ) -> dict[str, Any]:
        if self._account is None:
            raise LedgerConfigurationError("A private key is required for ledger writes")

        call = {"from": self._account.address, "to": STORAGE_ADDRESS, "data": "0x" + payload.hex()}
        gas_price = _to_int(await self._call("eth_gasPrice"))
        gas = _to_int(await self._call("eth_estimateGas", call))
        transaction = {
            "to": STORAGE_ADDRESS,
            "value": 0,
            "data": payload,
            "nonce": nonce,
            "gas": int(gas * GAS_HEADROOM),
            "gasPrice": gas_price,
            "chainId": self._settings.chain_id,
        }
        signed = self._account.sign_transaction(transaction)
        raw = "0x" + bytes(signed.raw_transaction).hex()
        tx_hash = await self._call("eth_sendRawTransaction", raw)
        logger.info("ledger_rpc.transaction_sent", tx_hash=tx_hash, nonce=nonce)
        if on_tx_hash is not None:
            try:
                on_tx_hash(tx_hash)
            except Exception as exc:
                logger.warning("ledger_rpc.tx_hash_callback_failed", error=str(exc))
        return await self._wait_for_receipt(tx_hash)

    async def _wait_for_receipt(self, tx_hash: str) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.receipt_timeout
        while True:
            receipt = await self._call("eth_getTransactionReceipt", tx_hash)
            if receipt:
                if _to_int(receipt.get("status", "0x1")) != 1:
                    raise LedgerRpcError(
                        "Storage transaction reverted",
                        retryable=False,
                        details={"tx_hash": tx_hash},
                    )
                return receipt
            if loop.time() >= deadline:
                raise LedgerRpcError(
                    "Timed out waiting for transaction receipt", details={"tx_hash": tx_hash}
                )
            await asyncio.sleep(self._settings.receipt_poll_interval)

    @staticmethod
    def _entity_key_from_receipt(receipt: dict[str, Any], topic: str) -> str:
        for log in receipt.get("logs", []):
            topics = log.get("topics") or []
            if len(topics) >= 2 and topics[0].lower() == topic:
                return topics[1]
        raise LedgerRpcError(
            "Receipt does not contain an entity event",
            retryable=False,
            details={"tx_hash": receipt.get("transactionHash")},
        )
