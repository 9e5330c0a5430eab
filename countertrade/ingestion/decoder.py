from __future__ import annotations

import base64
import binascii
import json
import logging
import struct
from typing import Any

import base58
from solders.transaction import VersionedTransaction

from .types import (
    RAYDIUM_AMM_V4_PROGRAM_ID,
    AccountRecord,
    DecodedInstruction,
    DecodedTransaction,
    DecodeError,
    StreamFilter,
    StreamRecord,
    SubscriptionAck,
    SwapInstruction,
    TokenBalance,
    TransactionRecord,
)

SWAP_BASE_IN_DISCRIMINATOR = 9
SWAP_BASE_OUT_DISCRIMINATOR = 11
_SWAP_LAYOUT = struct.Struct("<BQQ")
_SWAP_VARIANTS = {
    SWAP_BASE_IN_DISCRIMINATOR: "swap_base_in",
    SWAP_BASE_OUT_DISCRIMINATOR: "swap_base_out",
}


def _require_dict(value: Any, *, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise DecodeError(f"{what} is not an object: {type(value).__name__}")
    return value


def _decode_base64_field(raw: Any, *, what: str) -> bytes:
    # RPC encodes binary fields as [payload, "base64"]
    if isinstance(raw, list) and len(raw) == 2 and raw[1] == "base64":
        raw = raw[0]
    if not isinstance(raw, str):
        raise DecodeError(f"{what} is not a base64 payload")
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as error:
        raise DecodeError(f"{what} is not valid base64: {error}") from error


class TransactionDecoder:
    """Turns raw stream frames into canonical transactions for one exchange program."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        program_id: str = RAYDIUM_AMM_V4_PROGRAM_ID,
    ) -> None:
        self._logger = logger
        self.program_id = program_id
        self._data_slice = None
        self._account_requests: dict[int, str] = {}
        self._account_subscriptions: dict[int, str] = {}

    def bind_filter(self, stream_filter: StreamFilter) -> None:
        """Remember which request ids are account subscriptions so notifications can be keyed by pubkey."""
        self._data_slice = stream_filter.data_slice
        self._account_requests = {
            int(request["id"]): str(request["params"][0])
            for request in stream_filter.build_requests()
            if request["method"] == "accountSubscribe"
        }
        self._account_subscriptions = {}

    def parse_record(self, data: bytes) -> StreamRecord:
        try:
            payload = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as error:
            raise DecodeError(f"Stream frame is not JSON: {error}") from error
        payload = _require_dict(payload, what="stream frame")

        if "error" in payload:
            raise DecodeError(f"Stream returned an error: {payload['error']}")

        if "id" in payload and "result" in payload:
            try:
                ack = SubscriptionAck(request_id=int(payload["id"]), subscription_id=int(payload["result"]))
            except (TypeError, ValueError) as error:
                raise DecodeError(f"Malformed subscription ack: {payload}") from error
            pubkey = self._account_requests.get(ack.request_id)
            if pubkey is not None:
                self._account_subscriptions[ack.subscription_id] = pubkey
            return ack

        method = payload.get("method")
        params = _require_dict(payload.get("params"), what=f"{method} params")
        if method == "transactionNotification":
            return self._parse_transaction_notification(params)
        if method == "accountNotification":
            return self._parse_account_notification(params)

        raise DecodeError(f"Unsupported stream record: method={method!r}")

    def _parse_transaction_notification(self, params: dict[str, Any]) -> TransactionRecord:
        result = _require_dict(params.get("result"), what="transaction result")
        envelope = _require_dict(result.get("transaction"), what="transaction envelope")
        wire = _decode_base64_field(envelope.get("transaction"), what="wire transaction")
        meta = envelope.get("meta")
        if meta is None:
            meta = {}
        meta = _require_dict(meta, what="transaction meta")
        try:
            slot = int(result.get("slot") or 0)
        except (TypeError, ValueError) as error:
            raise DecodeError(f"Malformed slot: {result.get('slot')!r}") from error
        return TransactionRecord(
            signature=str(result.get("signature") or ""),
            slot=slot,
            wire_transaction=wire,
            meta=meta,
        )

    def _parse_account_notification(self, params: dict[str, Any]) -> AccountRecord:
        result = _require_dict(params.get("result"), what="account result")
        value = _require_dict(result.get("value"), what="account value")
        context = result.get("context") if isinstance(result.get("context"), dict) else {}
        data = _decode_base64_field(value.get("data"), what="account data")
        if self._data_slice is not None:
            data = self._data_slice.apply(data)
        subscription_id = params.get("subscription")
        pubkey = ""
        if isinstance(subscription_id, int):
            pubkey = self._account_subscriptions.get(subscription_id, "")
        return AccountRecord(
            pubkey=pubkey,
            owner=str(value.get("owner") or ""),
            data=data,
            slot=int(context.get("slot") or 0),
        )

    def decode(self, data: bytes) -> DecodedTransaction | None:
        """Decode a frame; None for non-transaction records and for transactions the ledger marked failed."""
        record = self.parse_record(data)
        if not isinstance(record, TransactionRecord):
            return None
        return self.decode_record(record)

    def decode_record(self, record: TransactionRecord) -> DecodedTransaction | None:
        if record.meta.get("err") is not None:
            return None

        try:
            transaction = VersionedTransaction.from_bytes(record.wire_transaction)
        except Exception as error:
            raise DecodeError(f"Wire transaction could not be parsed: {error}") from error

        message = transaction.message
        loaded = _require_dict(record.meta.get("loadedAddresses") or {}, what="loaded addresses")
        writable = loaded.get("writable") or []
        readonly = loaded.get("readonly") or []
        if not isinstance(writable, list) or not isinstance(readonly, list):
            raise DecodeError(f"Loaded addresses are not lists: {loaded}")
        account_keys = tuple(
            [str(key) for key in message.account_keys] + [str(key) for key in writable] + [str(key) for key in readonly]
        )
        if not account_keys:
            raise DecodeError("Transaction has no account keys")

        signature = record.signature or (str(transaction.signatures[0]) if transaction.signatures else "")
        return DecodedTransaction(
            signature=signature,
            slot=record.slot,
            fee_payer=account_keys[0],
            account_keys=account_keys,
            instructions=self._flatten_instructions(message, record.meta, account_keys),
            pre_token_balances=self._token_balances(record.meta.get("preTokenBalances"), account_keys),
            post_token_balances=self._token_balances(record.meta.get("postTokenBalances"), account_keys),
        )

    @staticmethod
    def _resolve(account_keys: tuple[str, ...], index: int) -> str:
        if not 0 <= index < len(account_keys):
            raise DecodeError(f"Account index {index} is out of range ({len(account_keys)} keys)")
        return account_keys[index]

    def _flatten_instructions(
        self,
        message: Any,
        meta: dict[str, Any],
        account_keys: tuple[str, ...],
    ) -> tuple[DecodedInstruction, ...]:
        groups = meta.get("innerInstructions") or []
        if not isinstance(groups, list):
            raise DecodeError(f"Inner instructions are not a list: {type(groups).__name__}")
        inner_by_index: dict[int, list[Any]] = {}
        for group in groups:
            if isinstance(group, dict) and isinstance(group.get("instructions"), list):
                try:
                    inner_by_index[int(group.get("index", -1))] = group["instructions"]
                except (TypeError, ValueError) as error:
                    raise DecodeError(f"Malformed inner instruction group index: {group.get('index')!r}") from error

        flattened: list[DecodedInstruction] = []
        for outer_index, compiled in enumerate(message.instructions):
            flattened.append(
                DecodedInstruction(
                    program_id=self._resolve(account_keys, compiled.program_id_index),
                    accounts=tuple(self._resolve(account_keys, idx) for idx in bytes(compiled.accounts)),
                    data=bytes(compiled.data),
                    outer_index=outer_index,
                    stack_height=1,
                )
            )
            for inner in inner_by_index.get(outer_index, []):
                flattened.append(self._inner_instruction(inner, outer_index, account_keys))
        return tuple(flattened)

    def _inner_instruction(
        self,
        inner: Any,
        outer_index: int,
        account_keys: tuple[str, ...],
    ) -> DecodedInstruction:
        inner = _require_dict(inner, what="inner instruction")
        try:
            data = base58.b58decode(str(inner.get("data") or ""))
        except ValueError as error:
            raise DecodeError(f"Inner instruction data is not base58: {error}") from error
        raw_accounts = inner.get("accounts") or []
        if not isinstance(raw_accounts, list):
            raise DecodeError(f"Inner instruction accounts are not a list: {raw_accounts!r}")
        try:
            program_index = int(inner["programIdIndex"])
            account_indexes = [int(idx) for idx in raw_accounts]
            # entries under innerInstructions run at least one level below their outer instruction
            stack_height = int(inner.get("stackHeight") or 2)
        except (KeyError, TypeError, ValueError) as error:
            raise DecodeError(f"Malformed inner instruction: {inner}") from error
        return DecodedInstruction(
            program_id=self._resolve(account_keys, program_index),
            accounts=tuple(self._resolve(account_keys, idx) for idx in account_indexes),
            data=data,
            outer_index=outer_index,
            stack_height=stack_height,
        )

    @staticmethod
    def _token_balances(raw: Any, account_keys: tuple[str, ...]) -> tuple[TokenBalance, ...]:
        if not isinstance(raw, list):
            return ()

        balances: list[TokenBalance] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            ui_amount = item.get("uiTokenAmount") or {}
            try:
                index = int(item["accountIndex"])
                amount = int(ui_amount.get("amount") or 0)
                decimals = int(ui_amount.get("decimals") or 0)
            except (AttributeError, KeyError, TypeError, ValueError) as error:
                raise DecodeError(f"Malformed token balance entry: {item}") from error
            balances.append(
                TokenBalance(
                    account_index=index,
                    account=account_keys[index] if 0 <= index < len(account_keys) else "",
                    mint=str(item.get("mint") or ""),
                    owner=str(item.get("owner") or ""),
                    amount=amount,
                    decimals=decimals,
                )
            )
        return tuple(balances)

    def program_instructions(self, tx: DecodedTransaction) -> list[DecodedInstruction]:
        return [ix for ix in tx.instructions if ix.program_id == self.program_id]

    def swap_instructions(self, tx: DecodedTransaction) -> list[SwapInstruction]:
        swaps: list[SwapInstruction] = []
        for ix in self.program_instructions(tx):
            swap = self.decode_swap(ix)
            if swap is not None:
                swaps.append(swap)
        return swaps

    @staticmethod
    def decode_swap(ix: DecodedInstruction) -> SwapInstruction | None:
        if len(ix.data) < _SWAP_LAYOUT.size or len(ix.accounts) < 17:
            return None
        discriminator, first, second = _SWAP_LAYOUT.unpack_from(ix.data)
        variant = _SWAP_VARIANTS.get(discriminator)
        if variant is None:
            return None
        return SwapInstruction(
            variant=variant,
            pool_id=ix.accounts[1],
            owner=ix.accounts[-1],
            amount_in=first,
            amount_out=second,
        )
