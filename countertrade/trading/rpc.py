from __future__ import annotations

import base64
import logging
from typing import Any, Callable

import aiohttp

from countertrade.common import log_event

from .types import RpcMethodError, to_int

_MISSING_ACCOUNT_MARKERS = ("could not find account", "invalid param: could not find")


def _decode_account_data(raw: Any) -> bytes | None:
    if not isinstance(raw, dict):
        return None
    data = raw.get("data")
    if isinstance(data, list) and data and isinstance(data[0], str):
        return base64.b64decode(data[0])
    return None


class RpcGateway:
    """Thin JSON-RPC reader over one aiohttp session."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        commitment: str = "confirmed",
        timeout_seconds: float = 8.0,
        session_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url
        self._commitment = commitment
        self._timeout_seconds = timeout_seconds
        self._session_factory = session_factory
        self._http_session: Any | None = None
        self._request_id = 0

    @property
    def rpc_url(self) -> str:
        return self._rpc_url

    @property
    def commitment(self) -> str:
        return self._commitment

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("RPC_ENDPOINT is required.")
        if self._http_session is None:
            if self._session_factory is not None:
                self._http_session = self._session_factory()
            else:
                timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
                self._http_session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def healthcheck(self) -> None:
        await self.get_latest_blockhash()

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        self._request_id += 1
        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        async with self._http_session.post(self._rpc_url, json=payload) as response:
            status = response.status
            body = await response.json(content_type=None)
            if status >= 400:
                raise RpcMethodError(
                    f"RPC call failed: method={method} status={status} body={body}",
                    method=method,
                    status=status,
                )

        if not isinstance(body, dict):
            raise RpcMethodError(f"Invalid RPC response for {method}: {body}", method=method, status=status)

        if body.get("error"):
            raise RpcMethodError(f"RPC error for {method}: {body['error']}", method=method, status=status)

        return body.get("result")

    async def get_token_account_balance(self, token_account: str) -> tuple[int, int] | None:
        """(raw amount, decimals), or None when the account does not exist."""
        try:
            result = await self.call(
                "getTokenAccountBalance",
                [token_account, {"commitment": self._commitment}],
            )
        except RpcMethodError as error:
            lowered = str(error).lower()
            if any(marker in lowered for marker in _MISSING_ACCOUNT_MARKERS):
                return None
            raise

        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, dict):
            return None
        return to_int(value.get("amount"), 0), to_int(value.get("decimals"), 0)

    async def get_multiple_accounts(self, pubkeys: list[str]) -> list[bytes | None]:
        if not pubkeys:
            return []
        result = await self.call(
            "getMultipleAccounts",
            [pubkeys, {"commitment": self._commitment, "encoding": "base64"}],
        )
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, list) or len(value) != len(pubkeys):
            raise RpcMethodError(f"Unexpected getMultipleAccounts response: {result}", method="getMultipleAccounts")
        return [_decode_account_data(item) for item in value]

    async def get_account_data(self, pubkey: str) -> bytes | None:
        accounts = await self.get_multiple_accounts([pubkey])
        return accounts[0]

    async def get_program_accounts(
        self,
        program_id: str,
        *,
        data_size: int | None = None,
        memcmp: list[tuple[int, str]] | None = None,
    ) -> list[tuple[str, bytes]]:
        filters: list[dict[str, Any]] = []
        if data_size is not None:
            filters.append({"dataSize": data_size})
        for offset, encoded in memcmp or []:
            filters.append({"memcmp": {"offset": offset, "bytes": encoded}})

        result = await self.call(
            "getProgramAccounts",
            [
                program_id,
                {"commitment": self._commitment, "encoding": "base64", "filters": filters},
            ],
        )
        if isinstance(result, dict):
            result = result.get("value")
        if not isinstance(result, list):
            raise RpcMethodError(f"Unexpected getProgramAccounts response: {result}", method="getProgramAccounts")

        accounts: list[tuple[str, bytes]] = []
        for item in result:
            if not isinstance(item, dict):
                continue
            data = _decode_account_data(item.get("account"))
            pubkey = str(item.get("pubkey") or "")
            if pubkey and data is not None:
                accounts.append((pubkey, data))
        return accounts

    async def get_latest_blockhash(self) -> tuple[str, int | None]:
        result = await self.call("getLatestBlockhash", [{"commitment": self._commitment}])
        if not isinstance(result, dict):
            raise RpcMethodError(f"Unexpected getLatestBlockhash response: {result}", method="getLatestBlockhash")

        value = result.get("value")
        if not isinstance(value, dict):
            raise RpcMethodError(f"Unexpected getLatestBlockhash payload: {result}", method="getLatestBlockhash")

        blockhash = str(value.get("blockhash") or "").strip()
        if not blockhash:
            raise RpcMethodError(f"Missing blockhash in RPC response: {result}", method="getLatestBlockhash")
        last_valid_block_height_raw = to_int(value.get("lastValidBlockHeight"), -1)
        last_valid_block_height = (
            last_valid_block_height_raw if last_valid_block_height_raw >= 0 else None
        )
        return blockhash, last_valid_block_height

    async def get_signature_statuses(self, signatures: list[str]) -> list[dict[str, Any] | None]:
        result = await self.call(
            "getSignatureStatuses",
            [signatures, {"searchTransactionHistory": False}],
        )
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, list):
            raise RpcMethodError(f"Unexpected getSignatureStatuses response: {result}", method="getSignatureStatuses")
        return [item if isinstance(item, dict) else None for item in value]

    async def get_block_height(self) -> int:
        result = await self.call("getBlockHeight", [{"commitment": self._commitment}])
        height = to_int(result, -1)
        if height < 0:
            raise RpcMethodError(f"Unexpected getBlockHeight response: {result}", method="getBlockHeight")
        return height

    def log_rpc_failure(self, *, method: str, error: Exception, **fields: Any) -> None:
        log_event(
            self._logger,
            level="warning",
            event="rpc_call_failed",
            message="RPC call failed",
            method=method,
            rpc_url=self._rpc_url,
            error=str(error),
            **fields,
        )
