from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
from typing import Any, Protocol

import aiohttp
from solana.rpc.async_api import AsyncClient
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from countertrade.common import log_event

from .rpc import RpcGateway
from .types import (
    BuiltSwap,
    ConfirmationTimeoutError,
    RpcMethodError,
    SubmissionError,
    SubmissionResult,
)

_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


class JitoBundleRateLimitError(SubmissionError):
    def __init__(self, message: str, *, retry_after_seconds: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


def _parse_retry_after_seconds(raw: str | None) -> float | None:
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def _error_message_from_payload(payload: Any) -> str:
    if isinstance(payload, dict):
        message = payload.get("message")
        if message:
            return str(message)
    return str(payload)


class TransactionSubmitter(Protocol):
    carries_priority_fee: bool

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def submit(self, built: BuiltSwap) -> SubmissionResult:
        ...


async def wait_for_confirmation(
    *,
    logger: logging.Logger,
    rpc: RpcGateway,
    signature: str,
    last_valid_block_height: int | None,
    timeout_seconds: float,
    poll_interval_seconds: float,
) -> SubmissionResult:
    """Polls until the signature lands, fails, expires, or the timeout elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(0.0, timeout_seconds)
    target_rank = _COMMITMENT_RANK.get(rpc.commitment, 1)

    while True:
        try:
            statuses = await rpc.get_signature_statuses([signature])
            status = statuses[0] if statuses else None
            if status is not None:
                if status.get("err") is not None:
                    return SubmissionResult(confirmed=False, signature=signature, error=str(status["err"]))
                reached = _COMMITMENT_RANK.get(str(status.get("confirmationStatus") or ""), -1)
                if reached >= target_rank:
                    return SubmissionResult(confirmed=True, signature=signature)

            if last_valid_block_height is not None:
                block_height = await rpc.get_block_height()
                if block_height > last_valid_block_height:
                    return SubmissionResult(
                        confirmed=False,
                        signature=signature,
                        error=f"blockhash expired at block height {block_height}",
                    )
        except (RpcMethodError, aiohttp.ClientError, asyncio.TimeoutError) as error:
            rpc.log_rpc_failure(method="confirmation_poll", error=error, signature=signature)

        if loop.time() >= deadline:
            error = ConfirmationTimeoutError(
                f"Signature not confirmed within {timeout_seconds:.1f}s",
                signature=signature,
            )
            log_event(
                logger,
                level="warning",
                event="confirmation_timeout",
                message="Transaction confirmation timed out",
                signature=signature,
                timeout_seconds=timeout_seconds,
            )
            return SubmissionResult(confirmed=False, signature=signature, error=str(error))
        await asyncio.sleep(poll_interval_seconds)


class DirectSubmitter:
    """Broadcasts through the RPC node without preflight and polls for confirmation."""

    carries_priority_fee = False

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: RpcGateway,
        confirm_timeout_seconds: float = 60.0,
        confirm_poll_interval_seconds: float = 1.0,
        client: AsyncClient | None = None,
    ) -> None:
        self._logger = logger
        self._rpc = rpc
        self._confirm_timeout_seconds = confirm_timeout_seconds
        self._confirm_poll_interval_seconds = confirm_poll_interval_seconds
        self._rpc_client = client

    async def connect(self) -> None:
        if self._rpc_client is None:
            self._rpc_client = AsyncClient(self._rpc.rpc_url)

    async def close(self) -> None:
        if self._rpc_client is not None:
            await self._rpc_client.close()
            self._rpc_client = None

    async def submit(self, built: BuiltSwap) -> SubmissionResult:
        if self._rpc_client is None:
            await self.connect()
        if self._rpc_client is None:
            raise RuntimeError("RPC client is not initialized.")

        try:
            response = await self._rpc_client.send_raw_transaction(
                bytes(built.transaction),
                opts=TxOpts(skip_preflight=True, max_retries=0),
            )
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="transaction_send_failed",
                message="Raw transaction send failed",
                signature=built.signature,
                error=str(error),
            )
            return SubmissionResult(confirmed=False, signature=built.signature, error=str(error))

        signature = str(response.value) if getattr(response, "value", None) is not None else built.signature
        log_event(
            self._logger,
            level="info",
            event="transaction_sent",
            message="Transaction sent; awaiting confirmation",
            signature=signature,
            last_valid_block_height=built.last_valid_block_height,
        )
        return await wait_for_confirmation(
            logger=self._logger,
            rpc=self._rpc,
            signature=signature,
            last_valid_block_height=built.last_valid_block_height,
            timeout_seconds=self._confirm_timeout_seconds,
            poll_interval_seconds=self._confirm_poll_interval_seconds,
        )


class JitoBlockEngineClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        block_engine_url: str,
    ) -> None:
        self._logger = logger
        self._block_engine_url = block_engine_url.strip()
        self._tip_accounts_cache: list[str] = []

    @property
    def block_engine_url(self) -> str:
        return self._block_engine_url

    async def _post(
        self,
        *,
        session: aiohttp.ClientSession,
        method: str,
        params: list[Any],
    ) -> tuple[int, Any, str, float | None]:
        if not self._block_engine_url:
            raise SubmissionError("JITO_BLOCK_ENGINE_URL is required for bundle mode.")

        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        async with session.post(self._block_engine_url, json=payload) as response:
            status = response.status
            retry_after_seconds = _parse_retry_after_seconds(response.headers.get("Retry-After"))
            raw_text = await response.text()

        try:
            parsed: Any = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError:
            parsed = {"raw": raw_text}
        return status, parsed, raw_text, retry_after_seconds

    async def fetch_tip_accounts(
        self,
        *,
        session: aiohttp.ClientSession,
        force_refresh: bool = False,
    ) -> list[str]:
        if self._tip_accounts_cache and not force_refresh:
            return list(self._tip_accounts_cache)

        status, parsed, raw_text, _ = await self._post(session=session, method="getTipAccounts", params=[])
        if status >= 400:
            raise SubmissionError(f"Jito getTipAccounts failed: status={status} body={str(raw_text)[:240]!r}")
        if isinstance(parsed, dict) and parsed.get("error"):
            raise SubmissionError(f"Jito getTipAccounts failed: {parsed['error']}")

        result = parsed.get("result") if isinstance(parsed, dict) else None
        if not isinstance(result, list):
            raise SubmissionError(f"Unexpected getTipAccounts response: {parsed}")

        tip_accounts = [str(item).strip() for item in result if str(item).strip()]
        if not tip_accounts:
            raise SubmissionError("Jito getTipAccounts returned no tip accounts.")

        self._tip_accounts_cache = tip_accounts
        log_event(
            self._logger,
            level="info",
            event="jito_tip_accounts_loaded",
            message="Loaded Jito tip accounts",
            tip_account_count=len(tip_accounts),
        )
        return list(tip_accounts)

    async def select_tip_account(self, *, session: aiohttp.ClientSession, seed: str) -> str:
        tip_accounts = await self.fetch_tip_accounts(session=session)
        if len(tip_accounts) == 1:
            return tip_accounts[0]
        index = int(hashlib.sha256(seed.encode("utf-8")).hexdigest(), 16) % len(tip_accounts)
        return tip_accounts[index]

    async def send_bundle(
        self,
        *,
        session: aiohttp.ClientSession,
        signed_transactions: list[str],
    ) -> str | None:
        status, parsed, raw_text, retry_after_seconds = await self._post(
            session=session,
            method="sendBundle",
            params=[signed_transactions, {"encoding": "base64"}],
        )

        if status == 429:
            raise JitoBundleRateLimitError(
                f"Jito bundle submission failed: status={status} body={str(raw_text)[:240]!r}",
                retry_after_seconds=retry_after_seconds,
            )
        if status >= 400:
            raise SubmissionError(f"Jito bundle submission failed: status={status} body={str(raw_text)[:240]!r}")
        if isinstance(parsed, dict) and parsed.get("error"):
            raise SubmissionError(f"Jito bundle submission failed: {_error_message_from_payload(parsed['error'])}")

        result = parsed.get("result") if isinstance(parsed, dict) else None
        bundle_id = result if isinstance(result, str) else None
        log_event(
            self._logger,
            level="info",
            event="jito_bundle_submitted",
            message="Bundle submitted to Jito Block Engine",
            tx_count=len(signed_transactions),
            bundle_id=bundle_id,
        )
        return bundle_id


class PriorityRelaySubmitter:
    """Sends [swap, tip] as a block-engine bundle; the tip replaces compute-unit pricing."""

    carries_priority_fee = True

    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc: RpcGateway,
        block_engine: JitoBlockEngineClient,
        signer: Keypair,
        tip_lamports: int,
        confirm_timeout_seconds: float = 60.0,
        confirm_poll_interval_seconds: float = 1.0,
        request_timeout_seconds: float = 8.0,
    ) -> None:
        self._logger = logger
        self._rpc = rpc
        self._block_engine = block_engine
        self._signer = signer
        self._tip_lamports = max(0, int(tip_lamports))
        self._confirm_timeout_seconds = confirm_timeout_seconds
        self._confirm_poll_interval_seconds = confirm_poll_interval_seconds
        self._request_timeout_seconds = request_timeout_seconds
        self._http_session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._request_timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def build_tip_transaction(self, *, blockhash: str, seed: str) -> VersionedTransaction:
        if self._tip_lamports <= 0:
            raise SubmissionError("Tip must be greater than zero in bundle mode.")
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("HTTP session is not initialized.")

        tip_account_raw = await self._block_engine.select_tip_account(session=self._http_session, seed=seed)
        try:
            tip_account = Pubkey.from_string(tip_account_raw)
        except Exception as error:
            raise SubmissionError(f"Invalid Jito tip account returned: {tip_account_raw}") from error

        instruction = transfer(
            TransferParams(
                from_pubkey=self._signer.pubkey(),
                to_pubkey=tip_account,
                lamports=self._tip_lamports,
            )
        )
        message = MessageV0.try_compile(
            self._signer.pubkey(),
            [instruction],
            [],
            Hash.from_string(blockhash),
        )
        return VersionedTransaction(message, [self._signer])

    async def submit(self, built: BuiltSwap) -> SubmissionResult:
        try:
            tip_tx = await self.build_tip_transaction(blockhash=built.blockhash, seed=built.signature)
            if self._http_session is None:
                raise RuntimeError("HTTP session is not initialized.")
            bundle_id = await self._block_engine.send_bundle(
                session=self._http_session,
                signed_transactions=[
                    base64.b64encode(bytes(built.transaction)).decode("ascii"),
                    base64.b64encode(bytes(tip_tx)).decode("ascii"),
                ],
            )
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="bundle_send_failed",
                message="Bundle submission failed",
                signature=built.signature,
                error=str(error),
                retry_after_seconds=getattr(error, "retry_after_seconds", None),
            )
            return SubmissionResult(
                confirmed=False,
                signature=built.signature,
                error=str(error),
                retry_after_seconds=getattr(error, "retry_after_seconds", None),
            )

        log_event(
            self._logger,
            level="info",
            event="bundle_sent",
            message="Bundle sent; awaiting confirmation",
            signature=built.signature,
            bundle_id=bundle_id,
            tip_lamports=self._tip_lamports,
        )
        return await wait_for_confirmation(
            logger=self._logger,
            rpc=self._rpc,
            signature=built.signature,
            last_valid_block_height=built.last_valid_block_height,
            timeout_seconds=self._confirm_timeout_seconds,
            poll_interval_seconds=self._confirm_poll_interval_seconds,
        )


class DryRunSubmitter:
    carries_priority_fee = False

    def __init__(self, *, logger: logging.Logger) -> None:
        self._logger = logger
        self.submitted_count = 0

    async def connect(self) -> None:
        return

    async def close(self) -> None:
        return

    async def submit(self, built: BuiltSwap) -> SubmissionResult:
        self.submitted_count += 1
        log_event(
            self._logger,
            level="info",
            event="dry_run_swap",
            message="DRY_RUN=true; swap was built but not broadcast",
            signature=built.signature,
            direction=built.direction,
            quote=built.quote.to_dict(),
            sell_percentage=built.sell_percentage,
            tx_size_bytes=len(bytes(built.transaction)),
        )
        return SubmissionResult(confirmed=True, signature=built.signature)
