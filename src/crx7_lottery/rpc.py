from __future__ import annotations

import itertools
from typing import Any, Dict, List, Optional

import httpx

from .errors import RpcError, RpcTransportError


class RpcClient:
    def __init__(
        self,
        rpc_url: str,
        timeout_s: float = 60.0,
        fee_estimator_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.fee_estimator_url = fee_estimator_url
        self.client = httpx.AsyncClient(timeout=timeout_s, transport=transport)
        self._ids = itertools.count(1)

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "RpcClient":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def _call(self, method: str, params: List[Any], url: Optional[str] = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            resp = await self.client.post(url or self.rpc_url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise RpcTransportError(method, e) from e
        try:
            data = resp.json()
        except ValueError as e:
            # Proxies and gateways answer 200 with HTML on overload
            raise RpcTransportError(method, e) from e
        if not isinstance(data, dict):
            raise RpcError(method, f"malformed response: {data!r}")
        if "error" in data:
            raise RpcError(method, data["error"])
        return data.get("result")

    async def _call_value(self, method: str, params: List[Any]) -> Any:
        """For methods whose result is an RpcResponse {"context", "value"}."""
        result = await self._call(method, params)
        if not isinstance(result, dict) or "value" not in result:
            raise RpcError(method, f"malformed result: {result!r}")
        return result["value"]

    async def get_latest_blockhash(self, commitment: str = "confirmed") -> Dict[str, Any]:
        """Returns {"blockhash": str, "lastValidBlockHeight": int}."""
        value = await self._call_value("getLatestBlockhash", [{"commitment": commitment}])
        if not isinstance(value, dict) or not value.get("blockhash"):
            raise RpcError("getLatestBlockhash", f"malformed result: {value!r}")
        return value

    async def is_blockhash_valid(self, blockhash: str, commitment: str = "confirmed") -> bool:
        return bool(await self._call_value("isBlockhashValid", [blockhash, {"commitment": commitment}]))

    async def get_priority_fee_estimate(self, serialized_tx_b58: str) -> Optional[float]:
        """
        Helius priority fee estimate in micro-lamports, or None when no
        estimator is configured or it has no answer.
        """
        if not self.fee_estimator_url:
            return None
        result = await self._call(
            "getPriorityFeeEstimate",
            [
                {
                    "transaction": serialized_tx_b58,
                    "options": {"priorityLevel": "Low", "includeAllPriorityFeeLevels": True},
                }
            ],
            url=self.fee_estimator_url,
        )
        if not isinstance(result, dict) or result.get("priorityFeeEstimate") is None:
            return None
        try:
            return float(result["priorityFeeEstimate"])
        except (TypeError, ValueError):
            raise RpcError("getPriorityFeeEstimate", f"malformed result: {result!r}") from None

    async def send_transaction(self, serialized_tx_b64: str, max_retries: int) -> str:
        return await self._call(
            "sendTransaction",
            [
                serialized_tx_b64,
                {
                    "encoding": "base64",
                    "skipPreflight": False,
                    "preflightCommitment": "confirmed",
                    "maxRetries": max_retries,
                },
            ],
        )

    async def get_signature_status(
        self, signature: str, search_history: bool = False
    ) -> Optional[Dict[str, Any]]:
        """Status dict ({"confirmationStatus", "err", ...}) or None if unknown."""
        values = await self._call_value(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": search_history}],
        )
        status = values[0] if isinstance(values, list) and values else None
        if status is not None and not isinstance(status, dict):
            raise RpcError("getSignatureStatuses", f"malformed status: {status!r}")
        return status

    async def get_balance(self, address: str, commitment: str = "confirmed") -> int:
        value = await self._call_value("getBalance", [address, {"commitment": commitment}])
        try:
            return int(value)
        except (TypeError, ValueError):
            raise RpcError("getBalance", f"malformed balance: {value!r}") from None

    async def get_program_accounts_base64(
        self,
        program_id: str,
        mint: str,
        classic_token_program: bool,
    ) -> List[str]:
        """
        Returns base64 strings for account data.
        Note: For classic SPL Token accounts, we enforce dataSize=165.
        Token-2022 accounts can vary due to extensions.
        """
        filters: List[Dict[str, Any]] = [{"memcmp": {"offset": 0, "bytes": mint}}]
        if classic_token_program:
            filters.append({"dataSize": 165})

        results = await self._call(
            "getProgramAccounts",
            [
                program_id,
                {
                    "encoding": "base64",
                    "filters": filters,
                },
            ],
        )
        out: List[str] = []
        for item in results or []:
            # item['account']['data'] is [base64_str, "base64"]
            out.append(item["account"]["data"][0])
        return out
