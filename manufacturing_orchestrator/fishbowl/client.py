"""
Fishbowl Client

Async HTTP client for the Fishbowl REST, legacy and data-query endpoints.

Calls are never retried here; retry policy belongs to the batch
orchestrator. Every failure surfaces as RemoteCallError carrying the step
that failed.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..control_plane.exceptions import AuthenticationError, RemoteCallError
from .records import Pick, WorkOrder

logger = structlog.get_logger(__name__)

LEGACY_SUCCESS = 1000


class FishbowlClient:
    """
    Thin typed wrapper over one Fishbowl server.

    The auth token is passed per call: interactive jobs and the scheduler
    each run with their own session token.
    """

    def __init__(
        self,
        server_url: str,
        *,
        timeout_seconds: float = 30.0,
        verify: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.server_url = server_url.rstrip("/")
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            verify=verify,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _headers(token: Optional[str], content_type: str = "application/json") -> Dict[str, str]:
        headers = {"Content-Type": content_type}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _send(self, step: str, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.server_url}/api/{path}"
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("fishbowl_request_failed", step=step, url=url, error=str(e))
            raise RemoteCallError(step, f"{step}: {e}") from e

        if not response.is_success:
            body = response.text[:500]
            logger.warning("fishbowl_http_error", step=step, status=response.status_code, body=body)
            raise RemoteCallError(step, f"HTTP {response.status_code}: {body}", response.status_code)
        return response

    @staticmethod
    def _json(step: str, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise RemoteCallError(step, f"Invalid JSON response from Fishbowl ({step})") from e

    # ------------------------------------------------------------------
    # Data query
    # ------------------------------------------------------------------

    async def query(self, token: str, sql: str) -> List[Dict[str, Any]]:
        """Run a read-only SQL query through the data-query endpoint."""
        response = await self._send(
            "query",
            "GET",
            "data-query",
            content=sql.encode("utf-8"),
            headers=self._headers(token, "text/plain"),
        )
        rows = self._json("query", response)
        if not isinstance(rows, list):
            raise RemoteCallError("query", f"Unexpected data-query response: {str(rows)[:200]}")
        return rows

    # ------------------------------------------------------------------
    # Manufacture orders (REST)
    # ------------------------------------------------------------------

    async def create_manufacture_order(self, token: str, payload: Dict[str, Any]) -> int:
        response = await self._send(
            "create_parent_order", "POST", "manufacture-orders", json=payload, headers=self._headers(token)
        )
        data = self._json("create_parent_order", response)
        if not isinstance(data, dict) or not data.get("id"):
            raise RemoteCallError("create_parent_order", f"Failed to create MO: {str(data)[:200]}")
        logger.info("parent_order_created", number=payload.get("number"), mo_id=data["id"])
        return data["id"]

    async def issue_manufacture_order(self, token: str, mo_id: int) -> None:
        await self._send("issue_parent_order", "POST", f"manufacture-orders/{mo_id}/issue", headers=self._headers(token))
        logger.info("parent_order_issued", mo_id=mo_id)

    async def close_short_manufacture_order(self, token: str, mo_id: int) -> None:
        await self._send(
            "close_short_parent_order", "POST", f"manufacture-orders/{mo_id}/close-short", headers=self._headers(token)
        )
        logger.info("parent_order_closed_short", mo_id=mo_id)

    # ------------------------------------------------------------------
    # Legacy transactions
    # ------------------------------------------------------------------

    async def _legacy(self, token: str, request_name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        step = request_name
        response = await self._send(
            step,
            "POST",
            f"legacy/external/{request_name}",
            json={request_name: body},
            headers=self._headers(token),
        )
        data = self._json(step, response)
        messages = ((data or {}).get("FbiJson") or {}).get("FbiMsgsRs") or {}
        if "ErrorRs" in messages:
            error = messages["ErrorRs"] or {}
            raise RemoteCallError(
                step,
                f"{request_name} failed: {error.get('statusMessage') or error.get('Message') or error}",
                error.get("statusCode"),
            )

        result = messages.get(request_name[:-2] + "Rs") or {}
        status_code = result.get("statusCode")
        if status_code != LEGACY_SUCCESS:
            raise RemoteCallError(
                step,
                f"{request_name} returned status {status_code}: {result.get('statusMessage', '')}".rstrip(": "),
                status_code,
            )
        return result

    async def get_pick(self, token: str, work_order_number: str) -> Pick:
        result = await self._legacy(token, "GetPickRq", {"WoNum": work_order_number})
        if not result.get("Pick"):
            raise RemoteCallError("GetPickRq", f"No pick returned for {work_order_number}")
        return Pick(result["Pick"])

    async def save_pick(self, token: str, pick: Pick) -> Pick:
        result = await self._legacy(token, "SavePickRq", {"Pick": pick.to_payload()})
        return Pick(result.get("Pick") or pick.to_payload())

    async def get_work_order(self, token: str, work_order_number: str) -> WorkOrder:
        result = await self._legacy(token, "GetWorkOrderRq", {"WorkOrderNumber": work_order_number})
        if not result.get("WO"):
            raise RemoteCallError("GetWorkOrderRq", f"No work order returned for {work_order_number}")
        return WorkOrder(result["WO"])

    async def save_work_order(self, token: str, work_order: WorkOrder) -> WorkOrder:
        result = await self._legacy(token, "SaveWorkOrderRq", {"WO": work_order.to_payload()})
        return WorkOrder(result.get("WO") or work_order.to_payload())

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def login(self, payload: Dict[str, Any]) -> str:
        try:
            response = await self._client.post(
                f"{self.server_url}/api/login", json=payload, headers=self._headers(None)
            )
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Fishbowl login request failed: {e}") from e

        if "application/json" not in response.headers.get("content-type", ""):
            raise AuthenticationError("Fishbowl returned an error page instead of JSON. Check server URL and port.")

        try:
            data = response.json()
        except ValueError as e:
            raise AuthenticationError(
                f"Invalid JSON response from Fishbowl login (HTTP {response.status_code})"
            ) from e
        if not isinstance(data, dict):
            data = {}
        if not response.is_success or not data.get("token"):
            logger.error("fishbowl_login_rejected", status=response.status_code, username=payload.get("username"))
            message = data.get("message")
            raise AuthenticationError(message or f"Fishbowl login failed (HTTP {response.status_code})")
        return data["token"]

    async def logout(self, token: str, payload: Optional[Dict[str, Any]] = None) -> None:
        await self._send("logout", "POST", "logout", json=payload or {}, headers=self._headers(token))
