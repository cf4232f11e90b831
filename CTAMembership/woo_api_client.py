#!/usr/bin/env python3
"""
WooCommerce API Client
Paged read/update access to purchase records (WooCommerce REST API, wc/v3).

Canonical Owner: This module owns all order-store interactions.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol, Tuple

import aiohttp
from aiohttp import ContentTypeError

from CTAMembership.audit_log import AuditLog
from CTAMembership.models import (
    META_ACTIVATION_UUID,
    META_IS_OLD,
    STATUS_FINISHED,
    PurchaseRecord,
)

log = logging.getLogger("cta-membership")

DEFAULT_PAGE_SIZE = 100


class WooAPIError(Exception):
    """Custom exception for WooCommerce API errors"""
    pass


class OrderStore(Protocol):
    """Subset of the order store the membership core depends on."""

    async def count(self, status: Optional[str] = None) -> int: ...

    async def page(self, page: int, per_page: int = DEFAULT_PAGE_SIZE, status: Optional[str] = None) -> List[PurchaseRecord]: ...

    async def update(self, order_id: Any, meta_patch: Mapping[str, Any]) -> PurchaseRecord: ...

    async def set_status(self, order_id: Any, status: str, meta_patch: Mapping[str, Any]) -> PurchaseRecord: ...


async def iter_orders(
    store: OrderStore,
    status: Optional[str] = None,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> AsyncIterator[Tuple[int, PurchaseRecord]]:
    """Yield (page_number, record) over every page (1-indexed, ceil(total / page_size) pages)."""
    total = await store.count(status)
    pages = max(1, math.ceil(total / page_size))
    for page_no in range(1, pages + 1):
        records = await store.page(page_no, page_size, status)
        if not records:
            break
        for record in records:
            yield page_no, record


def _meta_patch_list(meta_patch: Mapping[str, Any]) -> List[Dict[str, Any]]:
    return [{"key": str(k), "value": v} for k, v in meta_patch.items()]


class WooAPIClient:
    """Client for the WooCommerce REST API (orders endpoint)."""

    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        *,
        code_key: str = META_ACTIVATION_UUID,
        audit: Optional[AuditLog] = None,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_seconds: float = 20.0,
    ):
        """
        Initialize WooCommerce API client.

        Args:
            base_url: Store site URL (the wc/v3 path is appended)
            consumer_key: REST API consumer key (ck_...)
            consumer_secret: REST API consumer secret (cs_...)
            code_key: Order metadata key holding the activation code
            audit: Audit log for operation tracing
            session: Shared aiohttp session (a short-lived one is opened per request otherwise)
        """
        if not base_url:
            raise ValueError("WooCommerce base_url is required")
        if not consumer_key or not consumer_secret:
            raise ValueError("WooCommerce consumer_key and consumer_secret are required")

        self.api_base = base_url.rstrip("/") + "/wp-json/wc/v3"
        self.auth = aiohttp.BasicAuth(consumer_key, consumer_secret)
        self.code_key = code_key
        self.audit = audit or AuditLog(None)
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def _extract_error_message(self, data: object, status: int) -> str:
        """Extract a readable error message from WooCommerce error bodies."""
        if isinstance(data, dict):
            # Common shape: {"code": "woocommerce_rest_shop_order_invalid_id", "message": "...", "data": {...}}
            msg = data.get("message")
            code = data.get("code")
            if msg and code:
                return f"{msg} ({code})"
            if msg:
                return str(msg)
        return f"API error: {status}"

    async def _send(
        self,
        session: aiohttp.ClientSession,
        method: str,
        url: str,
        params: Optional[Dict],
        json_data: Optional[Dict],
    ) -> Tuple[Any, Mapping[str, str]]:
        async with session.request(
            method=method,
            url=url,
            auth=self.auth,
            params=params,
            json=json_data,
            timeout=self._timeout,
        ) as resp:
            if resp.status == 401:
                raise WooAPIError("Invalid consumer key/secret")
            if resp.status == 403:
                raise WooAPIError("API key lacks required permissions")
            if resp.status == 429:
                raise WooAPIError("Rate limit exceeded - wait before retrying")

            try:
                data = await resp.json()
            except ContentTypeError:
                # Non-JSON error bodies happen (proxies, maintenance pages); keep a snippet.
                txt = (await resp.text())[:2000]
                data = {"message": txt, "code": "non_json"}

            if resp.status >= 400:
                raise WooAPIError(self._extract_error_message(data, resp.status))
            return data, resp.headers.copy()

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        json_data: Optional[Dict] = None,
    ) -> Tuple[Any, Mapping[str, str]]:
        """
        Make API request to WooCommerce.

        Returns:
            (decoded JSON body, response headers)

        Raises:
            WooAPIError: If request fails
        """
        url = f"{self.api_base}{endpoint}"
        try:
            if self._session is not None:
                return await self._send(self._session, method, url, params, json_data)
            async with aiohttp.ClientSession() as session:
                return await self._send(session, method, url, params, json_data)
        except aiohttp.ClientError as e:
            raise WooAPIError(f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise WooAPIError("Request timed out") from e

    async def count(self, status: Optional[str] = None) -> int:
        """Total number of orders (X-WP-Total), optionally filtered by status."""
        params: Dict[str, Any] = {"per_page": 1}
        if status:
            params["status"] = status
        try:
            _, headers = await self._request("GET", "/orders", params=params)
        except WooAPIError as e:
            self.audit.event("getOrdersTotal.error", error=str(e))
            raise
        raw = headers.get("X-WP-Total") or "0"
        try:
            total = int(str(raw).strip())
        except ValueError:
            total = 0
        log.debug(f"WC count -> total={total} status={status or 'any'}")
        self.audit.event("getOrdersTotal", total=total, status=status)
        return total

    async def page(self, page: int, per_page: int = DEFAULT_PAGE_SIZE, status: Optional[str] = None) -> List[PurchaseRecord]:
        """One page of orders (1-indexed)."""
        params: Dict[str, Any] = {"per_page": int(per_page), "page": int(page)}
        if status:
            params["status"] = status
        data, _ = await self._request("GET", "/orders", params=params)
        orders = data if isinstance(data, list) else []
        log.debug(f"WC page {page}: {len(orders)} orders")
        return [PurchaseRecord.from_api(o, self.code_key) for o in orders if isinstance(o, dict)]

    async def update(self, order_id: Any, meta_patch: Mapping[str, Any]) -> PurchaseRecord:
        """Write metadata entries onto an order."""
        payload = {"meta_data": _meta_patch_list(meta_patch)}
        try:
            data, _ = await self._request("PUT", f"/orders/{order_id}", json_data=payload)
        except WooAPIError as e:
            self.audit.event("updateOrderMemberData.error", orderId=order_id, error=str(e))
            raise
        self.audit.event("updateOrderMemberData.success", orderId=order_id)
        return PurchaseRecord.from_api(data if isinstance(data, dict) else {"id": order_id}, self.code_key)

    async def set_status(self, order_id: Any, status: str, meta_patch: Mapping[str, Any]) -> PurchaseRecord:
        """Change order status and write metadata in one request."""
        payload = {"status": status, "meta_data": _meta_patch_list(meta_patch)}
        try:
            data, _ = await self._request("PUT", f"/orders/{order_id}", json_data=payload)
        except WooAPIError as e:
            self.audit.event("setOrderStatus.error", orderId=order_id, status=status, error=str(e))
            raise
        self.audit.event("setOrderStatus", orderId=order_id, status=status)
        return PurchaseRecord.from_api(data if isinstance(data, dict) else {"id": order_id}, self.code_key)


async def mark_order_finished(store: OrderStore, order_id: Any) -> PurchaseRecord:
    """Retire an order: status finished + is_old."""
    return await store.set_status(order_id, STATUS_FINISHED, {META_IS_OLD: "True"})
