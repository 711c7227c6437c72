"""CoinDCX futures REST client (signed JSON requests)."""

import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from ..config import settings
from ..exceptions import UpstreamError
from ..models import Position

logger = logging.getLogger(__name__)

_FUTURES_PATH = "/exchange/v1/derivatives/futures"


class ExchangeClient:
    """Futures-only exchange access.

    Every request body carries a millisecond ``timestamp`` and is signed with
    HMAC-SHA256 over its compact JSON encoding. Failures raise
    ``UpstreamError`` with the HTTP status and response body.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.exchange_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.exchange_api_key
        self.api_secret = api_secret if api_secret is not None else settings.exchange_api_secret
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout or settings.http_timeout_seconds,
            transport=transport,
        )

    def close(self):
        self._client.close()

    def _sign(self, payload: str) -> str:
        return hmac.new(
            self.api_secret.encode("utf-8"),
            payload.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        body = {k: v for k, v in (body or {}).items() if v is not None}
        body["timestamp"] = int(time.time() * 1000)
        payload = json.dumps(body, separators=(",", ":"))

        headers = {
            "Content-Type": "application/json",
            "X-AUTH-APIKEY": self.api_key,
            "X-AUTH-SIGNATURE": self._sign(payload),
        }

        try:
            response = self._client.request(method, path, content=payload, headers=headers)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Exchange request {method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise UpstreamError(
                f"Exchange request {method} {path} rejected",
                status=response.status_code,
                body=response.text,
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(
                f"Exchange request {method} {path} returned invalid JSON",
                status=response.status_code,
                body=response.text,
            ) from e

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def create_order(self, order: Dict[str, Any]) -> Any:
        """Submit a futures order.

        Args:
            order: Must contain ``side``, ``pair``, ``order_type`` and
                ``total_quantity``; other fields fall back to exchange defaults.
        """
        body = {
            "order": {
                "side": order["side"],
                "pair": order["pair"],
                "order_type": order["order_type"],
                "price": order.get("price"),
                "stop_price": order.get("stop_price"),
                "total_quantity": order["total_quantity"],
                "leverage": order.get("leverage", 1),
                "notification": order.get("notification", "email_notification"),
                "time_in_force": order.get("time_in_force", "good_till_cancel"),
                "hidden": order.get("hidden", False),
                "post_only": order.get("post_only", False),
                "margin_currency_short_name": order.get(
                    "margin_currency_short_name", settings.default_margin_currency
                ),
            }
        }
        body["order"] = {k: v for k, v in body["order"].items() if v is not None}
        result = self._request("POST", f"{_FUTURES_PATH}/orders/create", body)
        logger.info(f"Order submitted: {order['side']} {order['total_quantity']} {order['pair']}")
        return result

    def market_close(self, position: Position) -> Any:
        """Close a long position with a market sell of its full size."""
        return self.create_order({
            "side": "sell",
            "pair": position.pair,
            "order_type": "market_order",
            "total_quantity": position.active_pos,
            "leverage": 1,
            "margin_currency_short_name": position.margin_currency,
        })

    def get_orders(self, status: str = "open", side: str = "buy") -> Any:
        return self._request("POST", f"{_FUTURES_PATH}/orders", {
            "page": 1,
            "size": 100,
            "status": status,
            "side": side,
            "margin_currency_short_name": ["INR", "USDT"],
        })

    def cancel_order(self, order_id: str) -> Any:
        return self._request("POST", f"{_FUTURES_PATH}/orders/cancel", {"id": order_id})

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    def get_positions(self, pair: Optional[str] = None, size: int = 10) -> List[Position]:
        data = self._request("POST", f"{_FUTURES_PATH}/positions", {
            "pair": pair,
            "page": 1,
            "size": size,
            "margin_currency_short_name": ["USDT", "INR"],
        })
        if not isinstance(data, list):
            raise UpstreamError("Unexpected positions payload", body=str(data))
        return [Position.from_api(item, settings.default_margin_currency) for item in data]

    def get_balance(self) -> Any:
        return self._request("GET", f"{_FUTURES_PATH}/wallets")

    def set_leverage(self, pair: str, leverage: int) -> Any:
        return self._request("POST", f"{_FUTURES_PATH}/leverage", {
            "pair": pair,
            "leverage": int(leverage),
        })
