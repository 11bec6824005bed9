"""
Binance connection layer over the public REST API.
Spot and cross-margin market orders, balances and symbol metadata.
Docs: https://developers.binance.com/docs/binance-spot-api-docs/rest-api
"""
import hashlib
import hmac
import logging
import threading
import time
from urllib.parse import urlencode

import requests

from config.settings import settings
from signalbot.core.errors import ExchangeRejectionError
from signalbot.core.precision import format_quantity
from signalbot.models.bot import LotSize
from signalbot.models.trade import OrderFill, OrderStatus, SideEffect

logger = logging.getLogger("signalbot.exchange")

# Used to split a symbol when exchangeInfo is unavailable
KNOWN_QUOTE_ASSETS = ("USDT", "USDC", "FDUSD", "BUSD", "TUSD", "BTC", "ETH", "BNB", "EUR", "TRY")


class BinanceConnector:
    def __init__(self, api_key: str = "", api_secret: str = "", base_url: str = None,
                 timeout: float = None, recv_window: int = None):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = (base_url or settings.BINANCE_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.recv_window = recv_window or settings.BINANCE_RECV_WINDOW
        self.session = requests.Session()
        if api_key:
            self.session.headers["X-MBX-APIKEY"] = api_key
        # symbol -> (fetched_at, symbol info)
        self._symbol_cache: dict[str, tuple[float, dict]] = {}
        self._cache_lock = threading.Lock()

    @classmethod
    def from_exchange(cls, exchange) -> "BinanceConnector":
        """Build a client from a stored Exchange record."""
        return cls(api_key=exchange.api_key, api_secret=exchange.api_secret)

    # ── Transport ──

    def _sign(self, query: str) -> str:
        return hmac.new(self.api_secret.encode(), query.encode(), hashlib.sha256).hexdigest()

    def _request(self, method: str, path: str, params: dict = None, signed: bool = False):
        params = {k: v for k, v in (params or {}).items() if v is not None}
        if signed:
            params["timestamp"] = int(time.time() * 1000)
            params["recvWindow"] = self.recv_window
            query = urlencode(params)
            query += f"&signature={self._sign(query)}"
        else:
            query = urlencode(params)
        url = f"{self.base_url}{path}"
        if query:
            url += f"?{query}"

        try:
            resp = self.session.request(method, url, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise ExchangeRejectionError(f"Request to exchange failed: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = None

        if isinstance(data, dict) and "code" in data and "msg" in data and (data["code"] or 0) < 0:
            logger.warning("%s %s rejected: %s %s", method, path, data["code"], data["msg"])
            raise ExchangeRejectionError(data["msg"], code=data["code"])
        if resp.status_code >= 400:
            raise ExchangeRejectionError(
                f"HTTP {resp.status_code} from exchange", details={"body": resp.text[:500]}
            )
        if data is None:
            raise ExchangeRejectionError("Exchange returned a non-JSON response")
        return data

    # ── Market data ──

    def get_price(self, symbol: str) -> float:
        data = self._request("GET", "/api/v3/ticker/price", {"symbol": symbol})
        price = float(data["price"])
        if price <= 0:
            raise ExchangeRejectionError(f"Exchange returned non-positive price for {symbol}")
        return price

    def get_symbol_info(self, symbol: str) -> dict | None:
        """exchangeInfo entry for a symbol, cached for EXCHANGE_INFO_CACHE_SECONDS."""
        now = time.monotonic()
        with self._cache_lock:
            cached = self._symbol_cache.get(symbol)
            if cached and now - cached[0] < settings.EXCHANGE_INFO_CACHE_SECONDS:
                return cached[1]

        data = self._request("GET", "/api/v3/exchangeInfo", {"symbol": symbol})
        symbols = data.get("symbols") or []
        info = next((s for s in symbols if s.get("symbol") == symbol), None)
        if info is not None:
            with self._cache_lock:
                self._symbol_cache[symbol] = (now, info)
        return info

    def _filter(self, symbol: str, *filter_types: str) -> dict | None:
        info = self.get_symbol_info(symbol)
        if not info:
            return None
        for f in info.get("filters", []):
            if f.get("filterType") in filter_types:
                return f
        return None

    def get_lot_size(self, symbol: str) -> LotSize | None:
        f = self._filter(symbol, "LOT_SIZE")
        if f is None:
            return None
        max_qty = float(f.get("maxQty", 0)) or None
        return LotSize(min_qty=float(f["minQty"]), step_size=float(f["stepSize"]), max_qty=max_qty)

    def get_min_notional(self, symbol: str) -> float:
        f = self._filter(symbol, "NOTIONAL", "MIN_NOTIONAL")
        if f is None or f.get("minNotional") is None:
            return settings.DEFAULT_MIN_NOTIONAL
        return float(f["minNotional"])

    def split_symbol(self, symbol: str) -> tuple[str, str]:
        """(base, quote) for a symbol, e.g. BTCUSDT -> (BTC, USDT)."""
        try:
            info = self.get_symbol_info(symbol)
        except ExchangeRejectionError:
            info = None
        if info and info.get("baseAsset") and info.get("quoteAsset"):
            return info["baseAsset"], info["quoteAsset"]
        for quote in KNOWN_QUOTE_ASSETS:
            if symbol.endswith(quote) and len(symbol) > len(quote):
                return symbol[: -len(quote)], quote
        raise ExchangeRejectionError(f"Cannot determine base/quote assets for {symbol}")

    # ── Account ──

    def get_balance(self, asset: str) -> float:
        """Free spot balance of an asset."""
        data = self._request("GET", "/api/v3/account", signed=True)
        for b in data.get("balances", []):
            if b.get("asset") == asset:
                return float(b.get("free", 0))
        return 0.0

    def get_margin_balance(self, asset: str) -> float:
        """Free cross-margin balance of an asset."""
        data = self._request("GET", "/sapi/v1/margin/account", signed=True)
        for a in data.get("userAssets", []):
            if a.get("asset") == asset:
                return float(a.get("free", 0))
        return 0.0

    def get_max_borrowable(self, asset: str) -> float:
        data = self._request("GET", "/sapi/v1/margin/maxBorrowable", {"asset": asset}, signed=True)
        return float(data.get("amount", 0))

    # ── Orders ──

    def _quantity_str(self, symbol: str, quantity: float) -> str:
        try:
            lot = self.get_lot_size(symbol)
        except ExchangeRejectionError as e:
            logger.debug("No LOT_SIZE for %s, sending quantity as-is: %s", symbol, e)
            lot = None
        return format_quantity(quantity, lot.step_size if lot else None)

    @staticmethod
    def _to_fill(data: dict, reference_price: float = None) -> OrderFill:
        executed = float(data.get("executedQty", 0) or 0)
        quote = float(data.get("cummulativeQuoteQty", 0) or 0)
        if executed > 0 and quote > 0:
            fill_price = quote / executed
        else:
            fills = data.get("fills") or []
            fill_price = float(fills[0]["price"]) if fills else (reference_price or 0.0)
        try:
            status = OrderStatus(data.get("status", "NEW"))
        except ValueError:
            status = OrderStatus.NEW
        return OrderFill(
            exchange_order_id=str(data.get("orderId", "")),
            status=status,
            fill_price=fill_price,
            executed_qty=executed,
            quote_qty=quote,
        )

    def place_order(self, symbol: str, side: str, quantity: float, reference_price: float = None) -> OrderFill:
        """Spot MARKET order."""
        params = {
            "symbol": symbol,
            "side": str(getattr(side, "value", side)),
            "type": "MARKET",
            "quantity": self._quantity_str(symbol, quantity),
            "newOrderRespType": "FULL",
        }
        logger.info("Spot order %s %s %s", params["side"], params["quantity"], symbol)
        data = self._request("POST", "/api/v3/order", params, signed=True)
        return self._to_fill(data, reference_price)

    def place_margin_order(self, symbol: str, side: str, quantity: float,
                           side_effect: SideEffect = SideEffect.NO_SIDE_EFFECT,
                           reference_price: float = None) -> OrderFill:
        """Cross-margin MARKET order with a sideEffectType."""
        params = {
            "symbol": symbol,
            "side": str(getattr(side, "value", side)),
            "type": "MARKET",
            "quantity": self._quantity_str(symbol, quantity),
            "sideEffectType": str(getattr(side_effect, "value", side_effect)),
            "newOrderRespType": "FULL",
            "isIsolated": "FALSE",
        }
        logger.info("Margin order %s %s %s (%s)", params["side"], params["quantity"], symbol,
                    params["sideEffectType"])
        data = self._request("POST", "/sapi/v1/margin/order", params, signed=True)
        return self._to_fill(data, reference_price)

    def borrow(self, asset: str, amount: float) -> str:
        data = self._request(
            "POST", "/sapi/v1/margin/borrow-repay",
            {"asset": asset, "amount": amount, "type": "BORROW", "isIsolated": "FALSE"},
            signed=True,
        )
        return str(data.get("tranId", ""))

    def repay(self, asset: str, amount: float) -> str:
        data = self._request(
            "POST", "/sapi/v1/margin/borrow-repay",
            {"asset": asset, "amount": amount, "type": "REPAY", "isIsolated": "FALSE"},
            signed=True,
        )
        return str(data.get("tranId", ""))
