# coding: utf-8
"""
Tradier Gain/Loss API client

Closed positions from the brokerage /gainloss endpoint are the source of
truth for realised P&L.

API Documentation: https://documentation.tradier.com/brokerage-api/accounts/get-account-gainloss
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from config.config import TRADIER_API_BASE, BROKERAGE_TIMEOUT_SECONDS
from src.core.enums import AssetClass, PnlSource, TradeDirection, TradeStatus
from src.core.exceptions import BrokerageAPIError
from src.utils.dates import parse_iso_datetime


logger = logging.getLogger(__name__)

# UNDERLYING + YYMMDD + C/P + 8-digit strike (price * 1000)
OPTION_SYMBOL_RE = re.compile(r"^([A-Z]+)(\d{6})([CP])(\d{8})$")

PAGE_SIZE = 100
MAX_PAGES = 100


@dataclass(frozen=True)
class OptionSymbol:
    underlying: str
    expiry: date
    direction: TradeDirection
    strike: Decimal


@dataclass
class ClosedPosition:
    """One row of the gain/loss ledger"""

    symbol: str
    quantity: Decimal
    cost: Decimal
    proceeds: Decimal
    gain_loss: Decimal
    gain_loss_percent: Decimal
    open_date: str
    close_date: str
    term: Optional[int] = None
    position_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ClosedPosition":
        def dec(key: str) -> Decimal:
            value = data.get(key)
            return Decimal(str(value)) if value is not None else Decimal("0")

        position_id = data.get("id") or data.get("position_id")
        return cls(
            symbol=str(data.get("symbol", "")).strip().upper(),
            quantity=dec("quantity"),
            cost=dec("cost"),
            proceeds=dec("proceeds"),
            gain_loss=dec("gain_loss"),
            gain_loss_percent=dec("gain_loss_percent"),
            open_date=str(data.get("open_date", "")),
            close_date=str(data.get("close_date", "")),
            term=data.get("term"),
            position_id=str(position_id) if position_id else None,
            raw=data,
        )

    @property
    def opened_at(self) -> Optional[datetime]:
        return parse_iso_datetime(self.open_date)

    @property
    def closed_at(self) -> Optional[datetime]:
        return parse_iso_datetime(self.close_date)


def is_option_symbol(symbol: str) -> bool:
    return bool(OPTION_SYMBOL_RE.match(symbol or ""))


def parse_option_symbol(symbol: str) -> Optional[OptionSymbol]:
    """
    Parse an OCC option symbol

    SPY180625C00276000 -> SPY, 2018-06-25, CALL, 276.000
    """
    match = OPTION_SYMBOL_RE.match(symbol or "")
    if not match:
        return None

    underlying, date_str, type_char, strike_str = match.groups()
    try:
        expiry = date(2000 + int(date_str[:2]), int(date_str[2:4]), int(date_str[4:6]))
    except ValueError:
        return None

    return OptionSymbol(
        underlying=underlying,
        expiry=expiry,
        direction=TradeDirection.CALL if type_char == "C" else TradeDirection.PUT,
        strike=Decimal(int(strike_str)) / Decimal(1000),
    )


def _format_quantity(quantity: Decimal) -> str:
    return format(quantity.normalize(), "f")


def create_position_id(position: ClosedPosition, account_number: str) -> str:
    """
    Stable identifier for idempotent import

    The brokerage's own position id when it sends one, otherwise
    account + symbol + open date + close date + quantity.
    """
    if position.position_id:
        return f"{account_number}_{position.position_id}"
    return (
        f"{account_number}_{position.symbol}_{position.open_date}_"
        f"{position.close_date}_{_format_quantity(position.quantity)}"
    )


def position_to_trade_fields(
    position: ClosedPosition, user_id: int, account_number: str
) -> Dict[str, Any]:
    """
    Map a closed position onto Trade columns

    Per-unit prices are derived from the cost/proceeds totals (per contract
    share for options, hence the 100 divisor). A negative stock quantity is
    a short: it was sold first, so proceeds is the entry side.
    """
    option = parse_option_symbol(position.symbol)
    qty = abs(position.quantity)
    asset_class = AssetClass.OPTION if option else AssetClass.STOCK
    units = qty * AssetClass.multiplier(asset_class)

    if option:
        direction = option.direction
    elif position.quantity < 0:
        direction = TradeDirection.SHORT
    else:
        direction = TradeDirection.LONG

    if units == 0:
        entry_price = exit_price = Decimal("0")
    elif direction == TradeDirection.SHORT:
        entry_price = position.proceeds / units
        exit_price = position.cost / units
    else:
        entry_price = position.cost / units
        exit_price = position.proceeds / units

    return {
        "user_id": user_id,
        "external_position_id": create_position_id(position, account_number),
        "symbol": position.symbol,
        "direction": direction.value,
        "asset_class": asset_class.value,
        "strike": option.strike if option else None,
        "expiry": option.expiry if option else None,
        "entry_price": entry_price.quantize(Decimal("0.0001")),
        "exit_price": exit_price.quantize(Decimal("0.0001")),
        "quantity": qty,
        "entry_date": position.opened_at,
        "exit_date": position.closed_at,
        "pnl": position.gain_loss.quantize(Decimal("0.01")),
        "pnl_percent": position.gain_loss_percent.quantize(Decimal("0.01")),
        "pnl_source": PnlSource.BROKERAGE.value,
        "status": TradeStatus.CLOSED.value,
        "notes": (
            f"Synced from brokerage gainloss | Cost: ${position.cost:.2f} | "
            f"Proceeds: ${position.proceeds:.2f} | Term: {position.term} days"
        ),
    }


def normalize_positions(payload: Any) -> List[Dict[str, Any]]:
    """The API returns null, a single object, or a list"""
    if not isinstance(payload, dict):
        return []
    gainloss = payload.get("gainloss")
    if not isinstance(gainloss, dict):
        return []
    positions = gainloss.get("closed_position")
    if not positions:
        return []
    if isinstance(positions, dict):
        return [positions]
    return list(positions)


class TradierClient:
    """
    Client for the brokerage gain/loss endpoint

    Features:
    - Bounded timeout per request
    - Automatic retries on transport errors (not on HTTP errors)
    - Pagination with a safety cap
    """

    def __init__(
        self,
        base_url: str = TRADIER_API_BASE,
        timeout_seconds: float = BROKERAGE_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    @retry(
        retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _get_json(self, url: str, access_token: str, params: Dict[str, str]) -> Any:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(url, params=params, headers=headers) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise BrokerageAPIError(
                        f"Brokerage API error ({response.status}): {error_text[:500]}",
                        status_code=response.status,
                    )
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    body = await response.text()
                    raise BrokerageAPIError(
                        f"Brokerage API returned a non-JSON body: {body[:200]!r}",
                        status_code=response.status,
                    ) from e

    async def fetch_gain_loss(
        self,
        account_number: str,
        access_token: str,
        page: int = 1,
        limit: int = PAGE_SIZE,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[ClosedPosition]:
        """
        Fetch one page of closed positions, newest close first

        Raises:
            BrokerageAPIError: Non-200 response, unparseable body, or transport failure after retries
        """
        params = {
            "page": str(page),
            "limit": str(limit),
            "sortBy": "closeDate",
            "sort": "desc",
        }
        if start:
            params["start"] = start.isoformat()
        if end:
            params["end"] = end.isoformat()

        url = f"{self.base_url}/accounts/{account_number}/gainloss"
        try:
            payload = await self._get_json(url, access_token, params)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise BrokerageAPIError(f"Brokerage API unreachable: {e!r}") from e

        try:
            return [ClosedPosition.from_api(item) for item in normalize_positions(payload)]
        except (ArithmeticError, ValueError, TypeError, AttributeError) as e:
            raise BrokerageAPIError(f"Malformed gain/loss record for account {account_number}: {e!r}") from e

    async def fetch_all_gain_loss(
        self,
        account_number: str,
        access_token: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[ClosedPosition]:
        """Fetch every page until a short page or the safety cap"""
        positions: List[ClosedPosition] = []

        for page in range(1, MAX_PAGES + 1):
            batch = await self.fetch_gain_loss(
                account_number, access_token, page=page, limit=PAGE_SIZE, start=start, end=end
            )
            positions.extend(batch)
            if len(batch) < PAGE_SIZE:
                break
        else:
            logger.warning(
                f"Hit pagination safety limit ({MAX_PAGES * PAGE_SIZE} records) for account {account_number}"
            )

        logger.info(f"Fetched {len(positions)} closed positions for account {account_number}")
        return positions
