"""
Brokerage reconciler

Keeps the local trade ledger in line with the brokerage gain/loss ledger,
which is authoritative for realised P&L:

- missing positions are inserted with the brokerage P&L
- trades with no P&L get the brokerage value
- trades whose P&L is off by more than the tolerance are overwritten,
  with a TradePnlAdjustment row keeping the old value
- everything else is left alone

Upserts are keyed by external_position_id, so re-running is harmless.
One user's API failure never stops the batch.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.config import PNL_DISCREPANCY_TOLERANCE
from src.core.enums import PnlSource
from src.core.exceptions import BrokerageAPIError
from src.database import crud
from src.database.models import BrokerageCredential, Trade
from src.services.brokerage_client import (
    ClosedPosition,
    TradierClient,
    position_to_trade_fields,
)
from src.services.pnl_aggregator import (
    calculate_trade_pnl,
    calculate_trade_pnl_percent,
    to_decimal,
)
from src.utils.dates import ensure_utc

SYNC_TYPE = "brokerage_gainloss"

# Re-fetch a day before the last sync to catch late ledger corrections
SYNC_OVERLAP = timedelta(days=1)


@dataclass
class UserSyncStats:
    user_id: int
    account_number: str
    inserted: int = 0
    filled: int = 0
    overwritten: int = 0
    skipped: int = 0
    errors: int = 0
    total_pnl: Decimal = Decimal("0")
    error: Optional[str] = None

    @property
    def trades_synced(self) -> int:
        return self.inserted + self.filled + self.overwritten


@dataclass
class SyncSummary:
    dry_run: bool = False
    users_processed: int = 0
    users_failed: int = 0
    trades_synced: int = 0
    errors: int = 0
    total_pnl: Decimal = Decimal("0")
    users: List[UserSyncStats] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.errors == 0


@dataclass
class FixSummary:
    dry_run: bool = False
    found: int = 0
    fixed_from_brokerage: int = 0
    calculated: int = 0
    unresolved: int = 0
    errors: int = 0


def _day(value) -> Optional[str]:
    moment = ensure_utc(value)
    return moment.date().isoformat() if moment else None


class PositionIndex:
    """
    Lookup of brokerage positions for trades imported without P&L

    Tried in order: symbol + open + close date, symbol + open date,
    symbol alone when the ledger holds exactly one position for it.
    """

    def __init__(self, positions: List[ClosedPosition]):
        self._by_dates: Dict[str, ClosedPosition] = {}
        self._by_open: Dict[str, ClosedPosition] = {}
        self._by_symbol: Dict[str, List[ClosedPosition]] = defaultdict(list)

        for position in positions:
            opened = _day(position.opened_at)
            closed = _day(position.closed_at)
            self._by_dates.setdefault(f"{position.symbol}_{opened}_{closed}", position)
            self._by_open.setdefault(f"{position.symbol}_{opened}", position)
            self._by_symbol[position.symbol].append(position)

    def match(self, trade: Trade) -> Optional[ClosedPosition]:
        symbol = (trade.symbol or "").upper()
        opened = _day(trade.entry_date)
        closed = _day(trade.exit_date)

        if closed:
            position = self._by_dates.get(f"{symbol}_{opened}_{closed}")
            if position:
                return position

        position = self._by_open.get(f"{symbol}_{opened}")
        if position:
            return position

        candidates = self._by_symbol.get(symbol, [])
        if len(candidates) == 1:
            return candidates[0]
        return None


class BrokerageReconciler:
    """
    Re-synchronises local trade P&L against the brokerage ledger

    Each position is handled in its own short transaction so a bad row
    only costs that row.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        client: TradierClient,
        tolerance: Decimal = PNL_DISCREPANCY_TOLERANCE,
    ):
        self.session_maker = session_maker
        self.client = client
        self.tolerance = tolerance

    async def reconcile_user(
        self, credential: BrokerageCredential, dry_run: bool = False
    ) -> UserSyncStats:
        """
        Sync one brokerage account

        Raises:
            BrokerageAPIError: The ledger could not be fetched
        """
        stats = UserSyncStats(user_id=credential.user_id, account_number=credential.account_number)

        start: Optional[date] = None
        last_synced = ensure_utc(credential.last_synced_at)
        if last_synced:
            start = (last_synced - SYNC_OVERLAP).date()

        logger.info(
            f"Syncing user {credential.user_id} (account {credential.account_number}) since {start or 'beginning'}"
        )
        positions = await self.client.fetch_all_gain_loss(
            credential.account_number, credential.access_token, start=start
        )

        for position in positions:
            try:
                outcome = await self._reconcile_position(credential, position, dry_run)
            except Exception as e:
                stats.errors += 1
                logger.exception(
                    f"Error processing {position.symbol} for user {credential.user_id}: {e}"
                )
                continue

            setattr(stats, outcome, getattr(stats, outcome) + 1)
            stats.total_pnl += position.gain_loss

        if stats.errors:
            # The next run must fetch the failed positions again
            logger.warning(
                f"User {credential.user_id}: {stats.errors} positions failed, keeping sync cursor at "
                f"{credential.last_synced_at or 'beginning'}"
            )
            if not dry_run:
                async with self.session_maker() as session:
                    await crud.mark_credential_error(
                        session, credential.id, f"{stats.errors} positions failed to sync"
                    )
                    await session.commit()
        elif not dry_run:
            async with self.session_maker() as session:
                await crud.mark_credential_synced(session, credential.id)
                await session.commit()

        logger.info(
            f"User {credential.user_id}: inserted {stats.inserted}, filled {stats.filled}, "
            f"overwritten {stats.overwritten}, skipped {stats.skipped}, errors {stats.errors} "
            f"| P&L ${stats.total_pnl:.2f}"
        )
        return stats

    async def _reconcile_position(
        self, credential: BrokerageCredential, position: ClosedPosition, dry_run: bool
    ) -> str:
        """Returns the UserSyncStats counter to bump"""
        fields = position_to_trade_fields(position, credential.user_id, credential.account_number)
        if fields["entry_date"] is None:
            raise ValueError(f"Position {position.symbol} has no open date")

        async with self.session_maker() as session:
            trade = await crud.get_trade_by_external_id(session, fields["external_position_id"])

            if trade is None:
                if dry_run:
                    logger.info(f"[DRY RUN] Would insert {position.symbol} P&L=${fields['pnl']}")
                    return "inserted"
                try:
                    await crud.create_trade(session, **fields)
                    await session.commit()
                    return "inserted"
                except IntegrityError:
                    # Another sync inserted it first; reconcile against that row
                    await session.rollback()
                    trade = await crud.get_trade_by_external_id(
                        session, fields["external_position_id"]
                    )
                    if trade is None:
                        raise

            return await self._reconcile_existing(session, trade, fields, dry_run)

    async def _reconcile_existing(
        self, session: AsyncSession, trade: Trade, fields: dict, dry_run: bool
    ) -> str:
        brokerage_pnl: Decimal = fields["pnl"]
        local_pnl = to_decimal(trade.pnl)
        update = {
            "pnl": brokerage_pnl,
            "pnl_percent": fields["pnl_percent"],
            "pnl_source": PnlSource.BROKERAGE.value,
            "exit_price": fields["exit_price"],
            "exit_date": fields["exit_date"],
        }

        if local_pnl is None:
            if dry_run:
                logger.info(f"[DRY RUN] Would fill {trade.symbol} (trade {trade.id}) P&L=${brokerage_pnl}")
                return "filled"
            await crud.update_trade(session, trade, notes=fields["notes"], **update)
            await session.commit()
            return "filled"

        difference = abs(local_pnl - brokerage_pnl)
        if difference <= self.tolerance:
            return "skipped"

        logger.warning(
            f"P&L discrepancy on trade {trade.id} ({trade.symbol}): local ${local_pnl} "
            f"vs brokerage ${brokerage_pnl} (diff ${difference:.2f}), overwriting"
        )
        if dry_run:
            return "overwritten"

        await crud.record_pnl_adjustment(
            session,
            trade,
            new_pnl=brokerage_pnl,
            new_source=PnlSource.BROKERAGE.value,
            reason=f"Brokerage gainloss differs by ${difference:.2f}",
        )
        await crud.update_trade(session, trade, **update)
        await session.commit()
        return "overwritten"

    async def run_sync(self, user_id: Optional[int] = None, dry_run: bool = False) -> SyncSummary:
        """
        Sync every user with active brokerage credentials, one at a time
        """
        summary = SyncSummary(dry_run=dry_run)

        async with self.session_maker() as session:
            credentials = await crud.get_active_credentials(session, user_id=user_id)

        if not credentials:
            logger.warning("No users with brokerage credentials found")

        for credential in credentials:
            summary.users_processed += 1
            try:
                stats = await self.reconcile_user(credential, dry_run=dry_run)
            except BrokerageAPIError as e:
                if e.is_auth_error:
                    logger.error(
                        f"Brokerage token expired for user {credential.user_id} - user needs to re-authenticate"
                    )
                else:
                    logger.error(f"Brokerage API error for user {credential.user_id}: {e.message}")
                await self._record_user_failure(summary, credential, e.message, dry_run)
                continue
            except Exception as e:
                logger.exception(f"Unexpected error syncing user {credential.user_id}: {e}")
                await self._record_user_failure(summary, credential, f"Unexpected sync error: {e!r}", dry_run)
                continue

            summary.users.append(stats)
            summary.trades_synced += stats.trades_synced
            summary.errors += stats.errors
            summary.total_pnl += stats.total_pnl

        if not dry_run:
            async with self.session_maker() as session:
                await crud.upsert_sync_status(
                    session,
                    SYNC_TYPE,
                    success=summary.success,
                    users_processed=summary.users_processed,
                    trades_synced=summary.trades_synced,
                    errors=summary.errors,
                    total_pnl=summary.total_pnl,
                )
                await session.commit()

        logger.info(
            f"Brokerage sync{' (dry run)' if dry_run else ''} complete: "
            f"{summary.users_processed} users, {summary.trades_synced} trades, "
            f"{summary.errors} errors, combined P&L ${summary.total_pnl:.2f}"
        )
        return summary

    async def _record_user_failure(
        self, summary: SyncSummary, credential: BrokerageCredential, message: str, dry_run: bool
    ) -> None:
        summary.users_failed += 1
        summary.errors += 1
        summary.users.append(
            UserSyncStats(
                user_id=credential.user_id,
                account_number=credential.account_number,
                errors=1,
                error=message,
            )
        )
        if dry_run:
            return

        async with self.session_maker() as session:
            await crud.mark_credential_error(session, credential.id, message)
            await session.commit()

    async def fix_missing_pnl(self, dry_run: bool = False, user_id: Optional[int] = None) -> FixSummary:
        """
        Fill P&L for closed trades that have an exit price but no P&L

        Brokerage match first; otherwise the price formula, marked as
        calculated so a later sync can still overwrite it.
        """
        summary = FixSummary(dry_run=dry_run)

        async with self.session_maker() as session:
            stmt = select(Trade.user_id).where(
                Trade.pnl.is_(None), Trade.exit_price.is_not(None)
            ).distinct()
            if user_id is not None:
                stmt = stmt.where(Trade.user_id == user_id)
            user_ids = sorted((await session.execute(stmt)).scalars().all())

        for uid in user_ids:
            async with self.session_maker() as session:
                trades = await crud.get_trades_missing_pnl(session, user_id=uid)
                if not trades:
                    continue
                summary.found += len(trades)

                credentials = await crud.get_active_credentials(session, user_id=uid)
                positions: List[ClosedPosition] = []
                if credentials:
                    credential = credentials[0]
                    try:
                        positions = await self.client.fetch_all_gain_loss(
                            credential.account_number, credential.access_token
                        )
                    except BrokerageAPIError as e:
                        summary.errors += 1
                        logger.error(f"Cannot fix trades for user {uid}: {e.message}")
                        continue

                index = PositionIndex(positions)
                for trade in trades:
                    await self._fix_trade(session, trade, index.match(trade), summary, dry_run)

                if not dry_run:
                    await session.commit()

        logger.info(
            f"Fix missing P&L{' (dry run)' if dry_run else ''}: found {summary.found}, "
            f"from brokerage {summary.fixed_from_brokerage}, calculated {summary.calculated}, "
            f"unresolved {summary.unresolved}"
        )
        return summary

    async def _fix_trade(
        self,
        session: AsyncSession,
        trade: Trade,
        position: Optional[ClosedPosition],
        summary: FixSummary,
        dry_run: bool,
    ) -> None:
        if position is not None:
            pnl = position.gain_loss.quantize(Decimal("0.01"))
            if not dry_run:
                await crud.update_trade(
                    session,
                    trade,
                    pnl=pnl,
                    pnl_percent=position.gain_loss_percent.quantize(Decimal("0.01")),
                    pnl_source=PnlSource.BROKERAGE.value,
                    notes=f"P&L fixed from brokerage gainloss | Original entry: ${trade.entry_price}",
                )
            logger.info(f"{'[DRY RUN] Would fix' if dry_run else 'Fixed'} {trade.symbol}: P&L=${pnl}")
            summary.fixed_from_brokerage += 1
            return

        pnl = calculate_trade_pnl(
            trade.entry_price, trade.exit_price, trade.quantity, trade.direction, trade.asset_class
        )
        if pnl is None:
            logger.warning(f"Cannot calculate P&L for trade {trade.id} ({trade.symbol})")
            summary.unresolved += 1
            return

        if not dry_run:
            await crud.update_trade(
                session,
                trade,
                pnl=pnl,
                pnl_percent=calculate_trade_pnl_percent(
                    trade.entry_price, trade.exit_price, trade.direction
                ),
                pnl_source=PnlSource.CALCULATED.value,
                notes=(
                    f"P&L calculated (no brokerage match) | Entry: ${trade.entry_price}, "
                    f"Exit: ${trade.exit_price}"
                ),
            )
        logger.info(
            f"{'[DRY RUN] Would calculate' if dry_run else 'Calculated'} {trade.symbol}: P&L=${pnl}"
        )
        summary.calculated += 1
