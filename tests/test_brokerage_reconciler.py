"""
Tests for re-synchronising trade P&L with the brokerage ledger
"""

from datetime import datetime, UTC
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import web

from src.core.enums import PnlSource
from src.core.exceptions import BrokerageAPIError
from src.database import crud
from src.database.models import BrokerageCredential
from src.services.brokerage_client import ClosedPosition, TradierClient, create_position_id
from src.services.brokerage_reconciler import SYNC_TYPE, BrokerageReconciler

from conftest import make_trade, make_user


ACCOUNT = "VA000001"


def _position(symbol="AAPL", gain_loss=100.00, **overrides):
    data = {
        "symbol": symbol,
        "quantity": 10,
        "cost": 1500.00,
        "proceeds": 1500.00 + gain_loss,
        "gain_loss": gain_loss,
        "gain_loss_percent": 6.67,
        "open_date": "2026-10-13T14:30:00.000Z",
        "close_date": "2026-10-15T15:00:00.000Z",
        "term": 2,
    }
    data.update(overrides)
    return ClosedPosition.from_api(data)


@pytest.fixture
def client():
    mock = MagicMock()
    mock.fetch_all_gain_loss = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def reconciler(session_maker, client):
    return BrokerageReconciler(session_maker, client, tolerance=Decimal("10"))


async def _user_with_credential(session_maker, username="trader"):
    async with session_maker() as session:
        user = await make_user(session, username=username)
        credential = await crud.add_brokerage_credential(session, user.id, f"{ACCOUNT}-{username}", "token")
        await session.commit()
        return user, credential


async def _trade_for(session_maker, position, credential, pnl, **extra):
    async with session_maker() as session:
        return await make_trade(
            session,
            credential.user_id,
            pnl,
            symbol=position.symbol,
            entry_date=position.opened_at,
            exit_date=position.closed_at,
            external_position_id=create_position_id(position, credential.account_number),
            **extra,
        )


async def _reload(session_maker, trade_id):
    async with session_maker() as session:
        return await crud.get_trade(session, trade_id)


class TestReconcileUser:
    async def test_inserts_missing_positions(self, reconciler, client, session_maker):
        user, credential = await _user_with_credential(session_maker)
        client.fetch_all_gain_loss.return_value = [_position(), _position(symbol="MSFT", gain_loss=-40.00)]

        stats = await reconciler.reconcile_user(credential)

        assert (stats.inserted, stats.skipped, stats.errors) == (2, 0, 0)
        assert stats.total_pnl == Decimal("60.0")

        async with session_maker() as session:
            trade = await crud.get_trade_by_external_id(session, create_position_id(_position(), credential.account_number))
            refreshed = await session.get(BrokerageCredential, credential.id)
        assert trade.user_id == user.id
        assert trade.pnl == Decimal("100.00")
        assert trade.pnl_source == PnlSource.BROKERAGE.value
        assert refreshed.last_synced_at is not None

    async def test_rerun_is_idempotent(self, reconciler, client, session_maker):
        _, credential = await _user_with_credential(session_maker)
        client.fetch_all_gain_loss.return_value = [_position()]

        await reconciler.reconcile_user(credential)
        again = await reconciler.reconcile_user(credential)

        assert (again.inserted, again.skipped) == (0, 1)

    async def test_fills_missing_pnl(self, reconciler, client, session_maker):
        _, credential = await _user_with_credential(session_maker)
        position = _position()
        trade = await _trade_for(session_maker, position, credential, None, exit_price=None)
        client.fetch_all_gain_loss.return_value = [position]

        stats = await reconciler.reconcile_user(credential)

        assert stats.filled == 1
        trade = await _reload(session_maker, trade.id)
        assert trade.pnl == Decimal("100.00")
        assert trade.exit_price == Decimal("160.0000")
        assert trade.pnl_source == PnlSource.BROKERAGE.value

    async def test_small_difference_is_left_alone(self, reconciler, client, session_maker):
        _, credential = await _user_with_credential(session_maker)
        position = _position()
        trade = await _trade_for(session_maker, position, credential, "95.00", pnl_source=PnlSource.MANUAL.value)
        client.fetch_all_gain_loss.return_value = [position]

        stats = await reconciler.reconcile_user(credential)

        assert stats.skipped == 1
        assert (await _reload(session_maker, trade.id)).pnl == Decimal("95.00")

    async def test_large_difference_is_overwritten_with_audit(self, reconciler, client, session_maker):
        _, credential = await _user_with_credential(session_maker)
        position = _position()
        trade = await _trade_for(session_maker, position, credential, "250.00", pnl_source=PnlSource.MANUAL.value)
        client.fetch_all_gain_loss.return_value = [position]

        stats = await reconciler.reconcile_user(credential)

        assert stats.overwritten == 1
        trade = await _reload(session_maker, trade.id)
        assert trade.pnl == Decimal("100.00")
        assert trade.pnl_source == PnlSource.BROKERAGE.value

        async with session_maker() as session:
            adjustments = await crud.get_pnl_adjustments(session, trade.id)
        assert len(adjustments) == 1
        assert adjustments[0].previous_pnl == Decimal("250.00")
        assert adjustments[0].previous_source == PnlSource.MANUAL.value
        assert adjustments[0].new_pnl == Decimal("100.00")

    async def test_dry_run_writes_nothing(self, reconciler, client, session_maker):
        user, credential = await _user_with_credential(session_maker)
        client.fetch_all_gain_loss.return_value = [_position()]

        stats = await reconciler.reconcile_user(credential, dry_run=True)

        assert stats.inserted == 1
        async with session_maker() as session:
            assert await crud.get_closed_trades_in_range(
                session, user.id, datetime(2026, 1, 1, tzinfo=UTC), datetime(2027, 1, 1, tzinfo=UTC)
            ) == []
            assert (await session.get(BrokerageCredential, credential.id)).last_synced_at is None

    async def test_bad_position_only_costs_that_row(self, reconciler, client, session_maker):
        _, credential = await _user_with_credential(session_maker)
        client.fetch_all_gain_loss.return_value = [_position(open_date=""), _position(symbol="MSFT")]

        stats = await reconciler.reconcile_user(credential)

        assert stats.errors == 1
        assert stats.inserted == 1

    async def test_failed_position_keeps_the_sync_cursor(self, reconciler, client, session_maker):
        _, credential = await _user_with_credential(session_maker)
        client.fetch_all_gain_loss.return_value = [_position(open_date=""), _position(symbol="MSFT")]

        await reconciler.reconcile_user(credential)

        async with session_maker() as session:
            stored = await session.get(BrokerageCredential, credential.id)
        assert stored.last_synced_at is None
        assert stored.last_error == "1 positions failed to sync"

        # Once the brokerage serves a clean ledger the cursor moves again
        client.fetch_all_gain_loss.return_value = [_position(), _position(symbol="MSFT")]
        stats = await reconciler.reconcile_user(stored)

        assert (stats.inserted, stats.skipped, stats.errors) == (1, 1, 0)
        assert client.fetch_all_gain_loss.call_args.kwargs["start"] is None
        async with session_maker() as session:
            stored = await session.get(BrokerageCredential, credential.id)
        assert stored.last_synced_at is not None
        assert stored.last_error is None

    async def test_incremental_window_after_first_sync(self, reconciler, client, session_maker):
        _, credential = await _user_with_credential(session_maker)
        credential.last_synced_at = datetime(2026, 10, 10, 6, 0, tzinfo=UTC)

        await reconciler.reconcile_user(credential)

        assert client.fetch_all_gain_loss.call_args.kwargs["start"].isoformat() == "2026-10-09"


class TestRunSync:
    async def test_expired_token_does_not_stop_batch(self, reconciler, client, session_maker):
        _, expired = await _user_with_credential(session_maker, "expired")
        _, healthy = await _user_with_credential(session_maker, "healthy")

        async def fetch(account_number, access_token, start=None, end=None):
            if account_number == expired.account_number:
                raise BrokerageAPIError("Brokerage API error (401): invalid token", status_code=401)
            return [_position()]

        client.fetch_all_gain_loss.side_effect = fetch

        summary = await reconciler.run_sync()

        assert summary.users_processed == 2
        assert summary.users_failed == 1
        assert summary.trades_synced == 1
        assert summary.success is False

        async with session_maker() as session:
            failed = await session.get(BrokerageCredential, expired.id)
            status = await crud.get_sync_status(session, SYNC_TYPE)
        assert "401" in failed.last_error
        assert status.success is False
        assert status.users_processed == 2
        assert status.trades_synced == 1

    async def test_single_user(self, reconciler, client, session_maker):
        first, _ = await _user_with_credential(session_maker, "first")
        await _user_with_credential(session_maker, "second")
        client.fetch_all_gain_loss.return_value = [_position()]

        summary = await reconciler.run_sync(user_id=first.id)

        assert summary.users_processed == 1
        assert summary.success is True

    async def test_no_credentials(self, reconciler, session_maker):
        summary = await reconciler.run_sync()

        assert summary.users_processed == 0
        async with session_maker() as session:
            assert (await crud.get_sync_status(session, SYNC_TYPE)).success is True


    async def test_unexpected_error_only_costs_that_user(self, reconciler, client, session_maker):
        _, broken = await _user_with_credential(session_maker, "broken")
        await _user_with_credential(session_maker, "healthy")

        async def fetch(account_number, access_token, start=None, end=None):
            if account_number == broken.account_number:
                raise RuntimeError("connection pool exhausted")
            return [_position()]

        client.fetch_all_gain_loss.side_effect = fetch

        summary = await reconciler.run_sync()

        assert (summary.users_processed, summary.users_failed, summary.trades_synced) == (2, 1, 1)
        async with session_maker() as session:
            failed = await session.get(BrokerageCredential, broken.id)
            assert (await crud.get_sync_status(session, SYNC_TYPE)).users_processed == 2
        assert "connection pool exhausted" in failed.last_error


class TestRunSyncAgainstHttp:
    """Real TradierClient against a local server serving broken ledgers"""

    async def test_garbled_ledgers_do_not_stop_other_users(self, http_server, session_maker):
        _, html = await _user_with_credential(session_maker, "html")
        _, garbled = await _user_with_credential(session_maker, "garbled")
        healthy_user, healthy = await _user_with_credential(session_maker, "healthy")

        good_row = {
            "symbol": "AAPL",
            "quantity": 10,
            "cost": 1500.00,
            "proceeds": 1600.00,
            "gain_loss": 100.00,
            "open_date": "2026-10-13T14:30:00.000Z",
            "close_date": "2026-10-15T15:00:00.000Z",
        }

        async def gainloss(request):
            account = request.match_info["account"]
            if account == html.account_number:
                return web.Response(status=200, text="<html>Down for maintenance</html>", content_type="text/html")
            if account == garbled.account_number:
                return web.json_response({"gainloss": {"closed_position": dict(good_row, gain_loss="N/A")}})
            return web.json_response({"gainloss": {"closed_position": good_row}})

        server = await http_server([web.get("/v1/accounts/{account}/gainloss", gainloss)])
        reconciler = BrokerageReconciler(
            session_maker, TradierClient(base_url=str(server.make_url("/v1")), timeout_seconds=5)
        )

        summary = await reconciler.run_sync()

        assert summary.users_processed == 3
        assert summary.users_failed == 2
        assert summary.trades_synced == 1
        assert summary.success is False

        async with session_maker() as session:
            for credential in (html, garbled):
                stored = await session.get(BrokerageCredential, credential.id)
                assert stored.last_synced_at is None
                assert stored.last_error
            assert (await session.get(BrokerageCredential, healthy.id)).last_synced_at is not None
            status = await crud.get_sync_status(session, SYNC_TYPE)
            trades = await crud.get_closed_trades_in_range(
                session, healthy_user.id, datetime(2026, 1, 1, tzinfo=UTC), datetime(2027, 1, 1, tzinfo=UTC)
            )
        assert (status.users_processed, status.errors) == (3, 2)
        assert [t.pnl for t in trades] == [Decimal("100.00")]

class TestFixMissingPnl:
    async def test_brokerage_match_then_formula(self, reconciler, client, session_maker):
        _, credential = await _user_with_credential(session_maker)
        matched = _position()
        client.fetch_all_gain_loss.return_value = [matched]

        async with session_maker() as session:
            from_brokerage = await make_trade(
                session, credential.user_id, None,
                symbol="AAPL", entry_date=matched.opened_at, exit_date=matched.closed_at,
            )
            calculated = await make_trade(
                session, credential.user_id, None,
                symbol="TSLA", entry_price="200", exit_price="190", quantity="3", direction="SHORT",
            )

        summary = await reconciler.fix_missing_pnl()

        assert summary.found == 2
        assert summary.fixed_from_brokerage == 1
        assert summary.calculated == 1

        trade = await _reload(session_maker, from_brokerage.id)
        assert (trade.pnl, trade.pnl_source) == (Decimal("100.00"), PnlSource.BROKERAGE.value)
        trade = await _reload(session_maker, calculated.id)
        assert (trade.pnl, trade.pnl_source) == (Decimal("30.00"), PnlSource.CALCULATED.value)

    async def test_dry_run(self, reconciler, client, session_maker):
        _, credential = await _user_with_credential(session_maker)
        async with session_maker() as session:
            trade = await make_trade(session, credential.user_id, None)

        summary = await reconciler.fix_missing_pnl(dry_run=True)

        assert summary.calculated == 1
        assert (await _reload(session_maker, trade.id)).pnl is None

    async def test_brokerage_failure_is_counted(self, reconciler, client, session_maker):
        _, credential = await _user_with_credential(session_maker)
        async with session_maker() as session:
            await make_trade(session, credential.user_id, None)
        client.fetch_all_gain_loss.side_effect = BrokerageAPIError("down", status_code=503)

        summary = await reconciler.fix_missing_pnl()

        assert summary.errors == 1
        assert summary.calculated == 0
