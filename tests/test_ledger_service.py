"""
Tests for the Cashback Ledger Service.

Covers:
- Accumulation lots and balance totals
- FIFO redemption and insufficient balance
- Expiration of single lots and the periodic sweep
- Reversal of a canceled sale's lots
- Program rules (accumulation amount, redemption cap)
- Version conflict retries
- Concurrent redeems and the balance invariant
"""
import threading

import pytest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy.orm.exc import StaleDataError

from conftest import NOW
from loyalty_core import create_app
from loyalty_core.extensions import db
from loyalty_core.models import CashbackProgram, CashbackTransaction, Client, Organization, Sale
from loyalty_core.services.ledger_service import LedgerService
from loyalty_core.utils.exceptions import (
    ClientNotFoundError,
    ConcurrentBalanceConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    ProgramNotFoundError,
)


def _sale(client, value='200.00', sold_at=NOW):
    sale = Sale(
        organization_id=client.organization_id,
        client_id=client.id,
        value=Decimal(value),
        sold_at=sold_at,
    )
    db.session.add(sale)
    db.session.commit()
    return sale


class TestAccumulate:
    """Tests for LedgerService.accumulate."""

    def test_accumulate_creates_active_lot(self, app, sample_client, sample_program):
        """Test that accumulating credits the balance and opens a lot."""
        ledger = LedgerService(sample_client.organization_id)

        txn = ledger.accumulate(
            sample_client.id, sample_program.id, None, Decimal('10.00'),
            expiry_days=30, now=NOW
        )

        assert txn.transaction_type == 'accumulate'
        assert txn.status == 'active'
        assert txn.amount == Decimal('10.00')
        assert txn.remaining == Decimal('10.00')
        assert txn.balance_before == Decimal('0.00')
        assert txn.balance_after == Decimal('10.00')
        assert txn.expires_at == NOW + timedelta(days=30)

        balance = ledger.get_balance(sample_client.id, sample_program.id)
        assert balance.available == Decimal('10.00')
        assert balance.accumulated_total == Decimal('10.00')
        assert balance.is_consistent()

    def test_accumulate_without_expiry(self, app, sample_client, sample_program):
        """Test that expiry_days=None produces a lot that never expires."""
        ledger = LedgerService(sample_client.organization_id)
        txn = ledger.accumulate(sample_client.id, sample_program.id, None, '5', expiry_days=None, now=NOW)

        assert txn.expires_at is None
        assert txn.amount == Decimal('5.00')

    @pytest.mark.parametrize('amount', [0, -5, '-0.01', 'abc', None])
    def test_accumulate_rejects_invalid_amounts(self, app, sample_client, sample_program, amount):
        """Test that non-positive or malformed amounts are rejected before any write."""
        ledger = LedgerService(sample_client.organization_id)

        with pytest.raises(InvalidAmountError):
            ledger.accumulate(sample_client.id, sample_program.id, None, amount, expiry_days=30)

        assert ledger.get_balance(sample_client.id, sample_program.id) is None
        assert CashbackTransaction.query.count() == 0

    def test_accumulate_unknown_client(self, app, sample_organization, sample_program):
        """Test that an unknown client raises ClientNotFoundError."""
        ledger = LedgerService(sample_organization.id)

        with pytest.raises(ClientNotFoundError):
            ledger.accumulate(9999, sample_program.id, None, Decimal('1.00'), expiry_days=30)

    def test_accumulate_client_of_other_organization(self, app, sample_client, sample_program):
        """Test that clients are scoped to the ledger's organization."""
        from loyalty_core.models import Organization

        other = Organization(name='Outra Loja', settings={}, is_active=True)
        db.session.add(other)
        db.session.commit()

        with pytest.raises(ClientNotFoundError):
            LedgerService(other.id).accumulate(
                sample_client.id, sample_program.id, None, Decimal('1.00'), expiry_days=30
            )

    def test_accumulate_unknown_program(self, app, sample_client):
        """Test that an unknown program raises ProgramNotFoundError."""
        ledger = LedgerService(sample_client.organization_id)

        with pytest.raises(ProgramNotFoundError):
            ledger.accumulate(sample_client.id, 9999, None, Decimal('1.00'), expiry_days=30)


class TestRedeem:
    """Tests for LedgerService.redeem."""

    def test_redeem_consumes_lots_oldest_first(self, app, sample_client, sample_program):
        """Test FIFO consumption across lots."""
        ledger = LedgerService(sample_client.organization_id)
        first = ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('10.00'), 90,
                                  now=NOW - timedelta(days=2))
        second = ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('5.00'), 90,
                                   now=NOW - timedelta(days=1))

        txn = ledger.redeem(sample_client.id, sample_program.id, None, Decimal('12.00'), now=NOW)

        assert txn.transaction_type == 'redeem'
        assert txn.balance_before == Decimal('15.00')
        assert txn.balance_after == Decimal('3.00')
        assert txn.remaining == Decimal('0.00')

        assert first.remaining == Decimal('0.00')
        assert first.status == 'consumed'
        assert second.remaining == Decimal('3.00')
        assert second.status == 'active'

        balance = ledger.get_balance(sample_client.id, sample_program.id)
        assert balance.available == Decimal('3.00')
        assert balance.redeemed_total == Decimal('12.00')
        assert balance.is_consistent()

    def test_redeem_exact_balance(self, app, sample_client, sample_program):
        """Test that redeeming everything leaves a zero balance and consumed lots."""
        ledger = LedgerService(sample_client.organization_id)
        lot = ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('8.50'), 90, now=NOW)

        ledger.redeem(sample_client.id, sample_program.id, None, Decimal('8.50'), now=NOW)

        assert lot.status == 'consumed'
        assert ledger.get_balance(sample_client.id, sample_program.id).available == Decimal('0.00')

    def test_redeem_insufficient_balance(self, app, sample_client, sample_program):
        """Test that over-redeeming fails without writing anything."""
        ledger = LedgerService(sample_client.organization_id)
        lot = ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('5.00'), 90, now=NOW)

        with pytest.raises(InsufficientBalanceError) as exc_info:
            ledger.redeem(sample_client.id, sample_program.id, None, Decimal('6.00'), now=NOW)

        assert exc_info.value.current == Decimal('5.00')
        assert exc_info.value.required == Decimal('6.00')
        assert ledger.get_balance(sample_client.id, sample_program.id).available == Decimal('5.00')
        assert lot.remaining == Decimal('5.00')
        assert CashbackTransaction.query.filter_by(transaction_type='redeem').count() == 0

    def test_redeem_without_balance_row(self, app, sample_client, sample_program):
        """Test that redeeming before any accumulation is an insufficient balance."""
        ledger = LedgerService(sample_client.organization_id)

        with pytest.raises(InsufficientBalanceError):
            ledger.redeem(sample_client.id, sample_program.id, None, Decimal('1.00'))

    def test_redeem_rejects_zero(self, app, sample_client, sample_program):
        """Test that a zero redemption is invalid."""
        ledger = LedgerService(sample_client.organization_id)

        with pytest.raises(InvalidAmountError):
            ledger.redeem(sample_client.id, sample_program.id, None, 0)


class TestExpire:
    """Tests for lot expiration."""

    def test_expire_overdue_lot(self, app, sample_client, sample_program):
        """Test that an overdue lot expires what is left of it."""
        ledger = LedgerService(sample_client.organization_id)
        lot = ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('10.00'), 30,
                                now=NOW - timedelta(days=40))
        ledger.redeem(sample_client.id, sample_program.id, None, Decimal('4.00'),
                      now=NOW - timedelta(days=35))

        txn = ledger.expire(lot.id, now=NOW)

        assert txn.transaction_type == 'expire'
        assert txn.amount == Decimal('6.00')
        assert txn.related_transaction_id == lot.id
        assert lot.status == 'expired'
        assert lot.remaining == Decimal('0.00')

        balance = ledger.get_balance(sample_client.id, sample_program.id)
        assert balance.available == Decimal('0.00')
        assert balance.expired_total == Decimal('6.00')
        assert balance.is_consistent()

    def test_expire_is_idempotent(self, app, sample_client, sample_program):
        """Test that expiring the same lot twice writes a single EXPIRE row."""
        ledger = LedgerService(sample_client.organization_id)
        lot = ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('10.00'), 30,
                                now=NOW - timedelta(days=40))

        assert ledger.expire(lot.id, now=NOW) is not None
        assert ledger.expire(lot.id, now=NOW) is None

        assert CashbackTransaction.query.filter_by(transaction_type='expire').count() == 1
        assert ledger.get_balance(sample_client.id, sample_program.id).expired_total == Decimal('10.00')

    def test_expire_lot_not_yet_due(self, app, sample_client, sample_program):
        """Test that a lot before its expiry date is left alone."""
        ledger = LedgerService(sample_client.organization_id)
        lot = ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('10.00'), 30, now=NOW)

        assert ledger.expire(lot.id, now=NOW + timedelta(days=29)) is None
        assert lot.status == 'active'

    def test_expire_due_sweep(self, app, sample_client, sample_program, make_client):
        """Test the sweep across clients, and that a re-run changes nothing."""
        other = make_client()
        ledger = LedgerService(sample_client.organization_id)
        ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('10.00'), 30,
                          now=NOW - timedelta(days=31))
        ledger.accumulate(other.id, sample_program.id, None, Decimal('4.00'), 30,
                          now=NOW - timedelta(days=45))
        fresh = ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('3.00'), 30,
                                  now=NOW - timedelta(days=1))

        results = ledger.expire_due(now=NOW)

        assert results['expired_entries'] == 2
        assert results['clients_affected'] == 2
        assert results['total_expired'] == Decimal('14.00')
        assert results['errors'] == []
        assert fresh.status == 'active'

        again = ledger.expire_due(now=NOW)
        assert again['expired_entries'] == 0
        assert again['total_expired'] == Decimal('0.00')

        balance = ledger.get_balance(sample_client.id, sample_program.id)
        assert balance.available == Decimal('3.00')
        assert balance.expired_total == Decimal('10.00')
        assert balance.is_consistent()

    def test_expire_due_continues_after_failure(self, app, sample_client, sample_program):
        """Test that one failing lot is reported and the sweep goes on."""
        ledger = LedgerService(sample_client.organization_id)
        broken = ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('2.00'), 10,
                                   now=NOW - timedelta(days=20))
        ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('3.00'), 10,
                          now=NOW - timedelta(days=15))

        real_expire = LedgerService.expire

        def flaky_expire(self, transaction_id, now=None, commit=True):
            if transaction_id == broken.id:
                raise RuntimeError('disk full')
            return real_expire(self, transaction_id, now=now, commit=commit)

        with patch.object(LedgerService, 'expire', flaky_expire):
            results = ledger.expire_due(now=NOW)

        assert results['processed'] == 2
        assert results['expired_entries'] == 1
        assert results['errors'] == [{'transaction_id': broken.id, 'error': 'disk full'}]


class TestReverseSale:
    """Tests for LedgerService.reverse_sale."""

    def test_reverse_sale_cancels_remaining(self, app, sample_client, sample_program):
        """Test that only the unspent part of a sale's lot is reversed."""
        sale = _sale(sample_client)
        ledger = LedgerService(sample_client.organization_id)
        lot = ledger.accumulate(sample_client.id, sample_program.id, sale.id, Decimal('10.00'), 90, now=NOW)
        ledger.redeem(sample_client.id, sample_program.id, None, Decimal('4.00'), now=NOW)

        reversals = ledger.reverse_sale(sale.id, reason='returned', now=NOW)

        assert len(reversals) == 1
        assert reversals[0].transaction_type == 'cancel'
        assert reversals[0].amount == Decimal('6.00')
        assert reversals[0].description == 'Sale canceled: returned'
        assert lot.status == 'expired'
        assert lot.remaining == Decimal('0.00')

        balance = ledger.get_balance(sample_client.id, sample_program.id)
        assert balance.available == Decimal('0.00')
        assert balance.accumulated_total == Decimal('4.00')
        assert balance.redeemed_total == Decimal('4.00')
        assert balance.is_consistent()

    def test_reverse_sale_twice(self, app, sample_client, sample_program):
        """Test that a second reversal finds nothing left."""
        sale = _sale(sample_client)
        ledger = LedgerService(sample_client.organization_id)
        ledger.accumulate(sample_client.id, sample_program.id, sale.id, Decimal('10.00'), 90, now=NOW)

        assert len(ledger.reverse_sale(sale.id, now=NOW)) == 1
        assert ledger.reverse_sale(sale.id, now=NOW) == []


class TestProgramRules:
    """Tests for accumulation and redemption rules."""

    def test_percentage_accumulation(self, app):
        """Test percentage accumulation with a minimum sale value."""
        program = CashbackProgram(
            accumulation_type='percentage',
            accumulation_value=Decimal('5.00'),
            accumulation_min_sale_value=Decimal('50.00'),
        )

        assert LedgerService.calculate_accumulation(program, '49.99') == Decimal('0.00')
        assert LedgerService.calculate_accumulation(program, '50.00') == Decimal('2.50')
        assert LedgerService.calculate_accumulation(program, '123.45') == Decimal('6.17')

    def test_fixed_accumulation(self, app):
        """Test fixed accumulation ignores the sale value."""
        program = CashbackProgram(
            accumulation_type='fixed',
            accumulation_value=Decimal('7.00'),
            accumulation_min_sale_value=Decimal('0.00'),
        )

        assert LedgerService.calculate_accumulation(program, '10.00') == Decimal('7.00')
        assert LedgerService.calculate_accumulation(program, '0') == Decimal('0.00')

    def test_max_redeemable(self, app):
        """Test the redemption cap under each limit type."""
        uncapped = CashbackProgram()
        percentage = CashbackProgram(redemption_limit_type='percentage', redemption_limit_value=Decimal('50'))
        fixed = CashbackProgram(redemption_limit_type='fixed', redemption_limit_value=Decimal('20'))

        assert LedgerService.max_redeemable(uncapped, '80.00', '100.00') == Decimal('80.00')
        assert LedgerService.max_redeemable(uncapped, '150.00', '100.00') == Decimal('100.00')
        assert LedgerService.max_redeemable(percentage, '80.00', '100.00') == Decimal('50.00')
        assert LedgerService.max_redeemable(fixed, '80.00', '100.00') == Decimal('20.00')
        assert LedgerService.max_redeemable(fixed, '0.00', '100.00') == Decimal('0.00')

    def test_get_active_program(self, app, sample_organization, sample_program):
        """Test that inactive programs are ignored."""
        ledger = LedgerService(sample_organization.id)
        assert ledger.get_active_program().id == sample_program.id

        sample_program.is_active = False
        db.session.commit()
        assert ledger.get_active_program() is None


class TestQueries:
    """Tests for balance and history queries."""

    def test_get_or_create_balance(self, app, sample_client, sample_program):
        """Test that a missing balance row is created at zero."""
        ledger = LedgerService(sample_client.organization_id)

        balance = ledger.get_or_create_balance(sample_client.id, sample_program.id)

        assert balance.available == Decimal('0.00')
        assert ledger.get_balance(sample_client.id, sample_program.id) is not None

    def test_get_history_newest_first(self, app, sample_client, sample_program):
        """Test history ordering, filtering and pagination."""
        ledger = LedgerService(sample_client.organization_id)
        for days_ago in (3, 2, 1):
            ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('5.00'), 90,
                              now=NOW - timedelta(days=days_ago))
        ledger.redeem(sample_client.id, sample_program.id, None, Decimal('1.00'), now=NOW)

        history = ledger.get_history(sample_client.id, limit=2)
        assert history['total'] == 4
        assert history['has_more'] is True
        assert [t['transaction_type'] for t in history['transactions']] == ['redeem', 'accumulate']

        accumulations = ledger.get_history(sample_client.id, transaction_type='accumulate')
        assert accumulations['total'] == 3
        assert accumulations['has_more'] is False

    def test_get_expiring_lots(self, app, sample_client, sample_program):
        """Test that only lots expiring inside the window are returned."""
        ledger = LedgerService(sample_client.organization_id)
        soon = ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('5.00'), 5, now=NOW)
        ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('5.00'), 20, now=NOW)

        lots = ledger.get_expiring_lots(sample_client.id, 7, now=NOW)

        assert [lot.id for lot in lots] == [soon.id]


class TestConcurrencyConflicts:
    """Tests for version conflict handling."""

    def test_conflict_is_retried(self, app, sample_client, sample_program):
        """Test that a stale balance version is retried and then succeeds."""
        ledger = LedgerService(sample_client.organization_id, max_retries=3)
        real_lock = LedgerService._lock_balance
        calls = []

        def flaky_lock(self, client_id, program_id):
            calls.append(client_id)
            if len(calls) == 1:
                raise StaleDataError('balance version changed')
            return real_lock(self, client_id, program_id)

        with patch.object(LedgerService, '_lock_balance', flaky_lock):
            txn = ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('2.00'), 90, now=NOW)

        assert len(calls) == 2
        assert txn.balance_after == Decimal('2.00')

    def test_conflict_retries_exhausted(self, app, sample_client, sample_program):
        """Test that persistent conflicts surface as ConcurrentBalanceConflictError."""
        ledger = LedgerService(sample_client.organization_id, max_retries=2)

        with patch.object(LedgerService, '_lock_balance', side_effect=StaleDataError('stale')) as mock_lock:
            with pytest.raises(ConcurrentBalanceConflictError) as exc_info:
                ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('2.00'), 90)

        assert mock_lock.call_count == 3
        assert exc_info.value.attempts == 3
        assert CashbackTransaction.query.count() == 0

    def test_conflict_not_retried_inside_caller_transaction(self, app, sample_client, sample_program):
        """Test that commit=False hands the conflict straight to the caller."""
        ledger = LedgerService(sample_client.organization_id, max_retries=5)

        with patch.object(LedgerService, '_lock_balance', side_effect=StaleDataError('stale')) as mock_lock:
            with pytest.raises(ConcurrentBalanceConflictError):
                ledger.accumulate(sample_client.id, sample_program.id, None, Decimal('2.00'), 90, commit=False)

        assert mock_lock.call_count == 1
        db.session.rollback()

    def test_max_retries_from_config(self, app, sample_organization):
        """Test that LEDGER_MAX_RETRIES is the default retry budget."""
        app.config['LEDGER_MAX_RETRIES'] = 7
        assert LedgerService(sample_organization.id).max_retries == 7
        assert LedgerService(sample_organization.id, max_retries=0).max_retries == 0


class TestConcurrentRedeem:
    """Redeems racing on one balance from separate threads and sessions."""

    @pytest.fixture
    def file_app(self, tmp_path):
        app = create_app('testing', {
            'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'ledger.db'}",
        })
        with app.app_context():
            db.create_all()
            org = Organization(name='Padaria Central', settings={}, is_active=True)
            db.session.add(org)
            db.session.flush()
            client = Client(organization_id=org.id, name='Maria Silva',
                            purchase_count=0, purchase_total=Decimal('0.00'))
            program = CashbackProgram(organization_id=org.id, title='Cashback', is_active=True,
                                      accumulation_type='fixed', accumulation_value=Decimal('1.00'),
                                      expiry_days=90)
            db.session.add_all([client, program])
            db.session.commit()
            LedgerService(org.id).accumulate(client.id, program.id, None, Decimal('10.00'), 90)
            ids = (org.id, client.id, program.id)
            db.session.remove()
        yield app, ids
        with app.app_context():
            db.drop_all()
            db.engine.dispose()

    def test_redeems_never_overdraw(self, file_app):
        """Test that 6 redeems of 3.00 against 10.00 yield exactly 3 successes."""
        app, (org_id, client_id, program_id) = file_app
        start = threading.Barrier(6)
        outcomes = []

        def redeem():
            with app.app_context():
                start.wait()
                try:
                    LedgerService(org_id).redeem(client_id, program_id, None, Decimal('3.00'))
                    outcomes.append('ok')
                except InsufficientBalanceError:
                    outcomes.append('insufficient')
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=redeem) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert sorted(outcomes) == ['insufficient'] * 3 + ['ok'] * 3
        with app.app_context():
            balance = LedgerService(org_id).get_balance(client_id, program_id)
            assert balance.available == Decimal('1.00')
            assert balance.redeemed_total == Decimal('9.00')
            assert balance.is_consistent()
            assert CashbackTransaction.query.filter_by(transaction_type='redeem').count() == 3
            lot = CashbackTransaction.query.filter_by(transaction_type='accumulate').one()
            assert lot.remaining == Decimal('1.00')


class TestBalanceInvariant:
    """available == accumulated - redeemed - expired after every ledger operation."""

    def test_mixed_sequence(self, app, sample_client, sample_program):
        ledger = LedgerService(sample_client.organization_id)
        client_id, program_id = sample_client.id, sample_program.id
        sale = _sale(sample_client)

        def check(available):
            balance = ledger.get_balance(client_id, program_id)
            assert balance.available == (
                balance.accumulated_total - balance.redeemed_total - balance.expired_total
            )
            assert balance.available == Decimal(available)
            assert balance.available >= 0

        old_lot = ledger.accumulate(client_id, program_id, None, Decimal('15.00'), 30,
                                    now=NOW - timedelta(days=40))
        check('15.00')
        ledger.redeem(client_id, program_id, None, Decimal('5.00'), now=NOW - timedelta(days=35))
        check('10.00')
        ledger.accumulate(client_id, program_id, sale.id, Decimal('20.00'), 90, now=NOW - timedelta(days=1))
        check('30.00')
        ledger.expire(old_lot.id, now=NOW)
        check('20.00')
        ledger.redeem(client_id, program_id, None, Decimal('4.00'), now=NOW)
        check('16.00')
        ledger.reverse_sale(sale.id, reason='returned', now=NOW)
        check('0.00')

        balance = ledger.get_balance(client_id, program_id)
        assert balance.accumulated_total == Decimal('19.00')
        assert balance.redeemed_total == Decimal('9.00')
        assert balance.expired_total == Decimal('10.00')
