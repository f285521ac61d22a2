"""
Cashback Ledger Service.

The single writer of money movement for cashback balances:
- Accumulate: credit a new lot (ACTIVE, remaining = amount, with expiration)
- Redeem: debit the balance, consume lots FIFO by creation date
- Expire: zero an overdue lot and debit what was left of it
- Reverse sale: cancel what is left of a canceled sale's lots

ARCHITECTURE:
- CashbackBalance is a running total; CashbackTransaction rows justify it
- Every mutation writes the balance row and its transaction in one unit
- Mutations on one (client, program) are serialized three ways: an
  in-process keyed lock, SELECT ... FOR UPDATE on the balance row, and the
  balance's version column (stale flushes are retried, then surfaced as
  ConcurrentBalanceConflictError)

Callers that compose the ledger into a larger unit (the sale intake) pass
commit=False; the ledger then only flushes and never retries, leaving the
decision to roll back or retry the whole unit to the caller.
"""
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models.cashback import (
    AmountType,
    CashbackBalance,
    CashbackProgram,
    CashbackTransaction,
    LedgerTransactionStatus,
    LedgerTransactionType,
)
from ..models.organization import Client
from ..utils.exceptions import (
    ClientNotFoundError,
    ConcurrentBalanceConflictError,
    InsufficientBalanceError,
    InvalidAmountError,
    ProgramNotFoundError,
)
from ..utils.locks import balance_lock
from ..utils.time_utils import money, utcnow

ZERO = Decimal('0.00')


class LedgerService:
    """
    Cashback ledger for one organization.

    Usage:
        ledger = LedgerService(organization_id)

        txn = ledger.accumulate(client_id, program_id, sale_id, Decimal('12.50'), expiry_days=90)
        txn = ledger.redeem(client_id, program_id, sale_id, Decimal('6.00'))
        summary = ledger.expire_due()
    """

    def __init__(self, organization_id: int, max_retries: int = None):
        self.organization_id = organization_id
        self.max_retries = (
            max_retries if max_retries is not None
            else current_app.config.get('LEDGER_MAX_RETRIES', 3)
        )

    # ==================== Program rules ====================

    def get_active_program(self) -> Optional[CashbackProgram]:
        """The organization's active program, or None (accumulation is then a no-op)."""
        return CashbackProgram.query.filter_by(
            organization_id=self.organization_id,
            is_active=True
        ).order_by(CashbackProgram.id.desc()).first()

    @staticmethod
    def calculate_accumulation(program: CashbackProgram, sale_value) -> Decimal:
        """
        Cashback earned by a sale under the program's rules.

        Zero below the program's minimum sale value; FIXED earns the flat
        value, PERCENTAGE earns value% of the sale.
        """
        sale_value = money(sale_value)
        minimum = money(program.accumulation_min_sale_value or 0)
        if sale_value <= ZERO or sale_value < minimum:
            return ZERO

        value = money(program.accumulation_value or 0)
        if program.accumulation_type == AmountType.FIXED.value:
            return value
        return money(sale_value * value / Decimal('100'))

    @staticmethod
    def max_redeemable(program: CashbackProgram, available, sale_value) -> Decimal:
        """Largest redemption allowed on a sale: min(available, sale, program limit)."""
        available = money(available)
        sale_value = money(sale_value)
        limit = sale_value
        if program.redemption_limit_type and program.redemption_limit_value is not None:
            limit_value = money(program.redemption_limit_value)
            if program.redemption_limit_type == AmountType.FIXED.value:
                limit = limit_value
            elif program.redemption_limit_type == AmountType.PERCENTAGE.value:
                limit = money(sale_value * limit_value / Decimal('100'))
        return max(ZERO, min(available, sale_value, limit))

    # ==================== Core Ledger Operations ====================

    def accumulate(
        self,
        client_id: int,
        program_id: int,
        sale_id: Optional[int],
        amount,
        expiry_days: Optional[int],
        campaign_id: int = None,
        sale_value=None,
        description: str = None,
        now: datetime = None,
        commit: bool = True
    ) -> CashbackTransaction:
        """
        Credit a new cashback lot.

        Args:
            client_id: Client receiving the cashback
            program_id: Program the balance belongs to
            sale_id: Originating sale (None for campaign rewards without a sale)
            amount: Positive amount to credit
            expiry_days: Lot expires this many days after now (None = never)
            campaign_id: Campaign that granted it, if any
            commit: False when the caller owns the transaction

        Raises:
            InvalidAmountError: amount <= 0
            ConcurrentBalanceConflictError: version retries exhausted
        """
        amount = self._validate_amount(amount)
        self._require_client(client_id)
        self._require_program(program_id)
        now = now or utcnow()
        expires_at = now + timedelta(days=expiry_days) if expiry_days is not None else None

        def operation(balance: CashbackBalance) -> CashbackTransaction:
            before = money(balance.available)
            after = before + amount
            balance.available = after
            balance.accumulated_total = money(balance.accumulated_total) + amount
            balance.updated_at = now

            txn = CashbackTransaction(
                organization_id=self.organization_id,
                client_id=client_id,
                program_id=program_id,
                sale_id=sale_id,
                sale_value=money(sale_value) if sale_value is not None else None,
                campaign_id=campaign_id,
                transaction_type=LedgerTransactionType.ACCUMULATE.value,
                status=LedgerTransactionStatus.ACTIVE.value,
                amount=amount,
                remaining=amount,
                balance_before=before,
                balance_after=after,
                expires_at=expires_at,
                description=description or 'Cashback accumulated',
                created_at=now,
            )
            db.session.add(txn)
            return txn

        txn = self._execute(client_id, program_id, operation, commit)
        current_app.logger.info(
            f"[Ledger] Accumulated {amount} for client {client_id} program {program_id} "
            f"(sale {sale_id}, txn {txn.id})"
        )
        return txn

    def redeem(
        self,
        client_id: int,
        program_id: int,
        sale_id: Optional[int],
        amount,
        description: str = None,
        now: datetime = None,
        commit: bool = True
    ) -> CashbackTransaction:
        """
        Debit the balance and consume ACTIVE lots oldest first.

        Raises:
            InvalidAmountError: amount <= 0
            InsufficientBalanceError: amount > available (nothing is written)
            ConcurrentBalanceConflictError: version retries exhausted
        """
        amount = self._validate_amount(amount)
        self._require_client(client_id)
        self._require_program(program_id)
        now = now or utcnow()

        def operation(balance: CashbackBalance) -> CashbackTransaction:
            before = money(balance.available)
            if amount > before:
                raise InsufficientBalanceError(before, amount)

            after = before - amount
            balance.available = after
            balance.redeemed_total = money(balance.redeemed_total) + amount
            balance.updated_at = now

            self._consume_lots_fifo(client_id, program_id, amount)

            txn = CashbackTransaction(
                organization_id=self.organization_id,
                client_id=client_id,
                program_id=program_id,
                sale_id=sale_id,
                transaction_type=LedgerTransactionType.REDEEM.value,
                status=LedgerTransactionStatus.ACTIVE.value,
                amount=amount,
                remaining=ZERO,  # redemptions are not lots
                balance_before=before,
                balance_after=after,
                expires_at=None,
                description=description or 'Cashback redeemed',
                created_at=now,
            )
            db.session.add(txn)
            return txn

        txn = self._execute(client_id, program_id, operation, commit)
        current_app.logger.info(
            f"[Ledger] Redeemed {amount} for client {client_id} program {program_id} "
            f"(sale {sale_id}, txn {txn.id})"
        )
        return txn

    def expire(
        self,
        transaction_id: int,
        now: datetime = None,
        commit: bool = True
    ) -> Optional[CashbackTransaction]:
        """
        Expire one overdue lot.

        Only ACTIVE ACCUMULATE lots with remaining > 0 and expires_at < now
        are touched; anything else is a no-op returning None, which makes
        the sweep safe to re-run.
        """
        now = now or utcnow()
        lot = CashbackTransaction.query.filter_by(
            id=transaction_id,
            organization_id=self.organization_id
        ).first()
        if lot is None:
            return None

        client_id, program_id = lot.client_id, lot.program_id

        def operation(balance: CashbackBalance) -> Optional[CashbackTransaction]:
            current = CashbackTransaction.query.filter_by(
                id=transaction_id
            ).with_for_update().populate_existing().first()
            if not self._is_expirable(current, now):
                return None

            remaining = money(current.remaining)
            before = money(balance.available)
            to_expire = min(remaining, before)
            if to_expire != remaining:
                current_app.logger.warning(
                    f"[Ledger] Lot {current.id} remaining {remaining} exceeds available {before} "
                    f"for client {client_id}; expiring {to_expire}"
                )

            after = before - to_expire
            balance.available = after
            balance.expired_total = money(balance.expired_total) + to_expire
            balance.updated_at = now

            current.status = LedgerTransactionStatus.EXPIRED.value
            current.remaining = ZERO

            txn = CashbackTransaction(
                organization_id=self.organization_id,
                client_id=client_id,
                program_id=program_id,
                sale_id=current.sale_id,
                related_transaction_id=current.id,
                transaction_type=LedgerTransactionType.EXPIRE.value,
                status=LedgerTransactionStatus.ACTIVE.value,
                amount=to_expire,
                remaining=ZERO,
                balance_before=before,
                balance_after=after,
                expires_at=None,
                description=(
                    f'Cashback expired (earned {current.created_at.strftime("%Y-%m-%d")})'
                    if current.created_at else 'Cashback expired'
                ),
                created_at=now,
            )
            db.session.add(txn)
            return txn

        txn = self._execute(client_id, program_id, operation, commit)
        if txn is not None:
            current_app.logger.info(
                f"[Ledger] Expired {txn.amount} from lot {transaction_id} for client {client_id}"
            )
        return txn

    def expire_due(self, now: datetime = None, batch_size: int = 500) -> Dict[str, Any]:
        """
        Periodic sweep: expire every overdue lot of this organization.

        Each lot is its own unit, so one failure does not stop the sweep.
        Running it twice produces the same end state as running it once.

        Returns:
            Summary dict with processed/expired counts, amount and errors
        """
        now = now or utcnow()
        results = {
            'processed': 0,
            'expired_entries': 0,
            'clients_affected': 0,
            'total_expired': ZERO,
            'errors': [],
            'run_date': now.isoformat(),
        }
        clients = set()
        failed_ids: List[int] = []

        while True:
            query = CashbackTransaction.query.with_entities(CashbackTransaction.id).filter(
                CashbackTransaction.organization_id == self.organization_id,
                CashbackTransaction.transaction_type == LedgerTransactionType.ACCUMULATE.value,
                CashbackTransaction.status == LedgerTransactionStatus.ACTIVE.value,
                CashbackTransaction.remaining > 0,
                CashbackTransaction.expires_at.isnot(None),
                CashbackTransaction.expires_at < now,
            )
            if failed_ids:
                query = query.filter(CashbackTransaction.id.notin_(failed_ids))
            lot_ids = [row[0] for row in query.order_by(
                CashbackTransaction.expires_at.asc(),
                CashbackTransaction.id.asc()
            ).limit(batch_size).all()]

            if not lot_ids:
                break

            for lot_id in lot_ids:
                results['processed'] += 1
                try:
                    txn = self.expire(lot_id, now=now)
                except Exception as e:
                    db.session.rollback()
                    failed_ids.append(lot_id)
                    results['errors'].append({'transaction_id': lot_id, 'error': str(e)})
                    current_app.logger.error(f"[Ledger] Failed to expire lot {lot_id}: {e}")
                    continue

                if txn is None:
                    # Raced with another sweep or a redemption; nothing left to do.
                    continue
                results['expired_entries'] += 1
                results['total_expired'] += money(txn.amount)
                clients.add(txn.client_id)

        results['clients_affected'] = len(clients)
        current_app.logger.info(
            f"[Ledger] Expiration sweep for org {self.organization_id}: "
            f"{results['expired_entries']} lots, {results['total_expired']} expired"
        )
        return results

    def reverse_sale(
        self,
        sale_id: int,
        reason: str = None,
        now: datetime = None,
        commit: bool = True
    ) -> List[CashbackTransaction]:
        """
        Cancel what is left of the lots accumulated by a sale.

        Writes one CANCEL transaction per lot with remaining > 0, reduces
        available and accumulated_total by that remainder and marks the lot
        EXPIRED. Cashback already redeemed from the lot stays redeemed.
        """
        now = now or utcnow()
        lots = CashbackTransaction.query.filter(
            CashbackTransaction.organization_id == self.organization_id,
            CashbackTransaction.sale_id == sale_id,
            CashbackTransaction.transaction_type == LedgerTransactionType.ACCUMULATE.value,
            CashbackTransaction.remaining > 0,
        ).order_by(CashbackTransaction.id.asc()).all()

        by_balance: Dict[tuple, List[int]] = {}
        for lot in lots:
            by_balance.setdefault((lot.client_id, lot.program_id), []).append(lot.id)

        reversals: List[CashbackTransaction] = []
        for (client_id, program_id), lot_ids in by_balance.items():

            def operation(balance: CashbackBalance, lot_ids=lot_ids, client_id=client_id, program_id=program_id):
                written = []
                for lot_id in lot_ids:
                    lot = CashbackTransaction.query.filter_by(
                        id=lot_id
                    ).with_for_update().populate_existing().first()
                    remaining = money(lot.remaining or 0)
                    if remaining <= ZERO or lot.status == LedgerTransactionStatus.EXPIRED.value:
                        continue

                    before = money(balance.available)
                    to_cancel = min(remaining, before)
                    after = before - to_cancel
                    balance.available = after
                    balance.accumulated_total = money(balance.accumulated_total) - to_cancel
                    balance.updated_at = now

                    lot.status = LedgerTransactionStatus.EXPIRED.value
                    lot.remaining = ZERO

                    txn = CashbackTransaction(
                        organization_id=self.organization_id,
                        client_id=client_id,
                        program_id=program_id,
                        sale_id=sale_id,
                        related_transaction_id=lot.id,
                        transaction_type=LedgerTransactionType.CANCEL.value,
                        status=LedgerTransactionStatus.ACTIVE.value,
                        amount=to_cancel,
                        remaining=ZERO,
                        balance_before=before,
                        balance_after=after,
                        expires_at=None,
                        description=f'Sale canceled: {reason}' if reason else 'Sale canceled',
                        created_at=now,
                    )
                    db.session.add(txn)
                    written.append(txn)
                return written

            reversals.extend(self._execute(client_id, program_id, operation, commit))

        if reversals:
            current_app.logger.info(
                f"[Ledger] Reversed {len(reversals)} lot(s) for canceled sale {sale_id}"
            )
        return reversals

    # ==================== Queries ====================

    def get_balance(self, client_id: int, program_id: int) -> Optional[CashbackBalance]:
        return CashbackBalance.query.filter_by(
            organization_id=self.organization_id,
            client_id=client_id,
            program_id=program_id
        ).first()

    def get_or_create_balance(self, client_id: int, program_id: int) -> CashbackBalance:
        """Balance row for the pair, created at zero (and committed) if missing."""
        balance = self.get_balance(client_id, program_id)
        if balance is not None:
            return balance
        self._require_client(client_id)
        self._require_program(program_id)
        return self._execute(client_id, program_id, lambda balance: balance, commit=True)

    def get_history(
        self,
        client_id: int,
        program_id: int = None,
        transaction_type: str = None,
        limit: int = 50,
        offset: int = 0
    ) -> Dict[str, Any]:
        """Paginated ledger history for a client, newest first."""
        query = CashbackTransaction.query.filter_by(
            organization_id=self.organization_id,
            client_id=client_id
        )
        if program_id:
            query = query.filter_by(program_id=program_id)
        if transaction_type:
            query = query.filter_by(transaction_type=transaction_type)

        total = query.count()
        transactions = query.order_by(
            CashbackTransaction.created_at.desc(),
            CashbackTransaction.id.desc()
        ).offset(offset).limit(limit).all()

        return {
            'transactions': [t.to_dict() for t in transactions],
            'total': total,
            'limit': limit,
            'offset': offset,
            'has_more': offset + len(transactions) < total,
        }

    def get_expiring_lots(self, client_id: int, within_days: int, now: datetime = None) -> List[CashbackTransaction]:
        """ACTIVE lots with something left that expire within the next N days."""
        now = now or utcnow()
        return CashbackTransaction.query.filter(
            CashbackTransaction.organization_id == self.organization_id,
            CashbackTransaction.client_id == client_id,
            CashbackTransaction.transaction_type == LedgerTransactionType.ACCUMULATE.value,
            CashbackTransaction.status == LedgerTransactionStatus.ACTIVE.value,
            CashbackTransaction.remaining > 0,
            CashbackTransaction.expires_at.isnot(None),
            CashbackTransaction.expires_at >= now,
            CashbackTransaction.expires_at <= now + timedelta(days=within_days),
        ).order_by(CashbackTransaction.expires_at.asc()).all()

    # ==================== Helper Methods ====================

    def _execute(
        self,
        client_id: int,
        program_id: int,
        operation: Callable[[CashbackBalance], Any],
        commit: bool
    ):
        """
        Run a balance mutation under the balance lock.

        The operation receives the row-locked balance and must only stage
        changes; flush/commit happen here. Stale versions (and a lost race
        creating the balance row) are retried when we own the transaction.
        """
        attempt = 0
        with balance_lock(client_id, program_id):
            while True:
                attempt += 1
                try:
                    balance = self._lock_balance(client_id, program_id)
                    result = operation(balance)
                    db.session.flush()
                    if commit:
                        db.session.commit()
                    return result
                except (StaleDataError, IntegrityError) as e:
                    if not commit:
                        raise ConcurrentBalanceConflictError(client_id, program_id, attempt) from e
                    db.session.rollback()
                    if attempt > self.max_retries:
                        current_app.logger.error(
                            f"[Ledger] Giving up on balance client {client_id} program {program_id} "
                            f"after {attempt} attempts: {e}"
                        )
                        raise ConcurrentBalanceConflictError(client_id, program_id, attempt) from e
                    current_app.logger.warning(
                        f"[Ledger] Concurrent update on balance client {client_id} program {program_id}, "
                        f"retrying ({attempt}/{self.max_retries})"
                    )
                except Exception:
                    if commit:
                        db.session.rollback()
                    raise

    def _lock_balance(self, client_id: int, program_id: int) -> CashbackBalance:
        """Fetch the balance row FOR UPDATE, creating it at zero if missing."""
        balance = CashbackBalance.query.filter_by(
            client_id=client_id,
            program_id=program_id
        ).with_for_update().populate_existing().first()

        if balance is None:
            balance = CashbackBalance(
                organization_id=self.organization_id,
                client_id=client_id,
                program_id=program_id,
                available=ZERO,
                accumulated_total=ZERO,
                redeemed_total=ZERO,
                expired_total=ZERO,
            )
            db.session.add(balance)
            db.session.flush()
        return balance

    def _consume_lots_fifo(self, client_id: int, program_id: int, amount: Decimal) -> Decimal:
        """Decrement remaining on ACTIVE lots, oldest first; empty lots become CONSUMED.

        Returns:
            Amount actually consumed (less than amount only if lots and
            balance have drifted apart)
        """
        lots = CashbackTransaction.query.filter(
            CashbackTransaction.client_id == client_id,
            CashbackTransaction.program_id == program_id,
            CashbackTransaction.transaction_type == LedgerTransactionType.ACCUMULATE.value,
            CashbackTransaction.status == LedgerTransactionStatus.ACTIVE.value,
            CashbackTransaction.remaining > 0,
        ).order_by(
            CashbackTransaction.created_at.asc(),
            CashbackTransaction.id.asc()
        ).with_for_update().populate_existing().all()

        to_consume = amount
        consumed = ZERO
        for lot in lots:
            if to_consume <= ZERO:
                break
            remaining = money(lot.remaining)
            take = min(remaining, to_consume)
            lot.remaining = remaining - take
            if lot.remaining <= ZERO:
                lot.status = LedgerTransactionStatus.CONSUMED.value
            to_consume -= take
            consumed += take

        if to_consume > ZERO:
            current_app.logger.warning(
                f"[Ledger] Lots for client {client_id} program {program_id} short by {to_consume} "
                f"while redeeming {amount}"
            )
        return consumed

    @staticmethod
    def _is_expirable(lot: Optional[CashbackTransaction], now: datetime) -> bool:
        return (
            lot is not None
            and lot.transaction_type == LedgerTransactionType.ACCUMULATE.value
            and lot.status == LedgerTransactionStatus.ACTIVE.value
            and lot.remaining is not None
            and money(lot.remaining) > ZERO
            and lot.expires_at is not None
            and lot.expires_at < now
        )

    @staticmethod
    def _validate_amount(amount) -> Decimal:
        if amount is None:
            raise InvalidAmountError(amount)
        try:
            value = money(amount)
        except (InvalidOperation, TypeError, ValueError):
            raise InvalidAmountError(amount)
        if value <= ZERO:
            raise InvalidAmountError(amount)
        return value

    def _require_client(self, client_id: int) -> Client:
        client = Client.query.filter_by(id=client_id, organization_id=self.organization_id).first()
        if not client:
            raise ClientNotFoundError(client_id)
        return client

    def _require_program(self, program_id: int) -> CashbackProgram:
        program = CashbackProgram.query.filter_by(id=program_id, organization_id=self.organization_id).first()
        if not program:
            raise ProgramNotFoundError(program_id)
        return program
