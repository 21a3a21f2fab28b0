"""
ledger.py - Stateful Loan Ledger

The Ledger class is the central state manager for the collateralized loan
system. It is the only module that mutates state.

Key responsibilities:
    - Implements LedgerView protocol for the pure loan contract functions
    - Holds wallet balances of the native asset, including escrowed deposits
    - Stores Loan records keyed by a dense, monotonically increasing id
    - Executes transactions atomically (all changes succeed or none do)
    - Serializes every mutating call behind one lock
    - Logs every applied transaction and notifies subscribers of loan events
"""

from __future__ import annotations
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Set, Optional, Tuple, Any
import logging
import threading

from .core import (
    # Types
    Move, Transaction, Unit, Loan, LoanEvent,
    PendingTransaction, TransactionOrigin, OriginType,
    ExecuteResult, BalanceMap, Positions,
    # Constants
    SYSTEM_WALLET, ESCROW_WALLET,
    # Exceptions
    LedgerError, InsufficientFunds, BalanceConstraintViolation,
    UnitNotRegistered, WalletNotRegistered, StaleLoanState, NotFound,
    # Helpers
    build_transaction, native_asset, require_amount,
)
from .contracts.collateralized_loan import (
    compute_loan_request, compute_loan_funding, compute_loan_repayment,
    compute_collateral_claim, get_locked_collateral,
)


logger = logging.getLogger(__name__)

LoanListener = Callable[[LoanEvent, Transaction], None]

# Key of the unfunded-request index: (borrower, amount, interest_rate).
_RequestKey = Tuple[str, int, int]

RESERVED_WALLETS = frozenset({SYSTEM_WALLET, ESCROW_WALLET})


class Ledger:
    """
    Loan ledger with full validation and audit trail.

    Implements the LedgerView protocol, allowing the ledger to be passed to
    the pure contract functions in collateral_ledger.contracts.

    Design Principles:
        - Always validates: every transaction is checked against wallet and
          unit registration, balance limits and the loan records it was
          built from. A failed check changes nothing.
        - Always logs: every applied transaction is recorded, which is what
          clone() and replay() work from.

    Thread Safety:
        Every mutating method runs under one re-entrant lock, so calls from
        different threads are applied one at a time. Subscribers are invoked
        while the lock is held.

    Example:
        ledger = Ledger("main", verbose=False)
        ledger.register_wallet("alice")
        ledger.register_wallet("bob")
        ledger.issue("alice", 10)
        ledger.issue("bob", 10)

        loan = ledger.request_loan("alice", interest_rate=1, duration=60, value=3)
        ledger.fund_loan(loan.id, "bob", 3)
        ledger.repay_loan(loan.id, "alice", 3)
    """

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False,
        native_unit: Optional[Unit] = None,
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
            verbose: Print a receipt for every applied transaction (default: True)
            test_mode: Allow set_balance() calls (default: False)
            native_unit: Asset loans are denominated in (default: native_asset())
        """
        self.name = name
        self.balances: Dict[str, Dict[str, int]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._test_mode = test_mode
        self._next_sequence: int = 0
        self._loans: List[Loan] = []
        # Unfunded requests by (borrower, amount, rate) for O(1) duplicate checks
        self._unfunded_requests: Dict[_RequestKey, List[int]] = defaultdict(list)
        self._listeners: List[LoanListener] = []
        self._lock = threading.RLock()

        unit = native_unit or native_asset()
        self.units[unit.symbol] = unit
        self._native_symbol = unit.symbol

        for wallet_id in (SYSTEM_WALLET, ESCROW_WALLET):
            self.registered_wallets.add(wallet_id)
            self.balances[wallet_id] = defaultdict(int)

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    @property
    def native_symbol(self) -> str:
        return self._native_symbol

    @property
    def next_loan_id(self) -> int:
        """Id the next successful request will receive (equals the record count)."""
        return len(self._loans)

    def get_balance(self, wallet_id: str, unit_symbol: Optional[str] = None) -> int:
        """
        Get the balance of a unit in a wallet.

        Args:
            wallet_id: Wallet identifier
            unit_symbol: Unit symbol (default: the native asset)

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        unit_symbol = unit_symbol or self._native_symbol
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, 0)

    def get_loan(self, loan_id: int) -> Loan:
        """
        Look up a loan record by id.

        Loan records are immutable, so the returned object never changes;
        call again to observe later transitions.

        Raises:
            NotFound: If no loan with this id exists
        """
        if isinstance(loan_id, bool) or not isinstance(loan_id, int):
            raise TypeError(f"loan_id must be an int, got {type(loan_id).__name__}")
        if not 0 <= loan_id < len(self._loans):
            raise NotFound(loan_id=loan_id)
        return self._loans[loan_id]

    def list_loans(self) -> List[Loan]:
        """All loan records in id order."""
        return list(self._loans)

    def find_unfunded_request(self, borrower: str, amount: int, interest_rate: int) -> Optional[int]:
        """Id of an unfunded request with these parameters, or None."""
        ids = self._unfunded_requests.get((borrower, amount, interest_rate))
        return ids[0] if ids else None

    def is_registered(self, wallet_id: str) -> bool:
        """Check if a wallet is registered."""
        return wallet_id in self.registered_wallets

    def list_wallets(self) -> Set[str]:
        """List all registered wallet IDs."""
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        """List all registered unit symbols."""
        return sorted(self.units.keys())

    def get_unit(self, symbol: str) -> Unit:
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def get_wallet_balances(self, wallet_id: str) -> BalanceMap:
        """Get all balances for a wallet."""
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        return dict(self.balances[wallet_id])

    def get_positions(self, unit_symbol: Optional[str] = None) -> Positions:
        """All non-zero balances of a unit, by wallet."""
        unit_symbol = unit_symbol or self._native_symbol
        return {
            wallet: bals[unit_symbol]
            for wallet, bals in sorted(self.balances.items())
            if bals.get(unit_symbol, 0) != 0
        }

    def total_supply(self, unit_symbol: Optional[str] = None) -> int:
        """
        Total of a unit across all wallets, system wallet included.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        unit_symbol = unit_symbol or self._native_symbol
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(self.balances[w].get(unit_symbol, 0) for w in sorted(self.registered_wallets))

    def locked_collateral(self) -> int:
        """Collateral of every loan that is neither repaid nor defaulted."""
        return get_locked_collateral(self)

    def verify_double_entry(self, expected_supplies: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
        """
        Verify conservation and custody invariants.

        Checks that:
        1. Every unit's total supply matches expected_supplies, if given
           (issuance from the system wallet keeps the total at zero)
        2. The escrow wallet holds exactly the locked collateral

        Returns:
            Dict with keys:
            - 'valid': bool - True if every check holds
            - 'supplies': Dict[str, int] - Current total supply per unit
            - 'escrow_balance': int
            - 'locked_collateral': int
            - 'discrepancies': List[Dict] - Details of any violation

        Example:
            result = ledger.verify_double_entry()
            assert result['valid'], result['discrepancies']
        """
        with self._lock:
            supplies = {symbol: self.total_supply(symbol) for symbol in self.units}
            discrepancies = []

            for unit_symbol, expected in (expected_supplies or {}).items():
                actual = supplies.get(unit_symbol)
                if actual is None:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': 0,
                        'error': 'unit not registered',
                    })
                elif actual != expected:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': actual,
                        'difference': actual - expected,
                    })

            escrow_balance = self.get_balance(ESCROW_WALLET)
            locked = self.locked_collateral()
            if escrow_balance != locked:
                discrepancies.append({
                    'unit': self._native_symbol,
                    'wallet': ESCROW_WALLET,
                    'expected': locked,
                    'actual': escrow_balance,
                    'difference': escrow_balance - locked,
                })

        return {
            'valid': not discrepancies,
            'supplies': supplies,
            'escrow_balance': escrow_balance,
            'locked_collateral': locked,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock. Time only moves forward.

        Raises:
            ValueError: If new_time is before the current time
        """
        with self._lock:
            if new_time < self._current_time:
                raise ValueError(
                    f"Cannot move time backwards: {new_time} < {self._current_time}"
                )
            self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        """
        Register a new wallet.

        Raises:
            ValueError: If wallet is already registered or the id is empty
        """
        if not wallet_id or not wallet_id.strip():
            raise ValueError("Wallet id cannot be empty")
        with self._lock:
            if wallet_id in self.registered_wallets:
                raise ValueError(f"Wallet {wallet_id} already registered")
            self.registered_wallets.add(wallet_id)
            self.balances[wallet_id] = defaultdict(int)
        return wallet_id

    def set_balance(self, wallet_id: str, quantity: int, unit_symbol: Optional[str] = None) -> None:
        """
        Set a wallet's balance directly.

        WARNING: This bypasses double-entry accounting and is only available
        in test mode. Use issue() or execute() otherwise.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use issue() or execute() to modify balances. "
                "Set test_mode=True when creating Ledger for testing."
            )
        unit_symbol = unit_symbol or self._native_symbol
        require_amount(quantity, "quantity")
        with self._lock:
            if wallet_id not in self.registered_wallets:
                raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
            if unit_symbol not in self.units:
                raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
            self.balances[wallet_id][unit_symbol] = quantity

    def issue(self, wallet_id: str, quantity: int) -> Transaction:
        """
        Issue native value from the system wallet to `wallet_id`.

        Returns:
            The logged Transaction

        Raises:
            WalletNotRegistered: If the wallet is not registered
        """
        require_amount(quantity, "quantity")
        with self._lock:
            pending = build_transaction(
                self,
                [Move(quantity, self._native_symbol, SYSTEM_WALLET, wallet_id, f"issue_{wallet_id}")],
                origin=TransactionOrigin(OriginType.SYSTEM, "issuance"),
            )
            self._check_pending(pending)
            return self._apply(pending)

    # ========================================================================
    # SUBSCRIPTIONS
    # ========================================================================

    def subscribe(self, listener: LoanListener) -> Callable[[], None]:
        """
        Register a callback for loan events.

        The callback receives (event, transaction) for every event of every
        applied transaction, after the transaction is fully committed. An
        exception raised by a listener is logged and does not reach the
        caller; the remaining listeners still run.

        Returns:
            A function that removes the subscription
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def events(self, name: Optional[str] = None) -> List[LoanEvent]:
        """All emitted events in order, optionally filtered by event name."""
        with self._lock:
            log = list(self.transaction_log)
        return [
            event
            for tx in log
            for event in tx.events
            if name is None or event.name == name
        ]

    # ========================================================================
    # LOAN OPERATIONS (Mutating)
    # ========================================================================

    def request_loan(self, caller: str, interest_rate: int, duration: int, value: int) -> Loan:
        """
        Deposit `value` as collateral and request a loan of the same amount.

        Args:
            caller: Borrower wallet; must hold at least `value`
            interest_rate: Flat percentage due at repayment
            duration: Seconds until the due date
            value: Deposit (and principal)

        Returns:
            The new Loan record

        Raises:
            InvalidAmount, DuplicateRequest: see compute_loan_request
            InsufficientFunds: caller cannot cover the deposit
        """
        with self._lock:
            self._require_caller(caller)
            return self._run(
                "REQUEST", caller,
                lambda: compute_loan_request(self, caller, interest_rate, duration, value),
            )

    def fund_loan(self, loan_id: int, caller: str, value: int) -> Loan:
        """
        Supply the principal of loan `loan_id`; it is paid out to the borrower.

        Raises:
            NotFound, AlreadyFunded, WrongAmount, Expired: see compute_loan_funding
            InsufficientFunds: caller cannot cover the principal
        """
        with self._lock:
            self._require_caller(caller)
            return self._run(
                "FUND", caller, lambda: compute_loan_funding(self, loan_id, caller, value)
            )

    def repay_loan(self, loan_id: int, caller: str, value: int) -> Loan:
        """
        Repay loan `loan_id` with principal plus interest; collateral is returned.

        Raises:
            NotFound, NotBorrower, NotFunded, Expired, AlreadyRepaid,
            WrongAmount: see compute_loan_repayment
            InsufficientFunds: caller cannot cover the repayment
        """
        with self._lock:
            self._require_caller(caller)
            return self._run(
                "REPAY", caller, lambda: compute_loan_repayment(self, loan_id, caller, value)
            )

    def claim_collateral(self, loan_id: int, caller: str) -> Loan:
        """
        Take the collateral of an overdue, unpaid loan.

        Raises:
            NotFound, NotLender, NotFunded, AlreadyRepaid, NotYetDue,
            AlreadyClaimed: see compute_collateral_claim
        """
        with self._lock:
            self._require_caller(caller)
            return self._run(
                "CLAIM", caller, lambda: compute_collateral_claim(self, loan_id, caller)
            )

    def _require_caller(self, caller: str) -> None:
        if caller in RESERVED_WALLETS:
            raise ValueError(f"Reserved wallet {caller} cannot call loan operations")
        if caller not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {caller} not registered")

    def _run(self, operation: str, caller: str, build: Callable[[], PendingTransaction]) -> Loan:
        """Build, check and apply a loan transaction; return the record it touched."""
        try:
            pending = build()
            self._check_pending(pending)
        except LedgerError as e:
            logger.info("%s by %s rejected: %s", operation, caller, e)
            raise
        self._apply(pending)
        return self._loans[pending.loan_changes[0].loan_id]

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """
        Generate a unique execution ID.

        Format: exec:{ledger_name}:{sequence:012d}:{timestamp_micros}
        """
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        Loan changes, moves and events are applied together or not at all.
        Pending transactions built by the contract functions are valid only
        at the ledger time they were built at and only against the loan
        records they read; anything else is rejected as stale.

        Returns:
            ExecuteResult.APPLIED if successful (or nothing to do)
            ExecuteResult.REJECTED if validation failed
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        with self._lock:
            try:
                self._check_pending(pending)
            except LedgerError as e:
                logger.info("REJECTED %s: %s", pending.origin, e)
                if self.verbose:
                    print(f"✗ REJECTED: {e}")
                return ExecuteResult.REJECTED
            self._apply(pending)
        return ExecuteResult.APPLIED

    def _check_pending(self, pending: PendingTransaction) -> None:
        """
        Validate a pending transaction against all constraints.

        Checks performed:
        1. Timestamp (never from the future; loan changes only at the current time)
        2. Unit and wallet registration for every move
        3. Loan changes against the stored records
        4. Balance limits after netting all moves

        Raises:
            LedgerError subclass describing the first failure
        """
        if pending.timestamp > self._current_time:
            raise LedgerError("future timestamp")
        if pending.loan_changes and pending.timestamp != self._current_time:
            raise StaleLoanState(
                f"built at {pending.timestamp}, ledger time is {self._current_time}"
            )

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                raise UnitNotRegistered(f"unit not registered: {move.unit_symbol}")
            if move.source not in self.registered_wallets:
                raise WalletNotRegistered(f"wallet not registered: {move.source}")
            if move.dest not in self.registered_wallets:
                raise WalletNotRegistered(f"wallet not registered: {move.dest}")

        # Replay the loan changes on a scratch copy of the touched records
        working: Dict[int, Optional[Loan]] = {}
        next_id = len(self._loans)
        for lc in pending.loan_changes:
            if lc.is_creation:
                if lc.loan_id != next_id:
                    raise StaleLoanState(
                        f"loan {lc.loan_id} created out of order, next id is {next_id}"
                    )
                next_id += 1
            else:
                if lc.loan_id in working:
                    current = working[lc.loan_id]
                elif lc.loan_id < len(self._loans):
                    current = self._loans[lc.loan_id]
                else:
                    current = None
                if current != lc.old_state:
                    logger.warning("stale state for loan %s: expected %r, found %r",
                                   lc.loan_id, lc.old_state, current)
                    raise StaleLoanState(f"loan {lc.loan_id} changed since the transaction was built")
                if lc.new_state.borrower != current.borrower:
                    raise StaleLoanState(f"loan {lc.loan_id}: borrower is immutable")
                if current.lender is not None and lc.new_state.lender != current.lender:
                    raise StaleLoanState(f"loan {lc.loan_id}: lender is immutable once set")
            working[lc.loan_id] = lc.new_state

        # The caller pays from what it held before the transaction; value the
        # same transaction returns to it does not count
        if pending.origin.origin_type == OriginType.USER_ACTION:
            caller = pending.origin.source_id
            supplied: Dict[str, int] = defaultdict(int)
            for move in pending.moves:
                if move.source == caller:
                    supplied[move.unit_symbol] += move.quantity
            for unit_sym, quantity in supplied.items():
                held = self.balances[caller][unit_sym]
                if held < quantity:
                    raise InsufficientFunds(
                        f"{caller} {unit_sym}: holds {held}, supplies {quantity}"
                    )

        net: Dict[Tuple[str, str], int] = defaultdict(int)
        for move in pending.moves:
            net[(move.source, move.unit_symbol)] -= move.quantity
            net[(move.dest, move.unit_symbol)] += move.quantity

        # SYSTEM_WALLET is exempt from balance validation (issuance)
        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue
            unit = self.units[unit_sym]
            proposed = self.balances[wallet][unit_sym] + delta
            if proposed < unit.min_balance:
                raise InsufficientFunds(
                    f"{wallet} {unit_sym}: {proposed} < min {unit.min_balance}"
                )
            if unit.max_balance is not None and proposed > unit.max_balance:
                raise BalanceConstraintViolation(
                    f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"
                )

    def _apply(self, pending: PendingTransaction) -> Transaction:
        """
        Apply a checked pending transaction. Caller holds the lock.

        Order: loan records, then balances, then the log, then subscribers.
        """
        sequence = self._next_sequence
        self._next_sequence += 1

        tx = Transaction(
            moves=pending.moves,
            loan_changes=pending.loan_changes,
            events=pending.events,
            origin=pending.origin,
            timestamp=pending.timestamp,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
        )

        for lc in tx.loan_changes:
            self._store_loan(lc.new_state)

        for move in tx.moves:
            self.balances[move.source][move.unit_symbol] -= move.quantity
            self.balances[move.dest][move.unit_symbol] += move.quantity

        self.transaction_log.append(tx)
        logger.debug("APPLIED %s %s", tx.exec_id, tx.origin)
        if self.verbose:
            self._print_tx_result(tx, "APPLIED", "✓")

        for event in tx.events:
            for listener in list(self._listeners):
                try:
                    listener(event, tx)
                except Exception:
                    logger.exception("listener %r failed on %s in %s",
                                     listener, event.name, tx.exec_id)
        return tx

    def _store_loan(self, loan: Loan) -> None:
        """Insert or replace a loan record and keep the request index in step."""
        if loan.id == len(self._loans):
            self._loans.append(loan)
        else:
            old = self._loans[loan.id]
            if not old.is_funded:
                self._unfunded_requests[_request_key(old)].remove(old.id)
            self._loans[loan.id] = loan
        if not loan.is_funded:
            self._unfunded_requests[_request_key(loan)].append(loan.id)

    def _print_tx_result(self, tx: Transaction, result: str, icon: str) -> None:
        """Print the transaction receipt with a result line in place of the closing border."""
        lines = repr(tx).split('\n')
        w = 90
        bar = "─" * w
        text = f" {icon} {result}"
        lines[-1] = f"├{bar}┤"
        lines.append(f"│{text + ' ' * (w - len(text))}│")
        lines.append(f"└{bar}┘")
        print("\n".join(lines))

    # ========================================================================
    # LEDGER OPERATIONS
    # ========================================================================

    def clone(self) -> Ledger:
        """
        Create an independent copy of this ledger.

        Balances, loan records, the request index, the transaction log and
        time are copied. Subscribers are not.
        """
        with self._lock:
            cloned = Ledger.__new__(Ledger)
            cloned.name = self.name
            cloned._current_time = self._current_time
            cloned.verbose = self.verbose
            cloned._test_mode = self._test_mode
            cloned._native_symbol = self._native_symbol
            cloned.units = dict(self.units)
            cloned.registered_wallets = self.registered_wallets.copy()
            cloned.transaction_log = list(self.transaction_log)
            cloned._next_sequence = self._next_sequence
            cloned.balances = {
                wallet: defaultdict(int, bals) for wallet, bals in self.balances.items()
            }
            # Loan records are immutable, so sharing them is safe
            cloned._loans = list(self._loans)
            cloned._unfunded_requests = defaultdict(list, {
                key: list(ids) for key, ids in self._unfunded_requests.items() if ids
            })
            cloned._listeners = []
            cloned._lock = threading.RLock()
        return cloned

    def replay(self, from_tx: int = 0) -> Ledger:
        """
        Create a new ledger by re-applying the transaction log.

        Balances set via set_balance() are NOT replayed because they are not
        part of the log; issue() is.

        Args:
            from_tx: Starting transaction index (0 = replay from beginning)

        Raises:
            LedgerError: If a logged transaction no longer applies
        """
        with self._lock:
            log = list(self.transaction_log[from_tx:])
            new_ledger = Ledger(
                name=f"{self.name}_replayed",
                initial_time=datetime(1970, 1, 1),
                verbose=self.verbose,
                test_mode=self._test_mode,
                native_unit=self.units[self._native_symbol],
            )
            for wallet in self.registered_wallets - RESERVED_WALLETS:
                new_ledger.register_wallet(wallet)

        for tx in log:
            if tx.timestamp > new_ledger.current_time:
                new_ledger.advance_time(tx.timestamp)
            pending = PendingTransaction(
                moves=tx.moves,
                loan_changes=tx.loan_changes,
                events=tx.events,
                origin=tx.origin,
                timestamp=tx.timestamp,
            )
            try:
                new_ledger._check_pending(pending)
            except LedgerError as e:
                raise LedgerError(f"Replay failed at tx {tx.exec_id}: {e}") from e
            new_ledger._apply(pending)

        return new_ledger


def _request_key(loan: Loan) -> _RequestKey:
    return (loan.borrower, loan.collateral_amount, loan.interest_rate)
