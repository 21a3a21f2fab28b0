"""
Core types and pure helpers for the collateralized loan ledger.

This module provides the foundational data structures and protocols:
1. Protocols: LedgerView for read-only ledger access
2. Immutable data structures: Unit, Move, Loan, LoanStateChange,
   PendingTransaction, Transaction
3. Loan notifications: LoanRequested, LoanFunded, LoanRepaid, CollateralClaimed
4. Exceptions: LedgerError, the value-layer errors and the LoanError taxonomy
5. Unit factory for the host ledger's native asset

Nothing in this module mutates ledger state. Mutation happens only inside
Ledger, which applies PendingTransactions built from a LedgerView.
"""

from __future__ import annotations
from dataclasses import dataclass, fields
from datetime import datetime
from enum import Enum
from typing import (
    Dict, List, Optional, Tuple, Any, Protocol, Union,
    FrozenSet, runtime_checkable,
)


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for issuance of native value.
# The system wallet is exempt from balance validation and can hold any balance.
SYSTEM_WALLET = "system"

# Reserved wallet holding every deposit while it is in the ledger's custody.
# Unlike the system wallet it is balance-checked and can never go negative.
ESCROW_WALLET = "escrow"

UNIT_TYPE_NATIVE = "NATIVE"

# Smallest indivisible denomination of the host ledger's asset.
DEFAULT_NATIVE_SYMBOL = "WEI"

# Interest is a flat percentage applied once at repayment.
INTEREST_RATE_DENOMINATOR = 100


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from wallet ID to quantity held by that wallet for a specific unit.
Positions = Dict[str, int]

# Mapping from unit symbol to quantity held in a single wallet.
BalanceMap = Dict[str, int]


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Loan contract functions accept a LedgerView to declare that they only
    read. The Ledger class implements this protocol and also provides the
    mutating operations; tests use FakeView, which is read-only throughout.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    @property
    def native_symbol(self) -> str:
        """Return the symbol of the asset loans are denominated in."""
        ...

    @property
    def next_loan_id(self) -> int:
        """Return the id the next successful request will receive."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> int:
        """Return the balance of a unit in a wallet (0 if none)."""
        ...

    def get_loan(self, loan_id: int) -> 'Loan':
        """Return the stored Loan record. Raises NotFound when out of range."""
        ...

    def list_loans(self) -> List['Loan']:
        """Return every stored Loan record in id order."""
        ...

    def is_registered(self, wallet_id: str) -> bool:
        """Return True if the wallet is registered."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was validated and applied to the ledger.
    REJECTED: Transaction failed validation (balances, registration or
              stale loan state) and nothing was applied.
    """
    APPLIED = "applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Classification of where a transaction originated."""
    USER_ACTION = "user_action"           # One of the four loan operations
    SYSTEM = "system"                     # Issuance, fixtures, plain transfers


class LoanStatus(str, Enum):
    """Lifecycle position of a loan."""
    REQUESTED = "requested"     # Collateral deposited, waiting for a lender
    FUNDED = "funded"           # Principal paid out, repayment outstanding
    REPAID = "repaid"           # Terminal: repaid on time, collateral returned
    DEFAULTED = "defaulted"     # Terminal: collateral claimed by the lender
    EXPIRED = "expired"         # Never funded and past due; derived, never stored


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all ledger-related errors."""
    pass


class InsufficientFunds(LedgerError):
    """Raised when a caller cannot cover the value it supplies."""
    pass


class BalanceConstraintViolation(LedgerError):
    """Raised when a move would push a wallet outside the unit's min/max balance."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when operating on a unit that has not been registered."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when operating on a wallet that has not been registered."""
    pass


class StaleLoanState(LedgerError):
    """Raised when a pending transaction was built against loan records that have since changed."""
    pass


class LoanError(LedgerError):
    """
    Base exception for rejected loan operations.

    Every subclass corresponds to one precondition of the request, fund,
    repay and claim operations. A LoanError is always raised before any
    state change or value transfer.
    """

    default_message = "Loan operation rejected"

    def __init__(self, message: Optional[str] = None, loan_id: Optional[int] = None):
        super().__init__(message or self.default_message)
        self.loan_id = loan_id


class InvalidAmount(LoanError):
    default_message = "Collateral amount must be greater than 0"


class DuplicateRequest(LoanError):
    """An identical request from the same borrower is still waiting for a lender."""

    def __init__(self, borrower: str, loan_id: Optional[int] = None):
        super().__init__(
            f"Loan with these parameters has already been requested by borrower {borrower}",
            loan_id,
        )
        self.borrower = borrower


class NotFound(LoanError):
    default_message = "Loan does not exist"


class AlreadyFunded(LoanError):
    def __init__(self, lender: str, loan_id: Optional[int] = None):
        super().__init__(
            f"Requested loan has already been funded by lender {lender}", loan_id
        )
        self.lender = lender


class WrongAmount(LoanError):
    default_message = "Incorrect amount"


class Expired(LoanError):
    default_message = "Loan has expired"


class NotBorrower(LoanError):
    default_message = "Only the borrower can repay this loan"


class NotFunded(LoanError):
    default_message = "Loan has not yet been funded"


class AlreadyRepaid(LoanError):
    default_message = "Loan has already been repaid"


class NotLender(LoanError):
    default_message = "Only the lender can claim the collateral of this loan"


class NotYetDue(LoanError):
    default_message = "Loan is not yet past due date"


class AlreadyClaimed(LoanError):
    default_message = "Collateral has already been claimed"


# ============================================================================
# VALUE HELPERS
# ============================================================================

def require_amount(value: Any, name: str) -> int:
    """
    Validate an unsigned integer amount argument.

    Booleans are rejected even though they are ints. Negative values raise
    ValueError; the loan guards decide what a zero means.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an int, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{name} cannot be negative, got {value}")
    return value


# ============================================================================
# UNIT
# ============================================================================

@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of an asset held in ledger wallets.

    Attributes:
        symbol: Short identifier (e.g., "WEI").
        name: Human-readable name.
        unit_type: Category of the unit.
        min_balance: Minimum allowed balance in any non-system wallet.
        max_balance: Maximum allowed balance, None for unbounded.
    """
    symbol: str
    name: str
    unit_type: str = UNIT_TYPE_NATIVE
    min_balance: int = 0
    max_balance: Optional[int] = None

    def __post_init__(self):
        if not self.symbol or not self.symbol.strip():
            raise ValueError("Unit symbol cannot be empty")


def native_asset(symbol: str = DEFAULT_NATIVE_SYMBOL, name: str = "Native Asset") -> Unit:
    """
    Create the native value unit of the host ledger.

    Balances are whole numbers of the smallest denomination and can never
    go negative outside the system wallet.
    """
    return Unit(symbol=symbol, name=name, unit_type=UNIT_TYPE_NATIVE, min_balance=0)


# ============================================================================
# MOVES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two wallets.

    Attributes:
        quantity: Amount to transfer, a positive int.
        unit_symbol: Symbol of the unit being transferred.
        source: Wallet debited.
        dest: Wallet credited.
        contract_id: Identifier of the operation generating this move.
    """
    quantity: int
    unit_symbol: str
    source: str
    dest: str
    contract_id: str

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValueError(f"Move quantity must be int, got {type(self.quantity)}")
        if self.quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


# ============================================================================
# LOAN RECORD
# ============================================================================

@dataclass(frozen=True, slots=True)
class Loan:
    """
    A single collateralized loan.

    The record is immutable; the ledger replaces it with an updated copy
    on each transition, so callers can hold on to a Loan without seeing
    later changes.

    Attributes:
        id: Dense, 0-based creation index. Never reused.
        borrower: Wallet that deposited the collateral.
        lender: Wallet that funded the loan, None until funded.
        collateral_amount: Value deposited at request time.
        loan_amount: Principal paid to the borrower; always equals collateral_amount.
        interest_rate: Flat percentage added once at repayment.
        due_date: Request time plus the requested duration.
        is_funded / is_repaid / is_defaulted: One-way lifecycle flags.
    """
    id: int
    borrower: str
    collateral_amount: int
    loan_amount: int
    interest_rate: int
    due_date: datetime
    lender: Optional[str] = None
    is_funded: bool = False
    is_repaid: bool = False
    is_defaulted: bool = False

    def __post_init__(self):
        if self.loan_amount != self.collateral_amount:
            raise ValueError(
                f"loan_amount ({self.loan_amount}) must equal collateral_amount "
                f"({self.collateral_amount})"
            )
        if self.is_repaid and self.is_defaulted:
            raise ValueError(f"Loan {self.id} cannot be both repaid and defaulted")
        if (self.is_repaid or self.is_defaulted) and not self.is_funded:
            raise ValueError(f"Loan {self.id} cannot settle before it is funded")
        if self.is_funded != (self.lender is not None):
            raise ValueError(f"Loan {self.id}: lender must be set exactly when funded")

    @property
    def status(self) -> LoanStatus:
        """Stored lifecycle position (never EXPIRED; that needs a clock)."""
        if self.is_defaulted:
            return LoanStatus.DEFAULTED
        if self.is_repaid:
            return LoanStatus.REPAID
        if self.is_funded:
            return LoanStatus.FUNDED
        return LoanStatus.REQUESTED

    @property
    def is_settled(self) -> bool:
        return self.is_repaid or self.is_defaulted

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True, slots=True)
class LoanStateChange:
    """
    Record of one loan transition for the transaction log.

    old_state is None when the transaction creates the loan. The ledger
    uses old_state to detect pending transactions built from a stale view.
    """
    loan_id: int
    old_state: Optional[Loan]
    new_state: Loan

    def __post_init__(self):
        if self.new_state.id != self.loan_id:
            raise ValueError(
                f"State change for loan {self.loan_id} carries record {self.new_state.id}"
            )

    @property
    def is_creation(self) -> bool:
        return self.old_state is None

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """Map each field that differs to its (old, new) values."""
        old = self.old_state.to_dict() if self.old_state is not None else {}
        new = self.new_state.to_dict()
        return {
            key: (old.get(key), new[key])
            for key in new
            if old.get(key) != new[key]
        }


# ============================================================================
# LOAN EVENTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class LoanRequested:
    borrower: str
    collateral_amount: int
    loan_amount: int
    interest_rate: int
    due_date: datetime

    name = "LoanRequested"


@dataclass(frozen=True, slots=True)
class LoanFunded:
    loan_id: int

    name = "LoanFunded"


@dataclass(frozen=True, slots=True)
class LoanRepaid:
    loan_id: int

    name = "LoanRepaid"


@dataclass(frozen=True, slots=True)
class CollateralClaimed:
    borrower: str
    lender: str
    collateral_amount: int

    name = "CollateralClaimed"


LoanEvent = Union[LoanRequested, LoanFunded, LoanRepaid, CollateralClaimed]


# ============================================================================
# TRANSACTIONS
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source
        source_id: Caller wallet, or a system component name
        loan_id: Loan the transaction acts on, if any
        event_type: Operation name (e.g., "REQUEST", "FUND", "REPAY", "CLAIM")
    """
    origin_type: OriginType
    source_id: str
    loan_id: Optional[int] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.loan_id is not None:
            parts.append(f"loan={self.loan_id}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction description before execution - represents INTENT.

    Built by the loan contract functions from a read-only view and handed
    to Ledger for validation and atomic application.

    Attributes:
        moves: Value transfers, applied after the loan changes
        loan_changes: Loan record transitions, applied first
        events: Notifications emitted if the transaction is applied
        origin: Who/what created this transaction and why
        timestamp: View time when the transaction was built
    """
    moves: Tuple[Move, ...]
    loan_changes: Tuple[LoanStateChange, ...]
    events: Tuple[LoanEvent, ...]
    origin: TransactionOrigin
    timestamp: datetime

    def is_empty(self) -> bool:
        """Return True if there is nothing to apply."""
        return not self.moves and not self.loan_changes

    def __repr__(self) -> str:
        return (
            f"PendingTransaction({len(self.moves)} moves, "
            f"{len(self.loan_changes)} loan changes, {self.origin})"
        )


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    loan_changes: Optional[List[LoanStateChange]] = None,
    events: Optional[List[LoanEvent]] = None,
    origin: Optional[TransactionOrigin] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction stamped with the view's current time.

    Example:
        tx = build_transaction(ledger, [
            Move(100, "WEI", "system", "alice", "issue_alice")
        ])
        ledger.execute(tx)
    """
    if origin is None:
        origin = TransactionOrigin(OriginType.SYSTEM, "transfer")
    return PendingTransaction(
        moves=tuple(moves),
        loan_changes=tuple(loan_changes or ()),
        events=tuple(events or ()),
        origin=origin,
        timestamp=view.current_time,
    )


def empty_pending_transaction(view: LedgerView) -> PendingTransaction:
    """Create a PendingTransaction that does nothing."""
    return PendingTransaction(
        moves=(),
        loan_changes=(),
        events=(),
        origin=TransactionOrigin(OriginType.SYSTEM, "noop"),
        timestamp=view.current_time,
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger changes - represents FACT.

    Attributes:
        moves: Value transfers applied
        loan_changes: Loan transitions applied
        events: Notifications emitted
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was built
        exec_id: Unique execution identifier (ledger + sequence + time)
        ledger_name: Name of the ledger that executed this
        execution_time: Ledger time at execution
        sequence_number: Monotonic sequence within the ledger
        loan_ids: Loans touched by this transaction (auto-populated)
    """
    moves: Tuple[Move, ...]
    loan_changes: Tuple[LoanStateChange, ...]
    events: Tuple[LoanEvent, ...]
    origin: TransactionOrigin
    timestamp: datetime
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    loan_ids: FrozenSet[int] = None

    def __post_init__(self):
        if not self.moves and not self.loan_changes:
            raise ValueError("Transaction must have moves or loan_changes")
        if self.loan_ids is None:
            object.__setattr__(
                self, 'loan_ids',
                frozenset(lc.loan_id for lc in self.loan_changes)
            )

    def __repr__(self) -> str:
        w = 90
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(' Transaction: ' + self.exec_id)}│",
            f"├{bar}┤",
            f"│{pad('   timestamp      : ' + str(self.timestamp))}│",
            f"│{pad('   execution_time : ' + str(self.execution_time))}│",
            f"│{pad('   sequence       : ' + str(self.sequence_number))}│",
            f"│{pad('   origin         : ' + repr(self.origin))}│",
        ]
        if self.loan_changes:
            lines.append(f"├{bar}┤")
            lines.append(f"│{pad(' Loan Changes (' + str(len(self.loan_changes)) + '):')}│")
            for lc in self.loan_changes:
                label = "created" if lc.is_creation else "updated"
                lines.append(f"│{pad(f'   [loan {lc.loan_id}] {label}')}│")
                if not lc.is_creation:
                    for field_name, (old_val, new_val) in lc.changed_fields().items():
                        lines.append(f"│{pad(f'      {field_name}: {old_val!r} → {new_val!r}')}│")
        lines.append(f"├{bar}┤")
        lines.append(f"│{pad(' Moves (' + str(len(self.moves)) + '):')}│")
        for i, move in enumerate(self.moves):
            lines.append(
                f"│{pad(f'   [{i}] {move.quantity} {move.unit_symbol}: {move.source} → {move.dest}')}│"
            )
        if self.events:
            lines.append(f"├{bar}┤")
            for event in self.events:
                lines.append(f"│{pad('   emit ' + repr(event))}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)
