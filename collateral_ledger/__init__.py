"""
collateral_ledger - Peer-to-Peer Collateralized Loan Ledger

A borrower locks a deposit, a lender supplies the same amount, and the
ledger enforces timed repayment with a collateral claim on default.

Usage:
    from datetime import datetime, timedelta
    from collateral_ledger import Ledger

    ledger = Ledger("main", initial_time=datetime(2025, 1, 1), verbose=False)
    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    ledger.issue("alice", 100)
    ledger.issue("bob", 100)

    loan = ledger.request_loan("alice", interest_rate=10, duration=3600, value=50)
    ledger.fund_loan(loan.id, "bob", 50)

    # Repay on time...
    ledger.repay_loan(loan.id, "alice", 55)

    # ...or, had alice not repaid, bob could claim after the due date:
    # ledger.advance_time(loan.due_date + timedelta(seconds=1))
    # ledger.claim_collateral(loan.id, "bob")
"""

# Core types
from .core import (
    LedgerView,
    Unit,
    Move,
    Loan,
    LoanStatus,
    LoanStateChange,
    LoanRequested,
    LoanFunded,
    LoanRepaid,
    CollateralClaimed,
    LoanEvent,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    ExecuteResult,
    build_transaction,
    empty_pending_transaction,
    native_asset,
    require_amount,
    # Exceptions
    LedgerError,
    InsufficientFunds,
    BalanceConstraintViolation,
    UnitNotRegistered,
    WalletNotRegistered,
    StaleLoanState,
    LoanError,
    InvalidAmount,
    DuplicateRequest,
    NotFound,
    AlreadyFunded,
    WrongAmount,
    Expired,
    NotBorrower,
    NotFunded,
    AlreadyRepaid,
    NotLender,
    NotYetDue,
    AlreadyClaimed,
    # Constants
    SYSTEM_WALLET,
    ESCROW_WALLET,
    DEFAULT_NATIVE_SYMBOL,
    UNIT_TYPE_NATIVE,
    INTEREST_RATE_DENOMINATOR,
)

# Ledger
from .ledger import Ledger

# Loan contract
from .contracts.collateralized_loan import (
    compute_repayment_due,
    is_duplicate_request,
    find_duplicate_request,
    compute_loan_request,
    compute_loan_funding,
    compute_loan_repayment,
    compute_collateral_claim,
    transact as loan_transact,
    get_loan_status,
    get_repayment_due,
    get_outstanding_loans,
    get_loans_for_wallet,
    get_locked_collateral,
)

__all__ = [
    # Core
    'LedgerView', 'Unit', 'Move', 'Loan', 'LoanStatus', 'LoanStateChange',
    'LoanRequested', 'LoanFunded', 'LoanRepaid', 'CollateralClaimed', 'LoanEvent',
    'Transaction', 'PendingTransaction', 'TransactionOrigin', 'OriginType',
    'ExecuteResult', 'build_transaction', 'empty_pending_transaction',
    'native_asset', 'require_amount',
    # Exceptions
    'LedgerError', 'InsufficientFunds', 'BalanceConstraintViolation',
    'UnitNotRegistered', 'WalletNotRegistered', 'StaleLoanState',
    'LoanError', 'InvalidAmount', 'DuplicateRequest', 'NotFound', 'AlreadyFunded',
    'WrongAmount', 'Expired', 'NotBorrower', 'NotFunded', 'AlreadyRepaid',
    'NotLender', 'NotYetDue', 'AlreadyClaimed',
    # Constants
    'SYSTEM_WALLET', 'ESCROW_WALLET', 'DEFAULT_NATIVE_SYMBOL', 'UNIT_TYPE_NATIVE',
    'INTEREST_RATE_DENOMINATOR',
    # Ledger
    'Ledger',
    # Loan contract
    'compute_repayment_due', 'is_duplicate_request', 'find_duplicate_request',
    'compute_loan_request', 'compute_loan_funding', 'compute_loan_repayment',
    'compute_collateral_claim', 'loan_transact',
    'get_loan_status', 'get_repayment_due', 'get_outstanding_loans',
    'get_loans_for_wallet', 'get_locked_collateral',
]
