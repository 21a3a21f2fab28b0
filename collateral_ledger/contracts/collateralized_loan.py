"""
collateralized_loan.py - Peer-to-Peer Collateralized Loan Contract

=== LOAN MODEL ===

A borrower locks a deposit and asks for a loan of the same size:
    - Request: deposit moves borrower -> escrow, Loan record created
    - Fund:    principal moves lender -> escrow -> borrower
    - Repay:   principal + flat interest moves borrower -> escrow -> lender,
               collateral moves escrow -> borrower
    - Claim:   after the due date an unpaid lender takes the collateral,
               escrow -> lender

State machine for a single loan:

    REQUESTED --fund (now < due)--> FUNDED --repay (now <= due)--> REPAID
                                      |
                                      +--claim (now > due)--> DEFAULTED

A request that is never funded before its due date stays REQUESTED
forever: it can no longer be funded and its deposit stays in escrow.
There is no cancellation path.

=== REPAYMENT ===

    repayment_due = loan_amount + floor(loan_amount * interest_rate / 100)

Fractional interest is dropped, never rounded up.

=== PURE FUNCTIONS ===

Every operation is a pure function of a LedgerView:
    compute_loan_request(view, caller, interest_rate, duration, value)
    compute_loan_funding(view, loan_id, caller, value)
    compute_loan_repayment(view, loan_id, caller, value)
    compute_collateral_claim(view, loan_id, caller)

Each one checks its guards in a fixed order, raises the matching LoanError
on the first failure, and otherwise returns a PendingTransaction with the
loan transition, the value moves and the notification. Guards never
depend on anything the transaction itself changes.
"""
from __future__ import annotations
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ..core import (
    LedgerView, Loan, LoanStateChange, LoanStatus, Move, PendingTransaction,
    TransactionOrigin, OriginType,
    LoanRequested, LoanFunded, LoanRepaid, CollateralClaimed,
    InvalidAmount, DuplicateRequest, AlreadyFunded, WrongAmount, Expired,
    NotBorrower, NotFunded, AlreadyRepaid, NotLender, NotYetDue, AlreadyClaimed,
    build_transaction, empty_pending_transaction, require_amount,
    ESCROW_WALLET, INTEREST_RATE_DENOMINATOR,
)


# =============================================================================
# PURE FUNCTIONS
# =============================================================================

def compute_repayment_due(loan_amount: int, interest_rate: int) -> int:
    """
    Compute the exact amount that settles a loan.

    Example:
        compute_repayment_due(3, 1)      # 3 + floor(0.03) = 3
        compute_repayment_due(250, 10)   # 250 + 25 = 275
        compute_repayment_due(199, 1)    # 199 + floor(1.99) = 200
    """
    require_amount(loan_amount, "loan_amount")
    require_amount(interest_rate, "interest_rate")
    return loan_amount + (loan_amount * interest_rate) // INTEREST_RATE_DENOMINATOR


def is_duplicate_request(loan: Loan, borrower: str, amount: int, interest_rate: int) -> bool:
    """
    True if `loan` is an untouched request with the same borrower, amounts and rate.

    Duration is not part of the comparison. Funded, repaid and defaulted
    loans never count, but a request that expired without a lender does.
    """
    return (
        loan.borrower == borrower
        and loan.collateral_amount == amount
        and loan.loan_amount == amount
        and loan.interest_rate == interest_rate
        and not loan.is_funded
        and not loan.is_repaid
        and not loan.is_defaulted
    )


def find_duplicate_request(
    view: LedgerView,
    borrower: str,
    amount: int,
    interest_rate: int,
) -> Optional[int]:
    """
    Return the id of an identical unfunded request, or None.

    A Ledger keeps a hash index of unfunded requests and answers in O(1);
    any other view is scanned record by record.
    """
    if hasattr(view, 'find_unfunded_request'):
        return view.find_unfunded_request(borrower, amount, interest_rate)

    for loan in view.list_loans():
        if is_duplicate_request(loan, borrower, amount, interest_rate):
            return loan.id
    return None


def _origin(caller: str, loan_id: int, event_type: str) -> TransactionOrigin:
    return TransactionOrigin(
        origin_type=OriginType.USER_ACTION,
        source_id=caller,
        loan_id=loan_id,
        event_type=event_type,
    )


# =============================================================================
# REQUEST
# =============================================================================

def compute_loan_request(
    view: LedgerView,
    caller: str,
    interest_rate: int,
    duration: int,
    value: int,
) -> PendingTransaction:
    """
    Deposit collateral and open a loan request.

    Args:
        view: Read-only ledger access
        caller: Borrower wallet supplying the deposit
        interest_rate: Flat percentage owed on top of the principal
        duration: Seconds from now until the due date
        value: Deposit; also becomes the requested principal

    Returns:
        PendingTransaction creating loan `view.next_loan_id`, moving the
        deposit into escrow and emitting LoanRequested.

    Raises:
        ValueError: duration puts the due date past datetime.max
        InvalidAmount: value is zero
        DuplicateRequest: the caller already has an identical unfunded request

    Example:
        tx = compute_loan_request(ledger, "alice", interest_rate=1, duration=60, value=3)
        ledger.execute(tx)
    """
    require_amount(interest_rate, "interest_rate")
    require_amount(duration, "duration")
    require_amount(value, "value")
    try:
        due_date = view.current_time + timedelta(seconds=duration)
    except OverflowError:
        raise ValueError(f"duration {duration} puts the due date out of range") from None

    if value == 0:
        raise InvalidAmount()

    duplicate_id = find_duplicate_request(view, caller, value, interest_rate)
    if duplicate_id is not None:
        raise DuplicateRequest(caller, loan_id=duplicate_id)

    loan_id = view.next_loan_id

    loan = Loan(
        id=loan_id,
        borrower=caller,
        collateral_amount=value,
        loan_amount=value,
        interest_rate=interest_rate,
        due_date=due_date,
    )

    moves = [
        Move(value, view.native_symbol, caller, ESCROW_WALLET, f"loan_{loan_id}_collateral"),
    ]
    event = LoanRequested(
        borrower=caller,
        collateral_amount=loan.collateral_amount,
        loan_amount=loan.loan_amount,
        interest_rate=interest_rate,
        due_date=due_date,
    )

    return build_transaction(
        view, moves,
        [LoanStateChange(loan_id=loan_id, old_state=None, new_state=loan)],
        [event],
        origin=_origin(caller, loan_id, "REQUEST"),
    )


# =============================================================================
# FUNDING
# =============================================================================

def compute_loan_funding(
    view: LedgerView,
    loan_id: int,
    caller: str,
    value: int,
) -> PendingTransaction:
    """
    Fund an open request; the principal goes straight to the borrower.

    The loan is marked funded before the principal moves, so the borrower
    is paid against a record that already names its lender.

    Raises:
        NotFound: loan_id is not a stored loan
        AlreadyFunded: a lender already funded it (message names that lender)
        WrongAmount: value differs from the loan amount
        Expired: the due date has been reached
    """
    require_amount(value, "value")
    loan = view.get_loan(loan_id)

    if loan.is_funded:
        raise AlreadyFunded(loan.lender, loan_id=loan_id)
    if value != loan.loan_amount:
        raise WrongAmount("Incorrect funding amount", loan_id=loan_id)
    if not view.current_time < loan.due_date:
        raise Expired("Loan has expired", loan_id=loan_id)

    funded = replace(loan, lender=caller, is_funded=True)
    symbol = view.native_symbol
    moves = [
        Move(value, symbol, caller, ESCROW_WALLET, f"loan_{loan_id}_principal_in"),
        Move(value, symbol, ESCROW_WALLET, loan.borrower, f"loan_{loan_id}_principal_out"),
    ]

    return build_transaction(
        view, moves,
        [LoanStateChange(loan_id=loan_id, old_state=loan, new_state=funded)],
        [LoanFunded(loan_id=loan_id)],
        origin=_origin(caller, loan_id, "FUND"),
    )


# =============================================================================
# REPAYMENT
# =============================================================================

def compute_loan_repayment(
    view: LedgerView,
    loan_id: int,
    caller: str,
    value: int,
) -> PendingTransaction:
    """
    Repay a funded loan on or before its due date.

    The repayment goes to the lender first, then the collateral is released
    back to the borrower.

    Raises:
        NotFound: loan_id is not a stored loan
        NotBorrower: caller did not request this loan
        NotFunded: no lender has funded it
        Expired: the due date has passed
        AlreadyRepaid: the loan was already repaid
        WrongAmount: value differs from compute_repayment_due (either way)
    """
    require_amount(value, "value")
    loan = view.get_loan(loan_id)

    if caller != loan.borrower:
        raise NotBorrower(loan_id=loan_id)
    if not loan.is_funded:
        raise NotFunded(loan_id=loan_id)
    if view.current_time > loan.due_date:
        raise Expired("Loan has expired and cannot be repaid", loan_id=loan_id)
    if loan.is_repaid:
        raise AlreadyRepaid(loan_id=loan_id)

    repayment_due = compute_repayment_due(loan.loan_amount, loan.interest_rate)
    if value != repayment_due:
        raise WrongAmount("Incorrect repayment amount", loan_id=loan_id)

    repaid = replace(loan, is_repaid=True)
    symbol = view.native_symbol
    moves = [
        Move(value, symbol, caller, ESCROW_WALLET, f"loan_{loan_id}_repayment_in"),
        Move(value, symbol, ESCROW_WALLET, loan.lender, f"loan_{loan_id}_repayment_out"),
        Move(loan.collateral_amount, symbol, ESCROW_WALLET, loan.borrower,
             f"loan_{loan_id}_collateral_release"),
    ]

    return build_transaction(
        view, moves,
        [LoanStateChange(loan_id=loan_id, old_state=loan, new_state=repaid)],
        [LoanRepaid(loan_id=loan_id)],
        origin=_origin(caller, loan_id, "REPAY"),
    )


# =============================================================================
# DEFAULT
# =============================================================================

def compute_collateral_claim(
    view: LedgerView,
    loan_id: int,
    caller: str,
) -> PendingTransaction:
    """
    Seize the collateral of a funded loan that was not repaid in time.

    Raises:
        NotFound: loan_id is not a stored loan
        NotLender: caller is not the loan's lender (always the case before funding)
        NotFunded: the loan was never funded
        AlreadyRepaid: the borrower repaid, even if the due date has since passed
        NotYetDue: the due date has not strictly passed
        AlreadyClaimed: the collateral was already claimed
    """
    loan = view.get_loan(loan_id)

    if caller != loan.lender:
        raise NotLender(loan_id=loan_id)
    # Unreachable while Loan ties lender to is_funded; kept in guard order
    if not loan.is_funded:
        raise NotFunded(loan_id=loan_id)
    if loan.is_repaid:
        raise AlreadyRepaid("Loan was repaid on time", loan_id=loan_id)
    if not view.current_time > loan.due_date:
        raise NotYetDue(loan_id=loan_id)
    if loan.is_defaulted:
        raise AlreadyClaimed(loan_id=loan_id)

    defaulted = replace(loan, is_defaulted=True)
    moves = [
        Move(loan.collateral_amount, view.native_symbol, ESCROW_WALLET, loan.lender,
             f"loan_{loan_id}_collateral_claim"),
    ]
    event = CollateralClaimed(
        borrower=loan.borrower,
        lender=loan.lender,
        collateral_amount=loan.collateral_amount,
    )

    return build_transaction(
        view, moves,
        [LoanStateChange(loan_id=loan_id, old_state=loan, new_state=defaulted)],
        [event],
        origin=_origin(caller, loan_id, "CLAIM"),
    )


# =============================================================================
# TRANSACT PROTOCOL
# =============================================================================

def transact(
    view: LedgerView,
    loan_id: int,
    event_type: str,
    caller: str,
    value: int = 0,
) -> PendingTransaction:
    """
    Unified interface for acting on an existing loan.

    Supported event types:
        FUND: compute_loan_funding(view, loan_id, caller, value)
        REPAY: compute_loan_repayment(view, loan_id, caller, value)
        CLAIM: compute_collateral_claim(view, loan_id, caller)

    Unknown event types return an empty PendingTransaction.
    """
    event = event_type.upper()
    if event == "FUND":
        return compute_loan_funding(view, loan_id, caller, value)
    if event == "REPAY":
        return compute_loan_repayment(view, loan_id, caller, value)
    if event == "CLAIM":
        return compute_collateral_claim(view, loan_id, caller)
    return empty_pending_transaction(view)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def get_loan_status(view: LedgerView, loan_id: int, timestamp: Optional[datetime] = None) -> LoanStatus:
    """
    Lifecycle position of a loan at `timestamp` (default: view time).

    Adds EXPIRED for requests that can no longer be funded. The ledger
    stores no such flag, and the deposit of an expired request stays
    locked in escrow.
    """
    loan = view.get_loan(loan_id)
    now = timestamp if timestamp is not None else view.current_time
    if not loan.is_funded and now >= loan.due_date:
        return LoanStatus.EXPIRED
    return loan.status


def get_repayment_due(view: LedgerView, loan_id: int) -> int:
    """Exact value compute_loan_repayment accepts for this loan."""
    loan = view.get_loan(loan_id)
    return compute_repayment_due(loan.loan_amount, loan.interest_rate)


def get_outstanding_loans(view: LedgerView) -> List[Loan]:
    """Funded loans that are neither repaid nor defaulted."""
    return [
        loan for loan in view.list_loans()
        if loan.is_funded and not loan.is_settled
    ]


def get_loans_for_wallet(view: LedgerView, wallet: str) -> Dict[str, List[Loan]]:
    """Loans where `wallet` is the borrower or the lender."""
    loans = view.list_loans()
    return {
        'borrowed': [loan for loan in loans if loan.borrower == wallet],
        'lent': [loan for loan in loans if loan.lender == wallet],
    }


def get_locked_collateral(view: LedgerView) -> int:
    """
    Total collateral the ledger should be holding in escrow.

    Counts every loan that is neither repaid nor defaulted, including
    requests that expired without a lender.
    """
    return sum(loan.collateral_amount for loan in view.list_loans() if not loan.is_settled)
