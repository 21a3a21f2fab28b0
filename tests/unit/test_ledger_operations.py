"""
test_ledger_operations.py - Unit tests for the Ledger loan operations

Tests:
- request_loan / fund_loan / repay_loan / claim_collateral success paths
- Every rejection, with state left untouched
- Balance, registration and reserved-wallet checks
- Request index behaviour through the Ledger
"""

import pytest
from datetime import timedelta

from collateral_ledger import (
    Ledger, LoanStatus, ESCROW_WALLET, SYSTEM_WALLET,
    InvalidAmount, DuplicateRequest, NotFound, AlreadyFunded, WrongAmount, Expired,
    NotBorrower, NotFunded, AlreadyRepaid, NotLender, NotYetDue, AlreadyClaimed,
    InsufficientFunds, WalletNotRegistered, LoanError, Move,
    get_loan_status, build_transaction,
)
from tests.loan_helpers import (
    T0, INTEREST_RATE, DURATION, COLLATERAL, STARTING_BALANCE,
    after, snapshot, make_ledger,
)


def assert_unchanged(ledger: Ledger, before_balances, before_loans, before_log):
    assert snapshot(ledger) == before_balances
    assert ledger.list_loans() == before_loans
    assert len(ledger.transaction_log) == before_log


def state_of(ledger: Ledger):
    return snapshot(ledger), ledger.list_loans(), len(ledger.transaction_log)


# =============================================================================
# REQUEST
# =============================================================================

class TestRequestLoan:

    def test_creates_record(self, ledger):
        loan = ledger.request_loan("borrower", INTEREST_RATE, DURATION, COLLATERAL)

        assert loan.id == 0
        assert loan.borrower == "borrower"
        assert loan.collateral_amount == loan.loan_amount == COLLATERAL
        assert loan.interest_rate == INTEREST_RATE
        assert loan.due_date == T0 + timedelta(seconds=DURATION)
        assert loan.lender is None
        assert loan.status == LoanStatus.REQUESTED
        assert ledger.next_loan_id == 1

    def test_deposit_moves_into_escrow(self, ledger):
        ledger.request_loan("borrower", INTEREST_RATE, DURATION, COLLATERAL)
        assert ledger.get_balance("borrower") == STARTING_BALANCE - COLLATERAL
        assert ledger.get_balance(ESCROW_WALLET) == COLLATERAL

    def test_ids_are_dense(self, ledger):
        ids = [ledger.request_loan("borrower", INTEREST_RATE, DURATION, amount).id
               for amount in (1, 2, 3)]
        assert ids == [0, 1, 2]

    def test_zero_value(self, ledger):
        before = state_of(ledger)
        with pytest.raises(InvalidAmount):
            ledger.request_loan("borrower", INTEREST_RATE, DURATION, 0)
        assert_unchanged(ledger, *before)
        assert ledger.next_loan_id == 0

    def test_duplicate_keeps_next_id(self, requested):
        before = state_of(requested)
        with pytest.raises(DuplicateRequest, match="borrower borrower"):
            requested.request_loan("borrower", INTEREST_RATE, DURATION * 10, COLLATERAL)
        assert_unchanged(requested, *before)
        assert requested.next_loan_id == 1

    def test_same_parameters_from_another_borrower(self, requested):
        loan = requested.request_loan("lender", INTEREST_RATE, DURATION, COLLATERAL)
        assert loan.id == 1

    def test_re_request_after_funding(self, funded):
        loan = funded.request_loan("borrower", INTEREST_RATE, DURATION, COLLATERAL)
        assert loan.id == 1

    def test_expired_unfunded_request_still_duplicate(self, requested):
        requested.advance_time(after(requested.get_loan(0), 3600))
        with pytest.raises(DuplicateRequest):
            requested.request_loan("borrower", INTEREST_RATE, DURATION, COLLATERAL)

    def test_insufficient_funds(self, ledger):
        before = state_of(ledger)
        with pytest.raises(InsufficientFunds):
            ledger.request_loan("borrower", INTEREST_RATE, DURATION, STARTING_BALANCE + 1)
        assert_unchanged(ledger, *before)

    def test_unregistered_caller(self, ledger):
        with pytest.raises(WalletNotRegistered):
            ledger.request_loan("nobody", INTEREST_RATE, DURATION, COLLATERAL)

    @pytest.mark.parametrize("wallet", [SYSTEM_WALLET, ESCROW_WALLET])
    def test_reserved_caller(self, ledger, wallet):
        with pytest.raises(ValueError, match="Reserved wallet"):
            ledger.request_loan(wallet, INTEREST_RATE, DURATION, COLLATERAL)

    @pytest.mark.parametrize("duration", [10**12, 10**18])
    def test_due_date_out_of_range(self, ledger, duration):
        before = state_of(ledger)
        with pytest.raises(ValueError, match="out of range"):
            ledger.request_loan("borrower", INTEREST_RATE, duration, COLLATERAL)
        assert_unchanged(ledger, *before)
        assert ledger.next_loan_id == 0

    def test_zero_duration_cannot_be_funded(self, ledger):
        loan = ledger.request_loan("borrower", INTEREST_RATE, 0, COLLATERAL)
        assert loan.due_date == T0
        with pytest.raises(Expired):
            ledger.fund_loan(loan.id, "lender", COLLATERAL)


# =============================================================================
# FUNDING
# =============================================================================

class TestFundLoan:

    def test_marks_funded_and_pays_borrower(self, requested):
        loan = requested.fund_loan(0, "lender", COLLATERAL)

        assert loan.is_funded
        assert loan.lender == "lender"
        assert requested.get_balance("borrower") == STARTING_BALANCE
        assert requested.get_balance("lender") == STARTING_BALANCE - COLLATERAL
        assert requested.get_balance(ESCROW_WALLET) == COLLATERAL

    def test_not_found(self, requested):
        with pytest.raises(NotFound):
            requested.fund_loan(1, "lender", COLLATERAL)

    def test_already_funded_names_lender(self, funded):
        before = state_of(funded)
        with pytest.raises(AlreadyFunded) as exc_info:
            funded.fund_loan(0, "stranger", COLLATERAL)
        assert str(exc_info.value) == "Requested loan has already been funded by lender lender"
        assert_unchanged(funded, *before)

    def test_wrong_amount(self, requested):
        before = state_of(requested)
        with pytest.raises(WrongAmount):
            requested.fund_loan(0, "lender", COLLATERAL + 1)
        assert_unchanged(requested, *before)

    def test_expired(self, requested):
        requested.advance_time(requested.get_loan(0).due_date)
        with pytest.raises(Expired):
            requested.fund_loan(0, "lender", COLLATERAL)
        assert get_loan_status(requested, 0) == LoanStatus.EXPIRED

    def test_borrower_may_fund_own_request(self, requested):
        loan = requested.fund_loan(0, "borrower", COLLATERAL)
        assert loan.lender == "borrower"
        assert requested.get_balance("borrower") == STARTING_BALANCE - COLLATERAL

    def test_lender_cannot_afford(self, requested):
        requested.register_wallet("poor")
        with pytest.raises(InsufficientFunds):
            requested.fund_loan(0, "poor", COLLATERAL)
        assert not requested.get_loan(0).is_funded

    def test_payout_cannot_pay_for_own_funding(self):
        ledger = make_ledger("borrower", balance=0)
        ledger.issue("borrower", 5)
        ledger.request_loan("borrower", INTEREST_RATE, DURATION, 5)
        before = state_of(ledger)

        with pytest.raises(InsufficientFunds):
            ledger.fund_loan(0, "borrower", 5)
        assert_unchanged(ledger, *before)
        assert not ledger.get_loan(0).is_funded

    def test_funded_request_leaves_index(self, funded):
        assert funded.find_unfunded_request("borrower", COLLATERAL, INTEREST_RATE) is None


# =============================================================================
# REPAYMENT
# =============================================================================

class TestRepayLoan:

    def test_settles_both_sides(self):
        ledger = make_ledger("borrower", "lender")
        ledger.request_loan("borrower", 10, DURATION, 100)
        ledger.fund_loan(0, "lender", 100)

        loan = ledger.repay_loan(0, "borrower", 110)

        assert loan.is_repaid
        assert loan.status == LoanStatus.REPAID
        assert ledger.get_balance("borrower") == STARTING_BALANCE - 10
        assert ledger.get_balance("lender") == STARTING_BALANCE + 10
        assert ledger.get_balance(ESCROW_WALLET) == 0

    def test_at_due_date(self, funded):
        funded.advance_time(funded.get_loan(0).due_date)
        assert funded.repay_loan(0, "borrower", COLLATERAL).is_repaid

    def test_not_borrower(self, funded):
        with pytest.raises(NotBorrower):
            funded.repay_loan(0, "lender", COLLATERAL)

    def test_not_funded(self, requested):
        with pytest.raises(NotFunded):
            requested.repay_loan(0, "borrower", COLLATERAL)

    def test_expired(self, funded):
        funded.advance_time(after(funded.get_loan(0), 1))
        before = state_of(funded)
        with pytest.raises(Expired):
            funded.repay_loan(0, "borrower", COLLATERAL)
        assert_unchanged(funded, *before)

    def test_already_repaid(self, repaid):
        with pytest.raises(AlreadyRepaid):
            repaid.repay_loan(0, "borrower", COLLATERAL)

    def test_wrong_amount(self, funded):
        with pytest.raises(WrongAmount):
            funded.repay_loan(0, "borrower", COLLATERAL + 1)

    def test_returned_collateral_cannot_pay_for_repayment(self):
        ledger = make_ledger("borrower", "lender", "sink", balance=0)
        ledger.issue("borrower", 100)
        ledger.issue("lender", 100)
        ledger.request_loan("borrower", 0, DURATION, 100)
        ledger.fund_loan(0, "lender", 100)
        ledger.execute(build_transaction(ledger, [Move(100, "WEI", "borrower", "sink", "spend")]))
        assert ledger.get_balance("borrower") == 0
        before = state_of(ledger)

        with pytest.raises(InsufficientFunds):
            ledger.repay_loan(0, "borrower", 100)
        assert_unchanged(ledger, *before)
        assert ledger.get_loan(0).status == LoanStatus.FUNDED

    def test_borrower_cannot_afford_interest(self):
        ledger = make_ledger("borrower", "lender", balance=0)
        ledger.issue("borrower", 100)
        ledger.issue("lender", 100)
        ledger.request_loan("borrower", 50, DURATION, 100)
        ledger.fund_loan(0, "lender", 100)

        with pytest.raises(InsufficientFunds):
            ledger.repay_loan(0, "borrower", 150)
        assert ledger.get_loan(0).status == LoanStatus.FUNDED
        assert ledger.get_balance(ESCROW_WALLET) == 100


# =============================================================================
# DEFAULT
# =============================================================================

class TestClaimCollateral:

    def test_lender_takes_collateral(self, defaulted):
        loan = defaulted.get_loan(0)
        assert loan.is_defaulted
        assert loan.status == LoanStatus.DEFAULTED
        assert defaulted.get_balance("lender") == STARTING_BALANCE
        assert defaulted.get_balance("borrower") == STARTING_BALANCE
        assert defaulted.get_balance(ESCROW_WALLET) == 0

    def test_not_lender(self, funded):
        funded.advance_time(after(funded.get_loan(0), 1))
        with pytest.raises(NotLender):
            funded.claim_collateral(0, "borrower")

    def test_unfunded_loan_reports_not_lender(self, requested):
        requested.advance_time(after(requested.get_loan(0), 1))
        with pytest.raises(NotLender):
            requested.claim_collateral(0, "lender")

    def test_repaid(self, repaid):
        repaid.advance_time(after(repaid.get_loan(0), 1))
        with pytest.raises(AlreadyRepaid):
            repaid.claim_collateral(0, "lender")

    def test_at_due_date_is_too_early(self, funded):
        funded.advance_time(funded.get_loan(0).due_date)
        with pytest.raises(NotYetDue):
            funded.claim_collateral(0, "lender")

    def test_second_claim(self, defaulted):
        before = state_of(defaulted)
        with pytest.raises(AlreadyClaimed):
            defaulted.claim_collateral(0, "lender")
        assert_unchanged(defaulted, *before)


# =============================================================================
# TERMINAL STATES
# =============================================================================

class TestTerminalStates:

    @pytest.mark.parametrize("fixture", ["repaid", "defaulted"])
    def test_every_operation_rejected(self, request, fixture):
        ledger = request.getfixturevalue(fixture)
        before = state_of(ledger)

        attempts = [
            lambda: ledger.fund_loan(0, "stranger", COLLATERAL),
            lambda: ledger.repay_loan(0, "borrower", COLLATERAL),
            lambda: ledger.claim_collateral(0, "lender"),
        ]
        for attempt in attempts:
            with pytest.raises(LoanError):
                attempt()
        assert_unchanged(ledger, *before)
