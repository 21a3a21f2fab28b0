"""
conftest.py - Shared pytest fixtures for collateral_ledger tests

Provides:
- A ledger with funded borrower/lender wallets
- Ledgers holding a loan in each lifecycle position
"""

import pytest

from tests.loan_helpers import INTEREST_RATE, DURATION, COLLATERAL, after, make_ledger


@pytest.fixture
def ledger():
    """Ledger with borrower, lender and a third party, each holding STARTING_BALANCE."""
    return make_ledger("borrower", "lender", "stranger")


@pytest.fixture
def requested(ledger):
    """Ledger holding loan 0 in the REQUESTED state."""
    ledger.request_loan("borrower", INTEREST_RATE, DURATION, COLLATERAL)
    return ledger


@pytest.fixture
def funded(requested):
    """Ledger holding loan 0 in the FUNDED state."""
    requested.fund_loan(0, "lender", COLLATERAL)
    return requested


@pytest.fixture
def repaid(funded):
    """Ledger holding loan 0 in the REPAID state."""
    funded.repay_loan(0, "borrower", COLLATERAL)
    return funded


@pytest.fixture
def defaulted(funded):
    """Ledger holding loan 0 in the DEFAULTED state."""
    funded.advance_time(after(funded.get_loan(0), 1))
    funded.claim_collateral(0, "lender")
    return funded
