"""
contracts - Loan contract functions.

Pure functions that read a LedgerView and return PendingTransactions.
"""

from .collateralized_loan import (
    compute_repayment_due,
    is_duplicate_request,
    find_duplicate_request,
    compute_loan_request,
    compute_loan_funding,
    compute_loan_repayment,
    compute_collateral_claim,
    transact,
    get_loan_status,
    get_repayment_due,
    get_outstanding_loans,
    get_loans_for_wallet,
    get_locked_collateral,
)
