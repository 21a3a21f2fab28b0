"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the loan ledger.

The tests are organized by invariant:
1. conservation - Value is never created or destroyed; escrow backs every open loan
2. atomicity - A rejected operation changes nothing
3. terminal_states - Lifecycle flags only move forward; settled loans are final
4. serialization - Concurrent callers are applied one at a time

Operation sequences are generated with hypothesis.
"""
