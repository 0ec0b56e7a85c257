"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the lending ledger.

The tests are organized by invariant:
1. conservation.py - Every mint nets to zero; vaults match reserve records
2. atomicity.py - All-or-nothing instruction semantics
3. idempotency.py - Duplicate execution handling
4. determinism.py - Reproducible records and intent IDs
5. staleness.py - Refresh-before-use in every slot
6. liquidation_bounds.py - Close factor and seizure limits

These tests use hypothesis for property-based testing.
"""


def snapshot(ledger):
    """Records and non-zero balances, for before/after comparisons."""
    balances = {
        (wallet, mint): qty
        for wallet, bals in ledger.balances.items()
        for mint, qty in bals.items() if qty != 0
    }
    return dict(ledger.accounts), balances
