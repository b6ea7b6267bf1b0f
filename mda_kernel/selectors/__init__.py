"""Read-only queries over posted ledger data."""

from mda_kernel.selectors.ledger_selector import LedgerSelector, TrialBalanceRow

__all__ = ["LedgerSelector", "TrialBalanceRow"]
