"""ledgerctl: operator command line for the credit ledger."""
