"""Services package: ledger storage and currency rates."""
