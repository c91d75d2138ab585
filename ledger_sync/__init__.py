"""Transfer-event ledger for ERC-721 / ERC-1155 contracts with holder balances and reconciliation."""

__version__ = "0.1.0"
