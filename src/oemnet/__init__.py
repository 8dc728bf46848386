"""Client library and CLI for the OEM requirements ledger network."""

__version__ = "0.1.0"
