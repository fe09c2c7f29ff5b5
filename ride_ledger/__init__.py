"""Ride lifecycle and money-movement core: fares, rides, ledger, payouts."""

__all__: list[str] = []
