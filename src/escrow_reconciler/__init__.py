"""Escrow Reconciler - keeps off-chain escrow state consistent with the chain."""

__version__ = "0.1.0"
