"""Transfer reconciliation."""

from .engine import PendingTransferBuffer, ReconciliationResult, TransferReconciler

__all__ = ["PendingTransferBuffer", "ReconciliationResult", "TransferReconciler"]
