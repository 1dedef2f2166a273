"""Background workers."""
from .payment_reconciler import reconcile_open_links, run_reconciler

__all__ = ['reconcile_open_links', 'run_reconciler']
