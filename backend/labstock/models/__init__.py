from .labs import Department, Lab
from .stock import Item, StockLogEntry, StockMove, LedgerImmutableError

__all__ = [
    'Department', 'Lab',
    'Item', 'StockLogEntry', 'StockMove', 'LedgerImmutableError',
]
