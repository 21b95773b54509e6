from .staging_store import StagingStore, has_advanced_filters, transactions_filename

__all__ = [
    "StagingStore",
    "has_advanced_filters",
    "transactions_filename",
]
