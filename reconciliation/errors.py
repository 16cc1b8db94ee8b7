class ReconciliationError(Exception):
    """Failure of a single reconciliation unit; batches record it and move on."""


class SeriesValidationError(ReconciliationError):
    pass


class SourceEntryNotFoundError(ReconciliationError):
    def __init__(self, customer_email: str):
        self.customer_email = customer_email
        super().__init__(f"No PAID ledger entry found for {customer_email} to copy customer details from")
