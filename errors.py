class GameClientError(Exception):
    pass


class InvalidInput(GameClientError, ValueError):
    """Negative block number, non-positive epoch length or amount."""


class NoAccount(GameClientError):
    """The ledger exposes no account to act from."""


class TransactionFailed(GameClientError):
    """The transaction was rejected by the node or reverted by the contract."""


class StaleResponseDiscarded(GameClientError):
    """A fetch completed after the view moved on. Logged, never raised to callers."""


class LedgerClientError(GameClientError):
    """Transport or JSON-RPC level failure talking to the node."""
