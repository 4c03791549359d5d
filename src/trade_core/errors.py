"""Typed errors raised by the ledger and the execution engine."""


class TradeCoreError(Exception):
    """Base class for trade-core errors."""


class LedgerError(TradeCoreError):
    """Invalid ledger state transition."""


class AlreadyOpenError(LedgerError):
    """open() called while a position already exists."""


class NoPositionError(LedgerError):
    """close() called with no open position."""


class ExecutionAbortedError(TradeCoreError):
    """An order could not be confirmed filled or was rejected before submission.

    The engine aborts the action and leaves prior state intact.
    """
