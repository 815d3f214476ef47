from __future__ import annotations


class AlreadyRunningError(RuntimeError):
    pass


class ProtocolViolationError(RuntimeError):
    pass


class StoreUnavailableError(RuntimeError):
    pass


class SyncRunNotFoundError(RuntimeError):
    pass


class ReconcilerNotConfiguredError(RuntimeError):
    pass


class RunnerClosedError(RuntimeError):
    pass
