class VoteRejected(Exception):
    """An admission rule turned the vote away. The message is shown to the voter."""

    def __init__(self, reason: str, code: str = "rejected"):
        super().__init__(reason)
        self.reason = reason
        self.code = code


class PersistenceError(Exception):
    """The ledger write failed and nothing was recorded."""


class DistributionError(Exception):
    """A transfer to an external wallet did not go through."""
