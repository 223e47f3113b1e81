"""Errors raised by the recommendation engine."""


class InvalidRequest(ValueError):
    """The request can't be served at all (e.g. missing user id)."""


class NoCandidatesError(RuntimeError):
    """The candidate source failed or had nothing to rank."""


class CollaboratorError(Exception):
    """An external collaborator call failed; carried inside an Outcome, never raised to callers."""

    def __init__(self, component: str, cause: BaseException | str):
        self.component = component
        self.cause = cause
        super().__init__(f"{component}: {cause}")
