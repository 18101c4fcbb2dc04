"""Custom exceptions shared by all layers. Everything the domain raises derives from GameError."""


class GameError(Exception):
    """Top-level exception for the voting game."""


class InvalidRequestError(GameError):
    """Request data that cannot be interpreted (raised by the pydantic validators)."""


class InvalidSquareError(GameError):
    """Square name outside of a1 - h8."""


class MalformedKeyError(GameError):
    """A Move-Key that does not look like '<square>-<square>'."""


class InvalidPositionError(GameError):
    """A stored FEN / move history that cannot be restored into a playable position."""


class IllegalMoveError(GameError):
    """Move is not legal in the current position."""


class OpponentMoveUnavailableError(GameError):
    """The opponent engine could not come up with a move."""


class GameStateError(GameError):
    """Action not allowed given the state of the game / round."""


class RoundClosedError(GameStateError):
    """The game is over: no more votes are accepted."""


class RepositoryError(GameError):
    """Persistence layer could not fulfil the request."""


class GameNotFoundError(RepositoryError):
    """No game recorded for the given instance id."""


class StoreUnavailableError(RepositoryError):
    """The store itself failed. Abort the current tick, the next one retries."""
