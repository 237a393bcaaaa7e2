class PlayerError(Exception):
    """Base class for playback session failures. None of them is fatal."""


class LoadError(PlayerError):
    """The item's file is inaccessible or undecodable, or its chapters are malformed."""


class DecodeError(PlayerError):
    """The audio engine failed while decoding or rendering."""


class PersistenceError(PlayerError):
    """The catalog store could not write an item."""


class CommandOnEmptySession(PlayerError):
    """A transport command was issued while no item is loaded."""

    def __init__(self, command: str):
        super().__init__(f"Cannot {command}: no audiobook loaded")
        self.command = command
