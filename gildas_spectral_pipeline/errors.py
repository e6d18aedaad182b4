__all__ = [
    "GildasError",
    "FormatError",
    "CorruptOffset",
    "ChannelRangeError",
    "FitDivergence",
    "NumericAnomaly",
]


class GildasError(Exception):
    pass


class FormatError(GildasError):
    """Unrecognized encoding tag or magic bytes."""


class CorruptOffset(GildasError):
    """A computed seek position lies outside the file or buffer."""

    entry: int | None
    offset: int

    def __init__(self, offset: int, entry: int | None = None, size: int | None = None):
        self.entry = entry
        self.offset = offset
        self.size = size
        message = f"Offset {offset} is out of bounds"
        if size is not None:
            message += f" (size {size})"
        if entry is not None:
            message += f" while reading entry {entry}"
        super().__init__(message + ".")


class ChannelRangeError(GildasError, ValueError):
    pass


class FitDivergence(GildasError):
    pass


class NumericAnomaly(RuntimeWarning):
    pass
