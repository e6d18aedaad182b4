import dataclasses
import enum

from .parameter import Parameter

__all__ = [
    "HeaderField",
    "VisibleHeaderField",
    "SpectrumHeader",
]


class HeaderField(enum.IntEnum):
    NUM = 0
    BLOCK = 1
    VERSION = 2
    SOURCE = 3
    LINE = 4
    TELES = 5
    LDOBS = 6
    LDRED = 7
    OFF1 = 8
    OFF2 = 9
    TYPEC = 10
    KIND = 11
    QUALITY = 12
    SCAN = 13
    POSA = 14


class VisibleHeaderField(enum.IntEnum):
    NUM = 0
    VERSION = 1
    SOURCE = 2
    LINE = 3
    TELES = 4
    OFF1 = 5
    OFF2 = 6
    SCAN = 7


@dataclasses.dataclass
class SpectrumHeader:
    """The 128-byte index entry of one observation.

    Field order follows `HeaderField` and is part of the file layout. Dates are
    the raw packed day numbers; offsets are in radians.
    """

    num: int = 0
    block: int = 0
    version: int = 0
    source: str = ""
    line: str = ""
    teles: str = ""
    ldobs: int = 0
    ldred: int = 0
    off1: float = 0.0
    off2: float = 0.0
    typec: int = 0
    kind: int = 0
    qual: int = 0
    scan: int = 0
    posa: float = 0.0

    @property
    def observation_number(self) -> int:
        return self.num

    def parameters(self) -> list[Parameter]:
        return [
            Parameter.for_key(field.name, getattr(self, field.name))
            for field in dataclasses.fields(self)
        ]

    def visible(self) -> list[Parameter]:
        return [
            Parameter.for_key(name, getattr(self, name))
            for name in (field.name.lower() for field in VisibleHeaderField)
        ]

    def as_dict(self) -> dict:
        return dataclasses.asdict(self)

    def __getitem__(self, field: HeaderField) -> Parameter:
        name = dataclasses.fields(self)[field].name
        return Parameter.for_key(name, getattr(self, name))

    @classmethod
    def from_parameters(cls, parameters: list[Parameter]) -> "SpectrumHeader":
        if len(parameters) != len(HeaderField):
            raise ValueError(
                f"A header needs {len(HeaderField)} parameters, got {len(parameters)}."
            )
        values = {}
        for field, parameter in zip(dataclasses.fields(cls), parameters):
            if field.type in ("int", int):
                values[field.name] = parameter.as_int()
            elif field.type in ("float", float):
                values[field.name] = parameter.as_float()
            else:
                values[field.name] = parameter.as_str()
        return cls(**values)
