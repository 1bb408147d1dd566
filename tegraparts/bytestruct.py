"""Little-endian on-disk records declared as frozen dataclasses.

Every structure decoded by ``tegraparts`` is a sequence of little-endian unsigned
integers and fixed-width byte strings, so that is all a ``ByteStruct`` field can
be::

    @dataclasses.dataclass(frozen=True)
    class Record(ByteStruct):
        id: Annotated[int, 4]          # uint32_t
        name: Annotated[bytes, 4]      # char[4]
        reserved: Annotated[bytes, 8]  # kept, never interpreted

Fields which are not interpreted are declared as ``bytes`` as well, so that the
``bytes`` form of a parsed record is always identical to the data it was parsed
from.
"""

from __future__ import annotations

import struct
from dataclasses import InitVar
from typing import Any, ClassVar, TypeVar

from typing_extensions import Annotated, get_args, get_origin, get_type_hints

from .base import ValidationError
from .typing_ import ReadableBuffer

__all__ = ["ByteStruct"]


UINT_FORMATS = {1: "B", 2: "H", 4: "I", 8: "Q"}
BYTEORDER = "<"

_Bs = TypeVar("_Bs", bound="ByteStruct")


def _field_format(cls_name: str, name: str, type_: Any) -> tuple[type, str]:
    """Return the annotated type and the `struct` format of a single field."""
    if get_origin(type_) is not Annotated:
        raise TypeError(
            f"Field {name!r} of {cls_name} must be annotated with its size, got "
            f"{type_}"
        )

    kind, size, *_ = get_args(type_)
    if not isinstance(size, int):
        raise TypeError(f"Size of field {name!r} must be an int, got {size!r}")
    if size < 1:
        raise ValueError(f"Size of field {name!r} must be at least 1, got {size}")

    if kind is int:
        if size not in UINT_FORMATS:
            raise ValueError(
                f"Integer field {name!r} must be one of {tuple(UINT_FORMATS)} bytes "
                f"wide, got {size}"
            )
        return kind, UINT_FORMATS[size]
    if kind is bytes:
        return kind, f"{size}s"
    raise TypeError(
        f"Field {name!r} of {cls_name} must be int or bytes, got {kind}"
    )


class _ByteStructMeta(type):
    """Metaclass of `ByteStruct`.

    Reads the field annotations of every subclass and stores the `struct` format
    and the size of the record in `__bytestruct_format__` and
    `__bytestruct_size__`. `__bytestruct_fields__` maps field names to their
    annotated type and size.
    """

    def __init__(cls, name: str, bases: tuple[type, ...], namespace: dict[str, Any]):
        super().__init__(name, bases, namespace)
        if not bases:
            return  # ByteStruct itself

        format_ = BYTEORDER
        fields: dict[str, tuple[type, int]] = {}

        for field, type_ in get_type_hints(cls, include_extras=True).items():
            if field.startswith("__bytestruct_") or type(type_) is InitVar:
                continue
            if get_origin(type_) is ClassVar:
                continue

            kind, code = _field_format(name, field, type_)
            format_ += code
            fields[field] = (kind, struct.calcsize(BYTEORDER + code))

        cls.__bytestruct_fields__ = fields
        cls.__bytestruct_format__ = format_
        cls.__bytestruct_size__ = struct.calcsize(format_)

    def __len__(cls) -> int:
        """Size of the record in bytes."""
        return cls.__bytestruct_size__


class ByteStruct(metaclass=_ByteStructMeta):
    """Base class of fixed-layout little-endian records.

    Subclasses must be frozen dataclasses. Instances are checked when they are
    created, either directly or through `from_bytes()` / `from_buffer()`: byte
    strings must have the declared width, integers must fit their field, and
    `validate()` runs last.
    """

    __bytestruct_fields__: "dict[str, tuple[type, int]]"
    __bytestruct_format__: str
    __bytestruct_size__: int

    __bytestruct_packed__: bytes

    # noinspection PyUnusedLocal
    def __init__(self, *args: Any, **kwargs: Any):
        self._check_subclass()

    @classmethod
    def _check_subclass(cls) -> None:
        if cls.__bases__ == (object,):
            raise TypeError(f"Cannot directly instantiate {cls.__name__}")
        params: Any = getattr(cls, "__dataclass_params__", None)
        if params is None or not params.frozen:
            raise TypeError(f"{cls.__name__} must be a frozen dataclass")

    def __post_init__(self) -> None:
        self._check_subclass()
        if "__bytestruct_packed__" not in self.__dict__:
            self.__dict__["__bytestruct_packed__"] = self._pack()
        self.validate()

    def _pack(self) -> bytes:
        values = []
        for name, (kind, size) in self.__bytestruct_fields__.items():
            value = getattr(self, name)
            if kind is bytes and len(value) != size:
                raise ValidationError(
                    f"Field {name!r} must be {size} bytes long, got {len(value)} "
                    f"bytes"
                )
            values.append(value)

        try:
            return struct.pack(self.__bytestruct_format__, *values)
        except (struct.error, OverflowError) as e:
            raise ValidationError(
                f"Value out of range for {type(self).__name__}: {e}"
            ) from e

    def validate(self) -> None:
        """Check invariants beyond the field widths.

        Subclasses override this and raise a `ParseError` subclass.
        """

    @classmethod
    def from_bytes(cls: type[_Bs], b: ReadableBuffer) -> _Bs:
        """Parse a record from `b`, which must be exactly `len(cls)` bytes long."""
        cls._check_subclass()
        b = bytes(b)
        if len(b) != cls.__bytestruct_size__:
            raise ValueError(
                f"{cls.__name__} is {cls.__bytestruct_size__} bytes long, got "
                f"{len(b)} bytes"
            )

        self = cls.__new__(cls)
        # Keep the parsed data as the bytes form, so nothing is re-encoded.
        self.__dict__["__bytestruct_packed__"] = b
        values = struct.unpack(cls.__bytestruct_format__, b)
        self.__init__(*values)  # type: ignore[misc]
        return self

    @classmethod
    def from_buffer(cls: type[_Bs], buf: ReadableBuffer, offset: int = 0) -> _Bs:
        """Parse a record from `buf` at byte `offset`.

        Raises `ValueError` if the record would extend beyond the end of `buf`.
        """
        if offset < 0:
            raise ValueError("Offset must be zero or positive")
        view = memoryview(buf).cast("B")
        end = offset + cls.__bytestruct_size__
        if end > view.nbytes:
            raise ValueError(
                f"{cls.__name__} at offset {offset} ends at byte {end}, beyond the "
                f"end of the buffer ({view.nbytes} bytes)"
            )
        return cls.from_bytes(view[offset:end])

    def __bytes__(self) -> bytes:
        return self.__bytestruct_packed__

    def __len__(self) -> int:
        return self.__bytestruct_size__
