"""Shared NNUE format constants, errors and the network header record."""

from __future__ import annotations

from dataclasses import dataclass
import struct
from pathlib import Path
from typing import Dict, Optional, Tuple

INPUT_SIZE = 768
PSQT_SIZE = 64 * 12
ALIGNMENT = 64

HEADER_MAGIC = b"VIRI"
HEADER_VERSION = 1
HEADER_STRUCT = struct.Struct("<4s H H B B B H B B B 48s")
HEADER_NAME_CAPACITY = 48

FLAG_BIG_OUTPUT = 0x1
FLAG_PSQT = 0x2

ARCH_PERSPECTIVE = 0
ARCH_HALFKA = 1
BUCKETED_INPUT_BUCKETS = 64

ACTIVATION_CODES: Dict[str, int] = {
    "crelu": 0,
    "screlu": 1,
}

SPLIT_FILENAMES: Tuple[str, ...] = (
    "feature_weights.bin",
    "feature_bias.bin",
    "output_weights.bin",
    "output_bias.bin",
)
PSQT_FILENAME = "psqt_weights.bin"


class ConversionError(ValueError):
    """Base class for every error raised while converting a network."""


class InputReadError(ConversionError):
    """Raised when the input document cannot be read."""


class JSONParseError(ConversionError):
    """Raised when the input document is not valid JSON."""

    def __init__(self, message: str, *, line: int | None = None, column: int | None = None):
        super().__init__(message)
        self.line = line
        self.column = column


class SchemaError(ConversionError):
    """Raised when a tensor is missing, duplicated or has the wrong type."""

    def __init__(self, message: str, *, key: str | None = None, suggestion: str | None = None):
        super().__init__(message)
        self.key = key
        self.suggestion = suggestion


class ShapeMismatchError(ConversionError):
    """Raised when tensor dimensions disagree with each other."""


class RangeOverflowError(ConversionError):
    """Raised when a quantised value does not fit its target integer width."""

    def __init__(self, tensor: str, index: int, value: float | int, low: int, high: int):
        super().__init__(
            f"{tensor}[{index}] = {value} is outside the representable range [{low}, {high}]"
        )
        self.tensor = tensor
        self.index = index
        self.value = value
        self.low = low
        self.high = high


class ConfigurationError(ConversionError):
    """Raised when conversion settings are inconsistent."""


class OutputWriteError(ConversionError):
    """Raised when an output artefact cannot be written."""


class NetworkFormatError(ConversionError):
    """Raised when a serialised network fails validation."""


def padding_for(length: int, alignment: int = ALIGNMENT) -> int:
    """Return the number of zero bytes needed to align ``length``."""

    return (alignment - length % alignment) % alignment


def encode_name(name: Optional[str]) -> bytes:
    """Encode and bound-check a network name for the header."""

    if not name:
        raise ConfigurationError(
            "A network name is required when writing a header; pass --name or --no-header"
        )
    encoded = name.encode("utf-8")
    if len(encoded) > HEADER_NAME_CAPACITY:
        raise ConfigurationError(
            f"Network name is {len(encoded)} bytes long; "
            f"the header holds at most {HEADER_NAME_CAPACITY}"
        )
    return encoded


@dataclass(frozen=True)
class NetworkHeader:
    """Fixed 64-byte record placed in front of a unified network file."""

    hidden_size: int
    name: str
    architecture: int = ARCH_PERSPECTIVE
    activation: int = ACTIVATION_CODES["screlu"]
    flags: int = 0
    input_buckets: int = 1
    output_buckets: int = 1
    version: int = HEADER_VERSION
    magic: bytes = HEADER_MAGIC

    @classmethod
    def for_network(
        cls,
        *,
        hidden_size: int,
        has_buckets: bool,
        has_psqt: bool,
        big_out: bool,
        name: Optional[str],
        activation: str = "screlu",
    ) -> "NetworkHeader":
        encode_name(name)
        if activation not in ACTIVATION_CODES:
            choices = ", ".join(sorted(ACTIVATION_CODES))
            raise ConfigurationError(f"Unknown activation {activation!r}; expected one of {choices}")
        if not 0 < hidden_size <= 0xFFFF:
            raise ConfigurationError(
                f"Hidden size {hidden_size} does not fit the header's 16-bit field"
            )
        flags = 0
        if big_out:
            flags |= FLAG_BIG_OUTPUT
        if has_psqt:
            flags |= FLAG_PSQT
        return cls(
            hidden_size=hidden_size,
            name=name or "",
            architecture=ARCH_HALFKA if has_buckets else ARCH_PERSPECTIVE,
            activation=ACTIVATION_CODES[activation],
            flags=flags,
            input_buckets=BUCKETED_INPUT_BUCKETS if has_buckets else 1,
        )

    def to_bytes(self) -> bytes:
        encoded = encode_name(self.name)
        return HEADER_STRUCT.pack(
            self.magic,
            self.version,
            self.flags,
            0,
            self.architecture,
            self.activation,
            self.hidden_size,
            self.input_buckets,
            self.output_buckets,
            len(encoded),
            encoded,
        )

    @classmethod
    def from_bytes(cls, raw: bytes) -> "NetworkHeader":
        """Parse a header previously produced by :meth:`to_bytes`."""

        if len(raw) < HEADER_STRUCT.size:
            raise NetworkFormatError(
                f"Header is truncated: expected {HEADER_STRUCT.size} bytes, got {len(raw)}"
            )
        (
            magic,
            version,
            flags,
            _reserved,
            architecture,
            activation,
            hidden_size,
            input_buckets,
            output_buckets,
            name_len,
            name_field,
        ) = HEADER_STRUCT.unpack(raw[: HEADER_STRUCT.size])
        if magic != HEADER_MAGIC:
            raise NetworkFormatError(f"Invalid network header magic {magic!r}")
        if name_len > HEADER_NAME_CAPACITY:
            raise NetworkFormatError(f"Header name length {name_len} exceeds {HEADER_NAME_CAPACITY}")
        try:
            name = name_field[:name_len].decode("utf-8")
        except UnicodeDecodeError as exc:
            raise NetworkFormatError("Header name is not valid UTF-8") from exc
        return cls(
            hidden_size=hidden_size,
            name=name,
            architecture=architecture,
            activation=activation,
            flags=flags,
            input_buckets=input_buckets,
            output_buckets=output_buckets,
            version=version,
            magic=magic,
        )

    @property
    def big_out(self) -> bool:
        return bool(self.flags & FLAG_BIG_OUTPUT)

    @property
    def has_psqt(self) -> bool:
        return bool(self.flags & FLAG_PSQT)


def read_network_header(path: Path) -> NetworkHeader:
    """Read and validate the header at the start of a unified network file."""

    with path.open("rb") as fh:
        raw = fh.read(HEADER_STRUCT.size)
    return NetworkHeader.from_bytes(raw)


__all__ = [
    "ACTIVATION_CODES",
    "ALIGNMENT",
    "ARCH_HALFKA",
    "ARCH_PERSPECTIVE",
    "BUCKETED_INPUT_BUCKETS",
    "ConfigurationError",
    "ConversionError",
    "FLAG_BIG_OUTPUT",
    "FLAG_PSQT",
    "HEADER_MAGIC",
    "HEADER_NAME_CAPACITY",
    "HEADER_STRUCT",
    "HEADER_VERSION",
    "INPUT_SIZE",
    "InputReadError",
    "JSONParseError",
    "NetworkFormatError",
    "NetworkHeader",
    "OutputWriteError",
    "PSQT_FILENAME",
    "PSQT_SIZE",
    "RangeOverflowError",
    "SPLIT_FILENAMES",
    "SchemaError",
    "ShapeMismatchError",
    "encode_name",
    "padding_for",
    "read_network_header",
]
