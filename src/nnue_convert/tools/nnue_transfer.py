"""Serialise quantised NNUE networks into engine-loadable binaries."""

from __future__ import annotations

import argparse
import contextlib
import hashlib
import importlib.util
import json
import logging
import os
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

_NUMPY_MISSING_MSG = (
    "The numpy package is required for NNUE conversion. Install it with 'pip install numpy'."
)

if importlib.util.find_spec("numpy") is None:  # pragma: no cover - deterministic import guard
    raise ModuleNotFoundError(_NUMPY_MISSING_MSG)
import numpy as _np

from ..nnue_common import (
    ACTIVATION_CODES,
    PSQT_FILENAME,
    SPLIT_FILENAMES,
    ConfigurationError,
    ConversionError,
    NetworkHeader,
    OutputWriteError,
    RangeOverflowError,
    encode_name,
    padding_for,
)
from .nnue_loader import DEFAULT_FT_NAME, DEFAULT_OUT_NAME, MODES, load_network
from .nnue_quantise import DEFAULT_QA, DEFAULT_QB, QuantisedNetwork, convert_network

logger = logging.getLogger(__name__)

_I8_MIN = int(_np.iinfo(_np.int8).min)
_I8_MAX = int(_np.iinfo(_np.int8).max)


# ---------------------------------------------------------------------------
# Settings


@dataclass(frozen=True)
class ConversionSettings:
    """Options supplied by the CLI (or any other caller) to :func:`convert`."""

    qa: int = DEFAULT_QA
    qb: int = DEFAULT_QB
    big_out: bool = False
    header: bool = True
    name: Optional[str] = None
    mode: str = "rich"
    ft_name: str = DEFAULT_FT_NAME
    out_name: str = DEFAULT_OUT_NAME
    activation: str = "screlu"

    def validate(self, *, unified: bool = True) -> None:
        """Raise :class:`ConfigurationError` for unusable settings.

        The header name is only required when ``unified`` output is requested,
        since split directories never carry a header.
        """

        for label, value in (("qa", self.qa), ("qb", self.qb)):
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(
                    f"Quantisation parameter {label} must be a positive integer, got {value!r}"
                )
        if self.mode not in MODES:
            raise ConfigurationError(
                f"Unknown loader mode {self.mode!r}; expected one of {', '.join(MODES)}"
            )
        if self.activation not in ACTIVATION_CODES:
            choices = ", ".join(sorted(ACTIVATION_CODES))
            raise ConfigurationError(
                f"Unknown activation {self.activation!r}; expected one of {choices}"
            )
        if (self.header and unified) or self.name is not None:
            encode_name(self.name)


# ---------------------------------------------------------------------------
# Byte encoding


def encode_i16(values: _np.ndarray) -> bytes:
    return _np.asarray(values, dtype=_np.int16).astype("<i2", copy=False).tobytes()


def encode_i8(values: _np.ndarray) -> bytes:
    return _np.asarray(values, dtype=_np.int8).astype("i1", copy=False).tobytes()


def narrow_output_weights(weights: _np.ndarray) -> _np.ndarray:
    """Return a fresh int8 copy of ``weights`` or raise on the first overflow."""

    flat = _np.asarray(weights).reshape(-1)
    bad = _np.flatnonzero((flat < _I8_MIN) | (flat > _I8_MAX))
    if bad.size:
        index = int(bad[0])
        raise RangeOverflowError("output_weights", index, int(flat[index]), _I8_MIN, _I8_MAX)
    return flat.astype(_np.int8)


def _output_weight_bytes(network: QuantisedNetwork, big_out: bool) -> bytes:
    if big_out:
        return encode_i16(network.output_weights)
    return encode_i8(narrow_output_weights(network.output_weights))


def build_header(
    network: QuantisedNetwork,
    *,
    big_out: bool,
    name: Optional[str],
    activation: str = "screlu",
) -> NetworkHeader:
    return NetworkHeader.for_network(
        hidden_size=network.hidden_size,
        has_buckets=network.has_buckets,
        has_psqt=network.has_psqt,
        big_out=big_out,
        name=name,
        activation=activation,
    )


def build_unified(
    network: QuantisedNetwork,
    *,
    big_out: bool = False,
    header: NetworkHeader | None = None,
) -> bytes:
    """Lay out a single-file network.

    ``[header][feature weights][feature bias][output weights][psqt][output bias]``
    followed by zero padding up to the next 64-byte boundary. The header is
    a whole number of 64-byte blocks and does not affect the padding.
    """

    sections: List[bytes] = [
        encode_i16(network.feature_weights),
        encode_i16(network.feature_bias),
        _output_weight_bytes(network, big_out),
    ]
    if network.psqt_weights is not None:
        sections.append(encode_i16(network.psqt_weights))
    sections.append(encode_i16(network.output_bias))
    payload = b"".join(sections)
    padded = payload + b"\x00" * padding_for(len(payload))
    if header is None:
        return padded
    return header.to_bytes() + padded


def split_sections(network: QuantisedNetwork, *, big_out: bool = False) -> List[Tuple[str, bytes]]:
    """Return ``(filename, payload)`` pairs for a split directory."""

    payloads = [
        encode_i16(network.feature_weights),
        encode_i16(network.feature_bias),
        _output_weight_bytes(network, big_out),
        encode_i16(network.output_bias),
    ]
    sections = list(zip(SPLIT_FILENAMES, payloads))
    if network.psqt_weights is not None:
        sections.append((PSQT_FILENAME, encode_i16(network.psqt_weights)))
    return sections


# ---------------------------------------------------------------------------
# Writers


def _atomic_write(path: Path, data: bytes) -> None:
    tmp_path = path.with_name(f".{path.name}.tmp")
    try:
        with tmp_path.open("wb") as fh:
            fh.write(data)
        os.replace(tmp_path, path)
    except OSError as exc:
        with contextlib.suppress(OSError):
            tmp_path.unlink()
        raise OutputWriteError(f"Unable to write {path}: {exc}") from exc
    logger.debug("Wrote %d bytes to %s", len(data), path)


def write_unified(
    path: Path,
    network: QuantisedNetwork,
    *,
    big_out: bool = False,
    header: NetworkHeader | None = None,
) -> bytes:
    data = build_unified(network, big_out=big_out, header=header)
    path = Path(path)
    if path.parent and not path.parent.exists():
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OutputWriteError(f"Unable to create {path.parent}: {exc}") from exc
    _atomic_write(path, data)
    return data


def write_split(
    directory: Path,
    network: QuantisedNetwork,
    *,
    big_out: bool = False,
) -> List[Tuple[Path, bytes]]:
    sections = split_sections(network, big_out=big_out)
    directory = Path(directory)
    try:
        created = not directory.exists()
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise OutputWriteError(f"Unable to create {directory}: {exc}") from exc

    written: List[Tuple[Path, bytes]] = []
    try:
        for filename, payload in sections:
            target = directory / filename
            _atomic_write(target, payload)
            written.append((target, payload))
    except OutputWriteError:
        if created:
            try:
                shutil.rmtree(directory)
            except OSError:
                logger.debug("Failed to remove output directory after error: %s", directory)
        raise
    return written


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError:
        logger.debug("Failed to remove output file after error: %s", path)


# ---------------------------------------------------------------------------
# Summary


@dataclass(frozen=True)
class OutputInfo:
    """Description of one file written during conversion."""

    kind: str
    path: Path
    bytes: int
    sha256: str


@dataclass(frozen=True)
class ConversionSummary:
    """Summary of artefacts written by :func:`convert`."""

    source: Optional[Path]
    outputs: Tuple[OutputInfo, ...]
    hidden_size: int
    buckets: int
    has_psqt: bool
    big_out: bool
    header: Optional[NetworkHeader]
    log_path: Optional[Path] = None

    @property
    def total_bytes(self) -> int:
        return sum(info.bytes for info in self.outputs)

    def to_dict(self) -> Dict[str, object]:
        return {
            "source": str(self.source) if self.source is not None else "<stdin>",
            "hidden_size": self.hidden_size,
            "buckets": self.buckets,
            "has_psqt": self.has_psqt,
            "big_out": self.big_out,
            "header": None
            if self.header is None
            else {
                "name": self.header.name,
                "architecture": self.header.architecture,
                "activation": self.header.activation,
                "flags": self.header.flags,
            },
            "log_path": str(self.log_path) if self.log_path is not None else None,
            "outputs": [
                {
                    "kind": info.kind,
                    "path": str(info.path),
                    "bytes": info.bytes,
                    "sha256": info.sha256,
                }
                for info in self.outputs
            ],
            "total_bytes": self.total_bytes,
        }


def format_summary(summary: ConversionSummary) -> str:
    """Return a human-friendly multi-line summary of conversion outputs."""

    title = "NNUE Conversion Summary"
    lines = [title, "=" * len(title)]
    lines.append(f"Source : {summary.source if summary.source is not None else '<stdin>'}")
    lines.append(f"Network: {summary.hidden_size}x2, {summary.buckets} bucket(s)")
    lines.append(f"PSQT   : {'yes' if summary.has_psqt else 'no'}")
    lines.append(f"Output weights: {'i16' if summary.big_out else 'i8'}")
    if summary.header is not None:
        lines.append(f"Header : {summary.header.name!r}")
    if summary.log_path:
        lines.append(f"Log file: {summary.log_path}")

    lines.append("")
    lines.append("Files:")
    if summary.outputs:
        kind_width = max(len(info.kind) for info in summary.outputs)
        for info in summary.outputs:
            lines.append(f"  {info.kind.ljust(kind_width)}  {info.bytes:>9}  {info.path}")
    else:
        lines.append("  <no files written>")
    lines.append("")
    lines.append(f"Total files: {len(summary.outputs)} | Total bytes: {summary.total_bytes}")
    return "\n".join(lines)


def render_summary(summary: ConversionSummary, *, format: str = "table") -> str:
    """Serialise ``summary`` as ``"table"`` or ``"json"`` (case-insensitive)."""

    normalized = format.lower()
    if normalized == "table":
        return format_summary(summary)
    if normalized == "json":
        return json.dumps(summary.to_dict(), indent=2, sort_keys=True)
    raise ValueError(f"Unsupported summary format: {format}")


def _output_info(kind: str, path: Path, data: bytes) -> OutputInfo:
    return OutputInfo(kind, path, len(data), hashlib.sha256(data).hexdigest())


# ---------------------------------------------------------------------------
# Conversion driver


@contextlib.contextmanager
def _log_file(log_path: Optional[Path]) -> Iterator[None]:
    if log_path is None:
        yield
        return
    package_logger = logging.getLogger(__name__.rsplit(".", 1)[0])
    previous_level = package_logger.level
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    except OSError as exc:
        raise OutputWriteError(f"Unable to open log file {log_path}: {exc}") from exc
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG)
    try:
        yield
    finally:
        package_logger.removeHandler(handler)
        handler.close()
        package_logger.setLevel(previous_level or logging.NOTSET)


def convert(
    source: Path | str | None,
    *,
    unified: Path | None = None,
    split: Path | None = None,
    settings: ConversionSettings | None = None,
    verbose: bool = False,
    log_path: Path | None = None,
) -> ConversionSummary:
    """Convert a JSON (or safetensors) network into NNUE binaries.

    ``source`` of ``None`` or ``"-"`` reads the first line of standard input.
    At least one of ``unified`` (a single padded file) or ``split`` (a
    directory of raw per-tensor dumps) must be supplied. Every check runs
    before the first output byte is written.
    """

    settings = settings or ConversionSettings()
    if unified is None and split is None:
        raise ConfigurationError(
            "No output path specified, try --unified <PATH> or --split <PATH> "
            "(you probably want --unified)"
        )
    settings.validate(unified=unified is not None)

    def log_verbose(message: str, *args: object) -> None:
        if verbose:
            logger.info(message, *args)
        else:
            logger.debug(message, *args)

    def log_notice(message: str, *args: object) -> None:
        logger.info(message, *args)

    source_path = None if source is None or str(source) == "-" else Path(source).expanduser()

    with _log_file(log_path):
        try:
            log_notice("Reading network from %s", source_path or "<stdin>")
            raw = load_network(
                source_path,
                mode=settings.mode,
                ft_name=settings.ft_name,
                out_name=settings.out_name,
            )
            network = convert_network(raw, settings.qa, settings.qb)
            log_verbose(
                "Looks like a %dx2 net with %d bucket(s)%s",
                network.hidden_size,
                network.buckets,
                " and a PSQT" if network.has_psqt else "",
            )

            header = None
            if settings.header and unified is not None:
                header = build_header(
                    network,
                    big_out=settings.big_out,
                    name=settings.name,
                    activation=settings.activation,
                )
            # Narrowing errors must surface before anything is written.
            if not settings.big_out:
                narrow_output_weights(network.output_weights)

            outputs: List[OutputInfo] = []
            if unified is not None:
                unified = Path(unified).expanduser()
                data = write_unified(unified, network, big_out=settings.big_out, header=header)
                outputs.append(_output_info("unified", unified, data))
                log_notice("Wrote %d bytes to %s", len(data), unified)
            if split is not None:
                split = Path(split).expanduser()
                try:
                    written = write_split(split, network, big_out=settings.big_out)
                except OutputWriteError:
                    if unified is not None:
                        _discard(unified)
                    raise
                for path, data in written:
                    outputs.append(_output_info("split", path, data))
                    log_notice("Wrote %d bytes to %s", len(data), path)
        except ConversionError as exc:
            logger.exception("Conversion failed: %s", exc)
            raise

    summary = ConversionSummary(
        source=source_path,
        outputs=tuple(outputs),
        hidden_size=network.hidden_size,
        buckets=network.buckets,
        has_psqt=network.has_psqt,
        big_out=settings.big_out,
        header=header,
        log_path=log_path,
    )
    for line in format_summary(summary).splitlines():
        log_verbose(line)
    return summary


# ---------------------------------------------------------------------------
# Command line interface


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="nnue-convert",
        description="Convert JSON NNUE weights into quantised engine binaries.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "input",
        nargs="?",
        default=None,
        help="JSON or .safetensors network; reads the first line of stdin when omitted or '-'",
    )
    parser.add_argument(
        "-u",
        "--unified",
        type=Path,
        metavar="PATH",
        help="Output path for a unified converted model (use this if you want a single NNUE binary!)",
    )
    parser.add_argument(
        "-s",
        "--split",
        type=Path,
        metavar="PATH",
        help="Output directory for a split converted model",
    )
    parser.add_argument("--qa", type=int, default=DEFAULT_QA, metavar="K", help="The first quantisation parameter")
    parser.add_argument("--qb", type=int, default=DEFAULT_QB, metavar="K", help="The second quantisation parameter")
    parser.add_argument(
        "--ft-name",
        default=DEFAULT_FT_NAME,
        metavar="NAME",
        help="The name of the feature transformer layer",
    )
    parser.add_argument(
        "--out-name",
        default=DEFAULT_OUT_NAME,
        metavar="NAME",
        help="The name of the output layer",
    )
    parser.add_argument(
        "--big-out",
        action="store_true",
        help="Keep output weights as i16 instead of narrowing them to i8",
    )
    parser.add_argument(
        "--no-header",
        dest="header",
        action="store_false",
        help="Do not prepend the 64-byte network header to unified output",
    )
    parser.add_argument("--name", help="Network name stored in the header (at most 48 bytes)")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Require exactly the four feature/output tensors and nothing else",
    )
    parser.add_argument(
        "--activation",
        choices=sorted(ACTIVATION_CODES),
        default="screlu",
        help="Activation recorded in the header",
    )
    parser.add_argument(
        "--verbose",
        dest="verbose",
        action="store_true",
        default=None,
        help="Enable verbose logging (can also set NNUE_CONVERT_VERBOSE=1)",
    )
    parser.add_argument("--quiet", dest="verbose", action="store_false", help="Disable verbose logging")
    parser.add_argument("--log-file", type=Path, help="Write a DEBUG log of the run to this path")
    parser.add_argument(
        "--no-summary",
        dest="print_summary",
        action="store_false",
        help="Do not print the conversion summary",
    )
    parser.add_argument(
        "--summary-format",
        choices=("table", "json"),
        default="table",
        help="Format to use when rendering the conversion summary",
    )
    parser.set_defaults(print_summary=True)

    args = parser.parse_args(argv)

    if args.verbose is None:
        env_value = os.environ.get("NNUE_CONVERT_VERBOSE")
        if env_value is None:
            args.verbose = False
        else:
            args.verbose = env_value.lower() not in {"", "0", "false", "no"}

    if args.unified is None and args.split is None:
        parser.error(
            "No output path specified, try --unified <PATH> or --split <PATH> "
            "(you probably want --unified)"
        )

    args.settings = ConversionSettings(
        qa=args.qa,
        qb=args.qb,
        big_out=args.big_out,
        header=args.header,
        name=args.name,
        mode="strict" if args.strict else "rich",
        ft_name=args.ft_name,
        out_name=args.out_name,
        activation=args.activation,
    )
    return args


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.INFO)

    try:
        summary = convert(
            args.input,
            unified=args.unified,
            split=args.split,
            settings=args.settings,
            verbose=args.verbose,
            log_path=args.log_file,
        )
    except ModuleNotFoundError as exc:
        print(f"nnue-convert: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except ConversionError as exc:
        print(f"nnue-convert: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc

    if args.print_summary:
        print(render_summary(summary, format=args.summary_format))


if __name__ == "__main__":
    main()
