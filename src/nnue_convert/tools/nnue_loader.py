"""Read NNUE weight tensors from JSON documents and safetensors files.

Two key-resolution modes are supported. ``"rich"`` accepts canonical names or
their short aliases and picks up the optional factoriser and PSQT tensors.
``"strict"`` accepts a document with exactly the four feature/output tensors
and nothing else.
"""

from __future__ import annotations

import importlib.util
import json
import logging
import math
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

_NUMPY_MISSING_MSG = (
    "The numpy package is required for NNUE conversion. Install it with 'pip install numpy'."
)

if importlib.util.find_spec("numpy") is None:  # pragma: no cover - deterministic import guard
    raise ModuleNotFoundError(_NUMPY_MISSING_MSG)
import numpy as _np

from ..nnue_common import ConfigurationError, InputReadError, JSONParseError, SchemaError

_SAFETENSORS_MISSING_MSG = (
    "The `safetensors` package is required to read .safetensors networks. "
    "Install it with 'pip install safetensors'."
)

logger = logging.getLogger(__name__)

MODES = ("rich", "strict")
DEFAULT_FT_NAME = "perspective"
DEFAULT_OUT_NAME = "out"
FT_ALIAS = "ft"
FACTORISER_NAME = "factoriser"
FACTORISER_ALIAS = "fft"
PSQT_NAME = "psqt"


@dataclass(frozen=True)
class RawNetwork:
    """Floating point tensors exactly as they appear in the input document."""

    perspective_weight: _np.ndarray
    perspective_bias: _np.ndarray
    output_weight: _np.ndarray
    output_bias: _np.ndarray
    factoriser_weight: Optional[_np.ndarray] = None
    factoriser_bias: Optional[_np.ndarray] = None
    psqt_weight: Optional[_np.ndarray] = None

    @property
    def has_factoriser(self) -> bool:
        return self.factoriser_weight is not None


def safe_open(*args, **kwargs):
    """Proxy ``safetensors.safe_open`` so it can be monkeypatched in tests."""

    from safetensors import safe_open as _safe_open

    return _safe_open(*args, **kwargs)


# ---------------------------------------------------------------------------
# Input


def read_input(path: Path | str | None) -> str:
    """Return the document text from ``path``, or the first stdin line for ``-``."""

    if path is None or str(path) == "-":
        try:
            line = sys.stdin.readline()
        except (OSError, UnicodeDecodeError) as exc:
            raise InputReadError(f"Unable to read network from standard input: {exc}") from exc
        if not line.strip():
            raise InputReadError("No network document received on standard input")
        return line
    path = Path(path).expanduser()
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise InputReadError(f"{path} is not valid UTF-8: {exc}") from exc
    except OSError as exc:
        raise InputReadError(f"Unable to read {path}: {exc}") from exc


def _decode_document(text: str) -> Dict[str, Any]:
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise JSONParseError(
            f"Malformed JSON at line {exc.lineno} column {exc.colno}: {exc.msg}",
            line=exc.lineno,
            column=exc.colno,
        ) from exc
    if not isinstance(document, dict):
        raise SchemaError(
            f"Expected a JSON object at the top level, found {type(document).__name__}"
        )
    return document


# ---------------------------------------------------------------------------
# Tensor coercion


def _check_numbers(key: str, values: Any, depth: int, ndim: int) -> None:
    if depth == 0:
        if isinstance(values, bool) or not isinstance(values, (int, float)):
            raise SchemaError(
                f"Field {key!r} contains a non-numeric entry {values!r}", key=key
            )
        try:
            finite = math.isfinite(values)
        except OverflowError:
            raise SchemaError(
                f"Field {key!r} contains an integer too large for a float", key=key
            ) from None
        if not finite:
            raise SchemaError(f"Field {key!r} contains a non-finite value {values!r}", key=key)
        return
    if not isinstance(values, list):
        raise SchemaError(
            f"Field {key!r} must be a {ndim}-dimensional array of numbers", key=key
        )
    for item in values:
        _check_numbers(key, item, depth - 1, ndim)


def _coerce_tensor(key: str, value: Any, ndim: int) -> _np.ndarray:
    if isinstance(value, _np.ndarray):
        if value.dtype.kind not in "fiu":
            raise SchemaError(f"Field {key!r} has non-numeric dtype {value.dtype}", key=key)
        array = value.astype(_np.float64)
        if array.ndim != ndim:
            raise SchemaError(
                f"Field {key!r} must have {ndim} dimension(s), found {array.ndim}", key=key
            )
        if not _np.all(_np.isfinite(array)):
            raise SchemaError(f"Field {key!r} contains non-finite values", key=key)
    else:
        _check_numbers(key, value, ndim, ndim)
        try:
            array = _np.array(value, dtype=_np.float64)
        except ValueError as exc:
            raise SchemaError(f"Field {key!r} is a ragged array: {exc}", key=key) from exc
        if array.ndim != ndim:
            raise SchemaError(
                f"Field {key!r} is not a rectangular {ndim}-dimensional array", key=key
            )
    array.flags.writeable = False
    return array


# ---------------------------------------------------------------------------
# Key resolution


def _suggest_prefix(keys: Sequence[str]) -> Optional[str]:
    if not keys:
        return None
    return keys[0].split(".", 1)[0]


def _missing(key: str, keys: Sequence[str], option: str) -> SchemaError:
    suggestion = _suggest_prefix(keys)
    message = f"Missing required field {key!r}"
    if suggestion is not None and not key.startswith(f"{suggestion}."):
        message += (
            f"; the document's first key is {keys[0]!r}, try {option} {suggestion}"
        )
    return SchemaError(message, key=key, suggestion=suggestion)


def _lookup(
    tensors: Mapping[str, Any], names: Sequence[str]
) -> Tuple[Optional[str], Any]:
    found = [name for name in dict.fromkeys(names) if name in tensors]
    if len(found) > 1:
        raise SchemaError(
            f"Duplicate field: {found[0]!r} and {found[1]!r} name the same tensor",
            key=found[0],
        )
    if not found:
        return None, None
    return found[0], tensors[found[0]]


def _required(
    tensors: Mapping[str, Any],
    names: Sequence[str],
    ndim: int,
    option: str,
) -> _np.ndarray:
    key, value = _lookup(tensors, names)
    if key is None:
        raise _missing(names[0], list(tensors), option)
    return _coerce_tensor(key, value, ndim)


def _optional(tensors: Mapping[str, Any], names: Sequence[str], ndim: int) -> Optional[_np.ndarray]:
    key, value = _lookup(tensors, names)
    if key is None:
        return None
    return _coerce_tensor(key, value, ndim)


def _resolve_strict(tensors: Mapping[str, Any], ft_name: str, out_name: str) -> RawNetwork:
    expected = [
        f"{ft_name}.weight",
        f"{ft_name}.bias",
        f"{out_name}.weight",
        f"{out_name}.bias",
    ]
    keys = list(tensors)
    if len(keys) != len(expected):
        raise SchemaError(
            f"Expected exactly {len(expected)} fields ({', '.join(expected)}), "
            f"found {len(keys)}: {', '.join(keys) or '<none>'}"
        )
    for key in expected:
        if key not in tensors:
            option = "--ft-name" if key.startswith(f"{ft_name}.") else "--out-name"
            raise _missing(key, keys, option)
    return RawNetwork(
        perspective_weight=_coerce_tensor(expected[0], tensors[expected[0]], 2),
        perspective_bias=_coerce_tensor(expected[1], tensors[expected[1]], 1),
        output_weight=_coerce_tensor(expected[2], tensors[expected[2]], 2),
        output_bias=_coerce_tensor(expected[3], tensors[expected[3]], 1),
    )


def _resolve_rich(tensors: Mapping[str, Any], ft_name: str, out_name: str) -> RawNetwork:
    ft_names = [ft_name, FT_ALIAS, DEFAULT_FT_NAME]
    fac_names = [FACTORISER_NAME, FACTORISER_ALIAS]
    network = RawNetwork(
        perspective_weight=_required(tensors, [f"{n}.weight" for n in ft_names], 2, "--ft-name"),
        perspective_bias=_required(tensors, [f"{n}.bias" for n in ft_names], 1, "--ft-name"),
        output_weight=_required(tensors, [f"{out_name}.weight"], 2, "--out-name"),
        output_bias=_required(tensors, [f"{out_name}.bias"], 1, "--out-name"),
        factoriser_weight=_optional(tensors, [f"{n}.weight" for n in fac_names], 2),
        factoriser_bias=_optional(tensors, [f"{n}.bias" for n in fac_names], 1),
        psqt_weight=_optional(tensors, [f"{PSQT_NAME}.weight"], 2),
    )
    known = {
        f"{prefix}.{suffix}"
        for prefix in (*ft_names, *fac_names, PSQT_NAME, out_name)
        for suffix in ("weight", "bias")
    }
    ignored = [key for key in tensors if key not in known]
    if ignored:
        logger.debug("Ignoring unrecognised fields: %s", ", ".join(ignored))
    return network


def resolve_tensors(
    tensors: Mapping[str, Any],
    *,
    mode: str = "rich",
    ft_name: str = DEFAULT_FT_NAME,
    out_name: str = DEFAULT_OUT_NAME,
) -> RawNetwork:
    """Build a :class:`RawNetwork` from a name -> tensor mapping."""

    if mode == "rich":
        network = _resolve_rich(tensors, ft_name, out_name)
    elif mode == "strict":
        network = _resolve_strict(tensors, ft_name, out_name)
    else:
        raise ConfigurationError(f"Unknown loader mode {mode!r}; expected one of {', '.join(MODES)}")
    logger.debug(
        "Resolved tensors: perspective %s, output %s, factoriser %s, psqt %s",
        network.perspective_weight.shape,
        network.output_weight.shape,
        None if network.factoriser_weight is None else network.factoriser_weight.shape,
        None if network.psqt_weight is None else network.psqt_weight.shape,
    )
    return network


def parse_network(
    text: str,
    *,
    mode: str = "rich",
    ft_name: str = DEFAULT_FT_NAME,
    out_name: str = DEFAULT_OUT_NAME,
) -> RawNetwork:
    """Parse a JSON network document."""

    if mode not in MODES:
        raise ConfigurationError(f"Unknown loader mode {mode!r}; expected one of {', '.join(MODES)}")
    return resolve_tensors(_decode_document(text), mode=mode, ft_name=ft_name, out_name=out_name)


def _load_safetensors(path: Path) -> Dict[str, _np.ndarray]:
    if importlib.util.find_spec("safetensors") is None:
        raise ModuleNotFoundError(_SAFETENSORS_MISSING_MSG)
    from safetensors import SafetensorError

    tensors: Dict[str, _np.ndarray] = {}
    try:
        with safe_open(str(path), framework="numpy") as handle:
            for key in handle.keys():
                tensors[key] = handle.get_tensor(key)
    except (OSError, SafetensorError) as exc:
        raise InputReadError(f"Unable to read {path}: {exc}") from exc
    return tensors


def load_network(
    path: Path | str | None,
    *,
    mode: str = "rich",
    ft_name: str = DEFAULT_FT_NAME,
    out_name: str = DEFAULT_OUT_NAME,
) -> RawNetwork:
    """Load a network from a JSON file, a safetensors file, or stdin."""

    if path is not None and str(path) != "-" and Path(path).suffix == ".safetensors":
        if mode not in MODES:
            raise ConfigurationError(
                f"Unknown loader mode {mode!r}; expected one of {', '.join(MODES)}"
            )
        logger.debug("Reading safetensors network from %s", path)
        tensors = _load_safetensors(Path(path).expanduser())
        return resolve_tensors(tensors, mode=mode, ft_name=ft_name, out_name=out_name)
    return parse_network(read_input(path), mode=mode, ft_name=ft_name, out_name=out_name)


__all__: List[str] = [
    "DEFAULT_FT_NAME",
    "DEFAULT_OUT_NAME",
    "MODES",
    "RawNetwork",
    "load_network",
    "parse_network",
    "read_input",
    "resolve_tensors",
    "safe_open",
]
