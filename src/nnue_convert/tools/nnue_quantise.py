"""Factoriser merging and fixed-point quantisation of NNUE weights."""

from __future__ import annotations

import importlib.util
import logging
from dataclasses import dataclass
from typing import Optional

_NUMPY_MISSING_MSG = (
    "The numpy package is required for NNUE conversion. Install it with 'pip install numpy'."
)

if importlib.util.find_spec("numpy") is None:  # pragma: no cover - deterministic import guard
    raise ModuleNotFoundError(_NUMPY_MISSING_MSG)
import numpy as _np

from ..nnue_common import (
    INPUT_SIZE,
    PSQT_SIZE,
    ConfigurationError,
    RangeOverflowError,
    ShapeMismatchError,
)
from .nnue_loader import RawNetwork

logger = logging.getLogger(__name__)

DEFAULT_QA = 255
DEFAULT_QB = 64

_I16_MIN = int(_np.iinfo(_np.int16).min)
_I16_MAX = int(_np.iinfo(_np.int16).max)


@dataclass(frozen=True)
class MergedNetwork:
    """Float tensors with the factoriser folded into every bucket.

    ``feature_weights`` has one row per (bucket, neuron) pair; row
    ``n + b * neurons`` holds the 768 input weights of neuron ``n`` in
    bucket ``b``.
    """

    feature_weights: _np.ndarray
    feature_bias: _np.ndarray
    output_weights: _np.ndarray
    output_bias: _np.ndarray
    psqt_weights: Optional[_np.ndarray]
    neurons: int
    buckets: int


@dataclass(frozen=True)
class QuantisedNetwork:
    """Contiguous int16 buffers ready for serialisation."""

    feature_weights: _np.ndarray
    feature_bias: _np.ndarray
    output_weights: _np.ndarray
    output_bias: _np.ndarray
    psqt_weights: Optional[_np.ndarray]
    hidden_size: int
    buckets: int = 1

    @property
    def has_buckets(self) -> bool:
        return self.buckets > 1

    @property
    def has_psqt(self) -> bool:
        return self.psqt_weights is not None


def _frozen(array: _np.ndarray) -> _np.ndarray:
    array = _np.ascontiguousarray(array)
    array.flags.writeable = False
    return array


def _check_scale(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"Quantisation parameter {name} must be a positive integer, got {value!r}")
    return value


# ---------------------------------------------------------------------------
# Shape derivation and merging


def derive_shape(raw: RawNetwork) -> tuple[int, int, int]:
    """Return ``(neurons, buckets, out_size)`` or raise on inconsistent shapes."""

    if raw.factoriser_weight is not None:
        neurons = raw.factoriser_weight.shape[0]
    else:
        neurons = raw.perspective_weight.shape[0]
    if raw.output_weight.shape[0] == 0:
        raise ShapeMismatchError("out.weight has no rows")
    out_size = raw.output_weight.shape[1]
    logger.debug("ft_size: %d, neurons: %d, out_size: %d", raw.perspective_weight.shape[0], neurons, out_size)
    if 2 * neurons != out_size:
        raise ShapeMismatchError(
            f"There are {neurons} neurons, but out.weight has {out_size} inputs "
            f"(should be twice as many)"
        )

    if raw.factoriser_weight is not None:
        factoriser_width = raw.factoriser_weight.shape[1]
        if factoriser_width != INPUT_SIZE:
            raise ShapeMismatchError(
                f"factoriser.weight rows have {factoriser_width} inputs, expected {INPUT_SIZE}"
            )
        width = raw.perspective_weight.shape[1]
        buckets = width // factoriser_width
        if buckets < 1 or width % factoriser_width:
            raise ShapeMismatchError(
                f"perspective.weight rows have {width} inputs, which is not a positive "
                f"multiple of the factoriser width {factoriser_width}"
            )
    else:
        buckets = 1
    return neurons, buckets, out_size


def _check_aux_shapes(raw: RawNetwork, neurons: int, buckets: int) -> None:
    rows, width = raw.perspective_weight.shape
    if rows != neurons:
        raise ShapeMismatchError(
            f"perspective.weight has {rows} rows but the factoriser has {neurons} neurons"
        )
    if width != INPUT_SIZE * buckets:
        raise ShapeMismatchError(
            f"perspective.weight rows have {width} inputs, expected {INPUT_SIZE} x {buckets} "
            f"bucket(s) = {INPUT_SIZE * buckets}"
        )
    bias_len = raw.perspective_bias.shape[0]
    if bias_len not in (neurons, neurons * buckets):
        raise ShapeMismatchError(
            f"perspective.bias has {bias_len} entries, expected {neurons}"
            + (f" or {neurons * buckets}" if buckets > 1 else "")
        )
    if raw.factoriser_bias is not None:
        factoriser_len = raw.factoriser_bias.shape[0]
        if factoriser_len == 0 or bias_len % factoriser_len:
            raise ShapeMismatchError(
                f"factoriser.bias has {factoriser_len} entries, which does not tile "
                f"perspective.bias of length {bias_len}"
            )
    if raw.output_weight.shape[0] != 1:
        raise ShapeMismatchError(
            f"out.weight must have exactly one row, found {raw.output_weight.shape[0]}"
        )
    if raw.output_bias.shape[0] != 1:
        raise ShapeMismatchError(
            f"out.bias must have exactly one entry, found {raw.output_bias.shape[0]}"
        )
    if raw.psqt_weight is not None:
        if raw.psqt_weight.shape[0] == 0 or raw.psqt_weight.shape[1] != PSQT_SIZE:
            raise ShapeMismatchError(
                f"psqt.weight must have a first row of {PSQT_SIZE} values, "
                f"found shape {raw.psqt_weight.shape}"
            )


def merge_network(raw: RawNetwork) -> MergedNetwork:
    """Fold the factoriser into each bucket and stack buckets as neurons."""

    neurons, buckets, _ = derive_shape(raw)
    _check_aux_shapes(raw, neurons, buckets)
    if buckets == 1:
        logger.debug("Network has a single input bucket")
    else:
        logger.debug("Network has %d input buckets", buckets)

    # [neurons][buckets * 768] -> [buckets][neurons][768]
    weights = raw.perspective_weight.reshape(neurons, buckets, INPUT_SIZE)
    if raw.factoriser_weight is not None:
        weights = weights + raw.factoriser_weight[:, None, :]
    weights = weights.transpose(1, 0, 2).reshape(buckets * neurons, INPUT_SIZE)

    bias = raw.perspective_bias
    if raw.factoriser_bias is not None:
        chunk = raw.factoriser_bias.shape[0]
        bias = (bias.reshape(-1, chunk) + raw.factoriser_bias).reshape(-1)

    psqt = None
    if raw.psqt_weight is not None:
        psqt = _frozen(raw.psqt_weight[0])

    return MergedNetwork(
        feature_weights=_frozen(weights),
        feature_bias=_frozen(bias),
        output_weights=_frozen(raw.output_weight.reshape(-1)),
        output_bias=_frozen(raw.output_bias),
        psqt_weights=psqt,
        neurons=neurons,
        buckets=buckets,
    )


# ---------------------------------------------------------------------------
# Quantisation


def quantise(values: _np.ndarray, scale: int, *, name: str = "tensor") -> _np.ndarray:
    """Scale ``values`` and truncate toward zero into int16.

    Values whose scaled magnitude does not fit int16 raise
    :class:`RangeOverflowError` rather than saturating.
    """

    flat = _np.asarray(values, dtype=_np.float64).reshape(-1)
    scaled = _np.trunc(flat * float(scale))
    bad = _np.flatnonzero((scaled < _I16_MIN) | (scaled > _I16_MAX))
    if bad.size:
        index = int(bad[0])
        raise RangeOverflowError(name, index, float(scaled[index]), _I16_MIN, _I16_MAX)
    return scaled.astype(_np.int16).reshape(_np.shape(values))


def quantise_network(merged: MergedNetwork, qa: int = DEFAULT_QA, qb: int = DEFAULT_QB) -> QuantisedNetwork:
    """Convert a merged network into fixed-point buffers.

    Feature weights are stored feature-major within each bucket block:
    ``index = b * 768 * neurons + f * neurons + n``. Output weights keep
    their row-major order.
    """

    qa = _check_scale("qa", qa)
    qb = _check_scale("qb", qb)
    neurons, buckets = merged.neurons, merged.buckets

    feature = quantise(merged.feature_weights, qa, name="feature_weights")
    feature = feature.reshape(buckets, neurons, INPUT_SIZE).transpose(0, 2, 1).reshape(-1)

    psqt = None
    if merged.psqt_weights is not None:
        psqt = _frozen(quantise(merged.psqt_weights, qa * qb, name="psqt_weights"))

    network = QuantisedNetwork(
        feature_weights=_frozen(feature),
        feature_bias=_frozen(quantise(merged.feature_bias, qa, name="feature_bias")),
        output_weights=_frozen(quantise(merged.output_weights, qb, name="output_weights")),
        output_bias=_frozen(quantise(merged.output_bias, qa * qb, name="output_bias")),
        psqt_weights=psqt,
        hidden_size=neurons,
        buckets=buckets,
    )
    logger.debug(
        "Quantised %d feature weights, %d feature biases, %d output weights (qa=%d, qb=%d)",
        network.feature_weights.size,
        network.feature_bias.size,
        network.output_weights.size,
        qa,
        qb,
    )
    return network


def convert_network(raw: RawNetwork, qa: int = DEFAULT_QA, qb: int = DEFAULT_QB) -> QuantisedNetwork:
    """Merge and quantise ``raw`` in one step."""

    _check_scale("qa", qa)
    _check_scale("qb", qb)
    return quantise_network(merge_network(raw), qa, qb)


__all__ = [
    "DEFAULT_QA",
    "DEFAULT_QB",
    "MergedNetwork",
    "QuantisedNetwork",
    "convert_network",
    "derive_shape",
    "merge_network",
    "quantise",
    "quantise_network",
]
