from __future__ import annotations

import importlib.util
import io
import json
import sys
from pathlib import Path

import pytest

np = pytest.importorskip("numpy")

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
SRC = ROOT / "src"
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from nnue_convert.nnue_common import (
    ConfigurationError,
    InputReadError,
    JSONParseError,
    SchemaError,
)
from nnue_convert.tools import nnue_loader
from tests.network_fixtures import make_network, write_network


def _tiny(**overrides) -> dict:
    document = {
        "perspective.weight": [[0.5, -0.25], [1.0, 0.0]],
        "perspective.bias": [0.1, -0.1],
        "out.weight": [[0.1, 0.2, 0.3, 0.4]],
        "out.bias": [0.5],
    }
    document.update(overrides)
    return document


def test_parse_network_reads_required_tensors() -> None:
    raw = nnue_loader.parse_network(json.dumps(_tiny()))

    assert raw.perspective_weight.shape == (2, 2)
    assert raw.perspective_weight.dtype == np.float64
    assert raw.output_weight.shape == (1, 4)
    assert raw.output_bias.tolist() == [0.5]
    assert raw.factoriser_weight is None
    assert raw.psqt_weight is None
    assert not raw.perspective_weight.flags.writeable


def test_parse_network_accepts_integer_entries() -> None:
    raw = nnue_loader.parse_network(json.dumps(_tiny(**{"out.bias": [1]})))
    assert raw.output_bias.tolist() == [1.0]


def test_parse_network_accepts_short_aliases() -> None:
    document = {
        "ft.weight": [[0.5]],
        "ft.bias": [0.1],
        "fft.weight": [[0.25]],
        "fft.bias": [0.0],
        "out.weight": [[0.1, 0.2]],
        "out.bias": [0.0],
    }
    raw = nnue_loader.parse_network(json.dumps(document))

    assert raw.perspective_weight.tolist() == [[0.5]]
    assert raw.factoriser_weight.tolist() == [[0.25]]
    assert raw.has_factoriser


def test_parse_network_reads_optional_tensors() -> None:
    document = make_network(2, buckets=2, factoriser=True, psqt=True)
    raw = nnue_loader.parse_network(json.dumps(document))

    assert raw.perspective_weight.shape == (2, 768 * 2)
    assert raw.factoriser_weight.shape == (2, 768)
    assert raw.factoriser_bias.shape == (2,)
    assert raw.psqt_weight.shape == (1, 768)


def test_parse_network_honours_custom_layer_names() -> None:
    document = make_network(2, ft_name="l0", out_name="l1")
    raw = nnue_loader.parse_network(json.dumps(document), ft_name="l0", out_name="l1")

    assert raw.perspective_weight.shape == (2, 768)
    assert raw.output_weight.shape == (1, 4)


def test_missing_field_suggests_document_prefix() -> None:
    document = make_network(2, ft_name="l0")

    with pytest.raises(SchemaError) as excinfo:
        nnue_loader.parse_network(json.dumps(document))

    assert excinfo.value.key == "perspective.weight"
    assert excinfo.value.suggestion == "l0"
    assert "'perspective.weight'" in str(excinfo.value)
    assert "--ft-name l0" in str(excinfo.value)


def test_missing_output_field_names_key() -> None:
    document = _tiny()
    del document["out.bias"]

    with pytest.raises(SchemaError) as excinfo:
        nnue_loader.parse_network(json.dumps(document))

    assert excinfo.value.key == "out.bias"


def test_duplicate_alias_is_rejected() -> None:
    document = _tiny(**{"ft.weight": [[0.0, 0.0], [0.0, 0.0]]})

    with pytest.raises(SchemaError, match="Duplicate field"):
        nnue_loader.parse_network(json.dumps(document))


@pytest.mark.parametrize(
    "field, value",
    [
        ("perspective.bias", "abc"),
        ("perspective.bias", [0.1, "x"]),
        ("perspective.bias", [True, False]),
        ("perspective.weight", [0.1, 0.2]),
        ("perspective.weight", [[0.1, 0.2], [0.3]]),
        ("out.weight", [[0.1, None, 0.3, 0.4]]),
    ],
)
def test_mistyped_fields_are_schema_errors(field: str, value) -> None:
    with pytest.raises(SchemaError) as excinfo:
        nnue_loader.parse_network(json.dumps(_tiny(**{field: value})))
    assert excinfo.value.key == field


def test_non_finite_values_are_rejected() -> None:
    text = json.dumps(_tiny()).replace("0.5]", "NaN]")
    with pytest.raises(SchemaError, match="non-finite"):
        nnue_loader.parse_network(text)


def test_huge_integer_is_schema_error() -> None:
    text = json.dumps(_tiny()).replace("[0.5]", "[1" + "0" * 400 + "]")
    with pytest.raises(SchemaError) as excinfo:
        nnue_loader.parse_network(text)
    assert excinfo.value.key == "out.bias"


def test_malformed_json_reports_position() -> None:
    with pytest.raises(JSONParseError) as excinfo:
        nnue_loader.parse_network('{"perspective.weight": [[1.0,]}')
    assert excinfo.value.line == 1
    assert excinfo.value.column is not None


def test_top_level_must_be_object() -> None:
    with pytest.raises(SchemaError):
        nnue_loader.parse_network("[1, 2, 3]")


def test_unknown_mode_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        nnue_loader.parse_network(json.dumps(_tiny()), mode="lenient")


def test_strict_mode_accepts_exactly_four_fields() -> None:
    raw = nnue_loader.parse_network(json.dumps(_tiny()), mode="strict")
    assert raw.perspective_weight.shape == (2, 2)


def test_strict_mode_rejects_extra_fields() -> None:
    document = make_network(2, factoriser=True)

    with pytest.raises(SchemaError, match="Expected exactly 4 fields"):
        nnue_loader.parse_network(json.dumps(document), mode="strict")

    raw = nnue_loader.parse_network(json.dumps(document), mode="rich")
    assert raw.has_factoriser


def test_strict_mode_rejects_aliases() -> None:
    document = {
        "ft.weight": [[0.5]],
        "ft.bias": [0.1],
        "out.weight": [[0.1, 0.2]],
        "out.bias": [0.0],
    }
    with pytest.raises(SchemaError) as excinfo:
        nnue_loader.parse_network(json.dumps(document), mode="strict")
    assert excinfo.value.suggestion == "ft"

    raw = nnue_loader.parse_network(json.dumps(document), mode="strict", ft_name="ft")
    assert raw.perspective_bias.tolist() == [0.1]


def test_rich_mode_ignores_unknown_fields() -> None:
    raw = nnue_loader.parse_network(json.dumps(_tiny(**{"meta.epoch": [30]})))
    assert raw.perspective_bias.shape == (2,)


def test_read_input_uses_first_stdin_line(monkeypatch) -> None:
    monkeypatch.setattr(sys, "stdin", io.StringIO('{"a": 1}\n{"b": 2}\n'))
    assert nnue_loader.read_input("-") == '{"a": 1}\n'


def test_read_input_rejects_empty_stdin(monkeypatch) -> None:
    monkeypatch.setattr(sys, "stdin", io.StringIO(""))
    with pytest.raises(InputReadError):
        nnue_loader.read_input(None)


def test_read_input_wraps_missing_file(tmp_path: Path) -> None:
    with pytest.raises(InputReadError, match="missing.json"):
        nnue_loader.read_input(tmp_path / "missing.json")


def test_load_network_reads_json_file(tmp_path: Path) -> None:
    path = write_network(tmp_path / "net.json", make_network(4, seed=3))
    raw = nnue_loader.load_network(path)
    assert raw.perspective_weight.shape == (4, 768)


def test_load_network_reads_safetensors(tmp_path: Path) -> None:
    safetensors_numpy = pytest.importorskip("safetensors.numpy")
    document = make_network(2, buckets=2, factoriser=True)
    tensors = {name: np.array(value, dtype=np.float32) for name, value in document.items()}
    path = tmp_path / "net.safetensors"
    safetensors_numpy.save_file(tensors, str(path))

    raw = nnue_loader.load_network(path)

    assert raw.perspective_weight.dtype == np.float64
    assert raw.perspective_weight.shape == (2, 1536)
    np.testing.assert_array_equal(
        raw.factoriser_bias, tensors["factoriser.bias"].astype(np.float64)
    )


def test_load_network_requires_safetensors(tmp_path: Path, monkeypatch) -> None:
    original_find_spec = importlib.util.find_spec

    def fake_find_spec(name, *args, **kwargs):
        if name == "safetensors":
            return None
        return original_find_spec(name, *args, **kwargs)

    monkeypatch.setattr(importlib.util, "find_spec", fake_find_spec)
    path = tmp_path / "net.safetensors"
    path.write_bytes(b"")

    with pytest.raises(ModuleNotFoundError) as excinfo:
        nnue_loader.load_network(path)
    assert "pip install safetensors" in str(excinfo.value)
