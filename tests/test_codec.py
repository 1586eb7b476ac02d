import json
import struct

import pytest
import safetensors.torch
import torch

from loralab.codec import (
    convert_to_hf_format,
    deserialize,
    export_adapter,
    import_adapter,
    read_header,
    save_adapter,
    serialize,
    validate_adapter_file,
)
from loralab.errors import AdapterValidationError


def _adapter_data(layers=("model.q_proj", "model.v_proj"), rank=4, with_state=False):
    gen = torch.Generator().manual_seed(0)
    data = {
        "rank": rank,
        "alpha": 8.0,
        "scaling": 8.0 / rank,
        "targetModules": ["q_proj", "v_proj"],
        "layers": {},
        "optimizerState": {},
    }
    for name in layers:
        a = torch.randn(16, rank, generator=gen)
        b = torch.randn(rank, 12, generator=gen)
        data["layers"][name] = {
            "A": {"data": a, "shape": list(a.shape)},
            "B": {"data": b, "shape": list(b.shape)},
        }
        if with_state:
            data["optimizerState"][name] = {
                "lora_A.exp_avg": torch.zeros_like(a),
                "lora_A.exp_avg_sq": torch.ones_like(a),
                "lora_B.exp_avg": torch.zeros_like(b),
                "lora_B.exp_avg_sq": torch.ones_like(b),
            }
    return data


def _lora_file(tensors, **metadata):
    meta = {"adapter_type": "lora", "format_version": "1.0", "rank": 2, "alpha": 4.0}
    meta.update(metadata)
    return serialize(tensors, meta)


def _raw(header, body=b""):
    encoded = json.dumps(header).encode()
    encoded += b" " * ((-len(encoded)) % 8)
    return struct.pack("<Q", len(encoded)) + encoded + body


class TestContainer:
    """Header layout and raw tensor round trips."""

    def test_roundtrip_preserves_tensors_and_metadata(self):
        tensors = {
            "weights": torch.randn(2, 3),
            "ids": torch.arange(5, dtype=torch.int64),
            "half": torch.tensor([1.5, -2.0], dtype=torch.bfloat16),
            "bytes": torch.tensor([0, 255], dtype=torch.uint8),
        }
        metadata = {"rank": 4, "name": "demo", "nested": {"k": [1, 2]}}

        decoded, decoded_meta = deserialize(serialize(tensors, metadata))

        assert set(decoded) == set(tensors)
        for name, tensor in tensors.items():
            assert decoded[name].dtype == tensor.dtype
            assert torch.equal(decoded[name], tensor)
        assert decoded_meta == metadata

    def test_header_layout(self):
        payload = serialize({"a": torch.zeros(3), "b": torch.ones(2, 2)}, {"rank": 1})
        (header_size,) = struct.unpack("<Q", payload[:8])
        assert header_size % 8 == 0

        header = read_header(payload)
        assert header["__metadata__"] == {"rank": "1"}
        assert header["a"]["dtype"] == "F32"
        assert header["a"]["shape"] == [3]
        a_start, a_end = header["a"]["data_offsets"]
        b_start, b_end = header["b"]["data_offsets"]
        assert (a_end - a_start, b_end - b_start) == (12, 16)
        assert len(payload) == 8 + header_size + 28

    def test_readable_by_safetensors(self, tmp_path):
        path = tmp_path / "plain.safetensors"
        path.write_bytes(serialize({"w": torch.arange(6, dtype=torch.float32).view(2, 3)}))
        loaded = safetensors.torch.load_file(str(path))
        assert torch.equal(loaded["w"], torch.arange(6, dtype=torch.float32).view(2, 3))

    def test_views_sharing_storage_serialize(self):
        base = torch.randn(4, 4)
        decoded, _ = deserialize(serialize({"top": base[:2], "bottom": base[2:]}))
        assert torch.equal(decoded["bottom"], base[2:])

    def test_reserved_name_rejected(self):
        with pytest.raises(AdapterValidationError):
            serialize({"__metadata__": torch.zeros(1)})

    def test_unsupported_dtype_rejected(self):
        with pytest.raises(AdapterValidationError):
            serialize({"z": torch.zeros(2, dtype=torch.complex64)})

    def test_truncated_body_rejected(self):
        payload = serialize({"a": torch.zeros(4)})
        with pytest.raises(AdapterValidationError):
            deserialize(payload[:-4])

    def test_non_json_metadata_passes_through(self):
        _, metadata = deserialize(_raw({"__metadata__": {"note": "plain text"}}))
        assert metadata == {"note": "plain text"}

    def test_metadata_must_be_object(self):
        with pytest.raises(AdapterValidationError):
            deserialize(_raw({"__metadata__": ["not", "a", "dict"]}))

    @pytest.mark.parametrize(
        "entry",
        [
            {"dtype": "F32", "shape": [1], "data_offsets": ["a", "b"]},
            {"dtype": "F32", "shape": [1], "data_offsets": [False, True]},
            {"dtype": "F32", "shape": ["1"], "data_offsets": [0, 4]},
            {"dtype": "F32", "shape": [1], "data_offsets": [0, 4, 8]},
            {"dtype": "Q4", "shape": [1], "data_offsets": [0, 4]},
            {"dtype": ["F32"], "shape": [1], "data_offsets": [0, 4]},
        ],
    )
    def test_malformed_entry_rejected(self, entry):
        with pytest.raises(AdapterValidationError):
            deserialize(_raw({"w": entry}, body=b"\x00" * 4))


class TestValidation:
    """Adapter-level checks: errors block import, warnings do not."""

    def test_empty_file(self):
        result = validate_adapter_file(b"")
        assert not result.is_valid
        assert result.errors == ["File is empty"]

    def test_garbage_header(self):
        result = validate_adapter_file(b"\xff" * 16)
        assert not result.is_valid
        assert result.errors[0].startswith("File parsing failed")

    def test_metadata_list_reported(self):
        result = validate_adapter_file(_raw({"__metadata__": ["not", "a", "dict"]}))
        assert not result.is_valid
        assert result.errors[0].startswith("File parsing failed")

    def test_string_offsets_reported(self):
        header = {
            "__metadata__": {"adapter_type": '"lora"'},
            "x.lora_A.weight": {"dtype": "F32", "shape": [1], "data_offsets": ["a", "b"]},
        }
        result = validate_adapter_file(_raw(header, body=b"\x00" * 4))
        assert not result.is_valid
        assert result.errors[0].startswith("File parsing failed")

    def test_wrong_adapter_type(self):
        payload = _lora_file({"x.lora_A.weight": torch.zeros(2, 2)}, adapter_type="dora")
        result = validate_adapter_file(payload)
        assert not result.is_valid
        assert result.errors == ["Unsupported adapter type: dora"]

    def test_missing_metadata_is_error(self):
        result = validate_adapter_file(serialize({"x.lora_A.weight": torch.zeros(2, 2)}))
        assert not result.is_valid

    def test_incomplete_layer_warns(self):
        payload = _lora_file({"x.lora_A.weight": torch.zeros(4, 2)})
        result = validate_adapter_file(payload)
        assert result.is_valid
        assert result.warnings == ["Incomplete LoRA layers: x"]

    def test_unexpected_name_and_version_warn(self):
        payload = _lora_file(
            {
                "x.lora_A.weight": torch.zeros(4, 2),
                "x.lora_B.weight": torch.zeros(2, 4),
                "extra": torch.zeros(1),
            },
            format_version="2.0",
        )
        result = validate_adapter_file(payload)
        assert result.is_valid
        assert "Format version 2.0 may not be fully compatible" in result.warnings
        assert "Unexpected tensor name: extra" in result.warnings
        assert result.tensor_info["layer_count"] == 1
        assert result.tensor_info["total_params"] == 17


class TestAdapterRoundTrip:
    """export_adapter / import_adapter on completion payloads."""

    def test_export_import(self):
        adapter = _adapter_data()
        payload = export_adapter(
            adapter, {"model_name": "tiny", "training_steps": 50, "final_loss": 1.25}
        )

        restored = import_adapter(payload)

        assert restored["rank"] == 4
        assert restored["alpha"] == 8.0
        assert restored["scaling"] == 2.0
        assert restored["targetModules"] == ["q_proj", "v_proj"]
        assert restored["metadata"]["model_name"] == "tiny"
        assert restored["metadata"]["training_steps"] == 50
        assert restored["metadata"]["adapter_type"] == "lora"
        assert restored["totalParams"] == 2 * (16 * 4 + 4 * 12)
        for name, layer in adapter["layers"].items():
            assert torch.equal(restored["layers"][name]["A"]["data"], layer["A"]["data"])
            assert restored["layers"][name]["B"]["shape"] == [4, 12]
        assert "optimizerState" not in restored

    def test_optimizer_state_requires_flag(self):
        adapter = _adapter_data(layers=("model.q_proj",), with_state=True)

        plain = export_adapter(adapter)
        assert validate_adapter_file(plain).warnings == []
        tensors, _ = deserialize(plain)
        assert sorted(tensors) == ["model.q_proj.lora_A.weight", "model.q_proj.lora_B.weight"]

        with_state = export_adapter(adapter, include_optimizer_state=True)
        tensors, _ = deserialize(with_state)
        assert "model.q_proj.lora_A.exp_avg" in tensors
        assert "model.q_proj.lora_B.exp_avg_sq" in tensors

        unflagged = validate_adapter_file(with_state)
        assert "Unexpected tensor name: model.q_proj.lora_A.exp_avg" in unflagged.warnings

        restored = import_adapter(with_state, include_optimizer_state=True)
        state = restored["optimizerState"]["model.q_proj"]
        assert torch.equal(state["lora_A.exp_avg_sq"], torch.ones(16, 4))

    def test_import_rejects_invalid(self):
        with pytest.raises(AdapterValidationError) as excinfo:
            import_adapter(b"")
        assert excinfo.value.errors == ["File is empty"]


class TestHubFormatAndSave:
    """PEFT-style conversion and writing adapters to disk."""

    def test_convert_to_hf_format(self):
        adapter = _adapter_data()
        adapter["layers"]["model.o_proj"] = {"A": {"data": torch.zeros(16, 4), "shape": [16, 4]}, "B": None}

        hf = convert_to_hf_format(adapter)

        assert hf["r"] == 4
        assert hf["lora_alpha"] == 8.0
        assert hf["target_modules"] == ["q_proj", "v_proj"]
        assert hf["bias"] == "none"
        assert hf["lora_dropout"] == 0.1
        assert hf["modules_to_save"] == []
        assert sorted(hf["layers"]) == ["model.q_proj", "model.v_proj"]
        layer = hf["layers"]["model.q_proj"]
        assert layer["lora_A"]["shape"] == [16, 4]
        assert torch.equal(layer["lora_B"]["weight"], adapter["layers"]["model.q_proj"]["B"]["data"])

    def test_save_adapter_writes_loadable_file(self, tmp_path):
        adapter = _adapter_data()
        path = save_adapter(adapter, tmp_path / "adapter.safetensors", {"model_name": "tiny"})

        assert path.exists()
        restored = import_adapter(path.read_bytes())
        assert restored["metadata"]["model_name"] == "tiny"
        weights = safetensors.torch.load_file(str(path))
        assert torch.equal(weights["model.v_proj.lora_A.weight"], adapter["layers"]["model.v_proj"]["A"]["data"])

    def test_save_adapter_refuses_invalid_export(self, tmp_path):
        target = tmp_path / "adapter.safetensors"
        with pytest.raises(AdapterValidationError) as excinfo:
            save_adapter(_adapter_data(), target, {"adapter_type": "dora"})

        assert excinfo.value.errors == ["Unsupported adapter type: dora"]
        assert not target.exists()
