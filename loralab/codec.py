"""Adapter codec: LoRA matrices plus metadata in a safetensors file.

Tensors are written and read with the ``safetensors`` library. Adapter
metadata lives under ``__metadata__``; every value is stored as a
JSON-encoded string because the format only carries string-to-string
metadata.
"""

from __future__ import annotations

import json
import re
import struct
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import safetensors.torch
import torch
from safetensors import SafetensorError

from loralab._logging import get_logger, log_event, log_warning
from loralab._version import __version__
from loralab.errors import AdapterValidationError

FORMAT_VERSION = "1.0"
ADAPTER_TYPE = "lora"
MAX_RECOMMENDED_BYTES = 500 * 1024 * 1024
HF_LORA_DROPOUT = 0.1
_HEADER_PREFIX = 8
_METADATA_KEY = "__metadata__"

DTYPES: dict[str, torch.dtype] = {
    "F64": torch.float64,
    "F32": torch.float32,
    "F16": torch.float16,
    "BF16": torch.bfloat16,
    "I64": torch.int64,
    "I32": torch.int32,
    "I8": torch.int8,
    "U8": torch.uint8,
}
_DTYPE_NAMES = {torch_dtype: name for name, torch_dtype in DTYPES.items()}

_WEIGHT_NAME = re.compile(r"^(.+)\.(lora_[AB])\.weight$")
_STATE_NAME = re.compile(r"^(.+)\.(lora_[AB])\.(exp_avg|exp_avg_sq)$")

logger = get_logger("loralab.codec")


@dataclass
class ValidationResult:
    is_valid: bool = False
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    metadata: dict[str, Any] | None = None
    tensor_info: dict[str, Any] | None = None


def encode_metadata(metadata: Mapping[str, Any]) -> dict[str, str]:
    return {str(key): json.dumps(value, default=str) for key, value in metadata.items()}


def decode_metadata(metadata: Mapping[str, Any]) -> dict[str, Any]:
    decoded: dict[str, Any] = {}
    for key, value in metadata.items():
        if isinstance(value, str):
            try:
                decoded[key] = json.loads(value)
            except json.JSONDecodeError:
                decoded[key] = value
        else:
            decoded[key] = value
    return decoded


def serialize(
    tensors: Mapping[str, torch.Tensor],
    metadata: Mapping[str, Any] | None = None,
) -> bytes:
    prepared: dict[str, torch.Tensor] = {}
    for name, tensor in tensors.items():
        if name == _METADATA_KEY:
            raise AdapterValidationError(f"'{_METADATA_KEY}' is reserved and cannot name a tensor")
        if tensor.dtype not in _DTYPE_NAMES:
            raise AdapterValidationError(f"Unsupported tensor dtype: {tensor.dtype}")
        # safetensors refuses tensors that share storage
        prepared[name] = tensor.detach().cpu().contiguous().clone()
    try:
        return safetensors.torch.save(
            prepared, metadata=encode_metadata(metadata) if metadata else None
        )
    except SafetensorError as exc:
        raise AdapterValidationError(f"Could not serialize tensors: {exc}") from exc


def read_header(data: bytes) -> dict[str, Any]:
    """Return the raw JSON header of a safetensors buffer without loading tensors."""
    if len(data) < _HEADER_PREFIX:
        raise AdapterValidationError("File is too small to hold a header")
    (header_size,) = struct.unpack("<Q", data[:_HEADER_PREFIX])
    if header_size > len(data) - _HEADER_PREFIX:
        raise AdapterValidationError(
            f"Header size ({header_size}) exceeds file size ({len(data)})"
        )
    try:
        header = json.loads(data[_HEADER_PREFIX : _HEADER_PREFIX + header_size].decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise AdapterValidationError(f"Header is not valid JSON: {exc}") from exc
    if not isinstance(header, dict):
        raise AdapterValidationError("Header must be a JSON object")
    return header


def _header_metadata(header: Mapping[str, Any]) -> dict[str, Any]:
    metadata = header.get(_METADATA_KEY)
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise AdapterValidationError(f"'{_METADATA_KEY}' must be an object")
    return decode_metadata(metadata)


def _check_entry(name: str, entry: Any) -> None:
    if not isinstance(entry, dict):
        raise AdapterValidationError(f"Header entry for '{name}' is not an object")
    dtype = entry.get("dtype")
    if not isinstance(dtype, str) or dtype not in DTYPES:
        raise AdapterValidationError(f"Invalid dtype '{dtype}' for tensor '{name}'")
    for key in ("shape", "data_offsets"):
        values = entry.get(key)
        if not isinstance(values, list) or not all(
            isinstance(v, int) and not isinstance(v, bool) and v >= 0 for v in values
        ):
            raise AdapterValidationError(f"Invalid {key} for tensor '{name}'")
    if len(entry["data_offsets"]) != 2:
        raise AdapterValidationError(f"Invalid data_offsets for tensor '{name}'")


def deserialize(data: bytes) -> tuple[dict[str, torch.Tensor], dict[str, Any]]:
    """Parse a file back into ``(tensors, metadata)``."""
    data = bytes(data)
    header = read_header(data)
    metadata = _header_metadata(header)
    for name, entry in header.items():
        if name != _METADATA_KEY:
            _check_entry(name, entry)
    try:
        tensors = safetensors.torch.load(data)
    except SafetensorError as exc:
        raise AdapterValidationError(str(exc)) from exc
    return tensors, metadata


def adapter_metadata(
    adapter_data: Mapping[str, Any], metadata: Mapping[str, Any] | None = None
) -> dict[str, Any]:
    extra = dict(metadata or {})
    rank = adapter_data.get("rank", 4)
    alpha = adapter_data.get("alpha", 8.0)
    scaling = adapter_data.get("scaling")
    if scaling is None:
        scaling = alpha / rank if rank else 0.0
    base = {
        "format_version": FORMAT_VERSION,
        "lora_lab_version": __version__,
        "adapter_type": ADAPTER_TYPE,
        "rank": rank,
        "alpha": alpha,
        "scaling": scaling,
        "target_modules": list(adapter_data.get("targetModules", [])),
        "created_at": datetime.now(timezone.utc).isoformat(),
        "model_name": extra.pop("model_name", "unknown"),
        "training_steps": extra.pop("training_steps", 0),
        "final_loss": extra.pop("final_loss", 0.0),
    }
    base.update(extra)
    return base


def export_adapter(
    adapter_data: Mapping[str, Any],
    metadata: Mapping[str, Any] | None = None,
    include_optimizer_state: bool = False,
) -> bytes:
    """Serialize ``adapterData`` (as produced at completion) into adapter-file bytes.

    With ``include_optimizer_state`` the dequantized moments in
    ``adapterData["optimizerState"]`` are written as ``{layer}.lora_A.exp_avg``,
    ``{layer}.lora_A.exp_avg_sq`` and so on.
    """
    optimizer_state = adapter_data.get("optimizerState", {}) if include_optimizer_state else {}
    tensors: dict[str, torch.Tensor] = {}
    for layer_name, layer in adapter_data.get("layers", {}).items():
        for matrix in ("A", "B"):
            entry = layer.get(matrix)
            if not entry:
                continue
            data = torch.as_tensor(entry["data"], dtype=torch.float32)
            tensors[f"{layer_name}.lora_{matrix}.weight"] = data.reshape(entry["shape"])
        for key, moment in optimizer_state.get(layer_name, {}).items():
            tensors[f"{layer_name}.{key}"] = moment.detach().float()

    payload = serialize(tensors, adapter_metadata(adapter_data, metadata))
    log_event(logger, "adapter_serialized", tensors=len(tensors), nbytes=len(payload))
    return payload


def validate_adapter_file(
    data: bytes | bytearray | memoryview,
    include_optimizer_state: bool = False,
) -> ValidationResult:
    result = ValidationResult()
    data = bytes(data)
    if len(data) == 0:
        result.errors.append("File is empty")
        return _finish(result)
    if len(data) > MAX_RECOMMENDED_BYTES:
        result.warnings.append("File is very large (>500MB) - may cause memory issues")

    try:
        tensors, metadata = deserialize(data)
    except AdapterValidationError as exc:
        result.errors.append(f"File parsing failed: {exc}")
        return _finish(result)

    result.metadata = metadata
    adapter_type = metadata.get("adapter_type")
    if adapter_type != ADAPTER_TYPE:
        result.errors.append(f"Unsupported adapter type: {adapter_type}")
        return _finish(result)

    format_version = str(metadata.get("format_version", FORMAT_VERSION))
    if format_version != FORMAT_VERSION:
        result.warnings.append(f"Format version {format_version} may not be fully compatible")

    layers: dict[str, set[str]] = {}
    for name in tensors:
        match = _WEIGHT_NAME.match(name)
        if match:
            layers.setdefault(match.group(1), set()).add(match.group(2))
            continue
        if include_optimizer_state and _STATE_NAME.match(name):
            continue
        result.warnings.append(f"Unexpected tensor name: {name}")

    incomplete = sorted(layer for layer, kinds in layers.items() if kinds != {"lora_A", "lora_B"})
    if incomplete:
        result.warnings.append(f"Incomplete LoRA layers: {', '.join(incomplete)}")

    result.tensor_info = {
        "total_tensors": len(tensors),
        "total_params": sum(t.numel() for t in tensors.values()),
        "layer_count": len(layers),
        "rank": metadata.get("rank"),
        "alpha": metadata.get("alpha"),
    }
    return _finish(result)


def _finish(result: ValidationResult) -> ValidationResult:
    result.is_valid = not result.errors
    log_event(
        logger,
        "adapter_validation",
        is_valid=result.is_valid,
        errors=len(result.errors),
        warnings=len(result.warnings),
    )
    return result


def import_adapter(
    data: bytes | bytearray | memoryview,
    include_optimizer_state: bool = False,
) -> dict[str, Any]:
    """Rebuild ``adapterData`` from file bytes; hard validation errors raise."""
    validation = validate_adapter_file(data, include_optimizer_state=include_optimizer_state)
    if not validation.is_valid:
        raise AdapterValidationError(
            f"Invalid adapter file: {'; '.join(validation.errors)}",
            errors=validation.errors,
            warnings=validation.warnings,
        )
    for warning in validation.warnings:
        log_warning(logger, "adapter_validation_warning", warning=warning)

    tensors, metadata = deserialize(bytes(data))
    layers: dict[str, dict[str, Any]] = {}
    optimizer_state: dict[str, dict[str, torch.Tensor]] = {}
    for name, tensor in tensors.items():
        match = _WEIGHT_NAME.match(name)
        if match:
            layer_name, kind = match.groups()
            layer = layers.setdefault(layer_name, {"A": None, "B": None})
            layer[kind[-1]] = {"data": tensor, "shape": list(tensor.shape)}
            continue
        state = _STATE_NAME.match(name)
        if include_optimizer_state and state:
            layer_name, kind, moment = state.groups()
            optimizer_state.setdefault(layer_name, {})[f"{kind}.{moment}"] = tensor

    for layer in layers.values():
        if layer["A"] is not None and layer["B"] is not None:
            layer["param_count"] = layer["A"]["data"].numel() + layer["B"]["data"].numel()
        else:
            layer["param_count"] = 0

    rank = metadata.get("rank", 4)
    alpha = metadata.get("alpha", 8.0)
    adapter = {
        "rank": rank,
        "alpha": alpha,
        "scaling": metadata.get("scaling", alpha / rank if rank else 0.0),
        "targetModules": list(metadata.get("target_modules", [])),
        "layers": layers,
        "totalParams": sum(layer["param_count"] for layer in layers.values()),
        "metadata": metadata,
        "warnings": validation.warnings,
    }
    if include_optimizer_state:
        adapter["optimizerState"] = optimizer_state
    return adapter


def convert_to_hf_format(adapter_data: Mapping[str, Any]) -> dict[str, Any]:
    """Reshape ``adapterData`` into a PEFT-style LoRA config plus per-layer weights.

    Layers missing either matrix are left out.
    """
    layers: dict[str, Any] = {}
    for layer_name, layer in adapter_data.get("layers", {}).items():
        a, b = layer.get("A"), layer.get("B")
        if not a or not b:
            continue
        layers[layer_name] = {
            "lora_A": {"weight": a["data"], "shape": list(a["shape"])},
            "lora_B": {"weight": b["data"], "shape": list(b["shape"])},
        }
    return {
        "adapter_type": ADAPTER_TYPE,
        "r": adapter_data.get("rank"),
        "lora_alpha": adapter_data.get("alpha"),
        "target_modules": list(adapter_data.get("targetModules", [])),
        "lora_dropout": HF_LORA_DROPOUT,
        "bias": "none",
        "modules_to_save": [],
        "layers": layers,
    }


def save_adapter(
    adapter_data: Mapping[str, Any],
    path: str | Path,
    metadata: Mapping[str, Any] | None = None,
    include_optimizer_state: bool = False,
) -> Path:
    """Export, re-validate and write an adapter file; nothing is written if validation fails."""
    payload = export_adapter(adapter_data, metadata, include_optimizer_state=include_optimizer_state)
    validation = validate_adapter_file(payload, include_optimizer_state=include_optimizer_state)
    if not validation.is_valid:
        raise AdapterValidationError(
            f"Exported adapter failed validation: {'; '.join(validation.errors)}",
            errors=validation.errors,
            warnings=validation.warnings,
        )
    path = Path(path)
    path.write_bytes(payload)
    log_event(logger, "adapter_saved", path=str(path), nbytes=len(payload))
    return path


__all__ = [
    "DTYPES",
    "ValidationResult",
    "adapter_metadata",
    "convert_to_hf_format",
    "decode_metadata",
    "deserialize",
    "encode_metadata",
    "export_adapter",
    "import_adapter",
    "read_header",
    "save_adapter",
    "serialize",
    "validate_adapter_file",
]
