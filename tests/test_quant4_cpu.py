import pytest
import torch

from loralab.errors import ConfigError
from loralab.kernels import pack4, quant4_requantize, quant4_unpack_all, quantized_matmul, unpack4
from loralab.kernels.quant import dequantize4, quant4_pack, quantize4


def test_quant4_roundtrip_within_half_step():
    torch.manual_seed(0)
    scale = 0.25
    values = torch.empty(257).uniform_(-8 * scale, 7 * scale)
    buffer = quant4_pack(values, scale=scale)
    decoded = quant4_unpack_all(buffer)

    assert decoded.shape == values.shape
    max_error = (decoded - values).abs().max().item()
    assert max_error <= scale / 2 + 1e-6


def test_quant4_decoded_range():
    torch.manual_seed(0)
    scale = 0.1
    values = torch.randn(100) * 10.0
    decoded = quant4_unpack_all(quant4_pack(values, scale=scale))

    assert decoded.min().item() >= -8 * scale - 1e-6
    assert decoded.max().item() <= 7 * scale + 1e-6


def test_quant4_out_of_range_values_clamp():
    buffer = pack4([100.0, -100.0, 0.0], scale=1.0)

    assert unpack4(buffer, 0) == 7.0
    assert unpack4(buffer, 1) == -8.0
    assert unpack4(buffer, 2) == 0.0


def test_quant4_idempotent_requantization():
    torch.manual_seed(0)
    values = torch.randn(33)
    buffer = quant4_pack(values)
    again = quant4_requantize(buffer)

    assert torch.equal(again.packed.words, buffer.packed.words)
    codes = quantize4(values, buffer.scale)
    assert torch.equal(quantize4(dequantize4(codes, buffer.scale), buffer.scale), codes)


def test_quant4_auto_scale_fits_range():
    values = torch.tensor([-4.0, 0.5, 3.5])
    buffer = quant4_pack(values)

    assert buffer.scale == pytest.approx(0.5)
    assert torch.allclose(quant4_unpack_all(buffer), values)


def test_quant4_all_zero_input_uses_unit_scale():
    buffer = quant4_pack(torch.zeros(5))
    assert buffer.scale == 1.0
    assert torch.equal(quant4_unpack_all(buffer), torch.zeros(5))


def test_quant4_zero_point_shifts_codes():
    buffer = quant4_pack([0.0, 1.0], scale=1.0, zero_point=2)
    assert buffer.packed.get(0) == 2
    assert unpack4(buffer, 1) == 1.0


def test_quant4_zero_point_shifts_decoded_range():
    buffer = quant4_pack([-100.0, 100.0], scale=0.5, zero_point=3)
    assert buffer.packed.get(0) == -8
    assert quant4_unpack_all(buffer).tolist() == [-5.5, 2.0]


def test_quant4_rejects_bad_scale_and_zero_point():
    with pytest.raises(ConfigError):
        quant4_pack([1.0], scale=0.0)
    with pytest.raises(ConfigError):
        quant4_pack([1.0], scale=1.0, zero_point=9)


def test_quant4_preserves_shape_and_packs_eight_per_word():
    values = torch.zeros(3, 5)
    buffer = quant4_pack(values)
    assert quant4_unpack_all(buffer).shape == (3, 5)
    assert buffer.packed.words.numel() == 2


def test_pack4_rejects_wrong_type():
    with pytest.raises(TypeError):
        pack4(3.0)
    with pytest.raises(TypeError):
        unpack4(torch.zeros(3), 0)


def test_quantized_matmul_matches_dequantized_weight():
    torch.manual_seed(0)
    weight = torch.randn(70, 6)
    packed = quant4_pack(weight)
    x = torch.randn(4, 70)

    expected = x @ quant4_unpack_all(packed)
    result = quantized_matmul(x, packed, tile_size=16)

    assert torch.allclose(result, expected, atol=1e-5)
