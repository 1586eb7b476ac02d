import threading

import pytest
import torch

from loralab.kernels import PackedByteBuffer, PackedNibbleBuffer


class TestPackedNibbleBuffer:
    """Eight signed 4-bit values per word."""

    def test_set_get_neighbours_independent(self):
        buffer = PackedNibbleBuffer(16)
        for i in range(16):
            buffer.set(i, (i % 16) - 8)
        for i in range(16):
            assert buffer.get(i) == (i % 16) - 8

    def test_word_count(self):
        assert PackedNibbleBuffer(9).words.numel() == 2
        assert PackedNibbleBuffer(8).words.numel() == 1

    def test_overwrite_clears_slot(self):
        buffer = PackedNibbleBuffer(8)
        buffer.set(3, 7)
        buffer.set(3, -1)
        assert buffer.get(3) == -1
        assert buffer.get(2) == 0
        assert buffer.get(4) == 0

    def test_out_of_range_value_rejected(self):
        buffer = PackedNibbleBuffer(4)
        with pytest.raises(ValueError):
            buffer.set(0, 8)
        with pytest.raises(ValueError):
            buffer.store(torch.tensor([0, 0, -9, 0]))

    def test_bad_index_rejected(self):
        buffer = PackedNibbleBuffer(4)
        with pytest.raises(IndexError):
            buffer.get(4)
        with pytest.raises(IndexError):
            buffer.set(-1, 0)

    def test_store_load_matches_elementwise(self):
        values = torch.tensor([-8, 7, 0, -1, 3, -5, 6, 2, 1, -2, 4])
        buffer = PackedNibbleBuffer(values.numel())
        buffer.store(values)

        assert torch.equal(buffer.load(), values)
        assert [buffer.get(i) for i in range(values.numel())] == values.tolist()


class TestPackedByteBuffer:
    """Four 8-bit values per word, signed or unsigned."""

    def test_signed_extremes(self):
        buffer = PackedByteBuffer(4, signed=True)
        buffer.store(torch.tensor([-128, 127, -1, 0]))
        assert buffer.load().tolist() == [-128, 127, -1, 0]

    def test_unsigned_extremes(self):
        buffer = PackedByteBuffer(5, signed=False)
        buffer.store(torch.tensor([255, 0, 128, 1, 200]))
        assert buffer.load().tolist() == [255, 0, 128, 1, 200]
        with pytest.raises(ValueError):
            buffer.set(0, -1)

    def test_wrap_shares_words(self):
        buffer = PackedByteBuffer(6)
        view = PackedByteBuffer.wrap(buffer.words, 6)
        view.set(5, -7)
        assert buffer.get(5) == -7

    def test_wrap_rejects_mismatched_words(self):
        with pytest.raises(TypeError):
            PackedByteBuffer.wrap(torch.zeros(2), 8)
        with pytest.raises(ValueError):
            PackedByteBuffer.wrap(torch.zeros(3, dtype=torch.int32), 8)

    def test_concurrent_writers_to_shared_words(self):
        buffer = PackedByteBuffer(64, signed=True)
        num_threads = 4

        def writer(offset: int) -> None:
            for _ in range(25):
                for i in range(offset, 64, num_threads):
                    buffer.set(i, i - 32)

        threads = [threading.Thread(target=writer, args=(t,)) for t in range(num_threads)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert buffer.load().tolist() == [i - 32 for i in range(64)]

    def test_zero(self):
        buffer = PackedByteBuffer(4)
        buffer.store(torch.tensor([1, 2, 3, 4]))
        buffer.zero_()
        assert buffer.load().tolist() == [0, 0, 0, 0]
