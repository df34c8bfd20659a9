"""Tests for the sparse FlashImage cache and staged writes."""

import asyncio
import random

import pytest

from esp32_firmware_editor.flash_image import (
    CoverageError,
    FlashImage,
    ImageRangeError,
    Segment,
    merge_segments,
)


def _segments_disjoint(segments) -> bool:
    return all(a.end < b.address for a, b in zip(segments, segments[1:]))


class TestMergeSegments:
    """Segment coalescing and priority."""

    def test_adjacent_segments_coalesce(self):
        merged = merge_segments([Segment(0, bytearray(b"ab")), Segment(2, bytearray(b"cd"))])
        assert len(merged) == 1
        assert merged[0].address == 0
        assert bytes(merged[0].data) == b"abcd"

    def test_later_layer_wins(self):
        merged = merge_segments(
            [Segment(0, bytearray(b"aaaa"))],
            [Segment(1, bytearray(b"BB"))],
        )
        assert bytes(merged[0].data) == b"aBBa"

    def test_gaps_stay_separate_and_sorted(self):
        merged = merge_segments([Segment(10, bytearray(b"x")), Segment(0, bytearray(b"y"))])
        assert [s.address for s in merged] == [0, 10]
        assert _segments_disjoint(merged)

    def test_empty_segments_dropped(self):
        assert merge_segments([Segment(5, bytearray())]) == []


class TestReads:
    """Lazy cache fill through the read callback."""

    def test_from_bytes_round_trip(self):
        data = bytes(range(256)) * 32
        image = FlashImage.from_bytes(data)
        assert image.to_bytes() == data
        assert image.read(10, 20) == data[10:20]

    def test_uncached_bytes_read_as_erased(self):
        image = FlashImage(0x100)
        assert image.read(0, 4) == b"\xff\xff\xff\xff"
        assert image.byte_at(0x100) is None

    def test_callback_called_once_per_gap(self):
        calls = []

        async def fetch(address, length):
            calls.append((address, length))
            return bytes([address & 0xFF]) * length

        async def scenario():
            image = FlashImage(0x1000, read_callback=fetch)
            first = await image.read_async(0x10, 0x20)
            second = await image.read_async(0x10, 0x20)
            return first, second

        first, second = asyncio.run(scenario())
        assert first == second == b"\x10" * 0x10
        assert calls == [(0x10, 0x10)]

    def test_callback_may_return_wider_block(self):
        async def fetch(address, length):
            return 0, b"\xab" * 0x100

        async def scenario():
            image = FlashImage(0x1000, read_callback=fetch)
            await image.ensure_cached(0x20, 4)
            return image

        image = asyncio.run(scenario())
        segments = image.read_segments
        assert len(segments) == 1
        assert segments[0].address == 0
        assert len(segments[0].data) == 0x100

    def test_callback_returning_nothing_raises(self):
        async def fetch(address, length):
            return b""

        image = FlashImage(0x1000, read_callback=fetch)
        with pytest.raises(CoverageError):
            asyncio.run(image.ensure_cached(0, 16))

    def test_callback_missing_requested_address_raises(self):
        async def fetch(address, length):
            return address + length, b"\x00" * 4

        image = FlashImage(0x1000, read_callback=fetch)
        with pytest.raises(CoverageError):
            asyncio.run(image.ensure_cached(0, 16))

    def test_concurrent_reads_fetch_once(self):
        calls = []

        async def fetch(address, length):
            calls.append(address)
            await asyncio.sleep(0)
            return b"\x00" * length

        async def scenario():
            image = FlashImage(0x1000, read_callback=fetch)
            await asyncio.gather(image.read_async(0, 0x100), image.read_async(0, 0x100))

        asyncio.run(scenario())
        assert calls == [0]

    def test_out_of_range_address_raises(self):
        image = FlashImage(0x100)
        with pytest.raises(ImageRangeError):
            asyncio.run(image.ensure_cached(0x100, 1))

    def test_size_must_be_positive(self):
        with pytest.raises(ValueError):
            FlashImage(0)


class TestWrites:
    """Staging, sector widening and pruning."""

    def test_identical_write_is_not_staged(self):
        image = FlashImage.from_bytes(b"\x00" * 0x2000)
        image.write(0x10, b"\x00" * 8)
        assert not image.has_pending_writes

    def test_mismatch_in_cached_sector_stages_whole_sector(self):
        image = FlashImage.from_bytes(b"\x00" * 0x2000)
        image.write(0x1003, b"\x2f")
        segments = image.write_segments
        assert len(segments) == 1
        assert segments[0].address == 0x1000
        assert len(segments[0].data) == 0x1000
        assert image.byte_at(0x1003) == 0x2f
        assert image.byte_at(0x1004) == 0x00

    def test_reverting_a_write_prunes_the_sector(self):
        image = FlashImage.from_bytes(b"\x00" * 0x2000)
        image.write(0x1003, b"\x2f")
        image.write(0x1003, b"\x00")
        assert not image.has_pending_writes

    def test_uncached_write_stages_only_written_bytes(self):
        image = FlashImage(0x4000)
        image.write(0x1ffe, b"\x01\x02\x03\x04")
        segments = image.write_segments
        assert len(segments) == 1
        assert segments[0].address == 0x1ffe
        assert bytes(segments[0].data) == b"\x01\x02\x03\x04"
        assert _segments_disjoint(segments)

    def test_write_outside_image_raises(self):
        image = FlashImage(0x100)
        with pytest.raises(ImageRangeError):
            image.write(0xFE, b"\x00\x00\x00")

    def test_reads_see_staged_writes(self):
        image = FlashImage.from_bytes(b"\x00" * 0x100)
        image.write(4, b"\xaa\xbb")
        assert image.read(3, 7) == b"\x00\xaa\xbb\x00"

    def test_fill(self):
        image = FlashImage.from_bytes(b"\x00" * 0x100)
        image.fill(0x55, 0x10, 0x20)
        assert image.read(0x10, 0x20) == b"\x55" * 0x10
        assert image.read(0x20, 0x21) == b"\x00"


class TestFlush:
    """Pushing staged writes out through the write callback."""

    def test_flush_writes_and_merges_into_reads(self):
        written = []

        async def store(address, data):
            written.append((address, data))

        async def scenario():
            image = FlashImage(0x2000, write_callback=store)
            image.write(0x100, b"\x01\x02")
            await image.flush()
            return image

        image = asyncio.run(scenario())
        assert written == [(0x100, b"\x01\x02")]
        assert not image.has_pending_writes
        assert image.read(0x100, 0x102) == b"\x01\x02"

    def test_flush_is_idempotent(self):
        written = []

        async def store(address, data):
            written.append(address)

        async def scenario():
            image = FlashImage(0x2000, write_callback=store)
            image.write(0, b"\x00")
            await image.flush()
            await image.flush()

        asyncio.run(scenario())
        assert written == [0]

    def test_prepare_hook_runs_before_writes(self):
        order = []

        async def prepare(image):
            order.append("prepare")
            image.replace_writes([Segment(0, bytearray(b"\x09" * 4))])

        async def store(address, data):
            order.append((address, data))

        async def scenario():
            image = FlashImage(0x100, write_callback=store, prepare_flush=prepare)
            image.write(1, b"\x01")
            await image.flush()

        asyncio.run(scenario())
        assert order == ["prepare", (0, b"\x09" * 4)]

    def test_clear_drops_everything(self):
        image = FlashImage.from_bytes(b"\x00" * 0x10)
        image.write(0, b"\x01")
        image.clear()
        assert not image.has_pending_writes
        assert image.read_segments == []


class TestRandomizedOperations:
    """Mixed writes, cache fills and flushes checked against a plain bytearray."""

    SIZE = 0x3000
    SECTOR = 0x400

    def _check_segments(self, image):
        for segments in (image.read_segments, image.write_segments):
            assert _segments_disjoint(segments)
            assert all(len(s.data) > 0 for s in segments)
            assert all(0 <= s.address and s.end <= self.SIZE for s in segments)

    def _random_range(self, rng):
        start = rng.randrange(self.SIZE)
        length = rng.choice([1, 2, 7, 0x40, self.SECTOR, 0x900])
        return start, min(length, self.SIZE - start)

    @pytest.mark.parametrize("seed", [1, 7, 42])
    def test_reads_return_last_write(self, seed):
        rng = random.Random(seed)
        device = bytearray(rng.randbytes(self.SIZE))
        expected = bytearray(device)

        async def fetch(address, length):
            return bytes(device[address:address + length])

        async def store(address, data):
            device[address:address + len(data)] = data

        async def scenario():
            image = FlashImage(self.SIZE, read_callback=fetch, write_callback=store, sector_size=self.SECTOR)
            for _ in range(200):
                op = rng.random()
                start, length = self._random_range(rng)
                if op < 0.5:
                    if rng.random() < 0.3:
                        data = bytes(expected[start:start + length])
                    else:
                        data = rng.randbytes(length)
                    image.write(start, data)
                    expected[start:start + length] = data
                elif op < 0.8:
                    await image.ensure_cached(start, length)
                else:
                    await image.flush()
                    assert not image.has_pending_writes
                    assert device == expected
                self._check_segments(image)

                check_start, check_len = self._random_range(rng)
                got = await image.read_async(check_start, check_start + check_len)
                assert got == bytes(expected[check_start:check_start + check_len])
                self._check_segments(image)

            await image.flush()
            return await image.read_async(0, self.SIZE)

        final = asyncio.run(scenario())
        assert device == expected
        assert final == bytes(expected)
