import io

import pytest

from ebfat import Fat12Writer, PaddedWriter, Sector_sz, create_fat
from fat12_reader import Disk, fat12_factory


class TrickleSink(io.RawIOBase):
    """Raw sink taking at most `limit` bytes per write."""

    def __init__(self, limit=100):
        self.limit = limit
        self.buf = bytearray()

    def writable(self):
        return True

    def write(self, value):
        chunk = bytes(value[:self.limit])
        self.buf += chunk
        return len(chunk)


class StalledSink(TrickleSink):
    def write(self, value):
        return 0


@pytest.fixture
def out():
    return io.BytesIO()


class TestPaddedWriter:
    def test_write_is_passthrough(self, out):
        writer = PaddedWriter(out)
        assert writer.write(b"abc") == 3
        assert out.getvalue() == b"abc"
        assert writer.counter == 3

    def test_pad_to_sector(self, out):
        writer = PaddedWriter(out)
        writer.write(b"x" * 10)
        writer.pad()
        assert len(out.getvalue()) == Sector_sz
        assert out.getvalue()[10:] == b"\0" * (Sector_sz - 10)
        assert writer.counter == 0

    def test_pad_is_noop_when_aligned(self, out):
        writer = PaddedWriter(out)
        writer.pad()
        assert out.getvalue() == b""
        writer.write(b"\1" * Sector_sz)
        writer.pad()
        assert len(out.getvalue()) == Sector_sz

    def test_counter_wraps_across_sectors(self, out):
        writer = PaddedWriter(out)
        writer.write(b"\1" * (Sector_sz + 7))
        assert writer.counter == 7
        writer.pad()
        assert len(out.getvalue()) == 2 * Sector_sz

    def test_custom_padding(self, out):
        writer = PaddedWriter(out, padding=4)
        writer.write(b"\1")
        writer.pad()
        assert out.getvalue() == b"\1\0\0\0"

    def test_partial_writes_are_completed(self):
        sink = TrickleSink(limit=100)
        writer = PaddedWriter(sink)
        assert writer.write(bytes(range(250))) == 250
        assert sink.buf == bytes(range(250))
        writer.pad()
        assert len(sink.buf) == Sector_sz
        assert writer.counter == 0

    def test_stalled_sink_raises(self):
        writer = PaddedWriter(StalledSink())
        with pytest.raises(OSError):
            writer.write(b"abc")

    def test_image_through_raw_sink(self, make_file, fixed_random):
        sink = TrickleSink(limit=100)
        create_fat([make_file("a.txt", b"0123456789")], sink, "X", fixed_random)
        assert len(sink.buf) == 2048
        disk = Disk(bytes(sink.buf))
        assert disk.file_get(disk["a.txt"]) == b"0123456789"


class TestFat12Writer:
    def test_pair_packing(self, out):
        fat = Fat12Writer(PaddedWriter(out))
        fat.write(0xABC)
        assert out.getvalue() == b""  # half written value stays pending
        fat.write(0x123)
        assert out.getvalue() == b"\xBC\x3A\x12"

    def test_flush_completes_odd_count(self, out):
        fat = Fat12Writer(PaddedWriter(out))
        for value in (0xFF8, 0xFFF, 0xFFF):
            fat.write(value)
        fat.flush()
        assert out.getvalue() == b"\xF8\xFF\xFF\xFF\x0F\x00"

    def test_flush_without_pending(self, out):
        fat = Fat12Writer(PaddedWriter(out))
        fat.write(0x001)
        fat.write(0x002)
        fat.flush()
        assert len(out.getvalue()) == 3

    def test_boundary_values(self, out):
        fat = Fat12Writer(PaddedWriter(out))
        fat.write(0x000)
        fat.write(0xFFF)
        fat.write(0xFFF)
        fat.write(0x000)
        assert out.getvalue() == b"\x00\xF0\xFF\xFF\x0F\x00"

    def test_reader_agrees(self, out):
        values = [0xFF8, 0xFFF, 3, 4, 5, 0xFFF, 7, 0xFFF, 0x800]
        fat = Fat12Writer(PaddedWriter(out))
        for value in values:
            fat.write(value)
        fat.flush()
        assert fat12_factory(out.getvalue()) == values + [0]

    @pytest.mark.parametrize("value", [-1, 0x1000])
    def test_rejects_wide_values(self, out, value):
        fat = Fat12Writer(PaddedWriter(out))
        with pytest.raises(ValueError):
            fat.write(value)
