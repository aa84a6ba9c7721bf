import base64
import dataclasses
import io
import logging
import math
import os
import pathlib
from collections.abc import Callable, Iterable, Iterator
from typing import BinaryIO, Optional, Protocol, Self, TypeAlias

logger = logging.getLogger(__name__)

Sector_sz = 0x200
Fat12_Entries = 0x155  # sector_sz * 2 // 3
Max_Clusters = 0xFF0  # 0xFF0..0xFFF are reserved, bad and end-of-chain values
Reserved_Sectors = 1
Fat_Numb = 1
Dir_Entry_sz = 0x20
Dir_Sector_Entries = Sector_sz // Dir_Entry_sz
Max_Root_Entries = 0xFFF0  # 16 bit field, whole sectors only
Lfn_Chunk = 13  # UTF-16 units in one long name entry
Max_Name_Units = 255
Max_Label_Len = 11

Media_Marker = 0xFF8
End_Of_Chain = 0xFFF
Attr_Archive = 0x20
Attr_Lfn = 0x0F
Lfn_Last = 0x40
Epoch_Date = 0x0021  # 1980-01-01

Short_Name_Alphabet = b"ABCDEFGHIJKLMNOPQRSTUVWXYZ012345"
Fnv_Offset = 0xCBF29CE484222325
Fnv_Prime = 0x100000001B3

Copy_Chunk = 0x10 * Sector_sz


class Readable(Protocol):
    def read(self, size: int) -> bytes:
        ...


random_t: TypeAlias = Callable[[int], bytes]
units_t: TypeAlias = list[int]


@dataclasses.dataclass
class InputFile:
    name: str
    size: int
    content: Readable

    def __post_init__(self):
        if self.size < 0:
            raise ValueError(f"declared size of {self.name} is negative: {self.size}")

    @classmethod
    def from_path(cls, file_nom: str | os.PathLike) -> Self:
        """The caller owns the opened stream and has to close it."""
        path = pathlib.Path(file_nom)
        size = path.stat().st_size
        return cls(path.name, size, open(path, "rb"))


class EbfatError(Exception):
    pass


class LabelError(EbfatError):
    def __init__(self, label: str, message: Optional[str] = None):
        message = message or f"Label {label!r} can't be stored in an {Max_Label_Len} byte ASCII field"
        super().__init__(message)
        self.label = label


class LabelTooLongError(LabelError):
    def __init__(self, label: str):
        super().__init__(label, f"Label {label!r} is longer than {Max_Label_Len} characters")


class FilenameTooLongError(EbfatError):
    def __init__(self, nom: str, units: int):
        message = f"Length of filename {nom!r} is too big: {units} > {Max_Name_Units} UTF-16 units"
        super().__init__(message)
        self.name = nom
        self.units = units


class CapacityExceededError(EbfatError):
    def __init__(self, required: int, limit: int, what: str = "data sectors"):
        message = f"Files are too large, require {required} > {limit} {what}"
        super().__init__(message)
        self.required = required
        self.limit = limit


class SizeMismatchError(EbfatError):
    def __init__(self, nom: str, declared: int, actual: Optional[int] = None):
        if actual is None:
            message = f"File {nom} is larger than {declared}"
        else:
            message = f"File {nom} ended after {actual} of {declared} bytes"
        super().__init__(message)
        self.name = nom
        self.declared = declared
        self.actual = actual


def name_units(nom: str) -> units_t:
    raw = nom.encode("utf-16-le")
    return [int.from_bytes(raw[i:i + 2], "little") for i in range(0, len(raw), 2)]


def pad_label(label: str) -> bytes:
    if len(label) > Max_Label_Len:
        raise LabelTooLongError(label)
    try:
        return "{:<11}".format(label).encode("ascii")
    except UnicodeEncodeError as err:
        raise LabelError(label) from err


@dataclasses.dataclass(frozen=True)
class VolumeLayout:
    file_sects: tuple[int, ...]
    file_dir_entries: tuple[int, ...]
    root_dir_entries: int
    fat_sects: int = 1

    @property
    def data_sects(self) -> int:
        return sum(self.file_sects)

    @property
    def dir_entries(self) -> int:
        return sum(self.file_dir_entries)

    @property
    def root_dir_sects(self) -> int:
        return self.root_dir_entries // Dir_Sector_Entries

    @property
    def sector_numb(self) -> int:
        return Reserved_Sectors + Fat_Numb * self.fat_sects + self.root_dir_sects + self.data_sects

    @property
    def disk_sz(self) -> int:
        return self.sector_numb * Sector_sz

    @property
    def first_clusters(self) -> tuple[int, ...]:
        # every root directory sector has its own FAT entry, files follow them
        pointer = 1 + self.root_dir_sects
        back = []
        for sects in self.file_sects:
            back.append(pointer if sects else 0)
            pointer += sects
        return tuple(back)

    def fat_entries(self) -> Iterator[int]:
        yield Media_Marker
        for _ in range(self.root_dir_sects):
            yield End_Of_Chain
        for first, sects in zip(self.first_clusters, self.file_sects):
            for cluster in range(first + 1, first + sects):
                yield cluster
            if sects:
                yield End_Of_Chain


def dir_entry_count(units: int) -> int:
    # name is 0-terminated, plus one old-style entry
    return math.ceil((units + 1) / Lfn_Chunk) + 1


def plan_layout(fili: Iterable[InputFile], label: Optional[str] = None) -> VolumeLayout:
    if label:
        pad_label(label)
    file_sects = []
    file_dir_entries = []
    for file in fili:
        units = len(name_units(file.name))
        if units > Max_Name_Units:
            raise FilenameTooLongError(file.name, units)
        file_sects.append(math.ceil(file.size / Sector_sz))
        file_dir_entries.append(dir_entry_count(units))

    data_sects = sum(file_sects)
    if data_sects > Fat12_Entries:
        raise CapacityExceededError(data_sects, Fat12_Entries)
    dir_entries = sum(file_dir_entries)
    root_dir_entries = max(Dir_Sector_Entries, math.ceil(dir_entries / Dir_Sector_Entries) * Dir_Sector_Entries)
    if root_dir_entries > Max_Root_Entries:
        raise CapacityExceededError(root_dir_entries, Max_Root_Entries, "root directory entries")
    fat_entry_numb = 1 + root_dir_entries // Dir_Sector_Entries + data_sects
    if fat_entry_numb > Max_Clusters:
        raise CapacityExceededError(fat_entry_numb, Max_Clusters, "clusters")
    # 3 bytes for 2 entries; a second sector is only needed right at the Fat12_Entries ceiling
    fat_sects = max(1, math.ceil(math.ceil(fat_entry_numb / 2) * 3 / Sector_sz))

    layout = VolumeLayout(tuple(file_sects), tuple(file_dir_entries), root_dir_entries, fat_sects)
    logger.debug(f"Layout: {layout.data_sects} data sectors, {layout.root_dir_entries} root entries, "
                 f"{layout.fat_sects} FAT sectors, {layout.sector_numb} sectors total")
    return layout


@dataclasses.dataclass
class BootSector:
    jump: bytes  # 3
    oem_name: bytes  # 8
    # BPB
    bytes_per_sector: int  # 2
    cluster_sects: int  # 1
    reserved_sects: int  # 2
    fat_numb: int  # 1
    root_dir_entries: int  # 2
    sector_numb: int  # 2
    media_descriptor: int  # 1
    fat_sects: int  # 2
    # 12 unused
    # Extended BPB
    drive_numb: int  # 1
    # 1 reserved
    boot_signature: int  # 1
    volume_id: bytes  # 4
    label: bytes  # 11
    fs_type: bytes  # 8

    @classmethod
    def template(cls) -> Self:
        return cls(jump=b"\xEB\xFE\x90",  # jmp $-2, nop
                   oem_name=b"ebvirt  ",
                   bytes_per_sector=Sector_sz,
                   cluster_sects=1,
                   reserved_sects=Reserved_Sectors,
                   fat_numb=Fat_Numb,
                   root_dir_entries=Dir_Sector_Entries,  # minimum
                   sector_numb=3,  # boot, FAT, root dir
                   media_descriptor=0xF8,  # hard disk
                   fat_sects=1,
                   drive_numb=0x80,  # first fixed disk
                   boot_signature=0x29,
                   volume_id=b"\0" * 4,
                   label=b"NO NAME    ",
                   fs_type=b"FAT12   ")

    @classmethod
    def from_layout(cls, layout: VolumeLayout, volume_id: bytes, label: Optional[str] = None) -> Self:
        if len(volume_id) != 4:
            raise ValueError(f"volume id has to be 4 bytes, got {len(volume_id)}")
        boot = cls.template()
        boot.root_dir_entries = layout.root_dir_entries
        boot.sector_numb = layout.sector_numb
        boot.fat_sects = layout.fat_sects
        boot.volume_id = bytes(volume_id)
        if label:
            boot.label = pad_label(label)
        return boot

    def to_image(self) -> bytes:
        back = self.jump + self.oem_name
        back += self.bytes_per_sector.to_bytes(2, "little")
        back += self.cluster_sects.to_bytes(1)
        back += self.reserved_sects.to_bytes(2, "little")
        back += self.fat_numb.to_bytes(1)
        back += self.root_dir_entries.to_bytes(2, "little")
        back += self.sector_numb.to_bytes(2, "little")
        back += self.media_descriptor.to_bytes(1)
        back += self.fat_sects.to_bytes(2, "little")
        back += b"\0" * 12
        back += self.drive_numb.to_bytes(1)
        back += b"\0"
        back += self.boot_signature.to_bytes(1)
        back += self.volume_id + self.label + self.fs_type
        return back.ljust(Sector_sz, b"\0")


class PaddedWriter:
    def __init__(self, out: BinaryIO, padding: int = Sector_sz):
        self.out = out
        self.padding = padding
        self.counter = 0

    def write(self, value: bytes) -> int:
        # raw sinks may take only part of a buffer
        view = memoryview(value)
        while view:
            written = self.out.write(view)
            if not written:
                raise OSError(f"output accepted no bytes, {len(view)} left to write")
            view = view[written:]
        self.counter = (self.counter + len(value)) % self.padding
        return len(value)

    def pad(self):
        if not self.counter:
            return
        self.write(b"\0" * (self.padding - self.counter))


class Fat12Writer:
    def __init__(self, out: PaddedWriter):
        self.out = out
        self._pending: Optional[int] = None

    def write(self, value: int):
        if not 0 <= value <= End_Of_Chain:
            raise ValueError(f"{value:#x} doesn't fit in a FAT12 entry")
        if self._pending is None:
            self._pending = value
            return
        first, self._pending = self._pending, None
        # elements of bytes object are ints
        self.out.write(bytes((first & 0xFF,
                              (value & 0xF) << 4 | first >> 8,
                              value >> 4)))

    def flush(self):
        if self._pending is not None:
            self.write(0)


def fnv1a_64(call: bytes) -> int:
    back = Fnv_Offset
    for byte in call:
        back ^= byte
        back = back * Fnv_Prime & 0xFFFFFFFFFFFFFFFF
    return back


# RFC 4648 alphabet is A-Z2-7, only the digits differ
_b32_to_alphabet = bytes.maketrans(b"234567", Short_Name_Alphabet[26:])


def short_name(long_nom: str) -> bytes:
    """
    Not a real 8.3 name, just 11 characters of a hash of the long one.
    Different names can collide; readers go by the long name anyway.
    """
    digest = fnv1a_64(long_nom.encode("utf-8")).to_bytes(8, "big")
    return base64.b32encode(digest).translate(_b32_to_alphabet)[:11]


def lfn_checksum(name83: bytes) -> int:
    back = 0
    for byte in name83:
        back = (((back & 1) << 7) + (back >> 1) + byte) & 0xFF
    return back


@dataclasses.dataclass
class DirEntry:
    name83: bytes  # 11
    first_cluster: int  # 2
    size: int  # 4

    def to_image(self) -> bytes:
        back = self.name83
        back += Attr_Archive.to_bytes(1)
        back += b"\0" * 2  # extended attributes, create time 10ms
        back += b"\0" * 2  # create time
        back += Epoch_Date.to_bytes(2, "little")  # create date
        back += Epoch_Date.to_bytes(2, "little")  # access date
        back += b"\0" * 2  # first cluster high word
        back += b"\0" * 2  # modify time
        back += Epoch_Date.to_bytes(2, "little")  # modify date
        back += self.first_cluster.to_bytes(2, "little")
        back += self.size.to_bytes(4, "little")
        return back


@dataclasses.dataclass
class LfnEntry:
    sequence: int  # 1
    chunk: units_t  # 13 UTF-16 units split 5 + 6 + 2
    checksum: int  # 1

    def to_image(self) -> bytes:
        units = [u.to_bytes(2, "little") for u in self.chunk]
        back = self.sequence.to_bytes(1)
        back += b"".join(units[:5])
        back += Attr_Lfn.to_bytes(1)
        back += b"\0"  # type
        back += self.checksum.to_bytes(1)
        back += b"".join(units[5:11])
        back += b"\0" * 2  # first cluster
        back += b"".join(units[11:13])
        return back


def dir_entries_from_file(long_nom: str, first_cluster: int, size: int) -> list[LfnEntry | DirEntry]:
    name83 = short_name(long_nom)
    checksum = lfn_checksum(name83)
    units = name_units(long_nom) + [0]
    units += [0xFFFF] * (-len(units) % Lfn_Chunk)
    chunks = [units[start:start + Lfn_Chunk] for start in range(0, len(units), Lfn_Chunk)]
    back: list[LfnEntry | DirEntry] = []
    # VFAT order: the tail of the name comes first, flagged as the last entry, sequence 1 holds the head
    for seq_numb in range(len(chunks), 0, -1):
        sequence = Lfn_Last | seq_numb if seq_numb == len(chunks) else seq_numb
        back.append(LfnEntry(sequence, chunks[seq_numb - 1], checksum))
    back.append(DirEntry(name83, first_cluster, size))
    return back


def file_copy(writer: PaddedWriter, file: InputFile):
    remaining = file.size
    while remaining:
        sector = file.content.read(min(remaining, Copy_Chunk))
        if not sector:
            raise SizeMismatchError(file.name, file.size, file.size - remaining)
        writer.write(sector)
        remaining -= len(sector)
    if file.content.read(1):
        raise SizeMismatchError(file.name, file.size)


def create_fat(fili: Iterable[InputFile], out: BinaryIO, label: Optional[str] = None,
               random_bytes: random_t = os.urandom) -> VolumeLayout:
    fili = list(fili)
    layout = plan_layout(fili, label)
    writer = PaddedWriter(out)

    boot = BootSector.from_layout(layout, random_bytes(4), label)
    writer.write(boot.to_image())
    writer.pad()
    logger.debug(f"Boot sector written, volume id {boot.volume_id.hex()}")

    fat = Fat12Writer(writer)
    for value in layout.fat_entries():
        fat.write(value)
    fat.flush()
    writer.pad()
    logger.debug(f"FAT written, {layout.fat_sects} sector(s)")

    for file, first_cluster in zip(fili, layout.first_clusters):
        for entry in dir_entries_from_file(file.name, first_cluster, file.size):
            writer.write(entry.to_image())
    # empty root directory still takes its sector
    writer.write(b"\0" * Dir_Entry_sz * (layout.root_dir_entries - layout.dir_entries))
    writer.pad()
    logger.debug(f"Root directory written, {layout.dir_entries} of {layout.root_dir_entries} entries used")

    for file in fili:
        file_copy(writer, file)
        writer.pad()
        logger.debug(f"Copied {file.name}, {file.size} bytes")
    return layout


def create_fat_image(fili: Iterable[InputFile], label: Optional[str] = None,
                     random_bytes: random_t = os.urandom) -> bytes:
    with io.BytesIO() as out:
        create_fat(fili, out, label, random_bytes)
        return out.getvalue()
