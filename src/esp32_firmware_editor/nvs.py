"""
NVS (non-volatile storage) partition codec.

Page layout (4096 bytes):
    0   state (u32)       UNINIT/ACTIVE/FULL/FREEING/CORRUPT
    4   sequence (u32)
    8   version (u8)
    28  header CRC32 over bytes [4, 28)
    32  slot state bitmap, 2 bits per slot (3 = empty, 2 = written, 0 = erased)
    64  126 slots of 32 bytes

Item header slot:
    0 namespace index, 1 type, 2 span, 3 chunk index,
    4 CRC32 over bytes [0, 4) + [8, 32), 8 key (16 bytes), 24 payload (8 bytes)

Namespace definitions are U8 items in namespace 0 whose value is the index
assigned to the namespace.
"""

import logging
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Iterator, List, Optional, Tuple, Union

from esp32_firmware_editor.flash_image import CodecError, FlashImage
from esp32_firmware_editor.utils import Checksums

logger = logging.getLogger(__name__)

PAGE_SIZE = 4096
PAGE_HEADER_SIZE = 32
BITMAP_OFFSET = 32
BITMAP_SIZE = 32
FIRST_ENTRY_OFFSET = 64
ENTRY_SIZE = 32
ENTRY_COUNT = 126
KEY_MAX_LENGTH = 15
PAGE_VERSION = 0xFE
MAX_STRING_SIZE = 4000
BLOB_CHUNK_SIZE = 1984

NvsValue = Union[int, str, bytes, None]


class NvsError(CodecError):
    """Raised when an NVS mutation cannot be applied"""
    pass


class NvsType(IntEnum):
    U8 = 0x01
    U16 = 0x02
    U32 = 0x04
    U64 = 0x08
    I8 = 0x11
    I16 = 0x12
    I32 = 0x14
    I64 = 0x18
    STR = 0x21
    BLOB = 0x41
    BLOB_DATA = 0x42
    BLOB_INDEX = 0x48


class PageState(IntEnum):
    UNINIT = 0xFFFFFFFF
    ACTIVE = 0xFFFFFFFE
    FULL = 0xFFFFFFFC
    FREEING = 0xFFFFFFF8
    CORRUPT = 0xFFFFFFF0


class EntryState(IntEnum):
    ERASED = 0
    WRITTEN = 2
    EMPTY = 3


INT_FORMATS = {
    NvsType.U8: "<B",
    NvsType.U16: "<H",
    NvsType.U32: "<I",
    NvsType.U64: "<Q",
    NvsType.I8: "<b",
    NvsType.I16: "<h",
    NvsType.I32: "<i",
    NvsType.I64: "<q",
}

TYPE_NAMES = {
    NvsType.U8: "U8",
    NvsType.U16: "U16",
    NvsType.U32: "U32",
    NvsType.U64: "U64",
    NvsType.I8: "I8",
    NvsType.I16: "I16",
    NvsType.I32: "I32",
    NvsType.I64: "I64",
    NvsType.STR: "String",
    NvsType.BLOB: "Blob",
    NvsType.BLOB_DATA: "Blob",
    NvsType.BLOB_INDEX: "Blob Index",
}

TYPE_ALIASES = {
    "u8": NvsType.U8, "u16": NvsType.U16, "u32": NvsType.U32, "u64": NvsType.U64,
    "i8": NvsType.I8, "i16": NvsType.I16, "i32": NvsType.I32, "i64": NvsType.I64,
    "str": NvsType.STR, "string": NvsType.STR,
    "blob": NvsType.BLOB_DATA,
}


def type_name(datatype: int) -> str:
    try:
        return TYPE_NAMES[NvsType(datatype)]
    except ValueError:
        return f"Unknown (0x{datatype:x})"


def parse_nvs_type(value: Union[str, int, NvsType]) -> NvsType:
    """Accept an NvsType, its numeric code, or a name like ``u32`` / ``string``."""
    if isinstance(value, NvsType):
        return value
    if isinstance(value, int):
        return NvsType(value)
    key = value.strip().lower()
    if key not in TYPE_ALIASES:
        raise ValueError(
            f"Unknown NVS type '{value}'. Use one of: {', '.join(sorted(TYPE_ALIASES))}"
        )
    return TYPE_ALIASES[key]


def coerce_value(datatype: NvsType, text: str) -> NvsValue:
    """Convert a command-line string into the Python value for ``datatype``."""
    if datatype in INT_FORMATS:
        return int(text, 0)
    if datatype == NvsType.STR:
        return text
    return bytes.fromhex(text.replace(" ", ""))


def crc32_header(entry: bytes) -> int:
    """Item header CRC: bytes [0, 4) and [8, 32), skipping the CRC field."""
    return Checksums.esp_crc32(bytes(entry[0:4]) + bytes(entry[8:32]))


def get_entry_state(bitmap: bytes, index: int) -> int:
    return (bitmap[index // 4] >> ((index % 4) * 2)) & 3


def set_entry_state(bitmap: bytearray, index: int, state: int) -> None:
    shift = (index % 4) * 2
    bitmap[index // 4] = (bitmap[index // 4] & ~(3 << shift) & 0xFF) | (state << shift)


def _read_key(raw: bytes) -> str:
    out = []
    for b in raw[8:24]:
        if b == 0:
            break
        if 0x20 <= b <= 0x7E:
            out.append(chr(b))
        else:
            break
    return "".join(out)


def _printable(key: str) -> bool:
    return bool(key) and all(0x20 <= ord(c) <= 0x7E for c in key)


@dataclass
class NvsLocation:
    """Where an item header lives."""
    page_offset: int
    entry_index: int
    entry_offset: int
    span: int


@dataclass
class NvsItem:
    """A decoded item (or namespace definition when ``ns_index == 0``)."""
    ns_index: int
    type: int
    span: int
    chunk_index: int
    key: str
    crc32: int
    header_crc_valid: bool
    page_offset: int
    entry_index: int
    namespace: str = ""
    value: NvsValue = None
    size: int = 0
    data_crc_valid: Optional[bool] = None
    total_size: int = 0
    chunk_count: int = 0
    chunk_start: int = 0

    @property
    def type_name(self) -> str:
        return type_name(self.type)

    @property
    def entry_offset(self) -> int:
        return self.page_offset + FIRST_ENTRY_OFFSET + self.entry_index * ENTRY_SIZE

    @property
    def is_namespace(self) -> bool:
        return self.ns_index == 0

    def display_value(self) -> str:
        if isinstance(self.value, bytes):
            if self.value and all(b == 0xFF for b in self.value):
                return "<erased>"
            return self.value.hex(" ")
        if self.type == NvsType.BLOB_INDEX:
            return f"{self.chunk_count} chunks, {self.total_size} bytes total"
        return str(self.value)


@dataclass
class NvsPage:
    """One 4 KB page with its raw contents."""
    offset: int
    state: int
    sequence: int
    version: int
    crc32: int
    bitmap: bytearray
    data: bytes
    items: List[NvsItem] = field(default_factory=list)

    @property
    def state_name(self) -> str:
        try:
            return PageState(self.state).name
        except ValueError:
            return "UNKNOWN"

    @property
    def writable(self) -> bool:
        return self.state in (PageState.ACTIVE, PageState.FULL)

    def entry(self, index: int) -> bytes:
        start = FIRST_ENTRY_OFFSET + index * ENTRY_SIZE
        return self.data[start:start + ENTRY_SIZE]

    def entry_offset(self, index: int) -> int:
        return self.offset + FIRST_ENTRY_OFFSET + index * ENTRY_SIZE

    def written_entries(self) -> Iterator[Tuple[int, bytes]]:
        """Yield (index, slot bytes) for each written item header."""
        index = 0
        while index < ENTRY_COUNT:
            if get_entry_state(self.bitmap, index) != EntryState.WRITTEN:
                index += 1
                continue
            raw = self.entry(index)
            if len(raw) < ENTRY_SIZE:
                return
            yield index, raw
            span = raw[2]
            index += span if 1 <= span <= ENTRY_COUNT - index else 1

    def free_run(self, span: int) -> Optional[int]:
        """First index of ``span`` consecutive non-written slots."""
        run = 0
        for index in range(ENTRY_COUNT):
            if get_entry_state(self.bitmap, index) == EntryState.WRITTEN:
                run = 0
                continue
            run += 1
            if run == span:
                return index - span + 1
        return None


def _header_entry(datatype: int, span: int, key: str, chunk_index: int = 0xFF) -> bytearray:
    key_bytes = key.encode("ascii")
    if not key_bytes or len(key_bytes) > KEY_MAX_LENGTH:
        raise ValueError(f"NVS key must be 1..{KEY_MAX_LENGTH} characters, got '{key}'")
    entry = bytearray(b"\xff" * ENTRY_SIZE)
    entry[0] = 0
    entry[1] = datatype
    entry[2] = span
    entry[3] = chunk_index
    entry[8:24] = key_bytes.ljust(16, b"\x00")
    return entry


def _payload_slots(data: bytes) -> List[bytearray]:
    padded = bytearray(data)
    if len(padded) % ENTRY_SIZE:
        padded.extend(b"\xff" * (ENTRY_SIZE - len(padded) % ENTRY_SIZE))
    return [padded[i:i + ENTRY_SIZE] for i in range(0, len(padded), ENTRY_SIZE)]


def _var_length_item(datatype: int, key: str, data: bytes, chunk_index: int = 0xFF) -> List[bytearray]:
    slots = _payload_slots(data)
    header = _header_entry(datatype, 1 + len(slots), key, chunk_index)
    header[24:26] = struct.pack("<H", len(data))
    header[26:28] = b"\xff\xff"
    header[28:32] = struct.pack("<I", Checksums.esp_crc32(data))
    return [header] + slots


def build_item_entries(key: str, datatype: Union[NvsType, int, str], value: NvsValue) -> List[List[bytearray]]:
    """
    Build the slot groups for one logical item.

    Every group is one NVS item: a header slot followed by its payload slots.
    Blobs produce one group per data chunk plus a trailing blob index.
    Namespace index and header CRC are filled in when the item is placed.

    Raises:
        ValueError: For out-of-range values, oversize data, or bad keys
    """
    datatype = parse_nvs_type(datatype)

    if datatype in INT_FORMATS:
        fmt = INT_FORMATS[datatype]
        size = struct.calcsize(fmt)
        signed = fmt[1].islower()
        lo = -(1 << (size * 8 - 1)) if signed else 0
        hi = (1 << (size * 8 - 1)) - 1 if signed else (1 << (size * 8)) - 1
        if not isinstance(value, int) or not lo <= value <= hi:
            raise ValueError(f"Invalid {type_name(datatype)} value: {value!r}")
        entry = _header_entry(datatype, 1, key)
        entry[24:24 + size] = struct.pack(fmt, value)
        return [[entry]]

    if datatype == NvsType.STR:
        if not isinstance(value, str):
            raise ValueError("String items need a str value")
        data = value.encode("utf-8") + b"\x00"
        if len(data) > MAX_STRING_SIZE:
            raise ValueError(f"String too long ({len(data)} bytes, max {MAX_STRING_SIZE})")
        return [_var_length_item(datatype, key, data)]

    if datatype in (NvsType.BLOB, NvsType.BLOB_DATA):
        if not isinstance(value, (bytes, bytearray)):
            raise ValueError("Blob items need a bytes value")
        data = bytes(value)
        if datatype == NvsType.BLOB:
            if len(data) > BLOB_CHUNK_SIZE:
                raise ValueError(f"Legacy blob too long (max {BLOB_CHUNK_SIZE} bytes)")
            return [_var_length_item(datatype, key, data)]

        groups = []
        chunks = [data[i:i + BLOB_CHUNK_SIZE] for i in range(0, len(data), BLOB_CHUNK_SIZE)] or [b""]
        if len(chunks) > 0x7F:
            raise ValueError("Blob too long")
        for chunk_index, chunk in enumerate(chunks):
            groups.append(_var_length_item(NvsType.BLOB_DATA, key, chunk, chunk_index))

        index = _header_entry(NvsType.BLOB_INDEX, 1, key)
        index[24:28] = struct.pack("<I", len(data))
        index[28] = len(chunks)
        index[29] = 0
        groups.append([index])
        return groups

    raise ValueError(f"Cannot create items of type {type_name(datatype)}")


class NvsPartition:
    """
    NVS reader/writer bound to a partition of a FlashImage.

    All mutations are staged on the image; nothing is written to a device
    until the image is flushed.

    Example:
        nvs = NvsPartition(image, 0x9000, 0x6000)
        await nvs.add_namespace("wifi")
        await nvs.add_item("wifi", "retries", NvsType.U8, 3)
        item = await nvs.read_item("wifi", "retries")
    """

    def __init__(self, image: FlashImage, offset: int, length: int):
        self.image = image
        self.offset = offset
        self.length = length

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    async def _load_pages(self) -> List[NvsPage]:
        pages = []
        end = min(self.offset + self.length, self.image.size)
        for base in range(self.offset, end, PAGE_SIZE):
            if base + FIRST_ENTRY_OFFSET > self.image.size:
                break
            data = await self.image.read_async(base, min(base + PAGE_SIZE, end))
            state, sequence, version = struct.unpack_from("<IIB", data, 0)
            (crc,) = struct.unpack_from("<I", data, 28)
            pages.append(NvsPage(
                offset=base,
                state=state,
                sequence=sequence,
                version=version,
                crc32=crc,
                bitmap=bytearray(data[BITMAP_OFFSET:BITMAP_OFFSET + BITMAP_SIZE]),
                data=data,
            ))
        return pages

    @staticmethod
    def _live(pages: List[NvsPage]) -> List[NvsPage]:
        return [p for p in pages if p.state not in (PageState.UNINIT, PageState.CORRUPT)]

    @staticmethod
    def _namespace_map(pages: List[NvsPage]) -> Dict[str, int]:
        names: Dict[str, int] = {}
        for page in NvsPartition._live(pages):
            for _, raw in page.written_entries():
                if raw[0] == 0 and raw[1] not in (0x00, 0xFF):
                    key = _read_key(raw)
                    if key and raw[24] < 0xFF:
                        names[key] = raw[24]
        return names

    def _decode_item(self, page: NvsPage, index: int, raw: bytes) -> Optional[NvsItem]:
        ns_index, datatype, span, chunk_index = raw[0], raw[1], raw[2], raw[3]
        key = _read_key(raw)
        if span == 0 or span > ENTRY_COUNT:
            logger.debug(f"NVS: invalid span {span} at 0x{page.entry_offset(index):X}")
            return None
        if ns_index != 0 and not _printable(key):
            return None
        if datatype in (0x00, 0xFF) or ns_index == 0xFF:
            return None

        (crc,) = struct.unpack_from("<I", raw, 4)
        item = NvsItem(
            ns_index=ns_index,
            type=datatype,
            span=span,
            chunk_index=chunk_index,
            key=key,
            crc32=crc,
            header_crc_valid=crc == crc32_header(raw),
            page_offset=page.offset,
            entry_index=index,
        )

        if ns_index == 0:
            item.value = raw[24]
            item.namespace = key
            return item

        if datatype in INT_FORMATS:
            (item.value,) = struct.unpack_from(INT_FORMATS[NvsType(datatype)], raw, 24)
        elif datatype in (NvsType.STR, NvsType.BLOB, NvsType.BLOB_DATA):
            size, _ = struct.unpack_from("<HH", raw, 24)
            (data_crc,) = struct.unpack_from("<I", raw, 28)
            start = FIRST_ENTRY_OFFSET + (index + 1) * ENTRY_SIZE
            if 0 < size < PAGE_SIZE and start + size <= len(page.data):
                data = page.data[start:start + size]
                item.size = size
                item.data_crc_valid = Checksums.esp_crc32(data) == data_crc
                if datatype == NvsType.STR:
                    text = data.split(b"\x00", 1)[0]
                    if text and all(b == 0xFF for b in text):
                        item.value = "<erased>"
                    else:
                        item.value = "".join(chr(b) for b in text if 0x20 <= b <= 0x7E)
                else:
                    item.value = data
            else:
                item.value = None
        elif datatype == NvsType.BLOB_INDEX:
            item.total_size, item.chunk_count, item.chunk_start = struct.unpack_from("<IBB", raw, 24)
        return item

    async def parse(self) -> List[NvsPage]:
        """
        Decode every live page and its written items.

        Pages without items are omitted. Item namespaces are resolved after
        all pages are read, since definitions may live on any page.
        """
        pages = self._live(await self._load_pages())
        names = {0: ""}
        for page in pages:
            for index, raw in page.written_entries():
                item = self._decode_item(page, index, raw)
                if item is None:
                    continue
                if item.is_namespace and item.key and item.value < 0xFF:
                    names[item.value] = item.key
                page.items.append(item)

        for page in pages:
            for item in page.items:
                if not item.is_namespace:
                    item.namespace = names.get(item.ns_index, f"ns_{item.ns_index}")
        return [p for p in pages if p.items]

    async def items(self) -> List[NvsItem]:
        """Flat list of all data items (namespace definitions excluded)."""
        return [i for page in await self.parse() for i in page.items if not i.is_namespace]

    async def namespaces(self) -> Dict[str, int]:
        return self._namespace_map(await self._load_pages())

    async def find_item(self, namespace: str, key: str) -> Optional[NvsLocation]:
        """Location of the first item header matching namespace/key."""
        pages = await self._load_pages()
        ns_index = self._namespace_map(pages).get(namespace)
        if ns_index is None:
            return None
        for page in self._live(pages):
            for index, raw in page.written_entries():
                if raw[0] == ns_index and _read_key(raw) == key:
                    return NvsLocation(page.offset, index, page.entry_offset(index), raw[2])
        return None

    async def read_item(self, namespace: str, key: str) -> Optional[NvsItem]:
        """
        Decoded item for namespace/key.

        For multi-chunk blobs the blob index item is returned with the
        reassembled data as its value.
        """
        matches = [i for i in await self.items() if i.namespace == namespace and i.key == key]
        if not matches:
            return None
        index = next((i for i in matches if i.type == NvsType.BLOB_INDEX), None)
        if index is None:
            return matches[0]

        chunks = sorted(
            (i for i in matches if i.type == NvsType.BLOB_DATA),
            key=lambda i: i.chunk_index,
        )
        data = b"".join(c.value for c in chunks if isinstance(c.value, bytes))
        index.value = data
        index.data_crc_valid = len(data) == index.total_size and all(c.data_crc_valid for c in chunks)
        return index

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _erase_entry(self, page: NvsPage, index: int, span: int) -> None:
        span = max(1, min(span, ENTRY_COUNT - index))
        self.image.write(page.entry_offset(index), b"\xff" * (ENTRY_SIZE * span))
        for i in range(index, index + span):
            set_entry_state(page.bitmap, i, EntryState.EMPTY)

    def _write_bitmap(self, page: NvsPage) -> None:
        self.image.write(page.offset + BITMAP_OFFSET, bytes(page.bitmap))

    async def _activate_page(self, pages: List[NvsPage]) -> NvsPage:
        """Turn the first UNINIT page into an empty ACTIVE page."""
        for page in pages:
            if page.state == PageState.UNINIT and len(page.data) == PAGE_SIZE:
                sequence = max((p.sequence for p in self._live(pages)), default=-1) + 1
                header = bytearray(b"\xff" * PAGE_HEADER_SIZE)
                header[0:9] = struct.pack("<IIB", PageState.ACTIVE, sequence, PAGE_VERSION)
                header[28:32] = struct.pack("<I", Checksums.esp_crc32(bytes(header[4:28])))
                logger.info(f"NVS: initializing page at 0x{page.offset:X} (seq {sequence})")
                self.image.write(page.offset, bytes(header))
                page.state = PageState.ACTIVE
                page.sequence = sequence
                page.bitmap = bytearray(b"\xff" * BITMAP_SIZE)
                return page
        raise NvsError("No space available in NVS partition")

    def _place(self, page: NvsPage, start: int, slots: List[bytearray], ns_index: int) -> None:
        header = slots[0]
        header[0] = ns_index
        header[4:8] = struct.pack("<I", crc32_header(header))
        self.image.write(page.entry_offset(start), b"".join(bytes(s) for s in slots))
        for i in range(start, start + len(slots)):
            set_entry_state(page.bitmap, i, EntryState.WRITTEN)
        self._write_bitmap(page)

    async def add_namespace(self, name: str) -> int:
        """
        Define a new namespace using the lowest unused index.

        Returns:
            The assigned namespace index

        Raises:
            NvsError: If the namespace exists or no slot/index is free
        """
        pages = await self._load_pages()
        names = self._namespace_map(pages)
        if name in names:
            raise NvsError(f"Namespace '{name}' already exists with index {names[name]}")

        used = set(names.values())
        ns_index = next((i for i in range(1, 0xFF) if i not in used), None)
        if ns_index is None:
            raise NvsError("No available namespace indices (max 254 namespaces)")

        entry = _header_entry(NvsType.U8, 1, name)
        entry[24] = ns_index

        target = None
        for page in self._live(pages):
            if page.writable:
                start = page.free_run(1)
                if start is not None:
                    target = (page, start)
                    break
        if target is None:
            page = await self._activate_page(pages)
            target = (page, 0)

        logger.info(f"NVS: namespace '{name}' -> index {ns_index}")
        self._place(target[0], target[1], [entry], 0)
        return ns_index

    async def add_item(self, namespace: str, key: str, datatype: Union[NvsType, int, str], value: NvsValue) -> None:
        """
        Add an item to an existing namespace.

        Raises:
            NvsError: If the namespace is missing or there is no room
            ValueError: If the value does not fit the type
        """
        groups = build_item_entries(key, datatype, value)
        pages = await self._load_pages()
        ns_index = self._namespace_map(pages).get(namespace)
        if ns_index is None:
            raise NvsError(f"NVS namespace '{namespace}' not found")

        ns_pages = []
        for page in self._live(pages):
            if any(raw[0] == 0 and _read_key(raw) == namespace for _, raw in page.written_entries()):
                ns_pages.append(page)
        candidates = [p for p in ns_pages if p.writable]
        candidates += [p for p in self._live(pages) if p.state == PageState.ACTIVE and p not in candidates]

        for slots in groups:
            for page in candidates:
                start = page.free_run(len(slots))
                if start is not None:
                    self._place(page, start, slots, ns_index)
                    break
            else:
                page = await self._activate_page(pages)
                candidates.append(page)
                self._place(page, 0, slots, ns_index)

        logger.info(f"NVS: added {namespace}.{key} ({type_name(parse_nvs_type(datatype))})")

    async def delete_item(self, namespace: str, key: str) -> int:
        """
        Erase an item (all slots of all its entries) and mark them empty.

        Blob data chunks and their blob index are removed together.

        Returns:
            Number of entries erased

        Raises:
            NvsError: If the namespace or item is not found
        """
        pages = await self._load_pages()
        ns_index = self._namespace_map(pages).get(namespace)
        if ns_index is None:
            raise NvsError(f"NVS namespace '{namespace}' not found")

        blob_family = (NvsType.BLOB_DATA, NvsType.BLOB_INDEX)
        first_type: Optional[int] = None
        erased = 0
        for page in self._live(pages):
            touched = False
            for index, raw in list(page.written_entries()):
                if raw[0] != ns_index or _read_key(raw) != key:
                    continue
                if first_type is not None and not (first_type in blob_family and raw[1] in blob_family):
                    continue
                first_type = raw[1] if first_type is None else first_type
                self._erase_entry(page, index, raw[2])
                touched = True
                erased += 1
            if touched:
                self._write_bitmap(page)

        if not erased:
            raise NvsError(f"NVS item {namespace}.{key} not found")
        logger.info(f"NVS: deleted {namespace}.{key} ({erased} entries)")
        return erased

    async def update_item(self, namespace: str, key: str, datatype: Union[NvsType, int, str], value: NvsValue) -> None:
        """Delete (if present) and re-add an item."""
        build_item_entries(key, datatype, value)
        try:
            await self.delete_item(namespace, key)
        except NvsError as exc:
            logger.debug(f"NVS update: {exc}")
        await self.add_item(namespace, key, datatype, value)
