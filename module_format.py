from construct import *
import typing

CODING = "utf-8"
MAGIC_CODING = "latin-1"

MAGIC = "mohd"
CAMPAIGN_VERSION = 23
FORGE_VERSION = 27
VERSIONS = (CAMPAIGN_VERSION, FORGE_VERSION)

class ModuleError(Exception):
    pass

class InvalidModuleMagic(ModuleError):
    def __init__(self, found: str):
        super().__init__(f"Module magic doesn't match! Expected '{MAGIC}' found: {found}")
        self.found = found

class InvalidModuleVersion(ModuleError):
    def __init__(self, found: int):
        super().__init__(f"Incorrect module version! Should be either {CAMPAIGN_VERSION} or {FORGE_VERSION}. Found: {found}")
        self.found = found

class EmptyTag(ModuleError):
    def __init__(self, index: int, name: str=""):
        super().__init__(f"Tag size is zero! This should not happen. (#{index} {name})")
        self.index = index

class NonCompressedSingleTag(ModuleError):
    def __init__(self, index: int, name: str=""):
        super().__init__(f"Non-compressed single block tag found! This should not happen. (#{index} {name})")
        self.index = index

class BlockRangeError(ModuleError):
    def __init__(self, index: int, detail: str):
        super().__init__(f"tag #{index}: {detail}")
        self.index = index

class BlockOverlapError(ModuleError):
    def __init__(self, index: int, first, second):
        super().__init__(
            f"tag #{index}: block destination {hex(first.uncompressed_offset)}+{hex(first.uncompressed_size)} "
            f"overlaps {hex(second.uncompressed_offset)}+{hex(second.uncompressed_size)}")
        self.index = index
        self.blocks = (first, second)

class ModuleIOError(ModuleError, OSError):
    pass

class FixedString(Adapter):
    # fixed width, lossy, trailing NULs trimmed
    def _decode(self, obj, context, path):
        return obj.decode(MAGIC_CODING).rstrip("\0")

    def _encode(self, obj, context, path):
        return obj.encode(MAGIC_CODING).ljust(self.subcon.length, b"\0")

class ReversedFourCC(Adapter):
    # stored back to front, "bitm" is b"mtib" on disk
    def _decode(self, obj, context, path):
        return obj[::-1].decode(MAGIC_CODING)

    def _encode(self, obj, context, path):
        return obj.encode(MAGIC_CODING)[::-1]

class NonZeroFlag(Adapter):
    def _decode(self, obj, context, path):
        return obj != 0

    def _encode(self, obj, context, path):
        return 1 if obj else 0

FileFlags = FlagsEnum(Int8ul,
    COMPRESSED=1 << 0,
    HAS_BLOCKS=1 << 1,
    RAW_FILE=1 << 2,
)

module_header = Struct(
    "magic" / FixedString(Bytes(4)),
    "version" / Int32ul,
    "module_id" / Hex(Int64ul),
    "item_count" / Int32ul,
    "manifest_count" / Int32ul,
    "resource_index" / Int32sl,
    "strings_size" / Hex(Int32ul),
    "resource_count" / Int32ul,
    "block_count" / Int32ul,
    "build_version" / Hex(Int64ul),
    "checksum" / If(this.version == FORGE_VERSION, Hex(Int64ul)),
    "is_forge" / Computed(this.version == FORGE_VERSION),
)

module_file_entry = Struct(
    "name_offset" / Hex(Int32ul),
    "parent_file_index" / Int32sl,
    "resource_count" / Int32ul,
    "first_resource_index" / Int32sl,
    "block_count" / Int32ul,
    "first_block_index" / Int32sl,
    "data_offset" / Hex(Int64ul),
    "total_compressed_size" / Hex(Int32ul),
    "total_uncompressed_size" / Hex(Int32ul),
    "header_alignment" / Int8ul,
    "tag_alignment" / Int8ul,
    "resource_alignment" / Int8ul,
    "flags" / FileFlags,
    "global_tag_id" / Int32sl,
    "asset_id" / Int64sl,
    "asset_checksum" / Int64sl,
    "group_tag" / ReversedFourCC(Bytes(4)),
    "uncompressed_header_size" / Hex(Int32ul),
    "uncompressed_tag_size" / Hex(Int32ul),
    "uncompressed_resource_size" / Hex(Int32ul),
    "header_block_count" / Int16sl,
    "tag_block_count" / Int16sl,
    "resource_block_count" / Int16sl,
    "padding" / Int16sl,
)

module_block = Struct(
    "compressed_offset" / Hex(Int32ul),
    "compressed_size" / Hex(Int32ul),
    "uncompressed_offset" / Hex(Int32ul),
    "uncompressed_size" / Hex(Int32ul),
    "compressed" / NonZeroFlag(Int32ul),
)

module_block_forge = Struct(
    "checksum" / Hex(Int64ul),
    "compressed_offset" / Hex(Int32ul),
    "compressed_size" / Hex(Int32ul),
    "uncompressed_offset" / Hex(Int32ul),
    "uncompressed_size" / Hex(Int32ul),
    "compressed" / NonZeroFlag(Int32ul),
    "padding" / Int32sl,
)

resource_index = Int32sl

def block_struct(is_forge: bool):
    return module_block_forge if is_forge else module_block

def read_exact(stream: typing.BinaryIO, size: int) -> bytes:
    offset = stream.tell()
    data = stream.read(size)
    if len(data) != size:
        raise ModuleIOError(f"short read at {hex(offset)}: wanted {hex(size)} bytes, got {hex(len(data))}")

    return data

def read_cstring(stream: typing.BinaryIO) -> str:
    offset = stream.tell()
    try:
        raw = NullTerminated(GreedyBytes).parse_stream(stream)
    except StreamError as e:
        raise ModuleIOError(f"unterminated string at {hex(offset)}") from e

    try:
        return raw.decode(CODING)
    except UnicodeDecodeError as e:
        raise ModuleIOError(f"string at {hex(offset)} is not valid {CODING}") from e

def read_fixed_string(stream: typing.BinaryIO, length: int) -> str:
    return FixedString(Bytes(length)).parse(read_exact(stream, length))

def read_module_header(stream: typing.BinaryIO):
    start = stream.tell()

    magic = read_fixed_string(stream, 4)
    if magic != MAGIC:
        raise InvalidModuleMagic(magic)

    version = Int32ul.parse(read_exact(stream, 4))
    if version not in VERSIONS:
        raise InvalidModuleVersion(version)

    stream.seek(start)
    try:
        return module_header.parse_stream(stream)
    except StreamError as e:
        raise ModuleIOError(f"truncated module header at {hex(start)}") from e
