"""Synthetic module images for the test suite, built through the parsing declarations."""
from __future__ import annotations

import zlib

from construct import Array

from module_format import (FORGE_VERSION, MAGIC, block_struct, module_file_entry, module_header,
                           resource_index)

ENTRY_DEFAULTS = dict(
    name_offset=0, parent_file_index=-1, resource_count=0, first_resource_index=-1,
    block_count=0, first_block_index=-1, data_offset=0,
    total_compressed_size=0, total_uncompressed_size=0,
    header_alignment=0, tag_alignment=0, resource_alignment=0,
    flags=dict(COMPRESSED=False, HAS_BLOCKS=False, RAW_FILE=False),
    global_tag_id=-1, asset_id=0, asset_checksum=0, group_tag="bitm",
    uncompressed_header_size=0, uncompressed_tag_size=0, uncompressed_resource_size=0,
    header_block_count=0, tag_block_count=0, resource_block_count=0, padding=0,
)


class ModuleBuilder:
    def __init__(self, version: int = FORGE_VERSION):
        self.version = version
        self.entries: list[dict] = []
        self.names = bytearray()
        self.blocks: list[dict] = []
        self.data = bytearray()
        self.resource_indices: list[int] = []

    def add_entry(self, name: str, **fields) -> int:
        entry = dict(ENTRY_DEFAULTS)
        entry["name_offset"] = len(self.names)
        entry.update(fields)
        self.names += name.encode("utf-8") + b"\0"
        self.entries.append(entry)
        return len(self.entries) - 1

    def add_single(self, name: str, payload: bytes, compressed: bool = True, **fields) -> int:
        blob = zlib.compress(payload) if compressed else payload
        fields.setdefault("flags", dict(COMPRESSED=compressed, HAS_BLOCKS=False, RAW_FILE=False))
        index = self.add_entry(name, data_offset=len(self.data), total_compressed_size=len(blob),
                               total_uncompressed_size=len(payload), **fields)
        self.data += blob
        return index

    def add_blocks(self, name: str, size: int, parts, **fields) -> int:
        """parts: (uncompressed_offset, plaintext, compressed) per block, stored in that order."""
        first = len(self.blocks)
        region = bytearray()
        for uoff, plain, compressed in parts:
            blob = zlib.compress(plain) if compressed else plain
            self.blocks.append(dict(
                checksum=0x1122334455667788, compressed_offset=len(region), compressed_size=len(blob),
                uncompressed_offset=uoff, uncompressed_size=len(plain), compressed=compressed,
                padding=0))
            region += blob

        fields.setdefault("flags", dict(COMPRESSED=any(p[2] for p in parts), HAS_BLOCKS=True, RAW_FILE=False))
        index = self.add_entry(name, data_offset=len(self.data), total_compressed_size=len(region),
                               total_uncompressed_size=size, block_count=len(parts),
                               first_block_index=first, **fields)
        self.data += region
        return index

    def header(self, magic: str = MAGIC) -> dict:
        return dict(
            magic=magic, version=self.version, module_id=0x0BADF00D,
            item_count=len(self.entries), manifest_count=0, resource_index=-1,
            strings_size=len(self.names), resource_count=len(self.resource_indices),
            block_count=len(self.blocks), build_version=0x0001000200030004,
            checksum=0xCAFEBABEDEADBEEF if self.version == FORGE_VERSION else None,
        )

    def tables(self, magic: str = MAGIC) -> bytes:
        is_forge = self.version == FORGE_VERSION
        out = module_header.build(self.header(magic))
        out += Array(len(self.entries), module_file_entry).build(self.entries)
        out += bytes(self.names)
        out += Array(len(self.resource_indices), resource_index).build(self.resource_indices)
        out += Array(len(self.blocks), block_struct(is_forge)).build(self.blocks)
        return out

    def build(self, magic: str = MAGIC) -> bytes:
        return self.tables(magic) + bytes(self.data)
