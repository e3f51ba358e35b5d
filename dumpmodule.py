from construct import Array, StreamError
from concurrent.futures import ThreadPoolExecutor
import io
import logging
import os
import sys
import threading
import typing
import hexdump

import module_format
from module_format import (ModuleError, ModuleIOError, EmptyTag, NonCompressedSingleTag, BlockRangeError,
    BlockOverlapError, module_file_entry, resource_index, block_struct, read_exact, read_cstring, read_module_header)
from module_inflate import ModuleBlock_Decompress, ModuleZlib_Decompress

log = logging.getLogger(__name__)

class H5Module():
    """Halo 5 module (campaign v23 and forge v27).

    Descriptor tables are parsed once in __init__; tag bytes are produced on demand by
    read_tag() or in bulk by read_tags() and never stored on the entries themselves.
    """

    def __init__(self, file: typing.BinaryIO, parse_tags: bool=False):
        self.file = file
        self.lock = threading.Lock()
        self.tags = None

        self.header = read_module_header(self.file)
        self.is_forge = self.header.is_forge

        try:
            self.files = list(Array(self.header.item_count, module_file_entry).parse_stream(self.file))

            self.name_offset = self.file.tell()
            log.debug("name table @ %08x (%d entries)", self.name_offset, len(self.files))
            self.read_names()

            self.file.seek(self.name_offset + self.header.strings_size)
            self.resource_indices = list(Array(self.header.resource_count, resource_index).parse_stream(self.file))
            self.blocks = list(Array(self.header.block_count, block_struct(self.is_forge)).parse_stream(self.file))

        except StreamError as e:
            raise ModuleIOError(f"truncated module tables: {e}") from e

        self.data_offset = self.file.tell()
        log.debug("data region @ %08x (%d blocks, forge=%s)", self.data_offset, len(self.blocks), self.is_forge)

        if parse_tags:
            self.tags = self.read_tags()

    def read_names(self):
        with self.lock:
            for entry in self.files:
                self.file.seek(self.name_offset + entry.name_offset)
                entry.name = read_cstring(self.file)

    def tag_blocks(self, index: int):
        entry = self.files[index]
        first = entry.first_block_index
        last = first + entry.block_count

        if entry.block_count == 0: return []
        if first < 0 or last > len(self.blocks):
            raise BlockRangeError(index, f"blocks [{first}, {last}) outside block table of {len(self.blocks)}")

        return self.blocks[first:last]

    def _read_at(self, offset: int, size: int):
        with self.lock:
            self.file.seek(offset)
            return read_exact(self.file, size)

    def _check_blocks(self, index: int, entry, blocks):
        for block in blocks:
            if block.uncompressed_offset + block.uncompressed_size > entry.total_uncompressed_size:
                raise BlockRangeError(index,
                    f"block destination {hex(block.uncompressed_offset)}+{hex(block.uncompressed_size)} "
                    f"past tag size {hex(entry.total_uncompressed_size)}")

        placed = sorted((b for b in blocks if b.uncompressed_size), key=lambda b: b.uncompressed_offset)
        for prev, cur in zip(placed, placed[1:]):
            if prev.uncompressed_offset + prev.uncompressed_size > cur.uncompressed_offset:
                raise BlockOverlapError(index, prev, cur)

    def read_tag(self, index: int) -> bytes:
        entry = self.files[index]
        if entry.total_uncompressed_size == 0:
            raise EmptyTag(index, entry.name)

        region = self.data_offset + entry.data_offset

        if entry.flags.HAS_BLOCKS:
            blocks = self.tag_blocks(index)
            self._check_blocks(index, entry, blocks)

            output = bytearray(entry.total_uncompressed_size)
            for block in blocks:
                data = self._read_at(region + block.compressed_offset, block.compressed_size)
                start = block.uncompressed_offset
                output[start:start + block.uncompressed_size] = ModuleBlock_Decompress(data, block)
                log.debug("tag #%d block %08x+%x -> %08x+%x%s", index, block.compressed_offset, block.compressed_size,
                          start, block.uncompressed_size, " z" if block.compressed else "")

            log.debug("tag #%d %s: %d blocks -> %x bytes", index, entry.name, len(blocks), len(output))
            return bytes(output)

        if not entry.flags.COMPRESSED:
            raise NonCompressedSingleTag(index, entry.name)

        data = self._read_at(region, entry.total_compressed_size)
        return ModuleZlib_Decompress(data, entry.total_uncompressed_size)

    def read_tags(self, workers: int=1) -> typing.Dict[int, bytes]:
        if workers <= 1:
            return {i: self.read_tag(i) for i in range(len(self.files))}

        with ThreadPoolExecutor(max_workers=workers) as pool:
            return dict(enumerate(pool.map(self.read_tag, range(len(self.files)))))

    def ls(self):
        return [entry.name for entry in self.files]

    def find(self, name: str) -> int:
        for i, entry in enumerate(self.files):
            if entry.name == name:
                return i

        raise FileNotFoundError(name)

    def open(self, name: str):
        index = self.find(name)
        if self.tags is not None:
            return io.BytesIO(self.tags[index])

        return io.BytesIO(self.read_tag(index))

def tag_path(save_path: str, name: str):
    root = os.path.normpath(save_path)
    out = os.path.normpath(os.path.join(root, name.replace(":", "_").replace("*", "_").lstrip("/")))
    if out == root or os.path.commonpath([root, out]) != root:
        raise ModuleError(f"tag name escapes save path: {name}")

    return out

def dump_module(file_name: str, save_path: str, workers: int=1):
    with open(file_name, "rb") as f:
        m = H5Module(f)
        tags = m.read_tags(workers)

    # resolve every destination before anything is written
    paths = {index: tag_path(save_path, m.files[index].name) for index in tags}
    for index, data in tags.items():
        out = paths[index]
        os.makedirs(os.path.split(out)[0] or ".", exist_ok=True)
        with open(out, "wb") as o:
            o.write(data)

    return len(tags)

def find_modules(path: str):
    if os.path.isfile(path):
        yield path
        return

    for root, dirs, files in os.walk(path):
        dirs.sort()
        for f in sorted(files):
            if f.endswith("module"):
                yield os.path.join(root, f)

def _do_module_shell(m: H5Module, source: str=""):
    print("H5 module shell")
    print(f"source file: {source} v{m.header.version}{' (forge)' if m.is_forge else ''}, {len(m.files)} tags")

    while True:
        try:
            cmd = input("> ").split()
        except EOFError:
            break

        try:
            if len(cmd) > 0:
                if cmd[0] == "exit":
                    break

                elif cmd[0] == "ls":
                    for entry in m.files:
                        print(f"{entry.group_tag} {entry.total_uncompressed_size:08x} {entry.name}")

                elif cmd[0] == "info":
                    for k, v in m.header.items():
                        if not k.startswith("_"): print(f"{k}: {v}")
                    print(f"data_offset: {m.data_offset:08x}")

                elif cmd[0] == "blocks":
                    if len(cmd) != 2:
                        print(f"{cmd[0]}: usage: {cmd[0]} tag")

                    else:
                        for b in m.tag_blocks(m.find(cmd[1])):
                            print(f"{b.compressed_offset:08x}+{b.compressed_size:08x} -> "
                                  f"{b.uncompressed_offset:08x}+{b.uncompressed_size:08x}{' z' if b.compressed else ''}")

                elif cmd[0] == "dump":
                    if len(cmd) != 3:
                        print(f"{cmd[0]}: usage: {cmd[0]} tag destination")

                    else:
                        os.makedirs(os.path.split(cmd[2])[0] or ".", exist_ok=True)
                        with open(cmd[2], "wb") as o:
                            o.write(m.open(cmd[1]).read())

                elif cmd[0] == "encoding":
                    if len(cmd) == 1:
                        print(module_format.CODING)

                    elif len(cmd) > 2:
                        print(f"{cmd[0]}: too many arguments")

                    else:
                        previous = module_format.CODING
                        module_format.CODING = cmd[1]
                        try:
                            m.read_names()
                        except (ModuleError, LookupError):
                            module_format.CODING = previous
                            m.read_names()
                            raise

                elif cmd[0] == "cat":
                    if len(cmd) == 1:
                        print(f"{cmd[0]}: usage: {cmd[0]} tags...")

                    else:
                        for f in cmd[1:]:
                            sys.stdout.buffer.write(m.open(f).read())

                elif cmd[0] in ["hd", "hexdump"]:
                    if len(cmd) == 1:
                        print(f"{cmd[0]}: usage: {cmd[0]} tags...")

                    else:
                        for f in cmd[1:]:
                            hexdump.hexdump(m.open(f).read())

                elif cmd[0] == "help":
                    print("ls (list all tags with group and size)")
                    print("info (show the module header)")
                    print("blocks tag (show the blocks a tag is built from)")
                    print("dump tag destination (read a tag and save)")
                    print("encoding [encoding] (set the encoding used to read tag names)")
                    print("cat tags... (read tags and output to console)")
                    print("hexdump tags... (read tags and output in hexdump)")
                    print("hd tags... (short for hexdump)")
                    print("help (show this help message)")

                else:
                    print(f"{cmd[0]}: command not found")

        except (ModuleError, OSError, LookupError) as e:
            print(f"{cmd[0]}: {type(e).__name__}: {e}")

def main(argv: typing.Optional[typing.List[str]]=None):
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) not in (1, 2):
        print("usage: dumpmodule.py <module | deploy folder> [save path]")
        return 2

    logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s: %(message)s",
                        datefmt="%Y-%m-%d %H:%M:%S")

    if len(argv) == 1:
        with open(argv[0], "rb") as f:
            _do_module_shell(H5Module(f), argv[0])
        return 0

    failed = 0
    for file_name in find_modules(argv[0]):
        print(f"Dumping module: {file_name}")
        try:
            count = dump_module(file_name, argv[1])
            log.info("%s: %d tags", file_name, count)

        except (ModuleError, OSError) as e:
            log.error("%s: %s", file_name, e)
            failed += 1

    return 1 if failed else 0

if __name__ == "__main__":
    sys.exit(main())
