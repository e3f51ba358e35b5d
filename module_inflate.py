import typing
import zlib

from module_format import ModuleIOError

def ModuleZlib_Decompress(data: typing.Union[bytes, bytearray], size: int):
    # exactly `size` bytes, anything the stream holds past that is ignored
    if size == 0: return b""

    decomp = zlib.decompressobj()
    try:
        output = decomp.decompress(data, size)
    except zlib.error as e:
        raise ModuleIOError(f"inflate failed: {e}") from e

    if len(output) < size:
        raise ModuleIOError(f"inflate produced {hex(len(output))} bytes, expected {hex(size)}")

    return output

def ModuleRaw_Decompress(data: typing.Union[bytes, bytearray], size: int):
    if len(data) != size:
        raise ModuleIOError(f"stored block holds {hex(len(data))} bytes, expected {hex(size)}")

    return bytes(data)

def ModuleBlock_Decompress(data: typing.Union[bytes, bytearray], block):
    if block.compressed:
        return ModuleZlib_Decompress(data, block.uncompressed_size)

    return ModuleRaw_Decompress(data, block.uncompressed_size)
