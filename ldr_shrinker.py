#!/usr/bin/env python3
"""
LDR Shrinker - Simplifies ADSP-SC58x/BF70x boot loader streams

This tool reads a loader (.ldr) stream and writes an equivalent stream that
uses fewer blocks. Contiguous blocks are merged into single blocks and small
Fill blocks are unrolled into literal data, since the boot ROM spends more
time between blocks than it saves on run-length encoding small regions.

Each block starts with a 16-byte header:
  Offset 0x00: Block code word (bcode:4, flags:12, checksum:8, signature:8)
  Offset 0x04: Target Address
  Offset 0x08: Byte Count
  Offset 0x0C: Argument (fill value, image size, ...)
"""

import argparse
import enum
import struct
import sys
from pathlib import Path
from typing import NamedTuple, Optional
from datetime import datetime

HEADER_SIZE = 16
HEADER_FORMAT = '<4I'

# Block flag bits (within the 12-bit flags field)
BFLAG_FILL = 0x010    # Fill the target location with a specified 32-bit value
BFLAG_INIT = 0x080    # Call the code at the target address after loading
BFLAG_IGNORE = 0x100  # Block payload is ignored
BFLAG_FIRST = 0x400   # Beginning of a new application
BFLAG_FINAL = 0x800   # Last block of the loader stream

# Fill blocks larger than this are kept as Fill blocks rather than unrolled
DEFAULT_FILL_THRESHOLD = 256

FILL_WORD_SIZE = 4

# Read size used when skipping over Ignore block payloads
SKIP_CHUNK_SIZE = 65536


class ChecksumError(ValueError):
    """Raised when a block header fails its XOR checksum."""

    def __init__(self, position: int, checksum: int):
        super().__init__(f"Checksum failed @ 0x{position:02x} (residue 0x{checksum:02x})")
        self.position = position
        self.checksum = checksum


def calc_header_checksum(raw: bytes) -> int:
    """Return the XOR of all bytes of a raw header."""
    checksum = 0
    for byte in raw:
        checksum ^= byte
    return checksum


def format_flags(flags: int, argument: int) -> str:
    """Render the diagnostic flag suffix for a block listing line."""
    text = ''
    if flags & BFLAG_FILL:
        text += f" FILL (0x{argument:x})"
    if flags & BFLAG_INIT:
        text += " INIT"
    return text


class BlockHeader(NamedTuple):
    """A single 16-byte loader block header."""
    bcode: int = 0
    flags: int = 0
    checksum: int = 0
    signature: int = 0
    target_address: int = 0
    byte_count: int = 0
    argument: int = 0

    @classmethod
    def unpack(cls, raw: bytes) -> 'BlockHeader':
        """
        Split a raw 16-byte header into its fields.

        The first word packs four fields, least significant bits first:
        bcode (4 bits), flags (12 bits), checksum (8 bits), signature (8 bits).

        Args:
            raw: Exactly HEADER_SIZE bytes

        Returns:
            The decoded header, checksum field as stored
        """
        if len(raw) != HEADER_SIZE:
            raise ValueError(f"Invalid header size {len(raw)}, expected {HEADER_SIZE}")

        block_code, target_address, byte_count, argument = struct.unpack(HEADER_FORMAT, raw)
        return cls(
            bcode=block_code & 0xF,
            flags=(block_code >> 4) & 0xFFF,
            checksum=(block_code >> 16) & 0xFF,
            signature=(block_code >> 24) & 0xFF,
            target_address=target_address,
            byte_count=byte_count,
            argument=argument,
        )

    def _pack_with_checksum(self, checksum: int) -> bytes:
        block_code = ((self.bcode & 0xF)
                      | ((self.flags & 0xFFF) << 4)
                      | ((checksum & 0xFF) << 16)
                      | ((self.signature & 0xFF) << 24))
        return struct.pack(HEADER_FORMAT, block_code,
                           self.target_address & 0xFFFFFFFF,
                           self.byte_count & 0xFFFFFFFF,
                           self.argument & 0xFFFFFFFF)

    def pack(self) -> bytes:
        """
        Serialize the header with a freshly computed checksum.

        The stored checksum field is ignored: it is zeroed, the XOR over the
        resulting bytes is taken, and that value becomes the checksum.
        """
        checksum = calc_header_checksum(self._pack_with_checksum(0))
        return self._pack_with_checksum(checksum)

    def is_fill_only(self) -> bool:
        return self.flags == BFLAG_FILL


def decode_header(stream, position: int = 0) -> Optional[BlockHeader]:
    """
    Read and validate one block header from a binary stream.

    Args:
        stream: Binary stream positioned at a header
        position: Offset of the header in the stream, for error messages

    Returns:
        The decoded header, or None if the stream is at its end

    Raises:
        IOError: If the stream ends part way through the header
        ChecksumError: If the header's XOR checksum is not zero
    """
    raw = stream.read(HEADER_SIZE)
    if not raw:
        return None
    if len(raw) < HEADER_SIZE:
        raise IOError(f"Unexpected end of file at offset {position + len(raw)}")

    checksum = calc_header_checksum(raw)
    if checksum:
        raise ChecksumError(position, checksum)

    return BlockHeader.unpack(raw)


def encode_header(header: BlockHeader, stream) -> None:
    """Write a header to a binary stream with its checksum recomputed."""
    stream.write(header.pack())


def read_payload(stream, count: int, position: int) -> bytes:
    """Read exactly count payload bytes, raising IOError on a short read."""
    data = stream.read(count)
    if len(data) < count:
        raise IOError(f"Unexpected end of file at offset {position + len(data)}")
    return data


def skip_payload(stream, count: int, position: int) -> None:
    """Discard count payload bytes without holding them in memory."""
    remaining = count
    while remaining > 0:
        data = stream.read(min(SKIP_CHUNK_SIZE, remaining))
        if not data:
            raise IOError(f"Unexpected end of file at offset {position + count - remaining}")
        remaining -= len(data)


class Chunk:
    """One merged output range, possibly spanning several input blocks."""

    def __init__(self, address: int, argument: int, flags: int, materialized: bool = True):
        self.address = address
        self.argument = argument
        self.flags = flags
        self.length = 0
        # None for a Fill chunk that is written as a bare header
        self.data: Optional[bytearray] = bytearray() if materialized else None

    @property
    def end(self) -> int:
        return self.address + self.length

    def is_fill(self) -> bool:
        return bool(self.flags & BFLAG_FILL)

    def covers(self, address: int) -> bool:
        """True if address lies in [address, end], the end itself included."""
        return self.address <= address <= self.end

    def __repr__(self):
        state = 'fill' if self.data is None else f'{len(self.data)} bytes'
        return f"Chunk(0x{self.address:x}, 0x{self.length:x}, flags=0x{self.flags:03x}, {state})"


class ChunkStore:
    """
    Ordered set of chunks built up from the blocks of one application image.

    Chunks are kept in discovery order. A block either extends the first
    chunk whose range it touches or starts a new chunk at the end of the list.
    """

    def __init__(self, fill_threshold: int = DEFAULT_FILL_THRESHOLD, warn=None):
        """
        Initialize an empty chunk store.

        Args:
            fill_threshold: Largest Fill block (in bytes) that is unrolled into literal data
            warn: Optional callable(message) used to report overwritten regions
        """
        self.fill_threshold = fill_threshold
        self.warn = warn
        self.chunks: list[Chunk] = []

    def __len__(self):
        return len(self.chunks)

    def __iter__(self):
        return iter(self.chunks)

    def _can_unroll(self, header: BlockHeader) -> bool:
        return header.is_fill_only() and header.byte_count <= self.fill_threshold

    def find(self, header: BlockHeader) -> Optional[Chunk]:
        """
        Find the chunk a block should be merged into.

        Args:
            header: Header of the incoming Normal or Fill block

        Returns:
            The first chunk in list order whose range touches the block's
            target address, or None if the block has to start a new chunk
        """
        # Any flag other than FILL (INIT, ...) keeps the block on its own
        if header.flags & ~BFLAG_FILL:
            return None

        # Too large to unroll
        if (header.flags & BFLAG_FILL) and header.byte_count > self.fill_threshold:
            return None

        for chunk in self.chunks:
            # Fill chunks are segregated from everything
            if chunk.is_fill():
                continue
            if chunk.covers(header.target_address):
                return chunk

        return None

    def find_or_create(self, header: BlockHeader) -> tuple[Chunk, bool]:
        """
        Return the chunk for a block, creating and appending one if needed.

        A new chunk made from a small Fill-only block is created as a literal
        data chunk so the fill gets unrolled. All other Fill chunks carry no
        data buffer.

        Returns:
            Tuple of (chunk, created)
        """
        chunk = self.find(header)
        if chunk is not None:
            return chunk, False

        if self._can_unroll(header):
            chunk = Chunk(header.target_address, header.argument,
                          header.flags & ~BFLAG_FILL, materialized=True)
        else:
            chunk = Chunk(header.target_address, header.argument, header.flags,
                          materialized=not (header.flags & BFLAG_FILL))

        # The scan only stops early on a match, so new chunks go at the end
        self.chunks.append(chunk)
        return chunk, True

    def merge(self, header: BlockHeader, stream, position: int = 0) -> tuple[Chunk, bool]:
        """
        Merge one Normal or Fill block into the store.

        Literal payload bytes are read from stream. Fill blocks have no payload.

        Args:
            header: Header of the block being merged
            stream: Binary input stream positioned at the block's payload
            position: Offset of the payload in the input, for error messages

        Returns:
            Tuple of (chunk, created) for the chunk the block went into
        """
        chunk, created = self.find_or_create(header)

        is_fill = bool(header.flags & BFLAG_FILL)
        payload = b''
        if not is_fill and header.byte_count:
            payload = read_payload(stream, header.byte_count, position)

        block_end = header.target_address + header.byte_count
        overhang = block_end - chunk.end

        if overhang <= 0:
            if header.byte_count and self.warn:
                self.warn(f"memory overwrite in region 0x{header.target_address:x} to 0x{block_end:x}")
            return chunk, created

        offset = header.target_address - chunk.address

        if chunk.data is not None:
            chunk.data.extend(bytes(overhang))
            if is_fill:
                # A trailing remainder of less than one word is not written
                words = header.byte_count // FILL_WORD_SIZE
                fill = struct.pack('<I', header.argument & 0xFFFFFFFF) * words
                chunk.data[offset:offset + len(fill)] = fill
            else:
                chunk.data[offset:offset + len(payload)] = payload

        chunk.length += overhang
        return chunk, created

    def drain(self) -> list[Chunk]:
        """Remove and return all chunks, leaving the store empty."""
        chunks, self.chunks = self.chunks, []
        return chunks


class ImageSettings(NamedTuple):
    """Per-application values captured from a First block."""
    signature: int = 0
    bcode: int = 0
    entry_point: int = 0


def compute_image_size(chunks) -> int:
    """
    Compute the size in bytes of an image once written.

    This counts the leading First header, one header per chunk, and the data
    of every chunk that has a buffer.
    """
    size = HEADER_SIZE
    for chunk in chunks:
        size += HEADER_SIZE
        if chunk.data is not None:
            size += chunk.length
    return size


def write_image(output_stream, chunks, settings: ImageSettings) -> int:
    """
    Write one application image and release the chunks' buffers.

    The image starts with a synthetic Ignore|First header. Its argument
    holds the total image size, so the boot ROM can skip the whole image.
    The chunks follow in list order.

    Args:
        output_stream: Binary stream to write to
        chunks: Chunks to write, usually from ChunkStore.drain()
        settings: Signature, bcode and entry point of the image

    Returns:
        Total number of bytes written
    """
    image_size = compute_image_size(chunks)

    encode_header(BlockHeader(
        bcode=settings.bcode,
        flags=BFLAG_IGNORE | BFLAG_FIRST,
        signature=settings.signature,
        target_address=settings.entry_point,
        argument=image_size,
    ), output_stream)

    for chunk in chunks:
        encode_header(BlockHeader(
            bcode=settings.bcode,
            flags=chunk.flags,
            signature=settings.signature,
            target_address=chunk.address,
            byte_count=chunk.length,
            argument=chunk.argument,
        ), output_stream)

        if chunk.data is not None:
            output_stream.write(chunk.data)
            chunk.data = None

    return image_size


class ParserState(enum.Enum):
    AWAITING_FIRST = 'awaiting_first'
    STREAMING = 'streaming'
    DONE = 'done'


class LoaderShrinker:
    """Reads a loader stream block by block and writes the simplified stream."""

    def __init__(self, input_stream, output_stream, fill_threshold: int = DEFAULT_FILL_THRESHOLD,
                 verbose: bool = False):
        """
        Initialize the shrinker.

        Args:
            input_stream: Binary stream holding the original loader stream
            output_stream: Binary stream the simplified loader stream is written to
            fill_threshold: Largest Fill block in bytes that is unrolled (default: 256)
            verbose: Whether to print timestamped progress messages to stderr (default: False)
        """
        self.input_stream = input_stream
        self.output_stream = output_stream
        self.fill_threshold = fill_threshold
        self.verbose = verbose
        self.state = ParserState.AWAITING_FIRST
        self.settings = ImageSettings()
        self.store = ChunkStore(fill_threshold, warn=self._warn)
        self.final_header: Optional[BlockHeader] = None
        self.position = 0
        self.input_block_count = 0
        self.output_block_count = 0
        self.image_count = 0

    def _log(self, message: str):
        """Print a timestamped message to stderr if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp}] {message}", file=sys.stderr)

    def _warn(self, message: str):
        print(f"Warning: {message}", file=sys.stderr)

    def flush(self):
        """Write out the pending chunks as one image, if there are any."""
        if not len(self.store):
            return

        chunks = self.store.drain()
        self._log(f"--- write 0x{self.settings.signature:02x} entry 0x{self.settings.entry_point:x}")
        for chunk in chunks:
            self._log(f"0x{chunk.address:x} 0x{chunk.length:x}{format_flags(chunk.flags, chunk.argument)}")

        write_image(self.output_stream, chunks, self.settings)
        self.output_block_count += len(chunks)
        self.image_count += 1

    def process_block(self, header: BlockHeader):
        """
        Process one block whose header has just been read.

        Any payload belonging to the block is consumed from the input stream.

        Args:
            header: The validated block header
        """
        flags = header.flags

        if not flags & (BFLAG_FIRST | BFLAG_FINAL):
            self._log(f"0x{header.target_address:x} 0x{header.byte_count:x}{format_flags(flags, header.argument)}")

        if flags & (BFLAG_FIRST | BFLAG_FINAL):
            self.flush()

        if flags & BFLAG_FINAL:
            self.final_header = header
            self.state = ParserState.DONE
            return

        if flags & BFLAG_FIRST:
            self.settings = ImageSettings(
                signature=header.signature,
                bcode=header.bcode,
                entry_point=header.target_address,
            )
            self._log(f"--- read 0x{header.signature:02x} entry 0x{header.target_address:x}")
            self.state = ParserState.STREAMING
            return

        self.state = ParserState.STREAMING
        self.input_block_count += 1

        if flags & BFLAG_IGNORE:
            skip_payload(self.input_stream, header.byte_count, self.position)
            self.position += header.byte_count
            return

        self.store.merge(header, self.input_stream, self.position)
        if not flags & BFLAG_FILL:
            self.position += header.byte_count

        if flags & BFLAG_INIT:
            self.flush()

    def finish(self):
        """Write the trailing Final block that terminates the output stream."""
        source = self.final_header
        if source is None:
            source = BlockHeader(bcode=self.settings.bcode, signature=self.settings.signature)

        encode_header(BlockHeader(
            bcode=source.bcode,
            flags=BFLAG_FINAL,
            signature=source.signature,
            target_address=self.settings.entry_point,
        ), self.output_stream)

    def run(self):
        """
        Process the whole input stream and write the simplified stream.

        Raises:
            ChecksumError: If a header fails its checksum
            IOError: If the input ends in the middle of a block
        """
        self._log("Starting loader stream simplification")

        while self.state is not ParserState.DONE:
            header = decode_header(self.input_stream, self.position)
            if header is None:
                if len(self.store):
                    self._warn("input ended without a Final block; writing pending blocks")
                self.flush()
                self.state = ParserState.DONE
                break

            self.position += HEADER_SIZE
            self.process_block(header)

        self.finish()
        self.output_stream.flush()
        self._log(f"Completed loader stream simplification ({self.image_count} images)")


def main():
    """Main entry point for the loader shrinker."""
    parser = argparse.ArgumentParser(
        description='Merge contiguous blocks of an ADSP-SC58x/BF70x loader stream so it boots faster',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Simplify a loader file
  %(prog)s app.ldr app_fast.ldr

  # Unroll Fill blocks of up to 1 KiB
  %(prog)s -t 1024 app.ldr app_fast.ldr
        """
    )

    parser.add_argument(
        'input',
        type=Path,
        help='Path to the input loader file'
    )

    parser.add_argument(
        'output',
        type=Path,
        help='Path to the output loader file'
    )

    parser.add_argument(
        '-t', '--fill-threshold',
        type=int,
        default=DEFAULT_FILL_THRESHOLD,
        metavar='BYTES',
        help=f'Largest Fill block to unroll into literal data (default: {DEFAULT_FILL_THRESHOLD})'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose mode with timestamped block listings to stderr'
    )

    args = parser.parse_args()

    if args.fill_threshold < 0:
        parser.error(f"Fill threshold must not be negative: {args.fill_threshold}")

    try:
        input_file = open(args.input, 'rb')
    except OSError as e:
        print(f"Error: unable to open input file: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        output_file = open(args.output, 'wb')
    except OSError as e:
        input_file.close()
        print(f"Error: unable to open output file: {e}", file=sys.stderr)
        sys.exit(1)

    shrinker = LoaderShrinker(
        input_file,
        output_file,
        fill_threshold=args.fill_threshold,
        verbose=args.verbose
    )

    try:
        shrinker.run()
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        input_file.close()
        output_file.close()

    print(f"{shrinker.input_block_count} blocks read; {shrinker.output_block_count} blocks written")


if __name__ == '__main__':
    main()
