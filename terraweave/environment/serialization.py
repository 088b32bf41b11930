"""Compact, versioned binary encoding of a MapModel.

Layout (all integers little-endian):

    header
        magic            4s   b"TWMP"
        version          H
        seed             Q
        width, height    H H
        tile_count       H
        catalog checksum I
        stream mode      B    0 = RAW, 1 = RLE
        value bits       B    bits per tile value
        run bits         B    bits per run length (RLE only, else 0)
        stream length    I    bytes of packed tile stream
    tile stream          bit-packed, MSB first, row-major (y, then x)
        RAW: one value per cell
        RLE: (value, length - 1) pairs covering every cell
    zones
        count            H
        per zone         see _encode_zone()
    trailer
        crc32            I    of every byte before it

The encoder writes whichever tile stream mode is smaller, so large contiguous
regions compress well while noisy maps never grow past the RAW size. The
catalog checksum lets decode reject maps produced with a different catalog
instead of silently misreading tile IDs.
"""

from __future__ import annotations

import logging
import struct
import zlib
from dataclasses import dataclass

import numpy as np

from terraweave import config
from terraweave.environment.generators.zones import (
    SubPlacement,
    Zone,
    ZoneConstraints,
    ZoneRequest,
)
from terraweave.environment.map_model import MapModel
from terraweave.environment.tile_catalog import TileCatalog
from terraweave.errors import ConfigError, CorruptDataError, SizeExceededError

logger = logging.getLogger(__name__)

_HEADER = struct.Struct("<4sHQHHHIBBBI")
_CRC = struct.Struct("<I")
_ZONE_FIXED = struct.Struct("<HHHiBdBHdQ")
_SUB_PLACEMENT = struct.Struct("<hh")

MODE_RAW = 0
MODE_RLE = 1

_FLAG_MANDATORY = 1 << 0
_FLAG_FLAT = 1 << 0
_FLAG_NO_WATER = 1 << 1


def value_bits(tile_count: int) -> int:
    """Minimum bits needed to store a TileID for tile_count tile types."""
    return max(1, (tile_count - 1).bit_length())


# =============================================================================
# Bit packing
# =============================================================================


class BitWriter:
    """Accumulates fixed-width unsigned fields, most significant bit first."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._accumulator = 0
        self._pending_bits = 0

    def write(self, value: int, bits: int) -> None:
        if value < 0 or value >> bits:
            raise ValueError(f"{value} does not fit in {bits} bits")
        self._accumulator = (self._accumulator << bits) | value
        self._pending_bits += bits
        while self._pending_bits >= 8:
            self._pending_bits -= 8
            self._buffer.append((self._accumulator >> self._pending_bits) & 0xFF)
        self._accumulator &= (1 << self._pending_bits) - 1

    def getvalue(self) -> bytes:
        """Return the packed bytes, zero-padding the final partial byte."""
        if self._pending_bits:
            return bytes(self._buffer) + bytes(
                [(self._accumulator << (8 - self._pending_bits)) & 0xFF]
            )
        return bytes(self._buffer)


class BitReader:
    """Reads fixed-width unsigned fields written by BitWriter."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._position = 0  # in bits

    def read(self, bits: int) -> int:
        end = self._position + bits
        if end > len(self._data) * 8:
            raise CorruptDataError("Tile stream is truncated")
        value = 0
        position = self._position
        while position < end:
            byte = self._data[position >> 3]
            offset = position & 7
            take = min(8 - offset, end - position)
            shift = 8 - offset - take
            value = (value << take) | ((byte >> shift) & ((1 << take) - 1))
            position += take
        self._position = end
        return value


# =============================================================================
# Tile stream
# =============================================================================


def _runs(flat: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Split a 1D array into (values, lengths) of maximal runs."""
    boundaries = np.flatnonzero(np.diff(flat)) + 1
    starts = np.concatenate(([0], boundaries))
    ends = np.concatenate((boundaries, [flat.size]))
    return flat[starts], ends - starts


def _pack_raw(flat: np.ndarray, bits: int) -> bytes:
    writer = BitWriter()
    for value in flat.tolist():
        writer.write(value, bits)
    return writer.getvalue()


def _pack_rle(values: np.ndarray, lengths: np.ndarray, bits: int, run_bits: int) -> bytes:
    writer = BitWriter()
    for value, length in zip(values.tolist(), lengths.tolist(), strict=True):
        writer.write(value, bits)
        writer.write(length - 1, run_bits)
    return writer.getvalue()


def _encode_tiles(tiles: np.ndarray, bits: int) -> tuple[int, int, bytes]:
    """Pick the smaller of RAW and RLE. Returns (mode, run_bits, payload)."""
    # tiles is indexed [x, y]; transpose for row-major cell order.
    flat = np.ascontiguousarray(tiles.T).ravel().astype(np.int64)
    raw = _pack_raw(flat, bits)

    values, lengths = _runs(flat)
    run_bits = max(1, int(lengths.max() - 1).bit_length())
    rle_size_bits = len(values) * (bits + run_bits)
    if (rle_size_bits + 7) // 8 >= len(raw):
        return MODE_RAW, 0, raw
    return MODE_RLE, run_bits, _pack_rle(values, lengths, bits, run_bits)


def _decode_tiles(
    payload: bytes,
    mode: int,
    width: int,
    height: int,
    tile_count: int,
    bits: int,
    run_bits: int,
) -> np.ndarray:
    cell_count = width * height
    reader = BitReader(payload)
    flat = np.empty(cell_count, dtype=np.uint8)

    if mode == MODE_RAW:
        for index in range(cell_count):
            flat[index] = _checked_value(reader.read(bits), tile_count)
    elif mode == MODE_RLE:
        if run_bits <= 0:
            raise CorruptDataError("RLE stream declares zero-width run lengths")
        filled = 0
        while filled < cell_count:
            value = _checked_value(reader.read(bits), tile_count)
            length = reader.read(run_bits) + 1
            if filled + length > cell_count:
                raise CorruptDataError("RLE runs overflow the grid")
            flat[filled : filled + length] = value
            filled += length
    else:
        raise CorruptDataError(f"Unknown tile stream mode {mode}")

    return flat.reshape(height, width).T.copy()


def _checked_value(value: int, tile_count: int) -> int:
    if value >= tile_count:
        raise CorruptDataError(f"Tile value {value} is outside the catalog")
    return value


# =============================================================================
# Zone records
# =============================================================================


def _encode_name(name: str) -> bytes:
    data = name.encode()
    return struct.pack("<B", len(data)) + data


def _encode_zone(zone: Zone, tile_count: int) -> bytes:
    """Zone record layout:

    id (u8 length + utf-8), then fixed fields: center x, center y, radius,
    priority, flags, flatness threshold, constraint flags, min edge distance,
    min zone distance, allowed tile mask; then sub-placement count (u8) and
    per sub-placement: name (u8 length + utf-8), dx, dy.
    """
    request = zone.request
    constraints = request.constraints
    allowed_mask = 0
    for tile_id in request.allowed_tiles:
        if not 0 <= tile_id < tile_count:
            raise ConfigError(f"Zone {zone.id} allows undefined tile id {tile_id}")
        allowed_mask |= 1 << tile_id

    constraint_flags = (_FLAG_FLAT if constraints.flat else 0) | (
        _FLAG_NO_WATER if constraints.no_water else 0
    )
    parts = [
        _encode_name(zone.id),
        _ZONE_FIXED.pack(
            zone.center[0],
            zone.center[1],
            request.radius,
            request.priority,
            _FLAG_MANDATORY if request.mandatory else 0,
            constraints.flatness_threshold,
            constraint_flags,
            constraints.min_edge_distance,
            constraints.min_zone_distance,
            allowed_mask,
        ),
        struct.pack("<B", len(request.sub_placements)),
    ]
    for placement in request.sub_placements:
        parts.append(_encode_name(placement.name))
        parts.append(_SUB_PLACEMENT.pack(*placement.offset))
    return b"".join(parts)


class _Cursor:
    """Bounds-checked reader over the body of an encoded map."""

    def __init__(self, data: bytes, position: int = 0) -> None:
        self.data = data
        self.position = position

    def take(self, size: int) -> bytes:
        end = self.position + size
        if end > len(self.data):
            raise CorruptDataError("Map data is truncated")
        chunk = self.data[self.position : end]
        self.position = end
        return chunk

    def unpack(self, fmt: struct.Struct) -> tuple:
        return fmt.unpack(self.take(fmt.size))

    def name(self) -> str:
        (length,) = struct.unpack("<B", self.take(1))
        try:
            return self.take(length).decode()
        except UnicodeDecodeError as exc:
            raise CorruptDataError("Zone name is not valid UTF-8") from exc


def _decode_zone(cursor: _Cursor, tile_count: int) -> Zone:
    zone_id = cursor.name()
    (
        cx,
        cy,
        radius,
        priority,
        flags,
        flatness_threshold,
        constraint_flags,
        min_edge_distance,
        min_zone_distance,
        allowed_mask,
    ) = cursor.unpack(_ZONE_FIXED)
    if allowed_mask >> tile_count:
        raise CorruptDataError(f"Zone {zone_id} allows tiles outside the catalog")

    (count,) = struct.unpack("<B", cursor.take(1))
    sub_placements = []
    for _ in range(count):
        name = cursor.name()
        dx, dy = cursor.unpack(_SUB_PLACEMENT)
        sub_placements.append(SubPlacement(name, (dx, dy)))

    try:
        request = ZoneRequest(
            id=zone_id,
            radius=radius,
            allowed_tiles=frozenset(
                tile_id for tile_id in range(tile_count) if allowed_mask >> tile_id & 1
            ),
            constraints=ZoneConstraints(
                flat=bool(constraint_flags & _FLAG_FLAT),
                flatness_threshold=flatness_threshold,
                no_water=bool(constraint_flags & _FLAG_NO_WATER),
                min_edge_distance=min_edge_distance,
                min_zone_distance=min_zone_distance,
            ),
            sub_placements=tuple(sub_placements),
            mandatory=bool(flags & _FLAG_MANDATORY),
            priority=priority,
        )
    except ConfigError as exc:
        raise CorruptDataError(f"Zone record {zone_id!r} is invalid: {exc}") from exc
    return Zone(request, (cx, cy))


# =============================================================================
# Public API
# =============================================================================


@dataclass(frozen=True)
class MapHeader:
    """Fields readable without decoding the tile stream."""

    version: int
    seed: int
    width: int
    height: int
    tile_count: int
    catalog_checksum: int
    mode: int
    value_bits: int
    run_bits: int
    stream_length: int


class MapSerializer:
    """Encodes and decodes MapModels for a specific tile catalog."""

    def __init__(
        self, catalog: TileCatalog, byte_budget: int = config.DEFAULT_BYTE_BUDGET
    ) -> None:
        self.catalog = catalog
        self.byte_budget = byte_budget

    def encode(self, model: MapModel, byte_budget: int | None = None) -> bytes:
        """Serialize a model.

        Raises:
            ConfigError: If the model was built for a different catalog or is
                larger than the maximum grid.
            SizeExceededError: If the result is larger than the byte budget.
        """
        budget = self.byte_budget if byte_budget is None else byte_budget
        if model.catalog_checksum != self.catalog.checksum:
            raise ConfigError(
                f"Model catalog checksum {model.catalog_checksum:#010x} does not "
                f"match serializer catalog {self.catalog.checksum:#010x}"
            )
        if model.width > config.MAX_GRID_WIDTH or model.height > config.MAX_GRID_HEIGHT:
            raise ConfigError(
                f"Map size {model.width}x{model.height} exceeds the "
                f"{config.MAX_GRID_WIDTH}x{config.MAX_GRID_HEIGHT} maximum"
            )

        tile_count = self.catalog.tile_count
        bits = value_bits(tile_count)
        mode, run_bits, stream = _encode_tiles(model.tiles, bits)

        body = b"".join(
            [
                _HEADER.pack(
                    config.FORMAT_MAGIC,
                    config.FORMAT_VERSION,
                    model.seed,
                    model.width,
                    model.height,
                    tile_count,
                    self.catalog.checksum,
                    mode,
                    bits,
                    run_bits,
                    len(stream),
                ),
                stream,
                struct.pack("<H", len(model.zones)),
                *(_encode_zone(zone, tile_count) for zone in model.zones),
            ]
        )
        data = body + _CRC.pack(zlib.crc32(body))

        if len(data) > budget:
            raise SizeExceededError(len(data), budget)

        mode_name = "RLE" if mode == MODE_RLE else "RAW"
        logger.debug(
            f"Encoded {model.width}x{model.height} map in {len(data)} bytes "
            f"({mode_name}, {len(stream)} byte tile stream)"
        )
        return data

    def decode(self, data: bytes) -> MapModel:
        """Deserialize a model produced by encode() with the same catalog.

        Raises:
            CorruptDataError: On bad magic, version mismatch, catalog checksum
                mismatch, CRC mismatch, invalid values, or truncation.
        """
        return decode(data, self.catalog)


def read_header(data: bytes) -> MapHeader:
    """Parse and sanity-check the fixed header."""
    if len(data) < _HEADER.size + _CRC.size:
        raise CorruptDataError("Map data is truncated")
    (
        magic,
        version,
        seed,
        width,
        height,
        tile_count,
        checksum,
        mode,
        bits,
        run_bits,
        stream_length,
    ) = _HEADER.unpack_from(data)
    if magic != config.FORMAT_MAGIC:
        raise CorruptDataError(f"Not a map file (magic {magic!r})")
    if version != config.FORMAT_VERSION:
        raise CorruptDataError(
            f"Unsupported format version {version}, expected {config.FORMAT_VERSION}"
        )
    if width == 0 or height == 0:
        raise CorruptDataError("Map has zero size")
    if width > config.MAX_GRID_WIDTH or height > config.MAX_GRID_HEIGHT:
        raise CorruptDataError(
            f"Map size {width}x{height} exceeds the "
            f"{config.MAX_GRID_WIDTH}x{config.MAX_GRID_HEIGHT} maximum"
        )
    if not 1 <= tile_count <= config.MAX_TILE_TYPES:
        raise CorruptDataError(f"Invalid tile count {tile_count}")
    if bits != value_bits(tile_count):
        raise CorruptDataError(f"Invalid value width {bits} for {tile_count} tiles")
    return MapHeader(
        version=version,
        seed=seed,
        width=width,
        height=height,
        tile_count=tile_count,
        catalog_checksum=checksum,
        mode=mode,
        value_bits=bits,
        run_bits=run_bits,
        stream_length=stream_length,
    )


def decode(
    data: bytes,
    catalog: TileCatalog | None = None,
    expected_checksum: int | None = None,
) -> MapModel:
    """Deserialize a map.

    Args:
        data: Bytes produced by MapSerializer.encode().
        catalog: Catalog the caller will interpret tile IDs with. Its checksum
            is used when expected_checksum is not given.
        expected_checksum: Required catalog checksum. None (with no catalog)
            skips the catalog check.

    Raises:
        CorruptDataError: See MapSerializer.decode().
    """
    if expected_checksum is None and catalog is not None:
        expected_checksum = catalog.checksum
    data = bytes(data)
    header = read_header(data)

    body, trailer = data[: -_CRC.size], data[-_CRC.size :]
    (stored_crc,) = _CRC.unpack(trailer)
    if zlib.crc32(body) != stored_crc:
        raise CorruptDataError("Map data failed its CRC check (corrupt or truncated)")

    if expected_checksum is not None and header.catalog_checksum != expected_checksum:
        raise CorruptDataError(
            f"Map was generated with catalog {header.catalog_checksum:#010x}, "
            f"expected {expected_checksum:#010x}"
        )

    cursor = _Cursor(body, _HEADER.size)
    stream = cursor.take(header.stream_length)
    tiles = _decode_tiles(
        stream,
        header.mode,
        header.width,
        header.height,
        header.tile_count,
        header.value_bits,
        header.run_bits,
    )

    (zone_count,) = struct.unpack("<H", cursor.take(2))
    zones = [_decode_zone(cursor, header.tile_count) for _ in range(zone_count)]
    if cursor.position != len(body):
        raise CorruptDataError("Unexpected trailing bytes after zone records")

    return MapModel.create(
        seed=header.seed,
        tiles=tiles,
        zones=zones,
        catalog_checksum=header.catalog_checksum,
    )


def encode(
    model: MapModel, catalog: TileCatalog, byte_budget: int = config.DEFAULT_BYTE_BUDGET
) -> bytes:
    """Module-level shortcut for MapSerializer(catalog).encode(model)."""
    return MapSerializer(catalog, byte_budget).encode(model)
