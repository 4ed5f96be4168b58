"""Frame and tensor buffer data types.

A ``Frame`` is one raw image from a video source. It only describes the
caller's memory and is never retained past a conversion call. A
``TensorBuffer`` is the fixed-size, fixed-format output handed to the
classifier; it always owns its pixel data.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray


class PixelEncoding(StrEnum):
    GRAY8 = "gray8"
    RGB24 = "rgb24"
    BGR24 = "bgr24"
    RGBA32 = "rgba32"
    BGRA32 = "bgra32"
    ARGB32 = "argb32"
    XRGB32 = "xrgb32"
    NV12 = "nv12"

    @property
    def channel_order(self) -> str:
        """Byte order of the interleaved channels ("X" marks an ignored byte)."""
        return _CHANNEL_ORDER[self]

    @property
    def bytes_per_pixel(self) -> int:
        """Bytes per pixel of the first (or only) plane."""
        return len(self.channel_order)

    @property
    def is_planar(self) -> bool:
        return self is PixelEncoding.NV12


_CHANNEL_ORDER: dict[PixelEncoding, str] = {
    PixelEncoding.GRAY8: "L",
    PixelEncoding.RGB24: "RGB",
    PixelEncoding.BGR24: "BGR",
    PixelEncoding.RGBA32: "RGBA",
    PixelEncoding.BGRA32: "BGRA",
    PixelEncoding.ARGB32: "ARGB",
    PixelEncoding.XRGB32: "XRGB",
    # Luma plane only; chroma follows as interleaved UV at half resolution.
    PixelEncoding.NV12: "Y",
}


class RowOrientation(StrEnum):
    TOP_DOWN = "top_down"
    BOTTOM_UP = "bottom_up"

    def flipped(self) -> RowOrientation:
        if self is RowOrientation.TOP_DOWN:
            return RowOrientation.BOTTOM_UP
        return RowOrientation.TOP_DOWN


@dataclass(frozen=True, slots=True)
class Frame:
    """A raw captured image.

    Attributes:
        data: Pixel memory (bytes, bytearray, memoryview or numpy array).
        width: Width in pixels.
        height: Height in pixels.
        encoding: Source pixel encoding.
        stride: Bytes per row of the first plane. ``None`` means tightly packed.
        orientation: Whether row 0 is the visual top or bottom.
    """

    data: object = field(repr=False)
    width: int
    height: int
    encoding: PixelEncoding
    stride: int | None = None
    orientation: RowOrientation = RowOrientation.TOP_DOWN

    @property
    def row_bytes(self) -> int:
        """Packed size of one row of the first plane."""
        return self.width * self.encoding.bytes_per_pixel

    @property
    def bytes_per_row(self) -> int:
        return self.stride if self.stride is not None else self.row_bytes

    @classmethod
    def from_array(
        cls,
        array: NDArray[np.uint8],
        encoding: PixelEncoding,
        orientation: RowOrientation = RowOrientation.TOP_DOWN,
    ) -> Frame:
        """Wrap an ``(H, W)`` or ``(H, W, C)`` uint8 array, e.g. an OpenCV capture.

        The array is not copied. NV12 arrays are expected in OpenCV's
        ``(H * 3 // 2, W)`` layout.
        """
        if array.ndim not in (2, 3):
            raise ValueError(f"Expected a 2D or 3D array, got shape {array.shape}")
        if array.dtype != np.uint8:
            raise ValueError(f"Expected a uint8 array, got {array.dtype}")
        rows, width = array.shape[0], array.shape[1]
        height = rows * 2 // 3 if encoding is PixelEncoding.NV12 else rows
        contiguous = np.ascontiguousarray(array)
        return cls(
            data=contiguous,
            width=width,
            height=height,
            encoding=encoding,
            stride=contiguous.strides[0],
            orientation=orientation,
        )


@dataclass(frozen=True, slots=True)
class TensorBuffer:
    """Fixed-size, fixed-format pixel buffer for the classifier.

    ``data`` is a C-contiguous ``(height, width, channels)`` uint8 array that
    owns its memory.
    """

    data: NDArray[np.uint8] = field(repr=False)
    width: int
    height: int
    encoding: PixelEncoding
    orientation: RowOrientation = RowOrientation.TOP_DOWN

    @property
    def channels(self) -> int:
        return self.encoding.bytes_per_pixel

    @property
    def nbytes(self) -> int:
        return int(self.data.nbytes)

    def tobytes(self) -> bytes:
        return self.data.tobytes()

    def flip_rows(self) -> TensorBuffer:
        """Return a copy with rows reversed and the orientation flag toggled."""
        return replace(
            self,
            data=np.ascontiguousarray(self.data[::-1]),
            orientation=self.orientation.flipped(),
        )

    def to_orientation(self, orientation: RowOrientation) -> TensorBuffer:
        if orientation is self.orientation:
            return self
        return self.flip_rows()
