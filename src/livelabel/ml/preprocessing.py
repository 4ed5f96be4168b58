"""Frame-to-tensor conversion.

Converts one arbitrary-resolution camera frame into the fixed-size,
fixed-format pixel buffer a classifier expects:

    validate -> unpack to RGB(A) -> resize -> repack (channel order + row flip)

The working array is copied out of the frame during unpacking, so the
returned buffer never aliases caller memory and the caller may recycle the
frame as soon as ``convert`` returns.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

import cv2
import numpy as np

from livelabel.errors import AllocationError, UnsupportedFormatError
from livelabel.ml.frames import Frame, PixelEncoding, RowOrientation, TensorBuffer

if TYPE_CHECKING:
    from numpy.typing import NDArray

_OPAQUE: int = 255


class ResizeMode(StrEnum):
    # Scale each axis independently to fill the target rectangle.
    STRETCH = "stretch"
    # Center-crop to the target aspect ratio, then scale.
    FILL = "fill"


def flip_rows(array: NDArray[np.uint8]) -> NDArray[np.uint8]:
    """Return a C-contiguous copy of ``array`` with its rows reversed."""
    return np.ascontiguousarray(array[::-1])


class FrameConverter:
    """Stateless converter from ``Frame`` to ``TensorBuffer``.

    Resampling uses OpenCV ``INTER_AREA`` when shrinking along both axes and
    ``INTER_LINEAR`` otherwise. Both are deterministic for identical input.
    """

    def __init__(self, resize_mode: ResizeMode = ResizeMode.STRETCH) -> None:
        self._resize_mode = ResizeMode(resize_mode)

    @property
    def resize_mode(self) -> ResizeMode:
        return self._resize_mode

    def convert(
        self,
        frame: Frame,
        target_width: int,
        target_height: int,
        target_encoding: PixelEncoding,
        target_orientation: RowOrientation = RowOrientation.TOP_DOWN,
    ) -> TensorBuffer:
        """Resize and repack a frame into a new tensor buffer.

        Args:
            frame: Source frame. Not modified and not referenced after return.
            target_width: Output width in pixels (>= 1).
            target_height: Output height in pixels (>= 1).
            target_encoding: Output pixel encoding (any interleaved encoding).
            target_orientation: Row orientation of the output buffer.

        Returns:
            A ``target_height x target_width`` buffer in ``target_encoding``.

        Raises:
            ValueError: If the target dimensions are not positive.
            UnsupportedFormatError: If the frame is malformed or its encoding
                cannot be converted to ``target_encoding``.
            AllocationError: If the output buffer cannot be allocated.
        """
        if target_width < 1 or target_height < 1:
            raise ValueError(f"Target size must be positive, got {target_width}x{target_height}")
        if target_encoding.is_planar:
            raise UnsupportedFormatError(
                f"Cannot produce {target_encoding} output",
                {"target_encoding": str(target_encoding)},
            )

        try:
            out = np.empty((target_height, target_width, target_encoding.bytes_per_pixel), dtype=np.uint8)
        except (MemoryError, ValueError) as exc:
            raise AllocationError(
                f"Cannot allocate {target_width}x{target_height} {target_encoding} buffer",
                {"width": target_width, "height": target_height},
            ) from exc

        try:
            pixels = _unpack(frame)
        except MemoryError as exc:
            raise AllocationError(
                f"Out of memory while unpacking {frame.width}x{frame.height} {frame.encoding} frame",
                {"width": frame.width, "height": frame.height},
            ) from exc
        try:
            resized = _resize(pixels, target_width, target_height, self._resize_mode)
        except MemoryError as exc:
            raise AllocationError("Out of memory while resizing frame") from exc
        except cv2.error as exc:
            raise UnsupportedFormatError(f"Resize failed: {exc}") from exc

        flip = frame.orientation is not target_orientation
        _repack(resized[::-1] if flip else resized, out, target_encoding)
        return TensorBuffer(
            data=out,
            width=target_width,
            height=target_height,
            encoding=target_encoding,
            orientation=target_orientation,
        )


# ---------------------------------------------------------------------------
# Unpacking
# ---------------------------------------------------------------------------


def _unpack(frame: Frame) -> NDArray[np.uint8]:
    """Copy a frame into a fresh (H, W, 3) RGB or (H, W, 4) RGBA array."""
    _validate(frame)
    flat = _as_flat_bytes(frame.data)
    stride = frame.bytes_per_row

    if frame.encoding is PixelEncoding.NV12:
        luma = _plane(flat, frame.height, frame.row_bytes, stride, offset=0)
        chroma = _plane(flat, frame.height // 2, frame.row_bytes, stride, offset=stride * frame.height)
        yuv = np.vstack((luma, chroma))
        try:
            return cv2.cvtColor(yuv, cv2.COLOR_YUV2RGB_NV12)
        except cv2.error as exc:
            raise UnsupportedFormatError(f"NV12 decode failed: {exc}") from exc

    plane = _plane(flat, frame.height, frame.row_bytes, stride, offset=0)
    order = frame.encoding.channel_order
    pixels = plane.reshape(frame.height, frame.width, len(order))

    if frame.encoding is PixelEncoding.GRAY8:
        return np.repeat(pixels, 3, axis=2)

    wanted = "RGBA" if "A" in order else "RGB"
    # Fancy indexing copies, detaching the result from the caller's buffer.
    return pixels[..., [order.index(ch) for ch in wanted]]


def _validate(frame: Frame) -> None:
    context = {"width": frame.width, "height": frame.height, "encoding": str(frame.encoding)}
    if frame.width < 1 or frame.height < 1:
        raise UnsupportedFormatError(f"Invalid frame size {frame.width}x{frame.height}", context)
    if frame.bytes_per_row < frame.row_bytes:
        raise UnsupportedFormatError(
            f"Stride {frame.bytes_per_row} is smaller than row size {frame.row_bytes}",
            context,
        )
    if frame.encoding is PixelEncoding.NV12 and (frame.width % 2 or frame.height % 2):
        raise UnsupportedFormatError("NV12 frames must have even dimensions", context)


def _as_flat_bytes(data: object) -> NDArray[np.uint8]:
    try:
        return np.frombuffer(data, dtype=np.uint8)  # type: ignore[call-overload]
    except (TypeError, ValueError, BufferError) as exc:
        raise UnsupportedFormatError(f"Frame data is not a contiguous byte buffer: {exc}") from exc


def _plane(flat: NDArray[np.uint8], rows: int, row_bytes: int, stride: int, offset: int) -> NDArray[np.uint8]:
    needed = offset + stride * (rows - 1) + row_bytes
    if flat.size < needed:
        raise UnsupportedFormatError(
            f"Frame buffer holds {flat.size} bytes, expected at least {needed}",
            {"size": int(flat.size), "needed": needed},
        )
    return np.lib.stride_tricks.as_strided(
        flat[offset:],
        shape=(rows, row_bytes),
        strides=(stride, 1),
        writeable=False,
    )


# ---------------------------------------------------------------------------
# Resizing
# ---------------------------------------------------------------------------


def _resize(pixels: NDArray[np.uint8], width: int, height: int, mode: ResizeMode) -> NDArray[np.uint8]:
    if mode is ResizeMode.FILL:
        pixels = _center_crop(pixels, width / height)

    src_height, src_width = pixels.shape[:2]
    if (src_width, src_height) == (width, height):
        return pixels

    if width <= src_width and height <= src_height:
        interpolation = cv2.INTER_AREA
    else:
        interpolation = cv2.INTER_LINEAR
    return cv2.resize(np.ascontiguousarray(pixels), (width, height), interpolation=interpolation)


def _center_crop(pixels: NDArray[np.uint8], aspect: float) -> NDArray[np.uint8]:
    src_height, src_width = pixels.shape[:2]
    if src_width / src_height > aspect:
        crop_width = max(1, round(src_height * aspect))
        left = (src_width - crop_width) // 2
        return pixels[:, left : left + crop_width]
    crop_height = max(1, round(src_width / aspect))
    top = (src_height - crop_height) // 2
    return pixels[top : top + crop_height]


# ---------------------------------------------------------------------------
# Repacking
# ---------------------------------------------------------------------------


def _repack(pixels: NDArray[np.uint8], out: NDArray[np.uint8], encoding: PixelEncoding) -> None:
    """Write RGB(A) ``pixels`` into ``out`` using the channel order of ``encoding``."""
    if encoding is PixelEncoding.GRAY8:
        rgb = np.ascontiguousarray(pixels[..., :3])
        out[..., 0] = cv2.cvtColor(rgb, cv2.COLOR_RGB2GRAY)
        return

    has_alpha = pixels.shape[2] == 4
    for index, channel in enumerate(encoding.channel_order):
        if channel in "RGB":
            out[..., index] = pixels[..., "RGB".index(channel)]
        elif channel == "A" and has_alpha:
            out[..., index] = pixels[..., 3]
        else:
            out[..., index] = _OPAQUE
