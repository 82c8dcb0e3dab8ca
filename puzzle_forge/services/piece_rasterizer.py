"""Rasterize jigsaw pieces from a source image.

Each piece is extracted with an overlap margin for its tabs, padded with
transparency where the margin falls outside the image, and masked with the
rasterized piece outline.
"""

import io
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
from PIL import Image, ImageDraw

from puzzle_forge.exceptions import MaskMismatchError
from puzzle_forge.models.puzzle_model import EdgeConfig
from puzzle_forge.services.grid_planner import get_edge_config, piece_id
from puzzle_forge.services.piece_shape import generate_jigsaw_outline

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PieceRegion:
    """Pixel geometry of one piece within the source image.

    The ideal rectangle is the base cell expanded by the overlap on every
    side. The extract rectangle is the ideal one clamped to the image, and
    offset_x/offset_y place the extracted pixels inside the target canvas.
    """

    base_width: int
    base_height: int
    overlap_x: int
    overlap_y: int
    ideal_left: int
    ideal_top: int
    extract_left: int
    extract_top: int
    extract_right: int
    extract_bottom: int

    @property
    def target_width(self) -> int:
        return self.base_width + 2 * self.overlap_x

    @property
    def target_height(self) -> int:
        return self.base_height + 2 * self.overlap_y

    @property
    def extract_width(self) -> int:
        return self.extract_right - self.extract_left

    @property
    def extract_height(self) -> int:
        return self.extract_bottom - self.extract_top

    @property
    def offset_x(self) -> int:
        return self.extract_left - self.ideal_left

    @property
    def offset_y(self) -> int:
        return self.extract_top - self.ideal_top


def compute_piece_region(
    row: int,
    col: int,
    rows: int,
    cols: int,
    image_width: int,
    image_height: int,
    tab_ratio: float = 0.2,
) -> PieceRegion:
    """Compute extraction bounds for the piece at (row, col).

    Remainder pixels from the integer division go to the last column and row.

    Raises:
        ValueError: If the grid or image is too small to give every piece a pixel.
    """
    if rows <= 0 or cols <= 0:
        raise ValueError(f"Grid must be positive, got {rows}x{cols}")
    if image_width < cols or image_height < rows:
        raise ValueError(f"Image {image_width}x{image_height} is too small for a {rows}x{cols} grid")

    base_piece_width = image_width // cols
    base_piece_height = image_height // rows
    base_width = base_piece_width + (image_width % cols if col == cols - 1 else 0)
    base_height = base_piece_height + (image_height % rows if row == rows - 1 else 0)

    overlap_x = int(base_width * tab_ratio)
    overlap_y = int(base_height * tab_ratio)

    ideal_left = col * base_piece_width - overlap_x
    ideal_top = row * base_piece_height - overlap_y

    return PieceRegion(
        base_width=base_width,
        base_height=base_height,
        overlap_x=overlap_x,
        overlap_y=overlap_y,
        ideal_left=ideal_left,
        ideal_top=ideal_top,
        extract_left=max(0, ideal_left),
        extract_top=max(0, ideal_top),
        extract_right=min(image_width, ideal_left + base_width + 2 * overlap_x),
        extract_bottom=min(image_height, ideal_top + base_height + 2 * overlap_y),
    )


def pad_pixels_to_target(
    pixels: np.ndarray,
    target_width: int,
    target_height: int,
    offset_x: int,
    offset_y: int,
) -> np.ndarray:
    """Copy an RGBA region into a fully transparent canvas of the target size.

    Args:
        pixels: RGBA array of shape (height, width, 4).
        target_width: Width of the output canvas.
        target_height: Height of the output canvas.
        offset_x: Column where the region starts inside the canvas.
        offset_y: Row where the region starts inside the canvas.

    Returns:
        New uint8 array of shape (target_height, target_width, 4).

    Raises:
        ValueError: If the offsets are negative or the region does not fit.
    """
    if offset_x < 0 or offset_y < 0:
        raise ValueError(f"Offsets must be non-negative, got offset_x={offset_x}, offset_y={offset_y}")
    if pixels.ndim != 3 or pixels.shape[2] != 4:
        raise ValueError(f"Expected an RGBA array, got shape {pixels.shape}")

    height, width = pixels.shape[:2]
    if offset_x + width > target_width:
        raise ValueError(
            f"Region width ({width}) at offset_x ({offset_x}) exceeds target width ({target_width})"
        )
    if offset_y + height > target_height:
        raise ValueError(
            f"Region height ({height}) at offset_y ({offset_y}) exceeds target height ({target_height})"
        )

    padded = np.zeros((target_height, target_width, 4), dtype=np.uint8)
    padded[offset_y : offset_y + height, offset_x : offset_x + width] = pixels
    return padded


def render_mask(
    edges: EdgeConfig,
    width: int,
    height: int,
    tab_ratio: float = 0.2,
    antialias_scale: int = 4,
    points_per_curve: int = 24,
) -> np.ndarray:
    """Rasterize the piece outline as an RGBA mask with anti-aliased edges.

    The outline is filled at antialias_scale times the resolution and then
    downsampled, so edge pixels get partial coverage.

    Returns:
        uint8 array of shape (height, width, 4): white where inside, alpha is coverage.
    """
    scale = max(1, antialias_scale)
    outline = generate_jigsaw_outline(edges, width * scale, height * scale, tab_ratio)
    polygon = outline.to_polygon(points_per_curve)

    hi_res = Image.new("L", (width * scale, height * scale), 0)
    ImageDraw.Draw(hi_res).polygon(polygon, fill=255)
    alpha = hi_res.resize((width, height), Image.Resampling.LANCZOS) if scale > 1 else hi_res

    mask = np.full((height, width, 4), 255, dtype=np.uint8)
    mask[:, :, 3] = np.asarray(alpha, dtype=np.uint8)
    return mask


def apply_mask_alpha(piece: np.ndarray, mask: np.ndarray) -> None:
    """Copy the mask's alpha channel onto the piece buffer in place.

    RGB channels of the piece are left untouched.

    Raises:
        MaskMismatchError: If the buffers do not have the same shape.
    """
    if piece.shape != mask.shape:
        raise MaskMismatchError(f"Mask and piece buffer size mismatch: mask={mask.shape}, piece={piece.shape}")
    piece[:, :, 3] = mask[:, :, 3]


@dataclass
class RenderedPiece:
    """A masked piece ready to be stored."""

    piece_id: int
    row: int
    col: int
    edges: EdgeConfig
    region: PieceRegion
    image: Image.Image

    def encode_png(self) -> bytes:
        buffer = io.BytesIO()
        self.image.save(buffer, format="PNG")
        return buffer.getvalue()


class PieceRasterizer:
    """Cuts interlocking pieces out of a source image."""

    def __init__(self, tab_ratio: float = 0.2, antialias_scale: int = 4):
        """Initialize the rasterizer.

        Args:
            tab_ratio: Fraction of the base piece size a tab extends per side.
            antialias_scale: Supersampling factor used when rasterizing masks.
        """
        self.tab_ratio = tab_ratio
        self.antialias_scale = antialias_scale

    def rasterize_piece(self, image: Image.Image, row: int, col: int, rows: int, cols: int) -> RenderedPiece:
        """Extract, pad and mask the piece at (row, col).

        Args:
            image: The decoded source image.
            row: Piece row.
            col: Piece column.
            rows: Grid rows.
            cols: Grid columns.

        Returns:
            RenderedPiece whose image is exactly the target (base + 2 * overlap) size.
        """
        if image.mode != "RGBA":
            image = image.convert("RGBA")

        region = compute_piece_region(row, col, rows, cols, image.width, image.height, self.tab_ratio)
        edges = get_edge_config(row, col, rows, cols)

        extracted = image.crop(
            (region.extract_left, region.extract_top, region.extract_right, region.extract_bottom)
        )
        piece_pixels = pad_pixels_to_target(
            np.array(extracted, dtype=np.uint8),
            region.target_width,
            region.target_height,
            region.offset_x,
            region.offset_y,
        )
        mask = render_mask(
            edges,
            region.target_width,
            region.target_height,
            tab_ratio=self.tab_ratio,
            antialias_scale=self.antialias_scale,
        )
        apply_mask_alpha(piece_pixels, mask)

        return RenderedPiece(
            piece_id=piece_id(row, col, cols),
            row=row,
            col=col,
            edges=edges,
            region=region,
            image=Image.fromarray(piece_pixels),
        )

    def rasterize_row(
        self,
        image: Image.Image,
        row: int,
        rows: int,
        cols: int,
        max_workers: Optional[int] = None,
    ) -> List[RenderedPiece]:
        """Rasterize every piece of a row, in column order.

        Pieces own their buffers, so they may be rendered in a thread pool.
        """
        if image.mode != "RGBA":
            image = image.convert("RGBA")

        if not max_workers or max_workers <= 1:
            return [self.rasterize_piece(image, row, col, rows, cols) for col in range(cols)]

        logger.debug("Rasterizing row %d with %d workers", row, max_workers)
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            return list(executor.map(lambda col: self.rasterize_piece(image, row, col, rows, cols), range(cols)))
