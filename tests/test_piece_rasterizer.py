"""Tests for piece extraction, padding and masking."""

import io
from typing import Callable

import numpy as np
import pytest
from PIL import Image

from puzzle_forge.exceptions import MaskMismatchError
from puzzle_forge.models.puzzle_model import EdgeConfig, EdgeType
from puzzle_forge.services.piece_rasterizer import (
    PieceRasterizer,
    apply_mask_alpha,
    compute_piece_region,
    pad_pixels_to_target,
    render_mask,
)

ImageMaker = Callable[[int, int], Image.Image]

FLAT_EDGES = EdgeConfig(top=EdgeType.FLAT, right=EdgeType.FLAT, bottom=EdgeType.FLAT, left=EdgeType.FLAT)


class TestPieceRegion:
    """Tests for compute_piece_region."""

    def test_corner_piece_is_clamped(self) -> None:
        """The top-left piece's margin falls outside the image."""
        region = compute_piece_region(0, 0, 3, 3, 300, 300, tab_ratio=0.2)
        assert (region.base_width, region.base_height) == (100, 100)
        assert (region.overlap_x, region.overlap_y) == (20, 20)
        assert (region.target_width, region.target_height) == (140, 140)
        assert (region.extract_left, region.extract_top) == (0, 0)
        assert (region.extract_width, region.extract_height) == (120, 120)
        assert (region.offset_x, region.offset_y) == (20, 20)

    def test_interior_piece_is_not_clamped(self) -> None:
        """The center piece extracts its full target rectangle."""
        region = compute_piece_region(1, 1, 3, 3, 300, 300, tab_ratio=0.2)
        assert (region.extract_left, region.extract_top) == (80, 80)
        assert (region.extract_width, region.extract_height) == (140, 140)
        assert (region.offset_x, region.offset_y) == (0, 0)

    def test_remainder_goes_to_last_column_and_row(self) -> None:
        """Pixels left over by integer division belong to the last piece."""
        last = compute_piece_region(2, 2, 3, 3, 302, 301, tab_ratio=0.2)
        first = compute_piece_region(0, 0, 3, 3, 302, 301, tab_ratio=0.2)
        assert (first.base_width, first.base_height) == (100, 100)
        assert (last.base_width, last.base_height) == (102, 101)
        assert last.extract_right == 302
        assert last.extract_bottom == 301

    def test_image_smaller_than_grid(self) -> None:
        """Every piece needs at least one pixel."""
        with pytest.raises(ValueError, match="too small"):
            compute_piece_region(0, 0, 3, 3, 2, 300)


class TestPadding:
    """Tests for pad_pixels_to_target."""

    def test_region_is_placed_at_offset(self) -> None:
        """Pixels land at the offset, everything else is transparent."""
        pixels = np.full((2, 3, 4), 200, dtype=np.uint8)
        padded = pad_pixels_to_target(pixels, 5, 4, 1, 2)
        assert padded.shape == (4, 5, 4)
        assert (padded[2:4, 1:4] == 200).all()
        assert padded[:2].sum() == 0
        assert padded[:, 0].sum() == 0
        assert padded[:, 4].sum() == 0

    @pytest.mark.parametrize(
        "target_w,target_h,offset_x,offset_y",
        [(5, 4, -1, 0), (5, 4, 0, -1), (5, 4, 3, 0), (5, 4, 0, 3)],
    )
    def test_invalid_placement(self, target_w: int, target_h: int, offset_x: int, offset_y: int) -> None:
        """Negative offsets and overflowing regions are rejected."""
        pixels = np.zeros((2, 3, 4), dtype=np.uint8)
        with pytest.raises(ValueError):
            pad_pixels_to_target(pixels, target_w, target_h, offset_x, offset_y)

    def test_requires_rgba(self) -> None:
        """Only four-channel buffers can be padded."""
        with pytest.raises(ValueError, match="RGBA"):
            pad_pixels_to_target(np.zeros((2, 2, 3), dtype=np.uint8), 4, 4, 0, 0)


class TestMask:
    """Tests for mask rasterization and application."""

    def test_flat_mask_covers_base_rectangle(self) -> None:
        """Inside the base rectangle is opaque, the margin transparent."""
        mask = render_mask(FLAT_EDGES, 140, 140, tab_ratio=0.2, antialias_scale=2)
        assert mask.shape == (140, 140, 4)
        assert mask[70, 70, 3] == 255
        assert mask[5, 5, 3] == 0
        assert mask[135, 70, 3] == 0
        assert (mask[:, :, :3] == 255).all()

    def test_tab_adds_coverage_in_margin(self) -> None:
        """A right tab covers margin pixels that a flat side leaves empty."""
        tab_edges = EdgeConfig(top=EdgeType.FLAT, right=EdgeType.TAB, bottom=EdgeType.FLAT, left=EdgeType.FLAT)
        mask = render_mask(tab_edges, 140, 140, tab_ratio=0.2, antialias_scale=2)
        assert mask[70, 125, 3] == 255
        assert render_mask(FLAT_EDGES, 140, 140, antialias_scale=2)[70, 125, 3] == 0

    def test_apply_mask_copies_alpha_only(self) -> None:
        """RGB stays, alpha comes from the mask."""
        piece = np.full((4, 4, 4), 100, dtype=np.uint8)
        mask = np.zeros((4, 4, 4), dtype=np.uint8)
        mask[:, :, 3] = 7
        apply_mask_alpha(piece, mask)
        assert (piece[:, :, :3] == 100).all()
        assert (piece[:, :, 3] == 7).all()

    def test_apply_mask_size_mismatch(self) -> None:
        """Mismatched buffers abort the piece."""
        with pytest.raises(MaskMismatchError, match="mismatch"):
            apply_mask_alpha(np.zeros((4, 4, 4), dtype=np.uint8), np.zeros((4, 5, 4), dtype=np.uint8))


class TestPieceRasterizer:
    """End-to-end piece rasterization."""

    @pytest.fixture
    def rasterizer(self) -> PieceRasterizer:
        return PieceRasterizer(tab_ratio=0.2, antialias_scale=2)

    @pytest.mark.parametrize("row,col", [(0, 0), (0, 2), (1, 1), (2, 0), (2, 2)])
    def test_output_matches_target_size(
        self, rasterizer: PieceRasterizer, row: int, col: int, make_image: ImageMaker
    ) -> None:
        """Edge and interior pieces share the same output size."""
        image = make_image(300, 300)
        piece = rasterizer.rasterize_piece(image, row, col, 3, 3)
        assert piece.image.size == (140, 140)
        assert piece.image.mode == "RGBA"
        assert piece.piece_id == row * 3 + col

    def test_pixels_come_from_source(self, rasterizer: PieceRasterizer, make_image: ImageMaker) -> None:
        """The center of a piece shows the source pixel it covers."""
        image = make_image(300, 300)
        piece = rasterizer.rasterize_piece(image, 1, 1, 3, 3)
        pixels = np.array(piece.image)
        # Canvas (70, 70) maps to source (80 + 70, 80 + 70)
        assert tuple(pixels[70, 70]) == (150, 150, 44, 255)

    def test_outside_image_is_transparent(self, rasterizer: PieceRasterizer, make_image: ImageMaker) -> None:
        """Margin beyond the image border has zero alpha."""
        piece = rasterizer.rasterize_piece(make_image(300, 300), 0, 0, 3, 3)
        pixels = np.array(piece.image)
        assert pixels[:20, :, 3].max() == 0
        assert pixels[:, :20, 3].max() == 0

    def test_row_uses_thread_pool(self, rasterizer: PieceRasterizer, make_image: ImageMaker) -> None:
        """Parallel and sequential rows produce the same pieces."""
        image = make_image(200, 100)
        sequential = rasterizer.rasterize_row(image, 0, 2, 4)
        parallel = rasterizer.rasterize_row(image, 0, 2, 4, max_workers=4)
        assert [p.piece_id for p in parallel] == [0, 1, 2, 3]
        for a, b in zip(sequential, parallel):
            assert a.encode_png() == b.encode_png()

    def test_encode_png(self, rasterizer: PieceRasterizer, make_image: ImageMaker) -> None:
        """Encoded pieces decode as RGBA PNGs."""
        piece = rasterizer.rasterize_piece(make_image(100, 100), 0, 0, 2, 2)
        decoded = Image.open(io.BytesIO(piece.encode_png()))
        assert decoded.format == "PNG"
        assert decoded.mode == "RGBA"
        assert decoded.size == piece.image.size
