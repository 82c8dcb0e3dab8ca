"""Error taxonomy for puzzle generation.

Validation errors are terminal and never retried. Transient store errors are
retried where they occur. Invariant violations abort the unit of work.
Coordinator write errors are rolled back before they are raised.
"""


class PuzzleForgeError(Exception):
    """Base class for all puzzle forge errors."""


class PuzzleValidationError(PuzzleForgeError):
    """Invalid user input such as an unsupported piece count."""


class ImageValidationError(PuzzleValidationError):
    """The source image cannot be decoded or exceeds the configured limits."""


class TransientStoreError(PuzzleForgeError):
    """A blob or metadata store operation failed and may succeed on retry."""


class InvariantViolationError(PuzzleForgeError):
    """Internal state contradicts an invariant; the unit of work is aborted."""


class MaskMismatchError(InvariantViolationError):
    """A rasterized mask does not match the padded piece buffer."""


class PuzzleNotFoundError(InvariantViolationError):
    """The puzzle record is missing or has been deleted."""

    def __init__(self, puzzle_id: str, detail: str = "not found") -> None:
        self.puzzle_id = puzzle_id
        super().__init__(f"Puzzle {puzzle_id} {detail}")


class CoordinatorWriteError(PuzzleForgeError):
    """Persisting a record update failed and the update was rolled back."""
