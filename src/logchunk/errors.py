"""Error types raised while planning, processing, or validating chunks."""


class ChunkAnalysisError(Exception):
    """Base class for all logchunk errors."""


class FormatDetectionError(ChunkAnalysisError):
    """The format of a file could not be determined from its leading sample.

    Aborts the pass for that file only. Callers either re-plan with the
    generic line-based strategy or give up on the file.
    """

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot detect format of {path}: {reason}")
        self.path = path
        self.reason = reason


class BoundaryCorruptionError(ChunkAnalysisError):
    """A record at a chunk edge could not be fully reconstructed.

    Recoverable: the processor skips the partial record and records an
    anomaly instead of aborting the run.
    """

    def __init__(self, chunk_index: int, offset: int, reason: str):
        super().__init__(
            f"Chunk {chunk_index}: partial record at byte {offset}: {reason}"
        )
        self.chunk_index = chunk_index
        self.offset = offset
        self.reason = reason


class CoverageShortfall(ChunkAnalysisError):
    """Fewer chunks were analyzed than the validation floor requires."""

    def __init__(self, analyzed: int, total: int, floor: int):
        super().__init__(
            f"Only {analyzed}/{total} chunks analyzed "
            f"(at least {floor} required for validation)"
        )
        self.analyzed = analyzed
        self.total = total
        self.floor = floor
