"""Domain errors and failure typing for the enrichment engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from engine.orchestrator import KeyWindow


STAGES = ("load", "tile", "match", "merge", "write")


class EnrichmentError(Exception):
    """Base class for enrichment failures."""

    error_code = "ENRICHMENT_ERROR"


class ConfigError(EnrichmentError):
    """Raised for invalid or missing configuration."""

    error_code = "CONFIG_ERROR"


class ReferenceLoadError(EnrichmentError):
    """Raised when a reference layer cannot be parsed or its CRS cannot be resolved."""

    error_code = "REFERENCE_LOAD_ERROR"


class RasterFormatError(EnrichmentError):
    """Raised for unsupported or corrupt raster encodings."""

    error_code = "RASTER_FORMAT_ERROR"


class MergeIntegrityError(EnrichmentError):
    """Raised when a merge input holds more than one row per trip and role."""

    error_code = "MERGE_INTEGRITY_ERROR"


class WindowAppendFailure(EnrichmentError):
    """A window's output could not be written. Safe to retry for that window alone."""

    error_code = "WINDOW_APPEND_FAILURE"

    def __init__(self, message: str, *, window: "KeyWindow | None" = None) -> None:
        super().__init__(message)
        self.window = window


class StageFailure(EnrichmentError):
    """
    A run aborted in `stage`.

    `window` is the trip-id range in progress (None for run-level stages such as load),
    so a retry can resume there instead of starting over.
    """

    error_code = "STAGE_FAILURE"

    def __init__(self, stage: str, *, window: "KeyWindow | None" = None, detail: str = "") -> None:
        if stage not in STAGES:
            raise ValueError(f"Unknown stage '{stage}'. Allowed values: {', '.join(STAGES)}")
        where = f" for trip_id window {window.label}" if window is not None else ""
        msg = f"stage '{stage}' failed{where}"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)
        self.stage = stage
        self.window = window
