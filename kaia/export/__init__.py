"""Export of curated selections: job lifecycle and rendering."""

from kaia.export.jobs import ExportJobManager
from kaia.export.renderer import ExportRenderer, JsonBookRenderer, validate_layout

__all__ = ["ExportJobManager", "ExportRenderer", "JsonBookRenderer", "validate_layout"]
