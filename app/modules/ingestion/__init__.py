from .domain.dimensions import DimensionFamily, DimensionRefs, DimensionResolver
from .domain.fact_buffer import FactBuffer, FactBufferStats
from .domain.sanitize import SanitizedRow, sanitize_row
from .domain.service import IngestionService

__all__ = [
    "DimensionFamily",
    "DimensionRefs",
    "DimensionResolver",
    "FactBuffer",
    "FactBufferStats",
    "IngestionService",
    "SanitizedRow",
    "sanitize_row",
]
