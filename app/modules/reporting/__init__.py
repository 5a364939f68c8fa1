from .domain.analytics import CostAnalyticsEngine
from .domain.forecaster import SpendForecaster
from .domain.payload import AnalyticsPayloadAssembler
from .domain.repository import FactRepository, FactScope
from .domain.service import CostAnalyticsService

__all__ = [
    "CostAnalyticsEngine",
    "SpendForecaster",
    "AnalyticsPayloadAssembler",
    "FactRepository",
    "FactScope",
    "CostAnalyticsService",
]
