"""Run status monitor: ledger projection and Rich rendering."""

from shipline.monitor.projection import RunProjection
from shipline.monitor.renderer import RunRenderer

__all__ = ["RunProjection", "RunRenderer"]
