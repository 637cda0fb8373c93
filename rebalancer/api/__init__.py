"""HTTP surface for the rebalancer."""

from .app import create_app
from .controllers import RebalanceController

__all__ = ["RebalanceController", "create_app"]
