# node_healer/services/threshold.py
import logging
import math
from decimal import Decimal

from node_healer.core.exceptions import InvalidThreshold
from node_healer.models.fleet import AbsoluteThreshold, FleetConfig, HealthyThreshold, PercentageThreshold

logger = logging.getLogger(__name__)


def validate_threshold(threshold: HealthyThreshold) -> None:
    """Raises InvalidThreshold unless N > 0 or 0 < P <= 100."""
    if isinstance(threshold, AbsoluteThreshold):
        if threshold.count <= 0:
            raise InvalidThreshold(threshold.count, "absolute threshold must be greater than 0")
    elif isinstance(threshold, PercentageThreshold):
        if not math.isfinite(threshold.percent) or not (0 < threshold.percent <= 100):
            raise InvalidThreshold(f"{threshold.percent:g}%", "percentage must be within (0, 100]")
    else:
        raise InvalidThreshold(threshold, "unknown threshold type")


def required_healthy(config: FleetConfig, fleet_size: int) -> int:
    """
    Minimum number of healthy replicas before any replica may be destroyed.

    Absolute N resolves to min(N, F); percentage P to ceil(P/100 * F) clamped
    to [1, F]. A result equal to F would make recovery impossible, so it falls
    back to tolerating exactly one unhealthy replica (F - 1, floor 0).
    """
    threshold = config.healthy_threshold
    validate_threshold(threshold)

    if fleet_size <= 0:
        return 0

    if isinstance(threshold, AbsoluteThreshold):
        required = min(threshold.count, fleet_size)
    else:
        # Decimal keeps 10% of 30 at exactly 3
        scaled = Decimal(str(threshold.percent)) * fleet_size / 100
        required = max(1, min(math.ceil(scaled), fleet_size))

    if required == fleet_size:
        required = max(fleet_size - 1, 0)

    return required


def gate_open(healthy_count: int, required: int) -> bool:
    return healthy_count >= required
