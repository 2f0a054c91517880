"""
RF (Radio Frequency) signal models.

This module implements the log-distance path-loss model used to predict
received signal strength for RSSI fingerprint positioning.

Submodules:
    path_loss: Power-law RSSI model and its Taylor expansion around a
               located fingerprint
"""

from indoor.rf.path_loss import (
    DEFAULT_PATH_LOSS_EXPONENT,
    SPEED_OF_LIGHT,
    TaylorOrder,
    distance_from_received_power,
    path_loss_derivatives,
    received_power_dbm,
    rss_pathloss,
    rss_to_distance,
    taylor_received_power,
)

__all__ = [
    # Constants
    "SPEED_OF_LIGHT",
    "DEFAULT_PATH_LOSS_EXPONENT",
    # Power-law model
    "received_power_dbm",
    "distance_from_received_power",
    "rss_pathloss",
    "rss_to_distance",
    # Taylor expansion
    "TaylorOrder",
    "path_loss_derivatives",
    "taylor_received_power",
]
