"""
Chapter 5: Fingerprinting-based Indoor Positioning

Example scripts for non-linear RSSI fingerprinting:
    - First, second and third order Taylor solvers
    - Mean-removed readings against device offsets
    - Joint estimation of an access point with unknown position

Author: Li-Ta Hsu
Date: December 2024
"""

__version__ = "0.1.0"
__all__ = []
