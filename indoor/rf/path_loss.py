"""
Log-distance path-loss model for RSSI fingerprint positioning.

Received power from a radio source follows the power law

    Pr = Pte * (c / (4*pi*f))^n / d^n

where Pte is the equivalent transmitted power, f the source frequency, n the
path-loss exponent and d the distance to the source. Expressed in dBm:

    Pr(dBm) = K - 5*n*log10(d²),    K = Pte(dBm) + 10*n*log10(c / (4*pi*f))

When the received power has been measured at a located fingerprint p1, the
constant K (and hence Pte and f) cancels by expanding the model around p1:

    Pr(x) ≈ Pr(p1) + gᵀδ + ½ δᵀHδ + ⅙ T[δ, δ, δ],    δ = x - p1

where g, H and T are the gradient, Hessian and third-derivative tensor of
-5*n*log10(‖p - pa‖²) evaluated at p = p1, and pa is the source position.
Keeping one, two or three of those terms gives the first, second and third
order models used by the non-linear fingerprint solvers.
"""

from enum import IntEnum
from typing import Optional, Tuple

import numpy as np

# Physical constants
SPEED_OF_LIGHT = 299792458.0  # m/s

DEFAULT_PATH_LOSS_EXPONENT = 2.0  # Free space
EPSILON_SQR_DISTANCE = 1e-12  # Minimum squared distance to a radio source


class TaylorOrder(IntEnum):
    """Number of Taylor terms kept when expanding received power.

    Attributes:
        FIRST_ORDER: Gradient term only (linear in position).
        SECOND_ORDER: Gradient and Hessian terms.
        THIRD_ORDER: Gradient, Hessian and third-derivative terms.
    """

    FIRST_ORDER = 1
    SECOND_ORDER = 2
    THIRD_ORDER = 3


def received_power_dbm(
    transmitted_power_dbm: float,
    distance: float,
    frequency: float,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> float:
    """
    Compute received power from transmitted power using the power-law model.

    Implements:
        Pr(dBm) = Pte(dBm) + 10*n*log10(c / (4*pi*f)) - 10*n*log10(d)

    Args:
        transmitted_power_dbm: Equivalent transmitted power in dBm (Pte).
        distance: Distance from source to receiver in meters (d).
        frequency: Source frequency in Hz (f).
        path_loss_exp: Path-loss exponent n. Defaults to 2.0 (free space).

    Returns:
        Received power in dBm.

    Raises:
        ValueError: If distance or frequency is not positive.

    Example:
        >>> # 2.4 GHz access point transmitting 20 dBm, 10 m away
        >>> rssi = received_power_dbm(20.0, 10.0, 2.4e9)
        >>> print(f"RSSI: {rssi:.2f} dBm")
        RSSI: -40.05 dBm
    """
    if distance <= 0:
        raise ValueError("Distance must be positive")
    if frequency <= 0:
        raise ValueError("Frequency must be positive")

    k = SPEED_OF_LIGHT / (4.0 * np.pi * frequency)
    return (
        transmitted_power_dbm
        + 10.0 * path_loss_exp * np.log10(k)
        - 10.0 * path_loss_exp * np.log10(distance)
    )


def distance_from_received_power(
    rssi_dbm: float,
    transmitted_power_dbm: float,
    frequency: float,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
) -> float:
    """
    Invert the power-law model to obtain distance from received power.

    Implements:
        d = (c / (4*pi*f)) * 10^((Pte - Pr) / (10*n))

    Args:
        rssi_dbm: Received power in dBm.
        transmitted_power_dbm: Equivalent transmitted power in dBm.
        frequency: Source frequency in Hz.
        path_loss_exp: Path-loss exponent n.

    Returns:
        Distance in meters.

    Raises:
        ValueError: If frequency or path-loss exponent is not positive.
    """
    if frequency <= 0:
        raise ValueError("Frequency must be positive")
    if path_loss_exp <= 0:
        raise ValueError("Path-loss exponent must be positive")

    k = SPEED_OF_LIGHT / (4.0 * np.pi * frequency)
    return k * 10 ** ((transmitted_power_dbm - rssi_dbm) / (10.0 * path_loss_exp))


def rss_pathloss(
    p_ref_dbm: float,
    distance: float,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
    d_ref: float = 1.0,
) -> float:
    """
    Compute RSS using the reference-distance form of the path-loss model.

    Implements:
        Pr = p_ref - 10*n*log10(d / d_ref)

    Args:
        p_ref_dbm: Reference RSS measured at distance d_ref in dBm.
        distance: Distance from source to receiver in meters.
        path_loss_exp: Path-loss exponent n. Defaults to 2.0 (free space).
        d_ref: Reference distance in meters. Defaults to 1.0.

    Returns:
        Received signal strength in dBm.

    Example:
        >>> rss = rss_pathloss(p_ref_dbm=-40.0, distance=10.0, path_loss_exp=2.5)
        >>> print(f"RSS: {rss:.2f} dBm")
        RSS: -65.00 dBm
    """
    if distance <= 0:
        raise ValueError("Distance must be positive")

    return p_ref_dbm - 10 * path_loss_exp * np.log10(distance / d_ref)


def rss_to_distance(
    rss_dbm: float,
    p_ref_dbm: float,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
    d_ref: float = 1.0,
) -> float:
    """
    Estimate distance from RSS using the inverse reference-distance model.

    Implements:
        d = d_ref * 10^((p_ref - Pr) / (10*n))

    Example:
        >>> distance = rss_to_distance(rss_dbm=-65.0, p_ref_dbm=-40.0, path_loss_exp=2.5)
        >>> print(f"Distance: {distance:.2f} m")
        Distance: 10.00 m
    """
    exponent = (p_ref_dbm - rss_dbm) / (10 * path_loss_exp)
    return d_ref * (10**exponent)


def path_loss_derivatives(
    fingerprint_position: np.ndarray,
    source_position: np.ndarray,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
    order: int = TaylorOrder.THIRD_ORDER,
) -> Tuple[np.ndarray, Optional[np.ndarray], Optional[np.ndarray]]:
    """
    Derivatives of received power with respect to position at a fingerprint.

    With u = p1 - pa, r² = ‖u‖² and c = -10*n/ln(10):

        g     = c * u / r²
        H     = c * (I*r² - 2*u*uᵀ) / r⁴
        T_ijk = c * (8*u_i*u_j*u_k / r⁶ - 2*(δ_ij*u_k + δ_ik*u_j + δ_jk*u_i) / r⁴)

    Args:
        fingerprint_position: Expansion point p1, shape (d,).
        source_position: Radio source position pa, shape (d,).
        path_loss_exp: Path-loss exponent n.
        order: Highest derivative order to compute (1, 2 or 3).

    Returns:
        Tuple (gradient, hessian, third), with shapes (d,), (d, d) and
        (d, d, d). Terms above the requested order are None.

    Raises:
        ValueError: If positions have different shapes or order is invalid.
    """
    order = TaylorOrder(order)
    p1 = np.asarray(fingerprint_position, dtype=float)
    pa = np.asarray(source_position, dtype=float)
    if p1.shape != pa.shape or p1.ndim != 1:
        raise ValueError(
            f"Fingerprint and source positions must be 1D with same shape: "
            f"{p1.shape} vs {pa.shape}"
        )

    u = p1 - pa
    r2 = max(float(u @ u), EPSILON_SQR_DISTANCE)
    c = -10.0 * path_loss_exp / np.log(10.0)

    gradient = c * u / r2
    hessian = None
    third = None

    if order >= TaylorOrder.SECOND_ORDER:
        eye = np.eye(len(u))
        hessian = c * (eye * r2 - 2.0 * np.outer(u, u)) / r2**2

        if order >= TaylorOrder.THIRD_ORDER:
            sym = (
                np.einsum("ij,k->ijk", eye, u)
                + np.einsum("ik,j->ijk", eye, u)
                + np.einsum("jk,i->ijk", eye, u)
            )
            third = c * (
                8.0 * np.einsum("i,j,k->ijk", u, u, u) / r2**3 - 2.0 * sym / r2**2
            )

    return gradient, hessian, third


def taylor_received_power(
    fingerprint_rssi: float,
    fingerprint_position: np.ndarray,
    source_position: np.ndarray,
    position: np.ndarray,
    path_loss_exp: float = DEFAULT_PATH_LOSS_EXPONENT,
    order: int = TaylorOrder.THIRD_ORDER,
) -> Tuple[float, np.ndarray]:
    """
    Predict RSSI at a position by expanding around a located fingerprint.

    Implements:
        Pr(x) ≈ Pr(p1) + gᵀδ + ½ δᵀHδ + ⅙ T[δ, δ, δ],    δ = x - p1

    truncated to the requested order, together with its gradient with respect to x:

        ∂Pr/∂x = g + Hδ + ½ T[δ, δ, ·]

    Args:
        fingerprint_rssi: RSSI measured at the fingerprint, Pr(p1) in dBm.
        fingerprint_position: Fingerprint position p1, shape (d,).
        source_position: Radio source position pa, shape (d,).
        position: Position x where RSSI is predicted, shape (d,).
        path_loss_exp: Path-loss exponent n.
        order: Taylor order (1, 2 or 3).

    Returns:
        Tuple (predicted RSSI in dBm, gradient with respect to position of shape (d,)).

    Example:
        >>> # Far from the source, the third order model is nearly exact
        >>> pr, grad = taylor_received_power(
        ...     -60.0, np.array([10.0, 0.0]), np.array([0.0, 0.0]),
        ...     np.array([11.0, 0.0]), path_loss_exp=2.0, order=3)
        >>> print(f"{pr:.3f}")
        -60.828
    """
    g, hessian, third = path_loss_derivatives(
        fingerprint_position, source_position, path_loss_exp, order
    )
    delta = np.asarray(position, dtype=float) - np.asarray(
        fingerprint_position, dtype=float
    )
    if delta.shape != g.shape:
        raise ValueError(
            f"Position must have shape {g.shape}, got {delta.shape}"
        )

    value = fingerprint_rssi + g @ delta
    gradient = g.copy()

    if hessian is not None:
        h_delta = hessian @ delta
        value += 0.5 * delta @ h_delta
        gradient += h_delta

    if third is not None:
        t_delta = np.einsum("ijk,j,k->i", third, delta, delta)
        value += delta @ t_delta / 6.0
        gradient += 0.5 * t_delta

    return float(value), gradient
