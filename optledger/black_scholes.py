"""
black_scholes.py - Black-Scholes Option Pricing and Greeks

Black-Scholes formulas with a continuously compounded risk-free rate. Time is
passed in years; price_option() accepts seconds to expiry and converts with a
365-day year (31,536,000 seconds).

Provides:
- Option pricing (call, put)
- Greeks (delta, gamma, theta, vega, rho)
- Implied volatility (vectorized)
- price_option(): price + greeks for quote generation, zero once expired

Float arithmetic with numpy/scipy internally; public functions take and return
Decimal. Nothing in matching or collateral depends on this module.

Naming convention for Greeks:
- delta = ∂V/∂S
- gamma = ∂²V/∂S²
- theta = ∂V/∂t per year (negative = value lost to time)
- vega  = ∂V/∂σ
- rho   = ∂V/∂r
"""

import math
import numpy as np
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Union
from scipy.special import erf as scipy_erf


# Type alias for scalar or array inputs
Numeric = Union[float, np.ndarray]

# Constants
SECONDS_PER_YEAR = 31_536_000
SQRT_2 = math.sqrt(2.0)
INV_SQRT_2PI = 1.0 / math.sqrt(2.0 * math.pi)
PRICE_QUANTUM = Decimal("0.00000001")


def _to_decimal(result: Numeric) -> Decimal:
    return Decimal(str(float(result))).quantize(PRICE_QUANTUM, rounding=ROUND_HALF_EVEN)


# ============================================================================
# NORMAL DISTRIBUTION FUNCTIONS
# ============================================================================

def normal_cdf(x: Numeric) -> Numeric:
    """Standard normal cumulative distribution function."""
    return 0.5 * (1.0 + scipy_erf(np.asarray(x) / SQRT_2))


def normal_pdf(x: Numeric) -> Numeric:
    """Standard normal probability density function."""
    return INV_SQRT_2PI * np.exp(-0.5 * np.asarray(x) ** 2)


# ============================================================================
# D1 AND D2
# ============================================================================

def _validate_bs_inputs(s: Numeric, k: Numeric, t: Numeric, v: Numeric, r: Numeric) -> None:
    """Validate Black-Scholes inputs to prevent division by zero and NaN/Inf."""
    s_arr = np.asarray(s)
    k_arr = np.asarray(k)
    t_arr = np.asarray(t)
    v_arr = np.asarray(v)
    if not np.all(np.isfinite(s_arr)) or np.any(s_arr <= 0):
        raise ValueError("spot price must be positive and finite")
    if not np.all(np.isfinite(k_arr)) or np.any(k_arr <= 0):
        raise ValueError("strike must be positive and finite")
    if not np.all(np.isfinite(t_arr)) or np.any(t_arr <= 0):
        raise ValueError("time to expiry must be positive and finite")
    if not np.all(np.isfinite(v_arr)) or np.any(v_arr <= 0):
        raise ValueError("volatility must be positive and finite")
    if not np.all(np.isfinite(np.asarray(r))):
        raise ValueError("risk-free rate must be finite")


def d1(s: Numeric, k: Numeric, t: Numeric, v: Numeric, r: Numeric = 0.0) -> Numeric:
    """
    d1 = (ln(S/K) + (r + 0.5*σ²)*t) / (σ*√t)

    Raises:
        ValueError: If any input is non-positive or not finite
    """
    _validate_bs_inputs(s, k, t, v, r)
    return (np.log(s / k) + (r + 0.5 * v * v) * t) / (v * np.sqrt(t))


def d2(s: Numeric, k: Numeric, t: Numeric, v: Numeric, r: Numeric = 0.0) -> Numeric:
    """d2 = d1 - σ*√t"""
    return d1(s, k, t, v, r) - v * np.sqrt(t)


# ============================================================================
# OPTION PRICES
# ============================================================================

def _call_float(s: Numeric, k: Numeric, t: Numeric, v: Numeric, r: Numeric = 0.0) -> Numeric:
    """
    Black-Scholes call option price. Internal float implementation.

    C = S*N(d1) - K*e^(-rt)*N(d2)
    """
    d1_val = d1(s, k, t, v, r)
    d2_val = d1_val - v * np.sqrt(t)
    return s * normal_cdf(d1_val) - k * np.exp(-r * t) * normal_cdf(d2_val)


def call(s: Decimal, k: Decimal, t: Decimal, v: Decimal, r: Decimal = Decimal("0")) -> Decimal:
    """Black-Scholes call option price with Decimal interface (t in years)."""
    return _to_decimal(_call_float(float(s), float(k), float(t), float(v), float(r)))


def _put_float(s: Numeric, k: Numeric, t: Numeric, v: Numeric, r: Numeric = 0.0) -> Numeric:
    """
    Black-Scholes put option price. Internal float implementation.

    P = K*e^(-rt)*N(-d2) - S*N(-d1)
    """
    d1_val = d1(s, k, t, v, r)
    d2_val = d1_val - v * np.sqrt(t)
    return k * np.exp(-r * t) * normal_cdf(-d2_val) - s * normal_cdf(-d1_val)


def put(s: Decimal, k: Decimal, t: Decimal, v: Decimal, r: Decimal = Decimal("0")) -> Decimal:
    """Black-Scholes put option price with Decimal interface (t in years)."""
    return _to_decimal(_put_float(float(s), float(k), float(t), float(v), float(r)))


# ============================================================================
# GREEKS
# ============================================================================

def _delta_float(is_call: bool, s, k, t, v, r=0.0):
    """Call: N(d1). Put: -N(-d1)."""
    d1_val = d1(s, k, t, v, r)
    return normal_cdf(d1_val) if is_call else -normal_cdf(-d1_val)


def _gamma_float(s, k, t, v, r=0.0):
    """Γ = n(d1) / (S*σ*√t), same for calls and puts."""
    return normal_pdf(d1(s, k, t, v, r)) / (s * v * np.sqrt(t))


def _theta_float(is_call: bool, s, k, t, v, r=0.0):
    """
    Call: -S*σ*n(d1)/(2√t) - r*K*e^(-rt)*N(d2)
    Put:  -S*σ*n(d1)/(2√t) + r*K*e^(-rt)*N(-d2)
    """
    d1_val = d1(s, k, t, v, r)
    d2_val = d1_val - v * np.sqrt(t)
    decay = -(s * v * normal_pdf(d1_val)) / (2.0 * np.sqrt(t))
    carry = r * k * np.exp(-r * t)
    if is_call:
        return decay - carry * normal_cdf(d2_val)
    return decay + carry * normal_cdf(-d2_val)


def _vega_float(s, k, t, v, r=0.0):
    """ν = S*n(d1)*√t, same for calls and puts."""
    return s * normal_pdf(d1(s, k, t, v, r)) * np.sqrt(t)


def _rho_float(is_call: bool, s, k, t, v, r=0.0):
    """Call: K*t*e^(-rt)*N(d2). Put: -K*t*e^(-rt)*N(-d2)."""
    d2_val = d2(s, k, t, v, r)
    discounted = k * t * np.exp(-r * t)
    if is_call:
        return discounted * normal_cdf(d2_val)
    return -discounted * normal_cdf(-d2_val)


def call_delta(s: Decimal, k: Decimal, t: Decimal, v: Decimal, r: Decimal = Decimal("0")) -> Decimal:
    return _to_decimal(_delta_float(True, float(s), float(k), float(t), float(v), float(r)))


def put_delta(s: Decimal, k: Decimal, t: Decimal, v: Decimal, r: Decimal = Decimal("0")) -> Decimal:
    return _to_decimal(_delta_float(False, float(s), float(k), float(t), float(v), float(r)))


def gamma(s: Decimal, k: Decimal, t: Decimal, v: Decimal, r: Decimal = Decimal("0")) -> Decimal:
    return _to_decimal(_gamma_float(float(s), float(k), float(t), float(v), float(r)))


def vega(s: Decimal, k: Decimal, t: Decimal, v: Decimal, r: Decimal = Decimal("0")) -> Decimal:
    return _to_decimal(_vega_float(float(s), float(k), float(t), float(v), float(r)))


# ============================================================================
# IMPLIED VOLATILITY
# ============================================================================

def _impvol_float(
    is_call: bool,
    s: float,
    k: Union[float, np.ndarray],
    t: float,
    p: Union[float, np.ndarray],
    r: float = 0.0,
) -> Union[float, np.ndarray]:
    """
    Implied volatility by bisection. Internal float implementation.

    Vectorized over strikes and prices.

    Args:
        is_call: Price calls (True) or puts (False)
        s: Current underlying price
        k: Strike price(s) - scalar or array
        t: Time to expiry in years
        p: Option price(s) to find implied vol for - scalar or array
        r: Risk-free rate

    Returns:
        Implied volatility (scalar or array matching input shape)
    """
    pricer = _call_float if is_call else _put_float
    k_arr = np.atleast_1d(np.asarray(k, dtype=float))
    p_arr = np.atleast_1d(np.asarray(p, dtype=float))

    v_d = np.full_like(k_arr, 0.0001, dtype=float)  # 0.01%
    v_u = np.full_like(k_arr, 5.0, dtype=float)      # 500%

    v_m = (v_d + v_u) / 2.0
    price_m = pricer(s, k_arr, t, v_m, r)

    for _ in range(40):
        mask = price_m > p_arr
        v_u = np.where(mask, v_m, v_u)
        v_d = np.where(mask, v_d, v_m)
        v_m = (v_d + v_u) / 2.0
        price_m = pricer(s, k_arr, t, v_m, r)

    if np.isscalar(k) and np.isscalar(p):
        return float(v_m[0])
    return v_m


def call_impvol(s: Decimal, k: Decimal, t: Decimal, p: Decimal, r: Decimal = Decimal("0")) -> Decimal:
    """Call implied volatility with Decimal interface."""
    return _to_decimal(_impvol_float(True, float(s), float(k), float(t), float(p), float(r)))


def put_impvol(s: Decimal, k: Decimal, t: Decimal, p: Decimal, r: Decimal = Decimal("0")) -> Decimal:
    """Put implied volatility with Decimal interface."""
    return _to_decimal(_impvol_float(False, float(s), float(k), float(t), float(p), float(r)))


# ============================================================================
# QUOTE-GENERATION ENTRY POINT
# ============================================================================

@dataclass(frozen=True, slots=True)
class Greeks:
    delta: Decimal
    gamma: Decimal
    theta: Decimal
    vega: Decimal
    rho: Decimal


ZERO_GREEKS = Greeks(
    delta=Decimal("0"), gamma=Decimal("0"), theta=Decimal("0"),
    vega=Decimal("0"), rho=Decimal("0"),
)


@dataclass(frozen=True, slots=True)
class OptionCalculation:
    price: Decimal
    greeks: Greeks


def years_to_expiry(seconds: Union[int, float, Decimal]) -> float:
    return float(seconds) / SECONDS_PER_YEAR


def price_option(
    is_call: bool,
    strike: Decimal,
    spot: Decimal,
    time_to_expiry_seconds: Union[int, float, Decimal],
    volatility: Decimal,
    risk_free_rate: Decimal,
) -> OptionCalculation:
    """
    Price an option and its greeks.

    An option at or past expiry prices at zero with zero greeks. The price is
    floored at zero.

    Example:
        price_option(True, Decimal("250"), Decimal("218.54"), 716747,
                     Decimal("0.35"), Decimal("0.08"))
    """
    t = years_to_expiry(time_to_expiry_seconds)
    if t <= 0:
        return OptionCalculation(price=Decimal("0"), greeks=ZERO_GREEKS)

    s, k, v, r = float(spot), float(strike), float(volatility), float(risk_free_rate)
    raw = _call_float(s, k, t, v, r) if is_call else _put_float(s, k, t, v, r)
    price = max(Decimal("0"), _to_decimal(raw))
    greeks = Greeks(
        delta=_to_decimal(_delta_float(is_call, s, k, t, v, r)),
        gamma=_to_decimal(_gamma_float(s, k, t, v, r)),
        theta=_to_decimal(_theta_float(is_call, s, k, t, v, r)),
        vega=_to_decimal(_vega_float(s, k, t, v, r)),
        rho=_to_decimal(_rho_float(is_call, s, k, t, v, r)),
    )
    return OptionCalculation(price=price, greeks=greeks)
