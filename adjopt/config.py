"""
Option dictionaries and argument validation.

Solver options are plain dictionaries built by keyword functions. Objective
arguments are JSON-like dictionaries; the ``get_*`` helpers below read one key
each and raise ``ValueError`` (or ``KeyError`` for a missing required key) at
construction time, so a malformed configuration never reaches a solve.
"""
import math
import numbers
from typing import Any, Dict, Mapping, Optional, Set, Tuple

TRANSIENT_INTEGRAL_TYPES = ('uniform', 'trapezoidal', 'simpson', 'final')


def al_solver_options(
    initial_al_weight: float = 1e6,
    scaling: float = 2.0,
    max_al_weight: float = 1e11,
    eta_tol: float = 0.99,
    max_al_steps: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Generate a dictionary of augmented Lagrangian solver options.

    Args:
        initial_al_weight (float, optional): Penalty weight of the first AL
            sub-solve. Defaults to 1e6.
        scaling (float, optional): Factor applied to the weight on every
            escalating iteration. Defaults to 2.0.
        max_al_weight (float, optional): Upper bound of the penalty weight.
            Defaults to 1e11.
        eta_tol (float, optional): Required relative reduction of the
            constraint error before the multiplier takes over. Defaults to 0.99.
        max_al_steps (int | None, optional): Hard limit on outer iterations,
            None for no limit. Defaults to None.

    Returns:
        dict: The validated options.
    """
    options = {
        "initial_al_weight": initial_al_weight,
        "scaling": scaling,
        "max_al_weight": max_al_weight,
        "eta_tol": eta_tol,
        "max_al_steps": max_al_steps,
    }
    return check_al_solver_options(options)


def check_al_solver_options(options: Mapping[str, Any]) -> Dict[str, Any]:
    options = dict(options)
    for key in ("initial_al_weight", "scaling", "max_al_weight", "eta_tol"):
        if key not in options:
            raise KeyError(f"AL solver option '{key}' is required.")
        if not _is_real(options[key]):
            raise ValueError(f"AL solver option '{key}' must be a real number (got: {options[key]!r}).")
        options[key] = float(options[key])

    if options["initial_al_weight"] <= 0:
        raise ValueError("initial_al_weight must be positive.")
    if options["max_al_weight"] < options["initial_al_weight"]:
        raise ValueError("max_al_weight must not be smaller than initial_al_weight.")
    if options["scaling"] <= 1:
        raise ValueError("scaling must be larger than 1.")

    max_steps = options.get("max_al_steps")
    if max_steps is not None and (not isinstance(max_steps, numbers.Integral) or max_steps <= 0):
        raise ValueError(f"max_al_steps must be a positive integer or None (got: {max_steps!r}).")
    options["max_al_steps"] = max_steps
    return options


def _is_real(v) -> bool:
    return isinstance(v, numbers.Real) and not isinstance(v, bool)


def get_id_selection(args: Mapping[str, Any], key: str = "volume_selection") -> Set[int]:
    """Read an id selection (array of integers) into an unordered set."""
    if key not in args:
        raise KeyError(f"Objective argument '{key}' is required.")
    ids = args[key]
    if isinstance(ids, (str, bytes)) or not hasattr(ids, '__iter__'):
        raise ValueError(f"'{key}' must be an array of integers (got: {ids!r}).")
    ids = list(ids)
    for i in ids:
        if not isinstance(i, numbers.Integral) or isinstance(i, bool):
            raise ValueError(f"'{key}' must be an array of integers (got: {ids!r}).")
    return set(int(i) for i in ids)


def get_power(args: Mapping[str, Any], default: Optional[float] = None) -> float:
    if "power" not in args:
        if default is None:
            raise KeyError("Objective argument 'power' is required.")
        return default
    p = args["power"]
    if not _is_real(p):
        raise ValueError(f"'power' must be a real number (got: {p!r}).")
    return p


def get_bool(args: Mapping[str, Any], key: str, default: Optional[bool] = None) -> bool:
    if key not in args:
        if default is None:
            raise KeyError(f"Objective argument '{key}' is required.")
        return default
    v = args[key]
    if not isinstance(v, bool):
        raise ValueError(f"'{key}' must be a boolean (got: {v!r}).")
    return v


def get_soft_bound(args: Mapping[str, Any]) -> Tuple[float, float]:
    """Soft bound ``[lo, hi]``; anything but exactly two reals gives ``[0, +inf)``."""
    bound = args.get("soft_bound", None)
    if bound is not None and not isinstance(bound, (str, bytes)) and hasattr(bound, '__len__') \
            and len(bound) == 2 and all(_is_real(b) for b in bound):
        lo, hi = float(bound[0]), float(bound[1])
        if lo > hi:
            raise ValueError(f"soft_bound must satisfy lo <= hi (got: {list(bound)}).")
        return lo, hi
    return 0.0, math.inf


def get_transient_integral_type(args: Mapping[str, Any], time_steps: int) -> str:
    name = args.get("transient_integral_type", "uniform")
    check_transient_integral_type(name, time_steps)
    return name


def check_transient_integral_type(name: str, time_steps: int) -> None:
    if not isinstance(name, str):
        raise ValueError(f"transient_integral_type must be a string (got: {name!r}).")
    if name in TRANSIENT_INTEGRAL_TYPES:
        return
    if name.startswith("step_"):
        try:
            step = int(name[5:])
        except ValueError:
            raise ValueError(f"Cannot parse the step index of '{name}'.") from None
        if not 0 < step < time_steps + 1:
            raise ValueError(f"'{name}' requires 0 < step < {time_steps + 1}.")
        return
    raise ValueError(f"Unknown transient integral type '{name}'.")
