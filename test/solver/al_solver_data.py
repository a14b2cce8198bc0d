import math

import numpy as np

transition_data = [
    # eta below tolerance and weight below the cap: escalate
    {"weight": 10.0, "eta": 0.5, "eta_tol": 0.99, "max": 1e3, "scaling": 2.0,
     "new_weight": 20.0, "action": "escalate"},
    # escalation never exceeds the cap
    {"weight": 800.0, "eta": 0.5, "eta_tol": 0.99, "max": 1e3, "scaling": 2.0,
     "new_weight": 1e3, "action": "escalate"},
    # at the cap the multiplier takes over
    {"weight": 1e3, "eta": 0.5, "eta_tol": 0.99, "max": 1e3, "scaling": 2.0,
     "new_weight": 1e3, "action": "update_multiplier"},
    # enough reduction
    {"weight": 10.0, "eta": 0.995, "eta_tol": 0.99, "max": 1e3, "scaling": 2.0,
     "new_weight": 10.0, "action": "update_multiplier"},
    {"weight": 10.0, "eta": -math.inf, "eta_tol": 0.99, "max": 1e3, "scaling": 10.0,
     "new_weight": 100.0, "action": "escalate"},
]

error_reduction_data = [
    {"initial": 4.0, "current": 1.0, "eta": 0.5},
    {"initial": 4.0, "current": 0.0, "eta": 1.0},
    {"initial": 4.0, "current": 9.0, "eta": -0.5},
    {"initial": 0.0, "current": 0.0, "eta": 1.0},
    {"initial": 0.0, "current": 1e-3, "eta": -math.inf},
]

# a chain of unit springs on a line compressed by its end values; a step is
# valid when every gap stays above min_gap, and a barrier of stiffness kappa
# acts on gaps closer than dhat to min_gap
chain_data = [
    {"n": 5, "left": 0.0, "right": 2.0, "min_gap": 0.25, "dhat": 0.125, "kappa": 100.0},
    {"n": 7, "left": -1.0, "right": 1.0, "min_gap": 1/6, "dhat": 1/12, "kappa": 100.0},
]

al_options = {
    "initial_al_weight": 1e2,
    "scaling": 2.0,
    "max_al_weight": 1e6,
    "eta_tol": 0.99,
    "max_al_steps": 50,
}
