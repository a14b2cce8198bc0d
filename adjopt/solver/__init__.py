from .forms import Form, QuadraticForm, BCPenaltyForm, BCLagrangianForm
from .nl_problem import NLProblem
from .minimizer import (StopCriteria, MinimizerStatus, MinimizeResult,
        MinimizerStallError, LBFGSMinimizer)
from .al_solver import (ALSolver, ALSolverError, ALPhase, ALAction, ALState,
        ConstraintMode, al_transition, relative_error_reduction)
