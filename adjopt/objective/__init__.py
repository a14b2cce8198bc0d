from .base import Objective, StaticObjective
from .spatial import (SpatialIntegralObjective, StressObjective, ComplianceObjective,
        PositionObjective, TargetObjective)
from .volume import VolumeObjective, VolumePenaltyObjective
from .composite import (SumObjective, BarycenterTargetObjective, TransientObjective,
        transient_quadrature_weights)
from .smoothing import BoundarySmoothingObjective
from .factory import create_objective
