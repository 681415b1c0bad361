from .fixedeffect import FixedEffect
from .linalg import FixedEffectVector, FixedEffectMatrix
import pyabsorb.preconditioners
import pyabsorb.solvers
from .problem import problem_params, fixed_effect_problem, solve_residuals, solve_coefficients, residualize, FixedEffectProblem, LSMRFixedEffectProblem, LSMRParallelFixedEffectProblem, LSMRThreadsFixedEffectProblem, CGLSFixedEffectProblem, QRFixedEffectProblem
from .partial_out import partial_out_params, partial_out
