from .lsmr import lsmr, LSMRState
from .cgls import cgls, cgls_converged, CGLSState
