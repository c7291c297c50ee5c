"""
*poreflow*

Fully implicit simulation of flow in porous media: immiscible and
compositional multiphase flow, multi-segment wells, heat and Poisson
problems on structured and unstructured meshes.
"""

from ._precision import *  # noqa
from .errors import *  # noqa
from .constants import *  # noqa
from .types import *  # noqa
from .config import *  # noqa
from .mesh import *  # noqa
from .discretization import *  # noqa
from .fluids import *  # noqa
from .systems import *  # noqa
from .wells import *  # noqa
from .models import *  # noqa
from .forces import *  # noqa
from .linalg import *  # noqa
from .assembly import *  # noqa
from .jacobian import *  # noqa
from .newton import *  # noqa
from .timing import *  # noqa
from .states import *  # noqa
from .stores import *  # noqa
from .simulate import *  # noqa
from .analyses import *  # noqa
from .utils import *  # noqa

__version__ = "0.1.0"
