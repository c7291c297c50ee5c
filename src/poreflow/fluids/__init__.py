from .relperm import *  # noqa
from .densities import *  # noqa
from .viscosities import *  # noqa
from .capillary_pressures import *  # noqa
from .eos import *  # noqa
from .flash import *  # noqa
