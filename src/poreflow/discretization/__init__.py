from .tpfa import *  # noqa
from .domain import *  # noqa
