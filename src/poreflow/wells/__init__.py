from .core import *  # noqa
from .base import *  # noqa
from .controls import *  # noqa
