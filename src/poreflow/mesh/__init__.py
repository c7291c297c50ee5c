from .base import *  # noqa
from .cartesian import *  # noqa
