from .variables import *  # noqa
from .base import *  # noqa
from .immiscible import *  # noqa
from .compositional import *  # noqa
from .simple import *  # noqa
