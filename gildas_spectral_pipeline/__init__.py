from .errors import *
from .codec import *
from .parameter import *
from .spectrum_header import *
from .spectrum_line import *
from .spectrum import *
from .spectrum_record import *
from .container import *
from .kernel import *
from .cube import *
from .line_fitting import *

from ._version import __version__
