from .popdiff_errors import *
from .popdiff_loader import *
from .popdiff_diversity_utils import *
from .popdiff_distance import *
from .popdiff_amova import *
from .popdiff_differentiation import *
from .popdiff_bootstrap import *
from .popdiff_main import *
