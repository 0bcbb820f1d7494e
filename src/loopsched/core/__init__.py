# installs the string printing functions on the IR
from . import HIR_pprint
