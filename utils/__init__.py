"""
Utility package setup.

Enables pandas Copy-on-Write globally so the frames handed between engines
(partitions, fold subsets) are never mutated through a shared view.
"""

import pandas as pd
from packaging import version

# pandas 3 always copies on write and deprecates the option
COPY_ON_WRITE_OPTION = version.parse(pd.__version__).major < 3

if COPY_ON_WRITE_OPTION:
    pd.options.mode.copy_on_write = True
