import importlib
import warnings

import pandas as pd

import utils


def test_copy_on_write_set_only_where_the_option_is_live():
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        importlib.reload(utils)

    if utils.COPY_ON_WRITE_OPTION:
        assert pd.options.mode.copy_on_write is True
    else:
        assert int(pd.__version__.split('.')[0]) >= 3
