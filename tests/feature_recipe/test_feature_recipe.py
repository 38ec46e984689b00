import pytest
import numpy as np
import pandas as pd

from modules.feature_recipe import FeatureRecipe, RecipeState
from modules.split_engine import partition_dataset
from utils.exceptions import DataValidationError, DegenerateFeatureError, UnseenCategoryError
from utils import constants


@pytest.fixture
def recipe():
    return FeatureRecipe(constants.NUMERIC_PREDICTORS, constants.CATEGORICAL_PREDICTORS, constants.LABEL)


@pytest.fixture
def tiny_df():
    return pd.DataFrame({
        'x': [1.0, 2.0, 3.0, 4.0],
        'code': ['b', 'a', 'c', 'a'],
        'y': ['win', 'loss', 'win', 'draw'],
    })


def test_train_columns_standardised(recipe, match_df):
    state = recipe.fit(match_df)
    X = recipe.apply(state, match_df)
    numeric = X[:, :len(constants.NUMERIC_PREDICTORS)]

    np.testing.assert_allclose(numeric.mean(axis=0), 0.0, atol=1e-10)
    np.testing.assert_allclose(numeric.std(axis=0, ddof=1), 1.0, atol=1e-10)


def test_test_rows_use_train_statistics(recipe, match_df):
    part = partition_dataset(match_df, constants.LABEL, 0.8, seed=0)
    state = recipe.fit(part.train)
    test = part.claim_test()

    X_test = recipe.apply_frame(state, test)
    stat = state.numeric[0]
    expected = (test[stat.name] - stat.mean) / stat.std
    np.testing.assert_allclose(X_test[stat.name].to_numpy(), expected.to_numpy())
    assert stat.mean == pytest.approx(part.train[stat.name].mean())


def test_output_layout(tiny_df):
    recipe = FeatureRecipe(['x'], ['code'], 'y')
    state = recipe.fit(tiny_df)

    # reference level 'a' gets no indicator column
    assert state.feature_names == ['x', 'code_b', 'code_c']
    X = recipe.apply(state, tiny_df)
    assert X.shape == (4, 3)
    np.testing.assert_array_equal(X[:, 1], [1, 0, 0, 0])
    np.testing.assert_array_equal(X[:, 2], [0, 0, 1, 0])


def test_unseen_level_maps_to_reference(tiny_df):
    recipe = FeatureRecipe(['x'], ['code'], 'y')
    state = recipe.fit(tiny_df)
    new = pd.DataFrame({'x': [2.5], 'code': ['z'], 'y': ['win']})

    X = recipe.apply(state, new)
    np.testing.assert_array_equal(X[0, 1:], [0, 0])


def test_unseen_level_strict_raises(tiny_df):
    recipe = FeatureRecipe(['x'], ['code'], 'y')
    state = recipe.fit(tiny_df)
    new = pd.DataFrame({'x': [2.5], 'code': ['z'], 'y': ['win']})

    with pytest.raises(UnseenCategoryError, match="'z'"):
        recipe.apply(state, new, strict=True)


def test_constant_numeric_column_is_degenerate(tiny_df):
    tiny_df['x'] = 5.0
    recipe = FeatureRecipe(['x'], ['code'], 'y')
    with pytest.raises(DegenerateFeatureError, match="zero variance"):
        recipe.fit(tiny_df)


def test_single_row_is_degenerate(tiny_df):
    recipe = FeatureRecipe(['x'], ['code'], 'y')
    with pytest.raises(DegenerateFeatureError):
        recipe.fit(tiny_df.iloc[:1])


def test_missing_column_and_missing_values(tiny_df):
    recipe = FeatureRecipe(['x', 'w'], ['code'], 'y')
    with pytest.raises(DataValidationError, match="Missing required columns"):
        recipe.fit(tiny_df)

    tiny_df.loc[0, 'x'] = np.nan
    recipe = FeatureRecipe(['x'], ['code'], 'y')
    with pytest.raises(DataValidationError, match="Missing values"):
        recipe.fit(tiny_df)


def test_overlapping_predictor_lists_rejected():
    with pytest.raises(DataValidationError):
        FeatureRecipe(['x'], ['x'], 'y')
    with pytest.raises(DataValidationError):
        FeatureRecipe(['y'], [], 'y')


def test_state_is_frozen_and_round_trips(recipe, match_df):
    state = recipe.fit(match_df)
    with pytest.raises(AttributeError):
        state.n_fit_rows = 0

    restored = RecipeState.from_dict(state.to_dict())
    assert restored == state
    assert restored.checksum() == state.checksum()


def test_checksum_changes_with_statistics(recipe, match_df):
    a = recipe.fit(match_df)
    b = recipe.fit(match_df.iloc[:200])
    assert a.checksum() != b.checksum()


def test_apply_does_not_touch_state(recipe, match_df):
    state = recipe.fit(match_df.iloc[:200])
    before = state.checksum()
    recipe.apply(state, match_df.iloc[200:])
    assert state.checksum() == before
